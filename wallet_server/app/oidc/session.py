"""
Cookie Session Management Module
================================

Server-side-stateless sessions carried in a single browser cookie.

The session values are JSON, encrypted as a compact JWE (dir + A256GCM) with
the cookie encryption key, and the JWE is then wrapped in an HS256 JWT signed
with the cookie authentication key. The JWT's iat/exp claims bound the cookie
lifetime to COOKIE_MAX_AGE independently of the browser.

Reserved session keys:
- STATE_KEY: OIDC state issued at login, consumed at callback
- NONCE_KEY: OIDC nonce issued at login, consumed at callback
- USER_SUB_KEY: subject of the logged-in user
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError
from fastapi import Request, Response
from jose import jwe
from jose.constants import ALGORITHMS
from jose.exceptions import JOSEError

from ..errors import SessionOpenError, SessionSaveError

logger = logging.getLogger(__name__)


STATE_KEY = "oidc_state"
NONCE_KEY = "oidc_nonce"
USER_SUB_KEY = "user_sub"

_SIGNING_ALGORITHM = "HS256"


# =============================================================================
# Session
# =============================================================================

class Session:
    """
    Mutable view of one request's session values.

    Changes are only sent to the browser when save() is called with the
    outgoing response.
    """

    def __init__(self, store: "CookieStore", values: Optional[Dict[str, Any]] = None, is_new: bool = True):
        self._store = store
        self.values: Dict[str, Any] = dict(values or {})
        self.is_new = is_new

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.values[key] = value

    def delete(self, key: str) -> None:
        self.values.pop(key, None)

    def save(self, response: Response) -> None:
        """
        Write the session cookie onto the response.

        Raises:
            SessionSaveError: If the values cannot be encoded
        """
        self._store.save(self, response)


# =============================================================================
# Cookie Store
# =============================================================================

class CookieStore:
    """
    Opens and saves encrypted, signed session cookies.

    Args:
        auth_key: 32-byte HMAC key for the outer JWT
        enc_key: 32-byte AES-256-GCM key for the inner JWE
        max_age: Cookie lifetime in seconds
        cookie_name: Name of the cookie
        secure: Set the Secure attribute
    """

    def __init__(
        self,
        auth_key: bytes,
        enc_key: bytes,
        max_age: int = 900,
        cookie_name: str = "wallet_session",
        secure: bool = True,
    ):
        self._auth_key = auth_key
        self._enc_key = enc_key
        self.max_age = max_age
        self.cookie_name = cookie_name
        self.secure = secure

    @classmethod
    def from_settings(cls, settings) -> "CookieStore":
        return cls(
            auth_key=settings.cookie_auth_key_bytes,
            enc_key=settings.cookie_enc_key_bytes,
            max_age=settings.COOKIE_MAX_AGE,
            cookie_name=settings.COOKIE_NAME,
            secure=settings.COOKIE_SECURE,
        )

    def open(self, request: Request) -> Session:
        """
        Load the session carried by the request.

        A request without the cookie, or with an expired one, gets a new
        empty session.

        Args:
            request: Incoming request

        Returns:
            Session bound to this store

        Raises:
            SessionOpenError: If the cookie was tampered with or cannot be decrypted
        """
        raw = request.cookies.get(self.cookie_name)
        if not raw:
            return Session(self)

        try:
            values = self.decode(raw)
        except ExpiredSignatureError:
            logger.debug("Session cookie expired, starting a new session")
            return Session(self)

        return Session(self, values, is_new=False)

    def save(self, session: Session, response: Response) -> None:
        value = self.encode(session.values)
        response.set_cookie(
            key=self.cookie_name,
            value=value,
            max_age=self.max_age,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite="lax",
        )

    # =========================================================================
    # Codec
    # =========================================================================

    def encode(self, values: Dict[str, Any]) -> str:
        """
        Encrypt then sign session values into a cookie value.

        Raises:
            SessionSaveError: If the values are not JSON serializable or encryption fails
        """
        try:
            plaintext = json.dumps(values, separators=(",", ":"))
            sealed = jwe.encrypt(
                plaintext,
                self._enc_key,
                algorithm=ALGORITHMS.DIR,
                encryption=ALGORITHMS.A256GCM,
            )
            now = datetime.now(timezone.utc)
            return jwt.encode(
                {
                    "dat": sealed.decode("ascii"),
                    "iat": now,
                    "exp": now + timedelta(seconds=self.max_age),
                },
                self._auth_key,
                algorithm=_SIGNING_ALGORITHM,
            )
        except (TypeError, ValueError, JOSEError) as e:
            logger.error(f"Failed to encode session cookie: {e}")
            raise SessionSaveError(f"failed to encode session cookie: {e}") from e

    def decode(self, value: str) -> Dict[str, Any]:
        """
        Verify then decrypt a cookie value.

        Raises:
            ExpiredSignatureError: If the cookie is older than max_age
            SessionOpenError: For any other verification or decryption failure
        """
        try:
            payload = jwt.decode(
                value,
                self._auth_key,
                algorithms=[_SIGNING_ALGORITHM],
                options={"require": ["exp", "iat", "dat"]},
            )
        except ExpiredSignatureError:
            raise
        except InvalidTokenError as e:
            logger.warning(f"Rejected session cookie: {e}")
            raise SessionOpenError(f"invalid session cookie signature: {e}") from e

        try:
            plaintext = jwe.decrypt(payload["dat"], self._enc_key)
            values = json.loads(plaintext)
        except (JOSEError, ValueError, TypeError) as e:
            logger.warning(f"Failed to decrypt session cookie: {e}")
            raise SessionOpenError(f"cannot decrypt session cookie: {e}") from e

        if not isinstance(values, dict):
            raise SessionOpenError("session cookie does not hold an object")

        return values


__all__ = [
    "Session",
    "CookieStore",
    "STATE_KEY",
    "NONCE_KEY",
    "USER_SUB_KEY",
]
