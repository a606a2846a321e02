"""
Key Management Service client.

Key stores and keys are addressed by URL. Private keys never leave the KMS;
the server only ever sees public keys and signatures.

Wire format:
    POST {kms}/v1/keystores            {"controller", "edv"?}  -> {"key_store_url"}
    POST {keystore}/keys               {"key_type"}            -> {"key_url", "public_key"?}
    POST {keystore}/keys/{kid}/sign    {"message"}             -> {"signature"}

Binary fields are unpadded base64url.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..errors import KMSError
from .transport import b64_decode, b64_encode, bearer_headers, json_body, send

logger = logging.getLogger(__name__)

KEYSTORES_PATH = "/v1/keystores"

ED25519 = "ED25519"
NISTP256ECDHKW = "NISTP256ECDHKW"
HMACSHA256_TAG256 = "HMACSHA256Tag256"

SECRET_SHARE_HEADER = "Secret-Share"
USER_HEADER = "Auth-User"


@dataclass(frozen=True)
class KeyStore:
    url: str


@dataclass(frozen=True)
class KMSKey:
    url: str
    public_key: Optional[bytes] = None

    @property
    def id(self) -> str:
        return self.url.rstrip("/").rsplit("/", 1)[-1]


@dataclass(frozen=True)
class KMSCredentials:
    """Per-user credentials sent with every KMS call."""
    access_token: str
    user_sub: str
    secret_share: Optional[bytes] = None

    def headers(self) -> Dict[str, str]:
        extra = {USER_HEADER: self.user_sub}
        if self.secret_share is not None:
            extra[SECRET_SHARE_HEADER] = b64_encode(self.secret_share)
        return bearer_headers(self.access_token, extra)

    def __repr__(self) -> str:
        return f"KMSCredentials(user_sub={self.user_sub!r})"


class KMSClient:
    """
    Client for one KMS server acting on behalf of one user.

    Args:
        base_url: KMS server URL
        http_client: Pooled HTTP client
        credentials: User credentials attached to each call
    """

    def __init__(self, base_url: str, http_client: httpx.AsyncClient, credentials: KMSCredentials):
        self.base_url = base_url.rstrip("/")
        self._http = http_client
        self._credentials = credentials

    async def create_key_store(self, controller: str, edv: Optional[Dict[str, Any]] = None) -> KeyStore:
        """
        Create a key store.

        Args:
            controller: Identity that controls the key store
            edv: Optional EDV backing for key material, {"vault_url", "capability"}

        Returns:
            The new key store
        """
        payload: Dict[str, Any] = {"controller": controller}
        if edv is not None:
            payload["edv"] = edv

        response = await send(
            self._http, "POST", self.base_url + KEYSTORES_PATH, KMSError, "create keystore",
            json=payload, headers=self._credentials.headers(),
        )
        url = _resource_url(response, "key_store_url", "create keystore")
        logger.debug("Created key store", extra={"key_store_url": url})
        return KeyStore(url=url)

    async def create_key(self, key_store: KeyStore, key_type: str) -> KMSKey:
        """
        Create a key of the given type inside a key store.

        Returns:
            The new key, with its public key when the KMS exports one
        """
        response = await send(
            self._http, "POST", f"{key_store.url}/keys", KMSError, "create key",
            json={"key_type": key_type}, headers=self._credentials.headers(),
        )
        url = _resource_url(response, "key_url", "create key")

        public_key = None
        if response.content:
            raw = json_body(response, KMSError, "create key").get("public_key")
            if raw is not None:
                public_key = _decode_field(raw, "public_key", "create key")

        return KMSKey(url=url, public_key=public_key)

    async def sign(self, key: KMSKey, message: bytes) -> bytes:
        """
        Sign a message with a KMS-held key.

        Raises:
            KMSError: "failed to sign from kms" or "unmarshal sign resp"
        """
        response = await send(
            self._http, "POST", f"{key.url}/sign", KMSError, "sign from kms",
            json={"message": b64_encode(message)}, headers=self._credentials.headers(),
        )
        body = json_body(response, KMSError, "sign")
        if "signature" not in body:
            raise KMSError("unmarshal sign resp: missing signature")
        return _decode_field(body["signature"], "signature", "sign")


class KMSSigner:
    """Ed25519 signer whose private key lives in the KMS."""

    algorithm = "EdDSA"

    def __init__(self, kms: KMSClient, key: KMSKey):
        if not key.public_key:
            raise KMSError("signing key has no public key")
        self._kms = kms
        self.key = key

    @property
    def public_key(self) -> bytes:
        return self.key.public_key

    async def sign(self, message: bytes) -> bytes:
        return await self._kms.sign(self.key, message)


def _resource_url(response: httpx.Response, field: str, action: str) -> str:
    location = response.headers.get("Location")
    if location:
        return location

    url = json_body(response, KMSError, action).get(field)
    if not url or not isinstance(url, str):
        raise KMSError(f"{action}: response has neither Location header nor '{field}'")
    return url


def _decode_field(value: Any, field: str, action: str) -> bytes:
    if not isinstance(value, str):
        raise KMSError(f"unmarshal {action} resp: '{field}' is not a string")
    try:
        decoded = b64_decode(value)
    except ValueError as e:
        raise KMSError(f"unmarshal {action} resp: {e}") from e
    if not decoded:
        raise KMSError(f"unmarshal {action} resp: empty '{field}'")
    return decoded
