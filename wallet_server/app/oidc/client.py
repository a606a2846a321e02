"""
OIDC identity provider client.

This module handles:
- Fetching and caching the provider's discovery document and JWKS
- Building the authorization URL for the code flow
- Exchanging authorization codes for tokens
- Verifying ID tokens (signature, issuer, audience, expiry, nonce)
- Fetching user-info claims with an access token
"""

import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from jose import JWTError, jwk, jwt

from ..errors import ClaimsError, IdentityProviderError
from ..models import OAuthToken

logger = logging.getLogger(__name__)

DISCOVERY_PATH = "/.well-known/openid-configuration"

SUPPORTED_ALGORITHMS = ["RS256", "RS384", "RS512", "ES256", "ES384", "PS256"]


class OIDCClient:
    """
    Client for one OIDC provider.

    Args:
        http_client: Pooled HTTP client shared with the rest of the app
        provider_url: Issuer URL
        client_id: OAuth2 client ID
        client_secret: OAuth2 client secret, if confidential
        redirect_uri: Callback URL registered with the provider
        scopes: Scopes requested when none are passed explicitly
        jwks_cache_seconds: How long fetched JWKS stay valid
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        provider_url: str,
        client_id: str,
        redirect_uri: str,
        client_secret: Optional[str] = None,
        scopes: Optional[List[str]] = None,
        jwks_cache_seconds: int = 3600,
    ):
        self._http = http_client
        self.provider_url = provider_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.scopes = scopes or ["openid"]
        self.jwks_cache_seconds = jwks_cache_seconds

        self._metadata: Optional[Dict[str, Any]] = None
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_time: float = 0.0

    @classmethod
    def from_settings(cls, settings, http_client: httpx.AsyncClient) -> "OIDCClient":
        return cls(
            http_client=http_client,
            provider_url=settings.OIDC_PROVIDER_URL,
            client_id=settings.OIDC_CLIENT_ID,
            client_secret=settings.OIDC_CLIENT_SECRET,
            redirect_uri=settings.OIDC_CALLBACK_URL,
            scopes=settings.oidc_scopes_list,
            jwks_cache_seconds=settings.JWKS_CACHE_SECONDS,
        )

    # =========================================================================
    # Discovery
    # =========================================================================

    async def discover(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the provider metadata document once and cache it.

        Returns:
            Discovery document

        Raises:
            IdentityProviderError: If the document cannot be fetched or is incomplete
        """
        if self._metadata is not None and not force_refresh:
            return self._metadata

        metadata = await self._get_json(self.provider_url + DISCOVERY_PATH, "provider discovery")

        for field in ("issuer", "authorization_endpoint", "token_endpoint", "jwks_uri"):
            if not metadata.get(field):
                raise IdentityProviderError(f"provider discovery document missing '{field}'")

        self._metadata = metadata
        logger.info(
            "Loaded OIDC provider metadata",
            extra={"issuer": metadata["issuer"]},
        )
        return metadata

    async def fetch_jwks(self, force_refresh: bool = False) -> Dict[str, Any]:
        """
        Fetch the provider's JWKS with caching.

        Args:
            force_refresh: If True, bypass cache and fetch fresh JWKS

        Returns:
            JWKS document containing keys
        """
        now = time.time()
        if not force_refresh and self._jwks and (now - self._jwks_time) < self.jwks_cache_seconds:
            return self._jwks

        metadata = await self.discover()
        jwks = await self._get_json(metadata["jwks_uri"], "JWKS")

        if "keys" not in jwks:
            raise IdentityProviderError("invalid JWKS response: missing 'keys' field")

        self._jwks = jwks
        self._jwks_time = now
        return jwks

    # =========================================================================
    # Authorization Code Flow
    # =========================================================================

    async def build_auth_url(self, state: str, nonce: str, scopes: Optional[List[str]] = None) -> str:
        """
        Build the provider authorization URL for the code flow.

        Args:
            state: Anti-forgery value echoed back on the callback
            nonce: Value the provider embeds in the ID token
            scopes: Scopes to request (defaults to the configured scopes)

        Returns:
            URL to redirect the browser to
        """
        metadata = await self.discover()
        params = {
            "response_type": "code",
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": " ".join(scopes or self.scopes),
            "state": state,
            "nonce": nonce,
        }
        endpoint = metadata["authorization_endpoint"]
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{urlencode(params)}"

    async def exchange(self, code: str) -> OAuthToken:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback

        Returns:
            Token response; always carries an ID token

        Raises:
            IdentityProviderError: If the provider rejects the code or the response is invalid
        """
        metadata = await self.discover()

        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
        }
        if self.client_secret:
            payload["client_secret"] = self.client_secret

        try:
            response = await self._http.post(
                metadata["token_endpoint"],
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"token endpoint unreachable: {e}") from e

        if response.status_code != 200:
            logger.warning(
                f"Token exchange rejected: {response.status_code}",
                extra={"status_code": response.status_code},
            )
            raise IdentityProviderError(
                f"token endpoint returned {response.status_code}: {response.text[:200]}"
            )

        try:
            token = OAuthToken.model_validate(response.json())
        except ValueError as e:
            raise IdentityProviderError(f"invalid token response: {e}") from e

        if not token.id_token:
            raise IdentityProviderError("missing id_token")

        return token

    # =========================================================================
    # ID Token Verification
    # =========================================================================

    async def verify_id_token(self, raw_id_token: str, nonce: Optional[str]) -> Dict[str, Any]:
        """
        Verify and decode an ID token.

        This function performs comprehensive validation:
        1. Finds the signing key in the JWKS (refreshing once on a miss)
        2. Verifies the token signature
        3. Validates iss, aud, exp, nbf and iat
        4. Checks the nonce against the one issued at login

        Args:
            raw_id_token: Compact JWS from the token response
            nonce: Nonce stored in the session at login

        Returns:
            Dictionary of verified token claims

        Raises:
            IdentityProviderError: If any check fails
        """
        metadata = await self.discover()

        try:
            header = jwt.get_unverified_header(raw_id_token)
        except JWTError as e:
            raise IdentityProviderError(f"malformed id_token header: {e}") from e

        signing_key = _find_key(header, await self.fetch_jwks())
        if signing_key is None:
            # keys may have rotated
            signing_key = _find_key(header, await self.fetch_jwks(force_refresh=True))
            if signing_key is None:
                raise IdentityProviderError("unable to find matching signing key in JWKS")

        algorithm = header.get("alg") or signing_key.get("alg")
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise IdentityProviderError(f"unsupported id_token algorithm: {algorithm}")

        try:
            public_key = jwk.construct(signing_key, algorithm)
        except JWTError as e:
            raise IdentityProviderError(f"failed to construct public key from JWK: {e}") from e

        try:
            claims = jwt.decode(
                raw_id_token,
                public_key.to_pem().decode("utf-8"),
                algorithms=[algorithm],
                audience=self.client_id,
                issuer=metadata["issuer"],
                options={
                    "verify_at_hash": False,
                    "leeway": 10,
                },
            )
        except jwt.ExpiredSignatureError as e:
            raise IdentityProviderError("id_token has expired") from e
        except jwt.JWTClaimsError as e:
            raise IdentityProviderError(f"invalid id_token claims: {e}") from e
        except JWTError as e:
            raise IdentityProviderError(f"id_token verification failed: {e}") from e

        if not validate_nonce(claims, nonce):
            raise IdentityProviderError("id_token nonce does not match")

        return claims

    # =========================================================================
    # User Info
    # =========================================================================

    async def fetch_user_info(self, access_token: str) -> Dict[str, Any]:
        """
        Fetch claims from the user-info endpoint.

        Raises:
            IdentityProviderError: If the endpoint is missing, unreachable or rejects the token
            ClaimsError: If the response is not a JSON object
        """
        metadata = await self.discover()
        endpoint = metadata.get("userinfo_endpoint")
        if not endpoint:
            raise IdentityProviderError("provider does not publish a userinfo endpoint")

        try:
            response = await self._http.get(
                endpoint,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"userinfo endpoint unreachable: {e}") from e

        if response.status_code != 200:
            raise IdentityProviderError(f"userinfo endpoint returned {response.status_code}")

        try:
            claims = response.json()
        except ValueError as e:
            raise ClaimsError(f"userinfo response is not JSON: {e}") from e

        if not isinstance(claims, dict):
            raise ClaimsError("userinfo response is not a JSON object")

        return claims

    async def _get_json(self, url: str, what: str) -> Dict[str, Any]:
        try:
            response = await self._http.get(url, headers={"Accept": "application/json"})
            response.raise_for_status()
            document = response.json()
        except httpx.HTTPError as e:
            raise IdentityProviderError(f"failed to fetch {what}: {e}") from e
        except ValueError as e:
            raise IdentityProviderError(f"invalid {what} response: {e}") from e

        if not isinstance(document, dict):
            raise IdentityProviderError(f"invalid {what} response: not a JSON object")
        return document


# =============================================================================
# Token Validation Helpers
# =============================================================================

def _find_key(header: Dict[str, Any], jwks: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    kid = header.get("kid")
    keys = [k for k in jwks.get("keys", []) if k.get("use", "sig") == "sig"]

    if kid:
        for key in keys:
            if key.get("kid") == kid:
                return key
        return None

    # providers with a single key may omit kid
    return keys[0] if len(keys) == 1 else None


def validate_nonce(claims: Dict[str, Any], expected_nonce: Optional[str]) -> bool:
    """
    Validate nonce claim against the one issued at login.

    Args:
        claims: Token claims
        expected_nonce: Nonce value from the session

    Returns:
        True if both are absent or both match
    """
    token_nonce = claims.get("nonce")

    if not token_nonce and not expected_nonce:
        return True

    if token_nonce and expected_nonce:
        return token_nonce == expected_nonce

    return False
