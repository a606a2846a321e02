"""
Authorization server client: secret shares and bootstrap data.
"""

import logging

import httpx
from pydantic import ValidationError

from ..errors import HubAuthError
from ..models import BootstrapData
from .transport import b64_encode, bearer_headers, json_body, send

logger = logging.getLogger(__name__)


class HubAuthClient:
    """
    Client for the authorization server.

    Args:
        base_url: Authorization server URL
        http_client: Pooled HTTP client
    """

    def __init__(self, base_url: str, http_client: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/")
        self._http = http_client

    async def post_secret_share(
        self,
        access_token: str,
        secret_share: bytes,
        signature: bytes,
        public_key: bytes,
    ) -> None:
        """Store the server-held half of the user's KMS secret."""
        await send(
            self._http, "POST", f"{self.base_url}/secret", HubAuthError, "post secret share",
            json={
                "secret": b64_encode(secret_share),
                "signature": b64_encode(signature),
                "publicKey": b64_encode(public_key),
            },
            headers=bearer_headers(access_token),
        )

    async def post_bootstrap_data(self, sub: str, access_token: str, data: BootstrapData) -> None:
        await send(
            self._http, "POST", f"{self.base_url}/bootstrap", HubAuthError, "update bootstrap data",
            json={"sub": sub, "data": data.to_wire()},
            headers=bearer_headers(access_token),
        )

    async def get_bootstrap_data(self, sub: str, access_token: str) -> BootstrapData:
        """
        Fetch the bootstrap data recorded for a user.

        Raises:
            HubAuthError: If the call fails or the data is incomplete
        """
        response = await send(
            self._http, "GET", f"{self.base_url}/bootstrap", HubAuthError, "fetch bootstrap data",
            params={"sub": sub},
            headers=bearer_headers(access_token),
        )
        body = json_body(response, HubAuthError, "bootstrap data")
        try:
            return BootstrapData.model_validate(body.get("data"))
        except ValidationError as e:
            raise HubAuthError(f"invalid bootstrap data: {e.error_count()} field error(s)") from e
