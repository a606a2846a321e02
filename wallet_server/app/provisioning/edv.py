"""
Encrypted Data Vault client.

Creating a vault returns the vault URL in the Location header and the root
capability for the vault as the JSON response body.
"""

import logging
from typing import Dict, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field

from ..errors import EDVError
from .transport import send

logger = logging.getLogger(__name__)

VAULTS_PATH = "/encrypted-data-vaults"


class KeyReference(BaseModel):
    id: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)


class DataVaultConfiguration(BaseModel):
    """Vault creation request."""
    model_config = ConfigDict(populate_by_name=True)

    sequence: int = 0
    controller: str = Field(..., min_length=1)
    reference_id: str = Field(..., alias="referenceId", min_length=1)
    invoker: Optional[str] = None
    delegator: Optional[str] = None
    kek: Optional[KeyReference] = None
    hmac: Optional[KeyReference] = None


class EDVClient:
    """
    Client for one EDV server.

    Args:
        base_url: EDV server URL
        http_client: Pooled HTTP client
    """

    def __init__(self, base_url: str, http_client: httpx.AsyncClient):
        self.base_url = base_url.rstrip("/")
        self._http = http_client

    async def create_data_vault(
        self,
        config: DataVaultConfiguration,
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[str, bytes]:
        """
        Create a vault.

        Args:
            config: Vault configuration
            headers: Extra request headers (e.g. bearer token)

        Returns:
            (vault URL, raw root capability JSON)

        Raises:
            EDVError: If the server rejects the request or omits the vault location
        """
        response = await send(
            self._http, "POST", self.base_url + VAULTS_PATH, EDVError, "create data vault",
            json=config.model_dump(by_alias=True, exclude_none=True), headers=headers,
        )

        vault_url = response.headers.get("Location")
        if not vault_url:
            raise EDVError("create data vault: response has no Location header")

        logger.debug("Created data vault", extra={"vault_url": vault_url})
        return vault_url, response.content
