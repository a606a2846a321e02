"""
Data Models Module

This module defines Pydantic models for the records the wallet server keeps
and the payloads it exchanges with the identity provider and the
authorization server.

Models are organized by functional area:
- Identity models (verified user, OAuth token response)
- Persistence models (user tokens, bootstrap data)
- System models (health check)
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ClaimsError


# ============================================================================
# Identity Models
# ============================================================================

class User(BaseModel):
    """Identity parsed from verified ID token claims."""
    model_config = ConfigDict(frozen=True)

    sub: str = Field(..., description="Stable subject identifier assigned by the provider", min_length=1)
    profile: Dict[str, Any] = Field(default_factory=dict, description="Remaining ID token claims")

    @classmethod
    def from_claims(cls, claims: Dict[str, Any]) -> "User":
        """
        Build a User from verified ID token claims.

        Args:
            claims: Decoded and verified claims

        Returns:
            User with the subject and the rest of the claims as profile

        Raises:
            ClaimsError: If the subject claim is missing or not a string
        """
        if not isinstance(claims, dict):
            raise ClaimsError("claims must be a JSON object")

        profile = {k: v for k, v in claims.items() if k != "sub"}
        try:
            return cls(sub=claims.get("sub"), profile=profile)
        except ValidationError as e:
            raise ClaimsError(f"invalid subject claim: {e.errors()[0]['msg']}") from e


class OAuthToken(BaseModel):
    """Token endpoint response for the authorization code grant."""
    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., description="Bearer token for provider APIs", min_length=1, repr=False)
    refresh_token: Optional[str] = Field(None, description="Refresh token if issued", repr=False)
    token_type: str = Field(default="Bearer", description="Token type")
    id_token: Optional[str] = Field(None, description="Raw signed ID token", repr=False)
    expires_in: Optional[int] = Field(None, description="Access token lifetime in seconds")


# ============================================================================
# Persistence Models
# ============================================================================

class BootstrapData(BaseModel):
    """
    Locations of a user's provisioned key stores and vaults.

    Serialized with camelCase names, which is the format the authorization
    server and the wallet UI exchange. Every field is required, so a record
    holds either complete bootstrap data or none at all.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    authz_key_store_url: str = Field(..., alias="authzKeyStoreURL", min_length=1)
    ops_key_store_url: str = Field(..., alias="opsKeyStoreURL", min_length=1)
    ops_edv_vault_url: str = Field(..., alias="opsEDVVaultURL", min_length=1)
    edv_ops_key_id: str = Field(..., alias="edvOpsKeyID", min_length=1)
    edv_hmac_key_id: str = Field(..., alias="edvHMACKeyID", min_length=1)
    user_edv_vault_url: str = Field(..., alias="userEDVVaultURL", min_length=1)
    user_edv_capability: str = Field(
        ...,
        alias="userEDVCapability",
        description="Serialized delegated capability for the user vault (bearer secret)",
        min_length=1,
        repr=False,
    )

    def to_wire(self) -> Dict[str, Any]:
        """Serialize with camelCase field names."""
        return self.model_dump(by_alias=True)


class UserTokens(BaseModel):
    """Persisted OAuth tokens and bootstrap data of one user, keyed by subject."""
    sub: str = Field(..., description="Subject identifier", min_length=1)
    access_token: str = Field(..., description="Latest access token", repr=False)
    refresh_token: Optional[str] = Field(None, description="Latest refresh token", repr=False)
    token_type: str = Field(default="Bearer", description="Token type")
    bootstrap: Optional[BootstrapData] = Field(None, description="Provisioned wallet locations")

    @classmethod
    def from_oauth(
        cls,
        sub: str,
        token: OAuthToken,
        bootstrap: Optional[BootstrapData] = None,
    ) -> "UserTokens":
        """Build a record from a fresh token exchange."""
        return cls(
            sub=sub,
            access_token=token.access_token,
            refresh_token=token.refresh_token,
            token_type=token.token_type,
            bootstrap=bootstrap,
        )


# ============================================================================
# System Models
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response."""
    status: str = Field(default="success", description="Service status")
    currentTime: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Server time",
    )
