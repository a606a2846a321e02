"""
Error Taxonomy
==============

Domain exceptions raised by the session, storage, identity provider and
provisioning layers. Route handlers translate them into HTTP responses;
nothing below the route layer knows about status codes.

Hierarchy:
    WalletServerError
    ├── SessionError
    │   ├── SessionOpenError
    │   └── SessionSaveError
    ├── StorageError
    │   ├── RecordNotFoundError
    │   └── RecordExistsError
    ├── UpstreamError
    │   ├── IdentityProviderError
    │   ├── KMSError
    │   ├── EDVError
    │   └── HubAuthError
    ├── ClaimsError
    ├── CapabilityError
    └── ProvisioningError
"""


class WalletServerError(Exception):
    """Base exception for all wallet server errors"""
    pass


# =============================================================================
# Session Cookies
# =============================================================================

class SessionError(WalletServerError):
    """Base exception for session cookie errors"""
    pass


class SessionOpenError(SessionError):
    """Session cookie is present but cannot be verified or decrypted"""
    pass


class SessionSaveError(SessionError):
    """Session values cannot be encoded into a cookie"""
    pass


# =============================================================================
# Storage
# =============================================================================

class StorageError(WalletServerError):
    """Underlying store failed to read or write"""
    pass


class RecordNotFoundError(StorageError):
    """No record is stored under the requested key"""
    pass


class RecordExistsError(StorageError):
    """Conditional write found a record already stored under the key"""
    pass


# =============================================================================
# Remote Services
# =============================================================================

class UpstreamError(WalletServerError):
    """A remote service rejected a request or was unreachable"""
    pass


class IdentityProviderError(UpstreamError):
    """OIDC provider call or ID token verification failed"""
    pass


class KMSError(UpstreamError):
    """Key management service call failed"""
    pass


class EDVError(UpstreamError):
    """Encrypted data vault server call failed"""
    pass


class HubAuthError(UpstreamError):
    """Authorization server call failed"""
    pass


# =============================================================================
# Local Failures
# =============================================================================

class ClaimsError(WalletServerError):
    """Verified claims could not be parsed into the expected shape"""
    pass


class CapabilityError(WalletServerError):
    """Capability could not be parsed or delegated"""
    pass


class ProvisioningError(WalletServerError):
    """
    A provisioning step failed.

    The message always starts with the step phrase so callers and
    operators can tell which remote resource was being created.

    Attributes:
        step: Step phrase, e.g. "create operational key store"
        cause: The underlying exception
    """

    def __init__(self, step: str, cause: Exception):
        self.step = step
        self.cause = cause
        super().__init__(f"{step}: {cause}")


__all__ = [
    "WalletServerError",
    "SessionError",
    "SessionOpenError",
    "SessionSaveError",
    "StorageError",
    "RecordNotFoundError",
    "RecordExistsError",
    "UpstreamError",
    "IdentityProviderError",
    "KMSError",
    "EDVError",
    "HubAuthError",
    "ClaimsError",
    "CapabilityError",
    "ProvisioningError",
]
