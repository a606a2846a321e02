"""
Provisioning Package

First-login wallet setup across the remote key management, vault and
authorization services.

Modules:
- orchestrator: Ordered, fail-fast provisioning sequence
- kms: Key store / key creation and KMS-backed signing
- edv: Encrypted data vault creation
- hub_auth: Secret shares and bootstrap data on the authorization server
- zcap: Controller DIDs and capability delegation
- secret_share: 2-of-2 secret splitting
- transport: Shared HTTP and base64url helpers
"""

from .orchestrator import Provisioner, ProvisioningProgress

__all__ = [
    "Provisioner",
    "ProvisioningProgress",
]
