"""
Wallet Provisioning Orchestrator
================================

Creates a new user's key stores, keys and vaults across the authorization
KMS, the operational KMS, the key EDV, the user EDV and the authorization
server, then returns the resulting BootstrapData.

Steps run strictly in order and stop at the first failure. There are no
retries and no compensating cleanup: resources created before a failure stay
behind and are logged by URL so operators can remove them.

Step order:
    1. create authz keystore            (authz KMS, bearer token)
    2. create authz key                 (Ed25519, KMS-held)
    3. post secret share to auth server
    4. create edv controller, create key data vault, create chain capability
    5. create operational key store     (ops KMS, backed by the key vault)
    6. create edv operational key, create edv hmac key
    7. create user edv vault            (+ chain capability for the ops key store)
    8. update user bootstrap data
"""

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Iterator, List

import httpx

from ..config import Settings
from ..errors import CapabilityError, ProvisioningError, UpstreamError
from ..models import BootstrapData, OAuthToken
from .edv import DataVaultConfiguration, EDVClient, KeyReference
from .hub_auth import HubAuthClient
from .kms import ED25519, HMACSHA256_TAG256, NISTP256ECDHKW, KMSClient, KMSCredentials, KMSSigner
from .secret_share import generate_secret, split_secret
from .transport import b64_encode, bearer_headers
from .zcap import delegate_capability, did_jwk_from_ed25519, parse_capability, serialize_capability

logger = logging.getLogger(__name__)


# =============================================================================
# Step Phrases
# =============================================================================

STEP_AUTHZ_KEYSTORE = "create authz keystore"
STEP_AUTHZ_KEY = "create authz key"
STEP_SECRET_SHARE = "post secret share to auth server"
STEP_EDV_CONTROLLER = "create edv controller"
STEP_KEY_DATA_VAULT = "create key data vault"
STEP_CHAIN_CAPABILITY = "create chain capability"
STEP_OPS_KEYSTORE = "create operational key store"
STEP_EDV_OPS_KEY = "create edv operational key"
STEP_EDV_HMAC_KEY = "create edv hmac key"
STEP_USER_EDV_VAULT = "create user edv vault"
STEP_BOOTSTRAP = "update user bootstrap data"

KEY_AGREEMENT_KEY_TYPE = "JsonWebKey2020"
HMAC_KEY_TYPE = "Sha256HmacKey2019"


@dataclass
class ProvisioningProgress:
    """Steps completed so far and the remote resources they created."""
    sub: str
    completed: List[str] = field(default_factory=list)
    resources: Dict[str, str] = field(default_factory=dict)

    def record(self, name: str, url: str) -> None:
        self.resources[name] = url


class Provisioner:
    """
    Runs the provisioning sequence for first-time users.

    Args:
        settings: Application settings (service URLs, capability lifetime)
        http_client: Pooled HTTP client shared by every service client
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self.settings = settings
        self._http = http_client
        self.key_edv = EDVClient(settings.KEY_EDV_URL, http_client)
        self.user_edv = EDVClient(settings.USER_EDV_URL, http_client)
        self.hub_auth = HubAuthClient(settings.HUB_AUTH_URL, http_client)
        self.capability_ttl = timedelta(days=settings.CAPABILITY_EXPIRY_DAYS)

    async def provision(self, sub: str, token: OAuthToken) -> BootstrapData:
        """
        Provision wallet resources for a user.

        Args:
            sub: Subject of the user being onboarded
            token: Fresh OAuth tokens; the access token authenticates every call

        Returns:
            Bootstrap data describing the created resources

        Raises:
            ProvisioningError: Naming the step that failed
        """
        progress = ProvisioningProgress(sub=sub)
        logger.info("Provisioning wallet for new user", extra={"sub": sub})

        try:
            bootstrap = await self._run(progress, token)
        except ProvisioningError as e:
            logger.error(
                f"Wallet provisioning failed at '{e.step}': {e.cause}",
                extra={
                    "sub": sub,
                    "completed_steps": progress.completed,
                    "orphaned_resources": progress.resources,
                },
            )
            raise

        logger.info("Wallet provisioned", extra={"sub": sub, "resources": progress.resources})
        return bootstrap

    async def _run(self, progress: ProvisioningProgress, token: OAuthToken) -> BootstrapData:
        settings = self.settings
        sub = progress.sub
        local_share, remote_share = split_secret(generate_secret())

        authz_kms = KMSClient(
            settings.AUTHZ_KMS_URL,
            self._http,
            KMSCredentials(access_token=token.access_token, user_sub=sub, secret_share=local_share),
        )
        ops_kms = KMSClient(
            settings.OPS_KMS_URL,
            self._http,
            KMSCredentials(access_token=token.access_token, user_sub=sub),
        )

        # 1. authorization key store
        with _step(progress, STEP_AUTHZ_KEYSTORE):
            authz_key_store = await authz_kms.create_key_store(controller=sub)
            progress.record("authz_key_store", authz_key_store.url)

        # 2. signing key
        with _step(progress, STEP_AUTHZ_KEY):
            authz_key = await authz_kms.create_key(authz_key_store, ED25519)
            progress.record("authz_key", authz_key.url)
            signer = KMSSigner(authz_kms, authz_key)

        # 3. remote secret share
        with _step(progress, STEP_SECRET_SHARE):
            signature = await signer.sign(remote_share)
            await self.hub_auth.post_secret_share(
                token.access_token, remote_share, signature, signer.public_key,
            )

        # 4. key vault and its capability
        with _step(progress, STEP_EDV_CONTROLLER):
            controller = did_jwk_from_ed25519(signer.public_key)

        with _step(progress, STEP_KEY_DATA_VAULT):
            ops_vault_url, ops_vault_root = await self.key_edv.create_data_vault(
                DataVaultConfiguration(controller=controller, reference_id=str(uuid.uuid4())),
                headers=bearer_headers(token.access_token),
            )
            progress.record("ops_edv_vault", ops_vault_url)

        with _step(progress, STEP_CHAIN_CAPABILITY):
            ops_vault_capability = await delegate_capability(
                signer,
                parse_capability(ops_vault_root),
                invoker=settings.ops_kms_invoker,
                invocation_target=ops_vault_url,
                controller_did=controller,
                expires_in=self.capability_ttl,
            )

        # 5. operational key store
        with _step(progress, STEP_OPS_KEYSTORE):
            ops_key_store = await ops_kms.create_key_store(
                controller=controller,
                edv={
                    "vault_url": ops_vault_url,
                    "capability": b64_encode(serialize_capability(ops_vault_capability).encode("utf-8")),
                },
            )
            progress.record("ops_key_store", ops_key_store.url)

        # 6. vault encryption keys
        with _step(progress, STEP_EDV_OPS_KEY):
            edv_ops_key = await ops_kms.create_key(ops_key_store, NISTP256ECDHKW)
            progress.record("edv_ops_key", edv_ops_key.url)

        with _step(progress, STEP_EDV_HMAC_KEY):
            edv_hmac_key = await ops_kms.create_key(ops_key_store, HMACSHA256_TAG256)
            progress.record("edv_hmac_key", edv_hmac_key.url)

        # 7. user vault and its capability
        with _step(progress, STEP_USER_EDV_VAULT):
            user_vault_url, user_vault_root = await self.user_edv.create_data_vault(
                DataVaultConfiguration(
                    controller=controller,
                    reference_id=sub,
                    kek=KeyReference(id=edv_ops_key.url, type=KEY_AGREEMENT_KEY_TYPE),
                    hmac=KeyReference(id=edv_hmac_key.url, type=HMAC_KEY_TYPE),
                ),
                headers=bearer_headers(token.access_token),
            )
            progress.record("user_edv_vault", user_vault_url)

        with _step(progress, STEP_CHAIN_CAPABILITY):
            user_vault_capability = await delegate_capability(
                signer,
                parse_capability(user_vault_root),
                invoker=ops_key_store.url,
                invocation_target=user_vault_url,
                controller_did=controller,
                expires_in=self.capability_ttl,
            )

        bootstrap = BootstrapData(
            authz_key_store_url=authz_key_store.url,
            ops_key_store_url=ops_key_store.url,
            ops_edv_vault_url=ops_vault_url,
            edv_ops_key_id=edv_ops_key.id,
            edv_hmac_key_id=edv_hmac_key.id,
            user_edv_vault_url=user_vault_url,
            user_edv_capability=serialize_capability(user_vault_capability),
        )

        # 8. publish bootstrap data
        with _step(progress, STEP_BOOTSTRAP):
            await self.hub_auth.post_bootstrap_data(sub, token.access_token, bootstrap)

        return bootstrap


@contextmanager
def _step(progress: ProvisioningProgress, name: str) -> Iterator[None]:
    try:
        yield
    except (UpstreamError, CapabilityError, httpx.HTTPError, ValueError) as e:
        raise ProvisioningError(name, e) from e

    progress.completed.append(name)
    logger.debug(f"Provisioning step done: {name}", extra={"sub": progress.sub})
