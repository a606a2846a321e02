"""
Shared application state and the FastAPI dependencies that expose it.
"""

import logging
from typing import Optional

import httpx
from fastapi import HTTPException, Request, status

from .config import Settings
from .oidc.client import OIDCClient
from .oidc.session import CookieStore
from .provisioning.hub_auth import HubAuthClient
from .provisioning.orchestrator import Provisioner
from .store.provider import StoreProvider
from .store.tokens import TokenStore

logger = logging.getLogger(__name__)


class AppState:
    """
    Global application state container.

    Holds the pooled HTTP client and every component built on it. All of them
    are safe to share between concurrent requests.
    """

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        store_provider: StoreProvider,
        oidc_client: Optional[OIDCClient] = None,
        provisioner: Optional[Provisioner] = None,
        hub_auth: Optional[HubAuthClient] = None,
        cookie_store: Optional[CookieStore] = None,
    ):
        self.settings = settings
        self.http_client = http_client
        self.store_provider = store_provider
        self.token_store = TokenStore(store_provider)
        self.cookie_store = cookie_store or CookieStore.from_settings(settings)
        self.oidc_client = oidc_client or OIDCClient.from_settings(settings, http_client)
        self.provisioner = provisioner or Provisioner(settings, http_client)
        self.hub_auth = hub_auth or HubAuthClient(settings.HUB_AUTH_URL, http_client)


def get_app_state(request: Request) -> AppState:
    """
    Dependency to get the application state.

    Raises:
        HTTPException: 503 if the lifespan has not initialized the state yet
    """
    app_state = getattr(request.app.state, "app_state", None)
    if app_state is None:
        logger.error("Application state requested before startup completed")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Wallet server not initialized",
        )
    return app_state
