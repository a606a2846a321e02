"""
Shared fixtures for wallet server tests.

Remote services (authz KMS, ops KMS, key EDV, user EDV, authorization
server) are emulated by FakeWalletServices behind an httpx.MockTransport,
so the real clients and orchestrator run unchanged. The OIDC provider is
replaced by a Mock with AsyncMock methods.
"""

import base64
import json
import os
import uuid
from typing import Any, Dict, List, Optional, Set
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from fastapi.testclient import TestClient
from jose.utils import base64url_decode, base64url_encode


AUTH_KEY = base64.b64encode(b"\x01" * 32).decode()
ENC_KEY = base64.b64encode(b"\x02" * 32).decode()

TEST_ENV = {
    "OIDC_PROVIDER_URL": "https://idp.example.com",
    "OIDC_CLIENT_ID": "wallet-client",
    "OIDC_CLIENT_SECRET": "wallet-client-secret",
    "OIDC_CALLBACK_URL": "http://testserver/callback",
    "COOKIE_AUTH_KEY": AUTH_KEY,
    "COOKIE_ENC_KEY": ENC_KEY,
    "COOKIE_SECURE": "false",
    "AUTHZ_KMS_URL": "https://authz-kms.example.com",
    "OPS_KMS_URL": "https://ops-kms.example.com",
    "KEY_EDV_URL": "https://key-edv.example.com",
    "USER_EDV_URL": "https://user-edv.example.com",
    "HUB_AUTH_URL": "https://hub-auth.example.com",
    "WALLET_DASHBOARD_URL": "https://wallet.example.com/dashboard",
}

# main.py builds its module-level app from the environment at import time
for _name, _value in TEST_ENV.items():
    os.environ.setdefault(_name, _value)

from wallet_server.app.config import Settings  # noqa: E402
from wallet_server.app.dependencies import AppState  # noqa: E402
from wallet_server.app.main import create_app  # noqa: E402
from wallet_server.app.models import OAuthToken  # noqa: E402
from wallet_server.app.oidc.session import CookieStore  # noqa: E402
from wallet_server.app.store.provider import MemStoreProvider  # noqa: E402


TEST_SUB = "alice-sub-123"


def b64(data: bytes) -> str:
    return base64url_encode(data).decode("ascii")


def unb64(value: str) -> bytes:
    return base64url_decode(value.encode("ascii"))


# ============================================================================
# Fake Remote Services
# ============================================================================

class FakeWalletServices:
    """
    In-process stand-in for the KMS, EDV and authorization servers.

    Every handled request is recorded by step label in `calls`. Adding a label
    to `fail` makes that endpoint answer 500. `bodies` replaces the JSON
    returned by the "sign" and "authz_key" endpoints.
    """

    def __init__(self):
        self.signing_key = Ed25519PrivateKey.generate()
        self.public_key = self.signing_key.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
        self.calls: List[str] = []
        self.requests: List[httpx.Request] = []
        self.fail: Set[str] = set()
        self.empty_root_capability = False
        self.bootstrap: Dict[str, Dict[str, Any]] = {}
        self.secret_shares: List[Dict[str, Any]] = []
        self.bodies: Dict[str, Dict[str, Any]] = {}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path
        body = json.loads(request.content) if request.content else {}

        if host == "authz-kms.example.com":
            if path == "/v1/keystores":
                return self._created("authz_keystore", f"https://{host}/v1/keystores/authz-ks")
            if path.endswith("/sign"):
                if "sign" in self.fail:
                    return self._record_failure("sign")
                self.calls.append("sign")
                signature = self.signing_key.sign(unb64(body["message"]))
                return httpx.Response(200, json=self.bodies.get("sign", {"signature": b64(signature)}))
            if path.endswith("/keys"):
                return self._created(
                    "authz_key",
                    f"https://{host}/v1/keystores/authz-ks/keys/signing-key",
                    payload=self.bodies.get("authz_key", {"public_key": b64(self.public_key)}),
                )

        if host == "ops-kms.example.com":
            if path == "/v1/keystores":
                return self._created("ops_keystore", f"https://{host}/v1/keystores/ops-ks")
            if path.endswith("/keys"):
                if body.get("key_type") == "NISTP256ECDHKW":
                    return self._created("ops_key", f"https://{host}/v1/keystores/ops-ks/keys/kak-1")
                return self._created("hmac_key", f"https://{host}/v1/keystores/ops-ks/keys/hmac-1")

        if host in ("key-edv.example.com", "user-edv.example.com") and path == "/encrypted-data-vaults":
            label = "key_vault" if host.startswith("key") else "user_vault"
            vault_url = f"https://{host}/encrypted-data-vaults/{uuid.uuid4().hex}"
            root = {"id": uuid.uuid4().urn, "invocationTarget": vault_url}
            content = b"" if self.empty_root_capability and label == "key_vault" else json.dumps(root).encode()
            return self._created(label, vault_url, content=content)

        if host == "hub-auth.example.com":
            if path == "/secret":
                if "secret" in self.fail:
                    return self._record_failure("secret")
                self.calls.append("secret")
                self.secret_shares.append(body)
                return httpx.Response(200)
            if path == "/bootstrap" and request.method == "POST":
                if "bootstrap_post" in self.fail:
                    return self._record_failure("bootstrap_post")
                self.calls.append("bootstrap_post")
                self.bootstrap[body["sub"]] = body["data"]
                return httpx.Response(200)
            if path == "/bootstrap" and request.method == "GET":
                if "bootstrap_get" in self.fail:
                    return self._record_failure("bootstrap_get")
                self.calls.append("bootstrap_get")
                data = self.bootstrap.get(request.url.params.get("sub"))
                if data is None:
                    return httpx.Response(404, text="no bootstrap data")
                return httpx.Response(200, json={"data": data})

        return httpx.Response(404, text=f"unexpected request {request.method} {request.url}")

    def _created(self, label: str, location: str, payload: Optional[dict] = None, content: Optional[bytes] = None):
        if label in self.fail:
            return self._record_failure(label)
        self.calls.append(label)
        if payload is not None:
            return httpx.Response(201, headers={"Location": location}, json=payload)
        return httpx.Response(201, headers={"Location": location}, content=content or b"")

    def _record_failure(self, label: str) -> httpx.Response:
        self.calls.append(f"{label}!")
        return httpx.Response(500, text=f"{label} unavailable")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings():
    """Settings pointing at the fake services"""
    values = dict(TEST_ENV)
    values["COOKIE_SECURE"] = False
    return Settings(**values)


@pytest.fixture
def services():
    return FakeWalletServices()


@pytest.fixture
def http_client(services):
    return httpx.AsyncClient(transport=services.transport())


@pytest.fixture
def oauth_token():
    return OAuthToken(
        access_token="access-token-1",
        refresh_token="refresh-token-1",
        token_type="Bearer",
        id_token="raw-id-token",
        expires_in=3600,
    )


@pytest.fixture
def mock_oidc_client(oauth_token):
    """OIDC provider client whose calls all succeed"""
    client = Mock()
    client.build_auth_url = AsyncMock(
        side_effect=lambda state, nonce: f"https://idp.example.com/authorize?state={state}&nonce={nonce}"
    )
    client.exchange = AsyncMock(return_value=oauth_token)
    client.verify_id_token = AsyncMock(return_value={"sub": TEST_SUB, "email": "alice@example.com"})
    client.fetch_user_info = AsyncMock(
        return_value={"sub": TEST_SUB, "email": "alice@example.com", "name": "Alice"}
    )
    return client


@pytest.fixture
def store_provider():
    return MemStoreProvider()


@pytest.fixture
def app_state(settings, http_client, store_provider, mock_oidc_client):
    return AppState(
        settings=settings,
        http_client=http_client,
        store_provider=store_provider,
        oidc_client=mock_oidc_client,
    )


@pytest.fixture
def app(settings, app_state):
    """Application with state injected (lifespan is not run)"""
    app = create_app(settings)
    app.state.app_state = app_state
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def cookie_store(settings):
    return CookieStore.from_settings(settings)


@pytest.fixture
def set_session(client, cookie_store):
    """Put a session cookie holding the given values on the test client"""
    def _set(values: Dict[str, Any]) -> None:
        client.cookies.set(cookie_store.cookie_name, cookie_store.encode(values))
    return _set
