"""
Route Tests for the OIDC Login Flow
===================================

Tests for wallet_server/app/oidc/routes.py

Test Coverage:
--------------
1. /login redirects with fresh state and nonce, or to the dashboard when logged in
2. /callback state validation, code exchange and ID token failures
3. First login provisions the wallet, repeat logins do not
4. Provisioning and storage failures surface as 500 without persisting anything
5. /userinfo and /logout session handling and error mapping
6. Full browser scenario: login, callback, userinfo, logout

Run tests:
----------
    pytest wallet_server/app/tests/test_routes.py -v
"""

from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import status

from conftest import TEST_SUB
from wallet_server.app.errors import (
    ClaimsError,
    IdentityProviderError,
    RecordExistsError,
    SessionSaveError,
    StorageError,
)
from wallet_server.app.models import BootstrapData, UserTokens
from wallet_server.app.oidc.session import NONCE_KEY, STATE_KEY, USER_SUB_KEY


def _state_from_location(response) -> str:
    query = parse_qs(urlparse(response.headers["location"]).query)
    return query["state"][0]


def _login(client) -> str:
    response = client.get("/login", follow_redirects=False)
    assert response.status_code == status.HTTP_302_FOUND
    return _state_from_location(response)


def _stored_bootstrap():
    return BootstrapData(
        authz_key_store_url="https://authz-kms.example.com/v1/keystores/old",
        ops_key_store_url="https://ops-kms.example.com/v1/keystores/old",
        ops_edv_vault_url="https://key-edv.example.com/encrypted-data-vaults/old",
        edv_ops_key_id="kak-old",
        edv_hmac_key_id="hmac-old",
        user_edv_vault_url="https://user-edv.example.com/encrypted-data-vaults/old",
        user_edv_capability='{"id":"urn:uuid:old"}',
    )


# ============================================================================
# Login
# ============================================================================

def test_login_redirects_to_provider_with_state_and_nonce(client, cookie_store, mock_oidc_client):
    response = client.get("/login", follow_redirects=False)

    assert response.status_code == status.HTTP_302_FOUND
    assert response.headers["location"].startswith("https://idp.example.com/authorize")

    values = cookie_store.decode(response.cookies[cookie_store.cookie_name])
    query = parse_qs(urlparse(response.headers["location"]).query)
    assert values[STATE_KEY] == query["state"][0]
    assert values[NONCE_KEY] == query["nonce"][0]
    assert USER_SUB_KEY not in values


def test_login_generates_fresh_state_each_time(client):
    assert _login(client) != _login(client)


def test_login_when_already_logged_in_redirects_to_dashboard(client, set_session, mock_oidc_client):
    set_session({USER_SUB_KEY: TEST_SUB})

    response = client.get("/login", follow_redirects=False)

    assert response.status_code == status.HTTP_301_MOVED_PERMANENTLY
    assert response.headers["location"] == "https://wallet.example.com/dashboard"
    mock_oidc_client.build_auth_url.assert_not_called()


def test_login_cookie_save_failure_returns_500(client, cookie_store):
    with patch.object(type(cookie_store), "save", side_effect=SessionSaveError("boom")):
        response = client.get("/login", follow_redirects=False)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "failed to save session cookie" in response.json()["detail"]


def test_login_tampered_cookie_returns_500(client, cookie_store):
    client.cookies.set(cookie_store.cookie_name, "not-a-valid-cookie")

    response = client.get("/login", follow_redirects=False)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR


# ============================================================================
# Callback: request validation
# ============================================================================

def test_callback_without_stored_state_returns_400(client, mock_oidc_client):
    response = client.get("/callback?state=abc&code=xyz", follow_redirects=False)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["detail"] == "state not found"
    mock_oidc_client.exchange.assert_not_called()


def test_callback_state_mismatch_returns_400(client, set_session, mock_oidc_client):
    set_session({STATE_KEY: "expected-state", NONCE_KEY: "n"})

    response = client.get("/callback?state=other-state&code=xyz", follow_redirects=False)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    mock_oidc_client.exchange.assert_not_called()


def test_callback_missing_state_param_returns_400(client, set_session):
    set_session({STATE_KEY: "expected-state"})

    response = client.get("/callback?code=xyz", follow_redirects=False)

    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_callback_missing_code_returns_400_with_provider_error(client, set_session):
    set_session({STATE_KEY: "s1"})

    response = client.get(
        "/callback?state=s1&error=access_denied&error_description=User+cancelled",
        follow_redirects=False,
    )

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "User cancelled" in response.json()["detail"]


def test_callback_unreadable_cookie_returns_500(client, cookie_store):
    client.cookies.set(cookie_store.cookie_name, "garbage")

    response = client.get("/callback?state=s1&code=c1", follow_redirects=False)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR


# ============================================================================
# Callback: provider failures
# ============================================================================

def test_callback_code_exchange_failure_returns_502(client, set_session, mock_oidc_client):
    set_session({STATE_KEY: "s1", NONCE_KEY: "n1"})
    mock_oidc_client.exchange.side_effect = IdentityProviderError("token endpoint returned 400")

    response = client.get("/callback?state=s1&code=bad", follow_redirects=False)

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    mock_oidc_client.verify_id_token.assert_not_called()


def test_callback_id_token_verification_failure_returns_502(client, set_session, mock_oidc_client):
    set_session({STATE_KEY: "s1", NONCE_KEY: "n1"})
    mock_oidc_client.verify_id_token.side_effect = IdentityProviderError("id_token has expired")

    response = client.get("/callback?state=s1&code=c1", follow_redirects=False)

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    assert "id_token" in response.json()["detail"]


def test_callback_passes_stored_nonce_to_verification(client, set_session, mock_oidc_client):
    set_session({STATE_KEY: "s1", NONCE_KEY: "nonce-42"})

    client.get("/callback?state=s1&code=c1", follow_redirects=False)

    assert mock_oidc_client.verify_id_token.call_args[0][1] == "nonce-42"


def test_callback_claims_without_subject_returns_500(client, set_session, mock_oidc_client):
    set_session({STATE_KEY: "s1", NONCE_KEY: "n1"})
    mock_oidc_client.verify_id_token.return_value = {"email": "nosub@example.com"}

    response = client.get("/callback?state=s1&code=c1", follow_redirects=False)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "failed to parse id_token claims" in response.json()["detail"]


# ============================================================================
# Callback: onboarding and persistence
# ============================================================================

def test_first_callback_provisions_and_persists(client, set_session, app_state, services, cookie_store):
    set_session({STATE_KEY: "s1", NONCE_KEY: "n1"})

    response = client.get("/callback?state=s1&code=c1", follow_redirects=False)

    assert response.status_code == status.HTTP_302_FOUND
    assert response.headers["location"] == "https://wallet.example.com/dashboard"

    record = app_state.token_store.get(TEST_SUB)
    assert record.access_token == "access-token-1"
    assert record.refresh_token == "refresh-token-1"
    assert record.bootstrap is not None
    assert record.bootstrap.to_wire() == services.bootstrap[TEST_SUB]

    values = cookie_store.decode(response.cookies[cookie_store.cookie_name])
    assert values == {USER_SUB_KEY: TEST_SUB}


def test_returning_user_is_not_provisioned_again(client, set_session, app_state, services):
    app_state.token_store.save(
        UserTokens(sub=TEST_SUB, access_token="old", refresh_token="old-r", bootstrap=_stored_bootstrap())
    )
    set_session({STATE_KEY: "s1", NONCE_KEY: "n1"})

    response = client.get("/callback?state=s1&code=c1", follow_redirects=False)

    assert response.status_code == status.HTTP_302_FOUND
    assert services.calls == []

    record = app_state.token_store.get(TEST_SUB)
    assert record.access_token == "access-token-1"
    assert record.bootstrap == _stored_bootstrap()


def test_provisioning_failure_returns_500_with_step(client, set_session, app_state, services):
    services.fail.add("ops_keystore")
    set_session({STATE_KEY: "s1", NONCE_KEY: "n1"})

    response = client.get("/callback?state=s1&code=c1", follow_redirects=False)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "create operational key store" in response.json()["detail"]
    assert app_state.token_store.find(TEST_SUB) is None
    assert "ops_key" not in services.calls


def test_token_store_read_failure_returns_500(client, set_session, app_state, services):
    set_session({STATE_KEY: "s1", NONCE_KEY: "n1"})

    with patch.object(app_state.token_store, "find", side_effect=StorageError("db down")):
        response = client.get("/callback?state=s1&code=c1", follow_redirects=False)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "failed to query user tokens" in response.json()["detail"]
    assert services.calls == []


def test_token_store_write_failure_returns_500(client, set_session, app_state):
    set_session({STATE_KEY: "s1", NONCE_KEY: "n1"})

    with patch.object(app_state.token_store, "create", side_effect=StorageError("disk full")):
        response = client.get("/callback?state=s1&code=c1", follow_redirects=False)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "failed to persist user tokens" in response.json()["detail"]


def test_concurrent_first_login_keeps_stored_bootstrap(client, set_session, app_state):
    winner = UserTokens(sub=TEST_SUB, access_token="winner", bootstrap=_stored_bootstrap())
    original_create = app_state.token_store.create

    def create_after_winner(record):
        app_state.token_store.save(winner)
        original_create(record)

    set_session({STATE_KEY: "s1", NONCE_KEY: "n1"})
    with patch.object(app_state.token_store, "create", side_effect=create_after_winner):
        response = client.get("/callback?state=s1&code=c1", follow_redirects=False)

    assert response.status_code == status.HTTP_302_FOUND
    record = app_state.token_store.get(TEST_SUB)
    assert record.bootstrap == _stored_bootstrap()
    assert record.access_token == "access-token-1"


def test_callback_session_save_failure_returns_500(client, set_session, cookie_store):
    set_session({STATE_KEY: "s1", NONCE_KEY: "n1"})

    with patch.object(type(cookie_store), "save", side_effect=SessionSaveError("boom")):
        response = client.get("/callback?state=s1&code=c1", follow_redirects=False)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "failed to save user sub cookie" in response.json()["detail"]


# ============================================================================
# User Info
# ============================================================================

def test_userinfo_without_login_returns_403(client):
    response = client.get("/userinfo")

    assert response.status_code == status.HTTP_403_FORBIDDEN
    assert response.json()["detail"] == "not logged in"


def test_userinfo_unreadable_cookie_returns_400(client, cookie_store):
    client.cookies.set(cookie_store.cookie_name, "garbage")

    response = client.get("/userinfo")

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert "cannot open cookies" in response.json()["detail"]


def test_userinfo_non_string_subject_returns_500(client, set_session):
    set_session({USER_SUB_KEY: 12345})

    response = client.get("/userinfo")

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json()["detail"] == "invalid user sub cookie format"


def test_userinfo_unknown_user_returns_500(client, set_session):
    set_session({USER_SUB_KEY: "nobody"})

    response = client.get("/userinfo")

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "failed to fetch user tokens from store" in response.json()["detail"]


def test_userinfo_provider_failure_returns_502(client, set_session, app_state, mock_oidc_client):
    app_state.token_store.save(UserTokens(sub=TEST_SUB, access_token="at"))
    mock_oidc_client.fetch_user_info.side_effect = IdentityProviderError("userinfo endpoint returned 401")
    set_session({USER_SUB_KEY: TEST_SUB})

    response = client.get("/userinfo")

    assert response.status_code == status.HTTP_502_BAD_GATEWAY
    assert "failed to fetch user info" in response.json()["detail"]


def test_userinfo_bad_claims_returns_500(client, set_session, app_state, mock_oidc_client):
    app_state.token_store.save(UserTokens(sub=TEST_SUB, access_token="at"))
    mock_oidc_client.fetch_user_info.side_effect = ClaimsError("userinfo response is not a JSON object")
    set_session({USER_SUB_KEY: TEST_SUB})

    response = client.get("/userinfo")

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "failed to extract claims from user info" in response.json()["detail"]


def test_userinfo_bootstrap_failure_returns_500(client, set_session, app_state, services):
    app_state.token_store.save(UserTokens(sub=TEST_SUB, access_token="at"))
    services.fail.add("bootstrap_get")
    set_session({USER_SUB_KEY: TEST_SUB})

    response = client.get("/userinfo")

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "failed to fetch bootstrap data" in response.json()["detail"]


# ============================================================================
# Logout
# ============================================================================

def test_logout_without_session_is_noop(client):
    response = client.get("/logout")

    assert response.status_code == status.HTTP_200_OK
    assert "set-cookie" not in response.headers


def test_logout_is_idempotent(client, set_session):
    set_session({USER_SUB_KEY: TEST_SUB})

    assert client.get("/logout").status_code == status.HTTP_200_OK
    assert client.get("/logout").status_code == status.HTTP_200_OK


def test_logout_unreadable_cookie_returns_400(client, cookie_store):
    client.cookies.set(cookie_store.cookie_name, "garbage")

    response = client.get("/logout")

    assert response.status_code == status.HTTP_400_BAD_REQUEST


def test_logout_save_failure_returns_500(client, set_session, cookie_store):
    set_session({USER_SUB_KEY: TEST_SUB})

    with patch.object(type(cookie_store), "save", side_effect=SessionSaveError("boom")):
        response = client.get("/logout")

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert "failed to delete user sub cookie" in response.json()["detail"]


# ============================================================================
# Full Browser Flow
# ============================================================================

def test_full_login_userinfo_logout_flow(client, services, mock_oidc_client):
    state = _login(client)

    callback = client.get(f"/callback?state={state}&code=auth-code", follow_redirects=False)
    assert callback.status_code == status.HTTP_302_FOUND
    mock_oidc_client.exchange.assert_awaited_once_with("auth-code")

    info = client.get("/userinfo")
    assert info.status_code == status.HTTP_200_OK
    body = info.json()
    assert body["sub"] == TEST_SUB
    assert body["email"] == "alice@example.com"
    assert body["bootstrap"] == services.bootstrap[TEST_SUB]
    assert set(body["bootstrap"]) == {
        "authzKeyStoreURL",
        "opsKeyStoreURL",
        "opsEDVVaultURL",
        "edvOpsKeyID",
        "edvHMACKeyID",
        "userEDVVaultURL",
        "userEDVCapability",
    }

    assert client.get("/logout").status_code == status.HTTP_200_OK
    assert client.get("/userinfo").status_code == status.HTTP_403_FORBIDDEN


def test_state_is_single_use(client, mock_oidc_client):
    state = _login(client)

    first = client.get(f"/callback?state={state}&code=c1", follow_redirects=False)
    assert first.status_code == status.HTTP_302_FOUND

    replay = client.get(f"/callback?state={state}&code=c1", follow_redirects=False)
    assert replay.status_code == status.HTTP_400_BAD_REQUEST
    assert mock_oidc_client.exchange.await_count == 1


def test_failed_callback_spends_the_state(client, mock_oidc_client):
    state = _login(client)
    mock_oidc_client.exchange.side_effect = IdentityProviderError("token endpoint returned 500")

    first = client.get(f"/callback?state={state}&code=c1", follow_redirects=False)
    assert first.status_code == status.HTTP_502_BAD_GATEWAY
    assert "set-cookie" in first.headers

    mock_oidc_client.exchange.side_effect = None
    replay = client.get(f"/callback?state={state}&code=c1", follow_redirects=False)

    assert replay.status_code == status.HTTP_400_BAD_REQUEST
    assert replay.json()["detail"] == "state not found"
    assert mock_oidc_client.exchange.await_count == 1


def test_callback_without_code_keeps_the_state(client, mock_oidc_client):
    state = _login(client)

    assert client.get(f"/callback?state={state}", follow_redirects=False).status_code == status.HTTP_400_BAD_REQUEST

    retry = client.get(f"/callback?state={state}&code=c1", follow_redirects=False)
    assert retry.status_code == status.HTTP_302_FOUND


@pytest.mark.parametrize("code", ["c1", ""])
def test_callback_with_unknown_state_never_exchanges(client, mock_oidc_client, code):
    _login(client)

    response = client.get(f"/callback?state=forged&code={code}", follow_redirects=False)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    mock_oidc_client.exchange.assert_not_called()


def test_healthcheck(client):
    response = client.get("/healthcheck")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["status"] == "success"
    assert "currentTime" in response.json()
