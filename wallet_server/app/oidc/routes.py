"""
OIDC routes for login, callback, user info and logout.

This module implements the OAuth 2.0 / OIDC authorization code flow against
the configured provider. A user's first successful callback provisions their
wallet; later callbacks only refresh the stored tokens.
"""

import logging
import secrets
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from ..dependencies import AppState, get_app_state
from ..errors import (
    ClaimsError,
    IdentityProviderError,
    ProvisioningError,
    RecordExistsError,
    SessionError,
    StorageError,
    UpstreamError,
)
from ..models import User, UserTokens
from .session import NONCE_KEY, STATE_KEY, USER_SUB_KEY, Session

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

oidc_router = APIRouter(tags=["oidc"])


def _open_session(app_state: AppState, request: Request, status_code: int, detail: str) -> Session:
    try:
        return app_state.cookie_store.open(request)
    except SessionError as e:
        logger.warning(f"{detail}: {e}")
        raise HTTPException(status_code=status_code, detail=f"{detail}: {e}")


def _save_session(session: Session, response, detail: str) -> None:
    try:
        session.save(response)
    except SessionError as e:
        logger.error(f"{detail}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"{detail}: {e}")


# =============================================================================
# Login Endpoint
# =============================================================================

@oidc_router.get("/login")
async def login(request: Request, app_state: AppState = Depends(get_app_state)):
    """
    Initiate OIDC login flow by redirecting to the provider.

    This endpoint:
    1. Sends already logged-in users straight to the wallet dashboard
    2. Generates fresh state and nonce values
    3. Stores them in the session cookie for callback validation
    4. Redirects the browser to the provider's authorization endpoint

    Returns:
        RedirectResponse to the provider (302) or the dashboard (301)
    """
    session = _open_session(
        app_state, request, status.HTTP_500_INTERNAL_SERVER_ERROR, "failed to read user session cookie",
    )

    if session.get(USER_SUB_KEY):
        return RedirectResponse(
            url=app_state.settings.WALLET_DASHBOARD_URL,
            status_code=status.HTTP_301_MOVED_PERMANENTLY,
        )

    state = secrets.token_urlsafe(32)
    nonce = secrets.token_urlsafe(32)
    session.set(STATE_KEY, state)
    session.set(NONCE_KEY, nonce)

    try:
        authorization_url = await app_state.oidc_client.build_auth_url(state, nonce)
    except IdentityProviderError as e:
        logger.error(f"Unable to build authorization URL: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"failed to reach identity provider: {e}",
        )

    response = RedirectResponse(url=authorization_url, status_code=status.HTTP_302_FOUND)
    _save_session(session, response, "failed to save session cookie")

    logger.debug("Redirecting to identity provider for login")
    return response


# =============================================================================
# Callback Endpoint
# =============================================================================

@oidc_router.get("/callback")
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from the provider"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
    app_state: AppState = Depends(get_app_state),
):
    """
    Handle the OAuth callback from the provider.

    This endpoint:
    1. Validates the state parameter against the session
    2. Exchanges the authorization code for tokens
    3. Verifies the ID token and parses the user
    4. Provisions the wallet on first login
    5. Persists the user's tokens
    6. Writes the user's subject into the session

    The stored state and nonce are removed as soon as a code is presented,
    so failed attempts cannot be replayed.

    Returns:
        RedirectResponse to the wallet dashboard
    """
    session = _open_session(
        app_state, request, status.HTTP_500_INTERNAL_SERVER_ERROR, "failed to read user session cookie",
    )

    expected_state = session.get(STATE_KEY)
    if not expected_state:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="state not found")

    if not state or not secrets.compare_digest(str(state), str(expected_state)):
        logger.warning("Callback state does not match the stored state")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid state parameter")

    if not code:
        detail = "missing code parameter"
        if error:
            detail = f"{detail}: {error_description or error}"
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

    nonce = session.get(NONCE_KEY)

    session.delete(STATE_KEY)
    session.delete(NONCE_KEY)

    try:
        user, new_user = await _complete_login(app_state, code, nonce)
    except HTTPException as e:
        response = JSONResponse(status_code=e.status_code, content={"detail": e.detail})
        _save_session(session, response, "failed to save session cookie")
        return response

    session.set(USER_SUB_KEY, user.sub)

    response = RedirectResponse(
        url=app_state.settings.WALLET_DASHBOARD_URL,
        status_code=status.HTTP_302_FOUND,
    )
    _save_session(session, response, "failed to save user sub cookie")

    logger.info("User logged in", extra={"sub": user.sub, "new_user": new_user})
    return response


async def _complete_login(app_state: AppState, code: str, nonce: Optional[str]) -> Tuple[User, bool]:
    """
    Redeem the code, resolve the user and store their tokens.

    Returns:
        The logged-in user and whether this was their first login

    Raises:
        HTTPException: With the status and detail of the failing step
    """
    oidc_client = app_state.oidc_client

    try:
        token = await oidc_client.exchange(code)
    except IdentityProviderError as e:
        logger.error(f"Code exchange failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"failed to exchange code for token: {e}",
        )

    try:
        claims = await oidc_client.verify_id_token(token.id_token, nonce)
    except IdentityProviderError as e:
        logger.error(f"ID token verification failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"failed to verify id_token: {e}",
        )

    try:
        user = User.from_claims(claims)
    except ClaimsError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"failed to parse id_token claims: {e}",
        )

    token_store = app_state.token_store

    try:
        existing = token_store.find(user.sub)
    except StorageError as e:
        logger.error(f"Failed to query user tokens: {e}", extra={"sub": user.sub})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"failed to query user tokens: {e}",
        )

    try:
        if existing is None:
            await _onboard_user(app_state, user, token)
        else:
            token_store.save(UserTokens.from_oauth(user.sub, token, bootstrap=existing.bootstrap))
    except ProvisioningError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"failed to onboard user: {e}",
        )
    except StorageError as e:
        logger.error(f"Failed to persist user tokens: {e}", extra={"sub": user.sub})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"failed to persist user tokens: {e}",
        )

    return user, existing is None


async def _onboard_user(app_state: AppState, user: User, token) -> None:
    """
    Provision a first-time user and store their tokens.

    If a concurrent login for the same subject stored its record first, that
    record's bootstrap data wins and this login only refreshes the tokens.
    """
    bootstrap = await app_state.provisioner.provision(user.sub, token)
    record = UserTokens.from_oauth(user.sub, token, bootstrap=bootstrap)

    try:
        app_state.token_store.create(record)
    except RecordExistsError:
        winner = app_state.token_store.get(user.sub)
        logger.warning(
            "Concurrent first login detected, keeping the stored wallet",
            extra={"sub": user.sub, "orphaned_vault": bootstrap.user_edv_vault_url},
        )
        app_state.token_store.save(UserTokens.from_oauth(user.sub, token, bootstrap=winner.bootstrap))


# =============================================================================
# User Info Endpoint
# =============================================================================

@oidc_router.get("/userinfo")
async def userinfo(request: Request, app_state: AppState = Depends(get_app_state)):
    """
    Return the logged-in user's profile and wallet bootstrap data.

    Returns:
        JSON object with the provider's user-info claims, "sub" and "bootstrap"
    """
    session = _open_session(app_state, request, status.HTTP_400_BAD_REQUEST, "cannot open cookies")

    sub = session.get(USER_SUB_KEY)
    if sub is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="not logged in")

    if not isinstance(sub, str):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="invalid user sub cookie format",
        )

    try:
        tokens = app_state.token_store.get(sub)
    except StorageError as e:
        logger.error(f"Failed to fetch user tokens: {e}", extra={"sub": sub})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"failed to fetch user tokens from store: {e}",
        )

    try:
        claims: Dict[str, Any] = await app_state.oidc_client.fetch_user_info(tokens.access_token)
    except IdentityProviderError as e:
        logger.warning(f"User info request failed: {e}", extra={"sub": sub})
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"failed to fetch user info: {e}",
        )
    except ClaimsError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"failed to extract claims from user info: {e}",
        )

    try:
        bootstrap = await app_state.hub_auth.get_bootstrap_data(sub, tokens.access_token)
    except UpstreamError as e:
        logger.error(f"Bootstrap data request failed: {e}", extra={"sub": sub})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"failed to fetch bootstrap data: {e}",
        )

    data = dict(claims)
    data["sub"] = sub
    data["bootstrap"] = bootstrap.to_wire()
    return JSONResponse(content=data)


# =============================================================================
# Logout Endpoint
# =============================================================================

@oidc_router.get("/logout")
async def logout(request: Request, app_state: AppState = Depends(get_app_state)):
    """
    Remove the user's subject from the session.

    Calling it without a logged-in session is a no-op.
    """
    session = _open_session(app_state, request, status.HTTP_400_BAD_REQUEST, "cannot open cookies")

    response = JSONResponse(content={"status": "logged out"})

    sub = session.get(USER_SUB_KEY)
    if sub is None:
        return response

    session.delete(USER_SUB_KEY)
    _save_session(session, response, "failed to delete user sub cookie")

    logger.info("User logged out", extra={"sub": sub})
    return response
