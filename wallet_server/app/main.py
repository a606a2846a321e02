"""
FastAPI Wallet Server Application Factory
=========================================

This is the main entry point for the wallet server that logs browser users in
through an OIDC provider and provisions their wallet key stores and vaults.

Architecture:
    Browser → Wallet Server (this service) → OIDC Provider
                                           → Authz KMS / Ops KMS
                                           → Key EDV / User EDV
                                           → Authorization Server

Routers:
    - /login, /callback, /userinfo, /logout : OIDC login and session
    - /healthcheck                          : Health check endpoint

Running the Service:
    Development:
        uvicorn wallet_server.app.main:app --reload --host 0.0.0.0 --port 8090

    Production:
        uvicorn wallet_server.app.main:app --host 0.0.0.0 --port 8090 --workers 4

    With custom log level:
        LOG_LEVEL=DEBUG uvicorn wallet_server.app.main:app --reload
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from wallet_server.app.config import Settings, get_settings, validate_configuration
from wallet_server.app.dependencies import AppState
from wallet_server.app.errors import IdentityProviderError
from wallet_server.app.models import HealthCheckResponse
from wallet_server.app.oidc.routes import oidc_router
from wallet_server.app.store.provider import create_store_provider


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Configure logging and check configuration
        - Open the pooled HTTP client and the token store
        - Build the OIDC client, cookie store and provisioner
        - Load the provider's discovery document

    Shutdown tasks:
        - Close the HTTP client and storage provider
    """
    settings: Settings = app.state.settings

    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("wallet_server.main")

    status = validate_configuration(settings)
    for warning in status["warnings"]:
        logger.warning(f"Configuration warning: {warning}")
    if not status["valid"]:
        for error in status["errors"]:
            logger.error(f"Configuration error: {error}")
        raise RuntimeError("invalid wallet server configuration")

    http_client = httpx.AsyncClient(
        timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS),
        limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
    )
    store_provider = create_store_provider(settings.DATABASE_URL, settings.DATABASE_PREFIX)

    app_state = AppState(settings=settings, http_client=http_client, store_provider=store_provider)
    app.state.app_state = app_state

    # provider may come up after us; the first login retries discovery
    try:
        await app_state.oidc_client.discover()
    except IdentityProviderError as e:
        logger.warning(f"OIDC provider discovery failed at startup: {e}")

    logger.info(
        "Wallet server started successfully",
        extra={
            "oidc_provider": settings.OIDC_PROVIDER_URL,
            "storage": "sql" if settings.DATABASE_URL else "memory",
            "log_level": settings.LOG_LEVEL,
        }
    )

    yield

    logger.info("Shutting down wallet server")
    await http_client.aclose()
    store_provider.close()
    app.state.app_state = None
    logger.info("Wallet server shutdown complete")


# Create FastAPI application
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management
        - CORS middleware
        - Route handlers
        - Exception handlers

    Args:
        settings: Settings to use instead of loading them from the environment

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="Wallet Server",
        description="OIDC login and wallet provisioning for the decentralized identity wallet",
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.settings = settings

    if settings.allowed_origins_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.allowed_origins_list,
            allow_credentials=True,
            allow_methods=["GET", "OPTIONS"],
            allow_headers=["*"],
        )

    app.include_router(oidc_router)

    @app.get("/healthcheck", tags=["System"], response_model=HealthCheckResponse)
    async def health_check() -> HealthCheckResponse:
        """
        Health check endpoint.

        Returns:
            Service status and current server time
        """
        return HealthCheckResponse()

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("wallet_server.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL == "DEBUG" else None
            }
        )

    return app


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    settings = get_settings()

    uvicorn.run(
        "wallet_server.app.main:app",
        host=settings.WALLET_SERVER_HOST,
        port=settings.WALLET_SERVER_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )
