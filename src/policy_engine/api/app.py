"""FastAPI application factory for the policy engine HTTP surface."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from policy_engine.api import routes
from policy_engine.exceptions import (
    AccountNotFound,
    ConfigurationError,
    PolicyError,
    RateNotConfigured,
    TransactionNotFound,
)
from policy_engine.logging import get_logger

logger = get_logger(__name__)

_NOT_FOUND = (AccountNotFound, TransactionNotFound, RateNotConfigured)


def status_for(exc: PolicyError) -> int:
    """HTTP status for a policy error: 404 unknown, 422 configuration, 409 otherwise."""
    if isinstance(exc, _NOT_FOUND):
        return 404
    if isinstance(exc, ConfigurationError):
        return 422
    return 409


async def _policy_error_handler(request: Request, exc: PolicyError) -> JSONResponse:
    status_code = status_for(exc)
    logger.info(
        "api_policy_error",
        path=request.url.path,
        code=exc.code,
        status_code=status_code,
    )
    return JSONResponse(
        content={"error": exc.code, "message": str(exc)},
        status_code=status_code,
    )


def create_app(lifespan: Any = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to build and tear down the engine.

    Returns:
        Configured FastAPI application. Routes expect ``app.state.facade``.
    """
    app = FastAPI(
        title="Monetary Policy Engine",
        lifespan=lifespan,
    )

    # Wired by main.py lifespan (or directly by tests)
    app.state.facade = None

    app.add_exception_handler(PolicyError, _policy_error_handler)
    app.include_router(routes.router, prefix="/api")

    return app
