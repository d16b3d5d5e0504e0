"""
FastAPI application factory for the kubecsr API server.

Uses lifespan handler for startup/shutdown.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from kubecsr import __version__
from kubecsr.auth.tokens import init_api_token
from kubecsr.config import settings
from kubecsr.errors import IssuanceError
from kubecsr.logging_config import configure_logging, get_logger
from kubecsr.services.issuance import init_orchestrator

from .health import router as health_router
from .routers.issue import router as issue_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    logger.info("Starting kubecsr API server", version=__version__)

    init_api_token(settings.api_token)
    init_orchestrator()

    yield

    logger.info("Shutting down kubecsr API server")


def _validation_message(exc: RequestValidationError) -> str:
    """Flatten pydantic errors into one line: ``field.path: message; ...``."""
    parts = []
    for error in exc.errors():
        loc = [str(p) for p in error.get("loc", ()) if p != "body"]
        field = ".".join(loc)
        parts.append(f"{field}: {error.get('msg')}" if field else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request"


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="kubecsr API",
        description="Issues short-lived Kubernetes client certificates and kubeconfigs",
        version=__version__,
        lifespan=lifespan,
    )

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next: Any) -> Any:
        """Add request ID to context for logging correlation."""
        request_id = request.headers.get("X-Request-ID")
        if request_id:
            structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)

        if request_id:
            response.headers["X-Request-ID"] = request_id
            structlog.contextvars.unbind_contextvars("request_id")

        return response

    # Exception handlers. Every error body is {"error": <message>}.
    @app.exception_handler(IssuanceError)
    async def issuance_exception_handler(request: Request, exc: IssuanceError) -> JSONResponse:
        """Caller-facing issuance failures; already logged by the orchestrator."""
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Malformed request bodies are client errors (400, not FastAPI's 422)."""
        message = _validation_message(exc)
        logger.info("Rejected invalid request", path=str(request.url.path), error=message)
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error("Unhandled exception", exc_info=exc, path=str(request.url.path))
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error"},
        )

    # Health endpoints (no prefix, no auth)
    app.include_router(health_router)

    app.include_router(issue_router, prefix=settings.api_prefix)

    return app


# Application instance
app = create_application()
