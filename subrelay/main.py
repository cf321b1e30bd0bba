"""
FastAPI Subscription Relay Application Factory
==============================================

This is the main entry point for the relay service that sits between
subscription-aggregator clients and arbitrary subscription sources.

Architecture:
    Aggregator Client → Relay (this service) → Subscription Source

Routers:
    - /api/proxy?url=... : Relay to the subscription source with protocol tally
    - /health            : Health check endpoint

Environment Variables (all optional):
    - UPSTREAM_TIMEOUT_SECONDS: Deadline for one upstream fetch (default: 10)
    - DEFAULT_USER_AGENT: User-Agent sent when the caller sent none
    - DEFAULT_ACCEPT_ENCODING: Accept-Encoding sent when the caller sent none (default: gzip)
    - PROTOCOL_HEADER_NAME: Tally header name (default: X-Node-Protocols)
    - ALLOWED_ORIGINS: Comma-separated CORS origins
    - LOG_LEVEL: Logging level (default: INFO)

Running the Service:
    Development:
        uvicorn subrelay.main:app --reload --host 0.0.0.0 --port 8080

    Production:
        uvicorn subrelay.main:app --host 0.0.0.0 --port 8080 --workers 4

    With custom log level:
        LOG_LEVEL=DEBUG subrelay
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import httpx
import uvicorn

from . import __version__
from .config import Settings, get_settings
from .models import HealthResponse
from .proxy.routes import proxy_router


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


# Application state singletons
class AppState:
    """
    Global application state container.

    Holds the shared upstream HTTP client. Nothing request-scoped lives here.
    """
    def __init__(self):
        self.upstream_client: Optional[httpx.AsyncClient] = None


def create_upstream_client(settings: Settings) -> httpx.AsyncClient:
    """Client used for every upstream fetch; redirects are followed."""
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(settings.UPSTREAM_TIMEOUT_SECONDS),
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup tasks:
        - Load configuration from environment
        - Create the shared upstream HTTP client

    Shutdown tasks:
        - Close the upstream HTTP client and its connections
    """
    settings = get_settings()
    app_state = app.state.app_state

    setup_logging(settings.LOG_LEVEL)
    logger = logging.getLogger("subrelay.main")

    app_state.upstream_client = create_upstream_client(settings)
    logger.info(
        "Subscription relay started",
        extra={
            "service": "subrelay",
            "version": __version__,
            "upstream_timeout": settings.UPSTREAM_TIMEOUT_SECONDS,
            "log_level": settings.LOG_LEVEL,
        }
    )

    try:
        yield
    finally:
        logger.info("Shutting down subscription relay")
        await app_state.upstream_client.aclose()
        app_state.upstream_client = None
        logger.info("Subscription relay shutdown complete")


# Create FastAPI application
def create_app() -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application instance with:
        - Lifespan management
        - CORS middleware (when ALLOWED_ORIGINS is set)
        - Route handlers
        - Exception handlers

    Returns:
        FastAPI: Configured application instance
    """
    settings = get_settings()

    app = FastAPI(
        title="Subscription Relay",
        description="Relays subscription sources and tallies their proxy-node protocols",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.app_state = AppState()

    # Configure CORS
    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials="*" not in origins,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=[settings.PROTOCOL_HEADER_NAME]
        )

    # Proxy router: relays to the subscription source named by ?url=
    app.include_router(
        proxy_router,
        prefix="/api",
        tags=["Subscription Relay"]
    )

    # Health check endpoint
    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check() -> Dict[str, str]:
        """
        Health check endpoint.

        Returns:
            dict: Service health information
        """
        return {
            "status": "ok",
            "service": "subrelay",
            "version": __version__
        }

    # Root endpoint
    @app.get("/", tags=["System"])
    async def root() -> Dict[str, Any]:
        """
        Root endpoint with service information.

        Returns:
            dict: Service metadata and available endpoints
        """
        return {
            "service": "subrelay",
            "version": __version__,
            "description": "Relays subscription sources and tallies their proxy-node protocols",
            "endpoints": {
                "health": "/health",
                "docs": "/docs",
                "proxy": "/api/proxy?url=<subscription url>"
            }
        }

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response.
        """
        logger = logging.getLogger("subrelay.main")
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


def main() -> None:
    """Console entry point: serve the relay with uvicorn."""
    settings = get_settings()

    uvicorn.run(
        "subrelay.main:app",
        host=settings.RELAY_HOST,
        port=settings.RELAY_PORT,
        log_level=settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
