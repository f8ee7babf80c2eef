"""
CalmText - Backend Entrypoint

FastAPI application factory and server configuration.
Run with: uvicorn main:app --reload  (from the backend/ directory)
"""

from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from calmtext import __version__
from calmtext.config import Settings, get_settings
from calmtext.api import health, routes
from calmtext.api.schemas import ErrorResponse, HealthResponse
from calmtext.core.exceptions import CalmTextError
from calmtext.core.logging import setup_structured_logging
from calmtext.core.orchestrator import ConversationOrchestrator, create_orchestrator
from calmtext.core.types import utcnow

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup:
        - Create the orchestrator and its collaborators (unless injected)
        - Validate crisis resources, connect the durable store
        - Start the session cleanup task

    Shutdown:
        - Stop session cleanup and clear the in-process tier
        - Close generator, cache and durable store connections
    """
    settings: Settings = app.state.settings

    # === Startup ===
    logger.info("CalmText starting in %s mode", settings.app_env)

    orchestrator: Optional[ConversationOrchestrator] = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = create_orchestrator(settings)
        app.state.orchestrator = orchestrator

    await orchestrator.startup()

    logger.info("Orchestrator initialized and ready")
    logger.info(
        "   Backends: cache=%s, durable=%s, generator=%s, transport=%s",
        settings.cache_backend,
        settings.durable_backend,
        settings.generator_backend,
        settings.transport_backend,
    )

    yield

    # === Shutdown ===
    logger.info("CalmText shutting down")
    await orchestrator.shutdown()
    logger.info("Shutdown complete")


async def calmtext_error_handler(request: Request, exc: CalmTextError) -> JSONResponse:
    """Map CalmTextError subclasses to a JSON error body."""
    logger.warning("Request failed: %s %s -> %s", request.method, request.url.path, exc.code)
    body = ErrorResponse(
        error=type(exc).__name__,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


def create_app(
    settings: Optional[Settings] = None,
    orchestrator: Optional[ConversationOrchestrator] = None,
) -> FastAPI:
    """
    Application factory.

    Args:
        settings: Settings to use (default: environment)
        orchestrator: Pre-built orchestrator, mainly for tests
    """
    settings = settings or get_settings()

    setup_structured_logging(
        level=settings.app_log_level,
        json_format=settings.log_json or settings.is_production,
    )

    app = FastAPI(
        title="CalmText",
        description="SMS support chatbot with keyword risk assessment and crisis routing",
        version=__version__,
        docs_url="/docs" if settings.app_debug else None,
        redoc_url="/redoc" if settings.app_debug else None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Errors ---
    app.add_exception_handler(CalmTextError, calmtext_error_handler)

    # --- Routes ---
    app.include_router(routes.webhook_router)
    app.include_router(routes.router, prefix="/api")
    app.include_router(health.router)

    @app.get("/")
    async def root():
        """Service info."""
        return {
            "service": "CalmText",
            "status": "operational",
            "version": __version__,
        }

    @app.get("/health", response_model=HealthResponse)
    async def health_root():
        """Root health check."""
        return HealthResponse(status="ok", timestamp=utcnow().isoformat(), service="calmtext")

    return app


# Create app instance
app = create_app()
