"""
CalmText - Health Check Endpoints

System health monitoring endpoints for load balancers, monitoring,
and operational visibility.
"""

from fastapi import APIRouter, Depends, Request

from calmtext import __version__
from calmtext.config import Settings
from calmtext.core.orchestrator import ConversationOrchestrator
from calmtext.core.types import utcnow

router = APIRouter(prefix="/api/system", tags=["system"])


def _timestamp() -> str:
    return utcnow().isoformat()


def _get_orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator


def _get_settings(request: Request) -> Settings:
    return request.app.state.settings


@router.get("/health")
async def health_check(
    orchestrator: ConversationOrchestrator = Depends(_get_orchestrator),
    settings: Settings = Depends(_get_settings),
) -> dict:
    """
    Overall system health check.

    Returns:
        - status: "healthy" or "degraded"
        - checks: Individual component statuses
        - timestamp: Current server time

    A degraded cache or durable tier does not stop message handling;
    sessions fall back to the in-process tier.
    """
    checks = {}

    cache_ok = await orchestrator.cache.ping() if orchestrator.cache is not None else False
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unreachable",
        "backend": settings.cache_backend,
    }

    durable_ok = await orchestrator.memory.store.ping()
    checks["durable_store"] = {
        "status": "healthy" if durable_ok else "unreachable",
        "backend": settings.durable_backend,
    }

    checks["generator"] = {
        "status": "healthy",
        "backend": settings.generator_backend,
    }

    checks["transport"] = {
        "status": "healthy",
        "backend": settings.transport_backend,
    }

    all_healthy = all(c.get("status") == "healthy" for c in checks.values())

    return {
        "status": "healthy" if all_healthy else "degraded",
        "timestamp": _timestamp(),
        "version": __version__,
        "environment": settings.app_env,
        "checks": checks,
    }


@router.get("/ready")
async def readiness_check(request: Request) -> dict:
    """
    Readiness probe for container orchestration.

    Ready once the orchestrator has been created by the lifespan handler.
    """
    return {
        "ready": getattr(request.app.state, "orchestrator", None) is not None,
        "timestamp": _timestamp(),
    }


@router.get("/live")
async def liveness_check() -> dict:
    """Liveness probe. Returns 200 if the service is alive."""
    return {
        "alive": True,
        "timestamp": _timestamp(),
    }


@router.get("/config")
async def config_info(
    settings: Settings = Depends(_get_settings),
) -> dict:
    """
    Non-sensitive configuration information.

    Excludes API keys, auth tokens, connection URLs and phone numbers.
    """
    return {
        "environment": settings.app_env,
        "debug": settings.app_debug,
        "log_level": settings.app_log_level,
        "backends": {
            "cache": settings.cache_backend,
            "durable": settings.durable_backend,
            "generator": settings.generator_backend,
            "transport": settings.transport_backend,
        },
        "sessions": {
            "ttl_seconds": settings.session_ttl_seconds,
            "idle_timeout_seconds": settings.session_idle_timeout_seconds,
            "context_capacity": settings.context_capacity,
            "context_window": settings.context_window,
        },
        "timestamp": _timestamp(),
    }
