"""
Health and Monitoring Router.

Public, unauthenticated endpoints for health checks, monitoring and
operational metrics of the Audio Feed API.

Endpoints Provided:
- `/healthcheck`: Lightweight liveness check.
- `/monitoring/ping`: Connectivity check.
- `/monitoring/detailed`: Status of each component (database, object store,
  live feed bus, metrics). A failing database marks the service `degraded`.
- `/monitoring/metrics`: Request timings, operation timings, counters and
  system resource usage from the `MetricsCollector`.
"""

from fastapi import APIRouter, Depends
from datetime import datetime, timezone
from typing import Dict, Any

from core.logging_config import get_logger
from core.performance import get_metrics_collector
from core.database import get_database_info
from .dependencies import ServiceRegistry, get_registry

logger = get_logger(__name__)

SERVICE_NAME = "Audio Feed API"
VERSION = "1.0.0"

health_router = APIRouter(tags=["Health & Monitoring"])

monitoring_router = APIRouter(prefix="/monitoring", tags=["Health & Monitoring"])


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@health_router.get("/healthcheck")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint (no authentication required)

    Returns:
        Dict with status, timestamp, and version info
    """
    logger.debug("Health check requested")

    return {
        "status": "healthy",
        "timestamp": _timestamp(),
        "version": VERSION,
        "service": SERVICE_NAME,
    }


@monitoring_router.get("/ping")
async def ping() -> Dict[str, str]:
    """Simple ping endpoint for connectivity testing"""
    logger.debug("Ping requested")
    return {"message": "pong", "timestamp": _timestamp(), "version": VERSION}


@monitoring_router.get("/detailed")
async def detailed_health_check(
    registry: ServiceRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """Detailed health check with component status"""
    logger.info("Detailed health check requested")

    health_status = {
        "status": "healthy",
        "timestamp": _timestamp(),
        "version": VERSION,
        "service": SERVICE_NAME,
        "components": {},
    }

    db_info = await get_database_info(
        session_factory=registry.session_factory,
        bind=registry.session_factory.kw.get("bind"),
    )
    if db_info["connection_healthy"]:
        health_status["components"]["database"] = {"status": "healthy", "info": db_info}
    else:
        health_status["components"]["database"] = {"status": "unhealthy", "info": db_info}
        health_status["status"] = "degraded"

    health_status["components"]["storage"] = {
        "status": "configured",
        "backend": registry.storage.source_name,
    }
    health_status["components"]["feed_bus"] = {
        "status": "healthy",
        "subscribers": len(registry.bus),
    }

    try:
        stats = get_metrics_collector().get_stats(time_window_minutes=1)
        health_status["components"]["metrics"] = {
            "status": "healthy",
            "stats": {
                "requests_last_minute": stats["requests"]["total"],
                "avg_response_time_ms": stats["requests"]["avg_duration_ms"],
                "system_cpu_percent": stats["system"].get("cpu", {}).get("percent", 0),
                "system_memory_percent": stats["system"]
                .get("memory", {})
                .get("percent", 0),
            },
        }
    except Exception as e:
        logger.warning(f"Metrics health check failed (non-critical): {e}")
        health_status["components"]["metrics"] = {
            "status": "unavailable",
            "error": str(e),
        }

    return health_status


@monitoring_router.get("/metrics")
async def get_metrics(time_window: int = 5) -> Dict[str, Any]:
    """Get performance metrics (no authentication required for monitoring)"""
    logger.info(f"Metrics requested with time_window={time_window}")
    stats = get_metrics_collector().get_stats(time_window_minutes=time_window)
    return {"metrics": stats, "timestamp": _timestamp()}
