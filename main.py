"""
Audio Feed API - Main Application Entry Point.

This module initializes and configures the FastAPI application for the Audio
Feed API, the backend of an audio social network: users publish short audio
posts, browse recent and trending feeds, like, play and comment on posts, and
keep a profile.

Key Responsibilities:
- Configure and launch the FastAPI application.
- Set up middleware for correlation, error handling, performance and request
  validation.
- Create the database tables, seed the channel catalog and wire the service
  registry on startup; close live feed subscriptions on shutdown.
- Mount the API routers (health, REST, channel catalog, WebSocket) and, for
  the local storage backend, the `/media` static files.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from core.config import get_settings
from core.database import create_db_and_tables
from api.dependencies import get_registry, verify_api_key
from api.endpoints import router, catalog_router, websocket_router
from api.health_router import health_router, monitoring_router
from core.logging_config import setup_logging, get_logger
from core.middleware import (
    CorrelationMiddleware,
    ErrorHandlingMiddleware,
    PerformanceMiddleware,
    RequestValidationMiddleware,
    SecurityHeadersMiddleware,
    request_validation_exception_handler,
)
from core.performance import init_metrics_collector

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logging()
    logger = get_logger("api.startup")

    registry = get_registry()
    await create_db_and_tables(registry.session_factory.kw.get("bind"))
    logger.info("Database initialized successfully")

    seeded = await registry.channels.seed_default_channels()
    logger.info(f"Channel catalog ready ({seeded} channels added)")

    metrics_collector = init_metrics_collector()
    metrics_collector.start()
    logger.info("Performance monitoring initialized")

    logger.info(
        f"Service startup completed with {registry.storage.source_name} storage"
    )
    yield

    # Cleanup on shutdown
    logger.info("Shutting down Audio Feed API")
    registry.bus.close_all()
    metrics_collector.cleanup()
    logger.info("Cleanup completed")


app = FastAPI(
    title=settings.app_name,
    description="Content feed and publishing backend for an audio social network",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Starlette runs the middleware added last first
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestValidationMiddleware)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(PerformanceMiddleware)
app.add_middleware(CorrelationMiddleware)

# Health routers FIRST (no authentication required for monitoring)
app.include_router(health_router)
app.include_router(monitoring_router)

# Public channel catalog
app.include_router(catalog_router)

# WebSocket router checks its own api_key query parameter
app.include_router(websocket_router)

# Main API router (with API key verification)
app.include_router(router, dependencies=[Depends(verify_api_key)])

if settings.storage_backend.lower() == "local":
    app.mount(
        "/media",
        StaticFiles(directory=settings.storage_root, check_dir=False),
        name="media",
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8002,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
