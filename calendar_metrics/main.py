"""
Calendar metrics service entrypoint: app construction and resource lifecycle.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from calendar_metrics.config import settings
from calendar_metrics.infrastructure.observability.logging import (
    get_logger,
    log_request,
    setup_logging,
)
from calendar_metrics.middleware.request_context import RequestContextMiddleware
from calendar_metrics.routes import health, metrics
from calendar_metrics.services.calendar.google_client import google_calendar_service
from calendar_metrics.services.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    try:
        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
    except Exception as e:
        logger.error("Failed to initialize services", error=str(e))
        raise

    logger.info("All services initialized successfully")

    yield

    logger.info("Application shutting down")

    shutdown_errors = []

    try:
        logger.info("Closing calendar API client")
        await google_calendar_service.close()
    except Exception as e:
        logger.error("Error closing calendar API client", error=str(e))
        shutdown_errors.append(f"Calendar API: {e}")

    try:
        logger.info("Closing Redis connection")
        await fast_redis.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))
        shutdown_errors.append(f"Redis: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Calendar Metrics",
    description="Meeting load metrics derived from a user's calendar",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(metrics.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    log_request(
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


# Registered last so it wraps the request logger and its id lands on those lines
app.add_middleware(RequestContextMiddleware)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
