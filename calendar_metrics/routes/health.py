# calendar_metrics/routes/health.py
"""
Health check endpoints.
"""

import time

from fastapi import APIRouter

from calendar_metrics.services.calendar.google_client import google_calendar_service
from calendar_metrics.services.metrics.metrics_service import metrics_service
from calendar_metrics.services.redis_client import fast_redis

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "calendar-metrics"}


@router.get("/readyz")
async def readyz():
    """
    Readiness check: credential store reachability plus engine state.
    """
    checks = {}
    overall_ok = True

    # 1) Redis health check
    t0 = time.time()
    try:
        redis_ok = await fast_redis.ping()
        checks["redis"] = {
            "ok": bool(redis_ok),
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = overall_ok and bool(redis_ok)
    except Exception as e:
        checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
        overall_ok = False

    # 2) Calendar client configuration
    calendar_health = google_calendar_service.health_check()
    checks["calendar_api"] = {"ok": calendar_health["healthy"], **calendar_health}
    overall_ok = overall_ok and calendar_health["healthy"]

    # 3) Window cache statistics (informational)
    checks["metrics_cache"] = {"ok": True, **metrics_service.cache.stats()}

    return {"overall_ok": overall_ok, "checks": checks}
