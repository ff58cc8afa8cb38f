"""
Metrics API Routes
HTTP endpoint serving calendar metrics for the authenticated user.
"""

import math
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status

from calendar_metrics.infrastructure.observability.logging import get_logger
from calendar_metrics.models.api.metrics_response import ErrorResponse, MetricsResponse
from calendar_metrics.services.calendar.google_client import (
    CalendarAuthError,
    GoogleCalendarError,
    UpstreamThrottledError,
)
from calendar_metrics.services.credential_service import resolve_credential, session_user_id
from calendar_metrics.services.metrics.metrics_service import (
    MetricsService,
    MetricsTimeoutError,
    MetricsValidationError,
    get_metrics_service,
)

logger = get_logger(__name__)

router = APIRouter(tags=["metrics"])


@router.get(
    "/metrics",
    response_model=MetricsResponse,
    responses={
        400: {"model": ErrorResponse},
        401: {"model": ErrorResponse},
        403: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
)
async def get_calendar_metrics(
    start: datetime | None = Query(default=None, description="Window start (ISO 8601)"),
    end: datetime | None = Query(default=None, description="Window end (ISO 8601)"),
    user_id: str = Depends(session_user_id),
    access_token: str = Depends(resolve_credential),
    service: MetricsService = Depends(get_metrics_service),
):
    """Get meeting metrics for a window (default: the 7 days ending now)."""
    try:
        outcome = await service.get_metrics(user_id, access_token, start=start, end=end)
        return MetricsResponse.from_outcome(outcome)

    except MetricsValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except MetricsTimeoutError as e:
        raise HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(e))
    except CalendarAuthError as e:
        logger.warning("Calendar credential rejected", user_id=user_id, status_code=e.status_code)
        code = status.HTTP_401_UNAUTHORIZED if e.status_code == 401 else status.HTTP_403_FORBIDDEN
        raise HTTPException(status_code=code, detail=str(e))
    except UpstreamThrottledError as e:
        headers = (
            {"Retry-After": str(math.ceil(e.retry_after))} if e.retry_after is not None else None
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e), headers=headers
        )
    except GoogleCalendarError as e:
        logger.error("Calendar upstream failure", user_id=user_id, kind=e.kind, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
