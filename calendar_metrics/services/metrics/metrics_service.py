"""
Metrics service for high-level orchestration.
Validates the requested window, consults the window cache and falls back to
event source -> deriver on a miss.
"""

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from calendar_metrics.config import settings
from calendar_metrics.infrastructure.observability.logging import (
    get_logger,
    log_metrics_request,
)
from calendar_metrics.models.domain.calendar_domain import (
    EventFetchResult,
    TimeWindow,
    ensure_utc,
)
from calendar_metrics.models.domain.metrics_domain import BlobConfig, MetricsResult
from calendar_metrics.services.calendar.google_client import (
    UpstreamThrottledError,
    UpstreamUnavailableError,
    google_calendar_service,
)
from calendar_metrics.services.metrics.deriver import derive_metrics
from calendar_metrics.services.metrics.window_cache import CacheKey, WindowCache

logger = get_logger(__name__)


class MetricsValidationError(Exception):
    """Requested window is malformed or out of bounds. Never retried."""

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class MetricsTimeoutError(Exception):
    """The request deadline elapsed before a result was available."""

    def __init__(self, message: str, timeout_seconds: float):
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class EventSource(Protocol):
    async def fetch_events(self, access_token: str, window: TimeWindow) -> EventFetchResult: ...


@dataclass
class MetricsOutcome:
    result: MetricsResult
    window: TimeWindow
    source: str
    computed_at: datetime | None = None

    @property
    def cached(self) -> bool:
        return self.source in ("hit", "stale")


class MetricsService:
    """
    Orchestrates window validation, caching and metric computation.

    The cache is passed in and owned by the caller that builds the service;
    nothing here keeps module-level state.
    """

    def __init__(
        self,
        event_source: EventSource,
        cache: WindowCache,
        blob_config: BlobConfig | None = None,
        ttl_seconds: float = 300.0,
        partial_ttl_seconds: float = 60.0,
        stale_grace_seconds: float = 1800.0,
        max_window_days: int = 7,
        future_skew_seconds: float = 300.0,
        key_granularity_seconds: int = 60,
        request_timeout_seconds: float = 20.0,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.event_source = event_source
        self.cache = cache
        self.blob_config = blob_config or BlobConfig()
        self.ttl_seconds = ttl_seconds
        self.partial_ttl_seconds = partial_ttl_seconds
        self.stale_grace_seconds = stale_grace_seconds
        self.max_window = timedelta(days=max_window_days)
        self.future_skew = timedelta(seconds=future_skew_seconds)
        self.key_granularity_seconds = key_granularity_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self._now = now

    def resolve_window(self, start: datetime | None, end: datetime | None) -> TimeWindow:
        """
        Apply defaults and validate a requested window.

        A missing end defaults to now; a missing start defaults to the maximum
        window length before the end.

        Raises:
            MetricsValidationError: If start >= end, the window is longer than
                allowed, or it starts in the future beyond the skew tolerance
        """
        now = self._now()
        end = ensure_utc(end) if end is not None else now
        start = ensure_utc(start) if start is not None else end - self.max_window

        if start >= end:
            raise MetricsValidationError("Window start must be before window end", field="start")
        if end - start > self.max_window:
            raise MetricsValidationError(
                f"Window may span at most {self.max_window.days} days", field="end"
            )
        if start > now + self.future_skew:
            raise MetricsValidationError("Window must not start in the future", field="start")

        return TimeWindow(start=start, end=end)

    def _ttl_for(self, result: MetricsResult) -> float:
        return self.partial_ttl_seconds if result.partial else self.ttl_seconds

    async def get_metrics(
        self,
        user_id: str,
        access_token: str,
        start: datetime | None = None,
        end: datetime | None = None,
        timeout: float | None = None,
    ) -> MetricsOutcome:
        """
        Get metrics for a user's window, computing them at most once per key.

        Raises:
            MetricsValidationError: Bad window
            MetricsTimeoutError: Deadline elapsed while waiting
            GoogleCalendarError: Upstream failure with no events and no usable
                cached result
        """
        requested = self.resolve_window(start, end)
        key = CacheKey.for_window(user_id, requested, self.key_granularity_seconds)
        # Compute over the normalized window so every caller sharing the key
        # gets a result for the same interval
        window = TimeWindow(start=key.start, end=key.end)
        timeout = timeout if timeout is not None else self.request_timeout_seconds
        fetch_stats = {"retries": 0}
        t0 = time.perf_counter()

        async def compute() -> MetricsResult:
            fetched = await self.event_source.fetch_events(access_token, window)
            fetch_stats["retries"] = fetched.retries
            return derive_metrics(
                fetched.events,
                window,
                self.blob_config,
                partial=fetched.partial,
                warnings=fetched.warnings,
            )

        try:
            lookup = await self.cache.get_or_compute(key, self._ttl_for, compute, timeout=timeout)
        except asyncio.TimeoutError as e:
            logger.warning("Metrics request timed out", user_id=user_id, timeout_seconds=timeout)
            raise MetricsTimeoutError(
                f"Metrics not available within {timeout:g}s", timeout_seconds=timeout
            ) from e
        except (UpstreamThrottledError, UpstreamUnavailableError) as e:
            stale = self.cache.get_stale(key, self.stale_grace_seconds)
            if stale is None:
                raise
            result = stale.value.with_warning(
                f"Calendar upstream {e.kind}; serving cached metrics computed at "
                f"{stale.computed_at.isoformat() if stale.computed_at else 'an earlier time'}"
            )
            self._log(user_id, "stale", result, t0, fetch_stats["retries"])
            return MetricsOutcome(result, window, "stale", stale.computed_at)

        self._log(user_id, lookup.source, lookup.value, t0, fetch_stats["retries"])
        return MetricsOutcome(lookup.value, window, lookup.source, lookup.computed_at)

    def _log(self, user_id: str, source: str, result: MetricsResult, t0: float, retries: int):
        log_metrics_request(
            user_id=user_id,
            cache=source,
            partial=result.partial,
            latency_ms=round((time.perf_counter() - t0) * 1000, 2),
            retries=retries,
            total_meetings=result.total_meetings,
        )


def build_metrics_service(event_source: EventSource = google_calendar_service) -> MetricsService:
    """Build the service from settings."""
    cache_config = settings.get_cache_config()
    return MetricsService(
        event_source=event_source,
        cache=WindowCache(max_entries=cache_config["max_entries"]),
        blob_config=settings.get_blob_config(),
        ttl_seconds=cache_config["ttl_seconds"],
        partial_ttl_seconds=cache_config["partial_ttl_seconds"],
        stale_grace_seconds=cache_config["stale_grace_seconds"],
        max_window_days=settings.METRICS_MAX_WINDOW_DAYS,
        future_skew_seconds=settings.METRICS_FUTURE_SKEW_SECONDS,
        key_granularity_seconds=settings.METRICS_KEY_GRANULARITY_SECONDS,
        request_timeout_seconds=settings.METRICS_REQUEST_TIMEOUT_SECONDS,
    )


# Singleton instance for application use
metrics_service = build_metrics_service()


def get_metrics_service() -> MetricsService:
    """FastAPI dependency returning the application metrics service."""
    return metrics_service
