"""
Google Calendar API client for reading a user's events over a time window.
Follows continuation tokens lazily, trims events to the requested window and
retries throttled / unavailable pages with bounded exponential backoff.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote

import httpx

from calendar_metrics.config import settings
from calendar_metrics.infrastructure.observability.logging import get_logger
from calendar_metrics.models.domain.calendar_domain import (
    CalendarEvent,
    EventFetchResult,
    EventPage,
    TimeWindow,
    ensure_utc,
)

logger = get_logger(__name__)

# Google Calendar API configuration
CALENDAR_API_BASE_URL = settings.CALENDAR_API_BASE_URL
CALENDAR_PRIMARY = "primary"  # User's primary calendar

REQUEST_TIMEOUT = settings.CALENDAR_REQUEST_TIMEOUT
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}
EVENT_FIELDS = "items(id,status,start,end),nextPageToken"


class GoogleCalendarError(Exception):
    """Custom exception for Google Calendar API errors."""

    kind = "bad_request"
    retryable = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}
        self.retry_after = retry_after
        self.attempts = 1


class CalendarAuthError(GoogleCalendarError):
    """Credential rejected upstream. Never retried here."""

    kind = "auth"


class UpstreamThrottledError(GoogleCalendarError):
    kind = "throttled"
    retryable = True


class UpstreamUnavailableError(GoogleCalendarError):
    kind = "unavailable"
    retryable = True


@dataclass(frozen=True)
class RetryPolicy:
    """Jitter-free exponential backoff: base, doubling per retry, capped."""

    max_retries: int = 5
    base_delay: float = 1.0
    max_delay: float = 32.0

    def delay_for(self, retry_index: int, retry_after: float | None = None) -> float:
        """
        Seconds to wait before retry number ``retry_index`` (0-based).

        An upstream retry-after hint wins over the computed backoff but is
        still capped at ``max_delay``.
        """
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_delay)
        return min(self.base_delay * (2**retry_index), self.max_delay)


def parse_retry_after(value: str | None) -> float | None:
    """Parse a Retry-After header given as delta-seconds or an HTTP-date."""
    if not value:
        return None
    value = value.strip()

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    return max(0.0, (ensure_utc(when) - datetime.now(UTC)).total_seconds())


class GoogleCalendarService:
    """
    Event source backed by the Google Calendar ``events.list`` endpoint.

    ``iter_event_pages`` is the lazy page sequence; ``fetch_events`` drains it
    into an ``EventFetchResult``, degrading to a partial result when retries
    run out after some events were already gathered.
    """

    def __init__(
        self,
        base_url: str = CALENDAR_API_BASE_URL,
        calendar_id: str = CALENDAR_PRIMARY,
        page_size: int = 250,
        retry_policy: RetryPolicy | None = None,
        include_all_day: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.calendar_id = calendar_id
        self.page_size = page_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.include_all_day = include_all_day
        self._sleep = sleep
        self._client = client or self._create_client()

    def _create_client(self) -> httpx.AsyncClient:
        """Create async HTTP client for Calendar API."""
        timeout = httpx.Timeout(REQUEST_TIMEOUT)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(timeout=timeout, limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _get_auth_headers(self, access_token: str) -> dict:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    async def _request_with_retry(self, method: str, url: str, **kwargs) -> tuple[dict, int]:
        """
        Execute an HTTP request, retrying throttled and unavailable responses.

        Returns:
            (parsed JSON body, number of retries spent)

        Raises:
            GoogleCalendarError: Non-retryable failure, or the last retryable
                failure once the retry budget is exhausted (``attempts`` set)
        """
        policy = self.retry_policy

        for retry_index in range(policy.max_retries + 1):
            try:
                response = await self._client.request(method, url, **kwargs)
            except httpx.RequestError as e:
                error = UpstreamUnavailableError(f"Calendar API transport error: {e}")
            else:
                if response.is_success:
                    return self._parse_body(response), retry_index
                error = self._error_from_response(response)

            error.attempts = retry_index + 1
            if not error.retryable or retry_index >= policy.max_retries:
                raise error

            backoff = policy.delay_for(retry_index, error.retry_after)
            logger.warning(
                "Calendar API retrying request",
                attempt=retry_index + 1,
                kind=error.kind,
                status_code=error.status_code,
                backoff_seconds=backoff,
            )
            await self._sleep(backoff)

        raise RuntimeError("Calendar API retry loop exhausted")

    def _parse_body(self, response: httpx.Response) -> dict:
        try:
            return response.json() if response.text else {}
        except ValueError as e:
            logger.error("Failed to parse Calendar API response", error=str(e))
            raise GoogleCalendarError(f"Invalid response format: {e}") from e

    def _error_from_response(self, response: httpx.Response) -> GoogleCalendarError:
        """Classify a failed Calendar API response into the error taxonomy."""
        try:
            error_data = response.json() if response.text else {}
        except ValueError:
            error_data = {}
        error_info = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        if not isinstance(error_info, dict):
            error_info = {}

        reasons = {
            item.get("reason") for item in error_info.get("errors", []) if isinstance(item, dict)
        }
        error_message = error_info.get("message", f"HTTP {response.status_code}")
        status_code = response.status_code
        retry_after = parse_retry_after(response.headers.get("retry-after"))

        if status_code == 429 or (status_code == 403 and reasons & RATE_LIMIT_REASONS):
            error_cls = UpstreamThrottledError
        elif status_code in (401, 403):
            error_cls = CalendarAuthError
        elif status_code >= 500:
            error_cls = UpstreamUnavailableError
        else:
            error_cls = GoogleCalendarError

        logger.debug(
            "Calendar API request failed",
            status_code=status_code,
            kind=error_cls.kind,
            error_message=error_message,
        )

        return error_cls(
            self._map_calendar_error(error_cls.kind, error_message),
            error_code=str(error_info.get("code", status_code)),
            status_code=status_code,
            response_data=error_data if isinstance(error_data, dict) else {},
            retry_after=retry_after,
        )

    def _map_calendar_error(self, kind: str, error_message: str) -> str:
        """Map error kinds to user-friendly messages."""
        error_mappings = {
            "auth": "Calendar authorization rejected. Please reconnect.",
            "throttled": "Calendar API rate limit reached.",
            "unavailable": "Google Calendar service temporarily unavailable.",
        }
        return error_mappings.get(kind, f"Calendar error: {error_message}")

    async def iter_event_pages(
        self, access_token: str, window: TimeWindow
    ) -> AsyncIterator[EventPage]:
        """
        Lazily yield pages of events overlapping ``window``.

        Stops when the upstream returns no continuation token, when an event
        starting at or after the window end is seen, or when a continuation
        token repeats.
        """
        url = f"{self.base_url}/calendars/{quote(self.calendar_id, safe='')}/events"
        headers = self._get_auth_headers(access_token)
        params = {
            "timeMin": window.start.isoformat(),
            "timeMax": window.end.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": self.page_size,
            "fields": EVENT_FIELDS,
        }
        seen_tokens: set[str] = set()
        page_number = 0

        while True:
            page_number += 1
            data, retries = await self._request_with_retry(
                "GET", url, headers=headers, params=params
            )
            page = self._build_page(data, window)
            page.retries = retries

            next_token = page.next_page_token
            if next_token and next_token in seen_tokens:
                page.next_page_token = None
                page.truncated = True
                page.warnings.append(
                    f"Upstream repeated a pagination token after page {page_number}; "
                    "remaining pages were not fetched"
                )
                logger.warning("Calendar API pagination loop detected", page=page_number)

            yield page

            if page.reached_window_end or not page.next_page_token:
                return

            seen_tokens.add(page.next_page_token)
            params["pageToken"] = page.next_page_token

    def _build_page(self, data: dict, window: TimeWindow) -> EventPage:
        page = EventPage(events=[], next_page_token=data.get("nextPageToken") or None)

        for item in data.get("items", []):
            if item.get("status") == "cancelled":
                continue

            try:
                event = CalendarEvent.from_api(item)
            except ValueError as e:
                page.malformed += 1
                logger.warning("Dropping unparseable calendar event", error=str(e))
                continue

            if event.all_day and not self.include_all_day:
                continue

            if event.start >= window.end:
                page.reached_window_end = True
                continue

            if not window.overlaps(min(event.start, event.end), max(event.start, event.end)):
                continue

            page.events.append(event)

        return page

    async def fetch_events(self, access_token: str, window: TimeWindow) -> EventFetchResult:
        """
        Fetch all events for ``window``.

        Raises:
            GoogleCalendarError: If no events at all could be obtained
        """
        logger.info(
            "Fetching calendar events",
            calendar_id=self.calendar_id,
            time_min=window.start.isoformat(),
            time_max=window.end.isoformat(),
        )

        result = await collect_events(self.iter_event_pages(access_token, window))

        logger.info(
            "Calendar events fetched",
            event_count=len(result.events),
            pages=result.pages_fetched,
            retries=result.retries,
            partial=result.partial,
        )
        return result

    def health_check(self) -> dict[str, Any]:
        """Report client configuration for readiness probes."""
        return {
            "healthy": not self._client.is_closed,
            "service": "google_calendar",
            "api_base_url": self.base_url,
            "calendar_id": self.calendar_id,
            "request_timeout": REQUEST_TIMEOUT,
            "max_retries": self.retry_policy.max_retries,
        }


async def collect_events(pages: AsyncIterator[EventPage]) -> EventFetchResult:
    """
    Drain a page sequence into a single result.

    An upstream failure after at least one event was gathered (retry
    exhaustion or a non-retryable error such as a rejected page token) turns
    into a partial result carrying a warning; with nothing gathered it is
    re-raised. Auth failures always surface.
    """
    result = EventFetchResult()
    malformed = 0

    try:
        async for page in pages:
            result.pages_fetched += 1
            result.retries += page.retries
            result.events.extend(page.events)
            result.warnings.extend(page.warnings)
            malformed += page.malformed
            if page.truncated:
                result.partial = True
    except CalendarAuthError:
        raise
    except GoogleCalendarError as e:
        result.retries += max(e.attempts - 1, 0)
        if not result.events:
            raise

        failed_page = result.pages_fetched + 1
        if e.retryable:
            cause = "rate limiting" if e.kind == "throttled" else "upstream unavailability"
            detail = (
                f"retries exhausted due to {cause} ({e.attempts} attempts on page {failed_page})"
            )
        else:
            status = f"HTTP {e.status_code}" if e.status_code else "an error"
            detail = f"upstream returned {status} on page {failed_page}"

        result.partial = True
        result.warnings.append(f"Stopped after {result.pages_fetched} page(s): {detail}")
        logger.warning(
            "Calendar fetch truncated",
            kind=e.kind,
            status_code=e.status_code,
            pages_fetched=result.pages_fetched,
            events=len(result.events),
        )

    if malformed:
        result.partial = True
        result.warnings.append(f"Dropped {malformed} event(s) with unparseable start/end times")

    return result


google_calendar_service = GoogleCalendarService(
    calendar_id=settings.CALENDAR_ID,
    page_size=settings.CALENDAR_PAGE_SIZE,
    retry_policy=RetryPolicy(**settings.get_retry_config()),
    include_all_day=settings.CALENDAR_INCLUDE_ALL_DAY,
)
