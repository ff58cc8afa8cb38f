# calendar_metrics/models/domain/calendar_domain.py
"""
Calendar Domain Models
Domain models for the upstream event feed and the query window.
Used by the calendar client and the metrics deriver.
"""

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

SECONDS_PER_DAY = 86400


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


@dataclass(frozen=True)
class TimeWindow:
    """Bounded interval over which events are queried and metrics computed."""

    start: datetime
    end: datetime

    def __post_init__(self):
        object.__setattr__(self, "start", ensure_utc(self.start))
        object.__setattr__(self, "end", ensure_utc(self.end))

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def days(self) -> float:
        """Window length in fractional days."""
        return self.duration.total_seconds() / SECONDS_PER_DAY

    @property
    def day_buckets(self) -> int:
        """Number of calendar-day buckets the window spans (at least one)."""
        return max(1, math.ceil(self.days))

    def truncated(self, granularity_seconds: int) -> "TimeWindow":
        """Round both bounds down to the given granularity."""
        return TimeWindow(
            start=_truncate(self.start, granularity_seconds),
            end=_truncate(self.end, granularity_seconds),
        )

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start

    def to_dict(self) -> dict:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


def _truncate(value: datetime, granularity_seconds: int) -> datetime:
    if granularity_seconds <= 1:
        return value.replace(microsecond=0)
    epoch = int(value.timestamp())
    return datetime.fromtimestamp(epoch - epoch % granularity_seconds, tz=UTC)


@dataclass(frozen=True)
class CalendarEvent:
    """A single timed occurrence, reduced to what metric derivation needs."""

    id: str
    start: datetime
    end: datetime
    all_day: bool = False

    @classmethod
    def from_api(cls, data: dict) -> "CalendarEvent":
        """
        Build an event from a Google Calendar v3 event resource.

        Raises:
            ValueError: If the resource carries no usable start/end times
        """
        start = _parse_datetime(data.get("start") or {})
        end = _parse_datetime(data.get("end") or {})
        if start is None or end is None:
            raise ValueError(f"Event {data.get('id')!r} has no parseable start/end")

        return cls(
            id=str(data.get("id") or ""),
            start=start,
            end=end,
            all_day="date" in (data.get("start") or {}),
        )

    def duration_minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60

    def is_malformed(self) -> bool:
        return self.start > self.end


def _parse_datetime(dt_data: dict) -> datetime | None:
    """Parse datetime from Google Calendar format."""
    if not dt_data:
        return None

    # All-day events (date only)
    if "date" in dt_data:
        try:
            return datetime.strptime(dt_data["date"], "%Y-%m-%d").replace(tzinfo=UTC)
        except (TypeError, ValueError):
            return None

    # Timed events (dateTime)
    if "dateTime" in dt_data:
        try:
            parsed = datetime.fromisoformat(str(dt_data["dateTime"]).replace("Z", "+00:00"))
        except ValueError:
            return None
        return ensure_utc(parsed)

    return None


@dataclass
class EventPage:
    """One page of the upstream event feed after trimming to the window."""

    events: list[CalendarEvent]
    next_page_token: str | None = None
    malformed: int = 0
    reached_window_end: bool = False
    truncated: bool = False
    retries: int = 0
    warnings: list[str] = field(default_factory=list)


@dataclass
class EventFetchResult:
    """Everything the event source gathered for a window."""

    events: list[CalendarEvent] = field(default_factory=list)
    partial: bool = False
    warnings: list[str] = field(default_factory=list)
    pages_fetched: int = 0
    retries: int = 0
