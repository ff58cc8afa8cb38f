"""
Metrics derivation: ordered events -> MetricsResult.

Pure and deterministic. No I/O, no shared state.

Blob score (0-100) = weighted mean of three sub-scores, each in [0, 1]:

- load:     total meeting minutes / (window days * workday minutes), capped at 1
- balance:  1 - pstdev(per-day counts) / mean(per-day counts), clamped to [0, 1];
            1 when there are no meetings
- gap:      mean gap / target gap, clamped to [0, 1]; 1 with fewer than 2 events

Per-day buckets are ceil(window days) day-long slots counted from the window
start; an event falls in the slot its start lies in, clamped into range.
The weighted mean is scaled to 100 and rounded half-up.
"""

import math
import statistics
from collections.abc import Iterable, Sequence

from calendar_metrics.models.domain.calendar_domain import (
    SECONDS_PER_DAY,
    CalendarEvent,
    TimeWindow,
)
from calendar_metrics.models.domain.metrics_domain import BlobConfig, MetricsResult

DEFAULT_BLOB_CONFIG = BlobConfig()


def sort_events(events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    """Order by start, then end, then id."""
    return sorted(events, key=lambda e: (e.start, e.end, e.id))


def compute_gaps(ordered: Sequence[CalendarEvent]) -> list[float]:
    """Minutes between each event's end and the next event's start; overlaps count as 0."""
    gaps = []
    for current, following in zip(ordered, ordered[1:]):
        gap = (following.start - current.end).total_seconds() / 60
        gaps.append(max(gap, 0.0))
    return gaps


def per_day_counts(ordered: Sequence[CalendarEvent], window: TimeWindow) -> list[int]:
    buckets = [0] * window.day_buckets
    for event in ordered:
        offset = (event.start - window.start).total_seconds() // SECONDS_PER_DAY
        index = min(max(int(offset), 0), len(buckets) - 1)
        buckets[index] += 1
    return buckets


def load_score(total_duration_minutes: float, window: TimeWindow, config: BlobConfig) -> float:
    capacity = window.days * config.workday_minutes
    return min(total_duration_minutes / capacity, 1.0)


def balance_score(counts: Sequence[int]) -> float:
    mean = statistics.fmean(counts)
    if mean == 0:
        return 1.0
    return _clamp(1.0 - statistics.pstdev(counts) / mean)


def gap_score(gaps: Sequence[float], config: BlobConfig) -> float:
    if not gaps:
        return 1.0
    return _clamp(statistics.fmean(gaps) / config.target_gap_minutes)


def blob_value(load: float, balance: float, gap: float, config: BlobConfig) -> int:
    weighted = (
        config.weight_load * load + config.weight_balance * balance + config.weight_gap * gap
    ) / config.total_weight
    # Half-up rounding; round() would use banker's rounding
    return min(max(math.floor(100 * weighted + 0.5), 0), 100)


def derive_metrics(
    events: Iterable[CalendarEvent],
    window: TimeWindow,
    config: BlobConfig = DEFAULT_BLOB_CONFIG,
    partial: bool = False,
    warnings: Sequence[str] = (),
) -> MetricsResult:
    """
    Derive summary statistics for ``events`` over ``window``.

    Args:
        events: Events in any order; ones with start > end are dropped
        window: The window the metrics cover (drives per-day figures)
        config: Blob score weights and normalization bounds
        partial: Whether the event source signalled an incomplete event set
        warnings: Warnings already raised by the event source

    Raises:
        ValueError: If the window is empty or inverted
    """
    if window.end <= window.start:
        raise ValueError("Window end must be after window start")

    warnings = list(warnings)
    valid = []
    malformed = []
    for event in events:
        (malformed if event.is_malformed() else valid).append(event)

    if malformed:
        partial = True
        ids = ", ".join(sorted(e.id or "<no id>" for e in malformed))
        warnings.append(
            f"Dropped {len(malformed)} malformed event(s) ending before they start: {ids}"
        )

    ordered = sort_events(valid)
    total_meetings = len(ordered)
    total_duration = float(sum(e.duration_minutes() for e in ordered))
    avg_duration = total_duration / total_meetings if total_meetings else 0.0

    gaps = compute_gaps(ordered)
    if gaps:
        median_gap = float(statistics.median(gaps))
        max_gap = max(gaps)
        min_gap = min(gaps)
    else:
        median_gap = max_gap = min_gap = None

    load = load_score(total_duration, window, config)
    balance = balance_score(per_day_counts(ordered, window))
    gap = gap_score(gaps, config)

    return MetricsResult(
        total_meetings=total_meetings,
        total_duration_minutes=total_duration,
        avg_duration_minutes=avg_duration,
        median_gap_minutes=median_gap,
        max_gap_minutes=max_gap,
        min_gap_minutes=min_gap,
        meeting_frequency_per_day=total_meetings / window.days,
        blob_value=blob_value(load, balance, gap, config),
        partial=partial,
        warnings=tuple(warnings),
    )


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(max(value, low), high)
