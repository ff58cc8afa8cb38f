# calendar_metrics/models/api/metrics_response.py
"""
Metrics API response models.
Used by routes for output formatting.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from calendar_metrics.services.metrics.metrics_service import MetricsOutcome


class MetricsResponse(BaseModel):
    """Calendar metrics for one window."""

    total_meetings: int = Field(..., ge=0, description="Number of meetings in the window")
    total_duration_minutes: float = Field(
        ..., ge=0, description="Sum of meeting durations; overlaps are not merged"
    )
    avg_duration_minutes: float = Field(..., ge=0, description="Mean meeting duration")
    median_gap_minutes: float | None = Field(
        None, ge=0, description="Median gap between consecutive meetings"
    )
    max_gap_minutes: float | None = Field(None, ge=0, description="Longest gap")
    min_gap_minutes: float | None = Field(None, ge=0, description="Shortest gap")
    meeting_frequency_per_day: float = Field(..., ge=0, description="Meetings per window day")
    blob_value: int = Field(..., ge=0, le=100, description="Composite load score (0-100)")
    partial: bool = Field(default=False, description="Computed from an incomplete event set")
    warnings: list[str] = Field(default_factory=list, description="Why the result is partial")
    window_start: datetime = Field(..., description="Start of the window the metrics cover")
    window_end: datetime = Field(..., description="End of the window the metrics cover")
    computed_at: datetime | None = Field(None, description="When the metrics were computed")
    cached: bool = Field(default=False, description="Served without a fresh upstream fetch")

    @classmethod
    def from_outcome(cls, outcome: MetricsOutcome) -> "MetricsResponse":
        return cls(
            **outcome.result.to_dict(),
            window_start=outcome.window.start,
            window_end=outcome.window.end,
            computed_at=outcome.computed_at,
            cached=outcome.cached,
        )


class ErrorResponse(BaseModel):
    """Error body returned for non-2xx responses."""

    detail: str = Field(..., description="Human-readable error")
