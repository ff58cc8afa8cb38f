# calendar_metrics/models/domain/metrics_domain.py
"""
Metrics Domain Models
Immutable metric results and the blob score configuration.
"""

from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class BlobConfig:
    """
    Weights and normalization bounds for the composite blob score.

    Changing any value changes every score a deployment produces, so these
    should stay fixed once a deployment is live.
    """

    weight_load: float = 1 / 3
    weight_balance: float = 1 / 3
    weight_gap: float = 1 / 3
    workday_minutes: float = 480.0
    target_gap_minutes: float = 15.0

    def __post_init__(self):
        weights = (self.weight_load, self.weight_balance, self.weight_gap)
        if any(w < 0 for w in weights) or sum(weights) <= 0:
            raise ValueError("Blob weights must be non-negative with a positive sum")
        if self.workday_minutes <= 0 or self.target_gap_minutes <= 0:
            raise ValueError("Blob normalization bounds must be positive")

    @property
    def total_weight(self) -> float:
        return self.weight_load + self.weight_balance + self.weight_gap


@dataclass(frozen=True)
class MetricsResult:
    """Summary statistics for one user's calendar over one window."""

    total_meetings: int
    total_duration_minutes: float
    avg_duration_minutes: float
    median_gap_minutes: float | None
    max_gap_minutes: float | None
    min_gap_minutes: float | None
    meeting_frequency_per_day: float
    blob_value: int
    partial: bool = False
    warnings: tuple[str, ...] = ()

    def with_warning(self, warning: str) -> "MetricsResult":
        """Return a copy flagged partial with one more warning appended."""
        return replace(self, partial=True, warnings=self.warnings + (warning,))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["warnings"] = list(self.warnings)
        return data
