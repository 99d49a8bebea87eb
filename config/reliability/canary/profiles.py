"""Per-metric improvement direction and scoring weight.

Weights are relative importances; they are normalised when the per-metric
scores are aggregated, so they do not need to sum to 1.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Mapping


class Direction(str, Enum):
    LOWER_IS_BETTER = "lower_is_better"
    HIGHER_IS_BETTER = "higher_is_better"


@dataclass(frozen=True)
class MetricProfile:
    direction: Direction
    weight: float

    def is_improvement(self, percent_change: float) -> bool:
        if self.direction is Direction.LOWER_IS_BETTER:
            return percent_change < 0
        return percent_change > 0

    def within_limit(self, value: float, limit: float) -> bool:
        """A limit is a ceiling for lower-is-better metrics and a floor otherwise."""
        if self.direction is Direction.LOWER_IS_BETTER:
            return value <= limit
        return value >= limit


DEFAULT_PROFILE = MetricProfile(Direction.HIGHER_IS_BETTER, 0.05)

DEFAULT_METRIC_PROFILES: Mapping[str, MetricProfile] = {
    "latency_ms": MetricProfile(Direction.LOWER_IS_BETTER, 0.15),
    "error_rate": MetricProfile(Direction.LOWER_IS_BETTER, 0.3),
    "user_feedback": MetricProfile(Direction.HIGHER_IS_BETTER, 0.4),
    "token_count": MetricProfile(Direction.LOWER_IS_BETTER, 0.05),
    "relevance_score": MetricProfile(Direction.HIGHER_IS_BETTER, 0.10),
}


def profile_for(metric_name: str, profiles: Mapping[str, MetricProfile] = DEFAULT_METRIC_PROFILES) -> MetricProfile:
    return profiles.get(metric_name, DEFAULT_PROFILE)
