"""Significance testing for baseline vs canary metric differences.

The default tester is a closed-form approximation of a two-sample test:
the p-value is ``exp(-0.717*t - 0.416*t**2)`` rather than a proper normal
tail probability. It may misclassify small t-statistics. Swap in another
``SignificanceTester`` to use a rigorous routine; scoring does not change.
"""
import math
from typing import Protocol

from config.reliability.canary.models import MetricStatistics

SIGNIFICANCE_LEVEL = 0.05


class SignificanceTester(Protocol):
    def p_value(self, baseline: MetricStatistics, canary: MetricStatistics) -> float:
        ...

    def is_significant(self, p_value: float) -> bool:
        ...


class ApproximateSignificanceTester:
    def __init__(self, alpha: float = SIGNIFICANCE_LEVEL):
        self.alpha = alpha

    def p_value(self, baseline: MetricStatistics, canary: MetricStatistics) -> float:
        n_b = baseline.sample_count
        n_c = canary.sample_count
        # Too few samples to say anything: treat as not significant
        if n_b < 2 or n_c < 2:
            return 1.0

        pooled_std_dev = math.sqrt(
            ((n_b - 1) * baseline.std_dev ** 2 + (n_c - 1) * canary.std_dev ** 2)
            / (n_b + n_c - 2)
        )
        standard_error = pooled_std_dev * math.sqrt(1.0 / n_b + 1.0 / n_c)
        if standard_error == 0:
            return 1.0

        t_stat = abs(baseline.average - canary.average) / standard_error
        return math.exp(-0.717 * t_stat - 0.416 * t_stat * t_stat)

    def is_significant(self, p_value: float) -> bool:
        return p_value < self.alpha
