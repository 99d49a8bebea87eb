import math

import pytest

from config.reliability.canary.profiles import DEFAULT_METRIC_PROFILES, DEFAULT_PROFILE, Direction, profile_for
from config.reliability.canary.significance import ApproximateSignificanceTester
from conftest import stats


def test_closed_form_p_value():
    tester = ApproximateSignificanceTester()
    baseline = stats(10.0, std_dev=2.0, n=10)
    canary = stats(11.0, std_dev=2.0, n=10)
    t = 1.0 / (2.0 * math.sqrt(0.2))
    assert tester.p_value(baseline, canary) == pytest.approx(math.exp(-0.717 * t - 0.416 * t * t))


def test_unequal_variances_are_pooled():
    tester = ApproximateSignificanceTester()
    baseline = stats(10.0, std_dev=1.0, n=5)
    canary = stats(12.0, std_dev=3.0, n=9)
    pooled = math.sqrt((4 * 1.0 + 8 * 9.0) / 12)
    t = 2.0 / (pooled * math.sqrt(1 / 5 + 1 / 9))
    assert tester.p_value(baseline, canary) == pytest.approx(math.exp(-0.717 * t - 0.416 * t * t))


def test_identical_means_are_not_significant():
    tester = ApproximateSignificanceTester()
    p = tester.p_value(stats(5.0, std_dev=1.0), stats(5.0, std_dev=1.0))
    assert p == 1.0
    assert tester.is_significant(p) is False


@pytest.mark.parametrize("n_baseline,n_canary", [(1, 100), (100, 1), (0, 0)])
def test_small_samples_force_p_of_one(n_baseline, n_canary):
    tester = ApproximateSignificanceTester()
    assert tester.p_value(stats(0.05, n=n_baseline), stats(0.02, n=n_canary)) == 1.0


def test_zero_standard_error_forces_p_of_one():
    tester = ApproximateSignificanceTester()
    assert tester.p_value(stats(0.05, std_dev=0.0), stats(0.02, std_dev=0.0)) == 1.0


def test_alpha_boundary_is_exclusive():
    tester = ApproximateSignificanceTester()
    assert tester.is_significant(0.049) is True
    assert tester.is_significant(0.05) is False


def test_default_profiles():
    assert DEFAULT_METRIC_PROFILES["user_feedback"].weight == 0.4
    assert DEFAULT_METRIC_PROFILES["error_rate"].weight == 0.3
    assert DEFAULT_METRIC_PROFILES["latency_ms"].direction is Direction.LOWER_IS_BETTER
    assert DEFAULT_METRIC_PROFILES["relevance_score"].direction is Direction.HIGHER_IS_BETTER
    assert profile_for("unheard_of") is DEFAULT_PROFILE
    assert DEFAULT_PROFILE.is_improvement(1.0) is True
    assert DEFAULT_PROFILE.is_improvement(-1.0) is False
