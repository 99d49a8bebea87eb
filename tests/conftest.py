"""
Shared fixtures for the rollout test suite.

Provides scripted deployment gateways and metric sources so the canary core
can be exercised without a deployment controller or Prometheus.
"""
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# Ensure repository root is importable for tests
root = Path(__file__).resolve().parents[1]
if str(root) not in sys.path:
    sys.path.insert(0, str(root))

from config.reliability.canary.memory import InMemoryMetricSource  # noqa: E402
from config.reliability.canary.models import (  # noqa: E402
    CanaryPerformanceResult,
    DeploymentInfo,
    DeploymentRequest,
    DeploymentResult,
    MetricComparison,
    MetricStatistics,
    TimeWindow,
)

FIXED_NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def stats(average: float, std_dev: float = 0.01, n: int = 100) -> MetricStatistics:
    return MetricStatistics(
        average=average,
        std_dev=std_dev,
        min=average,
        max=average,
        p90=average,
        p95=average,
        p99=average,
        sample_count=n,
    )


class ScriptedGateway:
    """Deployment gateway that records calls and replays scripted results."""

    def __init__(self, deploy_results: Optional[List] = None, rollback_result=None):
        self.deploy_results = list(deploy_results or [])
        self.rollback_result = rollback_result
        self.deploy_calls: List[DeploymentRequest] = []
        self.rollback_calls: List[str] = []
        self.deployments: Dict[str, DeploymentInfo] = {}

    def add(self, deployment_id: str, model_id: str, environment: str = "prod") -> None:
        self.deployments[deployment_id] = DeploymentInfo(
            deployment_id=deployment_id, model_id=model_id, environment=environment
        )

    async def deploy(self, request: DeploymentRequest) -> DeploymentResult:
        self.deploy_calls.append(request)
        outcome = self.deploy_results.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def rollback(self, deployment_id: str) -> DeploymentResult:
        self.rollback_calls.append(deployment_id)
        if isinstance(self.rollback_result, Exception):
            raise self.rollback_result
        return self.rollback_result or DeploymentResult(success=True, deployment_id=deployment_id)

    async def get(self, deployment_id: str) -> Optional[DeploymentInfo]:
        return self.deployments.get(deployment_id)


class StubComparator:
    """Comparator returning a fixed score and recording its calls."""

    def __init__(self, score: float, error_message: Optional[str] = None, with_data: bool = True):
        self.score = score
        self.error_message = error_message
        self.with_data = with_data
        self.calls = []

    async def compare(self, canary_deployment_id, baseline_deployment_id, evaluation_period, metric_names=None):
        self.calls.append((canary_deployment_id, baseline_deployment_id, evaluation_period, metric_names))
        comparisons = []
        if self.with_data:
            comparisons.append(MetricComparison(
                metric_name="error_rate",
                baseline_average=0.05,
                canary_average=0.05,
                percent_change=0.0,
                is_significant=False,
                p_value=1.0,
                is_improvement=False,
                weight=0.3,
            ))
        return CanaryPerformanceResult(
            canary_deployment_id=canary_deployment_id,
            baseline_deployment_id=baseline_deployment_id,
            window=TimeWindow(start=FIXED_NOW - evaluation_period, end=FIXED_NOW),
            overall_score=self.score,
            comparisons=comparisons,
            error_message=self.error_message,
        )


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def deployment_request():
    return DeploymentRequest(
        model_id="ranker-v2",
        environment="prod",
        traffic_percentage=0,
        requested_by="release-bot",
        reason="nightly retrain",
        metadata={"ticket": "REL-42"},
    )


@pytest.fixture
def gateway():
    gw = ScriptedGateway()
    gw.add("canary-1", "ranker-v2")
    gw.add("baseline-1", "ranker-v1")
    return gw


@pytest.fixture
def metric_source():
    return InMemoryMetricSource()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()
