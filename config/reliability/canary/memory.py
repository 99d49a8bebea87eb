"""Process-local deployment gateway and metric source.

Used for dry-run rollouts and in tests. Nothing here survives a restart.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Mapping, Optional

import numpy as np

from config.reliability.canary.models import (
    DeploymentInfo,
    DeploymentRequest,
    DeploymentResult,
    MetricStatistics,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Sample:
    timestamp: datetime
    value: float
    dimensions: Dict[str, str]


def summarize(values) -> Optional[MetricStatistics]:
    """Summary statistics of raw samples, ``None`` for an empty sample."""
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return None
    p90, p95, p99 = np.percentile(arr, [90, 95, 99])
    return MetricStatistics(
        average=float(np.mean(arr)),
        std_dev=float(np.std(arr, ddof=1)) if arr.size > 1 else 0.0,
        min=float(np.min(arr)),
        max=float(np.max(arr)),
        p90=float(p90),
        p95=float(p95),
        p99=float(p99),
        sample_count=int(arr.size),
    )


class InMemoryMetricSource:
    def __init__(self):
        self._samples: Dict[str, List[_Sample]] = {}
        self._fixed: Dict[tuple, MetricStatistics] = {}

    def record(
        self,
        metric_name: str,
        value: float,
        dimensions: Mapping[str, str],
        timestamp: Optional[datetime] = None,
    ) -> None:
        self._samples.setdefault(metric_name, []).append(
            _Sample(timestamp or utcnow(), float(value), dict(dimensions))
        )

    def set_statistics(self, metric_name: str, deployment_id: str, stats: MetricStatistics) -> None:
        """Pin precomputed statistics for a deployment, bypassing recorded samples."""
        self._fixed[(metric_name, deployment_id)] = stats

    async def get_statistics(
        self,
        metric_name: str,
        start: datetime,
        end: datetime,
        dimensions: Mapping[str, str],
    ) -> Optional[MetricStatistics]:
        fixed = self._fixed.get((metric_name, dimensions.get("deployment_id")))
        if fixed is not None:
            return fixed
        values = [
            s.value
            for s in self._samples.get(metric_name, [])
            if start <= s.timestamp <= end
            and all(s.dimensions.get(k) == v for k, v in dimensions.items())
        ]
        return summarize(values)


class InMemoryDeploymentGateway:
    """Tracks deployments and their traffic share in a dict."""

    def __init__(self):
        self.deployments: Dict[str, DeploymentInfo] = {}
        self.traffic: Dict[str, int] = {}
        self.rolled_back: List[str] = []

    def register(self, deployment_id: str, model_id: str, environment: str, traffic: int = 100) -> DeploymentInfo:
        info = DeploymentInfo(deployment_id=deployment_id, model_id=model_id, environment=environment)
        self.deployments[deployment_id] = info
        self.traffic[deployment_id] = traffic
        return info

    def _find(self, model_id: str, environment: str) -> Optional[str]:
        for deployment_id, info in self.deployments.items():
            if info.model_id == model_id and info.environment == environment:
                return deployment_id
        return None

    async def deploy(self, request: DeploymentRequest) -> DeploymentResult:
        # Re-deploying a model in the same environment adjusts its traffic share
        deployment_id = self._find(request.model_id, request.environment) or str(uuid.uuid4())
        self.register(deployment_id, request.model_id, request.environment, request.traffic_percentage)
        logger.info(
            "Deployment updated",
            extra={
                "deployment_id": deployment_id,
                "model_id": request.model_id,
                "traffic_percentage": request.traffic_percentage,
            }
        )
        return DeploymentResult(
            success=True,
            deployment_id=deployment_id,
            metadata={"traffic_percentage": request.traffic_percentage},
        )

    async def rollback(self, deployment_id: str) -> DeploymentResult:
        if deployment_id not in self.deployments:
            return DeploymentResult(
                success=False,
                deployment_id=deployment_id,
                error_message=f"Deployment not found: {deployment_id}",
            )
        self.traffic[deployment_id] = 0
        self.rolled_back.append(deployment_id)
        return DeploymentResult(success=True, deployment_id=deployment_id)

    async def get(self, deployment_id: str) -> Optional[DeploymentInfo]:
        return self.deployments.get(deployment_id)
