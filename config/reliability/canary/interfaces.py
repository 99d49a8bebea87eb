"""Collaborators the rollout core depends on.

Retries and call timeouts are the responsibility of the implementations.
"""
from datetime import datetime
from typing import Mapping, Optional, Protocol

from config.reliability.canary.models import (
    DeploymentInfo,
    DeploymentRequest,
    DeploymentResult,
    MetricStatistics,
)


class DeploymentGateway(Protocol):
    async def deploy(self, request: DeploymentRequest) -> DeploymentResult:
        ...

    async def rollback(self, deployment_id: str) -> DeploymentResult:
        ...

    async def get(self, deployment_id: str) -> Optional[DeploymentInfo]:
        """Return ``None`` when the deployment id is unknown."""
        ...


class MetricSource(Protocol):
    async def get_statistics(
        self,
        metric_name: str,
        start: datetime,
        end: datetime,
        dimensions: Mapping[str, str],
    ) -> Optional[MetricStatistics]:
        """Return ``None`` when there is no data for the metric."""
        ...
