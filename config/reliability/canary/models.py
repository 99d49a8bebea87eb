"""Data model shared by the canary comparator and orchestrator.

All models are frozen: a rollout request or a comparison result is produced
once and handed back to the caller untouched.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DeploymentRequest(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str = Field(..., min_length=1, description="Model version to deploy")
    environment: str = Field(..., min_length=1, description="Target environment")
    traffic_percentage: int = Field(
        0, ge=0, le=100, description="Share of traffic routed to the deployment"
    )
    requested_by: str = Field("", description="Who asked for the rollout")
    reason: str = Field("", description="Why the rollout was requested")
    metadata: Dict[str, str] = Field(default_factory=dict)

    def with_traffic(self, percentage: int) -> "DeploymentRequest":
        return self.model_copy(update={"traffic_percentage": percentage})


class CanaryConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    initial_percentage: int = Field(10, ge=1, le=100)
    evaluation_period: timedelta = Field(timedelta(hours=1))
    promotion_threshold: float = Field(0.95, ge=0.0, le=1.0)
    baseline_deployment_id: str = Field(..., min_length=1)
    monitored_metric_names: Optional[List[str]] = Field(
        None, description="Restrict the comparison to these metrics"
    )
    metric_thresholds: Optional[Dict[str, float]] = Field(
        None,
        description="Hard limits on the canary average per metric; a breach forces a rollback",
    )

    @field_validator("evaluation_period")
    @classmethod
    def _non_negative_period(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("evaluation_period must not be negative")
        return value


class MetricStatistics(BaseModel):
    """Summary of one metric over one dimension set and time window."""

    model_config = ConfigDict(frozen=True)

    average: float
    std_dev: float = 0.0
    min: float = 0.0
    max: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    sample_count: int = Field(0, ge=0)


class MetricComparison(BaseModel):
    model_config = ConfigDict(frozen=True)

    metric_name: str
    baseline_average: float
    canary_average: float
    percent_change: float
    is_significant: bool
    p_value: float
    is_improvement: bool
    weight: float


class TimeWindow(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime


class CanaryPerformanceResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    canary_deployment_id: str
    baseline_deployment_id: str
    window: TimeWindow
    overall_score: float = Field(0.0, ge=0.0, le=1.0)
    comparisons: List[MetricComparison] = Field(default_factory=list)
    error_message: Optional[str] = None


class DeploymentResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    deployment_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    canary_deployment_id: Optional[str] = None
    error_message: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DeploymentInfo(BaseModel):
    """What the deployment gateway knows about a live deployment."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    deployment_id: str
    model_id: str
    environment: str
