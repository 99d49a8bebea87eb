"""Environment-driven configuration for the rollout service."""
import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from config.reliability.canary.models import CanaryConfig


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    val = os.environ.get(name)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _parse_percent(val: Optional[str], default: int = 10) -> int:
    """Traffic percentage from a fraction below 1 or a 1-100 value ("1" is 1%)."""
    if not val:
        return default
    try:
        f = float(val)
    except ValueError:
        return default
    pct = f * 100.0 if f < 1.0 else f
    return max(1, min(100, int(round(pct))))


def _env_list(name: str) -> Optional[List[str]]:
    val = os.environ.get(name, "")
    items = [item.strip() for item in val.split(",") if item.strip()]
    return items or None


def _env_thresholds(name: str) -> Optional[Dict[str, float]]:
    """``metric=value`` pairs, comma-separated; malformed pairs are skipped."""
    thresholds = {}
    for item in _env_list(name) or []:
        metric, sep, value = item.partition("=")
        if not sep or not metric.strip():
            continue
        try:
            thresholds[metric.strip()] = float(value)
        except ValueError:
            continue
    return thresholds or None


@dataclass(frozen=True)
class RolloutSettings:
    service_version: str = "0.1.0"
    backend: str = "http"
    deployment_api_url: str = "http://localhost:8081"
    prometheus_url: str = "http://localhost:9090"
    metric_prefix: str = "seraphim_model_"
    http_timeout_ms: float = 5000.0
    initial_percentage: int = 10
    evaluation_period: timedelta = timedelta(hours=1)
    promotion_threshold: float = 0.95
    baseline_deployment_id: Optional[str] = None
    monitored_metric_names: Optional[Tuple[str, ...]] = None
    metric_thresholds: Optional[Tuple[Tuple[str, float], ...]] = None
    wait_by_default: bool = False

    @classmethod
    def from_env(cls) -> "RolloutSettings":
        monitored = _env_list("CANARY_MONITORED_METRICS")
        thresholds = _env_thresholds("CANARY_METRIC_THRESHOLDS")
        return cls(
            service_version=os.environ.get("SERVICE_VERSION", "0.1.0"),
            backend=os.environ.get("ROLLOUT_BACKEND", "http").lower(),
            deployment_api_url=os.environ.get("DEPLOYMENT_API_URL", "http://localhost:8081"),
            prometheus_url=os.environ.get("PROMETHEUS_URL", "http://localhost:9090"),
            metric_prefix=os.environ.get("PROMETHEUS_METRIC_PREFIX", "seraphim_model_"),
            http_timeout_ms=_env_float("ROLLOUT_HTTP_TIMEOUT_MS", 5000.0),
            initial_percentage=_parse_percent(os.environ.get("CANARY_INITIAL_PERCENT"), 10),
            evaluation_period=timedelta(seconds=_env_float("CANARY_EVALUATION_PERIOD_S", 3600.0)),
            promotion_threshold=_env_float("CANARY_PROMOTION_THRESHOLD", 0.95),
            baseline_deployment_id=os.environ.get("CANARY_BASELINE_DEPLOYMENT_ID") or None,
            monitored_metric_names=tuple(monitored) if monitored else None,
            metric_thresholds=tuple(thresholds.items()) if thresholds else None,
            wait_by_default=_env_bool("ROLLOUT_WAIT", False),
        )

    def default_canary_config(self, baseline_deployment_id: Optional[str] = None) -> CanaryConfig:
        """Build a ``CanaryConfig`` from the defaults; raises if no baseline is known."""
        return CanaryConfig(
            initial_percentage=self.initial_percentage,
            evaluation_period=self.evaluation_period,
            promotion_threshold=self.promotion_threshold,
            baseline_deployment_id=baseline_deployment_id or self.baseline_deployment_id or "",
            monitored_metric_names=list(self.monitored_metric_names) if self.monitored_metric_names else None,
            metric_thresholds=dict(self.metric_thresholds) if self.metric_thresholds else None,
        )
