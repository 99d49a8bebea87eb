"""HTTP collaborators for the canary orchestrator.

``HttpDeploymentGateway`` talks to the deployment controller REST API;
``PrometheusMetricSource`` summarises model metrics with PromQL range
functions over the evaluation window.
"""
import asyncio
import logging
import math
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

import httpx

from config.reliability.canary.errors import MetricsUnavailableError
from config.reliability.canary.models import (
    DeploymentInfo,
    DeploymentRequest,
    DeploymentResult,
    MetricStatistics,
)
from services.shared.observability import sanitize_for_json_logging

logger = logging.getLogger(__name__)


class HttpDeploymentGateway:
    def __init__(self, base_url: str, timeout_ms: float = 5000.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_ms = timeout_ms

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_ms / 1000.0)

    async def deploy(self, request: DeploymentRequest) -> DeploymentResult:
        async with self._client() as client:
            response = await client.post("/deployments", json=request.model_dump(mode="json"))
            return self._result(response)

    async def rollback(self, deployment_id: str) -> DeploymentResult:
        async with self._client() as client:
            response = await client.post(f"/deployments/{deployment_id}/rollback")
            return self._result(response)

    async def get(self, deployment_id: str) -> Optional[DeploymentInfo]:
        async with self._client() as client:
            response = await client.get(f"/deployments/{deployment_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        body.setdefault("deployment_id", deployment_id)
        return DeploymentInfo.model_validate(body)

    @staticmethod
    def _result(response: httpx.Response) -> DeploymentResult:
        if response.is_error:
            logger.warning(
                "Deployment controller returned an error",
                extra={
                    "url": str(response.request.url),
                    "status_code": response.status_code,
                    "body": sanitize_for_json_logging(response.text),
                }
            )
        response.raise_for_status()
        return DeploymentResult.model_validate(response.json())


def _label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


def _sample_std_dev(sum_squares: float, average: float, count: int) -> float:
    """Sample standard deviation (n - 1) of the pooled samples."""
    if count < 2:
        return 0.0
    return math.sqrt(max(0.0, (sum_squares - count * average * average) / (count - 1)))


class PrometheusMetricSource:
    """
    Metric statistics from the Prometheus HTTP API.

    A model metric ``latency_ms`` is read from the series
    ``<prefix>latency_ms`` labelled with the deployment dimensions. Samples
    of every matching series are pooled; the standard deviation is the
    sample (n - 1) one, derived from the pooled sum of squares.
    """

    def __init__(self, base_url: str, metric_prefix: str = "seraphim_model_", timeout_ms: float = 5000.0):
        self.base_url = base_url.rstrip("/")
        self.metric_prefix = metric_prefix
        self.timeout_ms = timeout_ms

    def build_queries(self, metric_name: str, start: datetime, end: datetime,
                      dimensions: Mapping[str, str]) -> Dict[str, str]:
        labels = ",".join(f'{k}="{_label_value(v)}"' for k, v in sorted(dimensions.items()))
        seconds = max(1, int((end - start).total_seconds()))
        series = f"{self.metric_prefix}{metric_name}{{{labels}}}[{seconds}s]"
        return {
            "average": f"sum(sum_over_time({series})) / sum(count_over_time({series}))",
            # Sum of squares over every matching series: n * var + n * mean^2
            "sum_squares": f"sum(stdvar_over_time({series}) * count_over_time({series})"
                           f" + sum_over_time({series}) ^ 2 / count_over_time({series}))",
            "min": f"min(min_over_time({series}))",
            "max": f"max(max_over_time({series}))",
            "p90": f"max(quantile_over_time(0.9, {series}))",
            "p95": f"max(quantile_over_time(0.95, {series}))",
            "p99": f"max(quantile_over_time(0.99, {series}))",
            "sample_count": f"sum(count_over_time({series}))",
        }

    async def get_statistics(
        self,
        metric_name: str,
        start: datetime,
        end: datetime,
        dimensions: Mapping[str, str],
    ) -> Optional[MetricStatistics]:
        queries = self.build_queries(metric_name, start, end, dimensions)
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout_ms / 1000.0) as client:
            values = await asyncio.gather(
                *(self._query(client, q, end) for q in queries.values()),
                return_exceptions=True,
            )
        for value in values:
            if isinstance(value, BaseException):
                raise value
        stats: Dict[str, Any] = dict(zip(queries.keys(), values))
        if stats["average"] is None or not stats["sample_count"]:
            return None
        count = int(stats["sample_count"])
        sum_squares = stats.pop("sum_squares") or 0.0
        stats["std_dev"] = _sample_std_dev(sum_squares, stats["average"], count)
        stats["sample_count"] = count
        return MetricStatistics(**{k: (0.0 if v is None else v) for k, v in stats.items()})

    async def _query(self, client: httpx.AsyncClient, query: str, at: datetime) -> Optional[float]:
        try:
            response = await client.get("/api/v1/query", params={"query": query, "time": at.timestamp()})
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            logger.warning("Prometheus query failed", extra={"query": query, "error": str(e)})
            raise MetricsUnavailableError(f"Prometheus query failed: {e}") from e
        except ValueError as e:
            raise MetricsUnavailableError("Prometheus returned a non-JSON response") from e

        if body.get("status") != "success":
            raise MetricsUnavailableError(
                f"Prometheus query error: {sanitize_for_json_logging(body.get('error'))}"
            )
        result = body.get("data", {}).get("result", [])
        if not result:
            return None
        return float(result[0]["value"][1])
