import logging
import os
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field, ValidationError

from config.reliability.canary.comparator import PerformanceComparator
from config.reliability.canary.memory import InMemoryDeploymentGateway, InMemoryMetricSource
from config.reliability.canary.models import CanaryConfig, DeploymentRequest, DeploymentResult
from config.reliability.canary.orchestrator import CanaryOrchestrator
from services.rollout.app.clients import HttpDeploymentGateway, PrometheusMetricSource
from services.rollout.app.settings import RolloutSettings
from services.rollout.app.tracker import RolloutConflictError, RolloutTracker
from services.shared.observability import (
    get_correlation_id, instrument_fastapi, instrument_httpx, setup_logging, setup_tracing
)

SERVICE_NAME = "seraphim-rollout"
SERVICE_VERSION = os.environ.get("SERVICE_VERSION", "0.1.0")

logger = setup_logging(SERVICE_NAME)
tracer = setup_tracing(SERVICE_NAME, SERVICE_VERSION)


def configure_uvicorn_logging():
    """Route uvicorn's loggers through the JSON handler."""
    json_handler = logging.root.handlers[0] if logging.root.handlers else None
    if json_handler:
        for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
            uvicorn_logger = logging.getLogger(name)
            uvicorn_logger.handlers.clear()
            uvicorn_logger.addHandler(json_handler)
            uvicorn_logger.propagate = False


configure_uvicorn_logging()

app = FastAPI(
    title="Seraphim Rollout API",
    version="0.1.0",
    description="Canary rollout decisions for ML model releases",
)

instrument_fastapi(app)
instrument_httpx()


class RolloutRequest(BaseModel):
    request: DeploymentRequest
    config: Optional[CanaryConfig] = Field(
        None, description="Canary settings; service defaults are used when omitted"
    )


class RolloutStatus(BaseModel):
    rollout_id: str
    status: str = Field(..., description="running, completed or cancelled")
    result: Optional[DeploymentResult] = None


_settings: Optional[RolloutSettings] = None
_orchestrator: Optional[CanaryOrchestrator] = None
_tracker = RolloutTracker()


def build_orchestrator(settings: RolloutSettings) -> CanaryOrchestrator:
    if settings.backend == "memory":
        gateway = InMemoryDeploymentGateway()
        metric_source = InMemoryMetricSource()
    else:
        gateway = HttpDeploymentGateway(settings.deployment_api_url, settings.http_timeout_ms)
        metric_source = PrometheusMetricSource(
            settings.prometheus_url, settings.metric_prefix, settings.http_timeout_ms
        )
    logger.info(
        "Rollout backend configured",
        extra={
            "backend": settings.backend,
            "deployment_api_url": settings.deployment_api_url,
            "prometheus_url": settings.prometheus_url,
        }
    )
    return CanaryOrchestrator(gateway, PerformanceComparator(gateway, metric_source))


def get_settings() -> RolloutSettings:
    global _settings
    if _settings is None:
        _settings = RolloutSettings.from_env()
    return _settings


def get_orchestrator(settings: RolloutSettings = Depends(get_settings)) -> CanaryOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(settings)
    return _orchestrator


def get_tracker() -> RolloutTracker:
    return _tracker


def _describe_config_errors(error: ValidationError) -> str:
    """One ``config.<field>: <message>`` entry per invalid service default."""
    return "; ".join(
        "config.{}: {}".format(".".join(str(part) for part in err["loc"]), err["msg"])
        for err in error.errors()
    )


@app.get("/healthz", tags=["health"])
def health() -> Dict[str, Any]:
    return {"ok": True, "version": SERVICE_VERSION}


@app.get("/metrics", tags=["metrics"])
def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/rollouts", response_model=RolloutStatus, status_code=202, tags=["rollouts"])
async def start_rollout(
    body: RolloutRequest,
    response: Response,
    wait: Optional[bool] = None,
    settings: RolloutSettings = Depends(get_settings),
    orchestrator: CanaryOrchestrator = Depends(get_orchestrator),
    tracker: RolloutTracker = Depends(get_tracker),
) -> RolloutStatus:
    """Start a canary rollout; with ``wait=true`` block until it is decided."""
    if body.config is not None:
        config = body.config
    else:
        try:
            config = settings.default_canary_config()
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=_describe_config_errors(e))

    try:
        tracked = tracker.start(body.request, lambda: orchestrator.run(body.request, config))
    except RolloutConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info(
        "Rollout requested",
        extra={
            "rollout_id": tracked.rollout_id,
            "model_id": body.request.model_id,
            "environment": body.request.environment,
            "requested_by": body.request.requested_by,
            "correlation_id": get_correlation_id(),
        }
    )

    if wait is None:
        wait = settings.wait_by_default
    if wait:
        result = await tracked.task
        response.status_code = 200
        return RolloutStatus(rollout_id=tracked.rollout_id, status="completed", result=result)

    return RolloutStatus(rollout_id=tracked.rollout_id, status=tracked.status)


@app.get("/rollouts/{rollout_id}", response_model=RolloutStatus, tags=["rollouts"])
def get_rollout(rollout_id: str, tracker: RolloutTracker = Depends(get_tracker)) -> RolloutStatus:
    tracked = tracker.get(rollout_id)
    if tracked is None:
        raise HTTPException(status_code=404, detail=f"Unknown rollout: {rollout_id}")
    return RolloutStatus(rollout_id=rollout_id, status=tracked.status, result=tracked.result)
