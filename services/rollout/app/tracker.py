"""In-process registry of running rollouts.

Holds asyncio tasks so the API can report on them; it is lost on restart.
Only the most recent ``max_finished`` finished rollouts are kept, oldest
evicted first. It also refuses a second concurrent rollout of the same model
into the same environment, which the orchestrator itself does not guard against.
"""
import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, Optional, Tuple

from config.reliability.canary.models import DeploymentRequest, DeploymentResult
from services.shared.observability import baggage_scope

logger = logging.getLogger(__name__)


class RolloutConflictError(Exception):
    def __init__(self, model_id: str, environment: str, rollout_id: str):
        super().__init__(f"Rollout {rollout_id} already in progress for {model_id} in {environment}")
        self.rollout_id = rollout_id


@dataclass
class TrackedRollout:
    rollout_id: str
    request: DeploymentRequest
    task: "asyncio.Task[DeploymentResult]" = field(repr=False)

    @property
    def done(self) -> bool:
        return self.task.done()

    @property
    def status(self) -> str:
        if not self.task.done():
            return "running"
        if self.task.cancelled():
            return "cancelled"
        return "completed"

    @property
    def result(self) -> Optional[DeploymentResult]:
        if self.task.done() and not self.task.cancelled():
            return self.task.result()
        return None


class RolloutTracker:
    def __init__(self, max_finished: int = 256):
        self._max_finished = max_finished
        self._rollouts: Dict[str, TrackedRollout] = {}
        self._finished: Deque[str] = deque()
        self._active: Dict[Tuple[str, str], str] = {}

    def start(
        self,
        request: DeploymentRequest,
        runner: Callable[[], Awaitable[DeploymentResult]],
    ) -> TrackedRollout:
        key = (request.model_id, request.environment)
        active_id = self._active.get(key)
        if active_id is not None:
            raise RolloutConflictError(request.model_id, request.environment, active_id)

        rollout_id = str(uuid.uuid4())

        async def _run() -> DeploymentResult:
            with baggage_scope(rollout_id=rollout_id):
                return await runner()

        task = asyncio.create_task(_run())
        tracked = TrackedRollout(rollout_id=rollout_id, request=request, task=task)
        self._rollouts[rollout_id] = tracked
        self._active[key] = rollout_id
        task.add_done_callback(lambda _: self._finish(key, rollout_id))
        logger.info(
            "Rollout scheduled",
            extra={"rollout_id": rollout_id, "model_id": request.model_id, "environment": request.environment}
        )
        return tracked

    def _finish(self, key: Tuple[str, str], rollout_id: str) -> None:
        if self._active.get(key) == rollout_id:
            del self._active[key]
        self._finished.append(rollout_id)
        while len(self._finished) > self._max_finished:
            evicted = self._finished.popleft()
            self._rollouts.pop(evicted, None)
            logger.debug("Finished rollout evicted", extra={"rollout_id": evicted})

    def get(self, rollout_id: str) -> Optional[TrackedRollout]:
        return self._rollouts.get(rollout_id)
