"""Errors raised by rollout collaborators.

None of these escape ``CanaryOrchestrator.run``; they are converted into
failed or degraded results at the component boundaries.
"""


class RolloutError(Exception):
    """Base class for rollout errors."""


class DeploymentNotFoundError(RolloutError):
    def __init__(self, deployment_id: str):
        super().__init__(f"Deployment not found: {deployment_id}")
        self.deployment_id = deployment_id


class MetricsUnavailableError(RolloutError):
    """The metrics backend could not answer a statistics query."""
