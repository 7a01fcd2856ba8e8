"""Error taxonomy for workflow orchestration."""

from __future__ import annotations

from typing import Optional


class AgentLoopError(Exception):
    """Base class for all agentloop errors."""


class DecisionValidationError(AgentLoopError):
    """A decision request is malformed or not allowed in the current phase."""


class WorkflowNotFoundError(AgentLoopError):
    """No workflow exists for the requested identifier."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} not found")
        self.workflow_id = workflow_id


class WorkflowExistsError(AgentLoopError):
    """A workflow with the same identifier has already been created."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow {workflow_id} already exists")
        self.workflow_id = workflow_id


class InvalidTransition(AgentLoopError):
    """The event is not valid for the workflow's current phase."""


class StaleDecision(InvalidTransition):
    """The review phase targeted by a decision has already been resolved.

    Callers treat this as success: the user's intent was already honored.
    """

    def __init__(self, requested_phase: str, current_phase: str) -> None:
        super().__init__(
            f"Decision for {requested_phase} is stale; workflow is in {current_phase}"
        )
        self.requested_phase = requested_phase
        self.current_phase = current_phase


class ConcurrencyConflict(AgentLoopError):
    """Conditional writes kept losing to concurrent writers."""

    def __init__(self, workflow_id: str, attempts: int) -> None:
        super().__init__(
            f"Workflow {workflow_id} was modified concurrently; gave up after {attempts} attempts"
        )
        self.workflow_id = workflow_id
        self.attempts = attempts


class StoreError(AgentLoopError):
    """The durable store failed to complete an operation."""


class RemoteJobError(AgentLoopError):
    """The remote job API returned an error or could not be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable
