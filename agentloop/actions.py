"""Handling of user decisions on review cards."""

from __future__ import annotations

import logging
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, ValidationError, model_validator

from .exceptions import DecisionValidationError, InvalidTransition, StaleDecision
from .machine import Event, RevisionRequested, StopRequested, UserDecision
from .models import DecisionAction, Phase, WorkflowRecord
from .orchestrator import Orchestrator
from .render import render_record

logger = logging.getLogger(__name__)


class DecisionRequest(BaseModel):
    """Accept/reject request as posted by a review card button.

    Chat integrations post the button context nested under ``context`` with
    the acting user at the top level; both shapes are accepted.
    """

    workflow_id: str
    action: Literal["accept", "reject"]
    phase: Literal["context_review", "plan_review"]
    user_id: str

    @model_validator(mode="before")
    @classmethod
    def _flatten_context(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and isinstance(data.get("context"), Mapping):
            merged = {k: v for k, v in data.items() if k != "context"}
            merged.update(data["context"])
            return merged
        return data


class DecisionOutcome(BaseModel):
    status: Literal["applied", "already_resolved"]
    workflow_id: str
    phase: Phase
    update: Any = None


class ActionHandler:
    """Validates decisions and applies them exactly once.

    A decision whose review was already answered (a double click or a
    concurrent submission that lost the race) is reported as
    ``already_resolved`` rather than an error.
    """

    def __init__(self, orchestrator: Orchestrator) -> None:
        self.orchestrator = orchestrator

    @property
    def restrict_to_initiator(self) -> bool:
        return self.orchestrator.config.restrict_decisions_to_initiator

    async def handle_decision(
        self, payload: Mapping[str, Any], user_id: Optional[str] = None
    ) -> DecisionOutcome:
        data = dict(payload)
        if user_id:
            data["user_id"] = user_id
        try:
            request = DecisionRequest.model_validate(data)
        except ValidationError as exc:
            raise DecisionValidationError(f"Invalid decision request: {exc}") from exc

        event = UserDecision(
            phase=Phase(request.phase),
            action=DecisionAction(request.action),
            user_id=request.user_id,
        )
        return await self._apply(request.workflow_id, request.user_id, event)

    async def request_revision(
        self, workflow_id: str, user_id: str, feedback: str = ""
    ) -> DecisionOutcome:
        return await self._apply(
            workflow_id, user_id, RevisionRequested(user_id=user_id, feedback=feedback)
        )

    async def stop(self, workflow_id: str, user_id: str) -> DecisionOutcome:
        return await self._apply(
            workflow_id, user_id, StopRequested(user_id=user_id, reason=f"Stopped by {user_id}")
        )

    def _authorize(self, record: WorkflowRecord, user_id: str) -> None:
        if not user_id:
            raise DecisionValidationError("user_id is required")
        if self.restrict_to_initiator and user_id != record.launching_user_id:
            raise DecisionValidationError(
                f"Only {record.launching_user_id} can act on workflow {record.workflow_id}"
            )

    async def _apply(self, workflow_id: str, user_id: str, event: Event) -> DecisionOutcome:
        record = await self.orchestrator.get_workflow(workflow_id)
        self._authorize(record, user_id)

        try:
            result = await self.orchestrator.apply_event(workflow_id, event)
        except StaleDecision as exc:
            logger.info(f"Workflow {workflow_id}: {exc}")
            current = await self.orchestrator.get_workflow(workflow_id)
            return self._outcome("already_resolved", current)
        except InvalidTransition as exc:
            raise DecisionValidationError(str(exc)) from exc

        logger.info(
            f"Workflow {workflow_id}: {type(event).__name__} by {user_id} applied, "
            f"now {result.record.phase.value}"
        )
        return self._outcome("applied" if result.changed else "already_resolved", result.record)

    def _outcome(self, status: str, record: WorkflowRecord) -> DecisionOutcome:
        return DecisionOutcome(
            status=status,
            workflow_id=record.workflow_id,
            phase=record.phase,
            update=render_record(self.orchestrator.renderer, record),
        )
