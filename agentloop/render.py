"""Rendering and publishing of workflow cards.

The orchestrator never interprets a rendered message; it hands it to the
publisher, and the action handler also returns it to the caller.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol

from .models import Phase, WorkflowRecord

logger = logging.getLogger(__name__)

_TITLES: dict[Phase, str] = {
    Phase.LAUNCHED_PLANNING: "Planning agent launched",
    Phase.CONTEXT_REVIEW: "Review the task context",
    Phase.CONTEXT_ACCEPTED: "Context accepted",
    Phase.CONTEXT_REJECTED: "Context rejected",
    Phase.PLAN_RUNNING: "Planning in progress",
    Phase.PLAN_REVIEW: "Review the implementation plan",
    Phase.PLAN_ACCEPTED: "Plan accepted",
    Phase.PLAN_REJECTED: "Plan rejected",
    Phase.IMPLEMENTING: "Implementation in progress",
    Phase.FINISHED: "Implementation finished",
    Phase.FAILED: "Workflow failed",
    Phase.STOPPED: "Workflow stopped",
}


class Renderer(Protocol):
    def render(self, phase: Phase, payload: str, metadata: Mapping[str, Any]) -> Any:
        ...


class Publisher(Protocol):
    async def publish(self, record: WorkflowRecord, message: Any) -> None:
        ...


def card_metadata(record: WorkflowRecord) -> dict[str, Any]:
    """Metadata passed to the renderer alongside phase and payload."""
    return {
        "workflow_id": record.workflow_id,
        "channel_id": record.channel_id,
        "root_post_id": record.root_post_id,
        "user_id": record.launching_user_id,
        "repository": record.repository,
        "branch": record.branch,
        "model": record.model_name,
        "iteration": record.iteration_count,
        "job_id": record.active_job_id,
        "remote_status": record.last_known_remote_status,
        "error": record.last_error,
    }


def render_record(renderer: Renderer, record: WorkflowRecord) -> Any:
    return renderer.render(record.phase, record.pending_review_payload, card_metadata(record))


class CardRenderer:
    """Default renderer producing attachment-style dict cards."""

    def render(self, phase: Phase, payload: str, metadata: Mapping[str, Any]) -> dict[str, Any]:
        fields = [
            {"title": "Repository", "value": metadata.get("repository", "")},
            {"title": "Branch", "value": metadata.get("branch", "")},
            {"title": "Model", "value": metadata.get("model", "")},
        ]
        if metadata.get("remote_status"):
            fields.append({"title": "Status", "value": metadata["remote_status"]})
        if metadata.get("iteration"):
            fields.append({"title": "Iteration", "value": str(metadata["iteration"])})

        card: dict[str, Any] = {
            "title": _TITLES[phase],
            "phase": phase.value,
            "text": payload or metadata.get("error") or "",
            "fields": fields,
            "actions": [],
        }
        if phase.awaits_review:
            card["actions"] = [
                {
                    "name": label,
                    "context": {
                        "workflow_id": metadata.get("workflow_id"),
                        "action": action,
                        "phase": phase.value,
                    },
                }
                for label, action in (("Accept", "accept"), ("Reject", "reject"))
            ]
        return card


class LoggingPublisher:
    """Publisher that only logs; used when no chat integration is configured."""

    async def publish(self, record: WorkflowRecord, message: Any) -> None:
        logger.info(
            f"Workflow {record.workflow_id} card update for channel {record.channel_id}: {message}"
        )
