"""Data models for persisted workflow and job state."""

from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def now_ms() -> int:
    """Current time in unix milliseconds."""
    return int(time.time() * 1000)


class Phase(str, Enum):
    """Position of a workflow in its lifecycle."""

    LAUNCHED_PLANNING = "launched_planning"
    CONTEXT_REVIEW = "context_review"
    CONTEXT_ACCEPTED = "context_accepted"
    CONTEXT_REJECTED = "context_rejected"
    PLAN_RUNNING = "plan_running"
    PLAN_REVIEW = "plan_review"
    PLAN_ACCEPTED = "plan_accepted"
    PLAN_REJECTED = "plan_rejected"
    IMPLEMENTING = "implementing"
    FINISHED = "finished"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PHASES

    @property
    def awaits_job(self) -> bool:
        return self in JOB_PHASES

    @property
    def awaits_review(self) -> bool:
        return self in REVIEW_PHASES


TERMINAL_PHASES = frozenset(
    {
        Phase.FINISHED,
        Phase.FAILED,
        Phase.STOPPED,
        Phase.CONTEXT_REJECTED,
        Phase.PLAN_REJECTED,
    }
)
JOB_PHASES = frozenset({Phase.LAUNCHED_PLANNING, Phase.PLAN_RUNNING, Phase.IMPLEMENTING})
REVIEW_PHASES = frozenset({Phase.CONTEXT_REVIEW, Phase.PLAN_REVIEW})


class JobRole(str, Enum):
    """Kind of remote job a workflow is waiting on."""

    PLANNER = "planner"
    IMPLEMENTER = "implementer"


class RemoteStatus(str, Enum):
    """Status vocabulary of the remote job API."""

    CREATING = "CREATING"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (RemoteStatus.FINISHED, RemoteStatus.FAILED, RemoteStatus.STOPPED)


class DecisionAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


class WorkflowRecord(BaseModel):
    """The unit of orchestration: one launched workflow and its current phase."""

    workflow_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    channel_id: str
    launching_user_id: str
    root_post_id: str = ""

    repository: str
    branch: str = "main"
    model_name: str = "auto"
    original_prompt: str = ""

    skip_context_review: bool = True
    skip_plan_review: bool = False

    phase: Phase = Phase.LAUNCHED_PLANNING
    active_job_id: str = ""
    job_role: Optional[JobRole] = None
    iteration_count: int = 0
    last_known_remote_status: str = ""
    pending_review_payload: str = ""

    approved_context: str = ""
    approved_plan: str = ""
    previous_plan: str = ""
    plan_feedback: str = ""
    last_error: str = ""

    decision_lock_token: int = 0
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def has_outstanding_job(self) -> bool:
        return bool(self.active_job_id) and not self.phase.is_terminal

    def task_context(self) -> str:
        """Approved context if the context gate ran, otherwise the original prompt."""
        return self.approved_context or self.original_prompt


class AgentRecord(BaseModel):
    """Mirror of a single launched remote job, used for cross-workflow listing."""

    job_id: str
    workflow_id: str
    role: JobRole
    status: RemoteStatus = RemoteStatus.CREATING
    summary: str = ""
    created_at: int = Field(default_factory=now_ms)
    updated_at: int = Field(default_factory=now_ms)

    @property
    def is_active(self) -> bool:
        return not self.status.is_terminal


class UserSettings(BaseModel):
    """Per-user review gate preferences; ``None`` defers to global config."""

    enable_context_review: Optional[bool] = None
    enable_plan_review: Optional[bool] = None
