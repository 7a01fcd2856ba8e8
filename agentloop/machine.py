"""Workflow state machine.

Every transition is a pure function ``(record, event) -> Transition``. The
returned record is a new object and the side effects are declarative; the
orchestrator persists the record and executes the effects only after its
conditional write has won. Nothing here performs I/O, which keeps the
machine safe to recompute when a write has to be retried.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, Union

from .exceptions import InvalidTransition, StaleDecision
from .models import (
    DecisionAction,
    JobRole,
    Phase,
    RemoteStatus,
    WorkflowRecord,
    now_ms,
)

EMPTY_PLAN_PLACEHOLDER = "The planning job finished without producing a plan."


# ----------------------------------------------------------------------
# Events


@dataclass(frozen=True)
class RemoteStatusChanged:
    """The poller observed a new status for a remote job."""

    job_id: str
    status: RemoteStatus
    artifact: str = ""


@dataclass(frozen=True)
class UserDecision:
    """A user clicked accept or reject on a review card."""

    phase: Phase
    action: DecisionAction
    user_id: str


@dataclass(frozen=True)
class RevisionRequested:
    """A user asked for another planning pass on the plan under review."""

    user_id: str
    feedback: str = ""


@dataclass(frozen=True)
class JobLaunched:
    """A remote job requested by a ``LaunchJob`` effect was created."""

    job_id: str
    role: JobRole
    status: RemoteStatus = RemoteStatus.CREATING


@dataclass(frozen=True)
class JobLaunchFailed:
    role: JobRole
    error: str


@dataclass(frozen=True)
class StopRequested:
    user_id: str = ""
    reason: str = ""


Event = Union[
    RemoteStatusChanged,
    UserDecision,
    RevisionRequested,
    JobLaunched,
    JobLaunchFailed,
    StopRequested,
]


# ----------------------------------------------------------------------
# Side effects


@dataclass(frozen=True)
class LaunchJob:
    role: JobRole


@dataclass(frozen=True)
class StopJob:
    job_id: str


@dataclass(frozen=True)
class RenderCard:
    pass


SideEffect = Union[LaunchJob, StopJob, RenderCard]


@dataclass(frozen=True)
class Transition:
    """Result of applying an event: the next record and what to do after persisting it."""

    record: WorkflowRecord
    effects: tuple[SideEffect, ...] = ()
    changed: bool = True

    @property
    def launches(self) -> list[LaunchJob]:
        return [e for e in self.effects if isinstance(e, LaunchJob)]


def _unchanged(record: WorkflowRecord) -> Transition:
    return Transition(record=record, effects=(), changed=False)


def _advance(record: WorkflowRecord, now: int, **changes) -> WorkflowRecord:
    changes["updated_at"] = now
    return record.model_copy(update=changes)


# ----------------------------------------------------------------------
# Launch


def start(record: WorkflowRecord, now: Optional[int] = None) -> Transition:
    """Compute the initial phase of a freshly created workflow."""
    now = now if now is not None else now_ms()
    if not record.skip_context_review:
        started = _advance(
            record,
            now,
            phase=Phase.CONTEXT_REVIEW,
            pending_review_payload=record.original_prompt,
            active_job_id="",
            job_role=None,
        )
        return Transition(started, (RenderCard(),))
    started = _advance(
        record,
        now,
        phase=Phase.LAUNCHED_PLANNING,
        pending_review_payload="",
        active_job_id="",
        job_role=None,
    )
    return Transition(started, (LaunchJob(JobRole.PLANNER), RenderCard()))


# ----------------------------------------------------------------------
# Event handlers


def _on_remote_status(
    record: WorkflowRecord, event: RemoteStatusChanged, now: int
) -> Transition:
    if record.is_terminal or not record.active_job_id:
        return _unchanged(record)
    if event.job_id != record.active_job_id:
        # Status of a job this workflow no longer tracks (e.g. a replaced planner).
        return _unchanged(record)

    status = event.status
    if status in (RemoteStatus.CREATING, RemoteStatus.RUNNING):
        if status.value == record.last_known_remote_status:
            return _unchanged(record)
        return Transition(
            _advance(record, now, last_known_remote_status=status.value),
            (RenderCard(),),
        )

    cleared = dict(active_job_id="", job_role=None, last_known_remote_status=status.value)

    if status == RemoteStatus.FAILED:
        role = record.job_role.value if record.job_role else "remote"
        return Transition(
            _advance(
                record,
                now,
                phase=Phase.FAILED,
                last_error=f"{role} job {event.job_id} failed",
                **cleared,
            ),
            (RenderCard(),),
        )

    if status == RemoteStatus.STOPPED:
        return Transition(
            _advance(record, now, phase=Phase.STOPPED, **cleared), (RenderCard(),)
        )

    # FINISHED
    if record.job_role == JobRole.IMPLEMENTER:
        return Transition(
            _advance(record, now, phase=Phase.FINISHED, **cleared), (RenderCard(),)
        )

    if record.job_role == JobRole.PLANNER:
        plan = event.artifact.strip() or EMPTY_PLAN_PLACEHOLDER
        if record.skip_plan_review:
            advanced = _advance(
                record, now, phase=Phase.IMPLEMENTING, approved_plan=plan, **cleared
            )
            return Transition(advanced, (LaunchJob(JobRole.IMPLEMENTER), RenderCard()))
        advanced = _advance(
            record, now, phase=Phase.PLAN_REVIEW, pending_review_payload=plan, **cleared
        )
        return Transition(advanced, (RenderCard(),))

    raise InvalidTransition(
        f"Workflow {record.workflow_id} has job {record.active_job_id} without a role"
    )


def _review_resolved(record: WorkflowRecord, review_phase: Phase) -> bool:
    """Whether ``review_phase`` has already been answered for this workflow."""
    if review_phase == Phase.CONTEXT_REVIEW:
        if record.skip_context_review:
            return False
        return record.phase != Phase.CONTEXT_REVIEW
    if record.skip_plan_review:
        return False
    if record.is_terminal:
        return True
    if record.phase in (Phase.PLAN_ACCEPTED, Phase.IMPLEMENTING):
        return True
    return record.phase == Phase.PLAN_RUNNING and record.iteration_count > 0


def _on_decision(record: WorkflowRecord, event: UserDecision, now: int) -> Transition:
    requested = event.phase
    if not requested.awaits_review:
        raise InvalidTransition(f"{requested.value} is not a review phase")

    if record.phase != requested:
        if _review_resolved(record, requested):
            raise StaleDecision(requested.value, record.phase.value)
        raise InvalidTransition(
            f"Workflow {record.workflow_id} is in {record.phase.value}, "
            f"not awaiting {requested.value}"
        )

    payload = record.pending_review_payload
    if event.action == DecisionAction.REJECT:
        rejected = (
            Phase.CONTEXT_REJECTED
            if requested == Phase.CONTEXT_REVIEW
            else Phase.PLAN_REJECTED
        )
        return Transition(
            _advance(record, now, phase=rejected, pending_review_payload=""),
            (RenderCard(),),
        )

    if requested == Phase.CONTEXT_REVIEW:
        accepted = _advance(
            record,
            now,
            phase=Phase.CONTEXT_ACCEPTED,
            approved_context=payload,
            pending_review_payload="",
        )
        return Transition(accepted, (LaunchJob(JobRole.PLANNER), RenderCard()))

    accepted = _advance(
        record,
        now,
        phase=Phase.PLAN_ACCEPTED,
        approved_plan=payload,
        pending_review_payload="",
    )
    return Transition(accepted, (LaunchJob(JobRole.IMPLEMENTER), RenderCard()))


def _on_revision(
    record: WorkflowRecord, event: RevisionRequested, now: int
) -> Transition:
    if record.phase != Phase.PLAN_REVIEW:
        if _review_resolved(record, Phase.PLAN_REVIEW):
            raise StaleDecision(Phase.PLAN_REVIEW.value, record.phase.value)
        raise InvalidTransition(
            f"Revision is only possible during plan review; "
            f"workflow {record.workflow_id} is in {record.phase.value}"
        )
    revised = _advance(
        record,
        now,
        phase=Phase.PLAN_RUNNING,
        iteration_count=record.iteration_count + 1,
        previous_plan=record.pending_review_payload,
        plan_feedback=event.feedback,
        pending_review_payload="",
    )
    return Transition(revised, (LaunchJob(JobRole.PLANNER), RenderCard()))


# Phase a workflow moves to once the job it was waiting to launch exists.
_LAUNCH_TARGETS: dict[Phase, tuple[JobRole, Phase]] = {
    Phase.LAUNCHED_PLANNING: (JobRole.PLANNER, Phase.LAUNCHED_PLANNING),
    Phase.CONTEXT_ACCEPTED: (JobRole.PLANNER, Phase.PLAN_RUNNING),
    Phase.PLAN_RUNNING: (JobRole.PLANNER, Phase.PLAN_RUNNING),
    Phase.PLAN_ACCEPTED: (JobRole.IMPLEMENTER, Phase.IMPLEMENTING),
    Phase.IMPLEMENTING: (JobRole.IMPLEMENTER, Phase.IMPLEMENTING),
}


def pending_launch_role(record: WorkflowRecord) -> Optional[JobRole]:
    """Role of the job ``record`` is waiting to have attached, if any."""
    if record.active_job_id or record.is_terminal:
        return None
    target = _LAUNCH_TARGETS.get(record.phase)
    return target[0] if target is not None else None


def _on_job_launched(record: WorkflowRecord, event: JobLaunched, now: int) -> Transition:
    if record.active_job_id == event.job_id:
        return _unchanged(record)
    target = _LAUNCH_TARGETS.get(record.phase)
    if record.active_job_id or target is None or target[0] != event.role:
        raise InvalidTransition(
            f"Workflow {record.workflow_id} in {record.phase.value} cannot take "
            f"{event.role.value} job {event.job_id}"
        )
    attached = _advance(
        record,
        now,
        phase=target[1],
        active_job_id=event.job_id,
        job_role=event.role,
        last_known_remote_status=event.status.value,
    )
    return Transition(attached, (RenderCard(),))


def _on_launch_failed(
    record: WorkflowRecord, event: JobLaunchFailed, now: int
) -> Transition:
    if record.active_job_id or record.phase not in _LAUNCH_TARGETS:
        raise InvalidTransition(
            f"Workflow {record.workflow_id} in {record.phase.value} has no pending launch"
        )
    failed = _advance(
        record,
        now,
        phase=Phase.FAILED,
        job_role=None,
        last_error=f"Failed to launch {event.role.value} job: {event.error}",
    )
    return Transition(failed, (RenderCard(),))


def _on_stop(record: WorkflowRecord, event: StopRequested, now: int) -> Transition:
    if record.is_terminal:
        return _unchanged(record)
    effects: tuple[SideEffect, ...] = ()
    if record.active_job_id:
        effects = (StopJob(record.active_job_id),)
    stopped = _advance(
        record,
        now,
        phase=Phase.STOPPED,
        active_job_id="",
        job_role=None,
        pending_review_payload="",
        last_error=event.reason,
    )
    return Transition(stopped, effects + (RenderCard(),))


_HANDLERS: dict[type, Callable[[WorkflowRecord, Event, int], Transition]] = {
    RemoteStatusChanged: _on_remote_status,
    UserDecision: _on_decision,
    RevisionRequested: _on_revision,
    JobLaunched: _on_job_launched,
    JobLaunchFailed: _on_launch_failed,
    StopRequested: _on_stop,
}


def transition(
    record: WorkflowRecord, event: Event, now: Optional[int] = None
) -> Transition:
    """Apply ``event`` to ``record``.

    Raises:
        StaleDecision: the decision targets a review that was already resolved.
        InvalidTransition: the event is not valid in the current phase.
    """
    handler = _HANDLERS.get(type(event))
    if handler is None:
        raise TypeError(f"Unsupported workflow event: {event!r}")
    return handler(record, event, now if now is not None else now_ms())
