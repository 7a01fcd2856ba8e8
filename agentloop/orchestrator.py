"""Workflow orchestration: launching, conditional writes and side effects."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from . import machine
from .config import AgentLoopConfig, load_config
from .exceptions import (
    AgentLoopError,
    ConcurrencyConflict,
    InvalidTransition,
    RemoteJobError,
    StoreError,
    WorkflowNotFoundError,
)
from .machine import (
    Event,
    JobLaunched,
    JobLaunchFailed,
    LaunchJob,
    RenderCard,
    SideEffect,
    StopJob,
    StopRequested,
    Transition,
)
from .models import AgentRecord, JobRole, RemoteStatus, WorkflowRecord, now_ms
from .prompts import build_implementer_prompt, build_planner_prompt
from .remote import JobRequest, RemoteJobClient
from .render import CardRenderer, LoggingPublisher, Publisher, Renderer, render_record
from .store import WorkflowStore
from .utils import retry

logger = logging.getLogger(__name__)


class Orchestrator:
    """Owns every write to workflow records.

    Writers read the record, compute the transition and write it back
    conditionally on the version they read. A writer that loses re-reads and
    recomputes; side effects are executed only by the writer whose write won.
    """

    def __init__(
        self,
        store: WorkflowStore,
        remote: RemoteJobClient,
        renderer: Optional[Renderer] = None,
        publisher: Optional[Publisher] = None,
        config: Optional[AgentLoopConfig] = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.renderer = renderer or CardRenderer()
        self.publisher = publisher or LoggingPublisher()
        self.config = config or load_config()

    # ------------------------------------------------------------------
    # Launch
    async def resolve_review_gates(
        self,
        user_id: str,
        enable_context_review: Optional[bool] = None,
        enable_plan_review: Optional[bool] = None,
    ) -> tuple[bool, bool]:
        """Return ``(skip_context_review, skip_plan_review)`` for a new workflow.

        Explicit launch flags win over the user's stored settings, which win
        over global configuration.
        """
        settings = await self.store.get_user_settings(user_id)
        if enable_context_review is None and settings is not None:
            enable_context_review = settings.enable_context_review
        if enable_plan_review is None and settings is not None:
            enable_plan_review = settings.enable_plan_review
        if enable_context_review is None:
            enable_context_review = self.config.enable_context_review
        if enable_plan_review is None:
            enable_plan_review = self.config.enable_plan_review
        return not enable_context_review, not enable_plan_review

    async def launch_workflow(
        self,
        channel_id: str,
        user_id: str,
        prompt: str,
        repository: Optional[str] = None,
        branch: Optional[str] = None,
        model: Optional[str] = None,
        root_post_id: str = "",
        enable_context_review: Optional[bool] = None,
        enable_plan_review: Optional[bool] = None,
    ) -> WorkflowRecord:
        repository = repository or self.config.default_repository
        if not repository:
            raise ValueError("A repository is required to launch a workflow")
        skip_context, skip_plan = await self.resolve_review_gates(
            user_id, enable_context_review, enable_plan_review
        )
        record = WorkflowRecord(
            channel_id=channel_id,
            launching_user_id=user_id,
            root_post_id=root_post_id,
            repository=repository,
            branch=branch or self.config.default_branch,
            model_name=model or self.config.default_model,
            original_prompt=prompt,
            skip_context_review=skip_context,
            skip_plan_review=skip_plan,
        )
        initial = machine.start(record)
        created = await self.store.create_workflow(initial.record)
        logger.info(
            f"Workflow {created.workflow_id} launched by {user_id} in {created.phase.value}"
        )
        return await self._run_effects(created, initial.effects)

    # ------------------------------------------------------------------
    # Event application
    async def get_workflow(self, workflow_id: str) -> WorkflowRecord:
        record = await self.store.get_workflow(workflow_id)
        if record is None:
            raise WorkflowNotFoundError(workflow_id)
        return record

    async def apply_event(self, workflow_id: str, event: Event) -> Transition:
        """Apply ``event`` with bounded optimistic retries.

        Returns the transition whose ``record`` is the latest stored state
        after side effects ran. Machine errors (``StaleDecision``,
        ``InvalidTransition``) propagate without any write.

        Raises:
            WorkflowNotFoundError: no record exists.
            ConcurrencyConflict: every attempt lost to a concurrent writer.
        """
        attempts = max(1, self.config.max_write_attempts)
        for attempt in range(1, attempts + 1):
            record = await self.get_workflow(workflow_id)
            result = machine.transition(record, event)
            if not result.changed:
                return result

            stored = await self.store.save_workflow(result.record)
            if stored is not None:
                logger.debug(
                    f"Workflow {workflow_id}: {record.phase.value} -> {stored.phase.value} "
                    f"on {type(event).__name__}"
                )
                latest = await self._run_effects(stored, result.effects)
                return Transition(latest, result.effects)

            logger.debug(
                f"Write conflict on workflow {workflow_id} "
                f"(attempt {attempt}/{attempts}, {type(event).__name__})"
            )
            if attempt < attempts:
                await retry.conflict_pause(attempt)

        raise ConcurrencyConflict(workflow_id, attempts)

    async def stop_workflow(
        self, workflow_id: str, user_id: str = "", reason: str = ""
    ) -> Transition:
        return await self.apply_event(workflow_id, StopRequested(user_id=user_id, reason=reason))

    # ------------------------------------------------------------------
    # Side effects
    async def _run_effects(
        self, record: WorkflowRecord, effects: tuple[SideEffect, ...]
    ) -> WorkflowRecord:
        # Cards for this transition go out before a launch produces the next one.
        for effect in effects:
            if isinstance(effect, StopJob):
                await self.stop_remote_job(effect.job_id)
        for effect in effects:
            if isinstance(effect, RenderCard):
                await self.publish(record)
        for effect in effects:
            if isinstance(effect, LaunchJob):
                record = await self._launch_job(record, effect.role)
        return record

    def job_request(self, record: WorkflowRecord, role: JobRole) -> JobRequest:
        if role == JobRole.PLANNER:
            return JobRequest(
                prompt=build_planner_prompt(record, self.config.planner_system_prompt),
                repository=record.repository,
                ref=record.branch,
                model=record.model_name,
                auto_create_pr=False,
                auto_branch=False,
            )
        return JobRequest(
            prompt=build_implementer_prompt(record),
            repository=record.repository,
            ref=record.branch,
            model=record.model_name,
            auto_create_pr=self.config.auto_create_pr,
            auto_branch=True,
        )

    async def _launch_job(self, record: WorkflowRecord, role: JobRole) -> WorkflowRecord:
        workflow_id = record.workflow_id
        request = self.job_request(record, role)
        try:
            job = await asyncio.wait_for(
                self.remote.create(request), timeout=self.config.remote.request_timeout
            )
        except (RemoteJobError, asyncio.TimeoutError) as exc:
            error = str(exc) or type(exc).__name__
            logger.error(f"Failed to launch {role.value} job for workflow {workflow_id}: {error}")
            return await self.record_launch_failure(record, role, error)

        logger.info(f"Launched {role.value} job {job.id} for workflow {workflow_id}")
        try:
            await self.store.save_agent(
                AgentRecord(job_id=job.id, workflow_id=workflow_id, role=role, status=job.status)
            )
        except AgentLoopError as exc:
            logger.warning(f"Could not record agent {job.id} for workflow {workflow_id}: {exc}")

        try:
            result = await self.apply_event(workflow_id, JobLaunched(job.id, role, job.status))
        except InvalidTransition as exc:
            logger.warning(
                f"Workflow {workflow_id} no longer wants job {job.id}; stopping it ({exc})"
            )
            await self.stop_remote_job(job.id)
            return await self._latest(record)
        except AgentLoopError as exc:
            logger.error(
                f"Could not attach {role.value} job {job.id} to workflow {workflow_id}: {exc}; "
                f"stopping it"
            )
            await self.stop_remote_job(job.id)
            return await self.record_launch_failure(
                record, role, f"could not record job {job.id}: {exc}"
            )
        return result.record

    async def record_launch_failure(
        self, record: WorkflowRecord, role: JobRole, error: str
    ) -> WorkflowRecord:
        """Move a launch-pending workflow to ``failed``.

        When the write itself fails the workflow stays launch-pending and the
        poller fails it once the launch grace period has passed.
        """
        workflow_id = record.workflow_id
        try:
            result = await self.apply_event(workflow_id, JobLaunchFailed(role, error))
        except InvalidTransition as exc:
            logger.info(f"Workflow {workflow_id} moved on before launch failure was recorded: {exc}")
            return await self._latest(record)
        except AgentLoopError as exc:
            logger.error(f"Could not record launch failure for workflow {workflow_id}: {exc}")
            return await self._latest(record)
        return result.record

    async def _latest(self, record: WorkflowRecord) -> WorkflowRecord:
        try:
            return await self.get_workflow(record.workflow_id)
        except AgentLoopError as exc:
            logger.warning(f"Could not re-read workflow {record.workflow_id}: {exc}")
            return record

    async def stop_remote_job(self, job_id: str) -> None:
        """Stop a remote job and mark its mirror stopped; failures are logged."""
        try:
            await asyncio.wait_for(
                self.remote.stop(job_id), timeout=self.config.remote.request_timeout
            )
        except (RemoteJobError, asyncio.TimeoutError) as exc:
            logger.warning(f"Failed to stop remote job {job_id}: {exc}")
        await self.update_agent(job_id, RemoteStatus.STOPPED)

    async def update_agent(
        self, job_id: str, status: RemoteStatus, summary: str = ""
    ) -> Optional[AgentRecord]:
        """Mirror a job status into its agent record, if one exists."""
        try:
            agent = await self.store.get_agent(job_id)
            if agent is None:
                return None
            updated = agent.model_copy(
                update={
                    "status": status,
                    "summary": summary or agent.summary,
                    "updated_at": now_ms(),
                }
            )
            return await self.store.save_agent(updated)
        except (StoreError, ConcurrencyConflict) as exc:
            logger.warning(f"Could not update agent record {job_id}: {exc}")
            return None

    async def publish(self, record: WorkflowRecord) -> None:
        try:
            message = render_record(self.renderer, record)
            await self.publisher.publish(record, message)
        except Exception:
            logger.exception(f"Failed to publish card for workflow {record.workflow_id}")
