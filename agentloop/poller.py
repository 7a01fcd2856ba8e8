"""Background reconciliation of remote job status into workflow state."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from . import machine
from .exceptions import AgentLoopError, InvalidTransition, RemoteJobError
from .machine import JobLaunchFailed, RemoteStatusChanged
from .models import JobRole, RemoteStatus, WorkflowRecord, now_ms
from .orchestrator import Orchestrator
from .prompts import extract_plan
from .remote import RemoteJob

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """Summary of a single poll tick."""

    polled: int = 0
    changed: int = 0
    failed: int = 0
    swept: int = 0
    reconciled: int = 0


class Poller:
    """Periodically polls remote jobs of outstanding workflows.

    Each workflow is handled independently: a remote error or timeout for one
    workflow is logged and skipped for the tick without affecting the others.
    Ticks never overlap.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        interval: Optional[float] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.config = orchestrator.config
        self.interval = interval if interval is not None else self.config.get_poll_interval()
        self._tick_lock = asyncio.Lock()
        self._stopping = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.last_report: Optional[TickReport] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def timeout(self) -> float:
        return self.config.remote.request_timeout

    # ------------------------------------------------------------------
    # Tick
    async def run_once(self) -> TickReport:
        async with self._tick_lock:
            report = TickReport()
            outstanding = await self.orchestrator.store.list_outstanding()
            results = await asyncio.gather(
                *(self._poll_safely(record) for record in outstanding)
            )
            report.polled = len(outstanding)
            report.changed = sum(1 for r in results if r is True)
            report.failed = sum(1 for r in results if r is None)
            report.swept = await self.sweep_stale_jobs()
            report.reconciled = await self.reconcile_pending_launches()
            self.last_report = report
            if report.polled:
                logger.debug(
                    f"Poll tick: {report.polled} polled, {report.changed} changed, "
                    f"{report.failed} failed, {report.swept} swept, "
                    f"{report.reconciled} reconciled"
                )
            return report

    async def _poll_safely(self, record: WorkflowRecord) -> Optional[bool]:
        try:
            return await self.poll_workflow(record)
        except asyncio.TimeoutError:
            logger.warning(
                f"Timed out polling job {record.active_job_id} for workflow {record.workflow_id}"
            )
        except AgentLoopError as exc:
            logger.warning(
                f"Failed to poll job {record.active_job_id} for workflow {record.workflow_id}: {exc}"
            )
        except Exception:
            logger.exception(
                f"Unexpected error polling job {record.active_job_id} for workflow {record.workflow_id}"
            )
        return None

    async def poll_workflow(self, record: WorkflowRecord) -> bool:
        """Poll one workflow's job; returns whether the workflow changed."""
        job_id = record.active_job_id
        job = await asyncio.wait_for(self.orchestrator.remote.get(job_id), timeout=self.timeout)
        if job.status.value == record.last_known_remote_status:
            return False

        artifact = ""
        if job.status == RemoteStatus.FINISHED and record.job_role == JobRole.PLANNER:
            artifact = await self._planner_artifact(job)

        result = await self.orchestrator.apply_event(
            record.workflow_id, RemoteStatusChanged(job_id, job.status, artifact)
        )
        await self.orchestrator.update_agent(job_id, job.status, job.summary)
        if result.changed:
            logger.info(
                f"Workflow {record.workflow_id} job {job_id} is {job.status.value}; "
                f"phase {result.record.phase.value}"
            )
        return result.changed

    async def _planner_artifact(self, job: RemoteJob) -> str:
        try:
            messages = await asyncio.wait_for(
                self.orchestrator.remote.get_conversation(job.id), timeout=self.timeout
            )
        except (RemoteJobError, asyncio.TimeoutError) as exc:
            logger.warning(f"Could not fetch conversation for planner job {job.id}: {exc}")
            return job.summary
        return extract_plan(messages) or job.summary

    # ------------------------------------------------------------------
    # Stale jobs
    async def sweep_stale_jobs(self) -> int:
        """Stop workflows whose job has been outstanding longer than the max age."""
        max_age_ms = int(self.config.stale_job_max_age_hours * 3600 * 1000)
        if max_age_ms <= 0:
            return 0
        now = now_ms()
        swept = 0
        for record in await self.orchestrator.store.list_outstanding():
            job_id = record.active_job_id
            try:
                agent = await self.orchestrator.store.get_agent(job_id)
                started = agent.created_at if agent is not None else record.updated_at
                if now - started <= max_age_ms:
                    continue
                logger.warning(
                    f"Job {job_id} of workflow {record.workflow_id} exceeded "
                    f"{self.config.stale_job_max_age_hours}h; stopping"
                )
                result = await self.orchestrator.stop_workflow(
                    record.workflow_id, reason=f"Job {job_id} exceeded the maximum age"
                )
            except AgentLoopError as exc:
                logger.error(f"Failed to stop stale job {job_id}: {exc}")
                continue
            if result.changed:
                swept += 1
        return swept

    # ------------------------------------------------------------------
    # Launches that never completed
    async def reconcile_pending_launches(self) -> int:
        """Fail workflows still waiting for a job launch after the grace period.

        A launch-pending workflow has a phase that expects a job but no job
        attached. That is normal while the launching writer creates the job;
        past the grace period the launch was lost (the attach write failed or
        the process died). Any job still recorded as active for the workflow
        is stopped once the failure is written.
        """
        grace_ms = int(self.config.launch_grace_seconds * 1000)
        now = now_ms()
        reconciled = 0
        for record in await self.orchestrator.store.list_workflows():
            role = machine.pending_launch_role(record)
            if role is None or now - record.updated_at <= grace_ms:
                continue
            workflow_id = record.workflow_id
            logger.warning(
                f"Workflow {workflow_id} has waited for a {role.value} job since "
                f"{record.updated_at}; failing it"
            )
            try:
                result = await self.orchestrator.apply_event(
                    workflow_id, JobLaunchFailed(role, "launch did not complete")
                )
            except InvalidTransition as exc:
                logger.info(f"Workflow {workflow_id} moved on before reconciliation: {exc}")
                continue
            except AgentLoopError as exc:
                logger.error(f"Failed to reconcile workflow {workflow_id}: {exc}")
                continue
            if not result.changed:
                continue
            reconciled += 1
            await self._stop_unattached_jobs(workflow_id)
        return reconciled

    async def _stop_unattached_jobs(self, workflow_id: str) -> None:
        try:
            agents = await self.orchestrator.store.list_active_agents()
        except AgentLoopError as exc:
            logger.error(f"Could not list agents of workflow {workflow_id}: {exc}")
            return
        for agent in agents:
            if agent.workflow_id == workflow_id:
                logger.info(f"Stopping unattached job {agent.job_id} of workflow {workflow_id}")
                await self.orchestrator.stop_remote_job(agent.job_id)

    # ------------------------------------------------------------------
    # Loop
    async def run_forever(self) -> None:
        loop = asyncio.get_running_loop()
        logger.info(f"Poller started with {self.interval}s interval")
        while not self._stopping.is_set():
            started = loop.time()
            try:
                await self.run_once()
            except Exception:
                logger.exception("Poll tick failed")
            elapsed = loop.time() - started
            delay = self.interval - elapsed
            if delay <= 0:
                logger.warning(
                    f"Poll tick took {elapsed:.1f}s, longer than the {self.interval}s interval"
                )
                delay = 0
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
        logger.info("Poller stopped")

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stopping.clear()
        self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
