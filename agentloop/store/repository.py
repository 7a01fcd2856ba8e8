"""Typed access to workflow, agent and settings records on top of a key-value store."""

from __future__ import annotations

import logging
from typing import Optional

from ..constants import AGENT_PREFIX, USER_SETTINGS_PREFIX, WORKFLOW_PREFIX
from ..exceptions import ConcurrencyConflict, WorkflowExistsError
from ..models import AgentRecord, UserSettings, WorkflowRecord
from .base import KeyValueStore

logger = logging.getLogger(__name__)

# Agent and settings records have a single logical writer, so a short
# read-modify-write loop is enough to absorb the rare overlap.
_LATEST_WRITE_ATTEMPTS = 3


def workflow_key(workflow_id: str) -> str:
    return f"{WORKFLOW_PREFIX}{workflow_id}"


def agent_key(job_id: str) -> str:
    return f"{AGENT_PREFIX}{job_id}"


def user_settings_key(user_id: str) -> str:
    return f"{USER_SETTINGS_PREFIX}{user_id}"


class WorkflowStore:
    """Workflow persistence helpers.

    A workflow's ``decision_lock_token`` always mirrors the store version of
    its key, so a record that was read can be written back conditionally with
    ``save_workflow(record)``.
    """

    def __init__(self, kv: KeyValueStore) -> None:
        self.kv = kv

    # ------------------------------------------------------------------
    # Workflows
    async def get_workflow(self, workflow_id: str) -> Optional[WorkflowRecord]:
        value, version = await self.kv.get(workflow_key(workflow_id))
        if value is None:
            return None
        return WorkflowRecord.model_validate({**value, "decision_lock_token": version})

    async def create_workflow(self, record: WorkflowRecord) -> WorkflowRecord:
        """Persist a new workflow; refuses to overwrite an existing one."""
        stored = record.model_copy(update={"decision_lock_token": 1})
        created = await self.kv.put(
            workflow_key(record.workflow_id), stored.model_dump(mode="json"), 0
        )
        if not created:
            raise WorkflowExistsError(record.workflow_id)
        return stored

    async def save_workflow(self, record: WorkflowRecord) -> Optional[WorkflowRecord]:
        """Write ``record`` if nobody wrote since it was read.

        Returns the stored record with its new stamp, or ``None`` when the
        stamp no longer matches (a concurrent writer won).
        """
        expected = record.decision_lock_token
        stored = record.model_copy(update={"decision_lock_token": expected + 1})
        ok = await self.kv.put(
            workflow_key(record.workflow_id), stored.model_dump(mode="json"), expected
        )
        return stored if ok else None

    async def list_workflows(self) -> list[WorkflowRecord]:
        entries = await self.kv.list_by_prefix(WORKFLOW_PREFIX)
        return [
            WorkflowRecord.model_validate({**e.value, "decision_lock_token": e.version})
            for e in entries
        ]

    async def list_outstanding(self) -> list[WorkflowRecord]:
        """Workflows genuinely waiting on a remote job."""
        return [wf for wf in await self.list_workflows() if wf.has_outstanding_job]

    # ------------------------------------------------------------------
    # Agents
    async def get_agent(self, job_id: str) -> Optional[AgentRecord]:
        value, _ = await self.kv.get(agent_key(job_id))
        return AgentRecord.model_validate(value) if value is not None else None

    async def save_agent(self, record: AgentRecord) -> AgentRecord:
        """Create or update an agent mirror; terminal mirrors are never rewritten."""
        key = agent_key(record.job_id)
        for _ in range(_LATEST_WRITE_ATTEMPTS):
            value, version = await self.kv.get(key)
            if value is not None:
                existing = AgentRecord.model_validate(value)
                if not existing.is_active:
                    logger.debug(
                        f"Agent record {record.job_id} is terminal ({existing.status.value}); not updating"
                    )
                    return existing
            if await self.kv.put(key, record.model_dump(mode="json"), version):
                return record
        raise ConcurrencyConflict(record.job_id, _LATEST_WRITE_ATTEMPTS)

    async def list_agents(self) -> list[AgentRecord]:
        entries = await self.kv.list_by_prefix(AGENT_PREFIX)
        return [AgentRecord.model_validate(e.value) for e in entries]

    async def list_active_agents(self) -> list[AgentRecord]:
        return [a for a in await self.list_agents() if a.is_active]

    # ------------------------------------------------------------------
    # User settings
    async def get_user_settings(self, user_id: str) -> Optional[UserSettings]:
        value, _ = await self.kv.get(user_settings_key(user_id))
        return UserSettings.model_validate(value) if value is not None else None

    async def save_user_settings(self, user_id: str, settings: UserSettings) -> None:
        key = user_settings_key(user_id)
        for _ in range(_LATEST_WRITE_ATTEMPTS):
            _, version = await self.kv.get(key)
            if await self.kv.put(key, settings.model_dump(mode="json"), version):
                return
        raise ConcurrencyConflict(user_id, _LATEST_WRITE_ATTEMPTS)
