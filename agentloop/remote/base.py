"""Remote job client contract and wire models."""

from __future__ import annotations

import abc
from typing import Optional

from pydantic import BaseModel, Field

from ..models import RemoteStatus


class JobRequest(BaseModel):
    """Parameters for launching a remote agent job."""

    prompt: str
    repository: str
    ref: Optional[str] = None
    model: Optional[str] = None
    auto_create_pr: bool = False
    auto_branch: bool = False


class RemoteJob(BaseModel):
    """Remote view of a job."""

    id: str
    status: RemoteStatus
    summary: str = ""
    pr_url: str = ""
    branch_name: str = ""


class ConversationMessage(BaseModel):
    id: str = ""
    type: str = Field(default="assistant_message", description="user_message or assistant_message")
    text: str = ""


class RemoteJobClient(metaclass=abc.ABCMeta):
    """Abstract client for the external job-execution API.

    Calls may fail transiently or return stale data; implementations raise
    :class:`~agentloop.exceptions.RemoteJobError` on failure.
    """

    async def close(self) -> None:
        """Release client resources (no-op by default)."""
        pass

    @abc.abstractmethod
    async def create(self, request: JobRequest) -> RemoteJob:
        """Launch a new job."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get(self, job_id: str) -> RemoteJob:
        """Fetch a job's current status."""
        raise NotImplementedError

    async def get_status(self, job_id: str) -> RemoteStatus:
        return (await self.get(job_id)).status

    @abc.abstractmethod
    async def stop(self, job_id: str) -> None:
        """Stop a running job."""
        raise NotImplementedError

    @abc.abstractmethod
    async def get_conversation(self, job_id: str) -> list[ConversationMessage]:
        """Return the job's conversation history, oldest first."""
        raise NotImplementedError
