"""In-memory remote job client for testing and local runs."""

from __future__ import annotations

import asyncio
import itertools
from typing import Dict, List, Optional

from ..exceptions import RemoteJobError
from ..models import RemoteStatus
from .base import ConversationMessage, JobRequest, RemoteJob, RemoteJobClient


class InMemoryRemoteJobClient(RemoteJobClient):
    """Scriptable stand-in for the remote job API.

    Jobs start in CREATING and only change when a test calls
    :meth:`set_status`. Failures can be injected per job or for launches.
    """

    def __init__(self) -> None:
        self.jobs: Dict[str, RemoteJob] = {}
        self.requests: Dict[str, JobRequest] = {}
        self.conversations: Dict[str, List[ConversationMessage]] = {}
        self.stopped: List[str] = []
        self.get_calls = 0
        self.fail_get: set[str] = set()
        self.fail_create: Optional[str] = None
        self.delay: float = 0.0
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Test controls
    def set_status(self, job_id: str, status: RemoteStatus, summary: str = "") -> None:
        job = self.jobs[job_id]
        self.jobs[job_id] = job.model_copy(update={"status": status, "summary": summary or job.summary})

    def set_plan(self, job_id: str, text: str) -> None:
        self.conversations[job_id] = [
            ConversationMessage(id="m1", type="user_message", text=self.requests[job_id].prompt),
            ConversationMessage(id="m2", type="assistant_message", text=text),
        ]

    @property
    def launched(self) -> list[JobRequest]:
        return list(self.requests.values())

    # ------------------------------------------------------------------
    # Client API
    async def create(self, request: JobRequest) -> RemoteJob:
        if self.fail_create:
            raise RemoteJobError(self.fail_create, status_code=500, retryable=True)
        async with self._lock:
            job_id = f"job-{next(self._ids)}"
            job = RemoteJob(id=job_id, status=RemoteStatus.CREATING)
            self.jobs[job_id] = job
            self.requests[job_id] = request
        return job

    async def get(self, job_id: str) -> RemoteJob:
        self.get_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if job_id in self.fail_get:
            raise RemoteJobError(f"Remote lookup failed for {job_id}", status_code=503, retryable=True)
        job = self.jobs.get(job_id)
        if job is None:
            raise RemoteJobError(f"Job {job_id} not found", status_code=404)
        return job

    async def stop(self, job_id: str) -> None:
        if job_id not in self.jobs:
            raise RemoteJobError(f"Job {job_id} not found", status_code=404)
        self.stopped.append(job_id)
        self.set_status(job_id, RemoteStatus.STOPPED)

    async def get_conversation(self, job_id: str) -> list[ConversationMessage]:
        return list(self.conversations.get(job_id, []))
