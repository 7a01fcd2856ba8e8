"""HTTP client for the remote background-agent API."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx
from pydantic import ValidationError

from ..constants import (
    DEFAULT_REMOTE_BASE_URL,
    DEFAULT_REMOTE_TIMEOUT_SECONDS,
    REMOTE_MAX_RETRIES,
)
from ..exceptions import RemoteJobError
from ..utils import retry
from .base import ConversationMessage, JobRequest, RemoteJob, RemoteJobClient

logger = logging.getLogger(__name__)


class HttpRemoteJobClient(RemoteJobClient):
    """Talks to the agents API over HTTPS with basic auth.

    Rate-limited (429) and server (5xx) responses and transport errors are
    retried with exponential backoff; other 4xx responses fail immediately.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_REMOTE_BASE_URL,
        timeout: float = DEFAULT_REMOTE_TIMEOUT_SECONDS,
        max_retries: int = REMOTE_MAX_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(api_key, ""),
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, body: Any = None) -> Any:
        last_error: Optional[RemoteJobError] = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                logger.debug(
                    f"Remote API retry {attempt}/{self.max_retries} for {method} {path}"
                )
                await retry.schedule_retry(attempt, base=2.0)

            try:
                response = await self._client.request(method, path, json=body)
            except httpx.HTTPError as exc:
                last_error = RemoteJobError(f"request failed: {exc}", retryable=True)
                logger.debug(f"Remote API transport error for {method} {path}: {exc}")
                continue

            if response.is_success:
                if not response.content:
                    return {}
                try:
                    return response.json()
                except ValueError as exc:
                    raise RemoteJobError(
                        f"remote API returned invalid JSON for {method} {path}: {exc}",
                        status_code=response.status_code,
                    ) from exc

            message = response.text
            try:
                message = response.json().get("message") or message
            except ValueError:
                pass
            error = RemoteJobError(
                f"remote API error (HTTP {response.status_code}): {message}",
                status_code=response.status_code,
                retryable=retry.is_retryable_status(response.status_code),
            )
            if not error.retryable:
                raise error
            last_error = error

        raise RemoteJobError(
            f"request failed after {self.max_retries} retries: {last_error}",
            status_code=last_error.status_code if last_error else None,
            retryable=True,
        )

    @staticmethod
    def _parse_job(data: Any) -> RemoteJob:
        try:
            target = data.get("target") or {}
            return RemoteJob(
                id=data["id"],
                status=data["status"],
                summary=data.get("summary") or "",
                pr_url=target.get("prUrl") or "",
                branch_name=target.get("branchName") or "",
            )
        except (AttributeError, KeyError, TypeError, ValidationError) as exc:
            raise RemoteJobError(f"unexpected job payload from remote API: {exc}") from exc

    async def create(self, request: JobRequest) -> RemoteJob:
        repository = request.repository
        if "://" not in repository:
            repository = f"https://github.com/{repository}"
        body: dict[str, Any] = {
            "prompt": {"text": request.prompt},
            "source": {"repository": repository},
            "target": {
                "autoCreatePr": request.auto_create_pr,
                "autoBranch": request.auto_branch,
            },
        }
        if request.ref:
            body["source"]["ref"] = request.ref
        if request.model:
            body["model"] = request.model
        data = await self._request("POST", "/v0/agents", body)
        return self._parse_job(data)

    async def get(self, job_id: str) -> RemoteJob:
        data = await self._request("GET", f"/v0/agents/{job_id}")
        return self._parse_job(data)

    async def stop(self, job_id: str) -> None:
        await self._request("POST", f"/v0/agents/{job_id}/stop")

    async def get_conversation(self, job_id: str) -> list[ConversationMessage]:
        data = await self._request("GET", f"/v0/agents/{job_id}/conversation")
        try:
            return [ConversationMessage.model_validate(m) for m in data.get("messages", [])]
        except (AttributeError, ValidationError) as exc:
            raise RemoteJobError(f"unexpected conversation payload for {job_id}: {exc}") from exc
