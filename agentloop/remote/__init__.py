"""Remote job client factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AgentLoopConfig, load_config
from .base import ConversationMessage, JobRequest, RemoteJob, RemoteJobClient
from .http import HttpRemoteJobClient
from .inmemory import InMemoryRemoteJobClient


def get_remote_client(
    backend: Optional[str] = None, config: Optional[AgentLoopConfig] = None
) -> RemoteJobClient:
    """Factory function to get the configured remote job client."""

    config = config or load_config()
    backend = (backend or os.getenv("AGENTLOOP_REMOTE") or config.remote.backend).lower()

    if backend == "inmemory":
        return InMemoryRemoteJobClient()
    elif backend == "http":
        if not config.remote.api_key:
            raise ValueError("remote.api_key is required for the http backend")
        return HttpRemoteJobClient(
            api_key=config.remote.api_key,
            base_url=config.remote.base_url,
            timeout=config.remote.request_timeout,
        )
    else:
        raise ValueError(f"Unsupported remote backend: {backend}")


__all__ = [
    "ConversationMessage",
    "JobRequest",
    "RemoteJob",
    "RemoteJobClient",
    "HttpRemoteJobClient",
    "InMemoryRemoteJobClient",
    "get_remote_client",
]
