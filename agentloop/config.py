from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_LAUNCH_GRACE_SECONDS,
    DEFAULT_MAX_WRITE_ATTEMPTS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    DEFAULT_RATE_LIMIT_PER_MINUTE,
    DEFAULT_REMOTE_BASE_URL,
    DEFAULT_REMOTE_TIMEOUT_SECONDS,
    DEFAULT_STALE_JOB_MAX_AGE_HOURS,
    MIN_POLL_INTERVAL_SECONDS,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis store backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class StoreConfig(BaseModel):
    """Durable store settings."""

    backend: Literal["inmemory", "sqlite", "postgres", "redis"] = "inmemory"
    database_url: Optional[str] = None
    redis: RedisConfig = RedisConfig()


class RemoteConfig(BaseModel):
    """Remote job API settings."""

    backend: Literal["inmemory", "http"] = "inmemory"
    base_url: str = DEFAULT_REMOTE_BASE_URL
    api_key: Optional[str] = None
    request_timeout: float = DEFAULT_REMOTE_TIMEOUT_SECONDS


class AgentLoopConfig(BaseModel):
    """Top-level configuration model."""

    poll_interval_seconds: Optional[int] = None
    enable_context_review: bool = False
    enable_plan_review: bool = True
    restrict_decisions_to_initiator: bool = True
    max_write_attempts: int = DEFAULT_MAX_WRITE_ATTEMPTS
    stale_job_max_age_hours: float = DEFAULT_STALE_JOB_MAX_AGE_HOURS
    launch_grace_seconds: float = DEFAULT_LAUNCH_GRACE_SECONDS
    rate_limit_per_minute: int = DEFAULT_RATE_LIMIT_PER_MINUTE
    planner_system_prompt: Optional[str] = None
    default_repository: Optional[str] = None
    default_branch: str = "main"
    default_model: str = "auto"
    auto_create_pr: bool = True
    store: StoreConfig = StoreConfig()
    remote: RemoteConfig = RemoteConfig()

    def get_poll_interval(self) -> int:
        """Return the poll interval, defaulting to 30 if unset or below minimum."""
        interval = self.poll_interval_seconds
        if interval is None or interval < MIN_POLL_INTERVAL_SECONDS:
            return DEFAULT_POLL_INTERVAL_SECONDS
        return interval

    def validate_settings(self) -> list[str]:
        """Return human-readable problems with the configuration."""
        problems: list[str] = []
        if self.remote.backend == "http" and not self.remote.api_key:
            problems.append("remote API key is required for the http backend")
        if (
            self.poll_interval_seconds is not None
            and self.poll_interval_seconds < MIN_POLL_INTERVAL_SECONDS
        ):
            problems.append(
                f"poll interval must be at least {MIN_POLL_INTERVAL_SECONDS} seconds, "
                f"got {self.poll_interval_seconds}"
            )
        if self.default_repository:
            parts = self.default_repository.split("/")
            if len(parts) != 2 or not all(parts):
                problems.append(
                    "default repository must be in 'owner/repo' format, "
                    f"got {self.default_repository!r}"
                )
        if self.rate_limit_per_minute < 0:
            problems.append("rate limit must not be negative")
        if self.store.backend in ("sqlite", "postgres") and not self.store.database_url:
            problems.append(f"{self.store.backend} store requires database_url")
        return problems


def load_config(path: Optional[str] = None) -> AgentLoopConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to AGENTLOOP_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("AGENTLOOP_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AgentLoopConfig(**data)
    else:
        config = AgentLoopConfig()

    env_db_url = os.getenv("AGENTLOOP_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.store.database_url = env_db_url
    env_api_key = os.getenv("AGENTLOOP_REMOTE_API_KEY")
    if env_api_key:
        config.remote.api_key = env_api_key
    return config
