"""Per-user request rate limiting for the HTTP API."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .constants import DEFAULT_RATE_LIMIT_PER_MINUTE, RATE_LIMIT_WINDOW_SECONDS


@dataclass
class _Window:
    started: float
    count: int


class RateLimiter:
    """Fixed-window request limit keyed by user id.

    Requests without a user id are never limited, and a limit of zero
    disables limiting altogether.
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_RATE_LIMIT_PER_MINUTE,
        window_seconds: float = RATE_LIMIT_WINDOW_SECONDS,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock or time.monotonic
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def allow(self, user_id: Optional[str]) -> bool:
        if not user_id or self.max_requests <= 0:
            return True
        now = self._clock()
        with self._lock:
            window = self._windows.get(user_id)
            if window is None or now - window.started >= self.window_seconds:
                self._prune(now)
                self._windows[user_id] = _Window(started=now, count=1)
                return True
            if window.count >= self.max_requests:
                return False
            window.count += 1
            return True

    def _prune(self, now: float) -> None:
        expired = [
            user_id
            for user_id, window in self._windows.items()
            if now - window.started >= self.window_seconds
        ]
        for user_id in expired:
            del self._windows[user_id]
