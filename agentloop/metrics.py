"""In-process request counters."""

from __future__ import annotations

import re
import threading
from typing import Dict

_PATH_NORMALIZERS = [
    (re.compile(r"^/workflows/[^/]+/(revise|stop)$"), r"/workflows/{id}/\1"),
    (re.compile(r"^/workflows/[^/]+$"), "/workflows/{id}"),
]


def normalize_path(path: str) -> str:
    """Collapse identifiers in a request path so counts group by endpoint."""
    path = path or "/"
    for pattern, replacement in _PATH_NORMALIZERS:
        if pattern.match(path):
            return pattern.sub(replacement, path)
    return path


class RequestCounter:
    """Thread-safe request tally keyed by ``"METHOD /path"``."""

    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def record(self, method: str, path: str) -> None:
        key = f"{method.upper()} {normalize_path(path)}"
        with self._lock:
            self._counts[key] = self._counts.get(key, 0) + 1

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def total(self) -> int:
        with self._lock:
            return sum(self._counts.values())
