"""Per-session executor registry.

Each chat session gets exactly one RunExecutor (and so one lock, one loop).
Different sessions run independently.
"""
from __future__ import annotations

import threading
from typing import Callable, Dict, List

from .executor import RunExecutor
from .logging import breadcrumb as _breadcrumb

ExecutorFactory = Callable[[str], RunExecutor]


class SessionRegistry:
    def __init__(self, factory: ExecutorFactory) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._executors: Dict[str, RunExecutor] = {}

    def get(self, session_id: str) -> RunExecutor:
        with self._lock:
            ex = self._executors.get(session_id)
            if ex is None:
                ex = self._factory(session_id)
                self._executors[session_id] = ex
                _breadcrumb(f"registry:create session={session_id}")
            return ex

    def __contains__(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._executors

    def sessions(self) -> List[str]:
        with self._lock:
            return sorted(self._executors)

    def drop(self, session_id: str) -> bool:
        """Forget an idle executor. Busy executors stay registered."""
        with self._lock:
            ex = self._executors.get(session_id)
            if ex is None:
                return False
            if ex.is_busy:
                return False
            del self._executors[session_id]
            return True
