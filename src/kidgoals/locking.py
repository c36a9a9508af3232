"""Per-goal mutual exclusion for KidGoals units of work."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator

from .exceptions import ConcurrencyError


class GoalLockRegistry:
    """Hand out one lock per goal id.

    Work on different goals never contends; work on the same goal is serialised.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, goal_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(goal_id)
            if lock is None:
                lock = self._locks[goal_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, goal_id: str, *, timeout: float) -> Iterator[None]:
        lock = self.lock_for(goal_id)
        if not lock.acquire(timeout=timeout):
            raise ConcurrencyError(
                f"Goal '{goal_id}' is busy; could not acquire its lock within {timeout:g}s. Retry the request."
            )
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, goal_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(goal_id)
        return lock is not None and lock.locked()

    def discard(self, goal_id: str) -> bool:
        """Forget the lock of a goal that will not change again; a held lock is kept."""

        with self._guard:
            lock = self._locks.get(goal_id)
            if lock is None or lock.locked():
                return False
            del self._locks[goal_id]
            return True

    def __contains__(self, goal_id: object) -> bool:
        with self._guard:
            return goal_id in self._locks


__all__ = ["GoalLockRegistry"]
