"""Per-outcome mutual exclusion for the supervisory control loop."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class OutcomeLockRegistry:
    """Hand out one re-entrant lock per outcome id.

    An outcome is the unit of mutual exclusion: context-store compaction,
    dependency cycle checks and escalation state changes for one outcome
    never interleave, while different outcomes proceed in parallel.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def lock_for(self, outcome_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(outcome_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[outcome_id] = lock
            return lock

    @contextmanager
    def hold(self, outcome_id: str) -> Iterator[None]:
        lock = self.lock_for(outcome_id)
        with lock:
            yield
