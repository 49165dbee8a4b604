"""Session registry — live per-question runtimes behind per-key locks.

Each open (project_id, question_id) session has one SessionRuntime:
its scheduler, its quality monitor, its reviewer progress tracker and
a re-entrant lock. Every read or write against one runtime happens
while holding that runtime's lock, so decisions for the same question
are linearised while different questions proceed in parallel.

The registry's own lock only guards the mapping itself.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional

from peereval.errors import NotFoundError
from peereval.models.session import SessionKey, SessionRecord
from peereval.quality.monitor import QualityMonitor
from peereval.scheduling.scheduler import PairScheduler
from peereval.session.coordinator import ReviewerProgressTracker


@dataclass
class SessionRuntime:
    """Live state for one open question session."""
    record: SessionRecord
    scheduler: PairScheduler
    monitor: QualityMonitor
    progress: ReviewerProgressTracker
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def key(self) -> SessionKey:
        return self.record.key


class SessionRegistry:
    """Thread-safe map from (project_id, question_id) to SessionRuntime.

    Usage:
        registry.put(runtime)
        with registry.locked(("proj-1", "q1")) as runtime:
            pair = runtime.scheduler.next_pair("s1")
    """

    def __init__(self) -> None:
        self._runtimes: dict[SessionKey, SessionRuntime] = {}
        self._lock = threading.Lock()

    def put(self, runtime: SessionRuntime) -> Optional[SessionRuntime]:
        """Register a runtime, returning the one it replaced (if any)."""
        with self._lock:
            previous = self._runtimes.get(runtime.key)
            self._runtimes[runtime.key] = runtime
            return previous

    def find(self, key: SessionKey) -> Optional[SessionRuntime]:
        with self._lock:
            return self._runtimes.get(key)

    def get(self, key: SessionKey) -> SessionRuntime:
        runtime = self.find(key)
        if runtime is None:
            raise NotFoundError(f"No live session for project {key[0]}, question {key[1]}")
        return runtime

    def pop(self, key: SessionKey) -> Optional[SessionRuntime]:
        with self._lock:
            return self._runtimes.pop(key, None)

    def keys(self) -> list[SessionKey]:
        with self._lock:
            return list(self._runtimes)

    @contextmanager
    def locked(self, key: SessionKey) -> Iterator[SessionRuntime]:
        """Yield the runtime for key while holding its lock.

        Raises NotFoundError if no runtime is registered, or if it was
        removed while the caller waited for the lock.
        """
        runtime = self.get(key)
        with runtime.lock:
            if self.find(key) is not runtime:
                raise NotFoundError(
                    f"Session for project {key[0]}, question {key[1]} was closed"
                )
            yield runtime

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._runtimes)
