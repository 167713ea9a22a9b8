"""Per-key coalescing of concurrent work."""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable


class CoalescingGate:
    """Run at most one job per key at a time; fold extra triggers into a re-run.

    A trigger for a key that is already running does not start a second
    worker. It marks the key dirty, and the running worker loops once more
    when it finishes, so the latest state is always processed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._running: set[Hashable] = set()
        self._dirty: set[Hashable] = set()

    def run(self, key: Hashable, job: Callable[[], None]) -> bool:
        """Run *job* for *key*. Returns False if coalesced into an in-flight run."""
        with self._lock:
            if key in self._running:
                self._dirty.add(key)
                return False
            self._running.add(key)

        try:
            while True:
                job()
                with self._lock:
                    if key in self._dirty:
                        self._dirty.discard(key)
                        continue
                    self._running.discard(key)
                    return True
        except BaseException:
            with self._lock:
                self._running.discard(key)
                self._dirty.discard(key)
            raise

    def busy(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._running
