"""File watcher: filesystem events → Debouncer → per-root reconcile.

Two background threads:
  - an event thread running ``watchfiles.watch`` over the shared and ghost
    trees, feeding changed paths into a Debouncer;
  - a periodic thread running a full reconcile every ``interval_seconds``,
    which catches anything the event source missed.

Both only ever call into the Reconciler, which coalesces overlapping runs
per root, so bursts of events never start parallel passes over one root.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from pathlib import Path

import watchfiles
from watchfiles import Change, DefaultFilter

from lorebase.config import ReconcileCfg
from lorebase.ingest.reconciler import Reconciler
from lorebase.paths import Layout, ScopeRoot, is_skipped

logger = logging.getLogger(__name__)


class Debouncer:
    """Collect paths and hand them to *callback* once per quiet window.

    The first path after a flush starts a timer of *window_s* seconds; every
    path added before it fires joins the same batch.
    """

    def __init__(self, window_s: float, callback: Callable[[set[Path]], None]) -> None:
        self._window = window_s
        self._callback = callback
        self._lock = threading.Lock()
        self._pending: set[Path] = set()
        self._timer: threading.Timer | None = None
        self._stopped = False

    def add(self, paths: Iterable[Path | str]) -> None:
        with self._lock:
            if self._stopped:
                return
            self._pending.update(Path(p) for p in paths)
            if self._pending and self._timer is None:
                self._timer = threading.Timer(self._window, self.flush)
                self._timer.daemon = True
                self._timer.start()

    def flush(self) -> None:
        """Deliver the pending batch now (also called by the timer)."""
        with self._lock:
            batch, self._pending = self._pending, set()
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if batch:
            self._callback(batch)

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            self._pending.clear()
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)


class _ScopeFilter(DefaultFilter):
    """Pass only events for indexable files inside a scope root."""

    def __init__(self, layout: Layout) -> None:
        super().__init__()
        self._layout = layout

    def __call__(self, change: Change, path: str) -> bool:
        if not super().__call__(change, path):
            return False
        root = self._layout.root_of(path)
        if root is None:
            return False
        resolved = Path(path).resolve()
        return resolved == root.path or not is_skipped(resolved.relative_to(root.path))


class Watcher:
    """Keep the index live while the process runs.

    Args:
        reconciler: Reconciler shared with the engine.
        layout: Corpus layout; the shared and ghosts trees are watched.
        config: Debounce window and periodic interval.
    """

    def __init__(
        self, reconciler: Reconciler, layout: Layout, config: ReconcileCfg | None = None
    ) -> None:
        self._reconciler = reconciler
        self._layout = layout
        self._config = config or ReconcileCfg()
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._debouncer = Debouncer(self._config.debounce_ms / 1000, self._on_batch)

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> Watcher:
        if self.running:
            return self
        self._layout.ensure()
        self._layout.ghosts_dir.mkdir(parents=True, exist_ok=True)
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._watch_loop, name="lorebase-watch", daemon=True),
            threading.Thread(target=self._periodic_loop, name="lorebase-periodic", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Watching %s", self._layout.data_root)
        return self

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop.set()
        self._debouncer.stop()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Watcher stopped")

    def __enter__(self) -> Watcher:
        return self.start()

    def __exit__(self, *args: object) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    def _watch_loop(self) -> None:
        targets = [self._layout.shared_dir, self._layout.ghosts_dir]
        for changes in watchfiles.watch(
            *targets,
            watch_filter=_ScopeFilter(self._layout),
            debounce=self._config.debounce_ms,
            stop_event=self._stop,
            recursive=True,
            raise_interrupt=False,
        ):
            self._debouncer.add(path for _, path in changes)

    def _periodic_loop(self) -> None:
        while not self._stop.wait(self._config.interval_seconds):
            try:
                self._reconciler.reconcile_all()
            except Exception:
                logger.exception("Periodic reconcile failed")

    def _on_batch(self, paths: set[Path]) -> None:
        roots: dict[Path, ScopeRoot] = {}
        for path in paths:
            root = self._layout.root_of(path)
            if root is not None:
                roots.setdefault(root.path, root)
        for root in roots.values():
            if self._stop.is_set():
                return
            try:
                report = self._reconciler.reconcile_root(root)
            except Exception:
                logger.exception("Reconcile of %s failed", root.label)
                continue
            if report.writes:
                logger.info(
                    "%s: %d indexed, %d deleted", root.label, report.indexed, report.deleted
                )
