"""
Best-effort replication to the non-primary store.

Mutations enqueue a task onto a bounded queue drained by one daemon thread.
Enqueueing never blocks: a full queue drops the task with a warning. A
failing task is logged and counted, never retried and never raised to the
request that caused it.
"""

import logging
import queue
import threading
from typing import Callable, Optional, Sequence

from storage.base import Filter, TABLE_CONFLICT_KEYS

logger = logging.getLogger(__name__)

_STOP = object()


class MirrorQueue:
    def __init__(self, maxsize: int = 1000, name: str = "store-mirror"):
        self._queue: "queue.Queue" = queue.Queue(maxsize=max(1, int(maxsize)))
        self._name = name
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.processed = 0
        self.failed = 0
        self.dropped = 0
        self.last_error: Optional[str] = None

    def start(self) -> None:
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def enqueue(self, task_name: str, fn: Callable[[], None]) -> bool:
        self.start()
        try:
            self._queue.put_nowait((task_name, fn))
        except queue.Full:
            with self._lock:
                self.dropped += 1
            logger.warning("Mirror queue full, dropping task %s", task_name)
            return False
        return True

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                task_name, fn = item
                try:
                    fn()
                except Exception as exc:  # noqa: BLE001
                    with self._lock:
                        self.failed += 1
                        self.last_error = f"{task_name}: {exc}"
                    logger.exception("Mirror task %s failed", task_name)
                else:
                    with self._lock:
                        self.processed += 1
            finally:
                self._queue.task_done()

    def flush(self) -> None:
        """Block until every queued task has run (tests, shutdown)."""
        if self._thread is not None:
            self._queue.join()

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self._queue.put(_STOP)
        thread.join(timeout)

    def stats(self) -> dict:
        with self._lock:
            return {
                "pending": self._queue.qsize(),
                "processed": self.processed,
                "failed": self.failed,
                "dropped": self.dropped,
                "last_error": self.last_error,
            }


class Replicator:
    """
    Turns "these rows changed on the primary" into mirror tasks. Each task
    re-reads the scope from the primary when it runs, so the secondary
    converges on the latest primary state even if tasks overlap.
    """

    def __init__(self, primary, secondary, mirror: Optional[MirrorQueue]):
        self.primary = primary
        self.secondary = secondary
        self.mirror = mirror

    @property
    def enabled(self) -> bool:
        return self.secondary is not None and self.mirror is not None

    def sync_scope(self, table: str, filters: Sequence[Filter]) -> None:
        """Secondary rows matching ``filters`` become the primary's (upsert or delete)."""
        if not self.enabled:
            return
        filters = list(filters)

        def task():
            rows = self.primary.fetch_rows(table, filters)
            if rows:
                self.secondary.upsert_rows(table, rows, TABLE_CONFLICT_KEYS[table])
            else:
                self.secondary.delete_rows(table, filters)

        self.mirror.enqueue(f"{self.secondary.name}:{table}.sync", task)

    def replace_scope(self, table: str, filters: Sequence[Filter]) -> None:
        """Snapshot rewrite: delete the secondary's scope, re-insert the primary's rows."""
        if not self.enabled:
            return
        filters = list(filters)

        def task():
            rows = self.primary.fetch_rows(table, filters)
            self.secondary.replace_rows(table, filters, rows)

        self.mirror.enqueue(f"{self.secondary.name}:{table}.replace", task)
