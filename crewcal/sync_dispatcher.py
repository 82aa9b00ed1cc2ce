from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable


logger = logging.getLogger(__name__)


class SyncDispatcher:
    """Background queue for calendar sync work triggered by booking changes.

    Submitting returns immediately. A failing task is logged and never reaches the
    caller that triggered it.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="crewcal-dispatch")
        self._pending: set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, description: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future | None:
        with self._lock:
            if self._closed:
                logger.warning("Dispatcher is shut down, dropping task: %s", description)
                return None
            future = self._executor.submit(self._run, description, fn, *args, **kwargs)
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    @staticmethod
    def _run(description: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception:
            logger.exception("Background task failed: %s", description)
            return None

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted task has finished; False on timeout."""
        with self._lock:
            snapshot = list(self._pending)
        if not snapshot:
            return True
        _, not_done = wait(snapshot, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_tasks: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait_for_tasks)
