from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from crewcal.graph_client import OutlookCalendarClient
from crewcal.models import KeepAliveReport
from crewcal.repository import AssignmentRepository
from crewcal.token_manager import TokenLifecycleManager


logger = logging.getLogger(__name__)


class KeepAliveScheduler:
    """Periodically refreshes and exercises every stored calendar connection.

    One instance is created and started by the application at startup and stopped at
    shutdown.
    """

    def __init__(
        self,
        token_manager: TokenLifecycleManager,
        repository: AssignmentRepository,
        *,
        graph_base_url: str,
        request_timeout_seconds: int = 30,
        interval_seconds: int = 4 * 60 * 60,
        initial_delay_seconds: int = 10,
        client_factory: Callable[[str, str, int], Any] = OutlookCalendarClient,
    ) -> None:
        self.token_manager = token_manager
        self.repository = repository
        self.graph_base_url = graph_base_url
        self.request_timeout_seconds = request_timeout_seconds
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.client_factory = client_factory
        self.last_report: KeepAliveReport | None = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._run_lock = threading.Lock()

    def is_running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_running():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="crewcal-keep-alive", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        self._thread = None

    def _loop(self) -> None:
        if self._stop_event.wait(timeout=self.initial_delay_seconds):
            return
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Keep-alive run failed")
            if self._stop_event.wait(timeout=self.interval_seconds):
                break

    def run_once(self) -> KeepAliveReport:
        with self._run_lock:
            report = KeepAliveReport()
            for connection in self.repository.list_connections():
                try:
                    access_token, connection = self.token_manager.get_valid_token(connection)
                    client = self.client_factory(access_token, self.graph_base_url, self.request_timeout_seconds)
                    client.get_profile()
                    report.kept_alive += 1
                except Exception as exc:
                    report.failed += 1
                    message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
                    report.errors.append(f"{connection.id}: {message}")
                    logger.warning("Keep-alive failed for connection %s: %s", connection.id, message)
            logger.info("Keep-alive finished: %s ok, %s failed", report.kept_alive, report.failed)
            self.last_report = report
            return report
