import itertools
import threading
import time

from crewcal.errors import ProviderError


class FakeCalendarProvider:
    """In-memory stand-in for the remote calendar, shared by every client it hands out."""

    def __init__(self, create_delay: float = 0.0) -> None:
        self.events: dict[str, dict] = {}
        self.created = 0
        self.updated = 0
        self.deleted = 0
        self.fail_with: int | None = None
        self.create_delay = create_delay
        # Set create_gate to hold create calls in flight until the test releases it.
        self.create_gate: threading.Event | None = None
        self.create_started = threading.Event()
        self.active = 0
        self.max_active = 0
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def client_factory(self, access_token: str, base_url: str, timeout_seconds: int) -> "FakeCalendarClient":
        return FakeCalendarClient(self)


class FakeCalendarClient:
    def __init__(self, provider: FakeCalendarProvider) -> None:
        self.provider = provider

    def _enter(self) -> None:
        with self.provider._lock:
            self.provider.active += 1
            self.provider.max_active = max(self.provider.max_active, self.provider.active)

    def _leave(self) -> None:
        with self.provider._lock:
            self.provider.active -= 1

    def _check(self) -> None:
        if self.provider.fail_with is not None:
            raise ProviderError(f"HTTP {self.provider.fail_with}", status_code=self.provider.fail_with)

    def create_event(self, event: dict, calendar_id: str | None = None) -> str:
        self._enter()
        try:
            self.provider.create_started.set()
            if self.provider.create_gate is not None:
                self.provider.create_gate.wait(timeout=5)
            if self.provider.create_delay:
                time.sleep(self.provider.create_delay)
            self._check()
            with self.provider._lock:
                event_id = f"evt-{next(self.provider._ids)}"
                self.provider.events[event_id] = dict(event)
                self.provider.created += 1
            return event_id
        finally:
            self._leave()

    def update_event(self, event_id: str, event: dict) -> None:
        self._check()
        with self.provider._lock:
            if event_id not in self.provider.events:
                raise ProviderError("HTTP 404", status_code=404)
            self.provider.events[event_id] = dict(event)
            self.provider.updated += 1

    def delete_event(self, event_id: str) -> bool:
        self._check()
        with self.provider._lock:
            if self.provider.events.pop(event_id, None) is None:
                return False
            self.provider.deleted += 1
            return True


