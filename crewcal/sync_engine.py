from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable

from crewcal.booking_status import is_valid_status
from crewcal.config_manager import ConfigManager
from crewcal.errors import NotFoundError, ProviderError
from crewcal.graph_client import OutlookCalendarClient, build_event_payload
from crewcal.models import (
    AssignmentForSync,
    CalendarConnection,
    FullSyncResult,
    SyncErrorView,
    SyncOutcome,
    TeamMember,
    utc_now,
)
from crewcal.repository import AssignmentRepository
from crewcal.state_store import PENDING_EVENT_ID
from crewcal.token_manager import TokenLifecycleManager


logger = logging.getLogger(__name__)

MAX_SLOT_ATTEMPTS = 3
PENDING_SLOT_TTL = timedelta(seconds=30)

ClientFactory = Callable[[str, str, int], Any]


def _default_client_factory(access_token: str, base_url: str, timeout_seconds: int) -> OutlookCalendarClient:
    return OutlookCalendarClient(access_token, base_url, timeout_seconds)


def _describe(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return message or type(exc).__name__


class CalendarSyncEngine:
    """Pushes assignments to every calendar connection of their user.

    Each (assignment, connection) pair is tracked by one synced-event row: no row means
    create, a row with an external id means update, and removal deletes the external
    event before the row. Failures are written to the row and returned, never raised,
    so booking changes stay valid locally when the provider is unavailable.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        repository: AssignmentRepository,
        token_manager: TokenLifecycleManager,
        client_factory: ClientFactory = _default_client_factory,
        sleep: Callable[[float], None] = time.sleep,
        initial_retry_delay: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.repository = repository
        self.token_manager = token_manager
        self.client_factory = client_factory
        self.sleep = sleep
        self.initial_retry_delay = initial_retry_delay
        self.clock = clock

    def _client(self, connection: CalendarConnection) -> tuple[Any, CalendarConnection]:
        config = self.config_manager.load()
        access_token, connection = self.token_manager.get_valid_token(connection)
        client = self.client_factory(
            access_token,
            config.microsoft.graph_base_url,
            config.sync.request_timeout_seconds,
        )
        return client, connection

    def get_active_connections(self, user_id: str) -> list[CalendarConnection]:
        return self.repository.list_connections(user_id)

    def load_assignment_for_sync(self, assignment_id: str) -> AssignmentForSync | None:
        assignment = self.repository.get_assignment(assignment_id)
        if assignment is None:
            return None
        project = self.repository.get_project(assignment.project_id)
        if project is None:
            return None
        teammates = [
            item
            for item in self.repository.list_assignments(project_id=project.id)
            if item.user_id != assignment.user_id
        ]
        profiles = self.repository.get_profiles([assignment.user_id, *(item.user_id for item in teammates)])
        excluded = self.repository.list_excluded_for_assignments([assignment.id]).get(assignment.id, [])
        return AssignmentForSync(
            assignment=assignment,
            project=project,
            user=profiles.get(assignment.user_id),
            days=self.repository.list_days(assignment.id),
            excluded_dates=excluded,
            team_members=[
                TeamMember(
                    user_id=item.user_id,
                    full_name=profiles[item.user_id].display_name if item.user_id in profiles else "Unknown",
                    booking_status=item.booking_status,
                )
                for item in teammates
            ],
        )

    # ------------------------------------------------------------------
    # Single pair
    # ------------------------------------------------------------------

    def sync_assignment(self, assignment_id: str, connection: CalendarConnection) -> SyncOutcome:
        item = self.load_assignment_for_sync(assignment_id)
        if item is None:
            message = f"Assignment not found: {assignment_id}"
            self.repository.record_sync_error(assignment_id, connection.id, message)
            return SyncOutcome(success=False, error=message)
        return self._sync_item(item, connection)

    def _sync_item(self, item: AssignmentForSync, connection: CalendarConnection) -> SyncOutcome:
        assignment_id = item.assignment.id
        owns_slot = False
        try:
            config = self.config_manager.load()
            payload = build_event_payload(item, config.sync.timezone, config.sync.app_base_url)
            client, connection = self._client(connection)
            for attempt in range(MAX_SLOT_ATTEMPTS):
                slot = self.repository.reserve_sync_slot(
                    assignment_id,
                    connection.id,
                    stale_before=self.clock() - PENDING_SLOT_TTL,
                )
                if slot.existing_event_id:
                    event_id = self._update_or_recreate(client, connection, slot.existing_event_id, payload)
                    self.repository.upsert_synced_event(assignment_id, connection.id, event_id)
                    return SyncOutcome(success=True, event_id=event_id)
                if slot.is_new:
                    owns_slot = True
                    event_id = client.create_event(payload, connection.external_calendar_id)
                    self.repository.upsert_synced_event(assignment_id, connection.id, event_id)
                    return SyncOutcome(success=True, event_id=event_id)

                # Another worker is creating this event; wait for it to finish.
                delay = self.initial_retry_delay * (2**attempt)
                logger.debug(
                    "Sync slot pending for assignment %s, retry %s/%s in %.1fs",
                    assignment_id,
                    attempt + 1,
                    MAX_SLOT_ATTEMPTS,
                    delay,
                )
                self.sleep(delay)
                existing = self.repository.get_synced_event(assignment_id, connection.id)
                if existing and existing.external_event_id and existing.external_event_id != PENDING_EVENT_ID:
                    client.update_event(existing.external_event_id, payload)
                    self.repository.upsert_synced_event(assignment_id, connection.id, existing.external_event_id)
                    return SyncOutcome(success=True, event_id=existing.external_event_id)
            raise RuntimeError("Failed to acquire sync slot after maximum retries")
        except Exception as exc:
            message = _describe(exc)
            logger.warning(
                "Calendar sync failed for assignment %s on connection %s: %s",
                assignment_id,
                connection.id,
                message,
            )
            self.repository.record_sync_error(assignment_id, connection.id, message, release_pending=owns_slot)
            return SyncOutcome(success=False, error=message)

    @staticmethod
    def _update_or_recreate(
        client: Any,
        connection: CalendarConnection,
        event_id: str,
        payload: dict[str, Any],
    ) -> str:
        try:
            client.update_event(event_id, payload)
            return event_id
        except ProviderError as exc:
            if not exc.is_not_found:
                raise
        # Removed on the provider side; recreate so the booking stays visible.
        logger.info("External event %s no longer exists, recreating", event_id)
        return client.create_event(payload, connection.external_calendar_id)

    def delete_assignment_event(self, assignment_id: str, connection: CalendarConnection) -> SyncOutcome:
        """Remove the external event for a pair using only the two ids."""
        try:
            existing = self.repository.get_synced_event(assignment_id, connection.id)
            event_id = existing.external_event_id if existing else None
            if event_id and event_id != PENDING_EVENT_ID:
                client, connection = self._client(connection)
                if not client.delete_event(event_id):
                    logger.info("External event %s was already removed", event_id)
            self.repository.delete_synced_event(assignment_id, connection.id)
            return SyncOutcome(success=True, event_id=event_id)
        except Exception as exc:
            message = _describe(exc)
            logger.warning(
                "Calendar delete failed for assignment %s on connection %s: %s",
                assignment_id,
                connection.id,
                message,
            )
            self.repository.record_sync_error(assignment_id, connection.id, message)
            return SyncOutcome(success=False, error=message)

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    @staticmethod
    def _run_all(calls: list[Callable[[], SyncOutcome]]) -> list[SyncOutcome]:
        if not calls:
            return []
        with ThreadPoolExecutor(max_workers=len(calls), thread_name_prefix="crewcal-sync") as executor:
            futures = [executor.submit(call) for call in calls]
            return [future.result() for future in futures]

    def trigger_assignment_sync(self, assignment_id: str) -> list[SyncOutcome]:
        item = self.load_assignment_for_sync(assignment_id)
        if item is None:
            logger.info("Skipping sync for missing assignment %s", assignment_id)
            return []
        connections = self.get_active_connections(item.assignment.user_id)
        if not item.booked_dates() or not is_valid_status(item.assignment.booking_status):
            # Nothing left to show: make sure no stale event remains.
            return self._run_all(
                [lambda c=c: self.delete_assignment_event(assignment_id, c) for c in connections]
            )
        return self._run_all([lambda c=c: self._sync_item(item, c) for c in connections])

    def trigger_assignment_delete(self, assignment_id: str, user_id: str) -> list[SyncOutcome]:
        connections = self.get_active_connections(user_id)
        return self._run_all([lambda c=c: self.delete_assignment_event(assignment_id, c) for c in connections])

    def trigger_project_sync(self, project_id: str) -> int:
        """Resync every assignment of a project, e.g. after its dates or contacts changed."""
        assignments = self.repository.list_assignments(project_id=project_id)
        for assignment in assignments:
            self.trigger_assignment_sync(assignment.id)
        return len(assignments)

    def full_sync_for_user(self, user_id: str) -> FullSyncResult:
        connections = self.get_active_connections(user_id)
        if not connections:
            return FullSyncResult(errors=["No calendar connections found"])

        items: list[AssignmentForSync] = []
        for assignment in self.repository.list_assignments(user_id=user_id):
            if not is_valid_status(assignment.booking_status):
                continue
            item = self.load_assignment_for_sync(assignment.id)
            if item is not None and item.booked_dates():
                items.append(item)

        tasks = [(connection, item) for connection in connections for item in items]
        config = self.config_manager.load()
        batch_size = config.sync.batch_size
        result = FullSyncResult()
        all_errors: list[str] = []
        with ThreadPoolExecutor(max_workers=batch_size, thread_name_prefix="crewcal-full-sync") as executor:
            for start in range(0, len(tasks), batch_size):
                batch = tasks[start : start + batch_size]
                futures = [executor.submit(self._sync_item, item, connection) for connection, item in batch]
                # The whole batch settles before the next one starts.
                for (connection, item), future in zip(batch, futures):
                    try:
                        outcome = future.result()
                    except Exception as exc:
                        logger.exception(
                            "Full sync task crashed for assignment %s on connection %s",
                            item.assignment.id,
                            connection.id,
                        )
                        outcome = SyncOutcome(success=False, error=_describe(exc))
                    if outcome.success:
                        result.synced += 1
                    else:
                        result.failed += 1
                        all_errors.append(f"{item.project.name}: {outcome.error}")
                result.batches += 1
        result.errors = all_errors[: config.sync.max_reported_errors]
        logger.info(
            "Full sync for user %s: %s synced, %s failed in %s batch(es)",
            user_id,
            result.synced,
            result.failed,
            result.batches,
        )
        return result

    def retry_sync_for_assignment(self, assignment_id: str, user_id: str) -> SyncOutcome:
        item = self.load_assignment_for_sync(assignment_id)
        if item is None or item.assignment.user_id != user_id:
            raise NotFoundError("Assignment", assignment_id)
        connections = self.get_active_connections(user_id)
        if not connections:
            return SyncOutcome(success=False, error="No calendar connections found")
        outcomes = self._run_all([lambda c=c: self._sync_item(item, c) for c in connections])
        for outcome in outcomes:
            if outcome.success:
                return outcome
        return SyncOutcome(success=False, error=outcomes[0].error)

    # ------------------------------------------------------------------
    # Error visibility
    # ------------------------------------------------------------------

    def get_sync_errors(self, user_id: str) -> list[SyncErrorView]:
        connection_ids = [item.id for item in self.get_active_connections(user_id)]
        limit = self.config_manager.load().sync.max_reported_errors
        return self.repository.list_sync_errors(connection_ids, limit=limit)

    def dismiss_sync_error(self, synced_event_id: str) -> None:
        if not self.repository.clear_sync_error(synced_event_id):
            raise NotFoundError("Synced event", synced_event_id)
