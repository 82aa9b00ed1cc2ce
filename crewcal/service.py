from __future__ import annotations

import functools
import logging
import secrets
import uuid
from typing import Any, Callable, Iterable

from crewcal.assignment_days import AssignmentDayManager
from crewcal.booking_status import BookingStatus, transition_to
from crewcal.bulk import BulkOperationCoordinator
from crewcal.config_manager import ConfigManager
from crewcal.confirmations import ConfirmationWorkflow
from crewcal.conflicts import ConflictDetector
from crewcal.errors import CrewcalError, NotFoundError, OAuthError, ValidationError
from crewcal.gantt import GanttAggregator, GanttFilters, group_by_project
from crewcal.ical_feed import ICalFeedService
from crewcal.models import ActionResult, Project, UserProfile, parse_date, require_date
from crewcal.repository import AssignmentRepository
from crewcal.sync_dispatcher import SyncDispatcher
from crewcal.sync_engine import CalendarSyncEngine
from crewcal.token_manager import TokenLifecycleManager


logger = logging.getLogger(__name__)

MICROSOFT_PROVIDER = "microsoft"


def _boundary(method: Callable[..., Any]) -> Callable[..., ActionResult]:
    """Turn a domain call into an ActionResult; domain errors never cross this line."""

    @functools.wraps(method)
    def wrapper(self: "SchedulingService", *args: Any, **kwargs: Any) -> ActionResult:
        try:
            result = method(self, *args, **kwargs)
        except CrewcalError as exc:
            return ActionResult.fail(exc.message, exc.kind)
        except Exception as exc:
            logger.exception("%s failed", method.__name__)
            return ActionResult.fail(str(exc) or type(exc).__name__, "error")
        if isinstance(result, ActionResult):
            return result
        return ActionResult.ok(result)

    return wrapper


class SchedulingService:
    """Operation surface used by the HTTP layer.

    Booking mutations complete locally first and then hand calendar sync to the
    dispatcher; sync failures show up later through ``get_sync_errors``.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        repository: AssignmentRepository,
        token_manager: TokenLifecycleManager,
        sync_engine: CalendarSyncEngine,
        dispatcher: SyncDispatcher,
    ) -> None:
        self.config_manager = config_manager
        self.repository = repository
        self.token_manager = token_manager
        self.sync_engine = sync_engine
        self.dispatcher = dispatcher
        self.conflicts = ConflictDetector(repository)
        self.days = AssignmentDayManager(repository, config_manager.load().schedule)
        self.bulk = BulkOperationCoordinator(repository)
        self.gantt = GanttAggregator(repository)
        self.confirmations = ConfirmationWorkflow(repository)
        self.feeds = ICalFeedService(config_manager, repository)

    # ------------------------------------------------------------------
    # Sync dispatch
    # ------------------------------------------------------------------

    def _dispatch_sync(self, assignment_ids: Iterable[str]) -> None:
        for assignment_id in dict.fromkeys(assignment_ids):
            self.dispatcher.submit(
                f"sync assignment {assignment_id}",
                self.sync_engine.trigger_assignment_sync,
                assignment_id,
            )

    def _dispatch_delete(self, assignment_id: str, user_id: str) -> None:
        self.dispatcher.submit(
            f"delete assignment {assignment_id}",
            self.sync_engine.trigger_assignment_delete,
            assignment_id,
            user_id,
        )

    def _require_assignment(self, assignment_id: str):
        assignment = self.repository.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError("Assignment", assignment_id)
        return assignment

    # ------------------------------------------------------------------
    # Projects and people
    # ------------------------------------------------------------------

    @_boundary
    def save_project(self, data: dict[str, Any]) -> Project:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("Project name is required")
        start_date = parse_date(data.get("start_date"))
        end_date = parse_date(data.get("end_date"))
        if start_date and end_date and start_date > end_date:
            raise ValidationError("Project start date must be on or before its end date")
        project_id = str(data.get("id") or "").strip() or str(uuid.uuid4())
        existed = self.repository.get_project(project_id) is not None
        project = self.repository.save_project(
            Project(
                id=project_id,
                name=name,
                start_date=start_date,
                end_date=end_date,
                sales_order=data.get("sales_order"),
                poc_name=data.get("poc_name"),
                poc_email=data.get("poc_email"),
                poc_phone=data.get("poc_phone"),
                scope_link=data.get("scope_link"),
            )
        )
        if existed:
            self.dispatcher.submit(
                f"sync project {project_id}",
                self.sync_engine.trigger_project_sync,
                project_id,
            )
        return project

    @_boundary
    def save_profile(self, user_id: str, full_name: str | None = None, email: str | None = None) -> UserProfile:
        if not str(user_id or "").strip():
            raise ValidationError("user_id is required")
        return self.repository.save_profile(UserProfile(id=user_id, full_name=full_name, email=email))

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    @_boundary
    def create_assignment(
        self,
        project_id: str,
        user_id: str,
        status: Any = BookingStatus.DRAFT.value,
        notes: str | None = None,
        days: list[Any] | None = None,
        changed_by: str | None = None,
    ) -> dict[str, Any]:
        if not str(user_id or "").strip():
            raise ValidationError("user_id is required")
        target = transition_to(None, status or BookingStatus.DRAFT.value)
        day_inputs = self.days.normalize_days(days or [])
        assignment = self.repository.create_assignment(
            project_id=project_id,
            user_id=user_id,
            booking_status=target.value,
            notes=(notes or "").strip() or None,
            days=day_inputs,
            changed_by=changed_by,
        )
        conflicts = self.conflicts.record_conflicts_for_assignment(assignment)
        self._dispatch_sync([assignment.id])
        return {"assignment": assignment, "conflicts": conflicts}

    @_boundary
    def remove_assignment(self, assignment_id: str) -> dict[str, Any]:
        assignment = self._require_assignment(assignment_id)
        # The delete leg needs the owner; the row is gone once it runs.
        user_id = assignment.user_id
        if not self.repository.delete_assignment(assignment_id):
            raise NotFoundError("Assignment", assignment_id)
        self._dispatch_delete(assignment_id, user_id)
        return {"assignment_id": assignment_id, "removed": True}

    @_boundary
    def cycle_assignment_status(self, assignment_id: str, changed_by: str | None = None) -> dict[str, Any]:
        new_status = self.days.cycle_status(assignment_id, changed_by=changed_by)
        self._dispatch_sync([assignment_id])
        return {"assignment_id": assignment_id, "booking_status": new_status.value}

    @_boundary
    def update_assignment_status(
        self,
        assignment_id: str,
        new_status: Any,
        note: str | None = None,
        changed_by: str | None = None,
    ) -> dict[str, Any]:
        status = self.days.update_status(assignment_id, new_status, note=note, changed_by=changed_by)
        self._dispatch_sync([assignment_id])
        return {"assignment_id": assignment_id, "booking_status": status.value}

    @_boundary
    def bulk_update_assignment_status(
        self,
        assignment_ids: list[str],
        new_status: Any,
        note: str | None = None,
        changed_by: str | None = None,
    ):
        result = self.bulk.bulk_update_status(assignment_ids, new_status, note=note, changed_by=changed_by)
        self._dispatch_sync(result.succeeded)
        return result

    @_boundary
    def get_status_history(self, assignment_id: str):
        self._require_assignment(assignment_id)
        return self.repository.list_status_history(assignment_id)

    # ------------------------------------------------------------------
    # Days and exclusions
    # ------------------------------------------------------------------

    @_boundary
    def add_assignment_days(self, assignment_id: str, days: list[Any]):
        added = self.days.add_days(assignment_id, days)
        self.conflicts.record_conflicts_for_assignment(self._require_assignment(assignment_id))
        self._dispatch_sync([assignment_id])
        return added

    @_boundary
    def update_assignment_day(self, day_id: str, start_time: Any, end_time: Any):
        day = self.days.update_day(day_id, start_time, end_time)
        self._dispatch_sync([day.assignment_id])
        return day

    @_boundary
    def move_assignment_day(self, day_id: str, new_date: Any):
        day = self.days.move_day(day_id, new_date)
        self._dispatch_sync([day.assignment_id])
        return day

    @_boundary
    def remove_assignment_days(self, day_ids: list[str]) -> dict[str, Any]:
        assignment_ids = self.repository.get_assignment_ids_for_days(day_ids)
        removed = self.days.remove_days(day_ids)
        if removed:
            self._dispatch_sync(assignment_ids)
        return {"removed": removed}

    @_boundary
    def add_excluded_dates(self, assignment_id: str, dates: list[Any], reason: str | None = None):
        added = self.days.add_excluded_dates(assignment_id, dates, reason)
        self._dispatch_sync([assignment_id])
        return added

    @_boundary
    def remove_excluded_date(self, excluded_date_id: str):
        removed = self.days.remove_excluded_date(excluded_date_id)
        self._dispatch_sync([removed.assignment_id])
        return removed

    @_boundary
    def bulk_remove_excluded_dates(self, excluded_date_ids: list[str]):
        result, touched = self.bulk.bulk_remove_excluded_dates(excluded_date_ids)
        self._dispatch_sync(touched)
        return result

    # ------------------------------------------------------------------
    # Conflicts and views
    # ------------------------------------------------------------------

    @_boundary
    def check_conflicts(
        self,
        user_id: str,
        start_date: Any,
        end_date: Any,
        exclude_assignment_id: str | None = None,
    ):
        return self.conflicts.find_conflicts(
            user_id,
            require_date(start_date, "start_date"),
            require_date(end_date, "end_date"),
            exclude_assignment_id=exclude_assignment_id,
        )

    @_boundary
    def override_conflict(self, conflict_id: str, reason: str, overridden_by: str | None = None):
        return self.conflicts.override_conflict(conflict_id, reason, overridden_by)

    @_boundary
    def get_unresolved_conflicts(self, user_id: str | None = None):
        return self.conflicts.get_unresolved_conflicts(user_id)

    @_boundary
    def get_gantt_data_for_range(
        self,
        start_date: Any,
        end_date: Any,
        filters: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        rows = self.gantt.aggregate(
            require_date(start_date, "start_date"),
            require_date(end_date, "end_date"),
            GanttFilters.from_dict(filters),
        )
        return {"rows": rows, "projects": group_by_project(rows)}

    # ------------------------------------------------------------------
    # Calendar sync
    # ------------------------------------------------------------------

    @_boundary
    def get_active_connections(self, user_id: str) -> list[dict[str, Any]]:
        return [item.to_public_dict() for item in self.sync_engine.get_active_connections(user_id)]

    @_boundary
    def full_sync_for_user(self, user_id: str):
        return self.sync_engine.full_sync_for_user(user_id)

    @_boundary
    def retry_sync_for_assignment(self, assignment_id: str, user_id: str):
        outcome = self.sync_engine.retry_sync_for_assignment(assignment_id, user_id)
        if not outcome.success:
            return ActionResult.fail(outcome.error or "Sync failed", "integration")
        return outcome

    @_boundary
    def get_sync_errors(self, user_id: str):
        return self.sync_engine.get_sync_errors(user_id)

    @_boundary
    def dismiss_sync_error(self, synced_event_id: str) -> dict[str, Any]:
        self.sync_engine.dismiss_sync_error(synced_event_id)
        return {"dismissed": synced_event_id}

    @_boundary
    def start_calendar_connect(self, user_id: str) -> dict[str, Any]:
        if not str(user_id or "").strip():
            raise ValidationError("user_id is required")
        state = secrets.token_urlsafe(24)
        url = self.token_manager.authorization_url(state)
        self.repository.save_oauth_state(state, user_id)
        return {"authorization_url": url, "state": state}

    @_boundary
    def complete_calendar_connect(self, state: str, code: str) -> dict[str, Any]:
        pending = self.repository.pop_oauth_state(str(state or ""))
        if pending is None:
            raise OAuthError("Invalid or expired OAuth state.")
        return self._connect_calendar(pending.user_id, code)

    @_boundary
    def connect_calendar(self, user_id: str, code: str) -> dict[str, Any]:
        return self._connect_calendar(user_id, code)

    def _connect_calendar(self, user_id: str, code: str) -> dict[str, Any]:
        tokens = self.token_manager.exchange_code(code)
        if not tokens.refresh_token:
            raise OAuthError("Provider did not return a refresh token; offline_access scope is required.")
        config = self.config_manager.load()
        client = self.sync_engine.client_factory(
            tokens.access_token,
            config.microsoft.graph_base_url,
            config.sync.request_timeout_seconds,
        )
        profile = client.get_profile()
        connection = self.repository.save_connection(
            user_id=user_id,
            provider=MICROSOFT_PROVIDER,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=tokens.expires_at,
            account_email=profile.get("email"),
        )
        logger.info("Connected %s calendar for user %s", MICROSOFT_PROVIDER, user_id)
        self.dispatcher.submit(
            f"initial sync for user {user_id}",
            self.sync_engine.full_sync_for_user,
            user_id,
        )
        return connection.to_public_dict()

    @_boundary
    def disconnect_calendar(self, connection_id: str, user_id: str | None = None) -> dict[str, Any]:
        connection = self.repository.get_connection(connection_id)
        if connection is None or (user_id is not None and connection.user_id != user_id):
            raise NotFoundError("Calendar connection", connection_id)
        self.repository.delete_connection(connection_id)
        logger.info("Disconnected calendar connection %s", connection_id)
        return {"connection_id": connection_id, "disconnected": True}

    # ------------------------------------------------------------------
    # Confirmations and feeds
    # ------------------------------------------------------------------

    @_boundary
    def create_confirmation_request(
        self,
        project_id: str,
        assignment_ids: list[str],
        sent_to_email: str,
        sent_to_name: str | None = None,
        changed_by: str | None = None,
    ):
        request, changed = self.confirmations.create_confirmation_request(
            project_id,
            assignment_ids,
            sent_to_email,
            sent_to_name,
            changed_by=changed_by,
        )
        self._dispatch_sync(changed)
        return request

    @_boundary
    def handle_confirmation_response(self, token: str, approved: bool, note: str | None = None):
        request, changed = self.confirmations.handle_confirmation_response(token, approved, note)
        self._dispatch_sync(changed)
        return request

    @_boundary
    def create_feed_subscription(self, user_id: str, feed_type: str, project_id: str | None = None):
        return self.feeds.create_subscription(user_id, feed_type, project_id)

    @_boundary
    def list_feed_subscriptions(self, user_id: str):
        return self.repository.list_subscriptions(user_id)

    @_boundary
    def render_feed(self, token: str) -> str:
        return self.feeds.render_feed(token)
