from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Iterable, Protocol

from crewcal.models import (
    AssignmentDay,
    BookingConflict,
    CalendarConnection,
    CalendarSubscription,
    ConfirmationRequest,
    Conflict,
    DayInput,
    ExcludedDate,
    OAuthState,
    Project,
    ProjectAssignment,
    StatusChange,
    SyncedCalendarEvent,
    SyncErrorView,
    SyncSlot,
    UserProfile,
)


class AssignmentRepository(Protocol):
    """Persistence port used by the scheduling and sync components.

    Implementations enforce uniqueness of (project, user) assignments, (assignment, date)
    days and exclusions, (user, provider) connections and (assignment, connection) synced
    events themselves; callers never rely on read-then-write checks for those.
    """

    # projects and profiles
    def save_project(self, project: Project) -> Project: ...

    def get_project(self, project_id: str) -> Project | None: ...

    def get_projects(self, project_ids: Iterable[str]) -> dict[str, Project]: ...

    def save_profile(self, profile: UserProfile) -> UserProfile: ...

    def get_profile(self, user_id: str) -> UserProfile | None: ...

    def get_profiles(self, user_ids: Iterable[str]) -> dict[str, UserProfile]: ...

    # assignments
    def create_assignment(
        self,
        *,
        project_id: str,
        user_id: str,
        booking_status: str,
        notes: str | None = None,
        days: list[DayInput] | None = None,
        changed_by: str | None = None,
    ) -> ProjectAssignment: ...

    def get_assignment(self, assignment_id: str) -> ProjectAssignment | None: ...

    def list_assignments(
        self,
        *,
        user_id: str | None = None,
        project_id: str | None = None,
        statuses: list[str] | None = None,
    ) -> list[ProjectAssignment]: ...

    def delete_assignment(self, assignment_id: str) -> bool: ...

    def update_assignment_status(
        self,
        assignment_id: str,
        new_status: str,
        *,
        changed_by: str | None = None,
        note: str | None = None,
    ) -> str | None: ...

    def list_status_history(self, assignment_id: str) -> list[StatusChange]: ...

    # days
    def add_days(self, assignment_id: str, days: list[DayInput]) -> list[AssignmentDay]: ...

    def get_day(self, day_id: str) -> AssignmentDay | None: ...

    def list_days(
        self,
        assignment_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[AssignmentDay]: ...

    def list_days_for_assignments(
        self,
        assignment_ids: Iterable[str],
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> dict[str, list[AssignmentDay]]: ...

    def get_day_bounds(self, assignment_ids: Iterable[str]) -> dict[str, tuple[date, date]]: ...

    def update_day_times(self, day_id: str, start_time: Any, end_time: Any) -> AssignmentDay | None: ...

    def move_day(self, day_id: str, new_date: date) -> AssignmentDay: ...

    def delete_days(self, day_ids: Iterable[str]) -> int: ...

    def get_assignment_ids_for_days(self, day_ids: Iterable[str]) -> list[str]: ...

    # excluded dates
    def add_excluded_dates(
        self,
        assignment_id: str,
        dates: list[date],
        reason: str | None = None,
    ) -> list[ExcludedDate]: ...

    def get_excluded_date(self, excluded_date_id: str) -> ExcludedDate | None: ...

    def list_excluded_dates(self, assignment_id: str) -> list[ExcludedDate]: ...

    def list_excluded_for_assignments(self, assignment_ids: Iterable[str]) -> dict[str, list[date]]: ...

    def delete_excluded_date(self, excluded_date_id: str) -> bool: ...

    # conflicts
    def record_conflicts(self, user_id: str, assignment_id: str, conflicts: list[Conflict]) -> int: ...

    def get_conflict(self, conflict_id: str) -> BookingConflict | None: ...

    def resolve_conflict(
        self,
        conflict_id: str,
        reason: str,
        overridden_by: str | None = None,
    ) -> BookingConflict | None: ...

    def list_unresolved_conflicts(self, user_id: str | None = None) -> list[BookingConflict]: ...

    # calendar connections
    def save_connection(
        self,
        *,
        user_id: str,
        provider: str,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime,
        external_calendar_id: str = "primary",
        account_email: str | None = None,
    ) -> CalendarConnection: ...

    def get_connection(self, connection_id: str) -> CalendarConnection | None: ...

    def list_connections(self, user_id: str | None = None) -> list[CalendarConnection]: ...

    def update_connection_tokens(
        self,
        connection_id: str,
        *,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime,
    ) -> bool: ...

    def delete_connection(self, connection_id: str) -> bool: ...

    # synced events
    def get_synced_event(self, assignment_id: str, connection_id: str) -> SyncedCalendarEvent | None: ...

    def reserve_sync_slot(self, assignment_id: str, connection_id: str, stale_before: datetime) -> SyncSlot: ...

    def upsert_synced_event(self, assignment_id: str, connection_id: str, external_event_id: str) -> None: ...

    def record_sync_error(
        self, assignment_id: str, connection_id: str, error: str, release_pending: bool = False
    ) -> None: ...

    def delete_synced_event(self, assignment_id: str, connection_id: str) -> bool: ...

    def list_sync_errors(self, connection_ids: Iterable[str], limit: int = 20) -> list[SyncErrorView]: ...

    def clear_sync_error(self, synced_event_id: str) -> bool: ...

    # OAuth states
    def save_oauth_state(self, state: str, user_id: str) -> None: ...

    def pop_oauth_state(self, state: str, max_age: timedelta = ...) -> OAuthState | None: ...

    # iCal subscriptions
    def get_or_create_subscription(
        self,
        user_id: str,
        feed_type: str,
        project_id: str | None = None,
    ) -> CalendarSubscription: ...

    def get_subscription_by_token(self, token: str) -> CalendarSubscription | None: ...

    def list_subscriptions(self, user_id: str) -> list[CalendarSubscription]: ...

    def touch_subscription(self, subscription_id: str) -> None: ...

    def delete_subscription(self, subscription_id: str) -> bool: ...

    # confirmation requests
    def create_confirmation_request(
        self,
        *,
        project_id: str,
        assignment_ids: list[str],
        sent_to_email: str,
        sent_to_name: str | None,
        expires_at: datetime,
    ) -> ConfirmationRequest: ...

    def get_confirmation_request_by_token(self, token: str) -> ConfirmationRequest | None: ...

    def set_confirmation_status(self, request_id: str, status: str, decline_reason: str | None = None) -> None: ...
