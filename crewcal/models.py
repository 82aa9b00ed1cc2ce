from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any

from crewcal.errors import ValidationError


DEFAULT_SCOPES = [
    "openid",
    "profile",
    "email",
    "offline_access",
    "Calendars.ReadWrite",
    "User.Read",
]


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def parse_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError as exc:
        raise ValidationError(f"Invalid date format (YYYY-MM-DD): {value!r}") from exc


def require_date(value: str | date | None, field_name: str = "date") -> date:
    parsed = parse_date(value)
    if parsed is None:
        raise ValidationError(f"{field_name} is required")
    return parsed


def parse_time(value: str | time | None) -> time | None:
    if value is None:
        return None
    if isinstance(value, time):
        return value.replace(microsecond=0)
    text = str(value).strip()
    if not text:
        return None
    parts = text.split(":")
    if len(parts) not in (2, 3) or not all(part.isdigit() for part in parts):
        raise ValidationError(f"Invalid time format (HH:MM or HH:MM:SS): {value!r}")
    try:
        return time(*(int(part) for part in parts))
    except ValueError as exc:
        raise ValidationError(f"Invalid time: {value!r}") from exc


def serialize_time(value: time | None) -> str | None:
    if value is None:
        return None
    return value.strftime("%H:%M:%S")


def date_range(start: date, end: date) -> list[date]:
    days: list[date] = []
    current = start
    while current <= end:
        days.append(current)
        current += timedelta(days=1)
    return days


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class MicrosoftConfig:
    client_id: str = ""
    client_secret: str = ""
    tenant_id: str = "common"
    redirect_uri: str = ""
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    authority_url: str = "https://login.microsoftonline.com"
    graph_base_url: str = "https://graph.microsoft.com/v1.0"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MicrosoftConfig":
        data = data or {}
        raw_scopes = data.get("scopes", DEFAULT_SCOPES)
        if isinstance(raw_scopes, str):
            raw_scopes = raw_scopes.split()
        scopes = [str(x).strip() for x in raw_scopes or [] if str(x).strip()]
        return cls(
            client_id=str(data.get("client_id", "")).strip(),
            client_secret=str(data.get("client_secret", "")).strip(),
            tenant_id=str(data.get("tenant_id", "common")).strip() or "common",
            redirect_uri=str(data.get("redirect_uri", "")).strip(),
            scopes=scopes or list(DEFAULT_SCOPES),
            authority_url=str(data.get("authority_url", "https://login.microsoftonline.com")).strip().rstrip("/")
            or "https://login.microsoftonline.com",
            graph_base_url=str(data.get("graph_base_url", "https://graph.microsoft.com/v1.0")).strip().rstrip("/")
            or "https://graph.microsoft.com/v1.0",
        )

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)


@dataclass
class SyncConfig:
    batch_size: int = 5
    request_timeout_seconds: int = 30
    repository_timeout_seconds: int = 30
    timezone: str = "UTC"
    app_base_url: str = "http://localhost:8080"
    max_reported_errors: int = 20
    dispatch_workers: int = 4

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            batch_size=max(1, int(data.get("batch_size", 5))),
            request_timeout_seconds=max(1, int(data.get("request_timeout_seconds", 30))),
            repository_timeout_seconds=max(1, int(data.get("repository_timeout_seconds", 30))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            app_base_url=str(data.get("app_base_url", "http://localhost:8080")).strip().rstrip("/"),
            max_reported_errors=max(1, int(data.get("max_reported_errors", 20))),
            dispatch_workers=max(1, int(data.get("dispatch_workers", 4))),
        )


@dataclass
class KeepAliveConfig:
    enabled: bool = True
    interval_seconds: int = 4 * 60 * 60
    initial_delay_seconds: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "KeepAliveConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", True)),
            interval_seconds=max(60, int(data.get("interval_seconds", 4 * 60 * 60))),
            initial_delay_seconds=max(0, int(data.get("initial_delay_seconds", 10))),
        )


@dataclass
class ScheduleConfig:
    default_start_time: str = "07:00"
    default_end_time: str = "16:00"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ScheduleConfig":
        data = data or {}
        return cls(
            default_start_time=str(data.get("default_start_time", "07:00")).strip() or "07:00",
            default_end_time=str(data.get("default_end_time", "16:00")).strip() or "16:00",
        )


@dataclass
class AppConfig:
    microsoft: MicrosoftConfig = field(default_factory=MicrosoftConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    keep_alive: KeepAliveConfig = field(default_factory=KeepAliveConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            microsoft=MicrosoftConfig.from_dict(data.get("microsoft")),
            sync=SyncConfig.from_dict(data.get("sync")),
            keep_alive=KeepAliveConfig.from_dict(data.get("keep_alive")),
            schedule=ScheduleConfig.from_dict(data.get("schedule")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


# ---------------------------------------------------------------------------
# Booking records
# ---------------------------------------------------------------------------


@dataclass
class Project:
    id: str
    name: str
    start_date: date | None = None
    end_date: date | None = None
    sales_order: str | None = None
    poc_name: str | None = None
    poc_email: str | None = None
    poc_phone: str | None = None
    scope_link: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_date"] = self.start_date.isoformat() if self.start_date else None
        payload["end_date"] = self.end_date.isoformat() if self.end_date else None
        payload["created_at"] = serialize_datetime(self.created_at)
        return payload


@dataclass
class UserProfile:
    id: str
    full_name: str | None = None
    email: str | None = None

    @property
    def display_name(self) -> str:
        return self.full_name or self.email or "Unknown"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ProjectAssignment:
    id: str
    project_id: str
    user_id: str
    booking_status: str
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "booking_status": self.booking_status,
            "notes": self.notes,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }


@dataclass
class AssignmentDay:
    id: str
    assignment_id: str
    work_date: date
    start_time: time
    end_time: time

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "work_date": self.work_date.isoformat(),
            "start_time": serialize_time(self.start_time),
            "end_time": serialize_time(self.end_time),
        }


@dataclass
class DayInput:
    work_date: date
    start_time: time
    end_time: time


@dataclass
class ExcludedDate:
    id: str
    assignment_id: str
    excluded_date: date
    reason: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "excluded_date": self.excluded_date.isoformat(),
            "reason": self.reason,
            "created_at": serialize_datetime(self.created_at),
        }


@dataclass
class StatusChange:
    id: str
    assignment_id: str
    old_status: str | None
    new_status: str
    changed_by: str | None = None
    note: str | None = None
    changed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["changed_at"] = serialize_datetime(self.changed_at)
        return payload


@dataclass
class Conflict:
    assignment_id: str
    project_id: str
    project_name: str
    overlap_start: date
    overlap_end: date
    conflict_dates: list[date] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "assignment_id": self.assignment_id,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "overlap_start": self.overlap_start.isoformat(),
            "overlap_end": self.overlap_end.isoformat(),
            "conflict_dates": [x.isoformat() for x in self.conflict_dates],
        }


@dataclass
class BookingConflict:
    id: str
    user_id: str
    assignment_id_1: str
    assignment_id_2: str
    conflict_date: date
    override_reason: str | None = None
    overridden_by: str | None = None
    overridden_at: datetime | None = None
    is_resolved: bool = False
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["conflict_date"] = self.conflict_date.isoformat()
        payload["overridden_at"] = serialize_datetime(self.overridden_at)
        payload["created_at"] = serialize_datetime(self.created_at)
        return payload


# ---------------------------------------------------------------------------
# External calendar records
# ---------------------------------------------------------------------------


@dataclass
class CalendarConnection:
    id: str
    user_id: str
    provider: str
    access_token: str
    refresh_token: str
    token_expires_at: datetime
    external_calendar_id: str = "primary"
    account_email: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "provider": self.provider,
            "token_expires_at": serialize_datetime(self.token_expires_at),
            "external_calendar_id": self.external_calendar_id,
            "account_email": self.account_email,
            "created_at": serialize_datetime(self.created_at),
            "updated_at": serialize_datetime(self.updated_at),
        }


@dataclass
class SyncedCalendarEvent:
    id: str
    assignment_id: str
    connection_id: str
    external_event_id: str | None
    last_synced_at: datetime | None = None
    sync_error: str | None = None


@dataclass
class SyncSlot:
    is_new: bool
    existing_event_id: str | None
    is_pending: bool


@dataclass
class SyncErrorView:
    id: str
    assignment_id: str
    project_name: str
    error: str
    last_synced_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "project_name": self.project_name,
            "error": self.error,
            "last_synced_at": serialize_datetime(self.last_synced_at),
        }


@dataclass
class TeamMember:
    user_id: str
    full_name: str
    booking_status: str


@dataclass
class AssignmentForSync:
    assignment: ProjectAssignment
    project: Project
    user: UserProfile | None = None
    days: list[AssignmentDay] = field(default_factory=list)
    excluded_dates: list[date] = field(default_factory=list)
    team_members: list[TeamMember] = field(default_factory=list)

    def booked_dates(self) -> list[date]:
        if self.days:
            return sorted(day.work_date for day in self.days)
        if self.project.start_date and self.project.end_date:
            excluded = set(self.excluded_dates)
            return [d for d in date_range(self.project.start_date, self.project.end_date) if d not in excluded]
        return []


@dataclass
class SyncOutcome:
    success: bool
    event_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FullSyncResult:
    synced: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    batches: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class KeepAliveReport:
    kept_alive: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kept_alive": self.kept_alive,
            "failed": self.failed,
            "errors": list(self.errors),
            "run_at": serialize_datetime(self.run_at),
        }


@dataclass
class OAuthState:
    state: str
    user_id: str
    created_at: datetime


@dataclass
class CalendarSubscription:
    id: str
    user_id: str
    feed_type: str
    project_id: str | None
    token: str
    created_at: datetime | None = None
    last_accessed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "feed_type": self.feed_type,
            "project_id": self.project_id,
            "token": self.token,
            "created_at": serialize_datetime(self.created_at),
            "last_accessed_at": serialize_datetime(self.last_accessed_at),
        }


@dataclass
class ConfirmationRequest:
    id: str
    project_id: str
    token: str
    sent_to_email: str
    sent_to_name: str | None
    sent_at: datetime
    expires_at: datetime
    status: str = "pending"
    responded_at: datetime | None = None
    decline_reason: str | None = None
    assignment_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "token": self.token,
            "sent_to_email": self.sent_to_email,
            "sent_to_name": self.sent_to_name,
            "sent_at": serialize_datetime(self.sent_at),
            "expires_at": serialize_datetime(self.expires_at),
            "status": self.status,
            "responded_at": serialize_datetime(self.responded_at),
            "decline_reason": self.decline_reason,
            "assignment_ids": list(self.assignment_ids),
        }


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class BulkFailure:
    id: str
    reason: str
    kind: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BulkResult:
    succeeded: list[str] = field(default_factory=list)
    failed: list[BulkFailure] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": [item.to_dict() for item in self.failed],
        }


@dataclass
class ActionResult:
    success: bool
    data: Any = None
    error: str | None = None
    error_kind: str | None = None

    @classmethod
    def ok(cls, data: Any = None) -> "ActionResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, kind: str = "error") -> "ActionResult":
        return cls(success=False, error=error, error_kind=kind)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": _to_plain(self.data),
            "error": self.error,
            "error_kind": self.error_kind,
        }


def _to_plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, datetime):
        return serialize_datetime(value)
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _to_plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_to_plain(item) for item in value]
    return str(value)
