from __future__ import annotations

import logging
import secrets
import sqlite3
import threading
import uuid
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

from crewcal.errors import DuplicateAssignmentError, DuplicateDateError, NotFoundError
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
    parse_date,
    parse_iso_datetime,
    parse_time,
    serialize_datetime,
    serialize_time,
    utc_now,
)


logger = logging.getLogger(__name__)

# Placeholder external id held while a create call is in flight.
PENDING_EVENT_ID = "__pending__"


def _utc_now() -> str:
    return utc_now().isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


def _iso_date(value: date | None) -> str | None:
    return value.isoformat() if value else None


def _placeholders(values: list[Any]) -> str:
    return ", ".join("?" for _ in values)


class StateStore:
    """sqlite implementation of the assignment repository."""

    def __init__(self, db_path: str, timeout_seconds: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.timeout_seconds = float(timeout_seconds)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout_seconds, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            start_date TEXT,
            end_date TEXT,
            sales_order TEXT,
            poc_name TEXT,
            poc_email TEXT,
            poc_phone TEXT,
            scope_link TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            full_name TEXT,
            email TEXT
        );

        CREATE TABLE IF NOT EXISTS project_assignments (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            user_id TEXT NOT NULL,
            booking_status TEXT NOT NULL,
            notes TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (project_id, user_id)
        );
        CREATE INDEX IF NOT EXISTS idx_assignments_user ON project_assignments(user_id);

        CREATE TABLE IF NOT EXISTS assignment_days (
            id TEXT PRIMARY KEY,
            assignment_id TEXT NOT NULL REFERENCES project_assignments(id) ON DELETE CASCADE,
            work_date TEXT NOT NULL,
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (assignment_id, work_date)
        );
        CREATE INDEX IF NOT EXISTS idx_days_date ON assignment_days(work_date);

        CREATE TABLE IF NOT EXISTS assignment_excluded_dates (
            id TEXT PRIMARY KEY,
            assignment_id TEXT NOT NULL REFERENCES project_assignments(id) ON DELETE CASCADE,
            excluded_date TEXT NOT NULL,
            reason TEXT,
            created_at TEXT NOT NULL,
            UNIQUE (assignment_id, excluded_date)
        );

        CREATE TABLE IF NOT EXISTS booking_status_history (
            id TEXT PRIMARY KEY,
            assignment_id TEXT NOT NULL REFERENCES project_assignments(id) ON DELETE CASCADE,
            old_status TEXT,
            new_status TEXT NOT NULL,
            changed_by TEXT,
            note TEXT,
            changed_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS booking_conflicts (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            assignment_id_1 TEXT NOT NULL REFERENCES project_assignments(id) ON DELETE CASCADE,
            assignment_id_2 TEXT NOT NULL REFERENCES project_assignments(id) ON DELETE CASCADE,
            conflict_date TEXT NOT NULL,
            override_reason TEXT,
            overridden_by TEXT,
            overridden_at TEXT,
            is_resolved INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            UNIQUE (assignment_id_1, assignment_id_2, conflict_date)
        );

        CREATE TABLE IF NOT EXISTS calendar_connections (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            provider TEXT NOT NULL,
            access_token TEXT NOT NULL,
            refresh_token TEXT NOT NULL,
            token_expires_at TEXT NOT NULL,
            external_calendar_id TEXT NOT NULL DEFAULT 'primary',
            account_email TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (user_id, provider)
        );

        -- No foreign key to project_assignments: the delete leg runs after the assignment is gone.
        CREATE TABLE IF NOT EXISTS synced_calendar_events (
            id TEXT PRIMARY KEY,
            assignment_id TEXT NOT NULL,
            connection_id TEXT NOT NULL REFERENCES calendar_connections(id) ON DELETE CASCADE,
            external_event_id TEXT,
            last_synced_at TEXT,
            sync_error TEXT,
            UNIQUE (assignment_id, connection_id)
        );

        CREATE TABLE IF NOT EXISTS oauth_states (
            state TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS calendar_subscriptions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            feed_type TEXT NOT NULL,
            project_id TEXT REFERENCES projects(id) ON DELETE CASCADE,
            token TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL,
            last_accessed_at TEXT
        );

        CREATE TABLE IF NOT EXISTS confirmation_requests (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            token TEXT NOT NULL UNIQUE,
            sent_to_email TEXT NOT NULL,
            sent_to_name TEXT,
            sent_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            responded_at TEXT,
            decline_reason TEXT
        );

        CREATE TABLE IF NOT EXISTS confirmation_request_assignments (
            confirmation_request_id TEXT NOT NULL REFERENCES confirmation_requests(id) ON DELETE CASCADE,
            assignment_id TEXT NOT NULL REFERENCES project_assignments(id) ON DELETE CASCADE,
            PRIMARY KEY (confirmation_request_id, assignment_id)
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _project(row: sqlite3.Row) -> Project:
        return Project(
            id=row["id"],
            name=row["name"],
            start_date=parse_date(row["start_date"]),
            end_date=parse_date(row["end_date"]),
            sales_order=row["sales_order"],
            poc_name=row["poc_name"],
            poc_email=row["poc_email"],
            poc_phone=row["poc_phone"],
            scope_link=row["scope_link"],
            created_at=parse_iso_datetime(row["created_at"]),
        )

    @staticmethod
    def _assignment(row: sqlite3.Row) -> ProjectAssignment:
        return ProjectAssignment(
            id=row["id"],
            project_id=row["project_id"],
            user_id=row["user_id"],
            booking_status=row["booking_status"],
            notes=row["notes"],
            created_at=parse_iso_datetime(row["created_at"]),
            updated_at=parse_iso_datetime(row["updated_at"]),
        )

    @staticmethod
    def _day(row: sqlite3.Row) -> AssignmentDay:
        return AssignmentDay(
            id=row["id"],
            assignment_id=row["assignment_id"],
            work_date=parse_date(row["work_date"]),
            start_time=parse_time(row["start_time"]),
            end_time=parse_time(row["end_time"]),
        )

    @staticmethod
    def _excluded(row: sqlite3.Row) -> ExcludedDate:
        return ExcludedDate(
            id=row["id"],
            assignment_id=row["assignment_id"],
            excluded_date=parse_date(row["excluded_date"]),
            reason=row["reason"],
            created_at=parse_iso_datetime(row["created_at"]),
        )

    @staticmethod
    def _conflict(row: sqlite3.Row) -> BookingConflict:
        return BookingConflict(
            id=row["id"],
            user_id=row["user_id"],
            assignment_id_1=row["assignment_id_1"],
            assignment_id_2=row["assignment_id_2"],
            conflict_date=parse_date(row["conflict_date"]),
            override_reason=row["override_reason"],
            overridden_by=row["overridden_by"],
            overridden_at=parse_iso_datetime(row["overridden_at"]),
            is_resolved=bool(row["is_resolved"]),
            created_at=parse_iso_datetime(row["created_at"]),
        )

    @staticmethod
    def _connection(row: sqlite3.Row) -> CalendarConnection:
        return CalendarConnection(
            id=row["id"],
            user_id=row["user_id"],
            provider=row["provider"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            token_expires_at=parse_iso_datetime(row["token_expires_at"]),
            external_calendar_id=row["external_calendar_id"] or "primary",
            account_email=row["account_email"],
            created_at=parse_iso_datetime(row["created_at"]),
            updated_at=parse_iso_datetime(row["updated_at"]),
        )

    @staticmethod
    def _synced(row: sqlite3.Row) -> SyncedCalendarEvent:
        return SyncedCalendarEvent(
            id=row["id"],
            assignment_id=row["assignment_id"],
            connection_id=row["connection_id"],
            external_event_id=row["external_event_id"],
            last_synced_at=parse_iso_datetime(row["last_synced_at"]),
            sync_error=row["sync_error"],
        )

    @staticmethod
    def _subscription(row: sqlite3.Row) -> CalendarSubscription:
        return CalendarSubscription(
            id=row["id"],
            user_id=row["user_id"],
            feed_type=row["feed_type"],
            project_id=row["project_id"],
            token=row["token"],
            created_at=parse_iso_datetime(row["created_at"]),
            last_accessed_at=parse_iso_datetime(row["last_accessed_at"]),
        )

    # ------------------------------------------------------------------
    # Projects and profiles
    # ------------------------------------------------------------------

    def save_project(self, project: Project) -> Project:
        created_at = serialize_datetime(project.created_at) or _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO projects(
                        id, name, start_date, end_date, sales_order,
                        poc_name, poc_email, poc_phone, scope_link, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        start_date = excluded.start_date,
                        end_date = excluded.end_date,
                        sales_order = excluded.sales_order,
                        poc_name = excluded.poc_name,
                        poc_email = excluded.poc_email,
                        poc_phone = excluded.poc_phone,
                        scope_link = excluded.scope_link
                    """,
                    (
                        project.id,
                        project.name,
                        _iso_date(project.start_date),
                        _iso_date(project.end_date),
                        project.sales_order,
                        project.poc_name,
                        project.poc_email,
                        project.poc_phone,
                        project.scope_link,
                        created_at,
                    ),
                )
                conn.commit()
        return self.get_project(project.id)

    def get_project(self, project_id: str) -> Project | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
        return self._project(row) if row else None

    def get_projects(self, project_ids: Iterable[str]) -> dict[str, Project]:
        ids = sorted(set(project_ids))
        if not ids:
            return {}
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM projects WHERE id IN ({_placeholders(ids)})",
                    ids,
                ).fetchall()
        return {row["id"]: self._project(row) for row in rows}

    def save_profile(self, profile: UserProfile) -> UserProfile:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO profiles(id, full_name, email)
                    VALUES (?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        full_name = excluded.full_name,
                        email = excluded.email
                    """,
                    (profile.id, profile.full_name, profile.email),
                )
                conn.commit()
        return profile

    def get_profiles(self, user_ids: Iterable[str]) -> dict[str, UserProfile]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT id, full_name, email FROM profiles WHERE id IN ({_placeholders(ids)})",
                    ids,
                ).fetchall()
        return {row["id"]: UserProfile(id=row["id"], full_name=row["full_name"], email=row["email"]) for row in rows}

    def get_profile(self, user_id: str) -> UserProfile | None:
        return self.get_profiles([user_id]).get(user_id)

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def create_assignment(
        self,
        *,
        project_id: str,
        user_id: str,
        booking_status: str,
        notes: str | None = None,
        days: list[DayInput] | None = None,
        changed_by: str | None = None,
    ) -> ProjectAssignment:
        assignment_id = _new_id()
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                if conn.execute("SELECT 1 FROM projects WHERE id = ?", (project_id,)).fetchone() is None:
                    raise NotFoundError("Project", project_id)
                try:
                    conn.execute(
                        """
                        INSERT INTO project_assignments(id, project_id, user_id, booking_status, notes, created_at, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (assignment_id, project_id, user_id, booking_status, notes, now, now),
                    )
                except sqlite3.IntegrityError as exc:
                    conn.rollback()
                    raise DuplicateAssignmentError("User is already assigned to this project") from exc
                conn.execute(
                    """
                    INSERT INTO booking_status_history(id, assignment_id, old_status, new_status, changed_by, note, changed_at)
                    VALUES (?, ?, NULL, ?, ?, ?, ?)
                    """,
                    (_new_id(), assignment_id, booking_status, changed_by, "Assignment created", now),
                )
                if days:
                    self._insert_days(conn, assignment_id, days, now)
                conn.commit()
        return self.get_assignment(assignment_id)

    def get_assignment(self, assignment_id: str) -> ProjectAssignment | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM project_assignments WHERE id = ?",
                    (assignment_id,),
                ).fetchone()
        return self._assignment(row) if row else None

    def list_assignments(
        self,
        *,
        user_id: str | None = None,
        project_id: str | None = None,
        statuses: list[str] | None = None,
    ) -> list[ProjectAssignment]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if statuses:
            clauses.append(f"booking_status IN ({_placeholders(statuses)})")
            params.extend(statuses)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT * FROM project_assignments {where} ORDER BY created_at, id",
                    params,
                ).fetchall()
        return [self._assignment(row) for row in rows]

    def delete_assignment(self, assignment_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM project_assignments WHERE id = ?", (assignment_id,))
                conn.commit()
                return cursor.rowcount > 0

    def update_assignment_status(
        self,
        assignment_id: str,
        new_status: str,
        *,
        changed_by: str | None = None,
        note: str | None = None,
    ) -> str | None:
        """Persist the status and its history row together; returns the previous status."""
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT booking_status FROM project_assignments WHERE id = ?",
                    (assignment_id,),
                ).fetchone()
                if row is None:
                    raise NotFoundError("Assignment", assignment_id)
                old_status = row["booking_status"]
                conn.execute(
                    "UPDATE project_assignments SET booking_status = ?, updated_at = ? WHERE id = ?",
                    (new_status, now, assignment_id),
                )
                conn.execute(
                    """
                    INSERT INTO booking_status_history(id, assignment_id, old_status, new_status, changed_by, note, changed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (_new_id(), assignment_id, old_status, new_status, changed_by, note, now),
                )
                conn.commit()
        return old_status

    def list_status_history(self, assignment_id: str) -> list[StatusChange]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, assignment_id, old_status, new_status, changed_by, note, changed_at
                    FROM booking_status_history
                    WHERE assignment_id = ?
                    ORDER BY changed_at DESC, rowid DESC
                    """,
                    (assignment_id,),
                ).fetchall()
        return [
            StatusChange(
                id=row["id"],
                assignment_id=row["assignment_id"],
                old_status=row["old_status"],
                new_status=row["new_status"],
                changed_by=row["changed_by"],
                note=row["note"],
                changed_at=parse_iso_datetime(row["changed_at"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Days
    # ------------------------------------------------------------------

    def _insert_days(self, conn: sqlite3.Connection, assignment_id: str, days: list[DayInput], now: str) -> None:
        for day in days:
            work_date = day.work_date.isoformat()
            try:
                conn.execute(
                    """
                    INSERT INTO assignment_days(id, assignment_id, work_date, start_time, end_time, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        _new_id(),
                        assignment_id,
                        work_date,
                        serialize_time(day.start_time),
                        serialize_time(day.end_time),
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                conn.rollback()
                raise DuplicateDateError(f"Date already booked for this assignment: {work_date}", [work_date]) from exc
            conn.execute(
                "DELETE FROM assignment_excluded_dates WHERE assignment_id = ? AND excluded_date = ?",
                (assignment_id, work_date),
            )

    def add_days(self, assignment_id: str, days: list[DayInput]) -> list[AssignmentDay]:
        """Insert all days in one transaction; a stored duplicate rolls back the whole batch."""
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                if conn.execute("SELECT 1 FROM project_assignments WHERE id = ?", (assignment_id,)).fetchone() is None:
                    raise NotFoundError("Assignment", assignment_id)
                self._insert_days(conn, assignment_id, days, now)
                conn.commit()
        wanted = {day.work_date for day in days}
        return [day for day in self.list_days(assignment_id) if day.work_date in wanted]

    def get_day(self, day_id: str) -> AssignmentDay | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM assignment_days WHERE id = ?", (day_id,)).fetchone()
        return self._day(row) if row else None

    def list_days(
        self,
        assignment_id: str,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> list[AssignmentDay]:
        return self.list_days_for_assignments([assignment_id], start_date, end_date).get(assignment_id, [])

    def list_days_for_assignments(
        self,
        assignment_ids: Iterable[str],
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> dict[str, list[AssignmentDay]]:
        ids = sorted(set(assignment_ids))
        if not ids:
            return {}
        sql = f"SELECT * FROM assignment_days WHERE assignment_id IN ({_placeholders(ids)})"
        params: list[Any] = list(ids)
        if start_date is not None:
            sql += " AND work_date >= ?"
            params.append(start_date.isoformat())
        if end_date is not None:
            sql += " AND work_date <= ?"
            params.append(end_date.isoformat())
        sql += " ORDER BY work_date, id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        output: dict[str, list[AssignmentDay]] = {}
        for row in rows:
            output.setdefault(row["assignment_id"], []).append(self._day(row))
        return output

    def get_day_bounds(self, assignment_ids: Iterable[str]) -> dict[str, tuple[date, date]]:
        ids = sorted(set(assignment_ids))
        if not ids:
            return {}
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT assignment_id, MIN(work_date) AS first_day, MAX(work_date) AS last_day
                    FROM assignment_days
                    WHERE assignment_id IN ({_placeholders(ids)})
                    GROUP BY assignment_id
                    """,
                    ids,
                ).fetchall()
        return {row["assignment_id"]: (parse_date(row["first_day"]), parse_date(row["last_day"])) for row in rows}

    def update_day_times(self, day_id: str, start_time: Any, end_time: Any) -> AssignmentDay | None:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE assignment_days SET start_time = ?, end_time = ?, updated_at = ? WHERE id = ?",
                    (serialize_time(start_time), serialize_time(end_time), _utc_now(), day_id),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    return None
        return self.get_day(day_id)

    def move_day(self, day_id: str, new_date: date) -> AssignmentDay:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT assignment_id FROM assignment_days WHERE id = ?", (day_id,)).fetchone()
                if row is None:
                    raise NotFoundError("Assignment day", day_id)
                try:
                    conn.execute(
                        "UPDATE assignment_days SET work_date = ?, updated_at = ? WHERE id = ?",
                        (new_date.isoformat(), _utc_now(), day_id),
                    )
                except sqlite3.IntegrityError as exc:
                    conn.rollback()
                    raise DuplicateDateError(
                        f"Date already booked for this assignment: {new_date.isoformat()}",
                        [new_date.isoformat()],
                    ) from exc
                conn.execute(
                    "DELETE FROM assignment_excluded_dates WHERE assignment_id = ? AND excluded_date = ?",
                    (row["assignment_id"], new_date.isoformat()),
                )
                conn.commit()
        return self.get_day(day_id)

    def delete_days(self, day_ids: Iterable[str]) -> int:
        ids = sorted(set(day_ids))
        if not ids:
            return 0
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    f"DELETE FROM assignment_days WHERE id IN ({_placeholders(ids)})",
                    ids,
                )
                conn.commit()
                return max(0, cursor.rowcount)

    def get_assignment_ids_for_days(self, day_ids: Iterable[str]) -> list[str]:
        ids = sorted(set(day_ids))
        if not ids:
            return []
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT DISTINCT assignment_id FROM assignment_days WHERE id IN ({_placeholders(ids)})",
                    ids,
                ).fetchall()
        return [row["assignment_id"] for row in rows]

    # ------------------------------------------------------------------
    # Excluded dates
    # ------------------------------------------------------------------

    def add_excluded_dates(
        self,
        assignment_id: str,
        dates: list[date],
        reason: str | None = None,
    ) -> list[ExcludedDate]:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                if conn.execute("SELECT 1 FROM project_assignments WHERE id = ?", (assignment_id,)).fetchone() is None:
                    raise NotFoundError("Assignment", assignment_id)
                for value in dates:
                    text = value.isoformat()
                    try:
                        conn.execute(
                            """
                            INSERT INTO assignment_excluded_dates(id, assignment_id, excluded_date, reason, created_at)
                            VALUES (?, ?, ?, ?, ?)
                            """,
                            (_new_id(), assignment_id, text, reason, now),
                        )
                    except sqlite3.IntegrityError as exc:
                        conn.rollback()
                        raise DuplicateDateError(f"Date already excluded: {text}", [text]) from exc
                    conn.execute(
                        "DELETE FROM assignment_days WHERE assignment_id = ? AND work_date = ?",
                        (assignment_id, text),
                    )
                conn.commit()
        wanted = set(dates)
        return [item for item in self.list_excluded_dates(assignment_id) if item.excluded_date in wanted]

    def get_excluded_date(self, excluded_date_id: str) -> ExcludedDate | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM assignment_excluded_dates WHERE id = ?",
                    (excluded_date_id,),
                ).fetchone()
        return self._excluded(row) if row else None

    def list_excluded_dates(self, assignment_id: str) -> list[ExcludedDate]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM assignment_excluded_dates WHERE assignment_id = ? ORDER BY excluded_date",
                    (assignment_id,),
                ).fetchall()
        return [self._excluded(row) for row in rows]

    def list_excluded_for_assignments(self, assignment_ids: Iterable[str]) -> dict[str, list[date]]:
        ids = sorted(set(assignment_ids))
        if not ids:
            return {}
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT assignment_id, excluded_date
                    FROM assignment_excluded_dates
                    WHERE assignment_id IN ({_placeholders(ids)})
                    ORDER BY excluded_date
                    """,
                    ids,
                ).fetchall()
        output: dict[str, list[date]] = {}
        for row in rows:
            output.setdefault(row["assignment_id"], []).append(parse_date(row["excluded_date"]))
        return output

    def delete_excluded_date(self, excluded_date_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM assignment_excluded_dates WHERE id = ?", (excluded_date_id,))
                conn.commit()
                return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def record_conflicts(self, user_id: str, assignment_id: str, conflicts: list[Conflict]) -> int:
        now = _utc_now()
        inserted = 0
        with self._lock:
            with self._connect() as conn:
                for conflict in conflicts:
                    for conflict_date in conflict.conflict_dates:
                        cursor = conn.execute(
                            """
                            INSERT INTO booking_conflicts(id, user_id, assignment_id_1, assignment_id_2, conflict_date, created_at)
                            VALUES (?, ?, ?, ?, ?, ?)
                            ON CONFLICT(assignment_id_1, assignment_id_2, conflict_date) DO NOTHING
                            """,
                            (_new_id(), user_id, assignment_id, conflict.assignment_id, conflict_date.isoformat(), now),
                        )
                        inserted += max(0, cursor.rowcount)
                conn.commit()
        return inserted

    def get_conflict(self, conflict_id: str) -> BookingConflict | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM booking_conflicts WHERE id = ?", (conflict_id,)).fetchone()
        return self._conflict(row) if row else None

    def resolve_conflict(self, conflict_id: str, reason: str, overridden_by: str | None = None) -> BookingConflict | None:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE booking_conflicts
                    SET override_reason = ?, overridden_by = ?, overridden_at = ?, is_resolved = 1
                    WHERE id = ?
                    """,
                    (reason, overridden_by, _utc_now(), conflict_id),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    return None
        return self.get_conflict(conflict_id)

    def list_unresolved_conflicts(self, user_id: str | None = None) -> list[BookingConflict]:
        sql = "SELECT * FROM booking_conflicts WHERE is_resolved = 0"
        params: list[Any] = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        sql += " ORDER BY conflict_date, id"
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(sql, params).fetchall()
        return [self._conflict(row) for row in rows]

    # ------------------------------------------------------------------
    # Calendar connections
    # ------------------------------------------------------------------

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
    ) -> CalendarConnection:
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO calendar_connections(
                        id, user_id, provider, access_token, refresh_token, token_expires_at,
                        external_calendar_id, account_email, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, provider) DO UPDATE SET
                        access_token = excluded.access_token,
                        refresh_token = excluded.refresh_token,
                        token_expires_at = excluded.token_expires_at,
                        external_calendar_id = excluded.external_calendar_id,
                        account_email = excluded.account_email,
                        updated_at = excluded.updated_at
                    """,
                    (
                        _new_id(),
                        user_id,
                        provider,
                        access_token,
                        refresh_token,
                        serialize_datetime(token_expires_at),
                        external_calendar_id or "primary",
                        account_email,
                        now,
                        now,
                    ),
                )
                conn.commit()
                row = conn.execute(
                    "SELECT * FROM calendar_connections WHERE user_id = ? AND provider = ?",
                    (user_id, provider),
                ).fetchone()
        return self._connection(row)

    def get_connection(self, connection_id: str) -> CalendarConnection | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM calendar_connections WHERE id = ?", (connection_id,)).fetchone()
        return self._connection(row) if row else None

    def list_connections(self, user_id: str | None = None) -> list[CalendarConnection]:
        with self._lock:
            with self._connect() as conn:
                if user_id is None:
                    rows = conn.execute("SELECT * FROM calendar_connections ORDER BY created_at, id").fetchall()
                else:
                    rows = conn.execute(
                        "SELECT * FROM calendar_connections WHERE user_id = ? ORDER BY created_at, id",
                        (user_id,),
                    ).fetchall()
        return [self._connection(row) for row in rows]

    def update_connection_tokens(
        self,
        connection_id: str,
        *,
        access_token: str,
        refresh_token: str,
        token_expires_at: datetime,
    ) -> bool:
        # Single statement: concurrent refreshers resolve as last writer wins.
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE calendar_connections
                    SET access_token = ?, refresh_token = ?, token_expires_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (access_token, refresh_token, serialize_datetime(token_expires_at), _utc_now(), connection_id),
                )
                conn.commit()
                return cursor.rowcount > 0

    def delete_connection(self, connection_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM calendar_connections WHERE id = ?", (connection_id,))
                conn.commit()
                return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Synced events
    # ------------------------------------------------------------------

    def get_synced_event(self, assignment_id: str, connection_id: str) -> SyncedCalendarEvent | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT * FROM synced_calendar_events WHERE assignment_id = ? AND connection_id = ?",
                    (assignment_id, connection_id),
                ).fetchone()
        return self._synced(row) if row else None

    def count_synced_events(self, assignment_id: str | None = None) -> int:
        with self._lock:
            with self._connect() as conn:
                if assignment_id is None:
                    row = conn.execute("SELECT COUNT(*) AS n FROM synced_calendar_events").fetchone()
                else:
                    row = conn.execute(
                        "SELECT COUNT(*) AS n FROM synced_calendar_events WHERE assignment_id = ?",
                        (assignment_id,),
                    ).fetchone()
        return int(row["n"])

    def reserve_sync_slot(self, assignment_id: str, connection_id: str, stale_before: datetime) -> SyncSlot:
        """Claim the right to create the external event for one pair.

        The claim is an insert-or-conditional-update, so two callers racing on the same
        pair never both see ``is_new``. A pending marker older than ``stale_before`` is
        treated as abandoned and can be claimed again.
        """
        now = _utc_now()
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO synced_calendar_events(id, assignment_id, connection_id, external_event_id, last_synced_at, sync_error)
                    VALUES (?, ?, ?, ?, ?, NULL)
                    ON CONFLICT(assignment_id, connection_id) DO NOTHING
                    """,
                    (_new_id(), assignment_id, connection_id, PENDING_EVENT_ID, now),
                )
                if cursor.rowcount == 1:
                    conn.commit()
                    return SyncSlot(is_new=True, existing_event_id=None, is_pending=False)
                cursor = conn.execute(
                    """
                    UPDATE synced_calendar_events
                    SET external_event_id = ?, last_synced_at = ?
                    WHERE assignment_id = ? AND connection_id = ?
                      AND (
                        external_event_id IS NULL
                        OR external_event_id = ''
                        OR (external_event_id = ? AND (last_synced_at IS NULL OR last_synced_at < ?))
                      )
                    """,
                    (
                        PENDING_EVENT_ID,
                        now,
                        assignment_id,
                        connection_id,
                        PENDING_EVENT_ID,
                        serialize_datetime(stale_before),
                    ),
                )
                conn.commit()
                if cursor.rowcount == 1:
                    return SyncSlot(is_new=True, existing_event_id=None, is_pending=False)
                row = conn.execute(
                    "SELECT external_event_id FROM synced_calendar_events WHERE assignment_id = ? AND connection_id = ?",
                    (assignment_id, connection_id),
                ).fetchone()
        existing = row["external_event_id"] if row else None
        if existing and existing != PENDING_EVENT_ID:
            return SyncSlot(is_new=False, existing_event_id=existing, is_pending=False)
        return SyncSlot(is_new=False, existing_event_id=None, is_pending=True)

    def upsert_synced_event(self, assignment_id: str, connection_id: str, external_event_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO synced_calendar_events(id, assignment_id, connection_id, external_event_id, last_synced_at, sync_error)
                    VALUES (?, ?, ?, ?, ?, NULL)
                    ON CONFLICT(assignment_id, connection_id) DO UPDATE SET
                        external_event_id = excluded.external_event_id,
                        last_synced_at = excluded.last_synced_at,
                        sync_error = NULL
                    """,
                    (_new_id(), assignment_id, connection_id, external_event_id, _utc_now()),
                )
                conn.commit()

    def record_sync_error(
        self,
        assignment_id: str,
        connection_id: str,
        error: str,
        release_pending: bool = False,
    ) -> None:
        # A real external id is always kept. A pending marker is only released for the
        # worker that claimed it; anyone else leaves it to the stale-claim takeover.
        release_marker = PENDING_EVENT_ID if release_pending else None
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO synced_calendar_events(id, assignment_id, connection_id, external_event_id, last_synced_at, sync_error)
                    VALUES (?, ?, ?, NULL, ?, ?)
                    ON CONFLICT(assignment_id, connection_id) DO UPDATE SET
                        external_event_id = CASE
                            WHEN synced_calendar_events.external_event_id = ? THEN NULL
                            ELSE synced_calendar_events.external_event_id
                        END,
                        last_synced_at = CASE
                            WHEN synced_calendar_events.external_event_id = ? THEN synced_calendar_events.last_synced_at
                            ELSE excluded.last_synced_at
                        END,
                        sync_error = excluded.sync_error
                    """,
                    (
                        _new_id(),
                        assignment_id,
                        connection_id,
                        _utc_now(),
                        error,
                        release_marker,
                        None if release_pending else PENDING_EVENT_ID,
                    ),
                )
                conn.commit()

    def delete_synced_event(self, assignment_id: str, connection_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM synced_calendar_events WHERE assignment_id = ? AND connection_id = ?",
                    (assignment_id, connection_id),
                )
                conn.commit()
                return cursor.rowcount > 0

    def list_sync_errors(self, connection_ids: Iterable[str], limit: int = 20) -> list[SyncErrorView]:
        ids = sorted(set(connection_ids))
        if not ids:
            return []
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT sce.id, sce.assignment_id, sce.sync_error, sce.last_synced_at, p.name AS project_name
                    FROM synced_calendar_events sce
                    LEFT JOIN project_assignments pa ON pa.id = sce.assignment_id
                    LEFT JOIN projects p ON p.id = pa.project_id
                    WHERE sce.connection_id IN ({_placeholders(ids)})
                      AND sce.sync_error IS NOT NULL
                    ORDER BY sce.last_synced_at DESC, sce.id
                    LIMIT ?
                    """,
                    [*ids, max(1, int(limit))],
                ).fetchall()
        return [
            SyncErrorView(
                id=row["id"],
                assignment_id=row["assignment_id"],
                project_name=row["project_name"] or "Unknown project",
                error=row["sync_error"],
                last_synced_at=parse_iso_datetime(row["last_synced_at"]),
            )
            for row in rows
        ]

    def clear_sync_error(self, synced_event_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE synced_calendar_events SET sync_error = NULL WHERE id = ?",
                    (synced_event_id,),
                )
                conn.commit()
                return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # OAuth states
    # ------------------------------------------------------------------

    def save_oauth_state(self, state: str, user_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO oauth_states(state, user_id, created_at) VALUES (?, ?, ?)",
                    (state, user_id, _utc_now()),
                )
                conn.commit()

    def pop_oauth_state(self, state: str, max_age: timedelta = timedelta(minutes=10)) -> OAuthState | None:
        """Consume a state value; each value can be used once and only while fresh."""
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT state, user_id, created_at FROM oauth_states WHERE state = ?",
                    (state,),
                ).fetchone()
                if row is None:
                    return None
                conn.execute("DELETE FROM oauth_states WHERE state = ?", (state,))
                conn.commit()
        created_at = parse_iso_datetime(row["created_at"])
        if created_at is None or utc_now() - created_at > max_age:
            logger.info("Discarding expired OAuth state")
            return None
        return OAuthState(state=row["state"], user_id=row["user_id"], created_at=created_at)

    # ------------------------------------------------------------------
    # iCal subscriptions
    # ------------------------------------------------------------------

    def get_or_create_subscription(self, user_id: str, feed_type: str, project_id: str | None = None) -> CalendarSubscription:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT * FROM calendar_subscriptions
                    WHERE user_id = ? AND feed_type = ? AND COALESCE(project_id, '') = COALESCE(?, '')
                    """,
                    (user_id, feed_type, project_id),
                ).fetchone()
                if row is None:
                    subscription_id = _new_id()
                    conn.execute(
                        """
                        INSERT INTO calendar_subscriptions(id, user_id, feed_type, project_id, token, created_at)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (subscription_id, user_id, feed_type, project_id, secrets.token_urlsafe(32), _utc_now()),
                    )
                    conn.commit()
                    row = conn.execute(
                        "SELECT * FROM calendar_subscriptions WHERE id = ?",
                        (subscription_id,),
                    ).fetchone()
        return self._subscription(row)

    def get_subscription_by_token(self, token: str) -> CalendarSubscription | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM calendar_subscriptions WHERE token = ?", (token,)).fetchone()
        return self._subscription(row) if row else None

    def list_subscriptions(self, user_id: str) -> list[CalendarSubscription]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM calendar_subscriptions WHERE user_id = ? ORDER BY created_at, id",
                    (user_id,),
                ).fetchall()
        return [self._subscription(row) for row in rows]

    def touch_subscription(self, subscription_id: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE calendar_subscriptions SET last_accessed_at = ? WHERE id = ?",
                    (_utc_now(), subscription_id),
                )
                conn.commit()

    def delete_subscription(self, subscription_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute("DELETE FROM calendar_subscriptions WHERE id = ?", (subscription_id,))
                conn.commit()
                return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Confirmation requests
    # ------------------------------------------------------------------

    def create_confirmation_request(
        self,
        *,
        project_id: str,
        assignment_ids: list[str],
        sent_to_email: str,
        sent_to_name: str | None,
        expires_at: datetime,
    ) -> ConfirmationRequest:
        request_id = _new_id()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO confirmation_requests(id, project_id, token, sent_to_email, sent_to_name, sent_at, expires_at, status)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 'pending')
                    """,
                    (
                        request_id,
                        project_id,
                        secrets.token_urlsafe(32),
                        sent_to_email,
                        sent_to_name,
                        _utc_now(),
                        serialize_datetime(expires_at),
                    ),
                )
                conn.executemany(
                    """
                    INSERT INTO confirmation_request_assignments(confirmation_request_id, assignment_id)
                    VALUES (?, ?)
                    """,
                    [(request_id, assignment_id) for assignment_id in dict.fromkeys(assignment_ids)],
                )
                conn.commit()
        return self._load_confirmation_request("id", request_id)

    def get_confirmation_request_by_token(self, token: str) -> ConfirmationRequest | None:
        return self._load_confirmation_request("token", token)

    def _load_confirmation_request(self, column: str, value: str) -> ConfirmationRequest | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(f"SELECT * FROM confirmation_requests WHERE {column} = ?", (value,)).fetchone()
                if row is None:
                    return None
                links = conn.execute(
                    "SELECT assignment_id FROM confirmation_request_assignments WHERE confirmation_request_id = ? ORDER BY rowid",
                    (row["id"],),
                ).fetchall()
        return ConfirmationRequest(
            id=row["id"],
            project_id=row["project_id"],
            token=row["token"],
            sent_to_email=row["sent_to_email"],
            sent_to_name=row["sent_to_name"],
            sent_at=parse_iso_datetime(row["sent_at"]),
            expires_at=parse_iso_datetime(row["expires_at"]),
            status=row["status"],
            responded_at=parse_iso_datetime(row["responded_at"]),
            decline_reason=row["decline_reason"],
            assignment_ids=[link["assignment_id"] for link in links],
        )

    def set_confirmation_status(self, request_id: str, status: str, decline_reason: str | None = None) -> None:
        responded_at = None if status == "expired" else _utc_now()
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE confirmation_requests
                    SET status = ?, responded_at = COALESCE(?, responded_at), decline_reason = ?
                    WHERE id = ?
                    """,
                    (status, responded_at, decline_reason, request_id),
                )
                conn.commit()
