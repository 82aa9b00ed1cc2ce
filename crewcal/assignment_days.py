from __future__ import annotations

from datetime import date, time
from typing import Any, Iterable

from crewcal import booking_status
from crewcal.booking_status import BookingStatus
from crewcal.errors import DuplicateDateError, InvalidRangeError, NotFoundError, ValidationError
from crewcal.models import (
    AssignmentDay,
    DayInput,
    ExcludedDate,
    ProjectAssignment,
    ScheduleConfig,
    parse_time,
    require_date,
)
from crewcal.repository import AssignmentRepository


def _check_time_range(start_time: time, end_time: time) -> None:
    if end_time <= start_time:
        raise InvalidRangeError(
            f"End time {end_time.strftime('%H:%M')} must be after start time {start_time.strftime('%H:%M')}"
        )


def _field(item: Any, *names: str) -> Any:
    for name in names:
        if isinstance(item, dict):
            if name in item:
                return item[name]
        elif hasattr(item, name):
            return getattr(item, name)
    return None


class AssignmentDayManager:
    def __init__(self, repository: AssignmentRepository, schedule: ScheduleConfig | None = None) -> None:
        self.repository = repository
        self.schedule = schedule or ScheduleConfig()

    def _require_assignment(self, assignment_id: str) -> ProjectAssignment:
        assignment = self.repository.get_assignment(assignment_id)
        if assignment is None:
            raise NotFoundError("Assignment", assignment_id)
        return assignment

    def _require_day(self, day_id: str) -> AssignmentDay:
        day = self.repository.get_day(day_id)
        if day is None:
            raise NotFoundError("Assignment day", day_id)
        return day

    def normalize_days(self, days: Iterable[Any]) -> list[DayInput]:
        """Validate raw day entries (dicts or DayInput) and apply default times."""
        default_start = parse_time(self.schedule.default_start_time)
        default_end = parse_time(self.schedule.default_end_time)
        normalized: list[DayInput] = []
        seen: set[date] = set()
        duplicates: list[str] = []
        for item in days:
            work_date = require_date(_field(item, "work_date", "date"), "date")
            start_time = parse_time(_field(item, "start_time")) or default_start
            end_time = parse_time(_field(item, "end_time")) or default_end
            _check_time_range(start_time, end_time)
            if work_date in seen:
                duplicates.append(work_date.isoformat())
                continue
            seen.add(work_date)
            normalized.append(DayInput(work_date=work_date, start_time=start_time, end_time=end_time))
        if duplicates:
            raise DuplicateDateError(f"Duplicate dates in request: {', '.join(duplicates)}", duplicates)
        return normalized

    def add_days(self, assignment_id: str, days: Iterable[Any]) -> list[AssignmentDay]:
        self._require_assignment(assignment_id)
        normalized = self.normalize_days(days)
        if not normalized:
            raise ValidationError("At least one day is required")
        # The store enforces uniqueness; this check only names every clashing date at once.
        existing = {day.work_date for day in self.repository.list_days(assignment_id)}
        clashing = sorted(d.isoformat() for d in (item.work_date for item in normalized) if d in existing)
        if clashing:
            raise DuplicateDateError(f"Dates already booked for this assignment: {', '.join(clashing)}", clashing)
        return self.repository.add_days(assignment_id, normalized)

    def update_day(self, day_id: str, start_time: Any, end_time: Any) -> AssignmentDay:
        self._require_day(day_id)
        start = parse_time(start_time)
        end = parse_time(end_time)
        if start is None or end is None:
            raise ValidationError("Start and end time are required")
        _check_time_range(start, end)
        updated = self.repository.update_day_times(day_id, start, end)
        if updated is None:
            raise NotFoundError("Assignment day", day_id)
        return updated

    def move_day(self, day_id: str, new_date: Any) -> AssignmentDay:
        day = self._require_day(day_id)
        target = require_date(new_date, "new_date")
        if target == day.work_date:
            return day
        return self.repository.move_day(day_id, target)

    def remove_days(self, day_ids: Iterable[str]) -> int:
        ids = [str(x) for x in day_ids if x]
        if not ids:
            return 0
        return self.repository.delete_days(ids)

    def cycle_status(self, assignment_id: str, changed_by: str | None = None) -> BookingStatus:
        assignment = self._require_assignment(assignment_id)
        new_status = booking_status.cycle(assignment.booking_status)
        self.repository.update_assignment_status(
            assignment_id,
            new_status.value,
            changed_by=changed_by,
            note="Status cycled",
        )
        return new_status

    def update_status(
        self,
        assignment_id: str,
        new_status: Any,
        note: str | None = None,
        changed_by: str | None = None,
    ) -> BookingStatus:
        assignment = self._require_assignment(assignment_id)
        target = booking_status.transition_to(assignment.booking_status, new_status)
        self.repository.update_assignment_status(
            assignment_id,
            target.value,
            changed_by=changed_by,
            note=note,
        )
        return target

    def add_excluded_dates(
        self,
        assignment_id: str,
        dates: Iterable[Any],
        reason: str | None = None,
    ) -> list[ExcludedDate]:
        self._require_assignment(assignment_id)
        parsed: list[date] = []
        duplicates: list[str] = []
        for value in dates:
            item = require_date(value, "date")
            if item in parsed:
                duplicates.append(item.isoformat())
                continue
            parsed.append(item)
        if duplicates:
            raise DuplicateDateError(f"Duplicate dates in request: {', '.join(duplicates)}", duplicates)
        if not parsed:
            raise ValidationError("At least one date is required")
        return self.repository.add_excluded_dates(assignment_id, parsed, (reason or "").strip() or None)

    def remove_excluded_date(self, excluded_date_id: str) -> ExcludedDate:
        existing = self.repository.get_excluded_date(excluded_date_id)
        if existing is None or not self.repository.delete_excluded_date(excluded_date_id):
            raise NotFoundError("Excluded date", excluded_date_id)
        return existing
