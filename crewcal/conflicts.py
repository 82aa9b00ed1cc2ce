from __future__ import annotations

import logging
from datetime import date

from crewcal.errors import InvalidRangeError, NotFoundError, ValidationError
from crewcal.models import BookingConflict, Conflict, ProjectAssignment, date_range
from crewcal.repository import AssignmentRepository


logger = logging.getLogger(__name__)


class ConflictDetector:
    """Finds overlapping bookings for one person.

    An assignment is booked on its day entries. Without day entries it is booked on
    every date of its project's range except its excluded dates, and with neither it is
    booked on no date at all.
    """

    def __init__(self, repository: AssignmentRepository) -> None:
        self.repository = repository

    def find_conflicts(
        self,
        user_id: str,
        start_date: date,
        end_date: date,
        exclude_assignment_id: str | None = None,
    ) -> list[Conflict]:
        if start_date > end_date:
            raise InvalidRangeError("Start date must be on or before end date")
        assignments = [
            item
            for item in self.repository.list_assignments(user_id=user_id)
            if item.id != exclude_assignment_id
        ]
        if not assignments:
            return []
        booked = self._booked_dates(assignments, start_date, end_date)
        projects = self.repository.get_projects(item.project_id for item in assignments)

        conflicts: list[Conflict] = []
        for assignment in assignments:
            dates = booked.get(assignment.id) or []
            if not dates:
                continue
            project = projects.get(assignment.project_id)
            conflicts.append(
                Conflict(
                    assignment_id=assignment.id,
                    project_id=assignment.project_id,
                    project_name=project.name if project else "Unknown project",
                    overlap_start=dates[0],
                    overlap_end=dates[-1],
                    conflict_dates=dates,
                )
            )
        conflicts.sort(key=lambda item: (item.overlap_start, item.assignment_id))
        return conflicts

    def booked_dates_for(self, assignment: ProjectAssignment) -> list[date]:
        bounds = self.repository.get_day_bounds([assignment.id]).get(assignment.id)
        if bounds is not None:
            return [day.work_date for day in self.repository.list_days(assignment.id)]
        project = self.repository.get_project(assignment.project_id)
        if project is None or not project.start_date or not project.end_date:
            return []
        excluded = set(self.repository.list_excluded_for_assignments([assignment.id]).get(assignment.id, []))
        return [d for d in date_range(project.start_date, project.end_date) if d not in excluded]

    def conflicts_for_assignment(self, assignment: ProjectAssignment) -> list[Conflict]:
        """Conflicts on the dates this assignment is actually booked."""
        own_dates = self.booked_dates_for(assignment)
        if not own_dates:
            return []
        own = set(own_dates)
        found = self.find_conflicts(
            assignment.user_id,
            own_dates[0],
            own_dates[-1],
            exclude_assignment_id=assignment.id,
        )
        output: list[Conflict] = []
        for conflict in found:
            shared = [d for d in conflict.conflict_dates if d in own]
            if not shared:
                continue
            conflict.conflict_dates = shared
            conflict.overlap_start = shared[0]
            conflict.overlap_end = shared[-1]
            output.append(conflict)
        return output

    def record_conflicts_for_assignment(self, assignment: ProjectAssignment) -> list[Conflict]:
        conflicts = self.conflicts_for_assignment(assignment)
        if conflicts:
            inserted = self.repository.record_conflicts(assignment.user_id, assignment.id, conflicts)
            logger.info(
                "Recorded %s conflicting date(s) for assignment %s",
                inserted,
                assignment.id,
            )
        return conflicts

    def override_conflict(
        self,
        conflict_id: str,
        reason: str,
        overridden_by: str | None = None,
    ) -> BookingConflict:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("An override reason is required")
        resolved = self.repository.resolve_conflict(conflict_id, reason, overridden_by)
        if resolved is None:
            raise NotFoundError("Conflict", conflict_id)
        return resolved

    def get_unresolved_conflicts(self, user_id: str | None = None) -> list[BookingConflict]:
        return self.repository.list_unresolved_conflicts(user_id)

    def _booked_dates(
        self,
        assignments: list[ProjectAssignment],
        start_date: date,
        end_date: date,
    ) -> dict[str, list[date]]:
        ids = [item.id for item in assignments]
        with_days = self.repository.get_day_bounds(ids)
        days = self.repository.list_days_for_assignments(ids, start_date, end_date)
        without_days = [item for item in assignments if item.id not in with_days]
        projects = self.repository.get_projects(item.project_id for item in without_days)
        excluded = self.repository.list_excluded_for_assignments(item.id for item in without_days)

        output: dict[str, list[date]] = {}
        for assignment in assignments:
            if assignment.id in with_days:
                output[assignment.id] = [day.work_date for day in days.get(assignment.id, [])]
                continue
            project = projects.get(assignment.project_id)
            if project is None or not project.start_date or not project.end_date:
                output[assignment.id] = []
                continue
            window_start = max(start_date, project.start_date)
            window_end = min(end_date, project.end_date)
            if window_start > window_end:
                output[assignment.id] = []
                continue
            skip = set(excluded.get(assignment.id, []))
            output[assignment.id] = [d for d in date_range(window_start, window_end) if d not in skip]
        return output
