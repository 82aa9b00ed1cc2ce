from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any

from crewcal.booking_status import parse_status
from crewcal.errors import InvalidRangeError
from crewcal.models import AssignmentDay, Project, ProjectAssignment, serialize_datetime
from crewcal.repository import AssignmentRepository


@dataclass
class GanttFilters:
    project_id: str | None = None
    user_id: str | None = None
    statuses: list[str] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GanttFilters":
        data = data or {}
        statuses = data.get("statuses")
        if isinstance(statuses, str):
            statuses = [statuses]
        return cls(
            project_id=data.get("project_id") or None,
            user_id=data.get("user_id") or None,
            statuses=[parse_status(x).value for x in statuses] if statuses else None,
        )


@dataclass
class GanttBlock:
    start_date: date
    end_date: date
    day_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat(),
            "day_count": self.day_count,
        }


@dataclass
class GanttRow:
    assignment_id: str
    project_id: str
    project_name: str
    project_start: date | None
    project_end: date | None
    user_id: str
    user_name: str
    booking_status: str
    notes: str | None
    span_start: date
    span_end: date
    days: list[AssignmentDay] = field(default_factory=list)
    blocks: list[GanttBlock] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "assignment_id": self.assignment_id,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "project_start": self.project_start.isoformat() if self.project_start else None,
            "project_end": self.project_end.isoformat() if self.project_end else None,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "booking_status": self.booking_status,
            "notes": self.notes,
            "span_start": self.span_start.isoformat(),
            "span_end": self.span_end.isoformat(),
            "days": [day.to_dict() for day in self.days],
            "blocks": [block.to_dict() for block in self.blocks],
        }


def build_blocks(days: list[AssignmentDay]) -> list[GanttBlock]:
    """Collapse sorted day entries into runs of consecutive dates."""
    blocks: list[GanttBlock] = []
    for day in sorted(days, key=lambda item: item.work_date):
        if blocks and blocks[-1].end_date + timedelta(days=1) == day.work_date:
            blocks[-1].end_date = day.work_date
            blocks[-1].day_count += 1
        else:
            blocks.append(GanttBlock(start_date=day.work_date, end_date=day.work_date, day_count=1))
    return blocks


def group_by_project(rows: list[GanttRow]) -> list[dict[str, Any]]:
    groups: list[dict[str, Any]] = []
    for row in rows:
        if not groups or groups[-1]["project_id"] != row.project_id:
            groups.append(
                {
                    "project_id": row.project_id,
                    "project_name": row.project_name,
                    "project_start": row.project_start.isoformat() if row.project_start else None,
                    "project_end": row.project_end.isoformat() if row.project_end else None,
                    "rows": [],
                }
            )
        groups[-1]["rows"].append(row.to_dict())
    return groups


class GanttAggregator:
    def __init__(self, repository: AssignmentRepository) -> None:
        self.repository = repository

    def aggregate(
        self,
        start_date: date,
        end_date: date,
        filters: GanttFilters | None = None,
    ) -> list[GanttRow]:
        if start_date > end_date:
            raise InvalidRangeError("Start date must be on or before end date")
        filters = filters or GanttFilters()
        assignments = self.repository.list_assignments(
            user_id=filters.user_id,
            project_id=filters.project_id,
            statuses=filters.statuses,
        )
        if not assignments:
            return []

        ids = [item.id for item in assignments]
        bounds = self.repository.get_day_bounds(ids)
        projects = self.repository.get_projects(item.project_id for item in assignments)

        in_window: list[tuple[ProjectAssignment, Project, date, date]] = []
        for assignment in assignments:
            project = projects.get(assignment.project_id)
            if project is None:
                continue
            span = bounds.get(assignment.id)
            if span is None:
                if not project.start_date or not project.end_date:
                    continue
                span = (project.start_date, project.end_date)
            if span[0] > end_date or span[1] < start_date:
                continue
            in_window.append((assignment, project, span[0], span[1]))
        if not in_window:
            return []

        days = self.repository.list_days_for_assignments(
            [item[0].id for item in in_window],
            start_date,
            end_date,
        )
        profiles = self.repository.get_profiles(item[0].user_id for item in in_window)

        rows: list[GanttRow] = []
        for assignment, project, span_start, span_end in in_window:
            window_days = days.get(assignment.id, [])
            profile = profiles.get(assignment.user_id)
            rows.append(
                GanttRow(
                    assignment_id=assignment.id,
                    project_id=project.id,
                    project_name=project.name,
                    project_start=project.start_date,
                    project_end=project.end_date,
                    user_id=assignment.user_id,
                    user_name=profile.display_name if profile else "Unknown",
                    booking_status=assignment.booking_status,
                    notes=assignment.notes,
                    span_start=span_start,
                    span_end=span_end,
                    days=window_days,
                    blocks=build_blocks(window_days),
                )
            )

        # Every row of a project shares the project part of the key, so groups stay contiguous.
        project_anchor: dict[str, date] = {}
        for row in rows:
            anchor = row.project_start or row.span_start
            current = project_anchor.get(row.project_id)
            project_anchor[row.project_id] = anchor if current is None else min(current, anchor)

        def sort_key(row: GanttRow) -> tuple[Any, ...]:
            project = projects[row.project_id]
            return (
                project_anchor[row.project_id],
                serialize_datetime(project.created_at) or "",
                row.project_id,
                row.user_name.lower(),
                row.assignment_id,
            )

        rows.sort(key=sort_key)
        return rows
