from __future__ import annotations

from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from crewcal.booking_status import BookingStatus, status_label
from crewcal.config_manager import ConfigManager
from crewcal.errors import NotFoundError, ValidationError
from crewcal.models import AssignmentForSync, CalendarSubscription, ProjectAssignment, utc_now
from crewcal.repository import AssignmentRepository


FEED_TYPES = ("master", "personal", "project")


def _ical_status(value: str) -> str:
    return "CONFIRMED" if value == BookingStatus.CONFIRMED.value else "TENTATIVE"


class ICalFeedService:
    """Read-only iCal subscription feeds addressed by an unguessable token."""

    def __init__(self, config_manager: ConfigManager, repository: AssignmentRepository) -> None:
        self.config_manager = config_manager
        self.repository = repository

    def create_subscription(
        self,
        user_id: str,
        feed_type: str,
        project_id: str | None = None,
    ) -> CalendarSubscription:
        feed_type = str(feed_type or "").strip().lower()
        if feed_type not in FEED_TYPES:
            raise ValidationError(f"Unknown feed type: {feed_type!r}")
        if feed_type == "project":
            if not project_id:
                raise ValidationError("project_id is required for a project feed")
            if self.repository.get_project(project_id) is None:
                raise NotFoundError("Project", project_id)
        else:
            project_id = None
        return self.repository.get_or_create_subscription(user_id, feed_type, project_id)

    def _feed_assignments(self, subscription: CalendarSubscription) -> list[ProjectAssignment]:
        if subscription.feed_type == "personal":
            return self.repository.list_assignments(user_id=subscription.user_id)
        if subscription.feed_type == "project":
            return self.repository.list_assignments(project_id=subscription.project_id)
        return self.repository.list_assignments()

    def render_feed(self, token: str) -> str:
        subscription = self.repository.get_subscription_by_token(token)
        if subscription is None:
            raise NotFoundError("Subscription", token)
        config = self.config_manager.load()
        zone = ZoneInfo(config.sync.timezone)

        assignments = self._feed_assignments(subscription)
        ids = [item.id for item in assignments]
        projects = self.repository.get_projects(item.project_id for item in assignments)
        profiles = self.repository.get_profiles(item.user_id for item in assignments)
        days = self.repository.list_days_for_assignments(ids)
        excluded = self.repository.list_excluded_for_assignments(ids)

        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", "-//Crewcal//Crew Schedule//EN")
        calendar_obj.add("VERSION", "2.0")
        calendar_obj.add("X-WR-CALNAME", self._calendar_name(subscription, projects))
        calendar_obj.add("X-WR-TIMEZONE", config.sync.timezone)
        stamp = utc_now()

        for assignment in assignments:
            project = projects.get(assignment.project_id)
            if project is None:
                continue
            label = status_label(assignment.booking_status)
            profile = profiles.get(assignment.user_id)
            summary = f"[{label}] {project.name}"
            if subscription.feed_type != "personal":
                summary = f"{summary} - {profile.display_name if profile else 'Unknown'}"
            description = f"Project: {project.name}\nStatus: {label}"
            if assignment.notes:
                description += f"\nNotes: {assignment.notes}"

            assignment_days = days.get(assignment.id, [])
            for day in assignment_days:
                vevent = ICEvent()
                vevent.add("UID", f"{day.id}@crewcal")
                vevent.add("DTSTAMP", stamp)
                vevent.add("SUMMARY", summary)
                vevent.add("DESCRIPTION", description)
                vevent.add("DTSTART", datetime.combine(day.work_date, day.start_time, tzinfo=zone))
                vevent.add("DTEND", datetime.combine(day.work_date, day.end_time, tzinfo=zone))
                vevent.add("STATUS", _ical_status(assignment.booking_status))
                vevent.add("CATEGORIES", [label, project.name])
                calendar_obj.add_component(vevent)

            if assignment_days:
                continue
            # No day entries: one all-day event per booked date of the project range.
            item = AssignmentForSync(
                assignment=assignment,
                project=project,
                excluded_dates=excluded.get(assignment.id, []),
            )
            for booked in item.booked_dates():
                vevent = ICEvent()
                vevent.add("UID", f"{assignment.id}-{booked.isoformat()}@crewcal")
                vevent.add("DTSTAMP", stamp)
                vevent.add("SUMMARY", summary)
                vevent.add("DESCRIPTION", description)
                vevent.add("DTSTART", booked)
                vevent.add("DTEND", booked + timedelta(days=1))
                vevent.add("STATUS", _ical_status(assignment.booking_status))
                vevent.add("CATEGORIES", [label, project.name])
                calendar_obj.add_component(vevent)

        self.repository.touch_subscription(subscription.id)
        return calendar_obj.to_ical().decode("utf-8")

    @staticmethod
    def _calendar_name(subscription: CalendarSubscription, projects: dict) -> str:
        if subscription.feed_type == "project":
            project = projects.get(subscription.project_id)
            return f"Crewcal - {project.name}" if project else "Crewcal - Project"
        if subscription.feed_type == "personal":
            return "Crewcal - My Schedule"
        return "Crewcal - Master Schedule"
