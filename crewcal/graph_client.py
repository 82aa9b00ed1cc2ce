from __future__ import annotations

from datetime import timedelta
from typing import Any

import requests

from crewcal.booking_status import provider_category, show_as, status_label
from crewcal.errors import ProviderError
from crewcal.models import AssignmentForSync, serialize_time


APP_NAME = "Crewcal"


def _error_text(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:300]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("code") or "")[:300]
    return str(payload)[:300]


def _short_time(value: Any) -> str:
    text = serialize_time(value) or ""
    return text[:5]


def build_event_body(item: AssignmentForSync, app_base_url: str) -> str:
    assignment = item.assignment
    project = item.project
    lines = [
        f"Project: {project.name}",
        f"Status: {status_label(assignment.booking_status)}",
    ]
    if project.sales_order:
        lines.append(f"Sales order: {project.sales_order}")

    if item.days:
        lines.append("")
        lines.append("Schedule:")
        for day in sorted(item.days, key=lambda d: d.work_date):
            lines.append(
                f"  {day.work_date.strftime('%a %Y-%m-%d')}: "
                f"{_short_time(day.start_time)}-{_short_time(day.end_time)}"
            )

    if assignment.notes:
        lines.append("")
        lines.append(f"Notes: {assignment.notes}")

    if item.team_members:
        lines.append("")
        lines.append("Team:")
        for member in item.team_members:
            lines.append(f"  {member.full_name} ({status_label(member.booking_status)})")

    contact = [x for x in (project.poc_name, project.poc_email, project.poc_phone) if x]
    if contact:
        lines.append("")
        lines.append(f"Contact: {' | '.join(contact)}")
    if project.scope_link:
        lines.append(f"Scope: {project.scope_link}")

    lines.append("")
    lines.append(f"View in {APP_NAME}: {app_base_url.rstrip('/')}/projects/{project.id}/calendar")
    return "\n".join(lines)


def build_event_payload(item: AssignmentForSync, timezone: str, app_base_url: str) -> dict[str, Any]:
    """Outlook event resource for one assignment.

    The event is all-day and spans the first to the last booked date; the provider's
    all-day end date is exclusive.
    """
    booked = item.booked_dates()
    if not booked:
        raise ValueError("Assignment has no booked dates to sync.")
    status = item.assignment.booking_status
    end_exclusive = booked[-1] + timedelta(days=1)
    return {
        "subject": item.project.name,
        "body": {
            "contentType": "text",
            "content": build_event_body(item, app_base_url),
        },
        "start": {"dateTime": booked[0].isoformat(), "timeZone": timezone},
        "end": {"dateTime": end_exclusive.isoformat(), "timeZone": timezone},
        "isAllDay": True,
        "showAs": show_as(status),
        "categories": [provider_category(status)],
        "sensitivity": "normal",
    }


class OutlookCalendarClient:
    def __init__(self, access_token: str, base_url: str, timeout_seconds: int = 30) -> None:
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> requests.Response:
        try:
            response = requests.request(
                method,
                f"{self.base_url}{path}",
                headers=self._headers(),
                json=payload,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderError(f"{method} {path} failed: {type(exc).__name__}: {exc}") from exc
        if not response.ok:
            raise ProviderError(
                f"{method} {path} failed: HTTP {response.status_code}: {_error_text(response)}",
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _events_path(calendar_id: str | None) -> str:
        if not calendar_id or calendar_id == "primary":
            return "/me/calendar/events"
        return f"/me/calendars/{calendar_id}/events"

    def create_event(self, event: dict[str, Any], calendar_id: str | None = None) -> str:
        response = self._request("POST", self._events_path(calendar_id), event)
        event_id = str((response.json() or {}).get("id") or "").strip()
        if not event_id:
            raise ProviderError("Create event response did not include an id.")
        return event_id

    def update_event(self, event_id: str, event: dict[str, Any]) -> None:
        self._request("PATCH", f"/me/events/{event_id}", event)

    def delete_event(self, event_id: str) -> bool:
        """Returns False when the event was already gone."""
        try:
            self._request("DELETE", f"/me/events/{event_id}")
        except ProviderError as exc:
            if exc.is_not_found:
                return False
            raise
        return True

    def get_profile(self) -> dict[str, Any]:
        response = self._request("GET", "/me")
        payload = response.json()
        return {
            "id": payload.get("id"),
            "display_name": payload.get("displayName"),
            "email": payload.get("mail") or payload.get("userPrincipalName"),
        }

    def list_calendars(self) -> list[dict[str, Any]]:
        response = self._request("GET", "/me/calendars")
        items = (response.json() or {}).get("value", [])
        return [
            {
                "id": item.get("id"),
                "name": item.get("name"),
                "can_edit": bool(item.get("canEdit")),
                "is_default": bool(item.get("isDefaultCalendar")),
            }
            for item in items
        ]
