from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from crewcal.booking_status import BookingStatus
from crewcal.errors import NotFoundError, ValidationError
from crewcal.models import ConfirmationRequest, utc_now
from crewcal.repository import AssignmentRepository


logger = logging.getLogger(__name__)

REQUEST_TTL = timedelta(days=7)


class ConfirmationWorkflow:
    """Customer approval of a batch of assignments via a single-use token.

    Sending a request moves draft assignments to pending confirmation; the response
    confirms them or returns them to draft. Delivery of the request email is handled
    elsewhere.
    """

    def __init__(self, repository: AssignmentRepository, clock: Callable[[], datetime] = utc_now) -> None:
        self.repository = repository
        self.clock = clock

    def create_confirmation_request(
        self,
        project_id: str,
        assignment_ids: list[str],
        sent_to_email: str,
        sent_to_name: str | None = None,
        changed_by: str | None = None,
    ) -> tuple[ConfirmationRequest, list[str]]:
        if self.repository.get_project(project_id) is None:
            raise NotFoundError("Project", project_id)
        email = (sent_to_email or "").strip()
        if "@" not in email:
            raise ValidationError("A valid recipient email is required")
        ids = list(dict.fromkeys(x for x in assignment_ids if x))
        if not ids:
            raise ValidationError("At least one assignment is required")

        assignments = []
        for assignment_id in ids:
            assignment = self.repository.get_assignment(assignment_id)
            if assignment is None:
                raise NotFoundError("Assignment", assignment_id)
            if assignment.project_id != project_id:
                raise ValidationError(f"Assignment {assignment_id} does not belong to this project")
            assignments.append(assignment)

        request = self.repository.create_confirmation_request(
            project_id=project_id,
            assignment_ids=ids,
            sent_to_email=email,
            sent_to_name=(sent_to_name or "").strip() or None,
            expires_at=self.clock() + REQUEST_TTL,
        )
        changed: list[str] = []
        for assignment in assignments:
            if assignment.booking_status != BookingStatus.DRAFT.value:
                continue
            self.repository.update_assignment_status(
                assignment.id,
                BookingStatus.PENDING_CONFIRM.value,
                changed_by=changed_by,
                note=f"Confirmation requested from {email}",
            )
            changed.append(assignment.id)
        logger.info("Created confirmation request %s for %s assignment(s)", request.id, len(ids))
        return request, changed

    def handle_confirmation_response(
        self,
        token: str,
        approved: bool,
        note: str | None = None,
    ) -> tuple[ConfirmationRequest, list[str]]:
        request = self.repository.get_confirmation_request_by_token(token)
        if request is None:
            raise NotFoundError("Confirmation request", token)
        if request.status != "pending":
            raise ValidationError(f"Confirmation request is already {request.status}")
        if self.clock() > request.expires_at:
            self.repository.set_confirmation_status(request.id, "expired")
            raise ValidationError("Confirmation request has expired")

        target = BookingStatus.CONFIRMED if approved else BookingStatus.DRAFT
        history_note = "Confirmed by customer" if approved else "Declined by customer"
        if note:
            history_note = f"{history_note}: {note}"
        changed: list[str] = []
        for assignment_id in request.assignment_ids:
            assignment = self.repository.get_assignment(assignment_id)
            # Items changed by hand since the request was sent are left alone.
            if assignment is None or assignment.booking_status != BookingStatus.PENDING_CONFIRM.value:
                continue
            self.repository.update_assignment_status(
                assignment_id,
                target.value,
                changed_by=request.sent_to_email,
                note=history_note,
            )
            changed.append(assignment_id)

        self.repository.set_confirmation_status(
            request.id,
            "confirmed" if approved else "declined",
            decline_reason=None if approved else (note or None),
        )
        return self.repository.get_confirmation_request_by_token(token), changed
