from __future__ import annotations

import logging
from typing import Any, Iterable

from crewcal import booking_status
from crewcal.errors import CrewcalError, NotFoundError, ValidationError
from crewcal.models import BulkFailure, BulkResult
from crewcal.repository import AssignmentRepository


logger = logging.getLogger(__name__)


def _unique_ids(ids: Iterable[Any]) -> list[str]:
    return list(dict.fromkeys(str(x).strip() for x in ids if str(x or "").strip()))


class BulkOperationCoordinator:
    """Applies one change to many ids, isolating failures per item.

    Items applied before a failure stay applied; callers read ``failed`` instead of
    assuming all-or-nothing.
    """

    def __init__(self, repository: AssignmentRepository) -> None:
        self.repository = repository

    def bulk_update_status(
        self,
        assignment_ids: Iterable[Any],
        new_status: Any,
        note: str | None = None,
        changed_by: str | None = None,
    ) -> BulkResult:
        ids = _unique_ids(assignment_ids)
        if not ids:
            raise ValidationError("No assignments selected")
        target = booking_status.transition_to(None, new_status)

        result = BulkResult()
        for assignment_id in ids:
            try:
                assignment = self.repository.get_assignment(assignment_id)
                if assignment is None:
                    raise NotFoundError("Assignment", assignment_id)
                if assignment.booking_status == target.value:
                    result.succeeded.append(assignment_id)
                    continue
                self.repository.update_assignment_status(
                    assignment_id,
                    target.value,
                    changed_by=changed_by,
                    note=note,
                )
                result.succeeded.append(assignment_id)
            except CrewcalError as exc:
                result.failed.append(BulkFailure(id=assignment_id, reason=exc.message, kind=exc.kind))
            except Exception as exc:
                logger.exception("Bulk status update failed for assignment %s", assignment_id)
                result.failed.append(BulkFailure(id=assignment_id, reason=str(exc) or type(exc).__name__, kind="error"))
        if result.failed:
            logger.info(
                "Bulk status update to %s: %s succeeded, %s failed",
                target.value,
                len(result.succeeded),
                len(result.failed),
            )
        return result

    def bulk_remove_excluded_dates(self, excluded_date_ids: Iterable[Any]) -> tuple[BulkResult, list[str]]:
        """Remove exclusions independently; also returns the ids of the assignments touched."""
        ids = _unique_ids(excluded_date_ids)
        if not ids:
            raise ValidationError("No excluded dates selected")

        result = BulkResult()
        touched: list[str] = []
        for excluded_date_id in ids:
            try:
                existing = self.repository.get_excluded_date(excluded_date_id)
                if existing is None or not self.repository.delete_excluded_date(excluded_date_id):
                    raise NotFoundError("Excluded date", excluded_date_id)
                result.succeeded.append(excluded_date_id)
                if existing.assignment_id not in touched:
                    touched.append(existing.assignment_id)
            except CrewcalError as exc:
                result.failed.append(BulkFailure(id=excluded_date_id, reason=exc.message, kind=exc.kind))
            except Exception as exc:
                logger.exception("Bulk removal failed for excluded date %s", excluded_date_id)
                result.failed.append(BulkFailure(id=excluded_date_id, reason=str(exc) or type(exc).__name__, kind="error"))
        return result, touched
