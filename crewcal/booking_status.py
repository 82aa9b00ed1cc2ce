from __future__ import annotations

from enum import Enum
from typing import Any

from crewcal.errors import InvalidStateError, UnsupportedStatusError


class BookingStatus(str, Enum):
    DRAFT = "draft"
    PENDING_CONFIRM = "pending_confirm"
    CONFIRMED = "confirmed"


# Cycle order used by the single-click toggle. "complete" was retired and is never a member.
CYCLE_ORDER = (BookingStatus.DRAFT, BookingStatus.PENDING_CONFIRM, BookingStatus.CONFIRMED)

STATUS_LABELS = {
    BookingStatus.DRAFT: "Draft",
    BookingStatus.PENDING_CONFIRM: "Pending Confirmation",
    BookingStatus.CONFIRMED: "Confirmed",
}

# status -> (availability shown in the external calendar, category label)
STATUS_APPEARANCE = {
    BookingStatus.DRAFT: ("tentative", "Blue"),
    BookingStatus.PENDING_CONFIRM: ("tentative", "Purple"),
    BookingStatus.CONFIRMED: ("busy", "Green"),
}


def _coerce(value: Any) -> BookingStatus | None:
    if isinstance(value, BookingStatus):
        return value
    text = str(value or "").strip().lower()
    for status in BookingStatus:
        if status.value == text:
            return status
    return None


def parse_status(value: Any) -> BookingStatus:
    status = _coerce(value)
    if status is None:
        raise InvalidStateError(f"Unknown booking status: {value!r}")
    return status


def is_valid_status(value: Any) -> bool:
    return _coerce(value) is not None


def cycle(current: Any) -> BookingStatus:
    status = parse_status(current)
    index = CYCLE_ORDER.index(status)
    return CYCLE_ORDER[(index + 1) % len(CYCLE_ORDER)]


def transition_to(current: Any, target: Any) -> BookingStatus:
    """Validate a direct status change and return the target status.

    Only the target is checked: a row holding a legacy value may still be moved back
    into the cycle.
    """
    status = _coerce(target)
    if status is None:
        raise UnsupportedStatusError(f"Unsupported booking status: {target!r}")
    return status


def status_label(value: Any) -> str:
    status = _coerce(value)
    if status is None:
        return str(value)
    return STATUS_LABELS[status]


def show_as(value: Any) -> str:
    return STATUS_APPEARANCE[parse_status(value)][0]


def category_label(value: Any) -> str:
    return STATUS_APPEARANCE[parse_status(value)][1]


def provider_category(value: Any) -> str:
    return f"{category_label(value)} category"
