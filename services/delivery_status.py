"""Delivery-order status lifecycle.

Each status is a frozen dataclass.  Only ``Failed``, ``Rescheduled`` and
``Cancelled`` carry a payload, so a status value can never hold more than one
of the three status-conditional columns.
"""

from __future__ import annotations

import datetime
from dataclasses import dataclass
from typing import Optional, Union

from services.errors import ValidationError
from utils import clean_text, parse_iso_datetime


@dataclass(frozen=True)
class Confirmed:
    name = "confirmed"


@dataclass(frozen=True)
class Dispatched:
    name = "dispatched"


@dataclass(frozen=True)
class Delivered:
    name = "delivered"


@dataclass(frozen=True)
class PartiallyDelivered:
    name = "partially_delivered"


@dataclass(frozen=True)
class Failed:
    failure_reason: str
    name = "failed"


@dataclass(frozen=True)
class Rescheduled:
    rescheduled_at: datetime.datetime
    name = "rescheduled"


@dataclass(frozen=True)
class Cancelled:
    cancelled_reason: str
    name = "cancelled"


DeliveryStatus = Union[
    Confirmed, Dispatched, Delivered, PartiallyDelivered, Failed, Rescheduled, Cancelled
]

STATUS_ORDER = (
    "confirmed",
    "dispatched",
    "delivered",
    "partially_delivered",
    "failed",
    "rescheduled",
    "cancelled",
)

TRANSITIONS: dict[str, tuple[str, ...]] = {
    "confirmed": ("dispatched", "cancelled"),
    "dispatched": ("delivered", "partially_delivered", "failed", "rescheduled", "cancelled"),
    "failed": ("dispatched", "cancelled"),
    "rescheduled": ("dispatched", "cancelled"),
    "delivered": (),
    "partially_delivered": (),
    "cancelled": (),
}

DELIVERED_STATUSES = ("delivered", "partially_delivered")

STATUS_LABELS = {
    "confirmed": "Confirmed",
    "dispatched": "Dispatched",
    "delivered": "Delivered",
    "partially_delivered": "Partially Delivered",
    "failed": "Failed",
    "rescheduled": "Rescheduled",
    "cancelled": "Cancelled",
}


def side_fields(status: DeliveryStatus) -> dict:
    """All three status-conditional columns, with only *status*'s own payload set."""
    return {
        "failure_reason": status.failure_reason if isinstance(status, Failed) else None,
        "rescheduled_at": status.rescheduled_at if isinstance(status, Rescheduled) else None,
        "cancelled_reason": status.cancelled_reason if isinstance(status, Cancelled) else None,
    }


def normalize_status(raw) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    return value if value in TRANSITIONS else None


def allowed_transitions(current: str) -> tuple[str, ...]:
    return TRANSITIONS.get(current, ())


def can_transition(current: str, target: str) -> bool:
    return target in allowed_transitions(current)


def is_terminal(current: str) -> bool:
    return not allowed_transitions(current)


def require_status(raw_status) -> str:
    """Normalized status name, or ``ValidationError`` for anything unknown."""
    status = normalize_status(raw_status)
    if status is None:
        raise ValidationError(
            f"Invalid do_status. Must be one of: {', '.join(STATUS_ORDER)}"
        )
    return status


def build_status(raw_status, payload: dict) -> DeliveryStatus:
    """Validate a requested status and its required payload.

    Raises ``ValidationError`` for an unknown status or a missing/invalid
    side field.  Side fields that do not belong to the status are ignored.
    """
    status = require_status(raw_status)

    if status == "failed":
        reason = clean_text(payload.get("failure_reason"))
        if not reason:
            raise ValidationError("failure_reason is required when do_status is failed")
        return Failed(failure_reason=reason)

    if status == "cancelled":
        reason = clean_text(payload.get("cancelled_reason"))
        if not reason:
            raise ValidationError("cancelled_reason is required when do_status is cancelled")
        return Cancelled(cancelled_reason=reason)

    if status == "rescheduled":
        raw_at = clean_text(payload.get("rescheduled_at"))
        if not raw_at:
            raise ValidationError("rescheduled_at is required when do_status is rescheduled")
        parsed = parse_iso_datetime(raw_at)
        if parsed is None:
            raise ValidationError("rescheduled_at must be a valid ISO datetime")
        return Rescheduled(rescheduled_at=parsed)

    return {
        "confirmed": Confirmed,
        "dispatched": Dispatched,
        "delivered": Delivered,
        "partially_delivered": PartiallyDelivered,
    }[status]()
