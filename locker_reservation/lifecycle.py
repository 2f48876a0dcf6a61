from __future__ import annotations

from enum import Enum

from .errors import InvalidTransition


class ReservationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def blocks_slot(self) -> bool:
        return self in BLOCKING_STATUSES


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


BLOCKING_STATUSES = frozenset({ReservationStatus.CONFIRMED, ReservationStatus.ACTIVE})
TERMINAL_STATUSES = frozenset({ReservationStatus.COMPLETED, ReservationStatus.CANCELLED, ReservationStatus.EXPIRED})
INITIAL_STATUSES = frozenset({ReservationStatus.PENDING, ReservationStatus.CONFIRMED})

TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.PENDING: frozenset(
        {ReservationStatus.CONFIRMED, ReservationStatus.CANCELLED, ReservationStatus.EXPIRED}
    ),
    ReservationStatus.CONFIRMED: frozenset({ReservationStatus.ACTIVE, ReservationStatus.CANCELLED}),
    ReservationStatus.ACTIVE: frozenset({ReservationStatus.COMPLETED, ReservationStatus.CANCELLED}),
    ReservationStatus.COMPLETED: frozenset(),
    ReservationStatus.CANCELLED: frozenset(),
    ReservationStatus.EXPIRED: frozenset(),
}


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in TRANSITIONS[current]


def ensure_transition(current: ReservationStatus, target: ReservationStatus) -> None:
    """Raise InvalidTransition unless ``current -> target`` is a lifecycle edge."""
    if current is ReservationStatus.ACTIVE and target is not ReservationStatus.COMPLETED:
        raise InvalidTransition("An active reservation may only be moved to completed.")
    if current.is_terminal:
        raise InvalidTransition(f"Reservation is already {current.value} and cannot change.")
    if not can_transition(current, target):
        raise InvalidTransition(f"Cannot move reservation from {current.value} to {target.value}.")


def parse_status(value: str | ReservationStatus) -> ReservationStatus:
    if isinstance(value, ReservationStatus):
        return value
    try:
        return ReservationStatus(str(value).strip().lower())
    except ValueError as error:
        raise ValueError(f"Unknown reservation status: {value}") from error
