from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .lifecycle import ReservationStatus


class ReservationError(Exception):
    """Base class for every failure the reservation engine reports."""


class ReservationValidationError(ReservationError, ValueError):
    """The request itself is malformed; rejected before the store is touched."""


class InvalidInterval(ReservationValidationError):
    pass


class DurationExceeded(ReservationValidationError):
    pass


class InvalidSlot(ReservationValidationError):
    pass


class UnknownVenue(InvalidSlot):
    pass


class SlotConflict(ReservationError):
    """The requested slot already carries a confirmed or active reservation for that time."""

    def __init__(self, message: str, conflicting_ids: list[str] | None = None) -> None:
        super().__init__(message)
        self.conflicting_ids = list(conflicting_ids or [])


class ReservationStateError(ReservationError):
    """The request is well formed but the reservation's current state rejects it."""


class NotFound(ReservationStateError):
    pass


class Forbidden(ReservationStateError):
    pass


class InvalidAccessCode(Forbidden):
    pass


class AlreadyTerminal(ReservationStateError):
    pass


class CancellationWindowClosed(ReservationStateError):
    pass


class InvalidTransition(ReservationStateError):
    pass


class ConcurrentModification(InvalidTransition):
    """The stored record left the status a write was based on."""

    def __init__(self, message: str, current_status: ReservationStatus) -> None:
        super().__init__(message)
        self.current_status = current_status


class ReservationStorageError(RuntimeError):
    pass
