from __future__ import annotations

from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, fields, replace
from datetime import datetime, timezone
from typing import Any, Callable, Iterator
import secrets
import threading
from uuid import uuid4

from loguru import logger

from .booking import ensure_utc, parse_timestamp
from .catalog import VenueCatalog, default_venues
from .config import Settings
from .errors import (
    AlreadyTerminal,
    CancellationWindowClosed,
    ConcurrentModification,
    DurationExceeded,
    Forbidden,
    InvalidAccessCode,
    InvalidInterval,
    InvalidSlot,
    InvalidTransition,
    NotFound,
    ReservationStorageError,
    SlotConflict,
)
from .filters import ReservationFilter, build_predicate, paginate
from .lifecycle import (
    INITIAL_STATUSES,
    PaymentStatus,
    ReservationStatus,
    ensure_transition,
    parse_status,
)
from .yaml_store import ReservationRecord, ReservationYamlRepository

SlotKey = tuple[str, int]

MAX_PLACEMENT_ATTEMPTS = 3
PENDING_EXPIRED_REASON = "pending reservation expired"


class SlotLockTable:
    """One mutex per (venue, slot); bookings on different slots never wait on each other."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[SlotKey, threading.Lock] = {}

    def lock_for(self, key: SlotKey) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: SlotKey) -> Iterator[None]:
        # Sorted acquisition so two multi-slot holders cannot deadlock.
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.lock_for(key))
            yield


@dataclass(frozen=True)
class ReservationPatch:
    venue_id: str | None = None
    slot_id: int | None = None
    start: datetime | None = None
    end: datetime | None = None
    notes: str | None = None
    status: ReservationStatus | None = None
    cancellation_reason: str | None = None
    payment_status: PaymentStatus | None = None

    def present(self) -> dict[str, Any]:
        return {item.name: getattr(self, item.name) for item in fields(self) if getattr(self, item.name) is not None}

    @property
    def moves_placement(self) -> bool:
        return any(value is not None for value in (self.venue_id, self.slot_id, self.start, self.end))

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ReservationPatch":
        converters: dict[str, Callable[[Any], Any]] = {
            "venue_id": str,
            "slot_id": int,
            "start": lambda value: parse_timestamp(str(value)),
            "end": lambda value: parse_timestamp(str(value)),
            "notes": str,
            "status": parse_status,
            "cancellation_reason": str,
            "payment_status": lambda value: PaymentStatus(str(value)),
        }
        values = {
            key: convert(data[key])
            for key, convert in converters.items()
            if data.get(key) is not None and data.get(key) != ""
        }
        return ReservationPatch(**values)


@dataclass(frozen=True)
class SweepResult:
    completed: int = 0
    cancelled: int = 0
    skipped: bool = False


class ReservationEngine:
    """Books lockers without ever letting two confirmed/active reservations touch on one slot."""

    def __init__(
        self,
        store: ReservationYamlRepository,
        catalog: VenueCatalog,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.settings = settings or Settings()
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(timezone.utc))
        self._slot_locks = SlotLockTable()
        self._sweep_guard = threading.Lock()

    def _now(self, now: datetime | None) -> datetime:
        return ensure_utc(now or self._clock())

    def _validate_placement(self, venue_id: str, slot_id: int, start: datetime, end: datetime) -> None:
        if start >= end:
            raise InvalidInterval("Reservation start time must be earlier than end time.")
        if end - start > self.settings.max_duration:
            raise DurationExceeded(f"Maximum rental duration is {self.settings.max_duration_hours:g} hours.")

        low, high = self.catalog.slot_range(venue_id)
        if not low <= slot_id <= high:
            raise InvalidSlot(f"Locker {slot_id} does not exist at venue {venue_id} (valid: {low}-{high}).")

    def _ensure_slot_free(
        self,
        venue_id: str,
        slot_id: int,
        start: datetime,
        end: datetime,
        exclude_id: str | None = None,
    ) -> None:
        conflicts = self.store.find_overlapping(venue_id, start, end, slot_id=slot_id, exclude_id=exclude_id)
        if conflicts:
            raise SlotConflict(
                "Locker is not available for the requested time.",
                [record.reservation_id for record in conflicts],
            )

    def create(
        self,
        venue_id: str,
        slot_id: int,
        start: datetime,
        end: datetime,
        owner_id: str,
        notes: str | None = None,
        status: ReservationStatus = ReservationStatus.CONFIRMED,
        now: datetime | None = None,
    ) -> ReservationRecord:
        start, end = ensure_utc(start), ensure_utc(end)
        status = parse_status(status)
        if status not in INITIAL_STATUSES:
            raise InvalidTransition(f"Reservations cannot be created as {status.value}.")
        self._validate_placement(venue_id, slot_id, start, end)

        with self._slot_locks.hold((venue_id, slot_id)):
            self._ensure_slot_free(venue_id, slot_id, start, end)

            effective_now = self._now(now)
            record = ReservationRecord(
                reservation_id=str(uuid4()),
                owner_id=str(owner_id),
                venue_id=venue_id,
                slot_id=slot_id,
                start=start,
                end=end,
                status=status,
                created_at=effective_now,
                updated_at=effective_now,
                access_code=_generate_access_code(),
                notes=notes,
            )
            self.store.add_reservation(record)

        logger.info(
            "Reservation {} created for venue={} slot={} {}..{}",
            record.reservation_id,
            venue_id,
            slot_id,
            start.isoformat(),
            end.isoformat(),
        )
        self.store.log_event(
            "RESERVATION_CREATED",
            {
                "reservation_id": record.reservation_id,
                "owner_id": record.owner_id,
                "venue_id": venue_id,
                "slot_id": slot_id,
                "start": start.isoformat(timespec="seconds"),
                "end": end.isoformat(timespec="seconds"),
                "status": record.status.value,
            },
            effective_now,
        )
        return record

    def find_by_id(self, reservation_id: str) -> ReservationRecord:
        record = self.store.get_reservation(reservation_id)
        if record is None:
            raise NotFound("Booking not found")
        return record

    def find_overlapping(self, venue_id: str, slot_id: int, start: datetime, end: datetime) -> list[ReservationRecord]:
        return self.store.find_overlapping(venue_id, ensure_utc(start), ensure_utc(end), slot_id=slot_id)

    def find_by_owner(self, owner_id: str) -> list[ReservationRecord]:
        return self.list_all(ReservationFilter(owner_id=owner_id))

    def find_by_venue(self, venue_id: str) -> list[ReservationRecord]:
        return self.list_all(ReservationFilter(venue_id=venue_id))

    def list_all(self, criteria: ReservationFilter | None = None) -> list[ReservationRecord]:
        criteria = criteria or ReservationFilter()
        predicate = build_predicate(criteria)
        matched = [record for record in self.store.get_all_reservations() if predicate(record)]
        matched.sort(key=lambda record: record.created_at, reverse=True)
        return paginate(matched, criteria.page, criteria.limit)

    def available_slots(self, venue_id: str, start: datetime, end: datetime) -> list[int]:
        start, end = ensure_utc(start), ensure_utc(end)
        if start >= end:
            raise InvalidInterval("Availability start time must be earlier than end time.")

        all_slots = self.catalog.slot_ids(venue_id)
        booked = {record.slot_id for record in self.store.find_overlapping(venue_id, start, end)}
        return [slot_id for slot_id in all_slots if slot_id not in booked]

    @contextmanager
    def _locked_record(
        self,
        reservation_id: str,
        target: Callable[[ReservationRecord], SlotKey] | None = None,
    ) -> Iterator[ReservationRecord]:
        """Hold the record's slot lock (and the ``target`` slot's) and yield a fresh read of it."""
        for _ in range(MAX_PLACEMENT_ATTEMPTS):
            snapshot = self.find_by_id(reservation_id)
            keys = [(snapshot.venue_id, snapshot.slot_id)]
            if target is not None:
                keys.append(target(snapshot))
            with self._slot_locks.hold(*keys):
                current = self.find_by_id(reservation_id)
                if (current.venue_id, current.slot_id) == (snapshot.venue_id, snapshot.slot_id):
                    yield current
                    return
        raise ReservationStorageError(f"Reservation {reservation_id} kept moving while being modified.")

    def update(self, reservation_id: str, patch: ReservationPatch, now: datetime | None = None) -> ReservationRecord:
        def target(record: ReservationRecord) -> SlotKey:
            return (
                patch.venue_id if patch.venue_id is not None else record.venue_id,
                patch.slot_id if patch.slot_id is not None else record.slot_id,
            )

        with self._locked_record(reservation_id, target) as current:
            if current.status.is_terminal:
                raise InvalidTransition(f"Reservation is already {current.status.value} and cannot change.")
            if patch.status is not None and (
                current.status is ReservationStatus.ACTIVE or patch.status is not current.status
            ):
                ensure_transition(current.status, patch.status)

            effective_now = self._now(now)
            changes = patch.present()
            if "start" in changes:
                changes["start"] = ensure_utc(changes["start"])
            if "end" in changes:
                changes["end"] = ensure_utc(changes["end"])
            changes["updated_at"] = effective_now
            changes.update(_status_stamps(current.status, patch.status, effective_now))
            updated = replace(current, **changes)

            needs_check = updated.status.blocks_slot and (patch.moves_placement or not current.status.blocks_slot)
            if patch.moves_placement or needs_check:
                self._validate_placement(updated.venue_id, updated.slot_id, updated.start, updated.end)
            if needs_check:
                self._ensure_slot_free(
                    updated.venue_id, updated.slot_id, updated.start, updated.end, exclude_id=reservation_id
                )

            self.store.save_reservation(updated, expected_status=current.status)

        logger.info("Reservation {} updated: {}", reservation_id, sorted(patch.present()))
        self.store.log_event(
            "RESERVATION_UPDATED",
            {
                "reservation_id": reservation_id,
                "fields": sorted(patch.present()),
                "status": updated.status.value,
            },
            effective_now,
        )
        return updated

    def cancel(
        self,
        reservation_id: str,
        requesting_user_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> ReservationRecord:
        with self._locked_record(reservation_id) as current:
            if current.owner_id != str(requesting_user_id):
                raise Forbidden("You can only cancel your own bookings.")
            if current.status.is_terminal:
                raise AlreadyTerminal(f"Cannot cancel a {current.status.value} booking.")

            effective_now = self._now(now)
            if current.start - effective_now < self.settings.cancellation_window:
                raise CancellationWindowClosed(
                    f"Cannot cancel booking within {self.settings.cancellation_window_minutes} minutes of start time."
                )

            cancelled = replace(
                current,
                status=ReservationStatus.CANCELLED,
                cancelled_at=effective_now,
                updated_at=effective_now,
                cancellation_reason=reason if reason is not None else current.cancellation_reason,
            )
            try:
                self.store.save_reservation(cancelled, expected_status=current.status)
            except ConcurrentModification as error:
                if error.current_status.is_terminal:
                    raise AlreadyTerminal(f"Cannot cancel a {error.current_status.value} booking.") from error
                raise

        logger.info("Reservation {} cancelled by {}", reservation_id, requesting_user_id)
        self.store.log_event(
            "RESERVATION_CANCELLED",
            {"reservation_id": reservation_id, "owner_id": cancelled.owner_id, "reason": reason},
            effective_now,
        )
        return cancelled

    def check_in(self, reservation_id: str, access_code: str, now: datetime | None = None) -> ReservationRecord:
        with self._locked_record(reservation_id) as current:
            if current.status is not ReservationStatus.CONFIRMED:
                raise InvalidTransition(f"Only confirmed bookings can be checked in (status: {current.status.value}).")

            effective_now = self._now(now)
            if effective_now > current.end:
                raise InvalidTransition("The booking window has already ended.")
            if current.access_code is None or not secrets.compare_digest(current.access_code, str(access_code)):
                raise InvalidAccessCode("Access code does not match this booking.")

            checked_in = replace(
                current,
                status=ReservationStatus.ACTIVE,
                checked_in_at=effective_now,
                updated_at=effective_now,
            )
            self.store.save_reservation(checked_in, expected_status=current.status)

        self.store.log_event(
            "RESERVATION_CHECKED_IN",
            {"reservation_id": reservation_id, "slot_id": checked_in.slot_id},
            effective_now,
        )
        return checked_in

    def check_out(self, reservation_id: str, requesting_user_id: str, now: datetime | None = None) -> ReservationRecord:
        with self._locked_record(reservation_id) as current:
            if current.owner_id != str(requesting_user_id):
                raise Forbidden("You can only check out of your own bookings.")
            if current.status is not ReservationStatus.ACTIVE:
                raise InvalidTransition(f"Only active bookings can be checked out (status: {current.status.value}).")

            effective_now = self._now(now)
            checked_out = replace(
                current,
                status=ReservationStatus.COMPLETED,
                checked_out_at=effective_now,
                updated_at=effective_now,
            )
            self.store.save_reservation(checked_out, expected_status=current.status)

        self.store.log_event(
            "RESERVATION_CHECKED_OUT",
            {"reservation_id": reservation_id, "slot_id": checked_out.slot_id},
            effective_now,
        )
        return checked_out

    def expiry_sweep(self, now: datetime | None = None) -> SweepResult:
        """Complete active bookings whose end has passed and cancel stale pending ones.

        Safe to re-run at any time: a second pass over the same state changes nothing.
        """
        if not self._sweep_guard.acquire(blocking=False):
            logger.debug("Expiry sweep already running; skipping")
            return SweepResult(skipped=True)

        try:
            effective_now = self._now(now)
            stale_before = effective_now - self.settings.pending_ttl
            with self.store.transaction():
                completed = self.store.transition_where(
                    ReservationStatus.ACTIVE,
                    ReservationStatus.COMPLETED,
                    lambda record: record.end < effective_now,
                    effective_now,
                )
                cancelled = self.store.transition_where(
                    ReservationStatus.PENDING,
                    ReservationStatus.CANCELLED,
                    lambda record: record.created_at < stale_before,
                    effective_now,
                    cancelled_at=effective_now,
                    cancellation_reason=PENDING_EXPIRED_REASON,
                )
        finally:
            self._sweep_guard.release()

        for record in completed:
            self.store.log_event(
                "RESERVATION_COMPLETED",
                {"reservation_id": record.reservation_id, "end": record.end.isoformat(timespec="seconds")},
                effective_now,
            )
        for record in cancelled:
            self.store.log_event(
                "RESERVATION_EXPIRED",
                {"reservation_id": record.reservation_id, "created_at": record.created_at.isoformat(timespec="seconds")},
                effective_now,
            )
        if completed or cancelled:
            logger.info("Expiry sweep completed {} and cancelled {} reservations", len(completed), len(cancelled))
        return SweepResult(completed=len(completed), cancelled=len(cancelled))


def _status_stamps(
    current: ReservationStatus,
    target: ReservationStatus | None,
    now: datetime,
) -> dict[str, datetime]:
    if target is None or target is current:
        return {}
    if target is ReservationStatus.CANCELLED:
        return {"cancelled_at": now}
    if target is ReservationStatus.ACTIVE:
        return {"checked_in_at": now}
    if target is ReservationStatus.COMPLETED:
        return {"checked_out_at": now}
    return {}


def _generate_access_code() -> str:
    return f"{secrets.randbelow(10**6):06d}"


def build_engine(settings: Settings | None = None, clock: Callable[[], datetime] | None = None) -> ReservationEngine:
    settings = settings or Settings()
    if settings.venues_file is not None:
        catalog = VenueCatalog.from_yaml(settings.venues_file)
    else:
        catalog = VenueCatalog(default_venues())
    store = ReservationYamlRepository(settings.data_dir)
    return ReservationEngine(store, catalog, settings=settings, clock=clock)
