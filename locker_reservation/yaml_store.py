from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator
import shutil
import threading

import yaml
from loguru import logger

from .booking import ensure_utc, find_conflicts, parse_timestamp
from .errors import ConcurrentModification, NotFound, ReservationStorageError
from .lifecycle import BLOCKING_STATUSES, PaymentStatus, ReservationStatus


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="seconds")


def _optional_timestamp(value: Any) -> datetime | None:
    if value is None or str(value).strip() == "":
        return None
    return parse_timestamp(str(value))


def _optional_text(value: Any) -> str | None:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class ReservationRecord:
    reservation_id: str
    owner_id: str
    venue_id: str
    slot_id: int
    start: datetime
    end: datetime
    status: ReservationStatus
    created_at: datetime
    updated_at: datetime
    payment_status: PaymentStatus = PaymentStatus.PENDING
    access_code: str | None = None
    notes: str | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    checked_in_at: datetime | None = None
    checked_out_at: datetime | None = None

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def duration_hours(self) -> float:
        return self.duration.total_seconds() / 3600

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "reservation_id": self.reservation_id,
            "owner_id": self.owner_id,
            "venue_id": self.venue_id,
            "slot_id": self.slot_id,
            "start": _format_timestamp(self.start),
            "end": _format_timestamp(self.end),
            "status": self.status.value,
            "payment_status": self.payment_status.value,
            "created_at": _format_timestamp(self.created_at),
            "updated_at": _format_timestamp(self.updated_at),
        }
        optional = {
            "access_code": self.access_code,
            "notes": self.notes,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_at": _format_timestamp(self.cancelled_at),
            "checked_in_at": _format_timestamp(self.checked_in_at),
            "checked_out_at": _format_timestamp(self.checked_out_at),
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ReservationRecord":
        return ReservationRecord(
            reservation_id=str(data["reservation_id"]),
            owner_id=str(data["owner_id"]),
            venue_id=str(data["venue_id"]),
            slot_id=int(data["slot_id"]),
            start=parse_timestamp(str(data["start"])),
            end=parse_timestamp(str(data["end"])),
            status=ReservationStatus(str(data["status"])),
            created_at=parse_timestamp(str(data["created_at"])),
            updated_at=parse_timestamp(str(data["updated_at"])),
            payment_status=PaymentStatus(str(data.get("payment_status") or PaymentStatus.PENDING.value)),
            access_code=_optional_text(data.get("access_code")),
            notes=_optional_text(data.get("notes")),
            cancellation_reason=_optional_text(data.get("cancellation_reason")),
            cancelled_at=_optional_timestamp(data.get("cancelled_at")),
            checked_in_at=_optional_timestamp(data.get("checked_in_at")),
            checked_out_at=_optional_timestamp(data.get("checked_out_at")),
        )


class ReservationYamlRepository:
    """YAML-file reservation store.

    Open reservations (pending, confirmed, active) live in one file and
    terminal ones are moved to a closed ledger; nothing is ever deleted. Every
    read-modify-write runs under ``transaction()`` so concurrent writers never
    drop each other's rows.
    """

    def __init__(self, base_dir: str | Path = "data") -> None:
        self.base_dir = Path(base_dir)
        self.open_file = self.base_dir / "open_reservations.yaml"
        self.closed_file = self.base_dir / "closed_reservations.yaml"
        self.log_file = self.base_dir / "reservation_events.yaml"
        self._lock = threading.RLock()
        self._ensure_files()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            yield

    def _ensure_files(self) -> None:
        try:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            for path in (self.open_file, self.closed_file, self.log_file):
                if not path.exists():
                    path.write_text("[]\n", encoding="utf-8")
        except OSError as error:
            raise ReservationStorageError(f"Failed to prepare data directory: {self.base_dir}") from error

    def _read_yaml_list(self, path: Path) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            path.write_text("[]\n", encoding="utf-8")
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            self._recover_corrupted_yaml(path, error)
            return []

        if payload is None:
            return []
        if not isinstance(payload, list):
            self._recover_corrupted_yaml(path, ValueError("top-level YAML is not a list"))
            return []

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            else:
                self._skip_row(path, index, "row is not a mapping")
        return sanitized

    def _write_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
            temp_path.replace(path)
        except OSError as error:
            raise ReservationStorageError(f"Failed to write YAML file: {path}") from error
        finally:
            if temp_path.exists():
                temp_path.unlink(missing_ok=True)

    def _recover_corrupted_yaml(self, path: Path, error: Exception) -> None:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError:
            logger.warning("Could not back up corrupted file {}", path)

        logger.error("Recovered corrupted YAML file {} ({})", path.name, error)
        path.write_text("[]\n", encoding="utf-8")
        if path != self.log_file:
            self.log_event(
                "YAML_RECOVERED",
                {
                    "file": str(path.name),
                    "backup": str(backup_path.name),
                    "reason": str(error),
                },
            )

    def _skip_row(self, path: Path, index: int, reason: str) -> None:
        logger.warning("Skipping row {} of {}: {}", index, path.name, reason)
        if path != self.log_file:
            self.log_event("YAML_ROW_SKIPPED", {"file": str(path.name), "index": index, "reason": reason})

    def _load_records(self, path: Path) -> list[ReservationRecord]:
        records: list[ReservationRecord] = []
        for index, row in enumerate(self._read_yaml_list(path)):
            try:
                records.append(ReservationRecord.from_dict(row))
            except (KeyError, TypeError, ValueError) as error:
                self._skip_row(path, index, f"invalid reservation row: {error}")
        return records

    def _write_records(self, path: Path, records: Iterable[ReservationRecord]) -> None:
        self._write_yaml_list(path, [record.to_dict() for record in records])

    def log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        timestamp = _format_timestamp(event_time or datetime.now(timezone.utc))
        with self._lock:
            events = self._read_yaml_list(self.log_file)
            events.append({"event_time": timestamp, "event_type": event_type, "payload": payload})
            self._write_yaml_list(self.log_file, events)

    def get_events(self) -> list[dict[str, Any]]:
        with self._lock:
            return self._read_yaml_list(self.log_file)

    def get_open_reservations(self) -> list[ReservationRecord]:
        with self._lock:
            return self._load_records(self.open_file)

    def get_closed_reservations(self) -> list[ReservationRecord]:
        with self._lock:
            return self._load_records(self.closed_file)

    def get_all_reservations(self) -> list[ReservationRecord]:
        with self._lock:
            return self._load_records(self.open_file) + self._load_records(self.closed_file)

    def get_reservation(self, reservation_id: str) -> ReservationRecord | None:
        for record in self.get_all_reservations():
            if record.reservation_id == reservation_id:
                return record
        return None

    def find_overlapping(
        self,
        venue_id: str,
        start: datetime,
        end: datetime,
        slot_id: int | None = None,
        statuses: Iterable[ReservationStatus] = BLOCKING_STATUSES,
        exclude_id: str | None = None,
    ) -> list[ReservationRecord]:
        wanted = frozenset(statuses)
        candidates = [
            record
            for record in self.get_open_reservations()
            if record.venue_id == venue_id
            and (slot_id is None or record.slot_id == slot_id)
            and record.status in wanted
            and record.reservation_id != exclude_id
        ]
        return find_conflicts(start, end, candidates)

    def add_reservation(self, record: ReservationRecord) -> ReservationRecord:
        with self._lock:
            if self.get_reservation(record.reservation_id) is not None:
                raise ReservationStorageError(f"Duplicate reservation id: {record.reservation_id}")
            target = self.closed_file if record.status.is_terminal else self.open_file
            records = self._load_records(target)
            records.append(record)
            self._write_records(target, records)
        return record

    def save_reservation(
        self,
        record: ReservationRecord,
        expected_status: ReservationStatus | None = None,
    ) -> ReservationRecord:
        """Replace the stored row with the same id, moving it to the closed ledger once terminal.

        With ``expected_status`` the write only happens while the stored row still
        has that status; otherwise ``ConcurrentModification`` is raised and nothing
        is written.
        """
        with self._lock:
            open_records = self._load_records(self.open_file)
            closed_records = self._load_records(self.closed_file)

            stored = next(
                (row for row in open_records + closed_records if row.reservation_id == record.reservation_id),
                None,
            )
            if stored is None:
                raise NotFound(f"Reservation not found: {record.reservation_id}")
            if expected_status is not None and stored.status is not expected_status:
                raise ConcurrentModification(
                    f"Reservation {record.reservation_id} is now {stored.status.value}; it changed while being modified.",
                    stored.status,
                )

            in_open = any(row.reservation_id == record.reservation_id for row in open_records)
            in_closed = not in_open

            open_records = [row for row in open_records if row.reservation_id != record.reservation_id]
            closed_records = [row for row in closed_records if row.reservation_id != record.reservation_id]
            if record.status.is_terminal:
                closed_records.append(record)
                self._write_records(self.closed_file, closed_records)
                if in_open:
                    self._write_records(self.open_file, open_records)
            else:
                open_records.append(record)
                self._write_records(self.open_file, open_records)
                if in_closed:
                    self._write_records(self.closed_file, closed_records)
        return record

    def transition_where(
        self,
        from_status: ReservationStatus,
        to_status: ReservationStatus,
        condition: Callable[[ReservationRecord], bool],
        now: datetime,
        **changes: Any,
    ) -> list[ReservationRecord]:
        """Set-based conditional update: every open record in ``from_status`` matching ``condition``
        moves to ``to_status`` in one write. Returns the updated records."""
        with self._lock:
            open_records = self._load_records(self.open_file)
            remaining: list[ReservationRecord] = []
            changed: list[ReservationRecord] = []
            for record in open_records:
                if record.status is from_status and condition(record):
                    changed.append(replace(record, status=to_status, updated_at=now, **changes))
                else:
                    remaining.append(record)

            if not changed:
                return []

            if to_status.is_terminal:
                closed_records = self._load_records(self.closed_file)
                closed_records.extend(changed)
                self._write_records(self.closed_file, closed_records)
                self._write_records(self.open_file, remaining)
            else:
                self._write_records(self.open_file, remaining + changed)
        return changed
