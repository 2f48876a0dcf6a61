from datetime import datetime, timezone
from typing import Any, Iterable


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken to already be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    text = str(value).strip()
    if not text:
        raise ValueError("timestamp must not be empty")
    return ensure_utc(datetime.fromisoformat(text))


def has_time_overlap(new_start: datetime, new_end: datetime, exist_start: datetime, exist_end: datetime) -> bool:
    """Return True when two time intervals touch or overlap.

    Both bounds are inclusive: [start, end]. A booking ending at 11:00 and
    another starting at 11:00 share that instant and therefore conflict.
    """
    if new_start >= new_end:
        raise ValueError("new_start must be earlier than new_end.")
    if exist_start >= exist_end:
        raise ValueError("exist_start must be earlier than exist_end.")

    return new_start <= exist_end and new_end >= exist_start


def find_conflicts(new_start: datetime, new_end: datetime, records: Iterable[Any]) -> list[Any]:
    """Return the records (anything with start/end) overlapping the requested interval."""
    return [record for record in records if has_time_overlap(new_start, new_end, record.start, record.end)]


def contains(window_start: datetime | None, window_end: datetime | None, moment: datetime) -> bool:
    """Inclusive containment of ``moment`` in a window; a missing bound is open."""
    if window_start is not None and moment < window_start:
        return False
    if window_end is not None and moment > window_end:
        return False
    return True
