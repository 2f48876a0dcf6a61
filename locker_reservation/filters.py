from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Sequence, TypeVar

from .booking import contains
from .lifecycle import ReservationStatus

MAX_PAGE_SIZE = 100

T = TypeVar("T")


@dataclass(frozen=True)
class ReservationFilter:
    owner_id: str | None = None
    venue_id: str | None = None
    status: ReservationStatus | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    page: int | None = None
    limit: int | None = None

    def __post_init__(self) -> None:
        if self.page is not None and self.page < 1:
            raise ValueError("page must be at least 1")
        if self.limit is not None and not 1 <= self.limit <= MAX_PAGE_SIZE:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if self.start_date is not None and self.end_date is not None and self.start_date > self.end_date:
            raise ValueError("start_date must not be later than end_date")


def build_predicate(criteria: ReservationFilter) -> Callable[[object], bool]:
    """Combine the filter's present fields into one predicate over reservation records.

    The date window matches on the reservation's start time; either bound may be omitted.
    """
    checks: list[Callable[[object], bool]] = []

    if criteria.owner_id is not None:
        checks.append(lambda record: record.owner_id == criteria.owner_id)
    if criteria.venue_id is not None:
        checks.append(lambda record: record.venue_id == criteria.venue_id)
    if criteria.status is not None:
        checks.append(lambda record: record.status is criteria.status)
    if criteria.start_date is not None or criteria.end_date is not None:
        checks.append(lambda record: contains(criteria.start_date, criteria.end_date, record.start))

    def predicate(record: object) -> bool:
        return all(check(record) for check in checks)

    return predicate


def paginate(rows: Sequence[T], page: int | None, limit: int | None) -> list[T]:
    if limit is None:
        return list(rows)
    offset = ((page or 1) - 1) * limit
    return list(rows[offset : offset + limit])
