from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from .errors import UnknownVenue


@dataclass(frozen=True)
class Venue:
    venue_id: str
    name: str
    total_lockers: int

    def __post_init__(self) -> None:
        if self.total_lockers < 1:
            raise ValueError("total_lockers must be at least 1")

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Venue":
        return Venue(
            venue_id=str(data["venue_id"]),
            name=str(data.get("name") or data["venue_id"]),
            total_lockers=int(data["total_lockers"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"venue_id": self.venue_id, "name": self.name, "total_lockers": self.total_lockers}


class VenueCatalog:
    """Read-only view of each venue's locker pool.

    Slot ids run from 1 to ``total_lockers`` inclusive.
    """

    def __init__(self, venues: Iterable[Venue] = ()) -> None:
        self._venues: dict[str, Venue] = {venue.venue_id: venue for venue in venues}

    @classmethod
    def from_mapping(cls, lockers_by_venue: Mapping[str, int]) -> "VenueCatalog":
        return cls(Venue(venue_id, venue_id, total) for venue_id, total in lockers_by_venue.items())

    @classmethod
    def from_yaml(cls, path: str | Path) -> "VenueCatalog":
        payload = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        if payload is None:
            return cls()
        if not isinstance(payload, list):
            raise ValueError(f"Venue file must contain a list of venues: {path}")
        return cls(Venue.from_dict(row) for row in payload if isinstance(row, dict))

    def get(self, venue_id: str) -> Venue:
        venue = self._venues.get(str(venue_id))
        if venue is None:
            raise UnknownVenue(f"Unknown venue: {venue_id}")
        return venue

    def slot_range(self, venue_id: str) -> tuple[int, int]:
        return 1, self.get(venue_id).total_lockers

    def slot_ids(self, venue_id: str) -> list[int]:
        low, high = self.slot_range(venue_id)
        return list(range(low, high + 1))

    def venues(self) -> list[Venue]:
        return sorted(self._venues.values(), key=lambda venue: venue.venue_id)


def default_venues() -> list[Venue]:
    return [
        Venue("ponce-city-market", "Ponce City Market", 5),
        Venue("krog-street-market", "Krog Street Market", 5),
        Venue("the-battery-atlanta", "The Battery Atlanta", 5),
        Venue("adp-alpharetta-office", "ADP Alpharetta Office", 10),
    ]
