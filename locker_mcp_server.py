from __future__ import annotations

from functools import lru_cache
import sys
from typing import Annotated

from mcp.server.fastmcp import FastMCP

from locker_reservation import ReservationEngine, ReservationFilter, build_engine, get_settings
from locker_reservation.booking import parse_timestamp
from locker_reservation.lifecycle import parse_status
from locker_reservation.logger_config import configure_logging

mcp = FastMCP(
    "Locker Reservation MCP Server",
    instructions="Check locker availability and manage locker reservations.",
    json_response=True,
)


@lru_cache(maxsize=1)
def get_engine() -> ReservationEngine:
    return build_engine(get_settings())


@mcp.resource("locker://venues")
async def list_venues() -> list[dict[str, object]]:
    """List venues and how many lockers each one has."""
    return [venue.to_dict() for venue in get_engine().catalog.venues()]


@mcp.tool()
def list_available_lockers(venue_id: str, start_iso: str, end_iso: str) -> list[int]:
    """Return locker numbers free for the whole window at the venue."""
    return get_engine().available_slots(venue_id, parse_timestamp(start_iso), parse_timestamp(end_iso))


@mcp.tool()
def create_reservation(
    venue_id: str,
    slot_id: Annotated[int, "Locker number within the venue"],
    start_iso: str,
    end_iso: str,
    owner_id: str,
    notes: str | None = None,
) -> dict[str, object]:
    """Reserve a locker using ISO timestamps."""
    created = get_engine().create(
        venue_id=venue_id,
        slot_id=slot_id,
        start=parse_timestamp(start_iso),
        end=parse_timestamp(end_iso),
        owner_id=owner_id,
        notes=notes,
    )
    return created.to_dict()


@mcp.tool()
def cancel_reservation(reservation_id: str, owner_id: str, reason: str | None = None) -> dict[str, object]:
    """Cancel one of the owner's reservations (at least one hour before it starts)."""
    return get_engine().cancel(reservation_id, owner_id, reason=reason).to_dict()


@mcp.tool()
def list_reservations(
    owner_id: str | None = None,
    venue_id: str | None = None,
    status: str | None = None,
) -> list[dict[str, object]]:
    """Return reservations, newest first, optionally filtered by owner, venue or status."""
    criteria = ReservationFilter(
        owner_id=owner_id,
        venue_id=venue_id,
        status=parse_status(status) if status else None,
    )
    records = get_engine().list_all(criteria)
    return [{key: value for key, value in record.to_dict().items() if key != "access_code"} for record in records]


def main() -> None:
    settings = get_settings()
    # stdout carries the MCP stdio transport.
    configure_logging(settings.log_level, settings.log_dir, stream=sys.stderr)
    mcp.run()


if __name__ == "__main__":
    main()
