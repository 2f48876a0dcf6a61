from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from flask import Flask, g, jsonify, request
from loguru import logger

from .booking import parse_timestamp
from .catalog import VenueCatalog, default_venues
from .config import Settings
from .engine import ReservationEngine, ReservationPatch
from .errors import (
    Forbidden,
    NotFound,
    ReservationError,
    ReservationStorageError,
    ReservationValidationError,
    SlotConflict,
)
from .filters import ReservationFilter
from .lifecycle import parse_status
from .yaml_store import ReservationRecord, ReservationYamlRepository

USER_HEADER = "X-User-Id"


def create_app(
    data_dir: str | Path = "data",
    now_provider: Callable[[], datetime] | None = None,
    catalog: VenueCatalog | None = None,
    settings: Settings | None = None,
) -> Flask:
    app = Flask(__name__)
    repository = ReservationYamlRepository(data_dir)
    engine = ReservationEngine(
        repository,
        catalog or VenueCatalog(default_venues()),
        settings=settings,
        clock=now_provider,
    )
    app.extensions["reservation_engine"] = engine

    @app.before_request
    def identify_user() -> None:
        if request.method != "OPTIONS" and request.path.startswith("/api/bookings"):
            g.user_id = _require_user()

    @app.after_request
    def add_cors_headers(response: Any) -> Any:
        response.headers["Access-Control-Allow-Origin"] = "*"
        response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,DELETE,OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = f"Content-Type,{USER_HEADER}"
        return response

    @app.errorhandler(ReservationError)
    def handle_reservation_error(error: ReservationError) -> Any:
        payload: dict[str, Any] = {"ok": False, "error": type(error).__name__, "message": str(error)}
        if isinstance(error, SlotConflict):
            payload["conflicting_ids"] = error.conflicting_ids
        return jsonify(payload), _status_for(error)

    @app.errorhandler(ReservationStorageError)
    def handle_storage_error(error: ReservationStorageError) -> Any:
        logger.error("Storage failure: {}", error)
        return jsonify({"ok": False, "error": "ReservationStorageError", "message": str(error)}), 503

    @app.errorhandler(ValueError)
    def handle_bad_input(error: ValueError) -> Any:
        return jsonify({"ok": False, "error": "BadRequest", "message": str(error)}), 400

    @app.post("/api/bookings")
    def create_booking() -> Any:
        user_id = g.user_id
        payload = request.get_json(silent=True) or {}
        try:
            venue_id = str(payload["venue_id"]).strip()
            slot_id = int(payload["slot_id"])
            start = parse_timestamp(str(payload["start"]))
            end = parse_timestamp(str(payload["end"]))
        except (KeyError, TypeError, ValueError):
            return jsonify({"ok": False, "message": "venue_id, slot_id, start and end are required."}), 400
        if slot_id < 1:
            return jsonify({"ok": False, "message": "slot_id must be at least 1."}), 400

        created = engine.create(
            venue_id=venue_id,
            slot_id=slot_id,
            start=start,
            end=end,
            owner_id=user_id,
            notes=payload.get("notes"),
            status=parse_status(payload.get("status") or "confirmed"),
        )
        return jsonify({"ok": True, "reservation": _serialize(created, reveal_access_code=True)}), 201

    @app.get("/api/bookings")
    def list_bookings() -> Any:
        args = request.args
        criteria = ReservationFilter(
            owner_id=args.get("owner_id") or None,
            venue_id=args.get("venue_id") or None,
            status=parse_status(args["status"]) if args.get("status") else None,
            start_date=parse_timestamp(args["start_date"]) if args.get("start_date") else None,
            end_date=parse_timestamp(args["end_date"]) if args.get("end_date") else None,
            page=int(args["page"]) if args.get("page") else None,
            limit=int(args["limit"]) if args.get("limit") else None,
        )
        records = engine.list_all(criteria)
        return jsonify({"ok": True, "reservations": [_serialize(record) for record in records]})

    @app.get("/api/bookings/mine")
    def my_bookings() -> Any:
        user_id = g.user_id
        records = engine.find_by_owner(user_id)
        return jsonify({"ok": True, "reservations": [_serialize(record, reveal_access_code=True) for record in records]})

    @app.get("/api/bookings/venue/<venue_id>")
    def venue_bookings(venue_id: str) -> Any:
        records = engine.find_by_venue(venue_id)
        return jsonify({"ok": True, "reservations": [_serialize(record) for record in records]})

    @app.get("/api/bookings/available-lockers/<venue_id>")
    def available_lockers(venue_id: str) -> Any:
        start_text = request.args.get("start", "")
        end_text = request.args.get("end", "")
        if not start_text or not end_text:
            return jsonify({"ok": False, "message": "start and end query parameters are required."}), 400

        slots = engine.available_slots(venue_id, parse_timestamp(start_text), parse_timestamp(end_text))
        return jsonify({"ok": True, "venue_id": venue_id, "available_lockers": slots})

    @app.get("/api/bookings/<reservation_id>")
    def get_booking(reservation_id: str) -> Any:
        return jsonify({"ok": True, "reservation": _serialize(engine.find_by_id(reservation_id))})

    @app.patch("/api/bookings/<reservation_id>")
    def update_booking(reservation_id: str) -> Any:
        payload = request.get_json(silent=True) or {}
        updated = engine.update(reservation_id, ReservationPatch.from_dict(payload))
        return jsonify({"ok": True, "reservation": _serialize(updated)})

    @app.delete("/api/bookings/<reservation_id>/cancel")
    def cancel_booking(reservation_id: str) -> Any:
        user_id = g.user_id
        payload = request.get_json(silent=True) or {}
        cancelled = engine.cancel(reservation_id, user_id, reason=payload.get("reason"))
        return jsonify({"ok": True, "reservation": _serialize(cancelled)})

    @app.post("/api/bookings/<reservation_id>/check-in")
    def check_in(reservation_id: str) -> Any:
        payload = request.get_json(silent=True) or {}
        access_code = str(payload.get("access_code", "")).strip()
        if not access_code:
            return jsonify({"ok": False, "message": "access_code is required."}), 400
        return jsonify({"ok": True, "reservation": _serialize(engine.check_in(reservation_id, access_code))})

    @app.post("/api/bookings/<reservation_id>/check-out")
    def check_out(reservation_id: str) -> Any:
        user_id = g.user_id
        return jsonify({"ok": True, "reservation": _serialize(engine.check_out(reservation_id, user_id))})

    return app


class _MissingUser(Forbidden):
    pass


def _require_user() -> str:
    user_id = str(request.headers.get(USER_HEADER, "")).strip()
    if not user_id:
        raise _MissingUser(f"{USER_HEADER} header is required.")
    return user_id


def _status_for(error: ReservationError) -> int:
    if isinstance(error, _MissingUser):
        return 401
    if isinstance(error, ReservationValidationError):
        return 400
    if isinstance(error, NotFound):
        return 404
    if isinstance(error, Forbidden):
        return 403
    return 409


def _serialize(record: ReservationRecord, reveal_access_code: bool = False) -> dict[str, Any]:
    payload = record.to_dict()
    if not reveal_access_code:
        payload.pop("access_code", None)
    payload["duration_hours"] = round(record.duration_hours, 4)
    return payload


if __name__ == "__main__":
    from .logger_config import configure_logging
    from .sweeper import ExpirySweeper

    app_settings = Settings()
    configure_logging(app_settings.log_level, app_settings.log_dir)
    venue_catalog = VenueCatalog.from_yaml(app_settings.venues_file) if app_settings.venues_file else None
    app = create_app(app_settings.data_dir, catalog=venue_catalog, settings=app_settings)
    with ExpirySweeper(app.extensions["reservation_engine"]):
        app.run(host="127.0.0.1", port=5000, debug=False)
