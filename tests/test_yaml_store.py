import tempfile
import unittest
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

from locker_reservation import (
    ConcurrentModification,
    NotFound,
    ReservationRecord,
    ReservationStatus,
    ReservationStorageError,
    ReservationYamlRepository,
)

NOW = datetime(2026, 2, 24, 9, 0, tzinfo=timezone.utc)


def make_record(
    reservation_id: str,
    slot_id: int = 1,
    start_hour: int = 10,
    hours: int = 1,
    status: ReservationStatus = ReservationStatus.CONFIRMED,
    venue_id: str = "venue-a",
) -> ReservationRecord:
    start = datetime(2026, 2, 24, start_hour, 0, tzinfo=timezone.utc)
    return ReservationRecord(
        reservation_id=reservation_id,
        owner_id="user-1",
        venue_id=venue_id,
        slot_id=slot_id,
        start=start,
        end=start + timedelta(hours=hours),
        status=status,
        created_at=NOW,
        updated_at=NOW,
        access_code="123456",
    )


class TestReservationRecord(unittest.TestCase):
    def test_dict_round_trip_keeps_optional_fields(self) -> None:
        record = replace(
            make_record("r1"),
            notes="bag with laptop",
            cancelled_at=NOW,
            cancellation_reason="plans changed",
            status=ReservationStatus.CANCELLED,
        )

        restored = ReservationRecord.from_dict(record.to_dict())

        self.assertEqual(restored, record)

    def test_to_dict_omits_unset_optional_fields(self) -> None:
        payload = make_record("r1").to_dict()
        self.assertNotIn("notes", payload)
        self.assertNotIn("cancelled_at", payload)
        self.assertEqual(payload["start"], "2026-02-24T10:00:00+00:00")

    def test_duration_hours_is_derived(self) -> None:
        self.assertEqual(make_record("r1", hours=3).duration_hours, 3.0)


class TestReservationYamlRepository(unittest.TestCase):
    def setUp(self) -> None:
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.data_dir = Path(temp_dir.name) / "data"
        self.repo = ReservationYamlRepository(self.data_dir)

    def test_creates_empty_files(self) -> None:
        for name in ("open_reservations.yaml", "closed_reservations.yaml", "reservation_events.yaml"):
            self.assertTrue((self.data_dir / name).exists())
        self.assertEqual(self.repo.get_all_reservations(), [])

    def test_add_and_get_reservation(self) -> None:
        self.repo.add_reservation(make_record("r1"))

        self.assertEqual(self.repo.get_reservation("r1"), make_record("r1"))
        self.assertIsNone(self.repo.get_reservation("missing"))
        self.assertEqual(len(self.repo.get_open_reservations()), 1)

    def test_add_rejects_duplicate_ids(self) -> None:
        self.repo.add_reservation(make_record("r1"))
        with self.assertRaises(ReservationStorageError):
            self.repo.add_reservation(make_record("r1", slot_id=2))

    def test_save_moves_terminal_records_to_closed_file(self) -> None:
        self.repo.add_reservation(make_record("r1"))

        self.repo.save_reservation(replace(make_record("r1"), status=ReservationStatus.CANCELLED))

        self.assertEqual(self.repo.get_open_reservations(), [])
        closed = self.repo.get_closed_reservations()
        self.assertEqual(len(closed), 1)
        self.assertEqual(closed[0].status, ReservationStatus.CANCELLED)

    def test_save_with_stale_expected_status_writes_nothing(self) -> None:
        self.repo.add_reservation(make_record("r1", status=ReservationStatus.PENDING))
        self.repo.save_reservation(replace(make_record("r1"), status=ReservationStatus.CANCELLED))

        with self.assertRaises(ConcurrentModification) as caught:
            self.repo.save_reservation(
                replace(make_record("r1"), status=ReservationStatus.CONFIRMED),
                expected_status=ReservationStatus.PENDING,
            )

        self.assertIs(caught.exception.current_status, ReservationStatus.CANCELLED)
        self.assertEqual(self.repo.get_open_reservations(), [])
        self.assertEqual(self.repo.get_reservation("r1").status, ReservationStatus.CANCELLED)

    def test_save_with_matching_expected_status(self) -> None:
        self.repo.add_reservation(make_record("r1"))
        saved = self.repo.save_reservation(
            replace(make_record("r1"), notes="keys"), expected_status=ReservationStatus.CONFIRMED
        )
        self.assertEqual(self.repo.get_reservation("r1"), saved)

    def test_save_unknown_record_raises_not_found(self) -> None:
        with self.assertRaises(NotFound):
            self.repo.save_reservation(make_record("ghost"))

    def test_find_overlapping_only_reports_blocking_statuses(self) -> None:
        self.repo.add_reservation(make_record("confirmed", slot_id=1))
        self.repo.add_reservation(make_record("pending", slot_id=2, status=ReservationStatus.PENDING))
        self.repo.add_reservation(make_record("active", slot_id=3, status=ReservationStatus.ACTIVE))
        self.repo.add_reservation(make_record("other-venue", slot_id=1, venue_id="venue-b"))

        found = self.repo.find_overlapping(
            "venue-a",
            datetime(2026, 2, 24, 10, 30, tzinfo=timezone.utc),
            datetime(2026, 2, 24, 10, 45, tzinfo=timezone.utc),
        )

        self.assertEqual(sorted(record.reservation_id for record in found), ["active", "confirmed"])

    def test_find_overlapping_can_exclude_a_record(self) -> None:
        self.repo.add_reservation(make_record("r1"))
        found = self.repo.find_overlapping(
            "venue-a",
            datetime(2026, 2, 24, 10, 0, tzinfo=timezone.utc),
            datetime(2026, 2, 24, 11, 0, tzinfo=timezone.utc),
            slot_id=1,
            exclude_id="r1",
        )
        self.assertEqual(found, [])

    def test_transition_where_moves_matching_records(self) -> None:
        self.repo.add_reservation(make_record("early", slot_id=1, start_hour=6, status=ReservationStatus.ACTIVE))
        self.repo.add_reservation(make_record("late", slot_id=2, start_hour=12, status=ReservationStatus.ACTIVE))
        later = datetime(2026, 2, 24, 8, 0, tzinfo=timezone.utc)

        changed = self.repo.transition_where(
            ReservationStatus.ACTIVE,
            ReservationStatus.COMPLETED,
            lambda record: record.end < later,
            later,
        )

        self.assertEqual([record.reservation_id for record in changed], ["early"])
        self.assertEqual(changed[0].updated_at, later)
        self.assertEqual([record.reservation_id for record in self.repo.get_closed_reservations()], ["early"])
        self.assertEqual([record.reservation_id for record in self.repo.get_open_reservations()], ["late"])

    def test_transition_where_without_matches_writes_nothing(self) -> None:
        self.repo.add_reservation(make_record("r1"))
        before = (self.data_dir / "open_reservations.yaml").read_text(encoding="utf-8")

        changed = self.repo.transition_where(
            ReservationStatus.PENDING,
            ReservationStatus.CANCELLED,
            lambda record: True,
            NOW,
        )

        self.assertEqual(changed, [])
        self.assertEqual((self.data_dir / "open_reservations.yaml").read_text(encoding="utf-8"), before)

    def test_recovers_from_corrupted_yaml(self) -> None:
        (self.data_dir / "open_reservations.yaml").write_text("[unclosed, {broken", encoding="utf-8")

        self.assertEqual(self.repo.get_open_reservations(), [])

        backups = list(self.data_dir.glob("open_reservations.corrupt.*.yaml"))
        self.assertEqual(len(backups), 1)
        event_types = [event["event_type"] for event in self.repo.get_events()]
        self.assertIn("YAML_RECOVERED", event_types)

    def test_skips_rows_that_are_not_reservations(self) -> None:
        self.repo.add_reservation(make_record("r1"))
        path = self.data_dir / "open_reservations.yaml"
        path.write_text(path.read_text(encoding="utf-8") + "- just a string\n- {reservation_id: broken}\n", encoding="utf-8")

        records = self.repo.get_open_reservations()

        self.assertEqual([record.reservation_id for record in records], ["r1"])
        skipped = [event for event in self.repo.get_events() if event["event_type"] == "YAML_ROW_SKIPPED"]
        self.assertEqual(len(skipped), 2)

    def test_log_event_appends_to_event_file(self) -> None:
        self.repo.log_event("RESERVATION_CREATED", {"reservation_id": "r1"}, NOW)

        events = self.repo.get_events()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0]["event_type"], "RESERVATION_CREATED")
        self.assertEqual(events[0]["event_time"], "2026-02-24T09:00:00+00:00")


if __name__ == "__main__":
    unittest.main()
