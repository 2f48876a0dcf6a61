import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from locker_reservation import (
    ReservationEngine,
    ReservationStatus,
    ReservationYamlRepository,
    Settings,
    SweepResult,
    VenueCatalog,
)
from locker_reservation.engine import PENDING_EXPIRED_REASON
from locker_reservation.sweeper import SWEEP_JOB_ID, ExpirySweeper


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 6, 4, hour, minute, tzinfo=timezone.utc)


class SweepTestCase(unittest.TestCase):
    def setUp(self) -> None:
        temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(temp_dir.cleanup)
        self.data_dir = Path(temp_dir.name) / "data"
        self.store = ReservationYamlRepository(self.data_dir)
        self.now = at(8)
        self.engine = ReservationEngine(
            self.store,
            VenueCatalog.from_mapping({"V": 4}),
            settings=Settings(_env_file=None),
            clock=lambda: self.now,
        )

    def status_of(self, reservation_id: str) -> ReservationStatus:
        return self.engine.find_by_id(reservation_id).status


class TestExpirySweep(SweepTestCase):
    def test_completes_active_reservations_past_their_end(self) -> None:
        overdue = self.engine.create("V", 1, at(8), at(9), "alice")
        running = self.engine.create("V", 2, at(8), at(11), "bob")
        for record in (overdue, running):
            self.engine.check_in(record.reservation_id, record.access_code)

        self.now = at(9, 1)
        result = self.engine.expiry_sweep()

        self.assertEqual(result, SweepResult(completed=1, cancelled=0))
        self.assertEqual(self.status_of(overdue.reservation_id), ReservationStatus.COMPLETED)
        self.assertEqual(self.status_of(running.reservation_id), ReservationStatus.ACTIVE)
        self.assertEqual(self.engine.find_by_id(overdue.reservation_id).updated_at, at(9, 1))

    def test_active_reservation_ending_now_is_kept(self) -> None:
        record = self.engine.create("V", 1, at(8), at(9), "alice")
        self.engine.check_in(record.reservation_id, record.access_code)

        result = self.engine.expiry_sweep(now=at(9))

        self.assertEqual(result.completed, 0)
        self.assertEqual(self.status_of(record.reservation_id), ReservationStatus.ACTIVE)

    def test_confirmed_reservations_are_not_touched(self) -> None:
        record = self.engine.create("V", 1, at(8), at(9), "alice")
        self.assertEqual(self.engine.expiry_sweep(now=at(12)), SweepResult())
        self.assertEqual(self.status_of(record.reservation_id), ReservationStatus.CONFIRMED)

    def test_cancels_pending_reservations_older_than_ttl(self) -> None:
        stale = self.engine.create("V", 1, at(10), at(11), "alice", status=ReservationStatus.PENDING)
        self.now = at(8, 2)
        fresh = self.engine.create("V", 2, at(10), at(11), "bob", status=ReservationStatus.PENDING)

        self.now = at(8, 16)
        result = self.engine.expiry_sweep()

        self.assertEqual(result, SweepResult(completed=0, cancelled=1))
        cancelled = self.engine.find_by_id(stale.reservation_id)
        self.assertEqual(cancelled.status, ReservationStatus.CANCELLED)
        self.assertEqual(cancelled.cancelled_at, at(8, 16))
        self.assertEqual(cancelled.cancellation_reason, PENDING_EXPIRED_REASON)
        self.assertEqual(self.status_of(fresh.reservation_id), ReservationStatus.PENDING)

    def test_second_run_changes_nothing(self) -> None:
        active = self.engine.create("V", 1, at(8), at(9), "alice")
        self.engine.check_in(active.reservation_id, active.access_code)
        self.engine.create("V", 2, at(10), at(11), "bob", status=ReservationStatus.PENDING)

        first = self.engine.expiry_sweep(now=at(10))
        snapshot = {
            name: (self.data_dir / name).read_text(encoding="utf-8")
            for name in ("open_reservations.yaml", "closed_reservations.yaml", "reservation_events.yaml")
        }
        second = self.engine.expiry_sweep(now=at(10))

        self.assertEqual(first, SweepResult(completed=1, cancelled=1))
        self.assertEqual(second, SweepResult(completed=0, cancelled=0))
        for name, content in snapshot.items():
            self.assertEqual((self.data_dir / name).read_text(encoding="utf-8"), content, name)

    def test_sweep_records_events(self) -> None:
        active = self.engine.create("V", 1, at(8), at(9), "alice")
        self.engine.check_in(active.reservation_id, active.access_code)
        self.engine.create("V", 2, at(10), at(11), "bob", status=ReservationStatus.PENDING)

        self.engine.expiry_sweep(now=at(10))

        event_types = [event["event_type"] for event in self.store.get_events()]
        self.assertIn("RESERVATION_COMPLETED", event_types)
        self.assertIn("RESERVATION_EXPIRED", event_types)

    def test_overlapping_sweep_is_skipped(self) -> None:
        self.engine._sweep_guard.acquire()
        try:
            self.assertEqual(self.engine.expiry_sweep(), SweepResult(skipped=True))
        finally:
            self.engine._sweep_guard.release()
        self.assertFalse(self.engine.expiry_sweep().skipped)


class TestExpirySweeper(SweepTestCase):
    def test_interval_defaults_to_settings(self) -> None:
        sweeper = ExpirySweeper(self.engine)
        self.assertEqual(sweeper.interval_seconds, self.engine.settings.sweep_interval_seconds)

    def test_rejects_non_positive_interval(self) -> None:
        with self.assertRaises(ValueError):
            ExpirySweeper(self.engine, interval_seconds=-5)

    def test_run_once_returns_sweep_result(self) -> None:
        record = self.engine.create("V", 1, at(8), at(9), "alice")
        self.engine.check_in(record.reservation_id, record.access_code)
        self.now = at(12)

        result = ExpirySweeper(self.engine).run_once()

        self.assertEqual(result, SweepResult(completed=1, cancelled=0))

    def test_run_once_survives_sweep_failure(self) -> None:
        sweeper = ExpirySweeper(self.engine)
        with mock.patch.object(self.engine, "expiry_sweep", side_effect=RuntimeError("disk gone")):
            self.assertIsNone(sweeper.run_once())

    def test_start_runs_immediately_and_stop_shuts_down(self) -> None:
        ran = threading.Event()
        original = self.engine.expiry_sweep

        def tracking_sweep(now=None):
            ran.set()
            return original(now)

        sweeper = ExpirySweeper(self.engine, interval_seconds=3600)
        with mock.patch.object(self.engine, "expiry_sweep", side_effect=tracking_sweep):
            sweeper.start()
            try:
                self.assertTrue(sweeper.running)
                self.assertIsNotNone(sweeper._scheduler.get_job(SWEEP_JOB_ID))
                self.assertTrue(ran.wait(timeout=5))
            finally:
                sweeper.stop()

        self.assertFalse(sweeper.running)

    def test_context_manager_starts_and_stops(self) -> None:
        with ExpirySweeper(self.engine, interval_seconds=3600) as sweeper:
            self.assertTrue(sweeper.running)
        self.assertFalse(sweeper.running)


if __name__ == "__main__":
    unittest.main()
