"""
Periodic expiry sweep: every ``interval_seconds`` complete overdue active
reservations and cancel pending ones nobody confirmed in time.
"""
from __future__ import annotations

from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from loguru import logger

from .engine import ReservationEngine, SweepResult

SWEEP_JOB_ID = "reservation_expiry_sweep"


class ExpirySweeper:
    def __init__(self, engine: ReservationEngine, interval_seconds: int | None = None) -> None:
        self.engine = engine
        self.interval_seconds = interval_seconds or engine.settings.sweep_interval_seconds
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be greater than zero")
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_once(self) -> SweepResult | None:
        try:
            return self.engine.expiry_sweep()
        except Exception:
            # A failed cycle must not kill the scheduler; the next tick retries.
            logger.exception("Expiry sweep failed")
            return None

    def start(self, run_immediately: bool = True) -> None:
        if self.running:
            return

        scheduler = BackgroundScheduler(timezone=timezone.utc)
        # next_run_time=None would add the job paused, so only pass it to fire right away.
        first_run = {"next_run_time": datetime.now(timezone.utc)} if run_immediately else {}
        scheduler.add_job(
            self.run_once,
            "interval",
            seconds=self.interval_seconds,
            id=SWEEP_JOB_ID,
            max_instances=1,
            coalesce=True,
            **first_run,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Expiry sweeper started (every {}s)", self.interval_seconds)

    def stop(self, wait: bool = True) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Expiry sweeper stopped")

    def __enter__(self) -> "ExpirySweeper":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
