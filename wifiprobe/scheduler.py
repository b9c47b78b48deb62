"""Background housekeeping jobs."""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .config import AppConfig
from .measurements.manager import MeasurementManager

LOGGER = logging.getLogger(__name__)


class SchedulerService:
    """Runs the session janitor that forgets finished runs after their grace period."""

    def __init__(self, config: AppConfig, measurement_manager: MeasurementManager) -> None:
        self.config = config
        self.measurements = measurement_manager
        self.scheduler = BackgroundScheduler(timezone="UTC")
        self.started = False

    def start(self) -> None:
        if self.started:
            LOGGER.warning("Scheduler already started, ignoring duplicate start request")
            return

        interval = max(1, self.config.scheduler.janitor_interval_seconds)
        try:
            self.scheduler.add_job(
                self._prune_sessions,
                trigger=IntervalTrigger(seconds=interval),
                id="session-janitor",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            self.scheduler.start()
            self.started = True
            LOGGER.info("Scheduler started; session janitor runs every %s seconds", interval)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error("Failed to start scheduler: %s", exc, exc_info=True)
            LOGGER.error("Finished sessions will stay in memory until restart")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False

    def _prune_sessions(self) -> None:
        try:
            removed = self.measurements.prune_finished()
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.exception("Session janitor failed: %s", exc)
            return
        if removed:
            LOGGER.info("Session janitor removed %d finished session(s)", removed)
