"""Application bootstrap helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from .config import AppConfig, load_config
from .db import init_db
from .logging_setup import configure_logging
from .measurements.manager import MeasurementManager
from .measurements.store import ResultStore
from .probe_server import ProbeServer
from .scheduler import SchedulerService
from .web.app import create_web_app

LOGGER = logging.getLogger(__name__)


class ApplicationContext:
    """Holds shared singletons for the service."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.log_buffer = configure_logging(config)
        self.engine, self.Session = init_db(config.database_url)
        self.store = ResultStore(
            self.engine,
            self.Session,
            attempts=config.database.save_attempts,
            retry_delay=config.database.retry_delay_seconds,
        )
        self.probe_server: Optional[ProbeServer] = None
        if config.probe_server.enabled:
            self.probe_server = ProbeServer(
                port=config.probe_server.port,
                bind_address=config.probe_server.bind_address,
                progress_interval=config.measurement.sample_interval_seconds,
            )
        self.measurements = MeasurementManager(config, self.store)
        self.scheduler = SchedulerService(config, self.measurements)
        self.web_app = create_web_app(
            config=config,
            measurement_manager=self.measurements,
            store=self.store,
            log_buffer=self.log_buffer,
            probe_server=self.probe_server,
        )

    def start(self) -> None:
        if self.probe_server is not None and not self.probe_server.start():
            LOGGER.error("Probe server failed to start; socket providers will fall through")
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self.measurements.shutdown()
        if self.probe_server is not None:
            self.probe_server.stop()
        self.engine.dispose()


def bootstrap(config_path: Optional[str] = None) -> ApplicationContext:
    """Load configuration and wire dependencies."""

    config_file = Path(config_path).resolve() if config_path else None
    config = load_config(str(config_file)) if config_file else load_config()
    return ApplicationContext(config)
