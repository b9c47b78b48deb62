"""Measurement orchestration: session registry, background runs, history."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Tuple

from ..config import AppConfig
from ..db import SpeedTestResult
from .errors import MeasurementError
from .models import AggregateResult, Subject
from .progress import ProgressChannel, Subscriber
from .providers import Provider, build_providers
from .session import MeasurementSession
from .store import ResultStore

LOGGER = logging.getLogger(__name__)

# How long shutdown waits for provider threads abandoned after a timeout.
STRAY_JOIN_SECONDS = 5.0

ProviderSet = Tuple[List[Provider], List[Provider], List[Provider]]


class MeasurementManager:
    def __init__(
        self,
        config: AppConfig,
        store: Optional[ResultStore] = None,
        provider_factory: Optional[Callable[[], ProviderSet]] = None,
        network_resolver=None,
    ):
        self.config = config
        self.store = store
        self._provider_factory = provider_factory or self._configured_providers
        self._network_resolver = network_resolver
        self._sessions: Dict[str, MeasurementSession] = {}
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=config.web.max_workers, thread_name_prefix="speedtest")

    def _configured_providers(self) -> ProviderSet:
        providers = self.config.providers
        return (
            build_providers(providers.latency),
            build_providers(providers.download),
            build_providers(providers.upload),
        )

    def create_session(self) -> MeasurementSession:
        latency, download, upload = self._provider_factory()
        progress = self.config.progress
        session_id = uuid.uuid4().hex
        channel = ProgressChannel(session_id, queue_size=progress.queue_size, history_size=progress.history_size)
        session = MeasurementSession(
            latency_providers=latency,
            download_providers=download,
            upload_providers=upload,
            store=self.store,
            channel=channel,
            session_id=session_id,
            network_resolver=self._network_resolver,
        )
        with self._lock:
            self._sessions[session.session_id] = session
        return session

    def start(self, subject: Subject) -> MeasurementSession:
        """Start a run in the background and return its session immediately."""
        session = self.create_session()
        future = self._executor.submit(self._run, session, subject)
        with self._lock:
            self._futures[session.session_id] = future
        LOGGER.info("Queued speed test session %s for %s", session.session_id, subject.subject_id)
        return session

    def run(self, subject: Subject) -> AggregateResult:
        """Run synchronously in the calling thread."""
        session = self.create_session()
        return session.start(subject, self.config.measurement)

    def _run(self, session: MeasurementSession, subject: Subject) -> Optional[AggregateResult]:
        try:
            return session.start(subject, self.config.measurement)
        except MeasurementError as exc:
            LOGGER.info("Session %s ended without a result: %s", session.session_id, exc)
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Session %s crashed", session.session_id)
        return None

    def get(self, session_id: str) -> Optional[MeasurementSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def sessions(self) -> List[MeasurementSession]:
        with self._lock:
            return list(self._sessions.values())

    def subscribe(self, session_id: str) -> Optional[Subscriber]:
        session = self.get(session_id)
        if session is None:
            return None
        return session.channel.subscribe()

    def cancel(self, session_id: str) -> Optional[bool]:
        """None if unknown, otherwise whether the cancel request was accepted."""
        session = self.get(session_id)
        if session is None:
            return None
        return session.cancel()

    def wait(self, session_id: str, timeout: Optional[float] = None) -> Optional[AggregateResult]:
        with self._lock:
            future = self._futures.get(session_id)
        if future is None:
            return None
        return future.result(timeout=timeout)

    def prune_finished(self, now: Optional[float] = None) -> int:
        """Forget sessions whose progress grace period has passed."""
        now = time.time() if now is None else now
        grace = self.config.progress.grace_seconds
        removed = 0
        with self._lock:
            for session_id, session in list(self._sessions.items()):
                if not session.is_finished or session.finished_at is None:
                    continue
                if now - session.finished_at < grace:
                    continue
                del self._sessions[session_id]
                self._futures.pop(session_id, None)
                removed += 1
        if removed:
            LOGGER.debug("Pruned %d finished session(s)", removed)
        return removed

    def history(self, subject_id: str, limit: int = 10, offset: int = 0) -> Tuple[List[SpeedTestResult], int]:
        if self.store is None:
            return [], 0
        return self.store.list_for_subject(subject_id, limit=limit, offset=offset)

    def shutdown(self, wait: bool = False) -> None:
        sessions = self.sessions()
        for session in sessions:
            session.cancel()
        self._executor.shutdown(wait=wait)
        if wait:
            for session in sessions:
                session.wait_for_stray(timeout=STRAY_JOIN_SECONDS)
