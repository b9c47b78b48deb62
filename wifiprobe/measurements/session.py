"""Phase-by-phase orchestration of one speed-test run."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import MeasurementConfig
from . import aggregator
from .chain import ProviderChain
from .collector import SampleCollector
from .errors import (
    NoSamplesCollected,
    PersistenceError,
    ProviderUnavailable,
    SessionCancelled,
    SessionError,
    InvalidTransition,
)
from .models import (
    AggregateResult,
    NetworkContext,
    Phase,
    ProgressEvent,
    ProviderAttempt,
    Sample,
    SettledRate,
    Subject,
)
from .network import resolve_network_context
from .progress import ProgressChannel
from .providers import ProbeContext, Provider
from .store import ResultStore

LOGGER = logging.getLogger(__name__)

# Reported in progress when every latency probe fails. Never recorded as a sample.
LATENCY_FAILURE_SENTINEL_MS = 999.0


class SessionState(str, Enum):
    INIT = "init"
    LATENCY = "latency"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    FINALIZE = "finalize"
    COMPLETED = "completed"
    FAILED = "failed"


_FORWARD_ORDER = [
    SessionState.INIT,
    SessionState.LATENCY,
    SessionState.DOWNLOAD,
    SessionState.UPLOAD,
    SessionState.FINALIZE,
]
TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED})

# (start, end) percent for each progress stage.
PROGRESS_RANGES = {
    SessionState.INIT: (0.0, 8.0),
    SessionState.LATENCY: (10.0, 15.0),
    SessionState.DOWNLOAD: (20.0, 70.0),
    SessionState.UPLOAD: (75.0, 98.0),
}


def transition(current: SessionState, target: SessionState) -> SessionState:
    """The only place session states change.

    Moves are forward only and may skip phases. COMPLETED is reachable only
    from FINALIZE; FAILED from any non-terminal state. Terminal states are final.
    """
    if current in TERMINAL_STATES:
        raise InvalidTransition(current.value, target.value)
    if target is SessionState.FAILED:
        return target
    if target is SessionState.COMPLETED:
        if current is SessionState.FINALIZE:
            return target
        raise InvalidTransition(current.value, target.value)
    if _FORWARD_ORDER.index(target) > _FORWARD_ORDER.index(current):
        return target
    raise InvalidTransition(current.value, target.value)


NetworkResolver = Callable[[MeasurementConfig], NetworkContext]


class MeasurementSession:
    """Single-use run: ``start()`` blocks until a result or a failure.

    ``cancel()`` may be called from any thread. Once at least one download
    sample exists a cancelled run still finalizes with partial data.
    """

    def __init__(
        self,
        latency_providers: Sequence[Provider],
        download_providers: Sequence[Provider],
        upload_providers: Sequence[Provider],
        store: Optional[ResultStore] = None,
        channel: Optional[ProgressChannel] = None,
        session_id: Optional[str] = None,
        network_resolver: Optional[NetworkResolver] = None,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.test_id = str(uuid.uuid4())
        self.latency_providers = list(latency_providers)
        self.download_providers = list(download_providers)
        self.upload_providers = list(upload_providers)
        self.store = store
        self.channel = channel or ProgressChannel(self.session_id)
        self.collector = SampleCollector()
        self._resolve_network = network_resolver or resolve_network_context

        self.state = SessionState.INIT
        self.subject: Optional[Subject] = None
        self.network = NetworkContext.placeholder()
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[float] = None
        self.attempted_providers: List[ProviderAttempt] = []
        self.result: Optional[AggregateResult] = None
        self.error: Optional[str] = None
        self.aborted_in: Optional[SessionState] = None
        # Provider threads abandoned after a timeout; they stop at their next batch boundary.
        self.stray_futures: List[Future] = []

        self._cancel = threading.Event()
        self._lock = threading.Lock()
        self._started = False
        self._phase_started = 0.0
        self._config = MeasurementConfig()

    # -- state --------------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def is_finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def _advance(self, target: SessionState) -> None:
        with self._lock:
            previous = self.state
            self.state = transition(previous, target)
        self._phase_started = time.perf_counter()
        LOGGER.debug("Session %s: %s -> %s", self.session_id, previous.value, target.value)

    def cancel(self) -> bool:
        """Request cooperative cancellation. Returns False if already finished."""
        with self._lock:
            if self.state in TERMINAL_STATES or self._cancel.is_set():
                return False
            self.aborted_in = self.state
            self._cancel.set()
        LOGGER.info("Session %s cancelled during %s", self.session_id, self.aborted_in.value)
        return True

    def _abandon(self, slugs: List[str], futures) -> None:
        LOGGER.warning(
            "Session %s: %s still running after timeout; leaving %d thread(s) to wind down",
            self.session_id,
            ", ".join(slugs),
            len(slugs),
        )
        self.stray_futures.extend(futures)

    def wait_for_stray(self, timeout: Optional[float] = None) -> int:
        """Wait for abandoned provider threads. Returns how many are still running."""
        if not self.stray_futures:
            return 0
        _, pending = wait(self.stray_futures, timeout=timeout)
        if pending:
            LOGGER.warning("Session %s: %d provider thread(s) did not stop", self.session_id, len(pending))
        return len(pending)

    # -- progress -----------------------------------------------------------

    def _push(
        self,
        event_type: str,
        message: str,
        percent: float,
        rate: Optional[float] = None,
        data: Optional[Dict[str, Any]] = None,
        phase: Optional[str] = None,
    ) -> None:
        event = ProgressEvent(
            type=event_type,
            phase=phase or self.state.value,
            message=message,
            percent=round(percent, 1),
            current_rate_mbps=rate,
            data=data,
        )
        self.channel.push(event)

    def _phase_percent(self, phase: Phase) -> float:
        start, end = PROGRESS_RANGES[SessionState(phase.value)]
        duration = max(self._config.phase_duration_seconds, 0.001)
        fraction = min(1.0, (time.perf_counter() - self._phase_started) / duration)
        return start + (end - start) * fraction

    def _on_throughput_sample(self, sample: Sample) -> None:
        self.collector.record(sample)
        self._push(
            sample.phase.value,
            f"{sample.phase.value.capitalize()} in progress",
            self._phase_percent(sample.phase),
            sample.value,
            phase=sample.phase.value,
        )

    # -- run ----------------------------------------------------------------

    def start(self, subject: Subject, config: Optional[MeasurementConfig] = None) -> AggregateResult:
        with self._lock:
            if self._started:
                raise SessionError(f"Session {self.session_id} has already been started")
            self._started = True

        self.subject = subject
        self._config = config or MeasurementConfig()
        self.started_at = datetime.utcnow()
        clock_start = time.perf_counter()
        LOGGER.info(
            "Starting speed test %s for %s",
            self.test_id,
            subject.subject_id,
            extra={"data": {"sessionId": self.session_id, "subjectId": subject.subject_id, "region": subject.region}},
        )

        try:
            self._run_init()
            download: Optional[SettledRate] = None
            upload: Optional[SettledRate] = None

            if self._continue_after_cancel():
                self._advance(SessionState.LATENCY)
                self._run_latency()
            if self._continue_after_cancel():
                self._advance(SessionState.DOWNLOAD)
                download = self._run_download()
            if self._continue_after_cancel():
                self._advance(SessionState.UPLOAD)
                upload = self._run_upload()

            self._advance(SessionState.FINALIZE)
            result = self._finalize(download, upload, time.perf_counter() - clock_start)
            self._advance(SessionState.COMPLETED)
            self._push(
                "completed",
                "Speed test cancelled, partial result saved" if result.cancelled else "Speed test completed",
                100.0,
                data=result.to_dict(),
            )
            return result
        except Exception as exc:
            self._fail(exc)
            raise
        finally:
            self.finished_at = time.time()
            self.channel.close()

    def _continue_after_cancel(self) -> bool:
        """Phase-boundary cancel check.

        False means skip straight to FINALIZE; raises when there is nothing
        worth finalizing.
        """
        if not self._cancel.is_set():
            return True
        if self.collector.count(Phase.DOWNLOAD) == 0:
            raise SessionCancelled(f"Cancelled during {self.state.value} before any download sample")
        return False

    def _fail(self, exc: Exception) -> None:
        phase = self.state.value
        with self._lock:
            if self.state not in TERMINAL_STATES:
                self.state = transition(self.state, SessionState.FAILED)
        self.error = str(exc)
        data: Dict[str, Any] = {"reason": str(exc), "phase": phase, "error": type(exc).__name__}
        if isinstance(exc, NoSamplesCollected) and exc.estimate:
            data["estimate"] = exc.estimate
        data["attemptedProviders"] = [vars(a) for a in self.attempted_providers]

        if isinstance(exc, (NoSamplesCollected, SessionCancelled)):
            LOGGER.warning("Speed test %s failed in %s: %s", self.test_id, phase, exc, extra={"data": data})
        else:
            LOGGER.exception("Speed test %s crashed in %s", self.test_id, phase)
        self._push("error", str(exc), 0.0, data=data, phase=phase)

    def _run_init(self) -> None:
        self._push("init", "Starting speed test", 0.0)
        try:
            self.network = self._resolve_network(self._config)
        except Exception:  # lookup is best effort
            LOGGER.warning("Network lookup raised; continuing with placeholder", exc_info=True)
            self.network = NetworkContext.placeholder()
        self._push(
            "init",
            "Network detected",
            PROGRESS_RANGES[SessionState.INIT][1],
            data={"ip": self.network.ip_address, "location": self.network.location},
        )

    def _run_latency(self) -> None:
        start, end = PROGRESS_RANGES[SessionState.LATENCY]
        self._push("latency", "Measuring latency", start)
        providers = [p for p in self.latency_providers if p.supports(Phase.LATENCY)]
        expected = max(1, len(providers) * max(1, self._config.latency_probe_count))

        context = ProbeContext(
            duration_seconds=self._config.phase_duration_seconds,
            sample_interval_seconds=self._config.sample_interval_seconds,
            collector=self.collector,
            cancel=self._cancel,
            probe_count=self._config.latency_probe_count,
        )
        gate = threading.Lock()

        def on_sample(sample: Sample) -> None:
            with gate:
                # Round trips that finish after the phase budget are dropped.
                if context.abort.is_set():
                    return
                self.collector.record(sample)
                done = self.collector.count(Phase.LATENCY)
            self._push("latency", f"Ping {sample.value:.1f} ms", start + (end - start) * min(1.0, done / expected))

        if providers:
            budget = max(p.timeout for p in providers) * max(1, self._config.latency_probe_count)
            executor = ThreadPoolExecutor(max_workers=len(providers), thread_name_prefix="probe-latency")
            try:
                futures = {executor.submit(p.measure, Phase.LATENCY, on_sample, context): p for p in providers}
                done, pending = wait(futures, timeout=budget)
                if pending:
                    with gate:
                        context.abort.set()
                    self._abandon([futures[f].slug for f in pending], pending)
                for future in done:
                    provider = futures[future]
                    try:
                        future.result()
                        self.attempted_providers.append(ProviderAttempt(provider.slug, "settled"))
                    except ProviderUnavailable as exc:
                        self.attempted_providers.append(ProviderAttempt(provider.slug, "failed", exc.reason))
                    except Exception as exc:  # a broken probe must not end the run
                        LOGGER.warning("Latency probe %s raised unexpectedly", provider.slug, exc_info=True)
                        self.attempted_providers.append(ProviderAttempt(provider.slug, "failed", str(exc)))
                for future in pending:
                    self.attempted_providers.append(ProviderAttempt(futures[future].slug, "timeout"))
            finally:
                executor.shutdown(wait=False)

        latency_ms, jitter_ms = aggregator.reduce_latency(self.collector.snapshot(Phase.LATENCY))
        if latency_ms is None:
            LOGGER.warning("All latency probes failed; reporting %.0f ms", LATENCY_FAILURE_SENTINEL_MS)
            self._push(
                "latency",
                "Latency measurement failed",
                end,
                data={"latencyMs": LATENCY_FAILURE_SENTINEL_MS, "failed": True},
            )
            return
        self._push(
            "latency",
            f"Latency: {latency_ms:.1f} ms",
            end,
            data={"latencyMs": round(latency_ms, 2), "jitterMs": jitter_ms},
        )

    def _run_throughput(self, phase: Phase) -> Optional[SettledRate]:
        providers = self.download_providers if phase is Phase.DOWNLOAD else self.upload_providers
        chain = ProviderChain(providers, self.collector, measurement=self._config)
        start, end = PROGRESS_RANGES[self.state]
        self._push(phase.value, f"Measuring {phase.value} speed", start)

        try:
            settled = chain.run(phase, self._on_throughput_sample, self._cancel)
        except NoSamplesCollected:
            settled = None
        finally:
            self.attempted_providers.extend(chain.attempts)
            self.stray_futures.extend(chain.stray_futures)

        data: Dict[str, Any] = {"attempts": [vars(a) for a in chain.attempts]}
        if settled is not None:
            data.update(
                {
                    f"{phase.value}Mbps": round(settled.rate_mbps, 2),
                    "provider": settled.provider,
                    "isEstimated": settled.is_estimated,
                }
            )
            message = f"{phase.value.capitalize()}: {settled.rate_mbps:.2f} Mbps"
        else:
            message = f"No {phase.value} provider settled"
        self._push(phase.value, message, end, settled.rate_mbps if settled else None, data=data)
        return settled

    def _run_download(self) -> Optional[SettledRate]:
        settled = self._run_throughput(Phase.DOWNLOAD)
        if self.collector.count(Phase.DOWNLOAD) > 0:
            return settled
        if self._cancel.is_set():
            raise SessionCancelled("Cancelled before any download sample")
        estimate = None
        if settled is not None and settled.is_estimated:
            estimate = {"downloadMbps": round(settled.rate_mbps, 2), "provider": settled.provider}
        raise NoSamplesCollected(Phase.DOWNLOAD.value, estimate=estimate)

    def _run_upload(self) -> Optional[SettledRate]:
        settled = self._run_throughput(Phase.UPLOAD)
        if self.collector.count(Phase.UPLOAD) == 0:
            LOGGER.info("No upload samples for %s; upload will be estimated", self.test_id)
        return settled

    def _finalize(
        self,
        download: Optional[SettledRate],
        upload: Optional[SettledRate],
        elapsed: float,
    ) -> AggregateResult:
        def measured(settled: Optional[SettledRate]) -> Optional[str]:
            return settled.provider if settled is not None and not settled.is_estimated else None

        result = aggregator.aggregate(
            self.collector.snapshot(Phase.DOWNLOAD),
            self.collector.snapshot(Phase.UPLOAD),
            self.collector.snapshot(Phase.LATENCY),
            download_provider=measured(download),
            upload_provider=measured(upload),
        )
        result.test_id = self.test_id
        result.subject_id = self.subject.subject_id if self.subject else None
        result.region = self.subject.region if self.subject else None
        result.cancelled = self._cancel.is_set()
        result.ip_address = self.network.ip_address
        result.location = self.network.location
        result.started_at = self.started_at
        result.completed_at = datetime.utcnow()
        result.duration_seconds = elapsed

        if self.store is not None:
            try:
                result.stored_id = self.store.save(result)
                result.persisted = True
            except PersistenceError as exc:
                LOGGER.error(
                    "Result %s computed but not persisted: %s",
                    self.test_id,
                    exc,
                    extra={"data": {"testId": self.test_id, "error": type(exc).__name__}},
                )
                result.persisted = False

        self.result = result
        LOGGER.info(
            "Speed test %s: down %.2f / up %.2f Mbps, latency %.1f ms, score %d (%s)",
            self.test_id,
            result.download_mbps,
            result.upload_mbps,
            result.latency_ms,
            result.quality_score,
            result.category,
        )
        return result

    def to_dict(self) -> Dict[str, Any]:
        last = self.channel.last_event
        return {
            "sessionId": self.session_id,
            "testId": self.test_id,
            "subjectId": self.subject.subject_id if self.subject else None,
            "region": self.subject.region if self.subject else None,
            "state": self.state.value,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "cancelled": self.cancelled,
            "abortedIn": self.aborted_in.value if self.aborted_in else None,
            "progress": last.percent if last else 0.0,
            "attemptedProviders": [vars(a) for a in self.attempted_providers],
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }
