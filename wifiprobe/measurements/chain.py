"""Ordered provider fallback for one throughput phase."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import List, Optional, Sequence

from ..config import MeasurementConfig
from .collector import SampleCollector
from .errors import NoSamplesCollected, ProviderUnavailable
from .models import Phase, ProviderAttempt, Sample, SettledRate
from .providers import ProbeContext, Provider, SampleCallback

LOGGER = logging.getLogger(__name__)


class ProviderChain:
    """Try providers strictly in declared order until one settles.

    A provider fails when it raises, exceeds its timeout or settles below
    ``min_viable_mbps``. Failed providers are not retried. Estimators are
    exempt from the viability threshold because their result is flagged.
    """

    def __init__(
        self,
        providers: Sequence[Provider],
        collector: SampleCollector,
        measurement: Optional[MeasurementConfig] = None,
        min_viable_mbps: Optional[float] = None,
    ):
        self.providers = list(providers)
        self.collector = collector
        self.measurement = measurement or MeasurementConfig()
        self.min_viable_mbps = (
            self.measurement.min_viable_mbps if min_viable_mbps is None else min_viable_mbps
        )
        self.attempts: List[ProviderAttempt] = []
        self.stray_futures: List[Future] = []

    @property
    def failed_attempts(self) -> List[ProviderAttempt]:
        return [a for a in self.attempts if a.outcome not in ("settled", "cancelled")]

    def _context(self, phase: Phase, cancel_event: threading.Event) -> ProbeContext:
        transfer = self.measurement.download_bytes if phase is Phase.DOWNLOAD else self.measurement.upload_bytes
        return ProbeContext(
            duration_seconds=self.measurement.phase_duration_seconds,
            sample_interval_seconds=self.measurement.sample_interval_seconds,
            collector=self.collector,
            cancel=cancel_event,
            transfer_bytes=transfer,
            probe_count=self.measurement.latency_probe_count,
        )

    def _record(self, provider: Provider, outcome: str, detail: Optional[str] = None) -> None:
        attempt = ProviderAttempt(provider=provider.slug, outcome=outcome, detail=detail)
        self.attempts.append(attempt)
        LOGGER.info(
            "Provider %s %s%s",
            provider.slug,
            outcome,
            f": {detail}" if detail else "",
            extra={"data": {"provider": provider.slug, "outcome": outcome, "detail": detail}},
        )

    def run(
        self,
        phase: Phase,
        on_sample: SampleCallback,
        cancel_event: Optional[threading.Event] = None,
    ) -> SettledRate:
        cancel_event = cancel_event or threading.Event()

        for provider in self.providers:
            if cancel_event.is_set():
                LOGGER.info("%s chain stopped by cancellation", phase.value)
                break
            if not provider.supports(phase):
                LOGGER.debug("Skipping %s: %s not supported", provider.slug, phase.value)
                continue

            settled = self._attempt(provider, phase, on_sample, self._context(phase, cancel_event))
            if settled is not None:
                return settled

        raise NoSamplesCollected(phase.value)

    def _attempt(
        self,
        provider: Provider,
        phase: Phase,
        on_sample: SampleCallback,
        context: ProbeContext,
    ) -> Optional[SettledRate]:
        gate = threading.Lock()

        def guarded(sample: Sample) -> None:
            with gate:
                # Late samples from an attempt that already timed out are dropped.
                if not context.abort.is_set():
                    on_sample(sample)

        LOGGER.info("Trying %s for %s (%s)", provider.slug, phase.value, provider.target or "local")
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"probe-{phase.value}")
        try:
            future = executor.submit(provider.measure, phase, guarded, context)
            try:
                settled = future.result(timeout=provider.timeout)
            except FutureTimeout:
                with gate:
                    context.abort.set()
                self.stray_futures.append(future)
                LOGGER.warning(
                    "Provider %s still running after timeout; its thread is left to stop on abort", provider.slug
                )
                self._record(provider, "timeout", f"no result within {provider.timeout:.1f}s")
                return None
            except ProviderUnavailable as exc:
                self._record(provider, "failed", exc.reason)
                return None
            except Exception as exc:  # any provider crash advances the chain
                LOGGER.warning("Provider %s raised unexpectedly", provider.slug, exc_info=True)
                self._record(provider, "failed", f"{type(exc).__name__}: {exc}")
                return None
        finally:
            executor.shutdown(wait=False)

        if settled.cancelled or context.cancel.is_set():
            settled.cancelled = True
            self._record(provider, "cancelled", f"{settled.rate_mbps:.2f} Mbps before cancel")
            return settled
        if not provider.is_estimator and settled.rate_mbps < self.min_viable_mbps:
            self._record(
                provider,
                "below_threshold",
                f"{settled.rate_mbps:.2f} Mbps < {self.min_viable_mbps:.2f} Mbps",
            )
            return None

        self._record(provider, "settled", f"{settled.rate_mbps:.2f} Mbps")
        return settled
