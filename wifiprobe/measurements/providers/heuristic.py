"""Last-resort estimator that guesses throughput from round-trip times."""

from __future__ import annotations

from ..errors import ProviderUnavailable
from ..models import Phase, SettledRate
from .base import ProbeContext, Provider, SampleCallback

# (max RTT ms, estimated download Mbps)
RTT_BANDS = (
    (15.0, 100.0),
    (30.0, 50.0),
    (50.0, 10.0),
)
SLOW_LINK_MBPS = 1.0


def estimate_from_rtt(rtt_ms: float) -> float:
    for limit, rate in RTT_BANDS:
        if rtt_ms <= limit:
            return rate
    return SLOW_LINK_MBPS


class HeuristicEstimator(Provider):
    """Never touches the network and never records samples.

    Its result always carries ``is_estimated=True`` so it cannot be mistaken
    for a measured rate.
    """

    def __init__(self, name: str = "heuristic", timeout: float = 1.0):
        super().__init__(name, timeout)

    @property
    def slug(self) -> str:
        return f"heuristic:{self.name}"

    @property
    def is_estimator(self) -> bool:
        return True

    def supports(self, phase: Phase) -> bool:
        return phase in (Phase.DOWNLOAD, Phase.UPLOAD)

    def measure(self, phase: Phase, on_sample: SampleCallback, context: ProbeContext) -> SettledRate:
        rtts = [sample.value for sample in context.collector.snapshot(Phase.LATENCY)]
        if not rtts:
            raise ProviderUnavailable(self.slug, "no latency samples to estimate from")

        rate = estimate_from_rtt(min(rtts))
        if phase is Phase.UPLOAD:
            rate = rate / 10
        return SettledRate(phase=phase, provider=self.slug, rate_mbps=rate, sample_count=0, is_estimated=True)
