"""Reduce raw samples into the numbers reported for a run."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from .models import AggregateResult, Sample, SourceKind

# A client and a server reading closer together than this describe one round trip.
SIMULTANEOUS_WINDOW_SECONDS = 0.05

UPLOAD_ESTIMATE_FLOOR_MBPS = 0.1

CATEGORY_THRESHOLDS = (
    (80, "excellent"),
    (60, "good"),
    (40, "fair"),
)


@dataclass
class PhaseReading:
    value: Optional[float]
    sample_count: int
    provider: Optional[str] = None


def reduce_rate(values: Sequence[float]) -> float:
    """Single-number estimate for a throughput phase.

    More than 10 samples: the value at sorted index ``floor(n * 0.95)``,
    without interpolation. Otherwise the maximum observed value.
    """
    if not values:
        return 0.0
    ordered = sorted(values)
    n = len(ordered)
    if n > 10:
        return ordered[math.floor(n * 0.95)]
    return ordered[-1]


def select_samples(samples: Sequence[Sample], provider: Optional[str] = None) -> List[Sample]:
    """Pick the samples a phase is reduced from.

    The settled provider's samples win when it produced any; otherwise every
    recorded sample for the phase is used. Server-side counters are preferred
    over client-side readings of the same transfer.
    """
    chosen = list(samples)
    if provider:
        from_provider = [s for s in chosen if s.provider == provider]
        if from_provider:
            chosen = from_provider
    server_side = [s for s in chosen if s.source is SourceKind.SERVER]
    return server_side or chosen


def collapse_simultaneous(samples: Sequence[Sample]) -> List[float]:
    """Time-ordered RTTs where a client and a server reading of the same
    round trip keep the lower value."""
    ordered = sorted(samples, key=lambda s: s.observed_at)
    values: List[float] = []
    last: Optional[Sample] = None
    for sample in ordered:
        if (
            last is not None
            and sample.source is not last.source
            and sample.observed_at - last.observed_at < SIMULTANEOUS_WINDOW_SECONDS
        ):
            values[-1] = min(values[-1], sample.value)
            last = None
        else:
            values.append(sample.value)
            last = sample
    return values


def compute_jitter(values: Sequence[float]) -> float:
    """Average absolute difference between consecutive RTTs."""
    if len(values) < 2:
        return 0.0
    diffs = [abs(values[i + 1] - values[i]) for i in range(len(values) - 1)]
    return sum(diffs) / len(diffs)


def reduce_latency(samples: Sequence[Sample]) -> Tuple[Optional[float], float]:
    """Return (minimum RTT, jitter) for the latency phase.

    Probes run concurrently against different targets, so jitter is taken per
    provider and reported for the one that produced the minimum RTT.
    """
    if not samples:
        return None, 0.0
    by_provider: Dict[str, List[Sample]] = {}
    for sample in samples:
        by_provider.setdefault(sample.provider, []).append(sample)

    best: Optional[float] = None
    jitter = 0.0
    for group in by_provider.values():
        values = collapse_simultaneous(group)
        lowest = min(values)
        if best is None or lowest < best:
            best = lowest
            jitter = compute_jitter(values)
    return best, round(jitter, 2)


def estimate_upload(download_mbps: float) -> float:
    return max(UPLOAD_ESTIMATE_FLOOR_MBPS, download_mbps / 10)


def estimate_latency(download_mbps: float) -> float:
    if download_mbps > 100:
        return 15.0
    if download_mbps > 50:
        return 30.0
    if download_mbps > 10:
        return 50.0
    return 100.0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def quality_score(download_mbps: float, upload_mbps: float, latency_ms: float) -> int:
    download_score = min(download_mbps / 100 * 40, 40)
    upload_score = min(upload_mbps / 50 * 30, 30)
    latency_score = max(30 - latency_ms / 10, 0)
    return max(0, min(100, _round_half_up(download_score + upload_score + latency_score)))


def category(score: int) -> str:
    for threshold, name in CATEGORY_THRESHOLDS:
        if score >= threshold:
            return name
    return "poor"


def score(download_mbps: float, upload_mbps: float, latency_ms: float) -> Tuple[int, str]:
    value = quality_score(download_mbps, upload_mbps, latency_ms)
    return value, category(value)


def connection_quality(download_mbps: float, upload_mbps: float, latency_ms: float) -> str:
    """Coarse human label shown next to the score."""
    if download_mbps >= 25 and upload_mbps >= 3 and latency_ms <= 50:
        return "Excellent"
    if download_mbps >= 10 and upload_mbps >= 1 and latency_ms <= 100:
        return "Good"
    if download_mbps >= 5 and upload_mbps >= 0.5 and latency_ms <= 150:
        return "Fair"
    return "Poor"


def read_phase(samples: Sequence[Sample], provider: Optional[str] = None) -> PhaseReading:
    selected = select_samples(samples, provider)
    if not selected:
        return PhaseReading(value=None, sample_count=0)
    used = {s.provider for s in selected}
    return PhaseReading(
        value=reduce_rate([s.value for s in selected]),
        sample_count=len(selected),
        provider=provider if provider in used else selected[-1].provider,
    )


def aggregate(
    download_samples: Sequence[Sample],
    upload_samples: Sequence[Sample],
    latency_samples: Sequence[Sample],
    download_provider: Optional[str] = None,
    upload_provider: Optional[str] = None,
) -> AggregateResult:
    """Build the composite result, estimating whatever was not measured."""
    download = read_phase(download_samples, download_provider)
    upload = read_phase(upload_samples, upload_provider)
    download_mbps = download.value or 0.0

    is_upload_estimated = upload.sample_count == 0
    upload_mbps = estimate_upload(download_mbps) if is_upload_estimated else upload.value

    latency_ms, jitter_ms = reduce_latency(latency_samples)
    is_latency_estimated = latency_ms is None
    if is_latency_estimated:
        latency_ms = estimate_latency(download_mbps)

    value, label = score(download_mbps, upload_mbps, latency_ms)
    return AggregateResult(
        download_mbps=download_mbps,
        upload_mbps=upload_mbps,
        latency_ms=latency_ms,
        jitter_ms=jitter_ms,
        quality_score=value,
        category=label,
        download_sample_count=download.sample_count,
        upload_sample_count=upload.sample_count,
        is_upload_estimated=is_upload_estimated,
        is_latency_estimated=is_latency_estimated,
        connection_quality=connection_quality(download_mbps, upload_mbps, latency_ms),
        download_provider=download.provider,
        upload_provider=upload.provider,
    )


def from_reported(
    download_mbps: float,
    upload_mbps: Optional[float] = None,
    latency_ms: Optional[float] = None,
    jitter_ms: Optional[float] = None,
    provider: Optional[str] = None,
) -> AggregateResult:
    """Score figures measured by a client with the same policy as a local run.

    ``None`` for upload or latency means the client could not measure it; the
    usual estimates are filled in and flagged.
    """
    is_upload_estimated = upload_mbps is None
    if is_upload_estimated:
        upload_mbps = estimate_upload(download_mbps)
    is_latency_estimated = latency_ms is None
    if is_latency_estimated:
        latency_ms = estimate_latency(download_mbps)

    value, label = score(download_mbps, upload_mbps, latency_ms)
    return AggregateResult(
        download_mbps=download_mbps,
        upload_mbps=upload_mbps,
        latency_ms=latency_ms,
        jitter_ms=jitter_ms or 0.0,
        quality_score=value,
        category=label,
        download_sample_count=1,
        upload_sample_count=0 if is_upload_estimated else 1,
        is_upload_estimated=is_upload_estimated,
        is_latency_estimated=is_latency_estimated,
        connection_quality=connection_quality(download_mbps, upload_mbps, latency_ms),
        download_provider=provider,
        upload_provider=None if is_upload_estimated else provider,
    )
