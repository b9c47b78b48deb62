from __future__ import annotations

import random
import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from wifiprobe.config import AppConfig, build_config
from wifiprobe.measurements.errors import ProviderUnavailable
from wifiprobe.measurements.models import NetworkContext, Phase, Sample, SettledRate, SourceKind
from wifiprobe.measurements.providers import ProbeContext, Provider, SampleCallback
from wifiprobe.measurements.store import ResultStore


class ScriptedProvider(Provider):
    """Replays a fixed list of values as samples."""

    def __init__(
        self,
        name: str,
        values: Sequence[float] = (),
        phases: Sequence[Phase] = (Phase.DOWNLOAD, Phase.UPLOAD),
        error: Optional[str] = None,
        delay: float = 0.0,
        settle: Optional[float] = None,
        source: SourceKind = SourceKind.CLIENT,
        before_sample=None,
    ):
        super().__init__(name, timeout=2.0)
        self.values = list(values)
        self.phases = set(phases)
        self.error = error
        self.delay = delay
        self.settle = settle
        self.source = source
        self.before_sample = before_sample
        self.calls: List[Phase] = []

    @property
    def slug(self) -> str:
        return f"scripted:{self.name}"

    def supports(self, phase: Phase) -> bool:
        return phase in self.phases

    def measure(self, phase: Phase, on_sample: SampleCallback, context: ProbeContext) -> SettledRate:
        self.calls.append(phase)
        emitted = []
        for index, value in enumerate(self.values):
            if context.should_stop():
                break
            if self.before_sample is not None:
                self.before_sample(index)
            if self.delay:
                time.sleep(self.delay)
            self._emit(on_sample, phase, value, self.source)
            emitted.append(value)
        if self.error:
            raise ProviderUnavailable(self.slug, self.error)
        rate = self.settle if self.settle is not None else (max(emitted) if emitted else 0.0)
        return SettledRate(
            phase=phase,
            provider=self.slug,
            rate_mbps=rate,
            sample_count=len(emitted),
            cancelled=context.cancel.is_set(),
        )


class RandomProvider(ScriptedProvider):
    """Seeded pseudo-random rates, for runs where exact values do not matter."""

    def __init__(self, name: str, count: int = 12, low: float = 20.0, high: float = 90.0, seed: int = 7, **kwargs):
        rng = random.Random(seed)
        super().__init__(name, values=[round(rng.uniform(low, high), 2) for _ in range(count)], **kwargs)


class HangingProvider(ScriptedProvider):
    """Blocks until aborted, to exercise chain timeouts."""

    def __init__(self, name: str, timeout: float = 0.2):
        super().__init__(name)
        self.timeout = timeout
        self.released = threading.Event()

    def measure(self, phase: Phase, on_sample: SampleCallback, context: ProbeContext) -> SettledRate:
        self.calls.append(phase)
        while not context.should_stop():
            time.sleep(0.01)
        self._emit(on_sample, phase, 50.0)
        self.released.set()
        return SettledRate(phase=phase, provider=self.slug, rate_mbps=50.0, sample_count=1)


def make_sample(
    phase: Phase,
    value: float,
    observed_at: float,
    source: SourceKind = SourceKind.CLIENT,
    provider: str = "scripted:test",
) -> Sample:
    return Sample(phase=phase, source=source, value=value, provider=provider, observed_at=observed_at)


def fake_network(_config) -> NetworkContext:
    return NetworkContext(ip_address="203.0.113.5", location="Testville, TS, Testland")


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return build_config(
        {
            "paths": {"data_dir": "data", "logs_dir": "logs"},
            "database": {"retry_delay_seconds": 0},
            "measurement": {
                "phase_duration_seconds": 1,
                "sample_interval_seconds": 0.05,
                "network_lookup": False,
                "latency_probe_count": 3,
            },
            "progress": {"grace_seconds": 5, "heartbeat_seconds": 0.5},
            "probe_server": {"enabled": False, "port": 0},
            "web": {"max_workers": 2},
            "logging": {"buffer_size": 20},
        },
        tmp_path,
    )


@pytest.fixture
def store(tmp_path: Path) -> ResultStore:
    return ResultStore.from_url(f"sqlite:///{tmp_path / 'results.db'}", attempts=3, retry_delay=0)
