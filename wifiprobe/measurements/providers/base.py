"""Abstract base class for measurement providers."""

from __future__ import annotations

import abc
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..collector import SampleCollector
from ..models import Phase, Sample, SettledRate, SourceKind

SampleCallback = Callable[[Sample], None]


@dataclass
class ProbeContext:
    """Per-attempt knobs handed to a provider.

    ``cancel`` is the session-wide cancel flag; ``abort`` is set by the chain
    when this attempt has timed out. Providers poll :meth:`should_stop` at
    every sample-batch boundary and stop issuing requests once it is true.
    """

    duration_seconds: float
    sample_interval_seconds: float
    collector: SampleCollector
    cancel: threading.Event = field(default_factory=threading.Event)
    abort: threading.Event = field(default_factory=threading.Event)
    transfer_bytes: Optional[int] = None
    probe_count: int = 5

    def should_stop(self) -> bool:
        return self.cancel.is_set() or self.abort.is_set()


class Provider(abc.ABC):
    """A strategy that performs one phase's probe against one target."""

    def __init__(self, name: str, timeout: float = 20.0):
        self.name = name
        self.timeout = timeout

    @property
    @abc.abstractmethod
    def slug(self) -> str:
        """Short identifier recorded on every sample (e.g. 'http:cloudflare')."""

    @property
    def target(self) -> str:
        return ""

    @property
    def is_estimator(self) -> bool:
        return False

    @abc.abstractmethod
    def supports(self, phase: Phase) -> bool:
        """Whether this provider can run ``phase`` at all."""

    @abc.abstractmethod
    def measure(self, phase: Phase, on_sample: SampleCallback, context: ProbeContext) -> SettledRate:
        """Run the probe, reporting each observation through ``on_sample``.

        Raises ProviderUnavailable when the target cannot be measured.
        """

    def _emit(
        self,
        on_sample: SampleCallback,
        phase: Phase,
        value: float,
        source: SourceKind = SourceKind.CLIENT,
    ) -> Sample:
        sample = Sample(phase=phase, source=source, value=value, provider=self.slug, observed_at=time.time())
        on_sample(sample)
        return sample

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.slug}>"


def mbps(byte_count: int, elapsed: float) -> float:
    return (byte_count * 8) / (elapsed * 1_000_000) if elapsed > 0 else 0.0
