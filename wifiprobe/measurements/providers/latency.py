"""Round-trip time probes for the latency phase."""

from __future__ import annotations

import abc
import logging
import socket
import time
from typing import Callable, Optional

import requests

from ..errors import ProviderUnavailable
from ..models import Phase, SettledRate
from .base import ProbeContext, Provider, SampleCallback

LOGGER = logging.getLogger(__name__)


class _LatencyProbe(Provider):
    """Runs ``probe_count`` round trips and records each RTT in ms.

    The settled ``rate_mbps`` of a latency probe is unused and left at 0; the
    session reads RTTs back from the collector.
    """

    def supports(self, phase: Phase) -> bool:
        return phase is Phase.LATENCY

    @abc.abstractmethod
    def _round_trip(self) -> float:
        """One timed round trip in milliseconds."""

    def measure(self, phase: Phase, on_sample: SampleCallback, context: ProbeContext) -> SettledRate:
        if phase is not Phase.LATENCY:
            raise ProviderUnavailable(self.slug, f"{phase.value} is not supported")

        recorded = 0
        last_error: Optional[Exception] = None
        for _ in range(max(1, context.probe_count)):
            if context.should_stop():
                break
            try:
                rtt_ms = self._round_trip()
            except (requests.RequestException, OSError) as exc:
                last_error = exc
                LOGGER.debug("%s round trip failed: %s", self.slug, exc)
                continue
            self._emit(on_sample, Phase.LATENCY, rtt_ms)
            recorded += 1

        if recorded == 0:
            raise ProviderUnavailable(self.slug, f"no round trip succeeded ({last_error})")
        return SettledRate(phase=Phase.LATENCY, provider=self.slug, rate_mbps=0.0, sample_count=recorded)


class HttpLatencyProbe(_LatencyProbe):
    """Times a tiny GET against an HTTP endpoint."""

    def __init__(
        self,
        name: str,
        url: str,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        super().__init__(name, timeout)
        self.url = url
        self._session = session or requests.Session()
        self._clock = clock

    @property
    def slug(self) -> str:
        return f"http-latency:{self.name}"

    @property
    def target(self) -> str:
        return self.url

    def _round_trip(self) -> float:
        started = self._clock()
        response = self._session.get(self.url, timeout=self.timeout)
        elapsed = self._clock() - started
        response.close()
        if response.status_code >= 500:
            raise requests.HTTPError(f"HTTP {response.status_code}", response=response)
        return elapsed * 1000


class SocketLatencyProbe(_LatencyProbe):
    """PING/PONG against the probe server. Connection setup is not timed."""

    def __init__(self, name: str, host: str, port: int = 5201, timeout: float = 5.0):
        super().__init__(name, timeout)
        self.host = host
        self.port = port

    @property
    def slug(self) -> str:
        return f"socket-latency:{self.name}"

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"

    def _round_trip(self) -> float:
        with socket.create_connection((self.host, self.port), timeout=self.timeout) as sock:
            started = time.perf_counter()
            sock.sendall(b"PING\n")
            reply = sock.recv(16)
            elapsed = time.perf_counter() - started
        if not reply.startswith(b"PONG"):
            raise ConnectionError(f"unexpected reply {reply!r}")
        return elapsed * 1000
