"""CDN throughput provider over plain HTTP(S)."""

from __future__ import annotations

import logging
import time
from typing import Iterator, Optional

import requests

from ..errors import ProviderUnavailable
from ..models import Phase, SettledRate
from .base import ProbeContext, Provider, SampleCallback, mbps

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 65536
USER_AGENT = "wifiprobe/1.0"


class HttpThroughputProvider(Provider):
    """Streams a GET for download and a chunked POST for upload.

    ``url`` may contain a ``{bytes}`` placeholder that is filled with the
    configured transfer size.
    """

    def __init__(
        self,
        name: str,
        url: Optional[str] = None,
        upload_url: Optional[str] = None,
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(name, timeout)
        self.url = url
        self.upload_url = upload_url
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", USER_AGENT)

    @property
    def slug(self) -> str:
        return f"http:{self.name}"

    @property
    def target(self) -> str:
        return self.url or self.upload_url or ""

    def supports(self, phase: Phase) -> bool:
        if phase is Phase.DOWNLOAD:
            return bool(self.url)
        if phase is Phase.UPLOAD:
            return bool(self.upload_url)
        return False

    def measure(self, phase: Phase, on_sample: SampleCallback, context: ProbeContext) -> SettledRate:
        if not self.supports(phase):
            raise ProviderUnavailable(self.slug, f"no endpoint configured for {phase.value}")
        try:
            if phase is Phase.DOWNLOAD:
                return self._download(on_sample, context)
            return self._upload(on_sample, context)
        except requests.RequestException as exc:
            raise ProviderUnavailable(self.slug, f"{phase.value} request failed: {exc}") from exc

    def _download(self, on_sample: SampleCallback, context: ProbeContext) -> SettledRate:
        size = context.transfer_bytes or 25 * 1024 * 1024
        url = self.url.format(bytes=size)
        samples = 0
        received = 0
        window_bytes = 0

        start = window_start = time.perf_counter()
        with self._session.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if not chunk:
                    continue
                received += len(chunk)
                window_bytes += len(chunk)

                now = time.perf_counter()
                if now - window_start >= context.sample_interval_seconds:
                    self._emit(on_sample, Phase.DOWNLOAD, mbps(window_bytes, now - window_start))
                    samples += 1
                    window_bytes = 0
                    window_start = now
                    if context.should_stop() or now - start >= context.duration_seconds:
                        break
        elapsed = time.perf_counter() - start

        if received == 0:
            raise ProviderUnavailable(self.slug, "download returned no data")
        if samples == 0:
            self._emit(on_sample, Phase.DOWNLOAD, mbps(received, elapsed))
            samples = 1

        LOGGER.debug("%s downloaded %s bytes in %.2fs", self.slug, f"{received:,}", elapsed)
        return SettledRate(
            phase=Phase.DOWNLOAD,
            provider=self.slug,
            rate_mbps=mbps(received, elapsed),
            sample_count=samples,
            cancelled=context.cancel.is_set(),
        )

    def _upload(self, on_sample: SampleCallback, context: ProbeContext) -> SettledRate:
        size = context.transfer_bytes or 10 * 1024 * 1024
        payload = b"\x00" * CHUNK_SIZE
        state = {"sent": 0, "samples": 0}
        start = time.perf_counter()

        def body() -> Iterator[bytes]:
            window_bytes = 0
            window_start = time.perf_counter()
            while state["sent"] < size:
                chunk = payload[: min(CHUNK_SIZE, size - state["sent"])]
                yield chunk
                state["sent"] += len(chunk)
                window_bytes += len(chunk)

                now = time.perf_counter()
                if now - window_start >= context.sample_interval_seconds:
                    self._emit(on_sample, Phase.UPLOAD, mbps(window_bytes, now - window_start))
                    state["samples"] += 1
                    window_bytes = 0
                    window_start = now
                    if context.should_stop() or now - start >= context.duration_seconds:
                        return

        response = self._session.post(
            self.upload_url,
            data=body(),
            headers={"Content-Type": "application/octet-stream"},
            timeout=self.timeout,
        )
        response.raise_for_status()
        elapsed = time.perf_counter() - start

        if state["sent"] == 0:
            raise ProviderUnavailable(self.slug, "upload sent no data")
        rate = mbps(state["sent"], elapsed)
        if state["samples"] == 0:
            self._emit(on_sample, Phase.UPLOAD, rate)
            state["samples"] = 1

        LOGGER.debug("%s uploaded %s bytes in %.2fs", self.slug, f"{state['sent']:,}", elapsed)
        return SettledRate(
            phase=Phase.UPLOAD,
            provider=self.slug,
            rate_mbps=rate,
            sample_count=state["samples"],
            cancelled=context.cancel.is_set(),
        )
