"""Raw TCP throughput provider speaking the probe server protocol."""

from __future__ import annotations

import logging
import socket
import struct
import threading
import time
from typing import Optional

from ...probe_server import CHUNK_SIZE, HEADER_FORMAT, filler_chunk, parse_counter_line
from ..errors import ProviderUnavailable
from ..models import Phase, SettledRate, SourceKind
from .base import ProbeContext, Provider, SampleCallback, mbps

LOGGER = logging.getLogger(__name__)


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ConnectionError("Connection closed before header was complete")
        data += chunk
    return data


def _recv_line(sock: socket.socket, limit: int = 1024) -> str:
    data = b""
    while not data.endswith(b"\n") and len(data) < limit:
        chunk = sock.recv(1)
        if not chunk:
            break
        data += chunk
    return data.decode("utf-8", errors="replace").strip()


class SocketThroughputProvider(Provider):
    """Download and upload against a :class:`~wifiprobe.probe_server.ProbeServer`.

    Upload runs two sources at once: the sending loop reports client-side
    rates while a reader thread turns the server's ``PROGRESS`` counters into
    server-side samples.
    """

    def __init__(self, name: str, host: str, port: int = 5201, timeout: float = 20.0):
        super().__init__(name, timeout)
        self.host = host
        self.port = port
        self._chunk = filler_chunk(CHUNK_SIZE)

    @property
    def slug(self) -> str:
        return f"socket:{self.name}"

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}"

    def supports(self, phase: Phase) -> bool:
        return phase in (Phase.DOWNLOAD, Phase.UPLOAD)

    def _connect(self) -> socket.socket:
        try:
            return socket.create_connection((self.host, self.port), timeout=self.timeout)
        except OSError as exc:
            raise ProviderUnavailable(self.slug, f"connect to {self.target} failed: {exc}") from exc

    def measure(self, phase: Phase, on_sample: SampleCallback, context: ProbeContext) -> SettledRate:
        if phase is Phase.DOWNLOAD:
            return self._download(on_sample, context)
        if phase is Phase.UPLOAD:
            return self._upload(on_sample, context)
        raise ProviderUnavailable(self.slug, f"{phase.value} is not supported")

    def _download(self, on_sample: SampleCallback, context: ProbeContext) -> SettledRate:
        requested = context.transfer_bytes or 25 * 1024 * 1024
        sock = self._connect()
        samples = 0
        try:
            sock.sendall(f"DOWNLOAD {requested}\n".encode())
            total_bytes = struct.unpack(HEADER_FORMAT, _recv_exact(sock, 8))[0]

            received = 0
            window_bytes = 0
            start = window_start = time.perf_counter()
            while received < total_bytes:
                chunk = sock.recv(CHUNK_SIZE)
                if not chunk:
                    break
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
        except (OSError, struct.error) as exc:
            raise ProviderUnavailable(self.slug, f"download failed: {exc}") from exc
        finally:
            sock.close()

        if samples == 0 and received:
            self._emit(on_sample, Phase.DOWNLOAD, mbps(received, elapsed))
            samples = 1
        return SettledRate(
            phase=Phase.DOWNLOAD,
            provider=self.slug,
            rate_mbps=mbps(received, elapsed),
            sample_count=samples,
            cancelled=context.cancel.is_set(),
        )

    def _upload(self, on_sample: SampleCallback, context: ProbeContext) -> SettledRate:
        requested = context.transfer_bytes or 10 * 1024 * 1024
        sock = self._connect()
        reader: Optional[_CounterReader] = None
        samples = 0
        try:
            sock.sendall(f"UPLOAD {requested}\n".encode())
            if _recv_line(sock) != "READY":
                raise ProviderUnavailable(self.slug, "server not ready for upload")

            reader = _CounterReader(self, sock, on_sample)
            reader.start()

            sent = 0
            window_bytes = 0
            start = window_start = time.perf_counter()
            while sent < requested:
                size = min(CHUNK_SIZE, requested - sent)
                sock.sendall(self._chunk[:size])
                sent += size
                window_bytes += size

                now = time.perf_counter()
                if now - window_start >= context.sample_interval_seconds:
                    self._emit(on_sample, Phase.UPLOAD, mbps(window_bytes, now - window_start))
                    samples += 1
                    window_bytes = 0
                    window_start = now
                    if context.should_stop() or now - start >= context.duration_seconds:
                        break
            elapsed = time.perf_counter() - start

            # Half-close so the server stops waiting for bytes and reports DONE.
            sock.shutdown(socket.SHUT_WR)
            reader.join(timeout=self.timeout)
        except OSError as exc:
            raise ProviderUnavailable(self.slug, f"upload failed: {exc}") from exc
        finally:
            sock.close()

        rate = mbps(sent, elapsed)
        if reader.final_mbps is not None:
            rate = reader.final_mbps
        samples += reader.sample_count
        if samples == 0 and sent:
            self._emit(on_sample, Phase.UPLOAD, rate)
            samples = 1
        return SettledRate(
            phase=Phase.UPLOAD,
            provider=self.slug,
            rate_mbps=rate,
            sample_count=samples,
            cancelled=context.cancel.is_set(),
        )


class _CounterReader(threading.Thread):
    """Reads server counter lines during an upload and records them."""

    def __init__(self, provider: SocketThroughputProvider, sock: socket.socket, on_sample: SampleCallback):
        super().__init__(name=f"{provider.slug}-counters", daemon=True)
        self._provider = provider
        self._sock = sock
        self._on_sample = on_sample
        self.final_mbps: Optional[float] = None
        self.sample_count = 0

    def run(self) -> None:
        while True:
            try:
                line = _recv_line(self._sock)
            except OSError as exc:
                LOGGER.debug("%s counter reader stopped: %s", self._provider.slug, exc)
                return
            if not line:
                return
            counters = parse_counter_line(line)
            speed = counters.get("speed_mbps")
            if speed is None:
                continue
            if line.startswith("PROGRESS"):
                self._provider._emit(self._on_sample, Phase.UPLOAD, speed, SourceKind.SERVER)
                self.sample_count += 1
            elif line.startswith("DONE"):
                self.final_mbps = speed
                return
