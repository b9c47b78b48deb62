"""Raw TCP throughput target used by the socket providers.

Protocol (one command per connection, newline terminated):

- ``PING``            -> ``PONG``
- ``DOWNLOAD <bytes>`` -> 8 byte ``!Q`` length header, then that many bytes
- ``UPLOAD <bytes>``   -> ``READY``; while receiving, the server writes
  ``PROGRESS bytes=<n> time=<s> speed_mbps=<x>`` lines measured on its side,
  and ``DONE bytes=<n> time=<s> speed_mbps=<x>`` once the client finishes or
  half-closes the connection.
- ``STATUS``           -> ``OK uptime=<s> tests=<n>``
"""

from __future__ import annotations

import errno
import logging
import socket
import struct
import threading
import time
from datetime import datetime
from typing import Any, Dict, Optional

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 65536
HEADER_FORMAT = "!Q"
DEFAULT_TRANSFER_BYTES = 10 * 1024 * 1024


def filler_chunk(size: int = CHUNK_SIZE) -> bytes:
    return bytes((i * 17 + 31) % 256 for i in range(size))


def parse_counter_line(line: str) -> Dict[str, float]:
    """Parse ``KEY a=1 b=2`` into ``{"a": 1.0, "b": 2.0}``."""
    values: Dict[str, float] = {}
    for part in line.split()[1:]:
        key, sep, raw = part.partition("=")
        if not sep:
            continue
        try:
            values[key] = float(raw)
        except ValueError:
            continue
    return values


class ProbeServer:
    """Threaded TCP server answering the probe protocol."""

    def __init__(
        self,
        port: int = 5201,
        bind_address: str = "0.0.0.0",
        progress_interval: float = 0.25,
        client_timeout: float = 30.0,
    ):
        self.port = port
        self.bind_address = bind_address
        self.progress_interval = progress_interval
        self.client_timeout = client_timeout
        self._server_socket: Optional[socket.socket] = None
        self._running = False
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._total_tests = 0
        self._start_time: Optional[datetime] = None
        self._chunk = filler_chunk()

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running and self._server_socket is not None

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None or not self.is_running:
            return 0.0
        return (datetime.utcnow() - self._start_time).total_seconds()

    def _handle_client(self, client_socket: socket.socket, address: tuple):
        try:
            client_socket.settimeout(self.client_timeout)

            data = b""
            while b"\n" not in data and len(data) < 1024:
                chunk = client_socket.recv(1024)
                if not chunk:
                    return
                data += chunk

            raw_line, _, remainder = data.partition(b"\n")
            parts = raw_line.decode("utf-8").strip().split()
            if not parts:
                client_socket.sendall(b"ERROR: Empty command\n")
                return

            cmd = parts[0].upper()
            if cmd == "PING":
                client_socket.sendall(b"PONG\n")
            elif cmd == "DOWNLOAD":
                self._handle_download(client_socket, self._size_arg(parts))
                self._count_test()
            elif cmd == "UPLOAD":
                self._handle_upload(client_socket, self._size_arg(parts), remainder)
                self._count_test()
            elif cmd == "STATUS":
                client_socket.sendall(f"OK uptime={self.uptime_seconds:.1f} tests={self._total_tests}\n".encode())
            else:
                client_socket.sendall(f"ERROR: Unknown command '{cmd}'\n".encode())

        except socket.timeout:
            LOGGER.debug("Client %s timed out", address)
        except (ConnectionError, OSError) as exc:
            LOGGER.debug("Client %s dropped: %s", address, exc)
        except ValueError as exc:
            LOGGER.warning("Bad request from %s: %s", address, exc)
        finally:
            try:
                client_socket.close()
            except OSError:
                pass

    @staticmethod
    def _size_arg(parts) -> int:
        return int(parts[1]) if len(parts) > 1 else DEFAULT_TRANSFER_BYTES

    def _count_test(self) -> None:
        with self._lock:
            self._total_tests += 1

    def _handle_download(self, client_socket: socket.socket, total_bytes: int):
        client_socket.sendall(struct.pack(HEADER_FORMAT, total_bytes))

        bytes_sent = 0
        while bytes_sent < total_bytes:
            chunk_size = min(CHUNK_SIZE, total_bytes - bytes_sent)
            client_socket.sendall(self._chunk[:chunk_size])
            bytes_sent += chunk_size

        LOGGER.debug("Download probe: sent %s bytes", f"{bytes_sent:,}")

    def _handle_upload(self, client_socket: socket.socket, total_bytes: int, initial_data: bytes):
        client_socket.sendall(b"READY\n")

        bytes_received = len(initial_data)
        start_time = time.perf_counter()
        last_report = start_time

        while bytes_received < total_bytes:
            try:
                chunk = client_socket.recv(CHUNK_SIZE)
            except socket.timeout:
                break
            if not chunk:
                break
            bytes_received += len(chunk)

            now = time.perf_counter()
            if now - last_report >= self.progress_interval:
                client_socket.sendall(self._counter_line("PROGRESS", bytes_received, now - start_time))
                last_report = now

        elapsed = time.perf_counter() - start_time
        client_socket.sendall(self._counter_line("DONE", bytes_received, elapsed))
        LOGGER.debug("Upload probe: received %s bytes in %.2fs", f"{bytes_received:,}", elapsed)

    @staticmethod
    def _counter_line(key: str, byte_count: int, elapsed: float) -> bytes:
        speed_mbps = (byte_count * 8) / (elapsed * 1_000_000) if elapsed > 0 else 0.0
        return f"{key} bytes={byte_count} time={elapsed:.3f} speed_mbps={speed_mbps:.2f}\n".encode()

    def _server_loop(self):
        LOGGER.info("Probe server listening on %s:%s", self.bind_address, self.port)

        while self._running:
            server_socket = self._server_socket
            if server_socket is None:
                break
            try:
                client_socket, address = server_socket.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._running:
                    LOGGER.error("Probe server loop error: %s", exc)
                break
            threading.Thread(target=self._handle_client, args=(client_socket, address), daemon=True).start()

        LOGGER.info("Probe server loop ended")

    def start(self) -> bool:
        with self._lock:
            if self._running:
                LOGGER.warning("Probe server already running")
                return True

            try:
                server_socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                server_socket.bind((self.bind_address, self.port))
                server_socket.listen(16)
                # Wake up every second to check the running flag.
                server_socket.settimeout(1.0)
            except OSError as exc:
                if exc.errno == errno.EADDRINUSE:
                    LOGGER.error("Port %s is already in use", self.port)
                elif exc.errno == errno.EACCES:
                    LOGGER.error("Permission denied when trying to bind to port %s", self.port)
                else:
                    LOGGER.error("Failed to start probe server: %s", exc)
                return False

            self._server_socket = server_socket
            # Port 0 asks the OS for a free port.
            self.port = server_socket.getsockname()[1]
            self._running = True
            self._start_time = datetime.utcnow()
            self._thread = threading.Thread(target=self._server_loop, name="probe-server", daemon=True)
            self._thread.start()

            LOGGER.info("Probe server started on port %s", self.port)
            return True

    def stop(self) -> bool:
        with self._lock:
            if not self._running:
                return True
            self._running = False
            if self._server_socket:
                try:
                    self._server_socket.close()
                except OSError:
                    pass
                self._server_socket = None
            thread = self._thread
            self._start_time = None

        if thread and thread.is_alive():
            thread.join(timeout=2.0)
        LOGGER.info("Probe server stopped")
        return True

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "port": self.port,
            "bind_address": self.bind_address,
            "uptime_seconds": self.uptime_seconds,
            "total_tests": self._total_tests,
        }
