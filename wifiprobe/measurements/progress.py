"""Live progress fan-out from one measurement session to its watchers."""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from dataclasses import replace
from typing import Deque, Iterator, List, Optional

from .errors import ConsumerDisconnected
from .models import ProgressEvent

LOGGER = logging.getLogger(__name__)

_END = object()


class Subscriber:
    """Read side of a :class:`ProgressChannel` with its own bounded queue."""

    def __init__(self, channel: "ProgressChannel", maxsize: int):
        self._channel = channel
        self._queue: "queue.Queue[object]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()
        self._ended = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def deliver(self, item: object) -> None:
        """Queue ``item`` without blocking. A full queue drops it."""
        if self._closed.is_set():
            raise ConsumerDisconnected("subscriber closed")
        try:
            self._queue.put_nowait(item)
        except queue.Full:
            self.dropped += 1

    def _finish(self) -> None:
        # The end marker must get through even when the queue is full.
        while True:
            try:
                self._queue.put_nowait(_END)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or ``None`` once the channel has ended.

        Raises ``queue.Empty`` when nothing arrives within ``timeout``.
        """
        if self._ended:
            return None
        item = self._queue.get(timeout=timeout)
        if item is _END:
            self._ended = True
            return None
        return item  # type: ignore[return-value]

    def events(self, heartbeat: Optional[float] = None) -> Iterator[Optional[ProgressEvent]]:
        """Yield events until the channel ends.

        With ``heartbeat`` set, ``None`` is yielded whenever that many seconds
        pass without an event so a streaming response can keep the socket alive.
        """
        while not self._closed.is_set():
            try:
                event = self.get(timeout=heartbeat)
            except queue.Empty:
                yield None
                continue
            if event is None:
                return
            yield event

    def __iter__(self) -> Iterator[ProgressEvent]:
        for event in self.events():
            if event is not None:
                yield event

    def close(self) -> None:
        """Disconnect; later pushes skip this subscriber."""
        self._closed.set()
        self._channel.unsubscribe(self)


class ProgressChannel:
    """Single-writer, multi-reader progress stream.

    Pushes are serialized and never block: each subscriber owns a bounded
    queue and loses events when it falls behind. Percent is clamped so no
    subscriber ever sees it go down. A bounded history is replayed to late
    subscribers.
    """

    def __init__(self, session_id: Optional[str] = None, queue_size: int = 256, history_size: int = 512):
        self.session_id = session_id
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []
        self._history: Deque[ProgressEvent] = deque(maxlen=history_size)
        self._last_percent = 0.0
        self._closed = False
        self.closed_at: Optional[float] = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_event(self) -> Optional[ProgressEvent]:
        with self._lock:
            return self._history[-1] if self._history else None

    def history(self) -> List[ProgressEvent]:
        with self._lock:
            return list(self._history)

    def push(self, event: ProgressEvent) -> Optional[ProgressEvent]:
        """Deliver ``event`` to every live subscriber; returns what was sent."""
        with self._lock:
            if self._closed:
                LOGGER.debug("Dropping %s event pushed after close", event.type)
                return None
            percent = min(100.0, max(event.percent, self._last_percent))
            if percent != event.percent:
                event = replace(event, percent=percent)
            self._last_percent = percent
            self._history.append(event)

            for subscriber in list(self._subscribers):
                try:
                    subscriber.deliver(event)
                except ConsumerDisconnected:
                    self._subscribers.remove(subscriber)
            return event

    def subscribe(self) -> Subscriber:
        with self._lock:
            subscriber = Subscriber(self, maxsize=self.queue_size + len(self._history) + 1)
            for event in self._history:
                subscriber.deliver(event)
            if self._closed:
                subscriber._finish()
            else:
                self._subscribers.append(subscriber)
            return subscriber

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.closed_at = time.time()
            subscribers, self._subscribers = self._subscribers, []
        for subscriber in subscribers:
            if not subscriber.closed:
                subscriber._finish()
