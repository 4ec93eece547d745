from __future__ import annotations

import logging
import queue
import threading
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Generic, TypeVar

from derush.errors import CancellationError, ResourceExhaustion

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_CLOSED = object()


class ChannelClosed(Exception):
    """Raised by ``Channel.receive`` once the producer closed the channel and it is drained."""


class Channel(Generic[T]):
    """Bounded, ordered, single-producer channel between two pipeline stages.

    ``send`` blocks while the channel is full. It gives up with ``CancellationError`` when
    the shared cancel event is set, and with ``ResourceExhaustion`` when the consumer has
    not made room for ``stall_timeout * (max_stall_retries + 1)`` seconds.
    """

    def __init__(
        self,
        name: str,
        capacity: int,
        cancel_event: threading.Event,
        *,
        stall_timeout: float = 5.0,
        max_stall_retries: int = 12,
        poll_interval: float = 0.05,
    ) -> None:
        self.name = name
        self.capacity = capacity
        self.cancel_event = cancel_event
        self.stall_timeout = stall_timeout
        self.max_stall_retries = max_stall_retries
        self.poll_interval = min(poll_interval, stall_timeout)
        self.sent = 0
        self._queue: queue.Queue[object] = queue.Queue(maxsize=capacity)
        self._closed = False

    def send(self, item: T) -> None:
        if self._closed:
            raise RuntimeError(f"Channel '{self.name}' is closed.")

        stalls = 0
        waited = 0.0
        while True:
            if self.cancel_event.is_set():
                raise CancellationError(f"Channel '{self.name}' cancelled while sending.")
            try:
                self._queue.put(item, timeout=self.poll_interval)
                self.sent += 1
                return
            except queue.Full:
                waited += self.poll_interval
                if waited < self.stall_timeout:
                    continue
                waited = 0.0
                stalls += 1
                logger.warning(
                    "Channel '%s' stalled for %.1fs (%s/%s)",
                    self.name,
                    self.stall_timeout,
                    stalls,
                    self.max_stall_retries,
                )
                if stalls > self.max_stall_retries:
                    raise ResourceExhaustion(
                        f"Channel '{self.name}' stayed full for more than "
                        f"{self.stall_timeout * (self.max_stall_retries + 1):.1f}s."
                    ) from None

    def close(self) -> None:
        """Mark end of stream; never blocks indefinitely on a cancelled run."""

        if self._closed:
            return
        self._closed = True
        while True:
            try:
                self._queue.put(_CLOSED, timeout=self.poll_interval)
                return
            except queue.Full:
                if not self.cancel_event.is_set():
                    continue
                # Nobody will read the backlog of a cancelled run; make room for the marker.
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def receive(self) -> T:
        while True:
            try:
                item = self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            if item is _CLOSED:
                # Leave the marker for any later receive call.
                self._queue.put_nowait(_CLOSED)
                raise ChannelClosed(self.name)
            return item  # type: ignore[return-value]

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                item = self.receive()
            except ChannelClosed:
                return
            if self.cancel_event.is_set():
                # Drain in-flight buffers without handing them downstream.
                continue
            yield item


def ordered_map(
    executor: ThreadPoolExecutor,
    func: Callable[[T], R],
    items: Iterable[T],
    *,
    max_in_flight: int,
) -> Iterator[R]:
    """Apply ``func`` concurrently while yielding results in input order.

    At most ``max_in_flight`` items are submitted ahead of the consumer.
    """

    pending: deque[Future[R]] = deque()
    try:
        for item in items:
            pending.append(executor.submit(func, item))
            if len(pending) >= max_in_flight:
                yield pending.popleft().result()
        while pending:
            yield pending.popleft().result()
    finally:
        for future in pending:
            future.cancel()
