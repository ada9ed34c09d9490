# src/gpsink/stream/aggregator.py
"""Windowed aggregation of appended row encodings.

Appended events accumulate in an open window. The window closes, and its
events are concatenated into one AggregatedChunk, when EITHER flush_count
events have accumulated OR flush_time_seconds have elapsed since it opened
(first one wins). Closed chunks enter a bounded queue that pull sessions
drain; a full queue blocks producers instead of dropping data.

Threading model:
- Producers call append()/flush() from the ingestion path
- A timer thread (started by start()) closes windows by age
- Sessions take() from the queue and never touch the open window

One lock protects the open window, its open timestamp and the outbox of
closed chunks. Chunks leave the outbox strictly in order; while the queue
is full the emitting thread waits on the lock's Condition, which releases
the lock so close() and readers are never shut out.
"""

import queue
import threading
import time
from collections import deque

from gpsink.contracts.data import AggregatedChunk
from gpsink.contracts.enums import TriggerType
from gpsink.contracts.errors import ProtocolTimeoutError, SessionConflictError
from gpsink.core.clock import DEFAULT_CLOCK, Clock
from gpsink.core.logging import get_logger

logger = get_logger(__name__)

# Upper bound between retries while the chunk queue is full
_DRAIN_POLL_SECONDS = 0.05


class Subscription:
    """Read handle on an aggregator's chunk queue, held by one pull session."""

    def __init__(self, aggregator: "StreamAggregator") -> None:
        self._aggregator = aggregator
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def take(self, timeout: float) -> AggregatedChunk:
        """Wait up to timeout seconds for the next chunk.

        Raises:
            ProtocolTimeoutError: No chunk became available in time
            RuntimeError: Subscription already released
        """
        if self._released:
            raise RuntimeError("Subscription already released")
        return self._aggregator._take(timeout)

    def release(self) -> None:
        """Give the aggregator back to other readers. Idempotent."""
        if not self._released:
            self._released = True
            self._aggregator._release()


class StreamAggregator:
    """Dual-trigger window aggregator feeding a bounded work queue.

    Example:
        aggregator = StreamAggregator(flush_count=3, flush_time_seconds=0)
        for line in (b"a\\n", b"b\\n", b"c\\n"):
            aggregator.append(line)
        subscription = aggregator.subscribe()
        subscription.take(timeout=1).data  # b"a\\nb\\nc\\n"
    """

    def __init__(
        self,
        flush_count: int,
        flush_time_seconds: float = 0,
        *,
        queue_capacity: int = 8192,
        allow_concurrent_readers: bool = False,
        clock: Clock = DEFAULT_CLOCK,
        name: str = "stream",
        close_timeout_seconds: float = 5.0,
    ) -> None:
        """Initialize aggregator. No thread runs until start().

        Args:
            flush_count: Events per window (must be > 0)
            flush_time_seconds: Window age limit; 0 disables the time trigger
            queue_capacity: Closed chunks held before producers block
            allow_concurrent_readers: Permit more than one live subscription
            clock: Time source for window age
            name: Label used in logs and the timer thread name
            close_timeout_seconds: How long close() waits to enqueue the
                final window when the queue is full
        """
        if flush_count <= 0:
            raise ValueError(f"flush_count must be positive, got {flush_count}")
        if flush_time_seconds < 0:
            raise ValueError(
                f"flush_time_seconds must be >= 0, got {flush_time_seconds}"
            )
        self.name = name
        self._flush_count = flush_count
        self._flush_time = flush_time_seconds
        self._allow_concurrent_readers = allow_concurrent_readers
        self._clock = clock
        self._close_timeout = close_timeout_seconds

        self._lock = threading.Lock()
        self._window_changed = threading.Condition(self._lock)
        self._pending: list[bytes] = []
        self._outbox: deque[AggregatedChunk] = deque()
        self._window_opened_at: float | None = None
        self._sequence = 0
        self._closed = False

        self._queue: queue.Queue[AggregatedChunk] = queue.Queue(maxsize=queue_capacity)
        self._readers = 0
        self._readers_lock = threading.Lock()
        self._timer: threading.Thread | None = None

    @property
    def pending_count(self) -> int:
        """Events in the open window."""
        with self._lock:
            return len(self._pending)

    @property
    def queued_count(self) -> int:
        """Closed chunks waiting for a reader."""
        return self._queue.qsize()

    @property
    def backlog_count(self) -> int:
        """Closed chunks still waiting for room in the queue."""
        with self._lock:
            return len(self._outbox)

    @property
    def emitted_count(self) -> int:
        """Chunks emitted since construction."""
        with self._lock:
            return self._sequence

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the window timer thread (no-op when the time trigger is off)."""
        if self._flush_time <= 0 or self._timer is not None:
            return
        self._timer = threading.Thread(
            target=self._run_timer,
            name=f"gpsink-window-{self.name}",
            daemon=True,
        )
        self._timer.start()

    def append(self, data: bytes) -> None:
        """Append one event to the open window.

        Blocks while the chunk queue is full.

        Raises:
            RuntimeError: Aggregator is closed
        """
        with self._window_changed:
            if self._closed:
                raise RuntimeError(f"Aggregator '{self.name}' is closed")
            if self._expire_locked(self._clock.monotonic()) is not None and self._closed:
                # Closed while waiting for room in the queue
                raise RuntimeError(f"Aggregator '{self.name}' is closed")
            if self._window_opened_at is None:
                self._window_opened_at = self._clock.monotonic()
                self._window_changed.notify_all()
            self._pending.append(data)
            if len(self._pending) >= self._flush_count:
                self._emit_locked(TriggerType.COUNT)

    def tick(self) -> AggregatedChunk | None:
        """Close the open window if it has reached flush_time_seconds.

        Called by the timer thread; tests call it directly with a MockClock.
        """
        with self._window_changed:
            return self._expire_locked(self._clock.monotonic())

    def flush(self) -> int:
        """Close the open window early.

        Returns:
            Number of events in the emitted chunk (0 if the window was empty)
        """
        with self._window_changed:
            if not self._pending:
                return 0
            return self._emit_locked(TriggerType.BARRIER).event_count

    def subscribe(self) -> Subscription:
        """Register a reader.

        Raises:
            SessionConflictError: Another reader is active and concurrent
                readers are not allowed
        """
        with self._readers_lock:
            if self._readers and not self._allow_concurrent_readers:
                raise SessionConflictError(
                    f"Stream '{self.name}' already has an active reader"
                )
            self._readers += 1
        return Subscription(self)

    def close(self) -> None:
        """Emit the open window and stop the timer thread. Idempotent."""
        with self._window_changed:
            if self._closed:
                return
            self._closed = True
            if self._pending:
                self._close_window_locked(TriggerType.BARRIER)
            self._window_changed.notify_all()
            if not self._drain_locked(timeout=self._close_timeout):
                logger.error(
                    "Undeliverable windows at close",
                    stream=self.name,
                    chunks=len(self._outbox),
                    events=sum(chunk.event_count for chunk in self._outbox),
                    queued=self._queue.qsize(),
                )
        if self._timer is not None:
            self._timer.join(timeout=self._close_timeout)
            self._timer = None

    def _take(self, timeout: float) -> AggregatedChunk:
        try:
            chunk = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise ProtocolTimeoutError(
                f"No chunk available on stream '{self.name}' within {timeout}s"
            ) from None
        # Wake threads waiting for room in the queue
        with self._window_changed:
            self._window_changed.notify_all()
        return chunk

    def _release(self) -> None:
        with self._readers_lock:
            self._readers -= 1

    def _expire_locked(self, now: float) -> AggregatedChunk | None:
        if (
            self._flush_time > 0
            and self._window_opened_at is not None
            and now - self._window_opened_at >= self._flush_time
        ):
            return self._emit_locked(TriggerType.TIMEOUT)
        return None

    def _emit_locked(self, trigger: TriggerType) -> AggregatedChunk:
        """Close the open window and wait until its chunk is queued.

        Returns early, leaving the chunk to close(), when the aggregator
        is closed while waiting.
        """
        chunk = self._close_window_locked(trigger)
        self._drain_locked()
        return chunk

    def _drain_locked(self, timeout: float | None = None) -> bool:
        """Move outbox chunks into the queue, oldest first.

        Without a timeout, waits as long as the aggregator stays open.

        Returns:
            True when the outbox is empty
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while self._outbox:
            try:
                self._queue.put_nowait(self._outbox[0])
            except queue.Full:
                if deadline is None:
                    if self._closed:
                        return False
                    wait = _DRAIN_POLL_SECONDS
                else:
                    wait = min(_DRAIN_POLL_SECONDS, deadline - time.monotonic())
                    if wait <= 0:
                        return False
                # Releases the lock while waiting
                self._window_changed.wait(timeout=wait)
                continue
            self._outbox.popleft()
        return True

    def _close_window_locked(self, trigger: TriggerType) -> AggregatedChunk:
        chunk = AggregatedChunk.reduce(self._pending, self._sequence, trigger)
        self._outbox.append(chunk)
        self._pending = []
        self._window_opened_at = None
        self._sequence += 1
        logger.debug(
            "Window closed",
            stream=self.name,
            trigger=trigger.value,
            events=chunk.event_count,
            bytes=len(chunk),
            sequence=chunk.sequence,
        )
        return chunk

    def _run_timer(self) -> None:
        with self._window_changed:
            while not self._closed:
                if self._window_opened_at is None:
                    self._window_changed.wait()
                    continue
                remaining = (
                    self._window_opened_at + self._flush_time - self._clock.monotonic()
                )
                if remaining <= 0:
                    self._emit_locked(TriggerType.TIMEOUT)
                    continue
                self._window_changed.wait(timeout=remaining)
