"""One pull request against the protocol server.

A session takes up to batch_count chunks from its subscription, stopping
early when no chunk arrives within batch_timeout_seconds, and always ends
the body with exactly one empty frame. An empty frame is how the external
loader learns that the current batch is complete.
"""

from collections.abc import Iterator

from gpsink.contracts.enums import SessionState
from gpsink.contracts.errors import ProtocolTimeoutError
from gpsink.core.logging import get_logger
from gpsink.stream.aggregator import Subscription

logger = get_logger(__name__)

END_OF_BATCH = b""


class PullSession:
    """Streams aggregated chunks for a single request.

    States move strictly forward:
        AWAIT_FIRST_CHUNK -> STREAMING -> TERMINATING -> CLOSED
    A session that times out before its first chunk skips STREAMING.
    """

    def __init__(
        self,
        subscription: Subscription,
        *,
        batch_count: int,
        batch_timeout_seconds: float,
        stream: str = "stream",
    ) -> None:
        self._subscription = subscription
        self._batch_count = batch_count
        self._batch_timeout = batch_timeout_seconds
        self.stream = stream
        self.state = SessionState.AWAIT_FIRST_CHUNK
        self.chunks_sent = 0
        self.events_sent = 0
        self.bytes_sent = 0
        self.sentinels_emitted = 0
        self.timed_out = False
        self.aborted = False

    def frames(self) -> Iterator[bytes]:
        """Yield chunk payloads, then the end-of-batch frame.

        Closing the generator early (client disconnect) marks the session
        aborted and releases the subscription.
        """
        try:
            while self.chunks_sent < self._batch_count:
                try:
                    chunk = self._subscription.take(self._batch_timeout)
                except ProtocolTimeoutError:
                    self.timed_out = True
                    break
                if self.state == SessionState.AWAIT_FIRST_CHUNK:
                    self.state = SessionState.STREAMING
                self.chunks_sent += 1
                self.events_sent += chunk.event_count
                self.bytes_sent += len(chunk)
                yield chunk.data

            self.state = SessionState.TERMINATING
            self.sentinels_emitted += 1
            yield END_OF_BATCH
        except GeneratorExit:
            # Closing after the end-of-batch frame is a normal finish
            self.aborted = self.sentinels_emitted == 0
            raise
        finally:
            self.close()

    def close(self) -> None:
        """Release the subscription. Idempotent."""
        if self.state == SessionState.CLOSED:
            return
        self._subscription.release()
        self.state = SessionState.CLOSED
        logger.debug(
            "Pull session closed",
            stream=self.stream,
            chunks=self.chunks_sent,
            events=self.events_sent,
            bytes=self.bytes_sent,
            timed_out=self.timed_out,
            aborted=self.aborted,
        )
