"""Per-destination load streams for the windowed load mode.

A load stream is one StreamAggregator plus the ProtocolServer exposing it.
Streams outlive the buffers feeding them: a swept buffer barrier-flushes
into its stream, and the next buffer for the same destination reuses it.
"""

import threading

from gpsink.contracts.data import DestinationKey
from gpsink.contracts.errors import PortRangeExhaustedError
from gpsink.core.clock import DEFAULT_CLOCK, Clock
from gpsink.core.config import StreamSettings
from gpsink.core.logging import get_logger
from gpsink.stream.aggregator import StreamAggregator
from gpsink.stream.server import ProtocolServer

logger = get_logger(__name__)


class LoadStream:
    """An aggregator and the server that drains it."""

    def __init__(self, aggregator: StreamAggregator, server: ProtocolServer) -> None:
        self.aggregator = aggregator
        self.server = server

    @property
    def location(self) -> str | None:
        return self.server.location

    def close(self) -> None:
        self.aggregator.close()
        self.server.stop()


class LoadStreamRegistry:
    """Creates load streams on demand and allocates their ports.

    Ports are taken from StreamSettings.port_range in ascending order;
    ports that fail to bind are skipped.
    """

    def __init__(self, settings: StreamSettings, *, clock: Clock = DEFAULT_CLOCK) -> None:
        self._settings = settings
        self._clock = clock
        self._streams: dict[DestinationKey, LoadStream] = {}
        self._lock = threading.Lock()

    def __contains__(self, destination: DestinationKey) -> bool:
        return destination in self._streams

    def __len__(self) -> int:
        return len(self._streams)

    def open(self, destination: DestinationKey) -> LoadStream:
        """Return the destination's stream, starting it if needed.

        Raises:
            PortRangeExhaustedError: No port in the range could be bound
        """
        with self._lock:
            stream = self._streams.get(destination)
            if stream is not None:
                return stream
            stream = self._start(destination)
            self._streams[destination] = stream
            return stream

    def get(self, destination: DestinationKey) -> LoadStream | None:
        return self._streams.get(destination)

    def locations(self) -> dict[str, str | None]:
        """Loader location per destination, keyed by 'schema.table'."""
        return {str(key): stream.location for key, stream in self._streams.items()}

    def _start(self, destination: DestinationKey) -> LoadStream:
        window = self._settings.window
        aggregator = StreamAggregator(
            window.flush_count,
            window.flush_time_seconds,
            queue_capacity=window.queue_capacity,
            allow_concurrent_readers=window.allow_concurrent_readers,
            clock=self._clock,
            name=str(destination),
        )
        server = ProtocolServer(
            aggregator,
            window,
            path=self._settings.path,
            bind_host=self._settings.bind_host,
            advertised_host=self._settings.host,
        )

        in_use = {s.server.port for s in self._streams.values()}
        for port in self._settings.ports():
            if port and port in in_use:
                continue
            try:
                server.start(port)
            except OSError as e:
                logger.debug("Port unavailable", port=port, error=str(e))
                continue
            aggregator.start()
            logger.info(
                "Load stream opened",
                destination=str(destination),
                location=server.location,
            )
            return LoadStream(aggregator, server)

        raise PortRangeExhaustedError(
            f"No free port in range {self._settings.port_range} for {destination}"
        )

    def close(self) -> None:
        """Close every stream. Idempotent."""
        with self._lock:
            streams = list(self._streams.values())
            self._streams.clear()
        for stream in streams:
            stream.close()
