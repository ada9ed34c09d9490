"""Windowed load streaming: encoding, aggregation and the pull endpoint."""

from gpsink.stream.aggregator import StreamAggregator, Subscription
from gpsink.stream.encoding import RowEncoder
from gpsink.stream.registry import LoadStream, LoadStreamRegistry
from gpsink.stream.server import PROTOCOL_HEADERS, ProtocolServer
from gpsink.stream.session import END_OF_BATCH, PullSession

__all__ = [
    "END_OF_BATCH",
    "PROTOCOL_HEADERS",
    "LoadStream",
    "LoadStreamRegistry",
    "ProtocolServer",
    "PullSession",
    "RowEncoder",
    "StreamAggregator",
    "Subscription",
]
