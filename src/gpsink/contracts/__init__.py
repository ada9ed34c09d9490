"""Shared contracts for cross-boundary data types.

Import pattern:
    from gpsink.contracts import DestinationKey, LoadError, SinkRecord
"""

from gpsink.contracts.data import (
    AggregatedChunk,
    DestinationKey,
    MappedRow,
    SinkRecord,
)
from gpsink.contracts.enums import (
    InsertMode,
    LoadMode,
    PrimaryKeyMode,
    SessionState,
    StreamFormat,
    TriggerType,
    UpdateMode,
)
from gpsink.contracts.errors import (
    ConnectionUnavailableError,
    LoadError,
    PortRangeExhaustedError,
    ProtocolTimeoutError,
    RecordMappingError,
    RetriesExhaustedError,
    RoutingError,
    SessionConflictError,
    SessionError,
    SinkError,
)

__all__ = [
    "AggregatedChunk",
    "ConnectionUnavailableError",
    "DestinationKey",
    "InsertMode",
    "LoadError",
    "LoadMode",
    "MappedRow",
    "PortRangeExhaustedError",
    "PrimaryKeyMode",
    "ProtocolTimeoutError",
    "RecordMappingError",
    "RetriesExhaustedError",
    "RoutingError",
    "SessionConflictError",
    "SessionError",
    "SessionState",
    "SinkError",
    "SinkRecord",
    "StreamFormat",
    "TriggerType",
    "UpdateMode",
]
