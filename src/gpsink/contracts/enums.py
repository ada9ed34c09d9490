"""Modes, states and kinds used across subsystem boundaries.

All enums use (str, Enum) so they round-trip through YAML configuration and
structured log fields unchanged.
"""

from enum import Enum


class LoadMode(str, Enum):
    """How a destination's buffered rows reach the target.

    Chosen once per buffer at creation time, never per call.
    """

    DIRECT = "direct"
    WINDOWED = "windowed"
    EXTERNAL_FILE = "external_file"


class InsertMode(str, Enum):
    """Statement used by DirectBuffer for non-tombstone rows."""

    INSERT = "insert"
    UPSERT = "upsert"
    UPDATE = "update"


class UpdateMode(str, Enum):
    """Deduplication of rows sharing a primary key within one flush.

    Values:
        DEFAULT: Apply every row in arrival order
        FIRST_ROW_ONLY: Keep the first row seen for each key
        LAST_ROW_ONLY: Keep the last row seen for each key
    """

    DEFAULT = "default"
    FIRST_ROW_ONLY = "first_row_only"
    LAST_ROW_ONLY = "last_row_only"


class PrimaryKeyMode(str, Enum):
    """Where primary key columns come from.

    Values:
        NONE: No key columns
        KAFKA: Topic, partition and offset coordinates of the record
        RECORD_KEY: The record key (a mapping, or a single primitive)
        RECORD_VALUE: Named fields of the record value
    """

    NONE = "none"
    KAFKA = "kafka"
    RECORD_KEY = "record_key"
    RECORD_VALUE = "record_value"


class StreamFormat(str, Enum):
    """Line encoding of rows handed to an external loader."""

    TEXT = "text"
    CSV = "csv"


class TriggerType(str, Enum):
    """What closed an aggregation window.

    Values:
        COUNT: flush_count events accumulated
        TIMEOUT: flush_time_seconds elapsed since the window opened
        BARRIER: Explicit flush (end of cycle, buffer close, shutdown)
    """

    COUNT = "count"
    TIMEOUT = "timeout"
    BARRIER = "barrier"


class SessionState(str, Enum):
    """Lifecycle of one pull request against the protocol server."""

    AWAIT_FIRST_CHUNK = "await_first_chunk"
    STREAMING = "streaming"
    TERMINATING = "terminating"
    CLOSED = "closed"
