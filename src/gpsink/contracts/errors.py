"""Error taxonomy for the sink.

Routing and mapping errors are fatal for the record that caused them.
Load and connection errors abort the current cycle and are retried by
SinkTask. Session errors stay inside the protocol server.
"""

from gpsink.contracts.data import DestinationKey


class SinkError(Exception):
    """Base class for all sink errors."""


class RoutingError(SinkError):
    """Raised when a record's destination cannot be resolved.

    Covers empty or malformed table names and destination tables that are
    missing (or missing columns) when auto-create/auto-evolve is off.
    """

    def __init__(self, topic: str, reason: str) -> None:
        self.topic = topic
        self.reason = reason
        super().__init__(f"Cannot route record from topic '{topic}': {reason}")


class RecordMappingError(SinkError):
    """Raised when a record cannot be turned into a target row."""


class LoadError(SinkError):
    """Raised when the target rejects a flush.

    Attributes:
        destination: Destination whose flush failed
        applied: Rows the target accepted before the failure
        rejected: Rows the target rejected or never received
    """

    def __init__(
        self,
        destination: DestinationKey,
        message: str,
        *,
        applied: int = 0,
        rejected: int = 0,
    ) -> None:
        self.destination = destination
        self.applied = applied
        self.rejected = rejected
        super().__init__(
            f"Load into {destination} failed ({applied} applied, "
            f"{rejected} rejected): {message}"
        )


class ConnectionUnavailableError(SinkError):
    """Raised when the target database cannot be reached."""

    def __init__(self, attempts: int, message: str) -> None:
        self.attempts = attempts
        super().__init__(
            f"Could not connect to target after {attempts} attempt(s): {message}"
        )


class RetriesExhaustedError(SinkError):
    """Raised by SinkTask when a cycle keeps failing past max_retries."""


class PortRangeExhaustedError(SinkError):
    """Raised when no port in the configured range can be bound."""


class SessionError(SinkError):
    """Base class for errors scoped to a single pull session."""


class SessionConflictError(SessionError):
    """Raised when a second reader subscribes to a single-reader aggregator."""


class ProtocolTimeoutError(SessionError):
    """Raised when no aggregated chunk becomes available in time."""
