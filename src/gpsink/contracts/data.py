"""Value types that cross subsystem boundaries."""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from gpsink.contracts.enums import TriggerType


@dataclass(frozen=True, slots=True)
class DestinationKey:
    """Identity of a destination table.

    Used as the buffer map key, so equality is structural.
    """

    schema: str | None
    table: str

    def __str__(self) -> str:
        if self.schema:
            return f"{self.schema}.{self.table}"
        return self.table


@dataclass(frozen=True)
class SinkRecord:
    """One change record delivered by the upstream source.

    A value of None is a tombstone (delete marker).
    """

    topic: str
    value: Mapping[str, Any] | None
    key: Any = None
    partition: int = 0
    offset: int = 0


@dataclass(frozen=True)
class MappedRow:
    """A record reduced to target columns.

    Attributes:
        key: Primary key columns, in key order
        values: Non-key columns, in record order
        tombstone: True when the row represents a delete
    """

    key: dict[str, Any]
    values: dict[str, Any] = field(default_factory=dict)
    tombstone: bool = False

    @property
    def columns(self) -> dict[str, Any]:
        """All columns, key columns first."""
        return {**self.key, **self.values}


@dataclass(frozen=True)
class AggregatedChunk:
    """A closed window: the ordered concatenation of its events.

    Immutable once emitted by the aggregator.
    """

    data: bytes
    event_count: int
    sequence: int
    trigger: TriggerType

    @classmethod
    def reduce(
        cls, events: Sequence[bytes], sequence: int, trigger: TriggerType
    ) -> "AggregatedChunk":
        """Concatenate events in arrival order into one frame."""
        return cls(
            data=b"".join(events),
            event_count=len(events),
            sequence=sequence,
            trigger=trigger,
        )

    def __len__(self) -> int:
        return len(self.data)
