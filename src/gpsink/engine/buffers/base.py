# src/gpsink/engine/buffers/base.py
"""Base class for per-destination buffers.

A buffer accumulates rows for exactly one destination table and moves them
to the target when flushed. The manager drives every buffer through the
same cycle protocol:

    marks = {key: buffer.mark()}      # cycle start
    buffer.add(row) / buffer.flush()  # inside the cycle's transaction
    buffer.commit()                   # transaction committed
    buffer.rollback(marks[key])       # transaction rolled back

Rows flushed inside a rolled back transaction are pending again after
rollback(); rows added after the mark are discarded because the caller
redelivers the whole failed batch.
"""

from abc import ABC, abstractmethod

from sqlalchemy import Table

from gpsink.contracts.data import DestinationKey, MappedRow
from gpsink.contracts.enums import LoadMode


class Buffer(ABC):
    """Rows pending for one destination.

    Subclass and implement add(), flush(), mark(), commit() and rollback().

    Example:
        class ListBuffer(Buffer):
            load_mode = LoadMode.DIRECT

            def add(self, row: MappedRow) -> None:
                self._rows.append(row)
            ...
    """

    load_mode: LoadMode

    def __init__(self, destination: DestinationKey, table: Table, created_at: float) -> None:
        """Initialize buffer.

        Args:
            destination: Destination this buffer serves
            table: Reflected target table
            created_at: Clock reading at creation; the sweep measures age from it
        """
        self.destination = destination
        self.table = table
        self._last_flush_time = created_at
        self._closed = False

    @property
    def last_flush_time(self) -> float:
        """Clock reading the sweep compares against max_batch_wait_ms."""
        return self._last_flush_time

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    @abstractmethod
    def pending_count(self) -> int:
        """Rows added but not yet handed to the target."""
        ...

    @abstractmethod
    def add(self, row: MappedRow) -> None:
        """Accept one row. Performs no I/O against the target."""
        ...

    @abstractmethod
    def flush(self) -> int:
        """Hand pending rows to the target.

        Returns:
            Number of rows handed over

        Raises:
            LoadError: Target rejected the rows
        """
        ...

    @abstractmethod
    def mark(self) -> int:
        """Position to rewind to if the current cycle rolls back."""
        ...

    @abstractmethod
    def commit(self) -> None:
        """Forget rows made durable by the committed transaction."""
        ...

    @abstractmethod
    def rollback(self, mark: int) -> None:
        """Rewind to mark after the cycle's transaction rolled back."""
        ...

    def retarget(self, table: Table) -> None:
        """Switch to a re-reflected table (after auto-evolve)."""
        self.table = table

    def close(self) -> None:
        """Release resources. Idempotent, safe after flush() or on abort."""
        self._closed = True

    def reopen(self) -> None:
        """Return a swept buffer to service after its cycle rolled back."""
        self._closed = False

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(destination={self.destination}, "
            f"pending={self.pending_count})"
        )
