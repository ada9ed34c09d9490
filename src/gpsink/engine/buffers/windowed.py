"""Buffer feeding a destination's load stream."""

from sqlalchemy import Table

from gpsink.contracts.data import DestinationKey, MappedRow
from gpsink.contracts.enums import LoadMode
from gpsink.core.logging import get_logger
from gpsink.engine.buffers.base import Buffer
from gpsink.stream.aggregator import StreamAggregator
from gpsink.stream.encoding import RowEncoder

logger = get_logger(__name__)


class WindowedLoadBuffer(Buffer):
    """Encodes rows and appends them to the destination's aggregator.

    Rows leave the process when the external loader pulls them, outside the
    cycle's database transaction. Rolling back a cycle therefore cannot
    recall rows already appended, and redelivery of the failed batch may
    produce duplicates (at-least-once).
    """

    load_mode = LoadMode.WINDOWED

    def __init__(
        self,
        destination: DestinationKey,
        table: Table,
        created_at: float,
        *,
        aggregator: StreamAggregator,
        encoder: RowEncoder,
    ) -> None:
        super().__init__(destination, table, created_at)
        self._aggregator = aggregator
        self._encoder = encoder
        self.rows_appended = 0
        self.tombstones_skipped = 0

    @property
    def pending_count(self) -> int:
        return self._aggregator.pending_count

    def add(self, row: MappedRow) -> None:
        if row.tombstone:
            self.tombstones_skipped += 1
            logger.warning(
                "Skipping tombstone: deletes are not supported by windowed loads",
                destination=str(self.destination),
            )
            return
        columns = row.columns
        values = [columns.get(name) for name in self.table.c.keys()]
        self._aggregator.append(self._encoder.encode(values))
        self.rows_appended += 1

    def flush(self) -> int:
        return self._aggregator.flush()

    def mark(self) -> int:
        return self.rows_appended

    def commit(self) -> None:
        pass

    def rollback(self, mark: int) -> None:
        if self.rows_appended > mark:
            logger.warning(
                "Rows already streamed cannot be recalled",
                destination=str(self.destination),
                rows=self.rows_appended - mark,
            )

    def close(self) -> None:
        if not self.closed and not self._aggregator.closed:
            self._aggregator.flush()
        super().close()
