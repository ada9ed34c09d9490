# src/gpsink/engine/manager.py
"""BufferManager: destination-scoped buffers and the write cycle.

One cycle processes one upstream batch inside one database transaction:

    1. Route every record into its destination's buffer
    2. Sweep buffers older than max_batch_wait_ms (flush, close, remove)
    3. Commit

Any exception rolls the transaction back and rewinds every buffer to where
it stood when the cycle began, so redelivering the same batch reproduces
the same state. The caller (SinkTask) owns redelivery.
"""

from collections.abc import Iterable

from sqlalchemy import Table
from sqlalchemy.engine import RootTransaction
from sqlalchemy.exc import SQLAlchemyError

from gpsink.contracts.data import DestinationKey, SinkRecord
from gpsink.contracts.enums import LoadMode
from gpsink.core.catalog import TableCatalog
from gpsink.core.clock import DEFAULT_CLOCK, Clock
from gpsink.core.config import SinkSettings
from gpsink.core.connection import CachedConnectionProvider
from gpsink.core.logging import get_logger
from gpsink.engine.buffers import (
    Buffer,
    DirectBuffer,
    ExternalFileBuffer,
    WindowedLoadBuffer,
)
from gpsink.engine.router import RecordRouter
from gpsink.engine.rows import RowMapper
from gpsink.stream.encoding import RowEncoder
from gpsink.stream.registry import LoadStreamRegistry

logger = get_logger(__name__)


class BufferManager:
    """Owns the destination -> buffer map for one sink instance.

    Not thread-safe: cycles must not run concurrently on one manager.

    Example:
        manager = BufferManager(settings)
        manager.process_cycle(records)
        ...
        manager.close()
    """

    def __init__(
        self,
        settings: SinkSettings,
        *,
        provider: CachedConnectionProvider | None = None,
        catalog: TableCatalog | None = None,
        streams: LoadStreamRegistry | None = None,
        clock: Clock = DEFAULT_CLOCK,
    ) -> None:
        """Initialize manager. No connection is opened until the first cycle.

        Args:
            settings: Validated sink settings
            provider: Connection provider (built from settings when omitted)
            catalog: Table catalog (built from settings when omitted)
            streams: Load stream registry for windowed loads (built from
                settings when omitted and load_mode is windowed)
            clock: Time source for buffer age
        """
        self._settings = settings
        self._clock = clock
        self._provider = provider or CachedConnectionProvider(
            settings.connection.url,
            max_attempts=settings.connection.attempts,
            backoff_ms=settings.connection.backoff_ms,
            echo=settings.connection.echo,
        )
        self._catalog = catalog or TableCatalog(
            auto_create=settings.auto_create, auto_evolve=settings.auto_evolve
        )
        if streams is None and settings.load_mode == LoadMode.WINDOWED:
            streams = LoadStreamRegistry(settings.stream, clock=clock)
        self._streams = streams

        self._router = RecordRouter(settings.table_name_format, settings.db_schema)
        self._mapper = RowMapper(
            settings.pk_mode,
            settings.pk_fields,
            settings.fields_whitelist,
            delete_enabled=settings.delete_enabled,
        )
        stream = settings.stream
        self._encoder = RowEncoder(
            stream.format,
            delimiter=stream.delimiter,
            quote=stream.quote,
            null_string=stream.null_string,
            encoding=stream.encoding,
            max_line_length=stream.max_line_length,
        )

        self._buffers: dict[DestinationKey, Buffer] = {}
        self._retired: list[Buffer] = []
        self._closed = False

    @property
    def buffers(self) -> dict[DestinationKey, Buffer]:
        """Snapshot of live buffers."""
        return dict(self._buffers)

    @property
    def streams(self) -> LoadStreamRegistry | None:
        return self._streams

    @property
    def closed(self) -> bool:
        return self._closed

    def route(self, record: SinkRecord) -> DestinationKey | None:
        """Add one record to its destination's buffer.

        Must run inside a cycle: schema changes and early flushes use the
        cycle's transaction.

        Returns:
            The destination, or None when the record was ignored (tombstone
            with deletes disabled)

        Raises:
            RoutingError: Destination name invalid or table unusable
            RecordMappingError: Record cannot become a row
            LoadError: Early flush rejected by the target
        """
        destination = self._router.destination(record.topic)
        row = self._mapper.map(record)
        if row is None:
            logger.debug(
                "Ignoring tombstone",
                topic=record.topic,
                partition=record.partition,
                offset=record.offset,
            )
            return None

        connection = self._provider.get_connection()
        table = self._catalog.resolve(connection, destination, row, topic=record.topic)

        buffer = self._buffers.get(destination)
        if buffer is None:
            buffer = self._create_buffer(destination, table)
            self._buffers[destination] = buffer
        elif buffer.table is not table:
            buffer.retarget(table)

        buffer.add(row)
        if buffer.pending_count >= self._settings.batch_size:
            flushed = buffer.flush()
            logger.debug(
                "Early flush",
                destination=str(destination),
                rows=flushed,
                batch_size=self._settings.batch_size,
            )
        return destination

    def process_cycle(self, records: Iterable[SinkRecord]) -> int:
        """Route a batch, sweep aged buffers and commit.

        Returns:
            Number of records routed into buffers

        Raises:
            Whatever aborted the cycle, after rollback
        """
        routed, _ = self._run_cycle(records)
        return routed

    def sweep(self) -> list[DestinationKey]:
        """Run a cycle with no records: flush and retire aged buffers.

        Returns:
            Destinations whose buffers were swept
        """
        _, swept = self._run_cycle(())
        return swept

    def _run_cycle(
        self, records: Iterable[SinkRecord]
    ) -> tuple[int, list[DestinationKey]]:
        if self._closed:
            raise RuntimeError("BufferManager is closed")

        marks = {key: buffer.mark() for key, buffer in self._buffers.items()}
        connection = self._provider.get_connection()
        transaction = connection.get_transaction() or connection.begin()

        routed = 0
        try:
            for record in records:
                if self.route(record) is not None:
                    routed += 1
            swept = self._sweep()
            transaction.commit()
        except Exception as e:
            self._abort(transaction, marks, e)
            raise

        for buffer in [*self._buffers.values(), *self._retired]:
            buffer.commit()
        self._retired.clear()
        logger.debug(
            "Cycle committed",
            records=routed,
            swept=[str(key) for key in swept],
            live_buffers=len(self._buffers),
        )
        return routed, swept

    def _sweep(self) -> list[DestinationKey]:
        now = self._clock.monotonic()
        max_wait_ms = self._settings.max_batch_wait_ms
        due = [
            key
            for key, buffer in self._buffers.items()
            if (now - buffer.last_flush_time) * 1000 >= max_wait_ms
        ]
        for key in due:
            buffer = self._buffers[key]
            flushed = buffer.flush()
            buffer.close()
            del self._buffers[key]
            self._retired.append(buffer)
            logger.info(
                "Swept buffer",
                destination=str(key),
                rows=flushed,
                age_ms=round((now - buffer.last_flush_time) * 1000),
            )
        return due

    def _abort(
        self,
        transaction: RootTransaction,
        marks: dict[DestinationKey, int],
        error: BaseException,
    ) -> None:
        _rollback(transaction, error)

        for buffer in self._retired:
            buffer.reopen()
            self._buffers[buffer.destination] = buffer
        self._retired.clear()

        for key, buffer in list(self._buffers.items()):
            buffer.rollback(marks.get(key, 0))
            if key not in marks and buffer.pending_count == 0:
                buffer.close()
                del self._buffers[key]

        # DDL may have been rolled back together with the rows
        self._catalog.invalidate()
        logger.warning(
            "Cycle rolled back",
            error=str(error),
            error_type=type(error).__name__,
            live_buffers=len(self._buffers),
        )

    def close(self) -> None:
        """Flush and close every remaining buffer in one transaction.

        Idempotent. Load streams and the connection are released even when
        the final flush fails.
        """
        if self._closed:
            return
        self._closed = True
        try:
            if self._buffers:
                self._flush_remaining()
        finally:
            if self._streams is not None:
                self._streams.close()
            self._provider.close()
            logger.info("Buffer manager closed")

    def _flush_remaining(self) -> None:
        buffers = list(self._buffers.values())
        self._buffers.clear()
        connection = self._provider.get_connection()
        transaction = connection.get_transaction() or connection.begin()
        try:
            for buffer in buffers:
                buffer.flush()
            transaction.commit()
        except Exception as e:
            _rollback(transaction, e)
            raise
        else:
            for buffer in buffers:
                buffer.commit()
        finally:
            for buffer in buffers:
                buffer.close()
        logger.info("Flushed remaining buffers", buffers=len(buffers))

    def stream_locations(self) -> dict[str, str | None]:
        """Loader locations of windowed load streams."""
        if self._streams is None:
            return {}
        return self._streams.locations()

    def _create_buffer(self, destination: DestinationKey, table: Table) -> Buffer:
        created_at = self._clock.monotonic()
        settings = self._settings
        buffer: Buffer
        if settings.load_mode == LoadMode.DIRECT:
            buffer = DirectBuffer(
                destination,
                table,
                created_at,
                connection=self._provider.get_connection,
                insert_mode=settings.insert_mode,
                update_mode=settings.update_mode,
            )
        elif settings.load_mode == LoadMode.WINDOWED:
            assert self._streams is not None
            stream = self._streams.open(destination)
            buffer = WindowedLoadBuffer(
                destination,
                table,
                created_at,
                aggregator=stream.aggregator,
                encoder=self._encoder,
            )
        else:
            buffer = ExternalFileBuffer(
                destination,
                table,
                created_at,
                encoder=self._encoder,
                settings=settings.files,
                insert_mode=settings.insert_mode,
                connection_url=settings.connection.url,
            )
        logger.info(
            "Buffer created",
            destination=str(destination),
            load_mode=settings.load_mode.value,
        )
        return buffer


def _rollback(transaction: RootTransaction, error: BaseException) -> None:
    try:
        transaction.rollback()
    except SQLAlchemyError as rollback_error:
        error.add_note(f"Rollback failed as well: {rollback_error}")
        logger.error("Rollback failed", error=str(rollback_error))
