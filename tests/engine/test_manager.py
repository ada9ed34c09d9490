# tests/engine/test_manager.py
"""Tests for BufferManager write cycles against SQLite."""

from collections.abc import Callable
from typing import Any

import pytest
from sqlalchemy import Table, insert
from sqlalchemy.engine import Engine

from gpsink.contracts import DestinationKey, SinkRecord

KEYED = {"pk_mode": "record_value", "pk_fields": ["id"]}


def _records(topic: str, *ids: int) -> list[SinkRecord]:
    return [
        SinkRecord(topic, {"id": i, "name": f"{topic}{i}", "qty": i}, offset=i) for i in ids
    ]


class TestSweep:
    """Age-based flushing at max_batch_wait_ms."""

    def test_threshold_is_inclusive_at_millisecond_precision(
        self,
        sink_settings: Callable[..., Any],
        make_table: Callable[..., Table],
        fetch_rows: Callable,
    ) -> None:
        from gpsink.core.clock import MockClock
        from gpsink.engine import BufferManager

        make_table("orders")
        clock = MockClock(start=1000.0)
        manager = BufferManager(sink_settings(max_batch_wait_ms=60000, **KEYED), clock=clock)
        try:
            manager.process_cycle(_records("orders", 1))
            assert DestinationKey(None, "orders") in manager.buffers

            clock.set(1059.999)
            assert manager.sweep() == []
            assert fetch_rows("orders") == []

            clock.set(1060.001)
            assert manager.sweep() == [DestinationKey(None, "orders")]
            assert manager.buffers == {}
            assert fetch_rows("orders") == [(1, "orders1", 1)]
        finally:
            manager.close()

    def test_new_buffer_after_sweep(
        self,
        sink_settings: Callable[..., Any],
        make_table: Callable[..., Table],
        fetch_rows: Callable,
    ) -> None:
        from gpsink.core.clock import MockClock
        from gpsink.engine import BufferManager

        make_table("orders")
        clock = MockClock(start=1000.0)
        manager = BufferManager(sink_settings(max_batch_wait_ms=1000, **KEYED), clock=clock)
        try:
            manager.process_cycle(_records("orders", 1))
            clock.advance(2)
            # Swept in the same cycle that added row 2
            manager.process_cycle(_records("orders", 2))
            assert manager.buffers == {}

            manager.process_cycle(_records("orders", 3))
            buffer = manager.buffers[DestinationKey(None, "orders")]
            assert buffer.last_flush_time == 1002.0
        finally:
            manager.close()

        assert [row[0] for row in fetch_rows("orders")] == [1, 2, 3]


class TestCycle:
    """Routing, early flush and transactional rollback."""

    def test_early_flush_at_batch_size(
        self,
        sink_settings: Callable[..., Any],
        make_table: Callable[..., Table],
        fetch_rows: Callable,
    ) -> None:
        from gpsink.engine import BufferManager

        make_table("orders")
        manager = BufferManager(sink_settings(batch_size=2, **KEYED))
        try:
            assert manager.process_cycle(_records("orders", 1, 2, 3)) == 3
            assert [row[0] for row in fetch_rows("orders")] == [1, 2]
            assert manager.buffers[DestinationKey(None, "orders")].pending_count == 1
        finally:
            manager.close()

        assert [row[0] for row in fetch_rows("orders")] == [1, 2, 3]

    def test_failed_destination_rolls_back_whole_cycle(
        self,
        sink_settings: Callable[..., Any],
        make_table: Callable[..., Table],
        fetch_rows: Callable,
        db_engine: Engine,
    ) -> None:
        from gpsink.contracts import LoadError
        from gpsink.engine import BufferManager

        make_table("alpha")
        beta = make_table("beta")
        with db_engine.begin() as connection:
            connection.execute(insert(beta), [{"id": 1, "name": "taken", "qty": 0}])

        manager = BufferManager(sink_settings(max_batch_wait_ms=0, **KEYED))
        batch = _records("alpha", 1, 2) + _records("beta", 1)
        try:
            with pytest.raises(LoadError) as exc_info:
                manager.process_cycle(batch)
            assert exc_info.value.destination == DestinationKey(None, "beta")

            # alpha was flushed before beta failed; nothing of it survives
            assert fetch_rows("alpha") == []
            assert manager.buffers == {}

            with db_engine.begin() as connection:
                connection.execute(beta.delete())
            assert manager.process_cycle(batch) == 3
        finally:
            manager.close()

        assert [row[0] for row in fetch_rows("alpha")] == [1, 2]
        assert fetch_rows("beta") == [(1, "beta1", 1)]

    def test_failed_sweep_keeps_healthy_buffer_live(
        self,
        sink_settings: Callable[..., Any],
        make_table: Callable[..., Table],
        fetch_rows: Callable,
        db_engine: Engine,
    ) -> None:
        from gpsink.contracts import LoadError
        from gpsink.core.clock import MockClock
        from gpsink.engine import BufferManager

        make_table("orders")
        ledger = make_table("ledger")
        with db_engine.begin() as connection:
            connection.execute(insert(ledger), [{"id": 1, "name": "taken", "qty": 0}])

        clock = MockClock(start=1000.0)
        manager = BufferManager(sink_settings(max_batch_wait_ms=60000, **KEYED), clock=clock)
        orders_key = DestinationKey(None, "orders")
        ledger_key = DestinationKey(None, "ledger")
        try:
            manager.process_cycle(_records("orders", 1) + _records("ledger", 1))

            clock.advance(61)
            with pytest.raises(LoadError) as exc_info:
                manager.sweep()
            assert exc_info.value.destination == ledger_key

            # orders was swept before ledger failed; it is back in service
            assert manager.buffers[orders_key].pending_count == 1
            assert manager.buffers[ledger_key].pending_count == 1
            assert fetch_rows("orders") == []

            with db_engine.begin() as connection:
                connection.execute(ledger.delete())
            assert set(manager.sweep()) == {orders_key, ledger_key}
            assert manager.buffers == {}
        finally:
            manager.close()

        assert fetch_rows("orders") == [(1, "orders1", 1)]
        assert fetch_rows("ledger") == [(1, "ledger1", 1)]

    def test_rollback_keeps_rows_from_earlier_cycles(
        self,
        sink_settings: Callable[..., Any],
        make_table: Callable[..., Table],
        fetch_rows: Callable,
    ) -> None:
        from gpsink.contracts import RoutingError
        from gpsink.engine import BufferManager

        make_table("orders")
        manager = BufferManager(sink_settings(**KEYED))
        try:
            manager.process_cycle(_records("orders", 1))
            with pytest.raises(RoutingError):
                manager.process_cycle(_records("orders", 2) + _records("missing", 1))

            buffer = manager.buffers[DestinationKey(None, "orders")]
            assert buffer.pending_count == 1
        finally:
            manager.close()

        assert [row[0] for row in fetch_rows("orders")] == [1]

    def test_missing_table_is_routing_error(self, sink_settings: Callable[..., Any]) -> None:
        from gpsink.contracts import RoutingError
        from gpsink.engine import BufferManager

        manager = BufferManager(sink_settings())
        try:
            with pytest.raises(RoutingError) as exc_info:
                manager.process_cycle(_records("nowhere", 1))
            assert exc_info.value.topic == "nowhere"
            assert manager.buffers == {}
        finally:
            manager.close()

    def test_auto_create_round_trip(
        self, sink_settings: Callable[..., Any], fetch_rows: Callable
    ) -> None:
        from gpsink.engine import BufferManager

        manager = BufferManager(sink_settings(auto_create=True, **KEYED))
        manager.process_cycle(_records("events", 2, 1))
        manager.close()

        assert fetch_rows("events") == [(1, "events1", 1), (2, "events2", 2)]

    def test_tombstones_ignored_without_delete(
        self, sink_settings: Callable[..., Any], make_table: Callable[..., Table]
    ) -> None:
        from gpsink.engine import BufferManager

        make_table("orders")
        manager = BufferManager(sink_settings(pk_mode="record_key"))
        try:
            assert manager.process_cycle([SinkRecord("orders", None, key={"id": 1})]) == 0
            assert manager.buffers == {}
        finally:
            manager.close()


class TestClose:
    """Shutdown flush."""

    def test_close_flushes_and_is_idempotent(
        self,
        sink_settings: Callable[..., Any],
        make_table: Callable[..., Table],
        fetch_rows: Callable,
    ) -> None:
        from gpsink.engine import BufferManager

        make_table("orders")
        manager = BufferManager(sink_settings(**KEYED))
        manager.process_cycle(_records("orders", 1, 2))
        assert fetch_rows("orders") == []

        manager.close()
        manager.close()

        assert manager.closed
        assert len(fetch_rows("orders")) == 2
        with pytest.raises(RuntimeError, match="closed"):
            manager.process_cycle(_records("orders", 3))


class TestLoadModes:
    """Buffer variant follows load_mode."""

    def test_windowed_rows_reach_the_stream(
        self, sink_settings: Callable[..., Any], make_table: Callable[..., Table]
    ) -> None:
        from gpsink.engine import BufferManager
        from gpsink.engine.buffers import WindowedLoadBuffer

        make_table("orders")
        settings = sink_settings(
            load_mode="windowed",
            stream={
                "port_range": [0],
                "bind_host": "127.0.0.1",
                "host": "127.0.0.1",
                "window": {"flush_time_seconds": 0},
            },
            **KEYED,
        )
        manager = BufferManager(settings)
        try:
            manager.process_cycle(_records("orders", 1, 2))
            destination = DestinationKey(None, "orders")
            assert isinstance(manager.buffers[destination], WindowedLoadBuffer)
            location = manager.stream_locations()["orders"]
            assert location is not None
            assert location.startswith("gpfdist://127.0.0.1:")

            manager.buffers[destination].flush()
            assert manager.streams is not None
            stream = manager.streams.get(destination)
            assert stream is not None
            chunk = stream.aggregator.subscribe().take(timeout=1)
            assert chunk.data == b"1,orders1,1\n2,orders2,2\n"
        finally:
            manager.close()

    def test_external_file_jobs_written(
        self, sink_settings: Callable[..., Any], make_table: Callable[..., Table], tmp_path: Any
    ) -> None:
        from gpsink.engine import BufferManager

        make_table("orders")
        staging = tmp_path / "staging"
        manager = BufferManager(
            sink_settings(load_mode="external_file", files={"staging_dir": staging}, **KEYED)
        )
        manager.process_cycle(_records("orders", 1))
        manager.close()

        assert sorted(path.suffix for path in staging.iterdir()) == [".dat", ".yml"]
