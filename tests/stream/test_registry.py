# tests/stream/test_registry.py
"""Tests for per-destination load stream allocation."""

import socket
from typing import Any

import pytest

from gpsink.contracts import DestinationKey

ORDERS = DestinationKey("public", "orders")
ITEMS = DestinationKey("public", "items")


def _settings(**overrides: Any) -> Any:
    from gpsink.core.config import StreamSettings

    values: dict[str, Any] = {
        "port_range": [0],
        "bind_host": "127.0.0.1",
        "host": "127.0.0.1",
        "window": {"flush_time_seconds": 0},
    }
    values.update(overrides)
    return StreamSettings(**values)


class TestLoadStreamRegistry:
    """Streams are created on demand and reused."""

    def test_open_reuses_stream(self) -> None:
        from gpsink.stream import LoadStreamRegistry

        registry = LoadStreamRegistry(_settings())
        try:
            stream = registry.open(ORDERS)
            assert registry.open(ORDERS) is stream
            assert ORDERS in registry
            assert len(registry) == 1
            assert stream.aggregator.name == "public.orders"
            assert stream.server.running
        finally:
            registry.close()

    def test_each_destination_gets_its_own_port(self) -> None:
        from gpsink.stream import LoadStreamRegistry

        registry = LoadStreamRegistry(_settings())
        try:
            orders = registry.open(ORDERS)
            items = registry.open(ITEMS)
            assert orders.server.port != items.server.port

            locations = registry.locations()
            assert set(locations) == {"public.orders", "public.items"}
            assert locations["public.orders"] == (
                f"gpfdist://127.0.0.1:{orders.server.port}/data"
            )
        finally:
            registry.close()

    def test_window_settings_applied(self) -> None:
        from gpsink.stream import LoadStreamRegistry

        registry = LoadStreamRegistry(_settings(window={"flush_count": 2, "flush_time_seconds": 0}))
        try:
            aggregator = registry.open(ORDERS).aggregator
            aggregator.append(b"a\n")
            aggregator.append(b"b\n")
            assert aggregator.queued_count == 1
        finally:
            registry.close()

    def test_exhausted_range(self) -> None:
        from gpsink.contracts import PortRangeExhaustedError
        from gpsink.stream import LoadStreamRegistry

        with socket.create_server(("127.0.0.1", 0)) as occupied:
            port = occupied.getsockname()[1]
            registry = LoadStreamRegistry(_settings(port_range=[port]))
            with pytest.raises(PortRangeExhaustedError, match="public.orders"):
                registry.open(ORDERS)
            assert ORDERS not in registry

    def test_close_stops_streams(self) -> None:
        from gpsink.stream import LoadStreamRegistry

        registry = LoadStreamRegistry(_settings())
        stream = registry.open(ORDERS)
        registry.close()
        registry.close()

        assert len(registry) == 0
        assert stream.aggregator.closed
        assert not stream.server.running
        assert registry.get(ORDERS) is None
