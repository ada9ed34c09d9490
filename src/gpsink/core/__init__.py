"""Core infrastructure: configuration, logging, clock, connection, catalog."""

from gpsink.core.catalog import TableCatalog
from gpsink.core.clock import DEFAULT_CLOCK, Clock, MockClock, SystemClock
from gpsink.core.config import (
    ConnectionSettings,
    FileSettings,
    RetrySettings,
    SinkSettings,
    StreamSettings,
    WindowSettings,
    load_settings,
    resolve_config,
)
from gpsink.core.connection import CachedConnectionProvider
from gpsink.core.logging import configure_logging, get_logger

__all__ = [
    "DEFAULT_CLOCK",
    "CachedConnectionProvider",
    "Clock",
    "ConnectionSettings",
    "FileSettings",
    "MockClock",
    "RetrySettings",
    "SinkSettings",
    "StreamSettings",
    "SystemClock",
    "TableCatalog",
    "WindowSettings",
    "configure_logging",
    "get_logger",
    "load_settings",
    "resolve_config",
]
