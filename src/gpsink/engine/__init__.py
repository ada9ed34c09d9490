"""Buffering engine: routing, row mapping, buffers and the write cycle."""

from gpsink.engine.buffers import (
    Buffer,
    DirectBuffer,
    ExternalFileBuffer,
    WindowedLoadBuffer,
)
from gpsink.engine.manager import BufferManager
from gpsink.engine.router import RecordRouter
from gpsink.engine.rows import RowMapper
from gpsink.engine.task import SinkTask

__all__ = [
    "Buffer",
    "BufferManager",
    "DirectBuffer",
    "ExternalFileBuffer",
    "RecordRouter",
    "RowMapper",
    "SinkTask",
    "WindowedLoadBuffer",
]
