"""Per-destination buffer variants, one per load mode."""

from gpsink.engine.buffers.base import Buffer
from gpsink.engine.buffers.direct import DirectBuffer
from gpsink.engine.buffers.external_file import ExternalFileBuffer
from gpsink.engine.buffers.windowed import WindowedLoadBuffer

__all__ = [
    "Buffer",
    "DirectBuffer",
    "ExternalFileBuffer",
    "WindowedLoadBuffer",
]
