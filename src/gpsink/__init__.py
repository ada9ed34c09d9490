"""gpsink: buffered change-record sink for analytical databases."""

__version__ = "0.3.0"
