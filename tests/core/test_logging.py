# tests/core/test_logging.py
"""Tests for structured logging configuration."""

import json
import logging

import pytest


class TestConfigureLogging:
    """structlog setup."""

    def test_json_output(self, caplog: pytest.LogCaptureFixture) -> None:
        from gpsink.core.logging import configure_logging, get_logger

        configure_logging("INFO", json_output=True)
        with caplog.at_level(logging.INFO):
            get_logger("gpsink.test").info("Buffer swept", destination="public.orders")

        event = json.loads(caplog.records[-1].getMessage())
        assert event["event"] == "Buffer swept"
        assert event["destination"] == "public.orders"
        assert event["level"] == "info"

    def test_level_filters_events(self, caplog: pytest.LogCaptureFixture) -> None:
        from gpsink.core.logging import configure_logging, get_logger

        configure_logging("WARNING", json_output=True)
        with caplog.at_level(logging.DEBUG):
            get_logger("gpsink.test").info("dropped")
        assert not [r for r in caplog.records if "dropped" in r.getMessage()]

    def test_unknown_level_rejected(self) -> None:
        from gpsink.core.logging import configure_logging

        with pytest.raises(ValueError, match="Unknown log level"):
            configure_logging("CHATTY")
