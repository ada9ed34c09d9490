# src/gpsink/engine/task.py
"""SinkTask: the upstream-facing entry point.

Upstream hands batches to put(). A batch whose cycle fails with a retriable
error is redelivered to the manager after retry_backoff_ms, up to
max_retries times in a row. Routing and mapping errors are never retried:
the same batch would fail the same way.
"""

import time
from collections.abc import Callable, Sequence
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from gpsink.contracts.data import SinkRecord
from gpsink.contracts.errors import (
    ConnectionUnavailableError,
    LoadError,
    RetriesExhaustedError,
)
from gpsink.core.clock import DEFAULT_CLOCK, Clock
from gpsink.core.config import SinkSettings
from gpsink.core.logging import get_logger
from gpsink.engine.manager import BufferManager

logger = get_logger(__name__)

RETRIABLE_ERRORS: tuple[type[Exception], ...] = (
    LoadError,
    ConnectionUnavailableError,
    SQLAlchemyError,
)


class SinkTask:
    """Drives a BufferManager with bounded retries.

    Example:
        task = SinkTask(settings)
        task.start()
        task.put(records)
        task.stop()
    """

    def __init__(
        self,
        settings: SinkSettings,
        *,
        manager_factory: Callable[[SinkSettings], BufferManager] | None = None,
        clock: Clock = DEFAULT_CLOCK,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self._settings = settings
        self._clock = clock
        self._manager_factory = manager_factory or (
            lambda s: BufferManager(s, clock=self._clock)
        )
        self._sleep = sleep
        self._manager: BufferManager | None = None
        self._remaining_retries = settings.retry.max_retries
        self.records_written = 0

    @property
    def manager(self) -> BufferManager:
        if self._manager is None:
            raise RuntimeError("SinkTask not started")
        return self._manager

    @property
    def remaining_retries(self) -> int:
        return self._remaining_retries

    def start(self) -> None:
        if self._manager is not None:
            raise RuntimeError("SinkTask already started")
        self._manager = self._manager_factory(self._settings)
        self._remaining_retries = self._settings.retry.max_retries
        logger.info(
            "Sink task started",
            load_mode=self._settings.load_mode.value,
            insert_mode=self._settings.insert_mode.value,
        )

    def put(self, records: Sequence[SinkRecord]) -> int:
        """Write one batch, retrying retriable failures.

        Returns:
            Records routed by the successful cycle

        Raises:
            RetriesExhaustedError: Retriable failures outlasted max_retries
            RoutingError: A record's destination cannot be resolved
            RecordMappingError: A record cannot be mapped
        """
        manager = self.manager
        backoff = self._settings.retry.retry_backoff_ms / 1000
        while True:
            try:
                routed = manager.process_cycle(records)
            except RETRIABLE_ERRORS as e:
                if self._remaining_retries <= 0:
                    raise RetriesExhaustedError(
                        f"Giving up after {self._settings.retry.max_retries} "
                        f"retries: {e}"
                    ) from e
                self._remaining_retries -= 1
                logger.warning(
                    "Cycle failed, retrying",
                    error=str(e),
                    error_type=type(e).__name__,
                    records=len(records),
                    remaining_retries=self._remaining_retries,
                    backoff_seconds=backoff,
                )
                self._sleep(backoff)
                continue

            self._remaining_retries = self._settings.retry.max_retries
            self.records_written += routed
            return routed

    def stop(self) -> None:
        """Flush remaining buffers and release resources. Idempotent."""
        if self._manager is None:
            return
        manager, self._manager = self._manager, None
        manager.close()
        logger.info("Sink task stopped", records_written=self.records_written)
