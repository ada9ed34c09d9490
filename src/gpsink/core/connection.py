# src/gpsink/core/connection.py
"""Cached target database connection.

The BufferManager owns exactly one connection at a time. Transactions are
always explicit (Connection.begin()/commit()/rollback()), so handles never
run in autocommit mode.
"""

import time
from collections.abc import Callable
from typing import Any, Self

from sqlalchemy import Connection, create_engine, make_url
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError

from gpsink.contracts.errors import ConnectionUnavailableError
from gpsink.core.logging import get_logger

logger = get_logger(__name__)


class CachedConnectionProvider:
    """Hands out one cached SQLAlchemy connection, reconnecting when needed.

    Connect attempts are bounded by max_attempts with a fixed backoff
    between them. A connection that SQLAlchemy has invalidated (for example
    after a disconnect error) is replaced on the next get_connection().

    Example:
        provider = CachedConnectionProvider("postgresql://u:p@host/db")
        connection = provider.get_connection()
        with connection.begin():
            connection.execute(...)
        provider.close()
    """

    def __init__(
        self,
        url: str,
        *,
        max_attempts: int = 3,
        backoff_ms: int = 10000,
        echo: bool = False,
        engine_factory: Callable[..., Engine] = create_engine,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        """Initialize provider. No connection is opened until first use.

        Args:
            url: SQLAlchemy database URL
            max_attempts: Connect attempts before giving up
            backoff_ms: Delay between failed attempts
            echo: Echo SQL statements
            engine_factory: Engine constructor (injectable for tests)
            sleep: Sleep function (injectable for tests)
        """
        self._url = url
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_ms / 1000
        self._echo = echo
        self._engine_factory = engine_factory
        self._sleep = sleep
        self._engine: Engine | None = None
        self._connection: Connection | None = None

    @property
    def safe_url(self) -> str:
        """URL with the password masked, for logging."""
        return make_url(self._url).render_as_string(hide_password=True)

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = self._engine_factory(self._url, echo=self._echo)
        return self._engine

    def get_connection(self) -> Connection:
        """Return the cached connection, connecting if necessary."""
        connection = self._connection
        if connection is None or connection.closed or connection.invalidated:
            if connection is not None:
                logger.warning("Discarding stale connection", url=self.safe_url)
                connection.close()
            self._connection = self._connect()
        return self._connection

    def _connect(self) -> Connection:
        last_error: DBAPIError | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                connection = self.engine.connect()
            except DBAPIError as e:
                last_error = e
                logger.warning(
                    "Connection attempt failed",
                    url=self.safe_url,
                    attempt=attempt,
                    max_attempts=self._max_attempts,
                    error=str(e.orig),
                )
                if attempt < self._max_attempts:
                    self._sleep(self._backoff_seconds)
                continue
            self._on_connect(connection)
            return connection
        raise ConnectionUnavailableError(
            self._max_attempts, str(last_error.orig if last_error else "unknown")
        ) from last_error

    def _on_connect(self, connection: Connection) -> None:
        logger.info(
            "Connected to target database",
            url=self.safe_url,
            dialect=connection.dialect.name,
        )

    def close(self) -> None:
        """Close the connection and dispose the engine. Idempotent."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.close()
