# src/gpsink/core/catalog.py
"""Destination table discovery, auto-create and auto-evolve.

The catalog is consulted before rows are buffered so that buffers always
hold a Table whose columns cover the rows they receive. Every failure to
produce such a table surfaces as RoutingError.
"""

import datetime
import decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Connection,
    Date,
    DateTime,
    Float,
    LargeBinary,
    MetaData,
    Numeric,
    Table,
    Text,
    inspect,
    text,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeEngine

from gpsink.contracts.data import DestinationKey, MappedRow
from gpsink.contracts.errors import RoutingError
from gpsink.core.logging import get_logger

logger = get_logger(__name__)


def infer_column_type(value: Any) -> TypeEngine[Any]:
    """Pick a generic SQL type for a sample value.

    bool is checked before int because bool is an int subclass.
    """
    if isinstance(value, bool):
        return Boolean()
    if isinstance(value, int):
        return BigInteger()
    if isinstance(value, float):
        return Float()
    if isinstance(value, decimal.Decimal):
        return Numeric()
    if isinstance(value, datetime.datetime):
        return DateTime()
    if isinstance(value, datetime.date):
        return Date()
    if isinstance(value, bytes | bytearray):
        return LargeBinary()
    return Text()


class TableCatalog:
    """Resolves destination tables against the live schema.

    Tables are reflected once and cached per destination. A cached table is
    reused as long as it covers the row's columns; otherwise the table is
    evolved (when allowed) and reflected again.
    """

    def __init__(self, *, auto_create: bool = False, auto_evolve: bool = False) -> None:
        self._auto_create = auto_create
        self._auto_evolve = auto_evolve
        self._tables: dict[DestinationKey, Table] = {}

    def resolve(
        self,
        connection: Connection,
        destination: DestinationKey,
        row: MappedRow,
        *,
        topic: str = "",
    ) -> Table:
        """Return a table covering every column of row.

        Args:
            connection: Connection inside the current cycle's transaction
            destination: Target table identity
            row: Sample row (drives auto-create and auto-evolve)
            topic: Originating topic, for error messages

        Raises:
            RoutingError: Table or columns missing and not allowed to be
                created, or DDL/reflection failed
        """
        table = self._tables.get(destination)
        if table is not None and set(row.columns) <= set(table.c.keys()):
            return table

        try:
            inspector = inspect(connection)
            if not inspector.has_table(destination.table, schema=destination.schema):
                if not self._auto_create:
                    raise RoutingError(
                        topic,
                        f"table {destination} does not exist and auto_create is disabled",
                    )
                self._create(connection, destination, row)
            table = self._reflect(connection, destination)

            missing = [name for name in row.columns if name not in table.c]
            if missing:
                if not self._auto_evolve:
                    raise RoutingError(
                        topic,
                        f"table {destination} is missing columns {missing} "
                        "and auto_evolve is disabled",
                    )
                self._evolve(connection, table, row, missing)
                table = self._reflect(connection, destination)
        except SQLAlchemyError as e:
            raise RoutingError(topic, f"schema resolution for {destination} failed: {e}") from e

        self._tables[destination] = table
        return table

    def invalidate(self, destination: DestinationKey | None = None) -> None:
        """Forget cached tables so the next resolve reflects them again.

        Without a destination the whole cache is dropped, which is what a
        rolled back cycle needs: DDL may have been undone with it.
        """
        if destination is None:
            self._tables.clear()
        else:
            self._tables.pop(destination, None)

    def _reflect(self, connection: Connection, destination: DestinationKey) -> Table:
        return Table(
            destination.table,
            MetaData(),
            schema=destination.schema,
            autoload_with=connection,
        )

    def _create(
        self, connection: Connection, destination: DestinationKey, row: MappedRow
    ) -> None:
        columns = [
            Column(
                name,
                infer_column_type(value),
                primary_key=name in row.key,
                nullable=name not in row.key,
            )
            for name, value in row.columns.items()
        ]
        table = Table(destination.table, MetaData(), *columns, schema=destination.schema)
        table.create(connection)
        logger.info(
            "Created destination table",
            destination=str(destination),
            columns=[c.name for c in columns],
        )

    def _evolve(
        self,
        connection: Connection,
        table: Table,
        row: MappedRow,
        missing: list[str],
    ) -> None:
        dialect = connection.dialect
        preparer = dialect.identifier_preparer
        qualified = preparer.format_table(table)
        for name in missing:
            column_type = infer_column_type(row.columns[name]).compile(dialect=dialect)
            connection.execute(
                text(
                    f"ALTER TABLE {qualified} ADD COLUMN "
                    f"{preparer.quote(name)} {column_type}"
                )
            )
        logger.info(
            "Evolved destination table",
            table=qualified,
            added_columns=missing,
        )
