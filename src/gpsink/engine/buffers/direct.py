# src/gpsink/engine/buffers/direct.py
"""Statement-based buffer: batched INSERT, UPSERT, UPDATE and DELETE."""

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from itertools import groupby
from typing import Any

from sqlalchemy import Connection, Table, and_, bindparam, delete, insert, update
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.sql import Executable

from gpsink.contracts.data import DestinationKey, MappedRow
from gpsink.contracts.enums import InsertMode, LoadMode, UpdateMode
from gpsink.contracts.errors import LoadError
from gpsink.core.logging import get_logger
from gpsink.engine.buffers.base import Buffer

logger = get_logger(__name__)

# Prefix for WHERE-clause bind names so they never collide with SET columns
KEY_BIND_PREFIX = "b_"


class _Kind(str, Enum):
    WRITE = "write"
    DELETE = "delete"


@dataclass(frozen=True)
class _Staged:
    kind: _Kind
    key_names: tuple[str, ...]
    key: tuple[Any, ...]
    params: dict[str, Any]

    @property
    def shape(self) -> tuple[_Kind, tuple[str, ...], tuple[str, ...]]:
        return self.kind, tuple(self.params), self.key_names


class DirectBuffer(Buffer):
    """Stages rows as statement parameters and executes them on flush.

    Consecutive rows with the same statement shape (kind and column set)
    are sent as one executemany round trip, so arrival order is preserved
    across shapes.
    """

    load_mode = LoadMode.DIRECT

    def __init__(
        self,
        destination: DestinationKey,
        table: Table,
        created_at: float,
        *,
        connection: Callable[[], Connection],
        insert_mode: InsertMode = InsertMode.INSERT,
        update_mode: UpdateMode = UpdateMode.DEFAULT,
    ) -> None:
        super().__init__(destination, table, created_at)
        self._connection = connection
        self._insert_mode = insert_mode
        self._update_mode = update_mode
        self._staged: list[_Staged] = []
        self._executed = 0
        self._statements: dict[tuple[Any, ...], Executable] = {}

    @property
    def pending_count(self) -> int:
        return len(self._staged) - self._executed

    def add(self, row: MappedRow) -> None:
        key_names = tuple(row.key)
        key = tuple(row.key.values())
        if row.tombstone:
            params = {KEY_BIND_PREFIX + name: value for name, value in row.key.items()}
            self._staged.append(_Staged(_Kind.DELETE, key_names, key, params))
            return

        if self._insert_mode == InsertMode.UPDATE:
            if not row.values:
                logger.debug(
                    "Skipping update without non-key columns",
                    destination=str(self.destination),
                )
                return
            params = {
                **row.values,
                **{KEY_BIND_PREFIX + name: value for name, value in row.key.items()},
            }
        else:
            params = row.columns
        self._staged.append(_Staged(_Kind.WRITE, key_names, key, params))

    def flush(self) -> int:
        pending = self._staged[self._executed :]
        if not pending:
            return 0

        rows = self._deduplicate(pending)
        connection = self._connection()
        applied = 0
        for (kind, columns, key_names), group in groupby(rows, key=lambda s: s.shape):
            params = [staged.params for staged in group]
            statement = self._statement(connection, kind, columns, key_names)
            try:
                result = connection.execute(statement, params)
            except DBAPIError as e:
                raise LoadError(
                    self.destination,
                    str(e.orig),
                    applied=applied,
                    rejected=len(rows) - applied,
                ) from e

            if (
                kind == _Kind.WRITE
                and self._insert_mode == InsertMode.UPDATE
                and connection.dialect.supports_sane_multi_rowcount
                and 0 <= result.rowcount < len(params)
            ):
                applied += result.rowcount
                raise LoadError(
                    self.destination,
                    f"update matched {result.rowcount} of {len(params)} rows",
                    applied=applied,
                    rejected=len(rows) - applied,
                )
            applied += len(params)

        self._executed = len(self._staged)
        logger.debug(
            "Flushed buffer",
            destination=str(self.destination),
            rows=applied,
            deduplicated=len(pending) - len(rows),
        )
        return applied

    def mark(self) -> int:
        return len(self._staged)

    def commit(self) -> None:
        del self._staged[: self._executed]
        self._executed = 0

    def rollback(self, mark: int) -> None:
        del self._staged[mark:]
        self._executed = 0

    def retarget(self, table: Table) -> None:
        super().retarget(table)
        self._statements.clear()

    def close(self) -> None:
        self._statements.clear()
        super().close()

    def _deduplicate(self, rows: list[_Staged]) -> list[_Staged]:
        if self._update_mode == UpdateMode.DEFAULT:
            return rows
        # Rows without key columns cannot collide and are always kept
        unkeyed: list[int] = []
        keep: dict[tuple[Any, ...], int] = {}
        for index, staged in enumerate(rows):
            if not staged.key:
                unkeyed.append(index)
            elif self._update_mode == UpdateMode.LAST_ROW_ONLY or staged.key not in keep:
                keep[staged.key] = index
        return [rows[index] for index in sorted([*keep.values(), *unkeyed])]

    def _statement(
        self,
        connection: Connection,
        kind: _Kind,
        columns: tuple[str, ...],
        key_names: tuple[str, ...],
    ) -> Executable:
        dialect = connection.dialect.name
        cache_key = (kind, columns, key_names, dialect)
        statement = self._statements.get(cache_key)
        if statement is None:
            statement = self._build(dialect, kind, columns, key_names)
            self._statements[cache_key] = statement
        return statement

    def _build(
        self,
        dialect: str,
        kind: _Kind,
        columns: tuple[str, ...],
        key_names: tuple[str, ...],
    ) -> Executable:
        table = self.table

        if kind == _Kind.DELETE or self._insert_mode == InsertMode.UPDATE:
            if not key_names:
                statement = "delete" if kind == _Kind.DELETE else "update"
                raise LoadError(
                    self.destination, f"{statement} requires primary key columns"
                )
            where = and_(
                *(table.c[name] == bindparam(KEY_BIND_PREFIX + name) for name in key_names)
            )
            if kind == _Kind.DELETE:
                return delete(table).where(where)
            # SET columns come from the non-key parameter names at execution
            return update(table).where(where)

        if self._insert_mode == InsertMode.INSERT:
            return insert(table)

        key_columns = list(key_names) or [c.name for c in table.primary_key.columns]
        return self._upsert(dialect, columns, key_columns)

    def _upsert(
        self, dialect: str, columns: tuple[str, ...], key_columns: list[str]
    ) -> Executable:
        if not key_columns:
            raise LoadError(
                self.destination, "upsert requires a primary key on the target table"
            )
        table = self.table
        non_key = [name for name in columns if name not in key_columns]

        if dialect in ("postgresql", "sqlite"):
            dialect_insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
            stmt = dialect_insert(table)
            if not non_key:
                return stmt.on_conflict_do_nothing(index_elements=key_columns)
            return stmt.on_conflict_do_update(
                index_elements=key_columns,
                set_={name: stmt.excluded[name] for name in non_key},
            )

        if dialect in ("mysql", "mariadb"):
            stmt = mysql.insert(table)
            targets = non_key or key_columns
            return stmt.on_duplicate_key_update(
                {name: stmt.inserted[name] for name in targets}
            )

        raise LoadError(self.destination, f"upsert is not supported on dialect '{dialect}'")
