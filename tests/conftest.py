# tests/conftest.py
"""Shared test fixtures and helpers.

Target databases are SQLite files under tmp_path, so every test gets a
fresh schema and real transactions.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/stream/
"""

import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings
from sqlalchemy import BigInteger, Column, MetaData, Table, Text, create_engine, select
from sqlalchemy.engine import Engine

# =============================================================================
# Hypothesis Configuration
# =============================================================================

settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Target database helpers
# =============================================================================


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """URL of an empty SQLite target database."""
    return f"sqlite:///{tmp_path / 'target.db'}"


@pytest.fixture
def db_engine(db_url: str) -> Iterator[Engine]:
    """Engine for inspecting the target database independently of the sink."""
    engine = create_engine(db_url)
    yield engine
    engine.dispose()


@pytest.fixture
def make_table(db_engine: Engine) -> Callable[..., Table]:
    """Factory creating (id, name, qty) tables; id is the primary key when key=True."""

    def create(name: str, *, key: bool = True, schema: str | None = None) -> Table:
        table = Table(
            name,
            MetaData(),
            Column("id", BigInteger, primary_key=key, autoincrement=False),
            Column("name", Text),
            Column("qty", BigInteger),
            schema=schema,
        )
        table.create(db_engine)
        return table

    return create


@pytest.fixture
def fetch_rows(db_engine: Engine) -> Callable[[str], list[tuple[Any, ...]]]:
    """Reader returning all rows of a table ordered by its first column."""

    def fetch(name: str) -> list[tuple[Any, ...]]:
        table = Table(name, MetaData(), autoload_with=db_engine)
        first = next(iter(table.c))
        with db_engine.connect() as connection:
            return [tuple(row) for row in connection.execute(select(table).order_by(first))]

    return fetch


@pytest.fixture
def sink_settings(db_url: str) -> Callable[..., Any]:
    """Factory for SinkSettings against the SQLite target."""
    from gpsink.core.config import SinkSettings

    def build(**overrides: Any) -> SinkSettings:
        return SinkSettings(connection={"url": db_url, "backoff_ms": 0}, **overrides)

    return build
