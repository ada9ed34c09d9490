# src/gpsink/cli.py
"""gpsink Command Line Interface.

Entry point for the gpsink CLI tool.
"""

import json
import time
from collections.abc import Iterator
from pathlib import Path

import typer
import yaml
from pydantic import ValidationError

from gpsink import __version__
from gpsink.contracts.data import SinkRecord
from gpsink.contracts.enums import LoadMode
from gpsink.contracts.errors import SinkError
from gpsink.core.config import SinkSettings, load_settings, resolve_config
from gpsink.core.logging import configure_logging
from gpsink.engine.task import SinkTask

app = typer.Typer(
    name="gpsink",
    help="gpsink: buffered change-record delivery into analytical databases.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"gpsink version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    log_level: str = typer.Option(
        "WARNING",
        "--log-level",
        "-l",
        help="Log level (DEBUG, INFO, WARNING, ERROR).",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Emit logs as JSON lines.",
    ),
) -> None:
    """gpsink: buffered change-record delivery into analytical databases."""
    configure_logging(log_level, json_output=json_logs)


def _load_or_exit(settings: str) -> SinkSettings:
    try:
        return load_settings(Path(settings))
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


@app.command()
def validate(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """Validate sink configuration without connecting."""
    config = _load_or_exit(settings)

    typer.echo(f"Configuration valid: {Path(settings).name}")
    typer.echo(f"  Load mode: {config.load_mode.value}")
    typer.echo(f"  Insert mode: {config.insert_mode.value}")
    typer.echo(f"  Primary key: {config.pk_mode.value}")
    typer.echo(f"  Table name format: {config.table_name_format}")
    if config.load_mode == LoadMode.WINDOWED:
        window = config.stream.window
        typer.echo(
            f"  Window: {window.flush_count} events / {window.flush_time_seconds}s"
        )


@app.command("config")
def show_config(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
) -> None:
    """Print the resolved configuration (explicit values plus defaults) as YAML."""
    config = _load_or_exit(settings)
    resolved = resolve_config(config)
    resolved["connection"]["url"] = _mask_url(config.connection.url)
    typer.echo(yaml.safe_dump(resolved, sort_keys=False), nl=False)


def _mask_url(url: str) -> str:
    from sqlalchemy import make_url

    return make_url(url).render_as_string(hide_password=True)


def _read_records(path: Path) -> Iterator[SinkRecord]:
    """Yield records from a JSON lines file.

    Each line is an object with "topic" and "value" (null for a tombstone)
    and optional "key", "partition" and "offset". The line index is the
    default offset.
    """
    with path.open(encoding="utf-8") as f:
        for index, line in enumerate(f):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
                yield SinkRecord(
                    topic=data["topic"],
                    value=data.get("value"),
                    key=data.get("key"),
                    partition=data.get("partition", 0),
                    offset=data.get("offset", index),
                )
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                raise ValueError(f"{path}:{index + 1}: invalid record: {e}") from e


@app.command()
def run(
    settings: str = typer.Option(
        ...,
        "--settings",
        "-s",
        help="Path to settings YAML file.",
    ),
    input_path: str = typer.Option(
        ...,
        "--input",
        "-i",
        help="JSON lines file of change records to replay.",
    ),
    cycle_size: int = typer.Option(
        500,
        "--cycle-size",
        "-c",
        min=1,
        help="Records per write cycle.",
    ),
    linger: float = typer.Option(
        0.0,
        "--linger",
        min=0.0,
        help="Seconds to keep load streams serving after the input is replayed.",
    ),
) -> None:
    """Replay change records from a file through the sink."""
    config = _load_or_exit(settings)
    records_path = Path(input_path)
    if not records_path.exists():
        typer.echo(f"Error: Input file not found: {input_path}", err=True)
        raise typer.Exit(1)

    task = SinkTask(config)
    task.start()
    cycles = 0
    try:
        batch: list[SinkRecord] = []
        for record in _read_records(records_path):
            batch.append(record)
            if len(batch) >= cycle_size:
                task.put(batch)
                cycles += 1
                batch = []
        if batch:
            task.put(batch)
            cycles += 1

        locations = task.manager.stream_locations()
        for destination, location in locations.items():
            typer.echo(f"  {destination}: {location}")
        if locations and linger:
            typer.echo(f"Serving load streams for {linger}s...")
            time.sleep(linger)
    except (SinkError, ValueError) as e:
        typer.echo(f"Error during replay: {e}", err=True)
        raise typer.Exit(1) from None
    finally:
        task.stop()

    typer.echo(f"Replay completed: {task.records_written} records in {cycles} cycles")


if __name__ == "__main__":
    app()
