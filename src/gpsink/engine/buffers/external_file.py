# src/gpsink/engine/buffers/external_file.py
"""Buffer producing input files for an external bulk loader.

Each flush writes one delimited data file and one YAML control file next to
it in the staging directory:

    <schema.table>-<id>.dat   encoded rows, optionally with a csv header
    <schema.table>-<id>.yml   loader job: input format, target table, mode

Files written during a cycle that rolls back are deleted again.
"""

import uuid
from pathlib import Path
from typing import Any

import yaml
from sqlalchemy import Table, make_url

from gpsink.contracts.data import DestinationKey, MappedRow
from gpsink.contracts.enums import InsertMode, LoadMode, StreamFormat
from gpsink.core.config import FileSettings
from gpsink.core.logging import get_logger
from gpsink.engine.buffers.base import Buffer
from gpsink.stream.encoding import RowEncoder

logger = get_logger(__name__)

CONTROL_FILE_VERSION = "1.0.0.1"

_OUTPUT_MODES = {
    InsertMode.INSERT: "insert",
    InsertMode.UPDATE: "update",
    InsertMode.UPSERT: "merge",
}


class ExternalFileBuffer(Buffer):
    """Accumulates encoded lines and writes them out as a loader job."""

    load_mode = LoadMode.EXTERNAL_FILE

    def __init__(
        self,
        destination: DestinationKey,
        table: Table,
        created_at: float,
        *,
        encoder: RowEncoder,
        settings: FileSettings,
        insert_mode: InsertMode = InsertMode.INSERT,
        connection_url: str | None = None,
    ) -> None:
        super().__init__(destination, table, created_at)
        self._encoder = encoder
        self._settings = settings
        self._insert_mode = insert_mode
        self._connection_url = connection_url
        self._lines: list[bytes] = []
        self._written = 0
        self._cycle_files: list[Path] = []
        self.files: list[Path] = []

    @property
    def pending_count(self) -> int:
        return len(self._lines) - self._written

    def add(self, row: MappedRow) -> None:
        if row.tombstone:
            logger.warning(
                "Skipping tombstone: deletes are not supported by file loads",
                destination=str(self.destination),
            )
            return
        columns = row.columns
        self._lines.append(
            self._encoder.encode([columns.get(name) for name in self.table.c.keys()])
        )

    def flush(self) -> int:
        lines = self._lines[self._written :]
        if not lines:
            return 0

        staging = self._settings.staging_dir
        staging.mkdir(parents=True, exist_ok=True)
        stem = f"{self.destination}-{uuid.uuid4().hex}"
        data_path = staging / f"{stem}.dat"
        control_path = staging / f"{stem}.yml"

        with data_path.open("wb") as f:
            if self._writes_header:
                f.write(self._encoder.encode(list(self.table.c.keys())))
            f.writelines(lines)
        self._cycle_files.append(data_path)

        with control_path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(self.control_document(data_path), f, sort_keys=False)
        self._cycle_files.append(control_path)

        self._written = len(self._lines)
        logger.info(
            "Wrote load job",
            destination=str(self.destination),
            rows=len(lines),
            data_file=str(data_path),
            control_file=str(control_path),
        )
        return len(lines)

    @property
    def _writes_header(self) -> bool:
        return self._encoder.format == StreamFormat.CSV and self._settings.csv_header

    def control_document(self, data_path: Path) -> dict[str, Any]:
        """Build the loader control document for one data file."""
        table = self.table
        key_columns = [c.name for c in table.primary_key.columns]

        source: list[dict[str, Any]] = [
            {"SOURCE": {"FILE": [str(data_path.resolve())]}},
            {"COLUMNS": [{c.name: str(c.type)} for c in table.columns]},
            {"FORMAT": self._encoder.format.value},
            {"DELIMITER": self._encoder.delimiter},
            {"NULL_AS": self._encoder.null_string},
            {"ENCODING": self._encoder.encoding},
        ]
        if self._encoder.format == StreamFormat.CSV:
            source.append({"QUOTE": self._encoder.quote})
            source.append({"HEADER": self._settings.csv_header})
        if self._settings.error_limit:
            source.append({"ERROR_LIMIT": self._settings.error_limit})
            source.append({"LOG_ERRORS": self._settings.log_errors})

        output: list[dict[str, Any]] = [
            {"TABLE": str(self.destination)},
            {"MODE": _OUTPUT_MODES[self._insert_mode]},
        ]
        if self._insert_mode != InsertMode.INSERT:
            output.append({"MATCH_COLUMNS": key_columns})
            output.append(
                {"UPDATE_COLUMNS": [c.name for c in table.columns if c.name not in key_columns]}
            )

        document: dict[str, Any] = {"VERSION": CONTROL_FILE_VERSION}
        document.update(self._target())
        document["GPLOAD"] = {"INPUT": source, "OUTPUT": output}
        return document

    def _target(self) -> dict[str, Any]:
        # Credentials stay out of control files
        if self._connection_url is None:
            return {}
        url = make_url(self._connection_url)
        target = {
            "DATABASE": url.database,
            "USER": url.username,
            "HOST": url.host,
            "PORT": url.port,
        }
        return {k: v for k, v in target.items() if v is not None}

    def mark(self) -> int:
        return len(self._lines)

    def commit(self) -> None:
        self.files.extend(self._cycle_files)
        self._cycle_files.clear()
        del self._lines[: self._written]
        self._written = 0

    def rollback(self, mark: int) -> None:
        for path in self._cycle_files:
            path.unlink(missing_ok=True)
        if self._cycle_files:
            logger.info(
                "Discarded load job files",
                destination=str(self.destination),
                files=len(self._cycle_files),
            )
        self._cycle_files.clear()
        del self._lines[mark:]
        self._written = 0
