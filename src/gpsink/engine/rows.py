"""Record to row mapping: key extraction and field selection."""

from collections.abc import Mapping, Sequence
from typing import Any

from gpsink.contracts.data import MappedRow, SinkRecord
from gpsink.contracts.enums import PrimaryKeyMode
from gpsink.contracts.errors import RecordMappingError

DEFAULT_KAFKA_PK_NAMES = ("__connect_topic", "__connect_partition", "__connect_offset")
DEFAULT_RECORD_KEY_NAME = "__record_key"


class RowMapper:
    """Maps SinkRecords to MappedRows.

    Key columns never appear in MappedRow.values. The whitelist (when
    non-empty) restricts value columns only; key columns are always kept.
    """

    def __init__(
        self,
        pk_mode: PrimaryKeyMode = PrimaryKeyMode.NONE,
        pk_fields: Sequence[str] = (),
        fields_whitelist: Sequence[str] = (),
        *,
        delete_enabled: bool = False,
    ) -> None:
        self._pk_mode = pk_mode
        self._pk_fields = list(pk_fields)
        self._whitelist = set(fields_whitelist)
        self._delete_enabled = delete_enabled

    def map(self, record: SinkRecord) -> MappedRow | None:
        """Map a record, or return None for a tombstone that is ignored.

        Raises:
            RecordMappingError: Key fields are missing or of the wrong shape
        """
        if record.value is None:
            if not self._delete_enabled:
                return None
            return MappedRow(key=self._key(record, {}), tombstone=True)

        if not isinstance(record.value, Mapping):
            raise RecordMappingError(
                f"Record value from topic '{record.topic}' at offset {record.offset} "
                f"is {type(record.value).__name__}, expected a mapping"
            )

        key = self._key(record, record.value)
        values = {
            name: value
            for name, value in record.value.items()
            if name not in key and (not self._whitelist or name in self._whitelist)
        }
        return MappedRow(key=key, values=values)

    def _key(self, record: SinkRecord, value: Mapping[str, Any]) -> dict[str, Any]:
        if self._pk_mode == PrimaryKeyMode.NONE:
            return {}

        if self._pk_mode == PrimaryKeyMode.KAFKA:
            names = self._pk_fields or list(DEFAULT_KAFKA_PK_NAMES)
            return dict(zip(names, (record.topic, record.partition, record.offset), strict=True))

        if self._pk_mode == PrimaryKeyMode.RECORD_KEY:
            return self._record_key(record)

        # RECORD_VALUE
        missing = [name for name in self._pk_fields if name not in value]
        if missing:
            raise RecordMappingError(
                f"Record value from topic '{record.topic}' at offset {record.offset} "
                f"lacks primary key fields {missing}"
            )
        return {name: value[name] for name in self._pk_fields}

    def _record_key(self, record: SinkRecord) -> dict[str, Any]:
        if record.key is None:
            raise RecordMappingError(
                f"Record from topic '{record.topic}' at offset {record.offset} "
                "has no key but pk_mode is 'record_key'"
            )
        if isinstance(record.key, Mapping):
            names = self._pk_fields or list(record.key)
            missing = [name for name in names if name not in record.key]
            if missing:
                raise RecordMappingError(
                    f"Record key from topic '{record.topic}' lacks fields {missing}"
                )
            return {name: record.key[name] for name in names}

        if len(self._pk_fields) > 1:
            raise RecordMappingError(
                f"Primitive record key cannot fill {len(self._pk_fields)} pk_fields"
            )
        name = self._pk_fields[0] if self._pk_fields else DEFAULT_RECORD_KEY_NAME
        return {name: record.key}
