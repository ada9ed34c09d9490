"""Row encodings understood by external bulk loaders.

Two line formats are supported:

- text: delimiter-separated, backslash escapes, NULL as \\N by default
- csv: RFC 4180 style quoting, NULL as an empty unquoted field by default.
  Empty strings and values equal to the NULL string are always quoted, so
  a loader never reads them back as NULL
"""

import datetime
import json
from collections.abc import Sequence
from typing import Any

from gpsink.contracts.enums import StreamFormat
from gpsink.contracts.errors import RecordMappingError

TEXT_NULL = "\\N"


class RowEncoder:
    """Encodes one row of values as one line of bytes."""

    def __init__(
        self,
        format: StreamFormat = StreamFormat.TEXT,
        *,
        delimiter: str = ",",
        quote: str = '"',
        null_string: str | None = None,
        encoding: str = "utf-8",
        max_line_length: int | None = None,
        line_separator: str = "\n",
    ) -> None:
        self.format = format
        self.delimiter = delimiter
        self.quote = quote
        self.encoding = encoding
        self.line_separator = line_separator
        self._max_line_length = max_line_length
        if null_string is None:
            null_string = TEXT_NULL if format == StreamFormat.TEXT else ""
        self.null_string = null_string

    def encode(self, values: Sequence[Any]) -> bytes:
        """Encode values (in target column order) as one line.

        Raises:
            RecordMappingError: Encoded line exceeds max_line_length
        """
        if self.format == StreamFormat.CSV:
            line = self._encode_csv(values)
        else:
            line = self._encode_text(values)

        data = line.encode(self.encoding)
        if self._max_line_length is not None and len(data) > self._max_line_length:
            raise RecordMappingError(
                f"Encoded row is {len(data)} bytes, longer than "
                f"max_line_length {self._max_line_length}"
            )
        return data

    def _encode_text(self, values: Sequence[Any]) -> str:
        fields = [
            self.null_string if value is None else self._escape(_render(value))
            for value in values
        ]
        return self.delimiter.join(fields) + self.line_separator

    def _escape(self, value: str) -> str:
        value = value.replace("\\", "\\\\")
        value = value.replace(self.delimiter, "\\" + self.delimiter)
        value = value.replace("\n", "\\n").replace("\r", "\\r")
        return value

    def _encode_csv(self, values: Sequence[Any]) -> str:
        fields = [
            self.null_string if value is None else self._quote(_render(value))
            for value in values
        ]
        return self.delimiter.join(fields) + self.line_separator

    def _quote(self, value: str) -> str:
        if (
            value == ""
            or value == self.null_string
            or self.delimiter in value
            or self.quote in value
            or "\n" in value
            or "\r" in value
        ):
            doubled = value.replace(self.quote, self.quote * 2)
            return f"{self.quote}{doubled}{self.quote}"
        return value


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime.datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, datetime.date | datetime.time):
        return value.isoformat()
    if isinstance(value, bytes | bytearray):
        return "\\x" + bytes(value).hex()
    if isinstance(value, dict | list):
        return json.dumps(value, sort_keys=True, separators=(",", ":"))
    return str(value)
