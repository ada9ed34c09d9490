# src/gpsink/core/config.py
"""
Configuration schema and loading for gpsink.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from gpsink.contracts.enums import (
    InsertMode,
    LoadMode,
    PrimaryKeyMode,
    StreamFormat,
    UpdateMode,
)

TOPIC_PLACEHOLDER = "${topic}"


class ConnectionSettings(BaseModel):
    """Target database connection configuration."""

    model_config = {"frozen": True}

    url: str = Field(description="SQLAlchemy database URL")
    attempts: int = Field(
        default=3, gt=0, description="Maximum attempts to establish a connection"
    )
    backoff_ms: int = Field(
        default=10000, ge=0, description="Delay between connection attempts"
    )
    echo: bool = Field(default=False, description="Echo SQL statements")


class RetrySettings(BaseModel):
    """Retry behavior for failed write cycles."""

    model_config = {"frozen": True}

    max_retries: int = Field(
        default=10, ge=0, description="Retries of a failed cycle before giving up"
    )
    retry_backoff_ms: int = Field(
        default=3000, ge=0, description="Delay before retrying a failed cycle"
    )


class WindowSettings(BaseModel):
    """Aggregation cadence and per-connection caps for windowed loads.

    A window closes when EITHER flush_count events have accumulated OR
    flush_time_seconds have elapsed since it opened (first one wins).

    Example YAML:
        window:
          flush_count: 100
          flush_time_seconds: 2
          batch_timeout_seconds: 4
          batch_count: 100
    """

    model_config = {"frozen": True}

    flush_count: int = Field(
        default=100, gt=0, description="Events per window before it closes"
    )
    flush_time_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Seconds before an open window closes (0 disables)",
    )
    batch_timeout_seconds: float = Field(
        default=4.0,
        gt=0,
        description="Idle seconds a pull session waits for the next chunk",
    )
    batch_count: int = Field(
        default=100, ge=1, description="Maximum chunks served per pull session"
    )
    queue_capacity: int = Field(
        default=8192, gt=0, description="Closed windows held before producers block"
    )
    allow_concurrent_readers: bool = Field(
        default=False,
        description="Let concurrent sessions compete for chunks of one stream",
    )


class StreamSettings(BaseModel):
    """Protocol server and row encoding configuration for windowed loads."""

    model_config = {"frozen": True}

    host: str | None = Field(
        default=None,
        description="Host advertised to the external loader (default: local address)",
    )
    bind_host: str = Field(default="0.0.0.0", description="Interface to listen on")
    port_range: list[int] = Field(
        default_factory=lambda: [8000, 9000],
        description="Single port or inclusive [low, high] range (0 = ephemeral)",
    )
    path: str = Field(default="/data", description="Pull endpoint path")
    format: StreamFormat = Field(default=StreamFormat.TEXT)
    delimiter: str = Field(default=",", min_length=1, max_length=1)
    quote: str = Field(default='"', min_length=1, max_length=1)
    null_string: str | None = Field(
        default=None, description="Encoding of NULL (format default when unset)"
    )
    encoding: str = Field(default="utf-8")
    max_line_length: int = Field(
        default=65535, gt=0, description="Longest encoded row accepted"
    )
    window: WindowSettings = Field(default_factory=WindowSettings)

    @field_validator("port_range")
    @classmethod
    def validate_port_range(cls, v: list[int]) -> list[int]:
        """One port, or an ascending pair of ports."""
        if len(v) not in (1, 2):
            raise ValueError("port_range must hold one port or a [low, high] pair")
        if any(port < 0 or port > 65535 for port in v):
            raise ValueError(f"port_range values must be within 0-65535, got {v}")
        if len(v) == 2 and v[0] > v[1]:
            raise ValueError(f"port_range low bound exceeds high bound: {v}")
        return v

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"path must start with '/', got '{v}'")
        return v

    def ports(self) -> range:
        """Candidate ports in allocation order."""
        low = self.port_range[0]
        high = self.port_range[-1]
        return range(low, high + 1)


class FileSettings(BaseModel):
    """Staging configuration for the external_file load mode."""

    model_config = {"frozen": True}

    staging_dir: Path = Field(
        default=Path(".gpsink/staging"),
        description="Directory receiving data and control files",
    )
    csv_header: bool = Field(
        default=True, description="Write a header line into csv data files"
    )
    error_limit: int = Field(
        default=0,
        ge=0,
        description="Rejected rows the bulk loader tolerates (0 = fail on first)",
    )
    log_errors: bool = Field(
        default=True, description="Ask the bulk loader to log rejected rows"
    )


class SinkSettings(BaseModel):
    """Top-level gpsink configuration.

    This is the single source of truth for a sink instance.
    All settings are validated and frozen after construction.
    """

    model_config = {"frozen": True}

    connection: ConnectionSettings = Field(description="Target database")

    load_mode: LoadMode = Field(default=LoadMode.DIRECT)
    insert_mode: InsertMode = Field(default=InsertMode.INSERT)
    update_mode: UpdateMode = Field(default=UpdateMode.DEFAULT)
    pk_mode: PrimaryKeyMode = Field(default=PrimaryKeyMode.NONE)
    pk_fields: list[str] = Field(default_factory=list)
    fields_whitelist: list[str] = Field(default_factory=list)
    delete_enabled: bool = Field(default=False)

    table_name_format: str = Field(
        default=TOPIC_PLACEHOLDER,
        description="Destination table name; ${topic} is replaced by the topic",
    )
    db_schema: str | None = Field(
        default=None, description="Schema for table names without one"
    )
    batch_size: int = Field(
        default=3000, gt=0, description="Pending rows that force an early flush"
    )
    max_batch_wait_ms: int = Field(
        default=60000,
        ge=0,
        description="Age after which a buffer is flushed by the sweep",
    )
    auto_create: bool = Field(default=False)
    auto_evolve: bool = Field(default=False)

    retry: RetrySettings = Field(default_factory=RetrySettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    files: FileSettings = Field(default_factory=FileSettings)

    @field_validator("table_name_format")
    @classmethod
    def validate_table_name_format(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("table_name_format cannot be empty")
        return v.strip()

    @model_validator(mode="after")
    def validate_delete_support(self) -> "SinkSettings":
        """Deletes need the record key and a statement-capable load mode."""
        if not self.delete_enabled:
            return self
        if self.pk_mode != PrimaryKeyMode.RECORD_KEY:
            raise ValueError(
                "pk_mode must be 'record_key' when delete_enabled is true"
            )
        if self.load_mode != LoadMode.DIRECT:
            raise ValueError("delete_enabled is only supported with load_mode 'direct'")
        return self

    @model_validator(mode="after")
    def validate_key_requirements(self) -> "SinkSettings":
        """Upsert/update need key columns; record_value keys need field names."""
        if (
            self.insert_mode in (InsertMode.UPSERT, InsertMode.UPDATE)
            and self.pk_mode == PrimaryKeyMode.NONE
        ):
            raise ValueError(
                f"insert_mode '{self.insert_mode.value}' requires a pk_mode other than 'none'"
            )
        if self.pk_mode == PrimaryKeyMode.RECORD_VALUE and not self.pk_fields:
            raise ValueError("pk_mode 'record_value' requires pk_fields")
        if self.pk_mode == PrimaryKeyMode.KAFKA and self.pk_fields and len(self.pk_fields) != 3:
            raise ValueError(
                "pk_mode 'kafka' takes exactly three pk_fields "
                "(topic, partition, offset column names)"
            )
        return self


def load_settings(config_path: Path) -> SinkSettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (GPSINK_*) - highest priority
    2. Config file (settings.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: GPSINK_CONNECTION__URL for nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated SinkSettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="GPSINK",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase keys; Pydantic fields are lowercase
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {
        k.lower(): _lower_keys(v)
        for k, v in dynaconf_settings.as_dict().items()
        if k not in internal_keys
    }
    return SinkSettings(**raw_config)


def _lower_keys(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    return value


def resolve_config(settings: SinkSettings) -> dict[str, Any]:
    """Convert validated settings to a JSON-compatible dict.

    Includes all settings (explicit + defaults).
    """
    return settings.model_dump(mode="json")
