"""Application configuration."""

import uuid
from collections.abc import Mapping
from typing import Any

import pyarrow as pa
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from stagepipe.errors import ConfigError
from stagepipe.models.schemas import ExternalTableMode, SaveMode, TableName


def parse_column_list(value: str | list[str] | tuple[str, ...] | None) -> tuple[str, ...] | None:
    """Parse a comma separated column list such as ``"a, b,c"``.

    Returns None for a missing or blank list.
    """
    if value is None:
        return None
    items = value.split(",") if isinstance(value, str) else list(value)
    columns = tuple(item.strip() for item in items)
    if not any(columns):
        return None
    if any(not column for column in columns):
        raise ValueError(f"Column list contains an empty column name: {value!r}")
    return columns


def parse_file_permissions(value: str | int) -> int:
    """Parse an octal permission mask such as ``"750"`` or ``"0o750"``."""
    if isinstance(value, int):
        mask = value
    else:
        text = value.strip().lower().removeprefix("0o")
        if not text or any(ch not in "01234567" for ch in text):
            raise ValueError(f"File permissions must be an octal mask, got {value!r}")
        mask = int(text, 8)
    if not 0 <= mask <= 0o777:
        raise ValueError(f"File permissions out of range: {oct(mask)}")
    return mask


def _parse_bool(value: str | bool | None, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return value.strip().lower() in ("true", "1", "yes", "on")


class Settings(BaseSettings):
    """Defaults for every job, overridable from the environment."""

    model_config = SettingsConfigDict(env_prefix="STAGEPIPE_", env_file=".env", extra="ignore")

    # Target database
    database: str = "data/stagepipe.duckdb"
    user: str = "stagepipe"
    memory_limit_mb: int | None = None
    threads: int | None = None

    # Staging store
    staging_address: str = "data/staging"
    prevent_cleanup: bool = False
    file_permissions: str = "700"

    # S3 settings for remote staging
    s3_region: str = "us-east-1"
    s3_endpoint: str | None = None

    # Write defaults
    strlen: int = 1024
    failed_rows_percent_tolerance: float = 0.0

    # Read defaults
    row_group_size: int = 122_880  # rows, DuckDB's default row group size
    max_file_size_bytes: int | None = None

    # Logging
    log_level: str = "INFO"
    log_json: bool = True


settings = Settings()


class DatabaseConfig(BaseModel):
    """How to reach the target DuckDB database."""

    model_config = ConfigDict(frozen=True)

    database: str = Field(..., min_length=1, description="Database file path or ':memory:'")
    user: str = Field("stagepipe", description="User recorded in the job status table")
    read_only: bool = False
    memory_limit_mb: int | None = Field(None, gt=0)
    threads: int | None = Field(None, gt=0)


class StagingConfig(BaseModel):
    """Location of the staging store and credentials for remote stores."""

    model_config = ConfigDict(frozen=True)

    address: str = Field(..., min_length=1, description="Directory path or s3:// URI")
    prevent_cleanup: bool = False
    s3_region: str = "us-east-1"
    s3_endpoint: str | None = None
    s3_access_key_id: str | None = None
    s3_secret_access_key: SecretStr | None = None
    s3_session_token: SecretStr | None = None

    @field_validator("address")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/") or value

    @property
    def is_s3(self) -> bool:
        return self.address.startswith("s3://")


class WriteConfig(BaseModel):
    """Configuration of one write job. Immutable once the pipe is built."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    database: DatabaseConfig
    staging: StagingConfig
    table: TableName
    column_schema: pa.Schema = Field(default_factory=lambda: pa.schema([]))
    strlen: int = Field(1024, gt=0, description="Default length for string columns")
    target_table_sql: str | None = None
    copy_column_list: tuple[str, ...] | None = None
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1)
    failed_rows_percent_tolerance: float = Field(0.0, ge=0.0, le=1.0)
    file_permissions: int = 0o700
    create_external_table: ExternalTableMode | None = None
    merge_key: tuple[str, ...] | None = None
    save_job_status_table: bool = False
    save_mode: SaveMode = SaveMode.APPEND

    @field_validator("copy_column_list", "merge_key", mode="before")
    @classmethod
    def _parse_columns(cls, value: Any) -> tuple[str, ...] | None:
        return parse_column_list(value)

    @field_validator("file_permissions", mode="before")
    @classmethod
    def _parse_permissions(cls, value: Any) -> int:
        return parse_file_permissions(value)

    @model_validator(mode="after")
    def _check_modes(self) -> "WriteConfig":
        if self.merge_key and self.create_external_table is not None:
            raise ValueError("merge_key cannot be combined with create_external_table")
        return self

    @property
    def temp_table_name(self) -> TableName:
        """Session scoped merge table, always in the temp catalog."""
        return self.table.with_suffix(f"_{self.session_id}", keep_namespace=False)

    @property
    def reject_table_name(self) -> TableName:
        return self.table.with_suffix(f"_{self.session_id}_COMMITS")

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, str],
        schema: pa.Schema | None = None,
        defaults: Settings | None = None,
    ) -> "WriteConfig":
        """Build a write configuration from a flat string option map.

        Raises:
            ConfigError: if any option is missing or invalid
        """
        defaults = defaults or settings
        try:
            external = options.get("create_external_table")
            if external is not None and external.strip().lower() in ("true", "new-data", "new_data"):
                external_mode: ExternalTableMode | None = ExternalTableMode.NEW_DATA
            elif external is not None and external.strip().lower() in ("existing-data", "existing_data"):
                external_mode = ExternalTableMode.EXISTING_DATA
            elif external is None or external.strip().lower() in ("", "false"):
                external_mode = None
            else:
                raise ValueError(f"Unknown create_external_table value: {external!r}")

            values: dict[str, Any] = {
                "database": _database_from_options(options, defaults),
                "staging": _staging_from_options(options, defaults),
                "table": TableName(name=options["table"], namespace=options.get("db_schema")),
                "column_schema": schema if schema is not None else pa.schema([]),
                "strlen": int(options.get("strlen", defaults.strlen)),
                "target_table_sql": options.get("target_table_sql") or None,
                "copy_column_list": options.get("copy_column_list"),
                "failed_rows_percent_tolerance": float(
                    options.get(
                        "failed_rows_percent_tolerance", defaults.failed_rows_percent_tolerance
                    )
                ),
                "file_permissions": options.get("file_permissions", defaults.file_permissions),
                "create_external_table": external_mode,
                "merge_key": options.get("merge_key"),
                "save_job_status_table": _parse_bool(options.get("save_job_status_table")),
                "save_mode": SaveMode(options.get("mode", SaveMode.APPEND.value).upper()),
            }
            if options.get("session_id"):
                values["session_id"] = options["session_id"]
            return cls(**values)
        except KeyError as e:
            raise ConfigError(f"Missing required option: {e.args[0]}", cause=e) from e
        except (ValidationError, ValueError) as e:
            raise ConfigError(f"Invalid write options: {e}", cause=e) from e


class ReadConfig(BaseModel):
    """Configuration of one read job."""

    model_config = ConfigDict(frozen=True)

    database: DatabaseConfig
    staging: StagingConfig
    table: TableName | None = None
    query: str | None = None
    partition_count: int | None = Field(None, gt=0)
    required_columns: tuple[str, ...] | None = None
    filters: tuple[str, ...] = ()
    aggregates: tuple[str, ...] = ()
    group_by: tuple[str, ...] = ()
    row_group_size: int = Field(122_880, gt=0)
    max_file_size_bytes: int | None = Field(None, gt=0)
    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1)

    @field_validator("required_columns", mode="before")
    @classmethod
    def _parse_columns(cls, value: Any) -> tuple[str, ...] | None:
        return parse_column_list(value)

    @model_validator(mode="after")
    def _check_source(self) -> "ReadConfig":
        if (self.table is None) == (self.query is None):
            raise ValueError("Exactly one of table or query must be set")
        if self.group_by and not self.aggregates:
            raise ValueError("group_by requires at least one aggregate")
        return self

    @classmethod
    def from_options(
        cls,
        options: Mapping[str, str],
        defaults: Settings | None = None,
    ) -> "ReadConfig":
        """Build a read configuration from a flat string option map.

        Raises:
            ConfigError: if any option is missing or invalid
        """
        defaults = defaults or settings
        try:
            table = options.get("table")
            values: dict[str, Any] = {
                "database": _database_from_options(options, defaults),
                "staging": _staging_from_options(options, defaults),
                "table": TableName(name=table, namespace=options.get("db_schema")) if table else None,
                "query": options.get("query") or None,
                "partition_count": int(options["num_partitions"]) if options.get("num_partitions") else None,
                "required_columns": options.get("columns"),
                "row_group_size": int(options.get("row_group_size", defaults.row_group_size)),
                "max_file_size_bytes": int(options["max_file_size_bytes"])
                if options.get("max_file_size_bytes")
                else defaults.max_file_size_bytes,
            }
            if options.get("session_id"):
                values["session_id"] = options["session_id"]
            return cls(**values)
        except (ValidationError, ValueError) as e:
            raise ConfigError(f"Invalid read options: {e}", cause=e) from e


def _database_from_options(options: Mapping[str, str], defaults: Settings) -> DatabaseConfig:
    return DatabaseConfig(
        database=options.get("database", defaults.database),
        user=options.get("user", defaults.user),
        memory_limit_mb=int(options["memory_limit_mb"])
        if options.get("memory_limit_mb")
        else defaults.memory_limit_mb,
        threads=int(options["threads"]) if options.get("threads") else defaults.threads,
    )


def _staging_from_options(options: Mapping[str, str], defaults: Settings) -> StagingConfig:
    secret = options.get("aws_secret_access_key")
    token = options.get("aws_session_token")
    return StagingConfig(
        address=options.get("staging_fs_url", defaults.staging_address),
        prevent_cleanup=_parse_bool(options.get("prevent_cleanup"), defaults.prevent_cleanup),
        s3_region=options.get("aws_region", defaults.s3_region),
        s3_endpoint=options.get("aws_endpoint", defaults.s3_endpoint),
        s3_access_key_id=options.get("aws_access_key_id"),
        s3_secret_access_key=SecretStr(secret) if secret else None,
        s3_session_token=SecretStr(token) if token else None,
    )
