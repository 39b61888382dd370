"""Data model shared by the write and read pipes."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def quote_identifier(name: str) -> str:
    """Quote a SQL identifier, escaping embedded double quotes."""
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


# =============================================================================
# Enums
# =============================================================================


class SaveMode(str, Enum):
    """How the write job treats an existing target table."""

    CREATE = "CREATE"  # fail if the table already exists
    OVERWRITE = "OVERWRITE"  # drop and recreate
    APPEND = "APPEND"  # create if missing, then append


class ExternalTableMode(str, Enum):
    """External-table creation requested at commit time."""

    NEW_DATA = "new-data"
    EXISTING_DATA = "existing-data"


class CommitStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAULT_TOLERANCE_EXCEEDED = "fault_tolerance_exceeded"
    ABORTED = "aborted"


class CommitState(str, Enum):
    """Progress of the coordinator commit."""

    NOT_STARTED = "not_started"
    TABLE_ENSURED = "table_ensured"
    LOADED = "loaded"
    RECONCILED_OK = "reconciled_ok"
    RECONCILED_FAIL = "reconciled_fail"
    ROLLED_BACK = "rolled_back"
    CLEANED = "cleaned"


class SessionMode(str, Enum):
    READ = "read"
    WRITE = "write"


class SchemaVariant(str, Enum):
    """Schema negotiation behaviour, selected from the database version."""

    V1 = "v1"  # PRAGMA table_info introspection, flat types only
    V2 = "v2"  # information_schema introspection, nested types


class PipeVariant(str, Enum):
    """Write pipe behaviour, selected from the database version."""

    LEGACY = "legacy"  # parquet_schema() based external table inference
    CURRENT = "current"  # DESCRIBE based external table inference


# =============================================================================
# Identity and versions
# =============================================================================


class TableName(BaseModel):
    """Qualified name of a table in the target database."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, description="Table name")
    namespace: str | None = Field(None, description="Database schema holding the table")

    @property
    def quoted(self) -> str:
        if self.namespace:
            return f"{quote_identifier(self.namespace)}.{quote_identifier(self.name)}"
        return quote_identifier(self.name)

    @property
    def qualified(self) -> str:
        """Unquoted qualified name, used for logging."""
        return f"{self.namespace}.{self.name}" if self.namespace else self.name

    def with_suffix(self, suffix: str, keep_namespace: bool = True) -> "TableName":
        return TableName(
            name=f"{self.name}{suffix}",
            namespace=self.namespace if keep_namespace else None,
        )

    def __str__(self) -> str:
        return self.qualified


@dataclass(frozen=True, order=True)
class Version:
    """Semantic version of the target database engine."""

    major: int
    minor: int = 0
    patch: int = 0

    @classmethod
    def parse(cls, text: str) -> "Version":
        """Parse strings such as ``v1.1.3`` or ``0.10.2-dev123``."""
        cleaned = text.strip().lstrip("vV").split("-")[0].split(" ")[0]
        parts = cleaned.split(".")
        numbers = [int(p) for p in parts[:3] if p.isdigit()]
        if not numbers:
            raise ValueError(f"Unrecognized version string: {text!r}")
        while len(numbers) < 3:
            numbers.append(0)
        return cls(numbers[0], numbers[1], numbers[2])

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


# =============================================================================
# Columns, blocks, partitions
# =============================================================================


@dataclass(frozen=True)
class ColumnDef:
    """Column of a table as reported by the target database."""

    name: str
    type_name: str
    nullable: bool = True


@dataclass
class DataBlock:
    """Ordered batch of rows conforming to the pipe's column schema."""

    rows: list[tuple[Any, ...]] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class FileRange:
    """Inclusive range of row groups inside one staged Parquet file."""

    path: str
    first_row_group: int
    last_row_group: int

    @property
    def row_groups(self) -> list[int]:
        return list(range(self.first_row_group, self.last_row_group + 1))


@dataclass(frozen=True)
class PartitionDescriptor:
    """Work unit handed to exactly one read worker."""

    index: int
    ranges: tuple[FileRange, ...] = ()


# =============================================================================
# Commit outcome
# =============================================================================


@dataclass
class CommitOutcome:
    """Result of a coordinator commit or abort."""

    status: CommitStatus
    rows_loaded: int = 0
    rows_rejected: int = 0
    cause: Exception | None = None

    @property
    def rows_attempted(self) -> int:
        return self.rows_loaded + self.rows_rejected

    @property
    def rejected_fraction(self) -> float:
        if self.rows_attempted == 0:
            return 0.0
        return self.rows_rejected / self.rows_attempted

    @property
    def succeeded(self) -> bool:
        return self.status == CommitStatus.SUCCEEDED

    @classmethod
    def aborted(cls, cause: Exception | None = None) -> "CommitOutcome":
        return cls(status=CommitStatus.ABORTED, cause=cause)
