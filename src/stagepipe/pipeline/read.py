"""Read pipe: export to staging, partition planning and partition reads.

The coordinator calls ``plan_partitions()`` once. The database exports the
matching rows into Parquet files under ``<staging address>/<session_id>``,
and the row groups of those files are split into contiguous partitions.
Each worker then reads one partition with ``start_partition_read``,
``read_row`` until it returns None, and ``end_partition_read``.
"""

from collections.abc import Sequence
from typing import Any

import pyarrow as pa

from stagepipe.config import ReadConfig
from stagepipe.errors import (
    ConfigError,
    ConnectorError,
    ContextError,
    ExportError,
    InitialSetupPartitioningError,
    ReadProtocolError,
)
from stagepipe.logging import create_job_logger
from stagepipe.models.schemas import FileRange, PartitionDescriptor, quote_identifier, quote_literal
from stagepipe.storage.schema_tools import SchemaTools
from stagepipe.storage.session import DuckDBSession
from stagepipe.storage.staging import StagingStore

# Aggregate functions the database computes during export
PUSHDOWN_AGGREGATES = frozenset({"COUNT", "SUM", "MIN", "MAX", "AVG"})

# Export file permissions
EXPORT_DIR_PERMISSIONS = 0o700


def can_push_aggregates(aggregates: Sequence[str]) -> bool:
    """Whether every aggregate expression can be computed by the database.

    Expressions look like ``SUM(amount)`` or ``COUNT(*)``.
    """
    for expression in aggregates:
        name, paren, _ = expression.strip().partition("(")
        if not paren or name.strip().upper() not in PUSHDOWN_AGGREGATES:
            return False
    return True


def distribute_row_groups(
    counts: list[tuple[str, int]], partition_count: int | None
) -> list[PartitionDescriptor]:
    """Split row groups into contiguous, evenly sized partitions.

    Args:
        counts: (file path, row group count) in export order
        partition_count: Requested partitions; defaults to one per row group

    Returns:
        Partitions in order. Files without row groups yield one empty
        partition when there is nothing else to read.
    """
    units = [(path, rg) for path, n in counts for rg in range(n)]
    if not units:
        return [PartitionDescriptor(index=0)] if counts else []

    total = len(units)
    n_partitions = min(partition_count or total, total)
    base, extra = divmod(total, n_partitions)

    partitions = []
    start = 0
    for index in range(n_partitions):
        size = base + (1 if index < extra else 0)
        chunk = units[start:start + size]
        start += size

        ranges: list[FileRange] = []
        for path, rg in chunk:
            last = ranges[-1] if ranges else None
            if last is not None and last.path == path and last.last_row_group == rg - 1:
                ranges[-1] = FileRange(path, last.first_row_group, rg)
            else:
                ranges.append(FileRange(path, rg, rg))
        partitions.append(PartitionDescriptor(index=index, ranges=tuple(ranges)))
    return partitions


class ReadPipe:
    """Read pipe bound to one read job configuration."""

    def __init__(
        self,
        config: ReadConfig,
        session: DuckDBSession,
        staging: StagingStore,
        schema_tools: SchemaTools,
    ) -> None:
        self.config = config
        self.session = session
        self.staging = staging
        self.schema_tools = schema_tools
        self._opened = False
        self._exhausted = False
        self._log = create_job_logger(
            config.session_id, "read", table=str(config.table) if config.table else None
        )

    @property
    def export_address(self) -> str:
        return f"{self.staging.address}/{self.config.session_id}"

    def can_push_aggregates(self, aggregates: Sequence[str] | None = None) -> bool:
        return can_push_aggregates(self.config.aggregates if aggregates is None else aggregates)

    def build_select(self) -> str:
        """SELECT statement producing the rows to export."""
        config = self.config
        if config.aggregates and not self.can_push_aggregates():
            raise ConfigError(
                f"Aggregates {list(config.aggregates)} cannot be pushed down",
                remediation="Only COUNT, SUM, MIN, MAX and AVG are computed by the database.",
            )

        if config.aggregates:
            columns = [quote_identifier(c) for c in config.group_by] + list(config.aggregates)
        elif config.required_columns:
            columns = [quote_identifier(c) for c in config.required_columns]
        else:
            columns = ["*"]

        source = config.table.quoted if config.table else f"({config.query}) AS q"
        sql = f"SELECT {', '.join(columns)} FROM {source}"
        if config.filters:
            sql += " WHERE " + " AND ".join(f"({f})" for f in config.filters)
        if config.group_by:
            sql += " GROUP BY " + ", ".join(quote_identifier(c) for c in config.group_by)
        return sql

    def read_schema(self) -> pa.Schema:
        """Arrow schema of the exported rows, after projection and aggregation.

        Raises:
            SchemaDiscoveryError: if the source cannot be introspected
        """
        columns = self.schema_tools.get_query_schema(self.session, self.build_select())
        return self.schema_tools.to_arrow_schema(columns)

    # =========================================================================
    # Planning (coordinator)
    # =========================================================================

    def plan_partitions(self) -> list[PartitionDescriptor]:
        """Export the source rows and split them into partitions.

        Raises:
            ExportError: if the export statement fails
            InitialSetupPartitioningError: if rows were exported but no
                partition could be planned
        """
        config = self.config
        log = self._log.bind(export_address=self.export_address)
        log.info("plan_partitions_started")

        try:
            self.staging.create_dir(self.staging.address, EXPORT_DIR_PERMISSIONS)
            self.staging.remove_dir(self.export_address)
        except ConnectorError as e:
            raise ContextError("Failed to prepare export directory", e) from e

        self.session.configure_session(self.staging)
        options = ["FORMAT PARQUET", f"ROW_GROUP_SIZE {config.row_group_size}"]
        if config.max_file_size_bytes:
            options.append(f"FILE_SIZE_BYTES {config.max_file_size_bytes}")
        else:
            options.append("PER_THREAD_OUTPUT true")
        select = self.build_select()
        try:
            exported = self.session.execute_update(
                f"COPY ({select}) TO {quote_literal(self.export_address)} ({', '.join(options)})"
            )
            self.session.commit()
        except ConnectorError as e:
            self.session.rollback()
            raise ExportError(f"Export of {config.table or 'query'} failed", cause=e) from e

        files = self.staging.list_glob(f"{self.export_address}/*.parquet")
        counts = [(path, self.staging.row_group_count(path)) for path in files]
        partitions = distribute_row_groups(counts, config.partition_count)

        if not partitions:
            if exported == 0:
                partitions = [PartitionDescriptor(index=0)]
            else:
                raise InitialSetupPartitioningError(
                    f"Exported {exported} rows but found no files at {self.export_address}"
                )
        log.info(
            "plan_partitions_completed",
            rows_exported=exported,
            files=len(files),
            partitions=len(partitions),
        )
        return partitions

    def cleanup(self) -> None:
        """Remove the exported files unless cleanup is prevented."""
        if self.config.staging.prevent_cleanup:
            return
        try:
            self.staging.remove_dir(self.export_address)
        except ConnectorError as e:
            self._log.warning("export_cleanup_failed", address=self.export_address, error=str(e))

    # =========================================================================
    # Partition reads (workers)
    # =========================================================================

    def start_partition_read(self, partition: PartitionDescriptor) -> None:
        if self._opened:
            raise ReadProtocolError("start_partition_read called twice without end_partition_read")
        self.staging.open_read_stream(partition)
        self._opened = True
        self._exhausted = False

    def read_row(self) -> tuple[Any, ...] | None:
        """Next row of the open partition, or None once the partition is done.

        Raises:
            ReadProtocolError: if no partition is open or the end was already
                returned
        """
        if not self._opened:
            raise ReadProtocolError("read_row called before start_partition_read")
        if self._exhausted:
            raise ReadProtocolError("read_row called after the end of the partition")
        row = self.staging.read_row()
        if row is None:
            self._exhausted = True
        return row

    def end_partition_read(self) -> None:
        if not self._opened:
            raise ReadProtocolError("end_partition_read called before start_partition_read")
        self._opened = False
        self._exhausted = False
        self.staging.close_read_stream()
