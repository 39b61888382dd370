"""Table administration in the target database.

Existence checks, DDL for target, temporary and external tables, and the
optional job status table. Every failure is raised as a ConnectorError
subclass naming the operation that failed.
"""

import pyarrow as pa
import structlog

from stagepipe.errors import (
    ConnectorError,
    CreateTableError,
    DropTableError,
    ExternalTableError,
    JobStatusError,
    SchemaDiscoveryError,
    TableCheckError,
)
from stagepipe.models.schemas import TableName, quote_identifier
from stagepipe.storage.schema_tools import SchemaTools
from stagepipe.storage.session import DuckDBSession

logger = structlog.get_logger()

JOB_STATUS_TABLE_PREFIX = "stagepipe_job_status_"

JOB_STATUS_COLUMNS = """
    target_namespace VARCHAR,
    target_table VARCHAR NOT NULL,
    save_mode VARCHAR,
    session_id VARCHAR NOT NULL,
    user_name VARCHAR,
    start_time TIMESTAMP DEFAULT current_timestamp,
    all_done BOOLEAN DEFAULT false,
    success BOOLEAN DEFAULT false,
    failed_rows_percent_tolerance DOUBLE,
    failed_rows_percent DOUBLE,
    rows_loaded BIGINT,
    rows_rejected BIGINT,
    PRIMARY KEY (target_table, session_id)
"""


class TableUtils:
    """DDL and catalog checks against one database session."""

    def __init__(self, schema_tools: SchemaTools, session: DuckDBSession) -> None:
        self.schema_tools = schema_tools
        self.session = session

    # =========================================================================
    # Existence checks
    # =========================================================================

    def _count(self, sql: str, params: list[object]) -> int:
        try:
            return int(self.session.query(sql, params).scalar() or 0)
        except ConnectorError as e:
            raise TableCheckError("Failed to query the catalog", cause=e) from e

    def table_exists(self, table: TableName) -> bool:
        """Whether a permanent table with this name exists. Views do not count."""
        return self._count(
            "SELECT COUNT(*) FROM duckdb_tables() "
            "WHERE lower(table_name) = lower(?) "
            "AND lower(schema_name) = lower(COALESCE(?, current_schema())) "
            "AND database_name = current_database() AND NOT temporary",
            [table.name, table.namespace],
        ) > 0

    def view_exists(self, table: TableName) -> bool:
        return self._count(
            "SELECT COUNT(*) FROM duckdb_views() "
            "WHERE lower(view_name) = lower(?) "
            "AND lower(schema_name) = lower(COALESCE(?, current_schema())) "
            "AND NOT internal",
            [table.name, table.namespace],
        ) > 0

    def temp_table_exists(self, table: TableName) -> bool:
        """Whether a temporary table with this name exists in this session."""
        return self._count(
            "SELECT COUNT(*) FROM duckdb_tables() "
            "WHERE lower(table_name) = lower(?) AND temporary",
            [table.name],
        ) > 0

    # =========================================================================
    # Managed tables
    # =========================================================================

    def _ensure_namespace(self, table: TableName) -> None:
        if table.namespace:
            self.session.execute(
                f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(table.namespace)}"
            )

    def create_table(
        self,
        table: TableName,
        target_table_sql: str | None,
        schema: pa.Schema,
        strlen: int,
        row_group_hint: int = 0,
    ) -> None:
        """Create the target table from custom DDL or from the column schema.

        ``row_group_hint`` is accepted for DDL generation but currently unused;
        callers pass 0.
        """
        try:
            self._ensure_namespace(table)
            if target_table_sql:
                sql = target_table_sql
            else:
                sql = f"CREATE TABLE {table.quoted} ({self.schema_tools.make_column_defs(schema, strlen)})"
            self.session.execute(sql)
        except ConnectorError as e:
            raise CreateTableError(f"Failed to create table {table}", cause=e) from e
        logger.info(
            "table_created",
            table=str(table),
            custom_ddl=bool(target_table_sql),
            row_group_hint=row_group_hint,
        )

    def create_temp_table(
        self,
        table: TableName,
        schema: pa.Schema,
        strlen: int,
        row_group_hint: int = 0,
    ) -> None:
        """Create a session scoped temporary table mirroring the column schema."""
        try:
            defs = self.schema_tools.make_column_defs(schema, strlen)
            self.session.execute(f"CREATE TEMP TABLE {quote_identifier(table.name)} ({defs})")
        except ConnectorError as e:
            raise CreateTableError(f"Failed to create temporary table {table}", cause=e) from e
        logger.info("temp_table_created", table=str(table), row_group_hint=row_group_hint)

    def drop_table(self, table: TableName) -> None:
        """Drop a table. A missing table is not an error."""
        try:
            self.session.execute(f"DROP TABLE IF EXISTS {table.quoted}")
        except ConnectorError as e:
            raise DropTableError(f"Failed to drop table {table}", cause=e) from e
        logger.info("table_dropped", table=str(table))

    # =========================================================================
    # External tables
    # =========================================================================

    def create_external_table(self, table: TableName, ddl: str) -> None:
        """Run the DDL creating an external table (a view over staged files)."""
        try:
            self._ensure_namespace(table)
            self.session.execute(ddl)
        except ConnectorError as e:
            raise ExternalTableError(f"Failed to create external table {table}", cause=e) from e
        logger.info("external_table_created", table=str(table))

    def validate_external_table(self, table: TableName, expected_columns: list[str]) -> int:
        """Check the external table exposes exactly the expected columns.

        Column names are compared case-insensitively and in order. The staged
        files are scanned once so unreadable files fail here rather than on
        first query.

        Returns:
            Number of rows visible through the external table
        """
        try:
            columns = [
                c.name.lower()
                for c in self.schema_tools.get_query_schema(self.session, f"SELECT * FROM {table.quoted}")
            ]
        except SchemaDiscoveryError as e:
            raise ExternalTableError(f"External table {table} cannot be introspected", cause=e) from e
        expected = [c.lower() for c in expected_columns]
        if columns != expected:
            raise ExternalTableError(
                f"External table {table} has columns {columns}, expected {expected}"
            )
        try:
            rows = int(self.session.query(f"SELECT COUNT(*) FROM {table.quoted}").scalar() or 0)
        except ConnectorError as e:
            raise ExternalTableError(f"Failed to scan external table {table}", cause=e) from e
        logger.info("external_table_validated", table=str(table), rows=rows)
        return rows

    def drop_external_table(self, table: TableName) -> None:
        try:
            self.session.execute(f"DROP VIEW IF EXISTS {table.quoted}")
        except ConnectorError as e:
            raise DropTableError(f"Failed to drop external table {table}", cause=e) from e
        logger.info("external_table_dropped", table=str(table))

    # =========================================================================
    # Job status
    # =========================================================================

    def job_status_table_name(self, table: TableName, user: str) -> TableName:
        return TableName(name=f"{JOB_STATUS_TABLE_PREFIX}{user}", namespace=table.namespace)

    def _ensure_job_status_table(self, status_table: TableName) -> None:
        self._ensure_namespace(status_table)
        self.session.execute(f"CREATE TABLE IF NOT EXISTS {status_table.quoted} ({JOB_STATUS_COLUMNS})")

    def create_and_init_job_status_table(
        self,
        table: TableName,
        user: str,
        session_id: str,
        save_mode: str,
        tolerance: float,
    ) -> None:
        """Create the job status table if needed and record this job as started."""
        status_table = self.job_status_table_name(table, user)
        try:
            self._ensure_job_status_table(status_table)
            self.session.execute(
                f"INSERT OR REPLACE INTO {status_table.quoted} "
                "(target_namespace, target_table, save_mode, session_id, user_name, "
                "start_time, all_done, success, failed_rows_percent_tolerance) "
                "VALUES (?, ?, ?, ?, ?, current_timestamp, false, false, ?)",
                [table.namespace, table.name, save_mode, session_id, user, tolerance],
            )
        except ConnectorError as e:
            raise JobStatusError(f"Failed to initialize job status in {status_table}", cause=e) from e
        logger.info("job_status_initialized", table=str(table), status_table=str(status_table))

    def update_job_status_table(
        self,
        table: TableName,
        user: str,
        session_id: str,
        success: bool,
        failed_rows_percent: float,
        rows_loaded: int = 0,
        rows_rejected: int = 0,
    ) -> None:
        """Mark this job as done with its final outcome.

        Inserts the row when the job was never initialized in this table.
        """
        status_table = self.job_status_table_name(table, user)
        try:
            self._ensure_job_status_table(status_table)
            self.session.execute(
                f"INSERT INTO {status_table.quoted} "
                "(target_namespace, target_table, session_id, user_name, all_done, success, "
                "failed_rows_percent, rows_loaded, rows_rejected) "
                "VALUES (?, ?, ?, ?, true, ?, ?, ?, ?) "
                "ON CONFLICT (target_table, session_id) DO UPDATE SET "
                "all_done = true, success = excluded.success, "
                "failed_rows_percent = excluded.failed_rows_percent, "
                "rows_loaded = excluded.rows_loaded, rows_rejected = excluded.rows_rejected",
                [
                    table.namespace,
                    table.name,
                    session_id,
                    user,
                    success,
                    failed_rows_percent,
                    rows_loaded,
                    rows_rejected,
                ],
            )
        except ConnectorError as e:
            raise JobStatusError(f"Failed to update job status in {status_table}", cause=e) from e
        logger.info(
            "job_status_updated",
            table=str(table),
            success=success,
            failed_rows_percent=failed_rows_percent,
        )
