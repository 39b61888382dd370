"""Write pipe: staged partition writes and the coordinated commit.

Protocol for one write job:

1. The coordinator calls ``prepare_target()`` once.
2. Every worker, on its own pipe instance, calls ``start_partition_write``,
   ``write_data`` (any number of times) and ``end_partition_write``.
3. The coordinator calls ``commit()`` once after all workers finished, or
   ``abort()`` if the surrounding job failed.

The commit loads every staged file with a single INSERT ... SELECT inside
one transaction. Rows whose values cannot be cast to the target column types,
or that put NULL into a NOT NULL column, are diverted into the reject table
``<table>_<session_id>_COMMITS`` instead of failing the load.
"""

from typing import Any

import pyarrow as pa

from stagepipe.config import WriteConfig
from stagepipe.errors import (
    CommitError,
    ConnectorError,
    ContextError,
    FaultToleranceError,
    InferExternalTableError,
    JobAbortedError,
    NoStagedFilesError,
    SchemaConversionError,
    TableCheckError,
    TableExistsError,
    ViewExistsError,
)
from stagepipe.logging import create_job_logger
from stagepipe.models.schemas import (
    ColumnDef,
    CommitOutcome,
    CommitState,
    CommitStatus,
    DataBlock,
    ExternalTableMode,
    PipeVariant,
    SaveMode,
    TableName,
    quote_identifier,
    quote_literal,
)
from stagepipe.storage.schema_tools import MERGE_SOURCE_ALIAS, SchemaTools
from stagepipe.storage.session import DuckDBSession
from stagepipe.storage.staging import STAGED_FILE_EXTENSION, StagingStore
from stagepipe.storage.table_utils import TableUtils

# Number of rejected rows written to the log when the tolerance is exceeded
REJECT_SAMPLE_SIZE = 10

# Parquet converted types understood by the legacy external table inference
_LEGACY_CONVERTED_TYPES = {
    "UTF8": "VARCHAR",
    "JSON": "VARCHAR",
    "ENUM": "VARCHAR",
    "DATE": "DATE",
    "TIME_MILLIS": "TIME",
    "TIME_MICROS": "TIME",
    "TIMESTAMP_MILLIS": "TIMESTAMP",
    "TIMESTAMP_MICROS": "TIMESTAMP",
    "INT_8": "TINYINT",
    "INT_16": "SMALLINT",
    "INT_32": "INTEGER",
    "INT_64": "BIGINT",
    "UINT_8": "UTINYINT",
    "UINT_16": "USMALLINT",
    "UINT_32": "UINTEGER",
    "UINT_64": "UBIGINT",
}

_LEGACY_PHYSICAL_TYPES = {
    "BOOLEAN": "BOOLEAN",
    "INT32": "INTEGER",
    "INT64": "BIGINT",
    "INT96": "TIMESTAMP",
    "FLOAT": "FLOAT",
    "DOUBLE": "DOUBLE",
    "BYTE_ARRAY": "BLOB",
    "FIXED_LEN_BYTE_ARRAY": "BLOB",
}


class WritePipe:
    """Write pipe bound to one write job configuration.

    Workers only touch the staging store. The session, schema tools and
    table utils are used by the coordinator calls.
    """

    def __init__(
        self,
        config: WriteConfig,
        session: DuckDBSession,
        staging: StagingStore,
        schema_tools: SchemaTools,
        table_utils: TableUtils | None = None,
        variant: PipeVariant = PipeVariant.CURRENT,
    ) -> None:
        self.config = config
        self.session = session
        self.staging = staging
        self.schema_tools = schema_tools
        self.table_utils = table_utils or TableUtils(schema_tools, session)
        self.variant = variant
        self.state = CommitState.NOT_STARTED
        self._log = create_job_logger(config.session_id, "write", table=str(config.table))

    @property
    def skips_writes(self) -> bool:
        """Existing-data external tables are built from files already staged."""
        return self.config.create_external_table == ExternalTableMode.EXISTING_DATA

    @property
    def job_address(self) -> str:
        """Staging directory owned by this job.

        Jobs sharing one staging address each write below their session id.
        Existing-data external tables read the configured address itself.
        """
        if self.skips_writes:
            return self.staging.address
        return f"{self.staging.address}/{self.config.session_id}"

    @property
    def staged_glob(self) -> str:
        return f"{self.job_address}/*.{STAGED_FILE_EXTENSION}"

    # =========================================================================
    # Pre-write setup
    # =========================================================================

    def _admin(self, action: str, fn: Any, *args: Any) -> Any:
        try:
            return fn(*args)
        except ConnectorError as e:
            raise ContextError(f"Failed to {action} for {self.config.table}", e) from e

    def prepare_target(self) -> None:
        """Ensure the target table and the staging directory exist.

        Safe to call again: an existing table is left untouched in APPEND mode.

        Raises:
            ViewExistsError: if a view already uses the target table name
            TableExistsError: if the table exists and save mode is CREATE
            ContextError: wrapping any table admin or staging failure
        """
        config = self.config
        self._log.info(
            "prepare_target_started",
            save_mode=config.save_mode.value,
            external=config.create_external_table.value if config.create_external_table else None,
        )

        if config.create_external_table is not None:
            self._log.info("table_setup_skipped", reason="external_table_created_at_commit")
        else:
            self._ensure_target_table()
            if config.save_job_status_table:
                self._admin(
                    "initialize job status",
                    self.table_utils.create_and_init_job_status_table,
                    config.table,
                    config.database.user,
                    config.session_id,
                    config.save_mode.value,
                    config.failed_rows_percent_tolerance,
                )

        if not self.skips_writes:
            self._admin(
                "create staging directory",
                self.staging.create_dir,
                self.job_address,
                config.file_permissions,
            )

        self.state = CommitState.TABLE_ENSURED
        self._log.info("prepare_target_completed")

    def _ensure_target_table(self) -> None:
        config = self.config
        tu = self.table_utils

        if self._admin("check for views", tu.view_exists, config.table):
            raise ViewExistsError(f"A view named {config.table} already exists")

        exists = self._admin("check table existence", tu.table_exists, config.table)
        if exists and config.save_mode == SaveMode.OVERWRITE:
            self._admin("drop existing table", tu.drop_table, config.table)
            exists = False
        elif exists and config.save_mode == SaveMode.CREATE:
            raise TableExistsError(f"Table {config.table} already exists")

        temp_exists = self._admin(
            "check temporary table", tu.temp_table_exists, config.temp_table_name
        )
        if not temp_exists and not exists:
            self._admin(
                "create table",
                tu.create_table,
                config.table,
                config.target_table_sql,
                config.column_schema,
                config.strlen,
                0,
            )
            if not self._admin("check table existence", tu.table_exists, config.table):
                raise TableCheckError(f"Table {config.table} does not exist after creation")
        else:
            self._log.info("table_exists", temp_table_exists=temp_exists)

    # =========================================================================
    # Per-partition writes (workers)
    # =========================================================================

    def start_partition_write(self, partition_id: str) -> None:
        """Open the staged file of one partition.

        If the file cannot be opened the whole staging directory of the job is
        removed (unless cleanup is prevented) and the error is re-raised.
        """
        if self.skips_writes:
            return
        path = self.staging.staged_file_path(self.job_address, partition_id)
        try:
            self.staging.open_write_file(path)
        except ConnectorError as e:
            self._log.error("partition_open_failed", partition=partition_id, error=str(e))
            if not self.config.staging.prevent_cleanup:
                self._remove_staging_dir()
            raise

    def write_data(self, block: DataBlock) -> None:
        if self.skips_writes:
            return
        self.staging.write_block(block)

    def end_partition_write(self) -> None:
        if self.skips_writes:
            return
        self.staging.close_write_file()

    # =========================================================================
    # Commit (coordinator)
    # =========================================================================

    def commit(self) -> CommitOutcome:
        """Load all staged files into the target and close the session.

        Returns:
            Outcome with status SUCCEEDED and the loaded/rejected row counts

        Raises:
            FaultToleranceError: if too many rows were rejected; the load was
                rolled back and the error carries the outcome
            ConnectorError: for any other failure; nothing was committed
        """
        mode = self.config.create_external_table
        self._log.info("commit_started", external=mode.value if mode else None)
        try:
            self.session.configure_session(self.staging)
            if mode is not None:
                outcome = self._commit_external_table(mode)
            else:
                outcome = self._commit_managed_table()
        finally:
            self._close_session()
        self._log.info(
            "commit_completed",
            rows_loaded=outcome.rows_loaded,
            rows_rejected=outcome.rows_rejected,
        )
        return outcome

    def _commit_managed_table(self) -> CommitOutcome:
        try:
            return self._load_and_reconcile()
        finally:
            if not self.config.staging.prevent_cleanup:
                self._remove_staging_dir()
            if self.state != CommitState.ROLLED_BACK:
                self.state = CommitState.CLEANED

    def _load_and_reconcile(self) -> CommitOutcome:
        config = self.config
        rejected = 0
        try:
            files = self.staging.list_glob(self.staged_glob)
            pairs = self._copy_pairs()
            target = config.table
            if config.merge_key:
                target = self._prepare_temp_table(pairs)

            if not files:
                self._log.warning("no_staged_files", glob=self.staged_glob)
                loaded = 0
            else:
                loaded, rejected = self._bulk_load(target, pairs)
            self.state = CommitState.LOADED

            outcome = CommitOutcome(CommitStatus.SUCCEEDED, rows_loaded=loaded, rows_rejected=rejected)
            self._log.info(
                "load_reconciled",
                rows_loaded=loaded,
                rows_rejected=rejected,
                rejected_fraction=outcome.rejected_fraction,
                tolerance=config.failed_rows_percent_tolerance,
            )
            if outcome.rejected_fraction > config.failed_rows_percent_tolerance:
                self.state = CommitState.RECONCILED_FAIL
                self._log_reject_sample(rejected)
                outcome.status = CommitStatus.FAULT_TOLERANCE_EXCEEDED
                raise FaultToleranceError(
                    f"Rejected {rejected} of {outcome.rows_attempted} rows "
                    f"({outcome.rejected_fraction:.2%}), tolerance is "
                    f"{config.failed_rows_percent_tolerance:.2%}",
                    outcome=outcome,
                )
            self.state = CommitState.RECONCILED_OK

            if config.merge_key:
                self._merge(target, [t for _, t in pairs])
            try:
                self.session.commit()
            except ConnectorError as e:
                raise CommitError(f"Failed to commit load into {config.table}", cause=e) from e
        except ConnectorError as e:
            self._rollback()
            self._drop_reject_table_if_empty(rejected)
            self._update_job_status(False, e.outcome if isinstance(e, FaultToleranceError) else None)
            raise

        self._drop_reject_table_if_empty(rejected)
        self._update_job_status(True, outcome)
        return outcome

    def _copy_pairs(self) -> list[tuple[str, str]]:
        """(staged column, target column) pairs for the load."""
        schema = self.config.column_schema
        explicit = self.config.copy_column_list
        if explicit:
            if len(explicit) != len(schema):
                raise SchemaConversionError(
                    f"copy_column_list has {len(explicit)} columns but the staged schema has "
                    f"{len(schema)}"
                )
            return list(zip(schema.names, explicit))
        targets = self.schema_tools.get_copy_column_list(self.session, self.config.table, schema)
        staged_by_lower = {name.lower(): name for name in schema.names}
        return [(staged_by_lower[t.lower()], t) for t in targets]

    def _prepare_temp_table(self, pairs: list[tuple[str, str]]) -> TableName:
        temp = self.config.temp_table_name
        if self.table_utils.temp_table_exists(temp):
            self.session.execute(f"DELETE FROM {temp.quoted}")
            self._log.info("temp_table_emptied", temp_table=str(temp))
        else:
            schema = self.config.column_schema
            merge_schema = pa.schema(
                [
                    pa.field(t, schema.field(s).type, nullable=schema.field(s).nullable)
                    for s, t in pairs
                ]
            )
            self.table_utils.create_temp_table(temp, merge_schema, self.config.strlen, 0)
        return temp

    def _bulk_load(self, target: TableName, pairs: list[tuple[str, str]]) -> tuple[int, int]:
        """Load the staged files into ``target``. Leaves the transaction open."""
        columns = {c.name.lower(): c for c in self.schema_tools.get_table_schema(self.session, target)}
        casts = []
        checks = []
        for staged_name, target_name in pairs:
            column = columns[target_name.lower()]
            source = f"src.{quote_identifier(staged_name)}"
            cast = f"TRY_CAST({source} AS {column.type_name})"
            casts.append(cast)
            checks.append(f"({source} IS NULL OR {cast} IS NOT NULL)")
            if not column.nullable:
                checks.append(f"{source} IS NOT NULL")
        valid = " AND ".join(checks)
        glob = quote_literal(self.staged_glob)
        source_sql = f"read_parquet({glob}) AS src"
        load_source_sql = source_sql
        order = ""
        if self.config.merge_key:
            # Rows enter the temp table in partition file then row order
            load_source_sql = f"read_parquet({glob}, filename = true, file_row_number = true) AS src"
            order = " ORDER BY src.filename, src.file_row_number"
        reject = self.config.reject_table_name

        # Created outside the load transaction so rejected rows survive a rollback
        try:
            self.session.execute(f"DROP TABLE IF EXISTS {reject.quoted}")
            self.session.execute(
                f"CREATE TABLE {reject.quoted} AS SELECT * FROM {source_sql} WHERE NOT ({valid})"
            )
        except ConnectorError as e:
            raise CommitError(f"Failed to create reject table {reject}", cause=e) from e

        target_columns = ", ".join(quote_identifier(t) for _, t in pairs)
        load_sql = (
            f"INSERT INTO {target.quoted} ({target_columns}) "
            f"SELECT {', '.join(casts)} FROM {load_source_sql} WHERE {valid}{order}"
        )
        try:
            plan = self.session.query(f"EXPLAIN {load_sql}")
            self._log.debug("load_plan", plan=[str(row[-1]) for row in plan.rows])
            loaded = self.session.execute_update(load_sql)
            rejected = int(
                self.session.query(f"SELECT COUNT(*) as count FROM {reject.quoted}").scalar() or 0
            )
        except ConnectorError as e:
            raise CommitError(f"Bulk load into {target} failed", cause=e) from e
        self._log.info("bulk_load_executed", target=str(target), rows_loaded=loaded, rows_rejected=rejected)
        return loaded, rejected

    def _merge(self, temp: TableName, target_columns: list[str]) -> None:
        """Upsert the loaded temp table into the target on the merge key."""
        config = self.config
        key = [k for k in config.merge_key or ()]
        key_lower = {k.lower() for k in key}
        alias = MERGE_SOURCE_ALIAS
        matched = " AND ".join(
            f"tgt.{quote_identifier(k)} = {alias}.{quote_identifier(k)}" for k in key
        )
        temp_sql = quote_identifier(temp.name)
        try:
            # Last staged row wins when the staged data repeats a key, in partition
            # file name order
            deduplicated = self.session.execute_update(
                f"DELETE FROM {temp_sql} WHERE rowid NOT IN "
                f"(SELECT MAX(rowid) FROM {temp_sql} GROUP BY "
                f"{', '.join(quote_identifier(k) for k in key)})"
            )
            updated = 0
            non_key = tuple(c for c in target_columns if c.lower() not in key_lower)
            if non_key:
                update_values = self.schema_tools.get_merge_update_values(
                    self.session, config.table, temp, non_key
                )
                updated = self.session.execute_update(
                    f"UPDATE {config.table.quoted} AS tgt SET {update_values} "
                    f"FROM {temp_sql} AS {alias} WHERE {matched}"
                )
            insert_values = self.schema_tools.get_merge_insert_values(
                self.session, temp, tuple(target_columns)
            )
            inserted = self.session.execute_update(
                f"INSERT INTO {config.table.quoted} "
                f"({', '.join(quote_identifier(c) for c in target_columns)}) "
                f"SELECT {insert_values} FROM {temp_sql} AS {alias} "
                f"WHERE NOT EXISTS (SELECT 1 FROM {config.table.quoted} AS tgt WHERE {matched})"
            )
        except ConnectorError as e:
            raise CommitError(f"Merge into {config.table} failed", cause=e) from e
        self._log.info(
            "merge_completed",
            rows_updated=updated,
            rows_inserted=inserted,
            duplicate_keys_dropped=deduplicated,
        )

    def _log_reject_sample(self, rejected: int) -> None:
        reject = self.config.reject_table_name
        try:
            sample = self.session.query(
                f"SELECT * FROM {reject.quoted} LIMIT {REJECT_SAMPLE_SIZE}"
            )
        except ConnectorError as e:
            self._log.warning("reject_sample_failed", error=str(e))
            return
        self._log.error(
            "fault_tolerance_exceeded",
            reject_table=str(reject),
            rows_rejected=rejected,
            sample=[dict(zip(sample.columns, row)) for row in sample.rows],
        )

    # =========================================================================
    # External tables
    # =========================================================================

    def _commit_external_table(self, mode: ExternalTableMode) -> CommitOutcome:
        config = self.config
        if mode == ExternalTableMode.EXISTING_DATA:
            glob = f"{self.job_address}/*.parquet"
            files = self.staging.list_glob(glob)
            if not files:
                raise NoStagedFilesError(f"No Parquet files match {glob}")
            columns = self.infer_external_table_columns(glob, files)
        else:
            glob = self.staged_glob
            columns = [
                ColumnDef(f.name, self.schema_tools.to_sql_type(f.type, config.strlen), f.nullable)
                for f in config.column_schema
            ]
        ddl = self._external_table_ddl(columns, glob)

        created = False
        try:
            self.table_utils.create_external_table(config.table, ddl)
            created = True
            self.state = CommitState.TABLE_ENSURED
            rows = self.table_utils.validate_external_table(config.table, [c.name for c in columns])
        except ConnectorError:
            if created:
                try:
                    self.table_utils.drop_external_table(config.table)
                except ConnectorError as drop_error:
                    self._log.warning("external_table_drop_failed", error=str(drop_error))
            self._rollback()
            raise
        self.state = CommitState.CLEANED
        return CommitOutcome(CommitStatus.SUCCEEDED, rows_loaded=rows)

    def _external_table_ddl(self, columns: list[ColumnDef], glob: str) -> str:
        create = "CREATE OR REPLACE VIEW" if self.config.save_mode == SaveMode.OVERWRITE else "CREATE VIEW"
        select = ", ".join(
            f"CAST({quote_identifier(c.name)} AS {c.type_name}) AS {quote_identifier(c.name)}"
            for c in columns
        )
        return f"{create} {self.config.table.quoted} AS SELECT {select} FROM read_parquet({quote_literal(glob)})"

    def infer_external_table_columns(self, glob: str, files: list[str]) -> list[ColumnDef]:
        """Ask the database for the column definitions of staged files.

        The current pipe describes a scan of the whole glob. The legacy pipe
        reads the Parquet schema of the first file and maps its physical and
        converted types.
        """
        if self.variant == PipeVariant.CURRENT:
            try:
                return self.schema_tools.get_query_schema(
                    self.session, f"SELECT * FROM read_parquet({quote_literal(glob)})"
                )
            except ConnectorError as e:
                raise InferExternalTableError(f"Failed to infer columns of {glob}", cause=e) from e

        try:
            result = self.session.query(
                "SELECT name, type, converted_type, scale, precision, num_children "
                f"FROM parquet_schema({quote_literal(files[0])})"
            )
        except ConnectorError as e:
            raise InferExternalTableError(f"Failed to read Parquet schema of {files[0]}", cause=e) from e
        # First row is the schema root
        columns = []
        for name, physical, converted, scale, precision, children in result.rows[1:]:
            if children:
                raise InferExternalTableError(
                    f"Column {name} in {files[0]} is nested, which needs a newer database version"
                )
            columns.append(ColumnDef(name, _legacy_column_type(physical, converted, scale, precision)))
        if not columns:
            raise InferExternalTableError(f"Parquet file {files[0]} has no columns")
        return columns

    # =========================================================================
    # Abort and cleanup
    # =========================================================================

    def abort(self, partition_ids: list[str] | None = None) -> CommitOutcome:
        """Undo whatever the job left behind after an outside failure.

        Raises:
            JobAbortedError: if any cleanup step failed
        """
        self._log.warning("write_aborted", partitions=partition_ids or [])
        failures: list[ConnectorError] = []
        try:
            self.session.rollback()
        except ConnectorError as e:
            failures.append(e)
        if not self.skips_writes and not self.config.staging.prevent_cleanup:
            try:
                self.staging.remove_dir(self.job_address)
            except ConnectorError as e:
                failures.append(e)
        if self.config.save_job_status_table and self.config.create_external_table is None:
            try:
                self.table_utils.update_job_status_table(
                    self.config.table,
                    self.config.database.user,
                    self.config.session_id,
                    False,
                    0.0,
                )
            except ConnectorError as e:
                failures.append(e)
        self.state = CommitState.ROLLED_BACK
        self._close_session()
        if failures:
            raise JobAbortedError(
                f"Cleanup of aborted job failed in {len(failures)} step(s)", cause=failures[0]
            )
        return CommitOutcome.aborted()

    def _rollback(self) -> None:
        try:
            self.session.rollback()
        except ConnectorError as e:
            self._log.warning("rollback_failed", error=str(e))
        self.state = CommitState.ROLLED_BACK

    def _remove_staging_dir(self) -> None:
        try:
            self.staging.remove_dir(self.job_address)
        except ConnectorError as e:
            self._log.warning("staging_cleanup_failed", address=self.job_address, error=str(e))

    def _drop_reject_table_if_empty(self, rejected: int) -> None:
        reject = self.config.reject_table_name
        if rejected > 0:
            self._log.warning("reject_table_kept", reject_table=str(reject), rows_rejected=rejected)
            return
        try:
            self.table_utils.drop_table(reject)
        except ConnectorError as e:
            self._log.warning("reject_table_drop_failed", reject_table=str(reject), error=str(e))

    def _update_job_status(self, success: bool, outcome: CommitOutcome | None) -> None:
        if not self.config.save_job_status_table:
            return
        try:
            self.table_utils.update_job_status_table(
                self.config.table,
                self.config.database.user,
                self.config.session_id,
                success,
                outcome.rejected_fraction if outcome else 0.0,
                outcome.rows_loaded if outcome else 0,
                outcome.rows_rejected if outcome else 0,
            )
        except ConnectorError as e:
            self._log.warning("job_status_update_failed", error=str(e))

    def _close_session(self) -> None:
        try:
            self.session.close()
        except ConnectorError as e:
            self._log.warning("session_close_failed", error=str(e))


def _legacy_column_type(
    physical: str | None,
    converted: str | None,
    scale: int | None,
    precision: int | None,
) -> str:
    if converted == "DECIMAL":
        return f"DECIMAL({precision},{scale})"
    if converted in _LEGACY_CONVERTED_TYPES:
        return _LEGACY_CONVERTED_TYPES[converted]
    if physical in _LEGACY_PHYSICAL_TYPES:
        return _LEGACY_PHYSICAL_TYPES[physical]
    raise InferExternalTableError(f"Unsupported Parquet type {physical} ({converted})")
