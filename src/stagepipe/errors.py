"""Error taxonomy for the write and read pipes.

Every error carries a message and actionable remediation guidance. Errors
raised by collaborators (staging store, database session, table admin,
schema negotiation) are translated into this hierarchy at the collaborator
boundary, so the pipes only ever see ``ConnectorError`` subclasses.

Wrapping: ``ContextError`` adds context to a lower-level error without
hiding it. ``get_underlying_error()`` walks the wrap chain back to the
original cause, which is what callers should match on.
"""


class ConnectorError(Exception):
    """Base class for connector errors with remediation guidance."""

    default_message = "Connector error"
    default_remediation = "Check the error details and the surrounding job logs."

    def __init__(
        self,
        message: str | None = None,
        remediation: str | None = None,
        cause: BaseException | None = None,
        is_retryable: bool = False,
    ):
        """
        Initialize a connector error.

        Args:
            message: Error description
            remediation: Actionable steps to fix the issue
            cause: Lower-level exception that triggered this error
            is_retryable: Whether re-running the whole job is expected to help
        """
        self.message = message or self.default_message
        self.remediation = remediation or self.default_remediation
        self.cause = cause
        self.is_retryable = is_retryable
        super().__init__(self.message)

    def get_underlying_error(self) -> "ConnectorError":
        """Return the innermost connector error of a wrap chain."""
        return self

    def get_full_context(self) -> str:
        """Message including the text of the lower-level cause, if any."""
        if self.cause is None:
            return self.message
        if isinstance(self.cause, ConnectorError):
            return f"{self.message}\n{self.cause.get_full_context()}"
        return f"{self.message}\n{type(self.cause).__name__}: {self.cause}"

    def __str__(self) -> str:
        parts = [self.message]
        if self.cause is not None and not isinstance(self.cause, ConnectorError):
            parts.append(f"Cause: {self.cause}")
        parts.append(f"Remediation: {self.remediation}")
        if self.is_retryable:
            parts.append("This operation can be safely retried.")
        return " | ".join(parts)


class ContextError(ConnectorError):
    """Adds context to another connector error."""

    def __init__(self, message: str, error: ConnectorError):
        super().__init__(
            message=message,
            remediation=error.remediation,
            cause=error,
            is_retryable=error.is_retryable,
        )
        self.error = error

    def get_underlying_error(self) -> ConnectorError:
        return self.error.get_underlying_error()


# =============================================================================
# Configuration
# =============================================================================


class ConfigError(ConnectorError):
    default_message = "Invalid configuration"
    default_remediation = "Fix the listed option values; no I/O was performed."


# =============================================================================
# Connectivity and SQL execution
# =============================================================================


class ConnectionDownError(ConnectorError):
    default_message = "Connection to the target database is down or was closed"
    default_remediation = (
        "Verify the database path or URL is reachable and not locked by another "
        "process, then re-run the job."
    )

    def __init__(self, message: str | None = None, cause: BaseException | None = None):
        super().__init__(message=message, cause=cause, is_retryable=True)


class DatabaseError(ConnectorError):
    default_message = "Statement failed in the target database"
    default_remediation = "Inspect the failing statement in the logs."


class SqlSyntaxError(DatabaseError):
    default_message = "Statement was rejected by the target database parser"
    default_remediation = "Check identifiers, custom DDL and column lists for typos."


# =============================================================================
# Schema negotiation
# =============================================================================


class SchemaDiscoveryError(ConnectorError):
    default_message = "Failed to discover the schema of the target table"
    default_remediation = "Verify the table exists and the session can read its catalog."


class SchemaConversionError(ConnectorError):
    default_message = "Failed to convert between the staged schema and the table schema"
    default_remediation = (
        "Check that staged column names and types are compatible with the target "
        "table, or supply an explicit copy column list."
    )


# =============================================================================
# DDL / table admin
# =============================================================================


class ViewExistsError(ConnectorError):
    default_message = "A view with the target table name already exists"
    default_remediation = "Drop the view or write to a different table name."


class TableExistsError(ConnectorError):
    default_message = "Target table already exists and save mode is CREATE"
    default_remediation = "Use save mode APPEND or OVERWRITE, or pick a new table name."


class TableCheckError(ConnectorError):
    default_message = "Target table could not be found after it was created"
    default_remediation = "Check the custom DDL creates the configured table name."


class CreateTableError(ConnectorError):
    default_message = "Failed to create table"
    default_remediation = "Check the generated or custom DDL and the session privileges."


class DropTableError(ConnectorError):
    default_message = "Failed to drop table"
    default_remediation = "Check no dependent objects block the drop."


class ExternalTableError(ConnectorError):
    default_message = "Failed to create or validate the external table"
    default_remediation = (
        "Verify the staged Parquet files are readable from the database and match "
        "the expected schema."
    )


class InferExternalTableError(ConnectorError):
    default_message = "Failed to infer an external table definition from staged files"
    default_remediation = "Verify the staged files are valid Parquet files."


class NoStagedFilesError(ConnectorError):
    default_message = "No staged Parquet files found at the configured address"
    default_remediation = "Check the staging address points at existing Parquet data."


class JobStatusError(ConnectorError):
    default_message = "Failed to record job status"
    default_remediation = "Check the job status table can be created in the target namespace."


# =============================================================================
# Staging store I/O
# =============================================================================


class CreateDirError(ConnectorError):
    default_message = "Failed to create staging directory"
    default_remediation = "Check staging store permissions and the staging address."


class RemoveDirError(ConnectorError):
    default_message = "Failed to remove staging directory"
    default_remediation = "Remove the staging directory manually."


class OpenWriteError(ConnectorError):
    default_message = "Failed to open staged file for write"
    default_remediation = "Check staging store permissions and free space."


class WriteError(ConnectorError):
    default_message = "Failed to write data block to staged file"
    default_remediation = "Check the data block matches the configured schema."


class CloseWriteError(ConnectorError):
    default_message = "Failed to close staged file"
    default_remediation = "Check staging store availability; the file may be incomplete."


class OpenReadError(ConnectorError):
    default_message = "Failed to open staged file for read"
    default_remediation = "Check the export finished and the staged files still exist."


class ReadError(ConnectorError):
    default_message = "Failed to read from staged file"
    default_remediation = "Check the staged file is a complete Parquet file."


class CloseReadError(ConnectorError):
    default_message = "Failed to close staged file after read"


class GlobError(ConnectorError):
    default_message = "Failed to list staged files"
    default_remediation = "Check the staging address is reachable."


# =============================================================================
# Commit / abort
# =============================================================================


class CommitError(ConnectorError):
    default_message = "Failed to load staged data into the target table"
    default_remediation = (
        "Nothing from this job was committed. Inspect the cause and re-run the job."
    )


class FaultToleranceError(ConnectorError):
    """Rejected-row fraction exceeded the configured tolerance."""

    default_message = "Rejected row fraction exceeded the configured tolerance"
    default_remediation = (
        "Inspect the reject table for malformed rows, fix the source data or raise "
        "failed_rows_percent_tolerance. The transaction was rolled back."
    )

    def __init__(self, message: str | None = None, outcome: object | None = None):
        super().__init__(message=message)
        self.outcome = outcome


class JobAbortedError(ConnectorError):
    default_message = "Write job was aborted"
    default_remediation = (
        "The surrounding job failed; no data from it was committed. Remove any "
        "leftover staging files if cleanup failed."
    )


# =============================================================================
# Read planning
# =============================================================================


class ExportError(ConnectorError):
    default_message = "Failed to export table data to the staging store"
    default_remediation = "Check the source table or query and the pushed-down filters."


class InitialSetupPartitioningError(ConnectorError):
    default_message = "Read setup produced no partitions"
    default_remediation = "Check the export wrote files to the staging address."


class ReadProtocolError(ConnectorError):
    default_message = "Partition read calls were made out of order"
    default_remediation = (
        "Call start_partition_read once, then read_row until it returns None, "
        "then end_partition_read."
    )
