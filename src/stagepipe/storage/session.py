"""DuckDB session used by the pipes for all coordinator-side SQL."""

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import duckdb
import structlog

from stagepipe.config import DatabaseConfig
from stagepipe.errors import (
    ConnectionDownError,
    ConnectorError,
    DatabaseError,
    SqlSyntaxError,
)
from stagepipe.models.schemas import Version, quote_literal

if TYPE_CHECKING:
    from stagepipe.storage.staging import StagingStore

logger = structlog.get_logger()

# Version assumed when detection is skipped or fails
VERSION_DEFAULT = Version(1, 1, 0)


@dataclass
class QueryResult:
    """Fully fetched result of a query."""

    columns: list[str] = field(default_factory=list)
    rows: list[tuple[Any, ...]] = field(default_factory=list)

    def fetchone(self) -> tuple[Any, ...] | None:
        return self.rows[0] if self.rows else None

    def scalar(self) -> Any:
        row = self.fetchone()
        return row[0] if row else None

    def column(self, name: str) -> list[Any]:
        index = self.columns.index(name)
        return [row[index] for row in self.rows]


class DuckDBSession:
    """Connection to the target DuckDB database with explicit transactions.

    The connection is opened lazily on first use, so a session can be built
    on a worker without touching the database.
    """

    def __init__(self, config: DatabaseConfig) -> None:
        self.config = config
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._closed = False
        self._in_transaction = False

    @property
    def conn(self) -> duckdb.DuckDBPyConnection:
        """Get or create the database connection."""
        if self._closed:
            raise ConnectionDownError("Session was closed")
        if self._conn is None:
            if self.config.database != ":memory:":
                Path(self.config.database).parent.mkdir(parents=True, exist_ok=True)
            try:
                self._conn = duckdb.connect(
                    self.config.database, read_only=self.config.read_only
                )
            except duckdb.Error as e:
                raise ConnectionDownError(
                    f"Failed to connect to {self.config.database}", cause=e
                ) from e
            logger.info("duckdb_connected", path=self.config.database)
        return self._conn

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @contextmanager
    def _translate_errors(self, sql: str) -> Iterator[None]:
        try:
            yield
        except ConnectorError:
            raise
        except duckdb.ConnectionException as e:
            raise ConnectionDownError(cause=e) from e
        except duckdb.ParserException as e:
            raise SqlSyntaxError(f"Syntax error in statement: {sql}", cause=e) from e
        except duckdb.Error as e:
            raise DatabaseError(f"Statement failed: {sql}", cause=e) from e

    def configure_session(self, staging: "StagingStore | None" = None) -> None:
        """Apply resource limits and staging store credentials to the session."""
        statements: list[str] = []
        if self.config.memory_limit_mb:
            statements.append(f"SET memory_limit = '{self.config.memory_limit_mb}MB'")
        if self.config.threads:
            statements.append(f"SET threads = {self.config.threads}")
        if staging is not None and staging.config.is_s3:
            cfg = staging.config
            statements.extend(["INSTALL httpfs", "LOAD httpfs"])
            statements.append(f"SET s3_region = {quote_literal(cfg.s3_region)}")
            if cfg.s3_endpoint:
                endpoint = cfg.s3_endpoint.split("://", 1)[-1]
                statements.append(f"SET s3_endpoint = {quote_literal(endpoint)}")
                statements.append("SET s3_url_style = 'path'")
                if cfg.s3_endpoint.startswith("http://"):
                    statements.append("SET s3_use_ssl = false")
            if cfg.s3_access_key_id and cfg.s3_secret_access_key:
                statements.append(f"SET s3_access_key_id = {quote_literal(cfg.s3_access_key_id)}")
                statements.append(
                    "SET s3_secret_access_key = "
                    + quote_literal(cfg.s3_secret_access_key.get_secret_value())
                )
            if cfg.s3_session_token:
                statements.append(
                    "SET s3_session_token = "
                    + quote_literal(cfg.s3_session_token.get_secret_value())
                )
        for sql in statements:
            # Credentials must not end up in error messages
            with self._translate_errors(sql.split("=")[0]):
                self.conn.execute(sql)
        logger.debug("session_configured", statements=len(statements))

    def execute(self, sql: str, params: list[Any] | None = None) -> None:
        """Execute a statement. Runs inside the open transaction, if any."""
        logger.debug("sql_execute", sql=sql)
        with self._translate_errors(sql):
            if params:
                self.conn.execute(sql, params)
            else:
                self.conn.execute(sql)

    def execute_update(self, sql: str, params: list[Any] | None = None) -> int:
        """Execute a DML statement without committing it.

        Opens a transaction if none is active. Returns the affected row count.
        """
        self._begin()
        logger.debug("sql_execute_update", sql=sql)
        with self._translate_errors(sql):
            cursor = self.conn.execute(sql, params) if params else self.conn.execute(sql)
            row = cursor.fetchone()
        return int(row[0]) if row and row[0] is not None else 0

    def query(self, sql: str, params: list[Any] | None = None) -> QueryResult:
        logger.debug("sql_query", sql=sql)
        with self._translate_errors(sql):
            cursor = self.conn.execute(sql, params) if params else self.conn.execute(sql)
            columns = [d[0] for d in cursor.description] if cursor.description else []
            rows = cursor.fetchall()
        return QueryResult(columns=columns, rows=rows)

    def _begin(self) -> None:
        if self._in_transaction:
            return
        with self._translate_errors("BEGIN TRANSACTION"):
            self.conn.execute("BEGIN TRANSACTION")
        self._in_transaction = True

    def commit(self) -> None:
        if not self._in_transaction:
            return
        with self._translate_errors("COMMIT"):
            self.conn.execute("COMMIT")
        self._in_transaction = False
        logger.debug("transaction_committed")

    def rollback(self) -> None:
        if not self._in_transaction:
            return
        self._in_transaction = False
        with self._translate_errors("ROLLBACK"):
            self.conn.execute("ROLLBACK")
        logger.debug("transaction_rolled_back")

    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Close the database connection. Open transactions are rolled back."""
        if self._conn is not None:
            try:
                self._conn.close()
            except duckdb.Error as e:
                raise ConnectionDownError("Failed to close session", cause=e) from e
            finally:
                self._conn = None
            logger.info("duckdb_closed", path=self.config.database)
        self._in_transaction = False
        self._closed = True


def get_version_or_default(session: DuckDBSession) -> Version:
    """Detect the DuckDB engine version, falling back to VERSION_DEFAULT."""
    try:
        result = session.query("SELECT version()")
        version = Version.parse(str(result.scalar()))
    except (ConnectorError, ValueError) as e:
        logger.warning(
            "version_detection_failed",
            error=str(e),
            default=str(VERSION_DEFAULT),
        )
        return VERSION_DEFAULT
    logger.info("duckdb_version_detected", version=str(version))
    return version
