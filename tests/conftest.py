"""Pytest configuration and shared fixtures."""

import tempfile
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import duckdb
import pyarrow as pa
import pytest

# Configure structlog to not output during tests
import structlog

from stagepipe.config import DatabaseConfig, StagingConfig, WriteConfig
from stagepipe.models.schemas import DataBlock, TableName
from stagepipe.pipeline.factory import PipeFactory

structlog.configure(
    processors=[
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.BoundLogger,
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=False,
)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def database_config(temp_dir: Path) -> DatabaseConfig:
    """Target database in the temp dir, single threaded for stable row order."""
    return DatabaseConfig(database=str(temp_dir / "target.duckdb"), threads=1)


@pytest.fixture
def staging_config(temp_dir: Path) -> StagingConfig:
    return StagingConfig(address=str(temp_dir / "staging" / "job"))


@pytest.fixture
def sample_schema() -> pa.Schema:
    return pa.schema(
        [
            pa.field("id", pa.int64()),
            pa.field("name", pa.string()),
            pa.field("amount", pa.float64()),
        ]
    )


@pytest.fixture
def write_config(
    database_config: DatabaseConfig,
    staging_config: StagingConfig,
    sample_schema: pa.Schema,
) -> Callable[..., WriteConfig]:
    """Build a write config for table ``dummy`` and session ``id``."""

    def _build(**overrides: Any) -> WriteConfig:
        values: dict[str, Any] = {
            "database": database_config,
            "staging": staging_config,
            "table": TableName(name="dummy"),
            "column_schema": sample_schema,
            "session_id": "id",
        }
        values.update(overrides)
        return WriteConfig(**values)

    return _build


@pytest.fixture
def factory(temp_dir: Path) -> Generator[PipeFactory, None, None]:
    pipe_factory = PipeFactory()
    yield pipe_factory
    pipe_factory.close_sessions()


@pytest.fixture
def stage_partitions(factory: PipeFactory) -> Callable[[WriteConfig, dict[str, list[tuple[Any, ...]]]], None]:
    """Run the worker side of a write job, one pipe per partition."""

    def _stage(config: WriteConfig, partitions: dict[str, list[tuple[Any, ...]]]) -> None:
        for partition_id, rows in partitions.items():
            worker = factory.get_write_pipe(config, get_version=False)
            worker.start_partition_write(partition_id)
            worker.write_data(DataBlock(rows=rows))
            worker.end_partition_write()

    return _stage


@pytest.fixture
def query_target(database_config: DatabaseConfig) -> Callable[..., list[tuple[Any, ...]]]:
    """Run a query on the target database through a separate connection."""

    def _query(sql: str) -> list[tuple[Any, ...]]:
        conn = duckdb.connect(database_config.database)
        try:
            return conn.execute(sql).fetchall()
        finally:
            conn.close()

    return _query
