"""Tests for pipe construction, variant selection and session pooling."""

from collections.abc import Callable
from unittest.mock import MagicMock

import pytest

from stagepipe.config import DatabaseConfig, ReadConfig, StagingConfig, WriteConfig
from stagepipe.errors import ConnectionDownError
from stagepipe.models.schemas import PipeVariant, SchemaVariant, SessionMode, TableName, Version
from stagepipe.pipeline.factory import PipeFactory, SessionPool, select_variants
from stagepipe.storage.session import QueryResult


def _mock_session_factory(version: str | None = None) -> MagicMock:
    """Session factory whose sessions report ``version`` and are never closed."""

    def _build(config: DatabaseConfig) -> MagicMock:
        session = MagicMock()
        session.config = config
        session.is_closed.return_value = False
        if version is not None:
            session.query.return_value = QueryResult(columns=["version()"], rows=[(version,)])
        return session

    return MagicMock(side_effect=_build)


class TestSelectVariants:
    @pytest.mark.parametrize(
        "version,expected",
        [
            (Version(0, 8, 1), (SchemaVariant.V1, PipeVariant.LEGACY)),
            (Version(0, 9, 0), (SchemaVariant.V2, PipeVariant.LEGACY)),
            (Version(0, 10, 3), (SchemaVariant.V2, PipeVariant.LEGACY)),
            (Version(1, 0, 0), (SchemaVariant.V2, PipeVariant.CURRENT)),
            (Version(1, 1, 0), (SchemaVariant.V2, PipeVariant.CURRENT)),
        ],
    )
    def test_thresholds(self, version: Version, expected: tuple[SchemaVariant, PipeVariant]) -> None:
        assert select_variants(version) == expected


class TestPipeFactory:
    """Tests for building pipes."""

    def test_skipping_version_does_not_query(self, write_config: Callable[..., WriteConfig]) -> None:
        session_factory = _mock_session_factory()
        factory = PipeFactory(session_factory=session_factory)

        pipe = factory.get_write_pipe(write_config(), get_version=False)

        pipe.session.query.assert_not_called()
        assert pipe.schema_tools.variant == SchemaVariant.V2
        assert pipe.variant == PipeVariant.CURRENT

    def test_old_version_selects_legacy(self, write_config: Callable[..., WriteConfig]) -> None:
        factory = PipeFactory(session_factory=_mock_session_factory("v0.8.1"))

        pipe = factory.get_write_pipe(write_config())

        assert pipe.schema_tools.variant == SchemaVariant.V1
        assert pipe.variant == PipeVariant.LEGACY
        assert pipe.table_utils.schema_tools is pipe.schema_tools

    def test_unreadable_version_uses_default(self, write_config: Callable[..., WriteConfig]) -> None:
        session_factory = _mock_session_factory()
        factory = PipeFactory(session_factory=session_factory)
        pipe = factory.get_write_pipe(write_config(), get_version=False)
        pipe.session.query.side_effect = ConnectionDownError()

        pipe = factory.get_write_pipe(write_config())

        assert pipe.variant == PipeVariant.CURRENT

    def test_real_database(self, factory: PipeFactory, write_config: Callable[..., WriteConfig]) -> None:
        pipe = factory.get_write_pipe(write_config())
        assert pipe.schema_tools.variant == SchemaVariant.V2
        assert pipe.variant == PipeVariant.CURRENT

    def test_staging_store_gets_schema(
        self, factory: PipeFactory, write_config: Callable[..., WriteConfig]
    ) -> None:
        config = write_config()
        pipe = factory.get_write_pipe(config, get_version=False)
        assert pipe.staging.schema == config.column_schema
        assert pipe.staging.config == config.staging

    def test_read_pipe(
        self,
        factory: PipeFactory,
        database_config: DatabaseConfig,
        staging_config: StagingConfig,
    ) -> None:
        config = ReadConfig(database=database_config, staging=staging_config, table=TableName(name="t"))
        pipe = factory.get_read_pipe(config)
        assert pipe.schema_tools.variant == SchemaVariant.V2
        assert pipe.staging.schema is None

    def test_read_and_write_use_separate_sessions(
        self,
        factory: PipeFactory,
        write_config: Callable[..., WriteConfig],
        database_config: DatabaseConfig,
        staging_config: StagingConfig,
    ) -> None:
        writer = factory.get_write_pipe(write_config(), get_version=False)
        reader = factory.get_read_pipe(
            ReadConfig(database=database_config, staging=staging_config, table=TableName(name="t")),
            get_version=False,
        )
        assert writer.session is not reader.session

    def test_close_sessions(self, write_config: Callable[..., WriteConfig]) -> None:
        factory = PipeFactory(session_factory=_mock_session_factory())
        pipe = factory.get_write_pipe(write_config(), get_version=False)

        factory.close_sessions()

        pipe.session.close.assert_called_once()


class TestSessionPool:
    """Tests for session reuse."""

    def test_reuses_open_session(self, database_config: DatabaseConfig) -> None:
        session_factory = _mock_session_factory()
        pool = SessionPool(session_factory)

        first = pool.get(SessionMode.WRITE, database_config)
        second = pool.get(SessionMode.WRITE, database_config)

        assert first is second
        session_factory.assert_called_once_with(database_config)

    def test_replaces_closed_session(self, database_config: DatabaseConfig) -> None:
        pool = SessionPool(_mock_session_factory())
        first = pool.get(SessionMode.WRITE, database_config)
        first.is_closed.return_value = True

        second = pool.get(SessionMode.WRITE, database_config)

        assert second is not first
        first.close.assert_not_called()

    def test_replaces_session_for_other_database(
        self, database_config: DatabaseConfig
    ) -> None:
        pool = SessionPool(_mock_session_factory())
        first = pool.get(SessionMode.WRITE, database_config)

        other = database_config.model_copy(update={"database": ":memory:"})
        second = pool.get(SessionMode.WRITE, other)

        assert second is not first
        first.close.assert_called_once()

    def test_modes_are_independent(self, database_config: DatabaseConfig) -> None:
        pool = SessionPool(_mock_session_factory())
        assert pool.get(SessionMode.READ, database_config) is not pool.get(
            SessionMode.WRITE, database_config
        )

    def test_close_all_logs_failures(self, database_config: DatabaseConfig) -> None:
        pool = SessionPool(_mock_session_factory())
        failing = pool.get(SessionMode.READ, database_config)
        failing.close.side_effect = ConnectionDownError()
        healthy = pool.get(SessionMode.WRITE, database_config)

        pool.close_all()

        healthy.close.assert_called_once()
