"""Pipe construction and database session ownership."""

from collections.abc import Callable

import pyarrow as pa
import structlog

from stagepipe.config import DatabaseConfig, ReadConfig, StagingConfig, WriteConfig
from stagepipe.errors import ConnectorError
from stagepipe.models.schemas import PipeVariant, SchemaVariant, SessionMode, Version
from stagepipe.pipeline.read import ReadPipe
from stagepipe.pipeline.write import WritePipe
from stagepipe.storage.schema_tools import SchemaTools
from stagepipe.storage.session import VERSION_DEFAULT, DuckDBSession, get_version_or_default
from stagepipe.storage.staging import StagingStore
from stagepipe.storage.table_utils import TableUtils

logger = structlog.get_logger()

# information_schema introspection and nested types
SCHEMA_V2_MIN_VERSION = Version(0, 9, 0)
# DESCRIBE based external table inference
CURRENT_PIPE_MIN_VERSION = Version(1, 0, 0)


def select_variants(version: Version) -> tuple[SchemaVariant, PipeVariant]:
    """Schema negotiator and write pipe variants for a database version."""
    schema_variant = SchemaVariant.V2 if version >= SCHEMA_V2_MIN_VERSION else SchemaVariant.V1
    pipe_variant = PipeVariant.CURRENT if version >= CURRENT_PIPE_MIN_VERSION else PipeVariant.LEGACY
    return schema_variant, pipe_variant


class SessionPool:
    """At most one live session per mode, replaced when found closed."""

    def __init__(self, session_factory: Callable[[DatabaseConfig], DuckDBSession]) -> None:
        self.session_factory = session_factory
        self._sessions: dict[SessionMode, DuckDBSession] = {}

    def get(self, mode: SessionMode, config: DatabaseConfig) -> DuckDBSession:
        session = self._sessions.get(mode)
        if session is not None and not session.is_closed() and session.config == config:
            return session
        if session is not None and not session.is_closed():
            session.close()
        session = self.session_factory(config)
        self._sessions[mode] = session
        logger.debug("session_created", mode=mode.value, database=config.database)
        return session

    def close_all(self) -> None:
        """Close every pooled session. Close failures are logged."""
        for mode, session in list(self._sessions.items()):
            if not session.is_closed():
                try:
                    session.close()
                except ConnectorError as e:
                    logger.warning("session_close_failed", mode=mode.value, error=str(e))
        self._sessions.clear()


class PipeFactory:
    """Builds read and write pipes for one caller and owns their sessions."""

    def __init__(
        self,
        session_factory: Callable[[DatabaseConfig], DuckDBSession] = DuckDBSession,
        staging_factory: Callable[..., StagingStore] = StagingStore,
    ) -> None:
        self.sessions = SessionPool(session_factory)
        self.staging_factory = staging_factory

    def _variants(self, session: DuckDBSession, get_version: bool) -> tuple[SchemaVariant, PipeVariant]:
        version = get_version_or_default(session) if get_version else VERSION_DEFAULT
        schema_variant, pipe_variant = select_variants(version)
        logger.info(
            "pipe_variants_selected",
            version=str(version),
            schema_variant=schema_variant.value,
            pipe_variant=pipe_variant.value,
        )
        return schema_variant, pipe_variant

    def get_write_pipe(self, config: WriteConfig, get_version: bool = True) -> WritePipe:
        """Write pipe for a job.

        Workers should pass ``get_version=False`` so building the pipe does not
        connect to the database.
        """
        session = self.sessions.get(SessionMode.WRITE, config.database)
        schema_variant, pipe_variant = self._variants(session, get_version)
        schema_tools = SchemaTools(schema_variant)
        return WritePipe(
            config,
            session,
            self._staging(config.staging, config.column_schema),
            schema_tools,
            TableUtils(schema_tools, session),
            pipe_variant,
        )

    def get_read_pipe(self, config: ReadConfig, get_version: bool = True) -> ReadPipe:
        session = self.sessions.get(SessionMode.READ, config.database)
        schema_variant, _ = self._variants(session, get_version)
        return ReadPipe(config, session, self._staging(config.staging), SchemaTools(schema_variant))

    def _staging(self, config: StagingConfig, schema: pa.Schema | None = None) -> StagingStore:
        return self.staging_factory(config, schema)

    def close_sessions(self) -> None:
        self.sessions.close_all()
