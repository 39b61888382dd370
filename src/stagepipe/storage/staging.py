"""Parquet staging store on a pyarrow filesystem.

The staging store is the intermediate buffer between workers and the target
database. Addresses are the strings DuckDB itself understands: absolute local
paths or ``s3://bucket/key`` URIs. They are translated to pyarrow filesystem
paths internally.

One store instance serves one worker: it holds at most one open write file
and one open read stream at a time.
"""

import fnmatch
import os
from collections.abc import Iterator
from typing import Any

import pyarrow as pa
import pyarrow.fs as pafs
import pyarrow.parquet as pq
import structlog

from stagepipe.config import StagingConfig
from stagepipe.errors import (
    CloseReadError,
    CloseWriteError,
    CreateDirError,
    GlobError,
    OpenReadError,
    OpenWriteError,
    ReadError,
    RemoveDirError,
    WriteError,
)
from stagepipe.models.schemas import DataBlock, PartitionDescriptor

logger = structlog.get_logger()

STAGED_FILE_EXTENSION = "snappy.parquet"
# Suffix of a staged file until its writer is closed
INPROGRESS_SUFFIX = ".inprogress"
READ_BATCH_SIZE = 10_000


def _get_s3_filesystem(config: StagingConfig) -> pafs.S3FileSystem:
    """Create a PyArrow S3FileSystem from the staging credentials."""
    kwargs: dict[str, Any] = {"region": config.s3_region}
    if config.s3_endpoint:
        kwargs["endpoint_override"] = config.s3_endpoint
    if config.s3_access_key_id and config.s3_secret_access_key:
        kwargs["access_key"] = config.s3_access_key_id
        kwargs["secret_key"] = config.s3_secret_access_key.get_secret_value()
        if config.s3_session_token:
            kwargs["session_token"] = config.s3_session_token.get_secret_value()
    return pafs.S3FileSystem(**kwargs)


class StagingStore:
    """Reads and writes staged Parquet files for the pipes."""

    def __init__(
        self,
        config: StagingConfig,
        schema: pa.Schema | None = None,
        filesystem: pafs.FileSystem | None = None,
    ) -> None:
        self.config = config
        self.schema = schema
        if config.is_s3:
            self.address = config.address
            self.filesystem = filesystem or _get_s3_filesystem(config)
        else:
            self.address = os.path.abspath(config.address.removeprefix("file://"))
            self.filesystem = filesystem or pafs.LocalFileSystem()

        self._sink: pa.NativeFile | None = None
        self._writer: pq.ParquetWriter | None = None
        self._write_path: str | None = None

        self._read_handles: list[pa.NativeFile] = []
        self._rows: Iterator[tuple[Any, ...]] | None = None

    @property
    def is_local(self) -> bool:
        return not self.config.is_s3

    def _fs_path(self, address: str) -> str:
        if address.startswith("s3://"):
            return address[len("s3://"):]
        return address.removeprefix("file://")

    def _to_address(self, fs_path: str) -> str:
        return fs_path if self.is_local else f"s3://{fs_path}"

    def staged_file_path(self, directory: str, partition_id: str) -> str:
        """Address of the staged file written by one partition."""
        return f"{directory}/{partition_id}.{STAGED_FILE_EXTENSION}"

    # =========================================================================
    # Directories
    # =========================================================================

    def create_dir(self, path: str, permissions: int) -> None:
        """Create a directory (and parents). Existing directories are fine.

        Permissions are only applied to a directory this call creates, an
        existing directory keeps its mode.
        """
        fs_path = self._fs_path(path)
        try:
            if self.filesystem.get_file_info(fs_path).type == pafs.FileType.Directory:
                logger.debug("staging_dir_exists", path=path)
                return
            self.filesystem.create_dir(fs_path, recursive=True)
            if self.is_local:
                os.chmod(fs_path, permissions)
        except (OSError, pa.ArrowException) as e:
            raise CreateDirError(f"Failed to create staging directory {path}", cause=e) from e
        logger.debug("staging_dir_created", path=path, permissions=oct(permissions))

    def remove_dir(self, path: str) -> None:
        """Remove a directory and its contents. A missing directory is fine."""
        fs_path = self._fs_path(path)
        try:
            info = self.filesystem.get_file_info(fs_path)
            if info.type == pafs.FileType.NotFound:
                return
            self.filesystem.delete_dir(fs_path)
        except (OSError, pa.ArrowException) as e:
            raise RemoveDirError(f"Failed to remove staging directory {path}", cause=e) from e
        logger.debug("staging_dir_removed", path=path)

    def list_glob(self, pattern: str) -> list[str]:
        """List files matching a glob in the last path component, sorted."""
        directory, _, name_pattern = pattern.rpartition("/")
        try:
            selector = pafs.FileSelector(self._fs_path(directory), allow_not_found=True)
            infos = self.filesystem.get_file_info(selector)
        except (OSError, pa.ArrowException) as e:
            raise GlobError(f"Failed to list staged files matching {pattern}", cause=e) from e
        return sorted(
            self._to_address(info.path)
            for info in infos
            if info.type == pafs.FileType.File and fnmatch.fnmatch(info.base_name, name_pattern)
        )

    def row_group_count(self, path: str) -> int:
        try:
            with self.filesystem.open_input_file(self._fs_path(path)) as f:
                return pq.ParquetFile(f).metadata.num_row_groups
        except (OSError, pa.ArrowException) as e:
            raise OpenReadError(f"Failed to read Parquet metadata of {path}", cause=e) from e

    # =========================================================================
    # Write
    # =========================================================================

    def open_write_file(self, path: str) -> None:
        """Open a staged file for write.

        Data goes to ``<path>.inprogress`` and only appears under ``path``
        once ``close_write_file`` succeeds.
        """
        if self._writer is not None:
            raise OpenWriteError(
                f"Cannot open {path}: {self._write_path} is still open for write"
            )
        if self.schema is None:
            raise OpenWriteError(f"Cannot open {path}: no schema configured for writes")
        sink = None
        try:
            sink = self.filesystem.open_output_stream(self._fs_path(path) + INPROGRESS_SUFFIX)
            self._writer = pq.ParquetWriter(sink, self.schema, compression="snappy")
        except (OSError, pa.ArrowException) as e:
            if sink is not None:
                sink.close()
            raise OpenWriteError(f"Failed to open staged file {path}", cause=e) from e
        self._sink = sink
        self._write_path = path
        logger.debug("staged_file_opened", path=path)

    def write_block(self, block: DataBlock) -> None:
        """Append a block to the open file.

        On failure the partial file is discarded and no file stays open.
        """
        if self._writer is None or self.schema is None:
            raise WriteError("No staged file is open for write")
        if not block.rows:
            return
        width = len(self.schema)
        if any(len(row) != width for row in block.rows):
            self._discard_write()
            raise WriteError(
                f"Data block rows must have {width} values to match the schema"
            )
        try:
            columns = list(zip(*block.rows))
            arrays = [
                pa.array(list(column), type=field.type)
                for column, field in zip(columns, self.schema)
            ]
            table = pa.Table.from_arrays(arrays, schema=self.schema)
            self._writer.write_table(table)
        except (OSError, pa.ArrowException) as e:
            path = self._write_path
            self._discard_write()
            raise WriteError(f"Failed to write block to {path}", cause=e) from e

    def close_write_file(self) -> None:
        """Finish the open file and move it to its final name."""
        if self._writer is None or self._sink is None or self._write_path is None:
            raise CloseWriteError("No staged file is open for write")
        path = self._write_path
        fs_path = self._fs_path(path)
        try:
            self._writer.close()
            self._sink.close()
            self.filesystem.move(fs_path + INPROGRESS_SUFFIX, fs_path)
        except (OSError, pa.ArrowException) as e:
            self._discard_write()
            raise CloseWriteError(f"Failed to close staged file {path}", cause=e) from e
        self._writer = None
        self._sink = None
        self._write_path = None
        logger.debug("staged_file_closed", path=path)

    def _discard_write(self) -> None:
        """Close and delete the in-progress file. Failures are logged only."""
        path = self._write_path
        for resource in (self._writer, self._sink):
            if resource is None:
                continue
            try:
                resource.close()
            except (OSError, pa.ArrowException) as e:
                logger.warning("staged_file_close_failed", path=path, error=str(e))
        self._writer = None
        self._sink = None
        self._write_path = None
        if path is None:
            return
        try:
            self.filesystem.delete_file(self._fs_path(path) + INPROGRESS_SUFFIX)
        except (OSError, pa.ArrowException) as e:
            logger.warning("staged_file_discard_failed", path=path, error=str(e))
            return
        logger.info("staged_file_discarded", path=path)

    # =========================================================================
    # Read
    # =========================================================================

    def open_read_stream(self, partition: PartitionDescriptor) -> None:
        if self._rows is not None:
            raise OpenReadError("A read stream is already open")
        handles: list[pa.NativeFile] = []
        files: list[tuple[pq.ParquetFile, list[int]]] = []
        try:
            for file_range in partition.ranges:
                handle = self.filesystem.open_input_file(self._fs_path(file_range.path))
                handles.append(handle)
                files.append((pq.ParquetFile(handle), file_range.row_groups))
        except (OSError, pa.ArrowException) as e:
            for handle in handles:
                handle.close()
            raise OpenReadError(
                f"Failed to open partition {partition.index} for read", cause=e
            ) from e
        self._read_handles = handles
        self._rows = self._iter_rows(files)
        logger.debug("read_stream_opened", partition=partition.index, files=len(files))

    def _iter_rows(
        self, files: list[tuple[pq.ParquetFile, list[int]]]
    ) -> Iterator[tuple[Any, ...]]:
        for parquet_file, row_groups in files:
            if not row_groups:
                continue
            for batch in parquet_file.iter_batches(
                batch_size=READ_BATCH_SIZE, row_groups=row_groups
            ):
                columns = [column.to_pylist() for column in batch.columns]
                yield from zip(*columns)

    def read_row(self) -> tuple[Any, ...] | None:
        """Next row of the open stream, or None at the end of the partition."""
        if self._rows is None:
            raise ReadError("No read stream is open")
        try:
            return next(self._rows, None)
        except (OSError, pa.ArrowException) as e:
            raise ReadError("Failed to read row from staged file", cause=e) from e

    def close_read_stream(self) -> None:
        handles = self._read_handles
        self._read_handles = []
        self._rows = None
        try:
            for handle in handles:
                handle.close()
        except (OSError, pa.ArrowException) as e:
            raise CloseReadError("Failed to close staged files", cause=e) from e
