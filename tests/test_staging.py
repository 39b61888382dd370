"""Tests for the Parquet staging store."""

import os
from pathlib import Path

import pyarrow as pa
import pyarrow.parquet as pq
import pytest

from stagepipe.config import StagingConfig
from stagepipe.errors import (
    CloseWriteError,
    OpenReadError,
    OpenWriteError,
    ReadError,
    WriteError,
)
from stagepipe.models.schemas import DataBlock, FileRange, PartitionDescriptor
from stagepipe.storage.staging import StagingStore


@pytest.fixture
def store(temp_dir: Path, sample_schema: pa.Schema) -> StagingStore:
    return StagingStore(StagingConfig(address=str(temp_dir / "stage")), sample_schema)


class TestDirectories:
    """Tests for staging directory management."""

    def test_create_dir_is_idempotent(self, store: StagingStore) -> None:
        store.create_dir(store.address, 0o750)
        store.create_dir(store.address, 0o750)
        assert Path(store.address).is_dir()

    def test_create_dir_applies_permissions(self, store: StagingStore) -> None:
        store.create_dir(store.address, 0o750)
        assert os.stat(store.address).st_mode & 0o777 == 0o750

    def test_create_dir_keeps_existing_mode(self, store: StagingStore) -> None:
        os.makedirs(store.address)
        os.chmod(store.address, 0o755)
        store.create_dir(store.address, 0o700)
        assert os.stat(store.address).st_mode & 0o777 == 0o755

    def test_create_dir_only_changes_new_leaf(self, store: StagingStore) -> None:
        os.makedirs(store.address)
        os.chmod(store.address, 0o755)
        job_dir = f"{store.address}/job"
        store.create_dir(job_dir, 0o700)
        assert os.stat(store.address).st_mode & 0o777 == 0o755
        assert os.stat(job_dir).st_mode & 0o777 == 0o700

    def test_remove_dir(self, store: StagingStore) -> None:
        store.create_dir(store.address, 0o700)
        (Path(store.address) / "leftover.txt").write_text("x")
        store.remove_dir(store.address)
        assert not Path(store.address).exists()

    def test_remove_missing_dir_is_noop(self, store: StagingStore) -> None:
        store.remove_dir(store.address)
        assert not Path(store.address).exists()

    def test_address_is_absolute(self) -> None:
        store = StagingStore(StagingConfig(address="relative/stage"))
        assert os.path.isabs(store.address)
        assert store.address.endswith("relative/stage")


class TestWrite:
    """Tests for staged file writes."""

    def test_staged_file_path(self, store: StagingStore) -> None:
        assert store.staged_file_path(store.address, "7") == f"{store.address}/7.snappy.parquet"

    def test_write_and_close(self, store: StagingStore) -> None:
        store.create_dir(store.address, 0o700)
        path = store.staged_file_path(store.address, "0")
        store.open_write_file(path)
        store.write_block(DataBlock(rows=[(1, "a", 1.5), (2, None, None)]))
        store.write_block(DataBlock(rows=[]))
        store.write_block(DataBlock(rows=[(3, "c", 3.0)]))
        store.close_write_file()

        table = pq.read_table(path)
        assert table.to_pylist() == [
            {"id": 1, "name": "a", "amount": 1.5},
            {"id": 2, "name": None, "amount": None},
            {"id": 3, "name": "c", "amount": 3.0},
        ]
        assert pq.ParquetFile(path).metadata.row_group(0).column(0).compression == "SNAPPY"

    def test_only_closed_file_is_listed(self, store: StagingStore) -> None:
        store.create_dir(store.address, 0o700)
        path = store.staged_file_path(store.address, "0")
        store.open_write_file(path)
        store.write_block(DataBlock(rows=[(1, "a", 1.0)]))
        assert store.list_glob(f"{store.address}/*.snappy.parquet") == []
        assert not Path(path).exists()

        store.close_write_file()

        assert store.list_glob(f"{store.address}/*.snappy.parquet") == [path]
        assert os.listdir(store.address) == ["0.snappy.parquet"]

    def test_row_width_mismatch(self, store: StagingStore) -> None:
        store.create_dir(store.address, 0o700)
        store.open_write_file(store.staged_file_path(store.address, "0"))
        with pytest.raises(WriteError, match="3 values"):
            store.write_block(DataBlock(rows=[(1, "a")]))

    def test_type_mismatch(self, store: StagingStore) -> None:
        store.create_dir(store.address, 0o700)
        store.open_write_file(store.staged_file_path(store.address, "0"))
        with pytest.raises(WriteError):
            store.write_block(DataBlock(rows=[("not-a-number", "a", 1.0)]))

    def test_failed_write_discards_partial_file(self, store: StagingStore) -> None:
        store.create_dir(store.address, 0o700)
        store.open_write_file(store.staged_file_path(store.address, "0"))
        store.write_block(DataBlock(rows=[(1, "a", 1.0)]))
        with pytest.raises(WriteError):
            store.write_block(DataBlock(rows=[("not-a-number", "a", 1.0)]))

        assert os.listdir(store.address) == []
        # Nothing is left open, so the next partition can be written
        store.open_write_file(store.staged_file_path(store.address, "1"))
        store.write_block(DataBlock(rows=[(2, "b", 2.0)]))
        store.close_write_file()
        assert os.listdir(store.address) == ["1.snappy.parquet"]

    def test_open_twice(self, store: StagingStore) -> None:
        store.create_dir(store.address, 0o700)
        store.open_write_file(store.staged_file_path(store.address, "0"))
        with pytest.raises(OpenWriteError, match="still open"):
            store.open_write_file(store.staged_file_path(store.address, "1"))

    def test_open_in_missing_parent_fails(self, store: StagingStore, temp_dir: Path) -> None:
        blocker = temp_dir / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(OpenWriteError):
            store.open_write_file(str(blocker / "0.snappy.parquet"))

    def test_write_without_open(self, store: StagingStore) -> None:
        with pytest.raises(WriteError):
            store.write_block(DataBlock(rows=[(1, "a", 1.0)]))
        with pytest.raises(CloseWriteError):
            store.close_write_file()

    def test_open_without_schema(self, temp_dir: Path) -> None:
        store = StagingStore(StagingConfig(address=str(temp_dir)))
        with pytest.raises(OpenWriteError, match="no schema"):
            store.open_write_file(str(temp_dir / "0.snappy.parquet"))


class TestGlob:
    def test_list_glob_sorted_and_filtered(self, store: StagingStore) -> None:
        store.create_dir(store.address, 0o700)
        for name in ["b.parquet", "a.parquet", "notes.txt"]:
            (Path(store.address) / name).write_bytes(b"")
        assert store.list_glob(f"{store.address}/*.parquet") == [
            f"{store.address}/a.parquet",
            f"{store.address}/b.parquet",
        ]

    def test_list_glob_missing_dir(self, store: StagingStore) -> None:
        assert store.list_glob(f"{store.address}/*.parquet") == []


class TestRead:
    """Tests for partition read streams."""

    def _write_file(self, path: Path, n_rows: int, row_group_size: int) -> None:
        table = pa.table({"id": list(range(n_rows)), "name": [f"n{i}" for i in range(n_rows)]})
        pq.write_table(table, path, row_group_size=row_group_size)

    def test_read_selected_row_groups(self, store: StagingStore, temp_dir: Path) -> None:
        path = temp_dir / "data.parquet"
        self._write_file(path, 10, 2)
        assert store.row_group_count(str(path)) == 5

        store.open_read_stream(PartitionDescriptor(0, (FileRange(str(path), 1, 2),)))
        rows = []
        while (row := store.read_row()) is not None:
            rows.append(row)
        store.close_read_stream()
        assert rows == [(2, "n2"), (3, "n3"), (4, "n4"), (5, "n5")]

    def test_read_across_files(self, store: StagingStore, temp_dir: Path) -> None:
        first = temp_dir / "a.parquet"
        second = temp_dir / "b.parquet"
        self._write_file(first, 2, 2)
        self._write_file(second, 3, 3)
        partition = PartitionDescriptor(
            0, (FileRange(str(first), 0, 0), FileRange(str(second), 0, 0))
        )
        store.open_read_stream(partition)
        rows = [store.read_row() for _ in range(5)]
        assert store.read_row() is None
        store.close_read_stream()
        assert [r[0] for r in rows if r] == [0, 1, 0, 1, 2]

    def test_empty_partition(self, store: StagingStore) -> None:
        store.open_read_stream(PartitionDescriptor(0))
        assert store.read_row() is None
        store.close_read_stream()

    def test_open_missing_file(self, store: StagingStore, temp_dir: Path) -> None:
        partition = PartitionDescriptor(0, (FileRange(str(temp_dir / "missing.parquet"), 0, 0),))
        with pytest.raises(OpenReadError):
            store.open_read_stream(partition)

    def test_read_without_stream(self, store: StagingStore) -> None:
        with pytest.raises(ReadError):
            store.read_row()

    def test_open_twice(self, store: StagingStore) -> None:
        store.open_read_stream(PartitionDescriptor(0))
        with pytest.raises(OpenReadError):
            store.open_read_stream(PartitionDescriptor(1))
