"""Tests for durable snapshot storage."""

from pathlib import Path

import pytest

from code_context_mcp.core.models import FileRecord, ProjectSnapshot, collection_id_for
from code_context_mcp.core.snapshot import SnapshotStore


def _snapshot(key: Path, files: int = 2) -> ProjectSnapshot:
    return ProjectSnapshot(
        project_key=key,
        collection_id=collection_id_for(key),
        files={
            f"src/f{i}.py": FileRecord(f"src/f{i}.py", f"hash{i}", [f"c{i}a", f"c{i}b"], 10.0 + i)
            for i in range(files)
        },
        created_at=1.0,
        last_accessed_at=2.0,
        embedding_model="fake",
        embedding_dimension=64,
    )


@pytest.mark.asyncio
class TestSnapshotStore:
    """Save/load/delete behaviour of SnapshotStore."""

    async def test_save_then_load(self, tmp_path):
        store = SnapshotStore(tmp_path / "snaps")
        snapshot = _snapshot(Path("/work/alpha"))

        await store.save(snapshot)
        loaded = await store.load(Path("/work/alpha"))

        assert loaded == snapshot
        assert loaded.chunk_count == 4
        assert loaded.last_indexed_at == 11.0

    async def test_missing_snapshot_is_none(self, tmp_path):
        store = SnapshotStore(tmp_path)
        assert await store.load(Path("/nowhere")) is None
        assert await store.load_all() == []

    async def test_file_named_after_collection(self, tmp_path):
        store = SnapshotStore(tmp_path)
        key = Path("/work/alpha")
        await store.save(_snapshot(key))

        assert store.path_for(key).name == f"{collection_id_for(key)}.json"
        assert store.path_for(key).exists()
        assert not list(tmp_path.glob("*.tmp"))

    async def test_overwrite_replaces_previous(self, tmp_path):
        store = SnapshotStore(tmp_path)
        key = Path("/work/alpha")
        await store.save(_snapshot(key, files=3))
        await store.save(_snapshot(key, files=1))

        loaded = await store.load(key)
        assert list(loaded.files) == ["src/f0.py"]

    async def test_load_all_skips_corrupt(self, tmp_path):
        store = SnapshotStore(tmp_path)
        await store.save(_snapshot(Path("/work/a")))
        await store.save(_snapshot(Path("/work/b")))
        (tmp_path / "code_index_broken.json").write_text("{not json")

        loaded = await store.load_all()

        assert sorted(str(s.project_key) for s in loaded) == ["/work/a", "/work/b"]

    async def test_delete(self, tmp_path):
        store = SnapshotStore(tmp_path)
        key = Path("/work/alpha")
        await store.save(_snapshot(key))

        assert await store.delete(key) is True
        assert await store.load(key) is None
        assert await store.delete(key) is False


class TestCollectionIds:
    def test_deterministic_and_distinct(self):
        a = collection_id_for(Path("/work/a"))
        assert a == collection_id_for(Path("/work/a"))
        assert a != collection_id_for(Path("/work/b"))
        assert a.startswith("code_index_")
