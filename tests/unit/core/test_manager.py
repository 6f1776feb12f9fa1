"""Tests for ProjectIndexManager: incremental indexing, search and residency."""

import asyncio
import time

import pytest

from code_context_mcp.core.exceptions import (
    BackendUnavailableError,
    CapacityError,
    InvalidArgumentError,
    NotFoundError,
    SchemaMismatchError,
    VectorStoreError,
)
from code_context_mcp.core.manager import canonical_project_key, is_all_target
from code_context_mcp.core.models import ProjectState, collection_id_for

PARSER_FILES = {
    "src/parser.py": "def parse_tokens(stream):\n    tokens = stream.split()\n    return tokens\n",
    "src/lexer.py": "def read_characters(source):\n    chars = list(source)\n    return chars\n",
    "README.txt": "Tokenizer utilities\nfor parsing input streams\n",
}

STORAGE_FILES = {
    "db/cache.py": "def evict_cache_entry(cache, key):\n    cache.pop(key)\n    return cache\n",
    "db/disk.py": "def write_block_to_disk(block):\n    handle = open(block)\n    return handle\n",
}


def _numbered_files(count: int) -> dict[str, str]:
    return {f"f{i}.py": f"def func_{i}():\n    return {i}\n" for i in range(count)}


@pytest.mark.asyncio
class TestIncrementalIndexing:
    """Only changed files are chunked, embedded and written."""

    async def test_first_index(self, make_manager, make_project, vector_store):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)

        result = await manager.index(str(root))

        assert result.files_indexed == 3
        assert result.files_unchanged == 0
        assert result.failed_files == []
        assert result.error is None
        assert result.collection_id == collection_id_for(root)
        assert result.chunk_count == len(vector_store.records(result.collection_id))
        assert manager.state_of(root) == ProjectState.INDEXED

    async def test_unchanged_reindex_does_no_work(
        self, make_manager, make_project, fake_backend, vector_store, chunker
    ):
        manager = make_manager()
        files = dict(PARSER_FILES, **{"copy/parser.py": PARSER_FILES["src/parser.py"]})
        root = make_project("alpha", files)
        await manager.index(str(root))
        before = await manager.snapshot_store.load(root)
        calls, chunked = fake_backend.calls, chunker.calls
        vector_store.reset_calls()

        result = await manager.index(str(root))

        assert result.files_indexed == 0
        assert result.files_unchanged == 4
        assert fake_backend.calls == calls
        assert chunker.calls == chunked
        assert vector_store.total_calls == 0
        after = await manager.snapshot_store.load(root)
        assert after.files == before.files

    async def test_identical_files_get_distinct_chunks(
        self, make_manager, make_project, vector_store
    ):
        manager = make_manager()
        body = "def same():\n    return 1\n"
        root = make_project("alpha", {"a.py": body, "b.py": body})

        result = await manager.index(str(root))

        records = vector_store.records(result.collection_id)
        assert len(records) == 2
        assert {r.payload["file_path"] for r in records} == {"a.py", "b.py"}

    async def test_modified_file_is_the_only_one_reprocessed(
        self, make_manager, make_project, fake_backend, vector_store, chunker
    ):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)
        first = await manager.index(str(root))
        old_ids = {r.chunk_id for r in vector_store.records(first.collection_id)}
        before = await manager.snapshot_store.load(root)
        calls, chunked = fake_backend.calls, chunker.calls

        (root / "src/parser.py").write_text(
            "def parse_expression(text):\n    return evaluate(text)\n"
        )
        result = await manager.index(str(root))

        assert result.files_indexed == 1
        assert result.files_unchanged == 2
        assert chunker.calls == chunked + 1
        assert fake_backend.calls == calls + 1
        records = vector_store.records(result.collection_id)
        assert len(records) == result.chunk_count
        contents = " ".join(r.payload["content"] for r in records)
        assert "parse_expression" in contents
        assert "parse_tokens" not in contents
        # Untouched files keep their chunk ids
        assert len(old_ids & {r.chunk_id for r in records}) == len(records) - 1
        after = await manager.snapshot_store.load(root)
        for path in ("src/lexer.py", "README.txt"):
            assert after.files[path] == before.files[path]
        assert after.files["src/parser.py"] != before.files["src/parser.py"]

    async def test_removed_file_is_dropped(self, make_manager, make_project, vector_store):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)
        await manager.index(str(root))

        (root / "src/lexer.py").unlink()
        result = await manager.index(str(root))

        assert result.files_removed == 1
        assert result.files_indexed == 0
        paths = {r.payload["file_path"] for r in vector_store.records(result.collection_id)}
        assert paths == {"src/parser.py", "README.txt"}

    async def test_force_reembeds_everything(self, make_manager, make_project, fake_backend):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)
        await manager.index(str(root))
        calls = fake_backend.calls

        result = await manager.index(str(root), force=True)

        assert result.files_indexed == 3
        assert fake_backend.calls == calls + 3

    async def test_empty_project(self, make_manager, make_project):
        manager = make_manager()
        root = make_project("empty", {})

        result = await manager.index(str(root))

        assert result.files_indexed == 0
        assert result.chunk_count == 0
        assert manager.state_of(root) == ProjectState.INDEXED

    async def test_interrupted_run_resumes(
        self, make_manager, make_project, fake_backend, chunker
    ):
        root = make_project("alpha", _numbered_files(5))
        # Files are processed in path order; the third embedding call is cut short
        fake_backend.raise_at[3] = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await make_manager().index(str(root))

        calls, chunked = fake_backend.calls, chunker.calls
        restarted = make_manager()
        result = await restarted.index(str(root))

        assert result.files_unchanged == 2
        assert result.files_indexed == 3
        assert fake_backend.calls == calls + 3
        assert chunker.calls == chunked + 3
        assert result.chunk_count == 5


@pytest.mark.asyncio
class TestIndexFailures:
    async def test_partial_failure_is_reported_and_recovered(
        self, make_manager, make_project, fake_backend
    ):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)
        fake_backend.fail_when = lambda text: "read_characters" in text

        result = await manager.index(str(root))

        assert result.files_indexed == 2
        assert result.failed_files == ["src/lexer.py"]
        assert result.error["kind"] == "partial_index_failure"
        assert result.error["context"]["failed_files"] == ["src/lexer.py"]

        fake_backend.fail_when = None
        retry = await manager.index(str(root))

        assert retry.files_indexed == 1
        assert retry.files_unchanged == 2
        assert retry.failed_files == []

    async def test_unreachable_backend_fails_the_run(
        self, make_manager, make_project, fake_backend
    ):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)
        fake_backend.fail_when = lambda text: True

        with pytest.raises(BackendUnavailableError):
            await manager.index(str(root))

        assert manager.state_of(root) == ProjectState.UNINDEXED
        with pytest.raises(NotFoundError):
            await manager.search(str(root), "tokens")

    async def test_dimension_change_is_a_schema_mismatch(
        self, make_manager, make_project, make_pipeline, vector_store
    ):
        root = make_project("alpha", PARSER_FILES)
        await make_manager().index(str(root))

        manager = make_manager(embeddings=make_pipeline(dim=32))

        with pytest.raises(SchemaMismatchError):
            await manager.index(str(root), force=True)
        assert len(vector_store.records(collection_id_for(root))) > 0

    async def test_missing_directory(self, make_manager, tmp_path):
        with pytest.raises(NotFoundError):
            await make_manager().index(str(tmp_path / "missing"))

    @pytest.mark.parametrize("path", ["", "relative/path", "/work/../etc", "all", "/x/all"])
    async def test_invalid_index_paths(self, make_manager, path):
        with pytest.raises(InvalidArgumentError):
            await make_manager().index(path)


@pytest.mark.asyncio
class TestSearch:
    async def test_finds_matching_chunk(self, make_manager, make_project):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)
        await manager.index(str(root))

        hits = await manager.search(str(root), "parse tokens stream split", limit=3)

        assert hits[0].file == "src/parser.py"
        assert hits[0].project == str(root)
        assert hits[0].line_range == (1, 3)
        assert hits[0].symbol_name == "parse_tokens"
        assert "stream.split()" in hits[0].text
        assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)

    async def test_limit_bounds_results(self, make_manager, make_project):
        manager = make_manager()
        root = make_project("alpha", _numbered_files(8))
        await manager.index(str(root))

        assert len(await manager.search(str(root), "func return", limit=3)) == 3

    async def test_subdirectory_resolves_to_project(self, make_manager, make_project):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)
        await manager.index(str(root))

        hits = await manager.search(str(root / "src"), "read characters source")

        assert hits[0].file == "src/lexer.py"
        assert hits[0].project == str(root)

    async def test_cross_project_search(self, make_manager, make_project):
        manager = make_manager()
        alpha = make_project("alpha", PARSER_FILES)
        beta = make_project("beta", STORAGE_FILES)
        await manager.index(str(alpha))
        await manager.index(str(beta))

        scoped = await manager.search(str(alpha), "evict cache entry key", limit=10)
        merged = await manager.search(str(alpha), "evict cache entry key", cross_project=True)
        everything = await manager.search("all", "evict cache entry key")

        assert {h.project for h in scoped} == {str(alpha)}
        assert merged[0].project == str(beta)
        assert merged[0].file == "db/cache.py"
        assert {h.project for h in merged} == {str(alpha), str(beta)}
        assert [(h.project, h.file) for h in everything] == [
            (h.project, h.file) for h in merged
        ]

    async def test_search_all_with_nothing_indexed(self, make_manager):
        assert await make_manager().search("all", "anything") == []

    async def test_unindexed_project(self, make_manager, make_project):
        root = make_project("alpha", PARSER_FILES)
        with pytest.raises(NotFoundError):
            await make_manager().search(str(root), "tokens")

    @pytest.mark.parametrize(
        ("query", "limit"),
        [("", 5), ("   ", 5), ("ok", 0), ("ok", 51), ("ok", True), ("ok", "5"), ("ok", 2.5)],
    )
    async def test_invalid_arguments(self, make_manager, make_project, query, limit):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)
        await manager.index(str(root))

        with pytest.raises(InvalidArgumentError):
            await manager.search(str(root), query, limit=limit)


@pytest.mark.asyncio
class TestResidency:
    """The active set stays bounded and evicts least recently used projects."""

    async def test_capacity_two_evicts_oldest(self, make_manager, make_project, vector_store):
        manager = make_manager(max_projects=2)
        a = make_project("a", _numbered_files(1))
        b = make_project("b", _numbered_files(2))
        c = make_project("c", _numbered_files(3))
        await manager.index(str(a))
        await manager.index(str(b))

        result = await manager.index(str(c))

        assert result.evicted == [str(a)]
        assert manager.state_of(a) == ProjectState.EVICTED
        assert not await vector_store.collection_exists(collection_id_for(a))
        assert not manager.snapshot_store.path_for(a).exists()
        statuses = await manager.status("all")
        assert [s.project for s in statuses] == [str(c), str(b)]
        assert all(s.state == ProjectState.INDEXED for s in statuses)
        with pytest.raises(NotFoundError):
            await manager.search(str(a), "func")

    async def test_search_refreshes_recency(self, make_manager, make_project):
        manager = make_manager(max_projects=2)
        a = make_project("a", _numbered_files(1))
        b = make_project("b", _numbered_files(1))
        c = make_project("c", _numbered_files(1))
        await manager.index(str(a))
        await manager.index(str(b))
        await manager.search(str(a), "func")

        result = await manager.index(str(c))

        assert result.evicted == [str(b)]
        assert [s.project for s in await manager.status("all")] == [str(c), str(a)]

    async def test_reindex_of_evicted_project_starts_fresh(
        self, make_manager, make_project, fake_backend
    ):
        manager = make_manager(max_projects=1)
        a = make_project("a", _numbered_files(2))
        b = make_project("b", _numbered_files(1))
        await manager.index(str(a))
        await manager.index(str(b))

        result = await manager.index(str(a))

        assert result.files_indexed == 2
        assert result.evicted == [str(b)]

    async def test_busy_project_is_not_evicted(self, make_manager, make_project):
        manager = make_manager(max_projects=1)
        a = make_project("a", _numbered_files(1))
        b = make_project("b", _numbered_files(1))
        await manager.index(str(a))

        async with manager._lock_for(a):
            with pytest.raises(CapacityError):
                await manager.index(str(b))

        assert manager.state_of(a) == ProjectState.INDEXED

    async def test_restart_restores_active_projects(self, make_manager, make_project):
        manager = make_manager(max_projects=2)
        a = make_project("a", PARSER_FILES)
        b = make_project("b", STORAGE_FILES)
        await manager.index(str(a))
        await manager.index(str(b))

        restarted = make_manager(max_projects=2)
        await restarted.load()

        assert [s.project for s in await restarted.status("all")] == [str(b), str(a)]
        hits = await restarted.search(str(a), "parse tokens stream split")
        assert hits[0].file == "src/parser.py"

    async def test_restart_with_smaller_capacity_evicts(self, make_manager, make_project):
        manager = make_manager(max_projects=3)
        roots = [make_project(name, _numbered_files(1)) for name in "abc"]
        for root in roots:
            await manager.index(str(root))

        restarted = make_manager(max_projects=2)
        await restarted.load()

        assert [s.project for s in await restarted.status("all")] == [
            str(roots[2]),
            str(roots[1]),
        ]
        assert not restarted.snapshot_store.path_for(roots[0]).exists()


@pytest.mark.asyncio
class TestConcurrency:
    async def test_different_projects_index_concurrently(self, make_manager, make_project):
        manager = make_manager()
        a = make_project("a", PARSER_FILES)
        b = make_project("b", STORAGE_FILES)

        first, second = await asyncio.gather(manager.index(str(a)), manager.index(str(b)))

        assert first.files_indexed == 3
        assert second.files_indexed == 2

    async def test_same_project_runs_are_serialized(
        self, make_manager, make_project, fake_backend
    ):
        manager = make_manager()
        root = make_project("a", PARSER_FILES)

        results = await asyncio.gather(manager.index(str(root)), manager.index(str(root)))

        assert sorted(r.files_indexed for r in results) == [0, 3]
        assert fake_backend.calls == 3

    async def test_victim_with_a_queued_clear_is_not_evicted(
        self, make_manager, make_project
    ):
        manager = make_manager(max_projects=1)
        victim = make_project("v", _numbered_files(1))
        other = make_project("a", _numbered_files(1))
        await manager.index(str(victim))

        lock = manager._lock_for(victim)
        await lock.acquire()
        clearing = asyncio.create_task(manager.clear(str(victim)))
        await asyncio.sleep(0)
        # Lock is free again but clear() is still queued on it
        lock.release()

        with pytest.raises(CapacityError):
            await asyncio.wait_for(manager._admit(other, time.time()), timeout=2)
        assert await asyncio.wait_for(clearing, timeout=2) == {"cleared": [str(victim)]}

        result = await asyncio.wait_for(manager.index(str(other)), timeout=2)
        assert result.evicted == []
        assert manager.state_of(victim) == ProjectState.CLEARED


@pytest.mark.asyncio
class TestClearAndStatus:
    async def test_clear_project(self, make_manager, make_project, vector_store):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)
        await manager.index(str(root))

        assert await manager.clear(str(root)) == {"cleared": [str(root)]}

        assert not await vector_store.collection_exists(collection_id_for(root))
        assert manager.state_of(root) == ProjectState.CLEARED
        assert await manager.status("all") == []
        with pytest.raises(NotFoundError):
            await manager.search(str(root), "tokens")
        with pytest.raises(NotFoundError):
            await manager.clear(str(root))

    async def test_clear_all(self, make_manager, make_project):
        manager = make_manager()
        a = make_project("a", PARSER_FILES)
        b = make_project("b", STORAGE_FILES)
        await manager.index(str(a))
        await manager.index(str(b))

        cleared = await manager.clear("all")

        assert sorted(cleared["cleared"]) == sorted([str(a), str(b)])
        assert await manager.search("all", "tokens") == []

    async def test_cleared_project_can_be_reindexed(self, make_manager, make_project):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)
        await manager.index(str(root))
        await manager.clear(str(root))

        result = await manager.index(str(root))

        assert result.files_indexed == 3
        assert manager.state_of(root) == ProjectState.INDEXED

    async def test_status_of_indexed_project(self, make_manager, make_project):
        manager = make_manager()
        root = make_project("alpha", PARSER_FILES)
        result = await manager.index(str(root))

        (status,) = await manager.status(str(root))

        assert status.state == ProjectState.INDEXED
        assert status.file_count == 3
        assert status.chunk_count == result.chunk_count
        assert status.last_indexed_time is not None
        assert status.last_accessed_time is not None

    async def test_status_of_unknown_project(self, make_manager, tmp_path):
        (status,) = await make_manager().status(str(tmp_path / "nothing"))

        assert status.state == ProjectState.UNINDEXED
        assert status.file_count == 0
        assert status.last_indexed_time is None


@pytest.mark.asyncio
class TestErrorRecovery:
    """Failed steps leave state the next run can repair."""

    async def test_failed_delete_of_removed_file_is_retried(
        self, make_manager, make_project, vector_store, monkeypatch
    ):
        manager = make_manager()
        root = make_project(
            "alpha",
            {
                "keep.py": "def keep():\n    return 1\n",
                "gone.py": "def gone():\n    return 2\n",
            },
        )
        await manager.index(str(root))
        (root / "gone.py").unlink()

        async def failing_delete(collection_id, chunk_ids):
            raise VectorStoreError("store offline")

        monkeypatch.setattr(vector_store, "delete", failing_delete)
        result = await manager.index(str(root))

        assert result.files_removed == 0
        assert result.failed_files == ["gone.py"]
        assert result.error["kind"] == "partial_index_failure"
        persisted = await manager.snapshot_store.load(root)
        assert "gone.py" in persisted.files

        monkeypatch.undo()
        retry = await manager.index(str(root))

        assert retry.files_removed == 1
        assert retry.failed_files == []
        paths = {
            record.payload["file_path"]
            for record in vector_store.records(collection_id_for(root))
        }
        assert paths == {"keep.py"}

    async def test_unreadable_file_keeps_its_vectors(
        self, make_manager, make_project, vector_store
    ):
        manager = make_manager(max_file_size=200)
        root = make_project("alpha", PARSER_FILES)
        await manager.index(str(root))
        before = len(vector_store.records(collection_id_for(root)))
        (root / "src/lexer.py").write_text("# grown past the size limit\n" * 20)

        result = await manager.index(str(root))

        assert result.files_removed == 0
        assert result.files_unchanged == 2
        assert len(vector_store.records(collection_id_for(root))) == before
        (status,) = await manager.status(str(root))
        assert status.file_count == 3

    async def test_capacity_error_keeps_committed_files(
        self, make_manager, make_project, fake_backend
    ):
        manager = make_manager(max_projects=1)
        a = make_project("a", _numbered_files(1))
        b = make_project("b", _numbered_files(2))
        await manager.index(str(a))

        async with manager._lock_for(a):
            with pytest.raises(CapacityError):
                await manager.index(str(b))

        assert manager.state_of(b) == ProjectState.UNINDEXED
        persisted = await manager.snapshot_store.load(b)
        assert sorted(persisted.files) == ["f0.py", "f1.py"]
        with pytest.raises(NotFoundError):
            await manager.search(str(b), "func")

        calls = fake_backend.calls
        result = await manager.index(str(b))

        assert result.files_unchanged == 2
        assert result.files_indexed == 0
        assert fake_backend.calls == calls
        assert result.evicted == [str(a)]

    async def test_clear_all_covers_a_first_index_in_progress(
        self, make_manager, make_project, fake_backend, monkeypatch
    ):
        manager = make_manager()
        root = make_project("alpha", _numbered_files(3))
        paused = asyncio.Event()
        resume = asyncio.Event()
        embed_batch = fake_backend.embed_batch

        async def gated_embed_batch(texts):
            # Hold the run after its first file is committed
            if fake_backend.calls == 1:
                paused.set()
                await resume.wait()
            return await embed_batch(texts)

        monkeypatch.setattr(fake_backend, "embed_batch", gated_embed_batch)
        indexing = asyncio.create_task(manager.index(str(root)))
        await asyncio.wait_for(paused.wait(), timeout=2)
        assert manager.snapshot_store.path_for(root).exists()

        clearing = asyncio.create_task(manager.clear("all"))
        await asyncio.sleep(0)
        resume.set()
        await asyncio.wait_for(indexing, timeout=2)

        assert await asyncio.wait_for(clearing, timeout=2) == {"cleared": [str(root)]}
        assert not manager.snapshot_store.path_for(root).exists()
        restarted = make_manager()
        await restarted.load()
        assert await restarted.status("all") == []


class TestPathHelpers:
    def test_all_target(self):
        assert is_all_target("all")
        assert is_all_target("/some/where/all")
        assert not is_all_target("/some/where/allowed")

    def test_canonical_key_resolves(self, tmp_path):
        (tmp_path / "real").mkdir()
        assert canonical_project_key(str(tmp_path / "real" / ".")) == (tmp_path / "real").resolve()

    @pytest.mark.parametrize("path", ["", "  ", "rel", "/a/../b", None, 42])
    def test_rejects_bad_paths(self, path):
        with pytest.raises(InvalidArgumentError):
            canonical_project_key(path)
