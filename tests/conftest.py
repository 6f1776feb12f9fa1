"""Shared fixtures: deterministic embedding backend and in-memory storage."""

import hashlib
import re
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest

from code_context_mcp.core.chunking import ChunkingEngine
from code_context_mcp.core.embeddings import EmbeddingBackend, EmbeddingPipeline
from code_context_mcp.core.exceptions import BackendUnavailableError
from code_context_mcp.core.manager import ProjectIndexManager
from code_context_mcp.core.models import BoundarySpan
from code_context_mcp.core.snapshot import SnapshotStore
from code_context_mcp.core.vector_store import InMemoryVectorStore
from code_context_mcp.parsers.base import StructuralParser
from code_context_mcp.parsers.registry import ParserRegistry

TOKEN_RE = re.compile(r"[a-z0-9]+")


class FakeEmbeddingBackend(EmbeddingBackend):
    """Hashed bag-of-words vectors: texts sharing words score higher."""

    name = "fake:bag-of-words"

    def __init__(self, dim: int = 64, max_batch_size: int = 32) -> None:
        self.dim = dim
        self.max_batch_size = max_batch_size
        self.calls = 0
        self.texts_embedded = 0
        self.batch_sizes: list[int] = []
        # Raise a transient network error on the next N calls
        self.transient_failures = 0
        # Texts matching this predicate make the whole call fail as unavailable
        self.fail_when: Callable[[str], bool] | None = None
        # Raise the mapped exception (any type) on the given 1-based call number
        self.raise_at: dict[int, BaseException] = {}

    def dimension(self) -> int:
        return self.dim

    def vector_for(self, text: str) -> list[float]:
        vector = [0.0] * self.dim
        for token in TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha1(token.encode("utf-8")).digest()
            vector[int.from_bytes(digest[:4], "big") % self.dim] += 1.0
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.calls += 1
        self.batch_sizes.append(len(texts))
        error = self.raise_at.pop(self.calls, None)
        if error is not None:
            raise error
        if self.transient_failures > 0:
            self.transient_failures -= 1
            raise httpx.ConnectError("connection refused")
        if self.fail_when is not None and any(self.fail_when(t) for t in texts):
            raise BackendUnavailableError("backend offline")
        self.texts_embedded += len(texts)
        return [self.vector_for(text) for text in texts]


class CountingVectorStore(InMemoryVectorStore):
    """In-memory store that records every call by operation name."""

    def __init__(self, max_query_limit: int = 50) -> None:
        super().__init__(max_query_limit)
        self.calls: dict[str, int] = {}

    def _count_call(self, op: str) -> None:
        self.calls[op] = self.calls.get(op, 0) + 1

    @property
    def total_calls(self) -> int:
        return sum(self.calls.values())

    def reset_calls(self) -> None:
        self.calls.clear()

    async def ensure_collection(self, collection_id, dimension):
        self._count_call("ensure_collection")
        await super().ensure_collection(collection_id, dimension)

    async def collection_exists(self, collection_id):
        self._count_call("collection_exists")
        return await super().collection_exists(collection_id)

    async def upsert(self, collection_id, records):
        self._count_call("upsert")
        await super().upsert(collection_id, records)

    async def delete(self, collection_id, chunk_ids):
        self._count_call("delete")
        await super().delete(collection_id, chunk_ids)

    async def query(self, collection_id, vector, k):
        self._count_call("query")
        return await super().query(collection_id, vector, k)

    async def drop_collection(self, collection_id):
        self._count_call("drop_collection")
        await super().drop_collection(collection_id)

    def records(self, collection_id: str) -> list:
        collection = self._collections.get(collection_id)
        return list(collection.records.values()) if collection else []


class DefParser(StructuralParser):
    """Tiny Python boundary finder: one span per top-level def/class."""

    def __init__(self) -> None:
        super().__init__("python")

    def parse(self, text: str) -> list[BoundarySpan]:
        data = text.encode("utf-8")
        spans = []
        offsets = [m.start() for m in re.finditer(rb"^(def|class) ", data, re.M)]
        for i, start in enumerate(offsets):
            end = offsets[i + 1] if i + 1 < len(offsets) else len(data)
            newline = data.find(b"\n", start)
            header = data[start : newline if newline != -1 else len(data)]
            kind = "class" if header.startswith(b"class") else "function"
            name = re.match(rb"(?:def|class) (\w+)", header).group(1).decode()
            spans.append(BoundarySpan(kind, start, end, name))
        return spans


class CountingChunker(ChunkingEngine):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.calls = 0

    def chunk(self, content, language, file_path):
        self.calls += 1
        return super().chunk(content, language, file_path)


@pytest.fixture
def fake_backend() -> FakeEmbeddingBackend:
    return FakeEmbeddingBackend()


@pytest.fixture
def pipeline(fake_backend: FakeEmbeddingBackend) -> EmbeddingPipeline:
    return EmbeddingPipeline(fake_backend, backoff_base=0.0, backoff_max=0.0)


@pytest.fixture
def make_pipeline():
    """Pipelines over fresh fake backends, e.g. with another dimension."""

    def _make(dim: int = 64) -> EmbeddingPipeline:
        return EmbeddingPipeline(
            FakeEmbeddingBackend(dim), backoff_base=0.0, backoff_max=0.0
        )

    return _make


@pytest.fixture
def vector_store() -> CountingVectorStore:
    return CountingVectorStore()


@pytest.fixture
def registry() -> ParserRegistry:
    registry = ParserRegistry()
    registry.register_parser("python", DefParser())
    return registry


@pytest.fixture
def chunker(registry: ParserRegistry) -> CountingChunker:
    return CountingChunker(registry, max_chunk_lines=40, min_chunk_lines=2)


@pytest.fixture
def snapshot_dir(tmp_path: Path) -> Path:
    return tmp_path / "snapshots"


@pytest.fixture
def make_manager(snapshot_dir, pipeline, vector_store, chunker):
    """Build managers sharing storage, as a restarted server would."""

    def _make(max_projects: int = 10, **kwargs) -> ProjectIndexManager:
        return ProjectIndexManager(
            SnapshotStore(snapshot_dir),
            kwargs.pop("embeddings", pipeline),
            kwargs.pop("store", vector_store),
            kwargs.pop("chunker", chunker),
            max_projects=max_projects,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_project(tmp_path: Path):
    """Create a project directory from a {relative path: content} mapping."""

    def _make(name: str, files: dict[str, str]) -> Path:
        root = tmp_path / "projects" / name
        for rel_path, content in files.items():
            path = root / rel_path
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        root.mkdir(parents=True, exist_ok=True)
        return root.resolve()

    return _make
