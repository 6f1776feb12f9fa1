"""Data models for Code Context MCP."""

import hashlib
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

from ..config.defaults import COLLECTION_PREFIX


class SymbolKind(StrEnum):
    FUNCTION = "function"
    METHOD = "method"
    CLASS = "class"
    INTERFACE = "interface"
    STRUCT = "struct"
    ENUM = "enum"
    TRAIT = "trait"
    IMPL = "impl"
    TYPE = "type"
    MODULE = "module"
    WINDOW = "window"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | None) -> "SymbolKind":
        try:
            return cls(value) if value else cls.OTHER
        except ValueError:
            return cls.OTHER


class ProjectState(StrEnum):
    UNINDEXED = "unindexed"
    INDEXING = "indexing"
    INDEXED = "indexed"
    EVICTED = "evicted"
    CLEARED = "cleared"


def collection_id_for(project_key: Path) -> str:
    """Map a project key to its collection identifier.

    Deterministic for the lifetime of the system: the same canonical path
    always yields the same collection.
    """
    digest = hashlib.sha256(str(project_key).encode("utf-8")).hexdigest()
    return f"{COLLECTION_PREFIX}{digest[:16]}"


def compute_content_hash(data: bytes) -> str:
    """SHA-256 hex digest of raw file content."""
    return hashlib.sha256(data).hexdigest()


@dataclass
class CodeChunk:
    """A slice of a source file, the unit of embedding and retrieval."""

    file_path: str
    start_line: int
    end_line: int
    content: str
    language: str = "text"
    symbol_kind: SymbolKind = SymbolKind.OTHER
    symbol_name: str | None = None
    chunk_id: str = ""

    @property
    def line_count(self) -> int:
        return self.end_line - self.start_line + 1

    def embedding_text(self) -> str:
        """Text sent to the embedding backend."""
        if self.symbol_name:
            return f"{self.content}\n{self.symbol_name}"
        return self.content


@dataclass(frozen=True)
class BoundarySpan:
    """Structural unit reported by a parser: byte range plus kind/name."""

    kind: str
    start_byte: int
    end_byte: int
    name: str | None = None


@dataclass
class FileRecord:
    """Per-file indexing state, owned by its project's snapshot."""

    path: str
    content_hash: str
    chunk_ids: list[str] = field(default_factory=list)
    indexed_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "content_hash": self.content_hash,
            "chunk_ids": list(self.chunk_ids),
            "indexed_at": self.indexed_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileRecord":
        return cls(
            path=data["path"],
            content_hash=data["content_hash"],
            chunk_ids=list(data.get("chunk_ids", [])),
            indexed_at=float(data.get("indexed_at", 0.0)),
        )


@dataclass
class ProjectSnapshot:
    """Durable record of what is indexed for one project."""

    project_key: Path
    collection_id: str
    files: dict[str, FileRecord] = field(default_factory=dict)
    created_at: float = 0.0
    last_accessed_at: float = 0.0
    embedding_model: str | None = None
    embedding_dimension: int | None = None

    @property
    def chunk_count(self) -> int:
        return sum(len(record.chunk_ids) for record in self.files.values())

    @property
    def last_indexed_at(self) -> float | None:
        if not self.files:
            return None
        return max(record.indexed_at for record in self.files.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_key": str(self.project_key),
            "collection_id": self.collection_id,
            "created_at": self.created_at,
            "last_accessed_at": self.last_accessed_at,
            "embedding_model": self.embedding_model,
            "embedding_dimension": self.embedding_dimension,
            "files": {
                path: record.to_dict() for path, record in sorted(self.files.items())
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProjectSnapshot":
        return cls(
            project_key=Path(data["project_key"]),
            collection_id=data["collection_id"],
            files={
                path: FileRecord.from_dict(record)
                for path, record in data.get("files", {}).items()
            },
            created_at=float(data.get("created_at", 0.0)),
            last_accessed_at=float(data.get("last_accessed_at", 0.0)),
            embedding_model=data.get("embedding_model"),
            embedding_dimension=data.get("embedding_dimension"),
        )


@dataclass
class ChangeSet:
    """Disjoint file sets produced by diffing a scan against a snapshot."""

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    # Indexed before, still on disk, unreadable this run: records are kept
    skipped: list[str] = field(default_factory=list)

    @property
    def changed(self) -> list[str]:
        """Added and modified paths in stable path order."""
        return sorted(self.added + self.modified)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.removed)


@dataclass
class VectorRecord:
    """A chunk embedding plus the payload needed to render a hit."""

    chunk_id: str
    vector: list[float]
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorMatch:
    """A ranked vector store result."""

    chunk_id: str
    score: float
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchHit:
    """A search result returned to clients."""

    file: str
    project: str
    start_line: int
    end_line: int
    text: str
    score: float
    symbol_name: str | None = None
    symbol_kind: str | None = None

    @property
    def line_range(self) -> tuple[int, int]:
        return (self.start_line, self.end_line)

    def to_dict(self) -> dict[str, Any]:
        return {
            "file": self.file,
            "project": self.project,
            "line_range": [self.start_line, self.end_line],
            "text": self.text,
            "score": self.score,
            "symbol_name": self.symbol_name,
            "symbol_kind": self.symbol_kind,
        }


@dataclass
class IndexResult:
    """Outcome of one index run."""

    project: str
    collection_id: str
    files_indexed: int = 0
    files_removed: int = 0
    files_unchanged: int = 0
    chunk_count: int = 0
    failed_files: list[str] = field(default_factory=list)
    evicted: list[str] = field(default_factory=list)
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "collection_id": self.collection_id,
            "files_indexed": self.files_indexed,
            "files_removed": self.files_removed,
            "files_unchanged": self.files_unchanged,
            "chunk_count": self.chunk_count,
            "failed_files": list(self.failed_files),
            "evicted": list(self.evicted),
            "error": self.error,
        }


@dataclass
class ProjectStatus:
    """Status entry for one project."""

    project: str
    state: ProjectState
    collection_id: str
    file_count: int = 0
    chunk_count: int = 0
    last_indexed_time: float | None = None
    last_accessed_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "state": self.state.value,
            "collection_id": self.collection_id,
            "file_count": self.file_count,
            "chunk_count": self.chunk_count,
            "last_indexed_time": self.last_indexed_time,
            "last_accessed_time": self.last_accessed_time,
        }
