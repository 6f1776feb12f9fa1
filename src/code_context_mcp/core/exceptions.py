"""Typed exception hierarchy for code-context-mcp.

Hierarchy
---------
CodeContextError (base)
├── NotFoundError            – unknown / never-indexed project, missing root
├── InvalidArgumentError     – malformed path, query or limit
├── SchemaMismatchError      – embedding dimension vs. existing collection
├── BackendUnavailableError  – backend unreachable after the retry budget
├── PartialIndexFailure      – some files indexed, others failed
├── CapacityError            – eviction could not proceed
├── EmbeddingError           – malformed embedding backend output
├── VectorStoreError         – non-transient vector store failure
└── ConfigError              – configuration / validation errors

Every error carries a stable ``kind`` string so the request boundary can
report ``{kind, message}`` without inspecting class names.
"""

from typing import Any


class CodeContextError(Exception):
    """Base exception for code-context-mcp."""

    kind = "internal"

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a structured payload."""
        return {"kind": self.kind, "message": self.message, "context": self.context}


class NotFoundError(CodeContextError):
    """Project, collection or path does not exist."""

    kind = "not_found"


class InvalidArgumentError(CodeContextError):
    """Request argument failed validation."""

    kind = "invalid_argument"


class SchemaMismatchError(CodeContextError):
    """Embedding dimension does not match an existing collection.

    Never resolved by silent coercion: the index has to be cleared and
    rebuilt explicitly.
    """

    kind = "schema_mismatch"


class BackendUnavailableError(CodeContextError):
    """Embedding backend or vector store unreachable (after retries)."""

    kind = "backend_unavailable"


class PartialIndexFailure(CodeContextError):
    """Some files were indexed while others failed.

    Non-fatal: committed files stay committed and the failed ones are
    picked up by the next run.
    """

    kind = "partial_index_failure"

    def __init__(
        self,
        message: str,
        failed_files: list[str] | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, context)
        self.failed_files = failed_files or []
        self.context.setdefault("failed_files", self.failed_files)


class CapacityError(CodeContextError):
    """No active project could be evicted to admit a new one."""

    kind = "capacity"


class EmbeddingError(CodeContextError):
    """Embedding backend returned unusable output."""

    kind = "embedding"


class VectorStoreError(CodeContextError):
    """Vector store operation failed for a non-transient reason."""

    kind = "vector_store"


class ConfigError(CodeContextError):
    """Configuration / validation errors."""

    kind = "config"
