"""Core functionality for Code Context MCP."""

from .exceptions import (
    BackendUnavailableError,
    CapacityError,
    CodeContextError,
    ConfigError,
    EmbeddingError,
    InvalidArgumentError,
    NotFoundError,
    PartialIndexFailure,
    SchemaMismatchError,
    VectorStoreError,
)

__all__ = [
    "BackendUnavailableError",
    "CapacityError",
    "CodeContextError",
    "ConfigError",
    "EmbeddingError",
    "InvalidArgumentError",
    "NotFoundError",
    "PartialIndexFailure",
    "SchemaMismatchError",
    "VectorStoreError",
]
