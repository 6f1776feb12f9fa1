"""Runtime settings for Code Context MCP."""

from pathlib import Path
from typing import Annotated, Literal

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from ..core.exceptions import ConfigError
from .defaults import (
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_FILE_EXTENSIONS,
    DEFAULT_MAX_PROJECTS,
    DEFAULT_MILVUS_ADDRESS,
    DEFAULT_OLLAMA_HOST,
    DEFAULT_OPENAI_BASE_URL,
    MAX_CHUNK_LINES,
    MAX_FILE_SIZE,
    MAX_QUERY_LIMIT,
    MIN_CHUNK_LINES,
    WINDOW_LINES,
    WINDOW_OVERLAP,
    get_default_data_dir,
)

EmbeddingBackendName = Literal["ollama", "openai", "sentence-transformers"]
VectorStoreName = Literal["lancedb", "milvus", "memory"]


class Settings(BaseSettings):
    """Server configuration, read from ``CODE_CONTEXT_*`` environment variables."""

    # Persisted state
    snapshot_dir: Path = Field(
        default_factory=lambda: get_default_data_dir() / "snapshots",
        description="Directory holding one snapshot file per project",
    )
    max_projects: int = Field(
        default=DEFAULT_MAX_PROJECTS, ge=1, description="Active project bound"
    )

    # Embedding backend
    embedding_backend: EmbeddingBackendName = "ollama"
    embedding_model: str = DEFAULT_EMBEDDING_MODEL
    embedding_dimension: int | None = Field(
        default=None, ge=1, description="Override when the model is unknown"
    )
    ollama_host: str = DEFAULT_OLLAMA_HOST
    openai_api_key: str | None = None
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    embedding_batch_size: int = Field(default=32, ge=1)
    embedding_max_attempts: int = Field(default=3, ge=1)
    embedding_backoff_base: float = Field(default=0.5, ge=0.0)
    embedding_backoff_max: float = Field(default=8.0, ge=0.0)
    embedding_timeout: float = Field(default=60.0, gt=0.0)

    # Vector store
    vector_store: VectorStoreName = "lancedb"
    lancedb_path: Path = Field(default_factory=lambda: get_default_data_dir() / "lance")
    milvus_address: str = DEFAULT_MILVUS_ADDRESS
    max_query_limit: int = Field(default=MAX_QUERY_LIMIT, ge=1)

    # Scanning and chunking
    file_extensions: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_FILE_EXTENSIONS)
    )
    respect_gitignore: bool = True
    max_file_size: int = Field(default=MAX_FILE_SIZE, ge=1)
    max_chunk_lines: int = Field(default=MAX_CHUNK_LINES, ge=2)
    min_chunk_lines: int = Field(default=MIN_CHUNK_LINES, ge=0)
    window_lines: int = Field(default=WINDOW_LINES, ge=2)
    window_overlap: int = Field(default=WINDOW_OVERLAP, ge=0)

    log_level: str = "ERROR"

    model_config = SettingsConfigDict(
        env_prefix="CODE_CONTEXT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    @field_validator("snapshot_dir", "lancedb_path", mode="before")
    @classmethod
    def expand_path(cls, v: Path | str) -> Path:
        return Path(v).expanduser().resolve()

    @field_validator("file_extensions", mode="before")
    @classmethod
    def normalize_extensions(cls, v: list[str] | str) -> list[str]:
        if isinstance(v, str):
            v = [part.strip() for part in v.split(",") if part.strip()]
        return [ext if ext.startswith(".") else f".{ext}" for ext in v]

    @field_validator("log_level")
    @classmethod
    def upper_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def check_windows(self) -> "Settings":
        if self.window_overlap >= self.window_lines:
            raise ValueError("window_overlap must be smaller than window_lines")
        if self.min_chunk_lines >= self.max_chunk_lines:
            raise ValueError("min_chunk_lines must be smaller than max_chunk_lines")
        return self


def load_settings(**overrides) -> Settings:
    """Build settings from the environment plus explicit overrides.

    Raises:
        ConfigError: If any value fails validation
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
