"""Component factory: builds the indexing stack from settings."""

from dataclasses import dataclass

from loguru import logger

from ..config.settings import Settings
from ..parsers.registry import ParserRegistry
from .chunking import ChunkingEngine
from .embeddings import (
    EmbeddingBackend,
    EmbeddingPipeline,
    OllamaEmbeddingBackend,
    OpenAIEmbeddingBackend,
    SentenceTransformerBackend,
)
from .exceptions import ConfigError
from .manager import ProjectIndexManager
from .snapshot import SnapshotStore
from .vector_store import (
    InMemoryVectorStore,
    LanceVectorStore,
    MilvusVectorStore,
    VectorStore,
)


@dataclass
class ComponentBundle:
    """Bundle of the wired components."""

    settings: Settings
    snapshot_store: SnapshotStore
    embeddings: EmbeddingPipeline
    vector_store: VectorStore
    chunker: ChunkingEngine
    manager: ProjectIndexManager


class ComponentFactory:
    """Factory for the backends chosen in configuration."""

    @staticmethod
    def create_embedding_backend(settings: Settings) -> EmbeddingBackend:
        if settings.embedding_backend == "ollama":
            return OllamaEmbeddingBackend(
                host=settings.ollama_host,
                model=settings.embedding_model,
                dimension=settings.embedding_dimension,
                timeout=settings.embedding_timeout,
            )
        if settings.embedding_backend == "openai":
            if not settings.openai_api_key:
                raise ConfigError(
                    "CODE_CONTEXT_OPENAI_API_KEY is required for the openai backend"
                )
            try:
                return OpenAIEmbeddingBackend(
                    api_key=settings.openai_api_key,
                    model=settings.embedding_model,
                    base_url=settings.openai_base_url,
                    dimension=settings.embedding_dimension,
                    timeout=settings.embedding_timeout,
                )
            except ValueError as e:
                raise ConfigError(
                    f"{e}; set CODE_CONTEXT_EMBEDDING_DIMENSION for custom models"
                ) from e
        return SentenceTransformerBackend(model=settings.embedding_model)

    @staticmethod
    def create_vector_store(settings: Settings) -> VectorStore:
        if settings.vector_store == "memory":
            return InMemoryVectorStore(max_query_limit=settings.max_query_limit)
        if settings.vector_store == "milvus":
            return MilvusVectorStore(
                address=settings.milvus_address,
                max_query_limit=settings.max_query_limit,
            )
        return LanceVectorStore(
            settings.lancedb_path, max_query_limit=settings.max_query_limit
        )

    @staticmethod
    def create_components(settings: Settings) -> ComponentBundle:
        """Wire every component for one server process."""
        backend = ComponentFactory.create_embedding_backend(settings)
        embeddings = EmbeddingPipeline(
            backend,
            batch_size=settings.embedding_batch_size,
            max_attempts=settings.embedding_max_attempts,
            backoff_base=settings.embedding_backoff_base,
            backoff_max=settings.embedding_backoff_max,
        )
        vector_store = ComponentFactory.create_vector_store(settings)
        snapshot_store = SnapshotStore(settings.snapshot_dir)
        chunker = ChunkingEngine(
            ParserRegistry(),
            max_chunk_lines=settings.max_chunk_lines,
            min_chunk_lines=settings.min_chunk_lines,
            window_lines=settings.window_lines,
            window_overlap=settings.window_overlap,
        )
        manager = ProjectIndexManager(
            snapshot_store,
            embeddings,
            vector_store,
            chunker,
            max_projects=settings.max_projects,
            file_extensions=settings.file_extensions,
            respect_gitignore=settings.respect_gitignore,
            max_file_size=settings.max_file_size,
            max_query_limit=settings.max_query_limit,
        )
        logger.debug(
            f"Components: embeddings={backend.name}, "
            f"vector_store={settings.vector_store}, snapshots={settings.snapshot_dir}"
        )
        return ComponentBundle(
            settings=settings,
            snapshot_store=snapshot_store,
            embeddings=embeddings,
            vector_store=vector_store,
            chunker=chunker,
            manager=manager,
        )
