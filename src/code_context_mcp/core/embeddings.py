"""Embedding backends and the batching/retry pipeline in front of them."""

import asyncio
import random
import threading
from abc import ABC, abstractmethod

import httpx
from loguru import logger

from ..config.defaults import (
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_OLLAMA_HOST,
    DEFAULT_OPENAI_BASE_URL,
    get_model_dimensions,
)
from .exceptions import (
    BackendUnavailableError,
    CodeContextError,
    EmbeddingError,
    SchemaMismatchError,
)

# Network errors that are safe to retry
RETRYABLE_NETWORK_EXCEPTIONS: tuple[type[Exception], ...] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.WriteTimeout,
    httpx.PoolTimeout,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)

# HTTP status codes that indicate transient errors worth retrying
RETRYABLE_STATUS_CODES = {
    408,  # Request Timeout
    429,  # Too Many Requests (rate limit)
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
}

# Dimension used for Ollama models we have no table entry for
FALLBACK_OLLAMA_DIMENSION = 768


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is transient (network, timeout, 5xx, rate limit)."""
    if isinstance(error, BackendUnavailableError):
        return True
    if isinstance(error, RETRYABLE_NETWORK_EXCEPTIONS):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES
    return False


class EmbeddingBackend(ABC):
    """Turns text into fixed-dimension vectors."""

    name: str = "embedding"
    max_batch_size: int = 32

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts, one vector per input in input order."""
        ...

    @abstractmethod
    def dimension(self) -> int:
        """Vector dimension produced by this backend."""
        ...

    async def aclose(self) -> None:
        """Release network clients or models."""
        return None


class OllamaEmbeddingBackend(EmbeddingBackend):
    """Ollama ``/api/embeddings``; one request per text."""

    max_batch_size = 32

    def __init__(
        self,
        host: str = DEFAULT_OLLAMA_HOST,
        model: str = DEFAULT_EMBEDDING_MODEL,
        dimension: int | None = None,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.host = host.rstrip("/")
        self.model = model
        self.name = f"ollama:{model}"
        if dimension is None:
            try:
                dimension = get_model_dimensions(model)
            except ValueError:
                logger.warning(
                    f"Unknown Ollama model {model}, assuming "
                    f"{FALLBACK_OLLAMA_DIMENSION} dimensions"
                )
                dimension = FALLBACK_OLLAMA_DIMENSION
        self._dimension = dimension
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def dimension(self) -> int:
        return self._dimension

    async def _embed_single(self, text: str) -> list[float]:
        response = await self._client.post(
            f"{self.host}/api/embeddings",
            json={"model": self.model, "prompt": text},
        )
        response.raise_for_status()
        try:
            return response.json()["embedding"]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError(f"Malformed Ollama response: {e}") from e

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        # Ollama has no batch endpoint; process sequentially
        return [await self._embed_single(text) for text in texts]

    async def aclose(self) -> None:
        await self._client.aclose()


class OpenAIEmbeddingBackend(EmbeddingBackend):
    """OpenAI-compatible ``/embeddings`` endpoint with batched input."""

    max_batch_size = 256

    def __init__(
        self,
        api_key: str | None,
        model: str = "text-embedding-3-small",
        base_url: str = DEFAULT_OPENAI_BASE_URL,
        dimension: int | None = None,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.name = f"openai:{model}"
        self._dimension = dimension or get_model_dimensions(model)
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)

    def dimension(self) -> int:
        return self._dimension

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        response = await self._client.post(
            f"{self.base_url}/embeddings",
            json={"model": self.model, "input": texts},
        )
        response.raise_for_status()
        try:
            data = response.json()["data"]
            # Results may arrive out of order; ``index`` is authoritative
            return [item["embedding"] for item in sorted(data, key=lambda d: d["index"])]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError(f"Malformed OpenAI response: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


class SentenceTransformerBackend(EmbeddingBackend):
    """Local sentence-transformers model, loaded on first use."""

    max_batch_size = 64

    def __init__(
        self,
        model: str = "sentence-transformers/all-MiniLM-L6-v2",
        device: str | None = None,
    ) -> None:
        self.model_name = model
        self.name = f"sentence-transformers:{model}"
        self.device = device
        self._model = None
        self._load_lock = threading.Lock()
        try:
            self._dimension: int | None = get_model_dimensions(model)
        except ValueError:
            self._dimension = None

    def _ensure_model(self):
        with self._load_lock:
            if self._model is None:
                try:
                    from sentence_transformers import SentenceTransformer

                    self._model = SentenceTransformer(self.model_name, device=self.device)
                except Exception as e:
                    logger.error(f"Failed to load embedding model {self.model_name}: {e}")
                    raise EmbeddingError(f"Failed to load embedding model: {e}") from e

                actual = self._model.get_sentence_embedding_dimension()
                if self._dimension is not None and actual != self._dimension:
                    logger.warning(
                        f"Model dimension mismatch: expected {self._dimension}, "
                        f"got {actual}"
                    )
                self._dimension = actual
                logger.info(f"Loaded embedding model {self.model_name} ({actual} dims)")
        return self._model

    def dimension(self) -> int:
        if self._dimension is None:
            self._ensure_model()
        return self._dimension

    def _encode(self, texts: list[str]) -> list[list[float]]:
        model = self._ensure_model()
        vectors = model.encode(texts, convert_to_numpy=True, show_progress_bar=False)
        return vectors.tolist()

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return await asyncio.to_thread(self._encode, texts)


class EmbeddingPipeline:
    """Batches, retries and validates calls to an embedding backend."""

    def __init__(
        self,
        backend: EmbeddingBackend,
        batch_size: int = 32,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
    ) -> None:
        """Initialize embedding pipeline.

        Args:
            backend: Backend producing the vectors
            batch_size: Requested sub-batch size (capped by the backend)
            max_attempts: Attempts per sub-batch before giving up
            backoff_base: First retry delay in seconds, doubled per attempt
            backoff_max: Ceiling for any single retry delay
        """
        self.backend = backend
        self.batch_size = batch_size
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._dimension: int | None = None

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = self.backend.dimension()
        return self._dimension

    async def resolve_dimension(self) -> int:
        """Learn the vector dimension off the event loop.

        Local models missing from the dimension table only report it once
        loaded, so the first lookup runs in a worker thread.
        """
        if self._dimension is None:
            self._dimension = await asyncio.to_thread(self.backend.dimension)
        return self._dimension

    @property
    def model_name(self) -> str:
        return self.backend.name

    def validate_dimension(self, existing: int | None) -> None:
        """Reject an index built with a different vector dimension.

        Raises:
            SchemaMismatchError: If ``existing`` differs from the backend's
        """
        if existing is not None and existing != self.dimension:
            raise SchemaMismatchError(
                f"Index was built with {existing}-dimension embeddings but "
                f"{self.model_name} produces {self.dimension}; clear the index "
                "before reindexing with this model",
                {"existing": existing, "expected": self.dimension},
            )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in sub-batches, preserving input order.

        Raises:
            BackendUnavailableError: If a sub-batch still fails after retries
            EmbeddingError: If the backend returns malformed output
        """
        if not texts:
            return []
        await self.resolve_dimension()

        size = max(1, min(self.batch_size, self.backend.max_batch_size))
        vectors: list[list[float]] = []
        for i in range(0, len(texts), size):
            vectors.extend(await self._embed_with_retry(texts[i : i + size]))
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        """Embed a single query string."""
        return (await self.embed([text]))[0]

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(self.backoff_max, self.backoff_base * (2 ** (attempt - 1)))
        return delay * random.uniform(0.5, 1.0)

    async def _embed_with_retry(self, batch: list[str]) -> list[list[float]]:
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                vectors = await self.backend.embed_batch(batch)
            except Exception as e:
                if not is_retryable_error(e):
                    if isinstance(e, CodeContextError):
                        raise
                    raise EmbeddingError(
                        f"Embedding backend {self.model_name} failed: {e}"
                    ) from e
                last_error = e
                if attempt == self.max_attempts:
                    break
                delay = self._backoff_delay(attempt)
                logger.warning(
                    f"Embedding attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                continue

            return self._validate(batch, vectors)

        raise BackendUnavailableError(
            f"Embedding backend {self.model_name} unavailable after "
            f"{self.max_attempts} attempts: {last_error}",
            {"backend": self.model_name, "attempts": self.max_attempts},
        ) from last_error

    def _validate(self, batch: list[str], vectors: list[list[float]]) -> list[list[float]]:
        if len(vectors) != len(batch):
            raise EmbeddingError(
                f"Expected {len(batch)} embeddings, got {len(vectors)}",
                {"backend": self.model_name},
            )
        dimension = self.dimension
        result = []
        for vector in vectors:
            if len(vector) != dimension:
                raise EmbeddingError(
                    f"Expected {dimension}-dimension embedding, got {len(vector)}",
                    {"backend": self.model_name},
                )
            result.append([float(x) for x in vector])
        return result
