"""Vector store adapters: one collection of chunk embeddings per project."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import httpx
import lancedb
import numpy as np
import pyarrow as pa
from loguru import logger

from ..config.defaults import DEFAULT_MILVUS_ADDRESS, MAX_QUERY_LIMIT
from .exceptions import (
    BackendUnavailableError,
    CodeContextError,
    NotFoundError,
    SchemaMismatchError,
    VectorStoreError,
)
from .models import VectorMatch, VectorRecord

# Payload fields stored alongside each vector
PAYLOAD_FIELDS = (
    "file_path",
    "start_line",
    "end_line",
    "content",
    "symbol_name",
    "symbol_kind",
    "language",
    "project",
)


class VectorStore(ABC):
    """Capability interface over a vector database."""

    def __init__(self, max_query_limit: int = MAX_QUERY_LIMIT) -> None:
        self.max_query_limit = max_query_limit

    def clamp_limit(self, k: int) -> int:
        return max(1, min(k, self.max_query_limit))

    @abstractmethod
    async def ensure_collection(self, collection_id: str, dimension: int) -> None:
        """Create the collection if missing.

        Raises:
            SchemaMismatchError: If it exists with a different dimension
        """
        ...

    @abstractmethod
    async def collection_exists(self, collection_id: str) -> bool: ...

    @abstractmethod
    async def upsert(self, collection_id: str, records: list[VectorRecord]) -> None:
        """Insert records, replacing any with the same chunk id."""
        ...

    @abstractmethod
    async def delete(self, collection_id: str, chunk_ids: list[str]) -> None: ...

    @abstractmethod
    async def query(
        self, collection_id: str, vector: list[float], k: int
    ) -> list[VectorMatch]:
        """Top-k records by cosine similarity, best first."""
        ...

    @abstractmethod
    async def drop_collection(self, collection_id: str) -> None:
        """Drop a collection; missing collections are ignored."""
        ...

    @abstractmethod
    async def count(self, collection_id: str) -> int: ...

    async def close(self) -> None:
        return None


@dataclass
class _MemoryCollection:
    dimension: int
    records: dict[str, VectorRecord] = field(default_factory=dict)


class InMemoryVectorStore(VectorStore):
    """Process-local store with exact numpy cosine scoring."""

    def __init__(self, max_query_limit: int = MAX_QUERY_LIMIT) -> None:
        super().__init__(max_query_limit)
        self._collections: dict[str, _MemoryCollection] = {}

    def _get(self, collection_id: str) -> _MemoryCollection:
        collection = self._collections.get(collection_id)
        if collection is None:
            raise NotFoundError(
                f"Collection {collection_id} does not exist",
                {"collection_id": collection_id},
            )
        return collection

    async def ensure_collection(self, collection_id: str, dimension: int) -> None:
        existing = self._collections.get(collection_id)
        if existing is None:
            self._collections[collection_id] = _MemoryCollection(dimension)
        elif existing.dimension != dimension:
            raise SchemaMismatchError(
                f"Collection {collection_id} has dimension {existing.dimension}, "
                f"not {dimension}",
                {"collection_id": collection_id, "existing": existing.dimension},
            )

    async def collection_exists(self, collection_id: str) -> bool:
        return collection_id in self._collections

    async def upsert(self, collection_id: str, records: list[VectorRecord]) -> None:
        collection = self._get(collection_id)
        for record in records:
            if len(record.vector) != collection.dimension:
                raise SchemaMismatchError(
                    f"Vector dimension {len(record.vector)} does not match "
                    f"collection dimension {collection.dimension}",
                    {"collection_id": collection_id},
                )
            # Assigning an existing key keeps its insertion position
            collection.records[record.chunk_id] = VectorRecord(
                record.chunk_id, list(record.vector), dict(record.payload)
            )

    async def delete(self, collection_id: str, chunk_ids: list[str]) -> None:
        collection = self._get(collection_id)
        for chunk_id in chunk_ids:
            collection.records.pop(chunk_id, None)

    async def query(
        self, collection_id: str, vector: list[float], k: int
    ) -> list[VectorMatch]:
        collection = self._get(collection_id)
        if not collection.records:
            return []

        records = list(collection.records.values())
        matrix = np.asarray([r.vector for r in records], dtype=np.float32)
        query = np.asarray(vector, dtype=np.float32)

        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0)

        # Stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[: self.clamp_limit(k)]
        return [
            VectorMatch(records[i].chunk_id, float(scores[i]), dict(records[i].payload))
            for i in order
        ]

    async def drop_collection(self, collection_id: str) -> None:
        self._collections.pop(collection_id, None)

    async def count(self, collection_id: str) -> int:
        return len(self._get(collection_id).records)


def vector_schema(vector_dim: int) -> pa.Schema:
    """Arrow schema for one project's vector table."""
    return pa.schema(
        [
            pa.field("chunk_id", pa.string()),
            pa.field("vector", pa.list_(pa.float32(), vector_dim)),
            pa.field("file_path", pa.string()),
            pa.field("start_line", pa.int32()),
            pa.field("end_line", pa.int32()),
            pa.field("content", pa.string()),
            pa.field("symbol_name", pa.string()),
            pa.field("symbol_kind", pa.string()),
            pa.field("language", pa.string()),
            pa.field("project", pa.string()),
        ]
    )


def _sql_list(values: list[str]) -> str:
    return ", ".join(f"'{v.replace(chr(39), chr(39) * 2)}'" for v in values)


class LanceVectorStore(VectorStore):
    """LanceDB store, one table per collection, cosine metric.

    LanceDB calls are blocking and run in a worker thread.
    """

    DELETE_BATCH_SIZE = 500  # Limit SQL query length

    def __init__(self, db_path: Path, max_query_limit: int = MAX_QUERY_LIMIT) -> None:
        super().__init__(max_query_limit)
        self.db_path = Path(db_path)
        self._db = None

    def _connect(self):
        if self._db is None:
            self.db_path.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Connecting to LanceDB at: {self.db_path}")
            self._db = lancedb.connect(str(self.db_path))
        return self._db

    def _table_names(self) -> list[str]:
        # list_tables() returns a response object with .tables attribute
        response = self._connect().list_tables()
        return response.tables if hasattr(response, "tables") else list(response)

    def _open(self, collection_id: str):
        if collection_id not in self._table_names():
            raise NotFoundError(
                f"Collection {collection_id} does not exist",
                {"collection_id": collection_id},
            )
        return self._connect().open_table(collection_id)

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except CodeContextError:
            raise
        except Exception as e:
            raise VectorStoreError(f"LanceDB operation failed: {e}") from e

    def _ensure_collection(self, collection_id: str, dimension: int) -> None:
        if collection_id in self._table_names():
            table = self._connect().open_table(collection_id)
            existing = table.schema.field("vector").type.list_size
            if existing != dimension:
                raise SchemaMismatchError(
                    f"Collection {collection_id} has dimension {existing}, "
                    f"not {dimension}",
                    {"collection_id": collection_id, "existing": existing},
                )
            return
        self._connect().create_table(collection_id, schema=vector_schema(dimension))
        logger.debug(f"Created vectors table {collection_id} ({dimension} dims)")

    def _upsert(self, collection_id: str, records: list[VectorRecord]) -> None:
        table = self._open(collection_id)
        dimension = table.schema.field("vector").type.list_size
        rows = []
        for record in records:
            if len(record.vector) != dimension:
                raise SchemaMismatchError(
                    f"Vector dimension {len(record.vector)} does not match "
                    f"collection dimension {dimension}",
                    {"collection_id": collection_id},
                )
            row = {name: record.payload.get(name) for name in PAYLOAD_FIELDS}
            row["chunk_id"] = record.chunk_id
            row["vector"] = record.vector
            rows.append(row)
        self._delete_ids(table, [r.chunk_id for r in records])
        table.add(pa.Table.from_pylist(rows, schema=table.schema), mode="append")

    def _delete_ids(self, table, chunk_ids: list[str]) -> None:
        for i in range(0, len(chunk_ids), self.DELETE_BATCH_SIZE):
            batch = chunk_ids[i : i + self.DELETE_BATCH_SIZE]
            table.delete(f"chunk_id IN ({_sql_list(batch)})")

    def _delete(self, collection_id: str, chunk_ids: list[str]) -> None:
        self._delete_ids(self._open(collection_id), chunk_ids)

    def _query(self, collection_id: str, vector: list[float], k: int) -> list[VectorMatch]:
        table = self._open(collection_id)
        results = table.search(vector).metric("cosine").limit(k).to_list()
        matches = []
        for result in results:
            # Cosine distance is 1 - cosine similarity
            score = 1.0 - result.get("_distance", 0.0)
            payload = {name: result.get(name) for name in PAYLOAD_FIELDS}
            matches.append(VectorMatch(result["chunk_id"], score, payload))
        # LanceDB already orders by distance; re-sort stably to pin tie order
        return sorted(matches, key=lambda m: -m.score)

    def _drop(self, collection_id: str) -> None:
        if collection_id in self._table_names():
            self._connect().drop_table(collection_id)
            logger.debug(f"Dropped vectors table {collection_id}")

    def _count(self, collection_id: str) -> int:
        return self._open(collection_id).count_rows()

    async def ensure_collection(self, collection_id: str, dimension: int) -> None:
        await self._run(self._ensure_collection, collection_id, dimension)

    async def collection_exists(self, collection_id: str) -> bool:
        return collection_id in await self._run(self._table_names)

    async def upsert(self, collection_id: str, records: list[VectorRecord]) -> None:
        if records:
            await self._run(self._upsert, collection_id, records)

    async def delete(self, collection_id: str, chunk_ids: list[str]) -> None:
        if chunk_ids:
            await self._run(self._delete, collection_id, chunk_ids)

    async def query(
        self, collection_id: str, vector: list[float], k: int
    ) -> list[VectorMatch]:
        return await self._run(self._query, collection_id, vector, self.clamp_limit(k))

    async def drop_collection(self, collection_id: str) -> None:
        await self._run(self._drop, collection_id)

    async def count(self, collection_id: str) -> int:
        return await self._run(self._count, collection_id)


class MilvusVectorStore(VectorStore):
    """Milvus over its v2 REST API."""

    def __init__(
        self,
        address: str = DEFAULT_MILVUS_ADDRESS,
        max_query_limit: int = MAX_QUERY_LIMIT,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(max_query_limit)
        self.address = address.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _post(self, endpoint: str, body: dict[str, Any]) -> Any:
        url = f"{self.address}/v2/vectordb/{endpoint}"
        try:
            response = await self._client.post(url, json=body)
        except httpx.TransportError as e:
            raise BackendUnavailableError(
                f"Milvus unreachable at {self.address}: {e}",
                {"address": self.address},
            ) from e
        if response.status_code >= 500:
            raise BackendUnavailableError(
                f"Milvus API error ({response.status_code}): {response.text}",
                {"address": self.address},
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise VectorStoreError(f"Malformed Milvus response: {response.text}") from e
        if response.status_code >= 400 or payload.get("code", 0) != 0:
            raise VectorStoreError(
                f"Milvus {endpoint} error: {payload.get('message', response.text)}",
                {"endpoint": endpoint, "code": payload.get("code")},
            )
        return payload.get("data")

    async def collection_exists(self, collection_id: str) -> bool:
        data = await self._post("collections/has", {"collectionName": collection_id})
        return bool(data and data.get("has"))

    async def _require(self, collection_id: str) -> None:
        if not await self.collection_exists(collection_id):
            raise NotFoundError(
                f"Collection {collection_id} does not exist",
                {"collection_id": collection_id},
            )

    async def _dimension_of(self, collection_id: str) -> int | None:
        data = await self._post("collections/describe", {"collectionName": collection_id})
        for field_info in (data or {}).get("fields", []):
            if field_info.get("name") != "vector":
                continue
            for param in field_info.get("params", []):
                if param.get("key") == "dim":
                    return int(param["value"])
        return None

    async def ensure_collection(self, collection_id: str, dimension: int) -> None:
        if await self.collection_exists(collection_id):
            existing = await self._dimension_of(collection_id)
            if existing is not None and existing != dimension:
                raise SchemaMismatchError(
                    f"Collection {collection_id} has dimension {existing}, "
                    f"not {dimension}",
                    {"collection_id": collection_id, "existing": existing},
                )
            return

        await self._post(
            "collections/create",
            {
                "collectionName": collection_id,
                "schema": {
                    "autoId": False,
                    "enableDynamicField": True,
                    "fields": [
                        {
                            "fieldName": "chunk_id",
                            "dataType": "VarChar",
                            "isPrimary": True,
                            "elementTypeParams": {"max_length": 64},
                        },
                        {
                            "fieldName": "vector",
                            "dataType": "FloatVector",
                            "elementTypeParams": {"dim": dimension},
                        },
                    ],
                },
                "indexParams": [
                    {
                        "fieldName": "vector",
                        "indexName": "vector",
                        "metricType": "COSINE",
                        "indexType": "AUTOINDEX",
                    }
                ],
            },
        )
        logger.debug(f"Created Milvus collection {collection_id} ({dimension} dims)")

    async def upsert(self, collection_id: str, records: list[VectorRecord]) -> None:
        if not records:
            return
        await self._require(collection_id)
        data = [
            {
                "chunk_id": record.chunk_id,
                "vector": record.vector,
                **{name: record.payload.get(name) for name in PAYLOAD_FIELDS},
            }
            for record in records
        ]
        await self._post(
            "entities/upsert", {"collectionName": collection_id, "data": data}
        )

    async def delete(self, collection_id: str, chunk_ids: list[str]) -> None:
        if not chunk_ids:
            return
        await self._require(collection_id)
        ids = ", ".join(f'"{cid}"' for cid in chunk_ids)
        await self._post(
            "entities/delete",
            {"collectionName": collection_id, "filter": f"chunk_id in [{ids}]"},
        )

    async def query(
        self, collection_id: str, vector: list[float], k: int
    ) -> list[VectorMatch]:
        await self._require(collection_id)
        data = await self._post(
            "entities/search",
            {
                "collectionName": collection_id,
                "data": [vector],
                "annsField": "vector",
                "limit": self.clamp_limit(k),
                "outputFields": ["chunk_id", *PAYLOAD_FIELDS],
                "searchParams": {"metricType": "COSINE"},
            },
        )
        matches = [
            VectorMatch(
                chunk_id=hit["chunk_id"],
                score=float(hit.get("distance", hit.get("score", 0.0))),
                payload={name: hit.get(name) for name in PAYLOAD_FIELDS},
            )
            for hit in data or []
        ]
        return sorted(matches, key=lambda m: -m.score)

    async def drop_collection(self, collection_id: str) -> None:
        if await self.collection_exists(collection_id):
            await self._post("collections/drop", {"collectionName": collection_id})

    async def count(self, collection_id: str) -> int:
        await self._require(collection_id)
        data = await self._post(
            "collections/get_stats", {"collectionName": collection_id}
        )
        return int((data or {}).get("rowCount", 0))

    async def close(self) -> None:
        await self._client.aclose()
