"""Project index manager: incremental indexing, search and LRU residency.

Each project is keyed by its canonical absolute path and owns one vector
collection plus one snapshot. Index and clear operations on the same
project are serialized by a per-project lock; different projects proceed
independently. Admission into the bounded active set (and eviction of the
least recently used project) happens under one short global lock.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path, PurePosixPath
from typing import Any

from loguru import logger

from ..config.defaults import (
    DEFAULT_FILE_EXTENSIONS,
    DEFAULT_MAX_PROJECTS,
    DEFAULT_SEARCH_LIMIT,
    MAX_FILE_SIZE,
    MAX_QUERY_LIMIT,
)
from .active_projects import ActiveProjectSet
from .chunking import ChunkingEngine
from .embeddings import EmbeddingPipeline
from .exceptions import (
    BackendUnavailableError,
    EmbeddingError,
    InvalidArgumentError,
    NotFoundError,
    PartialIndexFailure,
    VectorStoreError,
)
from .file_discovery import FileScanner
from .models import (
    CodeChunk,
    FileRecord,
    IndexResult,
    ProjectSnapshot,
    ProjectState,
    ProjectStatus,
    SearchHit,
    VectorRecord,
    collection_id_for,
)
from .snapshot import SnapshotStore
from .vector_store import VectorStore

ALL_PROJECTS = "all"

# Per-file failures that leave the rest of the run going
RECOVERABLE_FILE_ERRORS = (BackendUnavailableError, EmbeddingError, VectorStoreError)


class _FileSkipped(Exception):
    """A changed file could not be read back for chunking."""


def is_all_target(path: str) -> bool:
    """``all`` (or any path ending in ``/all``) addresses every project."""
    return path == ALL_PROJECTS or path.endswith("/" + ALL_PROJECTS)


def canonical_project_key(path: str) -> Path:
    """Validate a client path and turn it into a project key.

    Raises:
        InvalidArgumentError: If the path is empty, relative or contains ``..``
    """
    if not isinstance(path, str) or not path.strip():
        raise InvalidArgumentError("Path must be a non-empty string")
    if ".." in PurePosixPath(path.replace("\\", "/")).parts:
        raise InvalidArgumentError(
            "Invalid path: path traversal segments are not allowed", {"path": path}
        )
    candidate = Path(path).expanduser()
    if not candidate.is_absolute():
        raise InvalidArgumentError("Path must be absolute", {"path": path})
    return candidate.resolve()


class ProjectIndexManager:
    """Coordinates scanning, chunking, embedding and storage per project."""

    def __init__(
        self,
        snapshot_store: SnapshotStore,
        embeddings: EmbeddingPipeline,
        vector_store: VectorStore,
        chunker: ChunkingEngine | None = None,
        max_projects: int = DEFAULT_MAX_PROJECTS,
        file_extensions: list[str] | None = None,
        respect_gitignore: bool = True,
        max_file_size: int = MAX_FILE_SIZE,
        max_query_limit: int = MAX_QUERY_LIMIT,
    ) -> None:
        self.snapshot_store = snapshot_store
        self.embeddings = embeddings
        self.vector_store = vector_store
        self.chunker = chunker or ChunkingEngine()
        self.file_extensions = list(file_extensions or DEFAULT_FILE_EXTENSIONS)
        self.respect_gitignore = respect_gitignore
        self.max_file_size = max_file_size
        self.max_query_limit = max_query_limit

        self._active = ActiveProjectSet(max_projects)
        self._snapshots: dict[Path, ProjectSnapshot] = {}
        self._states: dict[Path, ProjectState] = {}
        self._locks: dict[Path, asyncio.Lock] = {}
        # Tasks holding or waiting for each project lock
        self._lock_users: dict[Path, int] = {}
        self._admit_lock = asyncio.Lock()
        self._loaded = False

    @property
    def max_projects(self) -> int:
        return self._active.max_projects

    def _lock_for(self, key: Path) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def _hold(self, key: Path) -> AsyncIterator[None]:
        """Take a project's lock, counting the caller while it waits."""
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with self._lock_for(key):
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]

    def _is_busy(self, key: Path) -> bool:
        return key in self._lock_users or self._lock_for(key).locked()

    def _scanner_for(self, key: Path) -> FileScanner:
        return FileScanner(
            key,
            file_extensions=self.file_extensions,
            respect_gitignore=self.respect_gitignore,
            max_file_size=self.max_file_size,
        )

    def _validate_limit(self, limit: Any) -> int:
        if isinstance(limit, bool) or not isinstance(limit, int):
            raise InvalidArgumentError("limit must be an integer", {"limit": limit})
        if not 1 <= limit <= self.max_query_limit:
            raise InvalidArgumentError(
                f"limit must be between 1 and {self.max_query_limit}",
                {"limit": limit},
            )
        return limit

    def state_of(self, key: Path) -> ProjectState:
        return self._states.get(key, ProjectState.UNINDEXED)

    async def load(self) -> None:
        """Restore resident projects from persisted snapshots.

        Projects are admitted oldest access first so the active set ends up
        in the same order it had when the snapshots were written. Snapshots
        beyond the capacity bound are evicted.
        """
        if self._loaded:
            return
        snapshots = await self.snapshot_store.load_all()
        async with self._admit_lock:
            for snapshot in sorted(snapshots, key=lambda s: s.last_accessed_at):
                key = snapshot.project_key
                self._snapshots[key] = snapshot
                self._states[key] = ProjectState.INDEXED
                victims = self._active.admit(key, at=snapshot.last_accessed_at)
                for victim in victims:
                    await self._evict(victim)
        self._loaded = True
        logger.info(
            f"Loaded {len(self._active)} active projects "
            f"(capacity {self.max_projects})"
        )

    # ------------------------------------------------------------------
    # index
    # ------------------------------------------------------------------

    async def index(self, path: str, force: bool = False) -> IndexResult:
        """Bring a project's index up to date with its files on disk.

        Args:
            path: Absolute project root
            force: Re-embed every file regardless of recorded hashes

        Returns:
            Counts for the run; failed files are listed and carried as a
            ``partial_index_failure`` error payload rather than raised

        Raises:
            InvalidArgumentError: Malformed path, or ``all``
            NotFoundError: Project root missing or not a directory
            SchemaMismatchError: Embedding dimension differs from the index
            BackendUnavailableError: Every changed file failed on an
                unreachable backend
            CapacityError: No active project could be evicted
        """
        if is_all_target(path):
            raise InvalidArgumentError("index_codebase needs a single project path")
        key = canonical_project_key(path)

        async with self._hold(key):
            previous_state = self.state_of(key)
            self._states[key] = ProjectState.INDEXING
            try:
                result = await self._index_locked(key, force)
            except BaseException:
                # Committed files stay in the snapshot; searchable only if resident
                self._states[key] = (
                    ProjectState.INDEXED if key in self._active else previous_state
                )
                raise
            self._states[key] = ProjectState.INDEXED
            return result

    async def _index_locked(self, key: Path, force: bool) -> IndexResult:
        started = time.monotonic()
        scanner = self._scanner_for(key)
        current = await scanner.scan()

        collection_id = collection_id_for(key)
        dimension = await self.embeddings.resolve_dimension()
        snapshot = self._snapshots.get(key) or await self.snapshot_store.load(key)
        if snapshot is not None:
            self.embeddings.validate_dimension(snapshot.embedding_dimension)

        changes = FileScanner.diff(current, snapshot, force, scanner.skipped)
        result = IndexResult(
            project=str(key),
            collection_id=collection_id,
            files_unchanged=len(changes.unchanged),
        )

        if snapshot is None:
            now = time.time()
            snapshot = ProjectSnapshot(
                project_key=key,
                collection_id=collection_id,
                created_at=now,
                last_accessed_at=now,
                embedding_model=self.embeddings.model_name,
                embedding_dimension=dimension,
            )
            # A collection without a snapshot has no trustworthy contents
            if await self.vector_store.collection_exists(collection_id):
                logger.warning(f"Dropping orphaned collection {collection_id}")
                await self.vector_store.drop_collection(collection_id)

        if not changes.is_empty:
            await self.vector_store.ensure_collection(collection_id, dimension)

        for rel_path in changes.removed:
            record = snapshot.files[rel_path]
            try:
                await self.vector_store.delete(collection_id, record.chunk_ids)
            except (BackendUnavailableError, VectorStoreError) as e:
                # Record kept so the next run retries the delete
                logger.warning(f"Failed to remove {rel_path} from {key}: {e}")
                result.failed_files.append(rel_path)
                continue
            del snapshot.files[rel_path]
            result.files_removed += 1
        if result.files_removed:
            await self._commit(key, snapshot)

        unavailable = 0
        for rel_path in changes.changed:
            try:
                await self._index_file(key, scanner, snapshot, rel_path)
                result.files_indexed += 1
            except (*RECOVERABLE_FILE_ERRORS, _FileSkipped) as e:
                logger.warning(f"Failed to index {rel_path} in {key}: {e}")
                result.failed_files.append(rel_path)
                if isinstance(e, BackendUnavailableError):
                    unavailable += 1

        changed = len(changes.changed)
        if changed and unavailable == changed:
            raise BackendUnavailableError(
                f"Backend unavailable: none of {changed} changed files in {key} "
                "could be indexed",
                {"project": str(key), "failed_files": result.failed_files},
            )

        if result.failed_files:
            attempted = changed + len(changes.removed)
            result.error = PartialIndexFailure(
                f"{len(result.failed_files)} of {attempted} files failed to index",
                failed_files=list(result.failed_files),
            ).to_dict()

        now = time.time()
        snapshot.last_accessed_at = now
        result.evicted = await self._admit(key, now)
        await self._commit(key, snapshot)
        result.chunk_count = snapshot.chunk_count

        logger.info(
            f"Indexed {key}: {result.files_indexed} indexed, "
            f"{result.files_removed} removed, {result.files_unchanged} unchanged, "
            f"{len(result.failed_files)} failed in {time.monotonic() - started:.2f}s"
        )
        return result

    async def _index_file(
        self,
        key: Path,
        scanner: FileScanner,
        snapshot: ProjectSnapshot,
        rel_path: str,
    ) -> int:
        """Chunk, embed and store one file, then commit its record."""
        read = await asyncio.to_thread(scanner.read_file, key / rel_path)
        if read is None:
            raise _FileSkipped(f"{rel_path} could not be read")
        content_hash, text = read

        chunks = await asyncio.to_thread(self.chunker.chunk_file, text, rel_path)
        vectors = await self.embeddings.embed([c.embedding_text() for c in chunks])
        records = [
            VectorRecord(chunk.chunk_id, vector, self._payload(key, chunk))
            for chunk, vector in zip(chunks, vectors, strict=True)
        ]
        await self.vector_store.upsert(snapshot.collection_id, records)

        new_ids = [chunk.chunk_id for chunk in chunks]
        previous = snapshot.files.get(rel_path)
        if previous is not None:
            keep = set(new_ids)
            stale = [cid for cid in previous.chunk_ids if cid not in keep]
            if stale:
                await self.vector_store.delete(snapshot.collection_id, stale)

        snapshot.files[rel_path] = FileRecord(
            path=rel_path,
            content_hash=content_hash,
            chunk_ids=new_ids,
            indexed_at=time.time(),
        )
        await self._commit(key, snapshot)
        logger.debug(f"Committed {rel_path}: {len(chunks)} chunks")
        return len(chunks)

    async def _commit(self, key: Path, snapshot: ProjectSnapshot) -> None:
        """Persist a snapshot and make it visible to clear and status."""
        await self.snapshot_store.save(snapshot)
        self._snapshots[key] = snapshot

    @staticmethod
    def _payload(key: Path, chunk: CodeChunk) -> dict[str, Any]:
        return {
            "file_path": chunk.file_path,
            "start_line": chunk.start_line,
            "end_line": chunk.end_line,
            "content": chunk.content,
            "symbol_name": chunk.symbol_name,
            "symbol_kind": chunk.symbol_kind.value,
            "language": chunk.language,
            "project": str(key),
        }

    # ------------------------------------------------------------------
    # residency
    # ------------------------------------------------------------------

    async def _admit(self, key: Path, at: float) -> list[str]:
        """Admit a project into the active set, evicting LRU entries first."""
        async with self._admit_lock:
            # A project with a holder or a queued waiter is never a victim, so
            # no project lock is ever waited on under the admit lock.
            victims = self._active.admit(
                key,
                can_evict=lambda k: k != key and not self._is_busy(k),
                at=at,
            )
            if not victims:
                return []
            async with AsyncExitStack() as stack:
                # Free and unqueued locks are acquired without suspending
                for victim in victims:
                    await stack.enter_async_context(self._hold(victim))
                for victim in victims:
                    await self._evict(victim)
        return [str(victim) for victim in victims]

    async def _evict(self, key: Path) -> None:
        collection_id = collection_id_for(key)
        try:
            await self.vector_store.drop_collection(collection_id)
        except (BackendUnavailableError, VectorStoreError) as e:
            logger.warning(f"Failed to drop collection {collection_id}: {e}")
        await self.snapshot_store.delete(key)
        self._snapshots.pop(key, None)
        self._active.remove(key)
        self._states[key] = ProjectState.EVICTED
        logger.info(f"Evicted least recently used project {key}")

    def _resolve_active(self, key: Path) -> Path:
        """Map a path to the active project containing it."""
        if key in self._active:
            return key
        owners = [root for root in self._active.keys() if key.is_relative_to(root)]
        if not owners:
            raise NotFoundError(
                f"No indexed codebase found for {key}. Please index first.",
                {"path": str(key), "state": self.state_of(key).value},
            )
        return max(owners, key=lambda root: len(root.parts))

    # ------------------------------------------------------------------
    # search
    # ------------------------------------------------------------------

    async def search(
        self,
        path: str,
        query: str,
        limit: int = DEFAULT_SEARCH_LIMIT,
        cross_project: bool = False,
    ) -> list[SearchHit]:
        """Rank chunks by similarity to a natural-language query.

        Args:
            path: Project root (or a path inside one), or ``all``
            query: Search text
            limit: Maximum hits to return
            cross_project: Search every active project regardless of path

        Raises:
            InvalidArgumentError: Empty query, bad limit or malformed path
            NotFoundError: The project is not indexed
        """
        if not isinstance(query, str) or not query.strip():
            raise InvalidArgumentError("query must be a non-empty string")
        limit = self._validate_limit(limit)

        if cross_project or is_all_target(path):
            if not is_all_target(path):
                canonical_project_key(path)
            targets = self._active.keys()
        else:
            targets = [self._resolve_active(canonical_project_key(path))]
            await self._touch(targets[0])

        if not targets:
            return []

        vector = await self.embeddings.embed_query(query)
        hits: list[SearchHit] = []
        for key in reversed(targets):
            collection_id = collection_id_for(key)
            try:
                matches = await self.vector_store.query(collection_id, vector, limit)
            except NotFoundError:
                # Project mid-first-index or evicted since the target list was taken
                logger.debug(f"Skipping {key}: collection {collection_id} missing")
                continue
            for match in matches:
                payload = match.payload
                hits.append(
                    SearchHit(
                        file=payload.get("file_path") or "",
                        project=str(key),
                        start_line=int(payload.get("start_line") or 0),
                        end_line=int(payload.get("end_line") or 0),
                        text=payload.get("content") or "",
                        score=match.score,
                        symbol_name=payload.get("symbol_name"),
                        symbol_kind=payload.get("symbol_kind"),
                    )
                )

        # Stable: equal scores keep most-recent-project-first, then store order
        hits.sort(key=lambda hit: -hit.score)
        return hits[:limit]

    async def _touch(self, key: Path) -> None:
        now = time.time()
        self._active.touch(key, now)
        snapshot = self._snapshots.get(key)
        if snapshot is not None:
            snapshot.last_accessed_at = now
            await self.snapshot_store.save(snapshot)

    # ------------------------------------------------------------------
    # clear / status
    # ------------------------------------------------------------------

    async def clear(self, path: str) -> dict[str, list[str]]:
        """Drop a project's index (or every project's, for ``all``).

        Raises:
            NotFoundError: The project has no index
        """
        if is_all_target(path):
            # Runs in progress are cleared once they finish
            indexing = {
                k for k, state in self._states.items() if state == ProjectState.INDEXING
            }
            keys = sorted(set(self._active.keys()) | set(self._snapshots) | indexing)
        else:
            key = canonical_project_key(path)
            if key not in self._snapshots and not await self._has_persisted(key):
                raise NotFoundError(
                    f"No indexed codebase found for {key}.", {"path": str(key)}
                )
            keys = [key]

        cleared = []
        for key in keys:
            async with self._hold(key):
                await self.vector_store.drop_collection(collection_id_for(key))
                await self.snapshot_store.delete(key)
                self._snapshots.pop(key, None)
                self._active.remove(key)
                self._states[key] = ProjectState.CLEARED
            cleared.append(str(key))
            logger.info(f"Cleared index for {key}")
        return {"cleared": cleared}

    async def _has_persisted(self, key: Path) -> bool:
        return await self.snapshot_store.load(key) is not None

    async def status(self, path: str) -> list[ProjectStatus]:
        """Report indexing state for one project or every known project."""
        if is_all_target(path):
            # Most recently accessed first; first-time indexing runs are listed too
            keys = list(reversed(self._active.keys()))
            keys += sorted(
                k
                for k, state in self._states.items()
                if state == ProjectState.INDEXING and k not in self._active
            )
        else:
            keys = [canonical_project_key(path)]
        return [self._status_of(key) for key in keys]

    def _status_of(self, key: Path) -> ProjectStatus:
        snapshot = self._snapshots.get(key)
        status = ProjectStatus(
            project=str(key),
            state=self.state_of(key),
            collection_id=collection_id_for(key),
        )
        if snapshot is not None:
            status.file_count = len(snapshot.files)
            status.chunk_count = snapshot.chunk_count
            status.last_indexed_time = snapshot.last_indexed_at
            status.last_accessed_time = snapshot.last_accessed_at
        return status

    async def close(self) -> None:
        await self.vector_store.close()
        await self.embeddings.backend.aclose()
