"""Durable per-project snapshot storage.

One JSON document per project, named after its collection id, under a
configurable root directory. Writes go to a temporary file that is then
renamed over the previous version, so an interrupted write never leaves a
truncated snapshot behind.
"""

import asyncio
from pathlib import Path

import aiofiles
import aiofiles.os
import orjson
from loguru import logger

from .models import ProjectSnapshot, collection_id_for


class SnapshotStore:
    """Loads, saves and deletes project snapshots."""

    SUFFIX = ".json"

    def __init__(self, root: Path) -> None:
        """Initialize snapshot store.

        Args:
            root: Directory holding one snapshot file per project
        """
        self.root = Path(root)
        self._write_locks: dict[str, asyncio.Lock] = {}

    def path_for(self, project_key: Path) -> Path:
        """Snapshot file location for a project."""
        return self.root / f"{collection_id_for(project_key)}{self.SUFFIX}"

    def _lock_for(self, path: Path) -> asyncio.Lock:
        lock = self._write_locks.get(path.name)
        if lock is None:
            lock = asyncio.Lock()
            self._write_locks[path.name] = lock
        return lock

    async def load(self, project_key: Path) -> ProjectSnapshot | None:
        """Load the snapshot for one project.

        Returns:
            The snapshot, or None when none exists or it cannot be decoded
        """
        return await self._read(self.path_for(project_key))

    async def load_all(self) -> list[ProjectSnapshot]:
        """Load every persisted snapshot, skipping unreadable ones."""
        if not self.root.exists():
            return []

        snapshots = []
        for path in sorted(self.root.glob(f"*{self.SUFFIX}")):
            snapshot = await self._read(path)
            if snapshot is not None:
                snapshots.append(snapshot)

        logger.debug(f"Loaded {len(snapshots)} project snapshots from {self.root}")
        return snapshots

    async def save(self, snapshot: ProjectSnapshot) -> None:
        """Persist a snapshot atomically."""
        path = self.path_for(snapshot.project_key)
        # Serialize before the first await so the write reflects this call
        data = orjson.dumps(snapshot.to_dict(), option=orjson.OPT_INDENT_2)

        async with self._lock_for(path):
            await aiofiles.os.makedirs(self.root, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
                await f.flush()
            await aiofiles.os.replace(tmp_path, path)

    async def delete(self, project_key: Path) -> bool:
        """Delete a project's snapshot.

        Returns:
            True if a snapshot file was removed
        """
        path = self.path_for(project_key)
        async with self._lock_for(path):
            if not await aiofiles.os.path.exists(path):
                return False
            await aiofiles.os.remove(path)
        logger.debug(f"Deleted snapshot {path.name} for {project_key}")
        return True

    async def _read(self, path: Path) -> ProjectSnapshot | None:
        if not await aiofiles.os.path.exists(path):
            return None
        try:
            async with aiofiles.open(path, "rb") as f:
                data = orjson.loads(await f.read())
            return ProjectSnapshot.from_dict(data)
        except (OSError, orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"Failed to load snapshot {path}: {e}")
            return None
