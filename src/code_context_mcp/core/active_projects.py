"""Bounded, access-ordered set of resident project indexes."""

import time
from collections import OrderedDict
from collections.abc import Callable
from pathlib import Path

from .exceptions import CapacityError


class ActiveProjectSet:
    """LRU bookkeeping for indexed projects.

    Keys are kept in access order, least recent first. The set never
    grows past ``max_projects``: admitting a new key first removes the least
    recently accessed evictable entries and hands them back to the caller,
    which is responsible for dropping their storage.
    """

    def __init__(self, max_projects: int) -> None:
        if max_projects < 1:
            raise ValueError("max_projects must be at least 1")
        self.max_projects = max_projects
        self._entries: OrderedDict[Path, float] = OrderedDict()

    def __contains__(self, key: Path) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[Path]:
        """Keys from least to most recently accessed."""
        return list(self._entries)

    def last_accessed(self, key: Path) -> float | None:
        return self._entries.get(key)

    def touch(self, key: Path, at: float | None = None) -> bool:
        """Mark a resident key as most recently used.

        Returns:
            False if the key is not resident
        """
        if key not in self._entries:
            return False
        self._entries[key] = time.time() if at is None else at
        self._entries.move_to_end(key)
        return True

    def admit(
        self,
        key: Path,
        can_evict: Callable[[Path], bool] = lambda _: True,
        at: float | None = None,
    ) -> list[Path]:
        """Insert or refresh a key, evicting LRU entries when full.

        Args:
            key: Project to admit
            can_evict: Predicate; entries it rejects (e.g. being indexed) are
                skipped in favour of the next least recent one
            at: Access timestamp, defaults to now

        Returns:
            Keys removed to make room, least recent first

        Raises:
            CapacityError: If the set is full and nothing can be evicted
        """
        if self.touch(key, at):
            return []

        victims: list[tuple[Path, float]] = []
        while len(self._entries) >= self.max_projects:
            victim = next((k for k in self._entries if can_evict(k)), None)
            if victim is None:
                # Put back what we already removed so the set is unchanged
                for restored, accessed in reversed(victims):
                    self._entries[restored] = accessed
                    self._entries.move_to_end(restored, last=False)
                raise CapacityError(
                    f"Cannot admit {key}: all {self.max_projects} active projects "
                    "are busy",
                    {"project": str(key), "max_projects": self.max_projects},
                )
            victims.append((victim, self._entries.pop(victim)))

        self._entries[key] = time.time() if at is None else at
        return [victim for victim, _ in victims]

    def remove(self, key: Path) -> bool:
        return self._entries.pop(key, None) is not None
