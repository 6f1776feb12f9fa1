"""File discovery, hashing and change detection for incremental indexing."""

import asyncio
import fnmatch
import os
import re
from pathlib import Path

import pathspec
from loguru import logger

from ..config.defaults import (
    ALLOWED_DOTFILES,
    DEFAULT_IGNORE_FILES,
    DEFAULT_IGNORE_PATTERNS,
    MAX_FILE_SIZE,
)
from .exceptions import NotFoundError
from .models import ChangeSet, ProjectSnapshot, compute_content_hash

# Files hashed per worker-thread hop; keeps cancellation responsive on big trees
HASH_BATCH_SIZE = 64


class FileScanner:
    """Finds eligible files under a project root and hashes their content.

    Eligibility honours the default ignore patterns, ``.gitignore`` files
    (root and nested), the extension allow-list, a size ceiling, and skips
    binary files that do not decode as UTF-8.
    """

    def __init__(
        self,
        project_root: Path,
        file_extensions: set[str] | list[str],
        ignore_patterns: set[str] | None = None,
        respect_gitignore: bool = True,
        max_file_size: int = MAX_FILE_SIZE,
    ) -> None:
        """Initialize file scanner.

        Args:
            project_root: Project root directory
            file_extensions: Extensions to index (e.g., {'.py', '.js'})
            ignore_patterns: Additional directory patterns to ignore
            respect_gitignore: Apply .gitignore rules found in the tree
            max_file_size: Files above this many bytes are skipped
        """
        self.project_root = Path(project_root)
        self.file_extensions = {ext.lower() for ext in file_extensions}
        self.respect_gitignore = respect_gitignore
        self.max_file_size = max_file_size
        # Present but unreadable paths from the last scan()
        self.skipped: list[str] = []

        dir_patterns = set(DEFAULT_IGNORE_PATTERNS)
        if ignore_patterns:
            dir_patterns |= set(ignore_patterns)
        # fnmatch.translate once at init instead of fnmatch.fnmatch per path part
        self._dir_patterns = [re.compile(fnmatch.translate(p)) for p in dir_patterns]
        self._file_patterns = [
            re.compile(fnmatch.translate(p)) for p in DEFAULT_IGNORE_FILES
        ]

    def _matches(self, name: str, patterns: list[re.Pattern[str]]) -> bool:
        return any(pattern.match(name) for pattern in patterns)

    def _is_hidden(self, name: str) -> bool:
        return name.startswith(".") and name not in ALLOWED_DOTFILES

    def _load_gitignore(self, directory: Path) -> pathspec.PathSpec | None:
        gitignore = directory / ".gitignore"
        if not gitignore.is_file():
            return None
        try:
            lines = gitignore.read_text(encoding="utf-8", errors="replace").splitlines()
            return pathspec.GitIgnoreSpec.from_lines(lines)
        except OSError as e:
            logger.warning(f"Failed to read {gitignore}: {e}")
            return None

    def _gitignored(
        self,
        rel_path: str,
        specs: list[tuple[str, pathspec.PathSpec]],
        is_dir: bool,
    ) -> bool:
        for base, spec in specs:
            if base and not rel_path.startswith(base + "/"):
                continue
            local = rel_path[len(base) + 1 :] if base else rel_path
            if is_dir:
                local += "/"
            if spec.match_file(local):
                return True
        return False

    def find_files(self) -> list[Path]:
        """Walk the project tree and return eligible files, sorted.

        Uses os.walk with in-place directory pruning so ignored directories
        are never traversed.
        """
        specs: list[tuple[str, pathspec.PathSpec]] = []
        found: list[Path] = []

        for dirpath, dirnames, filenames in os.walk(self.project_root):
            current = Path(dirpath)
            rel_dir = current.relative_to(self.project_root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir

            if self.respect_gitignore:
                spec = self._load_gitignore(current)
                if spec is not None:
                    specs.append((rel_dir, spec))

            kept_dirs = []
            for name in sorted(dirnames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if self._is_hidden(name) or self._matches(name, self._dir_patterns):
                    continue
                if self.respect_gitignore and self._gitignored(rel, specs, True):
                    continue
                if (current / name).is_symlink():
                    continue
                kept_dirs.append(name)
            dirnames[:] = kept_dirs

            for name in sorted(filenames):
                if self._is_hidden(name) or self._matches(name, self._file_patterns):
                    continue
                if Path(name).suffix.lower() not in self.file_extensions:
                    continue
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if self.respect_gitignore and self._gitignored(rel, specs, False):
                    continue
                path = current / name
                if path.is_file():
                    found.append(path)

        return sorted(found)

    def read_file(self, path: Path) -> tuple[str, str] | None:
        """Read one file as text.

        Returns:
            ``(content_hash, text)``, or None when the file is oversized,
            binary or unreadable (logged, never raised)
        """
        try:
            size = path.stat().st_size
            if size > self.max_file_size:
                logger.debug(f"Skipping large file {path} ({size} bytes)")
                return None
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"Skipping unreadable file {path}: {e}")
            return None

        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug(f"Skipping binary file {path}")
            return None

        return compute_content_hash(data), text

    def _hash_batch(self, paths: list[Path]) -> tuple[dict[str, str], list[str]]:
        hashes = {}
        skipped = []
        for path in paths:
            rel_path = path.relative_to(self.project_root).as_posix()
            result = self.read_file(path)
            if result is None:
                skipped.append(rel_path)
            else:
                hashes[rel_path] = result[0]
        return hashes, skipped

    async def scan(self) -> dict[str, str]:
        """Hash every eligible file.

        Files that are present but cannot be read (oversized, binary,
        unreadable) are left out of the mapping and listed in ``skipped``.

        Returns:
            Mapping of relative POSIX path to SHA-256 content hash, in path order

        Raises:
            NotFoundError: If the project root is missing or not a directory
        """
        if not self.project_root.exists():
            raise NotFoundError(
                f"Path does not exist: {self.project_root}",
                {"path": str(self.project_root)},
            )
        if not self.project_root.is_dir():
            raise NotFoundError(
                f"Path is not a directory: {self.project_root}",
                {"path": str(self.project_root)},
            )

        files = await asyncio.to_thread(self.find_files)
        hashes: dict[str, str] = {}
        skipped: list[str] = []
        for i in range(0, len(files), HASH_BATCH_SIZE):
            batch = files[i : i + HASH_BATCH_SIZE]
            batch_hashes, batch_skipped = await asyncio.to_thread(
                self._hash_batch, batch
            )
            hashes.update(batch_hashes)
            skipped.extend(batch_skipped)

        self.skipped = sorted(skipped)
        logger.debug(
            f"Scanned {self.project_root}: {len(hashes)} eligible files"
            + (f", {len(skipped)} skipped" if skipped else "")
        )
        return dict(sorted(hashes.items()))

    @staticmethod
    def diff(
        current: dict[str, str],
        snapshot: ProjectSnapshot | None,
        force: bool = False,
        skipped: list[str] | None = None,
    ) -> ChangeSet:
        """Compare a scan with the previous snapshot.

        Args:
            current: Result of scan()
            snapshot: Previous snapshot (None when never indexed)
            force: Treat every current file as added
            skipped: Paths still on disk that scan() could not read; their
                previous records are kept rather than removed

        Returns:
            Disjoint added/modified/removed/unchanged/skipped path lists
        """
        previous = snapshot.files if snapshot else {}
        on_disk = set(skipped or ())
        changes = ChangeSet()

        for path, content_hash in current.items():
            record = previous.get(path)
            if force or record is None:
                changes.added.append(path)
            elif record.content_hash != content_hash:
                changes.modified.append(path)
            else:
                changes.unchanged.append(path)

        for path in sorted(previous):
            if path in current:
                continue
            if path in on_disk:
                changes.skipped.append(path)
            else:
                changes.removed.append(path)
        return changes
