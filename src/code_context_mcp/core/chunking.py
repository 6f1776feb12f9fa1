"""Split source files into retrieval-sized chunks.

Structural boundaries come from a pluggable parser. Spans above the line
ceiling are split at statement boundaries, tiny spans are merged into a
neighbour, and the lines between spans become ``module`` chunks. Files
without usable structure fall back to overlapping line windows.
"""

import hashlib
from bisect import bisect_right
from dataclasses import dataclass

from loguru import logger

from ..config.defaults import (
    MAX_CHUNK_LINES,
    MIN_CHUNK_LINES,
    WINDOW_LINES,
    WINDOW_OVERLAP,
)
from ..parsers.registry import ParserRegistry
from .models import BoundarySpan, CodeChunk, SymbolKind, compute_content_hash


def make_chunk_id(file_path: str, content_hash: str, ordinal: int) -> str:
    """Deterministic chunk id for the ordinal-th chunk of one file version."""
    key = f"{file_path}\x00{content_hash}\x00{ordinal}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


@dataclass
class _LineSpan:
    start: int  # 1-based, inclusive
    end: int
    kind: SymbolKind
    name: str | None = None

    @property
    def size(self) -> int:
        return self.end - self.start + 1


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip())


class ChunkingEngine:
    """Produces deterministic chunks for a file's content."""

    def __init__(
        self,
        registry: ParserRegistry | None = None,
        max_chunk_lines: int = MAX_CHUNK_LINES,
        min_chunk_lines: int = MIN_CHUNK_LINES,
        window_lines: int = WINDOW_LINES,
        window_overlap: int = WINDOW_OVERLAP,
    ) -> None:
        if window_overlap >= window_lines:
            raise ValueError("window_overlap must be smaller than window_lines")
        self.registry = registry or ParserRegistry()
        self.max_chunk_lines = max_chunk_lines
        self.min_chunk_lines = min_chunk_lines
        self.window_lines = window_lines
        self.window_overlap = window_overlap

    def chunk_file(self, content: str, file_path: str) -> list[CodeChunk]:
        """Chunk content, picking the language from the file extension."""
        return self.chunk(content, self.registry.language_for(file_path), file_path)

    def chunk(self, content: str, language: str, file_path: str) -> list[CodeChunk]:
        """Split content into chunks.

        Args:
            content: Full file text
            language: Language tag selecting the structural parser
            file_path: Relative path recorded on every chunk

        Returns:
            Chunks in source order; empty for blank files
        """
        if not content.strip():
            return []

        lines = content.split("\n")
        if content.endswith("\n"):
            lines.pop()

        spans = self._structural_spans(content, lines, language, file_path)
        if not spans:
            spans = self._window_spans(len(lines))

        content_hash = compute_content_hash(content.encode("utf-8"))
        chunks = []
        for ordinal, span in enumerate(spans):
            chunks.append(
                CodeChunk(
                    file_path=file_path,
                    start_line=span.start,
                    end_line=span.end,
                    content="\n".join(lines[span.start - 1 : span.end]),
                    language=language,
                    symbol_kind=span.kind,
                    symbol_name=span.name,
                    chunk_id=make_chunk_id(file_path, content_hash, ordinal),
                )
            )
        return chunks

    def _structural_spans(
        self, content: str, lines: list[str], language: str, file_path: str
    ) -> list[_LineSpan]:
        parser = self.registry.get_parser(language)
        if parser is None:
            return []
        try:
            boundaries = parser.parse(content)
        except Exception as e:
            logger.debug(f"Parse failed for {file_path} ({language}): {e}")
            return []
        if not boundaries:
            return []

        units = self._to_line_spans(content, boundaries, len(lines))
        units = self._fill_gaps(units, lines)

        sized = []
        for unit in units:
            sized.extend(self._split(unit, lines))
        return self._merge_small(sized)

    def _to_line_spans(
        self, content: str, boundaries: list[BoundarySpan], line_count: int
    ) -> list[_LineSpan]:
        data = content.encode("utf-8")
        line_starts = [0]
        pos = data.find(b"\n")
        while pos != -1:
            line_starts.append(pos + 1)
            pos = data.find(b"\n", pos + 1)

        def line_of(byte_offset: int) -> int:
            return min(bisect_right(line_starts, byte_offset), line_count)

        units: list[_LineSpan] = []
        for boundary in sorted(boundaries, key=lambda b: (b.start_byte, b.end_byte)):
            start = line_of(boundary.start_byte)
            end = line_of(max(boundary.end_byte - 1, boundary.start_byte))
            # Two spans can share a line (``} fn next() {``); the earlier one keeps it
            if units and start <= units[-1].end:
                start = units[-1].end + 1
            if start > end:
                continue
            units.append(
                _LineSpan(start, end, SymbolKind.parse(boundary.kind), boundary.name)
            )
        return units

    def _fill_gaps(self, units: list[_LineSpan], lines: list[str]) -> list[_LineSpan]:
        filled = []
        cursor = 1
        for unit in [*units, None]:
            gap_end = unit.start - 1 if unit else len(lines)
            if gap_end >= cursor:
                # Trim blank lines so gaps only carry real statements
                start, end = cursor, gap_end
                while start <= end and not lines[start - 1].strip():
                    start += 1
                while end >= start and not lines[end - 1].strip():
                    end -= 1
                if start <= end:
                    filled.append(_LineSpan(start, end, SymbolKind.MODULE))
            if unit:
                filled.append(unit)
                cursor = unit.end + 1
        return filled

    def _split(self, unit: _LineSpan, lines: list[str]) -> list[_LineSpan]:
        """Split a span above the ceiling at statement boundaries."""
        if unit.size <= self.max_chunk_lines:
            return [unit]

        base_indent = _indent(lines[unit.start - 1])
        pieces = []
        start = unit.start
        while unit.end - start + 1 > self.max_chunk_lines:
            ceiling = start + self.max_chunk_lines - 1
            cut = ceiling
            floor = start + max(self.min_chunk_lines, 1) - 1
            for end in range(ceiling, floor - 1, -1):
                following = lines[end]  # the line after ``end`` (0-based index)
                if not lines[end - 1].strip() or (
                    following.strip() and _indent(following) <= base_indent
                ):
                    cut = end
                    break
            pieces.append(_LineSpan(start, cut, unit.kind, unit.name))
            start = cut + 1
        pieces.append(_LineSpan(start, unit.end, unit.kind, unit.name))
        return pieces

    def _merge_small(self, units: list[_LineSpan]) -> list[_LineSpan]:
        """Fold spans below the minimum into an adjacent sibling."""
        merged = list(units)
        i = 0
        while i < len(merged) and len(merged) > 1:
            unit = merged[i]
            if unit.size >= self.min_chunk_lines:
                i += 1
                continue
            if i + 1 < len(merged):
                neighbour = merged[i + 1]
                if neighbour.end - unit.start + 1 <= self.max_chunk_lines:
                    merged[i + 1] = self._combine(unit, neighbour)
                    del merged[i]
                    continue
            elif i > 0:
                neighbour = merged[i - 1]
                if unit.end - neighbour.start + 1 <= self.max_chunk_lines:
                    merged[i - 1] = self._combine(neighbour, unit)
                    del merged[i]
                    continue
            i += 1
        return merged

    @staticmethod
    def _combine(first: _LineSpan, second: _LineSpan) -> _LineSpan:
        # The structural side names the merged chunk; module gaps are anonymous
        named = second if first.kind == SymbolKind.MODULE else first
        return _LineSpan(first.start, second.end, named.kind, named.name)

    def _window_spans(self, line_count: int) -> list[_LineSpan]:
        """Overlapping line windows covering the whole file."""
        step = self.window_lines - self.window_overlap
        spans = []
        start = 1
        while True:
            end = min(start + self.window_lines - 1, line_count)
            spans.append(_LineSpan(start, end, SymbolKind.WINDOW))
            if end >= line_count:
                break
            start += step
        return spans
