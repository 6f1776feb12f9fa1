"""Base interface for structural parsers."""

from abc import ABC, abstractmethod

from ..core.models import BoundarySpan


class StructuralParser(ABC):
    """Reports the structural units of a source file as byte spans.

    Implementations return spans in source order. They may raise on
    malformed input; callers treat any failure as "no structure" and fall
    back to line windows.
    """

    def __init__(self, language: str) -> None:
        self.language = language

    @abstractmethod
    def parse(self, text: str) -> list[BoundarySpan]:
        """Parse source text into ordered boundary spans."""
        ...

    def get_supported_extensions(self) -> list[str]:
        """File extensions this parser handles, used by register_parser()."""
        return []
