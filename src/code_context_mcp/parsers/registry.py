"""Parser registry for Code Context MCP."""

from pathlib import Path

from loguru import logger

from ..config.defaults import LANGUAGE_MAPPINGS
from .base import StructuralParser
from .tree_sitter import TREE_SITTER_LANGUAGES, TreeSitterParser


class ParserRegistry:
    """Maps file extensions to language tags and language tags to parsers."""

    def __init__(self) -> None:
        """Initialize parser registry with lazy loading."""
        self._parsers: dict[str, StructuralParser] = {}  # created on demand
        self._extension_map: dict[str, str] = {
            ext.lower(): lang for ext, lang in LANGUAGE_MAPPINGS.items()
        }

    def register_parser(
        self,
        language: str,
        parser: StructuralParser,
        extensions: list[str] | None = None,
    ) -> None:
        """Register a parser for a specific language.

        Args:
            language: Language tag
            parser: Parser instance
            extensions: Extensions to route to this language, in addition to
                the parser's own supported extensions
        """
        self._parsers[language] = parser
        for ext in [*(extensions or []), *parser.get_supported_extensions()]:
            self._extension_map[ext.lower()] = language
        logger.debug(f"Registered parser for {language}: {parser.__class__.__name__}")

    def language_for(self, file_path: str | Path) -> str:
        """Language tag for a file, ``text`` when the extension is unknown."""
        return self._extension_map.get(Path(file_path).suffix.lower(), "text")

    def get_parser(self, language: str) -> StructuralParser | None:
        """Get the parser for a language tag (lazy instantiation).

        Returns:
            Parser instance, or None when the language has no structural parser
        """
        parser = self._parsers.get(language)
        if parser is None and language in TREE_SITTER_LANGUAGES:
            parser = TreeSitterParser(language)
            self._parsers[language] = parser
            logger.debug(f"Lazily instantiated parser for {language}")
        return parser

    def get_supported_languages(self) -> list[str]:
        return sorted(set(TREE_SITTER_LANGUAGES) | set(self._parsers))
