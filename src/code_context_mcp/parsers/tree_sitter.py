"""Tree-sitter boundary parser backed by tree-sitter-language-pack."""

import threading

from loguru import logger

from ..core.models import BoundarySpan, SymbolKind
from .base import StructuralParser

# Named node types captured as a whole (their children are not descended)
NODE_KINDS: dict[str, SymbolKind] = {
    # functions
    "function_definition": SymbolKind.FUNCTION,
    "function_declaration": SymbolKind.FUNCTION,
    "function_item": SymbolKind.FUNCTION,
    "generator_function_declaration": SymbolKind.FUNCTION,
    # methods
    "method_definition": SymbolKind.METHOD,
    "method_declaration": SymbolKind.METHOD,
    "constructor_declaration": SymbolKind.METHOD,
    "method": SymbolKind.METHOD,
    # types
    "class_definition": SymbolKind.CLASS,
    "class_declaration": SymbolKind.CLASS,
    "class_specifier": SymbolKind.CLASS,
    "record_declaration": SymbolKind.CLASS,
    "class": SymbolKind.CLASS,
    "interface_declaration": SymbolKind.INTERFACE,
    "struct_item": SymbolKind.STRUCT,
    "struct_declaration": SymbolKind.STRUCT,
    "struct_specifier": SymbolKind.STRUCT,
    "enum_item": SymbolKind.ENUM,
    "enum_declaration": SymbolKind.ENUM,
    "enum_specifier": SymbolKind.ENUM,
    "trait_item": SymbolKind.TRAIT,
    "trait_declaration": SymbolKind.TRAIT,
    "impl_item": SymbolKind.IMPL,
    "type_declaration": SymbolKind.TYPE,
    "type_alias_declaration": SymbolKind.TYPE,
    "type_item": SymbolKind.TYPE,
    "mod_item": SymbolKind.MODULE,
    "module": SymbolKind.MODULE,
}

# Wrapper nodes whose kind comes from the definition they wrap
WRAPPER_NODES = {"decorated_definition"}

# Languages with a grammar in tree-sitter-language-pack that we extract from
TREE_SITTER_LANGUAGES = {
    "python": "python",
    "javascript": "javascript",
    "typescript": "typescript",
    "tsx": "tsx",
    "java": "java",
    "c": "c",
    "cpp": "cpp",
    "csharp": "csharp",
    "go": "go",
    "rust": "rust",
    "php": "php",
    "ruby": "ruby",
}


class TreeSitterParser(StructuralParser):
    """Structural parser for one tree-sitter grammar.

    The grammar is loaded lazily on first use. When it cannot be loaded the
    parser reports no spans, which sends the file down the window fallback.
    """

    def __init__(self, language: str, grammar: str | None = None) -> None:
        super().__init__(language)
        self.grammar = grammar or TREE_SITTER_LANGUAGES.get(language, language)
        self._parser = None
        self._initialized = False
        # tree-sitter parsers are not safe to share between threads
        self._lock = threading.Lock()

    def _initialize_parser(self) -> None:
        try:
            from tree_sitter_language_pack import get_parser

            self._parser = get_parser(self.grammar)
            logger.debug(f"{self.language} tree-sitter parser initialized")
        except Exception as e:
            logger.debug(f"tree-sitter grammar {self.grammar} unavailable: {e}")
            self._parser = None

    def _ensure_parser_initialized(self) -> None:
        if not self._initialized:
            self._initialize_parser()
            self._initialized = True

    @property
    def available(self) -> bool:
        self._ensure_parser_initialized()
        return self._parser is not None

    def parse(self, text: str) -> list[BoundarySpan]:
        """Extract top-most structural nodes in source order."""
        with self._lock:
            self._ensure_parser_initialized()
            if self._parser is None:
                return []
            tree = self._parser.parse(text.encode("utf-8"))

        spans = []
        # Pre-order walk, skipping the root (a Python file's root is "module")
        stack = list(reversed(tree.root_node.children))
        while stack:
            node = stack.pop()
            kind = self._identify_symbol(node)
            if kind is not None:
                spans.append(
                    BoundarySpan(
                        kind=kind.value,
                        start_byte=node.start_byte,
                        end_byte=node.end_byte,
                        name=self._extract_symbol_name(node),
                    )
                )
                continue
            stack.extend(reversed(node.children))
        return spans

    def _identify_symbol(self, node) -> SymbolKind | None:
        if not node.is_named:
            return None
        if node.type in WRAPPER_NODES:
            inner = node.child_by_field_name("definition")
            return self._identify_symbol(inner) if inner is not None else None
        return NODE_KINDS.get(node.type)

    def _extract_symbol_name(self, node) -> str | None:
        if node.type in WRAPPER_NODES:
            inner = node.child_by_field_name("definition")
            return self._extract_symbol_name(inner) if inner is not None else None

        name_node = node.child_by_field_name("name")
        if name_node is None:
            # C/C++ declarators nest the identifier
            declarator = node.child_by_field_name("declarator")
            while declarator is not None and "identifier" not in declarator.type:
                declarator = declarator.child_by_field_name("declarator")
            name_node = declarator
        if name_node is None:
            # Rust impl blocks are named by their type
            name_node = node.child_by_field_name("type")
        if name_node is None:
            for child in node.named_children:
                if "identifier" in child.type or "name" in child.type:
                    name_node = child
                    break
                # Go type_declaration -> type_spec -> name
                spec_name = child.child_by_field_name("name")
                if spec_name is not None:
                    name_node = spec_name
                    break
        if name_node is None:
            return None
        return name_node.text.decode("utf-8", errors="replace")
