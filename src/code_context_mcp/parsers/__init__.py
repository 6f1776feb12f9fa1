"""Structural parsers for Code Context MCP."""

from .base import StructuralParser
from .registry import ParserRegistry
from .tree_sitter import TreeSitterParser

__all__ = ["ParserRegistry", "StructuralParser", "TreeSitterParser"]
