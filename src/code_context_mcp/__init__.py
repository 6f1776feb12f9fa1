"""Code Context MCP - incremental semantic code search across local projects."""

__version__ = "0.3.0"
__author__ = "Code Context MCP contributors"

from .core.exceptions import CodeContextError

__all__ = ["CodeContextError", "__version__"]
