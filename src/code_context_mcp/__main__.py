"""Allow ``python -m code_context_mcp``."""

from .cli.main import main

if __name__ == "__main__":
    main()
