"""Default configurations for Code Context MCP."""

from pathlib import Path

# Dotfiles that should NEVER be skipped (CI/CD configurations)
ALLOWED_DOTFILES = {
    ".github",  # GitHub workflows/actions
    ".gitlab-ci",  # GitLab CI
    ".circleci",  # CircleCI config
}

# Default file extensions to index
DEFAULT_FILE_EXTENSIONS = [
    ".py",
    ".pyw",
    ".js",
    ".jsx",
    ".mjs",
    ".ts",
    ".tsx",
    ".java",
    ".c",
    ".h",
    ".cc",
    ".cpp",
    ".hpp",
    ".cs",
    ".go",
    ".rs",
    ".php",
    ".rb",
    ".swift",
    ".kt",
    ".scala",
    ".sh",
    ".bash",
    ".toml",
    ".yaml",
    ".yml",
    ".json",
    ".md",
    ".txt",
]

# Extension -> language tag used to pick a structural parser
LANGUAGE_MAPPINGS: dict[str, str] = {
    ".py": "python",
    ".pyw": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".go": "go",
    ".rs": "rust",
    ".php": "php",
    ".rb": "ruby",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
    ".sh": "bash",
    ".bash": "bash",
    ".toml": "toml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".md": "markdown",
    ".txt": "text",
}

# Embedding dimensions by model family (Ollama / OpenAI / sentence-transformers)
MODEL_DIMENSIONS: dict[str, int] = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-mpnet-base-v2": 768,
}

DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"
DEFAULT_OLLAMA_HOST = "http://127.0.0.1:11434"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MILVUS_ADDRESS = "http://127.0.0.1:19530"

DEFAULT_MAX_PROJECTS = 10
MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB
DEFAULT_SEARCH_LIMIT = 10
MAX_QUERY_LIMIT = 50

# Chunking limits (in lines)
MAX_CHUNK_LINES = 120
MIN_CHUNK_LINES = 3
WINDOW_LINES = 60
WINDOW_OVERLAP = 10

COLLECTION_PREFIX = "code_index_"

# Directories to ignore during indexing
DEFAULT_IGNORE_PATTERNS = [
    # Version control
    ".git",
    ".hg",
    ".svn",
    # Python caches and environments
    "__pycache__",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    ".tox",
    ".venv",
    "venv",
    # JavaScript/Node.js
    "bower_components",
    "coverage",
    "node_modules",
    # Build outputs
    "_build",
    "build",
    "dist",
    "htmlcov",
    "target",
    # Generic caches
    ".cache",
    # IDEs and editors
    ".idea",
    ".vscode",
    # Build artifacts and packages
    "*.egg-info",
    "vendor",
    # Tool-specific directories
    ".code-context",
]

# File patterns to ignore
DEFAULT_IGNORE_FILES = [
    "*.pyc",
    "*.pyo",
    "*.so",
    "*.dll",
    "*.dylib",
    "*.exe",
    "*.o",
    "*.a",
    "*.jar",
    "*.zip",
    "*.tar",
    "*.gz",
    "*.min.js",
    "*.lock",
    "*.log",
    "*.tmp",
    "*.swp",
    ".DS_Store",
]


def get_default_data_dir() -> Path:
    """Get the default directory for persisted state."""
    return Path.home() / ".code-context"


def get_model_dimensions(model_name: str) -> int:
    """Get the embedding dimension for a model name.

    Matches exact names first, then model families by substring
    (``nomic-embed-text:v1.5`` -> 768).

    Raises:
        ValueError: If the model is unknown
    """
    if model_name in MODEL_DIMENSIONS:
        return MODEL_DIMENSIONS[model_name]
    lowered = model_name.lower()
    for family, dims in MODEL_DIMENSIONS.items():
        if family.lower() in lowered:
            return dims
    if "minilm" in lowered:
        return 384
    raise ValueError(f"Unknown embedding model: {model_name}")
