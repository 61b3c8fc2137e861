"""Constants for knowledge retrieval and ingestion."""

from __future__ import annotations

from typing import Dict

MIN_KEYWORD_LENGTH = 3
CONTENT_MATCH_WEIGHT = 1.0
FILENAME_MATCH_WEIGHT = 0.5
OCCURRENCE_WEIGHT = 0.1
OCCURRENCE_BONUS_CAP = 2.0
RECENCY_HORIZON_DAYS = 365.0

MAX_CONTEXT_CHARS = 10_000
TRUNCATION_MARKER = "\n...[content truncated]"

DEFAULT_QUERY_LIMIT = 100

LANGUAGE_BY_EXTENSION: Dict[str, str] = {
    "ts": "typescript",
    "tsx": "typescript",
    "js": "javascript",
    "jsx": "javascript",
    "py": "python",
    "java": "java",
    "go": "go",
    "rs": "rust",
    "cpp": "cpp",
    "c": "c",
    "cs": "csharp",
    "php": "php",
    "rb": "ruby",
    "swift": "swift",
    "kt": "kotlin",
    "scala": "scala",
    "sh": "shell",
    "bash": "shell",
    "json": "json",
    "yaml": "yaml",
    "yml": "yaml",
    "xml": "xml",
    "md": "markdown",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "sql": "sql",
}


def detect_language(path: str) -> str:
    """Map a file path to the language tag used by the knowledge base."""
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return "unknown"
    extension = name.rsplit(".", 1)[-1].lower()
    return LANGUAGE_BY_EXTENSION.get(extension, "unknown")
