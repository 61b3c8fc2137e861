"""Knowledge storage, ingestion and relevance ranking."""

from .ranker import RelevanceRanker, format_context, rank
from .repos import RepositoryRegistry
from .store import KnowledgeStore
from .sync import RepositorySync, SyncResult

__all__ = [
    "KnowledgeStore",
    "RelevanceRanker",
    "RepositoryRegistry",
    "RepositorySync",
    "SyncResult",
    "format_context",
    "rank",
]
