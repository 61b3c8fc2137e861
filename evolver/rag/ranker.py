"""Keyword and recency based relevance ranking for knowledge documents."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence

from ..models import DocumentSource, KnowledgeDocument, ScoredDocument
from .constants import (
    CONTENT_MATCH_WEIGHT,
    DEFAULT_QUERY_LIMIT,
    FILENAME_MATCH_WEIGHT,
    MAX_CONTEXT_CHARS,
    MIN_KEYWORD_LENGTH,
    OCCURRENCE_BONUS_CAP,
    OCCURRENCE_WEIGHT,
    RECENCY_HORIZON_DAYS,
    TRUNCATION_MARKER,
)

if TYPE_CHECKING:  # pragma: no cover
    from .store import KnowledgeStore


def extract_keywords(query: str) -> List[str]:
    """Lowercase the query and keep whitespace tokens longer than two characters."""
    return [token for token in query.lower().split() if len(token) >= MIN_KEYWORD_LENGTH]


def recency_bonus(created_at: datetime, now: datetime) -> float:
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    age_days = (now - created_at).total_seconds() / 86_400
    return min(1.0, max(0.0, 1.0 - age_days / RECENCY_HORIZON_DAYS))


def score_document(
    document: KnowledgeDocument, keywords: Sequence[str], *, now: datetime
) -> float:
    content = document.content.lower()
    file_name = document.file_name.lower()
    score = 0.0
    for keyword in keywords:
        if keyword in content:
            score += CONTENT_MATCH_WEIGHT
        if keyword in file_name:
            score += FILENAME_MATCH_WEIGHT
        # capped occurrence bonus
        score += min(content.count(keyword) * OCCURRENCE_WEIGHT, OCCURRENCE_BONUS_CAP)
    score += recency_bonus(document.created_at, now)
    return score


def rank(
    query: str,
    documents: Sequence[KnowledgeDocument],
    limit: int,
    *,
    now: datetime | None = None,
) -> List[ScoredDocument]:
    """Score ``documents`` against ``query`` and return the top ``limit``.

    Documents scoring zero are dropped. Ties keep the order in which the
    documents were supplied.
    """
    if limit <= 0:
        return []
    reference = now or datetime.now(UTC)
    keywords = extract_keywords(query)
    scored = [
        ScoredDocument(document=document, score=score_document(document, keywords, now=reference))
        for document in documents
    ]
    scored = [item for item in scored if item.score > 0]
    scored.sort(key=lambda item: item.score, reverse=True)
    return scored[:limit]


def format_context(scored: Sequence[ScoredDocument], *, max_chars: int = MAX_CONTEXT_CHARS) -> str:
    """Render ranked documents as inline reference material for a prompt."""
    blocks: List[str] = []
    for item in scored:
        document = item.document
        content = document.content
        if len(content) > max_chars:
            content = content[:max_chars] + TRUNCATION_MARKER
        header = f"### {document.file_name}{_origin_label(document)}"
        blocks.append(f"{header}\n```{document.language or 'text'}\n{content}\n```")
    return "\n\n".join(blocks)


def _origin_label(document: KnowledgeDocument) -> str:
    if document.source is DocumentSource.REPOSITORY:
        return f" [from {document.repo_owner}/{document.repo_name}]"
    if document.source is DocumentSource.UPLOAD:
        return f" [uploaded document: {document.file_name}]"
    return ""


class RelevanceRanker:
    """Ranks stored documents for a query and formats them as prompt context."""

    def __init__(
        self,
        *,
        candidate_limit: int = DEFAULT_QUERY_LIMIT,
        max_context_chars: int = MAX_CONTEXT_CHARS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.candidate_limit = candidate_limit
        self.max_context_chars = max_context_chars
        self._clock = clock or (lambda: datetime.now(UTC))

    def rank(
        self, query: str, documents: Sequence[KnowledgeDocument], limit: int
    ) -> List[ScoredDocument]:
        return rank(query, documents, limit, now=self._clock())

    def search(
        self,
        store: "KnowledgeStore",
        query: str,
        *,
        language: Optional[str] = None,
        source: Optional[DocumentSource] = None,
        limit: int = 5,
    ) -> List[ScoredDocument]:
        """Read candidates from the store (newest first) and rank them."""
        candidates = store.query(language=language, source=source, limit=self.candidate_limit)
        return self.rank(query, candidates, limit)

    def format_context(self, scored: Sequence[ScoredDocument]) -> str:
        return format_context(scored, max_chars=self.max_context_chars)


__all__ = [
    "RelevanceRanker",
    "extract_keywords",
    "format_context",
    "rank",
    "recency_bonus",
    "score_document",
]
