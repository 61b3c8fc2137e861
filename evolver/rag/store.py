"""File-backed knowledge document store."""

from __future__ import annotations

import json
import threading
import uuid
from collections import Counter
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List, Optional

from ..logging import get_logger
from ..models import DocumentSource, KnowledgeDocument
from .constants import DEFAULT_QUERY_LIMIT, detect_language

_STORE_VERSION = 1


class KnowledgeStore:
    """Persists knowledge documents as a JSON file; ranking happens elsewhere."""

    def __init__(self, path: Path | None = None, *, load_existing: bool = True) -> None:
        self._path = path
        self._documents: Dict[str, KnowledgeDocument] = {}
        self._dirty = False
        self._lock = threading.RLock()
        self.logger = get_logger("store")
        if path is not None and load_existing:
            self._load(path)

    def add(
        self,
        *,
        file_name: str,
        content: str,
        source: DocumentSource,
        language: Optional[str] = None,
        repo_owner: Optional[str] = None,
        repo_name: Optional[str] = None,
        file_path: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> KnowledgeDocument:
        document = KnowledgeDocument(
            id=str(uuid.uuid4()),
            file_name=file_name,
            content=content,
            source=source,
            language=language or detect_language(file_path or file_name),
            created_at=created_at or datetime.now(UTC),
            repo_owner=repo_owner,
            repo_name=repo_name,
            file_path=file_path,
        )
        with self._lock:
            self._documents[document.id] = document
            self._dirty = True
        return document

    def get(self, document_id: str) -> Optional[KnowledgeDocument]:
        with self._lock:
            return self._documents.get(document_id)

    def delete(self, document_id: str) -> bool:
        with self._lock:
            removed = self._documents.pop(document_id, None)
            if removed is not None:
                self._dirty = True
            return removed is not None

    def query(
        self,
        *,
        language: Optional[str] = None,
        source: Optional[DocumentSource] = None,
        limit: int = DEFAULT_QUERY_LIMIT,
    ) -> List[KnowledgeDocument]:
        """Return documents matching the filters, newest first."""
        with self._lock:
            documents = list(self._documents.values())
        if language and language != "all":
            documents = [doc for doc in documents if doc.language == language]
        if source is not None:
            documents = [doc for doc in documents if doc.source is source]
        documents.sort(key=lambda doc: doc.created_at, reverse=True)
        return documents[:limit] if limit > 0 else []

    def upsert_repository_file(
        self, *, owner: str, name: str, path: str, content: str
    ) -> KnowledgeDocument:
        """Create or refresh the document mirroring ``owner/name:path``."""
        with self._lock:
            for existing in self._documents.values():
                if (
                    existing.source is DocumentSource.REPOSITORY
                    and existing.repo_owner == owner
                    and existing.repo_name == name
                    and existing.file_path == path
                ):
                    refreshed = replace(existing, content=content)
                    self._documents[existing.id] = refreshed
                    self._dirty = True
                    return refreshed
            return self.add(
                file_name=path.rsplit("/", 1)[-1] or path,
                content=content,
                source=DocumentSource.REPOSITORY,
                language=detect_language(path),
                repo_owner=owner,
                repo_name=name,
                file_path=path,
            )

    def stats(self) -> Dict[str, object]:
        with self._lock:
            documents = list(self._documents.values())
        by_source = Counter(doc.source.value for doc in documents)
        by_language = Counter(doc.language or "unknown" for doc in documents)
        by_repo = Counter(
            f"{doc.repo_owner}/{doc.repo_name}"
            for doc in documents
            if doc.source is DocumentSource.REPOSITORY
        )
        return {
            "total": len(documents),
            "by_source": {source.value: by_source.get(source.value, 0) for source in DocumentSource},
            "by_language": dict(by_language.most_common()),
            "by_repo": dict(by_repo.most_common()),
        }

    def __len__(self) -> int:
        return len(self._documents)

    def persist(self) -> None:
        with self._lock:
            if not self._dirty or self._path is None:
                return
            payload = {
                "version": _STORE_VERSION,
                "documents": [_document_to_dict(doc) for doc in self._documents.values()],
            }
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            self._dirty = False

    # ------------------------------------------------------------------
    # Internal helpers

    def _load(self, path: Path) -> None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("Ignoring unreadable knowledge file %s: %s", path, exc)
            return
        if not isinstance(data, dict) or data.get("version") != _STORE_VERSION:
            version = data.get("version") if isinstance(data, dict) else None
            self.logger.warning(
                "Ignoring knowledge file %s with unsupported version %r", path, version
            )
            return
        entries = data.get("documents")
        if not isinstance(entries, list):
            self.logger.warning("Ignoring knowledge file %s without a documents list", path)
            return
        skipped = 0
        for raw in entries:
            document = _document_from_dict(raw)
            if document is None:
                skipped += 1
            else:
                self._documents[document.id] = document
        if skipped:
            self.logger.warning("Skipped %d malformed documents in %s", skipped, path)
        self._dirty = False


def _document_to_dict(document: KnowledgeDocument) -> Dict[str, object]:
    return {
        "id": document.id,
        "file_name": document.file_name,
        "file_path": document.file_path,
        "content": document.content,
        "source": document.source.value,
        "language": document.language,
        "repo_owner": document.repo_owner,
        "repo_name": document.repo_name,
        "created_at": document.created_at.isoformat(),
    }


def _document_from_dict(payload: object) -> Optional[KnowledgeDocument]:
    if not isinstance(payload, dict):
        return None
    doc_id = payload.get("id")
    file_name = payload.get("file_name")
    content = payload.get("content")
    if not isinstance(doc_id, str) or not isinstance(file_name, str) or not isinstance(content, str):
        return None
    try:
        source = DocumentSource(payload.get("source"))
        created_at = datetime.fromisoformat(str(payload.get("created_at")))
    except ValueError:
        return None
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=UTC)
    return KnowledgeDocument(
        id=doc_id,
        file_name=file_name,
        content=content,
        source=source,
        language=_optional_str(payload.get("language")),
        created_at=created_at,
        repo_owner=_optional_str(payload.get("repo_owner")),
        repo_name=_optional_str(payload.get("repo_name")),
        file_path=_optional_str(payload.get("file_path")),
    )


def _optional_str(value: object) -> Optional[str]:
    return value if isinstance(value, str) else None


__all__ = ["KnowledgeStore"]
