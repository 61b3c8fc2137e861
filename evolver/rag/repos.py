"""Registry of external repositories mirrored into the knowledge base."""

from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import DuplicateRepository
from ..logging import get_logger
from ..models import TrackedRepository

_REGISTRY_VERSION = 1


class RepositoryRegistry:
    """Tracks which repositories are synced, persisted beside the knowledge store."""

    def __init__(self, path: Path | None = None, *, load_existing: bool = True) -> None:
        self._path = path
        self._repositories: Dict[str, TrackedRepository] = {}
        self._dirty = False
        self._lock = threading.RLock()
        self.logger = get_logger("repos")
        if path is not None and load_existing:
            self._load(path)

    def add(self, owner: str, name: str, branch: str = "main") -> TrackedRepository:
        """Register ``owner/name``; a repository is tracked at most once."""
        with self._lock:
            for existing in self._repositories.values():
                if existing.owner == owner and existing.name == name:
                    raise DuplicateRepository(f"Repository {owner}/{name} is already tracked")
            repository = TrackedRepository(
                id=str(uuid.uuid4()),
                owner=owner,
                name=name,
                branch=branch or "main",
                created_at=datetime.now(UTC),
            )
            self._repositories[repository.id] = repository
            self._dirty = True
        return repository

    def get(self, repo_id: str) -> Optional[TrackedRepository]:
        with self._lock:
            return self._repositories.get(repo_id)

    def list(self) -> List[TrackedRepository]:
        """Return tracked repositories, newest first."""
        with self._lock:
            repositories = list(self._repositories.values())
        repositories.sort(key=lambda repo: repo.created_at, reverse=True)
        return repositories

    def delete(self, repo_id: str) -> bool:
        with self._lock:
            removed = self._repositories.pop(repo_id, None)
            if removed is not None:
                self._dirty = True
            return removed is not None

    def record_sync(
        self, repo_id: str, *, files_count: int, when: Optional[datetime] = None
    ) -> Optional[TrackedRepository]:
        with self._lock:
            existing = self._repositories.get(repo_id)
            if existing is None:
                return None
            updated = replace(
                existing, files_count=files_count, last_sync=when or datetime.now(UTC)
            )
            self._repositories[repo_id] = updated
            self._dirty = True
            return updated

    def __len__(self) -> int:
        return len(self._repositories)

    def persist(self) -> None:
        with self._lock:
            if not self._dirty or self._path is None:
                return
            payload = {
                "version": _REGISTRY_VERSION,
                "repositories": [_repository_to_dict(repo) for repo in self._repositories.values()],
            }
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            self._dirty = False

    def _load(self, path: Path) -> None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return
        except (OSError, json.JSONDecodeError) as exc:
            self.logger.warning("Ignoring unreadable repository registry %s: %s", path, exc)
            return
        if not isinstance(data, dict) or data.get("version") != _REGISTRY_VERSION:
            self.logger.warning("Ignoring repository registry %s with unsupported version", path)
            return
        entries = data.get("repositories")
        for raw in entries if isinstance(entries, list) else []:
            repository = _repository_from_dict(raw)
            if repository is None:
                self.logger.warning("Skipping malformed repository entry in %s", path)
                continue
            self._repositories[repository.id] = repository
        self._dirty = False


def _repository_to_dict(repository: TrackedRepository) -> Dict[str, object]:
    return {
        "id": repository.id,
        "owner": repository.owner,
        "name": repository.name,
        "branch": repository.branch,
        "is_active": repository.is_active,
        "files_count": repository.files_count,
        "last_sync": repository.last_sync.isoformat() if repository.last_sync else None,
        "created_at": repository.created_at.isoformat(),
    }


def _repository_from_dict(payload: object) -> Optional[TrackedRepository]:
    if not isinstance(payload, dict):
        return None
    values = [payload.get(key) for key in ("id", "owner", "name", "branch")]
    if not all(isinstance(value, str) and value for value in values):
        return None
    repo_id, owner, name, branch = values
    try:
        created_at = _parse_timestamp(payload.get("created_at"))
        last_sync = payload.get("last_sync")
        last_sync_at = _parse_timestamp(last_sync) if last_sync is not None else None
    except ValueError:
        return None
    files_count = payload.get("files_count")
    return TrackedRepository(
        id=repo_id,
        owner=owner,
        name=name,
        branch=branch,
        created_at=created_at,
        is_active=payload.get("is_active") is not False,
        files_count=files_count if isinstance(files_count, int) else 0,
        last_sync=last_sync_at,
    )


def _parse_timestamp(value: object) -> datetime:
    parsed = datetime.fromisoformat(str(value))
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


__all__ = ["RepositoryRegistry"]
