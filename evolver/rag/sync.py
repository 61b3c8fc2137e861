"""Mirror files of an external repository into the knowledge store."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, List

from ..errors import UnknownRepository, UpstreamCallFailed
from ..git.github import GitHubGateway
from ..logging import get_logger
from ..models import RepositoryTarget, TreeEntry
from .constants import LANGUAGE_BY_EXTENSION
from .repos import RepositoryRegistry
from .store import KnowledgeStore


@dataclass
class SyncResult:
    """Summary of one repository sync."""

    synced: int
    failed: int
    total_files: int


class RepositorySync:
    """Copies eligible files from a hosted repository into the knowledge base."""

    def __init__(
        self,
        gateway: GitHubGateway,
        store: KnowledgeStore,
        *,
        max_files: int = 50,
        max_file_size: int = 100_000,
        delay: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.max_files = max_files
        self.max_file_size = max_file_size
        self.delay = delay
        self._sleep = sleep
        self.logger = get_logger("sync")

    def sync(self, repository: RepositoryTarget) -> SyncResult:
        """Fetch the tree and upsert up to ``max_files`` documents.

        Listing the tree is the only call whose failure aborts the sync; a
        failing file is counted and skipped.
        """
        tree = self.gateway.list_tree(repository.owner, repository.name, repository.branch)
        files = self._eligible(tree)
        self.logger.info("Found %d files in %s", len(files), repository.slug)

        batch = files[: self.max_files]
        synced = 0
        failed = 0
        for index, entry in enumerate(batch):
            try:
                payload = self.gateway.get_file(
                    repository.owner, repository.name, entry.path, repository.branch
                )
                content = payload.text
            except (UpstreamCallFailed, UnicodeDecodeError, ValueError) as exc:
                self.logger.warning("Failed to fetch %s: %s", entry.path, exc)
                failed += 1
            else:
                self.store.upsert_repository_file(
                    owner=repository.owner,
                    name=repository.name,
                    path=entry.path,
                    content=content,
                )
                synced += 1
            # fixed pause between file fetches
            if index < len(batch) - 1 and self.delay > 0:
                self._sleep(self.delay)

        self.store.persist()
        self.logger.info("Synced %d files from %s (%d failed)", synced, repository.slug, failed)
        return SyncResult(synced=synced, failed=failed, total_files=len(files))

    def sync_tracked(self, registry: RepositoryRegistry, repo_id: str) -> SyncResult:
        """Sync a registered repository and record its file count and sync time."""
        tracked = registry.get(repo_id)
        if tracked is None:
            raise UnknownRepository(f"Repository {repo_id} not found")
        result = self.sync(tracked.to_target())
        registry.record_sync(repo_id, files_count=result.synced)
        registry.persist()
        return result

    def _eligible(self, tree: List[TreeEntry]) -> List[TreeEntry]:
        eligible: List[TreeEntry] = []
        for entry in tree:
            if entry.type != "blob" or entry.size >= self.max_file_size:
                continue
            name = entry.path.rsplit("/", 1)[-1]
            if "." not in name:
                continue
            if name.rsplit(".", 1)[-1].lower() in LANGUAGE_BY_EXTENSION:
                eligible.append(entry)
        return eligible


__all__ = ["RepositorySync", "SyncResult"]
