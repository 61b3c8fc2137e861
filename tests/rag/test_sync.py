"""Tests for mirroring repository files into the knowledge store."""

from __future__ import annotations

import pytest

from evolver.errors import UpstreamCallFailed
from evolver.git.github import GitHubGateway
from evolver.models import DocumentSource, RepositoryTarget
from evolver.rag.store import KnowledgeStore
from evolver.rag.sync import RepositorySync
from tests._fixtures.fakes import DroppingUrlopen, FakeGitHubServer

REPOSITORY = RepositoryTarget(owner="facebook", name="react", branch="main")


def _server() -> FakeGitHubServer:
    server = FakeGitHubServer(
        {
            "src/a.ts": "export const a = 1;\n",
            "README.md": "# React\n",
            "Makefile": "all:\n",
            "logo.png": "binary",
        }
    )
    server.extra_tree = [
        {"path": "src", "type": "tree", "size": 0},
        {"path": "src/huge.js", "type": "blob", "size": 100_000},
        {"path": "src/missing.js", "type": "blob", "size": 12},
    ]
    return server


def test_sync_upserts_eligible_files_and_counts_failures(
    knowledge_store: KnowledgeStore,
) -> None:
    server = _server()
    sleeps: list[float] = []
    syncer = RepositorySync(
        GitHubGateway("token", transport=server), knowledge_store, sleep=sleeps.append
    )

    result = syncer.sync(REPOSITORY)

    assert (result.synced, result.failed, result.total_files) == (2, 1, 3)
    assert sleeps == [0.1, 0.1]
    documents = knowledge_store.query(source=DocumentSource.REPOSITORY)
    assert sorted(doc.file_path for doc in documents) == ["README.md", "src/a.ts"]
    assert all(doc.repo_owner == "facebook" and doc.repo_name == "react" for doc in documents)
    assert knowledge_store.query(language="typescript")[0].content == "export const a = 1;\n"
    assert server.calls("GET", "git/trees/main")[0]["query"] == {"recursive": "1"}


def test_sync_respects_file_cap_and_persists(tmp_path) -> None:
    server = _server()
    path = tmp_path / "kb.json"
    syncer = RepositorySync(
        GitHubGateway("token", transport=server),
        KnowledgeStore(path),
        max_files=1,
        sleep=lambda _: None,
    )

    result = syncer.sync(REPOSITORY)

    assert result.synced == 1
    assert result.total_files == 3
    assert len(KnowledgeStore(path)) == 1


def test_sync_twice_refreshes_instead_of_duplicating(knowledge_store: KnowledgeStore) -> None:
    server = _server()
    syncer = RepositorySync(
        GitHubGateway("token", transport=server), knowledge_store, delay=0
    )

    syncer.sync(REPOSITORY)
    server.files["src/a.ts"] = "export const a = 2;\n"
    syncer.sync(REPOSITORY)

    assert len(knowledge_store) == 2
    assert knowledge_store.query(language="typescript")[0].content == "export const a = 2;\n"


def test_sync_propagates_tree_listing_failure(knowledge_store: KnowledgeStore) -> None:
    server = _server()
    server.failures["git/trees"] = [500]
    syncer = RepositorySync(GitHubGateway("token", transport=server), knowledge_store)

    with pytest.raises(UpstreamCallFailed):
        syncer.sync(REPOSITORY)
    assert len(knowledge_store) == 0


def test_sync_counts_dropped_file_fetch_as_failed(
    monkeypatch, knowledge_store: KnowledgeStore
) -> None:
    server = _server()
    monkeypatch.setattr(
        "evolver.git.github.urlopen", DroppingUrlopen(server, {"contents/README.md": 1})
    )
    syncer = RepositorySync(GitHubGateway("token"), knowledge_store, delay=0)

    result = syncer.sync(REPOSITORY)

    assert (result.synced, result.failed, result.total_files) == (1, 2, 3)
    assert [doc.file_path for doc in knowledge_store.query()] == ["src/a.ts"]
