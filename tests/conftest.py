from __future__ import annotations

from pathlib import Path

import pytest

from evolver.rag.store import KnowledgeStore
from tests._fixtures.fakes import FakeGitHubServer


@pytest.fixture
def github_server() -> FakeGitHubServer:
    """Hosting API seeded with two small TypeScript files."""
    return FakeGitHubServer(
        {
            "src/a.ts": "export const add = (a: number, b: number) => a + b;\n",
            "src/b.ts": "export function memo(fn) { return fn; }\n",
        }
    )


@pytest.fixture
def knowledge_store(tmp_path: Path) -> KnowledgeStore:
    return KnowledgeStore(tmp_path / "knowledge.json")


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in (
        "EVOLVER_MODEL_API_KEY",
        "GEMINI_API_KEY",
        "EVOLVER_GITHUB_TOKEN",
        "GITHUB_TOKEN",
        "EVOLVER_TARGET",
    ):
        monkeypatch.delenv(key, raising=False)
