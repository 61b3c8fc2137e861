"""Tests for the self-dialogue orchestrator."""

from __future__ import annotations

import http.client
import time
from datetime import UTC, datetime

import pytest

from evolver.errors import ConfigurationMissing
from evolver.git.github import GitHubGateway
from evolver.llm.gateway import ModelGateway
from evolver.logging import ActivityLog
from evolver.models import CyclePhase, DeploymentStatus, DocumentSource, TreeEntry
from evolver.orchestrator import MutationOrchestrator, is_affirmative
from evolver.rag.ranker import RelevanceRanker
from evolver.rag.store import KnowledgeStore
from tests._fixtures.fakes import (
    TARGET,
    FakeGitHubServer,
    ScriptedModel,
    build_orchestrator,
    check_run,
    network_failure,
)

IMPROVED = "export const add = (a: number, b: number): number => a + b;\n"


def _messages(orchestrator: MutationOrchestrator) -> list[str]:
    return [entry.message for entry in orchestrator.snapshot().logs]


@pytest.mark.parametrize(
    ("response", "expected"),
    [("YES", True), ("yes please", True), ("Yes.", True), ("NO", False), ("", False), ("Nope", False)],
)
def test_is_affirmative(response: str, expected: bool) -> None:
    assert is_affirmative(response) is expected


@pytest.mark.parametrize("decision", ["no", "", network_failure()])
def test_negative_decision_never_commits(
    github_server: FakeGitHubServer, decision: object
) -> None:
    model = ScriptedModel(decision=decision, mutation=IMPROVED)
    orchestrator = build_orchestrator(model, github_server)

    report = orchestrator.run_cycle()

    assert report.outcome == "declined"
    assert report.decision is False
    assert github_server.puts == []
    assert "mutation" not in model.calls
    snapshot = orchestrator.snapshot()
    assert snapshot.cycle == 1
    assert snapshot.phase is CyclePhase.IDLE
    assert snapshot.mutations == 0


def test_affirmative_decision_commits_and_tracks_deployment(
    github_server: FakeGitHubServer,
) -> None:
    github_server.commit_shas = ["abc123"]
    github_server.check_runs["abc123"] = [
        [],
        [check_run("in_progress")],
        [check_run("completed", "success")],
    ]
    restarts: list[str | None] = []
    model = ScriptedModel(decision="yes please", mutation=IMPROVED)
    orchestrator = build_orchestrator(model, github_server, on_restart=restarts.append)

    report = orchestrator.run_cycle()

    assert report.outcome == "deployment_success"
    assert report.path == "src/a.ts"
    assert report.commit == "abc123"
    assert report.deployment is not None
    assert report.deployment.status is DeploymentStatus.SUCCESS
    assert report.deployment.attempts == 3
    assert restarts == ["abc123"]
    assert model.calls == ["question", "answer", "decision", "mutation"]

    put = github_server.puts[0]
    assert put["path"] == "/repos/octo/app/contents/src/a.ts"
    assert put["payload"]["message"] == "Mutation Cycle 1: Optimized src/a.ts with knowledge base"
    assert put["payload"]["branch"] == "main"
    assert github_server.files["src/a.ts"] == IMPROVED

    snapshot = orchestrator.snapshot()
    assert snapshot.cycle == 1
    assert snapshot.mutations == 1
    assert snapshot.last_commit == "abc123"
    assert snapshot.deployment_progress is None
    assert snapshot.phase is CyclePhase.IDLE
    messages = _messages(orchestrator)
    assert "AI PROBE: How should retries be bounded?" in messages
    assert "Analyzing: src/a.ts for architectural optimization..." in messages
    assert "Mutation committed. Awaiting deployment pipeline..." in messages


def test_unchanged_output_is_skipped_without_commit(github_server: FakeGitHubServer) -> None:
    model = ScriptedModel(decision="YES", mutation=github_server.files["src/a.ts"])
    orchestrator = build_orchestrator(model, github_server)

    report = orchestrator.run_cycle()

    assert report.outcome == "no_improvement"
    assert github_server.puts == []
    assert "No optimizations found for src/a.ts. Cycle skipped." in _messages(orchestrator)
    assert orchestrator.snapshot().cycle == 1


@pytest.mark.parametrize("mutation", ["", "tiny", "0123456789", network_failure()])
def test_short_or_failed_output_is_rejected(
    github_server: FakeGitHubServer, mutation: object
) -> None:
    orchestrator = build_orchestrator(
        ScriptedModel(decision="YES", mutation=mutation), github_server
    )

    report = orchestrator.run_cycle()

    assert report.outcome == "no_improvement"
    assert github_server.puts == []


def test_question_failure_ends_cycle_without_counting(github_server: FakeGitHubServer) -> None:
    model = ScriptedModel(question=network_failure())
    orchestrator = build_orchestrator(model, github_server)

    report = orchestrator.run_cycle()

    assert report.outcome == "question_failed"
    assert model.calls == ["question"]
    snapshot = orchestrator.snapshot()
    assert snapshot.cycle == 0
    assert snapshot.resonance == 0.0
    assert snapshot.phase is CyclePhase.IDLE
    assert snapshot.logs[-1].category == "error"


def test_dropped_model_connection_during_question_is_not_counted(
    monkeypatch, github_server: FakeGitHubServer
) -> None:
    def fake_urlopen(request, timeout=None):
        raise http.client.RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr("evolver.llm.gateway.urlopen", fake_urlopen)
    orchestrator = MutationOrchestrator(
        ModelGateway(api_key="test-key"),
        GitHubGateway("gh-token", transport=github_server),
        TARGET,
        step_delay=0,
    )

    report = orchestrator.run_cycle()

    assert report.outcome == "question_failed"
    snapshot = orchestrator.snapshot()
    assert snapshot.cycle == 0
    assert "Remote end closed connection" in snapshot.logs[-1].message


def test_decision_prompt_carries_question_and_answer(github_server: FakeGitHubServer) -> None:
    model = ScriptedModel()
    orchestrator = build_orchestrator(model, github_server)

    orchestrator.run_cycle()

    prompt = model.prompts[model.calls.index("decision")]
    assert "How should retries be bounded?" in prompt
    assert "Cap retries with exponential backoff." in prompt


def test_answer_failure_ends_cycle_without_counting(github_server: FakeGitHubServer) -> None:
    model = ScriptedModel(answer="   ")
    orchestrator = build_orchestrator(model, github_server)

    report = orchestrator.run_cycle()

    assert report.outcome == "answer_failed"
    assert model.calls == ["question", "answer"]
    assert orchestrator.snapshot().cycle == 0
    assert orchestrator.snapshot().resonance == 0.0


def test_resonance_rises_per_answer_and_saturates(github_server: FakeGitHubServer) -> None:
    orchestrator = build_orchestrator(ScriptedModel(), github_server)

    orchestrator.run_cycle()
    assert orchestrator.snapshot().resonance == pytest.approx(0.1)

    for _ in range(14):
        orchestrator.run_cycle()
    snapshot = orchestrator.snapshot()
    assert snapshot.resonance == 1.0
    assert snapshot.cycle == 15


def test_step_delay_pauses_between_dialogue_steps(github_server: FakeGitHubServer) -> None:
    sleeps: list[float] = []
    orchestrator = build_orchestrator(
        ScriptedModel(), github_server, step_delay=2.0, sleep=sleeps.append
    )

    orchestrator.run_cycle()

    assert sleeps == [2.0, 2.0]


def test_no_eligible_files_ends_cycle_with_warning() -> None:
    server = FakeGitHubServer(
        {
            "node_modules/lib/index.js": "module.exports = {};\n",
            "README.md": "# app\n",
            "src/big.ts": "x" * 60_000,
        }
    )
    orchestrator = build_orchestrator(ScriptedModel(decision="YES"), server)

    report = orchestrator.run_cycle()

    assert report.outcome == "no_target"
    assert server.puts == []
    last = orchestrator.snapshot().logs[-1]
    assert last.category == "warning"
    assert last.message == "No eligible files found for mutation."
    assert orchestrator.snapshot().cycle == 1


def test_eligible_files_filters_by_segment_size_and_extension(
    github_server: FakeGitHubServer,
) -> None:
    orchestrator = build_orchestrator(ScriptedModel(), github_server)
    tree = [
        TreeEntry("src/app.TSX", "blob", 10),
        TreeEntry("src/node_modules_helper/util.ts", "blob", 10),
        TreeEntry("node_modules/react/index.js", "blob", 10),
        TreeEntry("packages/x/node_modules/y.js", "blob", 10),
        TreeEntry("src/components", "tree", 0),
        TreeEntry("src/huge.js", "blob", 60_000),
        TreeEntry("src/almost.js", "blob", 59_999),
        TreeEntry("styles/site.css", "blob", 10),
    ]

    eligible = orchestrator.eligible_files(tree)

    assert [entry.path for entry in eligible] == [
        "src/app.TSX",
        "src/node_modules_helper/util.ts",
        "src/almost.js",
    ]


def test_concurrent_change_surfaces_as_conflict(github_server: FakeGitHubServer) -> None:
    concurrent = "export const add = (x: number, y: number) => x + y;\n"
    github_server.concurrent_writes["src/a.ts"] = concurrent
    orchestrator = build_orchestrator(
        ScriptedModel(decision="YES", mutation=IMPROVED), github_server
    )

    report = orchestrator.run_cycle()

    assert report.outcome == "conflict"
    assert github_server.files["src/a.ts"] == concurrent
    snapshot = orchestrator.snapshot()
    assert snapshot.mutations == 0
    assert snapshot.last_commit is None
    assert snapshot.logs[-1].message.startswith("Commit conflict:")


def test_hosting_failure_during_analysis_is_contained(github_server: FakeGitHubServer) -> None:
    github_server.failures["git/trees"] = [500]
    orchestrator = build_orchestrator(ScriptedModel(decision="YES"), github_server)

    report = orchestrator.run_cycle()

    assert report.outcome == "upstream_failed"
    assert orchestrator.snapshot().logs[-1].message.startswith("Evolution error: GitHub API error 500")


def test_mutation_prompt_includes_ranked_knowledge(
    github_server: FakeGitHubServer, knowledge_store: KnowledgeStore
) -> None:
    now = datetime(2025, 6, 1, tzinfo=UTC)
    knowledge_store.add(
        file_name="arithmetic.ts",
        content="export const add = (a: number, b: number): number => a + b;",
        source=DocumentSource.REPOSITORY,
        repo_owner="acme",
        repo_name="lib",
        created_at=now,
    )
    knowledge_store.add(
        file_name="notes.py", content="export const add", source=DocumentSource.UPLOAD, created_at=now
    )
    model = ScriptedModel(decision="YES", mutation=IMPROVED)
    orchestrator = build_orchestrator(
        model,
        github_server,
        knowledge=knowledge_store,
        ranker=RelevanceRanker(clock=lambda: now),
        max_poll_attempts=1,
    )

    orchestrator.run_cycle()

    prompt = model.prompts[model.calls.index("mutation")]
    assert "Target File: src/a.ts" in prompt
    assert "KNOWLEDGE BASE REFERENCES:" in prompt
    assert "### arithmetic.ts [from acme/lib]" in prompt
    assert "notes.py" not in prompt
    assert "Improve this typescript file" in prompt
    assert "Retrieved 1 relevant code examples from knowledge base" in _messages(orchestrator)


def test_mutation_prompt_omits_references_without_matches(
    github_server: FakeGitHubServer, knowledge_store: KnowledgeStore
) -> None:
    model = ScriptedModel(decision="YES", mutation=IMPROVED)
    orchestrator = build_orchestrator(
        model, github_server, knowledge=knowledge_store, max_poll_attempts=1
    )

    report = orchestrator.run_cycle()

    assert "KNOWLEDGE BASE REFERENCES" not in model.prompts[-1]
    assert report.outcome == "deployment_timed_out"


def test_start_without_credential_leaves_state_unchanged(github_server: FakeGitHubServer) -> None:
    orchestrator = build_orchestrator(ScriptedModel(), github_server, api_key=None)

    with pytest.raises(ConfigurationMissing):
        orchestrator.start()

    snapshot = orchestrator.snapshot()
    assert snapshot.running is False
    assert snapshot.cycle == 0
    assert snapshot.phase is CyclePhase.IDLE
    assert snapshot.logs[-1].category == "error"


def test_start_without_target_is_rejected(github_server: FakeGitHubServer) -> None:
    orchestrator = build_orchestrator(ScriptedModel(), github_server, target=None)

    with pytest.raises(ConfigurationMissing):
        orchestrator.start()
    assert orchestrator.running is False


def test_start_runs_cycles_until_halted(github_server: FakeGitHubServer) -> None:
    orchestrator = build_orchestrator(ScriptedModel(), github_server, interval=0.01)

    assert orchestrator.start() is True
    assert orchestrator.start() is False
    deadline = time.monotonic() + 5
    while orchestrator.snapshot().cycle < 2 and time.monotonic() < deadline:
        time.sleep(0.01)

    assert orchestrator.halt() is True
    orchestrator.wait(timeout=5)
    assert orchestrator.halt() is False
    snapshot = orchestrator.snapshot()
    assert snapshot.running is False
    assert snapshot.cycle >= 2
    assert snapshot.phase is CyclePhase.IDLE
    messages = [entry.message for entry in snapshot.logs]
    assert "Self-evolution sequence INITIALIZED" in messages
    assert "Self-evolution sequence HALTED" in messages


def test_halt_during_deployment_cancels_tracking(github_server: FakeGitHubServer) -> None:
    github_server.commit_shas = ["abc123"]
    github_server.check_runs["abc123"] = [[check_run("in_progress")]]
    orchestrator = build_orchestrator(
        ScriptedModel(decision="YES", mutation=IMPROVED), github_server,
        poll_interval=0.01,
        max_poll_attempts=10_000,
    )
    orchestrator.start()
    deadline = time.monotonic() + 5
    while not github_server.calls("GET", "check-runs") and time.monotonic() < deadline:
        time.sleep(0.01)

    orchestrator.halt()
    orchestrator.wait(timeout=5)

    messages = _messages(orchestrator)
    assert "Deployment monitoring for abc123 halted" in messages
    assert orchestrator.snapshot().mutations == 1


def test_pull_latest_reports_commit_and_requests_restart(github_server: FakeGitHubServer) -> None:
    github_server.commits = [
        {
            "sha": "0123456789abcdef",
            "commit": {
                "author": {"name": "Ada"},
                "message": "Refactor the deployment poller so it backs off exponentially on errors\n\nBody",
            },
        }
    ]
    restarts: list[str | None] = []
    orchestrator = build_orchestrator(ScriptedModel(), github_server, on_restart=restarts.append)

    latest = orchestrator.pull_latest()

    assert latest is not None
    assert latest.sha == "0123456789abcdef"
    assert restarts == ["0123456789abcdef"]
    messages = _messages(orchestrator)
    assert "Latest commit: 0123456" in messages
    assert "Author: Ada" in messages
    assert "Message: Refactor the deployment poller so it backs off exponentially" in messages


def test_pull_latest_failure_returns_none(github_server: FakeGitHubServer) -> None:
    github_server.failures["commits"] = [500]
    restarts: list[str | None] = []
    orchestrator = build_orchestrator(ScriptedModel(), github_server, on_restart=restarts.append)

    assert orchestrator.pull_latest() is None
    assert restarts == []
    assert orchestrator.snapshot().logs[-1].category == "error"


def test_activity_log_keeps_only_latest_entries(github_server: FakeGitHubServer) -> None:
    activity = ActivityLog()
    orchestrator = build_orchestrator(ScriptedModel(), github_server, activity=activity)

    for _ in range(20):
        orchestrator.run_cycle()

    logs = orchestrator.snapshot().logs
    assert len(logs) == 50
    assert logs[-1].sequence == 60
    assert [entry.sequence for entry in logs] == list(range(11, 61))
