"""Self-dialogue and mutation state machine."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from .config import EvolverConfig
from .deployment import DeploymentTracker
from .errors import (
    ConfigurationMissing,
    ConflictError,
    NoEligibleTarget,
    NoImprovementProduced,
    UpstreamCallFailed,
)
from .git.github import GitHubGateway
from .llm.gateway import ModelGateway
from .logging import CATEGORY_LEVELS, ActivityLog, get_logger
from .models import (
    CommitInfo,
    CyclePhase,
    DeploymentCheck,
    OrchestratorState,
    RepositoryTarget,
    StateSnapshot,
    TreeEntry,
)
from .prompting.builder import PromptBuilder
from .rag.constants import detect_language
from .rag.ranker import RelevanceRanker
from .rag.store import KnowledgeStore
from .scheduler import CycleScheduler

RESONANCE_STEP = 0.1
MIN_MUTATION_LENGTH = 10
QUERY_CONTENT_CHARS = 500
DEFAULT_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx")
DEFAULT_EXCLUDE_DIRS = ("node_modules",)


def is_affirmative(response: str) -> bool:
    """A decision counts as YES only if the token appears, case-insensitively."""
    return "YES" in response.upper()


@dataclass
class CycleReport:
    """What happened during one cycle; returned to callers and tests."""

    outcome: str = "pending"
    question: Optional[str] = None
    answer: Optional[str] = None
    decision: bool = False
    path: Optional[str] = None
    commit: Optional[str] = None
    deployment: Optional[DeploymentCheck] = None
    counted: bool = False


class MutationOrchestrator:
    """Drives question -> answer -> decision -> mutation -> commit -> deployment cycles.

    Only one cycle runs at a time. Every external call is isolated: a failure
    ends the current cycle and is reported as a single activity log line.
    """

    def __init__(
        self,
        model: ModelGateway,
        github: GitHubGateway,
        target: RepositoryTarget | None,
        *,
        knowledge: KnowledgeStore | None = None,
        ranker: RelevanceRanker | None = None,
        prompt_builder: PromptBuilder | None = None,
        rng: random.Random | None = None,
        interval: float = 60.0,
        step_delay: float = 2.0,
        poll_interval: float = 10.0,
        max_poll_attempts: int = 60,
        extensions: Sequence[str] = DEFAULT_EXTENSIONS,
        exclude_dirs: Sequence[str] = DEFAULT_EXCLUDE_DIRS,
        max_file_size: int = 60_000,
        context_limit: int = 3,
        on_restart: Callable[[Optional[str]], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        activity: ActivityLog | None = None,
    ) -> None:
        self.model = model
        self.github = github
        self.target = target
        self.knowledge = knowledge
        self.ranker = ranker or RelevanceRanker()
        self.prompts = prompt_builder or PromptBuilder()
        self.rng = rng or random.Random()
        self.interval = interval
        self.step_delay = step_delay
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.extensions = tuple(ext.lower() for ext in extensions)
        self.exclude_dirs = frozenset(exclude_dirs)
        self.max_file_size = max_file_size
        self.context_limit = context_limit
        self.activity = activity if activity is not None else ActivityLog()
        self.logger = get_logger("orchestrator")
        self._on_restart = on_restart
        self._sleep = sleep
        self._state = OrchestratorState()
        self._state_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._halt_event = threading.Event()
        self._scheduler: Optional[CycleScheduler] = None

    @classmethod
    def from_config(cls, config: EvolverConfig, **overrides: object) -> "MutationOrchestrator":
        """Wire gateways and the knowledge store from loaded configuration."""
        model = ModelGateway(
            config.model.model,
            provider=config.model.provider,
            base_url=config.model.base_url,
            api_key=config.model.api_key,
            temperature=config.model.temperature,
            max_tokens=config.model.max_tokens,
            request_timeout=config.model.request_timeout,
        )
        github = GitHubGateway(
            config.github.token,
            api_url=config.github.api_url,
            request_timeout=config.github.request_timeout,
        )
        options: dict[str, object] = {
            "knowledge": KnowledgeStore(config.knowledge_path),
            "interval": config.loop.interval,
            "step_delay": config.loop.step_delay,
            "poll_interval": config.loop.poll_interval,
            "max_poll_attempts": config.loop.max_poll_attempts,
            "extensions": config.mutation.extensions,
            "exclude_dirs": config.mutation.exclude_dirs,
            "max_file_size": config.mutation.max_file_size,
            "context_limit": config.mutation.context_limit,
        }
        options.update(overrides)
        return cls(model, github, config.target.to_target(), **options)  # type: ignore[arg-type]

    # ------------------------------------------------------------------
    # Lifecycle

    @property
    def running(self) -> bool:
        with self._state_lock:
            return self._state.running

    def start(self) -> bool:
        """Begin looping; returns False when already running.

        Raises :class:`ConfigurationMissing` without touching state when the
        model credential or the target repository is absent.
        """
        if not self.model.configured:
            self._emit("Model API key not configured. Start rejected.", "error")
            raise ConfigurationMissing("Model API key not configured")
        if self.target is None:
            self._emit("Target repository not configured. Start rejected.", "error")
            raise ConfigurationMissing("Target repository not configured")

        with self._state_lock:
            if self._state.running:
                return False
            self._state.running = True
            self._halt_event = threading.Event()
            self._scheduler = CycleScheduler(
                self.run_cycle, interval=self.interval, stop_event=self._halt_event
            )
            scheduler = self._scheduler
        self._emit("Self-evolution sequence INITIALIZED", "success")
        scheduler.start()
        return True

    def halt(self) -> bool:
        """Stop scheduling cycles; the in-flight phase runs to its natural exit."""
        with self._state_lock:
            if not self._state.running:
                return False
            self._state.running = False
            self._halt_event.set()
        self._emit("Self-evolution sequence HALTED", "warning")
        return True

    def wait(self, timeout: float | None = None) -> None:
        """Block until the background loop has stopped."""
        scheduler = self._scheduler
        if scheduler is not None:
            scheduler.join(timeout)

    def snapshot(self) -> StateSnapshot:
        with self._state_lock:
            state = self._state
            return StateSnapshot(
                phase=state.phase,
                cycle=state.cycle,
                resonance=state.resonance,
                running=state.running,
                mutations=state.mutations,
                deployment_progress=state.deployment_progress,
                last_commit=state.last_commit,
                logs=tuple(self.activity.entries()),
            )

    # ------------------------------------------------------------------
    # Cycle

    def run_cycle(self) -> CycleReport:
        """Run one self-dialogue cycle to completion; never raises."""
        with self._cycle_lock:
            halt_event = self._halt_event
            report = CycleReport()
            try:
                report.counted = self._dialogue(report, halt_event)
            except Exception as exc:  # pragma: no cover
                self._log_exception("Cycle failed", exc)
                report.outcome = "error"
                report.counted = True
            finally:
                with self._state_lock:
                    self._state.phase = CyclePhase.IDLE
                    self._state.deployment_progress = None
                    if report.counted:
                        self._state.cycle += 1
            return report

    def _dialogue(self, report: CycleReport, halt_event: threading.Event) -> bool:
        """Returns True when the cycle counter should advance."""
        if self.target is None:
            self._emit("Target repository not configured", "error")
            report.outcome = "not_configured"
            return False

        self._set_phase(CyclePhase.QUESTIONING)
        question = self.model.complete(self.prompts.question(self.target))
        if not question.ok or not question.text.strip():
            self._emit(f"Model API error: {question.error or 'empty question'}", "error")
            report.outcome = "question_failed"
            return False
        report.question = question.text.strip()
        self._emit(f"AI PROBE: {report.question}", "question")
        self._pause()

        self._set_phase(CyclePhase.ANSWERING)
        answer = self.model.complete(self.prompts.answer(report.question))
        if not answer.ok or not answer.text.strip():
            self._emit(f"Model API error: {answer.error or 'empty answer'}", "error")
            report.outcome = "answer_failed"
            return False
        report.answer = answer.text.strip()
        self._emit(f"AI SYNTHESIS: {report.answer}", "reflection")
        self._raise_resonance()
        self._pause()

        self._set_phase(CyclePhase.DECIDING)
        decision = self.model.complete(self.prompts.decision(report.question, report.answer))
        if not decision.ok:
            self._emit(f"Model API error: {decision.error}", "error")
        report.decision = decision.ok and is_affirmative(decision.text)
        if not report.decision:
            self._emit("Decision: no mutation this cycle", "info")
            report.outcome = "declined"
            return True

        self._emit("INITIATING CODE MUTATION...", "evolution")
        self._mutate(report, self.target, halt_event)
        return True

    def _mutate(
        self, report: CycleReport, target: RepositoryTarget, halt_event: threading.Event
    ) -> None:
        try:
            self._set_phase(CyclePhase.ANALYZING)
            entry = self._select_file(target)
            report.path = entry.path
            self._emit(f"Analyzing: {entry.path} for architectural optimization...", "info")

            self._set_phase(CyclePhase.MUTATING)
            current = self.github.get_file(target.owner, target.name, entry.path, target.branch)
            original = current.text
            language = detect_language(entry.path)
            context = self._knowledge_context(entry.path, original, language)
            prompt = self.prompts.mutation(
                path=entry.path, original=original, language=language, context=context
            )
            result = self.model.complete(prompt)
            if not result.ok:
                self._emit(f"Model API error: {result.error}", "error")
            self._check_improvement(original, result.text if result.ok else "")

            self._set_phase(CyclePhase.COMMITTING)
            with self._state_lock:
                cycle_number = self._state.cycle + 1
            commit_sha = self.github.put_file(
                target.owner,
                target.name,
                entry.path,
                result.text,
                expected_sha=current.sha,
                branch=target.branch,
                message=f"Mutation Cycle {cycle_number}: Optimized {entry.path} with knowledge base",
            )
            report.commit = commit_sha
            with self._state_lock:
                self._state.mutations += 1
                self._state.last_commit = commit_sha
            self._emit("Mutation committed. Awaiting deployment pipeline...", "success")

            self._set_phase(CyclePhase.DEPLOYING)
            report.deployment = self._tracker(target, halt_event).track(commit_sha)
            report.outcome = f"deployment_{report.deployment.status.value}"
        except NoEligibleTarget as exc:
            self._emit(str(exc), "warning")
            report.outcome = "no_target"
        except NoImprovementProduced:
            self._emit(f"No optimizations found for {report.path}. Cycle skipped.", "info")
            report.outcome = "no_improvement"
        except ConflictError as exc:
            self._emit(f"Commit conflict: {exc}", "error")
            report.outcome = "conflict"
        except UpstreamCallFailed as exc:
            self._emit(f"Evolution error: {exc}", "error")
            report.outcome = "upstream_failed"
        except (UnicodeDecodeError, ValueError) as exc:
            self._emit(f"Evolution error: {exc}", "error")
            report.outcome = "error"

    def _select_file(self, target: RepositoryTarget) -> TreeEntry:
        tree = self.github.list_tree(target.owner, target.name, target.branch)
        eligible = self.eligible_files(tree)
        if not eligible:
            raise NoEligibleTarget("No eligible files found for mutation.")
        return self.rng.choice(eligible)

    def eligible_files(self, tree: Sequence[TreeEntry]) -> List[TreeEntry]:
        """Source blobs under the size cap and outside dependency directories."""
        eligible: List[TreeEntry] = []
        for entry in tree:
            if entry.type != "blob" or entry.size >= self.max_file_size:
                continue
            if not entry.path.lower().endswith(self.extensions):
                continue
            directories = entry.path.split("/")[:-1]
            if self.exclude_dirs.intersection(directories):
                continue
            eligible.append(entry)
        return eligible

    def _knowledge_context(self, path: str, original: str, language: str) -> str:
        if self.knowledge is None:
            return ""
        query = f"{path} {original[:QUERY_CONTENT_CHARS]}"
        try:
            scored = self.ranker.search(
                self.knowledge, query, language=language, limit=self.context_limit
            )
        except (OSError, ValueError) as exc:
            self.logger.warning("Knowledge base lookup failed: %s", exc)
            return ""
        if not scored:
            return ""
        self._emit(
            f"Retrieved {len(scored)} relevant code examples from knowledge base", "info"
        )
        return self.ranker.format_context(scored)

    @staticmethod
    def _check_improvement(original: str, evolved: str) -> None:
        if not evolved or len(evolved) <= MIN_MUTATION_LENGTH or evolved == original:
            raise NoImprovementProduced("Model output rejected")

    def _tracker(self, target: RepositoryTarget, halt_event: threading.Event) -> DeploymentTracker:
        return DeploymentTracker(
            self.github,
            target,
            poll_interval=self.poll_interval,
            max_attempts=self.max_poll_attempts,
            wait=halt_event.wait,
            on_success=self._request_restart,
            on_progress=self._set_progress,
            emit=self._emit,
        )

    # ------------------------------------------------------------------
    # Pull latest

    def pull_latest(self) -> Optional[CommitInfo]:
        """Report the newest commit on the target branch and request a restart."""
        if self.target is None:
            self._emit("Target repository not configured", "error")
            return None
        with self._state_lock:
            busy = self._state.phase is not CyclePhase.IDLE
        if busy:
            self._emit("Cannot pull while a cycle is in progress", "warning")
            return None
        self._emit("Fetching latest changes from GitHub...", "info")
        try:
            commits = self.github.list_commits(self.target.owner, self.target.name, self.target.branch)
        except UpstreamCallFailed as exc:
            self._emit(f"Failed to pull latest: {exc}", "error")
            return None
        if not commits:
            self._emit(f"No commits found on {self.target.branch}", "warning")
            return None
        latest = commits[0]
        summary = latest.message.split("\n", 1)[0][:60]
        self._emit(f"Latest commit: {latest.sha[:7]}", "info")
        self._emit(f"Author: {latest.author_name}", "info")
        self._emit(f"Message: {summary}", "info")
        self._emit("Latest changes fetched. Restart requested.", "success")
        self._request_restart(latest.sha)
        return latest

    # ------------------------------------------------------------------
    # Helpers

    def _emit(self, message: str, category: str = "info") -> None:
        self.activity.append(message, category)
        self.logger.log(CATEGORY_LEVELS.get(category, logging.INFO), message)

    def _set_phase(self, phase: CyclePhase) -> None:
        with self._state_lock:
            self._state.phase = phase
        self.logger.debug("Phase -> %s", phase.value)

    def _set_progress(self, value: Optional[int]) -> None:
        with self._state_lock:
            self._state.deployment_progress = value

    def _raise_resonance(self) -> None:
        with self._state_lock:
            self._state.resonance = min(round(self._state.resonance + RESONANCE_STEP, 6), 1.0)

    def _pause(self) -> None:
        if self.step_delay > 0:
            self._sleep(self.step_delay)

    def _request_restart(self, sha: Optional[str]) -> None:
        if self._on_restart is None:
            self.logger.info("Restart requested (%s)", sha[:7] if sha else "latest")
            return
        self._on_restart(sha)

    def _log_exception(self, message: str, exc: Exception) -> None:
        self.activity.append(f"{message}: {exc}", "error")
        if self.logger.isEnabledFor(logging.DEBUG):
            self.logger.exception("%s: %s", message, exc)
        else:
            self.logger.error("%s: %s", message, exc)


__all__ = ["CycleReport", "MutationOrchestrator", "is_affirmative"]
