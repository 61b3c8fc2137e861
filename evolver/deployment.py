"""Tracks a commit through the external deployment pipeline."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from .errors import DeploymentTimedOut, UpstreamCallFailed
from .git.github import GitHubGateway
from .logging import CATEGORY_LEVELS, get_logger
from .models import DeploymentCheck, DeploymentStatus, RepositoryTarget

PROGRESS_RUNNING = 50
PROGRESS_COMPLETE = 100


def _sleep_wait(seconds: float) -> bool:
    time.sleep(seconds)
    return False


class DeploymentTracker:
    """Polls check-runs for one commit until success, failure, timeout or halt.

    ``wait(seconds)`` blocks between polls and returns True when the caller
    has been halted, which ends the session as ``CANCELLED`` without another
    poll. A poll that is already running is allowed to finish.
    """

    def __init__(
        self,
        gateway: GitHubGateway,
        target: RepositoryTarget,
        *,
        poll_interval: float = 10.0,
        max_attempts: int = 60,
        wait: Callable[[float], bool] | None = None,
        on_success: Callable[[str], None] | None = None,
        on_progress: Callable[[Optional[int]], None] | None = None,
        emit: Callable[[str, str], None] | None = None,
    ) -> None:
        self.gateway = gateway
        self.target = target
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self._wait = wait or _sleep_wait
        self._on_success = on_success
        self._on_progress = on_progress
        self.logger = get_logger("deployment")
        self._emit = emit or self._log

    def track(self, sha: str) -> DeploymentCheck:
        check = DeploymentCheck(sha=sha)
        self._emit(f"Monitoring deployment for commit {sha[:7]}", "evolution")
        try:
            while check.attempts < self.max_attempts:
                if self._wait(self.poll_interval):
                    check.status = DeploymentStatus.CANCELLED
                    self._emit(f"Deployment monitoring for {sha[:7]} halted", "warning")
                    return check
                check.attempts += 1
                self._poll(check)
                if check.status.terminal:
                    return check
            check.status = DeploymentStatus.TIMED_OUT
            timeout = DeploymentTimedOut(
                f"Deployment of {sha[:7]} timed out after {check.attempts} checks"
            )
            self._emit(f"{timeout}. Please check the CI pipeline.", "warning")
            return check
        finally:
            self._report_progress(None)

    def _poll(self, check: DeploymentCheck) -> None:
        try:
            runs = self.gateway.get_check_runs(self.target.owner, self.target.name, check.sha)
        except UpstreamCallFailed as exc:
            # a failed poll counts as still pending
            self.logger.debug("Deployment check %d failed: %s", check.attempts, exc)
            return
        if not runs:
            return
        latest = runs[0]
        if not latest.completed:
            self._report_progress(PROGRESS_RUNNING)
            return
        self._report_progress(PROGRESS_COMPLETE)
        check.conclusion = latest.conclusion
        if latest.conclusion == "success":
            check.status = DeploymentStatus.SUCCESS
            self._emit("Deployment successful. Restart requested.", "success")
            if self._on_success is not None:
                self._on_success(check.sha)
        else:
            check.status = DeploymentStatus.FAILED
            self._emit(f"Deployment failed: {latest.conclusion}", "error")

    def _report_progress(self, value: Optional[int]) -> None:
        if self._on_progress is not None:
            self._on_progress(value)

    def _log(self, message: str, category: str) -> None:
        self.logger.log(CATEGORY_LEVELS.get(category, logging.INFO), message)


__all__ = ["DeploymentTracker", "PROGRESS_COMPLETE", "PROGRESS_RUNNING"]
