"""Core data models shared across evolver components."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Tuple


class DocumentSource(str, Enum):
    """Where a knowledge document came from."""

    UPLOAD = "upload"
    REPOSITORY = "repository"
    EXTERNAL = "external"


@dataclass(frozen=True)
class KnowledgeDocument:
    """Reference material stored in the knowledge base."""

    id: str
    file_name: str
    content: str
    source: DocumentSource
    language: Optional[str]
    created_at: datetime
    repo_owner: Optional[str] = None
    repo_name: Optional[str] = None
    file_path: Optional[str] = None


@dataclass(frozen=True)
class ScoredDocument:
    """A knowledge document paired with its relevance score for one query."""

    document: KnowledgeDocument
    score: float


@dataclass(frozen=True)
class RepositoryTarget:
    """The repository branch the orchestrator mutates."""

    owner: str
    name: str
    branch: str = "main"

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True)
class TrackedRepository:
    """An external repository registered for knowledge sync."""

    id: str
    owner: str
    name: str
    branch: str
    created_at: datetime
    is_active: bool = True
    files_count: int = 0
    last_sync: Optional[datetime] = None

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"

    def to_target(self) -> RepositoryTarget:
        return RepositoryTarget(owner=self.owner, name=self.name, branch=self.branch)


@dataclass(frozen=True)
class TreeEntry:
    path: str
    type: str
    size: int


@dataclass(frozen=True)
class FileContent:
    """File payload returned by the contents API."""

    path: str
    sha: str
    content_base64: str

    @property
    def text(self) -> str:
        raw = base64.b64decode(self.content_base64.replace("\n", ""))
        return raw.decode("utf-8")


@dataclass(frozen=True)
class CommitInfo:
    sha: str
    author_name: str
    message: str


@dataclass(frozen=True)
class CheckRun:
    name: str
    status: str
    conclusion: Optional[str]

    @property
    def completed(self) -> bool:
        return self.status == "completed"


@dataclass(frozen=True)
class Completion:
    """Outcome of a single model call."""

    text: str
    ok: bool
    error: str = ""


class CyclePhase(str, Enum):
    """Phases of one self-dialogue cycle."""

    IDLE = "idle"
    QUESTIONING = "questioning"
    ANSWERING = "answering"
    DECIDING = "deciding"
    ANALYZING = "analyzing"
    MUTATING = "mutating"
    COMMITTING = "committing"
    DEPLOYING = "deploying"


class DeploymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not DeploymentStatus.PENDING


@dataclass
class DeploymentCheck:
    """Tracking session for one commit."""

    sha: str
    attempts: int = 0
    status: DeploymentStatus = DeploymentStatus.PENDING
    conclusion: Optional[str] = None


@dataclass(frozen=True)
class LogEntry:
    sequence: int
    timestamp: datetime
    message: str
    category: str


@dataclass
class OrchestratorState:
    """Mutable orchestrator state; observers only ever see copies."""

    phase: CyclePhase = CyclePhase.IDLE
    cycle: int = 0
    resonance: float = 0.0
    running: bool = False
    mutations: int = 0
    deployment_progress: Optional[int] = None
    last_commit: Optional[str] = None


@dataclass(frozen=True)
class StateSnapshot:
    """Read-only view of the orchestrator handed to observers."""

    phase: CyclePhase
    cycle: int
    resonance: float
    running: bool
    mutations: int
    deployment_progress: Optional[int]
    last_commit: Optional[str]
    logs: Tuple[LogEntry, ...] = field(default_factory=tuple)
