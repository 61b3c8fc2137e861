"""FastAPI application exposing the orchestrator and knowledge base."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..config import EvolverConfig
from ..errors import ConfigurationMissing, DuplicateRepository, EvolverError, UnknownRepository
from ..models import DocumentSource, KnowledgeDocument, TrackedRepository
from ..orchestrator import MutationOrchestrator
from ..rag.constants import detect_language
from ..rag.repos import RepositoryRegistry
from ..rag.store import KnowledgeStore
from ..rag.sync import RepositorySync


class HealthResponse(BaseModel):
    status: str


class StatusResponse(BaseModel):
    phase: str
    cycle: int
    resonance: float
    running: bool
    mutations: int
    deployment_progress: Optional[int] = None
    last_commit: Optional[str] = None


class LogEntryModel(BaseModel):
    sequence: int
    timestamp: datetime
    message: str
    category: str


class ActionResponse(BaseModel):
    status: str


class CommitResponse(BaseModel):
    sha: str
    author: str
    message: str


class SearchRequest(BaseModel):
    query: str
    language: Optional[str] = None
    source: Optional[DocumentSource] = None
    limit: int = Field(default=5, ge=0)


class DocumentModel(BaseModel):
    id: str
    file_name: str
    source: DocumentSource
    language: Optional[str] = None
    repo_owner: Optional[str] = None
    repo_name: Optional[str] = None
    created_at: datetime
    score: Optional[float] = None


class SearchResponse(BaseModel):
    documents: List[DocumentModel]
    context: str
    count: int


class DocumentCreateRequest(BaseModel):
    file_name: str
    content: str
    source: DocumentSource = DocumentSource.UPLOAD
    language: Optional[str] = None


class RepositoryCreateRequest(BaseModel):
    owner: str = Field(min_length=1)
    name: str = Field(min_length=1)
    branch: str = "main"


class RepositoryModel(BaseModel):
    id: str
    owner: str
    name: str
    branch: str
    is_active: bool
    files_count: int
    last_sync: Optional[datetime] = None
    created_at: datetime


class SyncResponse(BaseModel):
    synced: int
    failed: int
    total_files: int


def _document_model(document: KnowledgeDocument, score: float | None = None) -> DocumentModel:
    return DocumentModel(
        id=document.id,
        file_name=document.file_name,
        source=document.source,
        language=document.language,
        repo_owner=document.repo_owner,
        repo_name=document.repo_name,
        created_at=document.created_at,
        score=score,
    )


def _repository_model(tracked: TrackedRepository) -> RepositoryModel:
    return RepositoryModel(
        id=tracked.id,
        owner=tracked.owner,
        name=tracked.name,
        branch=tracked.branch,
        is_active=tracked.is_active,
        files_count=tracked.files_count,
        last_sync=tracked.last_sync,
        created_at=tracked.created_at,
    )


def create_app(
    orchestrator: MutationOrchestrator,
    *,
    registry: RepositoryRegistry | None = None,
    syncer: RepositorySync | None = None,
) -> FastAPI:
    """Create the FastAPI application around a single orchestrator instance.

    ``syncer`` defaults to one built from the orchestrator's hosting gateway
    and knowledge store when a tracked repository is synced.
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        orchestrator.halt()

    app = FastAPI(title="Evolver Service", version="1.0.0", lifespan=lifespan)
    app.state.orchestrator = orchestrator

    def _store() -> KnowledgeStore:
        if orchestrator.knowledge is None:
            raise HTTPException(status_code=503, detail="Knowledge base not configured")
        return orchestrator.knowledge

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.get("/status", response_model=StatusResponse)
    async def status() -> StatusResponse:
        snapshot = orchestrator.snapshot()
        return StatusResponse(
            phase=snapshot.phase.value,
            cycle=snapshot.cycle,
            resonance=snapshot.resonance,
            running=snapshot.running,
            mutations=snapshot.mutations,
            deployment_progress=snapshot.deployment_progress,
            last_commit=snapshot.last_commit,
        )

    @app.get("/logs", response_model=List[LogEntryModel])
    async def logs() -> List[LogEntryModel]:
        return [
            LogEntryModel(
                sequence=entry.sequence,
                timestamp=entry.timestamp,
                message=entry.message,
                category=entry.category,
            )
            for entry in orchestrator.snapshot().logs
        ]

    @app.post("/start", response_model=ActionResponse)
    async def start() -> ActionResponse:
        started = orchestrator.start()
        return ActionResponse(status="started" if started else "already_running")

    @app.post("/halt", response_model=ActionResponse)
    async def halt() -> ActionResponse:
        halted = orchestrator.halt()
        return ActionResponse(status="halted" if halted else "not_running")

    @app.post("/pull", response_model=CommitResponse)
    def pull() -> CommitResponse:
        latest = orchestrator.pull_latest()
        if latest is None:
            raise HTTPException(status_code=502, detail="Unable to fetch the latest commit")
        return CommitResponse(sha=latest.sha, author=latest.author_name, message=latest.message)

    @app.post("/knowledge/search", response_model=SearchResponse)
    async def search(payload: SearchRequest) -> SearchResponse:
        if not payload.query:
            raise HTTPException(status_code=400, detail="Query is required")
        scored = orchestrator.ranker.search(
            _store(),
            payload.query,
            language=payload.language,
            source=payload.source,
            limit=payload.limit,
        )
        return SearchResponse(
            documents=[_document_model(item.document, item.score) for item in scored],
            context=orchestrator.ranker.format_context(scored),
            count=len(scored),
        )

    @app.get("/knowledge/stats")
    async def stats() -> dict:
        return _store().stats()

    @app.get("/knowledge/documents", response_model=List[DocumentModel])
    async def list_documents(source: Optional[DocumentSource] = None) -> List[DocumentModel]:
        return [_document_model(document) for document in _store().query(source=source)]

    @app.post("/knowledge/documents", response_model=DocumentModel)
    async def create_document(payload: DocumentCreateRequest) -> DocumentModel:
        store = _store()
        document = store.add(
            file_name=payload.file_name,
            content=payload.content,
            source=payload.source,
            language=payload.language or detect_language(payload.file_name),
        )
        store.persist()
        return _document_model(document)

    @app.delete("/knowledge/documents/{document_id}", response_model=ActionResponse)
    async def delete_document(document_id: str) -> ActionResponse:
        store = _store()
        if not store.delete(document_id):
            raise HTTPException(status_code=404, detail="Document not found")
        store.persist()
        return ActionResponse(status="deleted")

    def _registry() -> RepositoryRegistry:
        if registry is None:
            raise HTTPException(status_code=503, detail="Repository registry not configured")
        return registry

    @app.get("/repos", response_model=List[RepositoryModel])
    async def list_repositories() -> List[RepositoryModel]:
        return [_repository_model(tracked) for tracked in _registry().list()]

    @app.post("/repos", response_model=RepositoryModel)
    async def add_repository(payload: RepositoryCreateRequest) -> RepositoryModel:
        repos = _registry()
        try:
            tracked = repos.add(payload.owner, payload.name, payload.branch)
        except DuplicateRepository as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        repos.persist()
        return _repository_model(tracked)

    @app.delete("/repos/{repo_id}", response_model=ActionResponse)
    async def delete_repository(repo_id: str) -> ActionResponse:
        repos = _registry()
        if not repos.delete(repo_id):
            raise HTTPException(status_code=404, detail="Repository not found")
        repos.persist()
        return ActionResponse(status="deleted")

    @app.post("/repos/{repo_id}/sync", response_model=SyncResponse)
    def sync_repository(repo_id: str) -> SyncResponse:
        repos = _registry()
        active_syncer = syncer or RepositorySync(orchestrator.github, _store())
        try:
            result = active_syncer.sync_tracked(repos, repo_id)
        except UnknownRepository as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return SyncResponse(
            synced=result.synced, failed=result.failed, total_files=result.total_files
        )

    @app.exception_handler(ConfigurationMissing)
    async def configuration_missing_handler(
        _: Any, exc: ConfigurationMissing
    ) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(EvolverError)
    async def evolver_error_handler(
        _: Any, exc: EvolverError
    ) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    return app


def run_service(
    config: EvolverConfig, host: str = "127.0.0.1", port: int = 8000
) -> None:  # pragma: no cover - integration path
    import uvicorn

    orchestrator = MutationOrchestrator.from_config(config)
    syncer = None
    if orchestrator.knowledge is not None:
        syncer = RepositorySync(
            orchestrator.github,
            orchestrator.knowledge,
            max_files=config.knowledge.sync_max_files,
            max_file_size=config.knowledge.sync_max_file_size,
            delay=config.knowledge.sync_delay,
        )
    app = create_app(orchestrator, registry=RepositoryRegistry(config.repos_path), syncer=syncer)
    uvicorn.run(app, host=host, port=port)


__all__ = ["create_app", "run_service"]
