"""CLI entrypoints for evolver commands."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

from .config import EvolverConfig, load_config, parse_target
from .errors import (
    ConfigError,
    ConfigurationMissing,
    DuplicateRepository,
    UnknownRepository,
    UpstreamCallFailed,
)
from .git.github import GitHubGateway
from .logging import configure_logging
from .models import DocumentSource
from .orchestrator import MutationOrchestrator
from .rag.constants import detect_language
from .rag.ranker import RelevanceRanker
from .rag.repos import RepositoryRegistry
from .rag.store import KnowledgeStore
from .rag.sync import RepositorySync

EXIT_RESTART = 75


def _add_verbose_option(
    parser: argparse.ArgumentParser, *, suppress_default: bool = False
) -> None:
    kwargs: dict[str, object] = {
        "action": "store_true",
        "help": "Increase log verbosity for troubleshooting.",
    }
    if suppress_default:
        kwargs["default"] = argparse.SUPPRESS
    else:
        kwargs["default"] = False
    parser.add_argument(
        "-v",
        "--verbose",
        **kwargs,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="evolver",
        description="Self-directed code mutation loop grounded in a knowledge base.",
    )
    _add_verbose_option(parser)
    parser.add_argument(
        "-c",
        "--config",
        default=".",
        help="Path to .evolver.yml or the directory holding it (defaults to current directory).",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Also write logs to this file.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Start the self-dialogue loop until interrupted.")
    _add_verbose_option(run_parser, suppress_default=True)

    cycle_parser = subparsers.add_parser("cycle", help="Run exactly one self-dialogue cycle.")
    _add_verbose_option(cycle_parser, suppress_default=True)

    pull_parser = subparsers.add_parser("pull", help="Show the latest commit on the target branch.")
    _add_verbose_option(pull_parser, suppress_default=True)

    sync_parser = subparsers.add_parser(
        "sync", help="Copy files from a GitHub repository into the knowledge base."
    )
    _add_verbose_option(sync_parser, suppress_default=True)
    sync_parser.add_argument("repository", help="Repository as owner/name[@branch].")

    repos_parser = subparsers.add_parser(
        "repos", help="Manage repositories tracked for knowledge sync."
    )
    _add_verbose_option(repos_parser, suppress_default=True)
    repos_commands = repos_parser.add_subparsers(dest="repos_command", required=True)
    repos_add = repos_commands.add_parser("add", help="Track a repository.")
    repos_add.add_argument("repository", help="Repository as owner/name[@branch].")
    repos_commands.add_parser("list", help="List tracked repositories.")
    repos_delete = repos_commands.add_parser("delete", help="Stop tracking a repository.")
    repos_delete.add_argument("id")
    repos_sync = repos_commands.add_parser("sync", help="Sync a tracked repository by id.")
    repos_sync.add_argument("id")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP service.")
    _add_verbose_option(serve_parser, suppress_default=True)
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    knowledge_parser = subparsers.add_parser("knowledge", help="Manage the knowledge base.")
    _add_verbose_option(knowledge_parser, suppress_default=True)
    knowledge_commands = knowledge_parser.add_subparsers(dest="knowledge_command", required=True)

    add_parser = knowledge_commands.add_parser("add", help="Add a local text file as a document.")
    add_parser.add_argument("file", type=Path)
    add_parser.add_argument("--language", default=None)
    add_parser.add_argument(
        "--source",
        choices=[DocumentSource.UPLOAD.value, DocumentSource.EXTERNAL.value],
        default=DocumentSource.UPLOAD.value,
    )

    list_parser = knowledge_commands.add_parser("list", help="List stored documents.")
    list_parser.add_argument("--language", default=None)
    list_parser.add_argument("--source", choices=[source.value for source in DocumentSource])

    delete_parser = knowledge_commands.add_parser("delete", help="Delete a document by id.")
    delete_parser.add_argument("id")

    knowledge_commands.add_parser("stats", help="Show knowledge base statistics.")

    search_parser = knowledge_commands.add_parser("search", help="Rank documents for a query.")
    search_parser.add_argument("query")
    search_parser.add_argument("--language", default=None)
    search_parser.add_argument("--limit", type=int, default=5)

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for evolver commands."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    configure_logging(verbose=bool(args.verbose), log_file=args.log_file)

    try:
        config = load_config(Path(args.config))
    except ConfigError as exc:
        parser.exit(1, f"{exc}\n")

    if args.command == "knowledge":
        _run_knowledge(parser, args, config)
    elif args.command == "sync":
        _run_sync(parser, args, config)
    elif args.command == "repos":
        _run_repos(parser, args, config)
    elif args.command == "serve":
        _run_serve(parser, args, config)
    elif args.command == "run":
        _run_loop(parser, config)
    elif args.command == "cycle":
        orchestrator = MutationOrchestrator.from_config(config)
        if orchestrator.target is None:
            parser.exit(1, "Target repository not configured.\n")
        report = orchestrator.run_cycle()
        print(f"Cycle finished: {report.outcome}")
    elif args.command == "pull":
        restart_requested: list[Optional[str]] = []
        orchestrator = MutationOrchestrator.from_config(config, on_restart=restart_requested.append)
        latest = orchestrator.pull_latest()
        if latest is None:
            parser.exit(1, "Unable to fetch the latest commit. Run with --verbose for more details.\n")
        print(f"{latest.sha[:7]} {latest.author_name}: {latest.message.splitlines()[0] if latest.message else ''}")
    else:  # pragma: no cover - argparse enforces choices
        parser.exit(1, "Unknown command\n")


def _run_loop(parser: argparse.ArgumentParser, config: EvolverConfig) -> None:
    restart: list[Optional[str]] = []
    orchestrator: MutationOrchestrator

    def _on_restart(sha: Optional[str]) -> None:
        restart.append(sha)
        orchestrator.halt()

    orchestrator = MutationOrchestrator.from_config(config, on_restart=_on_restart)
    try:
        orchestrator.start()
    except ConfigurationMissing as exc:
        parser.exit(1, f"{exc}\n")
    try:
        orchestrator.wait()
    except KeyboardInterrupt:
        orchestrator.halt()
        orchestrator.wait()
    if restart:
        # a supervisor restarts the process to pick up the deployed revision
        parser.exit(EXIT_RESTART, "Deployment succeeded; restart requested.\n")


def _run_knowledge(parser: argparse.ArgumentParser, args: argparse.Namespace, config: EvolverConfig) -> None:
    store = KnowledgeStore(config.knowledge_path)
    command = args.knowledge_command
    if command == "add":
        path: Path = args.file
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            parser.exit(1, f"Unable to read {path}: {exc}\n")
        document = store.add(
            file_name=path.name,
            content=content,
            source=DocumentSource(args.source),
            language=args.language or detect_language(path.name),
            file_path=str(path),
        )
        store.persist()
        print(f"Added {document.file_name} ({document.id})")
    elif command == "list":
        source = DocumentSource(args.source) if args.source else None
        for document in store.query(language=args.language, source=source):
            origin = (
                f"{document.repo_owner}/{document.repo_name}"
                if document.source is DocumentSource.REPOSITORY
                else document.source.value
            )
            print(f"{document.id}  {document.file_name}  [{document.language}] {origin}")
    elif command == "delete":
        if not store.delete(args.id):
            parser.exit(1, f"Document {args.id} not found\n")
        store.persist()
        print(f"Deleted {args.id}")
    elif command == "stats":
        stats = store.stats()
        print(f"Total documents: {stats['total']}")
        for source, count in stats["by_source"].items():  # type: ignore[union-attr]
            print(f"  {source}: {count}")
        for language, count in stats["by_language"].items():  # type: ignore[union-attr]
            print(f"  language {language}: {count}")
    elif command == "search":
        ranker = RelevanceRanker()
        scored = ranker.search(store, args.query, language=args.language, limit=args.limit)
        for item in scored:
            print(f"{item.score:6.2f}  {item.document.file_name}  ({item.document.id})")
        if not scored:
            print("No matching documents")


def _syncer(config: EvolverConfig) -> RepositorySync:
    gateway = GitHubGateway(
        config.github.token,
        api_url=config.github.api_url,
        request_timeout=config.github.request_timeout,
    )
    return RepositorySync(
        gateway,
        KnowledgeStore(config.knowledge_path),
        max_files=config.knowledge.sync_max_files,
        max_file_size=config.knowledge.sync_max_file_size,
        delay=config.knowledge.sync_delay,
    )


def _run_sync(parser: argparse.ArgumentParser, args: argparse.Namespace, config: EvolverConfig) -> None:
    try:
        repository = parse_target(args.repository)
    except ConfigError as exc:
        parser.exit(1, f"{exc}\n")
    try:
        result = _syncer(config).sync(repository)
    except UpstreamCallFailed as exc:
        parser.exit(1, f"evolver sync failed: {exc}\nRun with --verbose for more details.\n")
    print(f"Synced {result.synced} files from {repository.slug} ({result.failed} failed, {result.total_files} eligible)")


def _run_repos(parser: argparse.ArgumentParser, args: argparse.Namespace, config: EvolverConfig) -> None:
    registry = RepositoryRegistry(config.repos_path)
    command = args.repos_command
    if command == "add":
        try:
            target = parse_target(args.repository)
            tracked = registry.add(target.owner, target.name, target.branch)
        except (ConfigError, DuplicateRepository) as exc:
            parser.exit(1, f"{exc}\n")
        registry.persist()
        print(f"Tracking {tracked.slug}@{tracked.branch} ({tracked.id})")
    elif command == "list":
        repositories = registry.list()
        for tracked in repositories:
            last_sync = tracked.last_sync.isoformat(timespec="seconds") if tracked.last_sync else "never"
            state = "active" if tracked.is_active else "inactive"
            print(
                f"{tracked.id}  {tracked.slug}@{tracked.branch}  [{state}] "
                f"files={tracked.files_count} last_sync={last_sync}"
            )
        if not repositories:
            print("No tracked repositories")
    elif command == "delete":
        if not registry.delete(args.id):
            parser.exit(1, f"Repository {args.id} not found\n")
        registry.persist()
        print(f"Deleted {args.id}")
    elif command == "sync":
        try:
            result = _syncer(config).sync_tracked(registry, args.id)
        except UnknownRepository as exc:
            parser.exit(1, f"{exc}\n")
        except UpstreamCallFailed as exc:
            parser.exit(1, f"evolver sync failed: {exc}\nRun with --verbose for more details.\n")
        tracked = registry.get(args.id)
        slug = tracked.slug if tracked is not None else args.id
        print(f"Synced {result.synced} files from {slug} ({result.failed} failed, {result.total_files} eligible)")


def _run_serve(parser: argparse.ArgumentParser, args: argparse.Namespace, config: EvolverConfig) -> None:
    from .service.app import run_service

    run_service(config, host=args.host, port=args.port)


if __name__ == "__main__":
    main(sys.argv[1:])
