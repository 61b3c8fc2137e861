"""Configuration loading for evolver (.evolver.yml)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import yaml

from .errors import ConfigError
from .models import RepositoryTarget

CONFIG_FILENAME = ".evolver.yml"

ENV_MODEL_API_KEY_KEYS = ("EVOLVER_MODEL_API_KEY", "GEMINI_API_KEY")
ENV_GITHUB_TOKEN_KEYS = ("EVOLVER_GITHUB_TOKEN", "GITHUB_TOKEN")
ENV_TARGET_KEY = "EVOLVER_TARGET"


@dataclass
class ModelConfig:
    """Generative model endpoint settings."""

    provider: str = "gemini"
    model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: Optional[float] = 0.7
    max_tokens: Optional[int] = 8192
    request_timeout: Optional[float] = 60.0


@dataclass
class GitHubConfig:
    token: Optional[str] = None
    api_url: str = "https://api.github.com"
    request_timeout: float = 30.0


@dataclass
class TargetConfig:
    """The single repository branch mutated by the loop."""

    owner: Optional[str] = None
    name: Optional[str] = None
    branch: str = "main"

    def to_target(self) -> Optional[RepositoryTarget]:
        if not self.owner or not self.name:
            return None
        return RepositoryTarget(owner=self.owner, name=self.name, branch=self.branch or "main")


@dataclass
class LoopConfig:
    """Timing of the self-dialogue loop and deployment polling."""

    interval: float = 60.0
    step_delay: float = 2.0
    poll_interval: float = 10.0
    max_poll_attempts: int = 60


@dataclass
class MutationConfig:
    extensions: List[str] = field(default_factory=lambda: [".js", ".jsx", ".ts", ".tsx"])
    exclude_dirs: List[str] = field(default_factory=lambda: ["node_modules"])
    max_file_size: int = 60_000
    context_limit: int = 3


@dataclass
class KnowledgeConfig:
    path: Path = Path(".evolver") / "knowledge.json"
    repos_path: Path = Path(".evolver") / "repos.json"
    sync_max_files: int = 50
    sync_max_file_size: int = 100_000
    sync_delay: float = 0.1


@dataclass
class EvolverConfig:
    """Represents the settings defined in .evolver.yml plus environment overrides."""

    root: Path
    model: ModelConfig = field(default_factory=ModelConfig)
    github: GitHubConfig = field(default_factory=GitHubConfig)
    target: TargetConfig = field(default_factory=TargetConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    mutation: MutationConfig = field(default_factory=MutationConfig)
    knowledge: KnowledgeConfig = field(default_factory=KnowledgeConfig)

    @property
    def knowledge_path(self) -> Path:
        path = self.knowledge.path
        return path if path.is_absolute() else self.root / path

    @property
    def repos_path(self) -> Path:
        path = self.knowledge.repos_path
        return path if path.is_absolute() else self.root / path


def load_config(
    config_path: Path, *, environ: Mapping[str, str] | None = None
) -> EvolverConfig:
    """Load configuration from disk and apply environment overrides."""
    env = os.environ if environ is None else environ
    config_file = _resolve_config_path(config_path)
    root = config_file.parent.resolve()

    data: Dict[str, Any] = {}
    if config_file.exists():
        data = _read_config(config_file)
        if not isinstance(data, dict):
            raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the root")

    config = EvolverConfig(root=root)

    model_data = _as_dict(data.get("model"))
    if model_data:
        defaults = ModelConfig()
        config.model = ModelConfig(
            provider=(_as_str(model_data.get("provider")) or defaults.provider).lower(),
            model=_as_str(model_data.get("model")),
            api_key=_as_str(model_data.get("api_key")),
            base_url=_as_str(model_data.get("base_url")),
            temperature=_or_default(_as_float(model_data.get("temperature")), defaults.temperature),
            max_tokens=_or_default(_as_int(model_data.get("max_tokens")), defaults.max_tokens),
            request_timeout=_or_default(
                _as_float(model_data.get("request_timeout")), defaults.request_timeout
            ),
        )

    github_data = _as_dict(data.get("github"))
    if github_data:
        defaults_gh = GitHubConfig()
        config.github = GitHubConfig(
            token=_as_str(github_data.get("token")),
            api_url=_as_str(github_data.get("api_url")) or defaults_gh.api_url,
            request_timeout=_or_default(
                _as_float(github_data.get("request_timeout")), defaults_gh.request_timeout
            ),
        )

    target_data = _as_dict(data.get("target"))
    if target_data:
        config.target = TargetConfig(
            owner=_as_str(target_data.get("owner")),
            name=_as_str(target_data.get("name")),
            branch=_as_str(target_data.get("branch")) or "main",
        )

    loop_data = _as_dict(data.get("loop"))
    if loop_data:
        defaults_loop = LoopConfig()
        config.loop = LoopConfig(
            interval=_or_default(_as_float(loop_data.get("interval")), defaults_loop.interval),
            step_delay=_or_default(_as_float(loop_data.get("step_delay")), defaults_loop.step_delay),
            poll_interval=_or_default(
                _as_float(loop_data.get("poll_interval")), defaults_loop.poll_interval
            ),
            max_poll_attempts=_or_default(
                _as_int(loop_data.get("max_poll_attempts")), defaults_loop.max_poll_attempts
            ),
        )

    mutation_data = _as_dict(data.get("mutation"))
    if mutation_data:
        defaults_mut = MutationConfig()
        extensions = _as_str_list(mutation_data.get("extensions"))
        exclude_dirs = mutation_data.get("exclude_dirs")
        config.mutation = MutationConfig(
            extensions=[_normalise_extension(ext) for ext in extensions] or defaults_mut.extensions,
            exclude_dirs=(
                _as_str_list(exclude_dirs) if exclude_dirs is not None else defaults_mut.exclude_dirs
            ),
            max_file_size=_or_default(
                _as_int(mutation_data.get("max_file_size")), defaults_mut.max_file_size
            ),
            context_limit=_or_default(
                _as_int(mutation_data.get("context_limit")), defaults_mut.context_limit
            ),
        )

    knowledge_data = _as_dict(data.get("knowledge"))
    if knowledge_data:
        defaults_kb = KnowledgeConfig()
        path_value = _as_str(knowledge_data.get("path"))
        repos_value = _as_str(knowledge_data.get("repos_path"))
        config.knowledge = KnowledgeConfig(
            path=Path(path_value) if path_value else defaults_kb.path,
            repos_path=Path(repos_value) if repos_value else defaults_kb.repos_path,
            sync_max_files=_or_default(
                _as_int(knowledge_data.get("sync_max_files")), defaults_kb.sync_max_files
            ),
            sync_max_file_size=_or_default(
                _as_int(knowledge_data.get("sync_max_file_size")), defaults_kb.sync_max_file_size
            ),
            sync_delay=_or_default(_as_float(knowledge_data.get("sync_delay")), defaults_kb.sync_delay),
        )

    _apply_env_overrides(config, env)
    return config


def parse_target(value: str) -> RepositoryTarget:
    """Parse ``owner/name`` or ``owner/name@branch``."""
    slug, _, branch = value.strip().partition("@")
    owner, _, name = slug.partition("/")
    if not owner or not name or "/" in name:
        raise ConfigError(f"Invalid repository '{value}'; expected owner/name[@branch]")
    return RepositoryTarget(owner=owner, name=name, branch=branch or "main")


def _apply_env_overrides(config: EvolverConfig, env: Mapping[str, str]) -> None:
    api_key = _first_env_value(env, ENV_MODEL_API_KEY_KEYS)
    if api_key:
        config.model.api_key = api_key
    token = _first_env_value(env, ENV_GITHUB_TOKEN_KEYS)
    if token:
        config.github.token = token
    target_value = env.get(ENV_TARGET_KEY)
    if target_value:
        target = parse_target(target_value)
        config.target = TargetConfig(owner=target.owner, name=target.name, branch=target.branch)


def _first_env_value(env: Mapping[str, str], keys: Sequence[str]) -> Optional[str]:
    for key in keys:
        value = env.get(key)
        if value:
            return value
    return None


def _resolve_config_path(config_path: Path) -> Path:
    config_path = config_path.expanduser()
    if config_path.is_dir():
        return (config_path / CONFIG_FILENAME).resolve()
    return config_path.resolve()


def _read_config(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}") from exc
    return loaded or {}


def _normalise_extension(value: str) -> str:
    value = value.strip().lower()
    return value if value.startswith(".") else f".{value}"


def _or_default(value: Any, default: Any) -> Any:
    return default if value is None else value


def _as_dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return str(value).lower()
    return str(value) if isinstance(value, (str, int, float)) else None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            return None
    return None


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Sequence):
        return [str(item) for item in value if isinstance(item, (str, int, float))]
    return []


__all__ = [
    "CONFIG_FILENAME",
    "EvolverConfig",
    "GitHubConfig",
    "KnowledgeConfig",
    "LoopConfig",
    "ModelConfig",
    "MutationConfig",
    "TargetConfig",
    "load_config",
    "parse_target",
]
