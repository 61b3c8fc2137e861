"""Error taxonomy shared by the gateways and the orchestrator."""

from __future__ import annotations


class EvolverError(RuntimeError):
    """Base class for errors raised inside evolver."""


class ConfigError(EvolverError):
    """Raised when the configuration file cannot be parsed."""


class ConfigurationMissing(EvolverError):
    """Raised when a required credential or target is not configured."""


class UpstreamCallFailed(EvolverError):
    """Raised when the model endpoint or the hosting API call fails."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ConflictError(UpstreamCallFailed):
    """Raised when a commit precondition (expected blob sha) no longer holds."""


class NoEligibleTarget(EvolverError):
    """Raised when no file in the target tree survives the mutation filters."""


class NoImprovementProduced(EvolverError):
    """Raised when the model output is rejected by the sanity checks."""


class DeploymentTimedOut(EvolverError):
    """Raised when deployment polling reaches its attempt ceiling."""


class DuplicateRepository(EvolverError):
    """Raised when a repository is already tracked."""


class UnknownRepository(EvolverError):
    """Raised when a tracked repository id does not exist."""


__all__ = [
    "ConfigError",
    "ConfigurationMissing",
    "ConflictError",
    "DeploymentTimedOut",
    "DuplicateRepository",
    "EvolverError",
    "NoEligibleTarget",
    "NoImprovementProduced",
    "UnknownRepository",
    "UpstreamCallFailed",
]
