# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List


class PipewrightError(Exception):
    """Base class for every error raised by the engine."""


# ----------------------------------------------------------------------
# Configuration errors (fatal, raised before any job runs)
# ----------------------------------------------------------------------

class ConfigurationError(PipewrightError):
    """The pipeline definition is structurally invalid."""


@dataclass
class CycleError(ConfigurationError):
    members: List[str]

    def __str__(self) -> str:
        chain = " -> ".join(self.members + self.members[:1])
        return f"Dependency cycle detected: {chain}"


@dataclass
class UnknownDependencyError(ConfigurationError):
    job: str
    missing: str
    known: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        msg = f"Job '{self.job}' needs missing job '{self.missing}'"
        if self.known:
            msg += f". Known jobs: {self.known}"
        return msg


@dataclass
class UnknownReferenceError(ConfigurationError):
    job: str
    reference: str
    where: str

    def __str__(self) -> str:
        return (
            f"Job '{self.job}' {self.where} references '{self.reference}', "
            f"which is not one of its needs"
        )


class DuplicateJobError(ConfigurationError):
    pass


class MatrixError(ConfigurationError):
    pass


class ConditionError(ConfigurationError):
    pass


class WorkflowLoadError(ConfigurationError):
    pass


# ----------------------------------------------------------------------
# Runtime errors (recorded on nodes, never abort the run)
# ----------------------------------------------------------------------

@dataclass
class StepFailure(PipewrightError):
    job: str
    step: str
    exit_code: int | None
    message: str = ""

    def __str__(self) -> str:
        detail = f" ({self.message})" if self.message else ""
        return f"[{self.job}] step '{self.step}' failed (exit={self.exit_code}){detail}"


@dataclass
class TimeoutFailure(PipewrightError):
    job: str
    timeout: float

    def __str__(self) -> str:
        return f"[{self.job}] timed out after {self.timeout:g}s"


class CancellationError(PipewrightError):
    """A node was stopped by fail-fast or an interrupt; recorded as Cancelled."""


class CacheBackendError(PipewrightError):
    """The cache backend could not be reached or returned garbage."""


class InvalidTransition(PipewrightError, RuntimeError):
    pass
