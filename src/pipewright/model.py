# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Callable, Dict, List, Optional


class NodeState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self not in (NodeState.PENDING, NodeState.READY, NodeState.RUNNING)

    @property
    def result(self) -> str | None:
        """The outcome as seen by expressions (`needs.<job>.result`)."""
        return _RESULTS.get(self)


_RESULTS = {
    NodeState.SUCCEEDED: "success",
    NodeState.FAILED: "failure",
    NodeState.TIMED_OUT: "failure",
    NodeState.SKIPPED: "skipped",
    NodeState.CANCELLED: "cancelled",
}


@dataclass(frozen=True)
class Step:
    """A single opaque unit of work inside a job."""
    name: str
    run: str | None = None
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict, hash=False)
    if_: str | None = None
    continue_on_error: bool = False      # best-effort step
    timeout: float | None = None         # seconds
    uses: str | None = None              # external action, not executed locally
    with_: Dict[str, Any] = field(default_factory=dict, hash=False)
    call: Optional[Callable[..., Any]] = field(default=None, compare=False)
    id: str | None = None                # exposes outputs as steps.<id>.outputs


@dataclass(frozen=True)
class CacheSpec:
    """Cache key + ordered restore-key prefixes + paths to store/restore."""
    key: str
    restore_keys: List[str] = field(default_factory=list, hash=False)
    paths: List[str] = field(default_factory=list, hash=False)
    restore_at: int = 0                  # index of the step the restore runs before


@dataclass
class MatrixSpec:
    axes: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    fail_fast: bool = True
    max_parallel: int | None = None


@dataclass
class Job:
    """
    A job template: steps + dependencies + run policy, before matrix expansion.

    `if_` is the run condition evaluated once every need is terminal
    (None means "all needs succeeded"). `gate` turns the job into a gate
    node whose own outcome is the value of that expression.
    """
    name: str
    steps: List[Step]
    needs: List[str] = field(default_factory=list)
    if_: str | None = None
    gate: str | None = None
    matrix: MatrixSpec | None = None
    timeout: float | None = None         # seconds, None = engine default
    env: Dict[str, str] = field(default_factory=dict)
    cache: CacheSpec | None = None
    continue_on_error: bool = False      # failure does not fail the run
    display_name: str | None = None

    # trigger filters (None = no restriction)
    branches: Optional[List[str]] = None
    events: Optional[List[str]] = None
    paths: Optional[List[str]] = None

    def selected_by(self, trigger: "TriggerContext") -> tuple[bool, str]:
        """Return (included, reason) for this job under a trigger."""
        if self.events is not None and trigger.event not in self.events:
            return False, f"event '{trigger.event}' not in {self.events}"
        if self.branches is not None and not _matches_any(trigger.branch or "", self.branches):
            return False, f"branch '{trigger.branch}' not in {self.branches}"
        if self.paths and trigger.changed_files is not None:
            if not any(_matches_any(f, self.paths) for f in trigger.changed_files):
                return False, f"no changed file matches {self.paths}"
        return True, "selected"


@dataclass(frozen=True)
class JobInstance:
    """One concrete, schedulable expansion of a Job template."""
    id: str
    template: Job = field(hash=False)
    matrix: Dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def name(self) -> str:
        return self.template.name

    @property
    def needs(self) -> List[str]:
        return self.template.needs

    @property
    def group(self) -> str | None:
        """Matrix group key (None when the template has no matrix)."""
        return self.template.name if self.template.matrix is not None else None


@dataclass(frozen=True)
class TriggerContext:
    branch: str | None = None
    event: str = "push"
    changed_files: Optional[List[str]] = field(default=None, hash=False)


@dataclass
class Pipeline:
    """
    A whole workflow: jobs + pipeline-level env + `on` triggers.

    `triggers` maps event name -> branch patterns (None = any branch).
    An empty mapping means the pipeline runs for every trigger.
    """
    jobs: List[Job]
    name: str = "pipeline"
    env: Dict[str, str] = field(default_factory=dict)
    triggers: Dict[str, Optional[List[str]]] = field(default_factory=dict)

    def triggered_by(self, trigger: TriggerContext) -> bool:
        if not self.triggers:
            return True
        if trigger.event not in self.triggers:
            return False
        branches = self.triggers[trigger.event]
        if not branches or trigger.branch is None:
            return True
        return _matches_any(trigger.branch, branches)


def _matches_any(value: str, patterns: List[str]) -> bool:
    return any(fnmatch(value, p) for p in patterns)
