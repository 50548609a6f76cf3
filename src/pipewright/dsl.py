# src/pipewright/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Optional

from .aggregate import ALL_SUCCEEDED, ALWAYS, all_succeeded
from .model import CacheSpec, Job, MatrixSpec, Pipeline, Step

__all__ = [
    "ALL_SUCCEEDED",
    "ALWAYS",
    "JobBuilder",
    "all_succeeded",
    "build",
    "cache",
    "call",
    "job",
    "matrix",
    "pipeline",
    "sh",
    "wf",
    "workflow",
]


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    if_: str | None = None,
    continue_on_error: bool = False,
    timeout: float | None = None,
    id: str | None = None,
) -> Step:
    """Create a shell step. Lines written to $PIPEWRIGHT_OUTPUT become steps.<id>.outputs."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        if_=if_,
        continue_on_error=continue_on_error,
        timeout=timeout,
        id=id,
    )


def call(
    name: str,
    fn: Callable[..., Any],
    *,
    if_: str | None = None,
    continue_on_error: bool = False,
    id: str | None = None,
) -> Step:
    """
    Create a step that runs a Python callable with its StepContext.

    Returning False or a non-zero int fails the step, as does raising.
    `ctx.set_output(name, value)` publishes steps.<id>.outputs.<name>.

    Python code cannot be interrupted from outside: on timeout or fail-fast
    the node is marked at once, but the callable keeps its worker thread
    until it returns. Long-running callables should poll `ctx.cancelled`.
    """
    return Step(name=name, call=fn, if_=if_, continue_on_error=continue_on_error, id=id)


# ---------------------------------------------------------------------
# Matrix / cache helpers
# ---------------------------------------------------------------------

def matrix(
    axes: Optional[Dict[str, Iterable[Any]]] = None,
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    fail_fast: bool = True,
    max_parallel: int | None = None,
    **more_axes: Iterable[Any],
) -> MatrixSpec:
    """
    matrix(os=["linux", "mac"], py=["3.11", "3.12"], fail_fast=False)
    matrix({"node-version": [18, 20]}, include=[{"node-version": 21}])
    """
    merged: Dict[str, List[Any]] = {k: list(v) for k, v in (axes or {}).items()}
    merged.update({k: list(v) for k, v in more_axes.items()})
    return MatrixSpec(axes=merged, include=list(include or []), fail_fast=fail_fast, max_parallel=max_parallel)


def cache(key: str, *restore_keys: str, paths: Optional[List[str]] = None, restore_at: int = 0) -> CacheSpec:
    """
    cache("deps-${{ hashFiles('requirements.txt') }}", "deps-", paths=[".venv"])

    `restore_at` delays the restore until just before that step index, so
    the key and paths may use outputs of the steps before it.
    """
    return CacheSpec(key=key, restore_keys=list(restore_keys), paths=list(paths or []), restore_at=restore_at)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,  # allow: job("x", steps_list=[...])
    needs: Optional[List[str]] = None,
    if_: str | None = None,
    gate: str | None = None,
    matrix: MatrixSpec | None = None,
    timeout: float | None = None,
    env: Optional[Dict[str, str]] = None,
    cache: CacheSpec | None = None,
    continue_on_error: bool = False,
    cwd: str | None = None,  # default cwd applied to steps missing cwd
    branches: Optional[List[str]] = None,
    events: Optional[List[str]] = None,
    paths: Optional[List[str]] = None,
    display_name: str | None = None,
) -> Job:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    return Job(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        if_=if_,
        gate=gate,
        matrix=matrix,
        timeout=timeout,
        env={k: str(v) for k, v in (env or {}).items()},
        cache=cache,
        continue_on_error=continue_on_error,
        display_name=display_name,
        branches=branches,
        events=events,
        paths=paths,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._if: str | None = None
        self._gate: str | None = None
        self._matrix: MatrixSpec | None = None
        self._cache: CacheSpec | None = None
        self._timeout: float | None = None
        self._continue_on_error = False
        self._branches: Optional[list[str]] = None
        self._events: Optional[list[str]] = None
        self._paths: Optional[list[str]] = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def step(self, name: str, run: str, cwd: str | None = None, **kwargs):
        self._steps.append(sh(name, run, cwd=cwd, **kwargs))
        return self

    def call(self, name: str, fn: Callable[..., Any], **kwargs):
        self._steps.append(call(name, fn, **kwargs))
        return self

    def run_if(self, condition: str):
        self._if = condition
        return self

    def gate_on(self, expression: str = ALL_SUCCEEDED):
        """Make this job a gate; by default it passes only if every need succeeded."""
        self._gate = expression
        if self._if is None:
            self._if = ALWAYS
        return self

    def with_matrix(self, spec: MatrixSpec | None = None, **axes: Iterable[Any]):
        self._matrix = spec if spec is not None else matrix(**axes)
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_cache(self, key: str, *restore_keys: str, paths: Optional[List[str]] = None, restore_at: int = 0):
        self._cache = cache(key, *restore_keys, paths=paths, restore_at=restore_at)
        return self

    def timeout_after(self, seconds: float):
        self._timeout = seconds
        return self

    def allow_failure(self, allowed: bool = True):
        self._continue_on_error = allowed
        return self

    def only_on(self, *, branches: Optional[List[str]] = None, events: Optional[List[str]] = None):
        if branches is not None:
            self._branches = list(branches)
        if events is not None:
            self._events = list(events)
        return self

    def with_paths(self, *patterns: str):
        self._paths = list(patterns)
        return self

    def build(self) -> Job:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return Job(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            if_=self._if,
            gate=self._gate,
            matrix=self._matrix,
            timeout=self._timeout,
            env=dict(self._env),
            cache=self._cache,
            continue_on_error=self._continue_on_error,
            branches=self._branches,
            events=self._events,
            paths=self._paths,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Workflow helpers (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    *jobs: Job,
    name: str = "pipeline",
    env: Optional[Dict[str, str]] = None,
    on: Optional[Dict[str, Optional[List[str]]]] = None,
) -> Pipeline:
    """
    A full pipeline with pipeline-level env and triggers.

        pipeline(job(...), job(...), on={"push": ["main"], "pull_request": None})
    """
    return Pipeline(
        jobs=list(jobs),
        name=name,
        env={k: str(v) for k, v in (env or {}).items()},
        triggers=dict(on or {}),
    )


def wf(*jobs: Job) -> List[Job]:
    """
    Workflow definition helper. Use this name so you can define your own
    def workflow(): return wf(job(...), job(...)).

    Users can write:
        from pipewright import wf, job, sh

        def workflow():
            return wf(
                job(...),
                job(...),
            )

    Or use JOBS directly:
        JOBS = wf(job(...), job(...))
    """
    return list(jobs)


workflow = wf  # alias (avoid naming your function workflow if you use it)
