# runner.py
from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .cachestore import CacheBackend, CacheKeyResolver, LocalCacheBackend
from .config import EngineConfig
from .dag import PipelineGraph, build_graph
from .executor import JobRunner, StepExecutor
from .git_facts.git import (
    GitError,
    changed_files as changed_files_between,
    head_sha,
    is_dirty,
    merge_base,
    repo_root,
    tracked_files,
    working_tree_changes,
)
from .logging import get_logger
from .model import Job, NodeState, Pipeline, TriggerContext
from .report import RunReport, build_report
from .scheduler import Scheduler
from .ui.console import Console, get_console

log = get_logger("pipewright.runner")

Definition = Union[Pipeline, Sequence[Job]]


# ----------------------------------------------------------------------
# Changed files (feeds job `paths` filters)
# ----------------------------------------------------------------------

def git_changed_files(
    compare_ref: str = "origin/main",
    cwd: Optional[str | Path] = None,
) -> Tuple[Optional[str], List[str]]:
    """
    Returns:
      head:
        - full SHA for HEAD if the repo is clean
        - None if the repo has uncommitted changes
      changed_files:
        - paths relative to the repo root
    """
    root = repo_root(cwd)
    if is_dirty(root):
        return None, working_tree_changes(root)

    # clean: diff HEAD against its merge-base with compare_ref,
    # falling back to HEAD~1 when the ref is unavailable
    try:
        base = merge_base(compare_ref, root)
    except GitError:
        log.info("no merge-base with %s, diffing against HEAD~1", compare_ref)
        base = "HEAD~1"
    try:
        changed = changed_files_between(base, "HEAD", root)
    except GitError:
        # first commit: every tracked file counts as changed
        changed = tracked_files(root)
    return head_sha(root), changed


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

@dataclass
class Plan:
    graph: PipelineGraph

    @property
    def levels(self) -> List[List[str]]:
        return self.graph.levels

    @property
    def skipped(self) -> Dict[str, str]:
        return {n.id: n.reason or "" for n in self.graph if n.state is NodeState.SKIPPED}


def plan(definition: Definition, trigger: TriggerContext | None = None) -> Plan:
    """Validate and expand without running anything."""
    return Plan(build_graph(definition, trigger))


def _cache_resolver(config: EngineConfig, backend: CacheBackend | None) -> CacheKeyResolver | None:
    if backend is None and config.cache_dir is not None:
        backend = LocalCacheBackend(config.cache_dir)
    if backend is None:
        return None
    return CacheKeyResolver(backend, config.repo_root)


def run_pipeline(
    definition: Definition,
    trigger: TriggerContext | None = None,
    *,
    config: EngineConfig | None = None,
    executor: StepExecutor | None = None,
    cache_backend: CacheBackend | None = None,
    console: Console | None = None,
) -> RunReport:
    """
    Build the graph, run every node to a terminal state and report.

    Configuration errors are raised before anything runs. Job failures
    never raise; they are reflected in the returned RunReport.
    """
    config = config or EngineConfig()
    console = console or get_console()
    graph = build_graph(definition, trigger)

    runner = JobRunner(
        config,
        executor=executor,
        cache=_cache_resolver(config, cache_backend),
        console=console,
    )
    scheduler = Scheduler(
        graph,
        runner,
        max_workers=config.max_workers,
        default_timeout=config.default_timeout,
        console=console,
    )

    started = time.monotonic()
    scheduler.run()
    report = build_report(graph, duration=time.monotonic() - started)
    log.info("pipeline %s finished: %s", report.pipeline, "success" if report.success else "failure")
    return report
