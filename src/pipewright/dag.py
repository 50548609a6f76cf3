# dag.py
from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple, Union

from .aggregate import resolve_gate
from .errors import (
    ConditionError,
    ConfigurationError,
    CycleError,
    DuplicateJobError,
    InvalidTransition,
    UnknownDependencyError,
    UnknownReferenceError,
)
from .expand import expand_all
from .expressions import parse, strip_template, template_expressions
from .logging import get_logger
from .model import Job, JobInstance, NodeState, Pipeline, TriggerContext

log = get_logger("pipewright.dag")


_ALLOWED = {
    NodeState.PENDING: {NodeState.READY, NodeState.SKIPPED, NodeState.CANCELLED},
    NodeState.READY: {NodeState.RUNNING, NodeState.SKIPPED, NodeState.CANCELLED},
    NodeState.RUNNING: {
        NodeState.SUCCEEDED,
        NodeState.FAILED,
        NodeState.CANCELLED,
        NodeState.TIMED_OUT,
    },
}


class Readiness(str, Enum):
    WAITING = "waiting"      # some dependency still not terminal
    EVALUATE = "evaluate"    # every dependency terminal, condition not yet applied
    DONE = "done"            # node itself is already past condition evaluation


@dataclass
class ExecutionNode:
    index: int
    instance: JobInstance
    deps: Tuple[int, ...] = ()
    dependents: List[int] = field(default_factory=list)

    state: NodeState = NodeState.PENDING
    reason: str | None = None
    ran: bool = False
    gate_passed: bool | None = None
    error: str | None = None

    ready_at: float | None = None
    started_at: float | None = None
    finished_at: float | None = None

    steps: list = field(default_factory=list)          # StepResult list
    cache: object | None = None                        # CacheResolution
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def id(self) -> str:
        return self.instance.id

    @property
    def job(self) -> Job:
        return self.instance.template

    @property
    def is_gate(self) -> bool:
        return self.job.gate is not None

    @property
    def duration(self) -> float | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return self.finished_at - self.started_at


class PipelineGraph:
    """
    Arena of ExecutionNodes addressed by index, plus dependency edges.

    Topology is fixed once built; only node state changes, and only through
    `transition`, which enforces monotonic, table-driven state changes.
    """

    def __init__(
        self,
        nodes: List[ExecutionNode],
        templates: Dict[str, Job],
        levels: List[List[str]],
        pipeline: Pipeline,
        trigger: TriggerContext,
    ):
        self.nodes = nodes
        self.templates = templates
        self.levels = levels
        self.pipeline = pipeline
        self.trigger = trigger
        self.by_id: Dict[str, int] = {n.id: n.index for n in nodes}
        self.template_nodes: Dict[str, List[int]] = {name: [] for name in templates}
        for n in nodes:
            self.template_nodes[n.job.name].append(n.index)
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self):
        return iter(self.nodes)

    def node(self, node_id: str) -> ExecutionNode:
        return self.nodes[self.by_id[node_id]]

    def instances_of(self, template: str) -> List[ExecutionNode]:
        return [self.nodes[i] for i in self.template_nodes[template]]

    def siblings(self, node: ExecutionNode) -> List[ExecutionNode]:
        if node.instance.group is None:
            return []
        return [n for n in self.instances_of(node.instance.group) if n.index != node.index]

    def deps_of(self, node: ExecutionNode) -> List[ExecutionNode]:
        return [self.nodes[i] for i in node.deps]

    def readiness(self, node: ExecutionNode) -> Readiness:
        if node.state is not NodeState.PENDING:
            return Readiness.DONE
        if all(self.nodes[d].state.terminal for d in node.deps):
            return Readiness.EVALUATE
        return Readiness.WAITING

    def all_terminal(self) -> bool:
        return all(n.state.terminal for n in self.nodes)

    def transition(
        self,
        node: ExecutionNode,
        state: NodeState,
        reason: str | None = None,
        *,
        now: float | None = None,
    ) -> bool:
        """
        Move node to `state`. Returns False (and changes nothing) if the node
        is already terminal, so a late completion can never overwrite a
        cancellation or timeout.
        """
        with self._lock:
            if node.state.terminal:
                return False
            if state not in _ALLOWED[node.state]:
                raise InvalidTransition(f"{node.id}: {node.state.value} -> {state.value}")
            now = time.monotonic() if now is None else now
            node.state = state
            if reason is not None:
                node.reason = reason
            if state is NodeState.READY:
                node.ready_at = now
            elif state is NodeState.RUNNING:
                node.started_at = now
                node.ran = True
            elif state.terminal:
                node.finished_at = now
            log.debug("%s -> %s (%s)", node.id, state.value, reason or "")
            return True


# ----------------------------------------------------------------------
# Topological sort
# ----------------------------------------------------------------------

def topo_levels(adj: Dict[str, Iterable[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (tiers).
    Each tier only depends on earlier tiers and can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(n for n, d in indeg.items() if d == 0)

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in adj.get(node, ()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = {n for n, d in indeg.items() if d > 0}
        raise CycleError(find_cycle(adj, remaining))

    return levels


def find_cycle(adj: Dict[str, Iterable[str]], candidates: Set[str]) -> List[str]:
    """DFS with colour marking over the nodes Kahn could not place."""
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in candidates}
    stack: List[str] = []

    def visit(n: str) -> Optional[List[str]]:
        color[n] = GREY
        stack.append(n)
        for m in sorted(adj.get(n, ())):
            if m not in color:
                continue
            if color[m] == GREY:
                return stack[stack.index(m):]
            if color[m] == WHITE:
                found = visit(m)
                if found:
                    return found
        stack.pop()
        color[n] = BLACK
        return None

    for n in sorted(candidates):
        if color[n] == WHITE:
            found = visit(n)
            if found:
                return list(found)
    return sorted(candidates)


# ----------------------------------------------------------------------
# Graph builder
# ----------------------------------------------------------------------

def _validate_templates(jobs: List[Job]) -> Dict[str, Job]:
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DuplicateJobError(f"Duplicate job names found: {dupes}")

    by_name = {j.name: j for j in jobs}
    for job in jobs:
        for need in job.needs:
            if need not in by_name:
                raise UnknownDependencyError(job=job.name, missing=need, known=sorted(by_name))
        _validate_run_policy(job)
        _validate_expressions(job)
    return by_name


def _validate_run_policy(job: Job) -> None:
    if job.timeout is not None and job.timeout <= 0:
        raise ConfigurationError(f"Job '{job.name}' timeout must be > 0, got {job.timeout}")
    step_ids = set()
    for step in job.steps:
        if step.timeout is not None and step.timeout <= 0:
            raise ConfigurationError(f"Job '{job.name}' step '{step.name}' timeout must be > 0, got {step.timeout}")
        if step.id is not None:
            if step.id in step_ids:
                raise ConfigurationError(f"Job '{job.name}' has more than one step with id '{step.id}'")
            step_ids.add(step.id)
    if job.cache is not None and job.cache.restore_at < 0:
        raise ConfigurationError(f"Job '{job.name}' cache restore_at must be >= 0, got {job.cache.restore_at}")


def _validate_expressions(job: Job) -> None:
    """Parse every condition and template up front; bad ones never start."""
    allowed = set(job.needs)
    for where, text in (("condition", job.if_), ("gate", resolve_gate(job))):
        if text is None:
            continue
        expr = parse(strip_template(text))
        for ref in sorted(expr.references("needs")):
            if ref not in allowed:
                raise UnknownReferenceError(job=job.name, reference=ref, where=where)

    texts: List[str] = list(job.env.values())
    if job.cache is not None:
        texts.append(job.cache.key)
        texts.extend(job.cache.restore_keys)
        texts.extend(job.cache.paths)
    for step in job.steps:
        texts.extend(t for t in (step.name, step.run, step.cwd) if t)
        texts.extend(step.env.values())
        if step.if_:
            parse(strip_template(step.if_))
    for text in texts:
        try:
            template_expressions(str(text))
        except ConditionError as e:
            raise ConditionError(f"Job '{job.name}': {e}") from e


def build_graph(
    definition: Union[Pipeline, Sequence[Job]],
    trigger: TriggerContext | None = None,
) -> PipelineGraph:
    """
    Validate a pipeline and build its execution graph.

    Raises a ConfigurationError subclass for duplicate names, unknown needs,
    cycles, malformed matrices or conditions. Nothing is returned (and so
    nothing can run) unless the whole definition is valid.
    """
    pipeline = definition if isinstance(definition, Pipeline) else Pipeline(jobs=list(definition))
    trigger = trigger or TriggerContext()
    jobs = list(pipeline.jobs)

    by_name = _validate_templates(jobs)

    # template-level acyclicity check (needs -> job)
    adj: Dict[str, List[str]] = {n: [] for n in by_name}
    indeg: Dict[str, int] = {n: 0 for n in by_name}
    for job in jobs:
        for need in dict.fromkeys(job.needs):
            adj[need].append(job.name)
            indeg[job.name] += 1
    topo_levels(adj, indeg)

    instances = expand_all(jobs)

    nodes: List[ExecutionNode] = []
    owner: Dict[str, str] = {}
    for job in jobs:
        for inst in instances[job.name]:
            if inst.id in owner:
                raise DuplicateJobError(
                    f"Job '{job.name}' expands to '{inst.id}', which job '{owner[inst.id]}' already produces"
                )
            owner[inst.id] = job.name
            nodes.append(ExecutionNode(index=len(nodes), instance=inst))

    index_of_template: Dict[str, List[int]] = {n: [] for n in by_name}
    for n in nodes:
        index_of_template[n.job.name].append(n.index)

    for n in nodes:
        deps: List[int] = []
        for need in dict.fromkeys(n.job.needs):
            deps.extend(index_of_template[need])
        n.deps = tuple(deps)
        for d in deps:
            nodes[d].dependents.append(n.index)

    # instance-level tiers (acyclic because templates are)
    inst_adj = {n.id: [nodes[c].id for c in n.dependents] for n in nodes}
    inst_indeg = {n.id: len(n.deps) for n in nodes}
    levels = topo_levels(inst_adj, inst_indeg)

    _apply_trigger(pipeline, trigger, nodes)

    graph = PipelineGraph(nodes, by_name, levels, pipeline, trigger)
    log.info("built graph: %d job(s), %d node(s), %d tier(s)", len(jobs), len(nodes), len(levels))
    return graph


def _apply_trigger(pipeline: Pipeline, trigger: TriggerContext, nodes: Iterable[ExecutionNode]) -> None:
    """Templates excluded by the trigger start out Skipped."""
    pipeline_on = pipeline.triggered_by(trigger)
    for n in nodes:
        if not pipeline_on:
            n.state, n.reason = NodeState.SKIPPED, f"trigger: pipeline not triggered by {trigger.event}"
            continue
        included, why = n.job.selected_by(trigger)
        if not included:
            n.state, n.reason = NodeState.SKIPPED, f"trigger: {why}"
