# aggregate.py
"""
Outcome aggregation: run conditions and gate expressions.

Both are evaluated strictly over terminal states. `needs.<job>.result`
collapses a matrix template's instances into one value:

    any failure or timeout     -> "failure"
    otherwise any cancelled    -> "cancelled"
    otherwise all skipped      -> "skipped"
    otherwise                  -> "success"
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Tuple

from .expressions import ExpressionContext, StatusView, parse, strip_template
from .model import Job, NodeState

ALWAYS = "always()"
ALL_SUCCEEDED = "all-succeeded"


def all_succeeded(*names: str) -> str:
    """Gate expression: every named job has result success."""
    return " && ".join(f"needs.{n}.result == 'success'" for n in names)


def resolve_gate(job: Job) -> str | None:
    if job.gate is None:
        return None
    if job.gate.strip() == ALL_SUCCEEDED:
        if not job.needs:
            return "true"
        return all_succeeded(*job.needs)
    return job.gate


def combine_states(states: Iterable[NodeState]) -> NodeState:
    """Collapse several terminal states into the one a dependent sees."""
    states = list(states)
    if any(s in (NodeState.FAILED, NodeState.TIMED_OUT) for s in states):
        # keep timed_out visible when it is the only kind of failure
        if NodeState.FAILED in states:
            return NodeState.FAILED
        return NodeState.TIMED_OUT
    if NodeState.CANCELLED in states:
        return NodeState.CANCELLED
    if not states or all(s is NodeState.SKIPPED for s in states):
        return NodeState.SKIPPED
    return NodeState.SUCCEEDED


def needs_context(graph, node) -> Dict[str, Dict[str, Any]]:
    """`needs` namespace for a node: one entry per direct need (template)."""
    out: Dict[str, Dict[str, Any]] = {}
    for name in node.job.needs:
        instances = graph.instances_of(name)
        state = combine_states(n.state for n in instances)
        out[name] = {
            "result": state.result,
            "state": state.value,
            "instances": {n.id: n.state.result for n in instances},
        }
    return out


class DependencyStatus(StatusView):
    """Status functions answered from a node's dependency outcomes."""

    def __init__(self, states: List[NodeState]):
        self.states = states

    def success(self) -> bool:
        return all(s is NodeState.SUCCEEDED for s in self.states)

    def failure(self) -> bool:
        return any(s in (NodeState.FAILED, NodeState.TIMED_OUT) for s in self.states)

    def cancelled(self) -> bool:
        return any(s is NodeState.CANCELLED for s in self.states)


def node_context(graph, node, base: ExpressionContext | None = None) -> ExpressionContext:
    deps = graph.deps_of(node)
    if any(not d.state.terminal for d in deps):
        raise RuntimeError(f"{node.id}: dependencies are not terminal yet")
    base = base or ExpressionContext()
    ctx = base.child(needs=needs_context(graph, node), matrix=dict(node.instance.matrix))
    ctx.status = DependencyStatus([d.state for d in deps])
    return ctx


def evaluate_run_condition(graph, node, base: ExpressionContext | None = None) -> Tuple[bool, str]:
    """
    Decide whether a node whose dependencies are all terminal should run.

    No condition means success(); a condition that calls no status function
    is implicitly `success() && (...)`.
    """
    ctx = node_context(graph, node, base)
    text = node.job.if_
    if text is None:
        ok = ctx.status.success()
        return ok, "dependencies succeeded" if ok else "a dependency did not succeed"

    expr = parse(strip_template(text))
    if not expr.uses_status() and not ctx.status.success():
        return False, "a dependency did not succeed"
    ok = expr.is_true(ctx)
    return ok, f"condition {expr.text!r} is {'true' if ok else 'false'}"


def evaluate_gate(graph, node, base: ExpressionContext | None = None) -> bool:
    text = resolve_gate(node.job)
    if text is None:
        return True
    ctx = node_context(graph, node, base)
    return parse(strip_template(text)).is_true(ctx)
