# report.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from .dag import ExecutionNode, PipelineGraph
from .model import NodeState

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130

_NON_BLOCKING = (NodeState.SUCCEEDED, NodeState.SKIPPED)


@dataclass
class NodeReport:
    id: str
    job: str
    state: str
    result: str | None
    reason: str | None
    ran: bool
    duration: float | None
    blocking: bool
    matrix: Dict[str, Any] = field(default_factory=dict)
    gate_passed: bool | None = None
    cache: str | None = None
    error: str | None = None
    steps: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job": self.job,
            "state": self.state,
            "result": self.result,
            "reason": self.reason,
            "ran": self.ran,
            "duration": None if self.duration is None else round(self.duration, 3),
            "blocking": self.blocking,
            "matrix": self.matrix,
            "gate_passed": self.gate_passed,
            "cache": self.cache,
            "error": self.error,
            "steps": self.steps,
        }


def is_blocking(node: ExecutionNode) -> bool:
    """
    Whether this node makes the whole run fail.

    Gate nodes block unless their expression was true and they succeeded.
    Other nodes block unless they Succeeded or were Skipped, or carry a
    job-level continue_on_error waiver.
    """
    if node.is_gate and node.ran:
        return not (node.gate_passed and node.state is NodeState.SUCCEEDED)
    if node.job.continue_on_error:
        return False
    return node.state not in _NON_BLOCKING


@dataclass
class RunReport:
    pipeline: str
    nodes: List[NodeReport]
    trigger: Dict[str, Any] = field(default_factory=dict)
    duration: float | None = None

    @property
    def success(self) -> bool:
        return not any(n.blocking for n in self.nodes)

    @property
    def exit_code(self) -> int:
        return EXIT_SUCCESS if self.success else EXIT_FAILURE

    @property
    def failed(self) -> List[NodeReport]:
        return [n for n in self.nodes if n.blocking]

    def node(self, node_id: str) -> NodeReport:
        for n in self.nodes:
            if n.id == node_id:
                return n
        raise KeyError(node_id)

    def states(self) -> Dict[str, str]:
        return {n.id: n.state for n in self.nodes}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "success": self.success,
            "exit_code": self.exit_code,
            "trigger": self.trigger,
            "duration": None if self.duration is None else round(self.duration, 3),
            "nodes": [n.to_dict() for n in self.nodes],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, default=str)

    def write(self, path: str | Path) -> Path:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(self.to_json() + "\n", encoding="utf-8")
        return p


def build_report(graph: PipelineGraph, duration: float | None = None) -> RunReport:
    if not graph.all_terminal():
        pending = [n.id for n in graph if not n.state.terminal]
        raise RuntimeError(f"cannot report on a run that has not finished: {pending}")

    nodes = []
    for n in graph:
        nodes.append(
            NodeReport(
                id=n.id,
                job=n.job.name,
                state=n.state.value,
                result=n.state.result,
                reason=n.reason,
                ran=n.ran,
                duration=n.duration,
                blocking=is_blocking(n),
                matrix=dict(n.instance.matrix),
                gate_passed=n.gate_passed,
                cache=getattr(n.cache, "reason", None),
                error=n.error,
                steps=[s.to_dict() for s in n.steps],
            )
        )
    trigger = {"branch": graph.trigger.branch, "event": graph.trigger.event}
    return RunReport(pipeline=graph.pipeline.name, nodes=nodes, trigger=trigger, duration=duration)
