# scheduler.py
from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, Optional

from .aggregate import evaluate_gate, evaluate_run_condition, node_context
from .config import DEFAULT_TIMEOUT
from .dag import ExecutionNode, PipelineGraph, Readiness
from .errors import CancellationError, ConditionError, TimeoutFailure
from .executor import JobOutcome, JobRunner
from .expressions import ExpressionContext
from .logging import get_logger
from .model import NodeState
from .ui.console import Console, get_console

log = get_logger("pipewright.scheduler")

_FAILURES = (NodeState.FAILED, NodeState.TIMED_OUT)


class Scheduler:
    """
    Drives every node of a PipelineGraph to a terminal state.

    One coordinator loop (the thread calling `run`) owns all state
    transitions; worker threads only execute steps and hand back a
    JobOutcome. Per iteration the loop:

      1. promotes Pending nodes whose dependencies are all terminal to
         Ready and applies their run condition (Ready -> Skipped if false)
      2. launches Ready nodes while worker and max-parallel slots allow
      3. waits for a completion or the nearest timeout deadline
      4. records completions, expires timeouts, applies fail-fast
    """

    def __init__(
        self,
        graph: PipelineGraph,
        runner: JobRunner,
        *,
        max_workers: int | None = None,
        default_timeout: float = DEFAULT_TIMEOUT,
        console: Console | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.graph = graph
        self.runner = runner
        self.max_workers = max_workers or max(1, len(graph))
        self.default_timeout = default_timeout
        self.console = console or get_console()
        self.clock = clock

        self._in_flight: Dict[Future, ExecutionNode] = {}
        self._deadlines: Dict[int, float] = {}
        self._base: Optional[ExpressionContext] = None

    # ------------------------------------------------------------------
    # main loop
    # ------------------------------------------------------------------

    def run(self) -> PipelineGraph:
        self._base = self.runner.base_context(self.graph)
        for node in self.graph:
            if node.state is NodeState.SKIPPED:
                self.console.print_job_skipped(node.id, node.reason or "skipped")

        pool = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="pipewright")
        try:
            while not self.graph.all_terminal():
                self._promote()
                self._launch(pool)
                if self.graph.all_terminal():
                    break
                if not self._in_flight:
                    raise RuntimeError("scheduler stalled: no job running and none can start")
                done, _ = wait(list(self._in_flight), timeout=self._wait_timeout(), return_when=FIRST_COMPLETED)
                self._record(done)
                self._expire()
        except KeyboardInterrupt:
            self._cancel_all("interrupted")
            raise
        finally:
            # whatever is still in flight belongs to timed-out or cancelled
            # nodes; their results are discarded, so run() does not wait
            pool.shutdown(wait=not self._in_flight, cancel_futures=True)
        return self.graph

    def _timeout_of(self, node: ExecutionNode) -> float:
        return node.job.timeout if node.job.timeout is not None else self.default_timeout

    def _wait_timeout(self) -> float | None:
        running = [d for i, d in self._deadlines.items() if self.graph.nodes[i].state is NodeState.RUNNING]
        if not running:
            return None
        return max(0.0, min(running) - self.clock())

    # ------------------------------------------------------------------
    # readiness + conditions
    # ------------------------------------------------------------------

    def _promote(self) -> None:
        changed = True
        while changed:
            changed = False
            for node in self.graph:
                if self.graph.readiness(node) is not Readiness.EVALUATE:
                    continue
                self.graph.transition(node, NodeState.READY, now=self.clock())
                try:
                    run, why = evaluate_run_condition(self.graph, node, self._base)
                except ConditionError as e:
                    log.error("%s: run condition could not be evaluated: %s", node.id, e)
                    run, why = False, f"condition error: {e}"
                if not run:
                    self.graph.transition(node, NodeState.SKIPPED, why, now=self.clock())
                    self.console.print_job_skipped(node.id, why)
                    changed = True

    # ------------------------------------------------------------------
    # launching
    # ------------------------------------------------------------------

    def _group_has_slot(self, node: ExecutionNode) -> bool:
        spec = node.job.matrix
        if spec is None or spec.max_parallel is None:
            return True
        running = sum(1 for n in self.graph.instances_of(node.job.name) if n.state is NodeState.RUNNING)
        return running < spec.max_parallel

    def _launch(self, pool: ThreadPoolExecutor) -> None:
        for node in self.graph:
            if node.state is not NodeState.READY:
                continue
            if len(self._in_flight) >= self.max_workers:
                return
            if not self._group_has_slot(node):
                continue

            if node.is_gate:
                try:
                    node.gate_passed = evaluate_gate(self.graph, node, self._base)
                except ConditionError as e:
                    log.error("%s: gate could not be evaluated: %s", node.id, e)
                    node.gate_passed, node.error = False, str(e)

            now = self.clock()
            self.graph.transition(node, NodeState.RUNNING, now=now)
            self._deadlines[node.index] = now + self._timeout_of(node)
            self.console.print_job_start(node.id)
            fut = pool.submit(self.runner.run, node, node_context(self.graph, node, self._base))
            self._in_flight[fut] = node

    # ------------------------------------------------------------------
    # completion, timeouts, fail-fast
    # ------------------------------------------------------------------

    def _record(self, done: Iterable[Future]) -> None:
        # the whole batch is recorded before fail-fast looks at siblings
        finished = [n for n in (self._complete(fut) for fut in done) if n is not None]
        for node in finished:
            self._finished(node)

    def _complete(self, fut: Future) -> ExecutionNode | None:
        """Record a finished worker. Returns the node if this moved it to a terminal state."""
        node = self._in_flight.pop(fut)
        outcome: JobOutcome | None = None
        try:
            outcome = fut.result()
        except Exception as e:  # noqa: BLE001 - a crashing worker fails its own node only
            log.exception("%s: job runner crashed", node.id)
            node.error = f"{type(e).__name__}: {e}"

        if outcome is not None:
            node.steps = outcome.steps
            node.cache = outcome.cache

        if node.state is not NodeState.RUNNING:
            # already timed out or cancelled; the late result changes nothing
            log.debug("%s: late completion ignored (%s)", node.id, node.state.value)
            return None

        now = self.clock()
        if outcome is None:
            self.graph.transition(node, NodeState.FAILED, f"error: {node.error}", now=now)
        elif outcome.cancelled:
            self.graph.transition(node, NodeState.CANCELLED, "cancelled", now=now)
        elif node.is_gate and not node.gate_passed:
            self.graph.transition(node, NodeState.FAILED, "gate: status expression is false", now=now)
        elif outcome.success:
            self.graph.transition(node, NodeState.SUCCEEDED, now=now)
        else:
            self.graph.transition(node, NodeState.FAILED, outcome.message or "step failed", now=now)
        return node

    def _expire(self) -> None:
        now = self.clock()
        for index, deadline in list(self._deadlines.items()):
            node = self.graph.nodes[index]
            if node.state is not NodeState.RUNNING:
                del self._deadlines[index]
                continue
            if now < deadline:
                continue
            timeout = self._timeout_of(node)
            node.cancel_event.set()
            node.error = str(TimeoutFailure(job=node.id, timeout=timeout))
            log.warning("%s", node.error)
            self.graph.transition(node, NodeState.TIMED_OUT, f"timeout after {timeout:g}s", now=now)
            del self._deadlines[index]
            self._finished(node)

    def _finished(self, node: ExecutionNode) -> None:
        self.console.print_job_finished(node.id, node.state.value, node.reason, node.duration)
        spec = node.job.matrix
        if node.state in _FAILURES and spec is not None and spec.fail_fast:
            self._abort_group(node)

    def _abort_group(self, failed: ExecutionNode) -> None:
        reason = f"fail-fast: {failed.id} {failed.state.value}"
        # a worker that already returned is recorded with its own outcome
        returned = {n.index for f, n in self._in_flight.items() if f.done()}
        for sib in self.graph.siblings(failed):
            if sib.state.terminal or sib.index in returned:
                continue
            sib.cancel_event.set()
            sib.error = str(CancellationError(reason))
            if self.graph.transition(sib, NodeState.CANCELLED, reason, now=self.clock()):
                self.console.print_job_finished(sib.id, sib.state.value, reason)

    def _cancel_all(self, reason: str) -> None:
        for node in self.graph:
            if not node.state.terminal:
                node.cancel_event.set()
                node.error = str(CancellationError(reason))
                self.graph.transition(node, NodeState.CANCELLED, reason, now=self.clock())
