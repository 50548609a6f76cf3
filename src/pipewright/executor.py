# executor.py
from __future__ import annotations

import os
import platform
import signal
import subprocess
import tempfile
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List

from .cachestore import CacheKeyResolver, CacheResolution, hash_files
from .config import EngineConfig
from .errors import StepFailure
from .expressions import ExpressionContext, StatusView, parse, render, strip_template, to_str
from .logging import get_logger
from .model import Step
from .ui.console import Console, get_console

log = get_logger("pipewright.executor")

OUTPUT_TAIL = 4000


@dataclass
class StepResult:
    name: str
    status: str                       # success | failure | skipped | cancelled
    exit_code: int | None = None
    message: str = ""
    best_effort: bool = False
    duration: float = 0.0
    output: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status in ("success", "skipped")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "exit_code": self.exit_code,
            "message": self.message,
            "best_effort": self.best_effort,
            "duration": round(self.duration, 3),
            "outputs": dict(self.outputs),
        }


@dataclass
class StepContext:
    """What a step gets to see while it runs."""
    job: str
    step: Step
    cwd: Path
    env: Dict[str, str]
    matrix: Dict[str, Any]
    cancel_event: threading.Event
    grace_period: float = 10.0
    output_file: Path | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def set_output(self, name: str, value: Any) -> None:
        """Publish steps.<id>.outputs.<name> to the steps after this one."""
        if self.output_file is None:
            raise RuntimeError(f"step '{self.step.name}' has no output file")
        write_output(self.output_file, name, to_str(value))


@dataclass
class JobOutcome:
    success: bool
    steps: List[StepResult] = field(default_factory=list)
    cache: CacheResolution | None = None
    cancelled: bool = False
    message: str = ""


# ----------------------------------------------------------------------
# Step outputs
# ----------------------------------------------------------------------
# Each step gets an empty file, exported as PIPEWRIGHT_OUTPUT (and
# GITHUB_OUTPUT for existing scripts). It holds `name=value` lines or
# multi-line blocks:
#
#     name<<DELIMITER
#     line one
#     line two
#     DELIMITER

def write_output(path: Path, name: str, value: str) -> None:
    with path.open("a", encoding="utf-8") as f:
        if "\n" in value:
            delim = f"PIPEWRIGHT_EOF_{uuid.uuid4().hex}"
            f.write(f"{name}<<{delim}\n{value}\n{delim}\n")
        else:
            f.write(f"{name}={value}\n")


def read_outputs(path: Path) -> Dict[str, str]:
    if not path.exists():
        return {}
    outputs: Dict[str, str] = {}
    lines = path.read_text(encoding="utf-8").splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        i += 1
        if not line.strip():
            continue
        eq, heredoc = line.find("="), line.find("<<")
        if heredoc != -1 and (eq == -1 or heredoc < eq):
            name, delim = line[:heredoc].strip(), line[heredoc + 2:].strip()
            body = []
            while i < len(lines) and lines[i] != delim:
                body.append(lines[i])
                i += 1
            i += 1  # closing delimiter
            outputs[name] = "\n".join(body)
        elif eq != -1:
            outputs[line[:eq].strip()] = line[eq + 1:]
        else:
            log.warning("ignoring malformed output line %r in %s", line, path)
    return outputs


# ----------------------------------------------------------------------
# Step execution
# ----------------------------------------------------------------------

class StepExecutor:
    """Runs one opaque step. The engine never looks inside."""

    def run(self, step: Step, ctx: StepContext) -> StepResult:
        raise NotImplementedError


def _interpret_return(name: str, value: Any) -> StepResult:
    if value is False:
        return StepResult(name=name, status="failure", exit_code=1)
    if value is None or value is True or value == 0:
        return StepResult(name=name, status="success", exit_code=0)
    if isinstance(value, int):
        return StepResult(name=name, status="failure", exit_code=value)
    return StepResult(name=name, status="success", exit_code=0, output=str(value)[-OUTPUT_TAIL:])


class ShellStepExecutor(StepExecutor):
    """
    `run:` steps go through the shell, `call` steps invoke a Python callable
    with the StepContext, `uses:` steps are reported as skipped.

    Cancellation is cooperative first: the process group gets SIGTERM, and
    SIGKILL once the grace period runs out.
    """

    def __init__(self, poll_interval: float = 0.05):
        self.poll_interval = poll_interval

    def run(self, step: Step, ctx: StepContext) -> StepResult:
        if step.call is not None:
            return self._run_call(step, ctx)
        if step.uses:
            log.warning("[%s] step '%s' uses external action %s, not executed locally", ctx.job, step.name, step.uses)
            return StepResult(name=step.name, status="skipped", message=f"external action {step.uses}")
        if not step.run:
            return StepResult(name=step.name, status="success", exit_code=0)
        return self._run_shell(step, ctx)

    def _run_call(self, step: Step, ctx: StepContext) -> StepResult:
        try:
            result = _interpret_return(step.name, step.call(ctx))
        except StepFailure as e:
            result = StepResult(name=step.name, status="failure", exit_code=e.exit_code, message=e.message)
        except Exception as e:  # noqa: BLE001 - a step's own error is its failure
            result = StepResult(name=step.name, status="failure", exit_code=None, message=f"{type(e).__name__}: {e}")
        if ctx.cancelled:
            result.status, result.message = "cancelled", result.message or "cancelled"
        return result

    def _run_shell(self, step: Step, ctx: StepContext) -> StepResult:
        popen_kwargs: Dict[str, Any] = {}
        if os.name == "posix":
            popen_kwargs["start_new_session"] = True

        try:
            proc = subprocess.Popen(
                step.run,
                shell=True,
                cwd=str(ctx.cwd),
                env=ctx.env,
                text=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                **popen_kwargs,
            )
        except OSError as e:
            return StepResult(name=step.name, status="failure", message=f"could not start: {e}")
        deadline = time.monotonic() + step.timeout if step.timeout else None

        while True:
            try:
                out, _ = proc.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if ctx.cancelled:
                    out = self._terminate(proc, ctx.grace_period)
                    return StepResult(name=step.name, status="cancelled", exit_code=proc.returncode,
                                      message="cancelled", output=out[-OUTPUT_TAIL:])
                if deadline is not None and time.monotonic() > deadline:
                    out = self._terminate(proc, ctx.grace_period)
                    return StepResult(name=step.name, status="failure", exit_code=proc.returncode,
                                      message=f"step timed out after {step.timeout:g}s", output=out[-OUTPUT_TAIL:])

        out = out or ""
        if proc.returncode != 0:
            return StepResult(name=step.name, status="failure", exit_code=proc.returncode,
                              message=f"exit code {proc.returncode}", output=out[-OUTPUT_TAIL:])
        return StepResult(name=step.name, status="success", exit_code=0, output=out[-OUTPUT_TAIL:])

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    def _terminate(self, proc: subprocess.Popen, grace: float) -> str:
        self._signal(proc, signal.SIGTERM)
        try:
            out, _ = proc.communicate(timeout=grace)
        except subprocess.TimeoutExpired:
            self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            out, _ = proc.communicate()
        return out or ""


# ----------------------------------------------------------------------
# Job execution
# ----------------------------------------------------------------------

class _StepStatus(StatusView):
    def __init__(self, cancel_event: threading.Event):
        self.failed = False
        self.cancel_event = cancel_event

    def success(self) -> bool:
        return not self.failed and not self.cancel_event.is_set()

    def failure(self) -> bool:
        return self.failed

    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


def _runner_os() -> str:
    return {"Darwin": "macOS"}.get(platform.system(), platform.system())


class JobRunner:
    """
    Runs one node: cache restore, steps in order, cache save.

    Never raises for a job's own failure; everything is reported through
    the returned JobOutcome.
    """

    def __init__(
        self,
        config: EngineConfig,
        executor: StepExecutor | None = None,
        cache: CacheKeyResolver | None = None,
        console: Console | None = None,
    ):
        self.config = config
        self.executor = executor or ShellStepExecutor()
        self.cache = cache
        self.console = console or get_console()

    def base_context(self, graph) -> ExpressionContext:
        trigger = graph.trigger
        env = dict(graph.pipeline.env)
        env.update(self.config.env)
        namespaces = {
            "env": env,
            "trigger": {"branch": trigger.branch, "event": trigger.event},
            "github": {
                "ref_name": trigger.branch,
                "event_name": trigger.event,
                "workspace": str(self.config.repo_root),
            },
            "runner": {"os": _runner_os(), "arch": platform.machine()},
            "matrix": {},
            "steps": {},
        }
        return ExpressionContext(namespaces, hash_files=lambda pats: hash_files(self.config.repo_root, pats))

    def run(self, node, ctx: ExpressionContext) -> JobOutcome:
        job = node.job
        job_ctx = ctx.child(matrix=dict(node.instance.matrix))
        env = dict(job_ctx.namespaces.get("env") or {})
        env.update({k: render(str(v), job_ctx) for k, v in job.env.items()})
        steps_ns: Dict[str, Dict[str, Any]] = {}
        job_ctx = job_ctx.child(env=env, steps=steps_ns)

        outcome = JobOutcome(success=True)
        status = _StepStatus(node.cancel_event)
        job_ctx.status = status

        with tempfile.TemporaryDirectory(prefix="pipewright-") as outputs_dir:
            for index, step in enumerate(job.steps):
                self._restore_cache(node, index, job_ctx, status, outcome)

                if node.cancel_event.is_set():
                    result = StepResult(name=step.name, status="cancelled", message="job cancelled")
                    outcome.cancelled = True
                elif not self._should_run(step, job_ctx, status):
                    result = StepResult(name=step.name, status="skipped", message="condition not met")
                else:
                    output_file = Path(outputs_dir) / f"step-{index}"
                    output_file.touch()
                    result = self._run_step(node, step, job_ctx, env, output_file)
                    result.outputs = read_outputs(output_file)
                    if result.status == "cancelled":
                        outcome.cancelled = True
                    elif result.status == "failure":
                        if step.continue_on_error:
                            result.best_effort = True
                            log.info("[%s] best-effort step '%s' failed: %s", node.id, result.name, result.message)
                        elif not status.failed:
                            status.failed = True
                            outcome.message = f"step '{result.name}' failed: {result.message}"

                outcome.steps.append(result)
                if step.id:
                    steps_ns[step.id] = {
                        "outputs": dict(result.outputs),
                        "outcome": result.status,
                        "conclusion": "success" if result.best_effort else result.status,
                    }
            self._restore_cache(node, len(job.steps), job_ctx, status, outcome)

        outcome.success = not status.failed and not outcome.cancelled

        if outcome.success and job.cache is not None and self.cache is not None and outcome.cache is not None:
            if self.cache.save(job.cache, outcome.cache, on_exact_hit=self.config.save_cache_on_exact_hit):
                self.console.print_cache(node.id, f"saved ({outcome.cache.key})")

        return outcome

    def _restore_cache(self, node, index: int, ctx: ExpressionContext, status: _StepStatus, outcome: JobOutcome) -> None:
        spec = node.job.cache
        if spec is None or self.cache is None or outcome.cache is not None:
            return
        if index != min(spec.restore_at, len(node.job.steps)) or not status.success():
            return
        outcome.cache = self.cache.restore(spec, ctx)
        self.console.print_cache(node.id, outcome.cache.reason)

    @staticmethod
    def _should_run(step: Step, ctx: ExpressionContext, status: _StepStatus) -> bool:
        if not step.if_:
            return status.success()
        cond = parse(strip_template(step.if_))
        return cond.is_true(ctx) and (cond.uses_status() or status.success())

    def _run_step(
        self,
        node,
        step: Step,
        ctx: ExpressionContext,
        env: Dict[str, str],
        output_file: Path | None = None,
    ) -> StepResult:
        rendered = replace(
            step,
            name=render(step.name, ctx),
            run=render(step.run, ctx) if step.run else step.run,
            cwd=render(step.cwd, ctx) if step.cwd else step.cwd,
        )
        step_env = os.environ.copy()
        step_env.update(env)
        step_env.update({k: render(str(v), ctx) for k, v in step.env.items()})
        if output_file is not None:
            step_env["PIPEWRIGHT_OUTPUT"] = step_env["GITHUB_OUTPUT"] = str(output_file)

        cwd = (self.config.repo_root / (rendered.cwd or ".")).resolve()
        if not cwd.exists():
            return StepResult(name=rendered.name, status="failure", message=f"working directory not found: {cwd}")

        self.console.print_step(node.id, rendered.name)
        started = time.monotonic()
        result = self.executor.run(
            rendered,
            StepContext(
                job=node.id,
                step=rendered,
                cwd=cwd,
                env=step_env,
                matrix=dict(node.instance.matrix),
                cancel_event=node.cancel_event,
                grace_period=self.config.grace_period,
                output_file=output_file,
            ),
        )
        result.duration = time.monotonic() - started
        if result.status == "failure":
            self.console.print_failure(node.id, rendered.name, result.message, exit_code=result.exit_code,
                                       best_effort=step.continue_on_error)
        return result
