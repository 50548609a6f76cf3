"""Console output formatting utilities for pipewright."""

from __future__ import annotations

import sys
import threading
from typing import Optional


class Console:
    """Centralized console output formatting."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def _progress(self, *lines: str) -> None:
        if not self.quiet:
            self._out(*lines)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        repository: str,
        workflow: str,
        job_count: int,
        trigger: str = "",
    ) -> None:
        """Print run start information."""
        lines = ["\nRUN STARTED", f"Repository: {repository}", f"Workflow: {workflow}", f"Jobs: {job_count}"]
        if trigger:
            lines.append(f"Trigger: {trigger}")
        self._progress(*lines, "")

    def print_job_start(self, name: str) -> None:
        self._progress(f"JOB STARTED: {name}")

    def print_job_finished(self, name: str, state: str, reason: str | None = None,
                           duration: float | None = None) -> None:
        extra = f" ({reason})" if reason else ""
        took = f" in {duration:.1f}s" if duration is not None else ""
        self._progress(f"JOB {state.upper()}: {name}{extra}{took}")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._progress(f"JOB SKIPPED: {name} ({reason})")

    def print_step(self, job: str, name: str) -> None:
        self._progress(f"[{job}] STEP: {name}")

    def print_failure(
        self,
        job: str,
        step: str,
        reason: str,
        exit_code: Optional[int] = None,
        best_effort: bool = False,
    ) -> None:
        """
        Print a step failure.

        Args:
            job: Job instance id
            step: Step name
            reason: Failure reason/error message
            exit_code: Optional exit code
            best_effort: The step may fail without failing the job
        """
        prefix = "STEP FAILED (continuing)" if best_effort else "STEP FAILED"
        lines = [f"[{job}] {prefix}: {step}"]
        if exit_code is not None:
            lines.append(f"[{job}] Exit code: {exit_code}")
        if reason:
            first = reason if self.debug else reason.split("\n")[0]
            lines.append(f"[{job}] Error: {first}")
        self._progress(*lines)

    def print_cache(self, job: str, reason: str) -> None:
        self._progress(f"[{job}] CACHE: {reason}")

    def print_plan(self, levels: list[list[str]], skipped: dict[str, str]) -> None:
        """Print the execution tiers and any trigger exclusions."""
        self.print_header("PLAN")
        for i, level in enumerate(levels, start=1):
            self._out(f"  Tier {i}:")
            for node_id in level:
                if node_id in skipped:
                    self._out(f"    {node_id} (skipped: {skipped[node_id]})")
                else:
                    self._out(f"    {node_id}")

    def print_results(self, report) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        width = max((len(n.id) for n in report.nodes), default=0)
        for n in report.nodes:
            took = f"{n.duration:6.1f}s" if n.duration is not None else "      -"
            reason = f"  {n.reason}" if n.reason and n.state != "succeeded" else ""
            lines.append(f"  {n.id.ljust(width)}  {n.state.upper():<10} {took}{reason}")
        lines.append("-" * 40)
        lines.append(f"PIPELINE: {'SUCCESS' if report.success else 'FAILURE'} (exit code {report.exit_code})")
        self._out(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._out(*lines, err=True)

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._out(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_warning(self, message: str) -> None:
        self._out(f"WARNING: {message}", err=True)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._out(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
