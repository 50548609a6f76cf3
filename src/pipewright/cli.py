# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from pipewright.cachestore import LocalCacheBackend
from pipewright.config import DEFAULT_CACHE_DIR, EngineConfig
from pipewright.errors import ConfigurationError, PipewrightError
from pipewright.git_facts.git import GitError, current_branch, get_remote_url
from pipewright.loader import load_workflow
from pipewright.logging import set_level
from pipewright.model import TriggerContext
from pipewright.report import EXIT_CONFIG_ERROR, EXIT_FAILURE, EXIT_INTERRUPTED
from pipewright.runner import git_changed_files, plan as plan_pipeline, run_pipeline
from pipewright.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "pipewright_workflow.py"
DEFAULT_YAML_WORKFLOWS = ("pipewright.yml", "pipewright.yaml")


def find_workflow_files(directory: Path | None = None) -> list[Path]:
    """
    Find all workflow files in a directory (default: the current one).

    Returns:
        List of Path objects for workflow files
    """
    current_dir = directory or Path(".")
    found = []

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        found.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            found.append(path)

    for name in DEFAULT_YAML_WORKFLOWS:
        path = current_dir / name
        if path.exists():
            found.append(path)

    return sorted(found)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  pipewright run --workflow my_workflow.py",
            )
            sys.exit(EXIT_CONFIG_ERROR)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
                *(f"  {n}" for n in DEFAULT_YAML_WORKFLOWS),
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  pipewright run --workflow my_workflow.py",
        )
        sys.exit(EXIT_CONFIG_ERROR)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  pipewright run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(EXIT_CONFIG_ERROR)

    return workflow_files[0]


def _repository_name() -> str:
    try:
        repo_url = get_remote_url("origin")
        return repo_url.rstrip("/").split("/")[-1].replace(".git", "")
    except GitError:
        return Path(".").resolve().name


def _trigger(branch: str | None, event: str, git_diff: bool, compare_ref: str) -> TriggerContext:
    console = get_console()
    if branch is None:
        try:
            branch = current_branch()
        except GitError:
            console.print_debug("not a git repository, branch unknown")
    changed = None
    if git_diff:
        try:
            _head, changed = git_changed_files(compare_ref)
        except GitError as e:
            console.print_warning(f"git diff unavailable, path filters ignored: {e}")
    return TriggerContext(branch=branch, event=event, changed_files=changed)


def _load_or_exit(ctx, workflow_path: Path):
    console = get_console()
    try:
        return load_workflow(workflow_path)
    except ConfigurationError as e:
        console.print_error("Failed to load workflow", f"Could not load workflow from {workflow_path}",
                            details=[str(e)])
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(EXIT_CONFIG_ERROR)


def _trigger_options(fn):
    fn = click.option("--compare-ref", default="origin/main", show_default=True, envvar="PIPEWRIGHT_COMPARE_REF",
                      help="Git ref to diff against")(fn)
    fn = click.option("--git-diff/--no-git-diff", default=False, envvar="PIPEWRIGHT_GIT_DIFF",
                      help="Feed changed files (git diff) to job path filters")(fn)
    fn = click.option("--event", default="push", show_default=True, envvar="PIPEWRIGHT_EVENT",
                      help="Trigger event (push, pull_request, ...)")(fn)
    fn = click.option("--branch", default=None, envvar="PIPEWRIGHT_BRANCH",
                      help="Trigger branch (defaults to the current git branch)")(fn)
    fn = click.option("--workflow", default=None, envvar="PIPEWRIGHT_WORKFLOW",
                      help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """pipewright: DAG-scheduled, matrix-aware, cache-aware CI runner."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    if debug:
        set_level("DEBUG")
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@_trigger_options
@click.option("--workers", default=None, type=int, envvar="PIPEWRIGHT_WORKERS", help="Number of parallel workers")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, show_default=True, envvar="PIPEWRIGHT_CACHE_DIR",
              help="Cache directory")
@click.option("--no-cache", is_flag=True, default=False, help="Disable cache restore/save")
@click.option("--save-on-exact-hit", is_flag=True, default=False, envvar="PIPEWRIGHT_SAVE_ON_EXACT_HIT",
              help="Re-save the cache even when the primary key was an exact hit")
@click.option("--timeout", "default_timeout", default=None, type=float, envvar="PIPEWRIGHT_DEFAULT_TIMEOUT",
              help="Default job timeout in seconds")
@click.option("--grace-period", default=None, type=float, envvar="PIPEWRIGHT_GRACE_PERIOD",
              help="Seconds between terminate and kill on cancellation")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False),
              help="Write a JSON run report to this path")
@click.pass_context
def run(ctx, workflow, branch, event, git_diff, compare_ref, workers, cache_dir, no_cache, save_on_exact_hit,
        default_timeout, grace_period, report_path):
    """Run a pipewright workflow."""
    console = get_console()

    workflow_path = discover_workflow(workflow)
    definition = _load_or_exit(ctx, workflow_path)

    try:
        config = EngineConfig(
            repo_root=Path("."),
            cache_dir=None if no_cache else Path(cache_dir),
            max_workers=workers,
            save_cache_on_exact_hit=save_on_exact_hit,
            **{k: v for k, v in (("default_timeout", default_timeout), ("grace_period", grace_period)) if v is not None},
        )
    except ValueError as e:
        console.print_error("Invalid configuration", str(e))
        sys.exit(EXIT_CONFIG_ERROR)

    trigger = _trigger(branch, event, git_diff, compare_ref)
    console.print_run_started(
        repository=_repository_name(),
        workflow=workflow_path.name,
        job_count=len(definition.jobs),
        trigger=f"{trigger.event} on {trigger.branch or '(unknown branch)'}",
    )

    try:
        report = run_pipeline(definition, trigger, config=config, console=console)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_CONFIG_ERROR)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(EXIT_INTERRUPTED)
    except PipewrightError as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILURE)

    console.print_results(report)
    if report_path:
        written = report.write(report_path)
        console.print_info(f"Report written to {written}")
    sys.exit(report.exit_code)


@cli.command()
@_trigger_options
@click.pass_context
def plan(ctx, workflow, branch, event, git_diff, compare_ref):
    """Show the expanded jobs by tier without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    definition = _load_or_exit(ctx, workflow_path)
    trigger = _trigger(branch, event, git_diff, compare_ref)
    try:
        result = plan_pipeline(definition, trigger)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_CONFIG_ERROR)
    console.print_plan(result.levels, result.skipped)


@cli.command()
@click.option("--workflow", default=None, envvar="PIPEWRIGHT_WORKFLOW", help="Workflow file path")
@click.pass_context
def validate(ctx, workflow):
    """Check a workflow for cycles, unknown needs and bad expressions."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    definition = _load_or_exit(ctx, workflow_path)
    try:
        result = plan_pipeline(definition)
    except ConfigurationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_CONFIG_ERROR)
    console.print_info(
        f"{workflow_path.name}: OK ({len(definition.jobs)} job(s), {len(result.graph)} node(s), "
        f"{len(result.levels)} tier(s))"
    )


@cli.command("cache-prune")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, show_default=True, envvar="PIPEWRIGHT_CACHE_DIR",
              help="Cache directory")
@click.option("--keep", default=3, show_default=True, type=click.IntRange(min=0), help="Entries to keep")
def cache_prune(cache_dir, keep):
    """Delete all but the newest local cache entries."""
    console = get_console()
    removed = LocalCacheBackend(Path(cache_dir)).prune(keep=keep)
    for key in removed:
        console.print_debug(f"pruned {key}")
    console.print_info(f"Removed {len(removed)} cache entr{'y' if len(removed) == 1 else 'ies'}")


if __name__ == "__main__":
    cli()
