# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import WorkflowLoadError
from .logging import get_logger
from .model import CacheSpec, Job, MatrixSpec, Pipeline, Step

log = get_logger("pipewright.loader")

YAML_SUFFIXES = (".yml", ".yaml")
CACHE_ACTION = "actions/cache"


# ----------------------------------------------------------------------
# Entry point
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a workflow from a python or YAML file.

    A python file must define either:
      - workflow() -> Pipeline | List[Job]
      - PIPELINE = Pipeline(...) or JOBS = [Job, ...]
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise WorkflowLoadError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix in YAML_SUFFIXES:
        return load_yaml_workflow(wf_path)
    if wf_path.suffix != ".py":
        raise WorkflowLoadError(f"Workflow must be a .py, .yml or .yaml file, got: {wf_path.name}")
    return load_python_workflow(wf_path)


def load_python_workflow(wf_path: Path) -> Pipeline:
    module_name = f"pipewright_workflow_{wf_path.stem}"
    try:
        globals_dict = runpy.run_path(str(wf_path), run_name=module_name)
    except Exception as e:  # noqa: BLE001 - anything the user's file raises
        raise WorkflowLoadError(f"Could not execute {wf_path.name}: {type(e).__name__}: {e}") from e

    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            result = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise WorkflowLoadError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from pipewright import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]
    elif "JOBS" in globals_dict:
        result = globals_dict["JOBS"]
    else:
        raise WorkflowLoadError(f"{wf_path.name} defines neither workflow(), PIPELINE nor JOBS")

    if isinstance(result, Pipeline):
        if result.name == "pipeline":
            result.name = wf_path.stem
        return result
    if isinstance(result, list) and all(isinstance(j, Job) for j in result):
        return Pipeline(jobs=result, name=wf_path.stem)
    raise WorkflowLoadError(
        "Workflow must return/define a Pipeline or a List[Job]. "
        "Define workflow() -> List[Job] or JOBS = [Job, ...]."
    )


def load_yaml_workflow(wf_path: Path) -> Pipeline:
    try:
        data = yaml.safe_load(wf_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise WorkflowLoadError(f"Invalid YAML in {wf_path.name}: {e}") from e
    return parse_workflow(data, default_name=wf_path.stem)


# ----------------------------------------------------------------------
# YAML dialect
# ----------------------------------------------------------------------

def _as_list(value: Any, what: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value]
    raise WorkflowLoadError(f"{what} must be a string or a list, got {type(value).__name__}")


def _lines(value: Any) -> List[str]:
    """Multi-line string or list -> non-empty stripped entries."""
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [line.strip() for line in str(value).splitlines() if line.strip()]


def _str_map(value: Any, what: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise WorkflowLoadError(f"{what} must be a mapping")
    return {str(k): _scalar(v) for k, v in value.items()}


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def _minutes(value: Any, what: str) -> Optional[float]:
    if value is None:
        return None
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        raise WorkflowLoadError(f"{what} must be a number of minutes, got {value!r}")
    if minutes <= 0:
        raise WorkflowLoadError(f"{what} must be positive, got {value!r}")
    return minutes * 60.0


def _condition(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_triggers(on: Any) -> Dict[str, Optional[List[str]]]:
    if on is None:
        return {}
    if isinstance(on, str):
        return {on: None}
    if isinstance(on, list):
        return {str(e): None for e in on}
    if isinstance(on, dict):
        triggers: Dict[str, Optional[List[str]]] = {}
        for event, body in on.items():
            branches = body.get("branches") if isinstance(body, dict) else None
            triggers[str(event)] = _as_list(branches, f"on.{event}.branches") if branches is not None else None
        return triggers
    raise WorkflowLoadError("'on' must be a string, list or mapping")


def _parse_cache(body: Dict[str, Any], where: str, restore_at: int = 0) -> CacheSpec:
    if not isinstance(body, dict) or "key" not in body:
        raise WorkflowLoadError(f"{where} needs a 'key'")
    return CacheSpec(
        key=str(body["key"]),
        restore_keys=_lines(body.get("restore-keys")),
        paths=_lines(body.get("path")),
        restore_at=restore_at,
    )


def _parse_matrix(strategy: Any, job_id: str) -> Optional[MatrixSpec]:
    if strategy is None:
        return None
    if not isinstance(strategy, dict):
        raise WorkflowLoadError(f"jobs.{job_id}.strategy must be a mapping")
    raw = strategy.get("matrix")
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise WorkflowLoadError(f"jobs.{job_id}.strategy.matrix must be a mapping")
    include = raw.get("include") or []
    if not isinstance(include, list):
        raise WorkflowLoadError(f"jobs.{job_id}.strategy.matrix.include must be a list")
    axes = {str(k): v for k, v in raw.items() if k not in ("include", "exclude")}
    if "exclude" in raw:
        raise WorkflowLoadError(f"jobs.{job_id}.strategy.matrix.exclude is not supported")
    max_parallel = strategy.get("max-parallel")
    return MatrixSpec(
        axes=axes,
        include=list(include),
        fail_fast=bool(strategy.get("fail-fast", True)),
        max_parallel=int(max_parallel) if max_parallel is not None else None,
    )


def _parse_step(raw: Any, job_id: str, index: int, default_cwd: Optional[str]) -> Step:
    where = f"jobs.{job_id}.steps[{index}]"
    if not isinstance(raw, dict):
        raise WorkflowLoadError(f"{where} must be a mapping")
    run, uses = raw.get("run"), raw.get("uses")
    if run is None and uses is None:
        raise WorkflowLoadError(f"{where} needs 'run' or 'uses'")
    name = raw.get("name") or (str(run).strip().splitlines()[0] if run else str(uses))
    return Step(
        name=str(name),
        run=str(run) if run is not None else None,
        cwd=raw.get("working-directory") or default_cwd,
        env=_str_map(raw.get("env"), f"{where}.env"),
        if_=_condition(raw.get("if")),
        continue_on_error=bool(raw.get("continue-on-error", False)),
        timeout=_minutes(raw.get("timeout-minutes"), f"{where}.timeout-minutes"),
        uses=str(uses) if uses is not None else None,
        with_=dict(raw.get("with") or {}),
        id=str(raw["id"]) if raw.get("id") is not None else None,
    )


def _parse_job(job_id: str, body: Any) -> Job:
    if not isinstance(body, dict):
        raise WorkflowLoadError(f"jobs.{job_id} must be a mapping")

    defaults = body.get("defaults") or {}
    default_cwd = (defaults.get("run") or {}).get("working-directory") if isinstance(defaults, dict) else None

    raw_steps = body.get("steps") or []
    if not isinstance(raw_steps, list) or not raw_steps:
        raise WorkflowLoadError(f"jobs.{job_id} must have at least one step")

    cache = _parse_cache(body["cache"], f"jobs.{job_id}.cache") if "cache" in body else None
    steps: List[Step] = []
    for i, raw in enumerate(raw_steps):
        step = _parse_step(raw, job_id, i, default_cwd)
        if step.uses and step.uses.split("@")[0] == CACHE_ACTION:
            # the engine owns caching; the action step becomes the job's cache spec,
            # restored where the step stood so earlier step outputs can feed it
            if cache is not None:
                raise WorkflowLoadError(f"jobs.{job_id} declares more than one cache")
            cache = _parse_cache(step.with_, f"jobs.{job_id}.steps[{i}].with", restore_at=len(steps))
            continue
        steps.append(step)
    if not steps:
        raise WorkflowLoadError(f"jobs.{job_id} has no runnable steps")

    gate = body.get("gate")
    return Job(
        name=str(job_id),
        steps=steps,
        needs=_as_list(body.get("needs"), f"jobs.{job_id}.needs"),
        if_=_condition(body.get("if")),
        gate=str(gate) if gate is not None else None,
        matrix=_parse_matrix(body.get("strategy"), job_id),
        timeout=_minutes(body.get("timeout-minutes"), f"jobs.{job_id}.timeout-minutes"),
        env=_str_map(body.get("env"), f"jobs.{job_id}.env"),
        cache=cache,
        continue_on_error=bool(body.get("continue-on-error", False)),
        display_name=body.get("name"),
        branches=_as_list(body["branches"], f"jobs.{job_id}.branches") if "branches" in body else None,
        events=_as_list(body["events"], f"jobs.{job_id}.events") if "events" in body else None,
        paths=_as_list(body["paths"], f"jobs.{job_id}.paths") if "paths" in body else None,
    )


def parse_workflow(data: Any, default_name: str = "pipeline") -> Pipeline:
    if not isinstance(data, dict):
        raise WorkflowLoadError("Workflow must be a mapping at the top level")

    # YAML 1.1 reads a bare `on:` key as boolean True
    on = data.get("on", data.get(True))
    jobs_raw = data.get("jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        raise WorkflowLoadError("Workflow needs a non-empty 'jobs' mapping")

    jobs = [_parse_job(str(job_id), body) for job_id, body in jobs_raw.items()]
    log.debug("parsed %d job(s) from workflow %s", len(jobs), data.get("name") or default_name)
    return Pipeline(
        jobs=jobs,
        name=str(data.get("name") or default_name),
        env=_str_map(data.get("env"), "env"),
        triggers=_parse_triggers(on),
    )
