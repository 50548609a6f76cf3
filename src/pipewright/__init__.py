from .dsl import (
    ALL_SUCCEEDED,
    ALWAYS,
    JobBuilder,
    all_succeeded,
    build,
    cache,
    call,
    job,
    matrix,
    pipeline,
    sh,
    wf,
    workflow,
)
from .config import EngineConfig
from .errors import ConfigurationError, PipewrightError
from .loader import load_workflow
from .model import CacheSpec, Job, MatrixSpec, NodeState, Pipeline, Step, TriggerContext
from .runner import plan, run_pipeline

__all__ = [
    "ALL_SUCCEEDED",
    "ALWAYS",
    "CacheSpec",
    "ConfigurationError",
    "EngineConfig",
    "Job",
    "JobBuilder",
    "MatrixSpec",
    "NodeState",
    "Pipeline",
    "PipewrightError",
    "Step",
    "TriggerContext",
    "all_succeeded",
    "build",
    "cache",
    "call",
    "job",
    "load_workflow",
    "matrix",
    "pipeline",
    "plan",
    "run_pipeline",
    "sh",
    "wf",
    "workflow",
]
