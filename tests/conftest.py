from __future__ import annotations

import threading

import pytest

from pipewright.cachestore import MemoryCacheBackend
from pipewright.config import EngineConfig
from pipewright.runner import run_pipeline
from pipewright.ui.console import Console


@pytest.fixture
def console():
    return Console(quiet=True)


@pytest.fixture
def config(tmp_path):
    return EngineConfig(repo_root=tmp_path, cache_dir=None, default_timeout=10.0, grace_period=0.5)


@pytest.fixture
def cache_backend():
    return MemoryCacheBackend()


@pytest.fixture
def run(config, console, cache_backend):
    """run(definition, trigger=None) -> RunReport, quiet, in-memory cache."""

    def _run(definition, trigger=None, **overrides):
        kwargs = {"config": config, "console": console, "cache_backend": cache_backend}
        kwargs.update(overrides)
        return run_pipeline(definition, trigger, **kwargs)

    return _run


def ok(ctx):
    return True


def fail(ctx):
    return False


def hang(ctx):
    """Blocks until the engine cancels the job (or 5s pass)."""
    ctx.cancel_event.wait(5)
    return True


class Recorder:
    """Thread-safe log of which steps ran."""

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def step(self, label, result=True):
        def _fn(ctx):
            with self._lock:
                self.calls.append((label, ctx.job, dict(ctx.matrix)))
            return result

        return _fn

    def jobs(self):
        return [job for _label, job, _m in self.calls]
