import pytest

from pipewright.dsl import (
    ALL_SUCCEEDED,
    ALWAYS,
    build,
    cache,
    call,
    job,
    matrix,
    pipeline,
    sh,
    wf,
)
from pipewright.model import Pipeline


def test_job_helper_applies_default_cwd_and_env():
    j = job(
        "test",
        sh("unit", "pytest", cwd="pkg"),
        sh("lint", "ruff check ."),
        cwd="src",
        env={"CI": 1},
        needs=["build"],
    )
    assert [s.cwd for s in j.steps] == ["pkg", "src"]
    assert j.env == {"CI": "1"}
    assert j.needs == ["build"]


def test_job_requires_steps():
    with pytest.raises(ValueError):
        job("empty")


def test_matrix_helper_merges_axes():
    spec = matrix({"node-version": [18, 20]}, os=["linux"], include=[{"os": "mac", "node-version": 22}],
                  fail_fast=False, max_parallel=1)
    assert spec.axes == {"node-version": [18, 20], "os": ["linux"]}
    assert spec.include == [{"os": "mac", "node-version": 22}]
    assert spec.fail_fast is False
    assert spec.max_parallel == 1


def test_cache_helper():
    spec = cache("deps-${{ hashFiles('uv.lock') }}", "deps-", paths=[".venv"])
    assert spec.restore_keys == ["deps-"]
    assert spec.paths == [".venv"]


def test_builder_produces_a_gate():
    j = (
        build("status-check")
        .depends_on("lint", "test")
        .step("summarize", "echo done")
        .gate_on()
        .timeout_after(60)
        .build()
    )
    assert j.needs == ["lint", "test"]
    assert j.gate == ALL_SUCCEEDED
    assert j.if_ == ALWAYS
    assert j.timeout == 60


def test_builder_fluent_options():
    j = (
        build("deploy")
        .call("push", lambda ctx: True)
        .run_if("github.ref_name == 'main'")
        .with_matrix(region=["eu", "us"])
        .with_env(STAGE="prod")
        .with_cache("deploy-v1", "deploy-", paths=["dist"])
        .only_on(branches=["main"], events=["push"])
        .with_paths("deploy/**")
        .allow_failure()
        .build()
    )
    assert j.if_ == "github.ref_name == 'main'"
    assert j.matrix.axes == {"region": ["eu", "us"]}
    assert j.env == {"STAGE": "prod"}
    assert j.cache.key == "deploy-v1"
    assert j.branches == ["main"] and j.events == ["push"]
    assert j.paths == ["deploy/**"]
    assert j.continue_on_error is True


def test_builder_requires_steps():
    with pytest.raises(ValueError):
        build("nothing").build()


def test_call_step():
    fn = lambda ctx: True  # noqa: E731
    step = call("check", fn, if_="always()", continue_on_error=True)
    assert step.call is fn
    assert step.run is None
    assert step.continue_on_error


def test_pipeline_and_wf():
    a = job("a", sh("x", "true"))
    p = pipeline(a, name="ci", env={"X": 1}, on={"push": ["main"]})
    assert isinstance(p, Pipeline)
    assert p.env == {"X": "1"}
    assert p.triggers == {"push": ["main"]}
    assert wf(a) == [a]


def test_top_level_helpers_survive_engine_imports():
    import pipewright
    import pipewright.cli  # noqa: F401 - pulls in every engine module
    from pipewright import cache as cache_helper, matrix as matrix_helper

    assert callable(matrix_helper) and callable(cache_helper)
    spec = matrix_helper(py=["3.11", "3.12"])
    result = pipewright.plan([
        pipewright.job("test", sh("t", "true"), matrix=spec, cache=cache_helper("k", paths=["x"])),
    ])
    assert result.levels == [["test[py=3.11]", "test[py=3.12]"]]
