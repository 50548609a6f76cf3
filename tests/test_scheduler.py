import os
import time
from concurrent.futures import Future

import pytest

from conftest import Recorder, fail, hang, ok

from pipewright.config import EngineConfig
from pipewright.dag import build_graph
from pipewright.dsl import ALWAYS, all_succeeded, call, job, matrix, sh
from pipewright.executor import JobOutcome, JobRunner
from pipewright.model import NodeState
from pipewright.scheduler import Scheduler


def states(report):
    return report.states()


def test_independent_jobs_all_succeed(run):
    rec = Recorder()
    report = run([job("a", call("x", rec.step("a"))), job("b", call("x", rec.step("b")))])
    assert states(report) == {"a": "succeeded", "b": "succeeded"}
    assert sorted(rec.jobs()) == ["a", "b"]
    assert report.exit_code == 0


def test_failed_dependency_skips_default_dependents(run):
    rec = Recorder()
    report = run([
        job("build", call("compile", fail)),
        job("test", call("x", rec.step("test")), needs=["build"]),
        job("deploy", call("x", rec.step("deploy")), needs=["test"]),
    ])
    assert states(report) == {"build": "failed", "test": "skipped", "deploy": "skipped"}
    assert rec.calls == []
    assert report.node("test").ran is False
    assert report.exit_code == 1


def test_dependents_run_only_after_dependencies_are_terminal(run):
    order = []

    def record(label, delay=0.0):
        def _fn(ctx):
            time.sleep(delay)
            order.append(label)
            return True
        return _fn

    run([
        job("slow", call("x", record("slow", 0.2))),
        job("fast", call("x", record("fast"))),
        job("after", call("x", record("after")), needs=["slow", "fast"]),
    ])
    assert order[-1] == "after"


def test_always_gate_runs_but_fails_when_a_need_failed(run):
    rec = Recorder()
    report = run([
        job("build", call("compile", fail)),
        job("status-check", call("summarize", rec.step("gate")), needs=["build"],
            if_=ALWAYS, gate=all_succeeded("build")),
    ])
    gate = report.node("status-check")
    assert gate.ran is True
    assert rec.jobs() == ["status-check"]
    assert gate.state == "failed"
    assert gate.gate_passed is False
    assert gate.reason.startswith("gate:")
    assert gate.blocking
    assert report.exit_code == 1


def test_passing_gate_succeeds(run):
    report = run([
        job("a", call("x", ok)),
        job("b", call("x", ok)),
        job("gate", call("x", ok), needs=["a", "b"], if_=ALWAYS, gate="all-succeeded"),
    ])
    assert report.node("gate").state == "succeeded"
    assert report.node("gate").gate_passed is True
    assert report.success


def test_gate_without_always_is_skipped_like_any_job(run):
    report = run([
        job("a", call("x", fail)),
        job("gate", call("x", ok), needs=["a"], gate="all-succeeded"),
    ])
    assert report.node("gate").state == "skipped"
    assert report.exit_code == 1


def test_fail_fast_cancels_pending_siblings_that_never_start(run):
    rec = Recorder()

    def first_fails(ctx):
        rec.step("m")(ctx)
        return ctx.matrix["n"] != 1

    report = run([
        job("test", call("x", first_fails), matrix=matrix(n=[1, 2, 3], max_parallel=1)),
    ])
    assert report.node("test[n=1]").state == "failed"
    for sib in ("test[n=2]", "test[n=3]"):
        node = report.node(sib)
        assert node.state == "cancelled"
        assert node.ran is False
        assert node.reason == "fail-fast: test[n=1] failed"
        assert node.error == "fail-fast: test[n=1] failed"
    assert [m["n"] for _l, _j, m in rec.calls] == [1]


def test_fail_fast_cancels_running_siblings(run):
    def one_fails(ctx):
        if ctx.matrix["n"] == 1:
            return False
        return hang(ctx)

    started = time.monotonic()
    report = run([job("test", call("x", one_fails), matrix=matrix(n=[1, 2, 3]))])
    assert time.monotonic() - started < 4
    assert report.node("test[n=1]").state == "failed"
    assert report.node("test[n=2]").state == "cancelled"
    assert report.node("test[n=3]").state == "cancelled"


def test_without_fail_fast_siblings_are_independent(run):
    def two_fails(ctx):
        return ctx.matrix["n"] != 2

    report = run([
        job("test", call("x", two_fails), matrix=matrix(n=[1, 2, 3], fail_fast=False)),
        job("after", call("x", ok), needs=["test"]),
    ])
    assert states(report) == {
        "test[n=1]": "succeeded",
        "test[n=2]": "failed",
        "test[n=3]": "succeeded",
        "after": "skipped",
    }


def test_max_parallel_limits_concurrency(run):
    running, peak = [0], [0]

    def track(ctx):
        running[0] += 1
        peak[0] = max(peak[0], running[0])
        time.sleep(0.05)
        running[0] -= 1
        return True

    report = run([job("t", call("x", track), matrix=matrix(n=[1, 2, 3, 4], max_parallel=2))])
    assert report.success
    assert peak[0] <= 2


def test_job_timeout_marks_timed_out_and_reads_as_failure(run):
    report = run([
        job("slow", call("wait", hang), timeout=0.2),
        job("report", call("x", ok), needs=["slow"], if_="always() && needs.slow.result == 'failure'"),
    ])
    slow = report.node("slow")
    assert slow.state == "timed_out"
    assert slow.result == "failure"
    assert slow.reason == "timeout after 0.2s"
    assert "timed out after 0.2s" in slow.error
    assert report.node("report").state == "succeeded"
    assert report.exit_code == 1


def test_failure_condition_runs_cleanup_job(run):
    report = run([
        job("build", call("x", fail)),
        job("notify", call("x", ok), needs=["build"], if_="failure()"),
        job("publish", call("x", ok), needs=["build"], if_="success()"),
    ])
    assert report.node("notify").state == "succeeded"
    assert report.node("publish").state == "skipped"


def test_job_level_continue_on_error_does_not_fail_the_run(run):
    report = run([
        job("flaky", call("x", fail), continue_on_error=True),
        job("solid", call("x", ok)),
    ])
    assert report.node("flaky").state == "failed"
    assert report.node("flaky").blocking is False
    assert report.success


def test_runner_crash_fails_only_its_node(run, monkeypatch):
    def boom(self, node, ctx):
        if node.id == "a":
            raise RuntimeError("kaboom")
        return original(self, node, ctx)

    original = JobRunner.run
    monkeypatch.setattr(JobRunner, "run", boom)
    report = run([job("a", call("x", ok)), job("b", call("x", ok))])
    assert report.node("a").state == "failed"
    assert "kaboom" in report.node("a").reason
    assert report.node("b").state == "succeeded"


def test_scheduler_records_readiness_and_run_times(tmp_path, console):
    graph = build_graph([
        job("a", call("x", ok)),
        job("b", call("x", lambda ctx: time.sleep(0.05) or True), needs=["a"]),
    ])
    runner = JobRunner(EngineConfig(repo_root=tmp_path, cache_dir=None), console=console)
    Scheduler(graph, runner, console=console).run()

    a, b = graph.node("a"), graph.node("b")
    assert a.state is NodeState.SUCCEEDED and b.state is NodeState.SUCCEEDED
    assert a.ready_at <= a.started_at <= a.finished_at
    assert b.ready_at >= a.finished_at
    assert b.duration >= 0.05


def test_trigger_skipped_job_skips_dependents(run):
    from pipewright.model import TriggerContext

    report = run(
        [job("deploy", call("x", ok), branches=["main"]), job("smoke", call("x", ok), needs=["deploy"])],
        TriggerContext(branch="dev"),
    )
    assert report.node("deploy").state == "skipped"
    assert report.node("deploy").reason.startswith("trigger:")
    assert report.node("smoke").state == "skipped"
    assert report.success


@pytest.mark.skipif(os.name != "posix", reason="process groups and SIGKILL are POSIX")
def test_shell_step_ignoring_sigterm_is_killed_after_the_grace_period(run, tmp_path):
    started = time.monotonic()
    report = run([job("stubborn", sh("s", "echo $$ > pid; trap '' TERM; sleep 30"), timeout=0.3)])
    node = report.node("stubborn")
    assert node.state == "timed_out"
    assert node.reason == "timeout after 0.3s"

    # timeout + grace period (0.5s in the test config) + polling slack
    pid = int((tmp_path / "pid").read_text())
    while time.monotonic() - started < 5:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            break
        time.sleep(0.05)
    else:
        pytest.fail(f"shell {pid} survived the grace period")


@pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX")
def test_fail_fast_terminates_running_shell_siblings(run):
    report = run([
        job(
            "test",
            sh("s", "if [ ${{ matrix.n }} = 1 ]; then exit 3; else sleep 30; fi"),
            matrix=matrix(n=[1, 2]),
        ),
    ])
    assert report.node("test[n=1]").state == "failed"
    assert report.node("test[n=2]").state == "cancelled"
    assert report.duration < 10


def test_run_returns_without_waiting_for_a_timed_out_call_step(run):
    started = time.monotonic()
    report = run([job("stuck", call("sleep", lambda ctx: time.sleep(2) or True), timeout=0.2)])
    assert report.node("stuck").state == "timed_out"
    assert time.monotonic() - started < 1.5


def _running_group(tmp_path, console, outcomes):
    graph = build_graph([job("test", call("x", ok), matrix=matrix(n=list(range(1, len(outcomes) + 1))))])
    runner = JobRunner(EngineConfig(repo_root=tmp_path, cache_dir=None), console=console)
    scheduler = Scheduler(graph, runner, console=console)
    futures = []
    for node, outcome in zip(graph, outcomes):
        graph.transition(node, NodeState.READY)
        graph.transition(node, NodeState.RUNNING)
        fut = Future()
        fut.set_result(outcome)
        scheduler._in_flight[fut] = node
        futures.append(fut)
    return graph, scheduler, futures


def test_completions_in_one_batch_keep_their_own_outcomes(tmp_path, console):
    graph, scheduler, futures = _running_group(
        tmp_path, console, [JobOutcome(success=False, message="boom"), JobOutcome(success=True)]
    )
    scheduler._record(futures)
    assert graph.node("test[n=1]").state is NodeState.FAILED
    assert graph.node("test[n=2]").state is NodeState.SUCCEEDED
    assert graph.node("test[n=2]").error is None


def test_fail_fast_leaves_a_returned_sibling_for_the_next_batch(tmp_path, console):
    graph, scheduler, futures = _running_group(
        tmp_path, console, [JobOutcome(success=False, message="boom"), JobOutcome(success=True)]
    )
    scheduler._record(futures[:1])
    assert graph.node("test[n=2]").state is NodeState.RUNNING

    scheduler._record(futures[1:])
    assert graph.node("test[n=2]").state is NodeState.SUCCEEDED
