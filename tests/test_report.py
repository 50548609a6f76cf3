import json

from conftest import fail, hang, ok

from pipewright.dsl import ALWAYS, all_succeeded, call, job, matrix
from pipewright.report import EXIT_FAILURE, EXIT_SUCCESS


def build_test_gate(test_b):
    return [
        job("build", call("compile", ok)),
        job("testA", call("unit", ok), needs=["build"]),
        job("testB", call("integration", test_b), needs=["build"], timeout=0.2),
        job("gate", call("summarize", ok), needs=["testA", "testB"], if_=ALWAYS,
            gate=all_succeeded("testA", "testB")),
    ]


def test_timeout_propagates_to_gate_and_exit_code(run):
    report = run(build_test_gate(hang))
    assert report.states() == {
        "build": "succeeded",
        "testA": "succeeded",
        "testB": "timed_out",
        "gate": "failed",
    }
    assert report.node("gate").ran
    assert [n.id for n in report.failed] == ["testB", "gate"]
    assert report.exit_code == EXIT_FAILURE


def test_all_green_run_exits_zero(run):
    report = run(build_test_gate(ok))
    assert report.success
    assert report.exit_code == EXIT_SUCCESS
    assert report.failed == []


def test_skipped_jobs_do_not_fail_the_run(run):
    report = run([
        job("a", call("x", ok)),
        job("only-on-failure", call("x", ok), needs=["a"], if_="failure()"),
    ])
    assert report.node("only-on-failure").state == "skipped"
    assert report.success


def test_best_effort_step_is_recorded_but_not_blocking(run):
    report = run([job("lint", call("advisory", fail, continue_on_error=True), call("real", ok))])
    node = report.node("lint")
    assert node.state == "succeeded"
    assert [s["status"] for s in node.steps] == ["failure", "success"]
    assert node.steps[0]["best_effort"] is True
    assert report.success


def test_steps_after_a_hard_failure_are_skipped_unless_always(run):
    report = run([
        job(
            "build",
            call("compile", fail),
            call("package", ok),
            call("upload logs", ok, if_="always()"),
        )
    ])
    steps = {s["name"]: s["status"] for s in report.node("build").steps}
    assert steps == {"compile": "failure", "package": "skipped", "upload logs": "success"}


def test_report_serializes_to_json(run, tmp_path):
    report = run([
        job("test", call("x", ok), matrix=matrix(py=["3.11", "3.12"])),
        job("gate", call("x", ok), needs=["test"], if_=ALWAYS, gate="all-succeeded"),
    ])
    path = report.write(tmp_path / "out" / "report.json")
    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["success"] is True
    assert data["exit_code"] == 0
    assert [n["id"] for n in data["nodes"]] == ["test[py=3.11]", "test[py=3.12]", "gate"]
    assert data["nodes"][0]["matrix"] == {"py": "3.11"}
    assert data["nodes"][2]["gate_passed"] is True


def test_step_templates_see_needs_and_matrix(run):
    seen = []

    def capture(ctx):
        seen.append((ctx.step.name, ctx.env.get("TARGET")))
        return True

    report = run([
        job("build", call("x", ok)),
        job(
            "ship",
            call("ship after ${{ needs.build.result }}", capture),
            needs=["build"],
            matrix=matrix(target=["arm"]),
            env={"TARGET": "${{ matrix.target }}"},
        ),
    ])
    assert report.success
    assert seen == [("ship after success", "arm")]
