import json
from pathlib import Path

from click.testing import CliRunner

from pipewright.cachestore import LocalCacheBackend
from pipewright.cli import cli

PASSING = """
from pipewright import ALWAYS, job, matrix, pipeline, sh

def workflow():
    return pipeline(
        job("build", sh("compile", "echo building")),
        job("test", sh("unit", "echo ${{ matrix.py }}"), needs=["build"], matrix=matrix(py=["3.11", "3.12"])),
        job("gate", sh("done", "true"), needs=["build", "test"], if_=ALWAYS, gate="all-succeeded"),
    )
"""

FAILING = """
from pipewright import ALWAYS, job, sh

JOBS = [
    job("build", sh("compile", "exit 3")),
    job("gate", sh("done", "true"), needs=["build"], if_=ALWAYS, gate="all-succeeded"),
]
"""

CYCLE = """
jobs:
  a:
    needs: b
    steps: [{run: "true"}]
  b:
    needs: a
    steps: [{run: "true"}]
"""


def _write(name, text):
    Path(name).write_text(text, encoding="utf-8")


def test_run_success(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        _write("pipewright_workflow.py", PASSING)
        result = runner.invoke(cli, ["run", "--branch", "main", "--no-cache", "--report", "out/report.json"])
        assert result.exit_code == 0, result.output
        assert "PIPELINE: SUCCESS" in result.output
        data = json.loads(Path("out/report.json").read_text(encoding="utf-8"))
        assert [n["id"] for n in data["nodes"]] == ["build", "test[py=3.11]", "test[py=3.12]", "gate"]


def test_run_failure_exit_code(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        _write("ci_workflow.py", FAILING)
        result = runner.invoke(cli, ["--quiet", "run", "--workflow", "ci_workflow.py", "--branch", "main", "--no-cache"])
        assert result.exit_code == 1
        assert "PIPELINE: FAILURE" in result.output
        assert "gate: status expression is false" in result.output


def test_validate_reports_cycles_with_exit_code_2(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        _write("pipewright.yml", CYCLE)
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 2
        assert "Dependency cycle detected" in result.output


def test_validate_ok(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        _write("pipewright_workflow.py", PASSING)
        result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 0
        assert "OK (3 job(s), 4 node(s), 3 tier(s))" in result.output


def test_plan_lists_tiers(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        _write("pipewright_workflow.py", PASSING)
        result = runner.invoke(cli, ["plan", "--branch", "main"])
        assert result.exit_code == 0
        assert "Tier 2:" in result.output
        assert "test[py=3.12]" in result.output


def test_missing_workflow(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == 2
        assert "No workflow file found" in result.output


def test_multiple_workflows_need_a_choice(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        _write("pipewright_workflow.py", PASSING)
        _write("other_workflow.py", FAILING)
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == 2
        assert "Multiple workflow files found" in result.output


def test_broken_workflow_is_a_config_error(tmp_path):
    runner = CliRunner()
    with runner.isolated_filesystem(temp_dir=tmp_path):
        _write("pipewright_workflow.py", "raise SyntaxError('nope')\n")
        result = runner.invoke(cli, ["run"])
        assert result.exit_code == 2
        assert "Failed to load workflow" in result.output


def test_cache_prune(tmp_path):
    backend = LocalCacheBackend(tmp_path / "cache")
    for key in ("a", "b", "c"):
        backend.store(key, b"x")
    result = CliRunner().invoke(cli, ["cache-prune", "--cache-dir", str(tmp_path / "cache"), "--keep", "1"])
    assert result.exit_code == 0
    assert "Removed 2 cache entries" in result.output
