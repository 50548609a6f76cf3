# pipewright_workflow.py
# Workflow for pipewright itself: lint, a test matrix, a cached install and a status gate
from __future__ import annotations

from pipewright import ALWAYS, all_succeeded, cache, job, matrix, pipeline, sh


def workflow():
    return pipeline(
        # Lint job - runs ruff on the codebase
        job(
            "lint",
            sh("Ruff check", "ruff check src tests"),
            paths=["src/**", "tests/**", "pyproject.toml"],
            timeout=10 * 60,
        ),

        # Test job - one instance per python version, siblings keep going on failure
        job(
            "test",
            sh("Install package", "python${{ matrix.python }} -m pip install -e '.[test]'"),
            sh("Run pytest", "python${{ matrix.python }} -m pytest -q"),
            needs=["lint"],
            matrix=matrix(python=["3.11", "3.12"], fail_fast=False),
            cache=cache(
                "${{ runner.os }}-pip-${{ matrix.python }}-${{ hashFiles('pyproject.toml') }}",
                "${{ runner.os }}-pip-${{ matrix.python }}-",
                paths=[".pytest_cache"],
            ),
            timeout=30 * 60,
        ),

        # Type check is advisory only
        job(
            "type-check",
            sh("Type check", "python -m mypy src/pipewright --ignore-missing-imports"),
            needs=["lint"],
            continue_on_error=True,
        ),

        # Gate - always runs, passes only if lint and every test instance succeeded
        job(
            "status-check",
            sh("Summarize", "echo 'lint=${{ needs.lint.result }} test=${{ needs.test.result }}'"),
            needs=["lint", "test"],
            if_=ALWAYS,
            gate=all_succeeded("lint", "test"),
        ),
        name="pipewright-ci",
        on={"push": ["main"], "pull_request": None},
    )
