from __future__ import annotations

import json
import textwrap

import pytest
from click.testing import CliRunner

from matrixci.cli import EXIT_CONFIG, EXIT_FAILED, EXIT_NOT_TRIGGERED, cli

PIPELINE = textwrap.dedent(
    """
    name: demo
    on:
      pull_request:
      push:
        branches: [master]
    jobs:
      test:
        runs-on: local
        strategy:
          matrix:
            n: [1, 2]
        steps:
          - name: Check
            run: test "${{ matrix.n }}" -le "$LIMIT"
        env:
          LIMIT: "2"
    """
)


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _write(path, text):
    path.write_text(text)
    return str(path)


def _run(*args):
    return CliRunner().invoke(cli, list(args), catch_exceptions=False)


def test_run_succeeds(workspace):
    path = _write(workspace / "ci.yaml", PIPELINE)
    result = _run("--quiet", "run", "--pipeline", path, "--branch", "master", "--sha", "abc", "--work-dir", str(workspace / "w"))

    assert result.exit_code == 0, result.output
    assert "test (1)" in result.output
    assert "test (2)" in result.output


def test_run_failure_exit_code(workspace):
    path = _write(workspace / "ci.yaml", PIPELINE.replace('LIMIT: "2"', 'LIMIT: "1"'))
    result = _run("--quiet", "run", "--pipeline", path, "--event", "pull_request", "--sha", "abc", "--work-dir", str(workspace / "w"))

    assert result.exit_code == EXIT_FAILED


def test_run_not_triggered(workspace):
    path = _write(workspace / "ci.yaml", PIPELINE)
    result = _run("run", "--pipeline", path, "--branch", "feature", "--sha", "abc", "--work-dir", str(workspace / "w"))

    assert result.exit_code == EXIT_NOT_TRIGGERED
    assert not (workspace / "w").exists()


def test_run_json_output(workspace):
    path = _write(workspace / "ci.yaml", PIPELINE)
    result = _run("--quiet", "run", "--pipeline", path, "--branch", "master", "--sha", "abc", "--work-dir", str(workspace / "w"), "--json")

    assert result.exit_code == 0
    payload = json.loads(result.output[result.output.index("{\n"):])
    assert payload["status"] == "succeeded"
    assert [j["instance"] for j in payload["jobs"]] == ["test (1)", "test (2)"]


def test_invalid_pipeline_exit_code(workspace):
    path = _write(workspace / "ci.yaml", PIPELINE.replace("n: [1, 2]", "n: []"))
    result = _run("run", "--pipeline", path, "--branch", "master", "--sha", "abc")

    assert result.exit_code == EXIT_CONFIG


def test_missing_pipeline_file(workspace):
    result = _run("run", "--pipeline", "nope.yaml", "--branch", "master", "--sha", "abc")
    assert result.exit_code == EXIT_CONFIG


def test_pipeline_discovered_from_workflows_dir(workspace):
    wf_dir = workspace / ".github" / "workflows"
    wf_dir.mkdir(parents=True)
    _write(wf_dir / "ci.yaml", PIPELINE)

    result = _run("plan", "--branch", "master", "--sha", "abc")
    assert result.exit_code == 0, result.output
    assert "test (1)" in result.output


def test_plan_not_triggered(workspace):
    path = _write(workspace / "ci.yaml", PIPELINE)
    result = _run("plan", "--pipeline", path, "--branch", "dev", "--sha", "abc")
    assert result.exit_code == EXIT_NOT_TRIGGERED
