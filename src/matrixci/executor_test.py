from __future__ import annotations

import subprocess
import time

import pytest

from matrixci.actions import ActionRegistry
from matrixci.dsl import job, sh, uses
from matrixci.errors import StepFailure
from matrixci.executor import CancelToken, ShellRunner, StepExecutor, shell_command
from matrixci.matrix import expand_job
from matrixci.ui.console import Console


def _instance(*steps, **kw):
    return expand_job(job("j", *steps, **kw))[0]


@pytest.fixture
def executor():
    return StepExecutor(runner=ShellRunner(poll_interval=0.02), console=Console(quiet=True))


def test_steps_run_in_order(executor, tmp_path):
    inst = _instance(
        sh("one", "echo 1 >> order.txt"),
        sh("two", "echo 2 >> order.txt"),
        sh("three", "echo 3 >> order.txt"),
    )
    result = executor.run(inst, tmp_path, CancelToken())

    assert result.status == "succeeded"
    assert (tmp_path / "order.txt").read_text().split() == ["1", "2", "3"]
    assert [e.ordinal for e in result.log] == [1, 2, 3]
    assert all(e.outcome == "succeeded" for e in result.log)


def test_fail_fast_stops_at_first_failure(executor, tmp_path):
    inst = _instance(
        sh("A", "true"),
        sh("B", "exit 3"),
        sh("C", "touch c-ran"),
    )
    result = executor.run(inst, tmp_path, CancelToken())

    assert result.status == "failed"
    assert result.reason == "step_failure"
    assert result.failed_step == "B"
    assert [e.step for e in result.log] == ["A", "B"]
    assert result.log[1].exit_code == 3
    assert not (tmp_path / "c-ran").exists()


def test_multiline_body_fails_as_a_unit(executor, tmp_path):
    inst = _instance(sh("Build", "true\nfalse\ntouch after"))
    result = executor.run(inst, tmp_path, CancelToken())

    assert result.status == "failed"
    assert result.failed_step == "Build"
    assert not (tmp_path / "after").exists()


def test_step_timeout_halts_job(executor, tmp_path):
    inst = _instance(
        sh("slow", "sleep 5", timeout_minutes=0.01),
        sh("next", "touch next-ran"),
    )
    started = time.monotonic()
    result = executor.run(inst, tmp_path, CancelToken())

    assert time.monotonic() - started < 4
    assert result.status == "timed-out"
    assert result.reason == "step_timeout"
    assert result.failed_step == "slow"
    assert [e.outcome for e in result.log] == ["timed-out"]
    assert not (tmp_path / "next-ran").exists()


def test_job_deadline_aborts_running_step(executor, tmp_path):
    inst = _instance(sh("slow", "sleep 5"), sh("next", "true"))
    token = CancelToken(timeout=0.3)
    token.arm()
    result = executor.run(inst, tmp_path, token)

    assert result.status == "timed-out"
    assert result.reason == "job_timeout"
    assert len(result.log) == 1


def test_cancelled_token_runs_nothing(executor, tmp_path):
    token = CancelToken()
    token.cancel()
    result = executor.run(_instance(sh("a", "touch a")), tmp_path, token)

    assert result.status == "cancelled"
    assert result.log == []
    assert not (tmp_path / "a").exists()


def test_env_layers_reach_the_command(executor, tmp_path):
    inst = _instance(
        sh("check", 'test "$JOB_VAR" = job && test "$STEP_VAR" = step && test "$CI" = true', env={"STEP_VAR": "step"}),
        env={"JOB_VAR": "job"},
    )
    assert executor.run(inst, tmp_path, CancelToken()).ok


def test_missing_working_directory_fails_step(executor, tmp_path):
    result = executor.run(_instance(sh("x", "true", cwd="nope")), tmp_path, CancelToken())
    assert result.status == "failed"
    assert "working directory" in result.log[0].message


def test_unknown_action_fails_step(executor, tmp_path):
    result = executor.run(_instance(uses("someone/unknown@v1")), tmp_path, CancelToken())
    assert result.status == "failed"
    assert "unresolved action" in result.log[0].message


def test_custom_action_failure(tmp_path):
    def broken(ctx):
        raise StepFailure(job=ctx.job, step=ctx.step.name, exit_code=2, message="nope")

    actions = ActionRegistry()
    actions.register("acme/broken", broken)
    ex = StepExecutor(actions=actions, console=Console(quiet=True))

    result = ex.run(_instance(uses("acme/broken@v1", name="Broken")), tmp_path, CancelToken())
    assert result.failed_step == "Broken"
    assert result.log[0].exit_code == 2


def test_checkout_copies_plain_source_tree(tmp_path):
    source = tmp_path / "src"
    source.mkdir()
    (source / "Cargo.toml").write_text("[package]\n")
    workspace = tmp_path / "ws"
    workspace.mkdir()

    ex = StepExecutor(console=Console(quiet=True), source=source)
    inst = _instance(uses("actions/checkout@v2"), sh("ls", "test -f Cargo.toml"))
    assert ex.run(inst, workspace, CancelToken()).ok


def test_shell_command_wraps_body_once():
    argv = shell_command("a\nb", "bash")
    assert argv[:2] == ["bash", "--noprofile"]
    assert argv[-1] == "a\nb"
    assert shell_command("x", "pwsh")[-1].startswith("$ErrorActionPreference")


def test_cancel_token_deadline():
    now = [100.0]
    token = CancelToken(timeout=10, clock=lambda: now[0])
    now[0] = 500.0
    # not armed yet: waiting does not count against the deadline
    assert not token.cancelled
    token.arm()
    assert not token.cancelled
    now[0] = 511.0
    assert token.cancelled
    assert token.reason == "timed-out"
    token.cancel()
    assert token.reason == "timed-out"


def test_runner_closes_output_pipe(tmp_path, monkeypatch):
    real_popen = subprocess.Popen
    started = []

    def recording_popen(*args, **kwargs):
        proc = real_popen(*args, **kwargs)
        started.append(proc)
        return proc

    monkeypatch.setattr(subprocess, "Popen", recording_popen)
    res = ShellRunner(poll_interval=0.02).run(
        ["sh", "-c", "echo hello"],
        cwd=tmp_path,
        env={"PATH": "/usr/bin:/bin"},
        step_timeout=None,
        token=CancelToken(),
        job="j",
        step="s",
    )

    assert res.exit_code == 0
    assert res.output == "hello\n"
    assert started[0].stdout.closed
