# executor.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from . import settings
from .actions import ActionContext, ActionRegistry
from .errors import StepFailure, TimeoutExceeded
from .model import (
    CANCELLED,
    FAILED,
    SUCCEEDED,
    TIMED_OUT,
    JobInstance,
    JobResult,
    StepLogEntry,
    StepSpec,
)
from .ui.console import Console, get_console

# kept from a step's combined stdout/stderr for failure reports
OUTPUT_TAIL_LINES = 200

# Every shell runs the whole body as one unit and stops at the first failing line.
SHELLS: Dict[str, List[str]] = {
    "bash": ["bash", "--noprofile", "--norc", "-eo", "pipefail", "-c"],
    "sh": ["sh", "-e", "-c"],
    "pwsh": ["pwsh", "-NoProfile", "-NonInteractive", "-Command"],
    "powershell": ["powershell", "-NoProfile", "-NonInteractive", "-Command"],
    "python": [sys.executable, "-c"],
}
POWERSHELL_PREAMBLE = "$ErrorActionPreference = 'stop'\n"


def minutes_to_seconds(minutes: Optional[float]) -> Optional[float]:
    return None if minutes is None else float(minutes) * 60.0


def default_shell() -> str:
    if sys.platform == "win32":
        return "pwsh" if shutil.which("pwsh") else "powershell"
    return "bash" if shutil.which("bash") else "sh"


def shell_command(script: str, shell: Optional[str]) -> List[str]:
    name = shell or default_shell()
    argv = list(SHELLS[name])
    if name in ("pwsh", "powershell"):
        script = POWERSHELL_PREAMBLE + script
    return argv + [script]


# ---------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------

class CancelToken:
    """
    Cooperative cancellation signal for one job instance.

    Fires either when the job-level deadline passes (reason: timed-out) or
    when the scheduler cancels it explicitly (reason: cancelled). The
    deadline only runs once arm() is called, when the instance starts.
    """

    def __init__(self, timeout: Optional[float] = None, *, clock=time.monotonic):
        self._clock = clock
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: Optional[str] = None
        self.timeout = timeout
        self.deadline: Optional[float] = None

    def arm(self) -> None:
        """(Re)start the job-level deadline from now."""
        self.deadline = None if self.timeout is None else self._clock() + self.timeout

    @property
    def cancel_requested(self) -> bool:
        """True once cancel() was called; ignores the deadline."""
        return self._event.is_set()

    def cancel(self, reason: str = CANCELLED) -> None:
        with self._lock:
            if not self._event.is_set():
                self._reason = reason
                self._event.set()

    @property
    def cancelled(self) -> bool:
        if not self._event.is_set() and self.deadline is not None and self._clock() >= self.deadline:
            self.cancel(TIMED_OUT)
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason


class _Aborted(Exception):
    """The job token fired while a step was in flight."""


# ---------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------

@dataclass
class CommandResult:
    exit_code: int
    output: str


class ShellRunner:
    """
    Runs one step body as a single process.

    The process is polled every `poll_interval` seconds; when the step
    deadline passes or the job token fires, the whole process is terminated.
    """

    def __init__(self, poll_interval: Optional[float] = None):
        self.poll_interval = settings.POLL_INTERVAL if poll_interval is None else poll_interval

    def run(
        self,
        argv: List[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        step_timeout: Optional[float],
        token: CancelToken,
        job: str,
        step: str,
    ) -> CommandResult:
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(cwd),
                env=dict(env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                start_new_session=(os.name == "posix"),
            )
        except FileNotFoundError:
            raise StepFailure(job=job, step=step, exit_code=127, message=f"shell not found: {argv[0]}")

        tail: deque = deque(maxlen=OUTPUT_TAIL_LINES)
        reader = threading.Thread(target=lambda: tail.extend(proc.stdout), daemon=True)
        reader.start()

        started = time.monotonic()
        try:
            while True:
                try:
                    code = proc.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if step_timeout is not None and time.monotonic() - started >= step_timeout:
                    self._terminate(proc)
                    raise TimeoutExceeded(job=job, step=step, minutes=step_timeout / 60.0)
                if token.cancelled:
                    self._terminate(proc)
                    raise _Aborted()
        finally:
            reader.join(timeout=1.0)
            # a detached grandchild may still hold the pipe; never close under a live reader
            if not reader.is_alive():
                proc.stdout.close()

        return CommandResult(exit_code=code, output="".join(tail))

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        # the shell runs in its own session on POSIX; signal the whole group
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except ProcessLookupError:
            pass

    @classmethod
    def _terminate(cls, proc: subprocess.Popen) -> None:
        cls._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            cls._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
            proc.wait()


# ---------------------------------------------------------------------
# Step executor
# ---------------------------------------------------------------------

class StepExecutor:
    """
    Runs the ordered steps of one job instance.

    - strictly sequential, fail-fast
    - per-step timeout -> step and job "timed-out"
    - job token observed between steps and while a command runs
    - one StepLogEntry per executed step, reported to the console
    """

    def __init__(
        self,
        *,
        actions: Optional[ActionRegistry] = None,
        runner: Optional[ShellRunner] = None,
        console: Optional[Console] = None,
        source: Optional[Path] = None,
        ref: Optional[str] = None,
    ):
        self.actions = actions or ActionRegistry()
        self.runner = runner or ShellRunner()
        self.console = console or get_console()
        self.source = source
        self.ref = ref

    def run(self, instance: JobInstance, workspace: Path, token: CancelToken) -> JobResult:
        result = instance.result
        started = time.monotonic()

        for ordinal, step in enumerate(instance.steps, start=1):
            if token.cancelled:
                self._halt(result, token.reason or CANCELLED, None, by_job=True)
                break

            entry, by_job = self._run_step(instance, ordinal, step, workspace, token)
            result.log.append(entry)

            if entry.outcome != SUCCEEDED:
                self._halt(result, entry.outcome, step.name, by_job=by_job)
                break
        else:
            result.status = SUCCEEDED

        result.duration = time.monotonic() - started
        return result

    @staticmethod
    def _halt(result: JobResult, status: str, step: Optional[str], *, by_job: bool) -> None:
        result.status = status
        result.failed_step = step
        if by_job:
            result.reason = "job_timeout" if status == TIMED_OUT else "cancelled"
        else:
            result.reason = "step_timeout" if status == TIMED_OUT else "step_failure"

    def _run_step(
        self,
        instance: JobInstance,
        ordinal: int,
        step: StepSpec,
        workspace: Path,
        token: CancelToken,
    ) -> Tuple[StepLogEntry, bool]:
        """Returns the log entry and whether the job token (not the step) ended it."""
        self.console.print_step(instance.id, ordinal, step.name)
        wall_start = time.time()
        started = time.monotonic()
        output = ""
        exit_code: Optional[int] = 0
        message: Optional[str] = None
        by_job = False

        try:
            output = self._execute(instance, step, workspace, token)
            outcome = SUCCEEDED
        except StepFailure as e:
            outcome, exit_code, message, output = FAILED, e.exit_code, e.message or None, e.output
        except TimeoutExceeded as e:
            outcome, exit_code, message = TIMED_OUT, None, str(e)
        except _Aborted:
            outcome, exit_code, by_job = token.reason or CANCELLED, None, True

        entry = StepLogEntry(
            ordinal=ordinal,
            step=step.name,
            started_at=wall_start,
            duration=time.monotonic() - started,
            outcome=outcome,
            exit_code=exit_code,
            message=message,
        )
        self.console.print_step_result(instance.id, entry, output)
        return entry, by_job

    def _step_env(self, instance: JobInstance, step: StepSpec, workspace: Path) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(instance.env)
        env.update(step.env)
        env["CI"] = "true"
        env["MATRIXCI_JOB"] = instance.job_id
        env["MATRIXCI_WORKSPACE"] = str(workspace)
        return env

    def _execute(self, instance: JobInstance, step: StepSpec, workspace: Path, token: CancelToken) -> str:
        cwd = (workspace / (step.cwd or ".")).resolve()
        env = self._step_env(instance, step, workspace)

        if step.is_action:
            fn = self.actions.resolve(instance.id, step)
            fn(ActionContext(
                job=instance.id,
                step=step,
                workspace=workspace,
                inputs=step.with_,
                env=env,
                source=self.source,
                ref=self.ref,
            ))
            return ""

        if not cwd.is_dir():
            raise StepFailure(job=instance.id, step=step.name, exit_code=None, message=f"working directory not found: {cwd}")

        res = self.runner.run(
            shell_command(step.run or "", step.shell),
            cwd=cwd,
            env=env,
            step_timeout=minutes_to_seconds(step.timeout_minutes),
            token=token,
            job=instance.id,
            step=step.name,
        )
        if res.exit_code != 0:
            raise StepFailure(job=instance.id, step=step.name, exit_code=res.exit_code, output=res.output)
        return res.output
