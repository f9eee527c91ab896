"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
import threading
from typing import Iterable, Optional

from ..model import SUCCEEDED, JobInstance, JobResult, RunResult, StepLogEntry

OUTCOME_MARKS = {
    "succeeded": "✓",
    "failed": "✗",
    "timed-out": "⏱",
    "cancelled": "⏭",
}


class Console:
    """
    Centralized console output formatting.

    Also the sink for step execution-log entries: jobs run on several
    threads, so every multi-line block is written under one lock.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _emit(self, *lines: str, err: bool = False) -> None:
        stream = sys.stderr if err else sys.stdout
        with self._lock:
            for line in lines:
                print(line, file=stream)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._emit(f"\n{title}", "-" * len(title))

    def print_run_started(
        self,
        pipeline: str,
        event: str,
        job_count: int,
    ) -> None:
        """Print run start information."""
        if self.quiet:
            return
        self._emit(
            "\nRUN STARTED",
            f"Pipeline: {pipeline}",
            f"Event: {event}",
            f"Jobs: {job_count}",
            "",
        )

    def print_not_triggered(self, pipeline: str, event: str) -> None:
        self._emit(f"\nNOT TRIGGERED: {pipeline} does not run on {event}")

    def print_plan(self, instances: Iterable[JobInstance]) -> None:
        """Print the expanded job instances."""
        lines = ["\nPLAN"]
        for inst in instances:
            lines.append(f"  {inst.id} -> {inst.name} [{inst.runs_on}]")
            for k, v in inst.bindings.items():
                lines.append(f"      {k}={v}")
            for idx, step in enumerate(inst.steps, start=1):
                what = f"uses {step.uses}" if step.is_action else "run"
                lines.append(f"      {idx}. {step.name} ({what})")
        self._emit(*lines)

    def print_job_start(self, instance: JobInstance) -> None:
        """Print job start message."""
        if self.quiet:
            return
        self._emit(f"\nJOB STARTED: {instance.name} [{instance.runs_on}]")

    def print_step(self, job: str, ordinal: int, name: str) -> None:
        """Print step start message."""
        if self.quiet:
            return
        self._emit(f"[{job}] STEP {ordinal}: {name}")

    def print_step_result(self, job: str, entry: StepLogEntry, output: str = "") -> None:
        """Report one execution-log entry."""
        if entry.outcome == SUCCEEDED:
            if not self.quiet:
                self._emit(f"[{job}] {OUTCOME_MARKS[entry.outcome]} {entry.step} ({entry.duration:.1f}s)")
            return

        lines = [f"[{job}] STEP {entry.outcome.upper()}: {entry.step} ({entry.duration:.1f}s)"]
        if entry.exit_code is not None:
            lines.append(f"Exit code: {entry.exit_code}")
        if entry.message:
            lines.append(f"Error: {entry.message}")
        if output:
            tail = output if self.debug else "\n".join(output.splitlines()[-20:])
            lines.append(tail)
        self._emit(*lines)

    def print_job_result(self, name: str, result: JobResult) -> None:
        if self.quiet:
            return
        line = f"JOB {result.status.upper()}: {name}"
        if result.reason and not result.ok:
            line += f" ({result.reason})"
        self._emit(line)

    def print_results(self, run: RunResult) -> None:
        """Print final results summary."""
        lines = ["\n" + "=" * 40, "RESULTS", "=" * 40]
        for job in run.jobs:
            mark = OUTCOME_MARKS.get(job.status or "", "?")
            line = f"  {mark} {job.instance}: {(job.status or 'unknown').upper()}"
            if job.failed_step:
                line += f" (step: {job.failed_step})"
            elif job.reason and not job.ok:
                line += f" ({job.reason})"
            lines.append(line)
        lines.append(f"\nPIPELINE: {run.status.upper()}")
        self._emit(*lines)

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {d}" for d in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._emit(*lines, err=True)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exc()
        else:
            self._emit(f"Error: {exc}", err=True)

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._emit(message)

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._emit(f"[DEBUG] {message}", err=True)


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
