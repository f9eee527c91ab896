# scheduler.py
from __future__ import annotations

import re
import shutil
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from .errors import InfrastructureError
from .executor import CancelToken, StepExecutor, minutes_to_seconds
from .model import CANCELLED, FAILED, JobInstance, JobResult
from .platforms import PlatformResolver
from .ui.console import Console, get_console

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def workspace_slug(instance_id: str) -> str:
    """'test (linux, x64)' -> 'test-linux-x64'"""
    return _UNSAFE.sub("-", instance_id).strip("-") or "job"


class JobScheduler:
    """
    Runs expanded job instances concurrently, one pool thread per instance.

    - each instance gets its own CancelToken (job-level timeout) and workspace
    - a failure never touches sibling instances unless fail-fast is requested,
      either for the whole run or for the instances of one matrix job
    - every instance ends with exactly one terminal status
    """

    def __init__(
        self,
        executor: StepExecutor,
        *,
        work_dir: str | Path,
        platforms: Optional[PlatformResolver] = None,
        max_workers: Optional[int] = None,
        keep_workspaces: bool = False,
        console: Optional[Console] = None,
    ):
        self.executor = executor
        self.work_dir = Path(work_dir).resolve()
        self.platforms = platforms or PlatformResolver()
        self.max_workers = max_workers
        self.keep_workspaces = keep_workspaces
        self.console = console or get_console()

    # ------------------------------------------------------------------
    # One execution unit
    # ------------------------------------------------------------------

    def _provision(self, instance: JobInstance) -> Path:
        workspace = self.work_dir / workspace_slug(instance.id)
        try:
            workspace.mkdir(parents=True, exist_ok=False)
        except OSError as e:
            raise InfrastructureError(
                "could not create job workspace",
                {"job": instance.id, "workspace": str(workspace), "error": str(e)},
            ) from e
        return workspace

    def _run_instance(self, instance: JobInstance, token: CancelToken) -> JobResult:
        result = instance.result

        if token.cancel_requested:
            # cancelled while waiting for a worker
            result.status = CANCELLED
            result.reason = "cancelled"
            return result

        token.arm()
        self.console.print_job_start(instance)

        try:
            self.platforms.resolve(instance.id, instance.runs_on)
            workspace = self._provision(instance)
        except InfrastructureError as e:
            result.status = FAILED
            result.reason = e.kind
            self.console.print_error("Job could not be provisioned", str(e))
            return result

        try:
            self.executor.run(instance, workspace, token)
        finally:
            if not self.keep_workspaces:
                shutil.rmtree(workspace, ignore_errors=True)

        self.console.print_job_result(instance.name, result)
        return result

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def _cancel_siblings(
        self,
        failed: JobInstance,
        instances: Sequence[JobInstance],
        tokens: Dict[str, CancelToken],
        fail_fast: bool,
    ) -> None:
        for other in instances:
            if other.id == failed.id:
                continue
            if fail_fast or (failed.fail_fast_group and other.job_id == failed.job_id):
                tokens[other.id].cancel(CANCELLED)

    def run(self, instances: Sequence[JobInstance], *, fail_fast: bool = False) -> List[JobResult]:
        """
        Run all instances and return their results in the given order.

        With `fail_fast`, the first instance that does not succeed cancels
        every other instance; otherwise all of them run to completion.
        """
        instances = list(instances)
        if not instances:
            return []

        ids = [inst.id for inst in instances]
        if len(set(ids)) != len(ids):
            dupes = sorted({i for i in ids if ids.count(i) > 1})
            raise ValueError(f"Duplicate job instance ids: {dupes}")

        tokens: Dict[str, CancelToken] = {
            inst.id: CancelToken(minutes_to_seconds(inst.timeout_minutes)) for inst in instances
        }
        max_workers = self.max_workers or len(instances)

        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="matrixci-job") as pool:
            in_flight: Dict[Future, JobInstance] = {
                pool.submit(self._run_instance, inst, tokens[inst.id]): inst for inst in instances
            }

            for fut in as_completed(in_flight):
                inst = in_flight[fut]
                try:
                    fut.result()
                except Exception as e:
                    inst.result.status = FAILED
                    inst.result.reason = "error"
                    self.console.print_exception(e)

                if not inst.result.ok:
                    self._cancel_siblings(inst, instances, tokens, fail_fast)

        return [inst.result for inst in instances]
