# controller.py
from __future__ import annotations

import uuid
from pathlib import Path
from typing import List, Optional

from . import settings
from .actions import ActionRegistry
from .executor import ShellRunner, StepExecutor
from .matrix import expand_pipeline
from .model import FAILED, NOT_TRIGGERED, SUCCEEDED, Event, JobInstance, PipelineSpec, RunResult
from .platforms import PlatformResolver
from .scheduler import JobScheduler
from .triggers import evaluate, validate_event
from .ui.console import Console, get_console


def describe_event(event: Event) -> str:
    return f"{event.kind} ({event.branch})" if event.branch else event.kind


def aggregate(results) -> str:
    """A run succeeds only if every job instance succeeded."""
    return SUCCEEDED if all(r.ok for r in results) else FAILED


class PipelineController:
    """
    Top-level driver: event -> triggers -> matrix expansion -> scheduling -> RunResult.

    Holds configuration only; every call to handle() is an independent run
    with its own run id, instances and work directory.
    """

    def __init__(
        self,
        spec: PipelineSpec,
        *,
        work_dir: str | Path | None = None,
        source: str | Path | None = None,
        platforms: Optional[PlatformResolver] = None,
        actions: Optional[ActionRegistry] = None,
        runner: Optional[ShellRunner] = None,
        max_workers: Optional[int] = None,
        fail_fast: bool = False,
        keep_workspaces: Optional[bool] = None,
        console: Optional[Console] = None,
    ):
        self.spec = spec
        self.work_dir = Path(work_dir or settings.WORK_DIR)
        self.source = Path(source).resolve() if source is not None else None
        self.platforms = platforms or PlatformResolver(settings.PLATFORMS)
        self.actions = actions or ActionRegistry()
        self.runner = runner
        self.max_workers = max_workers or settings.MAX_WORKERS
        self.fail_fast = fail_fast
        self.keep_workspaces = settings.KEEP_WORKSPACES if keep_workspaces is None else keep_workspaces
        self.console = console or get_console()

    def plan(self, event: Event) -> List[JobInstance]:
        """Instances a run for `event` would execute (empty when not triggered)."""
        if not evaluate(self.spec.triggers, validate_event(event)):
            return []
        return expand_pipeline(self.spec)

    def handle(self, event: Event) -> RunResult:
        event = validate_event(event)
        run_id = uuid.uuid4().hex[:12]

        if not evaluate(self.spec.triggers, event):
            self.console.print_not_triggered(self.spec.name, describe_event(event))
            return RunResult(status=NOT_TRIGGERED, run_id=run_id)

        # configuration errors surface here, before anything runs
        instances = expand_pipeline(self.spec)

        self.console.print_run_started(
            pipeline=self.spec.name,
            event=describe_event(event),
            job_count=len(instances),
        )

        executor = StepExecutor(
            actions=self.actions,
            runner=self.runner,
            console=self.console,
            source=self.source,
            ref=event.sha,
        )
        scheduler = JobScheduler(
            executor,
            work_dir=self.work_dir / run_id,
            platforms=self.platforms,
            max_workers=self.max_workers,
            keep_workspaces=self.keep_workspaces,
            console=self.console,
        )
        results = scheduler.run(instances, fail_fast=self.fail_fast)

        run = RunResult(status=aggregate(results), jobs=results, run_id=run_id)
        self.console.print_results(run)
        return run
