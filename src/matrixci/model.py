# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

# Event kinds understood by the trigger evaluator
PULL_REQUEST = "pull_request"
PUSH = "push"
EVENT_KINDS = (PULL_REQUEST, PUSH)

# Terminal statuses of a job instance
SUCCEEDED = "succeeded"
FAILED = "failed"
TIMED_OUT = "timed-out"
CANCELLED = "cancelled"

# Extra overall status of a run
NOT_TRIGGERED = "not-triggered"


def frozen_map(data: Optional[Mapping[str, Any]] = None) -> Mapping[str, Any]:
    """Read-only copy of a mapping."""
    return MappingProxyType(dict(data or {}))


# ---------------------------------------------------------------------
# Declaration (read-only once loaded)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerRule:
    """Starts a run for events of `kind`, optionally restricted to `branches`."""
    kind: str
    branches: Optional[frozenset] = None


@dataclass(frozen=True)
class Include:
    """
    A matrix include overlay.

    `match` binds axis names to values; `extras` is merged into every
    combination that agrees with all of `match`.
    """
    match: Mapping[str, str]
    extras: Mapping[str, str]


@dataclass(frozen=True)
class MatrixSpec:
    axes: Tuple[Tuple[str, Tuple[str, ...]], ...]
    include: Tuple[Include, ...] = ()
    fail_fast: bool = False

    @property
    def axis_names(self) -> Tuple[str, ...]:
        return tuple(name for name, _ in self.axes)

    def values_of(self, axis: str) -> Tuple[str, ...]:
        for name, values in self.axes:
            if name == axis:
                return values
        return ()


@dataclass(frozen=True)
class StepSpec:
    """A single unit of work: a reusable action (`uses`) or a shell script (`run`)."""
    name: str
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Mapping[str, str] = field(default_factory=frozen_map)
    shell: Optional[str] = None
    cwd: Optional[str] = None
    env: Mapping[str, str] = field(default_factory=frozen_map)
    timeout_minutes: Optional[float] = None

    @property
    def is_action(self) -> bool:
        return self.uses is not None


@dataclass(frozen=True)
class JobSpec:
    """A job template: steps, target platform and an optional matrix."""
    id: str
    name: str
    steps: Tuple[StepSpec, ...]
    runs_on: str = "local"
    matrix: Optional[MatrixSpec] = None
    timeout_minutes: Optional[float] = None
    env: Mapping[str, str] = field(default_factory=frozen_map)


@dataclass(frozen=True)
class PipelineSpec:
    name: str
    triggers: Tuple[TriggerRule, ...]
    jobs: Mapping[str, JobSpec]
    env: Mapping[str, str] = field(default_factory=frozen_map)


@dataclass(frozen=True)
class Event:
    """An incoming event: `pull_request` or `push` (with the target branch)."""
    kind: str
    branch: Optional[str] = None
    sha: Optional[str] = None


# ---------------------------------------------------------------------
# Run-time state (one run, never persisted)
# ---------------------------------------------------------------------

@dataclass
class StepLogEntry:
    ordinal: int
    step: str
    started_at: float
    duration: float
    outcome: str
    exit_code: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ordinal": self.ordinal,
            "step": self.step,
            "started_at": self.started_at,
            "duration": round(self.duration, 3),
            "outcome": self.outcome,
            "exit_code": self.exit_code,
            "message": self.message,
        }


@dataclass
class JobResult:
    instance: str
    status: Optional[str] = None
    reason: Optional[str] = None
    failed_step: Optional[str] = None
    log: List[StepLogEntry] = field(default_factory=list)
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "instance": self.instance,
            "status": self.status,
            "reason": self.reason,
            "failed_step": self.failed_step,
            "duration": round(self.duration, 3),
            "log": [e.to_dict() for e in self.log],
        }


@dataclass
class JobInstance:
    """
    One concrete, independently schedulable unit derived from a JobSpec.

    Bindings are read-only; only `result` is mutated, by the scheduler and
    the step executor of this instance.
    """
    id: str
    job_id: str
    name: str
    runs_on: str
    steps: Tuple[StepSpec, ...]
    bindings: Mapping[str, str] = field(default_factory=frozen_map)
    env: Mapping[str, str] = field(default_factory=frozen_map)
    timeout_minutes: Optional[float] = None
    fail_fast_group: bool = False
    result: JobResult = field(init=False)

    def __post_init__(self) -> None:
        self.result = JobResult(instance=self.id)


@dataclass
class RunResult:
    status: str
    jobs: List[JobResult] = field(default_factory=list)
    run_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SUCCEEDED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status,
            "jobs": [j.to_dict() for j in self.jobs],
        }
