# src/matrixci/dsl.py
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from .executor import SHELLS
from .model import (
    PULL_REQUEST,
    PUSH,
    Include,
    JobSpec,
    MatrixSpec,
    PipelineSpec,
    StepSpec,
    TriggerRule,
    frozen_map,
)


def _strs(data: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in (data or {}).items()}


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    shell: str | None = None,
    env: Optional[Dict[str, str]] = None,
    timeout_minutes: float | None = None,
) -> StepSpec:
    """Create a shell step. Multi-line commands run as one script."""
    if shell is not None and shell not in SHELLS:
        raise ValueError(f"Unknown shell {shell!r} for step {name!r} (known: {', '.join(SHELLS)})")
    return StepSpec(
        name=name,
        run=cmd,
        cwd=cwd,
        shell=shell,
        env=frozen_map(_strs(env)),
        timeout_minutes=timeout_minutes,
    )


def uses(action: str, name: str | None = None, **inputs: Any) -> StepSpec:
    """Create a step that runs a reusable action, e.g. uses("actions/checkout@v2")."""
    return StepSpec(name=name or f"Run {action}", uses=action, with_=frozen_map(_strs(inputs)))


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

class Matrix:
    """
    Matrix builder.

    Example:
        matrix(build=["linux", "macos"]).include(build="linux", os="ubuntu-latest")
    """

    def __init__(self, axes: Dict[str, Iterable[Any]]):
        self.axes = [(str(k), tuple(str(v) for v in values)) for k, values in axes.items()]
        self._include: List[Include] = []
        self._fail_fast = False

    def include(self, **values: Any) -> "Matrix":
        names = {name for name, _ in self.axes}
        match = {k: str(v) for k, v in values.items() if k in names}
        extras = {k: str(v) for k, v in values.items() if k not in names}
        self._include.append(Include(match=frozen_map(match), extras=frozen_map(extras)))
        return self

    def fail_fast(self, enabled: bool = True) -> "Matrix":
        self._fail_fast = enabled
        return self

    def build(self) -> MatrixSpec:
        return MatrixSpec(axes=tuple(self.axes), include=tuple(self._include), fail_fast=self._fail_fast)


def matrix(**axes: Iterable[Any]) -> Matrix:
    return Matrix(axes)


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    id: str,
    *steps: StepSpec,  # allow: job("x", sh(...), sh(...))
    name: Optional[str] = None,
    runs_on: str = "local",
    matrix: Matrix | MatrixSpec | None = None,
    timeout_minutes: float | None = None,
    env: Optional[Dict[str, str]] = None,
) -> JobSpec:
    if not steps:
        raise ValueError(f"job({id!r}) must have at least one step")
    if isinstance(matrix, Matrix):
        matrix = matrix.build()
    return JobSpec(
        id=id,
        name=name or id,
        runs_on=runs_on,
        matrix=matrix,
        steps=tuple(steps),
        timeout_minutes=timeout_minutes,
        env=frozen_map(_strs(env)),
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, id: str):
        self.id = id
        self._name: Optional[str] = None
        self._runs_on = "local"
        self._steps: List[StepSpec] = []
        self._matrix: Optional[Matrix] = None
        self._timeout: Optional[float] = None
        self._env: Dict[str, str] = {}

    def named(self, name: str):
        self._name = name
        return self

    def runs_on(self, label: str):
        self._runs_on = label
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, timeout_minutes: float | None = None):
        self._steps.append(sh(name, run, cwd=cwd, timeout_minutes=timeout_minutes))
        return self

    def uses(self, action: str, name: str | None = None, **inputs: Any):
        self._steps.append(uses(action, name, **inputs))
        return self

    def with_matrix(self, m: Matrix):
        self._matrix = m
        return self

    def with_env(self, **env):
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def timeout(self, minutes: float):
        self._timeout = minutes
        return self

    def build(self) -> JobSpec:
        if not self._steps:
            raise ValueError(f"Job '{self.id}' has no steps")
        return job(
            self.id,
            *self._steps,
            name=self._name,
            runs_on=self._runs_on,
            matrix=self._matrix,
            timeout_minutes=self._timeout,
            env=self._env,
        )


def build(id: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(id)


# ---------------------------------------------------------------------
# Triggers + workflow helper
# ---------------------------------------------------------------------

def on_push(*branches: str) -> TriggerRule:
    return TriggerRule(kind=PUSH, branches=frozenset(branches))


def on_pull_request(*branches: str) -> TriggerRule:
    return TriggerRule(kind=PULL_REQUEST, branches=frozenset(branches) if branches else None)


def wf(
    name: str,
    *jobs: JobSpec,
    on: Iterable[TriggerRule],
    env: Optional[Dict[str, str]] = None,
) -> PipelineSpec:
    """
    Workflow definition helper.

    Users can write:
        from matrixci import wf, job, sh, on_push

        def workflow():
            return wf(
                "ci",
                job("test", sh("Run tests", "pytest -q")),
                on=[on_push("master")],
            )
    """
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise ValueError(f"Duplicate job ids found: {dupes}")
    return PipelineSpec(
        name=name,
        triggers=tuple(on),
        jobs=frozen_map({j.id: j for j in jobs}),
        env=frozen_map(_strs(env)),
    )
