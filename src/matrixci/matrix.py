# matrix.py
from __future__ import annotations

import itertools
import re
from typing import Dict, List, Mapping, Tuple

from .errors import ConfigurationError
from .executor import SHELLS
from .model import Include, JobInstance, JobSpec, MatrixSpec, PipelineSpec, StepSpec, frozen_map

# ${{ matrix.os }}, ${{matrix.rust}}
MATRIX_EXPR = re.compile(r"\$\{\{\s*matrix\.([A-Za-z0-9_-]+)\s*\}\}")


# ---------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------

def validate_matrix(job_id: str, matrix: MatrixSpec) -> None:
    """
    Every axis needs at least one value, and every include must bind at
    least one declared axis to one of its declared values.
    """
    names = matrix.axis_names
    if not names:
        raise ConfigurationError("matrix declares no axes", {"job": job_id})
    if len(set(names)) != len(names):
        raise ConfigurationError("matrix declares an axis twice", {"job": job_id})
    for name, values in matrix.axes:
        if not values:
            raise ConfigurationError("matrix axis has no values", {"job": job_id, "axis": name})
        if len(set(values)) != len(values):
            raise ConfigurationError("matrix axis repeats a value", {"job": job_id, "axis": name})

    for idx, inc in enumerate(matrix.include):
        if not inc.match:
            raise ConfigurationError(
                "matrix include does not reference any axis",
                {"job": job_id, "include": idx, "axes": ", ".join(names)},
            )
        for axis, value in inc.match.items():
            if axis not in names:
                raise ConfigurationError(
                    "matrix include references an undeclared axis",
                    {"job": job_id, "include": idx, "axis": axis},
                )
            if value not in matrix.values_of(axis):
                raise ConfigurationError(
                    "matrix include references an undeclared axis value",
                    {"job": job_id, "include": idx, "axis": axis, "value": value},
                )


def validate_steps(job: JobSpec) -> None:
    for idx, step in enumerate(job.steps, start=1):
        if step.shell is not None and step.shell not in SHELLS:
            raise ConfigurationError(
                "unknown shell",
                {"job": job.id, "step": str(idx), "shell": step.shell, "known": ", ".join(SHELLS)},
            )


# ---------------------------------------------------------------------
# Expansion (pure)
# ---------------------------------------------------------------------

def combinations(matrix: MatrixSpec) -> List[Mapping[str, str]]:
    """Cartesian product of the axes, first axis outermost."""
    names = matrix.axis_names
    value_lists = [values for _, values in matrix.axes]
    return [frozen_map(zip(names, combo)) for combo in itertools.product(*value_lists)]


def _overlay_applies(inc: Include, combo: Mapping[str, str]) -> bool:
    return all(combo.get(axis) == value for axis, value in inc.match.items())


def apply_includes(base: Mapping[str, str], include: Tuple[Include, ...]) -> Mapping[str, str]:
    """Merge every matching overlay into a new mapping; last overlay wins."""
    merged: Dict[str, str] = dict(base)
    for inc in include:
        if _overlay_applies(inc, base):
            merged.update(inc.extras)
    return frozen_map(merged)


def interpolate(text: str | None, bindings: Mapping[str, str], *, job_id: str) -> str | None:
    if text is None:
        return None

    def _sub(m: re.Match) -> str:
        key = m.group(1)
        if key not in bindings:
            raise ConfigurationError(
                "expression references an unbound matrix key",
                {"job": job_id, "expression": m.group(0), "bound": ", ".join(bindings) or "-"},
            )
        return str(bindings[key])

    return MATRIX_EXPR.sub(_sub, text)


def _interpolate_map(data: Mapping[str, str], bindings: Mapping[str, str], job_id: str) -> Mapping[str, str]:
    return frozen_map({k: interpolate(str(v), bindings, job_id=job_id) for k, v in data.items()})


def _resolve_step(step: StepSpec, bindings: Mapping[str, str], job_id: str) -> StepSpec:
    return StepSpec(
        name=interpolate(step.name, bindings, job_id=job_id),
        run=interpolate(step.run, bindings, job_id=job_id),
        uses=interpolate(step.uses, bindings, job_id=job_id),
        with_=_interpolate_map(step.with_, bindings, job_id),
        shell=step.shell,
        cwd=interpolate(step.cwd, bindings, job_id=job_id),
        env=_interpolate_map(step.env, bindings, job_id),
        timeout_minutes=step.timeout_minutes,
    )


def _display_name(job: JobSpec, bindings: Mapping[str, str]) -> str:
    name = interpolate(job.name, bindings, job_id=job.id)
    if bindings and not MATRIX_EXPR.search(job.name):
        name = f"{name} ({', '.join(str(v) for v in bindings.values())})"
    return name


def _instance(
    job: JobSpec,
    instance_id: str,
    bindings: Mapping[str, str],
    fail_fast: bool,
    base_env: Mapping[str, str],
) -> JobInstance:
    return JobInstance(
        id=instance_id,
        job_id=job.id,
        name=_display_name(job, bindings),
        runs_on=interpolate(job.runs_on, bindings, job_id=job.id),
        steps=tuple(_resolve_step(s, bindings, job.id) for s in job.steps),
        bindings=bindings,
        env=_interpolate_map({**base_env, **job.env}, bindings, job.id),
        timeout_minutes=job.timeout_minutes,
        fail_fast_group=fail_fast,
    )


def expand_job(job: JobSpec, base_env: Mapping[str, str] | None = None) -> List[JobInstance]:
    """
    Expand one job template into concrete instances.

    Same JobSpec in -> same ordered instances out.
    """
    validate_steps(job)
    if job.matrix is None:
        return [_instance(job, job.id, frozen_map(), False, base_env or {})]

    validate_matrix(job.id, job.matrix)

    out: List[JobInstance] = []
    for combo in combinations(job.matrix):
        bindings = apply_includes(combo, job.matrix.include)
        instance_id = f"{job.id} ({', '.join(str(v) for v in combo.values())})"
        out.append(_instance(job, instance_id, bindings, job.matrix.fail_fast, base_env or {}))
    return out


def expand_pipeline(spec: PipelineSpec) -> List[JobInstance]:
    """Expand every job in declaration order; workflow env is layered under job env."""
    instances: List[JobInstance] = []
    for job in spec.jobs.values():
        instances.extend(expand_job(job, spec.env))
    return instances
