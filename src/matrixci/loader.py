# loader.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigurationError
from .executor import SHELLS
from .matrix import validate_matrix, validate_steps
from .model import (
    EVENT_KINDS,
    Include,
    JobSpec,
    MatrixSpec,
    PipelineSpec,
    StepSpec,
    TriggerRule,
    frozen_map,
)
from .ui.console import get_console

# Keys that change job semantics in ways this runner does not implement.
UNSUPPORTED_JOB_KEYS = ("needs", "if", "continue-on-error", "container", "services")
UNSUPPORTED_STEP_KEYS = ("if", "continue-on-error")


def _scalar(value: Any) -> str:
    """YAML scalars as the strings a CI expression would see."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _str_map(value: Any, what: str, **ctx: str) -> Mapping[str, str]:
    if value is None:
        return frozen_map()
    if not isinstance(value, dict):
        raise ConfigurationError(f"{what} must be a mapping", dict(ctx))
    return frozen_map({str(k): _scalar(v) for k, v in value.items()})


def _timeout(value: Any, **ctx: str) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigurationError("timeout-minutes must be a positive number", {**ctx, "value": value})
    return float(value)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def _branches(value: Any, kind: str) -> Optional[frozenset]:
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list) or not all(isinstance(b, (str, int, float)) for b in value):
        raise ConfigurationError("trigger branches must be a list of names", {"event": kind})
    return frozenset(_scalar(b) for b in value)


def parse_triggers(raw: Any) -> tuple:
    if raw is None:
        raise ConfigurationError("pipeline declares no triggers ('on')")

    if isinstance(raw, str):
        raw = {raw: None}
    elif isinstance(raw, list):
        raw = {kind: None for kind in raw}
    elif not isinstance(raw, dict):
        raise ConfigurationError("'on' must be an event name, a list or a mapping")

    rules: List[TriggerRule] = []
    for kind, cfg in raw.items():
        if kind not in EVENT_KINDS:
            get_console().print_debug(f"ignoring trigger for unsupported event {kind!r}")
            continue
        if cfg is not None and not isinstance(cfg, dict):
            raise ConfigurationError("trigger configuration must be a mapping", {"event": kind})
        cfg = cfg or {}
        rules.append(TriggerRule(kind=kind, branches=_branches(cfg.get("branches"), kind)))

    if not rules:
        raise ConfigurationError(
            "pipeline declares no supported trigger",
            {"supported": "|".join(EVENT_KINDS)},
        )
    return tuple(rules)


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

def parse_matrix(job_id: str, strategy: Any) -> Optional[MatrixSpec]:
    if strategy is None:
        return None
    if not isinstance(strategy, dict):
        raise ConfigurationError("strategy must be a mapping", {"job": job_id})

    raw = strategy.get("matrix")
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigurationError("strategy.matrix must be a mapping", {"job": job_id})
    if "exclude" in raw:
        raise ConfigurationError("matrix exclude is not supported", {"job": job_id})

    axes = []
    for name, values in raw.items():
        if name == "include":
            continue
        if not isinstance(values, list):
            raise ConfigurationError("matrix axis must be a list", {"job": job_id, "axis": name})
        axes.append((str(name), tuple(_scalar(v) for v in values)))
    axis_names = {name for name, _ in axes}

    include = []
    for idx, entry in enumerate(raw.get("include") or []):
        if not isinstance(entry, dict):
            raise ConfigurationError("matrix include must be a mapping", {"job": job_id, "include": idx})
        match = {str(k): _scalar(v) for k, v in entry.items() if str(k) in axis_names}
        extras = {str(k): _scalar(v) for k, v in entry.items() if str(k) not in axis_names}
        include.append(Include(match=frozen_map(match), extras=frozen_map(extras)))

    fail_fast = strategy.get("fail-fast", False)
    if not isinstance(fail_fast, bool):
        raise ConfigurationError("strategy.fail-fast must be true or false", {"job": job_id})

    matrix = MatrixSpec(axes=tuple(axes), include=tuple(include), fail_fast=fail_fast)
    validate_matrix(job_id, matrix)
    return matrix


def parse_step(job_id: str, idx: int, raw: Any) -> StepSpec:
    ctx = {"job": job_id, "step": str(idx + 1)}
    if not isinstance(raw, dict):
        raise ConfigurationError("step must be a mapping", ctx)
    for key in UNSUPPORTED_STEP_KEYS:
        if key in raw:
            raise ConfigurationError(f"step key '{key}' is not supported", ctx)

    uses, run = raw.get("uses"), raw.get("run")
    if (uses is None) == (run is None):
        raise ConfigurationError("step needs exactly one of 'uses' or 'run'", ctx)

    shell = raw.get("shell")
    if shell is not None and shell not in SHELLS:
        raise ConfigurationError("unknown shell", {**ctx, "shell": shell, "known": ", ".join(SHELLS)})

    if uses is not None:
        default_name = f"Run {uses}"
    else:
        run = _scalar(run)
        first = run.strip().splitlines()[0] if run.strip() else ""
        default_name = f"Run {first}"

    return StepSpec(
        name=_scalar(raw.get("name") or default_name),
        run=run,
        uses=_scalar(uses) if uses is not None else None,
        with_=_str_map(raw.get("with"), "step 'with'", **ctx),
        shell=shell,
        cwd=raw.get("working-directory"),
        env=_str_map(raw.get("env"), "step env", **ctx),
        timeout_minutes=_timeout(raw.get("timeout-minutes"), **ctx),
    )


def parse_job(job_id: str, raw: Any) -> JobSpec:
    if not isinstance(raw, dict):
        raise ConfigurationError("job must be a mapping", {"job": job_id})
    for key in UNSUPPORTED_JOB_KEYS:
        if key in raw:
            raise ConfigurationError(f"job key '{key}' is not supported", {"job": job_id})

    runs_on = raw.get("runs-on")
    if isinstance(runs_on, list) and len(runs_on) == 1:
        runs_on = runs_on[0]
    if not isinstance(runs_on, str) or not runs_on.strip():
        raise ConfigurationError("job needs a single 'runs-on' label", {"job": job_id})

    steps_raw = raw.get("steps")
    if not isinstance(steps_raw, list) or not steps_raw:
        raise ConfigurationError("job must have at least one step", {"job": job_id})

    return JobSpec(
        id=job_id,
        name=_scalar(raw.get("name") or job_id),
        runs_on=runs_on.strip(),
        matrix=parse_matrix(job_id, raw.get("strategy")),
        steps=tuple(parse_step(job_id, i, s) for i, s in enumerate(steps_raw)),
        timeout_minutes=_timeout(raw.get("timeout-minutes"), job=job_id),
        env=_str_map(raw.get("env"), "job env", job=job_id),
    )


def parse_pipeline(raw: Any, *, default_name: str = "pipeline") -> PipelineSpec:
    """Build a PipelineSpec from an already-decoded declaration."""
    if not isinstance(raw, dict):
        raise ConfigurationError("pipeline declaration must be a mapping")

    # YAML 1.1 reads a bare `on:` key as the boolean True
    triggers_raw = raw["on"] if "on" in raw else raw.get(True)

    jobs_raw = raw.get("jobs")
    if not isinstance(jobs_raw, dict) or not jobs_raw:
        raise ConfigurationError("pipeline declares no jobs")

    jobs: Dict[str, JobSpec] = {}
    for job_id, job_raw in jobs_raw.items():
        jobs[str(job_id)] = parse_job(str(job_id), job_raw)

    return PipelineSpec(
        name=_scalar(raw.get("name") or default_name),
        triggers=parse_triggers(triggers_raw),
        jobs=frozen_map(jobs),
        env=_str_map(raw.get("env"), "pipeline env"),
    )


# ---------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------

def load_yaml(path: Path) -> PipelineSpec:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError("pipeline file is not valid YAML", {"file": str(path), "error": str(e)}) from e
    return parse_pipeline(raw, default_name=path.stem)


def validate_pipeline(spec: PipelineSpec) -> PipelineSpec:
    """Checks for pipelines built in Python, mirroring what parse_pipeline enforces."""
    if not spec.triggers:
        raise ConfigurationError("pipeline declares no triggers", {"pipeline": spec.name})
    for rule in spec.triggers:
        if rule.kind not in EVENT_KINDS:
            raise ConfigurationError("unknown trigger event", {"pipeline": spec.name, "event": rule.kind})
    if not spec.jobs:
        raise ConfigurationError("pipeline declares no jobs", {"pipeline": spec.name})
    for job in spec.jobs.values():
        if not job.steps:
            raise ConfigurationError("job must have at least one step", {"job": job.id})
        validate_steps(job)
        if job.matrix is not None:
            validate_matrix(job.id, job.matrix)
    return spec


def load_python(path: Path) -> PipelineSpec:
    """
    Load a pipeline from a python file.

    The file must define either:
      - workflow() -> PipelineSpec
      - PIPELINE = PipelineSpec(...)
    """
    module_name = f"matrixci_workflow_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    spec = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        spec = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        spec = globals_dict["PIPELINE"]

    if not isinstance(spec, PipelineSpec):
        raise ConfigurationError(
            "workflow file must define workflow() -> PipelineSpec or PIPELINE",
            {"file": str(path)},
        )
    return validate_pipeline(spec)


def load_pipeline(path: str | Path) -> PipelineSpec:
    """Load a pipeline declaration from a .yml/.yaml or .py file."""
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")
    if p.suffix in (".yml", ".yaml"):
        return load_yaml(p)
    if p.suffix == ".py":
        return load_python(p)
    raise ConfigurationError("pipeline must be a .yml, .yaml or .py file", {"file": p.name})
