# actions.py
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from .errors import StepFailure
from .git_facts.git import clone_into, is_repo
from .model import StepSpec

# never copied into a job workspace
WORKSPACE_EXCLUDES = (".git", ".matrixci", "__pycache__")


@dataclass
class ActionContext:
    """Everything a reusable action may look at while it runs for one step."""
    job: str
    step: StepSpec
    workspace: Path
    inputs: Mapping[str, str]
    env: Mapping[str, str]
    source: Optional[Path] = None
    ref: Optional[str] = None


ActionFn = Callable[[ActionContext], None]


def split_reference(uses: str) -> tuple[str, Optional[str]]:
    """'actions/checkout@v2' -> ('actions/checkout', 'v2')"""
    name, _, version = uses.partition("@")
    return name.strip(), (version.strip() or None)


# ---------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------

def checkout(ctx: ActionContext) -> None:
    """
    Populate the job workspace with the source tree.

    A git source is cloned (at the event's ref when known); a plain
    directory is copied. Without a source there is nothing to check out.
    """
    if ctx.source is None:
        return

    source = ctx.source
    if not source.exists():
        raise StepFailure(job=ctx.job, step=ctx.step.name, exit_code=1, message=f"checkout source not found: {source}")

    ref = ctx.inputs.get("ref") or ctx.ref
    if is_repo(source):
        try:
            clone_into(source, ctx.workspace, ref)
        except subprocess.CalledProcessError as e:
            raise StepFailure(
                job=ctx.job,
                step=ctx.step.name,
                exit_code=e.returncode,
                message=(e.stderr or "").strip() or "git clone failed",
            )
        except FileNotFoundError:
            raise StepFailure(job=ctx.job, step=ctx.step.name, exit_code=127, message="git command not found")
        return

    try:
        shutil.copytree(
            source,
            ctx.workspace,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns(*WORKSPACE_EXCLUDES),
        )
    except (OSError, shutil.Error) as e:
        raise StepFailure(job=ctx.job, step=ctx.step.name, exit_code=1, message=f"copy failed: {e}")


BUILTIN_ACTIONS: Dict[str, ActionFn] = {
    "actions/checkout": checkout,
}


@dataclass
class ActionRegistry:
    """
    Resolves `uses:` references to callables.

    Versions are accepted but not distinguished; an action signals failure
    by raising StepFailure.
    """
    actions: Dict[str, ActionFn] = field(default_factory=lambda: dict(BUILTIN_ACTIONS))

    def register(self, name: str, fn: ActionFn) -> None:
        self.actions[name] = fn

    def resolve(self, job: str, step: StepSpec) -> ActionFn:
        name, _version = split_reference(step.uses or "")
        fn = self.actions.get(name)
        if fn is None:
            raise StepFailure(job=job, step=step.name, exit_code=None, message=f"unresolved action: {step.uses}")
        return fn
