# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import click

from matrixci import settings
from matrixci.controller import PipelineController, describe_event
from matrixci.errors import ConfigurationError
from matrixci.git_facts.git import current_branch, head_sha
from matrixci.loader import load_pipeline
from matrixci.model import EVENT_KINDS, NOT_TRIGGERED, PUSH, Event
from matrixci.platforms import PlatformResolver
from matrixci.ui.console import Console, get_console, set_console

EXIT_FAILED = 1
EXIT_CONFIG = 2
# EX_CONFIG from sysexits.h; "nothing to do" is neither success nor failure
EXIT_NOT_TRIGGERED = 78


def find_pipeline_files() -> list[Path]:
    """
    Find candidate pipeline files under the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    current_dir = Path(".")
    found = []
    for pattern in (".github/workflows/*.yml", ".github/workflows/*.yaml", "*_workflow.py"):
        found.extend(current_dir.glob(pattern))
    return sorted(found)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover the pipeline file from argument, MATRIXCI_PIPELINE or the workspace.

    Raises:
        SystemExit: If no pipeline can be found or the choice is ambiguous
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Specify a different path:\n  matrixci run --pipeline .github/workflows/ci.yaml",
            )
            sys.exit(EXIT_CONFIG)
        return path

    default = Path(settings.PIPELINE)
    if default.exists():
        return default

    files = find_pipeline_files()
    if not files:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=["Looked for:", f"  {settings.PIPELINE}", "  .github/workflows/*.y(a)ml", "  *_workflow.py"],
            suggestion="Specify a pipeline explicitly:\n  matrixci run --pipeline ci.yaml",
        )
        sys.exit(EXIT_CONFIG)
    if len(files) > 1:
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[f"  {f}" for f in files],
            suggestion=f"Specify a pipeline explicitly:\n  matrixci run --pipeline {files[0]}",
        )
        sys.exit(EXIT_CONFIG)
    return files[0]


def build_event(kind: str, branch: str | None, sha: str | None) -> Event:
    """Fill in branch and sha from the local git checkout when not given."""
    console = get_console()
    if branch is None and kind == PUSH:
        try:
            branch = current_branch()
        except (subprocess.CalledProcessError, FileNotFoundError):
            branch = None
        if branch:
            console.print_debug(f"Using current git branch: {branch}")
    if sha is None:
        try:
            sha = head_sha()
        except (subprocess.CalledProcessError, FileNotFoundError):
            sha = None
    return Event(kind=kind, branch=branch, sha=sha)


def event_options(fn):
    fn = click.option("--sha", default=None, help="Commit to check out (defaults to HEAD)")(fn)
    fn = click.option("--branch", default=None, help="Target branch (defaults to the current git branch)")(fn)
    fn = click.option(
        "--event",
        "event_kind",
        type=click.Choice(EVENT_KINDS),
        default=PUSH,
        show_default=True,
        help="Event that triggers the pipeline",
    )(fn)
    fn = click.option(
        "--pipeline",
        default=None,
        help=f"Pipeline file (.yml/.yaml/.py, defaults to {settings.PIPELINE} if present)",
    )(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
def cli(debug, quiet):
    """matrixci: run a CI pipeline declaration locally."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)


@cli.command()
@event_options
@click.option("--source", default=".", show_default=True, help="Source tree checked out into each job workspace")
@click.option("--work-dir", default=None, help=f"Workspace root (default: {settings.WORK_DIR})")
@click.option("--workers", default=None, type=int, help="Maximum number of jobs running at once")
@click.option("--fail-fast/--no-fail-fast", default=False, help="Cancel all other jobs after the first failure")
@click.option("--keep-workspaces", is_flag=True, default=settings.KEEP_WORKSPACES, help="Do not delete job workspaces afterwards")
@click.option("--platform", "platforms", multiple=True, help="Extra runs-on label served by this host")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the run result as JSON")
@click.pass_context
def run(ctx, pipeline, event_kind, branch, sha, source, work_dir, workers, fail_fast, keep_workspaces, platforms, as_json):
    """Run a pipeline for one event."""
    console = get_console()
    pipeline_path = discover_pipeline(pipeline)

    try:
        spec = load_pipeline(pipeline_path)
        event = build_event(event_kind, branch, sha)

        controller = PipelineController(
            spec,
            work_dir=work_dir,
            source=source,
            platforms=PlatformResolver([*settings.PLATFORMS, *platforms]),
            max_workers=workers,
            fail_fast=fail_fast,
            keep_workspaces=keep_workspaces,
            console=console,
        )
        result = controller.handle(event)

        if as_json:
            click.echo(json.dumps(result.to_dict(), indent=2))

        if result.status == NOT_TRIGGERED:
            sys.exit(EXIT_NOT_TRIGGERED)
        if not result.ok:
            sys.exit(EXIT_FAILED)

    except ConfigurationError as e:
        console.print_error("Invalid pipeline configuration", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)


@cli.command()
@event_options
@click.pass_context
def plan(ctx, pipeline, event_kind, branch, sha):
    """Show the job instances a run would execute, without running them."""
    console = get_console()
    pipeline_path = discover_pipeline(pipeline)

    try:
        spec = load_pipeline(pipeline_path)
        event = build_event(event_kind, branch, sha)
        instances = PipelineController(spec, console=console).plan(event)
    except ConfigurationError as e:
        console.print_error("Invalid pipeline configuration", e.message, details=[f"{k}={v}" for k, v in e.details.items()])
        sys.exit(EXIT_CONFIG)

    if not instances:
        console.print_not_triggered(spec.name, describe_event(event))
        sys.exit(EXIT_NOT_TRIGGERED)
    console.print_plan(instances)


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file served by the webhook")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, type=int, show_default=True)
@click.pass_context
def serve(ctx, pipeline, host, port):
    """Receive push / pull_request webhooks and run the pipeline for each one."""
    import uvicorn

    from matrixci.server import create_app

    pipeline_path = discover_pipeline(pipeline)
    try:
        spec = load_pipeline(pipeline_path)
    except ConfigurationError as e:
        get_console().print_error("Invalid pipeline configuration", str(e))
        sys.exit(EXIT_CONFIG)

    uvicorn.run(create_app(spec), host=host, port=port)


if __name__ == "__main__":
    cli()
