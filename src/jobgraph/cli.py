# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from jobgraph.artifacts import MemoryArtifactStore
from jobgraph.errors import ValidationError
from jobgraph.git import repository_name
from jobgraph.model import Outcome
from jobgraph.runner import build_provisioners, build_scheduler, load_workflow, run_pipeline
from jobgraph.scheduler import Scheduler
from jobgraph.settings import Settings
from jobgraph.trigger import Event, EventKind, resolve
from jobgraph.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOW = "jobgraph_workflow.py"

EXIT_FAILED = 1
EXIT_INVALID = 2

EVENT_CHOICES = [k.value for k in EventKind]


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    default_workflow = current_dir / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument, JOBGRAPH_WORKFLOW or the default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  jobgraph run --workflow my_workflow.py",
            )
            sys.exit(EXIT_INVALID)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  jobgraph run --workflow my_workflow.py",
        )
        sys.exit(EXIT_INVALID)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  jobgraph run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(EXIT_INVALID)

    return workflow_files[0]


def _load_settings(**overrides) -> Settings:
    try:
        return Settings.from_env().override(**overrides)
    except ValueError as e:
        get_console().print_error("Invalid configuration", str(e))
        sys.exit(EXIT_INVALID)


def _load(workflow: str | None, settings: Settings):
    console = get_console()
    workflow_path = discover_workflow(workflow or settings.workflow)
    try:
        return workflow_path, load_workflow(workflow_path)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[str(e)],
        )
        if console.debug:
            console.print_exception(e)
        sys.exit(EXIT_INVALID)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """jobgraph: run a dependency graph of CI jobs for one trigger event."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--event", "event_kind", type=click.Choice(EVENT_CHOICES), default="push", show_default=True)
@click.option("--tag", default=None, help="Release tag (release.published events)")
@click.option("--workers", default=None, type=int, help="Number of parallel workers")
@click.option("--workspace", default=None, help="Root directory for job workspaces")
@click.option("--source-root", default=None, help="Source tree copied into each workspace")
@click.option("--artifact-dir", default=None, help="Artifact store directory (file backend)")
@click.option("--infra-retries", default=None, type=int, help="Retries for infrastructure failures")
@click.option("--job-timeout", default=None, type=float, help="Default per-job timeout in seconds")
@click.option("--keep-artifacts", is_flag=True, default=False, help="Do not expire artifacts at the end of the run")
@click.option("--release-dir", default=None, help="Directory releases are published into")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print stages and skipped jobs")
def run(
    workflow,
    event_kind,
    tag,
    workers,
    workspace,
    source_root,
    artifact_dir,
    infra_retries,
    job_timeout,
    keep_artifacts,
    release_dir,
    print_plan,
):
    """Run a workflow for one trigger event."""
    console = get_console()
    settings = _load_settings(
        workers=workers,
        workspace_root=workspace,
        source_root=source_root,
        artifact_dir=artifact_dir,
        infra_retries=infra_retries,
        job_timeout=job_timeout,
        keep_artifacts=keep_artifacts or None,
        release_dir=release_dir,
    )
    workflow_path, pipeline = _load(workflow, settings)
    event = Event(kind=event_kind, tag=tag)
    params = resolve(event)

    try:
        scheduler = build_scheduler(settings, pipeline.release)
        graph, conditions = scheduler.prepare(pipeline.jobs, params)
    except ValidationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_INVALID)

    console.print_run_started(
        repository=repository_name(settings.source_root),
        workflow=workflow_path.name,
        job_count=len(graph),
        event=params.event.value,
        channel=params.channel,
    )
    if print_plan:
        skipped = {name: "condition not met" for name, ok in conditions.items() if not ok}
        console.print_plan(graph.topo_levels(), skipped)

    try:
        invocation = run_pipeline(pipeline, event, settings, scheduler=scheduler)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except ValidationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_INVALID)
    except Exception as e:
        console.print_exception(e)
        sys.exit(EXIT_FAILED)

    console.print_results(invocation.statuses(), invocation.outcome.value)
    if invocation.outcome is not Outcome.SUCCESS:
        sys.exit(EXIT_FAILED)


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--event", "event_kind", type=click.Choice(EVENT_CHOICES), default="push", show_default=True)
@click.option("--tag", default=None, help="Release tag (release.published events)")
def plan(workflow, event_kind, tag):
    """Validate a workflow and print its stages for an event without running it."""
    console = get_console()
    settings = _load_settings()
    workflow_path, pipeline = _load(workflow, settings)
    params = resolve(Event(kind=event_kind, tag=tag))

    # nothing is published while planning
    scheduler = Scheduler(
        build_provisioners(settings),
        MemoryArtifactStore(),
        release_plan=pipeline.release,
    )
    try:
        graph, conditions = scheduler.prepare(pipeline.jobs, params)
    except ValidationError as e:
        console.print_error("Invalid workflow", str(e))
        sys.exit(EXIT_INVALID)

    console.print_info(f"Workflow: {workflow_path.name}")
    console.print_info(f"Event: {params.event.value} (toolchain {params.channel})")
    skipped = {name: "condition not met" for name, ok in conditions.items() if not ok}
    console.print_plan(graph.topo_levels(), skipped)
    if pipeline.release is not None:
        console.print_info(
            f"Release: requires {', '.join(pipeline.release.requires)}; "
            f"publishes {', '.join(pipeline.release.artifacts) or 'nothing'}"
        )


@cli.command()
@click.option("--workflow", default=None, help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
def serve(workflow, host, port):
    """Accept trigger events over HTTP and archive every invocation."""
    import uvicorn

    from jobgraph.server.app import create_app

    settings = _load_settings()
    workflow_path = discover_workflow(workflow or settings.workflow)
    app = create_app(workflow_path=workflow_path, settings=settings)
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    cli()
