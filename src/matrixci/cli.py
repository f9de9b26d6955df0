# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from matrixci import settings
from matrixci.actions import ActionExecutor
from matrixci.cobertura import HttpUploader
from matrixci.errors import ConfigError
from matrixci.loader import load_pipeline
from matrixci.scheduler import plan, run_pipeline, select_jobs, stages
from matrixci.ui.console import Console, get_console, set_console

DEFAULT_WORKFLOWS = ("matrixci_workflow.py", "matrixci.json", "matrixci.toml")


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    for name in DEFAULT_WORKFLOWS:
        path = current_dir / name
        if path.exists():
            workflow_files.append(path)

    # Look for other *_workflow.py files
    for path in current_dir.glob("*_workflow.py"):
        if path not in workflow_files:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and not workflow_path.suffix:
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  matrixci run --workflow ci_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=["Looked for:", *(f"  {n}" for n in DEFAULT_WORKFLOWS), "  *_workflow.py"],
            suggestion="Create a workflow file or specify one explicitly:\n  matrixci run --workflow ci_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  matrixci run --workflow matrixci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _config_error(e: ConfigError) -> None:
    console = get_console()
    details = [f"{k}: {v}" for k, v in e.details.items()]
    if e.job:
        details.insert(0, f"job: {e.job}")
    if e.step:
        details.insert(1 if e.job else 0, f"step: {e.step}")
    console.print_error("Invalid workflow", e.message, details=details or None)
    sys.exit(2)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and captured step output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: build-matrix CI runner."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command("plan")
@click.option("--workflow", default=None, help="Workflow file (.py, .json or .toml)")
@click.option("--job", "jobs", multiple=True, help="Only run this job (and what it needs). Repeatable.")
@click.pass_context
def plan_cmd(ctx, workflow, jobs):
    """Expand the matrix and list job instances without running anything."""
    console = get_console()
    workflow_path = discover_workflow(workflow)
    try:
        pipeline = load_pipeline(workflow_path)
        selected = select_jobs(pipeline.jobs, jobs) if jobs else pipeline.jobs
        instances = plan(selected)
    except ConfigError as e:
        _config_error(e)
        return

    console.print_header(f"{pipeline.name} ({workflow_path.name})")
    for job in selected:
        console.print_plan(job.name, instances[job.name], job.fail_fast)
    for i, names in enumerate(stages(selected)):
        console.print_info(f"stage {i}: {', '.join(names)}")
    console.print_info(f"\n{sum(len(v) for v in instances.values())} instance(s) in {len(selected)} job(s)")


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (.py, .json or .toml)")
@click.option("--workers", default=None, type=int, help="Max job instances running at once")
@click.option("--job", "jobs", multiple=True, help="Only run this job (and what it needs). Repeatable.")
@click.option("--workdir", default=".", show_default=True, help="Working directory for shell steps")
@click.option("--coverage-dir", default=None, help="Where merged coverage reports are written")
@click.option("--upload-url", default=None, help="Coverage upload endpoint (defaults to MATRIXCI_UPLOAD_URL)")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print expanded instances")
@click.pass_context
def run(ctx, workflow, workers, jobs, workdir, coverage_dir, upload_url, print_plan):
    """Run a matrixci workflow."""
    console = get_console()
    workflow_path = discover_workflow(workflow)

    try:
        pipeline = load_pipeline(workflow_path)
        selected = select_jobs(pipeline.jobs, jobs) if jobs else pipeline.jobs

        console.print_run_started(
            pipeline=pipeline.name,
            workflow=workflow_path.name,
            job_count=len(selected),
            instance_count=sum(len(v) for v in plan(selected).values()),
        )

        url = upload_url or settings.UPLOAD_URL
        result = run_pipeline(
            pipeline,
            executor=ActionExecutor(workdir=workdir),
            max_workers=workers,
            uploader=HttpUploader(url) if url else None,
            coverage_dir=coverage_dir,
            only=list(jobs) or None,
            print_plan=print_plan,
        )

        console.print_results(result)

        if result.failed:
            sys.exit(1)

    except ConfigError as e:
        _config_error(e)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
