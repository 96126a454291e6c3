"""
CLI interface for easylab.

Provides commands to create, launch, retry, destroy and recreate lab
deployments, and to inspect the jobs tracking them.

Operations run through the LabJobRunner; each command waits for the job to
finish and prints its transcript. Terminal jobs (completed, failed,
destroyed) are persisted under the data directory, so later invocations can
retry, destroy or recreate them.
"""

import json
from pathlib import Path

import click
import yaml
from rich.table import Table

from easylab import __version__
from easylab.errors import ConfigError, EasylabError
from easylab.schemas import Job, JobStatus, LabConfig
from easylab.utils import (
    console,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)

STATUS_STYLES = {
    JobStatus.PENDING: "white",
    JobStatus.RUNNING: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.DRY_RUN_COMPLETED: "blue",
    JobStatus.FAILED: "red",
    JobStatus.DESTROYED: "dim",
}


@click.group()
@click.version_option(version=__version__, prog_name="easylab")
@click.option("--verbose", "-v", is_flag=True, help="Log to the console")
@click.pass_context
def main(ctx, verbose: bool):
    """
    easylab - Provision OVHcloud Kubernetes + Coder labs with Pulumi.
    """
    from easylab.config import load_config

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    if "config" in ctx.obj:
        return
    try:
        ctx.obj["config"] = load_config()
    except (FileNotFoundError, ConfigError) as e:
        # init works without a config; other commands check ctx.obj
        ctx.obj["config_error"] = str(e)


def _get_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'easylab init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _setup_logging(ctx, config) -> None:
    setup_logging(
        log_file=Path(config.log_file).expanduser() if config.log_file else None,
        log_level=config.log_level,
        log_format=config.log_format,
        console_output=ctx.obj.get("verbose", False),
    )


def _build_registry(ctx):
    """Registry only, for commands that never run the driver."""
    from easylab.job_store import JobRegistry

    config = _get_config(ctx)
    _setup_logging(ctx, config)
    return JobRegistry.from_config(config)


def _build_runner(ctx, prewarm: bool = True):
    from easylab.job_runner import LabJobRunner

    config = _get_config(ctx)
    _setup_logging(ctx, config)
    return LabJobRunner.from_config(
        config,
        credentials=ctx.obj.get("credentials"),
        engine=ctx.obj.get("engine"),
        prewarm=prewarm,
    )


def _print_job(job: Job, show_output: bool = True) -> None:
    status = job.status
    style = STATUS_STYLES.get(status, "white")
    console.print(f"Job: [bold]{job.id}[/bold]")
    console.print(f"Stack: {job.stack_name or '-'}")
    console.print(f"Status: [{style}]{status.value}[/{style}]")
    console.print(f"Created: {job.created_at.isoformat()}")
    console.print(f"Updated: {job.updated_at.isoformat()}")
    if job.error:
        console.print(f"Error: [red]{job.error}[/red]")

    platform = job.platform
    if not platform.is_empty():
        console.print(f"Coder URL: {platform.url}")
        console.print(f"Coder admin: {platform.admin_email}")
    if job.kubeconfig:
        console.print(f"Kubeconfig: {len(job.kubeconfig)} chars (use 'easylab jobs kubeconfig {job.id}')")

    if show_output:
        click.echo()
        for line in job.output:
            click.echo(f"  {line}")


def _finish(runner, job_id: str, expected: JobStatus) -> None:
    """Wait for the job, print it and exit non-zero unless it reached `expected`."""
    status = runner.wait(job_id)
    job = runner.registry.get(job_id)
    _print_job(job)
    click.echo()
    if status != expected:
        print_error(f"{job_id} ended {status.value}: {job.error}")
        raise SystemExit(1)
    print_success(f"{job_id} {status.value}")


def _run_lab_operation(ctx, operation, *args, expected: JobStatus, prewarm: bool = True) -> None:
    runner = _build_runner(ctx, prewarm=prewarm)
    try:
        job_id = operation(runner)(*args) or args[0]
        _finish(runner, job_id, expected)
    except EasylabError as e:
        print_error(str(e))
        raise SystemExit(1)
    finally:
        runner.shutdown()


# =============================================================================
# Setup Commands
# =============================================================================

@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize easylab configuration."""
    from easylab.config import get_easylab_home, write_default_config

    home = get_easylab_home()
    cfg_path = home / "config.yaml"
    if cfg_path.exists():
        if not force:
            click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
            raise SystemExit(1)
        cfg_path.unlink()

    write_default_config(cfg_path)

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text(
            "# OVH_APPLICATION_KEY=...\n"
            "# OVH_APPLICATION_SECRET=...\n"
            "# OVH_CONSUMER_KEY=...\n"
            "# OVH_SERVICE_NAME=...\n"
            "# OVH_ENDPOINT=ovh-eu\n"
        )

    click.echo(f"Initialized easylab config at {cfg_path}")
    click.echo(f"Set env_file: {env_path} in the config to load OVH credentials from it.")


@main.command("prewarm")
@click.pass_context
def prewarm(ctx):
    """Resolve template dependencies into the shared caches."""
    from easylab.engine.prewarm import DependencyPrewarmer

    config = _get_config(ctx)
    setup_logging(log_level=config.log_level, log_format="pretty", console_output=True)
    prewarmer = DependencyPrewarmer(config)
    if not prewarmer.run():
        print_error("Dependency prewarm failed")
        raise SystemExit(1)
    for package in prewarmer.failed_packages:
        print_warning(f"Critical package not resolvable: {package}")
    print_success("Dependencies prewarmed")


# =============================================================================
# Lab Commands
# =============================================================================

@main.group("lab")
def lab_group():
    """Create, launch, retry, destroy and recreate labs."""
    pass


@lab_group.command("create")
@click.argument("config_yaml", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--dry-run", is_flag=True, help="Run a Pulumi preview only")
@click.option("--launch", is_flag=True, help="After a successful dry run, launch the real deployment")
@click.pass_context
def create_lab(ctx, config_yaml: Path, dry_run: bool, launch: bool):
    """
    Create a lab from a YAML configuration file.

    Examples:

        easylab lab create lab.yaml

        easylab lab create lab.yaml --dry-run

        easylab lab create lab.yaml --dry-run --launch
    """
    if launch and not dry_run:
        raise click.UsageError("--launch requires --dry-run")

    try:
        with open(config_yaml) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        print_error(f"Invalid YAML in {config_yaml}: {e}")
        raise SystemExit(1)
    if not isinstance(data, dict):
        print_error(f"{config_yaml} must contain a mapping")
        raise SystemExit(1)
    lab = LabConfig.from_dict(data)
    if not lab.stack_name:
        print_error("stack_name is required")
        raise SystemExit(1)

    if dry_run:
        print_banner("DRY RUN (pulumi preview)")

    runner = _build_runner(ctx)
    try:
        job_id = runner.create_lab(lab, dry_run=dry_run)
        print_info(f"Created job {job_id}")
        expected = JobStatus.DRY_RUN_COMPLETED if dry_run else JobStatus.COMPLETED
        _finish(runner, job_id, expected)

        if launch:
            print_banner("LAUNCH (pulumi up)")
            runner.launch(job_id)
            _finish(runner, job_id, JobStatus.COMPLETED)
    except EasylabError as e:
        print_error(str(e))
        raise SystemExit(1)
    finally:
        runner.shutdown()


@lab_group.command("retry")
@click.argument("job")
@click.pass_context
def retry_lab(ctx, job: str):
    """Retry a failed job with the current credentials."""
    _run_lab_operation(ctx, lambda r: r.retry, job, expected=JobStatus.COMPLETED)


@lab_group.command("destroy")
@click.argument("job")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def destroy_lab(ctx, job: str, yes: bool):
    """Destroy the infrastructure of a completed or failed job."""
    if not yes:
        click.confirm(f"Destroy all resources of {job}?", abort=True)
    _run_lab_operation(ctx, lambda r: r.destroy, job, expected=JobStatus.DESTROYED, prewarm=False)


@lab_group.command("recreate")
@click.argument("job")
@click.pass_context
def recreate_lab(ctx, job: str):
    """Deploy a destroyed lab again under a new job id."""
    _run_lab_operation(ctx, lambda r: r.recreate, job, expected=JobStatus.COMPLETED)


# =============================================================================
# Job Commands
# =============================================================================

@main.group("jobs")
def jobs_group():
    """Inspect and remove jobs."""
    pass


@jobs_group.command("list")
@click.option("--status", "status_filter", type=click.Choice([s.value for s in JobStatus]),
              help="Only show jobs with this status")
@click.pass_context
def list_jobs(ctx, status_filter: str = None):
    """List jobs, most recent first."""
    jobs = _build_registry(ctx).list()

    if status_filter:
        jobs = [job for job in jobs if job.status.value == status_filter]
    if not jobs:
        click.echo("No jobs found.")
        return

    table = Table(title="Jobs")
    table.add_column("ID")
    table.add_column("Stack")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Updated")
    for job in jobs:
        style = STATUS_STYLES.get(job.status, "white")
        table.add_row(
            job.id,
            job.stack_name or "-",
            f"[{style}]{job.status.value}[/{style}]",
            job.created_at.isoformat(timespec="seconds"),
            job.updated_at.isoformat(timespec="seconds"),
        )
    console.print(table)


def _load_job(ctx, job_id: str) -> Job:
    job = _build_registry(ctx).get(job_id)
    if job is None:
        click.echo(f"✗ Unknown job: {job_id}", err=True)
        raise SystemExit(1)
    return job


@jobs_group.command("show")
@click.argument("job")
@click.option("--json", "as_json", is_flag=True, help="Print the job snapshot as JSON")
@click.option("--no-output", is_flag=True, help="Omit the transcript")
@click.pass_context
def show_job(ctx, job: str, as_json: bool, no_output: bool):
    """Show job details and transcript."""
    record = _load_job(ctx, job)
    if as_json:
        click.echo(json.dumps(record.to_dict(), indent=2))
        return
    _print_job(record, show_output=not no_output)


@jobs_group.command("kubeconfig")
@click.argument("job")
@click.pass_context
def kubeconfig(ctx, job: str):
    """Print the kubeconfig captured for a job."""
    record = _load_job(ctx, job)
    if not record.kubeconfig:
        click.echo(f"✗ No kubeconfig for job: {job}", err=True)
        raise SystemExit(1)
    click.echo(record.kubeconfig)


@jobs_group.command("rm")
@click.argument("job")
@click.pass_context
def remove_job(ctx, job: str):
    """Remove a job and its persisted snapshot."""
    registry = _build_registry(ctx)
    try:
        registry.remove(job)
    except EasylabError as e:
        print_error(str(e))
        raise SystemExit(1)
    print_success(f"Removed {job}")


if __name__ == "__main__":
    main()
