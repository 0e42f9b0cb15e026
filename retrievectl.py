import fnmatch
import json
import multiprocessing
import signal
from datetime import datetime, timedelta, timezone
from urllib.parse import urlparse

import click

from dashboard import run_dashboard
from db import JobRegistry, default_db_path
from errors import DuplicateJobIdError, JobNotFoundError, RetrievectlError
from executors import AGGREGATORS
from log_config import setup_logging
from models import JobStatus
from worker import EXIT_FAILED, EXIT_OK, JobRunner, WaitResult, exit_code_for, run_worker_process

EXIT_USAGE = 4


@click.group()
@click.option("--db", "db_path", envvar="RETRIEVECTL_DB", default=None, help="Path to the job database.")
@click.option("--log-level", envvar="RETRIEVECTL_LOG_LEVEL", default=None, help="DEBUG, INFO, WARNING or ERROR.")
@click.option("--log-json", is_flag=True, help="Emit logs as JSON lines.")
@click.pass_context
def cli(ctx, db_path, log_level, log_json):
    """Retrieve Walrus blobs, in the foreground or as background jobs."""
    setup_logging(log_level, enable_json=log_json)
    ctx.obj = JobRegistry(db_path or default_db_path())


@cli.command()
@click.pass_obj
def initdb(registry):
    """Create the job database if it does not exist yet."""
    registry.initialize()
    click.echo(f"Database initialized at {registry.db_path}.")


def retrieval_options(func):
    options = [
        click.argument("targets", nargs=-1, required=True),
        click.option("--background", "-b", is_flag=True, help="Run in the background and return immediately."),
        click.option("--wait", "-w", is_flag=True, help="With --background, wait and show progress."),
        click.option("--job-id", default=None, help="Custom job ID for tracking."),
        click.option("--timeout", "-t", type=click.IntRange(min=1), default=None, help="Timeout in seconds."),
        click.option("--progress-interval", type=click.FloatRange(min=0.05), default=None,
                     help="Seconds between progress updates while waiting."),
        click.option("--chunk-size", type=click.IntRange(min=1), default=None, help="Items fetched concurrently per chunk."),
        click.option("--mock", is_flag=True, help="Use the mock executor instead of the network."),
        click.option("--network", "-n", type=click.Choice(sorted(AGGREGATORS)), default="testnet",
                     help="Walrus network to read from."),
        click.option("--output-dir", "-o", default=None, help="Directory to write fetched blobs to."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@cli.command()
@retrieval_options
@click.pass_context
def retrieve(ctx, targets, **options):
    """Retrieve one or more blobs and save them to the output directory."""
    _run_retrieval(ctx, "retrieve", targets, to_stdout=False, **options)


@cli.command()
@retrieval_options
@click.pass_context
def fetch(ctx, targets, **options):
    """Fetch blobs and print their contents (saved to disk with --background)."""
    _run_retrieval(ctx, "fetch", targets, to_stdout=not options["background"], **options)


def _run_retrieval(ctx, command, targets, to_stdout, background, wait, job_id, timeout,
                   progress_interval, chunk_size, mock, network, output_dir):
    registry = ctx.obj
    runner = JobRunner(registry)

    timeout = timeout or int(registry.get_config_number("default_timeout"))
    interval = progress_interval or registry.get_config_number("progress_interval")
    if not to_stdout:
        output_dir = output_dir or registry.get_config("output_dir")

    try:
        job = runner.submit(
            command,
            list(targets),
            job_id=job_id,
            timeout=timeout,
            chunk_size=chunk_size,
            mock=mock,
            network=network,
            output_dir=output_dir,
        )
    except DuplicateJobIdError as e:
        click.echo(f"Error: {e.message}", err=True)
        ctx.exit(EXIT_USAGE)

    collected = {}
    if background:
        try:
            runner.dispatch(job.id)
        except OSError as e:
            registry.mark_terminal(job.id, JobStatus.FAILED, error=f"Could not start worker: {e}")
        click.echo(f"Job ID: {job.id}")
        click.echo(f"Background {command} started (timeout {timeout}s).")
        if not wait:
            click.echo("  Track progress: retrievectl jobs")
            click.echo(f"  Check status:   retrievectl status {job.id}")
            click.echo(f"  Cancel job:     retrievectl cancel {job.id}")
            return
    else:
        runner.start_local(job.id, sink=collected.__setitem__ if to_stdout else None)

    try:
        result = runner.wait(
            job.id,
            timeout=timeout,
            interval=interval,
            on_progress=lambda snapshot: click.echo(_progress_line(snapshot), err=to_stdout),
        )
    except KeyboardInterrupt:
        if background:
            click.echo(f"\nStopped waiting; job {job.id} keeps running in the background.", err=True)
            ctx.exit(EXIT_FAILED)
        click.echo(f"\nInterrupted, cancelling job {job.id}...", err=True)
        registry.cancel_job(job.id)
        result = WaitResult(runner.settle(job.id), False)

    if to_stdout:
        out = click.get_binary_stream("stdout")
        for target in targets:
            if target in collected:
                out.write(collected[target])
                out.write(b"\n")
        out.flush()

    _echo_summary(result.job, err=to_stdout)
    if result.timed_out and result.job.status == JobStatus.CANCELLED:
        click.echo(f"Error: job {job.id} timed out after {timeout}s and was cancelled.", err=True)
    ctx.exit(exit_code_for(result))


def _progress_line(snapshot):
    line = f"[{snapshot.progress:3d}%] {snapshot.status.value}"
    if snapshot.phase:
        line += f" ({snapshot.phase.value})"
    if snapshot.total_items:
        line += f" {snapshot.completed_items or 0}/{snapshot.total_items} items"
    return line


def _format_duration(seconds):
    if seconds < 1:
        return f"{int(seconds * 1000)}ms"
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int(seconds % 3600 // 60)}m"


def _duration(job):
    start = datetime.fromisoformat(job.started_at or job.created_at)
    end = datetime.fromisoformat(job.completed_at) if job.completed_at else datetime.now(timezone.utc)
    return _format_duration(max(0.0, (end - start).total_seconds()))


def _echo_job(job, err=False):
    click.echo(f"  - ID: {job.id}", err=err)
    click.echo(f"    Command: {job.command} {' '.join(job.targets)}", err=err)
    status_line = f"    Status: {job.status.value.upper()}  Progress: {job.progress}%"
    if job.status == JobStatus.PENDING:
        status_line += "  (not yet started)"
    click.echo(status_line, err=err)
    if job.phase:
        click.echo(f"    Phase: {job.phase.value}  Items: {job.completed_items or 0}/{job.total_items}", err=err)
    click.echo(f"    Created: {job.created_at}  Duration: {_duration(job)}", err=err)
    if job.cancel_reason and job.status == JobStatus.CANCELLED:
        click.echo(f"    Cancelled: {job.cancel_reason}", err=err)
    if job.error:
        click.echo(f"    Error: {job.error}", err=err)


def _echo_summary(job, err=False):
    click.echo("Retrieval summary:", err=err)
    _echo_job(job, err=err)
    if job.result:
        result = job.result
        click.echo(
            f"    Retrieved: {result.get('successful_items', 0)}/{result.get('total_items', 0)}"
            f"  Bytes: {result.get('bytes_transferred', 0)}",
            err=err,
        )
        for error in result.get("errors", []):
            click.echo(f"    Item error: {error}", err=err)


@cli.command()
@click.option("--status", "statuses", multiple=True,
              type=click.Choice([s.value for s in JobStatus], case_sensitive=False),
              help="Only show jobs in this status (repeatable).")
@click.option("--active", "-a", is_flag=True, help="Only show pending and running jobs.")
@click.option("--limit", "-l", type=click.IntRange(min=1), default=None, help="Only show the most recent N jobs.")
@click.option("--json", "as_json", is_flag=True, help="Print job snapshots as JSON.")
@click.option("--cleanup", is_flag=True, help="Delete finished jobs older than --max-age days.")
@click.option("--max-age", type=click.IntRange(min=1), default=7, help="Maximum age in days for --cleanup.")
@click.pass_obj
def jobs(registry, statuses, active, limit, as_json, cleanup, max_age):
    """List background jobs."""
    if cleanup:
        removed = registry.cleanup_jobs(timedelta(days=max_age))
        click.echo(f"Cleaned up {removed} job(s) older than {max_age} day(s).")
        return

    wanted = [JobStatus(s.lower()) for s in statuses]
    if active:
        wanted += [JobStatus.PENDING, JobStatus.RUNNING]
    registry.reap_orphans()
    found = registry.list_jobs(statuses=wanted or None)
    if limit:
        found = found[-limit:]

    if as_json:
        click.echo(json.dumps([job.snapshot().to_dict() for job in found], indent=2))
        return

    if not found:
        click.echo("No jobs found.")
        click.echo("Background jobs appear here when a command runs with --background.")
        return

    click.echo(f"Jobs ({len(found)}):")
    for job in found:
        _echo_job(job)
        click.echo("-" * 20)


@cli.command()
@click.argument("job_id", required=False)
@click.option("--latest", is_flag=True, help="Show the most recently created job.")
@click.option("--follow", "-f", is_flag=True, help="Keep printing progress until the job finishes.")
@click.option("--refresh", type=click.FloatRange(min=0.05), default=None,
              help="Seconds between updates with --follow.")
@click.option("--json", "as_json", is_flag=True, help="Print the job snapshot as JSON.")
@click.pass_context
def status(ctx, job_id, latest, follow, refresh, as_json):
    """Show one job's status, or a summary of all jobs."""
    registry = ctx.obj
    if job_id is None and latest:
        found = registry.list_jobs()
        if not found:
            click.echo("Error: no jobs found.", err=True)
            ctx.exit(EXIT_USAGE)
        job_id = found[-1].id
    if job_id is None:
        if follow:
            raise click.UsageError("--follow needs a JOB_ID or --latest.")
        registry.reap_orphans()
        _echo_status_summary(registry)
        return

    registry.reap_orphans([job_id])
    job = registry.get_job(job_id)
    if job is None:
        click.echo(f"Error: job '{job_id}' not found.", err=True)
        ctx.exit(EXIT_USAGE)

    if follow and not job.status.is_terminal:
        job = _follow(registry, job_id, refresh or registry.get_config_number("progress_interval"))

    if as_json:
        click.echo(json.dumps(job.snapshot().to_dict(), indent=2))
    else:
        _echo_job(job)
    ctx.exit(EXIT_OK if job.status == JobStatus.COMPLETED else EXIT_FAILED)


def _follow(registry, job_id, interval):
    click.echo(f"Following job {job_id} (Ctrl+C to stop)...", err=True)
    try:
        result = JobRunner(registry).wait(
            job_id,
            interval=interval,
            on_progress=lambda snapshot: click.echo(_progress_line(snapshot), err=True),
        )
        return result.job
    except KeyboardInterrupt:
        click.echo("\nStopped following; the job keeps running.", err=True)
        return registry.get_job(job_id)


def _echo_status_summary(registry):
    click.echo(" Job Status Summary:")
    summary = registry.status_summary()
    if not summary:
        click.echo("  No jobs found.")
    else:
        for state in JobStatus:
            click.echo(f"  - {state.value.upper()}: {summary.get(state.value, 0)}")

    click.echo("\n Execution Metrics:")
    metrics = registry.get_metrics()
    click.echo(f"  - Total Jobs Completed: {metrics.get('jobs_completed', 0)}")
    click.echo(f"  - Total Jobs Failed: {metrics.get('jobs_failed', 0)}")
    click.echo(f"  - Total Jobs Cancelled: {metrics.get('jobs_cancelled', 0)}")


@cli.command()
@click.argument("job_id", required=False)
@click.option("--all", "cancel_all", is_flag=True, help="Cancel every pending and running job.")
@click.option("--pattern", default=None,
              help="Cancel active jobs whose id, command or a target matches this wildcard pattern.")
@click.option("--command", "command_name", type=click.Choice(["retrieve", "fetch"]), default=None,
              help="Cancel active jobs started by this command.")
@click.option("--dry-run", is_flag=True, help="Show what would be cancelled without cancelling.")
@click.pass_context
def cancel(ctx, job_id, cancel_all, pattern, command_name, dry_run):
    """Request cancellation of a pending or running job, or of several at once."""
    registry = ctx.obj
    bulk = cancel_all or pattern or command_name
    if job_id and bulk:
        raise click.UsageError("Give either a JOB_ID or --all/--pattern/--command, not both.")
    if not job_id and not bulk:
        raise click.UsageError("JOB_ID required. Use --all, --pattern or --command to cancel several jobs.")
    if bulk:
        _cancel_many(ctx, registry, pattern, command_name, dry_run)
        return

    job = registry.get_job(job_id)
    if job is None:
        click.echo(f"Error: job '{job_id}' not found.", err=True)
        ctx.exit(EXIT_USAGE)
    if dry_run and not job.status.is_terminal:
        click.echo(f"Would cancel job '{job_id}' ({job.command} {' '.join(job.targets)}).")
        return

    if registry.cancel_job(job_id):
        click.echo(f"Cancellation requested for job '{job_id}'.")
        click.echo(f"Check progress with: retrievectl status {job_id}")
        return

    job = registry.get_job(job_id)
    click.echo(f"Error: job '{job_id}' is already {job.status.value}.", err=True)
    ctx.exit(EXIT_FAILED)


def _matches(job, pattern):
    pattern = pattern.lower()
    candidates = [job.id, job.command, *job.targets]
    return any(fnmatch.fnmatchcase(value.lower(), pattern) for value in candidates)


def _cancel_many(ctx, registry, pattern, command_name, dry_run):
    selected = registry.list_jobs(statuses=[JobStatus.PENDING, JobStatus.RUNNING])
    if command_name:
        selected = [job for job in selected if job.command == command_name]
    if pattern:
        selected = [job for job in selected if _matches(job, pattern)]

    if not selected:
        click.echo("No matching active jobs.")
        return

    if dry_run:
        click.echo(f"Would cancel {len(selected)} job(s):")
        for job in selected:
            click.echo(f"  - {job.id}  {job.status.value}  {job.command} {' '.join(job.targets)}")
        return

    missed = []
    for job in selected:
        if registry.cancel_job(job.id):
            click.echo(f"Cancellation requested for job '{job.id}'.")
        else:
            missed.append(job.id)
    click.echo(f"Cancelled {len(selected) - len(missed)} of {len(selected)} job(s).")
    if missed:
        click.echo(f"Already finished: {', '.join(missed)}", err=True)
        ctx.exit(EXIT_FAILED)


@cli.command()
@click.argument("job_id")
@click.pass_context
def logs(ctx, job_id):
    """Print the log file of a background job."""
    registry = ctx.obj
    if registry.get_job(job_id) is None:
        click.echo(f"Error: job '{job_id}' not found.", err=True)
        ctx.exit(EXIT_USAGE)
    path = registry.log_path(job_id)
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            click.echo(f.read(), nl=False)
    except FileNotFoundError:
        click.echo(f"No log recorded for job '{job_id}'.")


@click.group()
def worker():
    """Run background workers."""
    pass


@worker.command()
@click.option("--count", default=1, help="Number of workers to start.")
@click.pass_obj
def start(registry, count):
    """Start a pool of workers that pick up pending jobs."""
    if count <= 0:
        click.echo("Error: --count must be 1 or greater.")
        return

    click.echo(f"Starting {count} worker process(es)...")
    click.echo("Press CTRL+C to stop all workers.")

    processes = []
    for i in range(count):
        p = multiprocessing.Process(target=run_worker_process, args=(i + 1, registry.db_path))
        p.start()
        processes.append(p)

    def shutdown_main(sig, frame):
        click.echo("\nMain process received signal, stopping all workers...")
        for p in processes:
            p.terminate()

    signal.signal(signal.SIGINT, shutdown_main)
    signal.signal(signal.SIGTERM, shutdown_main)

    try:
        for p in processes:
            p.join()
    except KeyboardInterrupt:
        pass

    click.echo("All workers have shut down.")


@worker.command(name="run-job", hidden=True)
@click.argument("job_id")
@click.pass_context
def run_job(ctx, job_id):
    """Run a single job in this process (used by detached background workers)."""
    runner = JobRunner(ctx.obj)
    try:
        job = runner.run_job(job_id)
    except JobNotFoundError as e:
        click.echo(f"Error: {e.message}", err=True)
        ctx.exit(EXIT_USAGE)
    except RetrievectlError as e:
        click.echo(f"Error: {e.message}", err=True)
        ctx.exit(EXIT_FAILED)
    click.echo(f"Job {job.id} finished: {job.status.value}")
    ctx.exit(EXIT_OK if job.status == JobStatus.COMPLETED else EXIT_FAILED)


cli.add_command(worker)


@click.group()
def config():
    """Manage configuration (retries, chunking, timeouts, etc.)."""
    pass


CONFIG_KEYS = {
    "max-retries": "max_retries",
    "backoff-base": "backoff_base",
    "chunk-size": "chunk_size",
    "default-timeout": "default_timeout",
    "progress-interval": "progress_interval",
    "mock-delay-ms": "mock_delay_ms",
    "output-dir": "output_dir",
    "aggregator-url": "aggregator_url",
    "dispatch": "dispatch",
}


def _validate_config(key, value):
    """Returns the normalized value or raises click.BadParameter."""
    if key in ("max-retries", "chunk-size", "default-timeout"):
        try:
            number = int(value)
        except ValueError:
            raise click.BadParameter(f"{key} must be an integer.")
        if number <= 0:
            raise click.BadParameter(f"{key} must be a positive integer.")
        return str(number)
    if key == "mock-delay-ms":
        try:
            number = int(value)
        except ValueError:
            raise click.BadParameter(f"{key} must be an integer.")
        if number < 0:
            raise click.BadParameter(f"{key} must not be negative.")
        return str(number)
    if key in ("backoff-base", "progress-interval"):
        try:
            number = float(value)
        except ValueError:
            raise click.BadParameter(f"{key} must be a number.")
        if number <= 0 or (key == "backoff-base" and number < 1):
            raise click.BadParameter(f"{key} is out of range.")
        return str(number)
    if key == "dispatch":
        if value not in ("spawn", "worker"):
            raise click.BadParameter("dispatch must be 'spawn' or 'worker'.")
        return value
    if key == "aggregator-url":
        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise click.BadParameter("aggregator-url must be an http(s) URL.")
        return value.rstrip("/")
    return value


@config.command(name="set")
@click.argument("key", type=click.Choice(sorted(CONFIG_KEYS)))
@click.argument("value")
@click.pass_obj
def config_set(registry, key, value):
    """Set a configuration value."""
    normalized = _validate_config(key, value)
    registry.set_config(CONFIG_KEYS[key], normalized)
    click.echo(f"Config updated: {key} = {normalized}")


@config.command(name="get")
@click.argument("key", type=click.Choice(sorted(CONFIG_KEYS)))
@click.pass_obj
def config_get(registry, key):
    """Print a configuration value."""
    value = registry.get_config(CONFIG_KEYS[key])
    click.echo(value if value is not None else "")


@config.command(name="list")
@click.pass_obj
def config_list(registry):
    """Print all configuration values."""
    values = registry.list_config()
    for key, db_key in sorted(CONFIG_KEYS.items()):
        value = values.get(db_key)
        click.echo(f"{key} = {value if value is not None else '(unset)'}")


cli.add_command(config)


@cli.command()
@click.option("--port", default=5000, help="Port to serve the dashboard on.")
@click.pass_obj
def dashboard(registry, port):
    """
    Runs a minimal read-only web dashboard of background jobs.
    """
    run_dashboard(registry.db_path, port=port)


def main():
    cli(prog_name="retrievectl")


if __name__ == "__main__":
    main()
