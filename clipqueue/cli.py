"""CLI interface for clipqueue."""

import asyncio
import json
import sys
from datetime import datetime
from typing import Optional

import click

from .config import configure_logging, get_settings
from .errors import ClipQueueError
from .models import Config, JobStatus, Plan
from .scheduler import CancelOutcome, RetryOutcome, Scheduler
from .storage import Storage

# Global storage instance
_storage: Optional[Storage] = None


def get_storage() -> Storage:
    """Get or create storage instance."""
    global _storage
    if _storage is None:
        _storage = Storage(get_settings().data_dir)
    return _storage


def _fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


def _fmt_time(value: Optional[datetime]) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log scheduler activity")
def cli(verbose: bool):
    """ClipQueue - image-to-video job scheduler"""
    configure_logging("INFO" if verbose else None)


@cli.command()
@click.argument("request_json")
def submit(request_json: str):
    """Submit one job, or a JSON list of jobs for the same user.

    Example:
        clipqueue submit '{"user_id":"u1","image":{"id":"img1","name":"beach.png"}}'
    """
    try:
        data = json.loads(request_json)
    except json.JSONDecodeError as e:
        _fail(f"Invalid JSON: {e}")
        return

    scheduler = Scheduler(get_storage())
    try:
        job_ids = asyncio.run(scheduler.submit_batch(data if isinstance(data, list) else [data]))
    except ClipQueueError as e:
        _fail(str(e))
        return
    for job_id in job_ids:
        click.echo(f"✓ Job {job_id} queued")


@cli.command()
def run():
    """Process queued jobs until the queue is drained.

    Example:
        clipqueue run
    """
    scheduler = Scheduler(get_storage())

    async def _drain():
        await scheduler.start()
        await scheduler.shutdown(drain=True)

    pending = len(scheduler.list_pending())
    click.echo(f"Processing {pending} queued job(s)...")
    try:
        asyncio.run(_drain())
    except KeyboardInterrupt:
        click.echo("\nInterrupted; running jobs will be requeued on the next run")
        sys.exit(1)
    stats = scheduler.stats()
    click.echo(
        f"Done: {stats['completed']} completed, {stats['failed']} failed, "
        f"{stats['cancelled']} cancelled"
    )


@cli.command()
def status():
    """Show job queue status and statistics.

    Example:
        clipqueue status
    """
    storage = get_storage()
    stats = storage.get_stats()
    config = storage.get_config()

    click.echo("\n" + "=" * 50)
    click.echo("ClipQueue Status")
    click.echo("=" * 50)
    click.echo(f"Total Jobs:     {stats['total']}")
    click.echo(f"  Queued:       {stats['queued']}")
    click.echo(f"  Processing:   {stats['processing']}")
    click.echo(f"  Completed:    {stats['completed']}")
    click.echo(f"  Failed:       {stats['failed']}")
    click.echo(f"  Cancelled:    {stats['cancelled']}")
    click.echo("\nConfiguration:")
    click.echo(f"  Max Retries:  {config.max_retries}")
    click.echo(f"  Free Credits: {config.max_free_credits}")
    click.echo(f"  Batch Policy: {config.default_batch_policy.value}")
    click.echo("=" * 50 + "\n")


@cli.command(name="list")
@click.option("--status", "status_", type=click.Choice([s.value for s in JobStatus]), help="Filter by status")
@click.option("--user", "user_id", default=None, help="Filter by user")
@click.option("--limit", default=10, help="Maximum jobs to display")
def list_jobs(status_: Optional[str], user_id: Optional[str], limit: int):
    """List jobs.

    Example:
        clipqueue list --status queued
        clipqueue list --user u1 --limit 20
    """
    scheduler = Scheduler(get_storage())
    jobs = scheduler.list_jobs(JobStatus(status_) if status_ else None, user_id)[:limit]

    if not jobs:
        click.echo("No jobs found")
        return

    click.echo(f"\n{'ID':<34} {'User':<12} {'Status':<12} {'Progress':<9} {'Retries':<8} {'Created':<20}")
    click.echo("-" * 98)
    for job in jobs:
        click.echo(
            f"{job.id:<34} {job.user_id[:12]:<12} {job.status.value:<12} "
            f"{str(job.progress) + '%':<9} {job.retry_count:<8} {_fmt_time(job.created_at):<20}"
        )
    click.echo()


@cli.command()
@click.argument("job_id")
def show(job_id: str):
    """Show one job.

    Example:
        clipqueue show 3f2a...
    """
    scheduler = Scheduler(get_storage())
    try:
        job = scheduler.get_status(job_id)
    except ClipQueueError as e:
        _fail(str(e))
        return
    click.echo(json.dumps(job.model_dump(mode="json"), indent=2))


@cli.command()
@click.argument("job_id")
def cancel(job_id: str):
    """Cancel a queued job."""
    outcome = asyncio.run(Scheduler(get_storage()).cancel(job_id))
    if outcome == CancelOutcome.OK:
        click.echo(f"✓ Job {job_id} cancelled")
    elif outcome == CancelOutcome.NOT_FOUND:
        _fail(f"Job {job_id} not found")
    else:
        _fail(f"Job {job_id} has already finished")


@cli.command()
@click.argument("job_id")
def retry(job_id: str):
    """Retry a failed job that has retries left.

    Example:
        clipqueue retry 3f2a...
    """
    outcome = asyncio.run(Scheduler(get_storage()).retry(job_id))
    if outcome == RetryOutcome.OK:
        click.echo(f"✓ Job {job_id} moved back to queue for retry")
    elif outcome == RetryOutcome.NOT_FOUND:
        _fail(f"Job {job_id} not found")
    elif outcome == RetryOutcome.RETRIES_EXHAUSTED:
        _fail(f"Maximum retry attempts reached for job {job_id}; use 'resubmit'")
    else:
        _fail(f"Job {job_id} has not failed")


@cli.command()
@click.argument("job_id")
def resubmit(job_id: str):
    """Resubmit a failed or cancelled job with its retries reset."""
    try:
        asyncio.run(Scheduler(get_storage()).resubmit(job_id))
    except ClipQueueError as e:
        _fail(str(e))
        return
    click.echo(f"✓ Job {job_id} resubmitted")


@cli.group()
def failed():
    """Inspect failed jobs"""
    pass


@failed.command(name="list")
@click.option("--limit", default=10, help="Maximum jobs to display")
def list_failed(limit: int):
    """List failed jobs with their last error.

    Example:
        clipqueue failed list
    """
    jobs = Scheduler(get_storage()).list_jobs(JobStatus.FAILED)[:limit]

    if not jobs:
        click.echo("No failed jobs")
        return

    click.echo(f"\n{'ID':<34} {'User':<12} {'Retries':<8} {'Error':<40}")
    click.echo("-" * 96)
    for job in jobs:
        error = (job.error or "")[:40]
        click.echo(f"{job.id:<34} {job.user_id[:12]:<12} {job.retry_count:<8} {error:<40}")
    click.echo()


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command(name="show")
def show_config():
    """Show current configuration.

    Example:
        clipqueue config show
    """
    cfg = get_storage().get_config()

    click.echo("\nCurrent Configuration:")
    click.echo(f"  max-retries:          {cfg.max_retries}")
    click.echo(f"  max-free-credits:     {cfg.max_free_credits}")
    click.echo(f"  stage-delay:          {cfg.stage_delay} seconds")
    click.echo(f"  auto-retry:           {str(cfg.auto_retry).lower()}")
    click.echo(f"  default-batch-policy: {cfg.default_batch_policy.value}")
    click.echo()


_CONFIG_KEYS = {
    "max-retries": "max_retries",
    "max-free-credits": "max_free_credits",
    "stage-delay": "stage_delay",
    "auto-retry": "auto_retry",
    "default-batch-policy": "default_batch_policy",
}


@config.command(name="set")
@click.argument("key")
@click.argument("value")
def set_config(key: str, value: str):
    """Set a configuration value.

    Example:
        clipqueue config set max-retries 5
        clipqueue config set default-batch-policy priority
    """
    storage = get_storage()
    field = _CONFIG_KEYS.get(key)
    if field is None:
        _fail(f"Unknown config key: {key}")
        return

    data = storage.get_config().model_dump()
    data[field] = value
    try:
        cfg = Config.model_validate(data)
    except ValueError as e:
        _fail(f"Invalid value: {e}")
        return
    storage.set_config(cfg)
    click.echo(f"✓ Configuration updated: {key} = {value}")


@cli.group()
def account():
    """Manage user accounts"""
    pass


@account.command(name="show")
@click.argument("user_id")
def show_account(user_id: str):
    """Show a user's plan and credit usage."""
    storage = get_storage()
    acct = storage.get_account(user_id)
    remaining = acct.remaining_credits(storage.get_config().max_free_credits)

    click.echo(f"\nAccount {user_id}:")
    click.echo(f"  Plan:             {acct.plan.value}")
    click.echo(f"  Concurrent jobs:  {acct.features.max_concurrent_jobs}")
    click.echo(f"  Max quality:      {acct.features.max_quality.value}")
    click.echo(f"  Credits used:     {acct.credits_used}")
    click.echo(f"  Credits reserved: {acct.credits_reserved}")
    click.echo(f"  Credits left:     {'unlimited' if remaining is None else remaining}")
    click.echo(f"  Total videos:     {acct.total_videos}")
    click.echo()


@account.command(name="set-plan")
@click.argument("user_id")
@click.argument("plan", type=click.Choice([p.value for p in Plan]))
def set_plan(user_id: str, plan: str):
    """Change a user's plan.

    Example:
        clipqueue account set-plan u1 pro_monthly
    """
    asyncio.run(Scheduler(get_storage()).set_plan(user_id, Plan(plan)))
    click.echo(f"✓ {user_id} is now on {plan}")


@account.command(name="reset-credits")
@click.argument("user_id")
def reset_credits(user_id: str):
    """Start a new weekly credit allowance for a user."""
    asyncio.run(Scheduler(get_storage()).reset_credits(user_id))
    click.echo(f"✓ Credits reset for {user_id}")


if __name__ == "__main__":
    cli()
