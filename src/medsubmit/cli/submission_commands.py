"""CLI commands for batch submission, the queue and the scheduler."""

import json
import logging
from datetime import timedelta
from pathlib import Path
from typing import Optional, Tuple

import click

from medsubmit.config.manager import get_secret
from medsubmit.config.schema import Config
from medsubmit.models.batch import SubmissionStatus, UserRole
from medsubmit.models.queue import QueuePriority
from medsubmit.reports.source import JsonReportSource
from medsubmit.storage.sql import SqlSubmissionStore
from medsubmit.submission.anonymizer import Anonymizer
from medsubmit.submission.encryption import AesGcmEncryptor, DeferredEncryptor
from medsubmit.submission.engine import SubmissionWorkflowEngine
from medsubmit.submission.government_client import HttpGovernmentClient
from medsubmit.submission.scheduler import WorkflowScheduler
from medsubmit.transport.http_client import ConnectionPool, ConnectionPoolConfig
from medsubmit.utils.exceptions import MedSubmitError, create_error_info

logger = logging.getLogger(__name__)

DEFAULT_REPORTS_FILE = Path("data/reports.json")

STATUS_COLORS = {
    SubmissionStatus.SUBMITTED: "green",
    SubmissionStatus.ACCEPTED: "green",
    SubmissionStatus.RETRY_PENDING: "yellow",
    SubmissionStatus.SUBMITTING: "yellow",
    SubmissionStatus.FAILED: "red",
    SubmissionStatus.REJECTED: "red",
    SubmissionStatus.CANCELLED: "bright_black",
}

reports_option = click.option(
    "--reports",
    "reports_file",
    type=click.Path(path_type=Path),
    envvar="MEDSUBMIT_REPORTS_FILE",
    default=DEFAULT_REPORTS_FILE,
    show_default=True,
    help="JSON file with finalized reports",
)


def build_engine(config: Config, reports_file: Path) -> SubmissionWorkflowEngine:
    """Wire the production engine from configuration.

    The encryption key is only read when a payload is actually encrypted, so
    read-only commands work without it.
    """
    pool = ConnectionPool(ConnectionPoolConfig(max_connections=max(10, config.queue.worker_pool_size)))
    salt = get_secret(config.encryption.patient_hash_salt_env_var, required=False)
    if not salt:
        logger.warning(
            f"{config.encryption.patient_hash_salt_env_var} is not set; patient ids are hashed without a salt"
        )

    return SubmissionWorkflowEngine(
        store=SqlSubmissionStore(config.storage.database_url),
        report_source=JsonReportSource(reports_file),
        government_client=HttpGovernmentClient(config.government, pool=pool),
        encryptor=DeferredEncryptor(lambda: AesGcmEncryptor.from_config(config.encryption)),
        config=config,
        anonymizer=Anonymizer(salt or ""),
    )


def _engine(ctx: click.Context, reports_file: Path = DEFAULT_REPORTS_FILE) -> SubmissionWorkflowEngine:
    engine = build_engine(ctx.obj["config"], reports_file)
    # Close callbacks run last-registered first: engine, then store
    ctx.call_on_close(engine.store.close)
    ctx.call_on_close(engine.close)
    return engine


def _fail(error: MedSubmitError, batch_id: Optional[str] = None) -> None:
    error_info = create_error_info(error, batch_id=batch_id)
    click.echo(click.style("✗", fg="red", bold=True) + f" {error_info.message}", err=True)
    click.echo(f"  Remediation: {error_info.remediation}", err=True)
    raise click.exceptions.Exit(1)


def _styled_status(status: SubmissionStatus) -> str:
    return click.style(status.value, fg=STATUS_COLORS.get(status), bold=True)


# =============================================================================
# Batch commands
# =============================================================================


@click.group(name="batch")
def batch_group() -> None:
    """Create and manage submission batches."""
    pass


@batch_group.command(name="create")
@click.option("--month", required=True, help="Reporting month (YYYY-MM)")
@click.option("--report", "-r", "report_ids", multiple=True, required=True, help="Finalized report id (repeatable)")
@click.option("--created-by", required=True, help="User creating the batch")
@click.option(
    "--role",
    type=click.Choice([role.value for role in UserRole]),
    default=UserRole.DOCTOR.value,
    show_default=True,
)
@click.option("--batch-id", default=None, help="Explicit batch id (generated if omitted)")
@click.option("--notes", default=None, help="Free-text notes")
@reports_option
@click.pass_context
def create_batch(
    ctx: click.Context,
    month: str,
    report_ids: Tuple[str, ...],
    created_by: str,
    role: str,
    batch_id: Optional[str],
    notes: Optional[str],
    reports_file: Path,
) -> None:
    """Create a ready batch from finalized reports.

    \b
    Example:
      $ medsubmit batch create --month 2024-05 -r rep-1 -r rep-2 --created-by dr-popescu
    """
    engine = _engine(ctx, reports_file)
    try:
        batch = engine.create_batch(
            month,
            list(report_ids),
            created_by,
            user_role=UserRole(role),
            batch_id=batch_id,
            notes=notes,
        )
    except MedSubmitError as e:
        _fail(e, batch_id)

    click.echo(click.style("✓", fg="green", bold=True) + f" Created batch {batch.id}")
    click.echo(f"  Month:   {batch.month}")
    click.echo(f"  Reports: {batch.report_count}")
    click.echo(f"  Status:  {_styled_status(batch.status)}")


@batch_group.command(name="status")
@click.argument("batch_id")
@click.option("--json", "as_json", is_flag=True, help="Print the full status as JSON")
@click.option("--refresh", is_flag=True, help="Poll the government for a decision on submitted batches")
@click.pass_context
def batch_status(ctx: click.Context, batch_id: str, as_json: bool, refresh: bool) -> None:
    """Show a batch's status, submission log and receipt."""
    engine = _engine(ctx)
    try:
        if refresh:
            engine.refresh_government_status(batch_id)
        view = engine.get_submission_status(batch_id)
    except MedSubmitError as e:
        _fail(e, batch_id)

    if as_json:
        click.echo(json.dumps(view.to_dict(), indent=2))
        return

    click.echo(f"Batch {view.batch_id}: {_styled_status(view.status)}")
    click.echo(f"  Retries: {view.retry_count}")
    if view.next_retry_at:
        click.echo(f"  Next retry: {view.next_retry_at.isoformat()}")
    if view.manual_retry_available:
        click.echo(f"  Manual retry available: medsubmit batch retry {view.batch_id} --user <id>")
    if view.receipt:
        click.echo(f"  Government reference: {view.receipt.government_reference}")
        click.echo(f"  Confirmation id:      {view.receipt.confirmation_id}")

    click.echo("\nSubmission log:")
    for entry in view.submission_log:
        line = f"  {entry.timestamp.isoformat()}  {entry.action.value:<16} {entry.details}"
        if entry.error:
            line += click.style(f" [{entry.error.code}]", fg="red")
        click.echo(line)


@batch_group.command(name="retry")
@click.argument("batch_id")
@click.option("--user", "user_id", required=True, help="User requesting the retry")
@click.option(
    "--role",
    type=click.Choice([role.value for role in UserRole]),
    default=UserRole.ADMIN.value,
    show_default=True,
)
@click.pass_context
def retry_batch(ctx: click.Context, batch_id: str, user_id: str, role: str) -> None:
    """Re-queue a failed or retry-pending batch with high priority."""
    engine = _engine(ctx)
    try:
        item_id = engine.retry_failed_submission(batch_id, user_id, UserRole(role))
    except MedSubmitError as e:
        _fail(e, batch_id)

    click.echo(click.style("✓", fg="green", bold=True) + f" Batch {batch_id} re-queued as {item_id}")


@batch_group.command(name="cancel")
@click.argument("batch_id")
@click.option("--user", "user_id", required=True, help="User cancelling the batch")
@click.option(
    "--role",
    type=click.Choice([role.value for role in UserRole]),
    default=UserRole.ADMIN.value,
    show_default=True,
)
@click.option("--reason", default=None, help="Reason recorded in the submission log")
@click.pass_context
def cancel_batch(ctx: click.Context, batch_id: str, user_id: str, role: str, reason: Optional[str]) -> None:
    """Cancel a batch that is not currently being submitted."""
    engine = _engine(ctx)
    try:
        batch = engine.cancel_submission(batch_id, user_id, UserRole(role), reason=reason)
    except MedSubmitError as e:
        _fail(e, batch_id)

    click.echo(click.style("✓", fg="green", bold=True) + f" Batch {batch.id} {_styled_status(batch.status)}")


@batch_group.command(name="list")
@click.option("--status", type=click.Choice([status.value for status in SubmissionStatus]), default=None)
@click.option("--month", default=None, help="Only batches for this month (YYYY-MM)")
@click.pass_context
def list_batches(ctx: click.Context, status: Optional[str], month: Optional[str]) -> None:
    """List batches, optionally filtered by status or month."""
    engine = _engine(ctx)
    batches = engine.store.list_batches(status=SubmissionStatus(status) if status else None, month=month)
    if not batches:
        click.echo("No batches found.")
        return
    for batch in batches:
        click.echo(f"{batch.id:<40} {batch.month}  {batch.report_count:>4} reports  {_styled_status(batch.status)}")


# =============================================================================
# Queue commands
# =============================================================================


@click.group(name="queue")
def queue_group() -> None:
    """Manage the submission queue."""
    pass


@queue_group.command(name="add")
@click.argument("batch_id")
@click.option(
    "--priority",
    type=click.Choice([priority.value for priority in QueuePriority]),
    default=QueuePriority.NORMAL.value,
    show_default=True,
)
@click.option("--user", "user_id", default=None, help="User queueing the batch")
@click.option(
    "--role",
    type=click.Choice([role.value for role in UserRole]),
    default=UserRole.DOCTOR.value,
    show_default=True,
)
@click.option("--override-window", is_flag=True, help="Queue even outside the submission period")
@reports_option
@click.pass_context
def queue_add(
    ctx: click.Context,
    batch_id: str,
    priority: str,
    user_id: Optional[str],
    role: str,
    override_window: bool,
    reports_file: Path,
) -> None:
    """Queue a batch for manual submission."""
    engine = _engine(ctx, reports_file)
    try:
        item_id = engine.queue_submission_batch(
            batch_id,
            priority=QueuePriority(priority),
            user_id=user_id,
            user_role=UserRole(role),
            override_window=override_window,
        )
    except MedSubmitError as e:
        _fail(e, batch_id)

    click.echo(click.style("✓", fg="green", bold=True) + f" Batch {batch_id} queued as {item_id}")


@queue_group.command(name="process")
@click.option("--limit", type=int, default=None, help="Maximum items to process (default: queue.drain_limit)")
@reports_option
@click.pass_context
def queue_process(ctx: click.Context, limit: Optional[int], reports_file: Path) -> None:
    """Process every due queue item once."""
    engine = _engine(ctx, reports_file)
    try:
        result = engine.process_submission_queue(limit=limit)
    except MedSubmitError as e:
        _fail(e)

    if not result.processed:
        click.echo("No queue items due.")
        return
    summary = result.to_dict()
    click.echo(f"Processed {result.processed} queue items:")
    for outcome, count in summary.items():
        if outcome != "processed" and count:
            click.echo(f"  {outcome:<16} {count}")


@queue_group.command(name="reclaim")
@click.pass_context
def queue_reclaim(ctx: click.Context) -> None:
    """Return abandoned processing items to pending."""
    engine = _engine(ctx)
    try:
        reclaimed = engine.reclaim_stale_items()
    except MedSubmitError as e:
        _fail(e)
    click.echo(f"Reclaimed {reclaimed} stale queue items.")


@queue_group.command(name="cleanup")
@click.option("--days", type=int, default=None, help="Delete finished items older than this many days")
@click.pass_context
def queue_cleanup(ctx: click.Context, days: Optional[int]) -> None:
    """Delete old completed and failed queue items."""
    engine = _engine(ctx)
    try:
        deleted = engine.cleanup_queue(timedelta(days=days) if days else None)
    except MedSubmitError as e:
        _fail(e)
    click.echo(f"Deleted {deleted} finished queue items.")


# =============================================================================
# Statistics and period
# =============================================================================


@click.command(name="stats")
@click.option("--json", "as_json", is_flag=True, help="Print statistics as JSON")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show submission statistics."""
    engine = _engine(ctx)
    try:
        statistics = engine.get_submission_statistics()
    except MedSubmitError as e:
        _fail(e)

    if as_json:
        click.echo(json.dumps(statistics.to_dict(), indent=2))
        return

    click.echo("Submission statistics:")
    click.echo(f"  Total batches:       {statistics.total_batches}")
    click.echo(f"  Pending submission:  {statistics.pending_submissions}")
    click.echo(f"  In progress:         {statistics.in_progress_submissions}")
    click.echo(f"  Successful:          {statistics.successful_submissions}")
    click.echo(f"  Retrying:            {statistics.retrying_submissions}")
    click.echo(f"  Failed:              {statistics.failed_submissions}")
    click.echo(f"  Rejected:            {statistics.rejected_submissions}")
    click.echo(f"  Cancelled:           {statistics.cancelled_submissions}")
    click.echo(f"  Avg submission time: {statistics.average_submission_time_seconds:.1f}s")


@click.command(name="period")
@click.pass_context
def period(ctx: click.Context) -> None:
    """Show whether the submission period is open and when the next one starts."""
    engine = _engine(ctx)
    window = engine.get_next_submission_period()
    if engine.is_within_submission_period():
        click.echo(click.style("✓", fg="green", bold=True) + " Submission period is open")
        click.echo(f"  Closes: {window.end.isoformat()}")
    else:
        click.echo(click.style("✗", fg="yellow", bold=True) + " Submission period is closed")
        click.echo(f"  Next period: {window.start.isoformat()} to {window.end.isoformat()}")


# =============================================================================
# Scheduler
# =============================================================================


@click.group(name="scheduler")
def scheduler_group() -> None:
    """Run the periodic submission triggers."""
    pass


@scheduler_group.command(name="run")
@reports_option
@click.pass_context
def scheduler_run(ctx: click.Context, reports_file: Path) -> None:
    """Run the window check and queue drain until interrupted."""
    engine = _engine(ctx, reports_file)
    scheduler = WorkflowScheduler(engine, ctx.obj["config"].scheduler)
    scheduler.start()
    click.echo("Scheduler running. Press Ctrl+C to stop.")
    try:
        scheduler.wait()
    except KeyboardInterrupt:
        click.echo("\nStopping scheduler...")
    finally:
        scheduler.stop()
    click.echo("Scheduler stopped.")
