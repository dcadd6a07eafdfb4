"""CLI commands for sync and governance."""

import asyncio
import logging
import re
import sys

import click

from kb_governance.config import settings


class SecretRedactingFilter(logging.Filter):
    """Filter to redact sensitive information from logs."""

    # Patterns for common secrets
    SECRET_PATTERNS = [
        (re.compile(r"(token[\s:=]+)[\w-]{8,}", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(api[_-]?key[\s:=]+)[\w-]{20,}", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(password[\s:=]+)\S+", re.IGNORECASE), r"\1[REDACTED]"),
        (re.compile(r"(bearer\s+)[\w-]+", re.IGNORECASE), r"\1[REDACTED]"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact secrets from log messages."""
        if isinstance(record.msg, str):
            for pattern, replacement in self.SECRET_PATTERNS:
                record.msg = pattern.sub(replacement, record.msg)
        return True


# Configure logging with secret redaction
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logging.getLogger().addFilter(SecretRedactingFilter())
# httpx logs full request URLs, which carry the source token as a query parameter
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
def cli(verbose: bool) -> None:
    """KB Governance CLI."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


# =============================================================================
# SETUP
# =============================================================================


@cli.command()
def init_database() -> None:
    """Initialize the database schema."""
    asyncio.run(_init_database())


async def _init_database() -> None:
    from kb_governance.db.database import init_db

    await init_db()
    click.echo("Database initialized successfully!")


@cli.command()
def check_connection() -> None:
    """Check connection to the source knowledge base."""
    asyncio.run(_check_connection())


async def _check_connection() -> None:
    from kb_governance.source.client import SourceClient

    client = SourceClient()
    try:
        page = await client.search_articles(page=1, page_size=10)
    except Exception as e:
        click.echo(f"Connection failed: {e}", err=True)
        sys.exit(1)
    click.echo(f"Connected to {settings.SOURCE_SYSTEM} successfully!")
    if page.total_size is not None:
        click.echo(f"Published articles: {page.total_size}")
    for item in page.items[:10]:
        click.echo(f"  - {item.id}: {item.title}")


@cli.command()
@click.argument("menu_id", type=int)
@click.argument("system_code")
@click.option("--menu-name", help="Source menu name, for reference")
@click.option("--system-name", help="Name used if the system does not exist yet")
def map_menu(menu_id: int, system_code: str, menu_name: str | None, system_name: str | None) -> None:
    """Map a source menu to an internal system."""
    asyncio.run(_map_menu(menu_id, system_code, menu_name, system_name))


async def _map_menu(menu_id: int, system_code: str, menu_name: str | None, system_name: str | None) -> None:
    from kb_governance.db.database import async_session_maker, init_db
    from kb_governance.sync.classification import MenuClassifier

    await init_db()
    async with async_session_maker() as session:
        await MenuClassifier().map_menu(session, menu_id, system_code, menu_name, system_name)
        await session.commit()
    click.echo(f"Menu {menu_id} mapped to {system_code}")


@cli.command()
@click.option("--host", default="0.0.0.0", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
def serve(host: str, port: int) -> None:
    """Run the HTTP API (and the scheduler, when enabled)."""
    import uvicorn

    uvicorn.run("kb_governance.main:app", host=host, port=port)


# =============================================================================
# SYNC COMMANDS
# =============================================================================


@cli.command()
@click.option("--mode", "-m", help="FULL, DELTA_WINDOW or DELTA_SURGICAL (defaults to the saved config)")
@click.option("--days-back", "-d", type=int, help="Window size in days for DELTA_WINDOW")
@click.option("--no-governance", is_flag=True, help="Skip post-sync governance detectors")
def sync(mode: str | None, days_back: int | None, no_governance: bool) -> None:
    """Run one sync in the foreground."""
    asyncio.run(_sync(mode, days_back, no_governance))


async def _sync(mode: str | None, days_back: int | None, no_governance: bool) -> None:
    from kb_governance.api.dependencies import get_orchestrator
    from kb_governance.db.database import init_db
    from kb_governance.db.models import SyncRunStatus, SyncTrigger
    from kb_governance.exceptions import InvalidSyncModeError, SyncAlreadyRunningError

    await init_db()
    orchestrator = get_orchestrator()
    orchestrator.run_governance = not no_governance
    try:
        run = await orchestrator.run_now(mode, days_back, SyncTrigger.CLI)
    except InvalidSyncModeError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    except SyncAlreadyRunningError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"\nSync {run.status.value} (run {run.id}, {run.mode.value}, {run.duration_ms}ms)")
    click.echo(f"  New: {run.synced_count}")
    click.echo(f"  Updated: {run.updated_count}")
    click.echo(f"  Skipped (unchanged): {run.skipped_count}")
    click.echo(f"  Not found: {run.not_found_count}")
    click.echo(f"  Errors: {run.error_count}")
    if run.note:
        click.echo(f"  Note: {run.note}")
    if run.status != SyncRunStatus.SUCCESS:
        sys.exit(1)


@cli.command()
@click.option("--enable/--disable", default=None, help="Turn the scheduler on or off")
@click.option("--mode", "-m", help="Scheduled sync mode")
@click.option("--interval", type=int, help="Interval in minutes (doubled outside working hours)")
@click.option("--days-back", type=int, help="Window for scheduled DELTA_WINDOW runs (0 = since last success)")
def config(enable: bool | None, mode: str | None, interval: int | None, days_back: int | None) -> None:
    """Show or update the sync scheduler configuration."""
    asyncio.run(_config(enable, mode, interval, days_back))


async def _config(enable: bool | None, mode: str | None, interval: int | None, days_back: int | None) -> None:
    from kb_governance.api.dependencies import get_orchestrator
    from kb_governance.db.database import init_db
    from kb_governance.exceptions import InvalidSyncModeError

    await init_db()
    orchestrator = get_orchestrator()
    if any(value is not None for value in (enable, mode, interval, days_back)):
        try:
            cfg = await orchestrator.update_config(enable, mode, interval, days_back)
        except InvalidSyncModeError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(2)
    else:
        cfg = await orchestrator.get_config()

    click.echo("Sync configuration:")
    click.echo(f"  Enabled: {cfg.enabled}")
    click.echo(f"  Mode: {cfg.mode.value}")
    click.echo(f"  Interval: {cfg.interval_minutes} min")
    click.echo(f"  Days back: {cfg.days_back}")
    click.echo(f"  Last started: {cfg.last_started_at or '-'}")
    click.echo(f"  Last finished: {cfg.last_finished_at or '-'}")


@cli.command()
@click.option("--limit", "-l", default=10, help="Number of runs to show")
def runs(limit: int) -> None:
    """Show recent sync runs."""
    asyncio.run(_runs(limit))


async def _runs(limit: int) -> None:
    from kb_governance.api.dependencies import get_orchestrator
    from kb_governance.db.database import init_db

    await init_db()
    history = await get_orchestrator().list_runs(limit)
    if not history:
        click.echo("No sync runs yet.")
        return
    for run in history:
        click.echo(
            f"#{run.id} {run.started_at:%Y-%m-%d %H:%M} {run.mode.value:<14} {run.status.value:<8} "
            f"new={run.synced_count} upd={run.updated_count} skip={run.skipped_count} "
            f"nf={run.not_found_count} err={run.error_count}"
        )
        if run.note:
            click.echo(f"    {run.note}")


@cli.command()
@click.option("--tick", type=int, help="Seconds between checks")
def scheduler(tick: int | None) -> None:
    """Run the periodic sync scheduler in the foreground."""
    asyncio.run(_scheduler(tick))


async def _scheduler(tick: int | None) -> None:
    from kb_governance.api.dependencies import get_orchestrator
    from kb_governance.db.database import init_db
    from kb_governance.sync.scheduler import SyncScheduler

    await init_db()
    runner = SyncScheduler(get_orchestrator(), tick_seconds=tick)
    click.echo(f"Scheduler running (tick every {runner.tick_seconds}s). Press Ctrl+C to stop.")
    runner.start()
    try:
        await asyncio.Event().wait()
    finally:
        await runner.stop()


# =============================================================================
# GOVERNANCE COMMANDS
# =============================================================================


@cli.command()
@click.option("--status", "-s", "statuses", multiple=True, help="Filter by status (repeatable)")
@click.option("--type", "-t", "issue_type", help="Filter by issue type")
@click.option("--article", "-a", "article_id", type=int, help="Filter by article id")
@click.option("--overdue", is_flag=True, help="Only issues past their SLA")
@click.option("--limit", "-l", default=50, help="Number of issues to show")
def issues(statuses: tuple[str, ...], issue_type: str | None, article_id: int | None, overdue: bool, limit: int) -> None:
    """List governance issues."""
    asyncio.run(_issues(statuses, issue_type, article_id, overdue, limit))


async def _issues(
    statuses: tuple[str, ...], issue_type: str | None, article_id: int | None, overdue: bool, limit: int
) -> None:
    from kb_governance.api.dependencies import get_lifecycle
    from kb_governance.db.database import init_db
    from kb_governance.db.models import IssueStatus, IssueType
    from kb_governance.governance.issues import IssueFilters

    await init_db()
    filters = IssueFilters(
        article_id=article_id,
        issue_type=IssueType(issue_type.upper()) if issue_type else None,
        statuses=[IssueStatus(s.upper()) for s in statuses],
        overdue_only=overdue,
        limit=limit,
    )
    lifecycle = get_lifecycle()
    found = await lifecycle.list_issues(filters)
    summary = await lifecycle.sla_summary()

    click.echo(
        f"Live issues: {summary['open']} (overdue: {summary['overdue']}, due soon: {summary['due_soon']})"
    )
    for issue in found:
        due = f"{issue.sla_due_at:%Y-%m-%d}" if issue.sla_due_at else "-"
        click.echo(
            f"#{issue.id} article={issue.article_id} {issue.issue_type.value} "
            f"[{issue.severity.value}] {issue.status.value} due={due} owner={issue.responsible_id or '-'}"
        )
        if issue.message:
            click.echo(f"    {issue.message[:120]}")


@cli.command()
@click.argument("issue_id", type=int)
@click.argument("status")
@click.option("--actor", required=True, help="Who is making the change")
@click.option("--reason", help="Required when STATUS is IGNORED")
@click.option("--note", help="Free-text note for the history")
def issue_status(issue_id: int, status: str, actor: str, reason: str | None, note: str | None) -> None:
    """Change the status of one governance issue."""
    asyncio.run(_issue_status(issue_id, status, actor, reason, note))


async def _issue_status(issue_id: int, status: str, actor: str, reason: str | None, note: str | None) -> None:
    from kb_governance.api.dependencies import get_lifecycle
    from kb_governance.db.database import init_db
    from kb_governance.db.models import IssueStatus
    from kb_governance.exceptions import GovernanceError

    await init_db()
    try:
        issue = await get_lifecycle().update_status(
            issue_id, IssueStatus(status.upper()), actor, ignored_reason=reason, note=note
        )
    except GovernanceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Issue {issue.id} is now {issue.status.value}")


@cli.command()
@click.argument("issue_id", type=int)
@click.argument("responsible_id", required=False)
@click.option("--actor", required=True, help="Who is making the change")
@click.option("--name", help="Display name of the responsible")
@click.option("--ticket", is_flag=True, help="Open a ticket for the responsible")
def assign(issue_id: int, responsible_id: str | None, actor: str, name: str | None, ticket: bool) -> None:
    """Assign an issue (omit RESPONSIBLE_ID to unassign)."""
    asyncio.run(_assign(issue_id, responsible_id, actor, name, ticket))


async def _assign(issue_id: int, responsible_id: str | None, actor: str, name: str | None, ticket: bool) -> None:
    from kb_governance.api.dependencies import get_lifecycle
    from kb_governance.db.database import init_db
    from kb_governance.exceptions import GovernanceError

    await init_db()
    try:
        issue = await get_lifecycle().assign(
            issue_id, responsible_id, actor, responsible_name=name, create_ticket=ticket
        )
    except GovernanceError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(f"Issue {issue.id}: {issue.status.value}, owner={issue.responsible_id or '-'}")


@cli.command()
@click.option("--article", "-a", "article_id", type=int, help="Analyze only this article")
@click.option("--limit", "-l", type=int, help="Number of recent articles to analyze")
@click.option("--skip-duplicates", is_flag=True, help="Do not re-scan duplicate groups")
def analyze(article_id: int | None, limit: int | None, skip_duplicates: bool) -> None:
    """Run governance detectors on mirrored articles."""
    asyncio.run(_analyze(article_id, limit, skip_duplicates))


async def _analyze(article_id: int | None, limit: int | None, skip_duplicates: bool) -> None:
    from kb_governance.api.dependencies import get_orchestrator
    from kb_governance.db.database import init_db

    await init_db()
    orchestrator = get_orchestrator()
    if article_id is not None:
        findings = await orchestrator.detectors.analyze_article(article_id)
    else:
        findings = await orchestrator.detectors.analyze_recent(limit or settings.GOVERNANCE_RECENT_LIMIT)
    click.echo(f"Detector findings: {findings}")

    if not skip_duplicates and article_id is None:
        duplicates = await orchestrator.duplicates.analyze_all()
        click.echo(f"Duplicate issues opened/refreshed: {duplicates}")


@cli.command()
@click.option("--all", "include_closed", is_flag=True, help="Include resolved and ignored groups")
@click.option("--reconcile", is_flag=True, help="Resolve issues whose group no longer exists first")
def duplicates(include_closed: bool, reconcile: bool) -> None:
    """List duplicate content groups."""
    asyncio.run(_duplicates(include_closed, reconcile))


async def _duplicates(include_closed: bool, reconcile: bool) -> None:
    from kb_governance.api.dependencies import get_duplicate_detector, get_duplicate_service
    from kb_governance.db.database import init_db

    await init_db()
    if reconcile:
        resolved = await get_duplicate_detector().reconcile()
        click.echo(f"Reconciled: {resolved} stale duplicate issues resolved")

    groups = await get_duplicate_service().list_groups(include_closed=include_closed)
    if not groups:
        click.echo("No duplicate groups.")
        return
    for group in groups:
        click.echo(f"\n{group.content_hash[:12]} [{group.status.value}] {len(group.members)} articles")
        for member in group.members:
            click.echo(f"  - {member.article_id}: {member.title or '(untitled)'} ({member.status.value})")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
