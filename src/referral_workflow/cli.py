"""
CLI interface for the referral workflow.
Uses Typer for commands and Rich for output.
"""

import logging
from contextlib import contextmanager
from typing import Generator, Optional

import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from referral_workflow.config import get_settings
from referral_workflow.errors import ReferralWorkflowError, ValidationError
from referral_workflow.models import ReferralStatus, UrgencyLevel, init_db, session_scope
from referral_workflow.services.lifecycle_service import (
    ReferralLifecycleService,
    build_lifecycle_service,
    seed_queues,
)

app = typer.Typer(
    name="referral-workflow",
    help="Referral lifecycle workflow engine",
    no_args_is_help=True,
)

console = Console()

STATUS_STYLES = {
    ReferralStatus.DRAFT: "dim",
    ReferralStatus.PENDING: "yellow",
    ReferralStatus.SENT: "blue",
    ReferralStatus.SCHEDULED: "cyan",
    ReferralStatus.COMPLETED: "green",
    ReferralStatus.CANCELLED: "red",
    ReferralStatus.EXPIRED: "magenta",
}

URGENCY_STYLES = {
    UrgencyLevel.STAT: "red bold",
    UrgencyLevel.URGENT: "red",
    UrgencyLevel.ROUTINE: "white",
}


@app.callback()
def configure_logging(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Route log output through Rich."""
    level = "DEBUG" if verbose else get_settings().log_level
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_time=False, show_path=False)],
    )


@contextmanager
def lifecycle() -> Generator[ReferralLifecycleService, None, None]:
    """Service for one command; waits for queued automated actions on exit."""
    service = build_lifecycle_service()
    try:
        yield service
    except ReferralWorkflowError as exc:
        _print_error(exc)
        raise typer.Exit(1)
    finally:
        service.shutdown(wait=True)


def _print_error(exc: ReferralWorkflowError) -> None:
    console.print(f"[red]{exc.kind}:[/red] {exc.detail}")
    if isinstance(exc, ValidationError):
        for warning in exc.result.warnings:
            console.print(f"  [yellow]warning:[/yellow] {warning}")
        for issue in exc.result.compliance_issues:
            console.print(f"  [magenta]compliance:[/magenta] {issue}")


def _status_text(status: ReferralStatus) -> Text:
    return Text(status.value, style=STATUS_STYLES.get(status, "white"))


# ============================================================================
# Database Commands
# ============================================================================
@app.command("init")
def init_database():
    """Initialize the database (creates tables if they don't exist)."""
    settings = get_settings()
    console.print(f"[blue]Initializing database:[/blue] {settings.database_url}")
    init_db()
    console.print("[green]Database initialized successfully![/green]")


@app.command("seed-queues")
def seed_work_queues():
    """Create the priority work queues."""
    with session_scope() as session:
        seed_queues(session)
    console.print("[green]Priority queues ready.[/green]")


@app.command("status")
def show_status(
    provider_id: Optional[str] = typer.Option(None, "--provider", help="Only this provider's referrals"),
):
    """Show referral counts by status and urgency."""
    settings = get_settings()
    console.print(Panel.fit(
        f"[bold]{settings.app_name}[/bold]\n"
        f"Database: {settings.database_url}\n"
        f"Action workers: {settings.action_workers}\n"
        f"Webhook: {'[green]Configured[/green]' if settings.notification_webhook_url else '[yellow]Not configured[/yellow]'}",
        title="System Status",
        border_style="blue",
    ))

    with lifecycle() as service:
        stats = service.get_statistics(provider_id=provider_id)

    if not stats.total:
        console.print("[dim]No referrals in the system yet.[/dim]")
        return

    table = Table(title="Referral Counts by Status", box=box.ROUNDED)
    table.add_column("Status", style="cyan")
    table.add_column("Count", justify="right", style="green")
    for status in ReferralStatus:
        if status.value in stats.by_status:
            table.add_row(_status_text(status), str(stats.by_status[status.value]))
    table.add_row("[bold]Total[/bold]", f"[bold]{stats.total}[/bold]")
    console.print(table)

    urgency = ", ".join(
        f"{level.value}: {stats.by_urgency[level.value]}"
        for level in UrgencyLevel
        if level.value in stats.by_urgency
    )
    console.print(f"Open: {stats.open_referrals}  |  By urgency: {urgency}")
    if stats.average_completion_days is not None:
        console.print(f"Average completion: {stats.average_completion_days:.1f} days")


# ============================================================================
# Referral Commands
# ============================================================================
referral_app = typer.Typer(help="Manage referrals")
app.add_typer(referral_app, name="referral")


@referral_app.command("create")
def create_referral(
    patient_id: str = typer.Option(..., "--patient", prompt="Patient ID"),
    provider_id: str = typer.Option(..., "--provider", prompt="Provider ID"),
    specialty_type: str = typer.Option(..., "--specialty", prompt="Specialty"),
    referral_reason: str = typer.Option(..., "--reason", prompt="Reason for referral"),
    clinical_notes: Optional[str] = typer.Option(None, "--notes", help="Clinical notes"),
    specialist_id: Optional[str] = typer.Option(None, "--specialist", help="Specialist ID"),
    urgency: str = typer.Option("routine", "--urgency", "-u", help="routine, urgent or stat"),
    stat_justification: Optional[str] = typer.Option(None, "--stat-justification"),
    authorization_required: bool = typer.Option(False, "--auth-required"),
    actor: str = typer.Option("cli", "--actor", help="Recorded as the creator"),
):
    """Create a new draft referral."""
    data = {
        "patient_id": patient_id,
        "provider_id": provider_id,
        "specialty_type": specialty_type,
        "referral_reason": referral_reason,
        "clinical_notes": clinical_notes,
        "specialist_id": specialist_id,
        "urgency_level": urgency.lower(),
        "stat_justification": stat_justification,
        "authorization_required": authorization_required,
    }
    with lifecycle() as service:
        referral = service.create_referral(data, actor=actor)
    console.print(
        f"[green]Referral {referral.referral_number} (#{referral.id}) created as draft.[/green]"
    )


@referral_app.command("list")
def list_referrals(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Status, or comma-separated statuses"),
    urgency: Optional[str] = typer.Option(None, "--urgency", "-u", help="Filter by urgency"),
    provider_id: Optional[str] = typer.Option(None, "--provider", help="Filter by provider"),
    patient_id: Optional[str] = typer.Option(None, "--patient", help="Filter by patient"),
    search: Optional[str] = typer.Option(None, "--search", "-q", help="Search term"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of results"),
    offset: int = typer.Option(0, "--offset", help="Results to skip"),
):
    """List referrals with optional filtering."""
    with lifecycle() as service:
        page = service.list_referrals(
            provider_id=provider_id,
            patient_id=patient_id,
            status=status,
            urgency_level=urgency,
            search=search,
            limit=limit,
            offset=offset,
        )

    if not page.referrals:
        console.print("[dim]No referrals found.[/dim]")
        return

    table = Table(title="Referrals", box=box.ROUNDED)
    table.add_column("ID", style="dim", width=5)
    table.add_column("Number", width=10)
    table.add_column("Urgency", width=8)
    table.add_column("Patient", width=12)
    table.add_column("Specialty", width=15)
    table.add_column("Status", width=10)
    table.add_column("Created", width=12)

    for ref in page.referrals:
        table.add_row(
            str(ref.id),
            ref.referral_number,
            Text(ref.urgency_level.value.upper(), style=URGENCY_STYLES[ref.urgency_level]),
            ref.patient_id,
            ref.specialty_type,
            _status_text(ref.status),
            ref.created_at.strftime("%Y-%m-%d"),
        )

    console.print(table)
    console.print(
        f"[dim]Page {page.current_page} of {page.total_pages} ({page.total} referrals)[/dim]"
    )


@referral_app.command("check")
def check_referral(
    patient_id: str = typer.Option(..., "--patient"),
    provider_id: str = typer.Option(..., "--provider"),
    specialty_type: str = typer.Option(..., "--specialty"),
    referral_reason: str = typer.Option(..., "--reason"),
    clinical_notes: Optional[str] = typer.Option(None, "--notes"),
    specialist_id: Optional[str] = typer.Option(None, "--specialist"),
    urgency: str = typer.Option("routine", "--urgency", "-u"),
    stat_justification: Optional[str] = typer.Option(None, "--stat-justification"),
    authorization_required: bool = typer.Option(False, "--auth-required"),
):
    """Validate referral details without creating a referral."""
    data = {
        "patient_id": patient_id,
        "provider_id": provider_id,
        "specialty_type": specialty_type,
        "referral_reason": referral_reason,
        "clinical_notes": clinical_notes,
        "specialist_id": specialist_id,
        "urgency_level": urgency.lower(),
        "stat_justification": stat_justification,
        "authorization_required": authorization_required,
    }
    with lifecycle() as service:
        result = service.validate_referral(data)

    for error in result.errors:
        console.print(f"[red]- {error}[/red]")
    for warning in result.warnings:
        console.print(f"[yellow]- {warning}[/yellow]")
    for issue in result.compliance_issues:
        console.print(f"[magenta]- {issue}[/magenta]")

    if not result.is_valid:
        raise typer.Exit(1)
    console.print("[green]Referral details are valid.[/green]")


@referral_app.command("show")
def show_referral(
    referral_id: int = typer.Argument(..., help="Referral ID to show"),
):
    """Show detailed information about a referral."""
    with lifecycle() as service:
        referral = service.get_referral(referral_id)

    console.print()
    console.print(Panel.fit(
        f"[bold]{referral.referral_number}[/bold] - {referral.specialty_type}",
        border_style="blue",
    ))
    console.print(Text.assemble("Status: ", _status_text(referral.status)))
    console.print(
        Text.assemble(
            "Urgency: ",
            Text(referral.urgency_level.value.upper(), style=URGENCY_STYLES[referral.urgency_level]),
        )
    )
    console.print()

    console.print("[bold cyan]Parties[/bold cyan]")
    console.print(f"  Patient: {referral.patient_id}")
    console.print(f"  Provider: {referral.provider_id}")
    console.print(f"  Specialist: {referral.specialist_id or '-'}")
    console.print()

    console.print("[bold cyan]Clinical[/bold cyan]")
    console.print(f"  Reason: {referral.referral_reason}")
    console.print(f"  Notes: {referral.clinical_notes or '-'}")
    console.print()

    console.print("[bold cyan]Authorization[/bold cyan]")
    console.print(f"  Required: {'yes' if referral.authorization_required else 'no'}")
    auth_status = referral.authorization_status.value if referral.authorization_status else "-"
    console.print(f"  Status: {auth_status}")
    console.print(f"  Number: {referral.authorization_number or '-'}")
    console.print()

    console.print("[dim]Created: " + referral.created_at.strftime("%Y-%m-%d %H:%M:%S") + "[/dim]")
    if referral.sent_at:
        console.print("[dim]Sent: " + referral.sent_at.strftime("%Y-%m-%d %H:%M:%S") + "[/dim]")
    if referral.scheduled_date:
        console.print("[dim]Scheduled for: " + referral.scheduled_date.strftime("%Y-%m-%d %H:%M") + "[/dim]")


@referral_app.command("transition")
def transition_referral(
    referral_id: int = typer.Argument(..., help="Referral ID"),
    status: str = typer.Argument(..., help="Target status"),
    notes: Optional[str] = typer.Option(None, "--notes", "-n", help="Reason recorded in history"),
    scheduled_date: Optional[str] = typer.Option(None, "--scheduled-date", help="ISO date/time"),
    outcome_notes: Optional[str] = typer.Option(None, "--outcome", help="Outcome on completion"),
    actor: str = typer.Option("cli", "--actor"),
):
    """Move a referral to a new status."""
    options = {}
    if scheduled_date:
        options["scheduled_date"] = scheduled_date
    if outcome_notes:
        options["outcome_notes"] = outcome_notes

    with lifecycle() as service:
        referral = service.transition(referral_id, status, notes=notes, actor=actor, options=options)
    console.print(
        Text.assemble(
            f"Referral {referral.referral_number} is now ", _status_text(referral.status)
        )
    )


@referral_app.command("history")
def show_history(
    referral_id: int = typer.Argument(..., help="Referral ID"),
):
    """Show the status history of a referral."""
    with lifecycle() as service:
        history = service.get_status_history(referral_id)

    table = Table(title=f"Status History #{referral_id}", box=box.ROUNDED)
    table.add_column("When", style="dim")
    table.add_column("From")
    table.add_column("To")
    table.add_column("By")
    table.add_column("Reason")
    for row in history:
        table.add_row(
            row.changed_at.strftime("%Y-%m-%d %H:%M:%S"),
            _status_text(row.previous_status) if row.previous_status else Text("-"),
            _status_text(row.new_status),
            row.changed_by or "-",
            row.reason or "",
        )
    console.print(table)


@referral_app.command("validate")
def validate_referral(
    referral_id: int = typer.Argument(..., help="Referral ID"),
    action: str = typer.Argument(..., help="send, schedule, complete or cancel"),
):
    """Check whether a workflow action is currently allowed."""
    with lifecycle() as service:
        result = service.validate_for_action(referral_id, action.lower())

    if result.is_valid:
        console.print(f"[green]{action} is allowed for referral #{referral_id}.[/green]")
        return
    for error in result.errors:
        console.print(f"[red]- {error}[/red]")
    raise typer.Exit(1)


@referral_app.command("escalate")
def escalate_referral(
    referral_id: int = typer.Argument(..., help="Referral ID"),
    reason: str = typer.Option(..., "--reason", "-r", prompt="Escalation reason"),
    level: int = typer.Option(1, "--level", "-l"),
    assigned_to: Optional[str] = typer.Option(None, "--assign", "-a"),
    actor: str = typer.Option("cli", "--actor"),
):
    """Escalate a referral by hand."""
    with lifecycle() as service:
        escalation = service.escalate(
            referral_id, reason, actor=actor, level=level, assigned_to=assigned_to
        )
    console.print(f"[yellow]Escalation #{escalation.id} opened for referral #{referral_id}.[/yellow]")


@referral_app.command("authorize")
def authorize_referral(
    referral_id: int = typer.Argument(..., help="Referral ID"),
    status: str = typer.Argument(..., help="approved, denied, expired or cancelled"),
    number: Optional[str] = typer.Option(None, "--number", help="Payer authorization number"),
    visits: Optional[int] = typer.Option(None, "--visits", help="Approved visits"),
    actor: str = typer.Option("cli", "--actor"),
):
    """Record a payer authorization decision."""
    with lifecycle() as service:
        referral = service.update_authorization(
            referral_id, status.lower(), actor=actor, authorization_number=number, approved_visits=visits
        )
    console.print(
        Text.assemble(
            f"Authorization {status.lower()}; referral {referral.referral_number} is ",
            _status_text(referral.status),
        )
    )


# ============================================================================
# Monitoring Commands
# ============================================================================
@app.command("sweep")
def sweep_overdue():
    """Escalate open referrals that have exceeded their urgency SLA."""
    with lifecycle() as service:
        escalations = service.sweep_overdue()

    if not escalations:
        console.print("[dim]No referrals over their SLA.[/dim]")
        return
    for escalation in escalations:
        console.print(
            f"[yellow]Escalated referral #{escalation.referral_id} ({escalation.reason})[/yellow]"
        )


# ============================================================================
# Server Commands
# ============================================================================
@app.command("serve")
def start_server(
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Host to bind to"),
    port: int = typer.Option(8000, "--port", "-p", help="Port to bind to"),
    reload: bool = typer.Option(False, "--reload", "-r", help="Enable auto-reload"),
):
    """Start the FastAPI web server."""
    import uvicorn

    console.print(f"[blue]Starting server at http://{host}:{port}[/blue]")
    uvicorn.run(
        "referral_workflow.api:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    app()
