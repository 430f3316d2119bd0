"""CLI for Household Settlement using Typer."""

import logging
import sys

import typer
from rich.console import Console
from rich.table import Table

from .config import Settings, load_settings
from .db import Database
from .exceptions import ConfigurationError, HouseholdSettlementError
from .models import AuthContext, Settlement, SettlementComputation, YearMonth
from .service import SettlementService

app = typer.Typer(
    name="household-settlement",
    help="Compute and finalize monthly household settlements",
)

console = Console()


def setup_logging(verbose: bool = False, level: str = "INFO"):
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def operator_context(settings: Settings) -> AuthContext:
    """Build the caller identity from configuration."""
    if not settings.household_id or not settings.operator_user_id:
        raise ConfigurationError(
            "HOUSEHOLD_SETTLEMENT_HOUSEHOLD_ID and "
            "HOUSEHOLD_SETTLEMENT_OPERATOR_USER_ID must be set"
        )
    return AuthContext(
        user_id=settings.operator_user_id,
        household_id=settings.household_id,
        role=settings.operator_role,
    )


def format_yen(amount: int, use_color: bool = True) -> str:
    """
    Format yen in accounting style.

    Negative amounts use parentheses: (¥2,500)
    """
    if amount < 0:
        return f"([red]¥{-amount:,}[/red])" if use_color else f"(¥{-amount:,})"
    return f" [green]¥{amount:,}[/green] " if use_color else f" ¥{amount:,} "


def display_settlement(settlement: Settlement):
    """Display a settlement and its transfer lines."""
    status_style = "green" if settlement.is_finalized else "yellow"

    console.print(f"\n[bold]Settlement #{settlement.id}[/bold]")
    console.print(f"  Month: {settlement.year_month}")
    console.print(
        f"  Status: [{status_style}]{settlement.status.value}[/{status_style}]"
    )
    if settlement.is_finalized:
        console.print(
            f"  Finalized by {settlement.finalized_by} at {settlement.finalized_at}"
        )
    console.print()

    if not settlement.lines:
        console.print("[dim]No transfers needed.[/dim]")
        return

    table = Table(title="Transfers", show_header=True, header_style="bold magenta")
    table.add_column("From", style="cyan")
    table.add_column("To", style="cyan")
    table.add_column("Amount", justify="right")
    table.add_column("Description", style="dim")

    for line in settlement.lines:
        table.add_row(
            line.from_user_id,
            line.to_user_id,
            format_yen(line.amount_yen),
            line.description,
        )

    console.print(table)


def display_computation(computation: SettlementComputation):
    """Display the per-member breakdown of a settlement computation."""
    policy = computation.policy
    console.print(f"\n[bold]Settlement preview for {computation.year_month}[/bold]")
    console.print(
        f"  Policy: zero income {policy.apportionment_zero_income.value}, "
        f"rounding {policy.rounding.value}"
    )
    console.print(f"  Shared expenses: {computation.shared_expense_count}")
    console.print()

    table = Table(title="Balances", show_header=True, header_style="bold magenta")
    table.add_column("Member", style="cyan")
    table.add_column("Weight", justify="right", style="dim")
    table.add_column("Fair share", justify="right")
    table.add_column("Paid", justify="right")
    table.add_column("Reimbursement", justify="right")
    table.add_column("Balance", justify="right")

    for user_id, balance in computation.balances.items():
        weight = computation.weights.get(user_id)
        table.add_row(
            user_id,
            f"{float(weight):.2%}" if weight is not None else "-",
            format_yen(computation.shares.get(user_id, 0), use_color=False),
            format_yen(computation.payments.get(user_id, 0), use_color=False),
            format_yen(computation.reimbursements.get(user_id, 0)),
            format_yen(balance),
        )

    console.print(table)

    lines = Table(title="Transfers", show_header=True, header_style="bold magenta")
    lines.add_column("From", style="cyan")
    lines.add_column("To", style="cyan")
    lines.add_column("Amount", justify="right")
    for line in computation.lines:
        lines.add_row(line.from_user_id, line.to_user_id, format_yen(line.amount_yen))
    console.print(lines)

    console.print()
    if computation.unassigned_yen:
        console.print(
            f"  [yellow]⚠️  {format_yen(computation.unassigned_yen, use_color=False)}"
            f" of shared expenses not assigned to anyone[/yellow]"
        )
    if computation.residual_yen == 0:
        console.print("  [green]✓ Balances net to zero[/green]")
    else:
        console.print(
            f"  [yellow]Residual after netting: {computation.residual_yen} yen[/yellow]"
        )


def _run(command, verbose: bool):
    """Load settings, open the database, and run a command with the service."""
    db = None
    try:
        settings = load_settings()
        setup_logging(verbose, settings.log_level)
        db = Database(settings.database_path, busy_timeout=settings.busy_timeout_seconds)
        service = SettlementService(ledger=db, store=db)
        command(service, settings)
    except HouseholdSettlementError as e:
        console.print(f"\n[bold yellow]⚠️  {e}[/bold yellow]\n")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            raise
        sys.exit(1)
    finally:
        if db is not None:
            db.close()


@app.command("init-db")
def init_db(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Create the settlement database schema if it does not exist."""

    def command(service: SettlementService, settings: Settings):
        console.print(f"[green]✓ Database ready at {settings.database_path}[/green]")

    _run(command, verbose)


@app.command()
def preview(
    year: int = typer.Argument(..., help="Year to settle"),
    month: int = typer.Argument(..., help="Month to settle (1-12)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Show the settlement a run would produce (dry-run mode).

    Nothing is written to the database.
    """

    def command(service: SettlementService, settings: Settings):
        auth = operator_context(settings)
        computation = service.preview_settlement(
            auth.household_id, YearMonth.of(year, month), auth
        )
        display_computation(computation)

    _run(command, verbose)


@app.command()
def run(
    year: int = typer.Argument(..., help="Year to settle"),
    month: int = typer.Argument(..., help="Month to settle (1-12)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """
    Compute the month's settlement and save it as a draft.

    Re-running replaces the previous draft. Finalized months are refused.
    """

    def command(service: SettlementService, settings: Settings):
        auth = operator_context(settings)
        settlement = service.run_settlement(
            auth.household_id, YearMonth.of(year, month), auth
        )
        display_settlement(settlement)
        console.print("\n[bold green]✓ Draft settlement saved![/bold green]")
        console.print(
            f"\n[bold]To finalize it, run:[/bold]\n"
            f"  [cyan]household-settlement finalize {settlement.id}[/cyan]\n"
        )

    _run(command, verbose)


@app.command()
def finalize(
    settlement_id: int = typer.Argument(..., help="Settlement ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation prompt"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Finalize a draft settlement. Finalized settlements cannot change."""

    def command(service: SettlementService, settings: Settings):
        auth = operator_context(settings)
        display_settlement(service.find_one(settlement_id, auth))

        if not yes:
            console.print(
                "\n[bold yellow]⚠️  Finalizing cannot be undone[/bold yellow]"
            )
            if not typer.confirm("Continue?", default=False):
                console.print("[yellow]Cancelled.[/yellow]")
                return

        settlement = service.finalize_settlement(settlement_id, auth)
        console.print(
            f"\n[bold green]✓ Settlement #{settlement.id} finalized![/bold green]\n"
        )

    _run(command, verbose)


@app.command()
def show(
    settlement_id: int = typer.Argument(..., help="Settlement ID"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Show a settlement and its transfers."""

    def command(service: SettlementService, settings: Settings):
        display_settlement(service.find_one(settlement_id, operator_context(settings)))

    _run(command, verbose)


@app.command("list")
def list_settlements(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """List the household's settlements, newest month first."""

    def command(service: SettlementService, settings: Settings):
        settlements = service.find_all(operator_context(settings))
        if not settlements:
            console.print("[yellow]No settlements found.[/yellow]")
            return

        table = Table(title="Settlements", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="dim")
        table.add_column("Month")
        table.add_column("Status")
        table.add_column("Transfers", justify="right")
        table.add_column("Total", justify="right")

        for settlement in settlements:
            table.add_row(
                str(settlement.id),
                str(settlement.year_month),
                settlement.status.value,
                str(len(settlement.lines)),
                format_yen(sum(line.amount_yen for line in settlement.lines)),
            )

        console.print(table)

    _run(command, verbose)


if __name__ == "__main__":
    app()
