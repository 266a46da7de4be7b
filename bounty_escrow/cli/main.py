"""
CLI interface for the bounty escrow engine.

Operator commands: schema setup, fee quotes, quota inspection and the
reconciliation passes.
"""

import logging
import os
import sys
from decimal import Decimal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from bounty_escrow.config.loader import DEFAULT_CONFIG, EngineConfig, load_engine_config
from bounty_escrow.core.eligibility import PayoutEligibilityGate
from bounty_escrow.core.errors import EscrowError
from bounty_escrow.core.fees import calculate_fees, from_minor_units
from bounty_escrow.core.gateway import GatewayClient
from bounty_escrow.core.lifecycle import EscrowEngine
from bounty_escrow.core.quota import QuotaLedger
from bounty_escrow.core.reconcile import Reconciler, RetryResult
from bounty_escrow.sdk.stripe_gateway import StripeGateway
from bounty_escrow.storage.db import DEFAULT_DB_PATH, read_connection
from bounty_escrow.storage.models import Tier
from bounty_escrow.storage.repository import get_bounty, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DB_OPTION = typer.Option(DEFAULT_DB_PATH, "--db", help="Path to the SQLite database")
CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML engine config")


def _load_config(path: Optional[str]) -> EngineConfig:
    return load_engine_config(path) if path else DEFAULT_CONFIG


def _format_currency(amount: Decimal) -> str:
    return f"${amount:,.2f}"


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {message}")
    sys.exit(EXIT_CODE_FAIL)


def _unresolved_tier(user_id: str) -> Tier:
    raise LookupError(f"No tier source configured for user {user_id}")


def _build_engine(db_path: str, config: EngineConfig) -> EscrowEngine:
    """Engine wired to Stripe, keyed from the environment."""
    api_key = os.environ.get("STRIPE_SECRET_KEY")
    webhook_secret = os.environ.get("STRIPE_WEBHOOK_SECRET")
    if not api_key or not webhook_secret:
        raise EscrowError("STRIPE_SECRET_KEY and STRIPE_WEBHOOK_SECRET must be set")

    gateway = GatewayClient(StripeGateway(api_key, webhook_secret), config.escrow)
    return EscrowEngine(
        gateway=gateway,
        quota=QuotaLedger(_unresolved_tier, db_path, config.quota),
        eligibility=PayoutEligibilityGate(gateway, db_path, settings=config.escrow),
        db_path=db_path,
        config=config,
    )


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """Bounty escrow engine CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("Bounty escrow - Use --help to see available commands")


@app.command()
def init(db: str = DB_OPTION):
    """Initialize the escrow database."""
    try:
        initialize_schema(db)
        console.print(f"[green]✓[/] Database initialized at {db}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def quote(
    amount: str = typer.Argument(..., help="Amount each creator receives"),
    creators: int = typer.Option(1, "--creators", "-n", help="Number of creator slots"),
    config: Optional[str] = CONFIG_OPTION,
):
    """Show what a business pays to fund a bounty."""
    try:
        breakdown = calculate_fees(amount, creators, _load_config(config).fees)
    except (EscrowError, ValueError, FileNotFoundError) as e:
        _fail(str(e))

    table = Table(title="Bounty funding quote")
    table.add_column("Item")
    table.add_column("Amount", justify="right")
    table.add_row("Per creator", _format_currency(breakdown.per_creator_amount))
    table.add_row("Creators", str(breakdown.creator_count))
    table.add_row("Bounty total", _format_currency(breakdown.total_bounty_amount))
    table.add_row("Platform fee", _format_currency(breakdown.platform_fee))
    table.add_row("[bold]Business pays[/]", f"[bold]{_format_currency(breakdown.business_total)}[/]")
    table.add_row("Each creator earns", _format_currency(breakdown.creator_earnings))
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def usage(
    user_id: str = typer.Argument(..., help="User to inspect"),
    tier: Tier = typer.Option(Tier.FREE, "--tier", "-t", help="Subscription tier of the user"),
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Show a user's quota usage for the current billing period."""
    try:
        ledger = QuotaLedger(lambda _: tier, db, _load_config(config).quota)
        current = ledger.get_usage(user_id)
    except (EscrowError, ValueError, FileNotFoundError) as e:
        _fail(str(e))

    def _limit(value: int) -> str:
        return "unlimited" if value == -1 else str(value)

    console.print(f"\n[bold]Usage for {user_id}[/] ({tier.value}, period {current.period})")
    console.print(f"Applications: {current.applications_used} / {_limit(current.applications_limit)}")
    console.print(f"Bounties created: {current.bounties_created} / {_limit(current.bounties_limit)}")
    console.print(f"Earnings: {_format_currency(from_minor_units(current.total_earnings))}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def ledger(
    bounty_id: Optional[str] = typer.Argument(None, help="Bounty to inspect; all bounties if omitted"),
    rederive: bool = typer.Option(False, "--rederive", help="Recompute the ledger from released escrows"),
    db: str = DB_OPTION,
):
    """Show or repair bounty payout ledgers."""
    reconciler = Reconciler(db)
    try:
        if bounty_id is None:
            checks = reconciler.check_ledgers()
            if not checks:
                console.print("[green]✓[/] All payout ledgers are consistent")
                sys.exit(EXIT_CODE_PASS)
            for check in checks:
                console.print(f"[yellow]Bounty {check.bounty_id}[/]: {'; '.join(check.violations)}")
            sys.exit(EXIT_CODE_FAIL)

        if rederive:
            bounty = reconciler.rederive_payout_ledger(bounty_id)
        else:
            with read_connection(db) as conn:
                bounty = get_bounty(conn, bounty_id)
            if bounty is None:
                _fail(f"Bounty {bounty_id} not found")
    except EscrowError as e:
        _fail(str(e))

    console.print(f"\n[bold]Bounty {bounty.id}[/] - {bounty.title}")
    console.print(f"Payment status: {bounty.payment_status.value}")
    console.print(f"Creators paid: {bounty.paid_creators_count} / {bounty.max_creators}")
    console.print(f"Total paid: {_format_currency(from_minor_units(bounty.total_paid_amount))}")
    console.print(f"Remaining budget: {_format_currency(from_minor_units(bounty.remaining_budget))}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reconcile(
    db: str = DB_OPTION,
    config: Optional[str] = CONFIG_OPTION,
):
    """Retry transfers and refunds whose outcome was never recorded."""
    try:
        engine_config = _load_config(config)
        engine = _build_engine(db, engine_config)
    except (EscrowError, ValueError, FileNotFoundError) as e:
        _fail(str(e))

    try:
        outcomes = Reconciler(db, engine).retry_dispatches()
    finally:
        engine.gateway.close()

    if not outcomes:
        console.print("[green]✓[/] Nothing to reconcile")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Reconciliation")
    table.add_column("Escrow")
    table.add_column("Operation")
    table.add_column("Result")
    table.add_column("Detail")
    for outcome in outcomes:
        table.add_row(
            outcome.escrow_id,
            outcome.operation.value,
            outcome.result.value,
            outcome.gateway_reference or outcome.detail or "",
        )
    console.print(table)
    failed = any(outcome.result != RetryResult.COMPLETED for outcome in outcomes)
    sys.exit(EXIT_CODE_FAIL if failed else EXIT_CODE_PASS)


@app.command()
def overdue(db: str = DB_OPTION):
    """List escrows still held after their hold period."""
    records = Reconciler(db).overdue_holds()
    if not records:
        console.print("[green]✓[/] No overdue escrows")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title="Overdue escrows")
    table.add_column("Escrow")
    table.add_column("Bounty")
    table.add_column("Business")
    table.add_column("Amount", justify="right")
    table.add_column("Held until")
    for record in records:
        table.add_row(
            record.id,
            record.bounty_id or "",
            record.business_id,
            _format_currency(from_minor_units(record.amount)),
            record.held_until.isoformat(),
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
