"""Credit card pot CLI."""

from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Generator

import typer
from rich.table import Table

from credit_pot.src.config import MONZO, Settings, db_path_from_env
from credit_pot.src.database import CredentialDatabase
from credit_pot.src.errors import ConfigError, CreditPotError
from credit_pot.src.models import (
    AggregatorAccountId,
    AutomationRule,
    DirectApiPotId,
    OutcomeStatus,
    RuleCard,
    RunReport,
    SourceAccount,
    TargetPot,
)
from credit_pot.src.oauth import authorize
from credit_pot.src.services import Services, open_services
from credit_pot.src.utils import configure_logging, console, load_env_secrets

app = typer.Typer(help="Keep a Monzo pot topped up to cover your credit card balances.")
rules_app = typer.Typer(help="Manage automation rules.")
app.add_typer(rules_app, name="rules")

STATUS_STYLES = {
    OutcomeStatus.TRANSFERRED: "green",
    OutcomeStatus.DRY_RUN: "cyan",
    OutcomeStatus.ALIGNED: "dim",
    OutcomeStatus.FAILED: "red",
}


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")) -> None:
    """Load .env.secrets and configure logging for every command."""
    load_env_secrets()
    configure_logging(verbose)


@contextmanager
def _services() -> Generator[Services, None, None]:
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from e
    with open_services(settings) as services:
        yield services


def _fmt_ms(ms: int | None) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=UTC).strftime("%Y-%m-%d %H:%M:%S")


@app.command()
def auth(
    provider: str = typer.Argument(..., help="'monzo' for write access, or a TrueLayer key like 'ob-monzo'"),
    user: str = typer.Option(..., "--user", "-u", help="User ID to store the grant under"),
) -> None:
    """Connect a provider and store its encrypted tokens."""
    with _services() as services:
        try:
            record = authorize(services.lifecycle_for(provider), services.settings, user, provider)
        except CreditPotError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1) from e
    if record is None:
        console.print("[yellow]Authorization cancelled.[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]Connected {provider} for {user}[/green] (expires {_fmt_ms(record.expires_at)} UTC)")


@app.command()
def disconnect(
    provider: str = typer.Argument(..., help="Provider key to disconnect"),
    user: str = typer.Option(..., "--user", "-u", help="User ID"),
) -> None:
    """Soft-delete a stored credential."""
    with _services() as services:
        removed = services.store.soft_delete(user, provider)
    if removed:
        console.print(f"[yellow]Disconnected {provider} for {user}.[/yellow]")
    else:
        console.print(f"[dim]No {provider} credential for {user}.[/dim]")


@app.command()
def restore(
    provider: str = typer.Argument(..., help="Provider key to restore"),
    user: str = typer.Option(..., "--user", "-u", help="User ID"),
) -> None:
    """Restore the most recently disconnected credential."""
    with _services() as services:
        record = services.store.restore(user, provider)
    if record:
        console.print(f"[green]Restored {provider} for {user}.[/green]")
    else:
        console.print(f"[dim]Nothing to restore for {provider} ({user}).[/dim]")


@app.command()
def status(user: str = typer.Option(..., "--user", "-u", help="User ID")) -> None:
    """Show a user's connections and token states."""
    with _services() as services:
        records = services.store.get_all(user)
        table = Table(title=f"Connections for {user}", show_header=True, header_style="bold")
        table.add_column("Provider")
        table.add_column("State")
        table.add_column("Expires (UTC)")
        table.add_column("Refresh token", justify="center")
        table.add_column("Updated (UTC)")
        for record in records:
            state = services.lifecycle_for(record.provider).state(user, record.provider)
            table.add_row(
                record.provider,
                state.value,
                _fmt_ms(record.expires_at),
                "yes" if record.refresh_token_ciphertext else "no",
                _fmt_ms(record.updated_at),
            )
        rules = services.rules.for_user(user)

    if not records:
        console.print(f"[red]No connections for {user}[/red]")
        return
    console.print(table)
    console.print(f"Automation rules: {len(rules)} ({sum(r.is_active for r in rules)} active)")


def print_report(report: RunReport) -> None:
    """Print a run report as a table."""
    table = Table(title="Reconciliation", show_header=True, header_style="bold")
    table.add_column("User")
    table.add_column("Status")
    table.add_column("Amount", justify="right")
    table.add_column("Detail")
    for outcome in report.outcomes:
        style = STATUS_STYLES.get(outcome.status, "yellow")
        amount = f"£{outcome.amount:,.2f}" if outcome.amount is not None else "-"
        table.add_row(outcome.user_id, f"[{style}]{outcome.status.value}[/{style}]", amount, outcome.detail)
    console.print()
    console.print(table)


@app.command()
def run(
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Compute transfers without moving money"),
) -> None:
    """Reconcile every user's credit card pot once."""
    with _services() as services:
        report = services.job(dry_run=dry_run).run()
    print_report(report)
    if report.count(OutcomeStatus.FAILED):
        raise typer.Exit(1)


@rules_app.command("list")
def rules_list(user: str = typer.Option(..., "--user", "-u", help="User ID")) -> None:
    """List a user's automation rules."""
    with _services() as services:
        rules = services.rules.for_user(user)
    table = Table(title=f"Automation rules for {user}", show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Active", justify="center")
    table.add_column("Pot")
    table.add_column("Cards")
    table.add_column("Minimum", justify="right")
    for rule in rules:
        table.add_row(
            rule.id,
            "yes" if rule.is_active else "no",
            f"{rule.target_pot.pot_name} ({rule.target_pot.pot_id})",
            ", ".join(f"{c.provider}:{c.account_id}" for c in rule.credit_cards),
            f"£{rule.minimum_bank_balance / 100:,.2f}",
        )
    console.print(table)


@rules_app.command("add")
def rules_add(
    user: str = typer.Option(..., "--user", "-u", help="User ID"),
    pot_id: str = typer.Option(..., "--pot-id", help="Monzo API pot ID"),
    pot_name: str = typer.Option("Credit Cards", "--pot-name", help="Pot display name"),
    account_id: str = typer.Option(..., "--account-id", help="Monzo API main account ID"),
    card: list[str] = typer.Option(..., "--card", "-c", help="provider:account_id, repeatable"),
    minimum: int = typer.Option(0, "--minimum", "-m", help="Minimum main account balance in pence"),
    inactive: bool = typer.Option(False, "--inactive", help="Create the rule disabled"),
) -> None:
    """Create an automation rule."""
    cards = []
    for spec in card:
        provider, sep, card_id = spec.partition(":")
        if not sep or not provider or not card_id:
            console.print(f"[red]Invalid --card {spec!r}, expected provider:account_id[/red]")
            raise typer.Exit(1)
        cards.append(RuleCard(provider=provider, account_id=AggregatorAccountId(card_id)))

    rule = AutomationRule(
        user_id=user,
        is_active=not inactive,
        source_account=SourceAccount(provider=MONZO, account_id=account_id),
        target_pot=TargetPot(pot_id=DirectApiPotId(pot_id), pot_name=pot_name),
        credit_cards=cards,
        minimum_bank_balance=minimum,
    )
    with _services() as services:
        saved = services.rules.save(rule)
    console.print(f"[green]Created rule {saved.id}[/green]")


@rules_app.command("remove")
def rules_remove(
    rule_id: str = typer.Argument(..., help="Rule ID"),
    user: str = typer.Option(..., "--user", "-u", help="User ID"),
) -> None:
    """Delete an automation rule."""
    with _services() as services:
        deleted = services.rules.delete(user, rule_id)
    if not deleted:
        console.print(f"[red]No rule {rule_id} for {user}[/red]")
        raise typer.Exit(1)
    console.print(f"[yellow]Deleted rule {rule_id}[/yellow]")


@app.command()
def db(
    reset: bool = typer.Option(False, "--reset", help="Drop and recreate all tables"),
    stats: bool = typer.Option(False, "--stats", "-s", help="Show database statistics"),
) -> None:
    """Manage the DuckDB database."""
    database = CredentialDatabase(db_path_from_env())

    if reset:
        confirm = typer.confirm("This will DELETE all stored credentials and rules. Continue?")
        if confirm:
            database.reset()
        else:
            console.print("[dim]Aborted.[/dim]")
            raise typer.Exit(1)
    elif stats:
        database.print_stats()
    else:
        console.print("[dim]Ensuring database schema...[/dim]")
        database.setup()
        database.print_stats()


if __name__ == "__main__":
    app()
