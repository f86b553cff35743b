"""
CLI interface for the TellBill plan gate.

Lets operators inspect the plan matrix, dry-run gate decisions and look at
the local subscription cache.
"""

import sys
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from tellbill_gate.config.loader import load_gate_config
from tellbill_gate.core.contracts import UsageCounters
from tellbill_gate.core.gate import AccessDecision, FeatureGate
from tellbill_gate.core.plans import Capability, Tier, capabilities_for
from tellbill_gate.core.resolver import minimum_tier_for
from tellbill_gate.core.state import SubscriptionState
from tellbill_gate.storage.db import DEFAULT_DB_PATH
from tellbill_gate.storage.repository import get_repository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_ALLOWED = 0
EXIT_CODE_DENIED = 1
EXIT_CODE_ERROR = 2


def _parse_tier(value: str) -> Tier:
    try:
        return Tier.parse(value)
    except ValueError:
        console.print(f"[red]Unknown tier:[/] {value}")
        sys.exit(EXIT_CODE_ERROR)


def _format_limit(limit: Optional[int]) -> str:
    return "unlimited" if limit is None else str(limit)


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """TellBill plan gate CLI."""
    if ctx.invoked_subcommand is None:
        console.print("TellBill plan gate - Use --help to see available commands")


@app.command()
def init(db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite cache path")):
    """Initialize the local subscription cache."""
    try:
        initialize_schema(db)
        console.print("[green]✓[/] Cache initialized successfully")
        sys.exit(EXIT_CODE_ALLOWED)
    except Exception as e:
        console.print(f"[red]Error initializing cache:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)


@app.command()
def plans():
    """Show the capability matrix for every tier."""
    table = Table(title="Plan Capabilities")
    table.add_column("Capability")
    for tier in sorted(Tier):
        table.add_column(tier.label.capitalize(), justify="center")

    limit_rows = [
        ("voice recordings", "voice_recordings_allowed"),
        ("invoices", "invoices_allowed"),
        ("projects", "projects_allowed"),
    ]
    for label, attr in limit_rows:
        table.add_row(label, *[_format_limit(getattr(capabilities_for(t), attr)) for t in sorted(Tier)])

    for capability in Capability:
        cells = ["✓" if capability in capabilities_for(t).features else "-" for t in sorted(Tier)]
        table.add_row(capability.value, *cells)

    console.print(table)


@app.command()
def check(
    action: str = typer.Argument(..., help="Capability name, e.g. scope_proof"),
    tier: str = typer.Option("free", "--tier", "-t", help="Tier to evaluate"),
    voice_used: int = typer.Option(0, "--voice-used", help="Voice recordings already used"),
    invoices_used: int = typer.Option(0, "--invoices-used", help="Invoices already created"),
):
    """
    Dry-run a gate decision.

    Exits 0 when the action is allowed and 1 when it is denied.
    """
    state = SubscriptionState(
        tier=_parse_tier(tier),
        counters=UsageCounters(voice_recordings_used=voice_used, invoices_created=invoices_used),
    )
    decision = FeatureGate(state).can_perform(action)
    _display_decision(action, decision)
    sys.exit(EXIT_CODE_ALLOWED if decision.allowed else EXIT_CODE_DENIED)


@app.command("minimum-tier")
def minimum_tier(capability: str = typer.Argument(..., help="Capability name")):
    """Show the lowest tier that grants a capability."""
    if Capability.parse(capability) is None:
        console.print(f"[red]Unknown capability:[/] {capability}")
        sys.exit(EXIT_CODE_ERROR)
    console.print(f"{capability}: {minimum_tier_for(capability).label}")


@app.command()
def status(
    db: str = typer.Option(DEFAULT_DB_PATH, "--db", help="SQLite cache path"),
    account: str = typer.Option("local", "--account", "-a", help="Account id"),
):
    """Show the cached tier and usage counters for an account."""
    try:
        repository = get_repository(db)
        cached_tier = repository.load_tier(account)
        counters = repository.load_counters(account)
    except Exception as e:
        console.print(f"[red]Error reading cache:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)

    if cached_tier is None and counters is None:
        console.print(f"\n[bold yellow]Nothing cached for account {account}[/]\n")
        return

    console.print(f"\n[bold]Account:[/bold] {account}")
    console.print(f"Tier: {cached_tier.label if cached_tier is not None else 'unknown (free)'}")
    counters = counters or UsageCounters()
    console.print(f"Voice recordings used: {counters.voice_recordings_used}")
    console.print(f"Invoices created: {counters.invoices_created}")


@app.command("verify-config")
def verify_config(path: str = typer.Argument(..., help="Path to YAML config")):
    """Load and validate a configuration file."""
    try:
        config = load_gate_config(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Invalid configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_ERROR)
    console.print("[green]✓[/] Configuration is valid")
    console.print(f"Backend: {config.backend.base_url} (timeout {config.backend.timeout_seconds}s)")
    console.print(f"SDK retry: {config.sdk.max_attempts} attempts, {config.sdk.retry_delay_seconds}s apart")
    console.print(f"Cache: {config.storage.db_path}")


def _display_decision(action: str, decision: AccessDecision):
    """Print a gate decision."""
    console.print(f"\n[bold]Action:[/bold] {action}")
    if decision.allowed:
        console.print("[green]Verdict: ALLOWED[/]")
        if decision.remaining_usage is not None:
            console.print(f"Remaining uses: {decision.remaining_usage}")
        return

    console.print("[red]Verdict: DENIED[/]")
    console.print(f"Reason: {decision.reason.value}")
    if decision.required_tier is not None:
        console.print(f"Required tier: {decision.required_tier.label}")
    console.print(decision.message)


if __name__ == "__main__":
    app()
