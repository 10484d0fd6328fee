"""
cosigner CLI.

Usage:
    cosigner [OPTIONS] COMMAND [ARGS]...
"""
from __future__ import annotations

import asyncio
from typing import List, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from web3 import Web3

from . import __version__
from .config import load_settings
from .coordinator import LifecycleCoordinator, LifecycleOutcome
from .exceptions import CosignerValidationError
from .logging_utils import setup_logging
from .operations import OperationIntent, format_ether, parse_ether, parse_recipient
from .persistence import InMemoryStorage, JsonFileStorage, PersistenceAdapter
from .primitives import SimulatedSafeAccount
from .runtime import AppContext, DEV_WALLET_CONNECTOR_ID, resolve_runtime_policy
from .store import TrackedOperation

console = Console()


@click.group()
@click.version_option(version=__version__, message="%(prog)s %(version)s")
@click.option("--storage", "storage_path", envvar="COSIGNER_STORAGE_PATH", help="Storage file")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.pass_context
def cli(ctx, storage_path: str | None, verbose: bool):
    """cosigner - coordinate Safe multisig transactions."""
    ctx.ensure_object(dict)

    settings = load_settings()
    setup_logging("DEBUG" if verbose else settings.log_level, json_format=settings.log_json)

    ctx.obj["settings"] = settings
    ctx.obj["storage"] = JsonFileStorage(storage_path or settings.storage_path)


def _short(value: Optional[str], keep: int = 10) -> str:
    if not value:
        return "-"
    if len(value) <= keep * 2:
        return value
    return f"{value[:keep]}...{value[-6:]}"


def _status_markup(tracked: TrackedOperation) -> str:
    colors = {"pending": "yellow", "ready": "cyan", "executed": "green"}
    color = colors.get(tracked.status.value, "white")
    return f"[{color}]{tracked.status.value}[/{color}]"


def _operations_table(title: str, operations: List[TrackedOperation]) -> Table:
    table = Table(title=title)
    table.add_column("Hash", style="cyan")
    table.add_column("Intent")
    table.add_column("To")
    table.add_column("Value", justify="right")
    table.add_column("Confirmations", justify="right")
    table.add_column("Status")
    table.add_column("Tx Hash")

    for tracked in operations:
        confirmations = f"{tracked.confirmations}/{tracked.threshold}"
        if tracked.needs_rebuild:
            confirmations += " *"
        table.add_row(
            _short(tracked.operation_hash),
            tracked.intent.value,
            _short(tracked.to, 6),
            format_ether(tracked.value),
            confirmations,
            _status_markup(tracked),
            _short(tracked.execution_tx_hash),
        )
    return table


def _load_tracked(ctx, account: str) -> List[TrackedOperation]:
    adapter = PersistenceAdapter(ctx.obj["storage"])
    return [TrackedOperation.from_persisted(record) for record in adapter.load(account)]


def _validate_account(account: str) -> str:
    try:
        return parse_recipient(account)
    except CosignerValidationError:
        raise click.BadParameter(f"Invalid account address: {account}")


@cli.command()
@click.option(
    "--context",
    "app_context",
    type=click.Choice([c.value for c in AppContext]),
    default=AppContext.STANDALONE.value,
    help="Where the engine runs",
)
@click.option("--connected/--disconnected", default=True, help="Wallet connection state")
@click.option("--signer-kind", default=None, help="Wallet connector id")
@click.option("--chain-id", type=int, default=11155111, help="Chain id")
@click.option("--rpc-url", default=None, help="RPC endpoint (local endpoints use local-only mode)")
@click.pass_context
def policy(ctx, app_context: str, connected: bool, signer_kind: str | None, chain_id: int, rpc_url: str | None):
    """Show the runtime policy for a session."""
    settings = ctx.obj["settings"]
    resolved = resolve_runtime_policy(
        app_context,
        is_connected=connected,
        signer_kind=signer_kind,
        remote_service_enabled=settings.tx_service_enabled,
        remote_service_supports_chain=settings.remote_service_supports_chain(chain_id, rpc_url),
    )

    table = Table(title="Runtime Policy")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    for key, value in resolved.to_dict().items():
        table.add_row(key, str(value))
    console.print(table)


@cli.command()
@click.argument("account")
@click.pass_context
def pending(ctx, account: str):
    """List stored operations awaiting confirmations or execution."""
    account = _validate_account(account)
    operations = [t for t in _load_tracked(ctx, account) if not t.is_executed]
    if not operations:
        console.print("[yellow]No pending transactions[/yellow]")
        return
    console.print(_operations_table("Pending Transactions", operations))
    if any(t.needs_rebuild for t in operations):
        console.print("[dim]* restored from storage, rebuilt on next confirmation[/dim]")


@cli.command()
@click.argument("account")
@click.pass_context
def history(ctx, account: str):
    """List executed operations."""
    account = _validate_account(account)
    operations = [t for t in _load_tracked(ctx, account) if t.is_executed]
    if not operations:
        console.print("[yellow]No executed transactions[/yellow]")
        return
    operations.sort(key=lambda t: t.submitted_at, reverse=True)
    console.print(_operations_table("Transaction History", operations))


@cli.command()
@click.argument("account")
@click.option("--yes", is_flag=True, help="Do not prompt for confirmation")
@click.pass_context
def clear(ctx, account: str, yes: bool):
    """Delete all stored operations for an account."""
    account = _validate_account(account)
    if not yes and not click.confirm(f"Clear transaction history for {account}?"):
        console.print("[yellow]Aborted[/yellow]")
        return
    if PersistenceAdapter(ctx.obj["storage"]).clear(account):
        console.print("[green]✓ History cleared[/green]")
    else:
        console.print("[red]Error: storage unavailable[/red]")


# =============================================================================
# Demo
# =============================================================================

def _demo_address(label: str) -> str:
    return Web3.to_checksum_address(Web3.keccak(text=label)[-20:])


def _print_outcome(step: str, outcome: LifecycleOutcome) -> None:
    if outcome.ok and outcome.tracked:
        tracked = outcome.tracked
        console.print(
            f"[green]✓[/green] {step}: {_status_markup(tracked)} "
            f"({tracked.confirmations}/{tracked.threshold}) {_short(tracked.operation_hash)}"
        )
        if tracked.execution_tx_hash:
            console.print(f"  Tx: [cyan]{tracked.execution_tx_hash}[/cyan]")
    else:
        console.print(f"[red]✗[/red] {step}: {outcome.message}")


async def _run_demo(value_wei: int, recipient: str) -> None:
    owners = [_demo_address("cosigner-demo-owner-1"), _demo_address("cosigner-demo-owner-2")]
    account = SimulatedSafeAccount(
        address=_demo_address("cosigner-demo-safe"),
        chain_id=31337,
        owners=owners,
        threshold=2,
        signer_address=owners[0],
    )
    storage = InMemoryStorage()
    session_policy = resolve_runtime_policy(
        AppContext.STANDALONE,
        is_connected=True,
        signer_kind=DEV_WALLET_CONNECTOR_ID,
    )

    console.print(f"Safe: [cyan]{account.address}[/cyan] (2 of 2, simulated)")

    first = LifecycleCoordinator(account, session_policy, storage)
    console.print(f"Mode: {first.substrate_label()}\n")
    built = await first.build_and_propose(OperationIntent(to=recipient, value=value_wei))
    _print_outcome("Owner 1 proposes", built)
    if not built.ok:
        return

    # Second owner opens a fresh session against the same storage
    account.use_signer(owners[1])
    second = LifecycleCoordinator(account, session_policy, storage)
    confirmed = await second.confirm(built.operation_hash)
    _print_outcome("Owner 2 confirms", confirmed)

    executed = await second.execute(built.operation_hash)
    _print_outcome("Owner 2 executes", executed)

    again = await second.execute(built.operation_hash)
    _print_outcome("Execute again", again)


@cli.command()
@click.option("--value", default="0.01", help="Amount in ether")
@click.option("--to", "recipient", default=None, help="Recipient address")
def demo(value: str, recipient: str | None):
    """Run the 2-of-2 co-signing flow against a simulated Safe."""
    try:
        value_wei = parse_ether(value)
    except CosignerValidationError as e:
        raise click.BadParameter(e.message)

    console.print(Panel(
        "[bold blue]cosigner demo[/bold blue]\n\n"
        "Two owners co-sign a transfer on a simulated 2-of-2 Safe.\n"
        "No real transactions are executed.",
        border_style="blue",
    ))
    asyncio.run(_run_demo(value_wei, recipient or _demo_address("cosigner-demo-recipient")))


if __name__ == "__main__":
    cli()
