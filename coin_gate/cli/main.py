"""
CLI interface for coin-gate.

Provides command-line access to balances, generation and one-time downloads.
"""

import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from coin_gate.config.loader import ServiceConfig, default_config, load_service_config
from coin_gate.core.artifact_store import ArtifactStore
from coin_gate.core.errors import CoinGateError
from coin_gate.core.ledger import Ledger
from coin_gate.core.orchestrator import build_orchestrator
from coin_gate.providers.base import GenerationRequest
from coin_gate.storage.models import EntryKind
from coin_gate.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_PATH = "coin_gate.yaml"


def _config(ctx: typer.Context) -> ServiceConfig:
    return ctx.obj["config"]


def _ledger(config: ServiceConfig) -> Ledger:
    initialize_schema(config.storage.db_path)
    return Ledger(config.storage.db_path)


def _store(config: ServiceConfig) -> ArtifactStore:
    initialize_schema(config.storage.db_path)
    return ArtifactStore(config.storage.artifact_dir, config.storage.db_path)


def _fail(error: Exception) -> None:
    """Report an error and exit with the failing code."""
    if isinstance(error, CoinGateError):
        console.print(f"[red]Error ({error.kind}):[/] {error.message}")
        if error.retryable:
            console.print("[yellow]This request is safe to retry.[/]")
    else:
        console.print(f"[red]Error:[/] {str(error)}")
    sys.exit(EXIT_CODE_FAIL)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="COIN_GATE_CONFIG",
        help="Path to the YAML service configuration"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """coin-gate CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    try:
        if config_path is None and Path(DEFAULT_CONFIG_PATH).exists():
            config_path = DEFAULT_CONFIG_PATH
        config = load_service_config(config_path) if config_path else default_config()
    except (OSError, ValueError, yaml.YAMLError) as e:
        _fail(e)
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("coin-gate - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the coin-gate database."""
    try:
        initialize_schema(_config(ctx).storage.db_path)
        console.print("[green]✓[/] Database initialized successfully")
    except Exception as e:
        _fail(e)
    sys.exit(EXIT_CODE_PASS)


@app.command("open-account")
def open_account(
    ctx: typer.Context,
    account_id: str = typer.Argument(..., help="Verified account identifier"),
    balance: int = typer.Option(0, "--balance", "-b", help="Opening coin balance"),
):
    """Create an account with an opening balance."""
    try:
        account = _ledger(_config(ctx)).open_account(account_id, balance)
    except (CoinGateError, ValueError) as e:
        _fail(e)
    console.print(f"[green]✓[/] Opened {account.account_id} with {account.balance} coins")


@app.command()
def balance(ctx: typer.Context, account_id: str = typer.Argument(...)):
    """Show an account's coin balance."""
    try:
        coins = _ledger(_config(ctx)).get_balance(account_id)
    except CoinGateError as e:
        _fail(e)
    console.print(f"{account_id}: [bold]{coins}[/] coins")


@app.command()
def buy(
    ctx: typer.Context,
    account_id: str = typer.Argument(...),
    amount: int = typer.Argument(..., help="Coins purchased"),
):
    """Record a coin purchase."""
    _credit(ctx, account_id, amount, EntryKind.CREDIT_PURCHASE)


@app.command()
def earn(
    ctx: typer.Context,
    account_id: str = typer.Argument(...),
    amount: int = typer.Option(1, "--amount", "-a", help="Coins earned (one per ad view)"),
):
    """Record coins earned from an ad view."""
    _credit(ctx, account_id, amount, EntryKind.CREDIT_EARNED)


def _credit(ctx: typer.Context, account_id: str, amount: int, kind: EntryKind) -> None:
    try:
        entry = _ledger(_config(ctx)).credit(account_id, amount, kind)
    except (CoinGateError, ValueError) as e:
        _fail(e)
    console.print(f"[green]✓[/] {entry.detail}; balance is now {entry.balance_after}")


@app.command()
def history(
    ctx: typer.Context,
    account_id: str = typer.Argument(...),
    page: int = typer.Option(1, "--page", "-p", min=1),
    limit: int = typer.Option(10, "--limit", "-l", min=1),
):
    """List an account's ledger entries, newest first."""
    try:
        result = _ledger(_config(ctx)).history(account_id, page=page, limit=limit)
    except CoinGateError as e:
        _fail(e)

    table = Table(title=f"Ledger for {account_id} (page {result.page}/{max(result.pages, 1)})")
    table.add_column("Time")
    table.add_column("Kind")
    table.add_column("Delta", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Detail")
    for entry in result.entries:
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.kind.value,
            f"{entry.delta:+d}",
            str(entry.balance_after),
            entry.detail,
        )
    console.print(table)
    console.print(f"{result.total} entries")


@app.command()
def generate(
    ctx: typer.Context,
    account_id: str = typer.Argument(...),
    prompt: str = typer.Argument(..., help="What to draw"),
    negative_prompt: Optional[str] = typer.Option(None, "--negative-prompt", "-n"),
    width: int = typer.Option(1024, "--width"),
    height: int = typer.Option(1024, "--height"),
    samples: int = typer.Option(1, "--samples", "-s", help="Images to generate"),
    cfg_scale: float = typer.Option(7.0, "--cfg-scale"),
    steps: int = typer.Option(30, "--steps"),
    seed: int = typer.Option(0, "--seed"),
    style: str = typer.Option("digital-art", "--style"),
    request_id: Optional[str] = typer.Option(
        None, "--request-id", help="Idempotency key; repeats return the first result"
    ),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Seconds to wait for capacity"),
):
    """Spend coins to generate images."""
    try:
        request_kwargs = dict(
            prompt=prompt,
            width=width,
            height=height,
            samples=samples,
            cfg_scale=cfg_scale,
            steps=steps,
            seed=seed,
            style_preset=style,
        )
        if negative_prompt is not None:
            request_kwargs["negative_prompt"] = negative_prompt
        request = GenerationRequest(**request_kwargs)
        orchestrator = build_orchestrator(_config(ctx))
        result = orchestrator.generate(account_id, request, timeout=timeout, request_id=request_id)
    except (CoinGateError, ValueError) as e:
        _fail(e)

    verb = "Replayed" if result.replayed else "Generated"
    console.print(f"[green]✓[/] {verb} {len(result.artifacts)} image(s) for {result.coins_charged} coins")
    for artifact in result.artifacts:
        console.print(f"  {artifact.artifact_id}")
    console.print(f"Remaining balance: {result.remaining_balance}")


@app.command()
def artifacts(
    ctx: typer.Context,
    account_id: str = typer.Argument(...),
    page: int = typer.Option(1, "--page", "-p", min=1),
    limit: int = typer.Option(10, "--limit", "-l", min=1),
):
    """List an account's generated artifacts."""
    result = _store(_config(ctx)).list_for_account(account_id, page=page, limit=limit)
    if not result.artifacts:
        console.print("[dim]No artifacts found.[/]")
        return

    table = Table(title=f"Artifacts for {account_id}")
    table.add_column("Artifact")
    table.add_column("State")
    table.add_column("Coins", justify="right")
    table.add_column("Prompt")
    for artifact in result.artifacts:
        table.add_row(
            artifact.artifact_id,
            artifact.download_state.value,
            str(artifact.coins_charged),
            str(artifact.params.get("prompt", "")),
        )
    console.print(table)


@app.command()
def download(
    ctx: typer.Context,
    artifact_id: str = typer.Argument(...),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Destination file"),
):
    """Download an artifact. Each artifact can be downloaded only once."""
    destination = output or Path(f"{artifact_id}.png")
    store = _store(_config(ctx))
    # The artifact is consumed on open, so the staging file must exist first
    try:
        if destination.is_dir():
            raise IsADirectoryError(f"Destination is a directory: {destination}")
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=".download-")
    except OSError as e:
        _fail(e)
    written = 0
    try:
        with os.fdopen(fd, "wb") as f, store.get_once(artifact_id) as stream:
            for chunk in stream:
                f.write(chunk)
                written += len(chunk)
        os.replace(tmp_name, destination)
    except (CoinGateError, OSError) as e:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        _fail(e)
    console.print(f"[green]✓[/] Saved {written} bytes to {destination}")


@app.command()
def verify(ctx: typer.Context, account_id: str = typer.Argument(...)):
    """Check that an account's balance matches its ledger entries."""
    try:
        consistent = _ledger(_config(ctx)).is_consistent(account_id)
    except CoinGateError as e:
        _fail(e)
    if not consistent:
        console.print(f"[red]✗[/] Balance of {account_id} does not match its ledger")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Balance of {account_id} matches its ledger")


@app.command()
def discard(
    ctx: typer.Context,
    account_id: str = typer.Argument(...),
    artifact_id: str = typer.Argument(...),
):
    """Delete one of an account's artifacts."""
    try:
        _store(_config(ctx)).discard(account_id, artifact_id)
    except CoinGateError as e:
        _fail(e)
    console.print(f"[green]✓[/] Deleted {artifact_id}")


if __name__ == "__main__":
    app()
