"""
CLI entry point for the custody worker.
"""

import logging
from pathlib import Path
from typing import Optional

import structlog
import typer

from .config import WorkerConfig
from .models import Asset, Network, format_amount

app = typer.Typer(
    name="custody-worker",
    help="Custodial deposit monitor and treasury sweep worker",
    add_completion=False,
)

ConfigOption = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to .env configuration file",
)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog with level filtering and a console or JSON renderer."""
    renderer = (
        structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
    )


def _load(config_path: Optional[Path]) -> WorkerConfig:
    config = WorkerConfig.from_env(config_path)
    configure_logging(config.settings.log_level, config.settings.log_json)
    return config


@app.command()
def run(
    config_path: Optional[Path] = ConfigOption,
    once: bool = typer.Option(
        False,
        "--once",
        help="Run a single cycle and exit (useful for testing)",
    ),
) -> None:
    """
    Start the worker: detect deposits, sweep credited balances, reclaim energy.

    Run exactly one worker per database; two workers could sweep the same
    address twice.
    """
    from .worker import CustodyWorker

    config = _load(config_path)
    worker = CustodyWorker(config)

    if once:
        typer.echo("Running in single-shot mode...")
        report = worker.run_once()
        typer.echo(
            f"Detected {report.monitor.detected}, confirmed {report.monitor.confirmed}, "
            f"swept {report.sweeps.swept}, failed sweeps {report.sweeps.failed}"
        )
        for outcome in report.sweeps.outcomes:
            if outcome.success:
                typer.echo(f"✓ Swept {outcome.address}: {outcome.tx_hash}")
            elif not outcome.skipped:
                typer.echo(f"✗ Failed {outcome.address}: {outcome.error}")
        worker.shutdown()
    else:
        typer.echo("Running in continuous mode. Press Ctrl+C to stop.")
        worker.install_signal_handlers()
        worker.run()


@app.command("new-address")
def new_address(
    merchant_id: str = typer.Argument(..., help="Merchant that will own the address"),
    asset: Asset = typer.Argument(..., help="Asset to receive"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Allocate, derive and register a deposit address (one per merchant and asset).
    """
    from .db import CustodyStore
    from .keys import DERIVABLE_NETWORKS, KeyDerivationService

    config = _load(config_path)
    store = CustodyStore(config.settings.database_url)
    keys = KeyDerivationService(config.settings.master_seed, store)

    try:
        existing = store.find_address(merchant_id, asset)
        if existing is not None:
            typer.echo(f"{existing.address} (existing, index {existing.derivation_index})")
            return

        network = config.asset(asset).network
        if not keys.configured:
            typer.echo("✗ MASTER_SEED is not configured")
            raise typer.Exit(code=1)
        if network not in DERIVABLE_NETWORKS:
            typer.echo(f"✗ Addresses cannot be derived for {network.value}")
            raise typer.Exit(code=1)

        index = keys.allocate_index()
        address = keys.derive_address(network, index)
        store.register_address(merchant_id, network, asset, address, index)
        typer.echo(f"{address} (index {index})")
    finally:
        store.close()


@app.command()
def derive(
    network: Network = typer.Argument(..., help="Network to derive for"),
    index: int = typer.Argument(..., help="Derivation index"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Print the address at a derivation index (never the key).
    """
    from .keys import KeyDerivationService

    config = _load(config_path)
    keys = KeyDerivationService(config.settings.master_seed)

    typer.echo(f"Path: {keys.path_for(network, index)}")
    typer.echo(f"Address: {keys.derive_address(network, index)}")


@app.command()
def check(
    address: str = typer.Argument(..., help="Custodial address to inspect"),
    asset: Asset = typer.Option(Asset.USDT_TRC20, "--asset", "-a", help="Asset to look for"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    List inbound transfers to an address (without touching any state).
    """
    from .chains import build_adapters

    config = _load(config_path)
    network = config.asset(asset).network
    required = config.required_confirmations(network)
    minimum = config.min_deposit(asset)
    adapters = build_adapters(config)

    adapter = adapters.get(network)
    if adapter is None:
        typer.echo(f"No provider configured for {network.value}")
        raise typer.Exit(code=1)

    try:
        typer.echo(f"Checking {asset.value} transfers to: {address}")
        typer.echo(f"Required confirmations: {required}")
        typer.echo(f"Minimum deposit: {format_amount(minimum)}")
        typer.echo("")

        transfers = adapter.get_incoming_transfers(address, asset)
        if not transfers:
            typer.echo("No transfers found.")
            return

        typer.echo(f"Found {len(transfers)} transfers:\n")
        for transfer in transfers:
            state = "confirmed" if transfer.confirmations >= required else "pending"
            if transfer.amount < minimum:
                state = "below minimum"
            typer.echo(f"  TX: {transfer.tx_hash}")
            typer.echo(f"  From: {transfer.from_address}")
            typer.echo(f"  Amount: {format_amount(transfer.amount)}")
            typer.echo(f"  Confirmations: {transfer.confirmations} ({state})")
            typer.echo("")
        typer.echo(f"Live balance: {format_amount(adapter.get_token_balance(address, asset))}")
    finally:
        for item in adapters.values():
            item.close()


@app.command("sweep-address")
def sweep_address(
    address: str = typer.Argument(..., help="Registered custodial address to sweep"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Sweep one address's entire balance now, regardless of the minimum sweep.
    """
    from .worker import CustodyWorker

    config = _load(config_path)
    worker = CustodyWorker(config)

    try:
        record = worker.store.get_address(address)
        if record is None:
            typer.echo(f"Address not registered: {address}")
            raise typer.Exit(code=1)

        outcome = worker.sweeper.sweep_address(record, enforce_minimum=False)
        if outcome.success:
            typer.echo(
                f"✓ Swept {format_amount(outcome.amount)} in {outcome.tx_hash} "
                f"({outcome.deposits_swept} deposits marked swept)"
            )
        elif outcome.skipped:
            typer.echo("Nothing to sweep.")
        else:
            typer.echo(f"✗ Failed: {outcome.error}")
            raise typer.Exit(code=1)
    finally:
        worker.shutdown()


@app.command()
def reclaim(
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """
    Process due delegation reclaims and list what is still outstanding.
    """
    from .models import ReclaimStatus
    from .worker import CustodyWorker

    config = _load(config_path)
    worker = CustodyWorker(config)

    try:
        report = worker.reclaims.process_due()
        typer.echo(
            f"Reclaimed {report.done}, retrying {report.retried}, abandoned {report.abandoned}"
        )
        for task in worker.store.list_reclaims(ReclaimStatus.PENDING):
            typer.echo(
                f"  #{task.id} {task.network.value} {task.receiver} {task.amount} "
                f"attempts={task.attempts} next={task.next_attempt_at.isoformat()}"
            )
    finally:
        worker.shutdown()


@app.command()
def version() -> None:
    """Show the worker version."""
    from custody_worker import __version__
    typer.echo(f"custody-worker v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
