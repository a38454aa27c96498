"""
Operator commands for the vault compounder.
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone

import typer
from rich.console import Console
from rich.table import Table

from compounder.core.config import load_settings
from compounder.core.database import Database
from compounder.core.exceptions import CompounderException
from compounder.core.logging import setup_logging, get_logger
from compounder.models.base import as_utc
from compounder.scheduler.main import CompounderService
from compounder.services.vault_store import VaultStore

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Vault compounder management commands")


def _fmt(value, digits: int = 4) -> str:
    if value is None:
        return "-"
    if isinstance(value, float):
        return f"{value:.{digits}f}"
    if isinstance(value, datetime):
        return as_utc(value).strftime("%Y-%m-%d %H:%M:%S")
    return str(value)


def _open_database():
    config = load_settings()
    setup_logging(config)
    return config, Database.from_settings(config)


@app.command()
def init():
    """Initialize database with tables."""
    async def _init():
        _, database = _open_database()
        await database.init()
        await database.create_tables()
        await database.close()
        console.print("✅ Database initialized successfully!")

    asyncio.run(_init())


@app.command()
def reset():
    """Reset database (drop all tables)."""
    confirm = typer.confirm("Are you sure you want to drop all tables?")
    if not confirm:
        console.print("❌ Operation cancelled")
        return

    async def _reset():
        _, database = _open_database()
        await database.init()
        await database.drop_tables()
        await database.close()
        console.print("🗑️ All tables dropped!")

    asyncio.run(_reset())


@app.command()
def health():
    """Check database health."""
    async def _health():
        _, database = _open_database()
        await database.init()
        is_healthy = await database.health_check()
        await database.close()

        if is_healthy:
            console.print("✅ Database is healthy!")
        else:
            console.print("❌ Database health check failed!")
            sys.exit(1)

    asyncio.run(_health())


@app.command()
def vaults():
    """List registered vaults and their compounding state."""
    async def _vaults():
        config, database = _open_database()
        await database.init()
        store = VaultStore(database, max_attempts=config.store_max_attempts)
        rows = await store.list_vaults()
        await database.close()

        table = Table(title="Vaults")
        table.add_column("Address", style="cyan")
        table.add_column("Interval (h)", justify="right")
        table.add_column("Status", style="green")
        table.add_column("Last compounded")
        table.add_column("Last attempt")
        table.add_column("Failures", justify="right")
        table.add_column("Last error", style="red")

        for row in rows:
            table.add_row(
                row.address,
                str(row.compound_interval_hours),
                row.status,
                _fmt(row.last_compounded_at),
                _fmt(row.last_attempt_at),
                str(row.consecutive_failures),
                _fmt(row.last_error)
            )
        console.print(table)

    asyncio.run(_vaults())


@app.command()
def performance(
    address: str = typer.Argument(..., help="Vault address"),
    days: int = typer.Option(7, help="How many days of history to show")
):
    """Show performance history for a vault."""
    async def _performance():
        config, database = _open_database()
        await database.init()
        store = VaultStore(database, max_attempts=config.store_max_attempts)

        vault = await store.get_vault(address)
        if vault is None:
            await database.close()
            console.print(f"❌ Vault not found: {address}")
            sys.exit(1)

        end = datetime.now(timezone.utc)
        records = await store.get_vault_performance(vault.id, end - timedelta(days=days), end)
        await database.close()

        table = Table(title=f"Performance for {address}")
        table.add_column("Timestamp", style="cyan")
        table.add_column("TVL", justify="right")
        table.add_column("TVL (USD)", justify="right")
        table.add_column("Yield", justify="right")
        table.add_column("Earned", justify="right")
        table.add_column("Missing feeds", style="yellow")
        table.add_column("Transaction")

        for record in records:
            table.add_row(
                _fmt(record.timestamp),
                _fmt(record.tvl),
                _fmt(record.tvl_usd, 2),
                _fmt(record.yield_rate),
                _fmt(record.amount_earned),
                ", ".join(record.failed_feeds or []) or "-",
                record.transaction_ref
            )
        console.print(table)

    asyncio.run(_performance())


@app.command("run-once")
def run_once():
    """Run a single compounding pass over every due vault."""
    async def _run_once():
        config = load_settings()
        setup_logging(config)
        service = CompounderService(config)

        try:
            await service.initialize()
            results = await service.scheduler.run_once()
        except CompounderException as e:
            console.print(f"❌ {e.message}")
            sys.exit(1)
        finally:
            await service.stop()

        if not results:
            console.print("Nothing due.")
            return

        table = Table(title="Compound pass")
        table.add_column("Vault", style="cyan")
        table.add_column("Outcome")
        table.add_column("Attempts", justify="right")
        table.add_column("Transaction")
        table.add_column("Error")
        table.add_column("Missing feeds", style="yellow")

        for result in results:
            table.add_row(
                result.vault_address,
                result.outcome.value,
                str(result.attempts),
                result.reference or "-",
                result.error_kind.value if result.error_kind else "-",
                ", ".join(result.failed_feeds) or "-"
            )
        console.print(table)

    asyncio.run(_run_once())


if __name__ == "__main__":
    app()
