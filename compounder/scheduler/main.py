"""
Main entry point for the compounder service.
Wires configuration, storage, chain access and the compounding scheduler.
"""

import asyncio
import signal
from typing import Optional

import structlog

from compounder.core.config import Settings, load_settings, validate_startup
from compounder.core.database import Database
from compounder.core.exceptions import CompounderException
from compounder.core.logging import setup_logging
from compounder.services.compounding.recorder import PerformanceRecorder
from compounder.services.compounding.registry import VaultRegistry
from compounder.services.compounding.retry import RetryController, RetryPolicy
from compounder.services.compounding.submitter import CompoundSubmitter
from compounder.services.compounding.vault_reader import VaultStateReader
from compounder.services.pyth_service import PythPriceService
from compounder.services.signer import load_signer
from compounder.services.solana_client import SolanaClient
from compounder.services.vault_store import VaultStore
from .compounding_scheduler import CompoundingScheduler


logger = structlog.get_logger(__name__)


class CompounderService:
    """Main service coordinator."""

    def __init__(self, config: Settings):
        self.config = config
        self.database: Optional[Database] = None
        self.chain: Optional[SolanaClient] = None
        self.oracle: Optional[PythPriceService] = None
        self.scheduler: Optional[CompoundingScheduler] = None
        self.running = False
        self._stop_event = asyncio.Event()
        self._health_task: Optional[asyncio.Task] = None

    async def initialize(self):
        """
        Build every component and hydrate the vault registry.

        Raises:
            ConfigurationError: invalid endpoint, program id, vault address or key
            StoreError: the database stayed unreachable
        """
        config = self.config
        logger.info("Initializing compounder service", environment=config.environment)

        validate_startup(config)
        if config.vault_addresses_malformed:
            logger.warning(
                "Vault address list is not a JSON array of strings, running with no vaults",
                raw_value=config.vault_addresses[:200]
            )

        signer = load_signer(config.wallet_private_key)

        self.database = Database.from_settings(config)
        await self.database.init()
        await self.database.create_tables()

        store = VaultStore(
            self.database,
            max_attempts=config.store_max_attempts,
            backoff_base_seconds=config.store_backoff_base_seconds
        )

        self.chain = SolanaClient(config)
        self.oracle = PythPriceService(
            hermes_url=config.pyth_hermes_url,
            request_timeout_seconds=config.oracle_request_timeout_seconds,
            batch_deadline_seconds=config.oracle_batch_deadline_seconds
        )

        submitter = CompoundSubmitter(
            self.chain,
            signer,
            config.vault_program_id,
            attempt_timeout_seconds=config.compound_attempt_timeout_seconds,
            min_balance_lamports=config.compound_min_balance_lamports
        )
        retry_controller = RetryController(
            submitter,
            RetryPolicy(
                max_attempts=config.compound_max_attempts,
                base_delay_seconds=config.compound_backoff_base_seconds,
                max_delay_seconds=config.compound_backoff_max_seconds
            )
        )

        registry = VaultRegistry(
            store,
            config.compound_interval_hours,
            failure_cooldown_seconds=config.failure_cooldown_seconds
        )
        await registry.load(config.vault_address_list)

        self.scheduler = CompoundingScheduler(
            registry=registry,
            retry_controller=retry_controller,
            oracle=self.oracle,
            recorder=PerformanceRecorder(store),
            vault_reader=VaultStateReader(self.chain),
            feed_ids=config.price_feed_id_list,
            quote_feed_id=config.quote_feed,
            tick_seconds=config.scheduler_tick_seconds,
            max_workers=config.scheduler_max_workers,
            shutdown_grace_seconds=config.scheduler_shutdown_grace_seconds,
            compounding_enabled=submitter.enabled
        )

        logger.info(
            "Compounder service initialized",
            vaults=len(registry),
            signer=str(signer.public_key) if signer else None,
            feeds=len(config.price_feed_id_list)
        )

    async def start(self):
        """Start the scheduler and block until stop() is requested."""
        if not self.config.scheduler_enabled:
            logger.warning("Scheduler disabled by configuration")
            return

        self.running = True
        await self.scheduler.start()
        self._health_task = asyncio.create_task(self._periodic_health_check())
        logger.info("Compounder service started")

        await self._stop_event.wait()

    def request_stop(self):
        self._stop_event.set()

    async def stop(self):
        """Stop the scheduler and release every connection."""
        logger.info("Stopping compounder service")
        self.running = False
        self._stop_event.set()

        if self._health_task and not self._health_task.done():
            self._health_task.cancel()
            await asyncio.gather(self._health_task, return_exceptions=True)

        if self.scheduler:
            await self.scheduler.stop()
        if self.oracle:
            await self.oracle.close()
        if self.chain:
            await self.chain.close()
        if self.database:
            await self.database.close()

        logger.info("Compounder service stopped")

    async def _periodic_health_check(self):
        """Log scheduler health at a fixed interval."""
        while self.running:
            try:
                await asyncio.sleep(self.config.health_log_interval_seconds)
                if not self.running:
                    break

                health = await self.scheduler.health_check()
                database_ok = await self.database.health_check()
                rpc_ok = await self.chain.get_health()

                log = logger.info if health["healthy"] and database_ok and rpc_ok else logger.warning
                log(
                    "Compounder health check",
                    scheduler=health["status"],
                    database_healthy=database_ok,
                    rpc_healthy=rpc_ok,
                    inflight_vaults=health["inflight_vaults"],
                    due_vaults=health["due_vaults"],
                    stats=health["scheduler_stats"]
                )

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Health check error", error=str(e))


async def main():
    """Run the compounder service until SIGINT or SIGTERM."""
    config = load_settings()
    setup_logging(config)

    service = CompounderService(config)

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, service.request_stop)

    try:
        await service.initialize()
        await service.start()
    except CompounderException as e:
        logger.error("Compounder service failed", error=e.message, code=e.code, details=e.details)
        raise
    finally:
        await service.stop()


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
