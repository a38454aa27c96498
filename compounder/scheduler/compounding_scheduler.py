"""
Compounding scheduler.

This service provides:
- A fixed-interval tick that selects due vaults from the registry
- Bounded-concurrency dispatch of one compound cycle per due vault
- Submit -> price/state enrichment -> performance record -> registry update
- Graceful shutdown that drains or explicitly cancels in-flight cycles
- Health and statistics reporting for operators
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import structlog

from compounder.core.exceptions import CompoundErrorKind
from compounder.services.compounding.recorder import compute_metrics
from compounder.services.compounding.types import (
    CycleOutcome,
    CycleResult,
    PriceBatch,
    VaultAccountData,
    VaultState,
)


logger = structlog.get_logger(__name__)


class SchedulerStatus(Enum):
    """Status of the compounding scheduler."""
    STOPPED = "stopped"
    WAITING = "waiting"
    PROCESSING = "processing"
    ERROR = "error"


@dataclass
class SchedulerStats:
    """Statistics for scheduler operations."""
    last_tick: Optional[datetime] = None
    next_tick: Optional[datetime] = None
    total_ticks: int = 0
    cycles_dispatched: int = 0
    cycles_succeeded: int = 0
    cycles_failed: int = 0
    cycles_degraded: int = 0
    cycles_cancelled: int = 0
    attempts_made: int = 0
    skipped_in_progress: int = 0
    errors_by_kind: Dict[str, int] = field(default_factory=dict)
    uptime_start: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "next_tick": self.next_tick.isoformat() if self.next_tick else None,
            "total_ticks": self.total_ticks,
            "cycles_dispatched": self.cycles_dispatched,
            "cycles_succeeded": self.cycles_succeeded,
            "cycles_failed": self.cycles_failed,
            "cycles_degraded": self.cycles_degraded,
            "cycles_cancelled": self.cycles_cancelled,
            "attempts_made": self.attempts_made,
            "skipped_in_progress": self.skipped_in_progress,
            "errors_by_kind": dict(self.errors_by_kind),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CompoundingScheduler:
    """
    Drives compound cycles for every vault in the registry.

    A single loop task ticks every `tick_seconds`. Each due vault is claimed
    in the registry and handed to its own task; a semaphore caps how many
    cycles talk to the network at once. A vault that is still in flight is
    skipped by later ticks.
    """

    def __init__(
        self,
        registry,
        retry_controller,
        oracle,
        recorder,
        vault_reader,
        feed_ids: List[str],
        quote_feed_id: Optional[str] = None,
        tick_seconds: int = 60,
        max_workers: int = 5,
        shutdown_grace_seconds: float = 60.0,
        compounding_enabled: bool = True,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.registry = registry
        self.retry_controller = retry_controller
        self.oracle = oracle
        self.recorder = recorder
        self.vault_reader = vault_reader
        self.feed_ids = list(feed_ids)
        self.quote_feed_id = quote_feed_id
        self.tick_seconds = tick_seconds
        self.max_workers = max_workers
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.compounding_enabled = compounding_enabled
        self._clock = clock

        self.status = SchedulerStatus.STOPPED
        self.stats = SchedulerStats(uptime_start=clock())
        self._semaphore = asyncio.Semaphore(max_workers)
        self._inflight: Dict[str, asyncio.Task] = {}
        self._should_stop = False
        self._scheduler_task: Optional[asyncio.Task] = None

        self.logger = logger.bind(service="compounding_scheduler")
        self.logger.info(
            "Compounding scheduler initialized",
            vaults=len(registry),
            tick_seconds=tick_seconds,
            max_workers=max_workers,
            compounding_enabled=compounding_enabled
        )

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.stop()

    @property
    def inflight_vaults(self) -> List[str]:
        return list(self._inflight)

    async def start(self):
        """Start the scheduler loop."""
        if self.status != SchedulerStatus.STOPPED:
            self.logger.warning("Scheduler already running", current_status=self.status.value)
            return

        if not self.compounding_enabled:
            self.logger.warning("No signing capability configured - scheduler will not dispatch compounds")

        self._should_stop = False
        self.status = SchedulerStatus.WAITING
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        self.logger.info("Compounding scheduler started")

    async def stop(self):
        """
        Stop ticking, then wait for in-flight cycles up to the grace period.
        Cycles still running after that are cancelled and awaited.
        """
        if self.status == SchedulerStatus.STOPPED and not self._inflight:
            return

        self.logger.info("Stopping compounding scheduler", inflight=len(self._inflight))
        self._should_stop = True

        if self._scheduler_task and not self._scheduler_task.done():
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass

        pending = list(self._inflight.values())
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self.shutdown_grace_seconds)
            if still_running:
                self.logger.warning(
                    "Cancelling in-flight compound cycles",
                    vaults=[addr for addr, task in self._inflight.items() if task in still_running]
                )
                for task in still_running:
                    task.cancel()
                await asyncio.gather(*still_running, return_exceptions=True)

        self.status = SchedulerStatus.STOPPED
        self.logger.info("Compounding scheduler stopped")

    async def _scheduler_loop(self):
        """Main scheduler loop."""
        self.logger.info("Scheduler loop started")

        while not self._should_stop:
            try:
                await self.tick()
                await asyncio.sleep(self.tick_seconds)

            except asyncio.CancelledError:
                self.logger.info("Scheduler loop cancelled")
                break

            except Exception as e:
                self.logger.error("Error in scheduler loop", error=str(e))
                self.status = SchedulerStatus.ERROR
                await asyncio.sleep(self.tick_seconds)
                self.status = SchedulerStatus.WAITING

        self.logger.info("Scheduler loop stopped")

    async def tick(self, now: Optional[datetime] = None) -> List[asyncio.Task]:
        """
        Dispatch a cycle for every due vault and return the new tasks
        without waiting for them.
        """
        now = now or self._clock()
        self.stats.total_ticks += 1
        self.stats.last_tick = now
        self.stats.next_tick = now + timedelta(seconds=self.tick_seconds)

        if not self.compounding_enabled:
            return []

        dispatched = []
        for vault in self.registry.due(now):
            if vault.address in self._inflight:
                self.stats.skipped_in_progress += 1
                continue
            try:
                claimed = await self.registry.mark_in_progress(vault.address)
            except Exception as e:
                self.logger.error("Could not claim vault", vault=vault.address, error=str(e))
                continue
            if not claimed:
                self.stats.skipped_in_progress += 1
                continue

            task = asyncio.create_task(self._run_cycle(vault, now))
            self._inflight[vault.address] = task
            task.add_done_callback(lambda _, address=vault.address: self._cycle_done(address))
            dispatched.append(task)

        if dispatched:
            self.stats.cycles_dispatched += len(dispatched)
            if self.status != SchedulerStatus.STOPPED:
                self.status = SchedulerStatus.PROCESSING
            self.logger.info("Dispatched compound cycles", count=len(dispatched), tick=now.isoformat())

        return dispatched

    def _cycle_done(self, address: str):
        self._inflight.pop(address, None)
        if not self._inflight and self.status == SchedulerStatus.PROCESSING:
            self.status = SchedulerStatus.WAITING

    async def run_once(self, now: Optional[datetime] = None) -> List[CycleResult]:
        """Dispatch due vaults and wait for their cycles to finish."""
        tasks = await self.tick(now)
        if not tasks:
            return []
        return list(await asyncio.gather(*tasks))

    async def _fetch_prices(self) -> PriceBatch:
        try:
            return await self.oracle.get_prices(self.feed_ids)
        except Exception as e:
            self.logger.warning("Price oracle unavailable", error=str(e))
            return PriceBatch(
                samples={feed_id: None for feed_id in self.feed_ids},
                failures={feed_id: str(e) for feed_id in self.feed_ids}
            )

    @staticmethod
    def _elapsed_seconds(
        vault: VaultState,
        started_at: datetime,
        before: Optional[VaultAccountData],
        after: Optional[VaultAccountData]
    ) -> Optional[float]:
        if before and after and before.last_compound_ts > 0 and after.last_compound_ts > before.last_compound_ts:
            return float(after.last_compound_ts - before.last_compound_ts)
        if vault.last_compounded_at is not None:
            return (started_at - vault.last_compounded_at).total_seconds()
        return None

    async def _process_vault(self, vault: VaultState, cycle: CycleResult) -> None:
        before = await self.vault_reader.read(vault.address)

        summary = await self.retry_controller.run(vault.address)
        cycle.attempts = summary.attempt_count
        self.stats.attempts_made += summary.attempt_count

        if not summary.succeeded:
            cycle.error_kind = summary.last_error_kind
            return

        cycle.reference = summary.reference

        after, prices = await asyncio.gather(
            self.vault_reader.read(vault.address),
            self._fetch_prices()
        )
        cycle.failed_feeds = prices.failed_feeds

        metrics = compute_metrics(
            before,
            after,
            self._elapsed_seconds(vault, cycle.started_at, before, after),
            prices.get(self.quote_feed_id)
        )
        cycle.record_status = await self.recorder.record(
            vault.vault_id,
            cycle.started_at,
            metrics,
            prices,
            summary.reference
        )

    async def _complete(self, cycle: CycleResult) -> None:
        if cycle.reference:
            durable = cycle.record_status is not None and cycle.record_status.durable
            persisted = await self.registry.mark_completed(
                cycle.vault_address,
                success=True,
                attempted_at=cycle.started_at,
                reference=cycle.reference,
                degraded=not durable
            )
            cycle.outcome = CycleOutcome.SUCCESS if durable and persisted else CycleOutcome.DEGRADED
        else:
            await self.registry.mark_completed(
                cycle.vault_address,
                success=False,
                attempted_at=cycle.started_at,
                error_kind=cycle.error_kind
            )
            cycle.outcome = CycleOutcome.FAILED

    def _count(self, cycle: CycleResult) -> None:
        if cycle.outcome == CycleOutcome.SUCCESS:
            self.stats.cycles_succeeded += 1
        elif cycle.outcome == CycleOutcome.DEGRADED:
            self.stats.cycles_degraded += 1
        elif cycle.outcome == CycleOutcome.CANCELLED:
            self.stats.cycles_cancelled += 1
        else:
            self.stats.cycles_failed += 1
        if cycle.error_kind is not None:
            kind = cycle.error_kind.value
            self.stats.errors_by_kind[kind] = self.stats.errors_by_kind.get(kind, 0) + 1

    async def _finish(self, cycle: CycleResult, started: bool, log) -> None:
        """Release the vault in the registry and count the outcome."""
        try:
            if started:
                await self._complete(cycle)
            else:
                await self.registry.release(cycle.vault_address)
                cycle.outcome = CycleOutcome.CANCELLED
        except Exception as e:
            log.error("Could not update vault after cycle", error=str(e), exc_info=True)
            if cycle.reference:
                cycle.outcome = CycleOutcome.DEGRADED
        self._count(cycle)

    async def _run_cycle(self, vault: VaultState, started_at: datetime) -> CycleResult:
        cycle = CycleResult(vault_address=vault.address, started_at=started_at, outcome=CycleOutcome.FAILED)
        log = self.logger.bind(vault=vault.address)
        start = time.monotonic()
        started = False

        try:
            async with self._semaphore:
                started = True
                await self._process_vault(vault, cycle)
        except asyncio.CancelledError:
            log.warning("Compound cycle cancelled", started=started, reference=cycle.reference)
            if started and cycle.reference is None and cycle.error_kind is None:
                cycle.error_kind = CompoundErrorKind.TIMEOUT
            await self._finish(cycle, started, log)
            raise
        except Exception as e:
            log.error("Unexpected error in compound cycle", error=str(e), exc_info=True)
            if cycle.reference is None and cycle.error_kind is None:
                cycle.error_kind = CompoundErrorKind.NETWORK_ERROR

        await self._finish(cycle, started, log)
        cycle.duration_seconds = time.monotonic() - start

        log.info(
            "Compound cycle finished",
            outcome=cycle.outcome.value,
            attempts=cycle.attempts,
            reference=cycle.reference,
            error_kind=cycle.error_kind.value if cycle.error_kind else None,
            record_status=cycle.record_status.value if cycle.record_status else None,
            failed_feeds=cycle.failed_feeds,
            duration=f"{cycle.duration_seconds:.2f}s"
        )
        return cycle

    async def health_check(self) -> Dict[str, Any]:
        """Operator-facing health summary."""
        now = self._clock()
        vaults = self.registry.snapshot()
        finished = self.stats.cycles_succeeded + self.stats.cycles_failed + self.stats.cycles_degraded

        return {
            "healthy": (
                self.status in (SchedulerStatus.WAITING, SchedulerStatus.PROCESSING)
                and (finished == 0 or self.stats.cycles_failed < finished)
            ),
            "status": self.status.value,
            "compounding_enabled": self.compounding_enabled,
            "uptime_seconds": (now - self.stats.uptime_start).total_seconds(),
            "inflight_vaults": self.inflight_vaults,
            "due_vaults": [vault.address for vault in self.registry.due(now)],
            "scheduler_stats": self.stats.to_dict(),
            "vaults": [vault.to_dict() for vault in vaults],
        }

    def get_status(self) -> Dict[str, Any]:
        """Get current scheduler status."""
        return {
            "status": self.status.value,
            "compounding_enabled": self.compounding_enabled,
            "stats": self.stats.to_dict(),
            "inflight_vaults": self.inflight_vaults,
        }
