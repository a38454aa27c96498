"""
Performance recording for successful compound cycles.
"""

from collections import deque
from datetime import datetime
from typing import Deque, List, Optional

import structlog

from compounder.core.exceptions import DuplicateRecordError, StoreError
from compounder.models import VaultPerformance
from compounder.models.base import as_utc
from compounder.services.compounding.types import (
    PriceBatch,
    PriceSample,
    RecordStatus,
    VaultAccountData,
    VaultMetrics,
)


logger = structlog.get_logger(__name__)

SECONDS_PER_YEAR = 365 * 24 * 3600
RECENT_REFERENCES = 256


def compute_metrics(
    before: Optional[VaultAccountData],
    after: Optional[VaultAccountData],
    elapsed_seconds: Optional[float],
    quote_price: Optional[PriceSample] = None
) -> VaultMetrics:
    """
    Derive TVL, earned amount and effective yield from vault state
    read before and after compounding. Missing inputs leave the
    corresponding figures as None.
    """
    metrics = VaultMetrics()

    if after is not None:
        metrics.tvl = after.total_assets_ui
        if quote_price is not None:
            metrics.tvl_usd = metrics.tvl * quote_price.price

    if before is not None and after is not None:
        metrics.amount_earned = max(0, after.total_assets - before.total_assets)

        if before.total_assets > 0 and elapsed_seconds and elapsed_seconds > 0:
            period_return = metrics.amount_earned / before.total_assets
            try:
                metrics.yield_rate = (1 + period_return) ** (SECONDS_PER_YEAR / elapsed_seconds) - 1
            except OverflowError:
                metrics.yield_rate = None

    return metrics


class PerformanceRecorder:
    """
    Writes one performance record per successful compound.

    Deduplicates on the transaction reference and refuses records that
    would not be strictly after the vault's latest one.
    """

    def __init__(self, store, recent_references: int = RECENT_REFERENCES):
        self.store = store
        # recent references only; the unique transaction_ref column is authoritative
        self._recorded_refs: Deque[str] = deque(maxlen=recent_references)
        self.logger = logger.bind(service="performance_recorder")

    async def record(
        self,
        vault_id: int,
        timestamp: datetime,
        metrics: VaultMetrics,
        prices: PriceBatch,
        reference: str
    ) -> RecordStatus:
        log = self.logger.bind(vault_id=vault_id, reference=reference)

        if reference in self._recorded_refs:
            log.info("Performance already recorded for transaction")
            return RecordStatus.DUPLICATE

        try:
            if await self.store.get_performance_by_reference(reference) is not None:
                self._remember(reference)
                log.info("Performance already stored for transaction")
                return RecordStatus.DUPLICATE

            latest = await self.store.get_latest_performance(vault_id)
            if latest is not None and as_utc(latest.timestamp) >= timestamp:
                log.error(
                    "Refusing out-of-order performance record",
                    timestamp=timestamp.isoformat(),
                    latest_timestamp=as_utc(latest.timestamp).isoformat()
                )
                return RecordStatus.REJECTED

            await self.store.store_vault_performance(vault_id, {
                "timestamp": timestamp,
                "transaction_ref": reference,
                "tvl": metrics.tvl,
                "tvl_usd": metrics.tvl_usd,
                "yield_rate": metrics.yield_rate,
                "amount_earned": metrics.amount_earned,
                "prices": prices.to_annotation(),
                "failed_feeds": prices.failed_feeds,
            })
        except DuplicateRecordError:
            self._remember(reference)
            log.info("Performance record raced with an earlier write")
            return RecordStatus.DUPLICATE
        except StoreError as e:
            log.error("Failed to record performance", error=e.message)
            return RecordStatus.FAILED

        self._remember(reference)

        present = [sample for sample in prices.samples.values() if sample is not None]
        try:
            await self.store.store_price_data(present, recorded_at=timestamp)
        except StoreError as e:
            log.warning("Failed to store price data", error=e.message)

        log.info(
            "Performance recorded",
            timestamp=timestamp.isoformat(),
            tvl=metrics.tvl,
            amount_earned=metrics.amount_earned,
            failed_feeds=prices.failed_feeds
        )
        return RecordStatus.RECORDED

    def _remember(self, reference: str) -> None:
        if reference not in self._recorded_refs:
            self._recorded_refs.append(reference)

    async def history(self, vault_id: int, start_time: datetime, end_time: datetime) -> List[VaultPerformance]:
        """Records for a vault between two instants, ascending, bounds inclusive."""
        return await self.store.get_vault_performance(vault_id, start_time, end_time)
