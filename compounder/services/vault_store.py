"""
Persistent store for vaults, performance history and price data.

Every public operation runs inside a bounded retry loop: transient
database failures are retried with exponential backoff, and whatever
still fails is raised as StoreError so callers can degrade the cycle
instead of crashing.
"""

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError, DBAPIError, OperationalError
import structlog

from compounder.core.database import Database
from compounder.core.exceptions import StoreError, DuplicateRecordError
from compounder.models import Vault, VaultStatus, VaultPerformance, PriceData
from compounder.services.compounding.types import PriceSample


logger = structlog.get_logger(__name__)

T = TypeVar("T")

_UPDATABLE_VAULT_FIELDS = {
    "compound_interval_hours",
    "status",
    "last_compounded_at",
    "last_attempt_at",
    "last_transaction_ref",
    "last_error",
    "consecutive_failures",
}


class VaultStore:
    """
    Store service over the vaults, vault_performance and price_data tables.
    """

    def __init__(
        self,
        database: Database,
        max_attempts: int = 3,
        backoff_base_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.database = database
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self._sleep = sleep
        self.logger = logger.bind(service="vault_store")

    async def _run(self, operation: str, func: Callable[[], Awaitable[T]], **context) -> T:
        """Run a store operation with retries on transient failures."""
        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                return await func()
            except (DuplicateRecordError, IntegrityError):
                raise
            except (OperationalError, DBAPIError, OSError, asyncio.TimeoutError) as e:
                last_error = e
                self.logger.warning(
                    "Store operation failed, retrying",
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=self.max_attempts,
                    error=str(e),
                    **context
                )
                if attempt < self.max_attempts - 1:
                    await self._sleep(self.backoff_base_seconds * (2 ** attempt))
            except SQLAlchemyError as e:
                self.logger.error("Store operation error", operation=operation, error=str(e), **context)
                raise StoreError(f"{operation} failed: {e}", {"operation": operation, **context}) from e

        self.logger.error(
            "Store operation failed after retries",
            operation=operation,
            max_attempts=self.max_attempts,
            error=str(last_error),
            **context
        )
        raise StoreError(
            f"{operation} failed after {self.max_attempts} attempts: {last_error}",
            {"operation": operation, "attempts": self.max_attempts, **context}
        ) from last_error

    # Vaults

    async def create_vault(self, address: str, compound_interval_hours: int) -> Vault:
        async def _create() -> Vault:
            async with self.database.session() as session:
                vault = Vault(
                    address=address,
                    compound_interval_hours=compound_interval_hours,
                    status=VaultStatus.IDLE.value,
                    consecutive_failures=0
                )
                session.add(vault)
                await session.flush()
                return vault

        try:
            vault = await self._run("create_vault", _create, address=address)
        except IntegrityError as e:
            raise StoreError(f"Vault already exists: {address}", {"address": address}) from e

        self.logger.info("Vault created", address=address, vault_id=vault.id)
        return vault

    async def get_vault(self, address: str) -> Optional[Vault]:
        async def _get() -> Optional[Vault]:
            async with self.database.session() as session:
                result = await session.execute(select(Vault).where(Vault.address == address))
                return result.scalar_one_or_none()

        return await self._run("get_vault", _get, address=address)

    async def list_vaults(self) -> List[Vault]:
        async def _list() -> List[Vault]:
            async with self.database.session() as session:
                result = await session.execute(select(Vault).order_by(Vault.id))
                return list(result.scalars().all())

        return await self._run("list_vaults", _list)

    async def update_vault(self, vault_id: int, **fields) -> Vault:
        unknown = set(fields) - _UPDATABLE_VAULT_FIELDS
        if unknown:
            raise ValueError(f"Unknown vault fields: {sorted(unknown)}")

        async def _update() -> Vault:
            async with self.database.session() as session:
                vault = await session.get(Vault, vault_id)
                if vault is None:
                    raise StoreError(f"Vault not found: {vault_id}", {"vault_id": vault_id})
                for name, value in fields.items():
                    setattr(vault, name, value)
                await session.flush()
                return vault

        return await self._run("update_vault", _update, vault_id=vault_id)

    # Performance

    async def store_vault_performance(self, vault_id: int, sample: Dict[str, Any]) -> VaultPerformance:
        """
        Append a performance row.

        Raises:
            DuplicateRecordError: a row with the same transaction_ref exists
            StoreError: the write failed after retries
        """
        reference = sample["transaction_ref"]

        async def _store() -> VaultPerformance:
            async with self.database.session() as session:
                row = VaultPerformance(vault_id=vault_id, **sample)
                session.add(row)
                await session.flush()
                return row

        try:
            return await self._run("store_vault_performance", _store, vault_id=vault_id, reference=reference)
        except IntegrityError as e:
            existing = await self.get_performance_by_reference(reference)
            if existing is not None:
                raise DuplicateRecordError(reference) from e
            raise StoreError(
                f"store_vault_performance rejected: {e}",
                {"vault_id": vault_id, "reference": reference}
            ) from e

    async def get_vault_performance(
        self,
        vault_id: int,
        start_time: datetime,
        end_time: datetime
    ) -> List[VaultPerformance]:
        """Records for a vault ordered ascending by timestamp, bounds inclusive."""
        async def _query() -> List[VaultPerformance]:
            async with self.database.session() as session:
                result = await session.execute(
                    select(VaultPerformance)
                    .where(VaultPerformance.vault_id == vault_id)
                    .where(VaultPerformance.timestamp >= start_time)
                    .where(VaultPerformance.timestamp <= end_time)
                    .order_by(VaultPerformance.timestamp.asc())
                )
                return list(result.scalars().all())

        return await self._run("get_vault_performance", _query, vault_id=vault_id)

    async def get_performance_by_reference(self, reference: str) -> Optional[VaultPerformance]:
        async def _query() -> Optional[VaultPerformance]:
            async with self.database.session() as session:
                result = await session.execute(
                    select(VaultPerformance).where(VaultPerformance.transaction_ref == reference)
                )
                return result.scalar_one_or_none()

        return await self._run("get_performance_by_reference", _query, reference=reference)

    async def get_latest_performance(self, vault_id: int) -> Optional[VaultPerformance]:
        async def _query() -> Optional[VaultPerformance]:
            async with self.database.session() as session:
                result = await session.execute(
                    select(VaultPerformance)
                    .where(VaultPerformance.vault_id == vault_id)
                    .order_by(VaultPerformance.timestamp.desc())
                    .limit(1)
                )
                return result.scalar_one_or_none()

        return await self._run("get_latest_performance", _query, vault_id=vault_id)

    # Price data

    async def store_price_data(self, samples: List[PriceSample], recorded_at: datetime) -> int:
        if not samples:
            return 0

        async def _store() -> int:
            async with self.database.session() as session:
                session.add_all([
                    PriceData(
                        feed_id=sample.feed_id,
                        price=sample.price,
                        confidence=sample.confidence,
                        publish_time=sample.timestamp,
                        timestamp=recorded_at
                    )
                    for sample in samples
                ])
                return len(samples)

        return await self._run("store_price_data", _store, feeds=len(samples))
