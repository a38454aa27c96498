"""
In-memory vault registry backed by the vault store.
"""

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

import structlog

from compounder.core.exceptions import CompoundErrorKind, StoreError, VaultNotFoundError
from compounder.models import Vault, VaultStatus
from compounder.services.compounding.types import VaultState


logger = structlog.get_logger(__name__)


class VaultRegistry:
    """
    Tracks every configured vault and decides which are due.

    State changes for one vault are serialised by a per-address lock;
    different vaults never wait on each other. The last-compounded
    timestamp only moves forward, and only after the store has accepted it.
    """

    def __init__(
        self,
        store,
        compound_interval_hours: int,
        failure_cooldown_seconds: Optional[int] = None
    ):
        self.store = store
        self.compound_interval_hours = compound_interval_hours
        self.interval_seconds = compound_interval_hours * 3600
        self.failure_cooldown_seconds = (
            failure_cooldown_seconds if failure_cooldown_seconds is not None else self.interval_seconds
        )
        self._vaults: Dict[str, VaultState] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._claimed_from: Dict[str, VaultStatus] = {}
        self.logger = logger.bind(service="vault_registry")

    def __len__(self) -> int:
        return len(self._vaults)

    def __contains__(self, address: str) -> bool:
        return address in self._vaults

    @property
    def addresses(self) -> List[str]:
        return list(self._vaults)

    def _state_from_row(self, row: Vault) -> VaultState:
        status = VaultStatus(row.status)
        if status == VaultStatus.IN_PROGRESS:
            # left over from an interrupted process
            status = VaultStatus.IDLE
        return VaultState(
            address=row.address,
            interval_seconds=self.interval_seconds,
            vault_id=row.id,
            last_compounded_at=row.last_compounded_utc,
            last_attempt_at=row.last_attempt_utc,
            status=status,
            last_transaction_ref=row.last_transaction_ref,
            last_error=row.last_error,
            consecutive_failures=row.consecutive_failures or 0
        )

    async def load(self, addresses: Iterable[str]) -> None:
        """
        Hydrate the registry from the store, creating unknown vaults.

        Raises:
            StoreError: the store could not be reached after retries
        """
        for address in addresses:
            if address in self._vaults:
                continue

            row = await self.store.get_vault(address)
            if row is None:
                row = await self.store.create_vault(address, self.compound_interval_hours)
            elif row.compound_interval_hours != self.compound_interval_hours or row.status == VaultStatus.IN_PROGRESS.value:
                row = await self.store.update_vault(
                    row.id,
                    compound_interval_hours=self.compound_interval_hours,
                    status=VaultStatus.IDLE.value if row.status == VaultStatus.IN_PROGRESS.value else row.status
                )

            self._vaults[address] = self._state_from_row(row)
            self._locks[address] = asyncio.Lock()

        self.logger.info("Vault registry loaded", vaults=len(self._vaults))

    def get(self, address: str) -> VaultState:
        if address not in self._vaults:
            raise VaultNotFoundError(address)
        return replace(self._vaults[address])

    def snapshot(self) -> List[VaultState]:
        return [replace(state) for state in self._vaults.values()]

    def _is_due(self, state: VaultState, now: datetime) -> bool:
        if state.status == VaultStatus.IN_PROGRESS:
            return False
        if state.last_compounded_at is not None:
            if now - state.last_compounded_at < timedelta(seconds=state.interval_seconds):
                return False
        if state.status in (VaultStatus.FAILED, VaultStatus.DEGRADED) and state.last_attempt_at is not None:
            if now - state.last_attempt_at < timedelta(seconds=self.failure_cooldown_seconds):
                return False
        return True

    def due(self, now: datetime) -> List[VaultState]:
        """Vaults whose interval has elapsed and that are not in progress."""
        return [replace(state) for state in self._vaults.values() if self._is_due(state, now)]

    async def mark_in_progress(self, address: str) -> bool:
        """
        Claim a vault for a cycle. Returns False if it is already claimed.
        """
        if address not in self._vaults:
            raise VaultNotFoundError(address)

        async with self._locks[address]:
            state = self._vaults[address]
            if state.status == VaultStatus.IN_PROGRESS:
                return False
            previous = state.status
            state.status = VaultStatus.IN_PROGRESS

            try:
                await self.store.update_vault(state.vault_id, status=VaultStatus.IN_PROGRESS.value)
            except StoreError as e:
                self.logger.warning("Could not persist in-progress status", vault=address, error=e.message)
            except BaseException:
                state.status = previous
                raise
            self._claimed_from[address] = previous
            return True

    async def release(self, address: str) -> None:
        """
        Hand back a claimed vault whose cycle never started an attempt.
        The status returns to what it was before the claim.
        """
        if address not in self._vaults:
            raise VaultNotFoundError(address)

        async with self._locks[address]:
            state = self._vaults[address]
            if state.status != VaultStatus.IN_PROGRESS:
                return
            state.status = self._claimed_from.pop(address, VaultStatus.IDLE)

            try:
                await self.store.update_vault(state.vault_id, status=state.status.value)
            except StoreError as e:
                self.logger.warning("Could not persist released status", vault=address, error=e.message)

    @staticmethod
    def _mark_unpersisted(state: VaultState, attempted_at: datetime) -> None:
        state.status = VaultStatus.DEGRADED
        state.last_attempt_at = attempted_at
        state.last_error = "store_error"

    async def mark_completed(
        self,
        address: str,
        success: bool,
        attempted_at: datetime,
        reference: Optional[str] = None,
        error_kind: Optional[CompoundErrorKind] = None,
        degraded: bool = False
    ) -> bool:
        """
        Release a vault after its cycle.

        On success the new last-compounded timestamp is written to the store
        first and applied in memory only if that write succeeds. Returns
        whether the store accepted the update.
        """
        if address not in self._vaults:
            raise VaultNotFoundError(address)

        async with self._locks[address]:
            state = self._vaults[address]
            self._claimed_from.pop(address, None)

            if success:
                compounded_at = attempted_at
                if state.last_compounded_at is not None and state.last_compounded_at > attempted_at:
                    compounded_at = state.last_compounded_at
                status = VaultStatus.DEGRADED if degraded else VaultStatus.IDLE

                try:
                    await self.store.update_vault(
                        state.vault_id,
                        status=status.value,
                        last_compounded_at=compounded_at,
                        last_attempt_at=attempted_at,
                        last_transaction_ref=reference,
                        last_error=None,
                        consecutive_failures=0
                    )
                except StoreError as e:
                    self._mark_unpersisted(state, attempted_at)
                    self.logger.error(
                        "Compound succeeded but vault update was not persisted",
                        vault=address,
                        reference=reference,
                        error=e.message
                    )
                    return False
                except BaseException:
                    self._mark_unpersisted(state, attempted_at)
                    raise

                state.status = status
                state.last_compounded_at = compounded_at
                state.last_attempt_at = attempted_at
                state.last_transaction_ref = reference
                state.last_error = None
                state.consecutive_failures = 0
                return True

            state.status = VaultStatus.FAILED
            state.last_attempt_at = attempted_at
            state.last_error = error_kind.value if error_kind else None
            state.consecutive_failures += 1

            try:
                await self.store.update_vault(
                    state.vault_id,
                    status=state.status.value,
                    last_attempt_at=attempted_at,
                    last_error=state.last_error,
                    consecutive_failures=state.consecutive_failures
                )
            except StoreError as e:
                self.logger.warning("Could not persist failed status", vault=address, error=e.message)
                return False
            return True
