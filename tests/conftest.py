"""
Shared fixtures and in-test fakes for chain, oracle and submitter.
"""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest
from solders.pubkey import Pubkey

from compounder.core.database import Database
from compounder.services.compounding.types import (
    ConfirmationStatus,
    PriceBatch,
    PriceSample,
    SubmitResult,
    VaultAccountData,
)
from compounder.services.solana_client import PreparedTransaction
from compounder.services.vault_store import VaultStore


async def _no_sleep(_):
    return None


@pytest.fixture
async def database(tmp_path):
    """Temporary SQLite database with all tables created."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'compounder.db'}")
    await db.init()
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
async def store(database):
    return VaultStore(database, max_attempts=2, backoff_base_seconds=0, sleep=_no_sleep)


@pytest.fixture
def vault_address():
    return str(Pubkey.new_unique())


@pytest.fixture
def t0():
    return datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)


class ScriptedSubmitter:
    """Returns queued SubmitResults in order; the last one repeats."""

    def __init__(self, results: List[SubmitResult], confirmation=ConfirmationStatus.NOT_FOUND, delay: float = 0):
        self.results = list(results)
        self.confirmation = confirmation
        self.delay = delay
        self.calls: List[str] = []
        self.pendings: List[Optional[PreparedTransaction]] = []
        self.confirmation_checks: List[str] = []
        self.active: Dict[str, int] = {}
        self.max_active: Dict[str, int] = {}

    async def compound(self, vault_address: str, pending: Optional[PreparedTransaction] = None) -> SubmitResult:
        self.calls.append(vault_address)
        self.pendings.append(pending)
        self.active[vault_address] = self.active.get(vault_address, 0) + 1
        self.max_active[vault_address] = max(
            self.max_active.get(vault_address, 0), self.active[vault_address]
        )
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if len(self.results) > 1:
                return self.results.pop(0)
            return self.results[0]
        finally:
            self.active[vault_address] -= 1

    async def check_confirmation(self, reference: str) -> ConfirmationStatus:
        self.confirmation_checks.append(reference)
        return self.confirmation


class FakeOracle:
    """Serves fixed prices; feeds listed in `failing` come back as None."""

    def __init__(self, prices: Dict[str, float], failing: Optional[List[str]] = None):
        self.prices = prices
        self.failing = failing or []
        self.requests: List[List[str]] = []

    async def get_prices(self, feed_ids) -> PriceBatch:
        feed_ids = list(feed_ids)
        self.requests.append(feed_ids)
        batch = PriceBatch()
        now = datetime.now(timezone.utc)
        for feed_id in feed_ids:
            if feed_id in self.failing or feed_id not in self.prices:
                batch.samples[feed_id] = None
                batch.failures[feed_id] = "feed unavailable"
            else:
                batch.samples[feed_id] = PriceSample(feed_id, self.prices[feed_id], 0.01, now)
        return batch


class FakeVaultReader:
    """Returns successive account states per vault, repeating the last."""

    def __init__(self, states: Optional[Dict[str, List[VaultAccountData]]] = None):
        self.states = states or {}

    async def read(self, address: str) -> Optional[VaultAccountData]:
        queue = self.states.get(address)
        if not queue:
            return None
        if len(queue) > 1:
            return queue.pop(0)
        return queue[0]


def account(address: str, total_assets: int, last_compound_ts: int = 0, decimals: int = 6) -> VaultAccountData:
    return VaultAccountData(
        address=address,
        total_assets=total_assets,
        total_shares=total_assets,
        last_compound_ts=last_compound_ts,
        decimals=decimals
    )
