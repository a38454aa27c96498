"""
Test vault registry due-selection and state transitions.
"""

import asyncio
from datetime import timedelta

import pytest

from compounder.core.exceptions import CompoundErrorKind, StoreError, VaultNotFoundError
from compounder.models import VaultStatus
from compounder.services.compounding.registry import VaultRegistry


@pytest.fixture
async def registry(store, vault_address):
    registry = VaultRegistry(store, compound_interval_hours=4, failure_cooldown_seconds=1800)
    await registry.load([vault_address])
    return registry


@pytest.mark.asyncio
async def test_load_creates_unknown_vaults(store, registry, vault_address):
    assert vault_address in registry
    assert len(registry) == 1
    row = await store.get_vault(vault_address)
    assert row is not None
    assert registry.get(vault_address).vault_id == row.id


@pytest.mark.asyncio
async def test_load_resets_interrupted_in_progress(store, vault_address):
    vault = await store.create_vault(vault_address, 4)
    await store.update_vault(vault.id, status=VaultStatus.IN_PROGRESS.value)

    registry = VaultRegistry(store, compound_interval_hours=4)
    await registry.load([vault_address])

    assert registry.get(vault_address).status == VaultStatus.IDLE
    assert (await store.get_vault(vault_address)).status == VaultStatus.IDLE.value


@pytest.mark.asyncio
async def test_never_compounded_vault_is_due(registry, vault_address, t0):
    assert [v.address for v in registry.due(t0)] == [vault_address]


@pytest.mark.asyncio
async def test_due_after_interval(registry, vault_address, t0):
    assert await registry.mark_in_progress(vault_address)
    assert await registry.mark_completed(vault_address, success=True, attempted_at=t0, reference="sig-1")

    assert registry.due(t0 + timedelta(hours=3, minutes=59)) == []
    assert [v.address for v in registry.due(t0 + timedelta(hours=4))] == [vault_address]


@pytest.mark.asyncio
async def test_in_progress_vault_is_not_due_and_cannot_be_claimed_twice(registry, vault_address, t0):
    assert await registry.mark_in_progress(vault_address)
    assert registry.due(t0) == []
    assert not await registry.mark_in_progress(vault_address)


@pytest.mark.asyncio
async def test_success_persists_then_updates_memory(store, registry, vault_address, t0):
    await registry.mark_in_progress(vault_address)
    await registry.mark_completed(vault_address, success=True, attempted_at=t0, reference="sig-1")

    state = registry.get(vault_address)
    assert state.status == VaultStatus.IDLE
    assert state.last_compounded_at == t0
    assert state.last_transaction_ref == "sig-1"

    row = await store.get_vault(vault_address)
    assert row.last_compounded_utc == t0
    assert row.status == VaultStatus.IDLE.value


@pytest.mark.asyncio
async def test_last_compounded_never_moves_backwards(registry, vault_address, t0):
    await registry.mark_completed(vault_address, success=True, attempted_at=t0, reference="sig-1")
    await registry.mark_completed(vault_address, success=True, attempted_at=t0 - timedelta(hours=1), reference="sig-2")
    assert registry.get(vault_address).last_compounded_at == t0


@pytest.mark.asyncio
async def test_failure_does_not_touch_last_compounded(registry, vault_address, t0):
    await registry.mark_completed(vault_address, success=True, attempted_at=t0, reference="sig-1")

    later = t0 + timedelta(hours=5)
    await registry.mark_in_progress(vault_address)
    await registry.mark_completed(
        vault_address,
        success=False,
        attempted_at=later,
        error_kind=CompoundErrorKind.CONTRACT_REJECTED
    )

    state = registry.get(vault_address)
    assert state.status == VaultStatus.FAILED
    assert state.last_compounded_at == t0
    assert state.last_attempt_at == later
    assert state.last_error == "contract_rejected"
    assert state.consecutive_failures == 1


@pytest.mark.asyncio
async def test_failed_vault_waits_for_cooldown(registry, vault_address, t0):
    await registry.mark_completed(vault_address, success=False, attempted_at=t0, error_kind=CompoundErrorKind.TIMEOUT)

    assert registry.due(t0 + timedelta(minutes=29)) == []
    assert [v.address for v in registry.due(t0 + timedelta(minutes=30))] == [vault_address]


@pytest.mark.asyncio
async def test_store_failure_on_success_leaves_vault_degraded(registry, store, vault_address, t0, monkeypatch):
    async def failing_update(vault_id, **fields):
        raise StoreError("update_vault failed after 2 attempts")

    monkeypatch.setattr(store, "update_vault", failing_update)

    persisted = await registry.mark_completed(vault_address, success=True, attempted_at=t0, reference="sig-1")

    assert persisted is False
    state = registry.get(vault_address)
    assert state.status == VaultStatus.DEGRADED
    assert state.last_compounded_at is None


@pytest.mark.asyncio
async def test_snapshot_returns_copies(registry, vault_address):
    snapshot = registry.snapshot()
    snapshot[0].status = VaultStatus.FAILED
    assert registry.get(vault_address).status == VaultStatus.IDLE


def test_unknown_vault_raises():
    registry = VaultRegistry(None, compound_interval_hours=4)
    with pytest.raises(VaultNotFoundError):
        registry.get("missing")


@pytest.mark.asyncio
async def test_failed_claim_does_not_leave_vault_in_progress(registry, store, vault_address, t0, monkeypatch):
    async def unreachable(vault_id, **fields):
        raise asyncio.CancelledError()

    monkeypatch.setattr(store, "update_vault", unreachable)

    with pytest.raises(asyncio.CancelledError):
        await registry.mark_in_progress(vault_address)

    assert registry.get(vault_address).status == VaultStatus.IDLE
    assert [v.address for v in registry.due(t0)] == [vault_address]


@pytest.mark.asyncio
async def test_release_restores_status_before_claim(registry, store, vault_address, t0):
    await registry.mark_completed(vault_address, success=False, attempted_at=t0, error_kind=CompoundErrorKind.TIMEOUT)
    assert await registry.mark_in_progress(vault_address)

    await registry.release(vault_address)

    state = registry.get(vault_address)
    assert state.status == VaultStatus.FAILED
    assert state.consecutive_failures == 1
    assert (await store.get_vault(vault_address)).status == VaultStatus.FAILED.value


@pytest.mark.asyncio
async def test_unexpected_error_on_success_update_leaves_vault_degraded(registry, store, vault_address, t0, monkeypatch):
    await registry.mark_in_progress(vault_address)

    async def broken_update(vault_id, **fields):
        raise RuntimeError("session closed")

    monkeypatch.setattr(store, "update_vault", broken_update)

    with pytest.raises(RuntimeError):
        await registry.mark_completed(vault_address, success=True, attempted_at=t0, reference="sig-1")

    state = registry.get(vault_address)
    assert state.status == VaultStatus.DEGRADED
    assert state.last_compounded_at is None
