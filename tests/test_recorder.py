"""
Test performance metrics and the performance recorder.
"""

from datetime import timedelta

import pytest

from compounder.core.exceptions import StoreError
from compounder.models.base import as_utc
from compounder.services.compounding.recorder import (
    SECONDS_PER_YEAR,
    PerformanceRecorder,
    compute_metrics,
)
from compounder.services.compounding.types import PriceBatch, PriceSample, RecordStatus, VaultMetrics

from conftest import account


def test_metrics_from_before_and_after():
    before = account("v", 1_000_000_000)
    after = account("v", 1_001_000_000)
    quote = PriceSample("usdc", 0.999, 0.001, None)

    metrics = compute_metrics(before, after, SECONDS_PER_YEAR / 2, quote)

    assert metrics.amount_earned == 1_000_000
    assert metrics.tvl == pytest.approx(1001.0)
    assert metrics.tvl_usd == pytest.approx(1001.0 * 0.999)
    assert metrics.yield_rate == pytest.approx(1.001 ** 2 - 1)


def test_metrics_never_negative_earned():
    metrics = compute_metrics(account("v", 500), account("v", 400), 3600)
    assert metrics.amount_earned == 0
    assert metrics.yield_rate == 0


def test_metrics_missing_state():
    metrics = compute_metrics(None, None, 3600)
    assert metrics == VaultMetrics()

    metrics = compute_metrics(None, account("v", 2_000_000), None)
    assert metrics.tvl == 2.0
    assert metrics.amount_earned is None
    assert metrics.yield_rate is None


def test_metrics_without_elapsed_time_have_no_yield():
    metrics = compute_metrics(account("v", 100), account("v", 110), None)
    assert metrics.amount_earned == 10
    assert metrics.yield_rate is None


def _batch(t0, missing=()):
    batch = PriceBatch()
    for feed_id, price in [("feed-a", 142.5), ("feed-b", 1.0)]:
        if feed_id in missing:
            batch.samples[feed_id] = None
            batch.failures[feed_id] = "feed unavailable"
        else:
            batch.samples[feed_id] = PriceSample(feed_id, price, 0.01, t0)
    return batch


@pytest.fixture
async def vault(store, vault_address):
    return await store.create_vault(vault_address, 4)


@pytest.mark.asyncio
async def test_record_with_missing_feed(store, vault, t0):
    recorder = PerformanceRecorder(store)
    metrics = VaultMetrics(tvl=1001.0, amount_earned=1_000_000)

    status = await recorder.record(vault.id, t0, metrics, _batch(t0, missing=["feed-b"]), "sig-1")

    assert status == RecordStatus.RECORDED
    records = await recorder.history(vault.id, t0, t0)
    assert len(records) == 1
    assert records[0].prices["feed-a"]["price"] == 142.5
    assert records[0].prices["feed-b"] is None
    assert records[0].failed_feeds == ["feed-b"]
    assert records[0].amount_earned == 1_000_000


@pytest.mark.asyncio
async def test_duplicate_reference_is_not_stored_twice(store, vault, t0):
    recorder = PerformanceRecorder(store)
    await recorder.record(vault.id, t0, VaultMetrics(), _batch(t0), "sig-1")

    assert await recorder.record(vault.id, t0 + timedelta(hours=4), VaultMetrics(), _batch(t0), "sig-1") == RecordStatus.DUPLICATE

    fresh = PerformanceRecorder(store)
    assert await fresh.record(vault.id, t0 + timedelta(hours=4), VaultMetrics(), _batch(t0), "sig-1") == RecordStatus.DUPLICATE

    assert len(await recorder.history(vault.id, t0, t0 + timedelta(days=1))) == 1


@pytest.mark.asyncio
async def test_timestamps_strictly_increase(store, vault, t0):
    recorder = PerformanceRecorder(store)
    assert await recorder.record(vault.id, t0, VaultMetrics(), _batch(t0), "sig-1") == RecordStatus.RECORDED
    assert await recorder.record(vault.id, t0, VaultMetrics(), _batch(t0), "sig-2") == RecordStatus.REJECTED
    assert await recorder.record(vault.id, t0 - timedelta(minutes=1), VaultMetrics(), _batch(t0), "sig-3") == RecordStatus.REJECTED
    assert await recorder.record(vault.id, t0 + timedelta(hours=4), VaultMetrics(), _batch(t0), "sig-4") == RecordStatus.RECORDED

    timestamps = [as_utc(r.timestamp) for r in await recorder.history(vault.id, t0 - timedelta(days=1), t0 + timedelta(days=1))]
    assert timestamps == [t0, t0 + timedelta(hours=4)]


@pytest.mark.asyncio
async def test_store_failure_reports_failed(store, vault, t0, monkeypatch):
    async def failing_store(vault_id, sample):
        raise StoreError("store_vault_performance failed after 2 attempts")

    monkeypatch.setattr(store, "store_vault_performance", failing_store)

    status = await PerformanceRecorder(store).record(vault.id, t0, VaultMetrics(), _batch(t0), "sig-1")
    assert status == RecordStatus.FAILED
    assert not status.durable


@pytest.mark.asyncio
async def test_recent_reference_cache_is_bounded(store, vault, t0):
    recorder = PerformanceRecorder(store, recent_references=2)
    for i in range(4):
        status = await recorder.record(vault.id, t0 + timedelta(hours=4 * i), VaultMetrics(), _batch(t0), f"sig-{i}")
        assert status == RecordStatus.RECORDED

    assert list(recorder._recorded_refs) == ["sig-2", "sig-3"]

    # evicted references are still caught by the store
    later = t0 + timedelta(days=1)
    assert await recorder.record(vault.id, later, VaultMetrics(), _batch(t0), "sig-0") == RecordStatus.DUPLICATE
