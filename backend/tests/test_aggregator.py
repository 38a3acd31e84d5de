"""
Tests for the Delivery Status Aggregator.

Covers stats conservation, the duplicate-acknowledgment double count,
out-of-order events spread across many flushes, and failure isolation.
"""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from minicrm.models import CampaignStatus, DeliveryStatus
from minicrm.services.aggregator import DeliveryEvent, DeliveryStatusAggregator
from minicrm.services.campaign_repository import CampaignRepository
from minicrm.services.delivery_log import DeliveryLogStore


@pytest.fixture
def repo(db):
    return CampaignRepository(db)


@pytest.fixture
def delivery_log(db):
    return DeliveryLogStore(db)


async def dispatched_campaign(repo, delivery_log, size, prefix="del"):
    """A PROCESSING campaign with ``size`` PENDING log entries. Returns (campaign_id, delivery_ids)."""
    campaign = await repo.create(
        name="Test", user_id="user-123", segment_rules={}, message="Hi", audience_size=size,
    )
    await repo.claim_for_processing(campaign.id, size)
    delivery_ids = [f"{prefix}_{campaign.id[:8]}_{i}" for i in range(size)]
    await delivery_log.create_entries([
        {"delivery_id": delivery_id, "campaign_id": campaign.id, "customer_id": f"c{i}", "message": "Hi"}
        for i, delivery_id in enumerate(delivery_ids)
    ])
    return campaign.id, delivery_ids


@pytest.mark.asyncio
async def test_single_acknowledgment_per_event_conserves_stats(repo, delivery_log):
    campaign_id, delivery_ids = await dispatched_campaign(repo, delivery_log, 10)
    aggregator = DeliveryStatusAggregator(delivery_log, repo, batch_size=100, flush_interval=60)

    for i, delivery_id in enumerate(delivery_ids):
        status = DeliveryStatus.SENT if i % 3 else DeliveryStatus.FAILED
        await aggregator.submit(DeliveryEvent(delivery_id, status))
    result = await aggregator.flush()

    campaign = await repo.get(campaign_id)
    assert result.received == 10 and result.applied == 10
    assert campaign.stats_sent + campaign.stats_failed == 10
    assert campaign.stats == {"sent": 6, "failed": 4, "pending": 0}
    assert campaign.status == CampaignStatus.COMPLETED
    assert campaign.completed_at is not None


@pytest.mark.asyncio
async def test_duplicate_acknowledgment_double_counts_stats(repo, delivery_log):
    campaign_id, delivery_ids = await dispatched_campaign(repo, delivery_log, 3)
    aggregator = DeliveryStatusAggregator(delivery_log, repo, batch_size=100, flush_interval=60)
    event = DeliveryEvent(delivery_ids[0], DeliveryStatus.SENT)

    await aggregator.submit(event)
    await aggregator.flush()
    await aggregator.submit(event)
    await aggregator.flush()

    entry = await delivery_log.get_by_delivery_id(delivery_ids[0])
    campaign = await repo.get(campaign_id)
    assert entry.status == DeliveryStatus.SENT
    # Counters accumulate deltas: the same receipt counts twice.
    assert campaign.stats == {"sent": 2, "failed": 0, "pending": 1}


@pytest.mark.asyncio
async def test_contradicting_late_receipt_leaves_terminal_entry_alone(repo, delivery_log):
    campaign_id, delivery_ids = await dispatched_campaign(repo, delivery_log, 3)
    aggregator = DeliveryStatusAggregator(delivery_log, repo, batch_size=100, flush_interval=60)

    await aggregator.submit(DeliveryEvent(delivery_ids[0], DeliveryStatus.SENT))
    await aggregator.flush()
    await aggregator.submit(DeliveryEvent(delivery_ids[0], DeliveryStatus.FAILED))
    result = await aggregator.flush()

    entry = await delivery_log.get_by_delivery_id(delivery_ids[0])
    campaign = await repo.get(campaign_id)
    assert entry.status == DeliveryStatus.SENT
    assert (result.applied, result.dropped) == (0, 1)
    assert campaign.stats == {"sent": 1, "failed": 0, "pending": 2}


@pytest.mark.asyncio
async def test_first_receipt_wins_within_one_batch(repo, delivery_log):
    campaign_id, delivery_ids = await dispatched_campaign(repo, delivery_log, 2)
    aggregator = DeliveryStatusAggregator(delivery_log, repo, batch_size=100, flush_interval=60)

    await aggregator.submit(DeliveryEvent(delivery_ids[0], DeliveryStatus.FAILED))
    await aggregator.submit(DeliveryEvent(delivery_ids[0], DeliveryStatus.SENT))
    await aggregator.submit(DeliveryEvent(delivery_ids[0], DeliveryStatus.FAILED))
    await aggregator.flush()

    entry = await delivery_log.get_by_delivery_id(delivery_ids[0])
    campaign = await repo.get(campaign_id)
    assert entry.status == DeliveryStatus.FAILED
    assert campaign.stats == {"sent": 0, "failed": 2, "pending": 0}


@pytest.mark.asyncio
async def test_reconcile_recounts_from_the_log(repo, delivery_log):
    campaign_id, delivery_ids = await dispatched_campaign(repo, delivery_log, 3)
    aggregator = DeliveryStatusAggregator(delivery_log, repo, batch_size=100, flush_interval=60)
    for _ in range(2):
        await aggregator.submit(DeliveryEvent(delivery_ids[0], DeliveryStatus.SENT))
    await aggregator.flush()

    stats = await repo.reconcile_stats(campaign_id)

    assert stats == {"sent": 1, "failed": 0, "pending": 2}
    assert (await repo.get(campaign_id)).stats == stats


@pytest.mark.asyncio
async def test_out_of_order_events_across_many_flushes_all_land(repo, delivery_log):
    campaign_id, delivery_ids = await dispatched_campaign(repo, delivery_log, 500)
    expected = {
        delivery_id: DeliveryStatus.SENT if i % 4 else DeliveryStatus.FAILED
        for i, delivery_id in enumerate(delivery_ids)
    }
    events = [DeliveryEvent(delivery_id, status) for delivery_id, status in expected.items()]
    random.Random(7).shuffle(events)

    aggregator = DeliveryStatusAggregator(delivery_log, repo, batch_size=50, flush_interval=60)
    for event in events:
        await aggregator.submit(event)
    await aggregator.stop()

    logs = await delivery_log.list_for_campaign(campaign_id)
    assert {log.delivery_id: log.status for log in logs} == expected
    assert not [log for log in logs if log.status == DeliveryStatus.PENDING]

    campaign = await repo.get(campaign_id)
    assert campaign.stats == {"sent": 375, "failed": 125, "pending": 0}
    assert campaign.status == CampaignStatus.COMPLETED


@pytest.mark.asyncio
async def test_events_for_several_campaigns_are_grouped(repo, delivery_log):
    first_id, first_deliveries = await dispatched_campaign(repo, delivery_log, 2, prefix="a")
    second_id, second_deliveries = await dispatched_campaign(repo, delivery_log, 3, prefix="b")
    aggregator = DeliveryStatusAggregator(delivery_log, repo, batch_size=100, flush_interval=60)

    await aggregator.submit(DeliveryEvent(first_deliveries[0], DeliveryStatus.SENT))
    await aggregator.submit(DeliveryEvent(second_deliveries[0], DeliveryStatus.FAILED))
    await aggregator.submit(DeliveryEvent(second_deliveries[1], DeliveryStatus.SENT))
    result = await aggregator.flush()

    assert result.campaigns == {first_id: (1, 0), second_id: (1, 1)}
    assert (await repo.get(first_id)).stats == {"sent": 1, "failed": 0, "pending": 1}
    assert (await repo.get(second_id)).stats == {"sent": 1, "failed": 1, "pending": 1}


@pytest.mark.asyncio
async def test_unknown_delivery_ids_are_ignored(repo, delivery_log):
    campaign_id, delivery_ids = await dispatched_campaign(repo, delivery_log, 1)
    aggregator = DeliveryStatusAggregator(delivery_log, repo, batch_size=100, flush_interval=60)

    await aggregator.submit(DeliveryEvent("del_nobody", DeliveryStatus.SENT))
    await aggregator.submit(DeliveryEvent(delivery_ids[0], DeliveryStatus.SENT))
    result = await aggregator.flush()

    assert result.unknown == 1
    assert (await repo.get(campaign_id)).stats == {"sent": 1, "failed": 0, "pending": 0}


@pytest.mark.asyncio
async def test_stats_failure_for_one_campaign_does_not_block_others():
    delivery_log = AsyncMock(spec=DeliveryLogStore)
    delivery_log.apply_updates.side_effect = lambda updates: list(updates)
    delivery_log.campaign_ids_for.return_value = {"d1": "broken", "d2": "healthy"}
    repo = AsyncMock(spec=CampaignRepository)

    async def increment(campaign_id, sent=0, failed=0):
        if campaign_id == "broken":
            raise RuntimeError("deadlock detected")
        return True

    repo.increment_stats.side_effect = increment
    aggregator = DeliveryStatusAggregator(delivery_log, repo, batch_size=100, flush_interval=60)

    await aggregator.submit(DeliveryEvent("d1", DeliveryStatus.SENT))
    await aggregator.submit(DeliveryEvent("d2", DeliveryStatus.FAILED))
    result = await aggregator.flush()

    assert result.failed_campaigns == ["broken"]
    assert result.campaigns == {"healthy": (0, 1)}


@pytest.mark.asyncio
async def test_bad_event_is_dropped_alone(repo, delivery_log):
    campaign_id, delivery_ids = await dispatched_campaign(repo, delivery_log, 2)
    aggregator = DeliveryStatusAggregator(delivery_log, repo, batch_size=100, flush_interval=60)
    # A timestamp the driver cannot bind breaks the bulk statement.
    await aggregator.submit(DeliveryEvent(delivery_ids[0], DeliveryStatus.SENT))
    await aggregator.submit(DeliveryEvent(delivery_ids[1], DeliveryStatus.SENT, timestamp=object()))
    result = await aggregator.flush()

    assert result.applied == 1
    assert result.dropped == 1
    assert (await delivery_log.get_by_delivery_id(delivery_ids[0])).status == DeliveryStatus.SENT
    assert (await delivery_log.get_by_delivery_id(delivery_ids[1])).status == DeliveryStatus.PENDING
    assert (await repo.get(campaign_id)).stats == {"sent": 1, "failed": 0, "pending": 1}


@pytest.mark.asyncio
async def test_full_buffer_schedules_flush_without_blocking_submit():
    delivery_log = AsyncMock(spec=DeliveryLogStore)
    release = asyncio.Event()

    async def slow_apply(updates):
        await release.wait()
        return list(updates)

    delivery_log.apply_updates.side_effect = slow_apply
    delivery_log.campaign_ids_for.return_value = {}
    aggregator = DeliveryStatusAggregator(delivery_log, AsyncMock(spec=CampaignRepository), batch_size=2, flush_interval=60)

    await aggregator.submit(DeliveryEvent("d1", DeliveryStatus.SENT))
    await aggregator.submit(DeliveryEvent("d2", DeliveryStatus.SENT))
    await asyncio.sleep(0)
    # The flush owns the swapped batch; new events go into a fresh buffer.
    await aggregator.submit(DeliveryEvent("d3", DeliveryStatus.SENT))

    assert aggregator.buffered == 1
    release.set()
    result = await aggregator.stop()
    assert result.received == 1
    assert delivery_log.apply_updates.await_count == 2


@pytest.mark.asyncio
async def test_stalled_flush_keeps_a_single_flush_task():
    delivery_log = AsyncMock(spec=DeliveryLogStore)
    release = asyncio.Event()
    batches = []

    async def slow_apply(updates):
        await release.wait()
        batches.append(len(updates))
        return list(updates)

    delivery_log.apply_updates.side_effect = slow_apply
    delivery_log.campaign_ids_for.return_value = {}
    aggregator = DeliveryStatusAggregator(delivery_log, AsyncMock(spec=CampaignRepository), batch_size=2, flush_interval=60)

    await aggregator.submit(DeliveryEvent("d0", DeliveryStatus.SENT))
    await aggregator.submit(DeliveryEvent("d1", DeliveryStatus.SENT))
    await asyncio.sleep(0)
    for i in range(2, 202):
        await aggregator.submit(DeliveryEvent(f"d{i}", DeliveryStatus.SENT))

    assert len(aggregator._flush_tasks) <= 1
    assert aggregator.buffered == 200

    release.set()
    result = await aggregator.stop()
    assert sum(batches) == 202
    assert result.received == 0
    assert aggregator.buffered == 0


@pytest.mark.asyncio
async def test_timer_flushes_partial_batches():
    delivery_log = AsyncMock(spec=DeliveryLogStore)
    delivery_log.apply_updates.side_effect = lambda updates: list(updates)
    delivery_log.campaign_ids_for.return_value = {}
    aggregator = DeliveryStatusAggregator(delivery_log, AsyncMock(spec=CampaignRepository), batch_size=50, flush_interval=0.01)

    aggregator.start()
    await aggregator.submit(DeliveryEvent("d1", DeliveryStatus.FAILED))
    for _ in range(100):
        if aggregator.buffered == 0:
            break
        await asyncio.sleep(0.01)
    await aggregator.stop()

    assert aggregator.buffered == 0
    assert not aggregator.running
    delivery_log.apply_updates.assert_awaited()


def test_event_status_must_be_terminal():
    with pytest.raises(ValueError):
        DeliveryEvent("d1", DeliveryStatus.PENDING)
