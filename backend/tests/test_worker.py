"""
Tests for the queue worker's routing and failure policy.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from minicrm.errors import CampaignNotFoundError
from minicrm.orchestration import TaskContext, CAMPAIGN_QUEUE, DELIVERY_QUEUE, INGESTION_QUEUE
from minicrm.services.customer_store import CustomerStore
from minicrm.services.orchestrator import DispatchSummary
from minicrm.worker import Worker, ACKED, DROPPED, RETRIED, DEAD


@pytest.fixture
def context():
    return TaskContext(
        customer_store=AsyncMock(spec=CustomerStore),
        orchestrator=AsyncMock(),
        aggregator=AsyncMock(),
    )


@pytest.fixture
def worker(queues, context):
    return Worker(queues, context, receive_timeout=0.01)


@pytest.mark.asyncio
async def test_successful_task_is_acked(worker, queues, context):
    context.orchestrator.process_campaign.return_value = DispatchSummary(campaign_id="x", audience_size=2, dispatched=2)
    await queues.enqueue("process-campaign", {"campaignId": "x"})

    assert await worker.process_next(queues[CAMPAIGN_QUEUE]) == ACKED
    context.orchestrator.process_campaign.assert_awaited_once_with("x")
    assert queues[CAMPAIGN_QUEUE].in_flight == 0


@pytest.mark.asyncio
async def test_not_found_is_dropped_without_retry(worker, queues, context):
    context.orchestrator.process_campaign.side_effect = CampaignNotFoundError("gone")
    await queues.enqueue("process-campaign", {"campaignId": "gone"})

    assert await worker.process_next(queues[CAMPAIGN_QUEUE]) == DROPPED
    assert await queues[CAMPAIGN_QUEUE].size() == 0
    assert await queues[CAMPAIGN_QUEUE].dead_letters() == []


@pytest.mark.asyncio
async def test_invalid_payload_is_dropped(worker, queues, context):
    await queues.enqueue("update-delivery-status", {"deliveryId": "del_1", "status": "bounced"})

    assert await worker.process_next(queues[DELIVERY_QUEUE]) == DROPPED
    context.aggregator.submit.assert_not_awaited()


@pytest.mark.asyncio
async def test_transient_failure_is_retried_until_dead_lettered(worker, queues, context):
    context.orchestrator.process_campaign.side_effect = RuntimeError("database is locked")
    await queues.enqueue("process-campaign", {"campaignId": "x"})
    queue = queues[CAMPAIGN_QUEUE]

    outcomes = [await worker.process_next(queue) for _ in range(3)]

    assert outcomes == [RETRIED, RETRIED, DEAD]
    assert context.orchestrator.process_campaign.await_count == 3
    dead = await queue.dead_letters()
    assert len(dead) == 1 and "database is locked" in dead[0].last_error


@pytest.mark.asyncio
async def test_unknown_task_is_dead_lettered(worker, queues):
    queue = queues[INGESTION_QUEUE]
    await queue.enqueue("reticulate-splines", {})

    assert await worker.process_next(queue) == DEAD


@pytest.mark.asyncio
async def test_receipt_is_buffered_in_the_aggregator(worker, queues, context):
    await queues.enqueue("update-delivery-status", {"deliveryId": "del_1", "status": "success"})

    assert await worker.process_next(queues[DELIVERY_QUEUE]) == ACKED
    event = context.aggregator.submit.await_args.args[0]
    assert (event.delivery_id, event.status) == ("del_1", "SENT")


@pytest.mark.asyncio
async def test_ingestion_tasks_reach_the_store(db, queues):
    store = CustomerStore(db)
    worker = Worker(queues, TaskContext(customer_store=store, orchestrator=MagicMock(), aggregator=MagicMock()))
    await queues.enqueue("batch-ingest-customers", {"customers": [
        {"id": "c1", "name": "Alice", "totalSpends": "100"},
        {"id": "c2", "name": "Bob"},
    ]})
    await queues.enqueue("ingest-order", {"id": "o1", "customerId": "c1", "amount": "50"})
    await queues.enqueue("ingest-order", {"id": "o2", "customerId": "ghost", "amount": "5"})

    handled = await worker.drain()

    customers = {c.id: c for c in await store.load_customers(["c1", "c2"])}
    assert handled == 3
    assert customers["c1"].total_spends == Decimal("150")
    assert customers["c1"].visits == 1
    assert customers["c2"].name == "Bob"
    assert await queues[INGESTION_QUEUE].dead_letters() == []
