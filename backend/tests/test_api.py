"""
API tests: requests go through the ASGI app, queued work is applied by a
worker drained inline, buffered receipts are flushed explicitly.
"""

from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from minicrm.integrations.vendor import SimulatedVendor, VendorDispatcher
from minicrm.models import CampaignStatus
from minicrm.orchestration import TaskContext, DELIVERY_QUEUE, INGESTION_QUEUE
from minicrm.services.aggregator import DeliveryStatusAggregator
from minicrm.services.campaign_repository import CampaignRepository
from minicrm.services.customer_store import CustomerStore
from minicrm.services.delivery_log import DeliveryLogStore
from minicrm.services.orchestrator import CampaignOrchestrator
from minicrm.worker import Worker

LOYAL_HIGH_SPENDERS = {
    "operator": "AND",
    "conditions": [
        {"field": "totalSpends", "operator": ">", "value": 10000},
        {"field": "visits", "operator": ">=", "value": 5},
    ],
}


class AcceptingDispatcher(VendorDispatcher):

    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(message)
        return True


@pytest.fixture
def worker(db, queues):
    customer_store = CustomerStore(db)
    campaign_repo = CampaignRepository(db)
    delivery_log = DeliveryLogStore(db)
    orchestrator = CampaignOrchestrator(
        dispatcher=AcceptingDispatcher(),
        customer_store=customer_store,
        campaign_repo=campaign_repo,
        delivery_log=delivery_log,
        settings=SimpleNamespace(AUDIENCE_CHUNK_SIZE=500, DEFAULT_RECIPIENT_NAME="Customer"),
    )
    aggregator = DeliveryStatusAggregator(delivery_log, campaign_repo, batch_size=100, flush_interval=60)
    return Worker(queues, TaskContext(customer_store, orchestrator, aggregator), receive_timeout=0.01)


async def settle(worker):
    """Apply everything queued so far, including buffered receipts."""
    await worker.drain()
    await worker.context.orchestrator.wait_for_dispatches()
    await worker.context.aggregator.flush()


async def campaign_stats(client, auth_headers, campaign_id):
    response = await client.get(f"/api/campaigns/{campaign_id}", headers=auth_headers)
    assert response.status_code == 200
    return response.json()["stats"]


@pytest.mark.asyncio
async def test_campaign_end_to_end(client, auth_headers, worker):
    for customer in (
        {"id": "A", "name": "Alice", "email": "alice@example.com", "totalSpends": 20000, "visits": 6},
        {"id": "B", "name": "Bob", "totalSpends": 5000, "visits": 1},
        {"id": "C", "name": "Carol", "totalSpends": 25000, "visits": 10},
    ):
        response = await client.post("/api/customers", json=customer)
        assert response.status_code == 202
    await settle(worker)

    preview = await client.post(
        "/api/campaigns/preview", json={"segmentRules": LOYAL_HIGH_SPENDERS}, headers=auth_headers,
    )
    assert preview.status_code == 200
    assert preview.json()["audienceSize"] == 2
    assert {c["id"] for c in preview.json()["sample"]} == {"A", "C"}

    created = await client.post(
        "/api/campaigns",
        json={"name": "Loyal big spenders", "segmentRules": LOYAL_HIGH_SPENDERS, "message": "Hi {name}!"},
        headers=auth_headers,
    )
    assert created.status_code == 201
    campaign = created.json()
    assert campaign["audienceSize"] == 2
    assert campaign["status"] == CampaignStatus.PENDING

    await settle(worker)
    assert await campaign_stats(client, auth_headers, campaign["id"]) == {"sent": 0, "failed": 0, "pending": 2}

    realtime = (await client.get(f"/api/campaigns/{campaign['id']}/realtime", headers=auth_headers)).json()
    logs = {log["customerId"]: log for log in realtime["recentActivity"]}
    assert set(logs) == {"A", "C"}
    assert logs["A"]["message"] == "Hi Alice!"
    assert logs["C"]["message"] == "Hi Carol!"
    assert logs["A"]["deliveryId"] != logs["C"]["deliveryId"]
    assert realtime["statusDistribution"] == {"PENDING": 2, "SENT": 0, "FAILED": 0}

    response = await client.post("/api/delivery-receipt", json={"deliveryId": logs["A"]["deliveryId"], "status": "SENT"})
    assert response.status_code == 200
    await settle(worker)
    assert await campaign_stats(client, auth_headers, campaign["id"]) == {"sent": 1, "failed": 0, "pending": 1}

    response = await client.post("/api/delivery-receipt", json={"deliveryId": logs["C"]["deliveryId"], "status": "FAILED"})
    assert response.status_code == 200
    await settle(worker)
    assert await campaign_stats(client, auth_headers, campaign["id"]) == {"sent": 1, "failed": 1, "pending": 0}

    final = (await client.get(f"/api/campaigns/{campaign['id']}", headers=auth_headers)).json()
    assert final["status"] == CampaignStatus.COMPLETED


@pytest.mark.asyncio
async def test_receipt_with_missing_fields_is_rejected(client, queues):
    response = await client.post("/api/delivery-receipt", json={"status": "SENT"})

    assert response.status_code == 422
    assert await queues[DELIVERY_QUEUE].size() == 0


@pytest.mark.asyncio
async def test_receipt_with_unknown_status_is_rejected(client, queues):
    response = await client.post("/api/delivery-receipt", json={"deliveryId": "del_1", "status": "BOUNCED"})

    assert response.status_code == 422
    assert await queues[DELIVERY_QUEUE].size() == 0


@pytest.mark.asyncio
async def test_vendor_style_receipt_is_accepted(client, queues):
    response = await client.post("/api/delivery-receipt", json={"deliveryId": "del_1", "status": "success"})

    assert response.json() == {"received": True, "deliveryId": "del_1", "status": "SENT"}
    assert await queues[DELIVERY_QUEUE].size() == 1


@pytest.mark.asyncio
async def test_campaign_routes_require_authentication(client):
    response = await client.get("/api/campaigns")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_campaigns_are_scoped_to_their_owner(client, auth_headers, db):
    other = await CampaignRepository(db).create(
        name="Not yours", user_id="someone-else", segment_rules={}, message="Hi", audience_size=0,
    )

    response = await client.get(f"/api/campaigns/{other.id}", headers=auth_headers)
    listing = await client.get("/api/campaigns", headers=auth_headers)

    assert response.status_code == 404
    assert response.json()["error"]["type"] == "not_found"
    assert listing.json() == []


@pytest.mark.asyncio
async def test_invalid_segment_rule_is_a_client_error(client, auth_headers):
    response = await client.post(
        "/api/campaigns",
        json={
            "name": "Broken",
            "segmentRules": {"operator": "XOR", "conditions": [{"field": "visits", "operator": ">", "value": 1}]},
            "message": "Hi",
        },
        headers=auth_headers,
    )

    assert response.status_code == 400
    assert response.json()["error"]["type"] == "invalid_segment_rule"


@pytest.mark.asyncio
async def test_preview_accepts_rules_as_query_string(client, auth_headers, seed_customers):
    await seed_customers({"id": "A", "total_spends": Decimal(20000), "visits": 6})

    response = await client.get(
        "/api/campaigns/preview",
        params={
            "rules": '{"operator": "OR", "conditions": [{"field": "visits", "operator": ">", "value": 3}]}',
            "sampleSize": 0,
        },
        headers=auth_headers,
    )

    assert response.status_code == 200
    assert response.json() == {"audienceSize": 1, "sample": []}


@pytest.mark.asyncio
async def test_enqueue_failure_marks_campaign_failed(client, auth_headers, queues, db):
    with patch.object(queues, "enqueue", AsyncMock(side_effect=ConnectionError("redis down"))):
        response = await client.post(
            "/api/campaigns",
            json={"name": "Unlucky", "segmentRules": LOYAL_HIGH_SPENDERS, "message": "Hi"},
            headers=auth_headers,
        )

    assert response.status_code == 503
    campaigns = await CampaignRepository(db).list_for_user("user-123")
    assert [c.status for c in campaigns] == [CampaignStatus.FAILED]


@pytest.mark.asyncio
async def test_reconcile_repairs_double_counted_stats(client, auth_headers, worker, seed_customers, db):
    await seed_customers({"id": "A", "name": "Alice", "total_spends": Decimal(20000), "visits": 6})
    created = (await client.post(
        "/api/campaigns",
        json={"name": "Dup", "segmentRules": LOYAL_HIGH_SPENDERS, "message": "Hi"},
        headers=auth_headers,
    )).json()
    await settle(worker)
    [log] = await DeliveryLogStore(db).list_for_campaign(created["id"])
    for _ in range(2):
        await client.post("/api/delivery-receipt", json={"deliveryId": log.delivery_id, "status": "SENT"})
    await settle(worker)
    assert await campaign_stats(client, auth_headers, created["id"]) == {"sent": 2, "failed": 0, "pending": 0}

    response = await client.post(f"/api/campaigns/{created['id']}/reconcile", headers=auth_headers)

    assert response.json() == {"sent": 1, "failed": 0, "pending": 0}


@pytest.mark.asyncio
async def test_customer_batch_and_order_ingestion(client, worker, queues):
    customers = [{"id": f"c{i}", "name": f"Customer {i}"} for i in range(250)]

    response = await client.post("/api/customers/batch", json={"customers": customers})
    assert response.status_code == 202
    assert response.json()["count"] == 250
    assert response.json()["batches"] == 3
    await settle(worker)

    response = await client.post("/api/orders", json={"id": "o1", "customerId": "c7", "amount": 120.5})
    assert response.status_code == 202
    await settle(worker)

    stats = (await client.get("/api/customers/stats")).json()
    listing = (await client.get("/api/customers", params={"limit": 500})).json()
    ordered = next(c for c in listing if c["id"] == "c7")
    assert len(listing) == 250
    assert ordered["totalSpends"] == 120.5
    assert ordered["visits"] == 1
    assert stats["totalCustomers"] == 250
    assert await queues[INGESTION_QUEUE].dead_letters() == []


@pytest.mark.asyncio
async def test_invalid_customer_is_rejected_before_queueing(client, queues):
    response = await client.post("/api/customers", json={"id": "c1", "email": "not-an-email"})

    assert response.status_code == 422
    assert await queues[INGESTION_QUEUE].size() == 0


@pytest.mark.asyncio
async def test_dashboard_counts(client, auth_headers, worker, seed_customers):
    await seed_customers(
        {"id": "A", "total_spends": Decimal(20000), "visits": 6},
        {"id": "B", "total_spends": Decimal(100), "visits": 1},
    )
    await client.post(
        "/api/campaigns",
        json={"name": "Dash", "segmentRules": LOYAL_HIGH_SPENDERS, "message": "Hi"},
        headers=auth_headers,
    )
    await settle(worker)

    dashboard = (await client.get("/api/analytics/dashboard", headers=auth_headers)).json()
    performance = (await client.get("/api/analytics/campaigns/performance", headers=auth_headers)).json()

    assert dashboard["totalCustomers"] == 2
    assert dashboard["totalCampaigns"] == 1
    assert dashboard["deliveryStats"] == {"pending": 1}
    assert dashboard["deliveryRate"] == 0.0
    assert [(day["sent"], day["failed"], day["pending"]) for day in performance["performanceData"]] == [(0, 0, 1)]


@pytest.mark.asyncio
async def test_simulated_vendor_endpoint_schedules_receipt(client):
    from minicrm.main import app

    on_receipt = AsyncMock()
    app.state.vendor = SimulatedVendor(on_receipt=on_receipt, success_rate=1.0, min_delay=0, max_delay=0)
    try:
        response = await client.post("/api/vendor/send", json={"deliveryId": "del_9", "message": "Hi"})
        await app.state.vendor.drain()
    finally:
        del app.state.vendor

    assert response.status_code == 202
    assert on_receipt.await_args.args[0]["deliveryId"] == "del_9"


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "database": "connected"}
