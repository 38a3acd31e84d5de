"""
Customer & Order Ingestion API.

Writes are validated here and enqueued; the worker applies them. Reads go
straight to the store.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from minicrm.config import get_settings
from minicrm.orchestration import QueueSet
from minicrm.routers.dependencies import get_queue_set, get_customer_store
from minicrm.schemas import CustomerIn, CustomerBatchIn, OrderIn, CustomerResponse
from minicrm.services.customer_store import CustomerStore

router = APIRouter(tags=["Customers"])
logger = logging.getLogger(__name__)


def _task_payload(model) -> dict:
    return model.model_dump(mode="json", by_alias=True, exclude_unset=True)


@router.post("/customers", status_code=202)
async def ingest_customer(
    customer: CustomerIn,
    queues: QueueSet = Depends(get_queue_set),
):
    task = await queues.enqueue("ingest-customer", _task_payload(customer))
    return {"message": "Customer queued for processing", "customerId": customer.id, "taskId": task.id}


@router.post("/customers/batch", status_code=202)
async def ingest_customers_batch(
    batch: CustomerBatchIn,
    queues: QueueSet = Depends(get_queue_set),
):
    """Split the batch into chunks of INGEST_BATCH_SIZE, one task each."""
    size = max(1, get_settings().INGEST_BATCH_SIZE)
    customers = [_task_payload(customer) for customer in batch.customers]
    batches = 0
    for start in range(0, len(customers), size):
        await queues.enqueue("batch-ingest-customers", {"customers": customers[start:start + size]})
        batches += 1
    logger.info(f"Queued {len(customers)} customers in {batches} batches")
    return {"message": "Customers queued for processing", "count": len(customers), "batches": batches}


@router.post("/orders", status_code=202)
async def ingest_order(
    order: OrderIn,
    queues: QueueSet = Depends(get_queue_set),
):
    task = await queues.enqueue("ingest-order", _task_payload(order))
    return {"message": "Order queued for processing", "orderId": order.id, "taskId": task.id}


@router.get("/customers", response_model=List[CustomerResponse])
async def list_customers(
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    store: CustomerStore = Depends(get_customer_store),
):
    customers = await store.list_customers(limit=limit, offset=offset)
    return [CustomerResponse.model_validate(customer) for customer in customers]


@router.get("/customers/stats")
async def customer_stats(store: CustomerStore = Depends(get_customer_store)):
    return await store.get_stats()
