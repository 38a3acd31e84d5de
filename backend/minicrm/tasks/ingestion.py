"""
Ingestion Tasks.

Customer upserts and order inserts arriving through the API are validated,
enqueued and written here by the worker.
"""

import logging
from typing import Any, Dict

from pydantic import ValidationError

from minicrm.errors import ValidationFailedError
from minicrm.orchestration import TaskContext, task_handler, INGESTION_QUEUE
from minicrm.schemas import CustomerIn, CustomerBatchIn, OrderIn

logger = logging.getLogger(__name__)


def parse_payload(model, payload: Dict[str, Any]):
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise ValidationFailedError(f"Invalid {model.__name__} payload: {e.errors()}") from e


@task_handler("ingest-customer", INGESTION_QUEUE)
async def ingest_customer(payload: Dict[str, Any], ctx: TaskContext):
    customer = parse_payload(CustomerIn, payload)
    await ctx.customer_store.upsert_customer(customer)
    return {"customerId": customer.id}


@task_handler("batch-ingest-customers", INGESTION_QUEUE)
async def batch_ingest_customers(payload: Dict[str, Any], ctx: TaskContext):
    batch = parse_payload(CustomerBatchIn, payload)
    count = await ctx.customer_store.upsert_customers(batch.customers)
    return {"count": count}


@task_handler("ingest-order", INGESTION_QUEUE)
async def ingest_order(payload: Dict[str, Any], ctx: TaskContext):
    order = parse_payload(OrderIn, payload)
    created = await ctx.customer_store.ingest_order(order)
    return {"orderId": order.id, "created": created}
