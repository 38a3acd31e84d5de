"""
Delivery Status Tasks.

Each vendor receipt becomes one ``update-delivery-status`` task. The handler
only buffers the event; the aggregator commits buffered events in batches.
An event that is buffered but not yet flushed when the process dies is lost.
"""

from datetime import datetime
from typing import Any, Dict

from minicrm.orchestration import TaskContext, task_handler, DELIVERY_QUEUE
from minicrm.schemas import DeliveryReceipt
from minicrm.services.aggregator import DeliveryEvent
from minicrm.tasks.ingestion import parse_payload


@task_handler("update-delivery-status", DELIVERY_QUEUE)
async def update_delivery_status(payload: Dict[str, Any], ctx: TaskContext):
    receipt = parse_payload(DeliveryReceipt, payload)
    await ctx.aggregator.submit(DeliveryEvent(
        delivery_id=receipt.delivery_id,
        status=receipt.status,
        timestamp=receipt.timestamp or datetime.utcnow(),
    ))
    return {"deliveryId": receipt.delivery_id, "status": receipt.status}
