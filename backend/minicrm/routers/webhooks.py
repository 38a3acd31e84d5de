"""
Delivery Webhooks.

- POST /api/delivery-receipt: vendor acknowledgment, enqueued for the aggregator
- POST /api/vendor/send: the simulated vendor's intake
"""

import logging

from fastapi import APIRouter, Depends

from minicrm.integrations.vendor import SimulatedVendor
from minicrm.orchestration import QueueSet
from minicrm.routers.dependencies import get_queue_set, get_simulated_vendor
from minicrm.schemas import DeliveryReceipt, VendorSendRequest

router = APIRouter(tags=["Delivery"])
logger = logging.getLogger(__name__)


@router.post("/delivery-receipt")
async def delivery_receipt(
    receipt: DeliveryReceipt,
    queues: QueueSet = Depends(get_queue_set),
):
    """Missing or unknown fields are rejected with 422 before anything is queued."""
    await queues.enqueue(
        "update-delivery-status",
        receipt.model_dump(mode="json", by_alias=True, exclude_none=True),
    )
    return {"received": True, "deliveryId": receipt.delivery_id, "status": receipt.status}


@router.post("/vendor/send", status_code=202)
async def vendor_send(
    request: VendorSendRequest,
    vendor: SimulatedVendor = Depends(get_simulated_vendor),
):
    vendor.schedule_receipt(request.delivery_id)
    logger.debug(f"Vendor accepted {request.delivery_id}")
    return {"accepted": True, "deliveryId": request.delivery_id}
