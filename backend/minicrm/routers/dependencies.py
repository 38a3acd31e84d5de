"""
Router Dependencies
====================

Shared FastAPI dependencies that hand routers their services.
"""

from fastapi import Depends, Request

from minicrm.config import get_settings
from minicrm.integrations.vendor import SimulatedVendor
from minicrm.orchestration import QueueSet, get_queues
from minicrm.services.analytics import AnalyticsService
from minicrm.services.campaign_repository import CampaignRepository
from minicrm.services.campaign_service import CampaignService
from minicrm.services.customer_store import CustomerStore


def get_queue_set() -> QueueSet:
    return get_queues()


def get_customer_store() -> CustomerStore:
    return CustomerStore()


def get_campaign_repository() -> CampaignRepository:
    return CampaignRepository()


def get_campaign_service(queues: QueueSet = Depends(get_queue_set)) -> CampaignService:
    return CampaignService(queues=queues)


def get_analytics_service() -> AnalyticsService:
    return AnalyticsService()


def get_simulated_vendor(request: Request) -> SimulatedVendor:
    """
    The vendor behind /api/vendor/send. Receipts are POSTed back to
    DELIVERY_RECEIPT_URL like a real vendor would.
    """
    vendor = getattr(request.app.state, "vendor", None)
    if vendor is None:
        settings = get_settings()
        vendor = SimulatedVendor(
            receipt_url=settings.DELIVERY_RECEIPT_URL,
            success_rate=settings.VENDOR_SUCCESS_RATE,
            min_delay=settings.VENDOR_MIN_DELAY_SECONDS,
            max_delay=settings.VENDOR_MAX_DELAY_SECONDS,
        )
        request.app.state.vendor = vendor
    return vendor
