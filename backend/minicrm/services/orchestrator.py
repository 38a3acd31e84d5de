"""
Campaign Orchestrator.

Resolves a campaign's audience and fans the personalized message out:
one communication log entry and one fresh correlation id per matched
customer, then a fire-and-forget send to the vendor. Outcomes come back
later as delivery receipts and are folded in by the aggregator.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Set

from minicrm.config import get_settings
from minicrm.integrations.vendor import OutboundMessage, VendorDispatcher
from minicrm.models import CampaignStatus, Customer
from minicrm.services.campaign_repository import CampaignRepository
from minicrm.services.customer_store import CustomerStore
from minicrm.services.delivery_log import DeliveryLogStore
from minicrm.services.segment_compiler import compile_rule

logger = logging.getLogger(__name__)

DispatchErrorHandler = Callable[[OutboundMessage, Exception], Awaitable[None]]


def new_delivery_id() -> str:
    return f"del_{uuid.uuid4().hex}"


def render_message(template: str, customer: Customer, fallback_name: str = "Customer") -> str:
    return template.replace("{name}", customer.name or fallback_name)


@dataclass
class DispatchSummary:
    campaign_id: str
    audience_size: int = 0
    dispatched: int = 0
    failed: int = 0
    skipped: bool = False


class CampaignOrchestrator:
    """
    Runs ``process_campaign`` for the worker.

    Only a PENDING campaign is processed; the PENDING -> PROCESSING claim is
    a single conditional UPDATE, so a redelivered task for the same campaign
    is a no-op instead of a second fan-out.
    """

    def __init__(
        self,
        dispatcher: VendorDispatcher,
        customer_store: Optional[CustomerStore] = None,
        campaign_repo: Optional[CampaignRepository] = None,
        delivery_log: Optional[DeliveryLogStore] = None,
        on_dispatch_error: Optional[DispatchErrorHandler] = None,
        settings=None,
    ):
        self.dispatcher = dispatcher
        self.customer_store = customer_store or CustomerStore()
        self.campaign_repo = campaign_repo or CampaignRepository()
        self.delivery_log = delivery_log or DeliveryLogStore()
        self.on_dispatch_error = on_dispatch_error
        self.settings = settings or get_settings()
        self._in_flight: Set[asyncio.Task] = set()

    async def process_campaign(self, campaign_id: str) -> DispatchSummary:
        campaign = await self.campaign_repo.get_or_raise(campaign_id)
        summary = DispatchSummary(campaign_id=campaign_id)

        if campaign.status != CampaignStatus.PENDING:
            logger.info(f"Campaign {campaign_id} is {campaign.status}, skipping")
            summary.skipped = True
            return summary

        try:
            segment = compile_rule(campaign.segment_rules)
            audience_ids = await self.customer_store.matching_ids(segment)
        except Exception as e:
            # Not claimed yet: only fail a campaign nobody else has picked up.
            await self.campaign_repo.mark_failed(
                campaign_id, f"Audience resolution failed: {e}", from_statuses=(CampaignStatus.PENDING,)
            )
            raise

        summary.audience_size = len(audience_ids)
        if not await self.campaign_repo.claim_for_processing(campaign_id, len(audience_ids)):
            logger.info(f"Campaign {campaign_id} was claimed by another worker, skipping")
            summary.skipped = True
            return summary

        logger.info(f"Processing campaign {campaign_id} for {len(audience_ids)} customers")

        if not audience_ids:
            await self.campaign_repo.mark_completed(campaign_id)
            return summary

        chunk_size = max(1, self.settings.AUDIENCE_CHUNK_SIZE)
        try:
            for start in range(0, len(audience_ids), chunk_size):
                chunk = audience_ids[start:start + chunk_size]
                dispatched, failed = await self._dispatch_chunk(campaign, chunk)
                summary.dispatched += dispatched
                summary.failed += failed
        except Exception as e:
            await self.campaign_repo.mark_failed(
                campaign_id, f"Dispatch failed: {e}", from_statuses=(CampaignStatus.PROCESSING,)
            )
            raise

        logger.info(
            f"Campaign {campaign_id} dispatched {summary.dispatched} messages "
            f"({summary.failed} could not be prepared)"
        )
        return summary

    async def _dispatch_chunk(self, campaign, customer_ids: List[str]):
        customers = await self.customer_store.load_customers(customer_ids)

        messages = [
            OutboundMessage(
                delivery_id=new_delivery_id(),
                campaign_id=campaign.id,
                customer_id=customer.id,
                customer_name=customer.name,
                customer_email=customer.email,
                message=render_message(campaign.message, customer, self.settings.DEFAULT_RECIPIENT_NAME),
            )
            for customer in customers
        ]
        persisted = set(await self.delivery_log.create_entries([
            {
                "delivery_id": item.delivery_id,
                "campaign_id": item.campaign_id,
                "customer_id": item.customer_id,
                "customer_name": item.customer_name,
                "customer_email": item.customer_email,
                "message": item.message,
            }
            for item in messages
        ]))

        dispatched = 0
        for item in messages:
            if item.delivery_id in persisted:
                self._dispatch(item)
                dispatched += 1

        # Missing rows and unpersisted entries will never be acknowledged.
        failed = len(customer_ids) - dispatched
        if failed:
            await self.campaign_repo.increment_stats(campaign.id, failed=failed)
        return dispatched, failed

    def _dispatch(self, message: OutboundMessage):
        task = asyncio.create_task(self._send(message))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def _send(self, message: OutboundMessage):
        try:
            await self.dispatcher.send(message)
        except Exception as e:
            logger.error(f"Vendor send failed for {message.delivery_id}: {e}")
            if self.on_dispatch_error is not None:
                await self.on_dispatch_error(message, e)

    async def wait_for_dispatches(self):
        """Wait for in-flight vendor sends (used on shutdown)."""
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)
