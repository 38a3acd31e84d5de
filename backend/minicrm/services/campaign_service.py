"""
Campaign lifecycle service.

Creation computes the audience size synchronously with the compiled filter,
stores the campaign as PENDING and enqueues ``process-campaign``; the fan-out
itself happens in the worker. Reads are scoped to the campaign's owner.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from minicrm.errors import CampaignNotFoundError, QueueError
from minicrm.models import Campaign, CampaignStatus, DeliveryStatus
from minicrm.schemas import CampaignCreate
from minicrm.services.campaign_repository import CampaignRepository
from minicrm.services.customer_store import CustomerStore
from minicrm.services.delivery_log import DeliveryLogStore
from minicrm.services.segment_compiler import compile_rule

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_LIMIT = 50
HOURLY_TREND_HOURS = 24


def delivery_rate(sent: int, failed: int) -> float:
    """Percentage of acknowledged messages that were SENT."""
    total = sent + failed
    return round(sent / total * 100, 1) if total else 0.0


class CampaignService:

    def __init__(
        self,
        queues=None,
        customer_store: Optional[CustomerStore] = None,
        campaign_repo: Optional[CampaignRepository] = None,
        delivery_log: Optional[DeliveryLogStore] = None,
    ):
        self.queues = queues
        self.customer_store = customer_store or CustomerStore()
        self.campaign_repo = campaign_repo or CampaignRepository()
        self.delivery_log = delivery_log or DeliveryLogStore()

    async def preview_audience(self, segment_rules: Dict[str, Any], sample_size: int = 5) -> Dict[str, Any]:
        segment = compile_rule(segment_rules)
        now = datetime.utcnow()
        audience_size = await self.customer_store.count_matching(segment, now)
        sample = []
        if sample_size > 0 and audience_size:
            ids = (await self.customer_store.matching_ids(segment, now))[:sample_size]
            sample = await self.customer_store.load_customers(ids)
        return {"audienceSize": audience_size, "sample": sample}

    async def create_campaign(self, user_id: str, data: CampaignCreate) -> Campaign:
        segment = compile_rule(data.segment_rules)
        audience_size = await self.customer_store.count_matching(segment)

        campaign = await self.campaign_repo.create(
            name=data.name,
            user_id=user_id,
            segment_rules=data.segment_rules,
            message=data.message,
            audience_size=audience_size,
        )
        logger.info(f"Created campaign {campaign.id} for user {user_id} (audience {audience_size})")

        try:
            await self.queues.enqueue("process-campaign", {"campaignId": campaign.id})
        except Exception as e:
            await self.campaign_repo.mark_failed(campaign.id, f"Could not enqueue processing: {e}")
            raise QueueError(f"Campaign {campaign.id} was created but could not be queued") from e
        return campaign

    async def get_campaign(self, user_id: str, campaign_id: str) -> Campaign:
        campaign = await self.campaign_repo.get(campaign_id)
        if campaign is None or campaign.user_id != user_id:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def list_campaigns(self, user_id: str, limit: int = 50, offset: int = 0) -> List[Campaign]:
        return await self.campaign_repo.list_for_user(user_id, limit=limit, offset=offset)

    async def get_realtime_stats(self, user_id: str, campaign_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Status distribution, hourly trend and throughput-based ETA for one campaign."""
        now = now or datetime.utcnow()
        campaign = await self.get_campaign(user_id, campaign_id)

        counts = await self.delivery_log.status_counts(campaign_id)
        recent = await self.delivery_log.list_for_campaign(campaign_id, limit=RECENT_ACTIVITY_LIMIT)
        terminal = await self.delivery_log.terminal_entries(campaign_id)

        sent = counts.get(DeliveryStatus.SENT, 0)
        failed = counts.get(DeliveryStatus.FAILED, 0)

        return {
            "campaign": campaign,
            "recentActivity": recent,
            "statusDistribution": {
                status: counts.get(status, 0)
                for status in (DeliveryStatus.PENDING, DeliveryStatus.SENT, DeliveryStatus.FAILED)
            },
            "hourlyTrends": self._hourly_trend(terminal),
            "realTimeStats": {
                "deliveryRate": delivery_rate(sent, failed),
                "avgDeliveryTime": self._avg_delivery_seconds(terminal),
                "estimatedCompletion": self._estimate_completion(campaign, sent + failed, now),
            },
        }

    @staticmethod
    def _hourly_trend(entries) -> List[Dict[str, Any]]:
        buckets = defaultdict(lambda: {"sent": 0, "failed": 0})
        for status, sent_at, _created_at in entries:
            hour = sent_at.replace(minute=0, second=0, microsecond=0)
            buckets[hour]["sent" if status == DeliveryStatus.SENT else "failed"] += 1
        latest = sorted(buckets, reverse=True)[:HOURLY_TREND_HOURS]
        return [{"hour": hour.isoformat(), **buckets[hour]} for hour in latest]

    @staticmethod
    def _avg_delivery_seconds(entries) -> Optional[float]:
        durations = [
            (sent_at - created_at).total_seconds()
            for _status, sent_at, created_at in entries
            if sent_at and created_at
        ]
        if not durations:
            return None
        return round(sum(durations) / len(durations), 1)

    @staticmethod
    def _estimate_completion(campaign: Campaign, acknowledged: int, now: datetime) -> Optional[Dict[str, Any]]:
        remaining = campaign.stats_pending
        if campaign.status != CampaignStatus.PROCESSING or remaining <= 0:
            return None

        estimate = {"remainingMessages": remaining, "estimatedSeconds": None, "estimatedCompletion": None}
        if not campaign.started_at or acknowledged == 0:
            return estimate

        elapsed = (now - campaign.started_at).total_seconds()
        if elapsed <= 0:
            return estimate

        throughput = acknowledged / elapsed  # acknowledgments per second
        seconds = round(remaining / throughput)
        estimate["estimatedSeconds"] = seconds
        estimate["estimatedCompletion"] = (now + timedelta(seconds=seconds)).isoformat()
        return estimate
