"""
Analytics queries for the dashboard.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select, func

from minicrm.database import async_session_maker
from minicrm.models import Campaign, Customer, Order, DeliveryStatus
from minicrm.services.campaign_service import delivery_rate
from minicrm.services.delivery_log import DeliveryLogStore


class AnalyticsService:

    def __init__(self, session_factory=async_session_maker, delivery_log: Optional[DeliveryLogStore] = None):
        self.session_factory = session_factory
        self.delivery_log = delivery_log or DeliveryLogStore(session_factory)

    async def dashboard(
        self,
        user_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Totals plus delivery outcome counts, optionally limited to a date window."""
        campaigns_query = select(func.count(Campaign.id)).where(Campaign.user_id == user_id)
        orders_query = select(func.count(Order.id))
        if start_date and end_date:
            campaigns_query = campaigns_query.where(Campaign.created_at.between(start_date, end_date))
            orders_query = orders_query.where(Order.created_at.between(start_date, end_date))

        async with self.session_factory() as session:
            total_customers = (await session.execute(select(func.count(Customer.id)))).scalar() or 0
            total_campaigns = (await session.execute(campaigns_query)).scalar() or 0
            total_orders = (await session.execute(orders_query)).scalar() or 0

        windowed = bool(start_date and end_date)
        counts = await self.delivery_log.status_counts(
            since=start_date if windowed else None,
            until=end_date if windowed else None,
        )
        return {
            "totalCustomers": total_customers,
            "totalCampaigns": total_campaigns,
            "totalOrders": total_orders,
            "deliveryStats": {status.lower(): count for status, count in counts.items()},
            "deliveryRate": delivery_rate(counts.get(DeliveryStatus.SENT, 0), counts.get(DeliveryStatus.FAILED, 0)),
        }

    async def campaign_performance(
        self,
        campaign_id: Optional[str] = None,
        period_days: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Per-day sent/failed/pending counts of communication log entries."""
        since = datetime.utcnow() - timedelta(days=period_days) if period_days else None
        rows = await self.delivery_log.daily_status_counts(campaign_id=campaign_id, since=since)

        days: Dict[str, Dict[str, int]] = {}
        for day, status, count in rows:
            bucket = days.setdefault(str(day), {"sent": 0, "failed": 0, "pending": 0})
            bucket[status.lower()] = bucket.get(status.lower(), 0) + count

        return {"performanceData": [{"date": day, **counts} for day, counts in sorted(days.items())]}
