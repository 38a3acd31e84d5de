"""
Campaign Repository.

Campaign metadata, status transitions and the running stats counters.
Counters are only ever changed with single-statement atomic deltas, so
concurrent flushes from several workers cannot lose updates.
"""

import logging
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import select, update, func, case, desc

from minicrm.database import async_session_maker
from minicrm.errors import CampaignNotFoundError
from minicrm.models import Campaign, CampaignStatus, CommunicationLog, DeliveryStatus

logger = logging.getLogger(__name__)


class CampaignRepository:

    def __init__(self, session_factory=async_session_maker):
        self.session_factory = session_factory

    async def create(
        self,
        name: str,
        user_id: str,
        segment_rules: dict,
        message: str,
        audience_size: int,
    ) -> Campaign:
        async with self.session_factory() as session:
            campaign = Campaign(
                name=name,
                user_id=user_id,
                segment_rules=segment_rules,
                message=message,
                audience_size=audience_size,
                status=CampaignStatus.PENDING,
                stats_sent=0,
                stats_failed=0,
                stats_pending=audience_size,
            )
            session.add(campaign)
            await session.commit()
            await session.refresh(campaign)
            return campaign

    async def get(self, campaign_id: str) -> Optional[Campaign]:
        async with self.session_factory() as session:
            return await session.get(Campaign, campaign_id)

    async def get_or_raise(self, campaign_id: str) -> Campaign:
        campaign = await self.get(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def list_for_user(self, user_id: str, limit: int = 50, offset: int = 0) -> List[Campaign]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Campaign)
                .where(Campaign.user_id == user_id)
                .order_by(desc(Campaign.created_at))
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())

    async def claim_for_processing(self, campaign_id: str, audience_size: int) -> bool:
        """
        Atomically move PENDING -> PROCESSING and reset stats.

        Returns False when another invocation already claimed the campaign.
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(Campaign)
                .where(
                    Campaign.id == campaign_id,
                    Campaign.status == CampaignStatus.PENDING,
                )
                .values(
                    status=CampaignStatus.PROCESSING,
                    stats_sent=0,
                    stats_failed=0,
                    stats_pending=audience_size,
                    started_at=datetime.utcnow(),
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def mark_completed(self, campaign_id: str):
        async with self.session_factory() as session:
            await session.execute(
                update(Campaign)
                .where(Campaign.id == campaign_id, Campaign.status == CampaignStatus.PROCESSING)
                .values(status=CampaignStatus.COMPLETED, completed_at=datetime.utcnow())
            )
            await session.commit()

    async def mark_failed(
        self,
        campaign_id: str,
        reason: str,
        from_statuses: Tuple[str, ...] = (CampaignStatus.PENDING, CampaignStatus.PROCESSING),
    ) -> bool:
        """
        Move the campaign to FAILED if it is still in one of ``from_statuses``.

        Returns False when the campaign had already moved on (finished, failed,
        or claimed by another worker when only PENDING is allowed).
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(Campaign)
                .where(Campaign.id == campaign_id, Campaign.status.in_(from_statuses))
                .values(status=CampaignStatus.FAILED, failure_reason=reason[:2000])
            )
            await session.commit()
            updated = result.rowcount == 1
        if not updated:
            logger.info(f"Campaign {campaign_id} not marked FAILED, no longer in {'/'.join(from_statuses)}: {reason}")
            return False
        logger.warning(f"Campaign {campaign_id} marked FAILED: {reason}")
        return True

    async def increment_stats(self, campaign_id: str, sent: int = 0, failed: int = 0) -> bool:
        """
        Apply one aggregated delta: sent += s, failed += f, pending -= s + f.

        Pending is clamped at zero. A PROCESSING campaign whose pending count
        reaches zero becomes COMPLETED in the same statement.
        """
        delivered = sent + failed
        remaining = Campaign.stats_pending - delivered
        async with self.session_factory() as session:
            result = await session.execute(
                update(Campaign)
                .where(Campaign.id == campaign_id)
                .values(
                    stats_sent=Campaign.stats_sent + sent,
                    stats_failed=Campaign.stats_failed + failed,
                    stats_pending=case((remaining < 0, 0), else_=remaining),
                    status=case(
                        (
                            (remaining <= 0) & (Campaign.status == CampaignStatus.PROCESSING),
                            CampaignStatus.COMPLETED,
                        ),
                        else_=Campaign.status,
                    ),
                    completed_at=case(
                        (
                            (remaining <= 0) & (Campaign.status == CampaignStatus.PROCESSING),
                            datetime.utcnow(),
                        ),
                        else_=Campaign.completed_at,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount == 1

    async def reconcile_stats(self, campaign_id: str) -> dict:
        """
        Recount stats from the communication log instead of accumulated deltas.

        Opt-in repair for campaigns whose counters drifted because of
        duplicate acknowledgments.
        """
        async with self.session_factory() as session:
            campaign = await session.get(Campaign, campaign_id)
            if campaign is None:
                raise CampaignNotFoundError(campaign_id)

            rows = (await session.execute(
                select(CommunicationLog.status, func.count(CommunicationLog.id))
                .where(CommunicationLog.campaign_id == campaign_id)
                .group_by(CommunicationLog.status)
            )).all()
            counts = {status: count for status, count in rows}

            stats = {
                "sent": counts.get(DeliveryStatus.SENT, 0),
                "failed": counts.get(DeliveryStatus.FAILED, 0),
                "pending": counts.get(DeliveryStatus.PENDING, 0),
            }
            values = {
                "stats_sent": stats["sent"],
                "stats_failed": stats["failed"],
                "stats_pending": stats["pending"],
            }
            if stats["pending"] == 0 and campaign.status == CampaignStatus.PROCESSING:
                values["status"] = CampaignStatus.COMPLETED
                values["completed_at"] = datetime.utcnow()

            await session.execute(
                update(Campaign).where(Campaign.id == campaign_id).values(**values)
            )
            await session.commit()

        logger.info(f"Reconciled stats for campaign {campaign_id}: {stats}")
        return stats
