"""
Communication Log store.

One row per dispatched campaign message, keyed by its delivery (correlation)
id. Writes come in batches; when a batch write fails it is retried row by
row so a single bad entry only loses itself.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, update, insert, func, bindparam, desc

from minicrm.database import async_session_maker
from minicrm.models import CommunicationLog, DeliveryStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryUpdate:
    """A vendor acknowledgment for one delivery id."""
    delivery_id: str
    status: str
    timestamp: datetime


_log_table = CommunicationLog.__table__

_UPDATE_BY_DELIVERY_ID = (
    update(_log_table)
    .where(
        _log_table.c.delivery_id == bindparam("b_delivery_id"),
        _log_table.c.status.in_([DeliveryStatus.PENDING, bindparam("b_expected")]),
    )
    .values(status=bindparam("b_status"), sent_at=bindparam("b_sent_at"))
)


def _update_params(item: DeliveryUpdate) -> dict:
    return {
        "b_delivery_id": item.delivery_id,
        "b_status": item.status,
        "b_expected": item.status,
        "b_sent_at": item.timestamp,
    }


class DeliveryLogStore:

    def __init__(self, session_factory=async_session_maker):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_entries(self, entries: List[dict]) -> List[str]:
        """
        Persist PENDING log entries.

        Args:
            entries: column dicts (delivery_id, campaign_id, customer_*, message).

        Returns:
            Delivery ids that were persisted.
        """
        if not entries:
            return []
        rows = [
            {"status": DeliveryStatus.PENDING, "created_at": datetime.utcnow(), **entry}
            for entry in entries
        ]
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(insert(CommunicationLog), rows)
            return [row["delivery_id"] for row in rows]
        except Exception as e:
            logger.warning(f"Batch insert of {len(rows)} log entries failed ({e}), retrying one by one")

        persisted = []
        for row in rows:
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        await session.execute(insert(CommunicationLog), [row])
                persisted.append(row["delivery_id"])
            except Exception as e:
                logger.error(
                    f"Could not create log entry for customer {row.get('customer_id')} "
                    f"(delivery {row['delivery_id']}): {e}"
                )
        return persisted

    async def apply_updates(self, updates: List[DeliveryUpdate]) -> List[DeliveryUpdate]:
        """
        Set status and sent_at on each entry matched by delivery id.

        Updates for unknown delivery ids match nothing and are not errors. An
        entry only moves PENDING -> SENT|FAILED: a receipt that contradicts a
        status already recorded (earlier in the store or earlier in the same
        batch) is skipped, while a repeat of the recorded status is applied again.

        Returns:
            The updates that were written (failed and contradicting ones are logged and dropped).
        """
        if not updates:
            return []
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    updates = await self._drop_conflicting(session, updates)
                    if updates:
                        await session.execute(
                            _UPDATE_BY_DELIVERY_ID, [_update_params(item) for item in updates]
                        )
            return list(updates)
        except Exception as e:
            logger.warning(f"Bulk log update of {len(updates)} events failed ({e}), isolating per event")

        applied = []
        for item in updates:
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        await session.execute(_UPDATE_BY_DELIVERY_ID, [_update_params(item)])
                applied.append(item)
            except Exception as e:
                logger.error(f"Dropping delivery update {item.delivery_id} ({item.status}): {e}")
        return applied

    async def _drop_conflicting(self, session, updates: List[DeliveryUpdate], chunk_size: int = 500) -> List[DeliveryUpdate]:
        ids = list(dict.fromkeys(item.delivery_id for item in updates))
        settled: Dict[str, str] = {}
        for start in range(0, len(ids), chunk_size):
            result = await session.execute(
                select(CommunicationLog.delivery_id, CommunicationLog.status).where(
                    CommunicationLog.delivery_id.in_(ids[start:start + chunk_size]),
                    CommunicationLog.status.in_(DeliveryStatus.TERMINAL),
                )
            )
            settled.update(dict(result.all()))

        kept = []
        for item in updates:
            status = settled.setdefault(item.delivery_id, item.status)
            if status != item.status:
                logger.warning(
                    f"Ignoring {item.status} receipt for delivery {item.delivery_id}, already {status}"
                )
                continue
            kept.append(item)
        return kept

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def campaign_ids_for(self, delivery_ids: Iterable[str], chunk_size: int = 500) -> Dict[str, str]:
        """Map delivery id -> campaign id for the ids that exist."""
        ids = list(dict.fromkeys(delivery_ids))
        mapping: Dict[str, str] = {}
        async with self.session_factory() as session:
            for start in range(0, len(ids), chunk_size):
                chunk = ids[start:start + chunk_size]
                result = await session.execute(
                    select(CommunicationLog.delivery_id, CommunicationLog.campaign_id)
                    .where(CommunicationLog.delivery_id.in_(chunk))
                )
                mapping.update({delivery_id: campaign_id for delivery_id, campaign_id in result.all()})
        return mapping

    async def get_by_delivery_id(self, delivery_id: str) -> Optional[CommunicationLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CommunicationLog).where(CommunicationLog.delivery_id == delivery_id)
            )
            return result.scalar_one_or_none()

    async def list_for_campaign(
        self,
        campaign_id: str,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[CommunicationLog]:
        query = select(CommunicationLog).where(CommunicationLog.campaign_id == campaign_id)
        if status:
            query = query.where(CommunicationLog.status == status)
        query = query.order_by(desc(CommunicationLog.created_at))
        if limit:
            query = query.limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def status_counts(
        self,
        campaign_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Dict[str, int]:
        query = select(CommunicationLog.status, func.count(CommunicationLog.id))
        if campaign_id:
            query = query.where(CommunicationLog.campaign_id == campaign_id)
        if since:
            query = query.where(CommunicationLog.created_at >= since)
        if until:
            query = query.where(CommunicationLog.created_at <= until)
        async with self.session_factory() as session:
            result = await session.execute(query.group_by(CommunicationLog.status))
            return {status: count for status, count in result.all()}

    async def terminal_entries(self, campaign_id: str) -> List[tuple]:
        """(status, sent_at, created_at) for every acknowledged entry of a campaign."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(CommunicationLog.status, CommunicationLog.sent_at, CommunicationLog.created_at)
                .where(
                    CommunicationLog.campaign_id == campaign_id,
                    CommunicationLog.status.in_(DeliveryStatus.TERMINAL),
                    CommunicationLog.sent_at.is_not(None),
                )
            )
            return list(result.all())

    async def daily_status_counts(
        self,
        campaign_id: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[tuple]:
        """(day, status, count) rows bucketed by the entry's creation date."""
        day = func.date(CommunicationLog.created_at).label("day")
        query = select(day, CommunicationLog.status, func.count(CommunicationLog.id))
        if campaign_id:
            query = query.where(CommunicationLog.campaign_id == campaign_id)
        if since:
            query = query.where(CommunicationLog.created_at >= since)
        async with self.session_factory() as session:
            result = await session.execute(query.group_by(day, CommunicationLog.status).order_by(day))
            return list(result.all())
