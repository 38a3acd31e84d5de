"""
Delivery Status Aggregator.

Buffers delivery acknowledgments and commits them in batches:

1. every buffered event updates its communication log entry by delivery id
2. events are grouped per campaign into (sent, failed) deltas
3. each campaign gets one atomic counter increment

A flush starts when the buffer reaches ``batch_size`` or when the recurring
timer fires, whichever comes first; at most one size-triggered flush task is
alive at a time. Producers only ever hold the buffer lock for an append; the
flush swaps the buffer out and does its I/O afterwards.

Duplicate acknowledgments are applied again: the log entry ends up with the
same terminal status, but the campaign counters count the event twice.
``CampaignRepository.reconcile_stats`` recounts from the log when needed.
"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

from minicrm.models import DeliveryStatus
from minicrm.services.campaign_repository import CampaignRepository
from minicrm.services.delivery_log import DeliveryLogStore, DeliveryUpdate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryEvent:
    delivery_id: str
    status: str  # SENT or FAILED
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        if self.status not in DeliveryStatus.TERMINAL:
            raise ValueError(f"Delivery event status must be SENT or FAILED, got {self.status!r}")


@dataclass
class FlushResult:
    received: int = 0
    applied: int = 0
    dropped: int = 0
    unknown: int = 0
    campaigns: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    failed_campaigns: List[str] = field(default_factory=list)

    def merge(self, other: "FlushResult"):
        self.received += other.received
        self.applied += other.applied
        self.dropped += other.dropped
        self.unknown += other.unknown
        for campaign_id, (sent, failed) in other.campaigns.items():
            prev_sent, prev_failed = self.campaigns.get(campaign_id, (0, 0))
            self.campaigns[campaign_id] = (prev_sent + sent, prev_failed + failed)
        self.failed_campaigns.extend(other.failed_campaigns)


class DeliveryStatusAggregator:

    def __init__(
        self,
        delivery_log: Optional[DeliveryLogStore] = None,
        campaign_repo: Optional[CampaignRepository] = None,
        batch_size: int = 50,
        flush_interval: float = 5.0,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.delivery_log = delivery_log or DeliveryLogStore()
        self.campaign_repo = campaign_repo or CampaignRepository()
        self.batch_size = batch_size
        self.flush_interval = flush_interval

        self._buffer: List[DeliveryEvent] = []
        self._buffer_lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._flush_tasks: Set[asyncio.Task] = set()
        self._flush_scheduled = False
        self._timer: Optional[asyncio.Task] = None

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def submit(self, event: DeliveryEvent):
        """Buffer one acknowledgment; a full buffer schedules a flush unless one is already scheduled."""
        async with self._buffer_lock:
            self._buffer.append(event)
            schedule = len(self._buffer) >= self.batch_size and not self._flush_scheduled
            if schedule:
                self._flush_scheduled = True
        if schedule:
            task = asyncio.create_task(self._flush_full_buffers())
            self._flush_tasks.add(task)
            task.add_done_callback(self._flush_tasks.discard)

    async def _flush_full_buffers(self):
        # Keeps flushing while the buffer refilled during the previous flush.
        try:
            while True:
                await self.flush()
                if len(self._buffer) < self.batch_size:
                    break
        finally:
            self._flush_scheduled = False

    async def _swap(self) -> List[DeliveryEvent]:
        async with self._buffer_lock:
            batch, self._buffer = self._buffer, []
        return batch

    async def flush(self) -> FlushResult:
        async with self._flush_lock:
            batch = await self._swap()
            if not batch:
                return FlushResult()
            return await self._commit(batch)

    async def _commit(self, batch: List[DeliveryEvent]) -> FlushResult:
        result = FlushResult(received=len(batch))

        updates = [DeliveryUpdate(e.delivery_id, e.status, e.timestamp) for e in batch]
        applied = await self.delivery_log.apply_updates(updates)
        result.applied = len(applied)
        result.dropped = len(batch) - len(applied)

        try:
            campaign_of = await self.delivery_log.campaign_ids_for(u.delivery_id for u in applied)
        except Exception as e:
            logger.error(f"Could not resolve campaigns for {len(applied)} delivery updates: {e}")
            result.dropped += len(applied)
            result.applied = 0
            return result

        deltas: Dict[str, List[int]] = defaultdict(lambda: [0, 0])
        for update in applied:
            campaign_id = campaign_of.get(update.delivery_id)
            if campaign_id is None:
                result.unknown += 1
                continue
            deltas[campaign_id][0 if update.status == DeliveryStatus.SENT else 1] += 1

        if result.unknown:
            logger.warning(f"Ignored {result.unknown} acknowledgments with unknown delivery ids")

        for campaign_id, (sent, failed) in deltas.items():
            try:
                await self.campaign_repo.increment_stats(campaign_id, sent=sent, failed=failed)
                result.campaigns[campaign_id] = (sent, failed)
            except Exception as e:
                logger.error(f"Stats update for campaign {campaign_id} (+{sent} sent, +{failed} failed) failed: {e}")
                result.failed_campaigns.append(campaign_id)

        logger.info(
            f"Flushed {result.received} delivery updates "
            f"({result.applied} applied, {result.dropped} dropped) across {len(result.campaigns)} campaigns"
        )
        return result

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _run_timer(self):
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Periodic delivery flush failed: {e}")

    def start(self):
        if self.running:
            return
        self._timer = asyncio.create_task(self._run_timer())
        logger.info(f"Delivery aggregator started (batch={self.batch_size}, interval={self.flush_interval}s)")

    async def stop(self) -> FlushResult:
        """Cancel the timer, wait for in-flight flushes and drain the rest."""
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

        if self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)

        result = await self.flush()
        logger.info(f"Delivery aggregator stopped, drained {result.received} buffered updates")
        return result
