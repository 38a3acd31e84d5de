"""
Customer/Order Store.

Ingestion writes (customer upserts, order inserts with atomic customer
increments) and the audience queries the campaign engine pushes down.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update, func, case

from minicrm.database import async_session_maker
from minicrm.errors import CustomerNotFoundError
from minicrm.models import Customer, Order
from minicrm.schemas import CustomerIn, OrderIn
from minicrm.services.segment_compiler import CompiledSegment

logger = logging.getLogger(__name__)


def _clamped(expression):
    """Never let an increment drive a counter below zero."""
    return case((expression < 0, 0), else_=expression)


class CustomerStore:
    """Customer and order persistence over the async session factory."""

    def __init__(self, session_factory=async_session_maker):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    @staticmethod
    def _apply(customer: Customer, data: CustomerIn):
        """Copy the fields the caller actually sent onto the row."""
        sent = data.model_fields_set
        if "name" in sent:
            customer.name = data.name
        if "email" in sent:
            customer.email = data.email
        if "total_spends" in sent:
            customer.total_spends = max(data.total_spends, 0)
        if "visits" in sent:
            customer.visits = max(data.visits, 0)
        if "last_visit" in sent:
            customer.last_visit = data.last_visit
        if "created_at" in sent and data.created_at is not None:
            customer.created_at = data.created_at
        if "tags" in sent:
            customer.tags = data.tags

    async def upsert_customer(self, data: CustomerIn):
        await self.upsert_customers([data])

    async def upsert_customers(self, customers: Iterable[CustomerIn]) -> int:
        """Upsert by customer id. Later entries for the same id win."""
        by_id = {}
        for data in customers:
            by_id[data.id] = data
        if not by_id:
            return 0

        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(Customer).where(Customer.id.in_(list(by_id)))
                )
                existing = {customer.id: customer for customer in result.scalars().all()}

                for customer_id, data in by_id.items():
                    customer = existing.get(customer_id)
                    if customer is None:
                        customer = Customer(id=customer_id, total_spends=0, visits=0)
                        session.add(customer)
                    self._apply(customer, data)

        logger.info(f"Upserted {len(by_id)} customers ({len(existing)} existing)")
        return len(by_id)

    async def ingest_order(self, data: OrderIn) -> bool:
        """
        Insert an order and bump the owning customer's aggregates.

        Returns:
            False when the order id was already ingested (no second mutation).

        Raises:
            CustomerNotFoundError: if the referenced customer does not exist.
        """
        async with self.session_factory() as session:
            async with session.begin():
                if await session.get(Order, data.id) is not None:
                    logger.info(f"Order {data.id} already ingested, skipping")
                    return False

                customer_id = await session.scalar(
                    select(Customer.id).where(Customer.id == data.customer_id)
                )
                if customer_id is None:
                    raise CustomerNotFoundError(data.customer_id)

                session.add(Order(
                    id=data.id,
                    customer_id=data.customer_id,
                    amount=data.amount,
                    date=data.date or datetime.utcnow(),
                    items=list(data.items),
                ))
                await session.execute(
                    update(Customer)
                    .where(Customer.id == data.customer_id)
                    .values(
                        total_spends=_clamped(Customer.total_spends + data.amount),
                        visits=_clamped(Customer.visits + 1),
                        last_visit=datetime.utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
        logger.info(f"Ingested order {data.id} for customer {data.customer_id}")
        return True

    # ------------------------------------------------------------------
    # Audience queries
    # ------------------------------------------------------------------

    async def count_matching(self, segment: CompiledSegment, now: Optional[datetime] = None) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(Customer.id)).where(segment.where_clause(now))
            )
            return result.scalar() or 0

    async def matching_ids(self, segment: CompiledSegment, now: Optional[datetime] = None) -> List[str]:
        """Ids of every matching customer; the filter runs in the store."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Customer.id).where(segment.where_clause(now)).order_by(Customer.id)
            )
            return list(result.scalars().all())

    async def load_customers(self, customer_ids: List[str]) -> List[Customer]:
        if not customer_ids:
            return []
        async with self.session_factory() as session:
            result = await session.execute(
                select(Customer).where(Customer.id.in_(customer_ids)).order_by(Customer.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Read projections
    # ------------------------------------------------------------------

    async def list_customers(self, limit: int = 100, offset: int = 0) -> List[Customer]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Customer).order_by(Customer.created_at.desc()).limit(limit).offset(offset)
            )
            return list(result.scalars().all())

    async def get_stats(self) -> dict:
        async with self.session_factory() as session:
            total_customers = (await session.execute(select(func.count(Customer.id)))).scalar() or 0
            total_orders = (await session.execute(select(func.count(Order.id)))).scalar() or 0
            spending = (await session.execute(
                select(
                    func.avg(Customer.total_spends).label("avg_spend"),
                    func.max(Customer.total_spends).label("max_spend"),
                    func.min(Customer.total_spends).label("min_spend"),
                    func.sum(Customer.total_spends).label("total_spend"),
                )
            )).one()

        return {
            "totalCustomers": total_customers,
            "totalOrders": total_orders,
            "spendingStats": {
                "avgSpend": float(spending.avg_spend or 0),
                "maxSpend": float(spending.max_spend or 0),
                "minSpend": float(spending.min_spend or 0),
                "totalSpend": float(spending.total_spend or 0),
            },
        }
