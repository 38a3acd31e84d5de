"""
Order models - immutable purchase records.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import String, DateTime, Numeric, ForeignKey, Index, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from minicrm.models.base import Base, CreatedAtMixin, utcnow


class Order(Base, CreatedAtMixin):
    """An order placed by a customer. Written once by ingestion."""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    customer_id: Mapped[str] = mapped_column(ForeignKey("customers.id"), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    items: Mapped[Optional[list]] = mapped_column(JSON)

    # Relationships
    customer: Mapped["Customer"] = relationship("Customer", back_populates="orders")

    __table_args__ = (
        Index("idx_order_customer_date", "customer_id", "date"),
    )
