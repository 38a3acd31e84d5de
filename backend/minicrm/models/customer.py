"""
Customer models - spend/visit aggregates and free-text tags.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import String, DateTime, Numeric, ForeignKey, Index, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

from minicrm.models.base import Base, TimestampMixin


class Customer(Base, TimestampMixin):
    """
    A customer keyed by the caller's opaque id.
    Ingestion upserts it; order ingestion bumps spend, visits and last visit.
    """
    __tablename__ = "customers"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)

    name: Mapped[Optional[str]] = mapped_column(String(200))
    email: Mapped[Optional[str]] = mapped_column(String(255))

    total_spends: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0.00"), nullable=False)
    visits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_visit: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    tag_links: Mapped[List["CustomerTag"]] = relationship(
        "CustomerTag",
        back_populates="customer",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    orders: Mapped[List["Order"]] = relationship("Order", back_populates="customer")

    __table_args__ = (
        Index("idx_customer_spend_visits", "total_spends", "visits"),
        Index("idx_customer_last_visit", "last_visit"),
        Index("idx_customer_email", "email"),
    )

    @property
    def tags(self) -> List[str]:
        return [link.tag for link in self.tag_links]

    @tags.setter
    def tags(self, values):
        # Reuse existing link rows so an unchanged tag is never deleted and re-inserted
        wanted = list(dict.fromkeys(values or []))
        current = {link.tag: link for link in self.tag_links}
        self.tag_links = [current.get(tag) or CustomerTag(tag=tag) for tag in wanted]


class CustomerTag(Base):
    """One tag on one customer. Kept as rows so tag conditions push down as EXISTS."""
    __tablename__ = "customer_tags"

    customer_id: Mapped[str] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), primary_key=True
    )
    tag: Mapped[str] = mapped_column(String(50), primary_key=True)

    customer: Mapped["Customer"] = relationship("Customer", back_populates="tag_links")

    __table_args__ = (
        Index("idx_customer_tag_tag", "tag"),
    )
