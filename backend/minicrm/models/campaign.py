"""
Campaign models - audience snapshot, delivery counters and per-recipient logs.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import String, DateTime, ForeignKey, Index, Integer, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from minicrm.models.base import Base, UUIDMixin, CreatedAtMixin, TimestampMixin


class CampaignStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class DeliveryStatus:
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"

    TERMINAL = (SENT, FAILED)


class Campaign(Base, UUIDMixin, TimestampMixin):
    """A message fanned out to every customer matching its segment rules."""
    __tablename__ = "campaigns"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    segment_rules: Mapped[dict] = mapped_column(JSON, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    audience_size: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default=CampaignStatus.PENDING)

    # Running delivery stats (only mutated through atomic increments)
    stats_sent: Mapped[int] = mapped_column(Integer, default=0)
    stats_failed: Mapped[int] = mapped_column(Integer, default=0)
    stats_pending: Mapped[int] = mapped_column(Integer, default=0)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_campaign_user_created", "user_id", "created_at"),
        Index("idx_campaign_status_created", "status", "created_at"),
    )

    @property
    def stats(self) -> dict:
        return {
            "sent": self.stats_sent,
            "failed": self.stats_failed,
            "pending": self.stats_pending,
        }


class CommunicationLog(Base, UUIDMixin, CreatedAtMixin):
    """
    Delivery lifecycle of one campaign message to one customer.
    Located by delivery_id (the correlation id minted before dispatch).
    """
    __tablename__ = "communication_logs"

    delivery_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    campaign_id: Mapped[str] = mapped_column(ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)

    # Recipient snapshot at dispatch time
    customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_name: Mapped[Optional[str]] = mapped_column(String(200))
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))

    message: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=DeliveryStatus.PENDING)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    campaign: Mapped["Campaign"] = relationship("Campaign")

    __table_args__ = (
        Index("idx_commlog_campaign_status", "campaign_id", "status"),
        Index("idx_commlog_campaign_created", "campaign_id", "created_at"),
        Index("idx_commlog_sent_at", "sent_at"),
    )
