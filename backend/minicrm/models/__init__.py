"""
SQLAlchemy Models for the MiniCRM campaign engine.

This package is organized by domain:
- base.py: Base class and mixins
- customer.py: Customer and tag models
- order.py: Order model
- campaign.py: Campaigns and communication logs

All models are re-exported from this module.
"""

# Base
from minicrm.models.base import Base, UUIDMixin, CreatedAtMixin, TimestampMixin, utcnow

# Core domain models
from minicrm.models.customer import Customer, CustomerTag
from minicrm.models.order import Order

# Campaigns and delivery tracking
from minicrm.models.campaign import Campaign, CommunicationLog, CampaignStatus, DeliveryStatus


__all__ = [
    # Base
    "Base",
    "UUIDMixin",
    "CreatedAtMixin",
    "TimestampMixin",
    "utcnow",

    # Core domain
    "Customer",
    "CustomerTag",
    "Order",

    # Campaigns
    "Campaign",
    "CommunicationLog",
    "CampaignStatus",
    "DeliveryStatus",
]
