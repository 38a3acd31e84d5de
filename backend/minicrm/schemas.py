"""
Request payloads shared by the API routers and the queue task handlers.

Routers validate before enqueueing; handlers validate again when the task
is consumed, so a malformed task is dropped instead of retried.
"""

import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from minicrm.models import DeliveryStatus

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")

RECEIPT_STATUSES = {
    "success": DeliveryStatus.SENT,
    "sent": DeliveryStatus.SENT,
    "failure": DeliveryStatus.FAILED,
    "failed": DeliveryStatus.FAILED,
}


def _to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class CustomerIn(BaseModel):
    """Customer upsert payload. Only the fields sent are written."""
    id: str = Field(..., min_length=1, max_length=255)
    name: Optional[str] = Field(None, max_length=200)
    email: Optional[str] = Field(None, max_length=255)
    total_spends: Decimal = Field(Decimal("0"), ge=0, alias="totalSpends")
    visits: int = Field(0, ge=0)
    last_visit: Optional[datetime] = Field(None, alias="lastVisit")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    tags: List[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True
        extra = "ignore"

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value.strip() == "":
            return None
        value = value.strip().lower()
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email format")
        return value

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: Optional[str]) -> Optional[str]:
        return value.strip() if value is not None else None

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, value: List[str]) -> List[str]:
        tags = [tag.strip() for tag in value if tag and tag.strip()]
        if any(len(tag) > 50 for tag in tags):
            raise ValueError("Tags are limited to 50 characters")
        return tags

    @field_validator("last_visit", "created_at")
    @classmethod
    def naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(value)


class CustomerBatchIn(BaseModel):
    customers: List[CustomerIn] = Field(..., min_length=1)


class OrderIn(BaseModel):
    """Order ingestion payload."""
    id: str = Field(..., min_length=1, max_length=255)
    customer_id: str = Field(..., min_length=1, max_length=255, alias="customerId")
    amount: Decimal = Field(..., ge=0)
    date: Optional[datetime] = None
    items: List[str] = Field(default_factory=list)

    class Config:
        populate_by_name = True
        extra = "ignore"

    @field_validator("date")
    @classmethod
    def naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(value)


class DeliveryReceipt(BaseModel):
    """Vendor acknowledgment for one dispatched message."""
    delivery_id: str = Field(..., min_length=1, alias="deliveryId")
    status: str
    timestamp: Optional[datetime] = None

    class Config:
        populate_by_name = True
        extra = "ignore"

    @field_validator("status")
    @classmethod
    def normalize_status(cls, value: str) -> str:
        status = RECEIPT_STATUSES.get(value.strip().lower())
        if status is None:
            raise ValueError("status must be one of success, failure, SENT, FAILED")
        return status

    @field_validator("timestamp")
    @classmethod
    def naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(value)


class CampaignCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    segment_rules: Dict[str, Any] = Field(..., alias="segmentRules")
    message: str = Field(..., min_length=1, max_length=1000)

    class Config:
        populate_by_name = True

    @field_validator("name", "message")
    @classmethod
    def strip_text(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class SegmentPreviewRequest(BaseModel):
    segment_rules: Dict[str, Any] = Field(..., alias="segmentRules")
    sample_size: int = Field(5, ge=0, le=50, alias="sampleSize")

    class Config:
        populate_by_name = True


class VendorSendRequest(BaseModel):
    """Payload the simulated vendor accepts on /api/vendor/send."""
    delivery_id: str = Field(..., min_length=1, alias="deliveryId")
    campaign_id: Optional[str] = Field(None, alias="campaignId")
    customer_id: Optional[str] = Field(None, alias="customerId")
    message: Optional[str] = None

    class Config:
        populate_by_name = True
        extra = "ignore"


# =============================================================================
# Responses
# =============================================================================

class CustomerResponse(BaseModel):
    id: str
    name: Optional[str]
    email: Optional[str]
    total_spends: float = Field(..., alias="totalSpends")
    visits: int
    last_visit: Optional[datetime] = Field(None, alias="lastVisit")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    tags: List[str] = Field(default_factory=list)

    class Config:
        from_attributes = True
        populate_by_name = True


class CampaignStats(BaseModel):
    sent: int
    failed: int
    pending: int


class CampaignResponse(BaseModel):
    id: str
    name: str
    user_id: str = Field(..., alias="userId")
    segment_rules: Dict[str, Any] = Field(..., alias="segmentRules")
    message: str
    audience_size: int = Field(..., alias="audienceSize")
    status: str
    stats: CampaignStats
    failure_reason: Optional[str] = Field(None, alias="failureReason")
    started_at: Optional[datetime] = Field(None, alias="startedAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")
    created_at: datetime = Field(..., alias="createdAt")

    class Config:
        from_attributes = True
        populate_by_name = True


class CommunicationLogResponse(BaseModel):
    id: str
    delivery_id: str = Field(..., alias="deliveryId")
    campaign_id: str = Field(..., alias="campaignId")
    customer_id: str = Field(..., alias="customerId")
    customer_name: Optional[str] = Field(None, alias="customerName")
    customer_email: Optional[str] = Field(None, alias="customerEmail")
    message: str
    status: str
    sent_at: Optional[datetime] = Field(None, alias="sentAt")
    created_at: datetime = Field(..., alias="createdAt")

    class Config:
        from_attributes = True
        populate_by_name = True


class AudiencePreviewResponse(BaseModel):
    audience_size: int = Field(..., alias="audienceSize")
    sample: List[CustomerResponse]

    class Config:
        populate_by_name = True


class CampaignRealtimeResponse(BaseModel):
    campaign: CampaignResponse
    recent_activity: List[CommunicationLogResponse] = Field(..., alias="recentActivity")
    status_distribution: Dict[str, int] = Field(..., alias="statusDistribution")
    hourly_trends: List[Dict[str, Any]] = Field(..., alias="hourlyTrends")
    real_time_stats: Dict[str, Any] = Field(..., alias="realTimeStats")

    class Config:
        populate_by_name = True
