"""
Domain exceptions.

Each error carries the HTTP status class it maps to at the API boundary.
Queue handlers use the same hierarchy to decide between drop and retry.
"""


class CRMError(Exception):
    """Base class for all MiniCRM domain errors."""
    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict:
        return {"error": {"type": self.error_type, "message": self.message}}


class ValidationFailedError(CRMError):
    """Malformed input rejected at the boundary."""
    status_code = 400
    error_type = "validation_error"


class SegmentRuleError(ValidationFailedError):
    """A segment rule could not be compiled."""
    error_type = "invalid_segment_rule"


class NotFoundError(CRMError):
    status_code = 404
    error_type = "not_found"


class CampaignNotFoundError(NotFoundError):
    def __init__(self, campaign_id: str):
        super().__init__(f"Campaign {campaign_id} not found")
        self.campaign_id = campaign_id


class CustomerNotFoundError(NotFoundError):
    def __init__(self, customer_id: str):
        super().__init__(f"Customer {customer_id} not found")
        self.customer_id = customer_id


class QueueError(CRMError):
    """Raised when the task queue cannot accept or hand out work."""
    status_code = 503
    error_type = "queue_error"
