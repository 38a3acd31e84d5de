"""
Vendor dispatch.

The campaign engine hands each rendered message to a ``VendorDispatcher``
and forgets about it. The vendor answers later, out of band, by posting a
delivery receipt carrying the same delivery id.

Two implementations:
- ``HttpVendorDispatcher`` POSTs to an external vendor endpoint.
- ``SimulatedVendor`` acknowledges after a random delay with a configurable
  success rate. It backs the ``/api/vendor/send`` endpoint and single-process
  development.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import httpx
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception, before_sleep_log

from minicrm.config import get_settings

logger = logging.getLogger(__name__)

ReceiptCallback = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass
class OutboundMessage:
    delivery_id: str
    campaign_id: str
    customer_id: str
    customer_name: Optional[str]
    customer_email: Optional[str]
    message: str

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        return {
            "deliveryId": payload["delivery_id"],
            "campaignId": payload["campaign_id"],
            "customerId": payload["customer_id"],
            "customerName": payload["customer_name"],
            "customerEmail": payload["customer_email"],
            "message": payload["message"],
        }


def is_retryable_error(exception) -> bool:
    """Retry transport errors, 429 and 5xx."""
    if isinstance(exception, httpx.HTTPStatusError):
        status = exception.response.status_code
        return status == 429 or status >= 500
    return isinstance(exception, httpx.TransportError)


@retry(
    retry=retry_if_exception(is_retryable_error),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=10),
    stop=stop_after_attempt(4),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
async def post_json(client: httpx.AsyncClient, url: str, payload: Dict[str, Any]) -> httpx.Response:
    response = await client.post(url, json=payload)
    response.raise_for_status()
    return response


class VendorDispatcher(ABC):
    """Anything that accepts a rendered message for delivery."""

    @abstractmethod
    async def send(self, message: OutboundMessage) -> bool:
        """Hand the message to the vendor. Raises if it was not accepted."""

    async def aclose(self):
        pass


class HttpVendorDispatcher(VendorDispatcher):

    def __init__(self, vendor_url: str, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None):
        self.vendor_url = vendor_url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def send(self, message: OutboundMessage) -> bool:
        await post_json(self._client, self.vendor_url, message.to_payload())
        return True

    async def aclose(self):
        await self._client.aclose()


class SimulatedVendor(VendorDispatcher):
    """
    Accepts every message and acknowledges it after ``min_delay``..``max_delay``
    seconds, SENT with probability ``success_rate`` and FAILED otherwise.

    The receipt goes to ``on_receipt`` when given (in-process wiring) and is
    POSTed to ``receipt_url`` otherwise.
    """

    def __init__(
        self,
        on_receipt: Optional[ReceiptCallback] = None,
        receipt_url: Optional[str] = None,
        success_rate: float = 0.9,
        min_delay: float = 1.0,
        max_delay: float = 4.0,
        rng: Optional[random.Random] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if on_receipt is None and not receipt_url:
            raise ValueError("SimulatedVendor needs on_receipt or receipt_url")
        self.on_receipt = on_receipt
        self.receipt_url = receipt_url
        self.success_rate = success_rate
        self.min_delay = min_delay
        self.max_delay = max(min_delay, max_delay)
        self.rng = rng or random.Random()
        self._client = client
        self._pending: Set[asyncio.Task] = set()

    async def send(self, message: OutboundMessage) -> bool:
        self.schedule_receipt(message.delivery_id)
        return True

    def schedule_receipt(self, delivery_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._acknowledge(delivery_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _acknowledge(self, delivery_id: str):
        await asyncio.sleep(self.rng.uniform(self.min_delay, self.max_delay))
        receipt = {
            "deliveryId": delivery_id,
            "status": "success" if self.rng.random() < self.success_rate else "failure",
            "timestamp": datetime.utcnow().isoformat(),
        }
        try:
            if self.on_receipt is not None:
                await self.on_receipt(receipt)
            else:
                if self._client is None:
                    self._client = httpx.AsyncClient(timeout=10.0)
                await post_json(self._client, self.receipt_url, receipt)
        except Exception as e:
            logger.error(f"Delivery receipt for {delivery_id} was not delivered: {e}")

    @property
    def pending_receipts(self) -> int:
        return len(self._pending)

    async def drain(self):
        """Wait until every scheduled receipt has been sent."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self):
        for task in list(self._pending):
            task.cancel()
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self._client is not None:
            await self._client.aclose()


def build_dispatcher(settings=None, on_receipt: Optional[ReceiptCallback] = None) -> VendorDispatcher:
    settings = settings or get_settings()
    if settings.VENDOR_MODE == "http":
        logger.info(f"Dispatching campaign messages to {settings.VENDOR_URL}")
        return HttpVendorDispatcher(settings.VENDOR_URL)
    logger.info("Dispatching campaign messages to the simulated vendor")
    return SimulatedVendor(
        on_receipt=on_receipt,
        receipt_url=settings.DELIVERY_RECEIPT_URL,
        success_rate=settings.VENDOR_SUCCESS_RATE,
        min_delay=settings.VENDOR_MIN_DELAY_SECONDS,
        max_delay=settings.VENDOR_MAX_DELAY_SECONDS,
    )
