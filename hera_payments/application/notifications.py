from decimal import Decimal
from enum import Enum
from typing import Optional
import httpx
from pydantic import BaseModel
from hera_core import get_logger

logger = get_logger(__name__)


class PaymentEventType(str, Enum):
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    # Money was received but the order could not be created
    PAYMENT_REFUND_REQUIRED = "PAYMENT_REFUND_REQUIRED"


class PaymentEvent(BaseModel):
    type: PaymentEventType
    user_id: int
    payment_intent_id: int
    checkout_request_id: str
    amount: Decimal
    email: Optional[str] = None
    order_id: Optional[int] = None
    order_number: Optional[str] = None
    reason: Optional[str] = None
    requires_refund: bool = False


class Notifier:
    """
    Hands payment events to the notification service, which owns email
    templates and in-app delivery. Sending is best effort: a failure is logged
    and never propagated to the payment flow.
    """

    def __init__(self, base_url: Optional[str], timeout: float = 5.0,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout
        self._transport = transport

    def send(self, event: PaymentEvent) -> bool:
        context = {'event_type': event.type.value, 'payment_intent_id': event.payment_intent_id,
                   'checkout_id': event.checkout_request_id}
        if not self.base_url:
            logger.info("Notification service not configured, event logged only",
                        extra={'extra_fields': context})
            return False
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(f"{self.base_url}/notifications", json=event.model_dump(mode="json"))
                resp.raise_for_status()
        except Exception:
            logger.error("Failed to deliver payment notification", exc_info=True,
                         extra={'extra_fields': context})
            return False
        logger.info("Payment notification delivered", extra={'extra_fields': context})
        return True
