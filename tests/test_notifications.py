import json
from decimal import Decimal
import httpx
from hera_payments.application.notifications import Notifier, PaymentEvent, PaymentEventType

EVENT = PaymentEvent(
    type=PaymentEventType.PAYMENT_SUCCESS,
    user_id=7,
    payment_intent_id=11,
    checkout_request_id="ws_CO_1",
    amount=Decimal("1000.00"),
    email="wanjiru@example.com",
    order_id=3,
    order_number="HERA-240915-A1B2C3",
)


def test_event_is_posted_to_notification_service():
    sent = []

    def handler(request):
        sent.append(request)
        return httpx.Response(202)

    assert Notifier("http://notifications:8000/", transport=httpx.MockTransport(handler)).send(EVENT)
    assert str(sent[0].url) == "http://notifications:8000/notifications"
    body = json.loads(sent[0].content)
    assert body["type"] == "PAYMENT_SUCCESS"
    assert body["order_number"] == "HERA-240915-A1B2C3"


def test_delivery_failure_is_swallowed():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    assert Notifier("http://notifications:8000", transport=httpx.MockTransport(handler)).send(EVENT) is False


def test_unconfigured_notifier_only_logs():
    assert Notifier(None).send(EVENT) is False
