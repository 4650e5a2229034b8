from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional
import math
import secrets
import time
from pydantic import ValidationError
from sqlalchemy.orm import Session
from hera_core import get_logger, set_request_context
from hera_payments.application.intents import PaymentIntentStore
from hera_payments.application.schemas import (
    ApiResponse, OrderSummary, Pagination, PaymentInitiation, PaymentIntentPage,
    PaymentIntentRead, PaymentStatusData,
)
from hera_payments.application.stock import StockValidator
from hera_payments.auth import Principal
from hera_payments.core_settings import Settings, get_settings
from hera_payments.domain.errors import (
    GatewayRequestError, NotAuthorized, PaymentIntentNotFound, PushRejected, RetryNotAllowed,
)
from hera_payments.domain.models import PaymentIntent, PaymentStatus
from hera_payments.domain.payload import CartPayload, CheckoutRequest, IntentPayload
from hera_payments.infrastructure.mpesa import MpesaClient, PushResponse

logger = get_logger(__name__)

PIN_INSTRUCTIONS = "Enter your M-Pesa PIN on your phone to complete the payment"


def generate_order_reference() -> str:
    """Account reference shown on the customer's M-Pesa prompt, HERA-<ms>-<random>."""
    return f"HERA-{int(time.time() * 1000)}-{secrets.token_hex(4).upper()}"


class PaymentService:
    def __init__(self, db: Session, gateway: Optional[MpesaClient] = None,
                 settings: Optional[Settings] = None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.db = db
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.clock = clock
        self.store = PaymentIntentStore(db)
        self.stock = StockValidator(db)

    async def _push(self, amount: Decimal, phone: str, reference: str, description: str) -> PushResponse:
        response = await self.gateway.initiate_push(amount, phone, reference, description)
        if not response.accepted:
            logger.warning(f"STK push rejected: {response.response_description}",
                           extra={'extra_fields': {'response_code': response.response_code}})
            raise PushRejected(response.response_description or "Failed to initiate payment",
                               response.response_code)
        if not response.checkout_request_id:
            raise GatewayRequestError("Failed to initiate payment request. Please try again.")
        return response

    def _initiation(self, intent: PaymentIntent, response: PushResponse, reference: str,
                    message: str, retry_of: Optional[int] = None) -> ApiResponse[PaymentInitiation]:
        return ApiResponse[PaymentInitiation](
            success=True,
            message=message,
            data=PaymentInitiation(
                checkout_request_id=response.checkout_request_id,
                merchant_request_id=response.merchant_request_id or "",
                payment_intent_id=intent.id,
                response_description=response.response_description,
                order_reference=reference,
                instructions=PIN_INSTRUCTIONS,
                retry_of=retry_of,
            ),
        )

    async def initiate(self, request: CheckoutRequest, principal: Principal) -> ApiResponse[PaymentInitiation]:
        """
        Validate the cart against live stock, push the STK prompt and record a
        PENDING intent. Stock is only checked here; it is taken when the
        provider confirms the payment. Nothing is persisted if the push fails.
        """
        self.stock.validate(request.items)
        # Release the read transaction before the network round trip
        self.db.rollback()

        reference = generate_order_reference()
        response = await self._push(request.amounts.total, request.payment.phone, reference,
                                    self.settings.MPESA_TRANSACTION_DESC)

        payload = CartPayload.model_validate({**request.model_dump(), "order_reference": reference})
        intent = self.store.create(
            buyer_id=principal.user_id,
            checkout_request_id=response.checkout_request_id,
            merchant_request_id=response.merchant_request_id or "",
            phone=request.payment.phone,
            amount=request.amounts.total,
            payload=payload,
        )
        self.db.commit()

        set_request_context(checkout_id=intent.checkout_request_id)
        logger.info(f"Payment intent {intent.id} created", extra={'extra_fields': {
            'payment_intent_id': intent.id, 'buyer_id': principal.user_id,
            'amount': intent.amount, 'order_reference': reference}})
        return self._initiation(intent, response, reference,
                                response.customer_message or "STK push sent successfully")

    def _authorize(self, intent: PaymentIntent, principal: Principal, action: str) -> None:
        if intent.buyer_id != principal.user_id and not principal.is_admin:
            raise NotAuthorized(f"Not authorized to {action} this payment")

    def get_status(self, checkout_request_id: str, principal: Principal) -> ApiResponse[PaymentStatusData]:
        """Read-only view of an intent; a stale PENDING intent is flagged, never rewritten."""
        intent = self.store.find_by_checkout_id(checkout_request_id)
        if intent is None:
            raise PaymentIntentNotFound("Payment request not found")
        self._authorize(intent, principal, "view")

        payload = intent.payload or {}
        failure = payload.get("failure") or {}
        data = PaymentStatusData(
            payment_id=intent.id,
            status=intent.status,
            amount=intent.amount,
            phone=intent.phone,
            created_at=intent.created_at,
            updated_at=intent.updated_at,
            order=OrderSummary.model_validate(intent.order) if intent.order else None,
            failure_reason=failure.get("reason"),
            order_reference=payload.get("order_reference"),
            transaction=payload.get("transaction"),
        )

        message = None
        if intent.status == PaymentStatus.PENDING.value:
            stale_after = timedelta(minutes=self.settings.PAYMENT_STALE_AFTER_MINUTES)
            if self.clock() - intent.created_at > stale_after:
                data.expired = True
                message = "Payment request has expired. Please initiate a new payment."
            else:
                data.retry_after = self.settings.PAYMENT_POLL_INTERVAL_SECONDS
                message = "Payment is still pending. Please complete the payment on your phone."
        elif intent.status == PaymentStatus.SUCCESS.value:
            message = "Payment completed successfully"
        else:
            message = data.failure_reason or "Payment failed"

        return ApiResponse[PaymentStatusData](
            success=intent.status == PaymentStatus.SUCCESS.value,
            message=message,
            data=data,
        )

    async def retry(self, intent_id: int, principal: Principal) -> ApiResponse[PaymentInitiation]:
        """
        Start a fresh attempt for a FAILED intent.

        The cart is taken from the old intent and stock is re-checked. The new
        intent records ``retry_of`` and the old one is linked to it through
        ``retried_to`` so each failure is retried at most once.
        """
        intent = self.store.get(intent_id)
        if intent is None:
            raise PaymentIntentNotFound("Payment intent not found")
        self._authorize(intent, principal, "retry")
        if intent.status == PaymentStatus.SUCCESS.value:
            raise RetryNotAllowed("Payment already completed successfully")
        if intent.status == PaymentStatus.PENDING.value:
            raise RetryNotAllowed("Payment is still pending. Please wait for it to complete.")

        try:
            previous = IntentPayload.model_validate(intent.payload or {})
        except ValidationError:
            logger.error(f"Stored cart for payment intent {intent_id} is unreadable", exc_info=True)
            raise RetryNotAllowed("Invalid payment data. Please start a new checkout.")
        if previous.retried_to:
            raise RetryNotAllowed(f"Payment was already retried as payment {previous.retried_to}")

        buyer_id, phone, amount = intent.buyer_id, intent.phone, intent.amount
        cart = previous.cart()
        self.stock.validate(cart.items)
        self.db.rollback()

        reference = generate_order_reference()
        response = await self._push(amount, phone, reference,
                                    f"{self.settings.MPESA_TRANSACTION_DESC} (retry)")

        payload = IntentPayload.model_validate({
            **cart.model_dump(), "order_reference": reference, "retry_of": intent_id})
        new_intent = self.store.create(
            buyer_id=buyer_id,
            checkout_request_id=response.checkout_request_id,
            merchant_request_id=response.merchant_request_id or "",
            phone=phone,
            amount=amount,
            payload=payload,
        )
        if not self.store.link_retry(intent_id, retried_to=new_intent.id, retried_at=self.clock()):
            # A concurrent retry linked first; the provider push stays unrecorded
            self.db.rollback()
            logger.warning(f"Discarding retry attempt {response.checkout_request_id} for payment intent {intent_id}")
            raise RetryNotAllowed("Payment was already retried")
        self.db.commit()

        logger.info(f"Payment intent {intent_id} retried as {new_intent.id}", extra={'extra_fields': {
            'payment_intent_id': new_intent.id, 'retry_of': intent_id}})
        return self._initiation(new_intent, response, reference,
                                "Payment retry initiated successfully", retry_of=intent_id)

    def list_intents(self, status: Optional[str] = None, start_date: Optional[datetime] = None,
                     end_date: Optional[datetime] = None, page: int = 1,
                     limit: int = 20) -> PaymentIntentPage:
        rows, total = self.store.list(status, start_date, end_date, page, limit)
        return PaymentIntentPage(
            data=[self._intent_row(intent) for intent in rows],
            pagination=Pagination(page=page, limit=limit, total=total,
                                  pages=math.ceil(total / limit) if total else 0),
        )

    @staticmethod
    def _intent_row(intent: PaymentIntent) -> PaymentIntentRead:
        payload = intent.payload or {}
        return PaymentIntentRead(
            id=intent.id,
            buyer_id=intent.buyer_id,
            checkout_request_id=intent.checkout_request_id,
            merchant_request_id=intent.merchant_request_id,
            phone=intent.phone,
            amount=intent.amount,
            method=intent.method,
            status=intent.status,
            order_id=intent.order_id,
            order_reference=payload.get("order_reference"),
            failure_reason=(payload.get("failure") or {}).get("reason"),
            retried_to=payload.get("retried_to"),
            retry_of=payload.get("retry_of"),
            created_at=intent.created_at,
            updated_at=intent.updated_at,
        )
