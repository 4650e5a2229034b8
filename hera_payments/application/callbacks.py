"""M-Pesa result callback processing.

The provider retries any delivery it does not consider acknowledged, and it
also duplicates deliveries on its own. Every handled case is therefore
acknowledged with ResultCode 0, and an intent leaves PENDING at most once.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict
from sqlalchemy.orm import Session
from hera_core import get_logger, set_request_context
from hera_payments.application.intents import PaymentIntentStore
from hera_payments.application.notifications import PaymentEvent, PaymentEventType
from hera_payments.application.orders import OrderMaterializer
from hera_payments.domain.errors import InvalidTransition
from hera_payments.domain.models import Order, PaymentIntent, PaymentStatus
from hera_payments.domain.payload import FailureInfo, IntentPayload, TransactionMetadata
from hera_payments.domain.stk_callback import MalformedCallback, parse_stk_callback

logger = get_logger(__name__)


@dataclass(frozen=True)
class CallbackAck:
    result_code: int
    result_desc: str

    def as_response(self) -> Dict[str, Any]:
        return {"ResultCode": self.result_code, "ResultDesc": self.result_desc}


def ack(result_desc: str) -> CallbackAck:
    return CallbackAck(0, result_desc)


class CallbackHandler:
    def __init__(self, db: Session, dispatch: Callable[[PaymentEvent], None]):
        self.db = db
        self.store = PaymentIntentStore(db)
        self.materializer = OrderMaterializer(db)
        self.dispatch = dispatch

    def handle(self, body: Any) -> CallbackAck:
        try:
            callback = parse_stk_callback(body)
        except MalformedCallback as e:
            logger.warning(f"Invalid callback structure received: {e}",
                           extra={'extra_fields': {'raw_body': body}})
            return ack("Invalid callback")

        set_request_context(checkout_id=callback.checkout_request_id)
        transaction = callback.transaction()
        logger.info("M-Pesa callback received", extra={'extra_fields': {
            'checkout_request_id': callback.checkout_request_id,
            'result_code': callback.result_code,
            'result_desc': callback.result_desc,
            'receipt_number': transaction.receipt_number,
        }})

        if not callback.checkout_request_id:
            logger.warning("Callback missing CheckoutRequestID")
            return ack("Missing CheckoutRequestID")

        intent = self.store.find_by_checkout_id(callback.checkout_request_id)
        if intent is None:
            logger.warning(f"Callback for unknown checkout id {callback.checkout_request_id}")
            return ack("Payment intent not found")

        return self.handle_result(intent, transaction)

    def handle_result(self, intent: PaymentIntent, transaction: TransactionMetadata) -> CallbackAck:
        """Drive a PENDING intent to its terminal state from a provider result."""
        if intent.status != PaymentStatus.PENDING.value:
            logger.info(f"Payment intent {intent.id} already in status {intent.status}")
            return ack("Already processed")

        if transaction.result_code == 0:
            if transaction.amount is not None and transaction.amount != intent.amount:
                logger.warning(f"Callback amount {transaction.amount} differs from intent amount {intent.amount}",
                               extra={'extra_fields': {'payment_intent_id': intent.id}})
            self._settle_success(intent, transaction)
        else:
            self._settle_failure(intent, transaction)
        return ack("Callback processed successfully")

    def _settle_success(self, intent: PaymentIntent, transaction: TransactionMetadata) -> None:
        intent_id, buyer_id = intent.id, intent.buyer_id

        try:
            payload = IntentPayload.model_validate(intent.payload)
            order = self.materializer.create_order(buyer_id, payload.cart(), intent_id)
        except Exception as exc:
            self.db.rollback()
            logger.error(f"Order creation failed after payment for intent {intent_id}", exc_info=True,
                         extra={'extra_fields': {'payment_intent_id': intent_id,
                                                 'receipt_number': transaction.receipt_number}})
            self._fail(intent_id, transaction, FailureInfo(
                reason="Order creation failed",
                error=str(exc),
                result_code=transaction.result_code,
                requires_refund=True,
            ))
            return

        try:
            applied = self.store.transition_to_success(intent_id, order.id, transaction)
        except InvalidTransition as exc:
            self.db.rollback()
            logger.warning(f"Discarding order for intent {intent_id}: {exc.message}")
            return
        if not applied:
            # A concurrent delivery settled the intent first; drop our order and stock changes
            self.db.rollback()
            return

        self.db.commit()
        logger.info(f"Order {order.order_number} created for payment intent {intent_id}")
        self._notify(PaymentEventType.PAYMENT_SUCCESS, intent, order=order)

    def _settle_failure(self, intent: PaymentIntent, transaction: TransactionMetadata) -> None:
        logger.info(f"Payment failed for intent {intent.id}: {transaction.result_desc}")
        self._fail(intent.id, transaction, FailureInfo(
            reason=transaction.result_desc,
            result_code=transaction.result_code,
        ))

    def _fail(self, intent_id: int, transaction: TransactionMetadata, failure: FailureInfo) -> None:
        if not self.store.transition_to_failed(intent_id, failure, transaction):
            self.db.rollback()
            return
        self.db.commit()
        event_type = (PaymentEventType.PAYMENT_REFUND_REQUIRED if failure.requires_refund
                      else PaymentEventType.PAYMENT_FAILED)
        self._notify(event_type, self.store.get(intent_id), reason=failure.reason,
                     requires_refund=failure.requires_refund)

    def _notify(self, event_type: PaymentEventType, intent: PaymentIntent,
                order: Order = None, **fields: Any) -> None:
        customer = (intent.payload or {}).get("customer") or {}
        event = PaymentEvent(
            type=event_type,
            user_id=intent.buyer_id,
            payment_intent_id=intent.id,
            checkout_request_id=intent.checkout_request_id,
            amount=intent.amount,
            email=customer.get("email"),
            order_id=order.id if order else None,
            order_number=order.order_number if order else None,
            **fields,
        )
        try:
            self.dispatch(event)
        except Exception:
            logger.error(f"Could not schedule {event_type.value} notification", exc_info=True)
