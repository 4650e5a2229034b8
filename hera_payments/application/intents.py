from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session
from hera_core import get_logger
from hera_payments.domain.errors import InvalidTransition, PaymentIntentNotFound
from hera_payments.domain.models import PaymentIntent, PaymentStatus
from hera_payments.domain.payload import CartPayload, FailureInfo, TransactionMetadata, to_document

logger = get_logger(__name__)


class PaymentIntentStore:
    """
    Persistence for payment attempts.

    Status changes go through a compare-and-set UPDATE guarded by
    ``status = 'PENDING'``; of two concurrent writers exactly one sees a
    row count of 1. Payload writes merge over the stored document. Nothing
    here commits: the caller owns the unit of work.
    """

    def __init__(self, db: Session):
        self.db = db

    def create(self, buyer_id: int, checkout_request_id: str, merchant_request_id: str,
               phone: str, amount: Decimal, payload: CartPayload) -> PaymentIntent:
        intent = PaymentIntent(
            buyer_id=buyer_id,
            checkout_request_id=checkout_request_id,
            merchant_request_id=merchant_request_id,
            phone=phone,
            amount=amount,
            method="MPESA",
            status=PaymentStatus.PENDING.value,
            payload=payload.model_dump(mode="json", exclude_none=True),
        )
        self.db.add(intent)
        self.db.flush()
        return intent

    def get(self, intent_id: int) -> Optional[PaymentIntent]:
        return self.db.get(PaymentIntent, intent_id, populate_existing=True)

    def find_by_checkout_id(self, checkout_request_id: str) -> Optional[PaymentIntent]:
        return self.db.scalars(
            select(PaymentIntent)
            .where(PaymentIntent.checkout_request_id == checkout_request_id)
            .execution_options(populate_existing=True)
        ).first()

    def _require(self, intent_id: int) -> PaymentIntent:
        intent = self.get(intent_id)
        if intent is None:
            raise PaymentIntentNotFound(f"Payment intent {intent_id} not found")
        return intent

    def _leave_pending(self, intent: PaymentIntent, status: PaymentStatus,
                       order_id: Optional[int] = None, **fields: Any) -> bool:
        values = {
            "status": status.value,
            "payload": {**(intent.payload or {}), **to_document(**fields)},
            "updated_at": datetime.utcnow(),
        }
        if order_id is not None:
            values["order_id"] = order_id
        result = self.db.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == intent.id, PaymentIntent.status == PaymentStatus.PENDING.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.db.refresh(intent)
        return result.rowcount == 1

    def transition_to_success(self, intent_id: int, order_id: int,
                              transaction: TransactionMetadata) -> bool:
        """False when the intent was already SUCCESS; InvalidTransition from FAILED."""
        intent = self._require(intent_id)
        if self._leave_pending(intent, PaymentStatus.SUCCESS, order_id=order_id, transaction=transaction):
            return True
        if intent.status == PaymentStatus.SUCCESS.value:
            logger.info(f"Payment intent {intent_id} already SUCCESS, skipping transition")
            return False
        raise InvalidTransition(f"Payment intent {intent_id} cannot move from {intent.status} to SUCCESS")

    def transition_to_failed(self, intent_id: int, failure: FailureInfo,
                             transaction: Optional[TransactionMetadata] = None) -> bool:
        intent = self._require(intent_id)
        fields = {"failure": failure}
        if transaction is not None:
            fields["transaction"] = transaction
        if self._leave_pending(intent, PaymentStatus.FAILED, **fields):
            return True
        logger.warning(f"Payment intent {intent_id} already {intent.status}, not marking FAILED")
        return False

    def link_retry(self, intent_id: int, retried_to: int, retried_at: datetime) -> bool:
        """Point a FAILED intent at its follow-up attempt; False if it already has one."""
        intent = self.db.scalars(
            select(PaymentIntent)
            .where(PaymentIntent.id == intent_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if intent is None:
            raise PaymentIntentNotFound(f"Payment intent {intent_id} not found")
        if (intent.payload or {}).get("retried_to"):
            logger.warning(f"Payment intent {intent_id} already retried as {intent.payload['retried_to']}")
            return False
        intent.payload = {**(intent.payload or {}),
                          **to_document(retried=True, retried_at=retried_at, retried_to=retried_to)}
        intent.updated_at = datetime.utcnow()
        self.db.flush()
        return True

    def list(self, status: Optional[str] = None, start_date: Optional[datetime] = None,
             end_date: Optional[datetime] = None, page: int = 1, limit: int = 20):
        query = select(PaymentIntent)
        if status:
            query = query.where(PaymentIntent.status == status)
        if start_date:
            query = query.where(PaymentIntent.created_at >= start_date)
        if end_date:
            query = query.where(PaymentIntent.created_at <= end_date)

        total = self.db.scalar(select(func.count()).select_from(query.subquery()))
        rows = self.db.scalars(
            query.order_by(PaymentIntent.created_at.desc(), PaymentIntent.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        ).all()
        return rows, total
