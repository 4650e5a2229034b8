"""Re-query M-Pesa for payment intents stuck in PENDING.

A callback that never arrives leaves the buyer charged (or not) with nothing
recorded. The sweep asks the provider for the outcome of each stale push and
settles the intent through the same path the callback uses.

    python -m hera_payments.reconcile --age-mins 10 --max 200
"""

import argparse
import asyncio
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
from sqlalchemy import select
from sqlalchemy.orm import Session
from hera_core import get_logger, set_request_context, setup_logging
from hera_payments.application.callbacks import CallbackHandler
from hera_payments.application.notifications import Notifier
from hera_payments.core_settings import get_settings
from hera_payments.domain.errors import PaymentError
from hera_payments.domain.models import PaymentIntent, PaymentStatus
from hera_payments.domain.payload import TransactionMetadata
from hera_payments.infrastructure.db import SessionLocal
from hera_payments.infrastructure.mpesa import MpesaClient

logger = get_logger(__name__)


@dataclass
class SweepSummary:
    queried: int = 0
    succeeded: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: int = 0


async def reconcile(db: Session, gateway: MpesaClient, notifier: Notifier,
                    age_minutes: int = 10, limit: int = 200,
                    now: Callable[[], datetime] = datetime.utcnow) -> SweepSummary:
    cutoff = now() - timedelta(minutes=age_minutes)
    stale = db.execute(
        select(PaymentIntent.id, PaymentIntent.checkout_request_id)
        .where(PaymentIntent.status == PaymentStatus.PENDING.value, PaymentIntent.created_at <= cutoff)
        .order_by(PaymentIntent.created_at)
        .limit(limit)
    ).all()
    # No transaction stays open across provider round trips
    db.rollback()

    handler = CallbackHandler(db, dispatch=notifier.send)
    summary = SweepSummary()
    for intent_id, checkout_request_id in stale:
        summary.queried += 1
        set_request_context(checkout_id=checkout_request_id)
        try:
            result = await gateway.query_status(checkout_request_id)
        except PaymentError as exc:
            logger.warning(f"Status query failed for intent {intent_id}: {exc.message}")
            summary.errors += 1
            continue

        if not result.resolved:
            summary.still_pending += 1
            continue

        try:
            intent = handler.store.get(intent_id)
            handler.handle_result(intent, TransactionMetadata(
                result_code=result.result_code,
                result_desc=result.result_desc or "",
                extras={"source": "status_query"},
            ))
            status = handler.store.get(intent_id).status
        except Exception:
            db.rollback()
            logger.error(f"Could not settle payment intent {intent_id}", exc_info=True)
            summary.errors += 1
            continue
        if status == PaymentStatus.SUCCESS.value:
            summary.succeeded += 1
        elif status == PaymentStatus.FAILED.value:
            summary.failed += 1
        else:
            summary.still_pending += 1

    logger.info("Reconciliation sweep finished", extra={'extra_fields': vars(summary)})
    return summary


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Re-query M-Pesa for stale PENDING payment intents and settle them.")
    parser.add_argument("--age-mins", type=int, default=10,
                        help="Only query intents older than N minutes (default: 10)")
    parser.add_argument("--max", type=int, default=200, dest="limit",
                        help="Max intents to process (default: 200)")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(service_name=f"{settings.SERVICE_NAME}-reconcile", level=settings.LOG_LEVEL)

    db = SessionLocal()
    try:
        summary = asyncio.run(reconcile(
            db,
            MpesaClient.from_settings(settings),
            Notifier(settings.NOTIFICATIONS_SERVICE_URL),
            age_minutes=args.age_mins,
            limit=args.limit,
        ))
    finally:
        db.close()

    print(f"Done. Queried {summary.queried} intent(s). Succeeded {summary.succeeded}, "
          f"failed {summary.failed}, still pending {summary.still_pending}, errors {summary.errors}.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
