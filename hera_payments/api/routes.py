from datetime import datetime
from typing import Callable, Optional
from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool
from hera_core import get_logger
from hera_payments.auth import Principal, get_current_user, require_admin
from hera_payments.application.callbacks import CallbackAck, CallbackHandler
from hera_payments.application.notifications import Notifier
from hera_payments.application.schemas import (
    ApiResponse, PaymentInitiation, PaymentIntentPage, PaymentStatusData,
)
from hera_payments.application.service import PaymentService
from hera_payments.domain.models import PaymentStatus
from hera_payments.domain.payload import CheckoutRequest
from hera_payments.infrastructure.db import get_db
from hera_payments.infrastructure.mpesa import MpesaClient

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])
status_router = APIRouter(tags=["payments"])


def get_gateway(request: Request) -> MpesaClient:
    return request.app.state.gateway


def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_clock() -> Callable[[], datetime]:
    return datetime.utcnow


def get_payment_service(db: Session = Depends(get_db),
                        gateway: MpesaClient = Depends(get_gateway),
                        clock: Callable[[], datetime] = Depends(get_clock)) -> PaymentService:
    return PaymentService(db, gateway, clock=clock)


@router.post("/mpesa/callback")
async def mpesa_callback(request: Request, background_tasks: BackgroundTasks,
                         db: Session = Depends(get_db),
                         notifier: Notifier = Depends(get_notifier)):
    """
    Result webhook called by Safaricom. Always answers 200 so the provider
    stops redelivering; notifications go out after the response is sent.
    """
    try:
        body = await request.json()
    except ValueError:
        body = None

    handler = CallbackHandler(db, dispatch=lambda event: background_tasks.add_task(notifier.send, event))
    try:
        result = await run_in_threadpool(handler.handle, body)
    except Exception:
        db.rollback()
        logger.error("Error processing M-Pesa callback", exc_info=True,
                     extra={'extra_fields': {'raw_body': body}})
        result = CallbackAck(1, "Error processing callback")
    return result.as_response()


@router.post("/mpesa/start", response_model=ApiResponse[PaymentInitiation])
async def start_mpesa_payment(payload: CheckoutRequest,
                              principal: Principal = Depends(get_current_user),
                              service: PaymentService = Depends(get_payment_service)):
    return await service.initiate(payload, principal)


@router.post("/{payment_intent_id}/retry", response_model=ApiResponse[PaymentInitiation])
async def retry_payment(payment_intent_id: int,
                        principal: Principal = Depends(get_current_user),
                        service: PaymentService = Depends(get_payment_service)):
    return await service.retry(payment_intent_id, principal)


@router.get("/admin/intents", response_model=PaymentIntentPage)
def list_payment_intents(status: Optional[PaymentStatus] = None,
                         start_date: Optional[datetime] = None,
                         end_date: Optional[datetime] = None,
                         page: int = Query(1, ge=1),
                         limit: int = Query(20, ge=1, le=100),
                         _: Principal = Depends(require_admin),
                         service: PaymentService = Depends(get_payment_service)):
    """All payment attempts, newest first."""
    return service.list_intents(status.value if status else None, start_date, end_date, page, limit)


@status_router.get("/payment-status/{checkout_id}", response_model=ApiResponse[PaymentStatusData])
def payment_status(checkout_id: str,
                   principal: Principal = Depends(get_current_user),
                   service: PaymentService = Depends(get_payment_service)):
    return service.get_status(checkout_id, principal)
