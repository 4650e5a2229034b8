import asyncio
from datetime import datetime, timedelta
from hera_payments.application.notifications import PaymentEventType
from hera_payments.domain.errors import GatewayRequestError
from hera_payments.domain.models import PaymentIntent, ProductVariant
from hera_payments.infrastructure.mpesa import QueryResponse
from hera_payments.reconcile import reconcile
from conftest import make_intent


def sweep(db, gateway, notifier, **kwargs):
    return asyncio.run(reconcile(db, gateway, notifier, **kwargs))


def test_stale_intents_are_settled_from_provider_answer(db_session, product, gateway, notifier):
    stale = datetime.utcnow() - timedelta(minutes=30)
    paid = make_intent(db_session, product, "ws_CO_paid", created_at=stale)
    cancelled = make_intent(db_session, product, "ws_CO_cancelled", quantity=1, created_at=stale)
    processing = make_intent(db_session, product, "ws_CO_processing", created_at=stale)
    busy = make_intent(db_session, product, "ws_CO_busy", created_at=stale)
    gateway.query_results = {
        "ws_CO_paid": QueryResponse("0", 0, "The service request is processed successfully."),
        "ws_CO_cancelled": QueryResponse("0", 1032, "Request cancelled by user"),
        "ws_CO_processing": QueryResponse(None, None, "The transaction is being processed"),
        "ws_CO_busy": GatewayRequestError("MPESA error: System is busy", "500.003.02"),
    }

    summary = sweep(db_session, gateway, notifier)

    assert (summary.queried, summary.succeeded, summary.failed) == (4, 1, 1)
    assert (summary.still_pending, summary.errors) == (1, 1)
    db_session.expire_all()
    assert db_session.get(PaymentIntent, paid.id).status == "SUCCESS"
    assert db_session.get(PaymentIntent, paid.id).order_id is not None
    assert db_session.get(PaymentIntent, cancelled.id).status == "FAILED"
    assert db_session.get(PaymentIntent, processing.id).status == "PENDING"
    assert db_session.get(PaymentIntent, busy.id).status == "PENDING"
    assert db_session.get(ProductVariant, product.variants[0].id).stock == 3
    assert sorted(e.type.value for e in notifier.events) == [
        PaymentEventType.PAYMENT_FAILED.value, PaymentEventType.PAYMENT_SUCCESS.value]


def test_unresolved_answer_leaves_intent_pending(db_session, product, gateway, notifier):
    intent = make_intent(db_session, product, "ws_CO_open", created_at=datetime.utcnow() - timedelta(minutes=30))

    summary = sweep(db_session, gateway, notifier)

    assert summary.still_pending == 1
    db_session.expire_all()
    assert db_session.get(PaymentIntent, intent.id).status == "PENDING"


def test_recent_and_settled_intents_are_skipped(db_session, product, gateway, notifier):
    make_intent(db_session, product, "ws_CO_fresh")
    make_intent(db_session, product, "ws_CO_done", status="SUCCESS",
                created_at=datetime.utcnow() - timedelta(hours=1))

    summary = sweep(db_session, gateway, notifier, age_minutes=10)

    assert summary.queried == 0
    assert gateway.queries == []


def test_sweep_respects_limit(db_session, product, gateway, notifier):
    stale = datetime.utcnow() - timedelta(minutes=30)
    for n in range(3):
        make_intent(db_session, product, f"ws_CO_{n}", created_at=stale - timedelta(minutes=n))

    sweep(db_session, gateway, notifier, limit=2)

    # oldest first
    assert gateway.queries == ["ws_CO_2", "ws_CO_1"]
