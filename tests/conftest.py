import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret"

from datetime import datetime, timedelta
from decimal import Decimal
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from hera_payments.api.routes import get_clock, get_gateway, get_notifier
from hera_payments.auth import create_access_token
from hera_payments.domain.models import Base, PaymentIntent, Product, ProductVariant
from hera_payments.domain.payload import CartPayload
from hera_payments.infrastructure.db import get_db
from hera_payments.infrastructure.mpesa import PushResponse, QueryResponse
from hera_payments.main import app

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

BUYER_ID = 7
OTHER_BUYER_ID = 8
ADMIN_ID = 1


class FakeGateway:
    """Stands in for MpesaClient; records pushes and replays canned answers."""

    def __init__(self):
        self.pushes = []
        self.queries = []
        self.push_response = None
        self.push_error = None
        self.query_results = {}
        self._counter = 0
        self.on_push = None

    async def initiate_push(self, amount, phone, account_reference, description):
        if self.push_error:
            raise self.push_error
        if self.on_push:
            self.on_push()
        self.pushes.append({"amount": amount, "phone": phone,
                            "account_reference": account_reference, "description": description})
        if self.push_response:
            return self.push_response
        self._counter += 1
        return PushResponse(
            response_code="0",
            checkout_request_id=f"ws_CO_{self._counter:04d}",
            merchant_request_id=f"29115-{self._counter:04d}",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )

    async def query_status(self, checkout_request_id):
        self.queries.append(checkout_request_id)
        result = self.query_results.get(checkout_request_id)
        if isinstance(result, Exception):
            raise result
        return result or QueryResponse(response_code="0", result_code=None, result_desc=None)


class FakeNotifier:
    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)
        return True


class FakeClock:
    def __init__(self):
        self.now = datetime.utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def db_session():
    Base.metadata.create_all(engine)
    session = TestingSessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(engine)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def client(db_session, gateway, notifier, clock):
    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_clock] = lambda: clock
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user_id=BUYER_ID, role="CUSTOMER"):
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture
def buyer_headers():
    return auth_headers()


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN_ID, "ADMIN")


@pytest.fixture
def product(db_session):
    """A published dress with one variant: 5 in stock at 500.00."""
    product = Product(title="Ankara Wrap Dress", is_published=True)
    db_session.add(product)
    db_session.flush()
    db_session.add(ProductVariant(product_id=product.id, sku="AWD-M-RED", name="Size",
                                  value="M", price=Decimal("500.00"), stock=5))
    db_session.commit()
    db_session.refresh(product)
    return product


def checkout_body(product, quantity=2, price="500.00", phone="0712345678",
                  shipping_fee="0", discount="0", **overrides):
    subtotal = Decimal(price) * quantity
    total = subtotal + Decimal(shipping_fee) - Decimal(discount)
    body = {
        "items": [{
            "productId": product.id,
            "variantId": product.variants[0].id,
            "quantity": quantity,
            "price": price,
            "variantName": "Size",
            "variantValue": "M",
        }],
        "customer": {
            "firstName": "Wanjiru",
            "lastName": "Kamau",
            "phone": phone,
            "email": "wanjiru@example.com",
        },
        "payment": {"method": "MPESA", "phone": phone},
        "shipping": {"address": "Moi Avenue 12", "city": "Nairobi", "country": "Kenya"},
        "amounts": {"subtotal": str(subtotal), "shippingFee": shipping_fee, "discount": discount,
                    "total": str(total)},
    }
    body.update(overrides)
    return body


def make_intent(db, product, checkout_request_id="ws_CO_seed", quantity=2, buyer_id=BUYER_ID,
                status="PENDING", created_at=None, **body):
    """Persist a PENDING intent as initiation would have left it."""
    payload = CartPayload.model_validate({**checkout_body(product, quantity=quantity, **body),
                                          "orderReference": f"HERA-{checkout_request_id}"})
    intent = PaymentIntent(
        buyer_id=buyer_id,
        checkout_request_id=checkout_request_id,
        merchant_request_id="29115-seed",
        phone="254712345678",
        amount=payload.amounts.total,
        method="MPESA",
        status=status,
        payload=payload.model_dump(mode="json", exclude_none=True),
        created_at=created_at or datetime.utcnow(),
        updated_at=created_at or datetime.utcnow(),
    )
    db.add(intent)
    db.commit()
    return intent


def stk_callback(checkout_request_id, result_code=0, result_desc="The service request is processed successfully.",
                 amount=1000, receipt="NLJ7RT61SV"):
    callback = {
        "MerchantRequestID": "29115-seed",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": amount},
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "TransactionDate", "Value": 20240915123045},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]}
    return {"Body": {"stkCallback": callback}}
