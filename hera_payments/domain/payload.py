"""Typed views of the JSON document stored on every payment intent.

The document starts as the checkout cart and grows over the intent's life:
transaction details when the provider confirms, failure details when it does
not, and retry links when the buyer tries again. Writers always merge new keys
over the stored document, so the cart survives every update.
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from hera_payments.domain.errors import InvalidPhoneNumber

PHONE_PATTERN = re.compile(r"^(?:254|0)?([17]\d{8})$")


def normalize_phone(phone: Optional[str]) -> str:
    """Return a Kenyan MSISDN in the 2547XXXXXXXX / 2541XXXXXXXX form."""
    if not phone:
        raise InvalidPhoneNumber("Phone number is required")
    digits = re.sub(r"\D", "", phone)
    match = PHONE_PATTERN.match(digits)
    if not match:
        raise InvalidPhoneNumber("Phone number must be a valid Kenyan number")
    return "254" + match.group(1)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItem(CamelModel):
    product_id: int
    variant_id: Optional[int] = None
    quantity: int = Field(ge=1)
    price: Decimal = Field(gt=0, decimal_places=2)
    variant_name: Optional[str] = None
    variant_value: Optional[str] = None

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class CustomerInfo(CamelModel):
    first_name: Optional[str] = Field(None, max_length=120)
    last_name: Optional[str] = Field(None, max_length=120)
    name: Optional[str] = Field(None, max_length=255)
    phone: str = Field(max_length=32)
    email: str = Field(max_length=191, pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class PaymentInfo(CamelModel):
    method: Literal["MPESA"] = "MPESA"
    phone: str

    @field_validator("phone")
    @classmethod
    def _normalize(cls, value: str) -> str:
        try:
            return normalize_phone(value)
        except InvalidPhoneNumber as exc:
            raise ValueError(exc.message) from exc


class ShippingInfo(CamelModel):
    address: Optional[str] = None
    city: Optional[str] = Field(None, max_length=120)
    country: Optional[str] = Field(None, max_length=120)
    notes: Optional[str] = None


class Amounts(CamelModel):
    subtotal: Decimal = Field(ge=1, decimal_places=2)
    shipping_fee: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    discount: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=2)
    total: Decimal = Field(ge=1, decimal_places=2)


class CheckoutRequest(CamelModel):
    items: List[CartItem] = Field(min_length=1)
    customer: CustomerInfo
    payment: PaymentInfo
    shipping: ShippingInfo = Field(default_factory=ShippingInfo)
    amounts: Amounts

    @model_validator(mode="after")
    def _amounts_match_items(self):
        lines = sum((item.line_total for item in self.items), Decimal("0"))
        if lines != self.amounts.subtotal:
            raise ValueError(f"Subtotal {self.amounts.subtotal} does not match item total {lines}")
        expected = self.amounts.subtotal + self.amounts.shipping_fee - self.amounts.discount
        if expected != self.amounts.total:
            raise ValueError(f"Total {self.amounts.total} does not match subtotal, shipping and discount ({expected})")
        return self

    def order_total(self) -> Decimal:
        lines = sum((item.line_total for item in self.items), Decimal("0"))
        return lines + self.amounts.shipping_fee - self.amounts.discount


class CartPayload(CheckoutRequest):
    order_reference: str


class TransactionMetadata(BaseModel):
    result_code: int
    result_desc: str
    amount: Optional[Decimal] = None
    receipt_number: Optional[str] = None
    transaction_date: Optional[str] = None
    phone_number: Optional[str] = None
    extras: Dict[str, Any] = Field(default_factory=dict)
    processed_at: datetime = Field(default_factory=datetime.utcnow)


class FailureInfo(BaseModel):
    reason: str
    error: Optional[str] = None
    result_code: Optional[int] = None
    # Customer was charged but no order exists; support must refund by hand
    requires_refund: bool = False
    failed_at: datetime = Field(default_factory=datetime.utcnow)


class IntentPayload(CartPayload):
    transaction: Optional[TransactionMetadata] = None
    failure: Optional[FailureInfo] = None
    retry_of: Optional[int] = None
    retried_to: Optional[int] = None
    retried_at: Optional[datetime] = None

    def cart(self) -> CartPayload:
        return CartPayload.model_validate(self.model_dump(include=set(CartPayload.model_fields)))


def to_document(**fields: Any) -> Dict[str, Any]:
    """Serialize payload fragments into JSON-column friendly values."""
    document = {}
    for key, value in fields.items():
        if isinstance(value, BaseModel):
            document[key] = value.model_dump(mode="json")
        elif isinstance(value, (datetime, Decimal)):
            document[key] = value.isoformat() if isinstance(value, datetime) else str(value)
        else:
            document[key] = value
    return document
