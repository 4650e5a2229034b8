from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, Optional, TypeVar
from pydantic import ConfigDict
from hera_payments.domain.payload import CamelModel

T = TypeVar("T")

class ApiResponse(CamelModel, Generic[T]):
    success: bool
    message: Optional[str] = None
    data: T

class PaymentInitiation(CamelModel):
    checkout_request_id: str
    merchant_request_id: str
    payment_intent_id: int
    response_description: Optional[str] = None
    order_reference: str
    instructions: str
    retry_of: Optional[int] = None

class OrderSummary(CamelModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    status: str
    total_amount: Decimal
    created_at: datetime

class PaymentStatusData(CamelModel):
    payment_id: int
    status: str
    amount: Decimal
    phone: str
    created_at: datetime
    updated_at: datetime
    order: Optional[OrderSummary] = None
    failure_reason: Optional[str] = None
    order_reference: Optional[str] = None
    transaction: Optional[dict[str, Any]] = None
    expired: Optional[bool] = None
    retry_after: Optional[int] = None

class PaymentIntentRead(CamelModel):
    id: int
    buyer_id: int
    checkout_request_id: str
    merchant_request_id: str
    phone: str
    amount: Decimal
    method: str
    status: str
    order_id: Optional[int] = None
    order_reference: Optional[str] = None
    failure_reason: Optional[str] = None
    retried_to: Optional[int] = None
    retry_of: Optional[int] = None
    created_at: datetime
    updated_at: datetime

class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int

class PaymentIntentPage(CamelModel):
    success: bool = True
    data: list[PaymentIntentRead]
    pagination: Pagination
