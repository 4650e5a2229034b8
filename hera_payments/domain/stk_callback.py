"""Parsing of the M-Pesa STK Push result callback.

The provider posts::

    {"Body": {"stkCallback": {"MerchantRequestID": ..., "CheckoutRequestID": ...,
        "ResultCode": 0, "ResultDesc": ...,
        "CallbackMetadata": {"Item": [{"Name": "Amount", "Value": 1000}, ...]}}}}

`CallbackMetadata` is only present on successful payments.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from hera_payments.domain.payload import TransactionMetadata

KNOWN_ITEMS = ("Amount", "MpesaReceiptNumber", "TransactionDate", "PhoneNumber")


class MalformedCallback(ValueError):
    pass


class CallbackMetadata:
    """Typed accessor over the provider's flattened Name/Value item list."""

    def __init__(self, items: Any = None):
        self._values: Dict[str, Any] = {}
        if isinstance(items, list):
            for item in items:
                if isinstance(item, dict) and item.get("Name") and "Value" in item:
                    self._values[item["Name"]] = item["Value"]

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def decimal(self, name: str) -> Optional[Decimal]:
        value = self._values.get(name)
        if value is None:
            return None
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None

    def text(self, name: str) -> Optional[str]:
        value = self._values.get(name)
        return None if value is None else str(value)

    @property
    def amount(self) -> Optional[Decimal]:
        return self.decimal("Amount")

    @property
    def receipt_number(self) -> Optional[str]:
        return self.text("MpesaReceiptNumber")

    def extras(self) -> Dict[str, Any]:
        return {k: v for k, v in self._values.items() if k not in KNOWN_ITEMS}

    def __bool__(self) -> bool:
        return bool(self._values)


@dataclass
class StkCallback:
    checkout_request_id: Optional[str]
    merchant_request_id: Optional[str]
    result_code: int
    result_desc: str
    metadata: CallbackMetadata = field(default_factory=CallbackMetadata)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0

    def transaction(self) -> TransactionMetadata:
        return TransactionMetadata(
            result_code=self.result_code,
            result_desc=self.result_desc,
            amount=self.metadata.amount,
            receipt_number=self.metadata.receipt_number,
            transaction_date=self.metadata.text("TransactionDate"),
            phone_number=self.metadata.text("PhoneNumber"),
            extras=self.metadata.extras(),
        )


def parse_stk_callback(body: Any) -> StkCallback:
    """Raise MalformedCallback unless `body` has the provider's envelope."""
    if not isinstance(body, dict) or not isinstance(body.get("Body"), dict):
        raise MalformedCallback("Callback body is missing 'Body'")
    callback = body["Body"].get("stkCallback")
    if not isinstance(callback, dict):
        raise MalformedCallback("Callback body is missing 'Body.stkCallback'")

    try:
        result_code = int(callback.get("ResultCode"))
    except (TypeError, ValueError):
        raise MalformedCallback(f"Unreadable ResultCode: {callback.get('ResultCode')!r}")

    checkout_request_id = callback.get("CheckoutRequestID")
    if checkout_request_id is not None and not isinstance(checkout_request_id, str):
        raise MalformedCallback(f"Unreadable CheckoutRequestID: {checkout_request_id!r}")

    metadata = callback.get("CallbackMetadata")
    return StkCallback(
        checkout_request_id=checkout_request_id,
        merchant_request_id=callback.get("MerchantRequestID"),
        result_code=result_code,
        result_desc=str(callback.get("ResultDesc") or ""),
        metadata=CallbackMetadata(metadata.get("Item") if isinstance(metadata, dict) else None),
    )
