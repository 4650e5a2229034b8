"""Safaricom Daraja (M-Pesa) STK Push client."""

import asyncio
import base64
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, NamedTuple, Optional

import httpx
from cachetools import TLRUCache

from hera_core import get_logger
from hera_payments.domain.errors import GatewayAuthError, GatewayRequestError, InvalidAmount
from hera_payments.domain.payload import normalize_phone

logger = get_logger(__name__)

EAT = timezone(timedelta(hours=3), "EAT")

# Daraja error codes with a message the buyer can act on; codes are per endpoint
PUSH_ERRORS = {
    "500.001.1001": "Invalid phone number format",
    "400.002.02": "Invalid amount. Amount must be between 1 and 150,000",
}

STILL_PROCESSING = "500.001.1001"
QUERY_ERRORS = {
    STILL_PROCESSING: "The transaction is being processed",
}


class AccessToken(NamedTuple):
    value: str
    expires_in: int


class AccessTokenCache:
    """
    Holds the OAuth token until `expires_in - skew` seconds after it was
    stored. The clock is injectable so expiry can be tested without sleeping.
    """

    KEY = "mpesa"

    def __init__(self, skew_seconds: int = 60, clock: Callable[[], float] = time.monotonic):
        self.skew_seconds = skew_seconds
        self._tokens = TLRUCache(maxsize=1, ttu=self._expires_at, timer=clock)

    def _expires_at(self, _key, token: AccessToken, now: float) -> float:
        return now + max(token.expires_in - self.skew_seconds, 0)

    def get(self) -> Optional[str]:
        token = self._tokens.get(self.KEY)
        return token.value if token else None

    def put(self, value: str, expires_in: int) -> None:
        self._tokens[self.KEY] = AccessToken(value, expires_in)

    def invalidate(self) -> None:
        self._tokens.pop(self.KEY, None)


@dataclass(frozen=True)
class PushResponse:
    response_code: str
    checkout_request_id: Optional[str]
    merchant_request_id: Optional[str]
    response_description: Optional[str]
    customer_message: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.response_code == "0"


@dataclass(frozen=True)
class QueryResponse:
    response_code: Optional[str]
    result_code: Optional[int]
    result_desc: Optional[str]

    @property
    def resolved(self) -> bool:
        """The provider has a final answer for the push."""
        return self.result_code is not None


class MpesaClient:
    def __init__(
        self,
        base_url: str,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        callback_url: str,
        token_cache: AccessTokenCache,
        timeout: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        now: Callable[[], datetime] = lambda: datetime.now(EAT),
    ):
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.callback_url = callback_url
        self.token_cache = token_cache
        self.timeout = timeout
        self._transport = transport
        self._now = now
        self._token_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "MpesaClient":
        return cls(
            base_url=settings.MPESA_BASE_URL,
            consumer_key=settings.MPESA_CONSUMER_KEY,
            consumer_secret=settings.MPESA_CONSUMER_SECRET,
            shortcode=settings.MPESA_SHORTCODE,
            passkey=settings.MPESA_PASSKEY,
            callback_url=settings.MPESA_CALLBACK_URL,
            token_cache=AccessTokenCache(skew_seconds=settings.MPESA_TOKEN_SKEW_SECONDS),
            timeout=settings.MPESA_TIMEOUT_SECONDS,
            **kwargs,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    async def get_access_token(self) -> str:
        cached = self.token_cache.get()
        if cached:
            return cached
        async with self._token_lock:
            # Another request may have refreshed while we waited
            cached = self.token_cache.get()
            if cached:
                return cached
            return await self._fetch_token()

    async def _fetch_token(self) -> str:
        try:
            async with self._client() as client:
                resp = await client.get(
                    "/oauth/v1/generate",
                    params={"grant_type": "client_credentials"},
                    auth=(self.consumer_key, self.consumer_secret),
                )
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as e:
            logger.error("M-Pesa token request rejected", extra={'extra_fields': {
                'status_code': e.response.status_code}})
            if e.response.status_code == 401:
                raise GatewayAuthError("MPESA API credentials are invalid") from e
            raise GatewayAuthError("MPESA authentication failed") from e
        except httpx.TimeoutException as e:
            raise GatewayAuthError("MPESA API request timed out") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"M-Pesa token request failed: {e}")
            raise GatewayAuthError("MPESA authentication failed") from e

        token = body.get("access_token")
        if not token:
            raise GatewayAuthError("No access token in MPESA response")
        self.token_cache.put(token, int(body.get("expires_in") or 3599))
        return token

    def _password(self, timestamp: str) -> str:
        return base64.b64encode(f"{self.shortcode}{self.passkey}{timestamp}".encode()).decode()

    @staticmethod
    def whole_shillings(amount: Decimal) -> int:
        rounded = int(Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        if rounded < 1:
            raise InvalidAmount("Amount must be greater than 0")
        return rounded

    async def _post(self, path: str, payload: dict, provider_errors: dict) -> dict:
        token = await self.get_access_token()
        try:
            async with self._client() as client:
                resp = await client.post(path, json=payload, headers={"Authorization": f"Bearer {token}"})
        except httpx.HTTPError as e:
            logger.error(f"M-Pesa request to {path} failed: {e}")
            raise GatewayRequestError("Failed to initiate payment request. Please try again.") from e

        if resp.status_code == 401:
            self.token_cache.invalidate()
            raise GatewayAuthError("MPESA authentication failed")

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code >= 400:
            error_code = body.get("errorCode")
            logger.warning(f"M-Pesa rejected request to {path}", extra={'extra_fields': {
                'status_code': resp.status_code, 'error_code': error_code,
                'error_message': body.get("errorMessage")}})
            if error_code in provider_errors:
                raise GatewayRequestError(provider_errors[error_code], error_code)
            if body.get("errorMessage"):
                raise GatewayRequestError(f"MPESA error: {body['errorMessage']}", error_code)
            raise GatewayRequestError("Failed to initiate payment request. Please try again.", error_code)
        return body

    async def initiate_push(self, amount: Decimal, phone: str, account_reference: str,
                            description: str) -> PushResponse:
        msisdn = normalize_phone(phone)
        timestamp = self._now().strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": self.whole_shillings(amount),
            "PartyA": msisdn,
            "PartyB": self.shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": self.callback_url,
            "AccountReference": account_reference,
            "TransactionDesc": description,
        }

        logger.info("Initiating M-Pesa STK push", extra={'extra_fields': {
            'amount': payload["Amount"], 'phone': msisdn, 'account_reference': account_reference}})
        body = await self._post("/mpesa/stkpush/v1/processrequest", payload, PUSH_ERRORS)

        response = PushResponse(
            response_code=str(body.get("ResponseCode", "")),
            checkout_request_id=body.get("CheckoutRequestID"),
            merchant_request_id=body.get("MerchantRequestID"),
            response_description=body.get("ResponseDescription"),
            customer_message=body.get("CustomerMessage"),
        )
        logger.info("M-Pesa STK push response", extra={'extra_fields': {
            'response_code': response.response_code,
            'checkout_request_id': response.checkout_request_id,
            'response_description': response.response_description}})
        return response

    async def query_status(self, checkout_request_id: str) -> QueryResponse:
        timestamp = self._now().strftime("%Y%m%d%H%M%S")
        try:
            body = await self._post("/mpesa/stkpushquery/v1/query", {
                "BusinessShortCode": self.shortcode,
                "Password": self._password(timestamp),
                "Timestamp": timestamp,
                "CheckoutRequestID": checkout_request_id,
            }, QUERY_ERRORS)
        except GatewayRequestError as e:
            if e.error_code != STILL_PROCESSING:
                raise
            logger.info(f"M-Pesa still processing {checkout_request_id}")
            return QueryResponse(response_code=None, result_code=None, result_desc=e.message)
        result_code = body.get("ResultCode")
        return QueryResponse(
            response_code=body.get("ResponseCode"),
            result_code=int(result_code) if result_code not in (None, "") else None,
            result_desc=body.get("ResultDesc"),
        )
