import asyncio
import base64
import json
from datetime import datetime
from decimal import Decimal
import httpx
import pytest
from hera_payments.domain.errors import GatewayAuthError, GatewayRequestError, InvalidAmount, InvalidPhoneNumber
from hera_payments.infrastructure.mpesa import EAT, AccessTokenCache, MpesaClient


class FakeTimer:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class Daraja:
    """Scripted Daraja sandbox behind httpx.MockTransport."""

    def __init__(self, push_status=200, push_body=None, token_status=200):
        self.requests = []
        self.token_calls = 0
        self.push_status = push_status
        self.push_body = push_body or {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }
        self.token_status = token_status
        self.query_status = 200
        self.query_body = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/oauth/v1/generate":
            self.token_calls += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"errorMessage": "Invalid credentials"})
            return httpx.Response(200, json={"access_token": f"tok-{self.token_calls}", "expires_in": "3599"})
        if request.url.path == "/mpesa/stkpush/v1/processrequest":
            return httpx.Response(self.push_status, json=self.push_body)
        if request.url.path == "/mpesa/stkpushquery/v1/query":
            return httpx.Response(self.query_status, json=self.query_body)
        return httpx.Response(404)

    def pushes(self):
        return [r for r in self.requests if r.url.path == "/mpesa/stkpush/v1/processrequest"]


def make_client(daraja, timer=None):
    return MpesaClient(
        base_url="https://sandbox.safaricom.co.ke",
        consumer_key="key",
        consumer_secret="secret",
        shortcode="174379",
        passkey="passkey",
        callback_url="https://hera.example/payments/mpesa/callback",
        token_cache=AccessTokenCache(skew_seconds=60, clock=timer or FakeTimer()),
        transport=httpx.MockTransport(daraja),
        now=lambda: datetime(2024, 9, 15, 12, 30, 45, tzinfo=EAT),
    )


def push(client, amount="1000.00", phone="0712345678"):
    return asyncio.run(client.initiate_push(Decimal(amount), phone, "HERA-1726392645000-AB12CD34",
                                            "Hera Collection Purchase"))


def test_push_builds_daraja_request():
    daraja = Daraja()
    response = push(make_client(daraja))

    assert response.accepted
    assert response.checkout_request_id == "ws_CO_191220191020363925"

    token_request = daraja.requests[0]
    assert token_request.url.params["grant_type"] == "client_credentials"
    assert token_request.headers["Authorization"] == "Basic " + base64.b64encode(b"key:secret").decode()

    push_request = daraja.pushes()[0]
    assert push_request.headers["Authorization"] == "Bearer tok-1"
    body = json.loads(push_request.content)
    assert body["Timestamp"] == "20240915123045"
    assert body["Password"] == base64.b64encode(b"174379passkey20240915123045").decode()
    assert body["Amount"] == 1000
    assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
    assert body["TransactionType"] == "CustomerPayBillOnline"
    assert body["CallBackURL"] == "https://hera.example/payments/mpesa/callback"


def test_token_is_reused_until_expiry():
    daraja, timer = Daraja(), FakeTimer()
    client = make_client(daraja, timer)

    push(client)
    timer.now += 3000
    push(client)
    assert daraja.token_calls == 1

    # 3599s lifetime minus 60s skew
    timer.now += 540
    push(client)
    assert daraja.token_calls == 2
    assert daraja.pushes()[-1].headers["Authorization"] == "Bearer tok-2"


def test_rejected_credentials_raise_auth_error():
    daraja = Daraja(token_status=401)
    with pytest.raises(GatewayAuthError) as exc:
        push(make_client(daraja))
    assert exc.value.message == "MPESA API credentials are invalid"
    assert exc.value.status_code == 503
    assert daraja.pushes() == []


def test_unauthorized_push_drops_cached_token():
    daraja = Daraja(push_status=401, push_body={"errorMessage": "Invalid Access Token"})
    client = make_client(daraja)
    with pytest.raises(GatewayAuthError):
        push(client)
    assert client.token_cache.get() is None


def test_non_zero_response_code_is_not_accepted():
    daraja = Daraja(push_body={"ResponseCode": "1", "ResponseDescription": "Unable to lock subscriber"})
    response = push(make_client(daraja))
    assert not response.accepted
    assert response.response_description == "Unable to lock subscriber"


def test_provider_error_codes_are_translated():
    daraja = Daraja(push_status=400, push_body={"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})
    with pytest.raises(GatewayRequestError) as exc:
        push(make_client(daraja))
    assert exc.value.message == "Invalid amount. Amount must be between 1 and 150,000"


def test_unknown_provider_error_uses_error_message():
    daraja = Daraja(push_status=500, push_body={"errorCode": "500.003.02", "errorMessage": "System is busy"})
    with pytest.raises(GatewayRequestError) as exc:
        push(make_client(daraja))
    assert exc.value.message == "MPESA error: System is busy"


def test_invalid_phone_never_reaches_provider():
    daraja = Daraja()
    with pytest.raises(InvalidPhoneNumber):
        push(make_client(daraja), phone="12345")
    assert daraja.requests == []


def test_amount_rounds_to_whole_shillings():
    assert MpesaClient.whole_shillings(Decimal("999.50")) == 1000
    assert MpesaClient.whole_shillings(Decimal("999.49")) == 999
    with pytest.raises(InvalidAmount):
        MpesaClient.whole_shillings(Decimal("0.40"))


def test_query_status_reads_result_code():
    daraja = Daraja()
    daraja.query_body = {"ResponseCode": "0", "ResultCode": "1032", "ResultDesc": "Request cancelled by user"}
    result = asyncio.run(make_client(daraja).query_status("ws_CO_191220191020363925"))
    assert result.resolved
    assert result.result_code == 1032
    assert result.result_desc == "Request cancelled by user"


def test_query_while_processing_is_unresolved():
    daraja = Daraja()
    daraja.query_status = 500
    daraja.query_body = {"requestId": "6803-1140497-1", "errorCode": "500.001.1001",
                         "errorMessage": "The transaction is being processed"}
    result = asyncio.run(make_client(daraja).query_status("ws_CO_191220191020363925"))
    assert not result.resolved
    assert result.result_desc == "The transaction is being processed"


def test_query_errors_other_than_processing_still_raise():
    daraja = Daraja()
    daraja.query_status = 500
    daraja.query_body = {"errorCode": "500.003.02", "errorMessage": "System is busy"}
    with pytest.raises(GatewayRequestError) as exc:
        asyncio.run(make_client(daraja).query_status("ws_CO_191220191020363925"))
    assert exc.value.error_code == "500.003.02"


def test_push_error_code_shared_with_query_keeps_phone_message():
    daraja = Daraja(push_status=500, push_body={"errorCode": "500.001.1001", "errorMessage": "Unable to lock subscriber"})
    with pytest.raises(GatewayRequestError) as exc:
        push(make_client(daraja))
    assert exc.value.message == "Invalid phone number format"
