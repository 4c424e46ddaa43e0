"""
Tests for the Daraja gateway client.
"""
import base64
import logging
from datetime import datetime
from decimal import Decimal

import httpx
import pytest
from tenacity import wait_none

from pesarena.exceptions import AuthError, GatewayError, ValidationError
from pesarena.services.mpesa_client import (
    MpesaClient,
    StkPushResponse,
    TOKEN_PATH,
    basic_auth_header,
    generate_password,
    generate_timestamp,
    normalize_phone,
    whole_shillings,
)

ACCESS_TOKEN = "fake-access-token-0001"

STK_FIELDS = {
    "BusinessShortCode", "Password", "Timestamp", "TransactionType", "Amount",
    "PartyA", "PartyB", "PhoneNumber", "CallBackURL", "AccountReference", "TransactionDesc",
}


class TestNormalizePhone:
    """Phone normalization to 254XXXXXXXXX."""

    @pytest.mark.parametrize("raw", [
        "0712345678",
        "712345678",
        "254712345678",
        "+254712345678",
        "+254 712 345 678",
        "0712-345-678",
    ])
    def test_accepted_formats(self, raw: str) -> None:
        assert normalize_phone(raw) == "254712345678"

    def test_safaricom_01_prefix(self) -> None:
        assert normalize_phone("0110345678") == "254110345678"

    @pytest.mark.parametrize("raw", ["", "12345", "07123456789", "255712345678", "phone", "2547123456789"])
    def test_malformed_rejected(self, raw: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            normalize_phone(raw)
        assert exc_info.value.error_code == "payment:validation"


class TestRequestHelpers:

    def test_timestamp_format(self) -> None:
        assert generate_timestamp(datetime(2026, 10, 19, 9, 5, 3)) == "20261019090503"

    def test_password_is_base64_of_shortcode_passkey_timestamp(self) -> None:
        password = generate_password("174379", "passkey", "20261019090503")
        assert base64.b64decode(password).decode() == "174379passkey20261019090503"

    def test_basic_auth_header(self) -> None:
        header = basic_auth_header("key", "secret")
        assert header == "Basic " + base64.b64encode(b"key:secret").decode()

    def test_whole_shillings_floors(self) -> None:
        assert whole_shillings(Decimal("500.99")) == 500
        assert whole_shillings("1") == 1

    @pytest.mark.parametrize("amount", ["0.5", "0", "-10", "abc", float("inf"), float("nan"), "-Infinity", "sNaN"])
    def test_whole_shillings_rejects_below_one(self, amount: str) -> None:
        with pytest.raises(ValidationError):
            whole_shillings(amount)


class TestAcquireToken:
    """OAuth token acquisition."""

    @pytest.mark.asyncio
    async def test_sends_basic_auth_and_returns_token(self, mpesa, fake_daraja) -> None:
        token = await mpesa.acquire_token()

        assert token == ACCESS_TOKEN
        request = fake_daraja.requests[0]
        assert request.url.path == TOKEN_PATH
        assert request.url.params["grant_type"] == "client_credentials"
        assert request.url.host == "sandbox.safaricom.co.ke"
        expected = "Basic " + base64.b64encode(b"test-key:test-secret").decode()
        assert request.headers["Authorization"] == expected

    @pytest.mark.asyncio
    async def test_token_is_never_logged(self, mpesa, caplog) -> None:
        caplog.set_level(logging.DEBUG)
        await mpesa.acquire_token()
        assert ACCESS_TOKEN not in caplog.text
        assert "test-secret" not in caplog.text

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, mpesa, fake_daraja) -> None:
        fake_daraja.token_response = (400, {"errorCode": "400.008.01", "errorMessage": "Invalid Authentication"})
        with pytest.raises(AuthError) as exc_info:
            await mpesa.acquire_token()
        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_missing_access_token(self, mpesa, fake_daraja) -> None:
        fake_daraja.token_response = (200, {"expires_in": "3599"})
        with pytest.raises(AuthError):
            await mpesa.acquire_token()

    @pytest.mark.parametrize("body", [["not", "an", "object"], "token", 42, None])
    @pytest.mark.asyncio
    async def test_token_body_that_is_not_an_object(self, mpesa, fake_daraja, body) -> None:
        fake_daraja.token_response = (200, body)
        with pytest.raises(AuthError, match="Malformed"):
            await mpesa.acquire_token()

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, mpesa, fake_daraja) -> None:
        fake_daraja.token_failures = 2
        token = await mpesa.acquire_token()

        assert token == ACCESS_TOKEN
        assert fake_daraja.paths().count(TOKEN_PATH) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_retry_budget(self, mpesa, fake_daraja, settings) -> None:
        fake_daraja.token_failures = 10
        with pytest.raises(AuthError, match="unreachable"):
            await mpesa.acquire_token()
        assert len(fake_daraja.requests) == settings.mpesa_token_retry_attempts

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_without_network(self, http_client, settings, fake_daraja) -> None:
        unconfigured = settings.model_copy(update={"mpesa_consumer_key": ""})
        client = MpesaClient(http_client, unconfigured, retry_wait=wait_none())
        with pytest.raises(AuthError):
            await client.acquire_token()
        assert fake_daraja.requests == []


class TestInitiatePush:
    """STK push requests."""

    @pytest.mark.asyncio
    async def test_request_body_uses_provider_field_names(self, mpesa, fake_daraja) -> None:
        response = await mpesa.initiate_push(
            amount=Decimal("500"),
            phone="0712345678",
            subject_id="T1",
            callback_url="https://arena.test/api/mpesa/callback",
            token="tok",
        )

        assert isinstance(response, StkPushResponse)
        assert response.correlation_id == "ws_CO_1"
        assert response.merchant_request_id == "29115-3462056-1"

        body = fake_daraja.stk_bodies[0]
        assert set(body) == STK_FIELDS
        assert body["TransactionType"] == "CustomerPayBillOnline"
        assert body["Amount"] == 500
        assert body["PartyA"] == body["PhoneNumber"] == "254712345678"
        assert body["PartyB"] == body["BusinessShortCode"] == "174379"
        assert body["CallBackURL"] == "https://arena.test/api/mpesa/callback"
        assert fake_daraja.requests[0].headers["Authorization"] == "Bearer tok"

    @pytest.mark.asyncio
    async def test_password_and_truncated_fields(self, mpesa, fake_daraja) -> None:
        await mpesa.initiate_push(
            amount="250.75",
            phone="254712345678",
            subject_id="tournament-2026-freshers",
            callback_url="https://arena.test/cb",
            token="tok",
        )

        body = fake_daraja.stk_bodies[0]
        decoded = base64.b64decode(body["Password"]).decode()
        assert decoded == f"174379test-passkey{body['Timestamp']}"
        assert len(body["Timestamp"]) == 14
        assert body["AccountReference"] == "tournament-2"
        assert len(body["AccountReference"]) == 12
        assert len(body["TransactionDesc"]) <= 13
        assert body["Amount"] == 250

    @pytest.mark.asyncio
    async def test_bad_phone_rejected_before_network(self, mpesa, fake_daraja) -> None:
        with pytest.raises(ValidationError):
            await mpesa.initiate_push(500, "12345", "T1", "https://arena.test/cb", "tok")
        assert fake_daraja.requests == []

    @pytest.mark.asyncio
    async def test_provider_error_body(self, mpesa, fake_daraja) -> None:
        fake_daraja.stk_error = (400, {
            "requestId": "11728-2929992-1",
            "errorCode": "400.002.02",
            "errorMessage": "Bad Request - Invalid PhoneNumber",
        })

        with pytest.raises(GatewayError) as exc_info:
            await mpesa.initiate_push(500, "0712345678", "T1", "https://arena.test/cb", "tok")

        error = exc_info.value
        assert error.code == "400.002.02"
        assert error.description == "Bad Request - Invalid PhoneNumber"
        assert error.to_dict()["details"]["code"] == "400.002.02"

    @pytest.mark.asyncio
    async def test_non_zero_response_code(self, mpesa, fake_daraja) -> None:
        fake_daraja.stk_error = (200, {"ResponseCode": "1", "ResponseDescription": "Rejected"})

        with pytest.raises(GatewayError) as exc_info:
            await mpesa.initiate_push(500, "0712345678", "T1", "https://arena.test/cb", "tok")
        assert exc_info.value.code == "1"

    @pytest.mark.asyncio
    async def test_missing_checkout_request_id(self, mpesa, fake_daraja) -> None:
        fake_daraja.stk_error = (200, {"ResponseCode": "0", "ResponseDescription": "Success"})

        with pytest.raises(GatewayError, match="CheckoutRequestID"):
            await mpesa.initiate_push(500, "0712345678", "T1", "https://arena.test/cb", "tok")


class TestInitiateB2C:

    @pytest.mark.asyncio
    async def test_request_body(self, mpesa, fake_daraja) -> None:
        response = await mpesa.initiate_b2c(
            token="tok",
            amount=6000,
            phone="0712345678",
            remarks="PES ARENA Tournament 1st Prize",
            occasion="Tournament Winner",
            result_url="https://arena.test/api/mpesa/payout-callback",
            timeout_url="https://arena.test/api/mpesa/payout-callback",
        )

        assert response.conversation_id == "AG_1"
        body = fake_daraja.b2c_bodies[0]
        assert body["CommandID"] == "BusinessPayment"
        assert body["InitiatorName"] == "testapi"
        assert body["PartyA"] == "174379"
        assert body["PartyB"] == "254712345678"
        assert body["Amount"] == 6000
        assert body["ResultURL"] == body["QueueTimeOutURL"]

    @pytest.mark.asyncio
    async def test_rejection(self, mpesa, fake_daraja) -> None:
        fake_daraja.b2c_failures = {1}
        with pytest.raises(GatewayError) as exc_info:
            await mpesa.initiate_b2c("tok", 100, "0712345678", "r", "o", "https://a/b", "https://a/b")
        assert exc_info.value.code == "400.002.02"


class TestEnvironmentSelection:

    @pytest.mark.asyncio
    async def test_production_base_url(self, settings) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.host)
            return httpx.Response(200, json={"access_token": "t"})

        production = settings.model_copy(update={"mpesa_environment": "production"})
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await MpesaClient(client, production).acquire_token()

        assert seen == ["api.safaricom.co.ke"]
