"""
Pytest configuration and fixtures.

The M-Pesa API is replaced by FakeDaraja behind httpx.MockTransport; each
test gets a fresh SQLite database file.
"""
import json
from typing import Any, AsyncGenerator, Dict, List, Optional, Set, Tuple

import httpx
import pytest
import pytest_asyncio
from tenacity import wait_none

from pesarena.config import Settings
from pesarena.db.init_db import create_engine, create_session_factory, create_tables
from pesarena.dependencies import Services, build_services
from pesarena.main import create_app
from pesarena.services.mpesa_client import B2C_PATH, STK_PUSH_PATH, TOKEN_PATH, MpesaClient

ACCESS_TOKEN = "fake-access-token-0001"


class FakeDaraja:
    """
    In-memory stand-in for the Daraja API.

    Records every request. STK pushes get CheckoutRequestIDs ws_CO_1,
    ws_CO_2, ...; B2C requests get ConversationIDs AG_1, AG_2, ...
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.stk_bodies: List[Dict[str, Any]] = []
        self.b2c_bodies: List[Dict[str, Any]] = []
        self.token_response: Tuple[int, Any] = (200, {"access_token": ACCESS_TOKEN, "expires_in": "3599"})
        self.token_failures = 0
        self.stk_error: Optional[Tuple[int, Dict[str, Any]]] = None
        self.b2c_failures: Set[int] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == TOKEN_PATH:
            if self.token_failures:
                self.token_failures -= 1
                raise httpx.ConnectError("connection refused", request=request)
            status, body = self.token_response
            return httpx.Response(status, json=body)

        if path == STK_PUSH_PATH:
            body = json.loads(request.content)
            self.stk_bodies.append(body)
            if self.stk_error is not None:
                status, error = self.stk_error
                return httpx.Response(status, json=error)
            n = len(self.stk_bodies)
            return httpx.Response(200, json={
                "MerchantRequestID": f"29115-3462056-{n}",
                "CheckoutRequestID": f"ws_CO_{n}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            })

        if path == B2C_PATH:
            body = json.loads(request.content)
            self.b2c_bodies.append(body)
            n = len(self.b2c_bodies)
            if n in self.b2c_failures:
                return httpx.Response(400, json={
                    "requestId": f"req-{n}",
                    "errorCode": "400.002.02",
                    "errorMessage": "Bad Request - Invalid PartyB",
                })
            return httpx.Response(200, json={
                "ConversationID": f"AG_{n}",
                "OriginatorConversationID": f"OC_{n}",
                "ResponseCode": "0",
                "ResponseDescription": "Accept the service request successfully.",
            })

        return httpx.Response(404, json={"errorMessage": "Not found"})

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def settings() -> Settings:
    """Test settings, isolated from any local .env file."""
    return Settings(
        _env_file=None,
        mpesa_consumer_key="test-key",
        mpesa_consumer_secret="test-secret",
        mpesa_passkey="test-passkey",
        mpesa_shortcode="174379",
        mpesa_environment="sandbox",
        public_base_url="https://arena.test",
        admin_secret="admin-secret",
        payout_request_delay_seconds=0,
        reconciliation_enabled=False,
        log_level="DEBUG",
    )


@pytest.fixture
def fake_daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest_asyncio.fixture
async def http_client(fake_daraja: FakeDaraja) -> AsyncGenerator[httpx.AsyncClient, Any]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_daraja)) as client:
        yield client


@pytest.fixture
def mpesa(http_client: httpx.AsyncClient, settings: Settings) -> MpesaClient:
    return MpesaClient(http_client, settings, retry_wait=wait_none())


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Fresh SQLite database per test."""
    engine = create_engine(str(tmp_path / "pesarena_test.db"))
    await create_tables(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def services(settings, session_factory, http_client, mpesa) -> Services:
    return build_services(settings, session_factory, http_client, mpesa=mpesa)


@pytest_asyncio.fixture
async def api_client(services: Services) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client for the app, wired to the test services."""
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def make_stk_callback():
    """Build an STK callback payload as M-Pesa sends it."""

    def _make(
        checkout_request_id: str,
        result_code: int = 0,
        receipt: str = "QAI12345",
        result_desc: Optional[str] = None,
        amount: int = 500,
        phone: int = 254712345678,
    ) -> Dict[str, Any]:
        callback: Dict[str, Any] = {
            "MerchantRequestID": "29115-3462056-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc or (
                "The service request is processed successfully." if result_code == 0
                else "Request cancelled by user"
            ),
        }
        if result_code == 0:
            callback["CallbackMetadata"] = {
                "Item": [
                    {"Name": "Amount", "Value": amount},
                    {"Name": "MpesaReceiptNumber", "Value": receipt},
                    {"Name": "Balance"},
                    {"Name": "TransactionDate", "Value": 20261019103041},
                    {"Name": "PhoneNumber", "Value": phone},
                ]
            }
        return {"Body": {"stkCallback": callback}}

    return _make


@pytest.fixture
def make_b2c_result():
    """Build a B2C result payload as M-Pesa sends it."""

    def _make(conversation_id: str, result_code: int = 0, receipt: str = "NLJ41HAY6Q") -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "ResultType": 0,
            "ResultCode": result_code,
            "ResultDesc": "The service request is processed successfully." if result_code == 0
            else "The balance is insufficient for the transaction.",
            "OriginatorConversationID": "OC_1",
            "ConversationID": conversation_id,
            "TransactionID": receipt,
        }
        if result_code == 0:
            result["ResultParameters"] = {
                "ResultParameter": [
                    {"Key": "TransactionAmount", "Value": 6000},
                    {"Key": "TransactionReceipt", "Value": receipt},
                    {"Key": "ReceiptNumber", "Value": receipt},
                    {"Key": "ReceiverPartyPublicName", "Value": "254712345678 - Jane Doe"},
                ]
            }
        return {"Result": result}

    return _make
