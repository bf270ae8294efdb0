"""
Pytest configuration and fixtures.

The M-PESA API is replaced by ``FakeMpesa`` behind ``httpx.MockTransport``;
the transaction store runs against a file-backed SQLite database per test.
"""
import json
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from mpesa_gateway.config import Settings
from mpesa_gateway.core.orchestrator import PaymentRequestOrchestrator
from mpesa_gateway.core.reconciler import CallbackReconciler
from mpesa_gateway.core.token_cache import TokenCache
from mpesa_gateway.database.connection import create_session_factory
from mpesa_gateway.database.models import Base
from mpesa_gateway.database.repository import TransactionStore
from mpesa_gateway.integrations.mpesa_auth import MpesaAuthClient
from mpesa_gateway.integrations.mpesa_client import MpesaClient

MPESA_BASE_URL = "https://mpesa.test"
INTERNAL_API_KEY = "test-internal-key"
MPESA_CALLBACK_IP = "196.201.214.200"


class FakeMpesa:
    """
    In-memory stand-in for the M-PESA auth and STK push endpoints.

    Tests swap ``token_response`` / ``stk_response`` to script failures and
    may set ``before_stk_response`` to run code while the push is in flight.
    """

    def __init__(self) -> None:
        self.token_requests = 0
        self.issued_tokens = 0
        self.stk_requests: List[Dict[str, Any]] = []
        self.stk_headers: List[httpx.Headers] = []
        self.token_response: Optional[Callable[[], httpx.Response]] = None
        self.stk_response: Optional[Callable[[Dict[str, Any]], httpx.Response]] = None
        self.before_stk_response: Optional[Callable[[Dict[str, Any]], Awaitable[None]]] = None

    def _default_token_response(self) -> httpx.Response:
        self.issued_tokens += 1
        return httpx.Response(
            200, json={"access_token": f"token-{self.issued_tokens}", "expires_in": "3599"}
        )

    @staticmethod
    def _default_stk_response(payload: Dict[str, Any]) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "MerchantRequestID": payload["MerchantRequestID"],
                "CheckoutRequestID": f"ws_CO_{payload['MerchantRequestID'][:8]}",
                "ResponseCode": "0",
                "ResponseDescription": "Success. Request accepted for processing",
                "CustomerMessage": "Success. Request accepted for processing",
            },
        )

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/token/generate":
            self.token_requests += 1
            if self.token_response is not None:
                return self.token_response()
            return self._default_token_response()

        if request.url.path == "/mpesa/stkpush/v3/processrequest":
            payload = json.loads(request.content)
            self.stk_requests.append(payload)
            self.stk_headers.append(request.headers)
            if self.before_stk_response is not None:
                await self.before_stk_response(payload)
            if self.stk_response is not None:
                return self.stk_response(payload)
            return self._default_stk_response(payload)

        return httpx.Response(404, json={"errorMessage": "Not found"})


def build_callback(
    merchant_request_id: str,
    result_code: Any = 0,
    result_desc: str = "The service request is processed successfully.",
    receipt: Optional[str] = "RGR7HTCRLX",
    amount: int = 100,
    phone_number: int = 251712345678,
) -> Dict[str, Any]:
    """Build an STK callback body the way M-PESA posts it."""
    callback: Dict[str, Any] = {
        "MerchantRequestID": merchant_request_id,
        "CheckoutRequestID": f"ws_CO_{merchant_request_id[:8]}",
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if str(result_code) == "0":
        items: List[Dict[str, Any]] = [
            {"Name": "Amount", "Value": amount},
            {"Name": "TransactionDate", "Value": 20251019102115},
            {"Name": "PhoneNumber", "Value": phone_number},
        ]
        if receipt is not None:
            items.insert(1, {"Name": "MpesaReceiptNumber", "Value": receipt})
        callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        mpesa_base_url=MPESA_BASE_URL,
        mpesa_consumer_key="consumer-key",
        mpesa_consumer_secret="consumer-secret",
        mpesa_shortcode="1020",
        mpesa_passkey="test-passkey",
        mpesa_stk_callback_url="https://gateway.test/mpesa/callback/stk",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}",
        internal_api_key=INTERNAL_API_KEY,
        callback_allowed_ips=MPESA_CALLBACK_IP,
        enforce_callback_ip_whitelist=True,
        app_name="mpesa-gateway-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    """Create a fresh database and session factory."""
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> TransactionStore:
    """Transaction store backed by the test database."""
    return TransactionStore(session_factory)


@pytest.fixture
def fake_mpesa() -> FakeMpesa:
    """Scriptable M-PESA API."""
    return FakeMpesa()


@pytest_asyncio.fixture
async def http_client(fake_mpesa: FakeMpesa) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client routed to the fake M-PESA API."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_mpesa.handler)) as client:
        yield client


@pytest.fixture
def token_cache(http_client: httpx.AsyncClient, test_settings: Settings) -> TokenCache:
    """Token cache fetching from the fake auth endpoint."""
    auth_client = MpesaAuthClient(http_client=http_client, settings=test_settings)
    return TokenCache(
        auth_client.fetch, safety_margin_seconds=test_settings.token_safety_margin_seconds
    )


@pytest.fixture
def orchestrator(
    token_cache: TokenCache,
    http_client: httpx.AsyncClient,
    store: TransactionStore,
    test_settings: Settings,
) -> PaymentRequestOrchestrator:
    """Orchestrator wired to the fake API and the test database."""
    return PaymentRequestOrchestrator(
        token_cache=token_cache,
        mpesa_client=MpesaClient(http_client=http_client, settings=test_settings),
        store=store,
        settings=test_settings,
    )


@pytest.fixture
def reconciler(store: TransactionStore) -> CallbackReconciler:
    """Callback reconciler over the test database."""
    return CallbackReconciler(store)


@pytest.fixture
def sample_payment_data() -> Dict[str, Any]:
    """Sample payment request data."""
    return {
        "amount": 100,
        "phone_number": "0712345678",
        "account_reference": "INV1",
        "description": "Invoice 1",
    }
