import json

import httpx
import pytest
import pytest_asyncio

from pipeline import signer
from pipeline.lifecycle import OrderLifecycleEngine
from pipeline.payment_gateway import GatewayConfig, PaymentGatewayAdapter
from schemas.order_definitions import Product
from services.catalog import CatalogService
from services.notifications import RecordingNotificationSink
from storage.order_store import InMemoryOrderStore

GATEWAY_PASSWORD = "gateway-secret"
ADMIN_SECRET = "admin-secret"
REDIRECT_URL = "https://pay.example/checkout/abc"

PRODUCTS = [
    Product(id="c30", name="30 coins", price=100),
    Product(id="c60", name="60 coins", price=180),
    Product(id="free", name="Free sticker", price=0),
    Product(id="old", name="Retired pack", price=50, active=False),
]


def signed(payload, secret=GATEWAY_PASSWORD):
    payload = dict(payload)
    payload["signature"] = signer.sign(payload, secret)
    return payload


class FakeGateway:
    """Stands in for the payment gateway behind an httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.response = httpx.Response(200, json={"url": REDIRECT_URL})
        self.fail_with = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with == "timeout":
            raise httpx.ReadTimeout("gateway too slow", request=request)
        if self.fail_with == "connect":
            raise httpx.ConnectError("connection refused", request=request)
        # one Response object per request
        return httpx.Response(
            self.response.status_code,
            headers=self.response.headers,
            content=self.response.content,
        )

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def last_payload(self):
        return json.loads(self.requests[-1].content)


@pytest_asyncio.fixture
async def catalog():
    catalog = CatalogService()
    for product in PRODUCTS:
        await catalog.upsert_product(product)
    return catalog


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def notifier():
    return RecordingNotificationSink()


@pytest.fixture
def engine(store, catalog, notifier):
    return OrderLifecycleEngine(store, catalog, notifier)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def gateway_config():
    return GatewayConfig(
        api_url="https://gate.example/api",
        shop_id=42,
        password=GATEWAY_PASSWORD,
        timeout_seconds=2.0,
        success_url="https://shop.example/success?order={order_id}",
        fail_url="https://shop.example/fail?order={order_id}",
        notify_url="https://api.example/gateway/notify",
        description="Order {order_id}",
    )


@pytest_asyncio.fixture
async def adapter(engine, gateway_config, fake_gateway):
    adapter = PaymentGatewayAdapter(engine, gateway_config, transport=fake_gateway.transport)
    yield adapter
    await adapter.close()
