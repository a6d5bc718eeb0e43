import asyncio
import hashlib
import hmac
import json
from typing import List, Optional

import pytest

from commerce.collaborators import NotificationService, InvoiceService
from commerce.core import CommerceCore, build_memory_core
from commerce.gateways.fake import FakeGateway
from commerce.gateways.registry import GatewayRegistry
from commerce.gateways.stubs import HostedStubGateway, CashOnDeliveryGateway
from commerce.models import AddressDB, VariantDB, VariantKey
from shared.security_config import limiter
from shared.utils import AuthenticatedUser, create_access_token

STRIPE_SECRET = "whsec_test"

TEE_M = VariantKey("tee-1", "Black", "M")
TEE_L = VariantKey("tee-1", "Black", "L")
HOODIE_M = VariantKey("hoodie-1", "Grey", "M")

ADDRESS = AddressDB(street="12 MG Road", city="Bengaluru", state="Karnataka", pincode="560001")


def run(coro):
    return asyncio.run(coro)


def line(key: VariantKey, quantity: int) -> dict:
    return {"product_id": key.product_id, "color": key.color, "size": key.size, "quantity": quantity}


def stripe_signature(body: bytes, secret: str = STRIPE_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def fake_webhook(status: str, transaction_id: str, amount: Optional[float] = None) -> bytes:
    body = {"status": status, "transactionId": transaction_id, "paymentId": "pay_fake_1"}
    if amount is not None:
        body["amount"] = amount
    return json.dumps(body).encode()


class RecordingNotifier(NotificationService):
    def __init__(self, fail: bool = False):
        self.emails: List[tuple] = []
        self.pushes: List[tuple] = []
        self.fail = fail

    async def send_email(self, user_id, subject, body):
        if self.fail:
            raise RuntimeError("mail server down")
        self.emails.append((user_id, subject, body))

    async def send_push(self, user_id, title, body):
        if self.fail:
            raise RuntimeError("push service down")
        self.pushes.append((user_id, title, body))


class RecordingInvoicer(InvoiceService):
    def __init__(self):
        self.orders: List[str] = []

    async def generate_invoice(self, order):
        self.orders.append(order["_id"])
        return f"https://invoices.test/{order['_id']}.pdf"


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def invoicer() -> RecordingInvoicer:
    return RecordingInvoicer()


@pytest.fixture
def core(fake_gateway, notifier, invoicer) -> CommerceCore:
    gateways = GatewayRegistry([
        fake_gateway,
        HostedStubGateway("stripe", webhook_secret=STRIPE_SECRET),
        CashOnDeliveryGateway(),
    ])
    core = build_memory_core(gateways=gateways, notifier=notifier, invoicer=invoicer)
    run(core.ledger.upsert_variant(VariantDB(
        product_id=TEE_M.product_id, color=TEE_M.color, size=TEE_M.size, price=499.5, stock=5,
        product_name="Block Tee", designer_ref="designer-7",
    )))
    run(core.ledger.upsert_variant(VariantDB(
        product_id=TEE_L.product_id, color=TEE_L.color, size=TEE_L.size, price=499.5, stock=3,
        product_name="Block Tee", designer_ref="designer-7",
    )))
    run(core.ledger.upsert_variant(VariantDB(
        product_id=HOODIE_M.product_id, color=HOODIE_M.color, size=HOODIE_M.size, price=1200, stock=10,
        product_name="Hoodie",
    )))
    return core


@pytest.fixture
def user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-1", role="user")


@pytest.fixture
def other_user() -> AuthenticatedUser:
    return AuthenticatedUser(id="user-2", role="user")


def stock_of(core: CommerceCore, key: VariantKey) -> int:
    return run(core.ledger.get_variant(key))["stock"]


def ready_cart(core: CommerceCore, user_id: str = "user-1", items=((TEE_M, 2),)) -> dict:
    """A cart with items and a complete shipping address."""
    for key, quantity in items:
        run(core.carts.add_item(user_id, line(key, quantity)))
    return run(core.carts.set_address(user_id, ADDRESS))


# --- HTTP ---

def bearer(user_id: str, role: str = "user") -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': user_id, 'role': role})}"}


@pytest.fixture
def client(core):
    from fastapi.testclient import TestClient
    from commerce.main import app

    previous = limiter.enabled
    limiter.enabled = False
    app.state.core = core
    # Not used as a context manager: startup would start the background jobs
    yield TestClient(app)
    app.state.core = None
    limiter.enabled = previous
