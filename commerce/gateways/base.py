"""Payment gateway port.

Every provider adapter normalizes its wire format to the same three
operations and the same ``PaymentStatus`` values, so the reconciliation
engine never looks at provider payloads.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Mapping
import json
import httpx
from pydantic import BaseModel

from commerce.models import PaymentStatus
from shared.utils import settings


class GatewayError(Exception):
    """The provider call failed or returned an unusable answer."""


class AuthenticityError(Exception):
    """Webhook signature verification failed."""


class MalformedPayload(Exception):
    """Webhook body could not be decoded."""


class PaymentSessionRequest(BaseModel):
    amount: float
    currency: str = "INR"
    transaction_id: str
    payment_reference_id: str
    user_id: str
    cart_id: str
    customer_phone: str = ""
    customer_email: str = ""


class PaymentSession(BaseModel):
    provider_transaction_id: str
    redirect_url: Optional[str] = None
    expire_at: Optional[datetime] = None
    status: PaymentStatus = PaymentStatus.INITIATED
    client_payload: dict = {}


class WebhookEvent(BaseModel):
    # None: authentic event that carries no payment status change
    status: Optional[PaymentStatus] = None
    transaction_id: Optional[str] = None
    order_ref: Optional[str] = None
    provider_payment_id: Optional[str] = None
    amount: Optional[float] = None
    event_type: Optional[str] = None
    failure_reason: Optional[str] = None


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


def parse_json(raw_body: bytes) -> dict:
    try:
        body = json.loads(raw_body or b"{}")
    except ValueError:
        raise MalformedPayload("Webhook body is not valid JSON")
    if not isinstance(body, dict):
        raise MalformedPayload("Webhook body must be a JSON object")
    return body


def to_paise(amount: float) -> int:
    return int(round(amount * 100))


class PaymentGateway(ABC):
    name: str = ""
    # Settled outside any provider (cash on delivery)
    settles_offline: bool = False
    # Callbacks are unsigned; terminal statuses are confirmed with verify_status
    confirms_by_polling: bool = False

    @abstractmethod
    async def create_payment_session(self, request: PaymentSessionRequest) -> PaymentSession:
        ...

    @abstractmethod
    async def verify_status(self, provider_transaction_id: str) -> PaymentStatus:
        ...

    @abstractmethod
    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent:
        ...


class HttpGateway(PaymentGateway):
    """Base for adapters that talk to a provider over HTTP."""

    def __init__(self, base_url: str, timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self.transport, **kwargs
        )

    async def request(self, method: str, path: str, **kwargs) -> dict:
        async with self.client() as client:
            try:
                response = await client.request(method, path, **kwargs)
            except httpx.RequestError as e:
                raise GatewayError(f"{self.name} unreachable: {e}")
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            raise GatewayError(f"{self.name} returned {response.status_code}: {response.text[:200]}")
        if not isinstance(data, dict):
            raise GatewayError(f"{self.name} returned an unexpected body")
        return data
