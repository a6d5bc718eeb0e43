"""Configurable fake gateway for development and testing.

No external calls. Session creation can be told to fail, status polls
answer from ``statuses``, and webhooks are accepted when the
``X-Gateway-Signature`` header equals ``test-signature``.
"""

from typing import Dict, List
from uuid import uuid4

from commerce.gateways.base import (
    PaymentGateway, PaymentSession, PaymentSessionRequest, WebhookEvent,
    GatewayError, AuthenticityError, MalformedPayload, get_header, parse_json,
)
from commerce.models import PaymentStatus

SIGNATURE_HEADER = "X-Gateway-Signature"
VALID_SIGNATURE = "test-signature"


class FakeGateway(PaymentGateway):
    name = "fake"

    def __init__(self):
        self.should_succeed: bool = True
        self.failure_reason: str = "Gateway unavailable"
        self.statuses: Dict[str, PaymentStatus] = {}
        self.calls: List[dict] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Gateway unavailable"):
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    async def create_payment_session(self, request: PaymentSessionRequest) -> PaymentSession:
        self.calls.append({"method": "create_payment_session", **request.model_dump()})
        if not self.should_succeed:
            raise GatewayError(self.failure_reason)
        order_ref = f"fake_order_{uuid4().hex[:12]}"
        self.statuses.setdefault(order_ref, PaymentStatus.PENDING)
        return PaymentSession(
            provider_transaction_id=order_ref,
            redirect_url=f"https://fake.gateway/pay/{order_ref}",
            status=PaymentStatus.INITIATED,
        )

    async def verify_status(self, provider_transaction_id: str) -> PaymentStatus:
        self.calls.append({"method": "verify_status", "provider_transaction_id": provider_transaction_id})
        if not self.should_succeed:
            raise GatewayError(self.failure_reason)
        return self.statuses.get(provider_transaction_id, PaymentStatus.PENDING)

    def parse_webhook(self, raw_body, headers) -> WebhookEvent:
        if get_header(headers, SIGNATURE_HEADER) != VALID_SIGNATURE:
            raise AuthenticityError("Invalid fake gateway signature")
        body = parse_json(raw_body)
        try:
            status = PaymentStatus(body["status"]) if body.get("status") else None
        except ValueError:
            raise MalformedPayload(f"Unknown payment status {body['status']!r}")
        return WebhookEvent(
            status=status,
            transaction_id=body.get("transactionId"),
            order_ref=body.get("orderRef"),
            provider_payment_id=body.get("paymentId"),
            amount=body.get("amount"),
            event_type=body.get("event"),
            failure_reason=body.get("failureReason"),
        )
