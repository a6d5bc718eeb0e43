import logging
import time
from typing import Optional

import httpx

from commerce.gateways.base import (
    HttpGateway, PaymentSession, PaymentSessionRequest, WebhookEvent,
    GatewayError, AuthenticityError, get_header, parse_json, to_paise,
)
from commerce.models import PaymentStatus
from shared.security_config import signature_matches
from shared.utils import settings

logger = logging.getLogger("commerce-service")

SIGNATURE_HEADER = "X-Razorpay-Signature"

COMPLETED_EVENTS = {"payment.captured", "order.paid", "payment_captured", "order_paid"}
FAILED_EVENTS = {"payment.failed", "payment_failed"}
PENDING_EVENTS = {"payment.authorized", "payment_authorized"}


def receipt_for(transaction_id: str) -> str:
    # Razorpay caps receipts at 40 characters
    return f"rcpt_{int(time.time() * 1000)}{transaction_id[:8]}"[:40]


class RazorpayGateway(HttpGateway):
    """Razorpay Orders API.

    There is no hosted redirect: checkout runs client side with the
    ``client_payload`` returned at session creation. Webhooks are signed
    with HMAC-SHA256 of the raw body using the webhook secret.
    """

    name = "razorpay"

    def __init__(self, key_id: str = settings.RAZORPAY_KEY_ID,
                 key_secret: str = settings.RAZORPAY_KEY_SECRET,
                 webhook_secret: str = settings.RAZORPAY_WEBHOOK_SECRET,
                 base_url: str = settings.RAZORPAY_BASE_URL,
                 timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret

    def client(self, **kwargs) -> httpx.AsyncClient:
        return super().client(auth=(self.key_id, self.key_secret), **kwargs)

    async def create_payment_session(self, request: PaymentSessionRequest) -> PaymentSession:
        amount = to_paise(request.amount)
        order = await self.request("POST", "/v1/orders", json={
            "amount": amount,
            "currency": request.currency,
            "receipt": receipt_for(request.transaction_id),
            "notes": {
                "userId": request.user_id,
                "cartId": request.cart_id,
                "transactionId": request.transaction_id,
            },
            "payment_capture": 1,
        })
        order_id = order.get("id")
        if not order_id:
            raise GatewayError("Razorpay order response carried no id")
        return PaymentSession(
            provider_transaction_id=order_id,
            redirect_url=None,
            status=PaymentStatus.INITIATED,
            client_payload={
                "keyId": self.key_id,
                "orderId": order_id,
                "amount": amount,
                "currency": request.currency,
                "receipt": order.get("receipt"),
            },
        )

    async def verify_status(self, provider_transaction_id: str) -> PaymentStatus:
        order = await self.request("GET", f"/v1/orders/{provider_transaction_id}")
        state = order.get("status")
        if state == "paid":
            return PaymentStatus.COMPLETED
        if state == "created":
            return PaymentStatus.INITIATED
        if state != "attempted":
            raise GatewayError(f"Unknown Razorpay order status {state}")

        payments = await self.request("GET", f"/v1/orders/{provider_transaction_id}/payments")
        items = payments.get("items") or []
        if any(p.get("status") == "captured" for p in items):
            return PaymentStatus.COMPLETED
        if items and all(p.get("status") == "failed" for p in items):
            return PaymentStatus.FAILED
        return PaymentStatus.PENDING

    def parse_webhook(self, raw_body, headers) -> WebhookEvent:
        signature = get_header(headers, SIGNATURE_HEADER)
        if not signature_matches(self.webhook_secret, raw_body, signature):
            raise AuthenticityError("Invalid Razorpay webhook signature")

        body = parse_json(raw_body)
        event_type = body.get("event")
        payload = body.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}
        order = (payload.get("order") or {}).get("entity") or {}
        notes = payment.get("notes") or order.get("notes") or {}
        if not isinstance(notes, dict):
            # Razorpay sends an empty list when no notes were set
            notes = {}

        if event_type in COMPLETED_EVENTS:
            status = PaymentStatus.COMPLETED
        elif event_type in FAILED_EVENTS:
            status = PaymentStatus.FAILED
        elif event_type in PENDING_EVENTS:
            status = PaymentStatus.PENDING
        else:
            status = None

        amount = payment.get("amount", order.get("amount"))
        return WebhookEvent(
            status=status,
            transaction_id=notes.get("transactionId"),
            order_ref=payment.get("order_id") or order.get("id"),
            provider_payment_id=payment.get("id"),
            amount=amount / 100 if isinstance(amount, (int, float)) else None,
            event_type=event_type,
            failure_reason=payment.get("error_description") if status == PaymentStatus.FAILED else None,
        )
