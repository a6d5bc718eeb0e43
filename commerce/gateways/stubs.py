"""Providers without a live integration.

Stripe and PayPal hand out a hosted payment URL and accept webhooks signed
with a shared secret. Cash on delivery has no provider at all: the order
is placed straight away and paid at the door.
"""

from commerce.gateways.base import (
    PaymentGateway, PaymentSession, PaymentSessionRequest, WebhookEvent,
    AuthenticityError, MalformedPayload, get_header, parse_json,
)
from commerce.models import PaymentStatus
from shared.security_config import signature_matches
from shared.utils import settings

SIGNATURE_HEADER = "X-Webhook-Signature"

STATUS_WORDS = {
    "succeeded": PaymentStatus.COMPLETED,
    "completed": PaymentStatus.COMPLETED,
    "captured": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "pending": PaymentStatus.PENDING,
}


class HostedStubGateway(PaymentGateway):
    def __init__(self, name: str, webhook_secret: str = settings.STUB_WEBHOOK_SECRET):
        self.name = name
        self.webhook_secret = webhook_secret

    async def create_payment_session(self, request: PaymentSessionRequest) -> PaymentSession:
        return PaymentSession(
            provider_transaction_id=f"{self.name}_{request.payment_reference_id}",
            redirect_url=f"https://{self.name}.com/payment/{request.payment_reference_id}",
            status=PaymentStatus.INITIATED,
        )

    async def verify_status(self, provider_transaction_id: str) -> PaymentStatus:
        # No status API to poll; only a webhook can settle the payment
        return PaymentStatus.PENDING

    def parse_webhook(self, raw_body, headers) -> WebhookEvent:
        if not signature_matches(self.webhook_secret, raw_body, get_header(headers, SIGNATURE_HEADER)):
            raise AuthenticityError(f"Invalid {self.name} webhook signature")
        body = parse_json(raw_body)
        word = str(body.get("status") or "").lower()
        if word not in STATUS_WORDS:
            raise MalformedPayload(f"Unknown payment status {word!r}")
        amount = body.get("amount")
        return WebhookEvent(
            status=STATUS_WORDS[word],
            transaction_id=body.get("transactionId"),
            order_ref=body.get("orderRef"),
            provider_payment_id=body.get("paymentId"),
            amount=float(amount) if isinstance(amount, (int, float)) else None,
            event_type=body.get("event") or word,
            failure_reason=body.get("failureReason"),
        )


class CashOnDeliveryGateway(PaymentGateway):
    name = "cod"
    settles_offline = True

    async def create_payment_session(self, request: PaymentSessionRequest) -> PaymentSession:
        return PaymentSession(
            provider_transaction_id=f"COD_{request.payment_reference_id}",
            redirect_url=None,
            status=PaymentStatus.PENDING,
        )

    async def verify_status(self, provider_transaction_id: str) -> PaymentStatus:
        return PaymentStatus.PENDING

    def parse_webhook(self, raw_body, headers) -> WebhookEvent:
        raise MalformedPayload("Cash on delivery does not receive webhooks")
