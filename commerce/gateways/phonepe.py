import base64
import hashlib
import json
import logging
from typing import Optional

import httpx

from commerce.gateways.base import (
    HttpGateway, PaymentSession, PaymentSessionRequest, WebhookEvent,
    GatewayError, MalformedPayload, parse_json, to_paise,
)
from commerce.models import PaymentStatus
from shared.utils import settings

logger = logging.getLogger("commerce-service")

PAY_PATH = "/pg/v1/pay"

STATE_TO_STATUS = {
    "COMPLETED": PaymentStatus.COMPLETED,
    "FAILED": PaymentStatus.FAILED,
    "PENDING": PaymentStatus.PENDING,
}

CODE_TO_STATUS = {
    "PAYMENT_SUCCESS": PaymentStatus.COMPLETED,
    "PAYMENT_PENDING": PaymentStatus.PENDING,
    "PAYMENT_INITIATED": PaymentStatus.PENDING,
}


class PhonePeGateway(HttpGateway):
    """PhonePe pay-page integration.

    Requests are signed with X-VERIFY = sha256(payload + path + salt) and
    the salt index. Callbacks carry an unsigned base64 encoded JSON
    document, so a terminal state they report is confirmed with a status
    poll before it is applied.
    """

    name = "phonepe"
    confirms_by_polling = True

    def __init__(self, merchant_id: str = settings.PHONEPE_MERCHANT_ID,
                 salt_key: str = settings.PHONEPE_SALT_KEY,
                 salt_index: str = settings.PHONEPE_SALT_INDEX,
                 base_url: str = settings.PHONEPE_BASE_URL,
                 redirect_url: str = settings.PHONEPE_REDIRECT_URL,
                 callback_url: str = settings.PHONEPE_CALLBACK_URL,
                 timeout: float = settings.GATEWAY_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(base_url, timeout=timeout, transport=transport)
        self.merchant_id = merchant_id
        self.salt_key = salt_key
        self.salt_index = salt_index
        self.redirect_url = redirect_url
        self.callback_url = callback_url

    def checksum(self, payload: str) -> str:
        digest = hashlib.sha256((payload + self.salt_key).encode("utf-8")).hexdigest()
        return f"{digest}###{self.salt_index}"

    async def create_payment_session(self, request: PaymentSessionRequest) -> PaymentSession:
        payload = {
            "merchantId": self.merchant_id,
            "merchantTransactionId": request.transaction_id,
            "merchantUserId": request.user_id,
            "amount": to_paise(request.amount),
            "redirectUrl": self.redirect_url,
            "redirectMode": "POST",
            "callbackUrl": self.callback_url,
            "mobileNumber": request.customer_phone,
            "paymentInstrument": {"type": "PAY_PAGE"},
        }
        encoded = base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")
        data = await self.request(
            "POST", PAY_PATH,
            json={"request": encoded},
            headers={"X-VERIFY": self.checksum(encoded + PAY_PATH)},
        )
        if not data.get("success"):
            raise GatewayError(data.get("message") or "Failed to create PhonePe payment session")

        redirect = (((data.get("data") or {}).get("instrumentResponse") or {}).get("redirectInfo") or {}).get("url")
        if not redirect:
            raise GatewayError("PhonePe response carried no redirect URL")
        return PaymentSession(
            provider_transaction_id=request.transaction_id,
            redirect_url=redirect,
            status=PaymentStatus.PENDING,
        )

    async def verify_status(self, provider_transaction_id: str) -> PaymentStatus:
        path = f"/pg/v1/status/{self.merchant_id}/{provider_transaction_id}"
        data = await self.request(
            "GET", path,
            headers={"X-VERIFY": self.checksum(path), "X-MERCHANT-ID": self.merchant_id},
        )
        status = CODE_TO_STATUS.get(data.get("code"), PaymentStatus.FAILED)
        logger.info(
            f"PhonePe status {data.get('code')}",
            extra={"gateway": self.name, "transaction_id": provider_transaction_id},
        )
        return status

    def parse_webhook(self, raw_body, headers) -> WebhookEvent:
        encoded = None
        try:
            body = parse_json(raw_body)
            encoded = body.get("response")
        except MalformedPayload:
            # Some integrations post the base64 string as the raw body
            encoded = (raw_body or b"").decode("utf-8", errors="ignore").strip()
        if not encoded:
            raise MalformedPayload("Missing payment response data")

        try:
            decoded = json.loads(base64.b64decode(encoded, validate=True).decode("utf-8"))
        except ValueError:
            raise MalformedPayload("Failed to decode base64 payment response")
        if not isinstance(decoded, dict):
            raise MalformedPayload("Decoded payment response must be a JSON object")

        data = decoded.get("data") if isinstance(decoded.get("data"), dict) else decoded
        transaction_id = data.get("merchantTransactionId")
        state = str(data.get("state") or "").upper()
        if not transaction_id or not state:
            raise MalformedPayload("merchantTransactionId and state are required")
        if state not in STATE_TO_STATUS:
            raise MalformedPayload(f"Unknown PhonePe state {state}")

        amount = data.get("amount")
        return WebhookEvent(
            status=STATE_TO_STATUS[state],
            transaction_id=transaction_id,
            order_ref=transaction_id,
            provider_payment_id=data.get("transactionId"),
            amount=amount / 100 if isinstance(amount, (int, float)) else None,
            event_type=decoded.get("code") or state,
            failure_reason=data.get("responseCode") if state == "FAILED" else None,
        )
