import base64
import hashlib
import json

import httpx
import pytest

from commerce.gateways.base import (
    AuthenticityError, GatewayError, MalformedPayload, PaymentSessionRequest, get_header,
)
from commerce.gateways.phonepe import PhonePeGateway
from commerce.gateways.razorpay import RazorpayGateway
from commerce.gateways.registry import build_gateways
from commerce.gateways.stubs import CashOnDeliveryGateway, HostedStubGateway
from commerce.models import PaymentStatus
from shared.security_config import compute_hmac_sha256

from conftest import run, stripe_signature

SALT = "salt-key"
WEBHOOK_SECRET = "rzp_webhook_secret"


def session_request(**overrides):
    data = dict(
        amount=598.5, currency="INR", transaction_id="a" * 32, payment_reference_id="PAY_1_abc",
        user_id="user-1", cart_id="cart-1", customer_phone="9999999999",
    )
    data.update(overrides)
    return PaymentSessionRequest(**data)


def phonepe(handler):
    return PhonePeGateway(
        merchant_id="MERCHANT", salt_key=SALT, salt_index="1", base_url="https://phonepe.test",
        redirect_url="https://shop.test/return", callback_url="https://shop.test/payments/webhook/phonepe",
        transport=httpx.MockTransport(handler),
    )


def razorpay(handler=None):
    return RazorpayGateway(
        key_id="rzp_key", key_secret="rzp_secret", webhook_secret=WEBHOOK_SECRET,
        base_url="https://razorpay.test", transport=httpx.MockTransport(handler or (lambda r: None)),
    )


def encode(document: dict) -> str:
    return base64.b64encode(json.dumps(document).encode()).decode()


# --- PhonePe ---

def test_phonepe_session_is_signed_and_returns_redirect():
    seen = {}

    def handler(request: httpx.Request):
        body = json.loads(request.content)
        seen["path"] = request.url.path
        seen["verify"] = request.headers["X-VERIFY"]
        seen["payload"] = json.loads(base64.b64decode(body["request"]))
        seen["encoded"] = body["request"]
        return httpx.Response(200, json={
            "success": True,
            "data": {"instrumentResponse": {"redirectInfo": {"url": "https://phonepe.test/pay/xyz"}}},
        })

    session = run(phonepe(handler).create_payment_session(session_request()))

    expected = hashlib.sha256((seen["encoded"] + "/pg/v1/pay" + SALT).encode()).hexdigest() + "###1"
    assert seen["path"] == "/pg/v1/pay"
    assert seen["verify"] == expected
    assert seen["payload"]["amount"] == 59850
    assert seen["payload"]["merchantTransactionId"] == "a" * 32
    assert session.redirect_url == "https://phonepe.test/pay/xyz"
    assert session.provider_transaction_id == "a" * 32
    assert session.status == PaymentStatus.PENDING


def test_phonepe_rejected_session_raises():
    gateway = phonepe(lambda r: httpx.Response(200, json={"success": False, "message": "Bad request"}))
    with pytest.raises(GatewayError, match="Bad request"):
        run(gateway.create_payment_session(session_request()))


def test_phonepe_unreachable_raises_gateway_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError):
        run(phonepe(handler).create_payment_session(session_request()))


def test_phonepe_http_error_raises_gateway_error():
    gateway = phonepe(lambda r: httpx.Response(500, text="upstream exploded"))
    with pytest.raises(GatewayError, match="500"):
        run(gateway.create_payment_session(session_request()))


@pytest.mark.parametrize("code,expected", [
    ("PAYMENT_SUCCESS", PaymentStatus.COMPLETED),
    ("PAYMENT_PENDING", PaymentStatus.PENDING),
    ("PAYMENT_ERROR", PaymentStatus.FAILED),
])
def test_phonepe_status_poll(code, expected):
    def handler(request):
        assert request.url.path == "/pg/v1/status/MERCHANT/tx-1"
        assert request.headers["X-MERCHANT-ID"] == "MERCHANT"
        return httpx.Response(200, json={"success": code == "PAYMENT_SUCCESS", "code": code})

    assert run(phonepe(handler).verify_status("tx-1")) == expected


def test_phonepe_webhook_decodes_base64_body():
    encoded = encode({
        "code": "PAYMENT_SUCCESS",
        "data": {"merchantTransactionId": "tx-1", "transactionId": "T2301", "amount": 59850, "state": "COMPLETED"},
    })
    gateway = phonepe(lambda r: None)
    assert gateway.confirms_by_polling

    event = gateway.parse_webhook(json.dumps({"response": encoded}).encode(), {})
    assert event.status == PaymentStatus.COMPLETED
    assert event.transaction_id == "tx-1"
    assert event.provider_payment_id == "T2301"
    assert event.amount == 598.5

    raw = gateway.parse_webhook(encoded.encode(), {})
    assert raw.transaction_id == "tx-1"


def test_phonepe_failed_webhook_carries_reason():
    encoded = encode({"data": {"merchantTransactionId": "tx-1", "state": "FAILED", "responseCode": "ZA"}})
    event = phonepe(lambda r: None).parse_webhook(json.dumps({"response": encoded}).encode(), {})
    assert event.status == PaymentStatus.FAILED
    assert event.failure_reason == "ZA"


@pytest.mark.parametrize("body", [
    b"",
    json.dumps({"response": "%%%not-base64%%%"}).encode(),
    json.dumps({"response": encode({"data": {"state": "COMPLETED"}})}).encode(),
    json.dumps({"response": encode({"data": {"merchantTransactionId": "tx", "state": "WEIRD"}})}).encode(),
])
def test_phonepe_malformed_webhooks(body):
    with pytest.raises(MalformedPayload):
        phonepe(lambda r: None).parse_webhook(body, {})


# --- Razorpay ---

def test_razorpay_order_creation():
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_123", "receipt": seen["body"]["receipt"], "status": "created"})

    session = run(razorpay(handler).create_payment_session(session_request()))

    assert seen["auth"] == "Basic " + base64.b64encode(b"rzp_key:rzp_secret").decode()
    assert seen["body"]["amount"] == 59850
    assert seen["body"]["notes"]["transactionId"] == "a" * 32
    assert len(seen["body"]["receipt"]) <= 40
    assert session.provider_transaction_id == "order_123"
    assert session.redirect_url is None
    assert session.client_payload["orderId"] == "order_123"
    assert session.client_payload["keyId"] == "rzp_key"


def test_razorpay_status_poll_checks_payments_of_attempted_orders():
    def handler(request: httpx.Request):
        if request.url.path == "/v1/orders/order_1":
            return httpx.Response(200, json={"id": "order_1", "status": "attempted"})
        return httpx.Response(200, json={"items": [{"status": "failed"}, {"status": "failed"}]})

    assert run(razorpay(handler).verify_status("order_1")) == PaymentStatus.FAILED


def test_razorpay_paid_order_is_completed():
    gateway = razorpay(lambda r: httpx.Response(200, json={"id": "order_1", "status": "paid"}))
    assert run(gateway.verify_status("order_1")) == PaymentStatus.COMPLETED


def razorpay_event(event: str) -> bytes:
    return json.dumps({
        "event": event,
        "payload": {"payment": {"entity": {
            "id": "pay_1", "order_id": "order_1", "amount": 59850,
            "notes": {"transactionId": "tx-1"}, "error_description": "Card declined",
        }}},
    }).encode()


def test_razorpay_signed_webhook_is_accepted():
    body = razorpay_event("payment.captured")
    headers = {"x-razorpay-signature": compute_hmac_sha256(WEBHOOK_SECRET, body)}

    event = razorpay().parse_webhook(body, headers)
    assert event.status == PaymentStatus.COMPLETED
    assert event.transaction_id == "tx-1"
    assert event.order_ref == "order_1"
    assert event.amount == 598.5


def test_razorpay_failed_event():
    body = razorpay_event("payment.failed")
    event = razorpay().parse_webhook(body, {"X-Razorpay-Signature": compute_hmac_sha256(WEBHOOK_SECRET, body)})
    assert event.status == PaymentStatus.FAILED
    assert event.failure_reason == "Card declined"


def test_razorpay_unrelated_event_has_no_status():
    body = razorpay_event("refund.created")
    event = razorpay().parse_webhook(body, {"X-Razorpay-Signature": compute_hmac_sha256(WEBHOOK_SECRET, body)})
    assert event.status is None


@pytest.mark.parametrize("headers", [{}, {"X-Razorpay-Signature": "deadbeef"}])
def test_razorpay_bad_signature_is_rejected(headers):
    with pytest.raises(AuthenticityError):
        razorpay().parse_webhook(razorpay_event("payment.captured"), headers)


# --- Stubs and registry ---

def test_hosted_stub_session_and_webhook():
    gateway = HostedStubGateway("stripe", webhook_secret="whsec_test")
    session = run(gateway.create_payment_session(session_request()))
    assert session.redirect_url == "https://stripe.com/payment/PAY_1_abc"
    assert session.provider_transaction_id == "stripe_PAY_1_abc"

    body = json.dumps({"status": "succeeded", "transactionId": "tx-1", "amount": 598.5}).encode()
    event = gateway.parse_webhook(body, {"X-Webhook-Signature": stripe_signature(body)})
    assert event.status == PaymentStatus.COMPLETED

    with pytest.raises(AuthenticityError):
        gateway.parse_webhook(body, {"X-Webhook-Signature": "nope"})


def test_cash_on_delivery_has_no_webhooks():
    gateway = CashOnDeliveryGateway()
    assert gateway.settles_offline
    with pytest.raises(MalformedPayload):
        gateway.parse_webhook(b"{}", {})


def test_registry_builds_configured_gateways():
    registry = build_gateways(["Stripe", "cod", "fake"])
    assert registry.names() == ["cod", "fake", "stripe"]
    assert registry.get("STRIPE").name == "stripe"
    assert registry.get("phonepe") is None
    assert registry.get(None) is None

    with pytest.raises(ValueError):
        build_gateways(["bitcoin"])


def test_header_lookup_is_case_insensitive():
    assert get_header({"X-VERIFY": "abc"}, "x-verify") == "abc"
    assert get_header({}, "x-verify") is None
