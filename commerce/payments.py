"""Payment initiation and reconciliation.

A payment record moves Initiated -> Pending -> Completed | Failed. Every
status change is a conditional write keyed on the current status, and an
order is only created by the caller whose write moved the record out of an
open state. Orders are unique per transaction id, so a retry after a crash
cannot create a second one.
"""

import logging
import secrets
import string
import time
from datetime import timedelta
from typing import Optional, List, Mapping

from commerce.cart import CartService, address_is_complete
from commerce.gateways.base import (
    PaymentSessionRequest, GatewayError, AuthenticityError, MalformedPayload,
)
from commerce.gateways.registry import GatewayRegistry
from commerce.models import PaymentDB, PaymentStatus, OPEN_PAYMENT_STATUSES, round2, to_document
from commerce.orders import OrderService
from commerce.repository import PaymentRepository, DuplicateRecord
from shared.utils import (
    settings, utcnow, AuthenticatedUser, ValidationException, NotFoundException,
    ForbiddenException, ConflictException, ExternalGatewayException,
)

logger = logging.getLogger("commerce-service")

MAX_ORDER_ATTEMPTS = 10
# Give up polling a provider this long after the session expired
STALE_AFTER = timedelta(hours=24)

BASE36 = string.ascii_lowercase + string.digits


class Outcome:
    COMPLETED = "completed"
    FAILED = "failed"
    PENDING = "pending"
    DUPLICATE = "duplicate"
    ORDER_PENDING = "order_pending"
    UNKNOWN_PAYMENT = "unknown_payment"
    UNKNOWN_GATEWAY = "unknown_gateway"
    REJECTED = "rejected"
    MALFORMED = "malformed"
    IGNORED = "ignored"


MESSAGES = {
    Outcome.COMPLETED: "Payment completed and order created",
    Outcome.FAILED: "Payment marked as failed",
    Outcome.PENDING: "Payment pending",
    Outcome.DUPLICATE: "Payment already processed",
    Outcome.ORDER_PENDING: "Payment completed, order creation will be retried",
    Outcome.UNKNOWN_PAYMENT: "Payment not found",
    Outcome.UNKNOWN_GATEWAY: "Unknown payment gateway",
    Outcome.REJECTED: "Webhook rejected",
    Outcome.MALFORMED: "Webhook payload could not be parsed",
    Outcome.IGNORED: "Event ignored",
}


def new_transaction_id() -> str:
    return secrets.token_hex(16)


def new_payment_reference() -> str:
    suffix = "".join(secrets.choice(BASE36) for _ in range(9))
    return f"PAY_{int(time.time() * 1000)}_{suffix}"


def purchased_cart(payment: dict) -> dict:
    """The cart as it was when the payment was initiated."""
    return {
        "_id": payment["cart_id"],
        "user_id": payment["user_id"],
        "items": payment.get("items") or [],
        "subtotal": payment.get("subtotal", 0),
        "discount_amount": payment.get("discount_amount", 0),
        "shipping_cost": payment.get("shipping_cost", 0),
        "tax_amount": payment.get("tax_amount", 0),
        "coupon_code": payment.get("coupon_code"),
        "total_amount": payment["amount"],
        "shipping_address": payment.get("shipping_address"),
    }


def ack(outcome: str, payment: Optional[dict] = None, order_id: Optional[str] = None) -> dict:
    return {
        "success": True,
        "outcome": outcome,
        "message": MESSAGES[outcome],
        "payment_reference_id": payment["_id"] if payment else None,
        "order_id": order_id or (payment.get("order_id") if payment else None),
    }


class PaymentReconciliationEngine:
    def __init__(self, payments: PaymentRepository, gateways: GatewayRegistry,
                 cart_service: CartService, order_service: OrderService,
                 session_ttl_minutes: int = settings.PAYMENT_SESSION_TTL_MINUTES,
                 currency: str = settings.CURRENCY):
        self.payments = payments
        self.gateways = gateways
        self.cart_service = cart_service
        self.order_service = order_service
        self.session_ttl = timedelta(minutes=session_ttl_minutes)
        self.currency = currency

    # --- Initiation ---

    async def initiate(self, user: AuthenticatedUser, cart_id: str, payment_method: str, amount: float,
                       customer_phone: str = "", customer_email: str = "") -> dict:
        gateway = self.gateways.get(payment_method)
        if gateway is None:
            raise ValidationException(
                f"Unsupported payment method. Supported methods: {', '.join(self.gateways.names())}"
            )

        cart = await self.cart_service.get_by_id(cart_id)
        if cart["user_id"] != user.id:
            raise ForbiddenException("Not authorized to pay for this cart")
        if not cart.get("items"):
            raise ValidationException("Cart is empty")
        if not address_is_complete(cart.get("shipping_address")):
            raise ValidationException("Shipping address must include street, city, state, and pincode")
        if round2(amount) != round2(cart["total_amount"]):
            raise ValidationException(
                f"Amount {round2(amount)} does not match cart total {round2(cart['total_amount'])}"
            )

        transaction_id = new_transaction_id()
        reference_id = new_payment_reference()
        request = PaymentSessionRequest(
            amount=cart["total_amount"],
            currency=self.currency,
            transaction_id=transaction_id,
            payment_reference_id=reference_id,
            user_id=user.id,
            cart_id=cart_id,
            customer_phone=customer_phone or (cart.get("shipping_address") or {}).get("phone_number", ""),
            customer_email=customer_email,
        )
        try:
            session = await gateway.create_payment_session(request)
        except GatewayError as e:
            logger.error(
                f"Payment initiation failed: {e}",
                extra={"gateway": gateway.name, "cart_id": cart_id, "user_id": user.id},
            )
            raise ExternalGatewayException(f"Payment initiation failed: {e}")

        now = utcnow()
        payment = PaymentDB(
            _id=reference_id,
            transaction_id=transaction_id,
            order_ref=session.provider_transaction_id,
            user_id=user.id,
            cart_id=cart_id,
            amount=cart["total_amount"],
            currency=self.currency,
            gateway=gateway.name,
            status=session.status,
            items=cart["items"],
            subtotal=cart["subtotal"],
            discount_amount=cart.get("discount_amount", 0),
            shipping_cost=cart.get("shipping_cost", 0),
            tax_amount=cart.get("tax_amount", 0),
            coupon_code=cart.get("coupon_code"),
            shipping_address=cart.get("shipping_address"),
            redirect_url=session.redirect_url,
            client_payload=session.client_payload,
            expire_at=None if gateway.settles_offline else (session.expire_at or now + self.session_ttl),
            created_at=now,
            updated_at=now,
        )
        try:
            doc = await self.payments.insert(to_document(payment))
        except DuplicateRecord:
            raise ConflictException("Duplicate transaction generated, please try again")

        logger.info(
            "Payment initiated",
            extra={"payment_reference_id": reference_id, "transaction_id": transaction_id,
                   "gateway": gateway.name, "cart_id": cart_id, "user_id": user.id},
        )

        if gateway.settles_offline:
            order = await self._fulfil(doc, payment_status=PaymentStatus.PENDING)
            if order is None:
                await self.payments.transition(reference_id, OPEN_PAYMENT_STATUSES, {
                    "status": PaymentStatus.FAILED.value,
                    "failure_reason": "Order creation failed",
                    "failed_at": utcnow(),
                    "updated_at": utcnow(),
                })
                raise ConflictException("Order could not be created for cash on delivery")
            doc = await self.payments.get(reference_id)
        return doc

    # --- Reads ---

    async def get_payment(self, reference_id: str, user: Optional[AuthenticatedUser] = None) -> dict:
        payment = await self.payments.get(reference_id)
        if not payment:
            raise NotFoundException("Payment not found")
        if user and not user.is_admin and payment["user_id"] != user.id:
            raise ForbiddenException("Not authorized to view this payment")
        return payment

    async def list_for_user(self, user_id: str) -> List[dict]:
        return await self.payments.list_by_user(user_id)

    async def has_open_payment(self, cart_id: str) -> bool:
        return await self.payments.has_open_payment(cart_id)

    # --- Webhooks ---

    async def handle_webhook(self, gateway_name: str, raw_body: bytes, headers: Mapping[str, str]) -> dict:
        """Process one provider callback. Never raises for provider input:
        the caller always acknowledges with the returned body."""
        gateway = self.gateways.get(gateway_name)
        if gateway is None:
            logger.warning(f"Webhook for unknown gateway {gateway_name}", extra={"gateway": gateway_name})
            return ack(Outcome.UNKNOWN_GATEWAY)

        try:
            event = gateway.parse_webhook(raw_body, headers)
        except AuthenticityError as e:
            logger.warning(str(e), extra={"gateway": gateway.name, "event": "webhook_signature_rejected"})
            return ack(Outcome.REJECTED)
        except MalformedPayload as e:
            logger.warning(f"Malformed webhook: {e}", extra={"gateway": gateway.name, "event": "webhook_malformed"})
            return ack(Outcome.MALFORMED)

        if event.status is None:
            logger.info(f"Webhook event {event.event_type} ignored", extra={"gateway": gateway.name})
            return ack(Outcome.IGNORED)

        payment = None
        if event.transaction_id:
            payment = await self.payments.find_by_transaction_id(event.transaction_id)
        if payment is None and event.order_ref:
            payment = await self.payments.find_by_order_ref(event.order_ref)
        if payment is None:
            logger.warning(
                "Webhook for unknown payment",
                extra={"gateway": gateway.name, "transaction_id": event.transaction_id,
                       "event": "webhook_unknown_payment"},
            )
            return ack(Outcome.UNKNOWN_PAYMENT)

        if payment["gateway"] != gateway.name:
            logger.warning(
                f"Webhook from {gateway.name} for a {payment['gateway']} payment",
                extra={"gateway": gateway.name, "payment_reference_id": payment["_id"],
                       "event": "webhook_gateway_mismatch"},
            )
            return ack(Outcome.IGNORED, payment)

        if (event.status == PaymentStatus.COMPLETED and event.amount is not None
                and round2(event.amount) != round2(payment["amount"])):
            logger.warning(
                f"Webhook amount {event.amount} does not match payment amount {payment['amount']}",
                extra={"gateway": gateway.name, "payment_reference_id": payment["_id"],
                       "event": "webhook_amount_mismatch"},
            )
            return ack(Outcome.REJECTED, payment)

        status = event.status
        if status.is_terminal and gateway.confirms_by_polling:
            try:
                status = await gateway.verify_status(payment["order_ref"])
            except GatewayError as e:
                logger.warning(
                    f"Could not confirm {event.status.value} callback: {e}",
                    extra={"gateway": gateway.name, "payment_reference_id": payment["_id"],
                           "event": "webhook_unconfirmed"},
                )
                return ack(Outcome.PENDING, payment)
            if status != event.status:
                logger.warning(
                    f"Callback reported {event.status.value}, provider reports {status.value}",
                    extra={"gateway": gateway.name, "payment_reference_id": payment["_id"],
                           "event": "webhook_status_mismatch"},
                )

        return await self.apply_status(
            payment, status,
            provider_payment_id=event.provider_payment_id,
            failure_reason=event.failure_reason,
        )

    async def apply_status(self, payment: dict, new_status: PaymentStatus,
                           provider_payment_id: Optional[str] = None,
                           failure_reason: Optional[str] = None) -> dict:
        reference_id = payment["_id"]
        now = utcnow()
        log_extra = {"payment_reference_id": reference_id, "transaction_id": payment["transaction_id"],
                     "gateway": payment["gateway"]}

        if new_status == PaymentStatus.INITIATED:
            return ack(Outcome.IGNORED, payment)

        if new_status == PaymentStatus.PENDING:
            before = await self.payments.transition(
                reference_id, [PaymentStatus.INITIATED.value],
                {"status": PaymentStatus.PENDING.value, "updated_at": now},
            )
            if before is None:
                current = await self.payments.get(reference_id)
                if PaymentStatus(current["status"]).is_terminal:
                    return ack(Outcome.DUPLICATE, current)
            return ack(Outcome.PENDING, payment)

        fields = {"status": new_status.value, "updated_at": now}
        if provider_payment_id:
            fields["provider_payment_id"] = provider_payment_id
        if new_status == PaymentStatus.COMPLETED:
            fields["completed_at"] = now
        else:
            fields["failed_at"] = now
            fields["failure_reason"] = failure_reason or "Payment failed"

        before = await self.payments.transition(reference_id, OPEN_PAYMENT_STATUSES, fields)
        if before is None:
            current = await self.payments.get(reference_id)
            logger.info(f"Duplicate {new_status.value} callback ignored", extra=log_extra)
            if (new_status == PaymentStatus.COMPLETED
                    and current["status"] == PaymentStatus.COMPLETED.value
                    and not current.get("order_id")):
                order = await self._fulfil(current)
                return ack(Outcome.DUPLICATE if order else Outcome.ORDER_PENDING, current,
                           order["_id"] if order else None)
            return ack(Outcome.DUPLICATE, current)

        if new_status == PaymentStatus.FAILED:
            # Reserved stock stays with the cart so the user can retry
            logger.info("Payment failed", extra=log_extra)
            return ack(Outcome.FAILED, payment)

        logger.info("Payment completed", extra=log_extra)
        current = dict(before, **fields)
        order = await self._fulfil(current)
        if order is None:
            return ack(Outcome.ORDER_PENDING, current)
        return ack(Outcome.COMPLETED, current, order["_id"])

    async def _fulfil(self, payment: dict,
                      payment_status: PaymentStatus = PaymentStatus.COMPLETED) -> Optional[dict]:
        """Create the order for a settled payment and take the paid lines
        out of the cart, recording any failure on the payment so the sweep
        can retry it.

        The order is built from the lines captured at initiation, not from
        the cart as it is now. ``order_id`` is recorded only once both steps
        succeeded; each step is idempotent by transaction id.
        """
        reference_id = payment["_id"]
        if payment.get("order_id"):
            return await self.order_service.get(payment["order_id"])
        purchased = purchased_cart(payment)
        try:
            order, _ = await self.order_service.create_from_cart(
                purchased, payment["gateway"], payment_status, payment["transaction_id"], reference_id,
            )
            await self.cart_service.remove_purchased(
                payment["cart_id"], purchased["items"], payment["transaction_id"],
            )
        except Exception as e:
            logger.error(
                f"Order creation failed: {e}",
                extra={"payment_reference_id": reference_id, "transaction_id": payment["transaction_id"],
                       "cart_id": payment["cart_id"]},
                exc_info=True,
            )
            await self.payments.update(
                reference_id,
                {"order_error": getattr(e, "detail", None) or str(e), "updated_at": utcnow()},
                inc={"order_attempts": 1},
            )
            return None

        await self.payments.update(
            reference_id,
            {"order_id": order["_id"], "order_error": None, "updated_at": utcnow()},
            inc={"order_attempts": 1},
        )
        return order

    # --- Client polling ---

    async def verify(self, reference_id: str, user: Optional[AuthenticatedUser] = None) -> dict:
        payment = await self.get_payment(reference_id, user)
        gateway = self.gateways.get(payment["gateway"])
        if payment["status"] in OPEN_PAYMENT_STATUSES and gateway and not gateway.settles_offline:
            try:
                status = await gateway.verify_status(payment["order_ref"])
            except GatewayError as e:
                raise ExternalGatewayException(f"Payment verification failed: {e}")
            await self.apply_status(payment, status)
        elif payment["status"] == PaymentStatus.COMPLETED.value and not payment.get("order_id"):
            await self._fulfil(payment)
        return await self.payments.get(reference_id)

    # --- Sweep ---

    async def reconcile(self) -> dict:
        """Settle expired sessions and retry orders for paid carts."""
        now = utcnow()
        summary = {"expired": 0, "settled": 0, "orders_retried": 0}

        for payment in await self.payments.list_open_expired(now):
            gateway = self.gateways.get(payment["gateway"])
            status = None
            if gateway and not gateway.settles_offline:
                try:
                    status = await gateway.verify_status(payment["order_ref"])
                except GatewayError as e:
                    logger.warning(
                        f"Status poll failed: {e}",
                        extra={"payment_reference_id": payment["_id"], "gateway": payment["gateway"]},
                    )
                    if now - payment["expire_at"] < STALE_AFTER:
                        continue
            if status is not None and status.is_terminal:
                await self.apply_status(payment, status)
                summary["settled"] += 1
            else:
                result = await self.apply_status(payment, PaymentStatus.FAILED,
                                                 failure_reason="Payment session expired")
                if result["outcome"] == Outcome.FAILED:
                    summary["expired"] += 1

        for payment in await self.payments.list_completed_without_order():
            if payment.get("order_attempts", 0) >= MAX_ORDER_ATTEMPTS:
                continue
            if await self._fulfil(payment):
                summary["orders_retried"] += 1

        if any(summary.values()):
            logger.info(f"Payment sweep: {summary}", extra={"event": "payment_sweep"})
        return summary
