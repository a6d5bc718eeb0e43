import logging
import secrets
import time
from typing import Optional, List, Tuple

from fastapi import status

from commerce.cart import address_is_complete
from commerce.collaborators import NotificationService, InvoiceService
from commerce.inventory import InventoryLedger
from commerce.models import (
    OrderDB, OrderItemDB, OrderStatus, PaymentStatus, VariantKey,
    CANCELLABLE_ORDER_STATUSES, to_document,
)
from commerce.repository import OrderRepository, PaymentRepository, DuplicateRecord
from shared.utils import (
    AppException, NotFoundException, ValidationException, ForbiddenException,
    AuthenticatedUser, utcnow,
)

logger = logging.getLogger("commerce-service")

CANCELLATION_REASONS = [
    "Changed my mind",
    "Found better price elsewhere",
    "Ordered by mistake",
    "Item no longer needed",
    "Shipping time too long",
    "Payment issues",
    "Duplicate order",
    "Wrong size/color selected",
    "Product out of stock",
    "Other",
]

ALL_ORDER_STATUSES = [s.value for s in OrderStatus]


class InvalidOrderState(AppException):
    code = "InvalidState"

    def __init__(self, detail: str):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class PaymentAlreadyCaptured(AppException):
    code = "PaymentAlreadyCaptured"

    def __init__(self, detail: str = "Order with completed payment cannot be cancelled. "
                                     "Please contact support for refund processing."):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def new_order_id() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


class OrderService:
    def __init__(self, orders: OrderRepository, ledger: InventoryLedger,
                 notifier: NotificationService, invoicer: InvoiceService,
                 payments: Optional[PaymentRepository] = None):
        self.orders = orders
        self.ledger = ledger
        self.notifier = notifier
        self.invoicer = invoicer
        self.payments = payments

    # --- Creation ---

    async def create_from_cart(self, cart: dict, payment_method: str, payment_status: PaymentStatus,
                               transaction_id: str, payment_reference_id: Optional[str] = None) -> Tuple[dict, bool]:
        """Materialize an order from a cart snapshot.

        Idempotent by ``transaction_id``: returns ``(order, created)`` where
        ``created`` is False when an order already existed for it.
        """
        existing = await self.orders.find_by_transaction_id(transaction_id)
        if existing:
            return existing, False

        address = cart.get("shipping_address")
        if not address_is_complete(address):
            raise ValidationException("Invalid or missing address details")
        if not cart.get("items"):
            raise ValidationException("Cart is empty")

        items = [
            OrderItemDB(
                product_id=i["product_id"],
                product_name=i.get("product_name"),
                designer_ref=i.get("designer_ref"),
                quantity=i["quantity"],
                size=i["size"],
                color=i["color"],
                price=i["unit_price"],
                customizations=i.get("customizations") or "",
            )
            for i in cart["items"]
        ]
        now = utcnow()
        for attempt in range(3):
            order = OrderDB(
                _id=new_order_id(),
                user_id=cart["user_id"],
                cart_id=cart["_id"],
                items=items,
                subtotal=cart["subtotal"],
                discount_amount=cart.get("discount_amount", 0),
                shipping_cost=cart.get("shipping_cost", 0),
                tax_amount=cart.get("tax_amount", 0),
                amount=cart["total_amount"],
                payment_method=payment_method,
                payment_status=payment_status,
                transaction_id=transaction_id,
                payment_reference_id=payment_reference_id,
                shipping_address=address,
                status_timestamps={OrderStatus.PLACED.timestamp_key: now},
                created_at=now,
                updated_at=now,
            )
            try:
                doc = await self.orders.insert(to_document(order))
                break
            except DuplicateRecord:
                existing = await self.orders.find_by_transaction_id(transaction_id)
                if existing:
                    return existing, False
                # Order id collision; draw a new one
        else:
            raise AppException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Could not allocate an order id")

        logger.info(
            "Order created",
            extra={"order_id": doc["_id"], "user_id": doc["user_id"],
                   "transaction_id": transaction_id, "cart_id": cart["_id"]},
        )
        doc = await self._attach_invoice(doc)
        await self._notify(
            doc, "Order Placed Successfully",
            f"Your order with ID {doc['_id']} has been placed successfully.",
        )
        return doc, True

    async def _attach_invoice(self, order: dict) -> dict:
        try:
            url = await self.invoicer.generate_invoice(order)
        except Exception:
            logger.warning("Invoice generation failed", extra={"order_id": order["_id"]}, exc_info=True)
            return order
        if url:
            await self.orders.transition(order["_id"], ALL_ORDER_STATUSES, {"invoice_url": url})
            order["invoice_url"] = url
        return order

    async def _notify(self, order: dict, title: str, message: str):
        try:
            await self.notifier.send_push(order["user_id"], title, message)
            await self.notifier.send_email(order["user_id"], f"{title} - #{order['_id']}", message)
        except Exception:
            logger.warning(
                "Order notification failed",
                extra={"order_id": order["_id"], "user_id": order["user_id"]},
                exc_info=True,
            )

    # --- Reads ---

    async def get(self, order_id: str, user: Optional[AuthenticatedUser] = None) -> dict:
        order = await self.orders.get(order_id)
        if not order:
            raise NotFoundException("Order not found")
        if user and not user.is_admin and order["user_id"] != user.id:
            raise ForbiddenException("Not authorized to access this order")
        return order

    async def list_by_user(self, user_id: str, page: int = 1, limit: int = 10) -> List[dict]:
        return await self.orders.list_by_user(user_id, skip=(page - 1) * limit, limit=limit)

    # --- Transitions ---

    async def cancel(self, order_id: str, reason: Optional[str] = None, cancelled_by: Optional[str] = None,
                     user: Optional[AuthenticatedUser] = None) -> dict:
        order = await self.get(order_id, user)
        self._check_cancellable(order)

        now = utcnow()
        fields = {
            "status": OrderStatus.CANCELLED.value,
            f"status_timestamps.{OrderStatus.CANCELLED.timestamp_key}": now,
            "notes": f"Cancelled: {reason}" if reason else "Order cancelled",
            "updated_at": now,
        }
        if reason:
            fields["cancellation_reason"] = reason
        if cancelled_by:
            fields["cancelled_by"] = cancelled_by

        before = await self.orders.transition(
            order_id, CANCELLABLE_ORDER_STATUSES, fields,
            exclude_payment_status=PaymentStatus.COMPLETED.value,
        )
        if before is None:
            # Changed between read and write; report the new state
            self._check_cancellable(await self.get(order_id))
            raise InvalidOrderState("Order changed while cancelling, please retry")

        for item in before["items"]:
            key = VariantKey(item["product_id"], item["color"], item["size"])
            try:
                await self.ledger.release(key, item["quantity"], reason="order_cancel", ref=order_id)
            except Exception:
                logger.error(
                    "Error restoring stock for cancelled order",
                    extra={"order_id": order_id, "product_id": key.product_id, "color": key.color,
                           "size": key.size, "quantity": item["quantity"]},
                    exc_info=True,
                )

        logger.info("Order cancelled", extra={"order_id": order_id, "user_id": before["user_id"]})
        cancelled = await self.get(order_id)
        await self._notify(cancelled, "Order Cancelled",
                           f"Your order #{order_id} has been cancelled successfully.")
        return cancelled

    @staticmethod
    def _check_cancellable(order: dict):
        if order["status"] not in CANCELLABLE_ORDER_STATUSES:
            raise InvalidOrderState(
                f"Order cannot be cancelled in current status: {order['status']}. "
                "Only orders with status 'Order Placed' or 'Processing' can be cancelled."
            )
        if order["payment_status"] == PaymentStatus.COMPLETED.value:
            raise PaymentAlreadyCaptured()

    async def update_status(self, order_id: str, new_status: OrderStatus,
                            actor: Optional[AuthenticatedUser] = None) -> dict:
        """Admin transition to any status; cancelling goes through ``cancel``."""
        if new_status == OrderStatus.CANCELLED:
            return await self.cancel(order_id, reason="Cancelled by admin",
                                     cancelled_by=actor.role if actor else "admin")

        order = await self.get(order_id)
        current = OrderStatus(order["status"])
        if current.is_terminal:
            raise InvalidOrderState(f"Order is already {current.value}")

        now = utcnow()
        fields = {
            "status": new_status.value,
            f"status_timestamps.{new_status.timestamp_key}": now,
            "updated_at": now,
        }
        settle_cod = (
            new_status == OrderStatus.DELIVERED
            and order["payment_method"] == "cod"
            and order["payment_status"] != PaymentStatus.COMPLETED.value
        )
        if settle_cod:
            fields["payment_status"] = PaymentStatus.COMPLETED.value

        if await self.orders.transition(order_id, [current.value], fields) is None:
            raise InvalidOrderState("Order changed while updating, please retry")

        if settle_cod and self.payments and order.get("payment_reference_id"):
            await self.payments.transition(
                order["payment_reference_id"],
                [PaymentStatus.INITIATED.value, PaymentStatus.PENDING.value],
                {"status": PaymentStatus.COMPLETED.value, "completed_at": now, "updated_at": now},
            )

        logger.info(
            f"Order status changed to {new_status.value}",
            extra={"order_id": order_id, "user_id": order["user_id"]},
        )
        updated = await self.get(order_id)
        await self._notify(updated, f"Order {new_status.value}",
                           f"Your order #{order_id} is now {new_status.value}.")
        return updated
