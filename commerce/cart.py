import logging
from datetime import datetime
from typing import Optional, List, Callable, Awaitable, Tuple

from commerce.inventory import InventoryLedger
from commerce.models import (
    VariantKey, CartDB, CartItemDB, AddressDB, to_decimal, money, round2, to_document,
)
from commerce.repository import CartRepository, DuplicateRecord
from shared.utils import (
    settings, utcnow, NotFoundException, ValidationException, ConflictException,
    InsufficientStockException,
)

logger = logging.getLogger("commerce-service")

MAX_ATTEMPTS = 5
SETTLED_TRANSACTIONS_KEPT = 20
ADDRESS_FIELDS = ("street", "city", "state", "pincode")


def recompute_totals(cart: dict, fee_per_item: float) -> dict:
    """Recompute the money fields of ``cart`` in place.

    subtotal = sum(unit_price * quantity), shipping = fee * distinct lines,
    tax = 0, total = round2(subtotal - discount + shipping + tax). The
    discount is clamped to the subtotal and reset once the cart is empty.
    """
    items = cart.get("items", [])
    subtotal = sum((to_decimal(i["unit_price"]) * i["quantity"] for i in items), to_decimal(0))
    shipping = to_decimal(fee_per_item) * len(items)
    tax = to_decimal(0)

    if not items:
        cart["discount_applied"] = False
        cart["discount_amount"] = 0.0
        cart["coupon_code"] = None
    discount = min(to_decimal(cart.get("discount_amount")), subtotal)

    cart["subtotal"] = money(subtotal)
    cart["shipping_cost"] = money(shipping)
    cart["tax_amount"] = money(tax)
    cart["discount_amount"] = money(discount)
    cart["total_amount"] = money(round2(subtotal) - round2(discount) + round2(shipping) + tax)
    return cart


def address_is_complete(address: Optional[dict]) -> bool:
    return bool(address) and all(str(address.get(f) or "").strip() for f in ADDRESS_FIELDS)


def find_line(cart: dict, key: VariantKey) -> Optional[dict]:
    for item in cart.get("items", []):
        if VariantKey.of(item) == key:
            return item
    return None


class StockPlan:
    """Stock side effects of one cart mutation attempt.

    Reservations happen before the cart is written and are rolled back if
    the write loses a version race or the mutation fails. Releases wait
    until the write succeeds, so stock is never credited twice.
    """

    def __init__(self, ledger: InventoryLedger, ref: str):
        self.ledger = ledger
        self.ref = ref
        self.reserved: List[Tuple[VariantKey, int]] = []
        self.pending_releases: List[Tuple[VariantKey, int]] = []

    async def reserve(self, key: VariantKey, quantity: int):
        await self.ledger.reserve(key, quantity, reason="cart_reserve", ref=self.ref)
        self.reserved.append((key, quantity))

    def release_after_save(self, key: VariantKey, quantity: int):
        if quantity > 0:
            self.pending_releases.append((key, quantity))

    async def rollback(self):
        while self.reserved:
            key, quantity = self.reserved.pop()
            await self.ledger.release(key, quantity, reason="cart_rollback", ref=self.ref)

    async def commit(self, reason: str = "cart_release"):
        for key, quantity in self.pending_releases:
            await self.ledger.release(key, quantity, reason=reason, ref=self.ref)
        self.pending_releases = []


Mutation = Callable[[dict, StockPlan], Awaitable[None]]


class CartService:
    def __init__(self, carts: CartRepository, ledger: InventoryLedger,
                 fee_per_item: float = settings.SHIPPING_FEE_PER_ITEM):
        self.carts = carts
        self.ledger = ledger
        self.fee_per_item = fee_per_item

    # --- Reads ---

    async def get_cart(self, user_id: str) -> dict:
        cart = await self.carts.get_by_user(user_id)
        if not cart:
            raise NotFoundException("Cart not found for this user")
        return cart

    async def find_cart(self, user_id: str) -> Optional[dict]:
        return await self.carts.get_by_user(user_id)

    async def get_by_id(self, cart_id: str) -> dict:
        cart = await self.carts.get(cart_id)
        if not cart:
            raise NotFoundException("Cart not found")
        return cart

    async def _get_or_create(self, user_id: str) -> dict:
        cart = await self.carts.get_by_user(user_id)
        if cart:
            return cart
        try:
            return await self.carts.insert(to_document(CartDB(user_id=user_id)))
        except DuplicateRecord:
            # Lost the creation race to a concurrent request
            return await self.get_cart(user_id)

    # --- Mutations ---

    async def _mutate(self, user_id: str, mutation: Mutation, create: bool = False,
                      release_reason: str = "cart_release") -> dict:
        for attempt in range(MAX_ATTEMPTS):
            cart = await (self._get_or_create(user_id) if create else self.get_cart(user_id))
            expected_version = cart.get("version", 0)
            plan = StockPlan(self.ledger, ref=cart["_id"])
            try:
                await mutation(cart, plan)
            except Exception:
                await plan.rollback()
                raise

            recompute_totals(cart, self.fee_per_item)
            cart["updated_at"] = utcnow()
            if await self.carts.replace(cart, expected_version):
                await plan.commit(release_reason)
                return cart

            await plan.rollback()
            logger.info(
                "Cart version conflict, retrying",
                extra={"cart_id": cart["_id"], "user_id": user_id},
            )
        raise ConflictException("Cart was modified concurrently, please retry")

    async def replace_items(self, user_id: str, items: List[dict]) -> dict:
        """Replace every line of the cart with ``items``.

        Existing lines are dropped without restoring their stock. If any
        requested line cannot be reserved the whole call fails and the
        reservations it already made are returned.
        """
        if not items:
            raise ValidationException("products array cannot be empty")

        async def mutation(cart: dict, plan: StockPlan):
            lines: List[dict] = []
            for item in items:
                if item["quantity"] < 1:
                    raise ValidationException("Quantity must be at least 1")
                key = VariantKey(item["product_id"], item["color"], item["size"])
                variant = await self.ledger.get_variant(key)
                await plan.reserve(key, item["quantity"])
                line = find_line({"items": lines}, key)
                if line:
                    line["quantity"] += item["quantity"]
                else:
                    lines.append(self._new_line(variant, item))
            cart["items"] = lines

        cart = await self._mutate(user_id, mutation, create=True)
        logger.info("Cart replaced", extra={"cart_id": cart["_id"], "user_id": user_id})
        return cart

    async def add_item(self, user_id: str, item: dict) -> dict:
        if item["quantity"] < 1:
            raise ValidationException("Quantity must be at least 1")
        key = VariantKey(item["product_id"], item["color"], item["size"])

        async def mutation(cart: dict, plan: StockPlan):
            variant = await self.ledger.get_variant(key)
            await plan.reserve(key, item["quantity"])
            line = find_line(cart, key)
            if line:
                line["quantity"] += item["quantity"]
            else:
                cart.setdefault("items", []).append(self._new_line(variant, item))

        cart = await self._mutate(user_id, mutation, create=True)
        logger.info(
            "Item added to cart",
            extra={"cart_id": cart["_id"], "user_id": user_id, "product_id": key.product_id,
                   "color": key.color, "size": key.size, "quantity": item["quantity"]},
        )
        return cart

    async def update_quantity(self, user_id: str, key: VariantKey, quantity: int) -> dict:
        async def mutation(cart: dict, plan: StockPlan):
            line = find_line(cart, key)
            if not line:
                raise NotFoundException("Product not found in cart")
            old_quantity = line["quantity"]
            if quantity < 1:
                cart["items"] = [i for i in cart["items"] if VariantKey.of(i) != key]
                plan.release_after_save(key, old_quantity)
                return
            delta = quantity - old_quantity
            if delta > 0:
                await plan.reserve(key, delta)
            elif delta < 0:
                plan.release_after_save(key, -delta)
            line["quantity"] = quantity

        cart = await self._mutate(user_id, mutation)
        logger.info(
            "Cart quantity updated",
            extra={"cart_id": cart["_id"], "user_id": user_id, "product_id": key.product_id,
                   "color": key.color, "size": key.size, "quantity": quantity},
        )
        return cart

    async def delete_item(self, user_id: str, key: VariantKey) -> dict:
        async def mutation(cart: dict, plan: StockPlan):
            line = find_line(cart, key)
            if not line:
                raise NotFoundException("Product not found in cart")
            cart["items"] = [i for i in cart["items"] if VariantKey.of(i) != key]
            plan.release_after_save(key, line["quantity"])

        cart = await self._mutate(user_id, mutation)
        logger.info(
            "Item deleted from cart",
            extra={"cart_id": cart["_id"], "user_id": user_id, "product_id": key.product_id,
                   "color": key.color, "size": key.size},
        )
        return cart

    async def set_address(self, user_id: str, address: AddressDB) -> dict:
        if not address_is_complete(address.model_dump()):
            raise ValidationException("Address must include street, city, state, and pincode")

        async def mutation(cart: dict, plan: StockPlan):
            cart["shipping_address"] = address.model_dump()

        return await self._mutate(user_id, mutation)

    async def remove_purchased(self, cart_id: str, purchased: List[dict],
                               transaction_id: Optional[str] = None) -> Optional[dict]:
        """Take the ordered quantities out of the cart and reset its discount.

        Lines added after the order snapshot stay in the cart. Stock is not
        touched: it now belongs to the order. When ``transaction_id`` is
        given the removal happens at most once for it.

        If the cart was reduced below the ordered quantity while the payment
        was open, the shortfall is reserved again for the order.
        """
        cart = await self.carts.get(cart_id)
        if not cart:
            return None
        if transaction_id and transaction_id in cart.get("settled_transactions", []):
            return cart

        async def mutation(current: dict, plan: StockPlan):
            if transaction_id and transaction_id in current.get("settled_transactions", []):
                return
            remaining = []
            for line in current.get("items", []):
                key = VariantKey.of(line)
                bought = sum(p["quantity"] for p in purchased if VariantKey.of(p) == key)
                left = line["quantity"] - bought
                if left > 0:
                    remaining.append(dict(line, quantity=left))
            for key, shortfall in self._shortfalls(current, purchased):
                try:
                    await plan.reserve(key, shortfall)
                except InsufficientStockException:
                    logger.warning(
                        f"Ordered {key} exceeds stock held for the cart by {shortfall}",
                        extra={"cart_id": cart_id, "transaction_id": transaction_id,
                               "product_id": key.product_id, "color": key.color, "size": key.size},
                    )
            if transaction_id:
                current["settled_transactions"] = (
                    current.get("settled_transactions", []) + [transaction_id]
                )[-SETTLED_TRANSACTIONS_KEPT:]
            current["items"] = remaining
            current["discount_applied"] = False
            current["discount_amount"] = 0.0
            current["coupon_code"] = None

        return await self._mutate(cart["user_id"], mutation)

    async def set_discount(self, cart: dict, amount: float, coupon_code: str) -> bool:
        """Land a coupon discount on ``cart`` unless it changed or already
        carries one. Returns False when the guarded write loses."""
        if cart.get("discount_applied"):
            return False
        expected_version = cart.get("version", 0)
        cart["discount_applied"] = True
        cart["discount_amount"] = money(amount)
        cart["coupon_code"] = coupon_code
        recompute_totals(cart, self.fee_per_item)
        cart["updated_at"] = utcnow()
        return await self.carts.replace(cart, expected_version)

    async def expire_idle(self, idle_before: datetime,
                          has_open_payment: Callable[[str], Awaitable[bool]]) -> int:
        """Release the stock held by carts untouched since ``idle_before``."""
        expired = 0
        for cart in await self.carts.list_idle(idle_before):
            if await has_open_payment(cart["_id"]):
                continue
            plan = StockPlan(self.ledger, ref=cart["_id"])
            for line in cart["items"]:
                plan.release_after_save(VariantKey.of(line), line["quantity"])
            expected_version = cart.get("version", 0)
            cart["items"] = []
            recompute_totals(cart, self.fee_per_item)
            cart["updated_at"] = utcnow()
            if await self.carts.replace(cart, expected_version):
                await plan.commit("cart_expired")
                expired += 1
                logger.info("Idle cart released", extra={"cart_id": cart["_id"], "user_id": cart["user_id"]})
        return expired

    @staticmethod
    def _shortfalls(cart: dict, purchased: List[dict]) -> List[Tuple[VariantKey, int]]:
        held = {}
        for line in cart.get("items", []):
            key = VariantKey.of(line)
            held[key] = held.get(key, 0) + line["quantity"]
        bought = {}
        for line in purchased:
            key = VariantKey.of(line)
            bought[key] = bought.get(key, 0) + line["quantity"]
        return [(key, quantity - held.get(key, 0)) for key, quantity in bought.items()
                if quantity > held.get(key, 0)]

    @staticmethod
    def _new_line(variant: dict, item: dict) -> dict:
        line = CartItemDB(
            product_id=variant["product_id"],
            color=variant["color"],
            size=variant["size"],
            quantity=item["quantity"],
            unit_price=variant["price"],
            designer_ref=variant.get("designer_ref"),
            product_name=variant.get("product_name"),
            is_customizable=item.get("is_customizable", False),
            customizations=item.get("customizations") or "",
        )
        return line.model_dump()


def cart_summary(user_id: str, cart: Optional[dict]) -> dict:
    if not cart:
        return {
            "user_id": user_id, "cart_id": None, "total_amount": 0.0, "subtotal": 0.0,
            "discount_amount": 0.0, "tax_amount": 0.0, "shipping_cost": 0.0,
            "item_count": 0, "product_count": 0, "is_empty": True, "discount_applied": False,
        }
    items = cart.get("items", [])
    return {
        "user_id": user_id,
        "cart_id": cart["_id"],
        "total_amount": money(cart.get("total_amount", 0)),
        "subtotal": money(cart.get("subtotal", 0)),
        "discount_amount": money(cart.get("discount_amount", 0)),
        "tax_amount": money(cart.get("tax_amount", 0)),
        "shipping_cost": money(cart.get("shipping_cost", 0)),
        "item_count": sum(i["quantity"] for i in items),
        "product_count": len(items),
        "is_empty": not items,
        "discount_applied": bool(cart.get("discount_applied")),
    }
