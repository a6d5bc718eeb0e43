"""In-memory repositories.

Each conditional write completes without yielding to the event loop, so
the check and the write are atomic with respect to other coroutines,
mirroring a single conditional update in MongoDB.
"""

from copy import deepcopy
from typing import List, Dict

from commerce.models import VariantKey, CouponScope, PaymentStatus, OPEN_PAYMENT_STATUSES, CART_HOLDING_STATUSES
from commerce.repository import (
    DuplicateRecord, VariantRepository, CartRepository, CouponRepository,
    PaymentRepository, OrderRepository, TokenRepository,
)


class MemoryVariantRepository(VariantRepository):
    def __init__(self):
        self.variants: Dict[VariantKey, dict] = {}
        self.stock_movements: List[dict] = []

    async def get(self, key):
        return deepcopy(self.variants.get(key))

    async def upsert(self, doc):
        key = VariantKey.of(doc)
        current = self.variants.get(key)
        if current is not None:
            doc = {**doc, "_id": current["_id"]}
        self.variants[key] = deepcopy(doc)
        return deepcopy(doc)

    async def adjust_stock(self, key, delta):
        variant = self.variants.get(key)
        if variant is None:
            return None
        if delta < 0 and variant["stock"] < -delta:
            return None
        variant["stock"] += delta
        return deepcopy(variant)

    async def record_movement(self, doc):
        self.stock_movements.append(deepcopy(doc))

    async def movements(self, key):
        return [deepcopy(m) for m in self.stock_movements if VariantKey.of(m) == key]


class MemoryCartRepository(CartRepository):
    def __init__(self):
        self.carts: Dict[str, dict] = {}

    async def get(self, cart_id):
        return deepcopy(self.carts.get(cart_id))

    async def get_by_user(self, user_id):
        for cart in self.carts.values():
            if cart["user_id"] == user_id:
                return deepcopy(cart)
        return None

    async def insert(self, doc):
        if any(c["user_id"] == doc["user_id"] for c in self.carts.values()):
            raise DuplicateRecord(f"cart for user {doc['user_id']}")
        self.carts[doc["_id"]] = deepcopy(doc)
        return deepcopy(doc)

    async def replace(self, doc, expected_version):
        current = self.carts.get(doc["_id"])
        if current is None or current.get("version", 0) != expected_version:
            return False
        stored = deepcopy(doc)
        stored["version"] = expected_version + 1
        self.carts[doc["_id"]] = stored
        doc["version"] = expected_version + 1
        return True

    async def list_idle(self, updated_before):
        return [
            deepcopy(c) for c in self.carts.values()
            if c.get("items") and c["updated_at"] < updated_before
        ]


class MemoryCouponRepository(CouponRepository):
    def __init__(self):
        self.coupons: Dict[str, dict] = {}

    async def get(self, coupon_id):
        return deepcopy(self.coupons.get(coupon_id))

    async def get_by_code(self, code):
        for coupon in self.coupons.values():
            if coupon["code"] == code:
                return deepcopy(coupon)
        return None

    async def insert(self, doc):
        if any(c["code"] == doc["code"] for c in self.coupons.values()):
            raise DuplicateRecord(f"coupon {doc['code']}")
        self.coupons[doc["_id"]] = deepcopy(doc)
        return deepcopy(doc)

    async def list_active(self, now):
        active = [
            deepcopy(c) for c in self.coupons.values()
            if c["is_active"] and c["expiry_date"] >= now
        ]
        return sorted(active, key=lambda c: c["expiry_date"])

    async def consume(self, coupon, user_id, now):
        current = self.coupons.get(coupon["_id"])
        if current is None or not current["is_active"] or current["expiry_date"] < now:
            return False
        if user_id in current["used_by"]:
            return False
        entry = None
        if current["scope"] == CouponScope.USER_RESTRICTED.value:
            entry = next(
                (e for e in current["created_for"] if e["user_id"] == user_id and not e["is_used"]),
                None,
            )
            if entry is None:
                return False
        max_usage = current.get("max_usage")
        if max_usage is not None and len(current["used_by"]) >= max_usage:
            return False
        current["used_by"].append(user_id)
        if entry is not None:
            entry["is_used"] = True
        current["updated_at"] = now
        return True

    async def restore(self, coupon_id, user_id):
        current = self.coupons.get(coupon_id)
        if current is None:
            return
        current["used_by"] = [u for u in current["used_by"] if u != user_id]
        for entry in current["created_for"]:
            if entry["user_id"] == user_id:
                entry["is_used"] = False

    async def update_fields(self, coupon_id, fields):
        current = self.coupons.get(coupon_id)
        if current is None:
            return None
        current.update(deepcopy(fields))
        return deepcopy(current)

    async def deactivate_expired(self, now):
        count = 0
        for coupon in self.coupons.values():
            if coupon["is_active"] and coupon["expiry_date"] < now:
                coupon["is_active"] = False
                coupon["updated_at"] = now
                count += 1
        return count


class MemoryPaymentRepository(PaymentRepository):
    def __init__(self):
        self.payments: Dict[str, dict] = {}

    def _find(self, field, value):
        for payment in self.payments.values():
            if payment.get(field) == value:
                return payment
        return None

    async def insert(self, doc):
        if self._find("transaction_id", doc["transaction_id"]) or self._find("order_ref", doc["order_ref"]):
            raise DuplicateRecord(f"payment {doc['transaction_id']}")
        self.payments[doc["_id"]] = deepcopy(doc)
        return deepcopy(doc)

    async def get(self, reference_id):
        return deepcopy(self.payments.get(reference_id))

    async def find_by_transaction_id(self, transaction_id):
        return deepcopy(self._find("transaction_id", transaction_id))

    async def find_by_order_ref(self, order_ref):
        return deepcopy(self._find("order_ref", order_ref))

    async def transition(self, reference_id, from_statuses, fields):
        current = self.payments.get(reference_id)
        if current is None or current["status"] not in set(from_statuses):
            return None
        before = deepcopy(current)
        current.update(deepcopy(fields))
        return before

    async def update(self, reference_id, fields, inc=None):
        current = self.payments.get(reference_id)
        if current is None:
            return None
        current.update(deepcopy(fields))
        for key, amount in (inc or {}).items():
            current[key] = current.get(key, 0) + amount
        return deepcopy(current)

    async def list_open_expired(self, now):
        return [
            deepcopy(p) for p in self.payments.values()
            if p["status"] in OPEN_PAYMENT_STATUSES and p.get("expire_at") and p["expire_at"] < now
        ]

    async def list_completed_without_order(self):
        return [
            deepcopy(p) for p in self.payments.values()
            if p["status"] == PaymentStatus.COMPLETED.value and not p.get("order_id")
        ]

    async def has_open_payment(self, cart_id):
        return any(
            p["cart_id"] == cart_id and not p.get("order_id") and p["status"] in CART_HOLDING_STATUSES
            for p in self.payments.values()
        )

    async def list_by_user(self, user_id):
        payments = [deepcopy(p) for p in self.payments.values() if p["user_id"] == user_id]
        return sorted(payments, key=lambda p: p["created_at"], reverse=True)


class MemoryOrderRepository(OrderRepository):
    def __init__(self):
        self.orders: Dict[str, dict] = {}

    async def insert(self, doc):
        if doc["_id"] in self.orders or any(
            o["transaction_id"] == doc["transaction_id"] for o in self.orders.values()
        ):
            raise DuplicateRecord(f"order for transaction {doc['transaction_id']}")
        self.orders[doc["_id"]] = deepcopy(doc)
        return deepcopy(doc)

    async def get(self, order_id):
        return deepcopy(self.orders.get(order_id))

    async def find_by_transaction_id(self, transaction_id):
        for order in self.orders.values():
            if order["transaction_id"] == transaction_id:
                return deepcopy(order)
        return None

    async def transition(self, order_id, from_statuses, fields, exclude_payment_status=None):
        current = self.orders.get(order_id)
        if current is None or current["status"] not in set(from_statuses):
            return None
        if exclude_payment_status and current["payment_status"] == exclude_payment_status:
            return None
        before = deepcopy(current)
        for key, value in fields.items():
            # Dotted keys address nested fields, as in a Mongo $set
            target = current
            *parents, leaf = key.split(".")
            for part in parents:
                target = target.setdefault(part, {})
            target[leaf] = deepcopy(value)
        return before

    async def list_by_user(self, user_id, skip=0, limit=20):
        orders = sorted(
            (o for o in self.orders.values() if o["user_id"] == user_id),
            key=lambda o: o["created_at"],
            reverse=True,
        )
        return [deepcopy(o) for o in orders[skip:skip + limit]]


class MemoryTokenRepository(TokenRepository):
    def __init__(self):
        self.tokens: Dict[str, dict] = {}

    async def put(self, doc):
        self.tokens[doc["_id"]] = deepcopy(doc)

    async def get(self, jti):
        return deepcopy(self.tokens.get(jti))

    async def revoke(self, jti, user_id, expires_at):
        current = self.tokens.get(jti)
        if current is not None and current.get("revoked"):
            return False
        if current is None:
            self.tokens[jti] = {"_id": jti, "user_id": user_id, "kind": "revoked",
                                "expires_at": expires_at, "revoked": True}
        else:
            current["revoked"] = True
        return True
