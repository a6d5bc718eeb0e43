"""Persistence ports for the commerce core.

Services only ever see these interfaces. Every method that guards an
invariant (stock, coupon usage, payment and order status) is a single
conditional write in the backing store, never a read followed by a write.
Two implementations exist: ``commerce.mongo`` (motor) and
``commerce.memory`` (tests and local development).
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Iterable

from commerce.models import VariantKey


class DuplicateRecord(Exception):
    """A unique index rejected the write."""


class VariantRepository(ABC):
    @abstractmethod
    async def get(self, key: VariantKey) -> Optional[dict]: ...

    @abstractmethod
    async def upsert(self, doc: dict) -> dict: ...

    @abstractmethod
    async def adjust_stock(self, key: VariantKey, delta: int) -> Optional[dict]:
        """Add ``delta`` to stock. A negative delta only applies while
        ``stock >= -delta``; returns the updated variant or None."""

    @abstractmethod
    async def record_movement(self, doc: dict) -> None: ...

    @abstractmethod
    async def movements(self, key: VariantKey) -> List[dict]: ...


class CartRepository(ABC):
    @abstractmethod
    async def get(self, cart_id: str) -> Optional[dict]: ...

    @abstractmethod
    async def get_by_user(self, user_id: str) -> Optional[dict]: ...

    @abstractmethod
    async def insert(self, doc: dict) -> dict:
        """Raises DuplicateRecord when the user already has a cart."""

    @abstractmethod
    async def replace(self, doc: dict, expected_version: int) -> bool:
        """Write ``doc`` (with version bumped) only if the stored version
        still equals ``expected_version``."""

    @abstractmethod
    async def list_idle(self, updated_before: datetime) -> List[dict]: ...


class CouponRepository(ABC):
    @abstractmethod
    async def get(self, coupon_id: str) -> Optional[dict]: ...

    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[dict]: ...

    @abstractmethod
    async def insert(self, doc: dict) -> dict: ...

    @abstractmethod
    async def list_active(self, now: datetime) -> List[dict]: ...

    @abstractmethod
    async def consume(self, coupon: dict, user_id: str, now: datetime) -> bool:
        """Append ``user_id`` to ``used_by`` (and flip its ``created_for``
        entry) only while every usage rule still holds."""

    @abstractmethod
    async def restore(self, coupon_id: str, user_id: str) -> None:
        """Undo ``consume`` for one user."""

    @abstractmethod
    async def update_fields(self, coupon_id: str, fields: dict) -> Optional[dict]: ...

    @abstractmethod
    async def deactivate_expired(self, now: datetime) -> int: ...


class PaymentRepository(ABC):
    @abstractmethod
    async def insert(self, doc: dict) -> dict: ...

    @abstractmethod
    async def get(self, reference_id: str) -> Optional[dict]: ...

    @abstractmethod
    async def find_by_transaction_id(self, transaction_id: str) -> Optional[dict]: ...

    @abstractmethod
    async def find_by_order_ref(self, order_ref: str) -> Optional[dict]: ...

    @abstractmethod
    async def transition(self, reference_id: str, from_statuses: Iterable[str], fields: dict) -> Optional[dict]:
        """Apply ``fields`` only if the current status is in
        ``from_statuses``; returns the record as it was before the write."""

    @abstractmethod
    async def update(self, reference_id: str, fields: dict, inc: Optional[dict] = None) -> Optional[dict]: ...

    @abstractmethod
    async def list_open_expired(self, now: datetime) -> List[dict]: ...

    @abstractmethod
    async def list_completed_without_order(self) -> List[dict]: ...

    @abstractmethod
    async def has_open_payment(self, cart_id: str) -> bool:
        """True while a payment for the cart has no order yet and is not
        Failed."""

    @abstractmethod
    async def list_by_user(self, user_id: str) -> List[dict]: ...


class OrderRepository(ABC):
    @abstractmethod
    async def insert(self, doc: dict) -> dict:
        """Raises DuplicateRecord if an order already exists for the
        transaction."""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[dict]: ...

    @abstractmethod
    async def find_by_transaction_id(self, transaction_id: str) -> Optional[dict]: ...

    @abstractmethod
    async def transition(self, order_id: str, from_statuses: Iterable[str], fields: dict,
                         exclude_payment_status: Optional[str] = None) -> Optional[dict]:
        """Conditional status change; returns the pre-image or None."""

    @abstractmethod
    async def list_by_user(self, user_id: str, skip: int = 0, limit: int = 20) -> List[dict]: ...


class TokenRepository(ABC):
    @abstractmethod
    async def put(self, doc: dict) -> None: ...

    @abstractmethod
    async def get(self, jti: str) -> Optional[dict]: ...

    @abstractmethod
    async def revoke(self, jti: str, user_id: str, expires_at: datetime) -> bool:
        """Mark ``jti`` revoked; False if it already was."""
