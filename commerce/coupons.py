import logging
from datetime import datetime
from typing import Optional, List, Union, Literal, Annotated
from fastapi import status
from pydantic import BaseModel, Field

from commerce.cart import CartService, MAX_ATTEMPTS
from commerce.models import CouponDB, CouponRecipientDB, CouponScope, to_decimal, money, to_document
from commerce.repository import CouponRepository, DuplicateRecord
from shared.utils import (
    AppException, ValidationException, NotFoundException, ForbiddenException,
    ConflictException, utcnow, to_naive_utc,
)

logger = logging.getLogger("commerce-service")


class CouponRejected(AppException):
    NOT_FOUND = "NotFound"
    INACTIVE = "Inactive"
    EXPIRED = "Expired"
    ALREADY_USED_BY_USER = "AlreadyUsedByUser"
    NOT_ELIGIBLE_FOR_USER = "NotEligibleForUser"
    USAGE_LIMIT_REACHED = "UsageLimitReached"
    ALREADY_DISCOUNTED = "AlreadyDiscounted"

    _RESPONSES = {
        NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Coupon not found"),
        INACTIVE: (status.HTTP_400_BAD_REQUEST, "Coupon is not active"),
        EXPIRED: (status.HTTP_400_BAD_REQUEST, "Coupon has expired"),
        ALREADY_USED_BY_USER: (status.HTTP_400_BAD_REQUEST, "You have already used this coupon"),
        NOT_ELIGIBLE_FOR_USER: (status.HTTP_403_FORBIDDEN, "Coupon not valid for this account"),
        USAGE_LIMIT_REACHED: (status.HTTP_400_BAD_REQUEST, "Coupon usage limit reached"),
        ALREADY_DISCOUNTED: (status.HTTP_400_BAD_REQUEST, "A coupon is already applied to this cart"),
    }

    def __init__(self, reason: str):
        status_code, detail = self._RESPONSES[reason]
        super().__init__(status_code=status_code, detail=detail, code=reason)
        self.reason = reason


# --- Allow-listed coupon updates ---

class AmountChange(BaseModel):
    field: Literal["amount"]
    value: float = Field(..., gt=0)


class ExpiryDateChange(BaseModel):
    field: Literal["expiryDate"]
    value: datetime


class ActiveChange(BaseModel):
    field: Literal["isActive"]
    value: bool


class MaxUsageChange(BaseModel):
    field: Literal["maxUsage"]
    value: Optional[int] = Field(None, ge=1)


CouponFieldChange = Annotated[
    Union[AmountChange, ExpiryDateChange, ActiveChange, MaxUsageChange],
    Field(discriminator="field"),
]


def check_eligibility(coupon: dict, user_id: str, now: datetime):
    """Raise CouponRejected unless ``user_id`` may still use ``coupon``."""
    if not coupon.get("is_active"):
        raise CouponRejected(CouponRejected.INACTIVE)
    if coupon["expiry_date"] < now:
        raise CouponRejected(CouponRejected.EXPIRED)
    if user_id in coupon.get("used_by", []):
        raise CouponRejected(CouponRejected.ALREADY_USED_BY_USER)

    if coupon.get("scope") == CouponScope.USER_RESTRICTED.value:
        entry = next((e for e in coupon.get("created_for", []) if e["user_id"] == user_id), None)
        if entry is None:
            raise CouponRejected(CouponRejected.NOT_ELIGIBLE_FOR_USER)
        if entry.get("is_used"):
            raise CouponRejected(CouponRejected.ALREADY_USED_BY_USER)
    elif coupon.get("max_usage") is not None:
        if len(coupon.get("used_by", [])) >= coupon["max_usage"]:
            raise CouponRejected(CouponRejected.USAGE_LIMIT_REACHED)


class CouponEngine:
    def __init__(self, coupons: CouponRepository, cart_service: CartService):
        self.coupons = coupons
        self.cart_service = cart_service

    async def _lookup(self, code: Optional[str], coupon_id: Optional[str]) -> dict:
        if coupon_id:
            coupon = await self.coupons.get(coupon_id)
        elif code:
            coupon = await self.coupons.get_by_code(code.strip())
        else:
            raise ValidationException("couponCode or couponId is required")
        if not coupon:
            raise CouponRejected(CouponRejected.NOT_FOUND)
        return coupon

    async def apply(self, cart_id: str, user_id: str, code: Optional[str] = None,
                    coupon_id: Optional[str] = None) -> dict:
        """Consume the coupon for ``user_id`` and discount the cart.

        The coupon write happens first; if the cart write then fails the
        usage is restored, so a coupon is never marked used without the
        discount landing.
        """
        now = utcnow()
        coupon = await self._lookup(code, coupon_id)
        check_eligibility(coupon, user_id, now)

        cart = await self.cart_service.get_by_id(cart_id)
        if cart["user_id"] != user_id:
            raise ForbiddenException("Not authorized to modify this cart")
        if cart.get("discount_applied"):
            raise CouponRejected(CouponRejected.ALREADY_DISCOUNTED)
        if not cart.get("items"):
            raise ValidationException("Cannot apply a coupon to an empty cart")

        if not await self.coupons.consume(coupon, user_id, now):
            # Lost a race; report what changed
            check_eligibility(await self._lookup(None, coupon["_id"]), user_id, utcnow())
            raise CouponRejected(CouponRejected.USAGE_LIMIT_REACHED)

        try:
            cart = await self._land_discount(cart, coupon)
        except Exception:
            await self.coupons.restore(coupon["_id"], user_id)
            logger.warning(
                "Coupon usage restored after failed cart update",
                extra={"cart_id": cart_id, "user_id": user_id, "coupon_code": coupon["code"]},
            )
            raise

        logger.info(
            "Coupon applied",
            extra={"cart_id": cart_id, "user_id": user_id, "coupon_code": coupon["code"]},
        )
        return {
            "cart": cart,
            "discount_applied": cart["discount_amount"],
            "new_total": cart["total_amount"],
        }

    async def _land_discount(self, cart: dict, coupon: dict) -> dict:
        for attempt in range(MAX_ATTEMPTS):
            if cart.get("discount_applied"):
                raise CouponRejected(CouponRejected.ALREADY_DISCOUNTED)
            if not cart.get("items"):
                raise ValidationException("Cannot apply a coupon to an empty cart")
            discount = min(to_decimal(coupon["amount"]), to_decimal(cart["subtotal"]))
            if await self.cart_service.set_discount(cart, money(discount), coupon["code"]):
                return cart
            cart = await self.cart_service.get_by_id(cart["_id"])
        raise ConflictException("Cart was modified concurrently, please retry")

    # --- Administration ---

    async def _create(self, coupon: CouponDB) -> dict:
        if coupon.amount <= 0:
            raise ValidationException("Coupon amount must be greater than zero")
        if coupon.expiry_date <= utcnow():
            raise ValidationException("Expiry date must be in the future")
        try:
            saved = await self.coupons.insert(to_document(coupon))
        except DuplicateRecord:
            raise ConflictException("Coupon code already exists")
        logger.info("Coupon created", extra={"coupon_code": coupon.code})
        return saved

    async def create(self, code: str, amount: float, expiry_date: datetime) -> dict:
        return await self._create(CouponDB(
            code=code.strip(), amount=amount, expiry_date=to_naive_utc(expiry_date),
        ))

    async def create_promotion(self, code: str, amount: float, expiry_date: datetime,
                               max_usage: Optional[int] = None) -> dict:
        return await self._create(CouponDB(
            code=code.strip(), amount=amount, expiry_date=to_naive_utc(expiry_date),
            max_usage=max_usage or 1,
        ))

    async def create_for_user(self, user_id: str, code: str, amount: float, expiry_date: datetime) -> dict:
        expiry = to_naive_utc(expiry_date)
        return await self._create(CouponDB(
            code=code.strip(), amount=amount, expiry_date=expiry,
            scope=CouponScope.USER_RESTRICTED,
            created_for=[CouponRecipientDB(user_id=user_id, expired_in=expiry)],
        ))

    async def update(self, coupon_id: str, changes: List[CouponFieldChange]) -> dict:
        if not changes:
            raise ValidationException("At least one change is required")
        coupon = await self.coupons.get(coupon_id)
        if not coupon:
            raise NotFoundException("Coupon not found")

        fields = {}
        for change in changes:
            if isinstance(change, AmountChange):
                fields["amount"] = money(change.value)
            elif isinstance(change, ExpiryDateChange):
                expiry = to_naive_utc(change.value)
                if expiry <= utcnow():
                    raise ValidationException("Expiry date must be in the future")
                fields["expiry_date"] = expiry
            elif isinstance(change, ActiveChange):
                fields["is_active"] = change.value
            elif isinstance(change, MaxUsageChange):
                if coupon.get("scope") == CouponScope.USER_RESTRICTED.value:
                    raise ValidationException("maxUsage only applies to universal coupons")
                fields["max_usage"] = change.value
        fields["updated_at"] = utcnow()

        updated = await self.coupons.update_fields(coupon_id, fields)
        logger.info("Coupon updated", extra={"coupon_code": coupon["code"]})
        return updated

    async def list_active(self) -> List[dict]:
        return await self.coupons.list_active(utcnow())

    async def get_by_code(self, code: str) -> dict:
        coupon = await self.coupons.get_by_code(code.strip())
        if not coupon:
            raise NotFoundException("Coupon not found")
        return coupon

    async def sweep_expired(self) -> int:
        count = await self.coupons.deactivate_expired(utcnow())
        if count:
            logger.info(f"Deactivated {count} expired coupon(s)", extra={"event": "coupon_sweep"})
        return count
