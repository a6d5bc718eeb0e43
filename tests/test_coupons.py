from datetime import timedelta

import pytest

from commerce.coupons import CouponRejected, AmountChange, ActiveChange, ExpiryDateChange, MaxUsageChange
from commerce.models import VariantDB, VariantKey
from shared.utils import ConflictException, ForbiddenException, NotFoundException, ValidationException, utcnow

from conftest import HOODIE_M, TEE_M, line, run

SOCKS = VariantKey("socks-1", "White", "Free")


def next_week():
    return utcnow() + timedelta(days=7)


def cart_for(core, user_id, key=TEE_M, quantity=1):
    return run(core.carts.add_item(user_id, line(key, quantity)))


def rejection(exc_info):
    return exc_info.value.reason


def test_discount_is_clamped_to_subtotal(core):
    run(core.ledger.upsert_variant(VariantDB(
        product_id=SOCKS.product_id, color=SOCKS.color, size=SOCKS.size, price=30, stock=10,
    )))
    cart = cart_for(core, "user-1", SOCKS)
    run(core.coupons.create("SAVE50", 50, next_week()))

    result = run(core.coupons.apply(cart["_id"], "user-1", code="SAVE50"))
    assert result["discount_applied"] == 30.0
    assert result["new_total"] == 99.0
    assert result["cart"]["coupon_code"] == "SAVE50"
    assert result["cart"]["discount_applied"] is True


def test_apply_by_id(core):
    cart = cart_for(core, "user-1")
    coupon = run(core.coupons.create("FLAT100", 100, next_week()))
    result = run(core.coupons.apply(cart["_id"], "user-1", coupon_id=coupon["_id"]))
    assert result["new_total"] == 498.5


def test_same_user_cannot_use_a_coupon_twice(core):
    cart = cart_for(core, "user-1")
    run(core.coupons.create("ONCE", 10, next_week()))
    run(core.coupons.apply(cart["_id"], "user-1", code="ONCE"))

    with pytest.raises(CouponRejected) as exc:
        run(core.coupons.apply(cart["_id"], "user-1", code="ONCE"))
    assert rejection(exc) == CouponRejected.ALREADY_USED_BY_USER
    assert exc.value.status_code == 400


def test_second_coupon_on_a_discounted_cart_is_rejected(core):
    cart = cart_for(core, "user-1")
    run(core.coupons.create("FIRST", 10, next_week()))
    run(core.coupons.create("SECOND", 20, next_week()))
    run(core.coupons.apply(cart["_id"], "user-1", code="FIRST"))

    with pytest.raises(CouponRejected) as exc:
        run(core.coupons.apply(cart["_id"], "user-1", code="SECOND"))
    assert rejection(exc) == CouponRejected.ALREADY_DISCOUNTED
    assert run(core.coupons.get_by_code("SECOND"))["used_by"] == []


def test_unknown_coupon(core):
    cart = cart_for(core, "user-1")
    with pytest.raises(CouponRejected) as exc:
        run(core.coupons.apply(cart["_id"], "user-1", code="NOPE"))
    assert rejection(exc) == CouponRejected.NOT_FOUND
    assert exc.value.status_code == 404


def test_user_restricted_coupon(core):
    run(core.coupons.create_for_user("user-2", "VIP2", 25, next_week()))

    cart = cart_for(core, "user-1")
    with pytest.raises(CouponRejected) as exc:
        run(core.coupons.apply(cart["_id"], "user-1", code="VIP2"))
    assert rejection(exc) == CouponRejected.NOT_ELIGIBLE_FOR_USER
    assert exc.value.status_code == 403

    cart = cart_for(core, "user-2", HOODIE_M)
    run(core.coupons.apply(cart["_id"], "user-2", code="VIP2"))
    coupon = run(core.coupons.get_by_code("VIP2"))
    assert coupon["created_for"][0]["is_used"] is True
    assert coupon["used_by"] == ["user-2"]


def test_promotion_usage_limit(core):
    run(core.coupons.create_promotion("LAUNCH", 15, next_week(), max_usage=1))
    first = cart_for(core, "user-1")
    second = cart_for(core, "user-2", HOODIE_M)

    run(core.coupons.apply(first["_id"], "user-1", code="LAUNCH"))
    with pytest.raises(CouponRejected) as exc:
        run(core.coupons.apply(second["_id"], "user-2", code="LAUNCH"))
    assert rejection(exc) == CouponRejected.USAGE_LIMIT_REACHED


def test_promotion_defaults_to_one_use(core):
    coupon = run(core.coupons.create_promotion("ONEOFF", 15, next_week()))
    assert coupon["max_usage"] == 1


def test_expired_then_swept_coupon(core):
    coupon = run(core.coupons.create("OLD", 10, next_week()))
    core.coupons.coupons.coupons[coupon["_id"]]["expiry_date"] = utcnow() - timedelta(minutes=1)
    cart = cart_for(core, "user-1")

    with pytest.raises(CouponRejected) as exc:
        run(core.coupons.apply(cart["_id"], "user-1", code="OLD"))
    assert rejection(exc) == CouponRejected.EXPIRED

    assert run(core.coupons.sweep_expired()) == 1
    assert run(core.coupons.sweep_expired()) == 0
    with pytest.raises(CouponRejected) as exc:
        run(core.coupons.apply(cart["_id"], "user-1", code="OLD"))
    assert rejection(exc) == CouponRejected.INACTIVE


def test_empty_cart_does_not_consume_coupon(core):
    cart_for(core, "user-1")
    cart = run(core.carts.delete_item("user-1", TEE_M))
    run(core.coupons.create("EMPTY", 10, next_week()))

    with pytest.raises(ValidationException):
        run(core.coupons.apply(cart["_id"], "user-1", code="EMPTY"))
    assert run(core.coupons.get_by_code("EMPTY"))["used_by"] == []


def test_cannot_discount_someone_elses_cart(core):
    cart = cart_for(core, "user-1")
    run(core.coupons.create("MINE", 10, next_week()))
    with pytest.raises(ForbiddenException):
        run(core.coupons.apply(cart["_id"], "user-2", code="MINE"))


def test_usage_is_restored_when_cart_write_fails(core, monkeypatch):
    cart = cart_for(core, "user-1")
    run(core.coupons.create("FLAKY", 10, next_week()))

    async def broken(*args, **kwargs):
        raise RuntimeError("cart store unavailable")

    monkeypatch.setattr(core.carts, "set_discount", broken)
    with pytest.raises(RuntimeError):
        run(core.coupons.apply(cart["_id"], "user-1", code="FLAKY"))
    assert run(core.coupons.get_by_code("FLAKY"))["used_by"] == []


def test_create_validations(core):
    run(core.coupons.create("DUP", 10, next_week()))
    with pytest.raises(ConflictException):
        run(core.coupons.create("DUP", 20, next_week()))
    with pytest.raises(ValidationException):
        run(core.coupons.create("ZERO", 0, next_week()))
    with pytest.raises(ValidationException):
        run(core.coupons.create("PAST", 10, utcnow() - timedelta(days=1)))


def test_list_active_sorted_by_expiry(core):
    run(core.coupons.create("LATER", 10, utcnow() + timedelta(days=9)))
    run(core.coupons.create("SOONER", 10, utcnow() + timedelta(days=2)))
    hidden = run(core.coupons.create("HIDDEN", 10, next_week()))
    run(core.coupons.update(hidden["_id"], [ActiveChange(field="isActive", value=False)]))

    assert [c["code"] for c in run(core.coupons.list_active())] == ["SOONER", "LATER"]


def test_allow_listed_updates(core):
    coupon = run(core.coupons.create("EDIT", 10, next_week()))
    new_expiry = utcnow() + timedelta(days=30)
    updated = run(core.coupons.update(coupon["_id"], [
        AmountChange(field="amount", value=75),
        ExpiryDateChange(field="expiryDate", value=new_expiry),
        MaxUsageChange(field="maxUsage", value=3),
    ]))
    assert updated["amount"] == 75
    assert updated["expiry_date"] == new_expiry
    assert updated["max_usage"] == 3


def test_update_rejections(core):
    restricted = run(core.coupons.create_for_user("user-1", "JUSTYOU", 10, next_week()))
    with pytest.raises(ValidationException):
        run(core.coupons.update(restricted["_id"], [MaxUsageChange(field="maxUsage", value=2)]))
    with pytest.raises(ValidationException):
        run(core.coupons.update(restricted["_id"], [
            ExpiryDateChange(field="expiryDate", value=utcnow() - timedelta(days=1)),
        ]))
    with pytest.raises(ValidationException):
        run(core.coupons.update(restricted["_id"], []))
    with pytest.raises(NotFoundException):
        run(core.coupons.update("missing", [AmountChange(field="amount", value=5)]))
