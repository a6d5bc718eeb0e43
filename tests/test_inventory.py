import asyncio

import pytest

from commerce.models import VariantKey
from shared.utils import InsufficientStockException, NotFoundException, ValidationException

from conftest import TEE_M, TEE_L, run, stock_of


def test_reserve_decrements_stock(core):
    run(core.ledger.reserve(TEE_M, 2, ref="cart-1"))
    assert stock_of(core, TEE_M) == 3


def test_reserve_more_than_available_is_rejected_without_change(core):
    with pytest.raises(InsufficientStockException) as exc:
        run(core.ledger.reserve(TEE_L, 4))
    assert exc.value.available == 3
    assert exc.value.status_code == 409
    assert "size L" in exc.value.detail
    assert stock_of(core, TEE_L) == 3


def test_reserve_requires_positive_quantity(core):
    with pytest.raises(ValidationException):
        run(core.ledger.reserve(TEE_M, 0))


def test_unknown_variant_is_not_found(core):
    with pytest.raises(NotFoundException):
        run(core.ledger.reserve(VariantKey("nope", "Red", "XL"), 1))


def test_release_credits_stock(core):
    run(core.ledger.reserve(TEE_M, 5))
    run(core.ledger.release(TEE_M, 2))
    assert stock_of(core, TEE_M) == 2


def test_release_of_missing_variant_is_skipped(core):
    assert run(core.ledger.release(VariantKey("gone", "Red", "S"), 1)) is None


def test_concurrent_reserves_never_oversell(core):
    async def scenario():
        return await asyncio.gather(
            *(core.ledger.reserve(TEE_M, 1, ref=f"cart-{i}") for i in range(10)),
            return_exceptions=True,
        )

    results = run(scenario())
    failures = [r for r in results if isinstance(r, InsufficientStockException)]
    assert len(results) - len(failures) == 5
    assert len(failures) == 5
    assert stock_of(core, TEE_M) == 0


def test_movements_are_recorded(core):
    run(core.ledger.reserve(TEE_M, 2, reason="cart_reserve", ref="cart-9"))
    run(core.ledger.release(TEE_M, 1, reason="cart_release", ref="cart-9"))

    movements = run(core.ledger.movements(TEE_M))
    assert [(m["delta"], m["reason"], m["ref"]) for m in movements] == [
        (-2, "cart_reserve", "cart-9"),
        (1, "cart_release", "cart-9"),
    ]
