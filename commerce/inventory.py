import logging
from typing import Optional, List

from commerce.models import VariantKey, VariantDB, StockMovementDB, to_document
from commerce.repository import VariantRepository
from shared.utils import NotFoundException, ValidationException, InsufficientStockException, utcnow

logger = logging.getLogger("commerce-service")


class InventoryLedger:
    """Stock counter per (product, color, size).

    Callers only get ``reserve`` and ``release``; both are a single
    conditional write in the repository, so stock can never go negative.
    """

    def __init__(self, variants: VariantRepository):
        self.variants = variants

    async def get_variant(self, key: VariantKey) -> dict:
        variant = await self.variants.get(key)
        if not variant:
            raise NotFoundException(
                f"Variant not found for product {key.product_id} ({key.color}/{key.size})"
            )
        return variant

    async def upsert_variant(self, variant: VariantDB) -> dict:
        doc = to_document(variant)
        doc["updated_at"] = utcnow()
        saved = await self.variants.upsert(doc)
        logger.info(
            "Variant stock set",
            extra={"product_id": variant.product_id, "color": variant.color,
                   "size": variant.size, "quantity": variant.stock},
        )
        return saved

    async def reserve(self, key: VariantKey, quantity: int, reason: str = "cart_reserve",
                      ref: Optional[str] = None) -> dict:
        if quantity < 1:
            raise ValidationException("Quantity must be at least 1")
        updated = await self.variants.adjust_stock(key, -quantity)
        if updated is None:
            current = await self.get_variant(key)
            raise InsufficientStockException(
                f"Only {current['stock']} item(s) available in stock for size {key.size}",
                available=current["stock"],
            )
        await self._record(key, -quantity, reason, ref)
        return updated

    async def release(self, key: VariantKey, quantity: int, reason: str = "cart_release",
                      ref: Optional[str] = None) -> Optional[dict]:
        if quantity < 1:
            return None
        updated = await self.variants.adjust_stock(key, quantity)
        if updated is None:
            # The variant vanished from the catalog; nothing left to credit
            logger.warning(
                "Stock release skipped, variant missing",
                extra={"product_id": key.product_id, "color": key.color,
                       "size": key.size, "quantity": quantity},
            )
            return None
        await self._record(key, quantity, reason, ref)
        return updated

    async def movements(self, key: VariantKey) -> List[dict]:
        return await self.variants.movements(key)

    async def _record(self, key: VariantKey, delta: int, reason: str, ref: Optional[str]):
        movement = StockMovementDB(
            product_id=key.product_id, color=key.color, size=key.size,
            delta=delta, reason=reason, ref=ref,
        )
        await self.variants.record_movement(to_document(movement))
