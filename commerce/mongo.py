"""MongoDB repositories (motor).

Every guarded mutation is a single ``find_one_and_update``/``update_one``
whose filter carries the precondition.
"""

import logging
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from commerce.models import CouponScope, PaymentStatus, OPEN_PAYMENT_STATUSES, CART_HOLDING_STATUSES
from commerce.repository import (
    DuplicateRecord, VariantRepository, CartRepository, CouponRepository,
    PaymentRepository, OrderRepository, TokenRepository,
)
from shared.utils import utcnow

logger = logging.getLogger("commerce-service")


async def ensure_indexes(db: AsyncIOMotorDatabase):
    await db.variants.create_index(
        [("product_id", ASCENDING), ("color", ASCENDING), ("size", ASCENDING)], unique=True
    )
    await db.stock_movements.create_index([("product_id", ASCENDING), ("created_at", DESCENDING)])
    await db.carts.create_index("user_id", unique=True)
    await db.carts.create_index("updated_at")
    await db.coupons.create_index("code", unique=True)
    await db.coupons.create_index([("is_active", ASCENDING), ("expiry_date", ASCENDING)])
    await db.payments.create_index("transaction_id", unique=True)
    await db.payments.create_index("order_ref", unique=True)
    await db.payments.create_index([("status", ASCENDING), ("expire_at", ASCENDING)])
    await db.payments.create_index("cart_id")
    await db.orders.create_index("transaction_id", unique=True)
    await db.orders.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
    await db.tokens.create_index("expires_at", expireAfterSeconds=0)
    logger.info("MongoDB indexes ensured")


class MongoVariantRepository(VariantRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.variants
        self.movement_collection = db.stock_movements

    async def get(self, key):
        return await self.collection.find_one(key.as_filter())

    async def upsert(self, doc):
        fields = {k: v for k, v in doc.items() if k != "_id"}
        return await self.collection.find_one_and_update(
            {"product_id": doc["product_id"], "color": doc["color"], "size": doc["size"]},
            {"$set": fields, "$setOnInsert": {"_id": doc["_id"]}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    async def adjust_stock(self, key, delta):
        query = key.as_filter()
        if delta < 0:
            query["stock"] = {"$gte": -delta}
        return await self.collection.find_one_and_update(
            query,
            {"$inc": {"stock": delta}, "$set": {"updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    async def record_movement(self, doc):
        await self.movement_collection.insert_one(doc)

    async def movements(self, key):
        cursor = self.movement_collection.find(key.as_filter()).sort("created_at", ASCENDING)
        return [doc async for doc in cursor]


class MongoCartRepository(CartRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.carts

    async def get(self, cart_id):
        return await self.collection.find_one({"_id": cart_id})

    async def get_by_user(self, user_id):
        return await self.collection.find_one({"user_id": user_id})

    async def insert(self, doc):
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateRecord(f"cart for user {doc['user_id']}")
        return doc

    async def replace(self, doc, expected_version):
        replacement = dict(doc, version=expected_version + 1)
        result = await self.collection.replace_one(
            {"_id": doc["_id"], "version": expected_version}, replacement
        )
        if result.matched_count != 1:
            return False
        doc["version"] = expected_version + 1
        return True

    async def list_idle(self, updated_before):
        cursor = self.collection.find({"updated_at": {"$lt": updated_before}, "items.0": {"$exists": True}})
        return [doc async for doc in cursor]


class MongoCouponRepository(CouponRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.coupons

    async def get(self, coupon_id):
        return await self.collection.find_one({"_id": coupon_id})

    async def get_by_code(self, code):
        return await self.collection.find_one({"code": code})

    async def insert(self, doc):
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateRecord(f"coupon {doc['code']}")
        return doc

    async def list_active(self, now):
        cursor = self.collection.find({"is_active": True, "expiry_date": {"$gte": now}}).sort("expiry_date", ASCENDING)
        return [doc async for doc in cursor]

    async def consume(self, coupon, user_id, now):
        query = {
            "_id": coupon["_id"],
            "is_active": True,
            "expiry_date": {"$gte": now},
            "used_by": {"$ne": user_id},
        }
        update = {"$push": {"used_by": user_id}, "$set": {"updated_at": now}}
        if coupon["scope"] == CouponScope.USER_RESTRICTED.value:
            query["created_for"] = {"$elemMatch": {"user_id": user_id, "is_used": False}}
            update["$set"]["created_for.$.is_used"] = True
        if coupon.get("max_usage") is not None:
            query["$expr"] = {"$lt": [{"$size": "$used_by"}, "$max_usage"]}
        result = await self.collection.update_one(query, update)
        return result.modified_count == 1

    async def restore(self, coupon_id, user_id):
        await self.collection.update_one(
            {"_id": coupon_id},
            {
                "$pull": {"used_by": user_id},
                "$set": {"created_for.$[entry].is_used": False, "updated_at": utcnow()},
            },
            array_filters=[{"entry.user_id": user_id}],
        )

    async def update_fields(self, coupon_id, fields):
        return await self.collection.find_one_and_update(
            {"_id": coupon_id}, {"$set": fields}, return_document=ReturnDocument.AFTER
        )

    async def deactivate_expired(self, now):
        result = await self.collection.update_many(
            {"is_active": True, "expiry_date": {"$lt": now}},
            {"$set": {"is_active": False, "updated_at": now}},
        )
        return result.modified_count


class MongoPaymentRepository(PaymentRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.payments

    async def insert(self, doc):
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateRecord(f"payment {doc['transaction_id']}")
        return doc

    async def get(self, reference_id):
        return await self.collection.find_one({"_id": reference_id})

    async def find_by_transaction_id(self, transaction_id):
        return await self.collection.find_one({"transaction_id": transaction_id})

    async def find_by_order_ref(self, order_ref):
        return await self.collection.find_one({"order_ref": order_ref})

    async def transition(self, reference_id, from_statuses, fields):
        return await self.collection.find_one_and_update(
            {"_id": reference_id, "status": {"$in": list(from_statuses)}},
            {"$set": fields},
            return_document=ReturnDocument.BEFORE,
        )

    async def update(self, reference_id, fields, inc=None):
        update = {"$set": fields}
        if inc:
            update["$inc"] = inc
        return await self.collection.find_one_and_update(
            {"_id": reference_id}, update, return_document=ReturnDocument.AFTER
        )

    async def list_open_expired(self, now):
        cursor = self.collection.find({"status": {"$in": list(OPEN_PAYMENT_STATUSES)}, "expire_at": {"$lt": now}})
        return [doc async for doc in cursor]

    async def list_completed_without_order(self):
        cursor = self.collection.find({"status": PaymentStatus.COMPLETED.value, "order_id": None})
        return [doc async for doc in cursor]

    async def has_open_payment(self, cart_id):
        doc = await self.collection.find_one(
            {"cart_id": cart_id, "order_id": None, "status": {"$in": list(CART_HOLDING_STATUSES)}}, {"_id": 1}
        )
        return doc is not None

    async def list_by_user(self, user_id):
        cursor = self.collection.find({"user_id": user_id}).sort("created_at", DESCENDING)
        return [doc async for doc in cursor]


class MongoOrderRepository(OrderRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.orders

    async def insert(self, doc):
        try:
            await self.collection.insert_one(doc)
        except DuplicateKeyError:
            raise DuplicateRecord(f"order for transaction {doc['transaction_id']}")
        return doc

    async def get(self, order_id):
        return await self.collection.find_one({"_id": order_id})

    async def find_by_transaction_id(self, transaction_id):
        return await self.collection.find_one({"transaction_id": transaction_id})

    async def transition(self, order_id, from_statuses, fields, exclude_payment_status=None):
        query = {"_id": order_id, "status": {"$in": list(from_statuses)}}
        if exclude_payment_status:
            query["payment_status"] = {"$ne": exclude_payment_status}
        return await self.collection.find_one_and_update(
            query, {"$set": fields}, return_document=ReturnDocument.BEFORE
        )

    async def list_by_user(self, user_id, skip=0, limit=20):
        cursor = self.collection.find({"user_id": user_id}).sort("created_at", DESCENDING).skip(skip).limit(limit)
        return [doc async for doc in cursor]


class MongoTokenRepository(TokenRepository):
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db.tokens

    async def put(self, doc):
        await self.collection.replace_one({"_id": doc["_id"]}, doc, upsert=True)

    async def get(self, jti):
        return await self.collection.find_one({"_id": jti})

    async def revoke(self, jti, user_id, expires_at):
        try:
            result = await self.collection.update_one(
                {"_id": jti, "revoked": {"$ne": True}},
                {
                    "$set": {"revoked": True},
                    "$setOnInsert": {
                        "user_id": user_id,
                        "kind": "revoked",
                        "expires_at": expires_at,
                        "created_at": utcnow(),
                    },
                },
                upsert=True,
            )
        except DuplicateKeyError:
            # Already present and revoked
            return False
        return result.modified_count == 1 or result.upserted_id is not None
