from datetime import timedelta
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorClient

from commerce.cart import CartService
from commerce.collaborators import NotificationService, InvoiceService, build_notifier, build_invoicer
from commerce.coupons import CouponEngine
from commerce.gateways.registry import GatewayRegistry, build_gateways
from commerce.inventory import InventoryLedger
from commerce import memory, mongo
from commerce.orders import OrderService
from commerce.payments import PaymentReconciliationEngine
from commerce.repository import (
    VariantRepository, CartRepository, CouponRepository, PaymentRepository,
    OrderRepository, TokenRepository,
)
from commerce.scheduler import Scheduler, PeriodicTask
from commerce.tokens import TokenStore
from shared.utils import settings, get_db_client, utcnow


class CommerceCore:
    """Wires repositories, gateways and collaborators into the services."""

    def __init__(self, variants: VariantRepository, carts: CartRepository, coupons: CouponRepository,
                 payments: PaymentRepository, orders: OrderRepository, tokens: TokenRepository,
                 gateways: GatewayRegistry, notifier: NotificationService, invoicer: InvoiceService,
                 client: Optional[AsyncIOMotorClient] = None):
        self.client = client
        self.gateways = gateways
        self.ledger = InventoryLedger(variants)
        self.carts = CartService(carts, self.ledger, settings.SHIPPING_FEE_PER_ITEM)
        self.coupons = CouponEngine(coupons, self.carts)
        self.orders = OrderService(orders, self.ledger, notifier, invoicer, payments)
        self.payments = PaymentReconciliationEngine(
            payments, gateways, self.carts, self.orders,
            session_ttl_minutes=settings.PAYMENT_SESSION_TTL_MINUTES,
            currency=settings.CURRENCY,
        )
        self.tokens = TokenStore(tokens)

    async def expire_idle_carts(self, ttl_minutes: int = settings.CART_RESERVATION_TTL_MINUTES) -> int:
        if ttl_minutes <= 0:
            return 0
        cutoff = utcnow() - timedelta(minutes=ttl_minutes)
        return await self.carts.expire_idle(cutoff, self.payments.has_open_payment)

    def build_scheduler(self) -> Scheduler:
        scheduler = Scheduler([
            PeriodicTask("coupon_sweep", self.coupons.sweep_expired,
                         settings.COUPON_SWEEP_INTERVAL_SECONDS, run_at_start=True),
            PeriodicTask("payment_sweep", self.payments.reconcile,
                         settings.PAYMENT_SWEEP_INTERVAL_SECONDS),
        ])
        if settings.CART_RESERVATION_TTL_MINUTES > 0:
            scheduler.add(PeriodicTask("cart_expiry", self.expire_idle_carts,
                                       settings.PAYMENT_SWEEP_INTERVAL_SECONDS))
        return scheduler

    async def ping(self) -> str:
        if self.client is None:
            return "in-memory"
        try:
            await self.client.admin.command("ping")
            return "connected"
        except Exception:
            return "disconnected"

    def close(self):
        if self.client is not None:
            self.client.close()


async def build_mongo_core(client: Optional[AsyncIOMotorClient] = None,
                           db_name: str = settings.MONGO_DB_NAME) -> CommerceCore:
    client = client or get_db_client()
    db = client[db_name]
    await mongo.ensure_indexes(db)
    return CommerceCore(
        variants=mongo.MongoVariantRepository(db),
        carts=mongo.MongoCartRepository(db),
        coupons=mongo.MongoCouponRepository(db),
        payments=mongo.MongoPaymentRepository(db),
        orders=mongo.MongoOrderRepository(db),
        tokens=mongo.MongoTokenRepository(db),
        gateways=build_gateways(),
        notifier=build_notifier(),
        invoicer=build_invoicer(),
        client=client,
    )


def build_memory_core(gateways: Optional[GatewayRegistry] = None,
                      notifier: Optional[NotificationService] = None,
                      invoicer: Optional[InvoiceService] = None) -> CommerceCore:
    return CommerceCore(
        variants=memory.MemoryVariantRepository(),
        carts=memory.MemoryCartRepository(),
        coupons=memory.MemoryCouponRepository(),
        payments=memory.MemoryPaymentRepository(),
        orders=memory.MemoryOrderRepository(),
        tokens=memory.MemoryTokenRepository(),
        gateways=gateways or build_gateways(),
        notifier=notifier or build_notifier(""),
        invoicer=invoicer or build_invoicer(""),
    )
