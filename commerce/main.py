from fastapi import FastAPI, Depends, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import List

from shared.utils import (
    settings, SuccessResponse, ErrorResponse, HealthResponse, AppException,
    AuthenticatedUser, ForbiddenException, UnauthorizedException, require_auth, utcnow,
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter

from commerce.cart import cart_summary
from commerce.core import CommerceCore, build_mongo_core
from commerce.models import AddressDB, VariantDB, VariantKey
from commerce.orders import CANCELLATION_REASONS
from commerce.schemas import (
    from_doc, VariantUpsert, VariantResponse, CartReplace, CartItemAdd, CartQuantityUpdate,
    CartItemKey, AddressUpdate, CartResponse, CartTotalResponse, CouponApply, CouponApplyResponse,
    CouponCreate, PromotionCouponCreate, UserCouponCreate, CouponUpdate, CouponResponse,
    PaymentCreate, PaymentResponse, WebhookAck, SweepResponse, OrderCancel, OrderStatusUpdate,
    OrderResponse, CancellationReasonsResponse, RefreshTokenRequest, LogoutRequest, TokenResponse,
)

SERVICE_NAME = "commerce-service"

# Setup Logging
logger = setup_logging(SERVICE_NAME, settings.LOG_LEVEL)

app = FastAPI(title="Commerce Service")

# Security Setup
setup_rate_limiting(app, enabled=settings.RATE_LIMIT_ENABLED)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_core():
    # Tests install an in-memory core before the app starts
    if getattr(app.state, "core", None) is None:
        app.state.core = await build_mongo_core()
    app.state.scheduler = None
    if settings.BACKGROUND_JOBS_ENABLED:
        app.state.scheduler = app.state.core.build_scheduler()
        app.state.scheduler.start()


@app.on_event("shutdown")
async def shutdown_core():
    if getattr(app.state, "scheduler", None):
        await app.state.scheduler.stop()
    app.state.core.close()


# --- Error Handling ---

@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    body = ErrorResponse(error=exc.detail, details={"code": exc.code, **exc.extra})
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(), headers=exc.headers)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled error: {exc}",
        extra={"request_id": getattr(request.state, "request_id", None), "path": request.url.path},
        exc_info=exc,
    )
    body = ErrorResponse(error="Internal server error", details={"code": "InternalError"})
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=body.model_dump())


# --- Dependencies ---

def get_core(request: Request) -> CommerceCore:
    return request.app.state.core


async def get_current_user(request: Request, user: AuthenticatedUser = Depends(require_auth),
                           core: CommerceCore = Depends(get_core)) -> AuthenticatedUser:
    if await core.tokens.is_revoked(user.jti):
        raise UnauthorizedException("Token has been revoked")
    request.state.user_id = user.id
    return user


async def require_admin(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
    if not user.is_admin:
        raise ForbiddenException("Admin access required")
    return user


def ensure_self(user: AuthenticatedUser, user_id: str):
    if not user.is_admin and user.id != user_id:
        raise ForbiddenException("Not authorized to act for another user")


# --- Auth ---

@app.post("/auth/refresh", response_model=SuccessResponse[TokenResponse])
@limiter.limit("10/minute")
async def refresh_token(body: RefreshTokenRequest, request: Request, core: CommerceCore = Depends(get_core)):
    tokens = await core.tokens.rotate(body.refresh_token)
    return SuccessResponse(data=TokenResponse(**tokens))


@app.post("/auth/logout", response_model=SuccessResponse[dict])
async def logout(body: LogoutRequest, user: AuthenticatedUser = Depends(get_current_user),
                 core: CommerceCore = Depends(get_core)):
    await core.tokens.logout(user, body.refresh_token)
    return SuccessResponse(message="Logged out successfully")


# --- Inventory ---

@app.put("/inventory/variants", response_model=SuccessResponse[VariantResponse])
async def upsert_variant(body: VariantUpsert, admin: AuthenticatedUser = Depends(require_admin),
                         core: CommerceCore = Depends(get_core)):
    saved = await core.ledger.upsert_variant(VariantDB(**body.model_dump()))
    return SuccessResponse(data=from_doc(VariantResponse, saved), message="Variant saved")


@app.get("/inventory/variants/{product_id}/{color}/{size}", response_model=SuccessResponse[VariantResponse])
@limiter.limit("60/minute")
async def get_variant(product_id: str, color: str, size: str, request: Request,
                      core: CommerceCore = Depends(get_core)):
    variant = await core.ledger.get_variant(VariantKey(product_id, color, size))
    return SuccessResponse(data=from_doc(VariantResponse, variant))


# --- Cart ---

@app.post("/cart", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def replace_cart(body: CartReplace, request: Request, user: AuthenticatedUser = Depends(get_current_user),
                       core: CommerceCore = Depends(get_core)):
    ensure_self(user, body.user_id)
    cart = await core.carts.replace_items(body.user_id, [i.model_dump() for i in body.items])
    return SuccessResponse(data=from_doc(CartResponse, cart), message="Cart updated")


@app.post("/cart/items", response_model=SuccessResponse[CartResponse], status_code=status.HTTP_201_CREATED)
@limiter.limit("60/minute")
async def add_to_cart(body: CartItemAdd, request: Request, user: AuthenticatedUser = Depends(get_current_user),
                      core: CommerceCore = Depends(get_core)):
    ensure_self(user, body.user_id)
    cart = await core.carts.add_item(body.user_id, body.model_dump(exclude={"user_id"}))
    return SuccessResponse(data=from_doc(CartResponse, cart), message="Item added to cart")


@app.put("/cart/items/quantity", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def update_cart_quantity(body: CartQuantityUpdate, request: Request,
                               user: AuthenticatedUser = Depends(get_current_user),
                               core: CommerceCore = Depends(get_core)):
    ensure_self(user, body.user_id)
    key = VariantKey(body.product_id, body.color, body.size)
    cart = await core.carts.update_quantity(body.user_id, key, body.quantity)
    return SuccessResponse(data=from_doc(CartResponse, cart), message="Cart quantity updated")


@app.delete("/cart/items", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def delete_cart_item(body: CartItemKey, request: Request, user: AuthenticatedUser = Depends(get_current_user),
                           core: CommerceCore = Depends(get_core)):
    ensure_self(user, body.user_id)
    cart = await core.carts.delete_item(body.user_id, VariantKey(body.product_id, body.color, body.size))
    return SuccessResponse(data=from_doc(CartResponse, cart), message="Item removed from cart")


@app.put("/cart/{user_id}/address", response_model=SuccessResponse[CartResponse])
async def update_cart_address(user_id: str, body: AddressUpdate,
                              user: AuthenticatedUser = Depends(get_current_user),
                              core: CommerceCore = Depends(get_core)):
    ensure_self(user, user_id)
    address = AddressDB(
        street=body.street,
        city=body.city,
        state=body.state,
        pincode=body.pincode,
        country=body.country or settings.DEFAULT_COUNTRY,
        phone_number=body.phone_number or "",
    )
    cart = await core.carts.set_address(user_id, address)
    return SuccessResponse(data=from_doc(CartResponse, cart), message="Address updated")


@app.get("/cart/{user_id}", response_model=SuccessResponse[CartResponse])
@limiter.limit("60/minute")
async def get_cart(user_id: str, request: Request, user: AuthenticatedUser = Depends(get_current_user),
                   core: CommerceCore = Depends(get_core)):
    ensure_self(user, user_id)
    cart = await core.carts.get_cart(user_id)
    return SuccessResponse(data=from_doc(CartResponse, cart))


@app.get("/cart/{user_id}/total", response_model=SuccessResponse[CartTotalResponse])
@limiter.limit("60/minute")
async def get_cart_total(user_id: str, request: Request, user: AuthenticatedUser = Depends(get_current_user),
                         core: CommerceCore = Depends(get_core)):
    ensure_self(user, user_id)
    cart = await core.carts.find_cart(user_id)
    return SuccessResponse(data=CartTotalResponse(**cart_summary(user_id, cart)))


# --- Coupons ---

@app.post("/coupons/apply", response_model=SuccessResponse[CouponApplyResponse])
@limiter.limit("20/minute")
async def apply_coupon(body: CouponApply, request: Request, user: AuthenticatedUser = Depends(get_current_user),
                       core: CommerceCore = Depends(get_core)):
    ensure_self(user, body.user_id)
    result = await core.coupons.apply(body.cart_id, body.user_id, code=body.coupon_code, coupon_id=body.coupon_id)
    return SuccessResponse(
        data=CouponApplyResponse(
            cart=from_doc(CartResponse, result["cart"]),
            discount_applied=result["discount_applied"],
            new_total=result["new_total"],
        ),
        message="Coupon applied successfully",
    )


@app.post("/coupons", response_model=SuccessResponse[CouponResponse], status_code=status.HTTP_201_CREATED)
async def create_coupon(body: CouponCreate, admin: AuthenticatedUser = Depends(require_admin),
                        core: CommerceCore = Depends(get_core)):
    coupon = await core.coupons.create(body.coupon_code, body.coupon_amount, body.expiry_date)
    return SuccessResponse(data=from_doc(CouponResponse, coupon), message="Coupon created")


@app.post("/coupons/promotion", response_model=SuccessResponse[CouponResponse],
          status_code=status.HTTP_201_CREATED)
async def create_promotion_coupon(body: PromotionCouponCreate, admin: AuthenticatedUser = Depends(require_admin),
                                  core: CommerceCore = Depends(get_core)):
    coupon = await core.coupons.create_promotion(
        body.coupon_code, body.coupon_amount, body.expiry_date, body.max_usage,
    )
    return SuccessResponse(data=from_doc(CouponResponse, coupon), message="Promotion coupon created")


@app.post("/coupons/user", response_model=SuccessResponse[CouponResponse], status_code=status.HTTP_201_CREATED)
async def create_user_coupon(body: UserCouponCreate, admin: AuthenticatedUser = Depends(require_admin),
                             core: CommerceCore = Depends(get_core)):
    coupon = await core.coupons.create_for_user(
        body.user_id, body.coupon_code, body.coupon_amount, body.expiry_date,
    )
    return SuccessResponse(data=from_doc(CouponResponse, coupon), message="User coupon created")


@app.get("/coupons/active", response_model=SuccessResponse[List[CouponResponse]])
@limiter.limit("60/minute")
async def list_active_coupons(request: Request, core: CommerceCore = Depends(get_core)):
    coupons = await core.coupons.list_active()
    return SuccessResponse(data=[from_doc(CouponResponse, c) for c in coupons])


@app.get("/coupons/{code}", response_model=SuccessResponse[CouponResponse])
@limiter.limit("60/minute")
async def get_coupon(code: str, request: Request, core: CommerceCore = Depends(get_core)):
    coupon = await core.coupons.get_by_code(code)
    return SuccessResponse(data=from_doc(CouponResponse, coupon))


@app.patch("/coupons/{coupon_id}", response_model=SuccessResponse[CouponResponse])
async def update_coupon(coupon_id: str, body: CouponUpdate, admin: AuthenticatedUser = Depends(require_admin),
                        core: CommerceCore = Depends(get_core)):
    coupon = await core.coupons.update(coupon_id, body.changes)
    return SuccessResponse(data=from_doc(CouponResponse, coupon), message="Coupon updated")


# --- Payments ---

@app.post("/payments", response_model=SuccessResponse[PaymentResponse])
@limiter.limit("10/minute")
async def initiate_payment(body: PaymentCreate, request: Request,
                           user: AuthenticatedUser = Depends(get_current_user),
                           core: CommerceCore = Depends(get_core)):
    ensure_self(user, body.user_id)
    payment = await core.payments.initiate(
        user, body.cart_id, body.payment_method, body.amount,
        customer_phone=body.customer_phone, customer_email=body.customer_email,
    )
    return SuccessResponse(
        data=from_doc(PaymentResponse, payment, "payment_reference_id"),
        message="Payment initiated",
    )


@app.post("/payments/webhook/{gateway}", response_model=WebhookAck)
async def payment_webhook(gateway: str, request: Request, core: CommerceCore = Depends(get_core)):
    raw_body = await request.body()
    try:
        result = await core.payments.handle_webhook(gateway, raw_body, request.headers)
    except Exception:
        # Still acknowledge; the reconciliation sweep settles the payment later
        logger.error("Webhook processing failed", extra={"gateway": gateway, "event": "webhook_error"},
                     exc_info=True)
        return WebhookAck(success=False, outcome="pending",
                          message="Webhook received, processing will be retried")
    return WebhookAck(**result)


@app.get("/payments", response_model=SuccessResponse[List[PaymentResponse]])
async def list_payments(user: AuthenticatedUser = Depends(get_current_user),
                        core: CommerceCore = Depends(get_core)):
    payments = await core.payments.list_for_user(user.id)
    return SuccessResponse(data=[from_doc(PaymentResponse, p, "payment_reference_id") for p in payments])


@app.get("/payments/{payment_reference_id}", response_model=SuccessResponse[PaymentResponse])
@limiter.limit("60/minute")
async def get_payment(payment_reference_id: str, request: Request,
                      user: AuthenticatedUser = Depends(get_current_user),
                      core: CommerceCore = Depends(get_core)):
    payment = await core.payments.get_payment(payment_reference_id, user)
    return SuccessResponse(data=from_doc(PaymentResponse, payment, "payment_reference_id"))


@app.post("/payments/{payment_reference_id}/verify", response_model=SuccessResponse[PaymentResponse])
@limiter.limit("20/minute")
async def verify_payment(payment_reference_id: str, request: Request,
                         user: AuthenticatedUser = Depends(get_current_user),
                         core: CommerceCore = Depends(get_core)):
    payment = await core.payments.verify(payment_reference_id, user)
    return SuccessResponse(data=from_doc(PaymentResponse, payment, "payment_reference_id"))


# --- Orders ---

@app.get("/orders", response_model=SuccessResponse[List[OrderResponse]])
async def list_orders(
    user: AuthenticatedUser = Depends(get_current_user),
    core: CommerceCore = Depends(get_core),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100)
):
    orders = await core.orders.list_by_user(user.id, page, limit)
    return SuccessResponse(data=[from_doc(OrderResponse, o, "order_id") for o in orders])


@app.get("/orders/cancellation-reasons", response_model=SuccessResponse[CancellationReasonsResponse])
async def cancellation_reasons():
    return SuccessResponse(data=CancellationReasonsResponse(reasons=CANCELLATION_REASONS))


@app.get("/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(order_id: str, user: AuthenticatedUser = Depends(get_current_user),
                    core: CommerceCore = Depends(get_core)):
    order = await core.orders.get(order_id, user)
    return SuccessResponse(data=from_doc(OrderResponse, order, "order_id"))


@app.post("/orders/{order_id}/cancel", response_model=SuccessResponse[OrderResponse])
async def cancel_order(order_id: str, body: OrderCancel, user: AuthenticatedUser = Depends(get_current_user),
                       core: CommerceCore = Depends(get_core)):
    order = await core.orders.cancel(order_id, body.reason, body.cancelled_by or user.role, user)
    return SuccessResponse(data=from_doc(OrderResponse, order, "order_id"), message="Order cancelled successfully")


@app.put("/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def update_order_status(order_id: str, body: OrderStatusUpdate,
                              admin: AuthenticatedUser = Depends(require_admin),
                              core: CommerceCore = Depends(get_core)):
    order = await core.orders.update_status(order_id, body.status, admin)
    return SuccessResponse(data=from_doc(OrderResponse, order, "order_id"))


# --- Maintenance ---

@app.post("/admin/sweeps", response_model=SuccessResponse[SweepResponse])
async def run_sweeps(admin: AuthenticatedUser = Depends(require_admin), core: CommerceCore = Depends(get_core)):
    summary = await core.payments.reconcile()
    summary["coupons_deactivated"] = await core.coupons.sweep_expired()
    summary["carts_released"] = await core.expire_idle_carts()
    return SuccessResponse(data=SweepResponse(**summary))


@app.get("/health", response_model=HealthResponse)
async def health_check(core: CommerceCore = Depends(get_core)):
    db_status = await core.ping()
    if db_status == "disconnected":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=ErrorResponse(error="Service Unhealthy", details={"database": db_status}).model_dump(),
        )
    return HealthResponse(
        service=SERVICE_NAME,
        status="healthy",
        timestamp=utcnow(),
        version="1.0.0",
        database=db_status,
        dependencies={"gateways": ", ".join(core.gateways.names())},
    )
