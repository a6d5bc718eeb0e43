from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import datetime
from shared.security_config import sanitize_input
from commerce.coupons import CouponFieldChange
from commerce.models import OrderStatus


class CamelModel(BaseModel):
    """Wire models speak camelCase; Python code uses snake_case."""

    class Config:
        alias_generator = to_camel
        populate_by_name = True


def from_doc(model, doc: dict, id_field: str = "id"):
    data = dict(doc)
    data[id_field] = str(data.pop("_id"))
    return model.model_validate(data)


# --- Inventory ---

class VariantUpsert(CamelModel):
    product_id: str
    color: str
    size: str
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    designer_ref: Optional[str] = None
    product_name: Optional[str] = None
    sku: Optional[str] = None

    @field_validator('product_name')
    def sanitize_name(cls, v):
        return sanitize_input(v)


class VariantResponse(CamelModel):
    id: str
    product_id: str
    color: str
    size: str
    price: float
    stock: int
    designer_ref: Optional[str] = None
    product_name: Optional[str] = None
    sku: Optional[str] = None
    updated_at: Optional[datetime] = None


# --- Cart ---

class CartLine(CamelModel):
    product_id: str
    color: str
    size: str
    quantity: int = Field(..., gt=0)
    is_customizable: bool = False
    customizations: str = ""

    @field_validator('customizations')
    def sanitize_customizations(cls, v):
        return sanitize_input(v)


class CartItemAdd(CartLine):
    user_id: str


class CartReplace(CamelModel):
    user_id: str
    items: List[CartLine]


class CartItemKey(CamelModel):
    user_id: str
    product_id: str
    color: str
    size: str


class CartQuantityUpdate(CartItemKey):
    # Zero or less removes the line
    quantity: int


class AddressUpdate(CamelModel):
    street: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""
    country: Optional[str] = None
    phone_number: Optional[str] = None

    @field_validator('street', 'city', 'state', 'pincode', 'country', 'phone_number')
    def sanitize_fields(cls, v):
        return sanitize_input(v)


class AddressResponse(CamelModel):
    street: str
    city: str
    state: str
    pincode: str
    country: str
    phone_number: str = ""


class CartItemResponse(CamelModel):
    product_id: str
    color: str
    size: str
    quantity: int
    unit_price: float
    designer_ref: Optional[str] = None
    product_name: Optional[str] = None
    is_customizable: bool = False
    customizations: str = ""


class CartResponse(CamelModel):
    id: str
    user_id: str
    items: List[CartItemResponse]
    subtotal: float
    tax_amount: float
    shipping_cost: float
    discount_amount: float
    discount_applied: bool
    coupon_code: Optional[str] = None
    total_amount: float
    shipping_address: Optional[AddressResponse] = None
    status: str
    updated_at: datetime


class CartTotalResponse(CamelModel):
    user_id: str
    cart_id: Optional[str] = None
    total_amount: float
    subtotal: float
    discount_amount: float
    tax_amount: float
    shipping_cost: float
    item_count: int
    product_count: int
    is_empty: bool
    discount_applied: bool = False


# --- Coupons ---

class CouponApply(CamelModel):
    user_id: str
    cart_id: str
    coupon_code: Optional[str] = None
    coupon_id: Optional[str] = None


class CouponApplyResponse(CamelModel):
    cart: CartResponse
    discount_applied: float
    new_total: float


class CouponCreate(CamelModel):
    coupon_code: str = Field(..., min_length=1, max_length=64)
    coupon_amount: float = Field(..., gt=0)
    expiry_date: datetime

    @field_validator('coupon_code')
    def sanitize_code(cls, v):
        return sanitize_input(v)


class PromotionCouponCreate(CouponCreate):
    max_usage: Optional[int] = Field(None, ge=1)


class UserCouponCreate(CouponCreate):
    user_id: str


class CouponUpdate(CamelModel):
    changes: List[CouponFieldChange]


class CouponRecipientResponse(CamelModel):
    user_id: str
    is_used: bool
    expired_in: Optional[datetime] = None


class CouponResponse(CamelModel):
    id: str
    code: str
    amount: float
    expiry_date: datetime
    is_active: bool
    used_by: List[str]
    scope: str
    max_usage: Optional[int] = None
    created_for: List[CouponRecipientResponse] = []
    created_at: datetime


# --- Payments ---

class PaymentCreate(CamelModel):
    user_id: str
    cart_id: str
    payment_method: str
    amount: float = Field(..., gt=0)
    customer_phone: str = ""
    customer_email: str = ""


class PaymentResponse(CamelModel):
    payment_reference_id: str
    transaction_id: str
    order_ref: str
    user_id: str
    cart_id: str
    amount: float
    currency: str
    gateway: str
    status: str
    redirect_url: Optional[str] = None
    client_payload: dict = {}
    expire_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    order_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None


class WebhookAck(CamelModel):
    success: bool = True
    outcome: str
    message: str
    payment_reference_id: Optional[str] = None
    order_id: Optional[str] = None


class SweepResponse(CamelModel):
    expired: int = 0
    settled: int = 0
    orders_retried: int = 0
    coupons_deactivated: int = 0
    carts_released: int = 0


# --- Orders ---

class OrderCancel(CamelModel):
    reason: Optional[str] = None
    cancelled_by: Optional[str] = None

    @field_validator('reason', 'cancelled_by')
    def sanitize_text(cls, v):
        return sanitize_input(v)


class OrderStatusUpdate(CamelModel):
    status: OrderStatus


class OrderItemResponse(CamelModel):
    product_id: str
    product_name: Optional[str] = None
    designer_ref: Optional[str] = None
    quantity: int
    size: str
    color: str
    price: float
    customizations: str = ""


class OrderResponse(CamelModel):
    order_id: str
    user_id: str
    cart_id: str
    items: List[OrderItemResponse]
    subtotal: float
    discount_amount: float
    shipping_cost: float
    tax_amount: float
    amount: float
    payment_method: str
    payment_status: str
    transaction_id: str
    payment_reference_id: Optional[str] = None
    status: str
    shipping_address: AddressResponse
    status_timestamps: dict = {}
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    notes: str = ""
    invoice_url: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class CancellationReasonsResponse(CamelModel):
    reasons: List[str]


# --- Auth ---

class RefreshTokenRequest(CamelModel):
    refresh_token: str


class LogoutRequest(CamelModel):
    refresh_token: Optional[str] = None


class TokenResponse(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str
