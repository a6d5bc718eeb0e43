from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List, NamedTuple, Union
from pydantic import BaseModel, Field
from bson import ObjectId

from shared.utils import utcnow

Number = Union[int, float, Decimal, str]

CENT = Decimal("0.01")


def to_decimal(value: Optional[Number]) -> Decimal:
    if value is None:
        return Decimal(0)
    return Decimal(str(value))


def round2(value: Number) -> Decimal:
    """Round half-up to two decimal places."""
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def money(value: Number) -> float:
    # Mongo stores money as float
    return float(round2(value))


def new_id() -> str:
    return str(ObjectId())


class VariantKey(NamedTuple):
    product_id: str
    color: str
    size: str

    def as_filter(self) -> dict:
        return {"product_id": self.product_id, "color": self.color, "size": self.size}

    @classmethod
    def of(cls, doc: dict) -> "VariantKey":
        return cls(doc["product_id"], doc["color"], doc["size"])


class CartStatus(str, Enum):
    ACTIVE = "active"


class CouponScope(str, Enum):
    UNIVERSAL = "universal"
    USER_RESTRICTED = "user_restricted"


class PaymentStatus(str, Enum):
    INITIATED = "Initiated"
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.COMPLETED, PaymentStatus.FAILED)


OPEN_PAYMENT_STATUSES = (PaymentStatus.INITIATED.value, PaymentStatus.PENDING.value)
# Payments that still need the cart lines while they have no order
CART_HOLDING_STATUSES = OPEN_PAYMENT_STATUSES + (PaymentStatus.COMPLETED.value,)


class OrderStatus(str, Enum):
    PLACED = "Order Placed"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"

    @property
    def timestamp_key(self) -> str:
        return {
            OrderStatus.PLACED: "placed",
            OrderStatus.PROCESSING: "processing",
            OrderStatus.SHIPPED: "shipped",
            OrderStatus.DELIVERED: "delivered",
            OrderStatus.CANCELLED: "cancelled",
        }[self]

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.DELIVERED, OrderStatus.CANCELLED)


CANCELLABLE_ORDER_STATUSES = (OrderStatus.PLACED.value, OrderStatus.PROCESSING.value)


class VariantDB(BaseModel):
    id: str = Field(default_factory=new_id, alias="_id")
    product_id: str
    color: str
    size: str
    price: float
    stock: int = Field(0, ge=0)
    designer_ref: Optional[str] = None
    product_name: Optional[str] = None
    sku: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True


class StockMovementDB(BaseModel):
    id: str = Field(default_factory=new_id, alias="_id")
    product_id: str
    color: str
    size: str
    delta: int
    reason: str
    ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True


class AddressDB(BaseModel):
    street: str
    city: str
    state: str
    pincode: str
    country: str = "India"
    phone_number: str = ""


class CartItemDB(BaseModel):
    product_id: str
    color: str
    size: str
    quantity: int
    unit_price: float  # Snapshot at add time
    designer_ref: Optional[str] = None
    product_name: Optional[str] = None
    is_customizable: bool = False
    customizations: str = ""


class CartDB(BaseModel):
    id: str = Field(default_factory=new_id, alias="_id")
    user_id: str
    items: List[CartItemDB] = []
    subtotal: float = 0
    tax_amount: float = 0
    shipping_cost: float = 0
    discount_amount: float = 0
    discount_applied: bool = False
    coupon_code: Optional[str] = None
    total_amount: float = 0
    shipping_address: Optional[AddressDB] = None
    status: CartStatus = CartStatus.ACTIVE
    # Transactions whose lines were already taken out of the cart
    settled_transactions: List[str] = []
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True
        use_enum_values = True


class CouponRecipientDB(BaseModel):
    user_id: str
    is_used: bool = False
    expired_in: Optional[datetime] = None


class CouponDB(BaseModel):
    id: str = Field(default_factory=new_id, alias="_id")
    code: str
    amount: float
    expiry_date: datetime
    is_active: bool = True
    used_by: List[str] = []
    scope: CouponScope = CouponScope.UNIVERSAL
    max_usage: Optional[int] = None
    created_for: List[CouponRecipientDB] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True
        use_enum_values = True


class PaymentDB(BaseModel):
    id: str = Field(..., alias="_id")  # payment reference id
    transaction_id: str
    order_ref: str
    user_id: str
    cart_id: str
    amount: float
    currency: str = "INR"
    gateway: str
    status: PaymentStatus = PaymentStatus.INITIATED
    # Cart contents the amount was computed from
    items: List[CartItemDB] = []
    subtotal: float = 0
    discount_amount: float = 0
    shipping_cost: float = 0
    tax_amount: float = 0
    coupon_code: Optional[str] = None
    shipping_address: Optional[AddressDB] = None
    redirect_url: Optional[str] = None
    provider_payment_id: Optional[str] = None
    client_payload: dict = {}
    expire_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    order_id: Optional[str] = None
    order_error: Optional[str] = None
    order_attempts: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    class Config:
        populate_by_name = True
        use_enum_values = True


class OrderItemDB(BaseModel):
    product_id: str
    product_name: Optional[str] = None
    designer_ref: Optional[str] = None
    quantity: int
    size: str
    color: str
    price: float
    customizations: str = ""


class OrderDB(BaseModel):
    id: str = Field(..., alias="_id")  # human readable order id
    user_id: str
    cart_id: str
    items: List[OrderItemDB]
    subtotal: float
    discount_amount: float = 0
    shipping_cost: float = 0
    tax_amount: float = 0
    amount: float
    payment_method: str
    payment_status: PaymentStatus
    transaction_id: str
    payment_reference_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PLACED
    shipping_address: AddressDB
    status_timestamps: dict = {}
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    notes: str = ""
    invoice_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True
        use_enum_values = True


class TokenDB(BaseModel):
    id: str = Field(..., alias="_id")  # jti
    user_id: str
    kind: str  # refresh | revoked
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        populate_by_name = True


def to_document(model: BaseModel) -> dict:
    return model.model_dump(by_alias=True, mode="python")
