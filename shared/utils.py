from datetime import datetime, timedelta, timezone
from typing import Optional, Generic, TypeVar, Any, List
from fastapi import HTTPException, status, Header
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel
from pydantic_settings import BaseSettings
from jose import JWTError, jwt
import uuid

# --- Configuration ---
class Settings(BaseSettings):
    MONGO_URL: str = "mongodb://mongodb:27017"
    MONGO_DB_NAME: str = "commerce_db"
    SECRET_KEY: str = "secret"
    REFRESH_SECRET_KEY: str = "refresh_secret"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7

    # Pricing
    SHIPPING_FEE_PER_ITEM: float = 99.0
    CURRENCY: str = "INR"
    DEFAULT_COUNTRY: str = "India"

    # Background jobs
    BACKGROUND_JOBS_ENABLED: bool = True
    COUPON_SWEEP_INTERVAL_SECONDS: int = 3600
    PAYMENT_SWEEP_INTERVAL_SECONDS: int = 300
    PAYMENT_SESSION_TTL_MINUTES: int = 30
    CART_RESERVATION_TTL_MINUTES: int = 0

    RATE_LIMIT_ENABLED: bool = True
    LOG_LEVEL: str = "INFO"

    # Gateways
    ENABLED_GATEWAYS: List[str] = ["phonepe", "razorpay", "stripe", "paypal", "cod"]
    GATEWAY_TIMEOUT_SECONDS: float = 10.0
    PHONEPE_BASE_URL: str = "https://api-preprod.phonepe.com/apis/pg-sandbox"
    PHONEPE_MERCHANT_ID: str = ""
    PHONEPE_SALT_KEY: str = ""
    PHONEPE_SALT_INDEX: str = "1"
    PHONEPE_REDIRECT_URL: str = ""
    PHONEPE_CALLBACK_URL: str = ""
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com"
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""
    RAZORPAY_WEBHOOK_SECRET: str = ""
    STUB_WEBHOOK_SECRET: str = "stub_webhook_secret"

    # Collaborators
    NOTIFICATION_SERVICE_URL: str = ""
    INVOICE_SERVICE_URL: str = ""

    class Config:
        env_file = ".env"

settings = Settings()

# --- Database ---
def get_db_client(url: str = settings.MONGO_URL) -> AsyncIOMotorClient:
    return AsyncIOMotorClient(url)

# --- Time ---
def utcnow() -> datetime:
    # Naive UTC, matching what MongoDB hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)

def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)

# --- Authentication ---
def _encode(data: dict, secret: str, expire: datetime) -> str:
    to_encode = data.copy()
    # Add JTI
    if "jti" not in to_encode:
        to_encode.update({"jti": str(uuid.uuid4())})
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, secret, algorithm=settings.ALGORITHM)

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    expires_delta = expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    return _encode(data, settings.SECRET_KEY, datetime.now(timezone.utc) + expires_delta)

def create_refresh_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    expires_delta = expires_delta or timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
    return _encode(data, settings.REFRESH_SECRET_KEY, datetime.now(timezone.utc) + expires_delta)

def _decode(token: str, secret: str) -> dict:
    try:
        return jwt.decode(token, secret, algorithms=[settings.ALGORITHM])
    except JWTError:
        raise UnauthorizedException("Could not validate credentials")

def verify_token(token: str) -> dict:
    return _decode(token, settings.SECRET_KEY)

def verify_refresh_token(token: str) -> dict:
    return _decode(token, settings.REFRESH_SECRET_KEY)

class AuthenticatedUser(BaseModel):
    id: str
    role: str = "user"
    jti: Optional[str] = None
    exp: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

async def require_auth(authorization: str = Header(...)) -> AuthenticatedUser:
    scheme, _, param = authorization.partition(" ")
    if not authorization or scheme.lower() != "bearer":
         raise UnauthorizedException(detail="Invalid authentication credentials")
    payload = verify_token(param)
    if not payload.get("sub"):
        raise UnauthorizedException("Token has no subject")
    return AuthenticatedUser(
        id=str(payload["sub"]),
        role=payload.get("role", "user"),
        jti=payload.get("jti"),
        exp=payload.get("exp"),
    )

# --- Response Models ---
T = TypeVar("T")

class SuccessResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    message: Optional[str] = None

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    details: Optional[Any] = None

class HealthResponse(BaseModel):
    service: str
    status: str
    timestamp: datetime
    version: str
    database: Optional[str] = None
    dependencies: Optional[dict] = None


# --- Exceptions ---
class AppException(HTTPException):
    code = "Error"

    def __init__(
        self,
        status_code: int = status.HTTP_400_BAD_REQUEST,
        detail: str = "An error occurred",
        headers: Optional[dict] = None,
        code: Optional[str] = None,
        extra: Optional[dict] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        if code:
            self.code = code
        self.extra = extra or {}

class ValidationException(AppException):
    code = "ValidationError"

    def __init__(self, detail: str = "Invalid request"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

class NotFoundException(AppException):
    code = "NotFound"

    def __init__(self, detail: str = "Resource not found"):
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)

class UnauthorizedException(AppException):
    code = "Unauthorized"

    def __init__(self, detail: str = "Unauthorized"):
         super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"}
        )

class ForbiddenException(AppException):
    code = "Forbidden"

    def __init__(self, detail: str = "Forbidden"):
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)

class ConflictException(AppException):
    code = "Conflict"

    def __init__(self, detail: str = "Conflicting state", extra: Optional[dict] = None):
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail, extra=extra)

class InsufficientStockException(ConflictException):
    code = "InsufficientStock"

    def __init__(self, detail: str = "Insufficient stock", available: int = 0):
        super().__init__(detail=detail, extra={"available": available})
        self.available = available

class ExternalGatewayException(AppException):
    code = "ExternalGatewayError"

    def __init__(self, detail: str = "Payment provider unavailable"):
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
