from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from typing import Optional, Union
import hashlib
import hmac
import html

# --- Rate Limiting ---
# Initialize Limiter
limiter = Limiter(key_func=get_remote_address)

def setup_rate_limiting(app: FastAPI, enabled: bool = True):
    limiter.enabled = enabled
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # Security Headers
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:; object-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response

# --- Input Sanitization ---
def sanitize_input(text: str) -> str:
    """
    Sanitize input string:
    - HTML escape
    - Strip whitespace
    """
    if not isinstance(text, str):
        return text

    # Strip whitespace
    clean_text = text.strip()

    # HTML Escape
    clean_text = html.escape(clean_text)

    return clean_text

# --- Webhook Signatures ---
def _as_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value

def compute_hmac_sha256(secret: Union[str, bytes], body: Union[str, bytes]) -> str:
    """Hex digest of HMAC-SHA256 over the raw request body."""
    return hmac.new(_as_bytes(secret), _as_bytes(body), hashlib.sha256).hexdigest()

def signature_matches(secret: Union[str, bytes], body: Union[str, bytes], signature: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    # Constant time comparison
    expected = compute_hmac_sha256(secret, body)
    return hmac.compare_digest(expected, signature.strip())
