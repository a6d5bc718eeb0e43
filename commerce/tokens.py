import logging
from datetime import datetime, timezone
from typing import Optional

from commerce.models import TokenDB, to_document
from commerce.repository import TokenRepository
from shared.utils import (
    AuthenticatedUser, UnauthorizedException, create_access_token, create_refresh_token,
    verify_refresh_token, to_naive_utc, utcnow,
)

logger = logging.getLogger("commerce-service")


def expiry_of(payload: dict) -> datetime:
    exp = payload.get("exp")
    if exp is None:
        return utcnow()
    return to_naive_utc(datetime.fromtimestamp(exp, tz=timezone.utc))


class TokenStore:
    """Refresh tokens we issued and access tokens revoked before expiry.

    Entries are keyed by the token's ``jti`` and disappear once the token
    would have expired anyway (TTL index on ``expires_at``).
    """

    def __init__(self, tokens: TokenRepository):
        self.tokens = tokens

    async def issue(self, user_id: str, role: str = "user") -> dict:
        claims = {"sub": user_id, "role": role}
        refresh_token = create_refresh_token(claims)
        payload = verify_refresh_token(refresh_token)
        await self.tokens.put(to_document(TokenDB(
            _id=payload["jti"], user_id=user_id, kind="refresh", expires_at=expiry_of(payload),
        )))
        return {
            "access_token": create_access_token(claims),
            "refresh_token": refresh_token,
            "token_type": "bearer",
        }

    async def rotate(self, refresh_token: str) -> dict:
        payload = verify_refresh_token(refresh_token)
        record = await self.tokens.get(payload.get("jti"))
        if not record or record.get("kind") != "refresh" or record.get("revoked"):
            logger.warning("Unknown or revoked refresh token presented",
                           extra={"user_id": payload.get("sub"), "event": "refresh_rejected"})
            raise UnauthorizedException("Refresh token is invalid or has been revoked")
        if not await self.tokens.revoke(record["_id"], record["user_id"], record["expires_at"]):
            # Another request rotated it first
            raise UnauthorizedException("Refresh token is invalid or has been revoked")
        return await self.issue(record["user_id"], payload.get("role", "user"))

    async def logout(self, user: AuthenticatedUser, refresh_token: Optional[str] = None):
        if user.jti:
            expires_at = to_naive_utc(datetime.fromtimestamp(user.exp, tz=timezone.utc)) if user.exp else utcnow()
            await self.tokens.revoke(user.jti, user.id, expires_at)
        if refresh_token:
            payload = verify_refresh_token(refresh_token)
            if payload.get("sub") != user.id:
                raise UnauthorizedException("Refresh token does not belong to this user")
            await self.tokens.revoke(payload["jti"], user.id, expiry_of(payload))
        logger.info("User logged out", extra={"user_id": user.id})

    async def is_revoked(self, jti: Optional[str]) -> bool:
        if not jti:
            return False
        record = await self.tokens.get(jti)
        return bool(record and record.get("revoked"))
