"""
Token service.
Psychology: Short-lived access tokens, persisted refresh tokens so logout actually revokes.
Intention: Validity windows are judged against the injected clock, never the library's wall clock.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import jwt
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backlify.auth.database_models import RefreshTokenDB
from backlify.auth.models import TokenType
from backlify.clock import Clock, from_epoch
from backlify.errors import Unauthenticated

logger = logging.getLogger(__name__)

INVALID_TOKEN = "Invalid or expired token"


@dataclass(frozen=True)
class TokenClaims:
    username: str
    type: TokenType
    iat: int
    exp: int
    jti: str

    @property
    def issued_at(self) -> datetime:
        return from_epoch(self.iat)

    @property
    def expires_at(self) -> datetime:
        return from_epoch(self.exp)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenService:
    """Issues and verifies access/refresh tokens"""

    def __init__(
        self,
        secret_key: str,
        clock: Clock,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=7),
    ):
        self.secret_key = secret_key
        self.clock = clock
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def _encode(self, username: str, token_type: TokenType, ttl: timedelta) -> str:
        iat = self.clock.epoch()
        payload = {
            "username": username,
            "type": token_type.value,
            "iat": iat,
            "exp": iat + int(ttl.total_seconds()),
            "jti": secrets.token_urlsafe(16),
        }
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm, headers={"typ": "JWT"})

    def issue_access(self, username: str) -> str:
        return self._encode(username, TokenType.ACCESS, self.access_ttl)

    async def issue_refresh(self, db: AsyncSession, username: str) -> str:
        token = self._encode(username, TokenType.REFRESH, self.refresh_ttl)
        now = self.clock.now()
        db.add(RefreshTokenDB(
            username=username,
            token_hash=hash_token(token),
            issued_at=now,
            expires_at=now + self.refresh_ttl,
        ))
        await db.commit()
        return token

    def decode(self, token: str) -> Optional[TokenClaims]:
        """Verify signature and [iat, exp) window; None when either fails"""
        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                options={
                    "require": ["username", "type", "iat", "exp"],
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                },
            )
            claims = TokenClaims(
                username=str(payload["username"]),
                type=TokenType(payload["type"]),
                iat=int(payload["iat"]),
                exp=int(payload["exp"]),
                jti=str(payload.get("jti", "")),
            )
        except (jwt.InvalidTokenError, ValueError, TypeError, KeyError):
            return None

        now = self.clock.epoch()
        if now < claims.iat or now >= claims.exp:
            return None
        return claims

    def verify(self, token: Optional[str], expected: TokenType = TokenType.ACCESS) -> TokenClaims:
        if not token:
            raise Unauthenticated("Authentication required")
        claims = self.decode(token)
        if claims is None or claims.type != expected:
            raise Unauthenticated(INVALID_TOKEN)
        return claims

    async def _find_refresh_record(self, db: AsyncSession, token: str) -> Optional[RefreshTokenDB]:
        result = await db.execute(
            select(RefreshTokenDB).where(RefreshTokenDB.token_hash == hash_token(token))
        )
        return result.scalar_one_or_none()

    async def refresh(self, db: AsyncSession, refresh_token: str) -> TokenClaims:
        """Validate a refresh token against its persisted record and return its claims"""
        claims = self.decode(refresh_token)
        if claims is None or claims.type != TokenType.REFRESH:
            raise Unauthenticated("Invalid refresh token")

        record = await self._find_refresh_record(db, refresh_token)
        if record is None or record.revoked or record.username != claims.username:
            raise Unauthenticated("Refresh token revoked or not found")
        return claims

    async def revoke(self, db: AsyncSession, refresh_token: str) -> bool:
        result = await db.execute(
            update(RefreshTokenDB)
            .where(
                RefreshTokenDB.token_hash == hash_token(refresh_token),
                RefreshTokenDB.revoked.is_(False),
            )
            .values(revoked=True, revoked_at=self.clock.now())
        )
        await db.commit()
        revoked = (result.rowcount or 0) > 0
        if revoked:
            logger.info("Refresh token revoked")
        return revoked
