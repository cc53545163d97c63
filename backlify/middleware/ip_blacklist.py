"""
IP blocklist.
Psychology: An address that earned a ban is turned away before any work is done for it.
Intention: Effective entry means permanent or not yet expired; expired rows are reaped hourly.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError

from backlify.clock import Clock
from backlify.database import Database
from backlify.errors import Forbidden, SecurityEventType
from backlify.middleware.context import RequestContext
from backlify.models.security import IpBlacklistDB
from backlify.services.audit import AuditSink

logger = logging.getLogger(__name__)

SYSTEM_CREATOR = "system"


class IpBlacklist:
    def __init__(self, database: Database, clock: Clock, audit: AuditSink):
        self.database = database
        self.clock = clock
        self.audit = audit

    async def find_effective(self, ip: str) -> Optional[IpBlacklistDB]:
        now = self.clock.now()
        async with self.database.session() as session:
            result = await session.execute(
                select(IpBlacklistDB)
                .where(
                    IpBlacklistDB.ip == ip,
                    or_(IpBlacklistDB.expires_at.is_(None), IpBlacklistDB.expires_at > now),
                )
                .order_by(IpBlacklistDB.created_at.desc())
            )
            return result.scalars().first()

    async def add(
        self,
        ip: str,
        reason: str,
        expires_at: Optional[datetime] = None,
        created_by: str = SYSTEM_CREATOR,
    ) -> IpBlacklistDB:
        entry = IpBlacklistDB(
            ip=ip,
            reason=reason,
            created_at=self.clock.now(),
            created_by=created_by,
            expires_at=expires_at,
        )
        async with self.database.session() as session:
            session.add(entry)
            await session.commit()
        logger.warning(f"IP {ip} blacklisted until {expires_at or 'forever'}: {reason}")
        return entry

    async def check(self, ctx: RequestContext) -> None:
        """Raise Forbidden for a blacklisted address; storage errors let the request through"""
        try:
            entry = await self.find_effective(ctx.ip)
        except SQLAlchemyError as e:
            logger.error(f"Blacklist lookup failed for {ctx.ip}: {e}")
            return

        if entry is None:
            return

        reason = entry.reason or "Security policy violation"
        await self.audit.record(
            SecurityEventType.BLACKLISTED_IP_BLOCKED,
            ctx=ctx,
            detection={
                "reason": reason,
                "blacklist_id": entry.id,
                "blacklist_type": "temporary" if entry.expires_at else "permanent",
                "expires_at": entry.expires_at.isoformat() if entry.expires_at else None,
            },
            details=f"Blocked blacklisted IP: {ctx.ip} (Reason: {reason})",
        )
        ctx.audited = True
        raise Forbidden(
            "Your IP address has been blacklisted",
            error="Access denied",
            security_type=SecurityEventType.BLACKLISTED_IP_BLOCKED,
            extra={"reason": reason},
        )

    async def reap(self) -> int:
        """Delete entries whose expiry has passed. Permanent entries are kept."""
        now = self.clock.now()
        async with self.database.session() as session:
            result = await session.execute(
                delete(IpBlacklistDB).where(
                    IpBlacklistDB.expires_at.is_not(None),
                    IpBlacklistDB.expires_at < now,
                )
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info(f"Cleaned up {removed} expired blacklist entries")
        return removed
