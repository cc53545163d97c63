"""
Sliding window rate limiter.
Psychology: Request history already lives in api_logs; count it instead of keeping a second ledger.
Intention: 100 requests / 15 min per IP, 10 / hour per identity on sensitive endpoints,
a 30 minute ban for callers that keep hammering a sensitive endpoint at twice the limit.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from backlify.clock import Clock
from backlify.database import Database
from backlify.errors import RateLimited, SecurityEventType
from backlify.middleware.context import ANONYMOUS, RequestContext
from backlify.middleware.ip_blacklist import IpBlacklist
from backlify.models.security import ApiLogDB
from backlify.services.audit import AuditSink

logger = logging.getLogger(__name__)

SENSITIVE_PATHS = ("/auth/login", "/auth/register", "/password/reset")
UNLIMITED_PATHS = ("/health", "/metrics")

ABUSE_BAN = timedelta(minutes=30)
ABUSE_REASON = "Rate limit exceeded on sensitive endpoint"


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window: timedelta
    label: str


GENERAL_RULE = RateLimitRule(limit=100, window=timedelta(minutes=15), label="15 minutes")
SENSITIVE_RULE = RateLimitRule(limit=10, window=timedelta(hours=1), label="60 minutes")


def is_sensitive(path: str) -> bool:
    return any(p in path for p in SENSITIVE_PATHS)


class RateLimiter:
    def __init__(
        self,
        database: Database,
        clock: Clock,
        audit: AuditSink,
        blacklist: IpBlacklist,
        general: RateLimitRule = GENERAL_RULE,
        sensitive: RateLimitRule = SENSITIVE_RULE,
    ):
        self.database = database
        self.clock = clock
        self.audit = audit
        self.blacklist = blacklist
        self.general = general
        self.sensitive = sensitive

    def rule_for(self, path: str) -> Tuple[RateLimitRule, bool]:
        sensitive = is_sensitive(path)
        return (self.sensitive if sensitive else self.general), sensitive

    async def count(self, ctx: RequestContext, rule: RateLimitRule, sensitive: bool) -> int:
        since = self.clock.now() - rule.window
        query = select(func.count(ApiLogDB.id)).where(ApiLogDB.timestamp >= since)
        identity = ctx.x_auth_user_id if ctx.x_auth_user_id and ctx.x_auth_user_id != ANONYMOUS else None
        if sensitive:
            query = query.where(ApiLogDB.endpoint == ctx.path)
            if identity:
                query = query.where(ApiLogDB.x_auth_user_id == identity)
            else:
                query = query.where(ApiLogDB.ip == ctx.ip)
        else:
            query = query.where(ApiLogDB.ip == ctx.ip)

        async with self.database.session() as session:
            result = await session.execute(query)
            return int(result.scalar_one())

    async def check(self, ctx: RequestContext) -> None:
        if ctx.path in UNLIMITED_PATHS:
            return

        rule, sensitive = self.rule_for(ctx.path)
        try:
            count = await self.count(ctx, rule, sensitive)
        except SQLAlchemyError as e:
            logger.error(f"Rate limit check failed for {ctx.ip}: {e}")
            return

        if count < rule.limit:
            return

        if sensitive and count >= rule.limit * 2:
            try:
                await self.blacklist.add(ctx.ip, ABUSE_REASON, self.clock.now() + ABUSE_BAN)
            except SQLAlchemyError as e:
                logger.error(f"Failed to blacklist {ctx.ip}: {e}")

        await self.audit.record(
            SecurityEventType.RATE_LIMIT_EXCEEDED,
            ctx=ctx,
            detection={"count": count, "limit": rule.limit, "window": rule.label},
        )
        ctx.audited = True
        raise RateLimited(
            f"Rate limit exceeded. Please try again in {rule.label}.",
            headers={"Retry-After": str(int(rule.window.total_seconds()))},
        )
