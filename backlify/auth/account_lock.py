"""
Account lock state machine.
Psychology: Brute force is stopped at the account, not only at the IP.
Intention: Counter and lock flip happen in one conditional UPDATE so concurrent failures cannot overshoot.
"""
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import DateTime, String, case, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backlify.auth.database_models import AccountStatus, UserDB
from backlify.clock import Clock
from backlify.errors import Forbidden, SecurityEventType
from backlify.middleware.context import RequestContext
from backlify.services.audit import AuditSink

logger = logging.getLogger(__name__)

MAX_LOGIN_ATTEMPTS = 5
LOCK_DURATION = timedelta(minutes=5)
LOCK_REASON = "Too many failed login attempts"
AUTO_UNLOCKER = "system-auto"


class AccountLock:
    def __init__(
        self,
        clock: Clock,
        audit: AuditSink,
        max_attempts: int = MAX_LOGIN_ATTEMPTS,
        lock_duration: timedelta = LOCK_DURATION,
    ):
        self.clock = clock
        self.audit = audit
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration

    async def find_user(self, db: AsyncSession, identifier: str) -> Optional[UserDB]:
        if not identifier:
            return None
        result = await db.execute(
            select(UserDB).where(or_(UserDB.username == identifier, UserDB.email == identifier.lower()))
        )
        return result.scalars().first()

    def unlock_due(self, user: UserDB) -> bool:
        if user.account_status != AccountStatus.LOCKED or user.locked_at is None:
            return False
        return self.clock.now() >= user.locked_at + self.lock_duration

    async def ensure_unlocked(self, db: AsyncSession, user: UserDB, ctx: Optional[RequestContext] = None) -> bool:
        """Apply the timed auto-unlock. Returns True when the account is usable."""
        if user.account_status != AccountStatus.LOCKED:
            return True
        if not self.unlock_due(user):
            return False

        now = self.clock.now()
        await db.execute(
            update(UserDB)
            .where(UserDB.id == user.id, UserDB.account_status == AccountStatus.LOCKED)
            .values(
                account_status=AccountStatus.ACTIVE,
                login_attempts=0,
                unlocked_at=now,
                unlocked_by=AUTO_UNLOCKER,
                updated_at=now,
            )
        )
        await db.commit()
        await db.refresh(user)

        logger.info(f"Account {user.username} auto-unlocked")
        await self.audit.record(
            SecurityEventType.ACCOUNT_AUTO_UNLOCKED,
            ctx=ctx,
            user_id=user.id,
            detection={"username": user.username, "lockedAt": str(user.locked_at)},
            details="Lock period elapsed",
        )
        return True

    async def guard(self, db: AsyncSession, identifier: str, ctx: RequestContext) -> None:
        """Reject login attempts against a locked account"""
        user = await self.find_user(db, identifier)
        if user is None:
            return
        if await self.ensure_unlocked(db, user, ctx):
            return

        await self.audit.record(
            SecurityEventType.LOCKED_ACCOUNT_ACCESS_ATTEMPT,
            ctx=ctx,
            user_id=user.id,
            detection={"username": user.username, "lockedAt": str(user.locked_at)},
            details="Login attempt on locked account",
        )
        ctx.audited = True
        raise Forbidden(
            "Account is temporarily locked due to too many failed login attempts",
            error="Account locked",
            security_type=SecurityEventType.LOCKED_ACCOUNT_ACCESS_ATTEMPT,
        )

    async def register_failure(self, db: AsyncSession, user: UserDB, ctx: Optional[RequestContext] = None) -> bool:
        """Count a failed login. Returns True when this failure locked the account."""
        now = self.clock.now()
        attempts = UserDB.login_attempts + 1
        reaches_limit = attempts >= self.max_attempts

        result = await db.execute(
            update(UserDB)
            .where(UserDB.id == user.id, UserDB.account_status == AccountStatus.ACTIVE)
            .values(
                login_attempts=attempts,
                last_failed_login=now,
                account_status=case((reaches_limit, AccountStatus.LOCKED), else_=AccountStatus.ACTIVE),
                locked_at=case((reaches_limit, literal(now, DateTime())), else_=UserDB.locked_at),
                lock_reason=case((reaches_limit, literal(LOCK_REASON, String())), else_=UserDB.lock_reason),
                updated_at=now,
            )
        )
        await db.commit()
        await db.refresh(user)

        if not result.rowcount:
            return False

        locked = user.account_status == AccountStatus.LOCKED
        event = SecurityEventType.ACCOUNT_LOCKED if locked else SecurityEventType.FAILED_LOGIN
        await self.audit.record(
            event,
            ctx=ctx,
            user_id=user.id,
            detection={"username": user.username, "attempts": user.login_attempts},
            details=LOCK_REASON if locked else "Invalid password",
        )
        if ctx is not None:
            ctx.audited = True
        return locked

    async def register_success(self, db: AsyncSession, user: UserDB, ctx: Optional[RequestContext] = None) -> None:
        now = self.clock.now()
        user.login_attempts = 0
        user.last_login = now
        user.updated_at = now
        await db.commit()

        await self.audit.record(
            SecurityEventType.SUCCESSFUL_LOGIN,
            ctx=ctx,
            user_id=user.id,
            detection={"username": user.username},
        )
