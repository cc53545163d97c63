"""
Usage accountant.
Psychology: Limits are judged on what actually happened (api_logs), never on a counter that can drift.
Intention: Reserve a slot before the handler, free it once the outcome is logged, best-effort cache
increment after a 2xx, monthly reset of the cache.

Admitted requests that have not been logged yet are held as in-flight reservations and counted
against the ceiling together with api_logs, so concurrent requests cannot overrun a limit.
"""
import asyncio
import logging
import re
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backlify.auth.database_models import UserDB
from backlify.auth.models import PlanId, canonical_plan
from backlify.clock import Clock, month_start
from backlify.database import Database
from backlify.errors import Forbidden, SecurityEventType
from backlify.middleware.context import UsageKind
from backlify.models.billing import UsageRecordDB
from backlify.models.security import ApiLogDB
from backlify.monitoring import BusinessMetrics

logger = logging.getLogger(__name__)

PROJECT_ENDPOINT = "/create-api-from-schema"
UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


@dataclass(frozen=True)
class PlanLimits:
    projects: Optional[int]
    requests: Optional[int]

    @property
    def unlimited(self) -> bool:
        return self.projects is None and self.requests is None

    def for_kind(self, kind: str) -> Optional[int]:
        return self.projects if kind == UsageKind.PROJECT else self.requests


PLAN_LIMITS: Dict[str, PlanLimits] = {
    PlanId.BASIC.value: PlanLimits(projects=2, requests=1000),
    PlanId.PRO.value: PlanLimits(projects=10, requests=10000),
    PlanId.ENTERPRISE.value: PlanLimits(projects=None, requests=None),
}


def limits_for(plan: Optional[str]) -> PlanLimits:
    return PLAN_LIMITS[canonical_plan(plan)]


class UsageLimitExceeded(Forbidden):
    error = "Usage limit exceeded"
    security_type = SecurityEventType.FORBIDDEN


@dataclass(frozen=True)
class UsageReservation:
    user_id: str
    kind: str


class UsageAccountant:
    def __init__(self, clock: Clock):
        self.clock = clock
        self._in_flight: Dict[Tuple[str, str], int] = {}
        # One lock per user, alive only while someone holds or awaits it
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def in_flight(self, user_id: str, kind: str) -> int:
        return self._in_flight.get((user_id, kind), 0)

    def current_period(self) -> datetime:
        return month_start(self.clock.now())

    async def resolve_user_id(self, db: AsyncSession, principal: Optional[str]) -> Optional[str]:
        """Map a username principal to User.id; UUID principals are taken as-is"""
        if not principal:
            return None
        if UUID_RE.match(principal):
            return principal
        result = await db.execute(select(UserDB.id).where(UserDB.username == principal))
        return result.scalar_one_or_none()

    async def count_projects(self, db: AsyncSession, user_id: str) -> int:
        result = await db.execute(
            select(func.count(ApiLogDB.id)).where(
                ApiLogDB.user_id == user_id,
                ApiLogDB.method == "POST",
                ApiLogDB.endpoint == PROJECT_ENDPOINT,
                ApiLogDB.status_code == 200,
                ApiLogDB.timestamp >= self.current_period(),
            )
        )
        return int(result.scalar_one())

    async def count_requests(self, db: AsyncSession, user_id: str) -> int:
        result = await db.execute(
            select(func.count(ApiLogDB.id)).where(
                ApiLogDB.user_id == user_id,
                ApiLogDB.is_api_request.is_(True),
                ApiLogDB.timestamp >= self.current_period(),
            )
        )
        return int(result.scalar_one())

    async def count(self, db: AsyncSession, user_id: str, kind: str) -> int:
        if kind == UsageKind.PROJECT:
            return await self.count_projects(db, user_id)
        return await self.count_requests(db, user_id)

    async def pre_check(self, db: AsyncSession, principal: Optional[str], plan: str, kind: str) -> None:
        """Raise UsageLimitExceeded when the principal already reached the plan ceiling"""
        plan = canonical_plan(plan)
        limit = limits_for(plan).for_kind(kind)
        if limit is None:
            return

        user_id = await self.resolve_user_id(db, principal)
        if user_id is None:
            logger.warning(f"Cannot verify usage limits for {principal}; allowing request")
            return

        await self._check(db, user_id, plan, kind, limit)

    async def reserve(
        self, database: Database, principal: Optional[str], plan: str, kind: str
    ) -> Optional[UsageReservation]:
        """Admit one more unit under the plan ceiling and hold it until `settle`.

        Returns None when nothing is metered (unlimited plan or unknown principal).
        No session is held while waiting for the user's lock.
        """
        plan = canonical_plan(plan)
        limit = limits_for(plan).for_kind(kind)
        if limit is None:
            return None

        async with database.session() as db:
            user_id = await self.resolve_user_id(db, principal)
        if user_id is None:
            logger.warning(f"Cannot verify usage limits for {principal}; allowing request")
            return None

        async with self._lock_for(user_id):
            async with database.session() as db:
                await self._check(db, user_id, plan, kind, limit)
            key = (user_id, kind)
            self._in_flight[key] = self._in_flight.get(key, 0) + 1
        return UsageReservation(user_id=user_id, kind=kind)

    @asynccontextmanager
    async def settle(self, reservation: Optional[UsageReservation]) -> AsyncIterator[None]:
        """Write the outcome of an admitted request inside the block, then free its slot"""
        if reservation is None:
            yield
            return

        async with self._lock_for(reservation.user_id):
            try:
                yield
            finally:
                key = (reservation.user_id, reservation.kind)
                remaining = self._in_flight.get(key, 0) - 1
                if remaining > 0:
                    self._in_flight[key] = remaining
                else:
                    self._in_flight.pop(key, None)

    async def _check(self, db: AsyncSession, user_id: str, plan: str, kind: str, limit: int) -> None:
        current = await self.count(db, user_id, kind) + self.in_flight(user_id, kind)
        if current >= limit:
            BusinessMetrics.track_usage_rejection(plan, kind)
            label = "project" if kind == UsageKind.PROJECT else "API request"
            raise UsageLimitExceeded(
                f"You have reached your monthly {label} limit ({current}/{limit}) on the {plan} plan. "
                "Please upgrade your plan to continue.",
                extra={"current": current, "limit": limit, "plan": plan},
                detection={"kind": kind, "current": current, "limit": limit, "plan": plan},
            )

    async def get_or_create_usage(self, db: AsyncSession, user_id: str, plan: str) -> UsageRecordDB:
        period = self.current_period()
        result = await db.execute(
            select(UsageRecordDB).where(
                UsageRecordDB.user_id == user_id,
                UsageRecordDB.period_start == period,
            )
        )
        record = result.scalar_one_or_none()
        if record is not None:
            return record

        record = UsageRecordDB(
            user_id=user_id,
            period_start=period,
            user_plan=canonical_plan(plan),
            requests_count=0,
            projects_count=0,
            updated_at=self.clock.now(),
        )
        db.add(record)
        try:
            await db.commit()
        except IntegrityError:
            # Concurrent creator won the unique (user_id, period_start) race
            await db.rollback()
            result = await db.execute(
                select(UsageRecordDB).where(
                    UsageRecordDB.user_id == user_id,
                    UsageRecordDB.period_start == period,
                )
            )
            record = result.scalar_one()
        return record

    async def record_success(self, db: AsyncSession, user_id: Optional[str], plan: str, kind: str) -> None:
        """Increment the cache counter after a 2xx. Never raises."""
        if not user_id:
            return
        try:
            record = await self.get_or_create_usage(db, user_id, plan)
            column = UsageRecordDB.projects_count if kind == UsageKind.PROJECT else UsageRecordDB.requests_count
            await db.execute(
                update(UsageRecordDB)
                .where(UsageRecordDB.id == record.id)
                .values({column.key: column + 1, "updated_at": self.clock.now()})
            )
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(f"Usage increment failed for {user_id}: {e}")

    async def reset_monthly(self, db: AsyncSession) -> int:
        """Zero cache rows belonging to months before the current one"""
        result = await db.execute(
            update(UsageRecordDB)
            .where(UsageRecordDB.period_start < self.current_period())
            .where((UsageRecordDB.requests_count > 0) | (UsageRecordDB.projects_count > 0))
            .values(requests_count=0, projects_count=0, updated_at=self.clock.now())
        )
        await db.commit()
        reset = result.rowcount or 0
        if reset:
            logger.info(f"Monthly usage reset cleared {reset} rows")
        return reset

    async def current_usage(self, db: AsyncSession, user_id: str, plan: str) -> Dict[str, Any]:
        plan = canonical_plan(plan)
        limits = limits_for(plan)
        return {
            "plan": plan,
            "periodStart": self.current_period().isoformat(),
            "projects": {"current": await self.count_projects(db, user_id), "limit": limits.projects},
            "requests": {"current": await self.count_requests(db, user_id), "limit": limits.requests},
        }
