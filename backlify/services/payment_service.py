"""
Order state machine and subscription management.
Psychology: A payment is finalized exactly once, whatever the gateway replays.
Intention: pending -> paid | failed through a guarded UPDATE, subscription upsert in the same transaction.
"""
import logging
from datetime import timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backlify.auth.database_models import UserDB
from backlify.auth.models import PLAN_HIERARCHY, PlanId, canonical_plan
from backlify.clock import Clock, to_epoch
from backlify.config import Settings
from backlify.errors import Forbidden, InputInvalid, SecurityEventType
from backlify.integrations.epoint import EpointClient
from backlify.middleware.context import RequestContext
from backlify.middleware.logging import BusinessEventLogger
from backlify.models.billing import (
    GLOBAL_SCOPE,
    OrderStatus,
    PaymentOrderDB,
    PaymentPlan,
    PaymentPlanDB,
    Subscription,
    SubscriptionStatus,
    UserSubscriptionDB,
)
from backlify.monitoring import BusinessMetrics
from backlify.services.audit import AuditSink

logger = logging.getLogger(__name__)

SUBSCRIPTION_PERIOD = timedelta(days=30)
GATEWAY_SUCCESS = "success"

FALLBACK_PLANS = [
    PaymentPlan(
        plan_id=PlanId.BASIC.value, name="Basic Plan", price=0, currency="USD",
        features=["2 Projects", "1000 requests/month", "Email support"],
    ),
    PaymentPlan(
        plan_id=PlanId.PRO.value, name="Pro Plan", price=9.99, currency="USD",
        features=["10 Projects", "10000 requests/month", "Priority support", "Custom domains"],
    ),
    PaymentPlan(
        plan_id=PlanId.ENTERPRISE.value, name="Enterprise Plan", price=29.99, currency="USD",
        features=["Unlimited Projects", "Unlimited requests", "24/7 support", "Custom integrations"],
    ),
]


class FinalizeOutcome(str, Enum):
    PAID = "paid"
    FAILED = "failed"
    ALREADY_FINALIZED = "already_finalized"
    UNKNOWN_ORDER = "unknown_order"


def scope_key(api_id: Optional[str]) -> str:
    return api_id or GLOBAL_SCOPE


class PaymentService:
    def __init__(self, clock: Clock, gateway: EpointClient, settings: Settings, audit: AuditSink):
        self.clock = clock
        self.gateway = gateway
        self.settings = settings
        self.audit = audit

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    async def list_plans(self, db: AsyncSession) -> List[PaymentPlan]:
        result = await db.execute(
            select(PaymentPlanDB)
            .where(PaymentPlanDB.is_active.is_(True))
            .order_by(PaymentPlanDB.price.asc())
        )
        rows = result.scalars().all()
        if not rows:
            return list(FALLBACK_PLANS)
        return [PaymentPlan.model_validate(row) for row in rows]

    async def get_plan(self, db: AsyncSession, plan_id: str) -> PaymentPlan:
        wanted = plan_id.strip().lower()
        if wanted == "free":
            wanted = PlanId.BASIC.value
        for plan in await self.list_plans(db):
            if plan.plan_id == wanted:
                return plan
        raise InputInvalid("Invalid plan selected", error="INVALID_PLAN")

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    def new_order_id(self, principal: str) -> str:
        now = self.clock.now()
        unix_ms = to_epoch(now) * 1000 + now.microsecond // 1000
        return f"SUB_{unix_ms}_{principal}"

    async def create_order(
        self,
        db: AsyncSession,
        user: UserDB,
        plan_id: str,
        api_id: Optional[str] = None,
        principal: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Insert a pending order and obtain the hosted payment page for it"""
        plan = await self.get_plan(db, plan_id)
        if plan.price <= 0:
            raise InputInvalid("Selected plan does not require payment", error="INVALID_PLAN")

        now = self.clock.now()
        order = PaymentOrderDB(
            order_id=self.new_order_id(principal or user.username),
            user_id=user.id,
            plan_id=plan.plan_id,
            api_id=api_id,
            amount=Decimal(str(plan.price)),
            currency=plan.currency,
            status=OrderStatus.PENDING.value,
            payment_method="epoint",
            description=f"Backlify {plan.name}",
            created_at=now,
            updated_at=now,
        )
        db.add(order)
        await db.commit()

        # Gateway failure leaves the order pending; it is never charged without a callback
        payment_url = await self.gateway.request_payment(
            amount=order.amount,
            order_id=order.order_id,
            description=order.description,
            success_redirect_url=self.settings.redirect_success,
            error_redirect_url=self.settings.redirect_error,
            currency=order.currency,
        )

        order.gateway_redirect_url = payment_url
        order.updated_at = self.clock.now()
        await db.commit()

        BusinessEventLogger.log_payment(order.order_id, "order_created", order.status, user_id=user.id)
        return {"order": order, "paymentUrl": payment_url}

    async def record_external_order(
        self,
        db: AsyncSession,
        user: UserDB,
        plan: PaymentPlan,
        order_id: str,
        api_id: Optional[str],
        payment_method: str,
    ) -> PaymentOrderDB:
        now = self.clock.now()
        order = PaymentOrderDB(
            order_id=order_id,
            user_id=user.id,
            plan_id=plan.plan_id,
            api_id=api_id,
            amount=Decimal(str(plan.price)),
            currency=plan.currency,
            status=OrderStatus.PENDING.value,
            payment_method=payment_method,
            description=f"Backlify {plan.name}",
            created_at=now,
            updated_at=now,
        )
        db.add(order)
        await db.commit()
        return order

    async def list_history(self, db: AsyncSession, user_id: str) -> List[PaymentOrderDB]:
        result = await db.execute(
            select(PaymentOrderDB)
            .where(PaymentOrderDB.user_id == user_id)
            .order_by(PaymentOrderDB.created_at.desc())
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def finalize(
        self,
        db: AsyncSession,
        order_id: str,
        gateway_status: Optional[str],
        transaction_id: Optional[str],
        raw: Optional[Dict[str, Any]] = None,
    ) -> FinalizeOutcome:
        """Apply a gateway outcome to a pending order. Idempotent per order_id."""
        try:
            result = await db.execute(select(PaymentOrderDB).where(PaymentOrderDB.order_id == order_id))
            order = result.scalar_one_or_none()
            if order is None:
                await db.rollback()
                return FinalizeOutcome.UNKNOWN_ORDER
            if order.status != OrderStatus.PENDING.value:
                await db.rollback()
                return FinalizeOutcome.ALREADY_FINALIZED

            now = self.clock.now()
            paid = gateway_status == GATEWAY_SUCCESS
            new_status = OrderStatus.PAID if paid else OrderStatus.FAILED

            updated = await db.execute(
                update(PaymentOrderDB)
                .where(
                    PaymentOrderDB.id == order.id,
                    PaymentOrderDB.status == OrderStatus.PENDING.value,
                )
                .values(
                    status=new_status.value,
                    payment_transaction_id=transaction_id,
                    payment_details=raw or {},
                    updated_at=now,
                )
            )
            if not updated.rowcount:
                await db.rollback()
                return FinalizeOutcome.ALREADY_FINALIZED

            if paid:
                await self._upsert_subscription(db, order, now)

            await db.commit()
        except Exception:
            await db.rollback()
            raise

        BusinessEventLogger.log_payment(order_id, "finalized", new_status.value, user_id=order.user_id)
        return FinalizeOutcome.PAID if paid else FinalizeOutcome.FAILED

    async def _upsert_subscription(self, db: AsyncSession, order: PaymentOrderDB, now) -> None:
        key = scope_key(order.api_id)
        result = await db.execute(
            select(UserSubscriptionDB).where(
                UserSubscriptionDB.user_id == order.user_id,
                UserSubscriptionDB.scope_key == key,
            )
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            subscription = UserSubscriptionDB(
                user_id=order.user_id,
                api_id=order.api_id,
                scope_key=key,
                created_at=now,
            )
            db.add(subscription)

        subscription.plan_id = order.plan_id
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.start_date = now
        subscription.expiration_date = now + SUBSCRIPTION_PERIOD
        subscription.payment_order_id = order.id
        subscription.updated_at = now

        if key == GLOBAL_SCOPE:
            await db.execute(
                update(UserDB)
                .where(UserDB.id == order.user_id)
                .values(plan_id=order.plan_id, updated_at=now)
            )
        await db.flush()

    async def handle_callback(
        self,
        db: AsyncSession,
        payload: Any,
        ctx: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """Process a gateway callback. Never raises; the gateway always gets a 200."""
        payload = payload if isinstance(payload, dict) else {}
        data = payload.get("data")
        signature = payload.get("signature")

        if not data or not signature:
            await self._reject_callback(ctx, "Missing data or signature", {"hasData": bool(data)})
            return {"success": False, "message": "Missing required parameters"}

        if not self.gateway.verify(str(data), str(signature)):
            await self._reject_callback(ctx, "Invalid signature", {"reason": "signature_mismatch"})
            return {"success": False, "message": "Invalid signature"}

        try:
            decoded = self.gateway.open_envelope(str(data), str(signature))
        except InputInvalid as e:
            await self._reject_callback(ctx, e.message, {"reason": "undecodable"})
            return {"success": False, "message": "Invalid data"}

        order_id = decoded.get("order_id")
        if not order_id:
            await self._reject_callback(ctx, "Callback without order_id", {"reason": "missing_order_id"})
            return {"success": False, "message": "Missing order_id"}

        transaction_id = decoded.get("transaction") or decoded.get("transaction_id")
        gateway_status = decoded.get("status")

        try:
            outcome = await self.finalize(db, str(order_id), gateway_status, transaction_id, decoded)
        except Exception as e:
            logger.error(f"Finalizing order {order_id} failed: {e}")
            BusinessMetrics.track_callback("error")
            await self.audit.record(
                SecurityEventType.PAYMENT_CALLBACK_FAILED,
                ctx=ctx,
                detection={"orderId": order_id, "status": gateway_status},
                details=str(e),
            )
            if ctx is not None:
                ctx.audited = True
            return {"success": False, "message": "Callback could not be processed, please retry"}

        BusinessMetrics.track_callback(outcome.value)
        if outcome in (FinalizeOutcome.PAID, FinalizeOutcome.FAILED):
            await self.audit.record(
                SecurityEventType.PAYMENT_FINALIZED,
                ctx=ctx,
                detection={"orderId": order_id, "status": outcome.value, "transaction": transaction_id},
            )
        elif outcome == FinalizeOutcome.UNKNOWN_ORDER:
            logger.warning(f"Callback for unknown order {order_id}")

        return {"success": outcome != FinalizeOutcome.UNKNOWN_ORDER, "orderId": order_id, "result": outcome.value}

    async def _reject_callback(self, ctx: Optional[RequestContext], reason: str, detection: Dict[str, Any]) -> None:
        BusinessMetrics.track_callback("rejected")
        await self.audit.record(
            SecurityEventType.BAD_REQUEST,
            ctx=ctx,
            detection={"source": "gateway_callback", **detection},
            details=reason,
        )
        if ctx is not None:
            ctx.audited = True

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def _synthesize(self, user: UserDB) -> Optional[Subscription]:
        plan = canonical_plan(user.plan_id)
        if plan == PlanId.BASIC.value:
            return None
        start = user.updated_at or user.created_at or self.clock.now()
        return Subscription(
            user_id=user.id,
            plan_id=plan,
            status=SubscriptionStatus.ACTIVE,
            start_date=start,
            expiration_date=start + SUBSCRIPTION_PERIOD,
            synthesized=True,
        )

    async def get_active_subscriptions(self, db: AsyncSession, user: UserDB) -> List[Subscription]:
        """Active subscriptions with read-time expiry.

        When the subscriptions table cannot be read, a non-persisted subscription is
        synthesized from users.plan_id.
        """
        try:
            result = await db.execute(
                select(UserSubscriptionDB).where(
                    UserSubscriptionDB.user_id == user.id,
                    UserSubscriptionDB.status == SubscriptionStatus.ACTIVE.value,
                )
            )
            rows = result.scalars().all()
            now = self.clock.now()
            active: List[Subscription] = []
            expired: List[UserSubscriptionDB] = []
            for row in rows:
                if row.expiration_date <= now:
                    expired.append(row)
                else:
                    active.append(Subscription.model_validate(row))
            if expired:
                await self._expire_rows(db, expired, now)
                await db.commit()
            return active
        except SQLAlchemyError as e:
            await db.rollback()
            logger.error(f"Subscription read failed for {user.id}, falling back to users.plan_id: {e}")
            synthesized = self._synthesize(user)
            return [synthesized] if synthesized else []

    async def has_active_subscription(self, db: AsyncSession, user: UserDB) -> bool:
        return bool(await self.get_active_subscriptions(db, user))

    async def require_subscription(self, db: AsyncSession, user: UserDB, min_plan: str) -> Subscription:
        """Gate upgrade-only features on a valid global subscription of at least min_plan"""
        result = await db.execute(
            select(UserSubscriptionDB).where(
                UserSubscriptionDB.user_id == user.id,
                UserSubscriptionDB.scope_key == GLOBAL_SCOPE,
            )
        )
        row = result.scalar_one_or_none()
        now = self.clock.now()

        if row is None or row.status == SubscriptionStatus.CANCELLED.value:
            raise Forbidden(
                "An active subscription is required to access this feature",
                error="SUBSCRIPTION_REQUIRED",
                security_type=SecurityEventType.SUBSCRIPTION_REQUIRED,
                extra={"code": "SUBSCRIPTION_REQUIRED"},
            )

        if row.status == SubscriptionStatus.EXPIRED.value or row.expiration_date <= now:
            if row.status == SubscriptionStatus.ACTIVE.value:
                await self._expire_rows(db, [row], now)
                await db.commit()
            raise Forbidden(
                "Your subscription has expired",
                error="SUBSCRIPTION_EXPIRED",
                security_type=SecurityEventType.SUBSCRIPTION_EXPIRED,
                extra={"code": "SUBSCRIPTION_EXPIRED", "expiredAt": row.expiration_date.isoformat()},
            )

        current = canonical_plan(row.plan_id)
        if PLAN_HIERARCHY[current] < PLAN_HIERARCHY[canonical_plan(min_plan)]:
            raise Forbidden(
                f"This feature requires the {min_plan} plan or higher",
                error="PLAN_UPGRADE_REQUIRED",
                security_type=SecurityEventType.PLAN_UPGRADE_REQUIRED,
                extra={"code": "PLAN_UPGRADE_REQUIRED", "currentPlan": current, "requiredPlan": min_plan},
            )
        return Subscription.model_validate(row)

    async def _expire_rows(self, db: AsyncSession, rows: List[UserSubscriptionDB], now) -> None:
        for row in rows:
            row.status = SubscriptionStatus.EXPIRED.value
            row.updated_at = now
            if row.scope_key == GLOBAL_SCOPE:
                await db.execute(
                    update(UserDB)
                    .where(UserDB.id == row.user_id)
                    .values(plan_id=PlanId.BASIC.value, updated_at=now)
                )
        await db.flush()

    async def expire_subscriptions(self, db: AsyncSession) -> int:
        """Scheduled sweep flipping overdue active subscriptions to expired"""
        now = self.clock.now()
        result = await db.execute(
            select(UserSubscriptionDB).where(
                UserSubscriptionDB.status == SubscriptionStatus.ACTIVE.value,
                UserSubscriptionDB.expiration_date <= now,
            )
        )
        rows = list(result.scalars().all())
        if rows:
            await self._expire_rows(db, rows, now)
        await db.commit()
        return len(rows)
