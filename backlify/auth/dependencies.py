"""
Authentication dependencies for FastAPI.
Psychology: Layered security - the pipeline authenticates, dependencies authorize.
Intention: Hand handlers the resolved principal, user row and subscription guard.
"""

from fastapi import Depends, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backlify.auth.database_models import UserDB
from backlify.auth.models import PlanId
from backlify.database import get_db
from backlify.errors import Unauthenticated
from backlify.middleware.context import RequestContext, get_request_context
from backlify.models.billing import Subscription


def get_services(request: Request):
    return request.app.state.services


def get_current_context(request: Request) -> RequestContext:
    return get_request_context(request)


# Dependency: Get current user from the authenticated principal
async def get_current_user(
    ctx: RequestContext = Depends(get_current_context),
    db: AsyncSession = Depends(get_db),
) -> UserDB:
    """Resolve the user behind the access token the pipeline already verified"""
    if not ctx.is_authenticated:
        raise Unauthenticated("Authentication required")

    result = await db.execute(select(UserDB).where(UserDB.username == ctx.principal))
    user = result.scalars().first()

    if user is None:
        raise Unauthenticated("User not found")

    return user


# Subscription-based authorization dependencies
def require_subscription(min_plan: str = PlanId.BASIC.value):
    """Factory function to create subscription-gated dependencies"""
    async def subscription_dependency(
        request: Request,
        current_user: UserDB = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ) -> Subscription:
        payments = get_services(request).payments
        return await payments.require_subscription(db, current_user, min_plan)

    return subscription_dependency


# Gate for card-on-file operations
require_pro = require_subscription(PlanId.PRO.value)
