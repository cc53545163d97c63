"""
Card gateway router.
Psychology: The callback is the only way an order becomes paid; everything else is a signed passthrough.
Intention: Public callback endpoint (plus legacy aliases) and protected gateway operations scoped to
the caller's own orders.
"""
from typing import Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backlify.auth.database_models import UserDB
from backlify.auth.dependencies import get_current_context, get_current_user, get_services, require_pro
from backlify.database import get_db
from backlify.errors import InputInvalid, NotFound
from backlify.middleware.context import RequestContext
from backlify.models.billing import (
    CheckStatusRequest,
    PaymentOrderDB,
    PreAuthCompleteRequest,
    PreAuthRequest,
    ReversePaymentRequest,
    SaveCardRequest,
    SavedCardPaymentRequest,
    Subscription,
)

router = APIRouter(prefix="/api/epoint", tags=["epoint"])
legacy_router = APIRouter(tags=["epoint"], include_in_schema=False)


async def _owned_order(
    db: AsyncSession,
    user: UserDB,
    order_id: Optional[str] = None,
    transaction: Optional[str] = None,
) -> PaymentOrderDB:
    stmt = select(PaymentOrderDB).where(PaymentOrderDB.user_id == user.id)
    if order_id:
        stmt = stmt.where(PaymentOrderDB.order_id == order_id)
    else:
        stmt = stmt.where(PaymentOrderDB.payment_transaction_id == transaction)
    result = await db.execute(stmt)
    order = result.scalars().first()
    if order is None:
        raise NotFound("Order not found")
    return order


# ============================================================================
# CALLBACK
# ============================================================================

async def handle_callback(
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    ctx: RequestContext = Depends(get_current_context),
):
    """Signed gateway notification. Always answers 200 so the gateway stops retrying bad input."""
    return await services.payments.handle_callback(db, ctx.body, ctx)


router.add_api_route("/callback", handle_callback, methods=["POST"])
legacy_router.add_api_route("/api/epoint-callback", handle_callback, methods=["POST"])
legacy_router.add_api_route("/api/payment/epoint-callback", handle_callback, methods=["POST"])


# ============================================================================
# PASSTHROUGH OPERATIONS
# ============================================================================

@router.post("/check-status")
async def check_payment_status(
    payload: CheckStatusRequest,
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    current_user: UserDB = Depends(get_current_user),
):
    if not payload.order_id and not payload.transaction:
        raise InputInvalid("Order ID or transaction is required", error="MISSING_REQUIRED_FIELDS")

    order = await _owned_order(db, current_user, payload.order_id, payload.transaction)
    transaction = payload.transaction or order.payment_transaction_id
    if not transaction:
        return {"success": True, "data": {"status": order.status, "orderId": order.order_id}}

    result = await services.gateway.check_status(transaction)
    return {"success": True, "data": result}


@router.post("/save-card")
async def save_card(
    payload: SaveCardRequest,
    services=Depends(get_services),
    subscription: Subscription = Depends(require_pro),
):
    settings = services.settings
    result = await services.gateway.register_card(
        success_redirect_url=settings.redirect_success,
        error_redirect_url=settings.redirect_error,
        description=payload.description or "Card registration",
        language=payload.language,
    )
    return {"success": True, "data": result, "message": "Card registration initiated"}


@router.post("/execute-saved-card-payment")
async def execute_saved_card_payment(
    payload: SavedCardPaymentRequest,
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    current_user: UserDB = Depends(get_current_user),
    subscription: Subscription = Depends(require_pro),
    ctx: RequestContext = Depends(get_current_context),
):
    """Charge a saved card. The order stays pending until the signed callback arrives."""
    payments = services.payments
    plan = await payments.get_plan(db, payload.plan_id)
    order = await payments.record_external_order(
        db, current_user, plan, payments.new_order_id(ctx.principal), payload.api_id, "saved_card"
    )
    result = await services.gateway.execute_saved_card_payment(
        card_id=payload.card_id,
        order_id=order.order_id,
        amount=order.amount,
        description=order.description or "",
        currency=order.currency,
    )
    return {
        "success": True,
        "data": {"orderId": order.order_id, "gateway": result},
        "message": "Payment executed successfully",
    }


@router.post("/reverse-payment")
async def reverse_payment(
    payload: ReversePaymentRequest,
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    current_user: UserDB = Depends(get_current_user),
):
    await _owned_order(db, current_user, transaction=payload.transaction)
    result = await services.gateway.reverse_payment(
        payload.transaction, amount=payload.amount, currency=payload.currency
    )
    return {"success": True, "data": result, "message": "Payment reversal requested"}


@router.post("/pre-auth/create")
async def create_pre_auth(
    payload: PreAuthRequest,
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    current_user: UserDB = Depends(get_current_user),
    ctx: RequestContext = Depends(get_current_context),
):
    payments = services.payments
    plan = await payments.get_plan(db, payload.plan_id)
    order = await payments.record_external_order(
        db, current_user, plan, payments.new_order_id(ctx.principal), payload.api_id, "pre_auth"
    )
    result = await services.gateway.create_pre_auth(
        amount=order.amount,
        order_id=order.order_id,
        description=order.description or "",
        success_redirect_url=services.settings.redirect_success,
        error_redirect_url=services.settings.redirect_error,
        currency=order.currency,
    )
    return {"success": True, "data": {"orderId": order.order_id, "gateway": result}}


@router.post("/pre-auth/complete")
async def complete_pre_auth(
    payload: PreAuthCompleteRequest,
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    current_user: UserDB = Depends(get_current_user),
):
    await _owned_order(db, current_user, transaction=payload.transaction)
    result = await services.gateway.complete_pre_auth(payload.transaction, payload.amount)
    return {"success": True, "data": result}
