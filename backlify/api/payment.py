"""
Payment router.
Psychology: Plans are public, money movements are tied to an authenticated principal.
Intention: Plans, order creation, history and subscription reads; redirect helpers for the hosted page.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from backlify.auth.database_models import UserDB
from backlify.auth.dependencies import get_current_context, get_current_user, get_services
from backlify.database import get_db
from backlify.errors import InputInvalid
from backlify.middleware.context import RequestContext
from backlify.models.billing import CreateOrderRequest, PaymentOrder

router = APIRouter(prefix="/api/payment", tags=["payment"])


@router.get("/plans")
async def get_plans(
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
):
    """Active plans ordered by price"""
    plans = await services.payments.list_plans(db)
    return {"success": True, "data": [plan.model_dump() for plan in plans]}


@router.post("/order", status_code=status.HTTP_200_OK)
async def create_order(
    order_request: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    current_user: UserDB = Depends(get_current_user),
    ctx: RequestContext = Depends(get_current_context),
):
    """Create a pending order and return the gateway's hosted payment page"""
    created = await services.payments.create_order(
        db,
        current_user,
        order_request.plan_id,
        api_id=order_request.api_id,
        principal=ctx.principal,
    )
    order = PaymentOrder.model_validate(created["order"])
    return {
        "success": True,
        "data": {
            "order": order.model_dump(mode="json"),
            "paymentUrl": created["paymentUrl"],
        },
    }


@router.get("/history")
async def get_payment_history(
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    current_user: UserDB = Depends(get_current_user),
):
    orders = await services.payments.list_history(db, current_user.id)
    return {
        "success": True,
        "data": [PaymentOrder.model_validate(o).model_dump(mode="json") for o in orders],
    }


@router.get("/subscription")
async def get_subscription(
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    current_user: UserDB = Depends(get_current_user),
):
    """Active subscriptions; expired rows are flipped while reading"""
    subscriptions = await services.payments.get_active_subscriptions(db, current_user)
    public = [s.to_public() for s in subscriptions]
    return {
        "success": True,
        "data": public[0] if public else None,
        "subscriptions": public,
    }


@router.get("/check-subscription")
async def check_subscription(
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    current_user: UserDB = Depends(get_current_user),
):
    active = await services.payments.has_active_subscription(db, current_user)
    return {"success": True, "hasActiveSubscription": active}


@router.get("/success")
async def payment_success(order_id: Optional[str] = Query(None)):
    if not order_id:
        raise InputInvalid("Order ID is required")
    return {
        "success": True,
        "message": "Payment successful",
        "orderId": order_id,
        "redirectUrl": "/dashboard",
    }


@router.get("/cancel")
async def payment_cancel(order_id: Optional[str] = Query(None)):
    return {
        "success": False,
        "message": "Payment cancelled",
        "orderId": order_id,
        "redirectUrl": "/pricing",
    }
