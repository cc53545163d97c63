"""
Usage router.
Counts come from api_logs for the current calendar month; limits from the caller's plan.
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backlify.auth.database_models import UserDB
from backlify.auth.dependencies import get_current_user, get_services
from backlify.database import get_db

router = APIRouter(prefix="/api/usage", tags=["usage"])


@router.get("/current")
async def get_current_usage(
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    current_user: UserDB = Depends(get_current_user),
):
    usage = await services.usage.current_usage(db, current_user.id, current_user.plan_id)
    return {"success": True, **usage}
