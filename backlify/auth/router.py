"""
Authentication router.
Psychology: Credentials in, tokens out, and every failure leaves an audit trail.
Intention: Registration, password and Google login, refresh and logout, with the account lock
state machine wrapped around every password check.
"""

import re
from typing import Optional

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from backlify.auth.database_models import AccountStatus, LoginMethod, UserDB
from backlify.auth.dependencies import get_current_context, get_services
from backlify.auth.models import (
    AccessTokenResponse,
    GoogleLoginRequest,
    LoginRequest,
    LogoutRequest,
    PlanId,
    RefreshRequest,
    RegisterRequest,
    TokenPair,
    UserSummary,
    get_password_hash,
    verify_password,
)
from backlify.database import get_db
from backlify.errors import Forbidden, InputInvalid, SecurityEventType, Unauthenticated
from backlify.middleware.context import RequestContext
from backlify.middleware.logging import BusinessEventLogger

router = APIRouter(prefix="/auth", tags=["authentication"])

INVALID_CREDENTIALS = "Invalid username or password"
USERNAME_SAFE_RE = re.compile(r"[^a-zA-Z0-9_.-]")


async def _issue_tokens(services, db: AsyncSession, user: UserDB) -> TokenPair:
    return TokenPair(
        username=user.username,
        email=user.email,
        x_auth_user_id=user.username,
        access_token=services.tokens.issue_access(user.username),
        refresh_token=await services.tokens.issue_refresh(db, user.username),
    )


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_user(
    user_data: RegisterRequest,
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    ctx: RequestContext = Depends(get_current_context),
):
    """Register a new user on the basic plan"""
    stmt = select(UserDB).where(
        or_(UserDB.username == user_data.username, UserDB.email == user_data.email)
    )
    result = await db.execute(stmt)
    existing_user = result.scalars().first()

    if existing_user:
        raise InputInvalid("User with this username or email already exists", error="User exists")

    now = services.clock.now()
    db_user = UserDB(
        username=user_data.username,
        email=user_data.email,
        password_hash=get_password_hash(user_data.password),
        plan_id=PlanId.BASIC.value,
        account_status=AccountStatus.ACTIVE,
        login_attempts=0,
        login_method=LoginMethod.EMAIL,
        email_verified=False,
        created_at=now,
        updated_at=now,
    )

    db.add(db_user)
    await db.commit()
    await db.refresh(db_user)

    BusinessEventLogger.log_auth(db_user.username, "registered", user_id=db_user.id, request_id=ctx.request_id)
    return {
        "success": True,
        "message": "User registered successfully",
        "user": UserSummary.model_validate(db_user).model_dump(mode="json"),
    }


@router.post("/login")
async def login(
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    ctx: RequestContext = Depends(get_current_context),
):
    """Login with username or email and password"""
    account_lock = services.account_lock
    user = await account_lock.find_user(db, credentials.identifier)

    if user is None:
        verify_password(credentials.password, None)
        raise Unauthenticated(INVALID_CREDENTIALS, error="Authentication failed")

    if not await account_lock.ensure_unlocked(db, user, ctx):
        raise Forbidden(
            "Account is temporarily locked due to too many failed login attempts",
            error="Account locked",
            security_type=SecurityEventType.LOCKED_ACCOUNT_ACCESS_ATTEMPT,
        )

    if not verify_password(credentials.password, user.password_hash):
        locked = await account_lock.register_failure(db, user, ctx)
        if locked:
            raise Forbidden(
                "Your account is temporarily locked due to multiple failed login attempts. "
                "Please try again later.",
                error="Account locked",
                security_type=SecurityEventType.ACCOUNT_LOCKED,
            )
        remaining = max(account_lock.max_attempts - user.login_attempts, 0)
        raise Unauthenticated(
            INVALID_CREDENTIALS,
            error="Authentication failed",
            security_type=SecurityEventType.FAILED_LOGIN,
            extra={"remainingAttempts": remaining},
        )

    await account_lock.register_success(db, user, ctx)
    tokens = await _issue_tokens(services, db, user)

    BusinessEventLogger.log_auth(user.username, "login", user_id=user.id, request_id=ctx.request_id)
    return tokens.model_dump(by_alias=True)


@router.post("/refresh")
async def refresh_token(
    payload: RefreshRequest,
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
):
    """Exchange a persisted, unrevoked refresh token for a new access token"""
    claims = await services.tokens.refresh(db, payload.refresh_token)
    response = AccessTokenResponse(
        username=claims.username,
        access_token=services.tokens.issue_access(claims.username),
    )
    return response.model_dump(by_alias=True)


@router.post("/logout")
async def logout(
    payload: LogoutRequest,
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    ctx: RequestContext = Depends(get_current_context),
):
    """Revoke the refresh token. The caller is logged out even if it was already revoked."""
    if not payload.refresh_token:
        raise InputInvalid("Refresh token is required for logout", error="Missing refresh token")

    if await services.tokens.revoke(db, payload.refresh_token):
        await services.audit.record(
            SecurityEventType.TOKEN_REVOKED,
            ctx=ctx,
            detection={"username": ctx.principal},
        )

    BusinessEventLogger.log_auth(ctx.principal, "logout", request_id=ctx.request_id)
    return JSONResponse(
        {"success": True, "message": "Logout successful"},
        headers={
            "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        },
    )


# ============================================================================
# GOOGLE LOGIN
# ============================================================================

async def _unique_username(db: AsyncSession, email: str) -> str:
    base = USERNAME_SAFE_RE.sub("", email.split("@")[0]) or "user"
    candidate = base
    counter = 1
    while True:
        result = await db.execute(select(func.count(UserDB.id)).where(UserDB.username == candidate))
        if not result.scalar_one():
            return candidate
        candidate = f"{base}{counter}"
        counter += 1


async def _find_by(db: AsyncSession, column, value) -> Optional[UserDB]:
    result = await db.execute(select(UserDB).where(column == value))
    return result.scalars().first()


@router.post("/google-login")
async def google_login(
    payload: GoogleLoginRequest,
    db: AsyncSession = Depends(get_db),
    services=Depends(get_services),
    ctx: RequestContext = Depends(get_current_context),
):
    """Sign in with a Google access token; accounts are resolved by what Google reports, never the body"""
    profile = await services.google.verify(payload.google_token, payload.email, payload.google_id)
    now = services.clock.now()

    user = await _find_by(db, UserDB.google_id, profile.id)
    if user is None:
        user = await _find_by(db, UserDB.email, profile.email)
        if user is not None:
            if user.google_id and user.google_id != profile.id:
                raise Unauthenticated("Email is linked to a different Google account")
            user.google_id = profile.id
            user.profile_picture = payload.picture or profile.picture or user.profile_picture
            user.email_verified = True
        else:
            user = UserDB(
                username=await _unique_username(db, profile.email),
                email=profile.email,
                password_hash=None,
                plan_id=PlanId.BASIC.value,
                google_id=profile.id,
                full_name=payload.name or profile.name,
                profile_picture=payload.picture or profile.picture,
                email_verified=True,
                login_method=LoginMethod.GOOGLE,
                created_at=now,
            )
            db.add(user)
    else:
        user.full_name = payload.name or user.full_name
        user.profile_picture = payload.picture or user.profile_picture

    if user.account_status == AccountStatus.LOCKED and not await services.account_lock.ensure_unlocked(db, user, ctx):
        raise Forbidden(
            "Account is temporarily locked due to too many failed login attempts",
            error="Account locked",
            security_type=SecurityEventType.LOCKED_ACCOUNT_ACCESS_ATTEMPT,
        )

    user.last_login = now
    user.updated_at = now
    await db.commit()
    await db.refresh(user)

    tokens = await _issue_tokens(services, db, user)
    BusinessEventLogger.log_auth(user.username, "login", method="google", user_id=user.id, request_id=ctx.request_id)

    body = tokens.model_dump(by_alias=True)
    body.update({
        "name": user.full_name,
        "picture": user.profile_picture,
        "loginMethod": LoginMethod.GOOGLE,
        "message": "Google authentication successful",
    })
    return body
