"""
Admission pipeline.
Psychology: Every request walks the same gauntlet in the same order; nothing reaches a handler unvetted.
Intention: One pure ASGI middleware running CORS, blocklist, rate limit, headers, body parse, scanner,
authentication, login lock guard and usage pre-check, then logging every outcome after the response.

Stage failures raise ControlPlaneError and short-circuit the rest. CORS and security headers are
stamped on every response start, and the response logger runs in the finally block.
"""
import ipaddress
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, unquote, urlencode

from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from backlify.auth.database_models import AccountStatus, UserDB
from backlify.auth.models import canonical_plan
from backlify.errors import (
    ControlPlaneError,
    Forbidden,
    InputInvalid,
    PayloadTooLarge,
    SecurityEventType,
    event_type_for_status,
)
from backlify.middleware.context import ANONYMOUS, RequestContext, RouteClass
from backlify.middleware.error_handler import record_uncaught, render_control_plane_error, render_uncaught
from backlify.middleware.logging import RequestLogger
from backlify.middleware.security_headers import security_headers
from backlify.middleware.usage_limits import classify_usage
from backlify.monitoring import BusinessMetrics

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 10 * 1024 * 1024
UNLOGGED_PATHS = ("/health", "/metrics")
LOGIN_PATH = "/auth/login"
IDENTITY_HEADERS = ("x-user-id", "xauthuserid")
IDENTITY_QUERY = "XAuthUserId"
REQUEST_ID_HEADER = "x-request-id"


# ============================================================================
# HELPERS
# ============================================================================

def is_trusted_proxy(address: str, trusted: Sequence[str]) -> bool:
    if address in trusted:
        return True
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    for entry in trusted:
        if "/" not in entry:
            continue
        try:
            if ip in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning(f"Ignoring malformed trusted proxy range {entry!r}")
    return False


def client_ip(scope: Scope, headers: Headers, trusted_proxies: Sequence[str] = ()) -> str:
    """Socket peer address.

    X-Forwarded-For is only read when the peer itself is a trusted proxy; the client is then
    the right-most hop that is not another trusted proxy.
    """
    client = scope.get("client")
    peer = client[0] if client else "unknown"
    forwarded = headers.get("x-forwarded-for")
    if not forwarded or not is_trusted_proxy(peer, trusted_proxies):
        return peer

    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not is_trusted_proxy(hop, trusted_proxies):
            return hop
    return hops[0] if hops else peer


def claimed_identity(headers: Headers, query: Dict[str, Any]) -> Optional[str]:
    for name in IDENTITY_HEADERS:
        if headers.get(name):
            return headers[name]
    value = query.get(IDENTITY_QUERY)
    if isinstance(value, list):
        value = value[-1] if value else None
    return value or None


def bearer_token(headers: Headers) -> Optional[str]:
    authorization = headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def parse_query(raw: bytes) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    for key, value in parse_qsl(raw.decode("latin-1"), keep_blank_values=True):
        if key in query:
            existing = query[key]
            query[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            query[key] = value
    return query


async def read_body(receive: Receive, headers: Headers) -> bytes:
    declared = headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > MAX_BODY_BYTES:
        raise PayloadTooLarge("Request body exceeds the 10MB limit", error="PAYLOAD_TOO_LARGE")

    chunks: List[bytes] = []
    size = 0
    more_body = True
    while more_body:
        message = await receive()
        if message["type"] != "http.request":
            break
        chunk = message.get("body", b"")
        size += len(chunk)
        if size > MAX_BODY_BYTES:
            raise PayloadTooLarge("Request body exceeds the 10MB limit", error="PAYLOAD_TOO_LARGE")
        chunks.append(chunk)
        more_body = message.get("more_body", False)
    return b"".join(chunks)


def parse_body(raw: bytes, content_type: str) -> Tuple[Any, bool]:
    """Return (parsed body, parsed?). Bodies of other media types pass through untouched."""
    media_type = content_type.split(";")[0].strip().lower()
    if media_type == "application/json" or media_type.endswith("+json"):
        if not raw.strip():
            return None, False
        try:
            return json.loads(raw), True
        except (ValueError, UnicodeDecodeError) as exc:
            raise InputInvalid("Malformed JSON body", error="Bad request", detection={"reason": str(exc)})
    if media_type == "application/x-www-form-urlencoded":
        return dict(parse_qsl(raw.decode("utf-8", errors="replace"), keep_blank_values=True)), True
    return None, False


def replay(body: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay_receive() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay_receive


# ============================================================================
# PIPELINE
# ============================================================================

class AdmissionPipeline:
    """Pure ASGI middleware; collaborators come from app.state.services"""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        services = scope["app"].state.services
        headers = Headers(scope=scope)
        query = parse_query(scope.get("query_string", b""))

        ctx = RequestContext.new(
            ip=client_ip(scope, headers, services.settings.trusted_proxies),
            method=scope["method"],
            path=scope["path"],
            request_id=headers.get(REQUEST_ID_HEADER),
        )
        ctx.x_auth_user_id = claimed_identity(headers, query)
        ctx.principal = ctx.x_auth_user_id or ANONYMOUS
        scope.setdefault("state", {})["context"] = ctx

        origin = headers.get("origin")
        production = services.settings.is_production
        status_code: Optional[int] = None

        async def send_wrapper(message: Message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
                response_headers = MutableHeaders(scope=message)
                for name, value in services.cors.headers_for(origin).items():
                    response_headers[name] = value
                for name, value in security_headers(ctx.path, production).items():
                    response_headers[name] = value
                response_headers["X-Request-ID"] = ctx.request_id
            await send(message)

        if ctx.method == "OPTIONS":
            await JSONResponse(services.cors.preflight_body())(scope, receive, send_wrapper)
            return

        logged = ctx.path not in UNLOGGED_PATHS
        if logged:
            RequestLogger.log_request_start(ctx, headers)

        stage = "blacklist"
        error: Optional[BaseException] = None
        try:
            await services.blacklist.check(ctx)

            stage = "rate_limit"
            await services.rate_limiter.check(ctx)

            stage = "body"
            raw_body = await read_body(receive, headers)
            body, parsed = parse_body(raw_body, headers.get("content-type", ""))

            stage = "scanner"
            segments = [unquote(s) for s in ctx.path.split("/") if s]
            clean_body, clean_query = await services.scanner.inspect(ctx, body, query, segments)
            if clean_query is not query:
                scope["query_string"] = urlencode(clean_query, doseq=True).encode("latin-1")
            if parsed:
                raw_body = json.dumps(clean_body).encode("utf-8")
                self._rewrite_body_headers(scope, len(raw_body))
            ctx.body = clean_body

            stage = "auth"
            ctx.route_class, _ = services.route_table.classify(ctx.method, ctx.path)
            if ctx.route_class == RouteClass.PROTECTED:
                await self._authenticate(services, ctx, headers)

            if ctx.method == "POST" and ctx.path == LOGIN_PATH and isinstance(clean_body, dict):
                stage = "account_lock"
                identifier = clean_body.get("username") or clean_body.get("email")
                if identifier:
                    async with services.database.session() as db:
                        await services.account_lock.guard(db, str(identifier), ctx)

            stage = "usage"
            ctx.usage_kind, ctx.api_id = classify_usage(ctx.method, ctx.path)
            ctx.is_api_request = ctx.usage_kind is not None and ctx.api_id is not None
            if ctx.usage_kind and ctx.route_class == RouteClass.PROTECTED:
                ctx.usage_reservation = await services.usage.reserve(
                    services.database, ctx.principal, ctx.plan, ctx.usage_kind
                )

            stage = "handler"
            await self.app(scope, replay(raw_body, receive), send_wrapper)
        except ControlPlaneError as exc:
            error = exc
            BusinessMetrics.track_rejection(stage, exc.status_code)
            if status_code is None:
                await render_control_plane_error(ctx, exc)(scope, receive, send_wrapper)
            else:
                logger.error(f"{type(exc).__name__} after response start on {ctx.path}: {exc}")
        except Exception as exc:
            error = exc
            await record_uncaught(services.audit, ctx, exc)
            if status_code is None:
                await render_uncaught(ctx, exc, production)(scope, receive, send_wrapper)
        finally:
            final_status = status_code or 500
            if logged:
                RequestLogger.log_request_end(ctx, final_status, error)
                await self._log_response(services, ctx, final_status)

    @staticmethod
    def _rewrite_body_headers(scope: Scope, length: int) -> None:
        headers = MutableHeaders(scope=scope)
        headers["content-type"] = "application/json"
        headers["content-length"] = str(length)

    async def _authenticate(self, services, ctx: RequestContext, headers: Headers) -> None:
        claims = services.tokens.verify(bearer_token(headers))
        ctx.principal = claims.username
        ctx.token_type = claims.type.value

        try:
            async with services.database.session() as db:
                result = await db.execute(select(UserDB).where(UserDB.username == claims.username))
                user = result.scalar_one_or_none()
                if user is None:
                    ctx.plan = canonical_plan(None)
                    return

                ctx.user_id = user.id
                ctx.plan = canonical_plan(user.plan_id)
                if user.account_status == AccountStatus.LOCKED and not await services.account_lock.ensure_unlocked(
                    db, user, ctx
                ):
                    await services.audit.record(
                        SecurityEventType.LOCKED_ACCOUNT_ACCESS_ATTEMPT,
                        ctx=ctx,
                        user_id=user.id,
                        detection={"username": user.username},
                        details="Protected route accessed with a locked account",
                    )
                    ctx.audited = True
                    raise Forbidden(
                        "Account is temporarily locked due to too many failed login attempts",
                        error="Account locked",
                        security_type=SecurityEventType.LOCKED_ACCOUNT_ACCESS_ATTEMPT,
                    )
        except SQLAlchemyError as e:
            logger.error(f"Plan resolution failed for {claims.username}: {e}")
            ctx.plan = canonical_plan(None)

    async def _log_response(self, services, ctx: RequestContext, status_code: int) -> None:
        # The usage slot is freed only once the api_logs row that replaces it is written
        async with services.usage.settle(ctx.usage_reservation):
            await services.audit.record_api_log(ctx, status_code)

        if status_code >= 400 and not ctx.audited:
            event_type = ctx.audit_type if ctx.audit_type is not None else event_type_for_status(status_code)
            if event_type:
                await services.audit.record(
                    event_type,
                    ctx=ctx,
                    detection={"statusCode": status_code, **ctx.audit_detection},
                    details=f"{ctx.method} {ctx.path} answered {status_code}",
                )

        if 200 <= status_code < 300 and ctx.usage_kind and ctx.user_id:
            async with services.database.session() as db:
                await services.usage.record_success(db, ctx.user_id, ctx.plan, ctx.usage_kind)
