"""
Error rendering.
Psychology: Callers always get the same envelope; operators get the stack trace.
Intention: Translate ControlPlaneError, HTTPException and validation errors into
{success:false, error, message, requestId}, and keep the process alive on stray task errors.
"""
import asyncio
import logging
import traceback
from http import HTTPStatus
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from backlify.errors import ControlPlaneError, ServerFailure, event_type_for_status
from backlify.middleware.context import RequestContext, get_request_context
from backlify.monitoring import BusinessMetrics
from backlify.services.audit import AuditSink

logger = logging.getLogger(__name__)

GENERIC_ERROR_MESSAGE = "An unexpected error occurred"
GLOBAL_UNCAUGHT = "global-uncaught"


def mark_audit(ctx: RequestContext, security_type: Optional[str], detection: Optional[Dict[str, Any]] = None):
    """Tell the response logger which audit type this failure carries ('' for none)"""
    if ctx.audited:
        return
    ctx.audit_type = security_type or ""
    if detection:
        ctx.audit_detection = detection


def error_body(ctx: RequestContext, error: str, message: str, **extra) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "error": error, "message": message}
    body.update(extra)
    body["requestId"] = ctx.request_id
    return body


def render_control_plane_error(ctx: RequestContext, exc: ControlPlaneError) -> JSONResponse:
    mark_audit(ctx, exc.security_type, exc.detection)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(exc.to_body(ctx.request_id)),
        headers=exc.headers or None,
    )


def render_uncaught(ctx: RequestContext, exc: BaseException, production: bool) -> JSONResponse:
    message = GENERIC_ERROR_MESSAGE if production else (str(exc) or GENERIC_ERROR_MESSAGE)
    failure = ServerFailure(message)
    return JSONResponse(status_code=failure.status_code, content=failure.to_body(ctx.request_id))


async def control_plane_error_handler(request: Request, exc: ControlPlaneError):
    ctx = get_request_context(request)
    BusinessMetrics.track_rejection("handler", exc.status_code)
    return render_control_plane_error(ctx, exc)


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    ctx = get_request_context(request)
    mark_audit(ctx, event_type_for_status(exc.status_code))
    try:
        error = HTTPStatus(exc.status_code).phrase
    except ValueError:
        error = "Error"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(ctx, error, str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    ctx = get_request_context(request)
    errors = jsonable_encoder(exc.errors(), custom_encoder={Exception: str})
    mark_audit(ctx, event_type_for_status(status.HTTP_400_BAD_REQUEST), {"errors": errors})
    first = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(ctx, "Bad request", first, details=errors),
    )


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(ControlPlaneError, control_plane_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)


async def record_uncaught(audit: AuditSink, ctx: RequestContext, exc: BaseException) -> None:
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    logger.error(f"Unhandled error in {ctx.method} {ctx.path} [{ctx.request_id}]: {exc}\n{stack}")
    BusinessMetrics.track_error(type(exc).__name__, ctx.path)
    await audit.record_error(ctx.request_id, str(exc) or type(exc).__name__, ctx=ctx, stack=stack)


def install_loop_exception_handler(loop: asyncio.AbstractEventLoop, audit: AuditSink) -> None:
    """Errors escaping background tasks are logged and recorded; the loop keeps running"""

    def handle(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        message = context.get("message", "Unhandled exception in event loop")
        logger.error(f"Uncaught loop error: {message}: {exc!r}")
        error = str(exc) if exc else message
        stack = (
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)) if exc else None
        )
        BusinessMetrics.track_error(type(exc).__name__ if exc else "LoopError", GLOBAL_UNCAUGHT)
        loop.create_task(audit.record_error(GLOBAL_UNCAUGHT, error, stack=stack))

    loop.set_exception_handler(handle)
