"""
Structured logging for the control plane.
Psychology: Contextual logging with correlation IDs for debugging.
Intention: Every stdlib record is rendered by structlog, so `extra` fields such as request_id
end up as keys of the emitted JSON line; business events are bound structlog events.
"""
import logging
from typing import Any, Dict, Mapping, Optional

import structlog

from backlify.middleware.context import RequestContext

logger = logging.getLogger("backlify.api")
events = structlog.get_logger("backlify.events")

# Marks the handler installed below so repeated app construction does not stack handlers
_HANDLER_FLAG = "_backlify_structured"


class RequestLogger:
    """Request start/end records keyed by request id"""

    @staticmethod
    def log_request_start(ctx: RequestContext, headers: Mapping[str, str]):
        logger.info("Request started", extra={
            "event": "request_start",
            "request_id": ctx.request_id,
            "method": ctx.method,
            "path": ctx.path,
            "client_ip": ctx.ip,
            "user_agent": headers.get("user-agent"),
            "content_length": headers.get("content-length"),
        })

    @staticmethod
    def log_request_end(ctx: RequestContext, status_code: int, error: Optional[BaseException] = None):
        log_data: Dict[str, Any] = {
            "event": "request_end",
            "request_id": ctx.request_id,
            "method": ctx.method,
            "path": ctx.path,
            "status_code": status_code,
            "duration_ms": ctx.elapsed_ms,
            "principal": ctx.principal,
            "route_class": ctx.route_class,
        }
        if ctx.user_id:
            log_data["user_id"] = ctx.user_id

        if error is not None:
            log_data["error_type"] = type(error).__name__
            log_data["error_message"] = str(error)

        if error is not None or status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(level, "Request completed", extra=log_data)


class BusinessEventLogger:
    """Auth and payment milestones, one structlog event each"""

    @staticmethod
    def log_event(event_type: str, event_data: Dict[str, Any],
                  user_id: Optional[str] = None, request_id: Optional[str] = None):
        bound = events.bind(event_type=event_type)
        if user_id:
            bound = bound.bind(user_id=user_id)
        if request_id:
            bound = bound.bind(request_id=request_id)
        bound.info("business_event", **event_data)

    @staticmethod
    def log_payment(order_id: str, action: str, status: str,
                    user_id: Optional[str] = None, request_id: Optional[str] = None):
        BusinessEventLogger.log_event(
            f"payment_{action}",
            {"order_id": order_id, "status": status},
            user_id=user_id,
            request_id=request_id,
        )

    @staticmethod
    def log_auth(username: str, action: str, method: str = "email",
                 user_id: Optional[str] = None, request_id: Optional[str] = None):
        BusinessEventLogger.log_event(
            f"auth_{action}",
            {"username": username, "method": method},
            user_id=user_id,
            request_id=request_id,
        )


def setup_structured_logging(level: str = "INFO", json_logs: bool = True):
    """Route stdlib and structlog records through one structlog formatter on the root logger"""
    shared_processors = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
    )

    root = logging.getLogger()
    for handler in [h for h in root.handlers if getattr(h, _HANDLER_FLAG, False)]:
        root.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    setattr(handler, _HANDLER_FLAG, True)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    return structlog.get_logger("backlify")
