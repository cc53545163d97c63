"""
Per-request context threaded through the admission pipeline.
Psychology: Explicit state instead of decorating the request object.
Intention: Every stage reads what earlier stages resolved and writes only its own fields.
"""
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from starlette.requests import Request

ANONYMOUS = "anonymous"


class RouteClass:
    PUBLIC = "public"
    PROTECTED = "protected"


class UsageKind:
    PROJECT = "project"
    REQUEST = "request"


@dataclass
class RequestContext:
    request_id: str
    ip: str
    method: str
    path: str
    started: float = field(default_factory=time.perf_counter)

    route_class: str = RouteClass.PROTECTED
    principal: str = ANONYMOUS
    x_auth_user_id: Optional[str] = None
    user_id: Optional[str] = None
    plan: str = "basic"
    token_type: Optional[str] = None

    body: Any = None
    usage_kind: Optional[str] = None
    is_api_request: bool = False
    api_id: Optional[str] = None
    # Slot held by the usage accountant until the outcome is logged
    usage_reservation: Any = None

    # Set once a stage has written the security record for this request
    audited: bool = False
    # Audit type chosen by the handler error, used by the response logger
    audit_type: Optional[str] = None
    audit_detection: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, ip: str, method: str, path: str, request_id: Optional[str] = None) -> "RequestContext":
        return cls(request_id=request_id or str(uuid.uuid4()), ip=ip, method=method, path=path)

    @property
    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)

    @property
    def is_authenticated(self) -> bool:
        return self.token_type == "access"


def get_request_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "context", None)
    if ctx is None:
        client = request.client.host if request.client else "unknown"
        ctx = RequestContext.new(client, request.method, request.url.path)
        request.state.context = ctx
    return ctx
