"""
CORS envelope.
Without ALLOWED_ORIGINS (or with '*') every origin is echoed back, as browsers of the
existing frontends expect. With an allow-list only listed origins are echoed, and
credentials are only advertised for an echoed concrete origin.
"""
from typing import Dict, Iterable, Optional

ALLOWED_METHODS = "GET, POST, PUT, DELETE, PATCH, OPTIONS"
ALLOWED_HEADERS = (
    "Content-Type, Authorization, X-Requested-With, X-User-Id, x-user-id, "
    "X-USER-ID, xauthuserid, XAuthUserId, X-Request-ID"
)
EXPOSED_HEADERS = "Content-Length, Content-Disposition, X-Request-ID"
MAX_AGE = "86400"


class CorsPolicy:
    def __init__(self, allowed_origins: Optional[Iterable[str]] = None):
        origins = [o.rstrip("/") for o in (allowed_origins or []) if o]
        self.permissive = not origins or "*" in origins
        self.allowed_origins = frozenset(origins)

    def allow_origin(self, origin: Optional[str]) -> Optional[str]:
        if self.permissive:
            return origin or "*"
        if origin and origin.rstrip("/") in self.allowed_origins:
            return origin
        return None

    def headers_for(self, origin: Optional[str]) -> Dict[str, str]:
        headers = {
            "Access-Control-Allow-Methods": ALLOWED_METHODS,
            "Access-Control-Allow-Headers": ALLOWED_HEADERS,
            "Access-Control-Expose-Headers": EXPOSED_HEADERS,
            "Access-Control-Max-Age": MAX_AGE,
            "Vary": "Origin",
        }
        allowed = self.allow_origin(origin)
        if allowed:
            headers["Access-Control-Allow-Origin"] = allowed
            if allowed != "*":
                headers["Access-Control-Allow-Credentials"] = "true"
        return headers

    @staticmethod
    def preflight_body() -> Dict[str, str]:
        return {
            "message": "CORS preflight OK",
            "allowedMethods": ALLOWED_METHODS,
            "allowedHeaders": ALLOWED_HEADERS,
        }
