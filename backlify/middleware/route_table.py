"""
Route classification table.
Psychology: Authentication policy is data, reviewed in one place.
Intention: Compile METHOD:path patterns once at startup; protected beats public on overlap.

Pattern syntax:
    METHOD:path      METHOD is an HTTP verb or '*'
    :name            one path segment (constrained when a param pattern is registered)
    *                any remainder, including slashes
"""
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Pattern, Tuple

from backlify.middleware.context import RouteClass

UUID_PATTERN = r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"

PUBLIC_ROUTES = (
    "GET:/",
    "GET:/health",
    "GET:/metrics",
    "GET:/docs",
    "GET:/docs/*",
    "GET:/redoc",
    "GET:/openapi.json",
    "POST:/auth/register",
    "POST:/auth/login",
    "POST:/auth/refresh",
    "POST:/auth/google-login",
    "GET:/api/payment/plans",
    "GET:/api/payment/success",
    "GET:/api/payment/cancel",
    "POST:/api/epoint/callback",
    "POST:/api/epoint-callback",
    "POST:/api/payment/epoint-callback",
)

PROTECTED_ROUTES = (
    "POST:/auth/logout",
    "POST:/api/payment/order",
    "GET:/api/payment/history",
    "GET:/api/payment/subscription",
    "GET:/api/payment/check-subscription",
    "POST:/api/epoint/check-status",
    "POST:/api/epoint/save-card",
    "POST:/api/epoint/execute-saved-card-payment",
    "POST:/api/epoint/reverse-payment",
    "POST:/api/epoint/pre-auth/create",
    "POST:/api/epoint/pre-auth/complete",
    "GET:/api/usage/current",
    "POST:/generate-schema",
    "POST:/modify-schema",
    "POST:/create-api-from-schema",
    "*:/api/:apiId",
    "*:/api/:apiId/*",
)

DEFAULT_PARAM_PATTERNS = {"apiId": UUID_PATTERN}


@dataclass(frozen=True)
class CompiledRoute:
    key: str
    method: str
    regex: Pattern[str]

    def matches(self, method: str, path: str) -> Optional[Dict[str, str]]:
        if self.method != "*" and self.method != method:
            return None
        match = self.regex.match(path)
        return match.groupdict() if match else None


def compile_pattern(key: str, param_patterns: Optional[Dict[str, str]] = None) -> CompiledRoute:
    method, sep, path = key.partition(":")
    if not sep or not path.startswith("/"):
        raise ValueError(f"Route key must look like METHOD:/path, got {key!r}")

    param_patterns = param_patterns or {}
    parts: List[str] = []
    for segment in re.split(r"(/)", path):
        if segment == "/" or segment == "":
            parts.append(segment)
        elif segment == "*":
            parts.append(".*")
        elif segment.startswith(":"):
            name = segment[1:]
            parts.append(f"(?P<{name}>{param_patterns.get(name, '[^/]+')})")
        else:
            parts.append(re.escape(segment))

    pattern = "".join(parts)
    # '/x/*' also covers '/x'
    if pattern.endswith("/.*"):
        pattern = pattern[:-3] + "(?:/.*)?"
    return CompiledRoute(key=key, method=method.upper(), regex=re.compile(f"^{pattern}/?$"))


class RouteTable:
    """Read-only after construction"""

    def __init__(
        self,
        public: Iterable[str] = PUBLIC_ROUTES,
        protected: Iterable[str] = PROTECTED_ROUTES,
        param_patterns: Optional[Dict[str, str]] = None,
    ):
        patterns = {**DEFAULT_PARAM_PATTERNS, **(param_patterns or {})}
        self.public: Tuple[CompiledRoute, ...] = tuple(compile_pattern(k, patterns) for k in public)
        self.protected: Tuple[CompiledRoute, ...] = tuple(compile_pattern(k, patterns) for k in protected)

    @staticmethod
    def _first_match(routes: Tuple[CompiledRoute, ...], method: str, path: str):
        for route in routes:
            params = route.matches(method, path)
            if params is not None:
                return route, params
        return None, None

    def classify(self, method: str, path: str) -> Tuple[str, Dict[str, str]]:
        """Return (route class, path params). Unlisted routes are protected."""
        method = method.upper()
        route, params = self._first_match(self.protected, method, path)
        if route is not None:
            return RouteClass.PROTECTED, params
        route, params = self._first_match(self.public, method, path)
        if route is not None:
            return RouteClass.PUBLIC, params
        return RouteClass.PROTECTED, {}
