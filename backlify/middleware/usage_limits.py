"""
Usage classification for metered routes.
Creating an API from a schema is a project; calls into a generated API are API requests.
"""
import re
from typing import Optional, Tuple

from backlify.middleware.context import UsageKind
from backlify.middleware.route_table import UUID_PATTERN

PROJECT_ROUTE = ("POST", "/create-api-from-schema")
SYSTEM_PREFIXES = ("/api/user", "/api/payment", "/api/admin", "/api/debug", "/api/auth")

GENERATED_API_RE = re.compile(rf"^/api/(?P<api_id>{UUID_PATTERN})(?:/.*)?$")


def classify_usage(method: str, path: str) -> Tuple[Optional[str], Optional[str]]:
    """Return (usage kind, api id) for metered routes, (None, None) otherwise"""
    if (method.upper(), path.rstrip("/") or "/") == PROJECT_ROUTE:
        return UsageKind.PROJECT, None

    if path.startswith(SYSTEM_PREFIXES):
        return None, None

    match = GENERATED_API_RE.match(path)
    if match:
        return UsageKind.REQUEST, match.group("api_id")
    return None, None
