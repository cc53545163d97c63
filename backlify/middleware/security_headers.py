"""
Security response headers compatible with cross-origin API use.
No frame restriction and a cross-origin resource policy; HSTS only in production.
"""
from typing import Dict

CONTENT_SECURITY_POLICY = (
    "default-src 'self' *; "
    "script-src 'self' 'unsafe-inline' 'unsafe-eval' *; "
    "style-src 'self' 'unsafe-inline' *; "
    "font-src 'self' *; "
    "img-src 'self' data: *; "
    "connect-src 'self' *; "
    "frame-src 'self' *; "
    "object-src 'none'"
)

NO_STORE_PATHS = ("/auth/login", "/auth/register")


def security_headers(path: str, production: bool) -> Dict[str, str]:
    headers = {
        "Content-Security-Policy": CONTENT_SECURITY_POLICY,
        "Cross-Origin-Resource-Policy": "cross-origin",
        "Referrer-Policy": "no-referrer-when-downgrade",
        "Permissions-Policy": "interest-cohort=()",
    }

    if production:
        headers["Content-Security-Policy"] += "; upgrade-insecure-requests"
        headers["Strict-Transport-Security"] = "max-age=15552000"

    if any(p in path for p in NO_STORE_PATHS):
        headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
        headers["Pragma"] = "no-cache"
        headers["Expires"] = "0"

    return headers
