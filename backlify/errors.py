"""
Error taxonomy for the control plane.
Psychology: Every rejection has a kind, an HTTP status and a stable audit type.
Intention: Stages raise, the pipeline and exception handlers render; nobody builds error JSON by hand.
"""

from typing import Any, Dict, Optional

from fastapi import status


class SecurityEventType:
    """Stable names written to security_logs.type"""

    BAD_REQUEST = "BAD_REQUEST"
    INJECTION_ATTEMPT = "INJECTION_ATTEMPT"
    XSS_ATTEMPT = "XSS_ATTEMPT"
    EMAIL_MALICIOUS_CONTENT = "EMAIL_MALICIOUS_CONTENT"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    LOCKED_ACCOUNT_ACCESS_ATTEMPT = "LOCKED_ACCOUNT_ACCESS_ATTEMPT"
    BLACKLISTED_IP_BLOCKED = "BLACKLISTED_IP_BLOCKED"
    SUBSCRIPTION_REQUIRED = "SUBSCRIPTION_REQUIRED"
    PLAN_UPGRADE_REQUIRED = "PLAN_UPGRADE_REQUIRED"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
    SERVER_ERROR = "SERVER_ERROR"

    # Lifecycle events
    FAILED_LOGIN = "FAILED_LOGIN"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_AUTO_UNLOCKED = "ACCOUNT_AUTO_UNLOCKED"
    SUCCESSFUL_LOGIN = "SUCCESSFUL_LOGIN"
    TOKEN_REVOKED = "TOKEN_REVOKED"
    PAYMENT_FINALIZED = "PAYMENT_FINALIZED"
    PAYMENT_CALLBACK_FAILED = "PAYMENT_CALLBACK_FAILED"


STATUS_EVENT_TYPES = {
    400: SecurityEventType.BAD_REQUEST,
    401: SecurityEventType.UNAUTHORIZED,
    403: SecurityEventType.FORBIDDEN,
    413: SecurityEventType.PAYLOAD_TOO_LARGE,
    429: SecurityEventType.RATE_LIMIT_EXCEEDED,
}


def event_type_for_status(status_code: int) -> Optional[str]:
    if status_code >= 500:
        return SecurityEventType.SERVER_ERROR
    return STATUS_EVENT_TYPES.get(status_code)


class ControlPlaneError(Exception):
    """Base error carrying everything needed to render and audit a rejection"""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    error: str = "Internal server error"
    security_type: Optional[str] = SecurityEventType.SERVER_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        error: Optional[str] = None,
        security_type: Optional[str] = None,
        detection: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message or self.error
        if error:
            self.error = error
        if security_type:
            self.security_type = security_type
        self.detection = detection or {}
        self.extra = extra or {}
        self.headers = headers or {}
        super().__init__(self.message)

    @property
    def detail(self) -> str:
        return self.message

    def to_body(self, request_id: Optional[str] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"success": False, "error": self.error, "message": self.message}
        body.update(self.extra)
        if request_id:
            body["requestId"] = request_id
        return body


class InputInvalid(ControlPlaneError):
    status_code = status.HTTP_400_BAD_REQUEST
    error = "Bad request"
    security_type = SecurityEventType.BAD_REQUEST


class Unauthenticated(ControlPlaneError):
    status_code = status.HTTP_401_UNAUTHORIZED
    error = "Unauthorized"
    security_type = SecurityEventType.UNAUTHORIZED


class Forbidden(ControlPlaneError):
    status_code = status.HTTP_403_FORBIDDEN
    error = "Forbidden"
    security_type = SecurityEventType.FORBIDDEN


class NotFound(ControlPlaneError):
    status_code = status.HTTP_404_NOT_FOUND
    error = "Not found"
    security_type = None


class PayloadTooLarge(ControlPlaneError):
    status_code = 413
    error = "Payload too large"
    security_type = SecurityEventType.PAYLOAD_TOO_LARGE


class RateLimited(ControlPlaneError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    error = "Too many requests"
    security_type = SecurityEventType.RATE_LIMIT_EXCEEDED


class ServerFailure(ControlPlaneError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error = "Internal server error"
    security_type = SecurityEventType.SERVER_ERROR


class GatewayError(ControlPlaneError):
    """The card gateway could not be reached or answered with something unusable"""

    status_code = status.HTTP_502_BAD_GATEWAY
    error = "GATEWAY_ERROR"
    security_type = None


class ServiceUnavailable(ControlPlaneError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error = "SERVICE_UNAVAILABLE"
    security_type = None
