"""
Audit sink.
Psychology: Security records are evidence; losing one must never cost a request.
Intention: Append-only writers for security_logs, api_logs and error_logs, each in its own session.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func, select

from backlify.clock import Clock
from backlify.database import Database
from backlify.middleware.context import RequestContext
from backlify.models.security import ApiLogDB, ErrorLogDB, SecurityLogDB
from backlify.monitoring import BusinessMetrics

logger = logging.getLogger(__name__)

MAX_DETAILS_LENGTH = 2000


class AuditSink:
    """Fire-and-forget writer for security, request and error records"""

    def __init__(self, database: Database, clock: Clock):
        self.database = database
        self.clock = clock

    async def record(
        self,
        event_type: str,
        *,
        ctx: Optional[RequestContext] = None,
        ip: Optional[str] = None,
        user_id: Optional[str] = None,
        method: Optional[str] = None,
        path: Optional[str] = None,
        detection: Optional[Dict[str, Any]] = None,
        details: Optional[str] = None,
    ) -> None:
        """Persist one security event. Failures are logged, never raised."""
        if ctx is not None:
            ip = ip or ctx.ip
            user_id = user_id or ctx.user_id or ctx.principal
            method = method or ctx.method
            path = path or ctx.path

        entry = SecurityLogDB(
            timestamp=self.clock.now(),
            ip=ip,
            user_id=user_id,
            method=method,
            path=path,
            type=event_type,
            detection=detection or {},
            endpoint=path,
            details=(details or "")[:MAX_DETAILS_LENGTH] or None,
            request_id=ctx.request_id if ctx else None,
        )

        BusinessMetrics.track_security_event(event_type)
        logger.warning(
            f"Security event: {event_type}",
            extra={"event_type": event_type, "ip": ip, "user_id": user_id, "path": path},
        )

        try:
            async with self.database.session() as session:
                session.add(entry)
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to write security log {event_type}: {e}")

    async def record_api_log(self, ctx: RequestContext, status_code: int) -> None:
        entry = ApiLogDB(
            timestamp=self.clock.now(),
            ip=ctx.ip,
            x_auth_user_id=ctx.x_auth_user_id or ctx.principal,
            user_id=ctx.user_id,
            method=ctx.method,
            endpoint=ctx.path,
            status_code=status_code,
            response_time_ms=ctx.elapsed_ms,
            is_api_request=ctx.is_api_request,
            api_id=ctx.api_id,
            request_id=ctx.request_id,
        )
        try:
            async with self.database.session() as session:
                session.add(entry)
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to write api log for {ctx.method} {ctx.path}: {e}")

    async def record_error(
        self,
        request_id: str,
        error: str,
        *,
        ctx: Optional[RequestContext] = None,
        stack: Optional[str] = None,
        status: int = 500,
    ) -> None:
        entry = ErrorLogDB(
            request_id=request_id,
            ip=ctx.ip if ctx else None,
            user_id=(ctx.user_id or ctx.principal) if ctx else None,
            method=ctx.method if ctx else None,
            path=ctx.path if ctx else None,
            timestamp=self.clock.now(),
            error=error[:MAX_DETAILS_LENGTH],
            stack=stack,
            status=status,
        )
        try:
            async with self.database.session() as session:
                session.add(entry)
                await session.commit()
        except Exception as e:
            logger.error(f"Failed to write error log {request_id}: {e}")

    async def count_events(self, ip: str, event_type: str, since: datetime) -> int:
        async with self.database.session() as session:
            result = await session.execute(
                select(func.count(SecurityLogDB.id)).where(
                    SecurityLogDB.ip == ip,
                    SecurityLogDB.type == event_type,
                    SecurityLogDB.timestamp >= since,
                )
            )
            return int(result.scalar_one())
