"""
Security and audit models.
Psychology: Append-only records; rate limits and usage are derived from them.
Intention: Keep request logs, security events and error reports queryable by ip, user and time.
"""
import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from backlify.database import Base


class ApiLogDB(Base):
    __tablename__ = "api_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    timestamp = Column(DateTime, nullable=False)
    ip = Column(String(64), nullable=False)
    x_auth_user_id = Column(String(255), nullable=True)
    user_id = Column(String(36), nullable=True)
    method = Column(String(10), nullable=False)
    endpoint = Column(String(2048), nullable=False)
    status_code = Column(Integer, nullable=False)
    response_time_ms = Column(Integer, nullable=False, default=0)
    is_api_request = Column(Boolean, nullable=False, default=False)
    api_id = Column(String(255), nullable=True)
    request_id = Column(String(64), nullable=True)

    __table_args__ = (
        Index('ix_api_logs_ip_timestamp', 'ip', 'timestamp'),
        Index('ix_api_logs_user_timestamp', 'user_id', 'timestamp'),
        Index('ix_api_logs_identity_timestamp', 'x_auth_user_id', 'timestamp'),
    )


class SecurityLogDB(Base):
    __tablename__ = "security_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    timestamp = Column(DateTime, nullable=False)
    ip = Column(String(64), nullable=True)
    user_id = Column(String(255), nullable=True)
    method = Column(String(10), nullable=True)
    path = Column(String(2048), nullable=True)
    type = Column(String(64), nullable=False)
    detection = Column(JSON, nullable=False, default=dict)
    endpoint = Column(String(2048), nullable=True)
    details = Column(Text, nullable=True)
    request_id = Column(String(64), nullable=True)

    __table_args__ = (
        Index('ix_security_logs_ip_type_timestamp', 'ip', 'type', 'timestamp'),
    )


class ErrorLogDB(Base):
    __tablename__ = "error_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    request_id = Column(String(64), nullable=False)
    ip = Column(String(64), nullable=True)
    user_id = Column(String(255), nullable=True)
    method = Column(String(10), nullable=True)
    path = Column(String(2048), nullable=True)
    timestamp = Column(DateTime, nullable=False)
    error = Column(Text, nullable=False)
    stack = Column(Text, nullable=True)
    status = Column(Integer, nullable=False, default=500)


class IpBlacklistDB(Base):
    __tablename__ = "ip_blacklist"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    ip = Column(String(64), nullable=False, index=True)
    reason = Column(String(500), nullable=False)
    created_at = Column(DateTime, nullable=False)
    created_by = Column(String(64), nullable=False, default="system")
    expires_at = Column(DateTime, nullable=True)
