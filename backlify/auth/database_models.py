"""
Authentication database models.
Psychology: Users carry their own lock state so the lock machine is a single-row update.
Intention: Clear separation between authentication data and billing data.
"""
import uuid

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String

from backlify.database import Base


class AccountStatus:
    ACTIVE = "active"
    LOCKED = "locked"


class LoginMethod:
    EMAIL = "email"
    GOOGLE = "google"


class UserDB(Base):
    """User database model"""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(100), unique=True, nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=True)
    plan_id = Column(String(32), nullable=False, default="basic")

    # Lock state
    account_status = Column(String(16), nullable=False, default=AccountStatus.ACTIVE)
    login_attempts = Column(Integer, nullable=False, default=0)
    locked_at = Column(DateTime, nullable=True)
    lock_reason = Column(String(255), nullable=True)
    unlocked_at = Column(DateTime, nullable=True)
    unlocked_by = Column(String(64), nullable=True)
    last_failed_login = Column(DateTime, nullable=True)
    last_login = Column(DateTime, nullable=True)

    # OAuth
    google_id = Column(String(255), unique=True, nullable=True)
    full_name = Column(String(255), nullable=True)
    profile_picture = Column(String(1024), nullable=True)
    email_verified = Column(Boolean, nullable=False, default=False)
    login_method = Column(String(16), nullable=False, default=LoginMethod.EMAIL)

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_users_status_locked_at', 'account_status', 'locked_at'),
    )


class RefreshTokenDB(Base):
    """Refresh token database model for token revocation"""
    __tablename__ = "refresh_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(100), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)

    revoked = Column(Boolean, nullable=False, default=False)
    issued_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index('ix_refresh_tokens_username_expires', 'username', 'expires_at'),
    )
