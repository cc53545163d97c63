"""
Billing models: plans, orders, subscriptions and the monthly usage cache.
Psychology: Unique constraints carry the idempotence guarantees, not application locks.
Intention: One file for the ORM rows and the API shapes built from them.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)

from backlify.database import Base

GLOBAL_SCOPE = "global"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# ============================================================================
# DATABASE MODELS
# ============================================================================

class PaymentPlanDB(Base):
    __tablename__ = "payment_plans"

    plan_id = Column(String(32), primary_key=True)
    name = Column(String(100), nullable=False)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="AZN")
    features = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)


class PaymentOrderDB(Base):
    __tablename__ = "payment_orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column(String(255), nullable=False)
    user_id = Column(String(36), nullable=False, index=True)
    plan_id = Column(String(32), nullable=False)
    api_id = Column(String(255), nullable=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(16), nullable=False, default=OrderStatus.PENDING.value)
    payment_method = Column(String(32), nullable=False, default="epoint")
    description = Column(String(500), nullable=True)
    payment_transaction_id = Column(String(255), nullable=True)
    payment_details = Column(JSON, nullable=True)
    gateway_redirect_url = Column(String(2048), nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('order_id', name='uq_payment_orders_order_id'),
        Index('ix_payment_orders_user_created', 'user_id', 'created_at'),
    )


class UserSubscriptionDB(Base):
    __tablename__ = "user_subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False)
    plan_id = Column(String(32), nullable=False)
    api_id = Column(String(255), nullable=True)
    scope_key = Column(String(255), nullable=False, default=GLOBAL_SCOPE)
    status = Column(String(16), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    start_date = Column(DateTime, nullable=False)
    expiration_date = Column(DateTime, nullable=False)
    payment_order_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'scope_key', name='uq_user_subscriptions_user_scope'),
        Index('ix_user_subscriptions_status_expiration', 'status', 'expiration_date'),
    )


class UsageRecordDB(Base):
    """Per-month counter cache; api_logs stays the source of truth"""
    __tablename__ = "usage"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), nullable=False)
    period_start = Column(DateTime, nullable=False)
    user_plan = Column(String(32), nullable=False)
    requests_count = Column(Integer, nullable=False, default=0)
    projects_count = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'period_start', name='uq_usage_user_period'),
    )


# ============================================================================
# API MODELS
# ============================================================================

class PaymentPlan(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    plan_id: str
    name: str
    price: float
    currency: str
    features: List[str] = Field(default_factory=list)
    is_active: bool = True


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(..., alias="planId", min_length=1, max_length=32)
    api_id: Optional[str] = Field(None, alias="apiId", max_length=255)


class PaymentOrder(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    user_id: str
    plan_id: str
    api_id: Optional[str] = None
    amount: float
    currency: str
    status: OrderStatus
    payment_method: str
    description: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class Subscription(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    user_id: str
    plan_id: str
    api_id: Optional[str] = None
    status: SubscriptionStatus
    start_date: datetime
    expiration_date: datetime
    payment_order_id: Optional[str] = None
    synthesized: bool = False

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "planId": self.plan_id,
            "apiId": self.api_id,
            "status": self.status.value,
            "startDate": self.start_date.isoformat(),
            "endDate": self.expiration_date.isoformat(),
            "paymentOrderId": self.payment_order_id,
            "synthesized": self.synthesized,
        }


class CheckStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: Optional[str] = Field(None, alias="orderId")
    transaction: Optional[str] = None


class SaveCardRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    description: Optional[str] = Field(None, max_length=500)
    language: Optional[str] = Field(None, max_length=5)


class SavedCardPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    card_id: str = Field(..., alias="cardId", min_length=1)
    plan_id: str = Field(..., alias="planId", min_length=1)
    api_id: Optional[str] = Field(None, alias="apiId")


class ReversePaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction: str = Field(..., min_length=1)
    amount: Optional[Decimal] = Field(None, gt=0)
    currency: Optional[str] = Field(None, max_length=3)


class PreAuthRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(..., alias="planId", min_length=1)
    api_id: Optional[str] = Field(None, alias="apiId")


class PreAuthCompleteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0)
