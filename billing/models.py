import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, Column, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
)

from billing.database import Base


def utcnow() -> datetime:
    # Naive UTC everywhere; SQLite drops tzinfo on the way back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return uuid.uuid4().hex


class Provider(str, enum.Enum):
    CARD_NETWORK = "CARD_NETWORK"   # Stripe
    WALLET = "WALLET"               # PayPal


class BillingFrequency(str, enum.Enum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class IntentStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    PROCESSING = "PROCESSING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"


class OrderStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, enum.Enum):
    COMPLETED = "COMPLETED"


ORDER_RECEIVED = "ORDER_RECEIVED"


def _enum(enum_cls):
    return Enum(enum_cls, native_enum=False, length=32)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_id)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)          # external order number
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(_enum(OrderStatus), nullable=False, default=OrderStatus.PENDING)
    amount = Column(Integer, nullable=False, default=0)    # cents
    currency = Column(String, nullable=False, default="usd")
    created_at = Column(DateTime, nullable=False, default=utcnow)


class OrderMilestone(Base):
    __tablename__ = "order_milestones"
    __table_args__ = (UniqueConstraint("order_id", "milestone_type"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False)
    milestone_type = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class SubscriptionIntent(Base):
    __tablename__ = "subscription_intents"

    id = Column(String, primary_key=True, default=new_id)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    provider = Column(_enum(Provider), nullable=False)
    service_name = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)       # cents
    currency = Column(String, nullable=False)
    frequency = Column(_enum(BillingFrequency), nullable=False)
    delay_days = Column(Integer, nullable=False)
    scheduled_date = Column(DateTime, nullable=False, index=True)
    status = Column(_enum(IntentStatus), nullable=False, default=IntentStatus.SCHEDULED, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime)
    failure_reason = Column(Text)
    processed_at = Column(DateTime)
    subscription_id = Column(String, ForeignKey("subscriptions.id"))
    customer_email = Column(String)
    customer_name = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class VaultCredential(Base):
    __tablename__ = "vault_credentials"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    provider = Column(_enum(Provider), nullable=False)
    external_customer_id = Column(String, index=True)  # Stripe customer / PayPal payer
    external_vault_id = Column(String, nullable=False)  # Stripe payment method / PayPal token
    customer_email = Column(String)
    customer_name = Column(String)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    deactivated_at = Column(DateTime)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(String, ForeignKey("orders.id"))
    business_id = Column(String)
    intent_id = Column(String)
    provider = Column(_enum(Provider), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text)
    status = Column(_enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.ACTIVE)
    amount = Column(Integer, nullable=False)       # cents
    currency = Column(String, nullable=False)
    interval = Column(_enum(BillingFrequency), nullable=False)
    external_id = Column(String, unique=True)      # Stripe subscription id, null for wallet
    current_period_start = Column(DateTime)
    current_period_end = Column(DateTime)
    renewal_attempts = Column(Integer, nullable=False, default=0)   # failed tries this cycle
    cancel_at_period_end = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime)
    last_event_at = Column(DateTime)               # provider event time of the last applied update
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    subscription_id = Column(String, ForeignKey("subscriptions.id"))
    order_id = Column(String, ForeignKey("orders.id"))
    provider = Column(_enum(Provider), nullable=False)
    amount = Column(Integer, nullable=False)       # cents
    currency = Column(String, nullable=False)
    status = Column(_enum(PaymentStatus), nullable=False, default=PaymentStatus.COMPLETED)
    external_transaction_id = Column(String, unique=True, nullable=False)
    description = Column(String)
    created_at = Column(DateTime, nullable=False, default=utcnow)
