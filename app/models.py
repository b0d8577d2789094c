import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base

IDEMPOTENCY_KEY_CONSTRAINT = "uq_payments_idempotency_key"


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillingPeriod(str, enum.Enum):
    monthly = "MONTHLY"
    annual = "ANNUAL"


class PromoType(str, enum.Enum):
    percent = "PERCENT"
    fixed = "FIXED"


class SubStatus(str, enum.Enum):
    pending = "PENDING"
    active = "ACTIVE"
    canceled = "CANCELED"


class PaymentStatus(str, enum.Enum):
    created = "CREATED"
    succeeded = "SUCCEEDED"
    failed = "FAILED"


class PaymentProviderName(str, enum.Enum):
    monobank = "MONOBANK"
    pix = "PIX"
    stripe = "STRIPE"


class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String, unique=True, nullable=False)
    region = Column(String(2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    subscriptions = relationship("Subscription", back_populates="user")


class Plan(Base):
    __tablename__ = "plans"
    id = Column(Integer, primary_key=True)
    code = Column(String, unique=True, nullable=False)
    base_price_monthly = Column(Numeric(10, 2), nullable=False)
    price_per_seat_monthly = Column(Numeric(10, 2), nullable=True)
    included_api_calls = Column(Integer, nullable=False, default=0)


class PromoCode(Base):
    __tablename__ = "promo_codes"
    id = Column(Integer, primary_key=True)
    code = Column(String, unique=True, nullable=False)
    type = Column(Enum(PromoType), nullable=False)
    value = Column(Numeric(10, 2), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)


class Subscription(Base):
    __tablename__ = "subscriptions"
    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey("plans.id"), nullable=False)
    promo_code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=True)
    billing_period = Column(Enum(BillingPeriod), nullable=False)
    seats = Column(Integer, nullable=False, default=0)
    status = Column(Enum(SubStatus), nullable=False, default=SubStatus.pending)
    provider = Column(Enum(PaymentProviderName), nullable=False)

    # pricing snapshot, identical to what the creation response returned
    price_subtotal = Column(Numeric(10, 2), nullable=False)
    annual_discount = Column(Numeric(10, 2), nullable=False, default=0)
    promo_discount = Column(Numeric(10, 2), nullable=False, default=0)
    # promo terms as applied, the catalog row may be edited later
    promo_type = Column(Enum(PromoType), nullable=True)
    promo_value = Column(Numeric(10, 2), nullable=True)
    discount_total = Column(Numeric(10, 2), nullable=False)
    price_total = Column(Numeric(10, 2), nullable=False)
    pricing_note = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    user = relationship("User", back_populates="subscriptions")
    plan = relationship("Plan")
    promo_code = relationship("PromoCode")
    payments = relationship(
        "Payment",
        back_populates="subscription",
        order_by=lambda: (Payment.created_at.desc(), Payment.id.desc()),
    )


class Payment(Base):
    __tablename__ = "payments"
    __table_args__ = (UniqueConstraint("idempotency_key", name=IDEMPOTENCY_KEY_CONSTRAINT),)

    id = Column(String(36), primary_key=True, default=_uuid)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False)
    provider = Column(Enum(PaymentProviderName), nullable=False)
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.created)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="USD")
    provider_ref = Column(String, nullable=True)
    checkout_url = Column(String, nullable=True)
    idempotency_key = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    subscription = relationship("Subscription", back_populates="payments")
