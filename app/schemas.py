from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .models import BillingPeriod, PaymentProviderName, PaymentStatus, PromoType, SubStatus

CODE_PATTERN = r"^[A-Z0-9_]+$"


class PlanOut(BaseModel):
    code: str
    base_price_monthly: Decimal
    price_per_seat_monthly: Optional[Decimal] = None
    included_api_calls: int

    class Config:
        from_attributes = True


class PriceQuoteIn(BaseModel):
    plan_code: str = Field(pattern=CODE_PATTERN)
    billing_period: BillingPeriod
    seats: int = Field(default=0, ge=0, le=1000)
    promo_code: Optional[str] = Field(default=None, pattern=CODE_PATTERN)

    @field_validator("plan_code", "promo_code", mode="before")
    @classmethod
    def normalize_code(cls, value):
        if isinstance(value, str):
            value = value.strip().upper()
            return value or None
        return value


class SubscribeIn(PriceQuoteIn):
    pass


class PromoAppliedOut(BaseModel):
    code: str
    type: PromoType
    value: Decimal


class DiscountsOut(BaseModel):
    annual: Decimal
    promo: Decimal
    promo_applied: Optional[PromoAppliedOut] = None
    note: Optional[str] = None


class PricingResult(BaseModel):
    plan_code: str
    billing_period: BillingPeriod
    seats: int
    subtotal: Decimal
    discount_total: Decimal
    total: Decimal
    discounts: DiscountsOut


class PricingBreakdownOut(BaseModel):
    subtotal: Decimal
    discount_total: Decimal
    total: Decimal
    discounts: DiscountsOut


class SubscribePaymentOut(BaseModel):
    payment_id: str
    status: PaymentStatus
    provider_ref: str
    checkout_url: str
    idempotency_key: str


class SubscribeOut(BaseModel):
    subscription_id: str
    status: SubStatus
    provider: PaymentProviderName
    pricing: PricingBreakdownOut
    payment: SubscribePaymentOut
    idempotent_replay: bool


class SubscriptionPlanOut(BaseModel):
    code: str
    base_price: Decimal
    price_per_seat: Optional[Decimal] = None
    included_api_calls: int


class SubscriptionPromoOut(BaseModel):
    code: str
    type: PromoType
    value: Decimal


class SubscriptionPricingOut(BaseModel):
    subtotal: Decimal
    discount_total: Decimal
    total: Decimal


class SubscriptionPaymentOut(BaseModel):
    id: str
    status: PaymentStatus
    provider: PaymentProviderName
    amount: Decimal
    currency: str
    provider_ref: Optional[str] = None
    created_at: datetime


class SubscriptionOut(BaseModel):
    id: str
    status: SubStatus
    billing_period: BillingPeriod
    seats: int
    provider: PaymentProviderName
    plan: SubscriptionPlanOut
    promo_code: Optional[SubscriptionPromoOut] = None
    pricing: SubscriptionPricingOut
    # only the most recent payment attempt
    payment: Optional[SubscriptionPaymentOut] = None
    created_at: datetime


class ErrorOut(BaseModel):
    status_code: int
    error: str
    code: str
    message: str
    path: str
    timestamp: datetime
    request_id: Optional[str] = None
