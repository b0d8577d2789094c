from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import PlanNotFound, PromoInactiveOrExpired, PromoNotFound
from .models import BillingPeriod, Plan, PromoCode, PromoType
from .money import ZERO, round2, to_decimal
from .schemas import DiscountsOut, PricingResult, PromoAppliedOut

ANNUAL_DISCOUNT_RATE = Decimal("0.17")
ANNUAL_PROMO_NOTE = "Annual discount cannot be combined with promo codes"


def get_plan_by_code(db: Session, code: str) -> Optional[Plan]:
    return db.execute(select(Plan).where(Plan.code == code)).scalar_one_or_none()


def get_promo_by_code(db: Session, code: str) -> Optional[PromoCode]:
    return db.execute(select(PromoCode).where(PromoCode.code == code)).scalar_one_or_none()


def promo_is_usable(promo: PromoCode, now: datetime) -> bool:
    if not promo.is_active:
        return False
    if promo.expires_at is None:
        return True
    expires_at = promo.expires_at
    # sqlite hands timestamps back without tzinfo, they are stored as UTC
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at >= now


def calculate(
    db: Session,
    plan_code: str,
    billing_period: BillingPeriod,
    seats: int = 0,
    promo_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PricingResult:
    """
    Price a subscription from the current catalog.

    Annual billing gets a flat 17% off and ignores promo codes; monthly
    billing may apply one promo code. Reads only, nothing is written.
    """
    plan = get_plan_by_code(db, plan_code)
    if plan is None:
        raise PlanNotFound(f"Unknown plan: {plan_code}")

    seats = seats or 0
    per_seat = to_decimal(plan.price_per_seat_monthly)
    subtotal = round2(to_decimal(plan.base_price_monthly) + per_seat * seats)

    is_annual = billing_period == BillingPeriod.annual
    annual_discount = round2(subtotal * ANNUAL_DISCOUNT_RATE) if is_annual else ZERO

    promo_discount = ZERO
    promo_applied = None
    if not is_annual and promo_code:
        if now is None:
            now = datetime.now(timezone.utc)
        promo = get_promo_by_code(db, promo_code)
        if promo is None:
            raise PromoNotFound(f"Unknown promo code: {promo_code}")
        if not promo_is_usable(promo, now):
            raise PromoInactiveOrExpired(f"Promo code {promo_code} is inactive or expired")

        value = to_decimal(promo.value)
        if promo.type == PromoType.percent:
            promo_discount = round2(subtotal * value / Decimal(100))
        else:
            promo_discount = round2(value)
        promo_applied = PromoAppliedOut(code=promo.code, type=promo.type, value=value)

    discount_total = round2(annual_discount + promo_discount)
    total = max(ZERO, round2(subtotal - discount_total))

    return PricingResult(
        plan_code=plan.code,
        billing_period=billing_period,
        seats=seats,
        subtotal=subtotal,
        discount_total=discount_total,
        total=total,
        discounts=DiscountsOut(
            annual=annual_discount,
            promo=promo_discount,
            promo_applied=promo_applied,
            note=ANNUAL_PROMO_NOTE if is_annual and promo_code else None,
        ),
    )
