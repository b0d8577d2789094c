import enum
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from .config import get_settings
from .errors import (
    IdempotencyKeyConflict,
    MissingIdempotencyKey,
    NotFound,
    ProviderInitiationFailed,
    RecoveryInconsistency,
    UserNotFound,
)
from .models import (
    IDEMPOTENCY_KEY_CONSTRAINT,
    Payment,
    PaymentProviderName,
    PaymentStatus,
    Plan,
    PromoCode,
    PromoType,
    SubStatus,
    Subscription,
    User,
)
from .money import round2, to_decimal
from .payments import (
    PaymentInit,
    ProviderFactory,
    checkout_url_for,
    create_payment_provider,
    provider_for_region,
)
from . import pricing
from .schemas import (
    DiscountsOut,
    PricingBreakdownOut,
    PricingResult,
    PromoAppliedOut,
    SubscribeIn,
    SubscribeOut,
    SubscribePaymentOut,
    SubscriptionOut,
    SubscriptionPaymentOut,
    SubscriptionPlanOut,
    SubscriptionPricingOut,
    SubscriptionPromoOut,
)

log = logging.getLogger(__name__)


def get_user(db: Session, user_id: str) -> Optional[User]:
    return db.get(User, user_id)


def is_unique_violation(exc: IntegrityError, table: str, column: str, constraint: str) -> bool:
    """True when the integrity error is a duplicate on ``table.column``."""
    orig = getattr(exc, "orig", None)
    diag = getattr(orig, "diag", None)
    # psycopg reports the violated constraint by name
    if diag is not None and getattr(diag, "constraint_name", None) == constraint:
        return True
    message = str(orig if orig is not None else exc)
    if constraint in message:
        return True
    # sqlite: "UNIQUE constraint failed: payments.idempotency_key"
    return "unique" in message.lower() and f"{table}.{column}" in message


# ---------------------------------------------------------------------------
# Idempotency ledger
# ---------------------------------------------------------------------------

def find_payment_by_idempotency_key(db: Session, idempotency_key: str) -> Optional[Payment]:
    """
    Payment created for this idempotency key, with its subscription, plan and
    promo code loaded. Always reads the current row, never the identity map.
    """
    stmt = (
        select(Payment)
        .where(Payment.idempotency_key == idempotency_key)
        .options(
            joinedload(Payment.subscription).joinedload(Subscription.plan),
            joinedload(Payment.subscription).joinedload(Subscription.promo_code),
        )
        .execution_options(populate_existing=True)
    )
    return db.execute(stmt).unique().scalar_one_or_none()


# ---------------------------------------------------------------------------
# Subscription creation
# ---------------------------------------------------------------------------

class CreationState(str, enum.Enum):
    start = "START"
    dedup_check = "DEDUP_CHECK"
    priced = "PRICED"
    persisted_no_ref = "PERSISTED_NO_REF"
    provider_initiated = "PROVIDER_INITIATED"
    persisted_with_ref = "PERSISTED_WITH_REF"
    recovery = "RECOVERY"
    replay = "REPLAY"
    respond = "RESPOND"


def pricing_from_snapshot(subscription: Subscription) -> PricingResult:
    """Pricing exactly as it was stored when the subscription was created."""
    promo = subscription.promo_code
    promo_applied = None
    if promo is not None:
        promo_applied = PromoAppliedOut(code=promo.code, type=subscription.promo_type,
                                        value=to_decimal(subscription.promo_value))
    return PricingResult(
        plan_code=subscription.plan.code,
        billing_period=subscription.billing_period,
        seats=subscription.seats,
        subtotal=round2(subscription.price_subtotal),
        discount_total=round2(subscription.discount_total),
        total=round2(subscription.price_total),
        discounts=DiscountsOut(
            annual=round2(subscription.annual_discount),
            promo=round2(subscription.promo_discount),
            promo_applied=promo_applied,
            note=subscription.pricing_note,
        ),
    )


class SubscriptionCreator:
    """
    Creates a subscription and its payment exactly once per idempotency key.

    The database transaction only ever holds the two inserts. The payment
    provider is called after commit, so a crash in between leaves a payment
    without provider reference; the next request with the same key finds it
    and finishes the job (recovery) instead of creating a second pair.
    Duplicate concurrent requests are settled by the unique constraint on
    ``payments.idempotency_key``: the loser reads the winner's row and replays.
    """

    def __init__(
        self,
        db: Session,
        provider_factory: Optional[ProviderFactory] = None,
        currency: Optional[str] = None,
    ):
        self.db = db
        self.provider_factory = provider_factory or create_payment_provider
        self.currency = currency or get_settings().settlement_currency
        self.state = CreationState.start
        self.idempotency_key: Optional[str] = None

    def _enter(self, state: CreationState) -> None:
        log.debug("idempotency_key=%s %s -> %s", self.idempotency_key, self.state.value, state.value)
        self.state = state

    def create(self, user_id: str, data: SubscribeIn, idempotency_key: Optional[str]) -> SubscribeOut:
        self.state = CreationState.start
        if not idempotency_key or not idempotency_key.strip():
            raise MissingIdempotencyKey()
        self.idempotency_key = idempotency_key

        log.info(
            "Create subscription request user_id=%s plan_code=%s billing_period=%s seats=%s promo_code=%s idempotency_key=%s",
            user_id, data.plan_code, data.billing_period.value, data.seats, data.promo_code, idempotency_key,
        )

        existing = self._dedup_check(user_id)
        if existing is not None:
            return self._replay(existing)

        user = get_user(self.db, user_id)
        if user is None or not user.is_active:
            raise UserNotFound()

        quote = self._price(data)

        try:
            subscription, payment = self._persist_pending(user, data, quote)
        except IntegrityError as exc:
            if not is_unique_violation(exc, "payments", "idempotency_key", IDEMPOTENCY_KEY_CONSTRAINT):
                log.error("Failed to create subscription idempotency_key=%s user_id=%s error=%s",
                          idempotency_key, user_id, exc)
                raise
            log.warning("Idempotency unique constraint hit, replaying idempotency_key=%s", idempotency_key)
            existing = self._dedup_check(user_id)
            if existing is None:
                raise
            return self._replay(existing)

        init = self._initiate(payment.provider, payment.amount, payment.currency)
        payment = self._attach_provider_ref(payment, init)

        log.info(
            "Subscription and payment created subscription_id=%s payment_id=%s provider=%s amount=%s idempotency_key=%s",
            subscription.id, payment.id, payment.provider.value, quote.total, idempotency_key,
        )
        return self._respond(subscription, payment, quote, replay=False)

    # -- states -------------------------------------------------------------

    def _dedup_check(self, user_id: str) -> Optional[Payment]:
        self._enter(CreationState.dedup_check)
        existing = find_payment_by_idempotency_key(self.db, self.idempotency_key)
        if existing is None:
            return None
        if existing.subscription.user_id != user_id:
            log.warning("Idempotency key reused by another user idempotency_key=%s user_id=%s",
                        self.idempotency_key, user_id)
            raise IdempotencyKeyConflict()
        if not existing.provider_ref:
            return self._recover(existing)
        return existing

    def _price(self, data: SubscribeIn) -> PricingResult:
        quote = pricing.calculate(
            self.db,
            plan_code=data.plan_code,
            billing_period=data.billing_period,
            seats=data.seats,
            promo_code=data.promo_code,
        )
        self._enter(CreationState.priced)
        log.info(
            "Pricing calculated plan_code=%s billing_period=%s subtotal=%s discount_total=%s total=%s",
            quote.plan_code, quote.billing_period.value, quote.subtotal, quote.discount_total, quote.total,
        )
        return quote

    def _persist_pending(self, user: User, data: SubscribeIn, quote: PricingResult):
        promo = None
        if quote.discounts.promo_applied is not None:
            promo = pricing.get_promo_by_code(self.db, quote.discounts.promo_applied.code)
        provider = provider_for_region(user.region)

        subscription = Subscription(
            user_id=user.id,
            plan=pricing.get_plan_by_code(self.db, quote.plan_code),
            promo_code=promo,
            billing_period=quote.billing_period,
            seats=quote.seats,
            status=SubStatus.pending,
            provider=provider,
            price_subtotal=quote.subtotal,
            annual_discount=quote.discounts.annual,
            promo_discount=quote.discounts.promo,
            promo_type=quote.discounts.promo_applied.type if promo is not None else None,
            promo_value=quote.discounts.promo_applied.value if promo is not None else None,
            discount_total=quote.discount_total,
            price_total=quote.total,
            pricing_note=quote.discounts.note,
        )
        payment = Payment(
            subscription=subscription,
            provider=provider,
            status=PaymentStatus.created,
            amount=quote.total,
            currency=self.currency,
            provider_ref=None,
            idempotency_key=self.idempotency_key,
        )
        try:
            self.db.add_all([subscription, payment])
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self._enter(CreationState.persisted_no_ref)
        return subscription, payment

    def _initiate(self, provider: PaymentProviderName, amount: Decimal, currency: str) -> PaymentInit:
        try:
            init = self.provider_factory(provider).init_payment(amount=round2(amount), currency=currency)
        except Exception as exc:
            log.exception("Payment initiation failed provider=%s idempotency_key=%s",
                          provider.value, self.idempotency_key)
            raise ProviderInitiationFailed() from exc
        if init is None or not init.provider_ref:
            log.error("Payment provider returned no reference provider=%s idempotency_key=%s",
                      provider.value, self.idempotency_key)
            raise ProviderInitiationFailed("Payment provider returned no reference")
        self._enter(CreationState.provider_initiated)
        return init

    def _attach_provider_ref(self, payment: Payment, init: PaymentInit) -> Payment:
        checkout_url = init.checkout_url or checkout_url_for(payment.provider, init.provider_ref)
        stmt = (
            update(Payment)
            .where(Payment.id == payment.id, Payment.provider_ref.is_(None))
            .values(provider_ref=init.provider_ref, checkout_url=checkout_url)
            .execution_options(synchronize_session=False)
        )
        try:
            result = self.db.execute(stmt)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        if result.rowcount == 0:
            # a concurrent recovery got there first, its reference stands
            log.warning("Provider reference already attached payment_id=%s", payment.id)
        self._enter(CreationState.persisted_with_ref)
        refreshed = find_payment_by_idempotency_key(self.db, self.idempotency_key)
        return refreshed if refreshed is not None else payment

    def _recover(self, payment: Payment) -> Payment:
        self._enter(CreationState.recovery)
        log.warning(
            "Recovering payment without provider reference payment_id=%s subscription_id=%s idempotency_key=%s",
            payment.id, payment.subscription_id, self.idempotency_key,
        )
        init = self._initiate(payment.provider, payment.amount, payment.currency)
        self._attach_provider_ref(payment, init)
        refreshed = find_payment_by_idempotency_key(self.db, self.idempotency_key)
        if refreshed is None or not refreshed.provider_ref:
            log.error("Recovery could not establish a provider reference payment_id=%s idempotency_key=%s",
                      payment.id, self.idempotency_key)
            raise RecoveryInconsistency()
        return refreshed

    def _replay(self, payment: Payment) -> SubscribeOut:
        self._enter(CreationState.replay)
        subscription = payment.subscription
        log.warning(
            "Idempotent replay detected idempotency_key=%s subscription_id=%s payment_id=%s provider=%s",
            self.idempotency_key, subscription.id, payment.id, payment.provider.value,
        )
        return self._respond(subscription, payment, pricing_from_snapshot(subscription), replay=True)

    def _respond(self, subscription: Subscription, payment: Payment, quote: PricingResult,
                 replay: bool) -> SubscribeOut:
        self._enter(CreationState.respond)
        return SubscribeOut(
            subscription_id=subscription.id,
            status=subscription.status,
            provider=subscription.provider,
            pricing=PricingBreakdownOut(
                subtotal=quote.subtotal,
                discount_total=quote.discount_total,
                total=quote.total,
                discounts=quote.discounts,
            ),
            payment=SubscribePaymentOut(
                payment_id=payment.id,
                status=payment.status,
                provider_ref=payment.provider_ref,
                checkout_url=payment.checkout_url or checkout_url_for(payment.provider, payment.provider_ref),
                idempotency_key=payment.idempotency_key,
            ),
            idempotent_replay=replay,
        )


def create_subscription(
    db: Session,
    user_id: str,
    data: SubscribeIn,
    idempotency_key: Optional[str],
    provider_factory: Optional[ProviderFactory] = None,
) -> SubscribeOut:
    return SubscriptionCreator(db, provider_factory=provider_factory).create(user_id, data, idempotency_key)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def _subscriptions_stmt():
    return select(Subscription).options(
        joinedload(Subscription.plan),
        joinedload(Subscription.promo_code),
        selectinload(Subscription.payments),
    )


def to_subscription_out(sub: Subscription) -> SubscriptionOut:
    latest = sub.payments[0] if sub.payments else None
    promo = sub.promo_code
    return SubscriptionOut(
        id=sub.id,
        status=sub.status,
        billing_period=sub.billing_period,
        seats=sub.seats,
        provider=sub.provider,
        plan=SubscriptionPlanOut(
            code=sub.plan.code,
            base_price=round2(sub.plan.base_price_monthly),
            price_per_seat=(
                round2(sub.plan.price_per_seat_monthly) if sub.plan.price_per_seat_monthly is not None else None
            ),
            included_api_calls=sub.plan.included_api_calls,
        ),
        promo_code=(
            SubscriptionPromoOut(code=promo.code, type=sub.promo_type, value=round2(sub.promo_value))
            if promo is not None
            else None
        ),
        pricing=SubscriptionPricingOut(
            subtotal=round2(sub.price_subtotal),
            discount_total=round2(sub.discount_total),
            total=round2(sub.price_total),
        ),
        payment=(
            SubscriptionPaymentOut(
                id=latest.id,
                status=latest.status,
                provider=latest.provider,
                amount=round2(latest.amount),
                currency=latest.currency,
                provider_ref=latest.provider_ref,
                created_at=latest.created_at,
            )
            if latest is not None
            else None
        ),
        created_at=sub.created_at,
    )


def list_subscriptions(db: Session, user_id: str) -> list[SubscriptionOut]:
    log.info("List subscriptions user_id=%s", user_id)
    stmt = (
        _subscriptions_stmt()
        .where(Subscription.user_id == user_id)
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
    )
    return [to_subscription_out(s) for s in db.execute(stmt).unique().scalars().all()]


def get_subscription(db: Session, subscription_id: str, user_id: str) -> SubscriptionOut:
    log.info("Get subscription id=%s user_id=%s", subscription_id, user_id)
    stmt = _subscriptions_stmt().where(Subscription.id == subscription_id, Subscription.user_id == user_id)
    sub = db.execute(stmt).unique().scalar_one_or_none()
    # same answer for "missing" and "someone else's"
    if sub is None:
        raise NotFound()
    return to_subscription_out(sub)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

CATALOG_PLANS = [
    {"code": "STARTER", "base_price_monthly": Decimal("29.99"), "price_per_seat_monthly": None,
     "included_api_calls": 1_000},
    {"code": "PROFESSIONAL", "base_price_monthly": Decimal("99.49"), "price_per_seat_monthly": Decimal("15.75"),
     "included_api_calls": 10_000},
    {"code": "ENTERPRISE", "base_price_monthly": Decimal("299.90"), "price_per_seat_monthly": Decimal("12.30"),
     "included_api_calls": 100_000},
]

CATALOG_PROMO_CODES = [
    {"code": "WELCOME10", "type": PromoType.percent, "value": Decimal("10"), "is_active": True, "expires_at": None},
    {"code": "SAVE20", "type": PromoType.fixed, "value": Decimal("20"), "is_active": True, "expires_at": None},
]


def seed_catalog(db: Session) -> dict:
    """Insert or refresh the default plans and promo codes."""
    for row in CATALOG_PLANS:
        plan = pricing.get_plan_by_code(db, row["code"])
        if plan is None:
            db.add(Plan(**row))
        else:
            for field, value in row.items():
                setattr(plan, field, value)

    for row in CATALOG_PROMO_CODES:
        promo = pricing.get_promo_by_code(db, row["code"])
        if promo is None:
            db.add(PromoCode(**row))
        else:
            for field, value in row.items():
                setattr(promo, field, value)

    db.commit()
    plans = len(db.execute(select(Plan)).scalars().all())
    promo_codes = len(db.execute(select(PromoCode)).scalars().all())
    log.info("Catalog seeded plans=%s promo_codes=%s", plans, promo_codes)
    return {"plans": plans, "promo_codes": promo_codes}
