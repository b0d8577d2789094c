"""
Errors raised by the subscription core.

Every error carries the HTTP status the API layer answers with and a stable
machine readable code, so callers can tell a bad promo code from a provider
outage without parsing messages.
"""


class SubscriptionError(Exception):
    status_code = 500
    code = "internal_error"
    message = "Internal error"

    def __init__(self, message: str | None = None):
        self.message = message or self.message
        super().__init__(self.message)


class MissingIdempotencyKey(SubscriptionError):
    status_code = 400
    code = "missing_idempotency_key"
    message = "Idempotency-Key header is required"


class PlanNotFound(SubscriptionError):
    status_code = 400
    code = "plan_not_found"
    message = "Unknown plan"


class PromoNotFound(SubscriptionError):
    status_code = 400
    code = "promo_not_found"
    message = "Unknown promo code"


class PromoInactiveOrExpired(SubscriptionError):
    status_code = 400
    code = "promo_inactive_or_expired"
    message = "Promo code is inactive or expired"


class UserNotFound(SubscriptionError):
    status_code = 404
    code = "user_not_found"
    message = "User not found"


class IdempotencyKeyConflict(SubscriptionError):
    status_code = 409
    code = "idempotency_key_conflict"
    message = "Idempotency key has already been used"


class ProviderInitiationFailed(SubscriptionError):
    """Transient: the client should retry with the same idempotency key."""

    status_code = 502
    code = "provider_initiation_failed"
    message = "Payment provider could not initiate the payment"


class RecoveryInconsistency(SubscriptionError):
    """A pending payment could not be given a provider reference."""

    status_code = 500
    code = "recovery_inconsistency"
    message = "Payment recovery could not establish a provider reference"


class NotFound(SubscriptionError):
    status_code = 404
    code = "not_found"
    message = "Subscription not found"
