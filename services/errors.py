"""Domain error taxonomy for the entitlement engine.

Every failure surfaced to callers is an :class:`EntitlementError`.  The
``kind`` string is what API clients see; ``status_code`` is used by the JSON
error handler and ``retryable`` tells callers (and Celery tasks) whether the
same request may succeed later.
"""

from __future__ import annotations


class EntitlementError(Exception):
    kind = "entitlement_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": self.message, "retryable": self.retryable}


class ValidationError(EntitlementError):
    kind = "validation_error"


class NotFoundError(EntitlementError):
    kind = "not_found"
    status_code = 404


class AuthorizationError(EntitlementError):
    kind = "authorization_error"
    status_code = 403


class BusinessRuleError(EntitlementError):
    status_code = 409


class CapacityExceeded(BusinessRuleError):
    kind = "capacity_exceeded"


class AlreadyLicensed(BusinessRuleError):
    kind = "already_licensed"


class SubscriptionNotActive(BusinessRuleError):
    kind = "subscription_not_active"


class DuplicateSubscription(BusinessRuleError):
    kind = "duplicate_subscription"


class InvalidTransition(BusinessRuleError):
    kind = "invalid_transition"


class ConcurrencyConflict(BusinessRuleError):
    kind = "concurrency_conflict"
    retryable = True


class GatewayError(EntitlementError):
    """The payment processor rejected the call (e.g. card declined)."""
    kind = "gateway_error"
    status_code = 402

    def __init__(
        self,
        message: str = "",
        code: str | None = None,
        payment_intent_id: str | None = None,
    ):
        super().__init__(message)
        self.code = code
        self.payment_intent_id = payment_intent_id


class GatewayTimeout(EntitlementError):
    kind = "gateway_timeout"
    status_code = 503
    retryable = True


class SignatureInvalid(EntitlementError):
    kind = "signature_invalid"
