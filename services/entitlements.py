"""Entitlement service: user-facing subscription and license operations.

Every mutating operation runs its validation before any gateway call and
writes local state inside ``run_locked`` only once the gateway call has
succeeded.  ``actor_id=None`` denotes a trusted system caller (scheduler
jobs, CLI); otherwise the actor must administer the organization.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import List, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import (
    BillingCycle,
    License,
    Organization,
    OrganizationMember,
    PaymentStatus,
    PaymentTransaction,
    PaymentType,
    Subscription,
    SubscriptionStatus,
    User,
)
from services import license_ledger, notifications, payments, subscriptions
from services.auth import can_manage_licenses, is_org_admin, is_org_member, is_superadmin
from services.errors import (
    AuthorizationError,
    DuplicateSubscription,
    GatewayError,
    InvalidTransition,
    NotFoundError,
    SubscriptionNotActive,
    ValidationError,
)
from services.locking import run_locked
from utils import add_months, advance_period, as_utc, utc_now

logger = logging.getLogger(__name__)

S = SubscriptionStatus
RENEWABLE_STATUSES = {S.ACTIVE, S.PAST_DUE, S.TRIAL}


def get_gateway():
    return current_app.extensions["billing_gateway"]


def _billing_config():
    return current_app.config["BILLING_CONFIG"]


def _email_config():
    return current_app.config["EMAIL_CONFIG"]


# ---------------------------------------------------------------------------
# Guards
# ---------------------------------------------------------------------------

def _authorize(actor_id: Optional[int], organization_id: int) -> None:
    if actor_id is None:
        return
    if not is_org_admin(actor_id, organization_id):
        raise AuthorizationError(
            f"User {actor_id} may not manage billing of organization {organization_id}"
        )


def _authorize_licenses(actor_id: Optional[int], organization_id: int) -> None:
    if actor_id is None:
        return
    if not can_manage_licenses(actor_id, organization_id):
        raise AuthorizationError(
            f"User {actor_id} may not manage licenses of organization {organization_id}"
        )


def _authorize_read(actor_id: Optional[int], organization_id: int) -> None:
    if actor_id is None:
        return
    if not is_org_member(actor_id, organization_id):
        raise AuthorizationError(
            f"User {actor_id} is not a member of organization {organization_id}"
        )


def _get_organization(organization_id: int) -> Organization:
    org = db.session.get(Organization, organization_id)
    if org is None:
        raise NotFoundError(f"Organization {organization_id} not found")
    return org


def _get_subscription(subscription_id: int) -> Subscription:
    sub = db.session.get(Subscription, subscription_id)
    if sub is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return sub


def _positive_int(value, name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")
    if number < 1:
        raise ValidationError(f"{name} must be at least 1")
    return number


def _billing_cycle(value) -> BillingCycle:
    try:
        return BillingCycle(value)
    except ValueError:
        raise ValidationError(
            f"billing_cycle must be one of {', '.join(c.value for c in BillingCycle)}"
        )


# ---------------------------------------------------------------------------
# Subscription lifecycle
# ---------------------------------------------------------------------------

def create_subscription(
    organization_id: int,
    user_id: int,
    trial_days: int = 0,
    capacity: int = 1,
    billing_cycle: str = "monthly",
    actor_id: Optional[int] = None,
) -> Subscription:
    """Open a new subscription lineage for an organization.

    Status is ``trial`` when *trial_days* > 0, else ``pending_payment`` until
    the processor reports the first payment.
    """
    capacity = _positive_int(capacity, "capacity")
    cycle = _billing_cycle(billing_cycle)
    try:
        trial_days = int(trial_days or 0)
    except (TypeError, ValueError):
        raise ValidationError("trial_days must be an integer")
    if trial_days < 0:
        raise ValidationError("trial_days cannot be negative")

    org = _get_organization(organization_id)
    if db.session.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")
    _authorize(actor_id, organization_id)
    if subscriptions.get_live_for_organization(organization_id) is not None:
        raise DuplicateSubscription(
            f"Organization {organization_id} already has a live subscription"
        )

    config = _billing_config()
    gateway = get_gateway()
    if not org.external_customer_id:
        org.external_customer_id = gateway.create_customer(org)
        db.session.commit()
    remote = gateway.create_subscription(
        org.external_customer_id,
        cycle.value,
        capacity,
        trial_days=trial_days,
        metadata={"organization_id": str(organization_id)},
    )

    now = utc_now()
    if trial_days > 0:
        default_end = now + datetime.timedelta(days=trial_days)
    else:
        default_end = advance_period(now, cycle.value)
    period_start = remote.current_period_start or now
    period_end = remote.current_period_end or default_end
    if period_end <= period_start:
        period_start, period_end = now, default_end

    sub = Subscription(
        organization_id=organization_id,
        user_id=user_id,
        capacity=capacity,
        licenses_used=0,
        license_rate=config.license_rate,
        currency=config.currency,
        status=S.TRIAL if trial_days > 0 else S.PENDING_PAYMENT,
        billing_cycle=cycle,
        current_period_start=period_start,
        current_period_end=period_end,
        next_billing_date=period_end,
        auto_renew=True,
        external_customer_id=org.external_customer_id,
        external_subscription_id=remote.id,
        external_subscription_item_id=remote.item_id,
        external_price_id=remote.price_id,
        is_trial=trial_days > 0,
        trial_ends_at=remote.trial_end or (default_end if trial_days > 0 else None),
    )
    db.session.add(sub)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.warning(
            "Lost race creating subscription for organization %s; cancelling remote %s",
            organization_id, remote.id,
        )
        try:
            gateway.cancel_subscription(remote.id, immediate=True)
        except GatewayError as exc:
            logger.error("Could not cancel orphaned Stripe subscription %s: %s", remote.id, exc)
        raise DuplicateSubscription(
            f"Organization {organization_id} already has a live subscription"
        )
    logger.info(
        "Created subscription %s for organization %s (%s, capacity %s, %s)",
        sub.id, organization_id, sub.status.value, capacity, cycle.value,
    )
    return sub


def cancel_subscription(
    subscription_id: int,
    reason: str = "",
    actor_id: Optional[int] = None,
    immediate: bool = False,
) -> Subscription:
    """Cancel renewal.  Licenses stay usable until period end unless *immediate*."""
    sub = _get_subscription(subscription_id)
    _authorize(actor_id, sub.organization_id)
    reason = (reason or "").strip() or "cancelled by customer"

    def apply(locked: Subscription) -> Subscription:
        subscriptions.cancel(locked, reason, immediate=immediate)
        if locked.is_linked:
            get_gateway().cancel_subscription(locked.external_subscription_id, immediate=immediate)
        return locked

    return run_locked(subscription_id, apply)


def reactivate_subscription(subscription_id: int, actor_id: Optional[int] = None) -> Subscription:
    """Undo a cancellation while the paid period is still running."""
    sub = _get_subscription(subscription_id)
    _authorize(actor_id, sub.organization_id)

    def apply(locked: Subscription) -> Subscription:
        subscriptions.reactivate(locked)
        if locked.is_linked:
            get_gateway().reactivate_subscription(locked.external_subscription_id)
        return locked

    return run_locked(subscription_id, apply)


def change_capacity(
    subscription_id: int, new_capacity, actor_id: Optional[int] = None
) -> Subscription:
    """Upgrade or downgrade the seat count.

    Remote quantity changes first; local capacity only after Stripe accepted.
    """
    new_capacity = _positive_int(new_capacity, "new_capacity")
    sub = _get_subscription(subscription_id)
    _authorize(actor_id, sub.organization_id)

    def apply(locked: Subscription) -> Subscription:
        if locked.status not in subscriptions.LICENSABLE_STATUSES:
            raise SubscriptionNotActive(
                f"Capacity can only change while active or in trial (status is {locked.status.value})"
            )
        if new_capacity < locked.licenses_used:
            raise ValidationError(
                f"Cannot reduce capacity to {new_capacity}: {locked.licenses_used} licenses are in use"
            )
        if new_capacity == locked.capacity:
            return locked
        if locked.is_linked:
            get_gateway().update_quantity(
                locked.external_subscription_id,
                locked.external_subscription_item_id,
                new_capacity,
            )
        subscriptions.set_capacity(locked, new_capacity)
        return locked

    return run_locked(subscription_id, apply)


def preview_proration(
    subscription_id: int, new_capacity, actor_id: Optional[int] = None
) -> dict:
    """Read-only: what Stripe would charge or credit for the new seat count."""
    new_capacity = _positive_int(new_capacity, "new_capacity")
    sub = _get_subscription(subscription_id)
    _authorize(actor_id, sub.organization_id)
    if not sub.is_linked:
        raise ValidationError(f"Subscription {subscription_id} is not linked to the payment processor")

    preview = get_gateway().preview_proration(
        sub.external_customer_id,
        sub.external_subscription_id,
        sub.external_subscription_item_id,
        sub.capacity,
        new_capacity,
    )
    now = utc_now()
    start = as_utc(sub.current_period_start)
    end = sub.period_end
    return {
        "subscription_id": sub.id,
        "current_capacity": preview.current_capacity,
        "new_capacity": preview.new_capacity,
        "proration_amount": str(preview.amount),
        "currency": preview.currency,
        "days_elapsed": max(0, (now - start).days),
        "days_remaining": max(0, (end - now).days),
        "lines": preview.lines,
    }


# ---------------------------------------------------------------------------
# Renewal and payment retries
# ---------------------------------------------------------------------------

def _charge_card_details(result) -> dict:
    return {
        "external_charge_id": result.charge_id,
        "external_payment_intent_id": result.payment_intent_id,
        "card_brand": result.card_brand,
        "card_last4": result.card_last4,
        "card_exp_month": result.card_exp_month,
        "card_exp_year": result.card_exp_year,
    }


def renew_subscription(
    subscription_id: int,
    expected_period_end: Optional[datetime.datetime] = None,
    actor_id: Optional[int] = None,
) -> dict:
    """Charge the next cycle and advance the period.

    Idempotent per period: the charge uses the period's transaction id as its
    Stripe idempotency key, and a job whose *expected_period_end* no longer
    matches (period already advanced) is a no-op.  A declined charge is
    recorded as a failed transaction with a retry schedule, the subscription
    goes past due, and :class:`GatewayError` is raised.
    """
    sub = _get_subscription(subscription_id)
    _authorize(actor_id, sub.organization_id)
    config = _billing_config()
    expected = as_utc(expected_period_end)

    def prepare(locked: Subscription) -> Optional[dict]:
        if expected is not None and locked.period_end != expected:
            return {"renewed": False, "reason": "period already advanced"}
        if locked.status not in RENEWABLE_STATUSES:
            raise InvalidTransition(
                f"Subscription {locked.id} cannot renew from {locked.status.value}"
            )
        if not locked.external_customer_id:
            raise ValidationError(f"Subscription {locked.id} has no billing customer")
        txn_id = payments.renewal_transaction_id(locked.id, locked.period_end)
        txn = payments.get_by_transaction_id(txn_id)
        if txn is not None and txn.status == PaymentStatus.FAILED:
            return {"renewed": False, "reason": "payment failed; retry scheduled",
                    "transaction_id": txn_id}
        if txn is None:
            # Written before the charge so that processor events for it
            # resolve here through metadata.transaction_id.
            txn = payments.create_transaction(
                locked,
                txn_id,
                locked.cycle_amount,
                PaymentType.RENEWAL,
                description=f"Renewal for period ending {locked.period_end:%Y-%m-%d}",
                billing_period_end=locked.period_end,
                max_retries=config.max_retries,
            )
        return {
            "transaction_id": txn_id,
            "customer_id": locked.external_customer_id,
            "amount": txn.total_amount,
            "currency": txn.currency,
            "period_end": locked.period_end,
            "already_paid": txn.is_paid,
        }

    plan = run_locked(subscription_id, prepare)
    if "renewed" in plan:
        logger.info("Renewal of subscription %s skipped: %s", subscription_id, plan["reason"])
        return plan

    result = None
    if not plan["already_paid"]:
        try:
            result = get_gateway().charge(
                plan["customer_id"],
                plan["amount"],
                plan["currency"],
                idempotency_key=plan["transaction_id"],
                description=f"Subscription renewal {subscription_id}",
                metadata={
                    "subscription_id": str(subscription_id),
                    "transaction_id": plan["transaction_id"],
                },
            )
        except GatewayError as exc:
            _record_renewal_failure(subscription_id, plan, exc, config)
            raise

    def apply(locked: Subscription) -> dict:
        txn = payments.get_by_transaction_id(plan["transaction_id"])
        if result is not None:
            payments.mark_completed(txn, **_charge_card_details(result))
        if locked.period_end == plan["period_end"] and locked.status in RENEWABLE_STATUSES:
            subscriptions.renew(locked)
            return {"renewed": True, "transaction_id": txn.transaction_id,
                    "current_period_end": locked.period_end.isoformat()}
        return {"renewed": False, "reason": "period already advanced",
                "transaction_id": txn.transaction_id}

    outcome = run_locked(subscription_id, apply)
    if outcome["renewed"]:
        sub = db.session.get(Subscription, subscription_id)
        notifications.notify_renewed(_email_config(), sub.organization, sub)
    return outcome


def _record_renewal_failure(subscription_id: int, plan: dict, exc: GatewayError, config) -> None:
    def apply(locked: Subscription) -> Optional[PaymentTransaction]:
        txn = payments.get_by_transaction_id(plan["transaction_id"])
        if not payments.mark_failed(
            txn, exc.message, config, external_payment_intent_id=exc.payment_intent_id
        ):
            return None
        subscriptions.mark_past_due(locked)
        return txn

    txn = run_locked(subscription_id, apply)
    if txn is not None:
        notifications.notify_payment_failed(_email_config(), txn.organization, txn)


def retry_payment(transaction_pk: int, now: Optional[datetime.datetime] = None) -> dict:
    """Retry one failed transaction if it is due.

    Each attempt uses its own Stripe idempotency key.  When the last allowed
    attempt fails the subscription expires.
    """
    config = _billing_config()
    now = now or utc_now()
    txn = db.session.get(PaymentTransaction, transaction_pk)
    if txn is None:
        raise NotFoundError(f"Payment transaction {transaction_pk} not found")
    if txn.subscription_id is None:
        return {"retried": False, "reason": "no subscription"}

    def prepare(locked: Subscription) -> dict:
        current = db.session.get(PaymentTransaction, transaction_pk)
        if current.status != PaymentStatus.FAILED:
            return {"retried": False, "reason": f"transaction is {current.status.value}"}
        if payments.retries_exhausted(current):
            return {"retried": False, "reason": "retries exhausted"}
        if current.next_retry_at is None or as_utc(current.next_retry_at) > now:
            return {"retried": False, "reason": "not yet due"}
        if locked.status == S.EXPIRED:
            return {"retried": False, "reason": "subscription expired"}
        if not locked.external_customer_id:
            return {"retried": False, "reason": "no billing customer"}
        attempt = current.retry_count + 1
        return {
            "attempt": attempt,
            "idempotency_key": f"{current.transaction_id}-retry-{attempt}",
            "customer_id": locked.external_customer_id,
            "amount": current.total_amount,
            "currency": current.currency,
        }

    plan = run_locked(txn.subscription_id, prepare)
    if "retried" in plan:
        logger.info("Retry of payment %s skipped: %s", transaction_pk, plan["reason"])
        return plan

    failure: Optional[GatewayError] = None
    result = None
    try:
        result = get_gateway().charge(
            plan["customer_id"],
            plan["amount"],
            plan["currency"],
            idempotency_key=plan["idempotency_key"],
            description=f"Payment retry {plan['attempt']} for {txn.transaction_id}",
            metadata={"transaction_id": txn.transaction_id},
        )
    except GatewayError as exc:
        failure = exc

    def apply(locked: Subscription) -> dict:
        current = db.session.get(PaymentTransaction, transaction_pk)
        # charge.succeeded for this attempt may have completed it already.
        settled_by_event = (
            failure is None
            and current.status == PaymentStatus.COMPLETED
            and current.external_charge_id == result.charge_id
        )
        if current.retry_count >= plan["attempt"] or not (
            current.status == PaymentStatus.FAILED or settled_by_event
        ):
            return {"retried": False, "reason": "superseded by a concurrent update"}
        current.retry_count = plan["attempt"]
        if failure is None:
            payments.mark_completed(current, **_charge_card_details(result))
            period_end = as_utc(current.billing_period_end)
            renewed = False
            if (
                current.payment_type == PaymentType.RENEWAL
                and period_end is not None
                and locked.period_end == period_end
                and locked.status in RENEWABLE_STATUSES
            ):
                subscriptions.renew(locked)
                renewed = True
            elif locked.status == S.PAST_DUE:
                subscriptions.activate(locked)
            return {"retried": True, "status": current.status.value,
                    "attempt": plan["attempt"], "renewed": renewed}

        payments.mark_failed(
            current, failure.message, config,
            external_payment_intent_id=failure.payment_intent_id,
        )
        expired = False
        if payments.retries_exhausted(current):
            subscriptions.expire(locked, "payment retries exhausted")
            expired = True
        return {"retried": True, "status": current.status.value,
                "attempt": plan["attempt"], "subscription_expired": expired}

    outcome = run_locked(txn.subscription_id, apply)
    txn = db.session.get(PaymentTransaction, transaction_pk)
    if failure is None:
        if outcome.get("renewed"):
            sub = db.session.get(Subscription, txn.subscription_id)
            notifications.notify_renewed(_email_config(), sub.organization, sub)
    elif outcome.get("retried"):
        if outcome.get("subscription_expired"):
            notifications.notify_subscription_expired(
                _email_config(), txn.organization, "payment retries exhausted"
            )
        else:
            notifications.notify_payment_failed(_email_config(), txn.organization, txn)
    return outcome


# ---------------------------------------------------------------------------
# Licenses
# ---------------------------------------------------------------------------

def assign_license(organization_id: int, user_id: int, actor_id: Optional[int] = None) -> License:
    """Give *user_id* a license from the organization's pool."""
    _get_organization(organization_id)
    _authorize_licenses(actor_id, organization_id)
    membership = OrganizationMember.query.filter_by(
        organization_id=organization_id, user_id=user_id
    ).first()
    if membership is None:
        raise ValidationError(f"User {user_id} is not a member of organization {organization_id}")
    sub = subscriptions.get_live_for_organization(organization_id)
    if sub is None:
        raise SubscriptionNotActive(f"Organization {organization_id} has no active subscription")

    def apply(locked: Subscription) -> License:
        if locked.status not in subscriptions.LICENSABLE_STATUSES:
            raise SubscriptionNotActive(
                f"Subscription {locked.id} is {locked.status.value}; licenses cannot be assigned"
            )
        return license_ledger.assign(locked, user_id)

    return run_locked(sub.id, apply)


def revoke_license(license_id: int, reason: str = "", actor_id: Optional[int] = None) -> License:
    lic = db.session.get(License, license_id)
    if lic is None:
        raise NotFoundError(f"License {license_id} not found")
    _authorize_licenses(actor_id, lic.organization_id)
    reason = (reason or "").strip() or "revoked by administrator"
    return run_locked(
        lic.subscription_id,
        lambda locked: license_ledger.revoke(locked, license_id, reason),
    )


def list_licenses(organization_id: int, actor_id: Optional[int] = None) -> List[License]:
    _get_organization(organization_id)
    _authorize_read(actor_id, organization_id)
    return license_ledger.list_for_organization(organization_id)


def list_user_licenses(user_id: int, actor_id: Optional[int] = None) -> List[License]:
    """Every license ever given to *user_id*, across organizations.  Self or superadmin."""
    if actor_id is not None and actor_id != user_id and not is_superadmin(actor_id):
        raise AuthorizationError(f"User {actor_id} may not list licenses of user {user_id}")
    return license_ledger.list_for_user(user_id)


def user_has_license(organization_id: int, user_id: int) -> bool:
    return license_ledger.has_active(organization_id, user_id)


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

def get_subscription(organization_id: int, actor_id: Optional[int] = None) -> Subscription:
    """Live subscription of the organization, or its most recent expired one."""
    _get_organization(organization_id)
    _authorize_read(actor_id, organization_id)
    sub = (
        subscriptions.get_live_for_organization(organization_id)
        or subscriptions.get_latest_for_organization(organization_id)
    )
    if sub is None:
        raise NotFoundError(f"Organization {organization_id} has no subscription")
    return sub


def get_stats(organization_id: int, actor_id: Optional[int] = None) -> dict:
    sub = get_subscription(organization_id, actor_id=actor_id)
    return subscriptions.stats_for(sub, _billing_config().expiring_soon_days)


def list_payment_history(organization_id: int, actor_id: Optional[int] = None) -> List[PaymentTransaction]:
    _get_organization(organization_id)
    _authorize(actor_id, organization_id)
    return payments.list_payment_history(organization_id)


def get_payment(transaction_pk: int, actor_id: Optional[int] = None) -> PaymentTransaction:
    txn = db.session.get(PaymentTransaction, transaction_pk)
    if txn is None:
        raise NotFoundError(f"Payment transaction {transaction_pk} not found")
    _authorize(actor_id, txn.organization_id)
    return txn


def list_subscription_payments(
    subscription_id: int, actor_id: Optional[int] = None
) -> List[PaymentTransaction]:
    sub = _get_subscription(subscription_id)
    _authorize(actor_id, sub.organization_id)
    return payments.list_for_subscription(subscription_id)


def get_revenue_stats(
    start: Optional[datetime.datetime],
    end: Optional[datetime.datetime],
    actor_id: Optional[int] = None,
) -> dict:
    if actor_id is not None and not is_superadmin(actor_id):
        raise AuthorizationError("Revenue statistics are restricted to superadmins")
    if end is None:
        end = utc_now()
    if start is None:
        start = add_months(end, -1)
    return payments.get_revenue_stats(start, end)


# ---------------------------------------------------------------------------
# Payment methods and refunds
# ---------------------------------------------------------------------------

def _billing_customer(organization_id: int, actor_id: Optional[int]) -> str:
    org = _get_organization(organization_id)
    _authorize(actor_id, organization_id)
    if not org.external_customer_id:
        raise NotFoundError(f"Organization {organization_id} has no billing account")
    return org.external_customer_id


def list_payment_methods(organization_id: int, actor_id: Optional[int] = None) -> list:
    customer_id = _billing_customer(organization_id, actor_id)
    return get_gateway().list_payment_methods(customer_id)


def set_default_payment_method(
    organization_id: int, payment_method_id: str, actor_id: Optional[int] = None
) -> None:
    if not payment_method_id:
        raise ValidationError("payment_method_id is required")
    customer_id = _billing_customer(organization_id, actor_id)
    get_gateway().set_default_payment_method(customer_id, payment_method_id)


def delete_payment_method(
    organization_id: int, payment_method_id: str, actor_id: Optional[int] = None
) -> None:
    customer_id = _billing_customer(organization_id, actor_id)
    gateway = get_gateway()
    known = {pm.id for pm in gateway.list_payment_methods(customer_id)}
    if payment_method_id not in known:
        raise NotFoundError(f"Payment method {payment_method_id} not found")
    gateway.delete_payment_method(payment_method_id)


def refund_payment(
    transaction_pk: int,
    amount=None,
    reason: str = "",
    actor_id: Optional[int] = None,
) -> dict:
    """Ask Stripe for a (partial) refund.

    The local transaction changes status when the ``charge.refunded``
    webhook arrives.
    """
    txn = db.session.get(PaymentTransaction, transaction_pk)
    if txn is None:
        raise NotFoundError(f"Payment transaction {transaction_pk} not found")
    _authorize(actor_id, txn.organization_id)
    if txn.status not in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED):
        raise ValidationError(f"Only completed payments can be refunded (status is {txn.status.value})")
    if not txn.external_charge_id:
        raise ValidationError(f"Payment {txn.transaction_id} has no processor charge to refund")

    already = txn.refund_amount or Decimal("0")
    refundable = txn.total_amount - already
    if amount is not None:
        try:
            amount = Decimal(str(amount)).quantize(Decimal("0.01"))
        except ArithmeticError:
            raise ValidationError("amount must be a decimal number")
        if amount <= 0:
            raise ValidationError("amount must be positive")
        if amount > refundable:
            raise ValidationError(f"amount exceeds the refundable {refundable}")

    key_amount = amount if amount is not None else refundable
    result = get_gateway().refund(
        txn.external_charge_id,
        amount,
        idempotency_key=f"refund-{txn.transaction_id}-{already}-{key_amount}",
        reason=reason,
    )
    logger.info(
        "Refund %s of %s requested for payment %s", result.refund_id, result.amount, txn.transaction_id
    )
    return {
        "refund_id": result.refund_id,
        "transaction_id": txn.transaction_id,
        "amount": str(result.amount),
        "status": result.status,
    }


# ---------------------------------------------------------------------------
# Invoices (read from Stripe)
# ---------------------------------------------------------------------------

def list_invoices(
    organization_id: int,
    status: Optional[str] = None,
    start: Optional[datetime.datetime] = None,
    end: Optional[datetime.datetime] = None,
    limit: int = 20,
    actor_id: Optional[int] = None,
) -> list:
    """Stripe invoices of the organization, newest first.

    An organization that never had a billing account simply has none.
    """
    org = _get_organization(organization_id)
    _authorize(actor_id, organization_id)
    if not 1 <= limit <= 100:
        raise ValidationError("limit must be between 1 and 100")
    if not org.external_customer_id:
        return []
    if start is not None and end is None:
        end = utc_now()
    return get_gateway().list_invoices(
        org.external_customer_id, status=status, created_gte=start, created_lte=end, limit=limit
    )


def get_upcoming_invoice(subscription_id: int, actor_id: Optional[int] = None):
    sub = _get_subscription(subscription_id)
    _authorize(actor_id, sub.organization_id)
    if not sub.is_linked or sub.status == SubscriptionStatus.EXPIRED:
        raise NotFoundError(f"Subscription {subscription_id} has no upcoming invoice")
    return get_gateway().upcoming_invoice(
        sub.external_customer_id, sub.external_subscription_id
    )


def get_billing_summary(
    organization_id: int,
    start: Optional[datetime.datetime],
    end: Optional[datetime.datetime],
    actor_id: Optional[int] = None,
) -> dict:
    """Paid Stripe invoices in ``[start, end]``: total, count and average."""
    org = _get_organization(organization_id)
    _authorize(actor_id, organization_id)
    if end is None:
        end = utc_now()
    if start is None:
        start = add_months(end, -1)
    start, end = as_utc(start), as_utc(end)
    if end <= start:
        raise ValidationError("End date must be after start date")

    invoices = []
    if org.external_customer_id:
        invoices = get_gateway().list_invoices(
            org.external_customer_id, status="paid", created_gte=start, created_lte=end, limit=100
        )
    total = sum((inv.total for inv in invoices), Decimal("0.00"))
    count = len(invoices)
    average = (total / count).quantize(Decimal("0.01")) if count else Decimal("0.00")
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "total_paid": str(total),
        "count": count,
        "average": str(average),
    }
