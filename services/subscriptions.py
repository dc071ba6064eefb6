"""Subscription aggregate: lifecycle state machine and field updates.

Functions here mutate an already loaded :class:`Subscription` and never
commit; callers wrap them in ``locking.run_locked``.
"""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from models import Subscription, SubscriptionStatus
from services import license_ledger
from services.errors import InvalidTransition
from services.stripe_billing import RemoteSubscription
from utils import advance_period, as_utc, days_until, utc_now

logger = logging.getLogger(__name__)

S = SubscriptionStatus

# Transitions allowed for user- and scheduler-initiated changes.
TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    S.TRIAL: {S.ACTIVE, S.PAST_DUE, S.CANCELLED, S.EXPIRED},
    S.PENDING_PAYMENT: {S.ACTIVE, S.CANCELLED, S.EXPIRED},
    S.ACTIVE: {S.ACTIVE, S.PAST_DUE, S.CANCELLED, S.EXPIRED},
    S.PAST_DUE: {S.ACTIVE, S.PAST_DUE, S.CANCELLED, S.EXPIRED},
    S.CANCELLED: {S.ACTIVE, S.EXPIRED},
    S.EXPIRED: set(),
}

# Stripe subscription status -> local status.
REMOTE_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": S.ACTIVE,
    "trialing": S.TRIAL,
    "past_due": S.PAST_DUE,
    "unpaid": S.PAST_DUE,
    "incomplete": S.PENDING_PAYMENT,
    "incomplete_expired": S.EXPIRED,
    "canceled": S.CANCELLED,
}

LICENSABLE_STATUSES = {S.ACTIVE, S.TRIAL}


def get_live_for_organization(organization_id: int) -> Optional[Subscription]:
    """The organization's non-expired subscription, if any."""
    return (
        Subscription.query.filter(
            Subscription.organization_id == organization_id,
            Subscription.status != S.EXPIRED,
        )
        .order_by(Subscription.id.desc())
        .first()
    )


def get_latest_for_organization(organization_id: int) -> Optional[Subscription]:
    return (
        Subscription.query.filter_by(organization_id=organization_id)
        .order_by(Subscription.id.desc())
        .first()
    )


def get_by_external_id(external_subscription_id: str) -> Optional[Subscription]:
    if not external_subscription_id:
        return None
    return Subscription.query.filter_by(
        external_subscription_id=external_subscription_id
    ).first()


def get_by_customer(customer_id: str) -> Optional[Subscription]:
    """Newest live subscription billed to the Stripe customer *customer_id*."""
    if not customer_id:
        return None
    return (
        Subscription.query.filter(
            Subscription.external_customer_id == customer_id,
            Subscription.status != S.EXPIRED,
        )
        .order_by(Subscription.id.desc())
        .first()
    )


def transition(sub: Subscription, target: SubscriptionStatus) -> None:
    """Move *sub* to *target* or raise :class:`InvalidTransition`."""
    if target not in TRANSITIONS[sub.status]:
        raise InvalidTransition(
            f"Subscription {sub.id} cannot move from {sub.status.value} to {target.value}"
        )
    if sub.status != target:
        logger.info("Subscription %s: %s -> %s", sub.id, sub.status.value, target.value)
    sub.status = target


def _set_period(
    sub: Subscription,
    start: Optional[datetime.datetime],
    end: Optional[datetime.datetime],
) -> bool:
    if not start or not end or start >= end:
        return False
    if as_utc(sub.current_period_start) == start and sub.period_end == end:
        return False
    sub.current_period_start = start
    sub.current_period_end = end
    sub.next_billing_date = end
    return True


# ---------------------------------------------------------------------------
# Lifecycle transitions
# ---------------------------------------------------------------------------

def activate(
    sub: Subscription,
    period_start: Optional[datetime.datetime] = None,
    period_end: Optional[datetime.datetime] = None,
) -> None:
    transition(sub, S.ACTIVE)
    sub.is_trial = False
    if _set_period(sub, period_start, period_end):
        license_ledger.extend_active(sub, sub.period_end)


def mark_past_due(sub: Subscription) -> bool:
    """Past due keeps licenses usable.  Returns False if nothing changed."""
    if sub.status in (S.PAST_DUE, S.CANCELLED, S.EXPIRED, S.PENDING_PAYMENT):
        return False
    transition(sub, S.PAST_DUE)
    return True


def cancel(
    sub: Subscription,
    reason: str,
    now: Optional[datetime.datetime] = None,
    immediate: bool = False,
) -> None:
    """Stop renewal.  Licenses stay valid until period end unless *immediate*."""
    now = now or utc_now()
    transition(sub, S.CANCELLED)
    sub.auto_renew = False
    sub.cancellation_reason = reason
    sub.cancelled_at = now
    sub.next_billing_date = None
    if immediate and sub.period_end > now:
        end = max(now, as_utc(sub.current_period_start) + datetime.timedelta(microseconds=1))
        sub.current_period_end = end
        license_ledger.clamp_active(sub, end)


def reactivate(sub: Subscription, now: Optional[datetime.datetime] = None) -> None:
    now = now or utc_now()
    if sub.status != S.CANCELLED:
        raise InvalidTransition(
            f"Only cancelled subscriptions can be reactivated (status is {sub.status.value})"
        )
    if sub.period_end <= now:
        raise InvalidTransition(
            f"Subscription {sub.id} period ended on {sub.period_end:%Y-%m-%d}; "
            "start a new subscription instead"
        )
    transition(sub, S.ACTIVE)
    sub.auto_renew = True
    sub.cancellation_reason = None
    sub.cancelled_at = None
    sub.next_billing_date = sub.current_period_end


def expire(sub: Subscription, reason: str) -> int:
    """Terminal state; revokes every Active license of the organization."""
    if sub.status == S.EXPIRED:
        return 0
    transition(sub, S.EXPIRED)
    sub.auto_renew = False
    sub.next_billing_date = None
    revoked = license_ledger.revoke_all_active(sub, f"subscription expired: {reason}")
    logger.info("Subscription %s expired (%s); %s licenses revoked", sub.id, reason, revoked)
    return revoked


def renew(
    sub: Subscription,
    period_start: Optional[datetime.datetime] = None,
    period_end: Optional[datetime.datetime] = None,
) -> None:
    """Advance one billing cycle (or to the given period) and extend licenses."""
    transition(sub, S.ACTIVE)
    if period_start is None or period_end is None:
        period_start = sub.period_end
        period_end = advance_period(period_start, sub.billing_cycle.value)
    sub.is_trial = False
    extended = extend_period(sub, period_start, period_end)
    logger.info(
        "Subscription %s renewed until %s (%s licenses extended)",
        sub.id, sub.period_end.isoformat(), extended,
    )


def extend_period(
    sub: Subscription,
    period_start: Optional[datetime.datetime],
    period_end: datetime.datetime,
) -> int:
    """Move the paid period without a status change; licenses follow it."""
    _set_period(sub, period_start or as_utc(sub.current_period_start), period_end)
    return license_ledger.extend_active(sub, sub.period_end)


def set_capacity(sub: Subscription, capacity: int) -> None:
    if capacity != sub.capacity:
        logger.info("Subscription %s capacity %s -> %s", sub.id, sub.capacity, capacity)
    sub.capacity = capacity


# ---------------------------------------------------------------------------
# Processor-driven updates
# ---------------------------------------------------------------------------

def is_stale(sub: Subscription, event_created: Optional[datetime.datetime]) -> bool:
    """True when a newer processor event was already applied to *sub*."""
    if event_created is None or sub.last_remote_event_at is None:
        return False
    return event_created < as_utc(sub.last_remote_event_at)


def touch_remote(sub: Subscription, event_created: Optional[datetime.datetime]) -> None:
    if event_created is None:
        return
    if sub.last_remote_event_at is None or event_created > as_utc(sub.last_remote_event_at):
        sub.last_remote_event_at = event_created


def apply_remote_status(sub: Subscription, target: SubscriptionStatus, reason: str) -> bool:
    """Processor-reported status; any move is allowed except out of expired."""
    if sub.status == S.EXPIRED or sub.status == target:
        return False
    if target == S.EXPIRED:
        expire(sub, reason)
    elif target == S.CANCELLED:
        logger.info("Subscription %s: %s -> cancelled (%s)", sub.id, sub.status.value, reason)
        sub.status = S.CANCELLED
        sub.auto_renew = False
        sub.cancellation_reason = sub.cancellation_reason or reason
        sub.cancelled_at = sub.cancelled_at or utc_now()
        sub.next_billing_date = None
    else:
        logger.info("Subscription %s: %s -> %s (%s)", sub.id, sub.status.value, target.value, reason)
        sub.status = target
        sub.is_trial = target == S.TRIAL
        if target in (S.ACTIVE, S.TRIAL):
            sub.auto_renew = True
    return True


def apply_remote(
    sub: Subscription,
    remote: RemoteSubscription,
    event_created: Optional[datetime.datetime],
) -> dict:
    """Bring cached processor-owned fields in line with *remote*.

    Returns a dict describing what changed; ``{"stale": True}`` when the
    event predates one already applied.
    """
    if sub.status == S.EXPIRED:
        return {"ignored": "expired"}
    if is_stale(sub, event_created):
        logger.warning(
            "Ignoring stale update for subscription %s (event %s < applied %s)",
            sub.id, event_created, sub.last_remote_event_at,
        )
        return {"stale": True}

    changes: dict = {}
    target = REMOTE_STATUS_MAP.get(remote.status)
    if target is None:
        logger.warning("Unmapped Stripe subscription status %r for subscription %s", remote.status, sub.id)
    elif remote.cancel_at_period_end and target in (S.ACTIVE, S.TRIAL, S.PAST_DUE):
        target = S.CANCELLED

    if _set_period(sub, remote.current_period_start, remote.current_period_end):
        license_ledger.extend_active(sub, sub.period_end)
        changes["period_end"] = sub.period_end.isoformat()

    if remote.quantity is not None and remote.quantity != sub.capacity:
        quantity = remote.quantity
        if quantity < sub.licenses_used:
            logger.warning(
                "Remote quantity %s for subscription %s is below %s licenses in use; keeping %s",
                quantity, sub.id, sub.licenses_used, sub.licenses_used,
            )
            quantity = sub.licenses_used
        if quantity != sub.capacity:
            set_capacity(sub, quantity)
            changes["capacity"] = quantity

    if remote.item_id and sub.external_subscription_item_id != remote.item_id:
        sub.external_subscription_item_id = remote.item_id
    if remote.price_id:
        sub.external_price_id = remote.price_id
    if remote.trial_end:
        sub.trial_ends_at = remote.trial_end

    if target is not None and apply_remote_status(sub, target, f"payment processor reported {remote.status}"):
        changes["status"] = sub.status.value

    touch_remote(sub, event_created)
    return changes


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

def grace_deadline(sub: Subscription, grace_period_days: int) -> datetime.datetime:
    if sub.status == S.CANCELLED:
        return sub.period_end
    return sub.period_end + datetime.timedelta(days=grace_period_days)


def subscription_to_dict(sub: Subscription) -> dict:
    return {
        "id": sub.id,
        "organization_id": sub.organization_id,
        "status": sub.status.value,
        "billing_cycle": sub.billing_cycle.value,
        "capacity": sub.capacity,
        "licenses_used": sub.licenses_used,
        "available_licenses": sub.available_licenses,
        "license_rate": str(sub.license_rate),
        "cycle_amount": str(sub.cycle_amount),
        "currency": sub.currency,
        "current_period_start": as_utc(sub.current_period_start).isoformat(),
        "current_period_end": sub.period_end.isoformat(),
        "next_billing_date": as_utc(sub.next_billing_date).isoformat() if sub.next_billing_date else None,
        "auto_renew": sub.auto_renew,
        "is_trial": bool(sub.is_trial),
        "trial_ends_at": as_utc(sub.trial_ends_at).isoformat() if sub.trial_ends_at else None,
        "cancellation_reason": sub.cancellation_reason,
        "cancelled_at": as_utc(sub.cancelled_at).isoformat() if sub.cancelled_at else None,
        "external_subscription_id": sub.external_subscription_id,
    }


def stats_for(sub: Subscription, expiring_soon_days: int, now: Optional[datetime.datetime] = None) -> dict:
    now = now or utc_now()
    target = sub.next_billing_date or sub.current_period_end
    remaining = days_until(target, now)
    return {
        "subscription_id": sub.id,
        "status": sub.status.value,
        "capacity": sub.capacity,
        "licenses_used": sub.licenses_used,
        "available_licenses": sub.available_licenses,
        "next_billing_date": as_utc(target).isoformat() if target else None,
        "days_until_renewal": remaining,
        "expiring_soon": remaining is not None and remaining <= expiring_soon_days,
        "billing_cycle": sub.billing_cycle.value,
        "auto_renew": sub.auto_renew,
    }

