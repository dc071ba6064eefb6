"""Billing scheduler: time-driven scans that enqueue idempotent jobs.

Scans only read the database and hand work to a :class:`JobQueue`; the jobs
themselves (``celery_app`` tasks) re-check every precondition, so enqueuing
the same job twice is harmless.
"""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from flask import current_app

from extensions import db
from models import License, LicenseStatus, Subscription, SubscriptionStatus
from services import license_ledger, notifications, payments, subscriptions
from services.locking import run_locked
from utils import utc_now

logger = logging.getLogger(__name__)

S = SubscriptionStatus

RENEW_TASK = "billing.renew_subscription"
RETRY_TASK = "billing.retry_payment"
NOTICE_TASK = "billing.send_expiration_notice"
RECONCILE_TASK = "billing.reconcile_subscription"


class JobQueue:
    """Destination for scheduler jobs."""

    def enqueue(self, task_name: str, *args) -> None:
        raise NotImplementedError


class CeleryJobQueue(JobQueue):
    def __init__(self, celery_app):
        self.celery_app = celery_app

    def enqueue(self, task_name: str, *args) -> None:
        self.celery_app.send_task(task_name, args=list(args))
        logger.debug("Enqueued %s%r", task_name, args)


def _scheduler_config():
    return current_app.config["SCHEDULER_CONFIG"]


def _billing_config():
    return current_app.config["BILLING_CONFIG"]


# ---------------------------------------------------------------------------
# Scans
# ---------------------------------------------------------------------------

def scan_renewals(queue: JobQueue, now: Optional[datetime.datetime] = None) -> int:
    """Enqueue a renewal for each auto-renewing subscription whose period ends soon."""
    now = now or utc_now()
    horizon = now + datetime.timedelta(days=_scheduler_config().renewal_lookahead_days)
    due = (
        Subscription.query.filter(
            Subscription.auto_renew.is_(True),
            Subscription.status.in_([S.ACTIVE, S.PAST_DUE]),
            Subscription.current_period_end <= horizon,
        )
        .order_by(Subscription.current_period_end)
        .all()
    )
    for sub in due:
        queue.enqueue(RENEW_TASK, sub.id, sub.period_end.isoformat())
    if due:
        logger.info("Enqueued %s subscription renewals", len(due))
    return len(due)


def scan_payment_retries(queue: JobQueue, now: Optional[datetime.datetime] = None) -> int:
    due = payments.due_for_retry(now)
    for txn in due:
        queue.enqueue(RETRY_TASK, txn.id)
    if due:
        logger.info("Enqueued %s payment retries", len(due))
    return len(due)


def scan_expiration_notices(queue: JobQueue, now: Optional[datetime.datetime] = None) -> int:
    expiring = license_ledger.licenses_expiring_within(_scheduler_config().expiry_notice_days, now)
    for lic in expiring:
        queue.enqueue(NOTICE_TASK, lic.id)
    if expiring:
        logger.info("Enqueued %s license expiration notices", len(expiring))
    return len(expiring)


def expire_licenses(now: Optional[datetime.datetime] = None) -> int:
    return license_ledger.expire_due(now)


def expire_lapsed_subscriptions(now: Optional[datetime.datetime] = None) -> int:
    """Expire cancelled subscriptions past period end and others past the grace period."""
    now = now or utc_now()
    grace_days = _billing_config().grace_period_days
    candidates = (
        Subscription.query.filter(
            Subscription.status != S.EXPIRED,
            Subscription.current_period_end < now,
        )
        .with_entities(Subscription.id)
        .all()
    )

    def lapse(locked: Subscription) -> bool:
        if locked.status == S.EXPIRED:
            return False
        if subscriptions.grace_deadline(locked, grace_days) >= now:
            return False
        reason = "cancelled and period ended" if locked.status == S.CANCELLED else "grace period elapsed"
        subscriptions.expire(locked, reason)
        return True

    expired = 0
    for (subscription_id,) in candidates:
        if run_locked(subscription_id, lapse):
            expired += 1
            sub = db.session.get(Subscription, subscription_id)
            notifications.notify_subscription_expired(
                current_app.config["EMAIL_CONFIG"], sub.organization, "period ended"
            )
    if expired:
        logger.info("Expired %s lapsed subscriptions", expired)
    return expired


def scan_reconciliation(queue: JobQueue, now: Optional[datetime.datetime] = None) -> int:
    linked = (
        Subscription.query.filter(
            Subscription.status != S.EXPIRED,
            Subscription.external_subscription_id.isnot(None),
        )
        .with_entities(Subscription.id)
        .all()
    )
    for (subscription_id,) in linked:
        queue.enqueue(RECONCILE_TASK, subscription_id)
    return len(linked)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

def send_expiration_notice(license_id: int, now: Optional[datetime.datetime] = None) -> bool:
    """Email the license holder once per ``valid_until``."""
    now = now or utc_now()
    lic = db.session.get(License, license_id)
    if lic is None or lic.status != LicenseStatus.ACTIVE or lic.expiry_notified_at is not None:
        return False
    sent = notifications.notify_license_expiring(
        current_app.config["EMAIL_CONFIG"], lic.user, lic.subscription.organization, lic
    )
    lic.expiry_notified_at = now
    db.session.commit()
    return sent
