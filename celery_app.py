"""Celery application for billing jobs.

Workers: ``celery -A make_celery worker``;
beat:    ``celery -A make_celery beat``.
Tasks run inside the Flask application context, so they share the models,
configuration and billing gateway of the web process.
"""

from __future__ import annotations

import logging

from celery import Celery, Task, shared_task
from celery.schedules import crontab
from flask import current_app

from config_models import SchedulerConfig
from services import entitlements, scheduler, webhooks
from services.errors import ConcurrencyConflict, EntitlementError, GatewayTimeout
from utils import parse_iso_datetime

logger = logging.getLogger(__name__)

RETRYABLE = (GatewayTimeout, ConcurrencyConflict)


def beat_schedule() -> dict:
    return {
        "scan-renewals": {
            "task": "billing.scan_renewals",
            "schedule": crontab(hour=2, minute=0),
        },
        "scan-payment-retries": {
            "task": "billing.scan_payment_retries",
            "schedule": crontab(minute=5),
        },
        "scan-expiration-notices": {
            "task": "billing.scan_expiration_notices",
            "schedule": crontab(hour=8, minute=0),
        },
        "expire-licenses": {
            "task": "billing.expire_licenses",
            "schedule": crontab(hour=0, minute=15),
        },
        "expire-lapsed-subscriptions": {
            "task": "billing.expire_lapsed_subscriptions",
            "schedule": crontab(hour=0, minute=30),
        },
        "scan-reconciliation": {
            "task": "billing.scan_reconciliation",
            "schedule": crontab(hour=3, minute=0),
        },
    }


def celery_init_app(app, scheduler_config: SchedulerConfig) -> Celery:
    """Create the Celery app bound to *app* and register it as the default."""

    class FlaskTask(Task):
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return self.run(*args, **kwargs)

    celery_app = Celery(app.import_name, task_cls=FlaskTask)
    celery_app.conf.update(
        broker_url=scheduler_config.broker_url,
        result_backend=scheduler_config.result_backend,
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone=scheduler_config.timezone,
        enable_utc=True,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        broker_connection_retry_on_startup=True,
        task_always_eager=app.config.get("CELERY_TASK_ALWAYS_EAGER", False),
        beat_schedule=beat_schedule(),
    )
    celery_app.set_default()
    app.extensions["celery"] = celery_app
    return celery_app


def _queue():
    return scheduler.CeleryJobQueue(current_app.extensions["celery"])


# ---------------------------------------------------------------------------
# Scans
# ---------------------------------------------------------------------------

@shared_task(name="billing.scan_renewals", ignore_result=True)
def scan_renewals_task():
    return scheduler.scan_renewals(_queue())


@shared_task(name="billing.scan_payment_retries", ignore_result=True)
def scan_payment_retries_task():
    return scheduler.scan_payment_retries(_queue())


@shared_task(name="billing.scan_expiration_notices", ignore_result=True)
def scan_expiration_notices_task():
    return scheduler.scan_expiration_notices(_queue())


@shared_task(name="billing.expire_licenses", ignore_result=True)
def expire_licenses_task():
    return scheduler.expire_licenses()


@shared_task(name="billing.expire_lapsed_subscriptions", ignore_result=True)
def expire_lapsed_subscriptions_task():
    return scheduler.expire_lapsed_subscriptions()


@shared_task(name="billing.scan_reconciliation", ignore_result=True)
def scan_reconciliation_task():
    return scheduler.scan_reconciliation(_queue())


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@shared_task(
    name="billing.renew_subscription",
    autoretry_for=RETRYABLE,
    retry_backoff=60,
    retry_backoff_max=3600,
    max_retries=5,
)
def renew_subscription_task(subscription_id: int, expected_period_end: str = None):
    try:
        return entitlements.renew_subscription(
            subscription_id, expected_period_end=parse_iso_datetime(expected_period_end)
        )
    except EntitlementError as exc:
        if exc.retryable:
            raise
        logger.warning("Renewal of subscription %s not done: %s", subscription_id, exc.message)
        return {"renewed": False, "reason": exc.message}


@shared_task(
    name="billing.retry_payment",
    autoretry_for=RETRYABLE,
    retry_backoff=60,
    retry_backoff_max=3600,
    max_retries=5,
)
def retry_payment_task(transaction_pk: int):
    return entitlements.retry_payment(transaction_pk)


@shared_task(name="billing.send_expiration_notice", ignore_result=True)
def send_expiration_notice_task(license_id: int):
    return scheduler.send_expiration_notice(license_id)


@shared_task(
    name="billing.reconcile_subscription",
    autoretry_for=RETRYABLE,
    retry_backoff=60,
    retry_backoff_max=3600,
    max_retries=5,
)
def reconcile_subscription_task(subscription_id: int):
    return webhooks.reconcile_subscription(subscription_id)

