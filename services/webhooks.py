"""Stripe webhook reconciliation.

Events are verified, resolved once into :class:`EventKind`, matched to a
local subscription by the external ids they carry, and applied inside the
subscription's lock together with the :class:`WebhookEvent` row that makes
redelivery a no-op.  Status changes from an event older than the newest one
already applied are skipped; payment records still move forward.
"""

from __future__ import annotations

import datetime
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import (
    PaymentStatus,
    PaymentType,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
)
from services import payments, subscriptions
from services.entitlements import get_gateway
from services.locking import run_locked
from services.stripe_billing import parse_remote_subscription, verify_webhook
from utils import cents_to_decimal, from_timestamp, utc_now

logger = logging.getLogger(__name__)

S = SubscriptionStatus


class EventKind(str, enum.Enum):
    CHARGE_SUCCEEDED = "charge.succeeded"
    CHARGE_FAILED = "charge.failed"
    CHARGE_REFUNDED = "charge.refunded"
    CUSTOMER_DELETED = "customer.deleted"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    PAYMENT_INTENT_FAILED = "payment_intent.payment_failed"
    PAYMENT_INTENT_CANCELED = "payment_intent.canceled"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_UPCOMING = "invoice.upcoming"
    UNKNOWN = "unknown"

    @classmethod
    def resolve(cls, event_type: Optional[str]) -> "EventKind":
        try:
            return cls(event_type)
        except ValueError:
            return cls.UNKNOWN


# Outcomes recorded on WebhookEvent.
APPLIED = "applied"
IGNORED = "ignored"
UNHANDLED = "unhandled"
NOT_FOUND = "not_found"
DUPLICATE = "duplicate"


@dataclass
class WebhookResult:
    event_id: str
    kind: EventKind
    outcome: str
    subscription_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "received": True,
            "event_id": self.event_id,
            "type": self.kind.value,
            "outcome": self.outcome,
        }


# ---------------------------------------------------------------------------
# Entity resolution (external ids only)
# ---------------------------------------------------------------------------

def _invoice_subscription_id(invoice: dict) -> Optional[str]:
    ref = invoice.get("subscription")
    if ref is None:
        details = (invoice.get("parent") or {}).get("subscription_details") or {}
        ref = details.get("subscription")
    if isinstance(ref, dict):
        ref = ref.get("id")
    return ref


def _invoice_period(invoice: dict):
    """Service period paid by the invoice's subscription line."""
    start = end = None
    for line in (invoice.get("lines") or {}).get("data") or []:
        period = line.get("period") or {}
        line_start = from_timestamp(period.get("start"))
        line_end = from_timestamp(period.get("end"))
        if line_end and (end is None or line_end > end):
            start, end = line_start, line_end
    return start, end


def _customer_id(obj: dict) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return customer


def _resolve_subscription(kind: EventKind, obj: dict) -> Optional[Subscription]:
    if kind in (EventKind.CHARGE_SUCCEEDED, EventKind.CHARGE_FAILED, EventKind.CHARGE_REFUNDED):
        txn = payments.find_for_charge(obj)
        if txn is not None and txn.subscription is not None:
            return txn.subscription
        return subscriptions.get_by_customer(_customer_id(obj))
    if kind in (
        EventKind.SUBSCRIPTION_CREATED,
        EventKind.SUBSCRIPTION_UPDATED,
        EventKind.SUBSCRIPTION_DELETED,
    ):
        return subscriptions.get_by_external_id(obj.get("id"))
    if kind in (EventKind.INVOICE_PAYMENT_SUCCEEDED, EventKind.INVOICE_PAYMENT_FAILED):
        sub = subscriptions.get_by_external_id(_invoice_subscription_id(obj))
        return sub or subscriptions.get_by_customer(_customer_id(obj))
    return None


# ---------------------------------------------------------------------------
# Handlers: (subscription, object, event created) -> outcome
# ---------------------------------------------------------------------------

def _charge_details(charge: dict) -> dict:
    card = (charge.get("payment_method_details") or {}).get("card") or {}
    return {
        "external_charge_id": charge.get("id"),
        "external_payment_intent_id": charge.get("payment_intent"),
        "card_brand": card.get("brand"),
        "card_last4": card.get("last4"),
        "card_exp_month": card.get("exp_month"),
        "card_exp_year": card.get("exp_year"),
    }


def _transaction_for_charge(sub: Subscription, charge: dict, status: PaymentStatus):
    txn = payments.find_for_charge(charge)
    if txn is None:
        # Charges Stripe made on its own (e.g. subscription invoices); Stripe
        # runs the dunning for those, so no local retries are scheduled.
        txn = payments.create_transaction(
            sub,
            charge.get("id"),
            cents_to_decimal(charge.get("amount")),
            PaymentType.RENEWAL if charge.get("invoice") else PaymentType.MANUAL,
            status=status,
            currency=(charge.get("currency") or sub.currency).upper(),
            description=charge.get("description") or "Stripe charge",
            max_retries=0,
            external_invoice_id=charge.get("invoice"),
        )
    return txn


def _on_charge_succeeded(sub, charge, created, config) -> str:
    txn = _transaction_for_charge(sub, charge, PaymentStatus.PENDING)
    changed = payments.mark_completed(txn, **_charge_details(charge))
    return APPLIED if changed else IGNORED


def _on_charge_failed(sub, charge, created, config) -> str:
    txn = _transaction_for_charge(sub, charge, PaymentStatus.PENDING)
    if txn.is_paid:
        logger.info("charge.failed for paid transaction %s ignored", txn.transaction_id)
        return IGNORED
    message = charge.get("failure_message") or charge.get("failure_code") or "charge failed"
    changed = payments.mark_failed(txn, message, config, **_charge_details(charge))
    if subscriptions.is_stale(sub, created):
        logger.warning("Stale charge.failed for subscription %s; status unchanged", sub.id)
    elif sub.status == S.ACTIVE:
        subscriptions.mark_past_due(sub)
        subscriptions.touch_remote(sub, created)
        changed = True
    return APPLIED if changed else IGNORED


def _on_charge_refunded(sub, charge, created, config) -> str:
    txn = payments.find_for_charge(charge)
    if txn is None:
        logger.warning("charge.refunded for unknown charge %s", charge.get("id"))
        return NOT_FOUND
    if not txn.external_charge_id:
        txn.external_charge_id = charge.get("id")
    refunded = cents_to_decimal(charge.get("amount_refunded"))
    if charge.get("refunded") and charge.get("amount") == charge.get("amount_refunded"):
        refunded = max(refunded, txn.total_amount)
    return APPLIED if payments.apply_refund(txn, refunded) else IGNORED


def _on_subscription_updated(sub, data, created, config) -> str:
    changes = subscriptions.apply_remote(sub, parse_remote_subscription(data), created)
    if changes.get("stale") or changes.get("ignored"):
        return IGNORED
    return APPLIED if changes else IGNORED


def _on_subscription_deleted(sub, data, created, config) -> str:
    if subscriptions.is_stale(sub, created):
        logger.warning("Stale subscription.deleted for subscription %s", sub.id)
        return IGNORED
    changed = subscriptions.apply_remote_status(
        sub, S.CANCELLED, "subscription deleted at payment processor"
    )
    subscriptions.touch_remote(sub, created)
    return APPLIED if changed else IGNORED


def _invoice_transaction(sub, invoice: dict, status: PaymentStatus, config, amount_key: str):
    txn = (
        payments.get_by_invoice(invoice.get("id"))
        or payments.get_by_charge_id(invoice.get("charge"))
        or payments.get_by_payment_intent(invoice.get("payment_intent"))
    )
    if txn is None:
        initial = invoice.get("billing_reason") == "subscription_create"
        txn = payments.create_transaction(
            sub,
            f"invoice-{invoice.get('id')}",
            cents_to_decimal(invoice.get(amount_key)),
            PaymentType.INITIAL if initial else PaymentType.RENEWAL,
            status=status,
            currency=(invoice.get("currency") or sub.currency).upper(),
            description=f"Stripe invoice {invoice.get('number') or invoice.get('id')}",
            max_retries=0,
            external_invoice_id=invoice.get("id"),
            external_charge_id=invoice.get("charge") if isinstance(invoice.get("charge"), str) else None,
            external_payment_intent_id=invoice.get("payment_intent")
            if isinstance(invoice.get("payment_intent"), str) else None,
        )
    elif not txn.external_invoice_id:
        txn.external_invoice_id = invoice.get("id")
    return txn


def _on_invoice_paid(sub, invoice, created, config) -> str:
    if not invoice.get("amount_paid"):
        logger.info("Ignoring zero-amount invoice %s for subscription %s", invoice.get("id"), sub.id)
        return IGNORED
    txn = _invoice_transaction(sub, invoice, PaymentStatus.PENDING, config, "amount_paid")
    newly_paid = payments.mark_completed(txn)
    if txn.billing_period_end is None:
        txn.billing_period_end = sub.current_period_end

    if subscriptions.is_stale(sub, created):
        logger.warning("Stale invoice.payment_succeeded for subscription %s; status unchanged", sub.id)
        return APPLIED if newly_paid else IGNORED

    changed = newly_paid
    start, end = _invoice_period(invoice)
    if sub.status == S.CANCELLED:
        if end and end > sub.period_end:
            subscriptions.extend_period(sub, start, end)
            changed = True
    elif end and end > sub.period_end:
        subscriptions.renew(sub, start, end)
        changed = True
    elif end is None and newly_paid and sub.status in (S.ACTIVE, S.PAST_DUE):
        subscriptions.renew(sub)
        changed = True
    elif sub.status in (S.PAST_DUE, S.PENDING_PAYMENT, S.TRIAL):
        subscriptions.activate(sub)
        changed = True
    subscriptions.touch_remote(sub, created)
    return APPLIED if changed else IGNORED


def _on_invoice_failed(sub, invoice, created, config) -> str:
    txn = _invoice_transaction(sub, invoice, PaymentStatus.PENDING, config, "amount_due")
    if txn.is_paid:
        logger.info("invoice.payment_failed for paid transaction %s ignored", txn.transaction_id)
        return IGNORED
    message = "invoice payment failed"
    if invoice.get("attempt_count"):
        message += f" (attempt {invoice['attempt_count']})"
    changed = payments.mark_failed(txn, message, config)
    if subscriptions.is_stale(sub, created):
        logger.warning("Stale invoice.payment_failed for subscription %s; status unchanged", sub.id)
    elif subscriptions.mark_past_due(sub):
        subscriptions.touch_remote(sub, created)
        changed = True
    return APPLIED if changed else IGNORED


_HANDLERS: Dict[EventKind, Callable] = {
    EventKind.CHARGE_SUCCEEDED: _on_charge_succeeded,
    EventKind.CHARGE_FAILED: _on_charge_failed,
    EventKind.CHARGE_REFUNDED: _on_charge_refunded,
    EventKind.SUBSCRIPTION_CREATED: _on_subscription_updated,
    EventKind.SUBSCRIPTION_UPDATED: _on_subscription_updated,
    EventKind.SUBSCRIPTION_DELETED: _on_subscription_deleted,
    EventKind.INVOICE_PAYMENT_SUCCEEDED: _on_invoice_paid,
    EventKind.INVOICE_PAYMENT_FAILED: _on_invoice_failed,
}

# Known kinds that need no local change.
_ACKNOWLEDGED = {
    EventKind.CUSTOMER_DELETED,
    EventKind.PAYMENT_INTENT_SUCCEEDED,
    EventKind.PAYMENT_INTENT_FAILED,
    EventKind.PAYMENT_INTENT_CANCELED,
    EventKind.INVOICE_UPCOMING,
}


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def _already_processed(event_id: str) -> bool:
    return WebhookEvent.query.filter_by(event_id=event_id).first() is not None


def _record(event_id: str, event_type: str, created, outcome: str) -> None:
    db.session.add(WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        event_created_at=created,
        outcome=outcome,
    ))


def _record_standalone(event_id: str, event_type: str, created, outcome: str) -> str:
    try:
        _record(event_id, event_type, created, outcome)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return DUPLICATE
    return outcome


def handle_webhook(payload: bytes, sig_header: Optional[str]) -> WebhookResult:
    """Verify and apply one Stripe event.

    Raises :class:`SignatureInvalid` before touching any state when the
    signature does not check out.
    """
    config = current_app.config["BILLING_CONFIG"]
    event = verify_webhook(
        payload, sig_header, config.stripe_webhook_secret, config.webhook_tolerance_seconds
    )
    event_id = event["id"]
    event_type = event["type"]
    kind = EventKind.resolve(event_type)
    created = from_timestamp(event.get("created"))
    obj = (event.get("data") or {}).get("object") or {}

    if _already_processed(event_id):
        logger.info("Duplicate Stripe event %s (%s) ignored", event_id, event_type)
        return WebhookResult(event_id, kind, DUPLICATE)

    if kind == EventKind.UNKNOWN:
        logger.warning("Unhandled Stripe event type %s (%s)", event_type, event_id)
        return WebhookResult(event_id, kind, _record_standalone(event_id, event_type, created, UNHANDLED))

    if kind in _ACKNOWLEDGED:
        logger.info("Stripe event %s (%s) acknowledged", event_id, event_type)
        return WebhookResult(event_id, kind, _record_standalone(event_id, event_type, created, IGNORED))

    sub = _resolve_subscription(kind, obj)
    if sub is None:
        logger.warning(
            "Stripe event %s (%s) references no known subscription (object %s)",
            event_id, event_type, obj.get("id"),
        )
        return WebhookResult(event_id, kind, _record_standalone(event_id, event_type, created, NOT_FOUND))

    handler = _HANDLERS[kind]

    def apply(locked: Subscription) -> str:
        if _already_processed(event_id):
            return DUPLICATE
        outcome = handler(locked, obj, created, config)
        _record(event_id, event_type, created, outcome)
        return outcome

    try:
        outcome = run_locked(sub.id, apply)
    except IntegrityError:
        if not _already_processed(event_id):
            raise
        outcome = DUPLICATE
    logger.info("Stripe event %s (%s) -> %s for subscription %s", event_id, event_type, outcome, sub.id)
    return WebhookResult(event_id, kind, outcome, subscription_id=sub.id)


def reconcile_subscription(subscription_id: int, now: Optional[datetime.datetime] = None) -> dict:
    """Pull the remote subscription and apply it like ``customer.subscription.updated``."""
    sub = db.session.get(Subscription, subscription_id)
    if sub is None:
        logger.warning("Reconciliation skipped: subscription %s not found", subscription_id)
        return {"reconciled": False, "reason": "not found"}
    if not sub.is_linked or sub.status == S.EXPIRED:
        return {"reconciled": False, "reason": "not linked or expired"}

    remote = get_gateway().retrieve_subscription(sub.external_subscription_id)
    seen_at = now or utc_now()
    changes = run_locked(
        subscription_id, lambda locked: subscriptions.apply_remote(locked, remote, seen_at)
    )
    if changes:
        logger.info("Reconciled subscription %s: %s", subscription_id, changes)
    return {"reconciled": True, "changes": changes}
