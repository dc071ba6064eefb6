"""Payment transaction log: charges, failures, retries and refunds.

Status changes are monotonic: once money was collected (completed, partially
or fully refunded) a late retry or a replayed webhook cannot move the
transaction back to pending or failed.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func

from config_models import BillingConfig
from extensions import db
from models import PaymentStatus, PaymentTransaction, PaymentType, Subscription
from services.errors import ValidationError
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)


def renewal_transaction_id(subscription_id: int, period_end: datetime.datetime) -> str:
    """Idempotency key of the charge that pays for the period ending at *period_end*."""
    return f"subscription-{subscription_id}-{as_utc(period_end):%Y%m%d}"


def retry_delay(retry_count: int, config: BillingConfig) -> datetime.timedelta:
    """Exponential backoff: ``retry_delay_minutes * 2**retry_count``, capped."""
    minutes = config.retry_delay_minutes * (2 ** retry_count)
    cap = config.max_retry_backoff_hours * 60
    return datetime.timedelta(minutes=min(minutes, cap))


def next_retry_at(
    retry_count: int, config: BillingConfig, now: Optional[datetime.datetime] = None
) -> datetime.datetime:
    return (now or utc_now()) + retry_delay(retry_count, config)


def retries_exhausted(txn: PaymentTransaction) -> bool:
    return txn.retry_count >= txn.max_retries


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_by_transaction_id(transaction_id: str) -> Optional[PaymentTransaction]:
    if not transaction_id:
        return None
    return PaymentTransaction.query.filter_by(transaction_id=transaction_id).first()


def get_by_charge_id(charge_id: str) -> Optional[PaymentTransaction]:
    if not charge_id:
        return None
    return PaymentTransaction.query.filter_by(external_charge_id=charge_id).first()


def get_by_payment_intent(payment_intent_id: str) -> Optional[PaymentTransaction]:
    if not payment_intent_id:
        return None
    return (
        PaymentTransaction.query.filter_by(external_payment_intent_id=payment_intent_id)
        .order_by(PaymentTransaction.id.desc())
        .first()
    )


def get_by_invoice(invoice_id: str) -> Optional[PaymentTransaction]:
    if not invoice_id:
        return None
    return PaymentTransaction.query.filter_by(external_invoice_id=invoice_id).first()


def find_for_charge(charge: dict) -> Optional[PaymentTransaction]:
    """Resolve the transaction a Stripe charge object belongs to.

    Charges we initiate carry our ``transaction_id`` in their metadata, which
    matches even before the charge id is stored locally.
    """
    metadata = charge.get("metadata") or {}
    return (
        get_by_charge_id(charge.get("id"))
        or get_by_transaction_id(metadata.get("transaction_id"))
        or get_by_payment_intent(charge.get("payment_intent"))
        or get_by_invoice(charge.get("invoice"))
    )


# ---------------------------------------------------------------------------
# Recording
# ---------------------------------------------------------------------------

def create_transaction(
    subscription: Subscription,
    transaction_id: str,
    amount: Decimal,
    payment_type: PaymentType,
    *,
    status: PaymentStatus = PaymentStatus.PENDING,
    currency: Optional[str] = None,
    description: str = "",
    billing_period_end: Optional[datetime.datetime] = None,
    max_retries: int = 3,
    **external,
) -> PaymentTransaction:
    txn = PaymentTransaction(
        organization_id=subscription.organization_id,
        subscription_id=subscription.id,
        transaction_id=transaction_id,
        payment_type=payment_type,
        status=status,
        amount=amount,
        total_amount=amount,
        currency=currency or subscription.currency,
        description=description,
        billing_period_end=billing_period_end,
        max_retries=max_retries,
        transaction_date=utc_now(),
        **external,
    )
    db.session.add(txn)
    db.session.flush()
    return txn


def mark_completed(txn: PaymentTransaction, now: Optional[datetime.datetime] = None, **details) -> bool:
    """Mark *txn* completed.  Returns False when it was already paid."""
    if txn.is_paid:
        logger.info("Transaction %s already %s; completion ignored", txn.transaction_id, txn.status.value)
        return False
    txn.status = PaymentStatus.COMPLETED
    txn.processed_at = now or utc_now()
    txn.next_retry_at = None
    txn.error_message = None
    for key, value in details.items():
        if value is not None:
            setattr(txn, key, value)
    logger.info("Payment %s completed (%s %s)", txn.transaction_id, txn.total_amount, txn.currency)
    return True


def mark_failed(
    txn: PaymentTransaction,
    message: str,
    config: BillingConfig,
    now: Optional[datetime.datetime] = None,
    **details,
) -> bool:
    """Mark *txn* failed and schedule the next retry while retries remain.

    Returns False when the transaction was already paid.
    """
    if txn.is_paid:
        logger.info("Transaction %s already %s; failure ignored", txn.transaction_id, txn.status.value)
        return False
    now = now or utc_now()
    txn.status = PaymentStatus.FAILED
    txn.error_message = message
    txn.processed_at = now
    for key, value in details.items():
        if value is not None:
            setattr(txn, key, value)
    if retries_exhausted(txn):
        txn.next_retry_at = None
    else:
        txn.next_retry_at = next_retry_at(txn.retry_count, config, now)
    logger.warning(
        "Payment %s failed (attempt %s, next retry %s): %s",
        txn.transaction_id, txn.retry_count, txn.next_retry_at, message,
    )
    return True


def apply_refund(
    txn: PaymentTransaction,
    amount_refunded: Decimal,
    now: Optional[datetime.datetime] = None,
) -> bool:
    """Record a refund total reported by the processor.

    Fully refunded when *amount_refunded* covers the charged amount, partially
    refunded otherwise.  The recorded refund total never decreases.
    """
    if amount_refunded <= 0:
        return False
    if txn.refund_amount is not None and amount_refunded <= txn.refund_amount:
        return False
    if txn.status == PaymentStatus.REFUNDED:
        return False
    txn.refund_amount = amount_refunded
    txn.refunded_at = now or utc_now()
    if amount_refunded >= txn.total_amount:
        txn.status = PaymentStatus.REFUNDED
    else:
        txn.status = PaymentStatus.PARTIALLY_REFUNDED
    txn.next_retry_at = None
    logger.info(
        "Payment %s %s (%s of %s)",
        txn.transaction_id, txn.status.value, amount_refunded, txn.total_amount,
    )
    return True


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------

def due_for_retry(now: Optional[datetime.datetime] = None) -> List[PaymentTransaction]:
    now = now or utc_now()
    return (
        PaymentTransaction.query.filter(
            PaymentTransaction.status == PaymentStatus.FAILED,
            PaymentTransaction.retry_count < PaymentTransaction.max_retries,
            PaymentTransaction.next_retry_at.isnot(None),
            PaymentTransaction.next_retry_at <= now,
        )
        .order_by(PaymentTransaction.next_retry_at)
        .all()
    )


def list_payment_history(organization_id: int, limit: int = 50) -> List[PaymentTransaction]:
    return (
        PaymentTransaction.query.filter_by(organization_id=organization_id)
        .order_by(PaymentTransaction.transaction_date.desc(), PaymentTransaction.id.desc())
        .limit(limit)
        .all()
    )


def list_for_subscription(subscription_id: int) -> List[PaymentTransaction]:
    return (
        PaymentTransaction.query.filter_by(subscription_id=subscription_id)
        .order_by(PaymentTransaction.transaction_date.desc(), PaymentTransaction.id.desc())
        .all()
    )


def get_revenue_stats(start: datetime.datetime, end: datetime.datetime) -> dict:
    """Revenue over ``[start, end)``: total, completed/failed counts and average amount."""
    if start is None or end is None:
        raise ValidationError("Both start and end dates are required")
    start, end = as_utc(start), as_utc(end)
    if end <= start:
        raise ValidationError("End date must be after start date")

    window = (
        PaymentTransaction.transaction_date >= start,
        PaymentTransaction.transaction_date < end,
    )
    total, completed = (
        db.session.query(
            func.coalesce(func.sum(PaymentTransaction.total_amount), 0),
            func.count(PaymentTransaction.id),
        )
        .filter(PaymentTransaction.status == PaymentStatus.COMPLETED, *window)
        .one()
    )
    failed = (
        db.session.query(func.count(PaymentTransaction.id))
        .filter(PaymentTransaction.status == PaymentStatus.FAILED, *window)
        .scalar()
    )
    total = Decimal(str(total)).quantize(Decimal("0.01"))
    average = (total / completed).quantize(Decimal("0.01")) if completed else Decimal("0.00")
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "total_revenue": str(total),
        "completed_count": completed,
        "failed_count": failed,
        "average_amount": str(average),
    }


def payment_to_dict(txn: PaymentTransaction, detail: bool = False) -> dict:
    data = {
        "id": txn.id,
        "transaction_id": txn.transaction_id,
        "subscription_id": txn.subscription_id,
        "payment_type": txn.payment_type.value,
        "status": txn.status.value,
        "amount": str(txn.amount),
        "total_amount": str(txn.total_amount),
        "refund_amount": str(txn.refund_amount) if txn.refund_amount is not None else None,
        "currency": txn.currency,
        "description": txn.description,
        "transaction_date": _iso(txn.transaction_date),
        "processed_at": _iso(txn.processed_at),
        "card_brand": txn.card_brand,
        "card_last4": txn.card_last4,
        "retry_count": txn.retry_count,
        "next_retry_at": _iso(txn.next_retry_at),
        "error_message": txn.error_message,
    }
    if detail:
        data.update({
            "organization_id": txn.organization_id,
            "tax_amount": str(txn.tax_amount or 0),
            "discount_amount": str(txn.discount_amount or 0),
            "refunded_at": _iso(txn.refunded_at),
            "card_exp_month": txn.card_exp_month,
            "card_exp_year": txn.card_exp_year,
            "max_retries": txn.max_retries,
            "billing_period_end": _iso(txn.billing_period_end),
            "external_charge_id": txn.external_charge_id,
            "external_payment_intent_id": txn.external_payment_intent_id,
            "external_invoice_id": txn.external_invoice_id,
        })
    return data


def _iso(value):
    return as_utc(value).isoformat() if value else None
