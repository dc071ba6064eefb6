"""Stripe payment integration service.

:class:`StripeGateway` is the only place that talks to Stripe.  Every call is
bounded by the HTTP client timeout and Stripe exceptions never leave this
module: they are translated to :class:`GatewayError` (rejected) or
:class:`GatewayTimeout` (transient, safe to retry).
"""

from __future__ import annotations

import datetime
import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

import stripe

from config_models import BillingConfig
from services.errors import GatewayError, GatewayTimeout, SignatureInvalid
from utils import cents_to_decimal, decimal_to_cents, from_timestamp

logger = logging.getLogger(__name__)


@dataclass
class RemoteSubscription:
    """The processor's view of a subscription, as far as we cache it."""
    id: str
    item_id: Optional[str]
    customer_id: Optional[str]
    status: str
    quantity: Optional[int]
    price_id: Optional[str] = None
    current_period_start: Optional[datetime.datetime] = None
    current_period_end: Optional[datetime.datetime] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime.datetime] = None


@dataclass
class ChargeResult:
    payment_intent_id: str
    charge_id: Optional[str]
    status: str
    amount: Decimal
    currency: str
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    card_exp_month: Optional[int] = None
    card_exp_year: Optional[int] = None


@dataclass
class RefundResult:
    refund_id: str
    charge_id: str
    amount: Decimal
    status: str


@dataclass
class PaymentMethod:
    id: str
    brand: Optional[str]
    last4: Optional[str]
    exp_month: Optional[int]
    exp_year: Optional[int]
    is_default: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "brand": self.brand,
            "last4": self.last4,
            "exp_month": self.exp_month,
            "exp_year": self.exp_year,
            "is_default": self.is_default,
        }


@dataclass
class ProrationPreview:
    amount: Decimal
    currency: str
    current_capacity: int
    new_capacity: int
    period_end: Optional[datetime.datetime] = None
    lines: List[dict] = field(default_factory=list)


@dataclass
class RemoteInvoice:
    """A Stripe invoice as shown in billing history."""
    id: Optional[str]
    number: Optional[str]
    status: Optional[str]
    currency: str
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    created: Optional[datetime.datetime] = None
    period_end: Optional[datetime.datetime] = None
    description: Optional[str] = None
    card_brand: Optional[str] = None
    card_last4: Optional[str] = None
    lines: List[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "number": self.number,
            "status": self.status,
            "currency": self.currency,
            "subtotal": str(self.subtotal),
            "tax": str(self.tax),
            "total": str(self.total),
            "created": self.created.isoformat() if self.created else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "description": self.description,
            "payment_method": (
                {"brand": self.card_brand, "last4": self.card_last4}
                if self.card_last4 else None
            ),
            "lines": self.lines,
        }


# ---------------------------------------------------------------------------
# Payload parsing (shared by API responses and webhook objects)
# ---------------------------------------------------------------------------

def _as_dict(obj) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def parse_remote_subscription(data) -> RemoteSubscription:
    """Build a :class:`RemoteSubscription` from a Stripe subscription object.

    Newer API versions report the billing period on the subscription item;
    older ones on the subscription itself.  Both are accepted.
    """
    data = _as_dict(data)
    items = (data.get("items") or {}).get("data") or []
    item = items[0] if items else {}
    price = item.get("price") or {}
    period_start = item.get("current_period_start") or data.get("current_period_start")
    period_end = item.get("current_period_end") or data.get("current_period_end")
    customer = data.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")
    return RemoteSubscription(
        id=data.get("id"),
        item_id=item.get("id"),
        customer_id=customer,
        status=data.get("status", ""),
        quantity=item.get("quantity", data.get("quantity")),
        price_id=price.get("id") if isinstance(price, dict) else price,
        current_period_start=from_timestamp(period_start),
        current_period_end=from_timestamp(period_end),
        cancel_at_period_end=bool(data.get("cancel_at_period_end")),
        trial_end=from_timestamp(data.get("trial_end")),
    )


def _card_details(charge: dict) -> dict:
    card = ((charge or {}).get("payment_method_details") or {}).get("card") or {}
    return {
        "card_brand": card.get("brand"),
        "card_last4": card.get("last4"),
        "card_exp_month": card.get("exp_month"),
        "card_exp_year": card.get("exp_year"),
    }


def parse_invoice(data, currency: str = "USD") -> RemoteInvoice:
    """Build a :class:`RemoteInvoice`; amounts arrive in cents.

    Tax is read from ``tax`` on older API versions and summed from
    ``total_taxes`` on newer ones.
    """
    data = _as_dict(data)
    tax = data.get("tax")
    if tax is None:
        tax = sum(t.get("amount", 0) for t in data.get("total_taxes") or [])
    charge = data.get("charge")
    card = _card_details(charge if isinstance(charge, dict) else {})
    lines = []
    for line in (data.get("lines") or {}).get("data") or []:
        lines.append({
            "description": line.get("description"),
            "amount": str(cents_to_decimal(line.get("amount", 0))),
            "quantity": line.get("quantity"),
        })
    return RemoteInvoice(
        id=data.get("id"),
        number=data.get("number"),
        status=data.get("status"),
        currency=(data.get("currency") or currency).upper(),
        subtotal=cents_to_decimal(data.get("subtotal", 0)),
        tax=cents_to_decimal(tax),
        total=cents_to_decimal(data.get("total", 0)),
        created=from_timestamp(data.get("created")),
        period_end=from_timestamp(data.get("period_end")),
        description=data.get("description"),
        card_brand=card["card_brand"],
        card_last4=card["card_last4"],
        lines=lines,
    )


def verify_webhook(payload: bytes, sig_header: Optional[str], secret: str, tolerance: int) -> dict:
    """Check the ``Stripe-Signature`` header and return the decoded event.

    Raises :class:`SignatureInvalid` on a missing secret, a missing or
    malformed header, a signature mismatch or a stale timestamp.
    """
    if not secret:
        logger.error("Stripe webhook secret is not configured; rejecting event")
        raise SignatureInvalid("Webhook secret not configured")
    if not sig_header:
        raise SignatureInvalid("Missing Stripe-Signature header")
    try:
        text = payload.decode("utf-8")
        stripe.WebhookSignature.verify_header(text, sig_header, secret, tolerance)
        event = json.loads(text)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Stripe webhook signature verification failed: %s", exc)
        raise SignatureInvalid("Invalid webhook signature") from exc
    except (UnicodeDecodeError, ValueError) as exc:
        logger.warning("Stripe webhook payload is not valid JSON: %s", exc)
        raise SignatureInvalid("Malformed webhook payload") from exc
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise SignatureInvalid("Malformed webhook payload")
    return event


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------

@contextmanager
def _translate_errors(operation: str):
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
        logger.error("Stripe %s timed out or was throttled: %s", operation, exc)
        raise GatewayTimeout(f"Payment processor unavailable during {operation}") from exc
    except stripe.CardError as exc:
        logger.warning("Stripe %s declined (%s): %s", operation, exc.code, exc.user_message)
        intent = getattr(exc.error, "payment_intent", None) if exc.error else None
        raise GatewayError(
            exc.user_message or str(exc),
            code=exc.code,
            payment_intent_id=getattr(intent, "id", None),
        ) from exc
    except stripe.StripeError as exc:
        logger.error("Stripe %s failed: %s", operation, exc)
        raise GatewayError(exc.user_message or str(exc), code=exc.code) from exc


class StripeGateway:
    """Billing gateway backed by the Stripe API."""

    def __init__(self, config: BillingConfig):
        self.config = config
        stripe.api_key = config.stripe_secret_key
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(
            timeout=config.gateway_timeout_seconds
        )

    def _require_key(self) -> None:
        if not stripe.api_key:
            raise GatewayError("Stripe is not configured", code="not_configured")

    def price_id_for(self, billing_cycle: str) -> str:
        if billing_cycle == "annual":
            return self.config.annual_price_id
        return self.config.monthly_price_id

    # -- customers -----------------------------------------------------------

    def create_customer(self, organization) -> str:
        """Create a Stripe customer for an organization. Returns customer ID."""
        self._require_key()
        with _translate_errors("customer creation"):
            customer = stripe.Customer.create(
                name=organization.name,
                email=organization.billing_email,
                metadata={"organization_id": str(organization.id)},
                idempotency_key=f"customer-org-{organization.id}",
            )
        logger.info("Created Stripe customer %s for organization %s", customer.id, organization.id)
        return customer.id

    # -- subscriptions -------------------------------------------------------

    def create_subscription(
        self,
        customer_id: str,
        billing_cycle: str,
        quantity: int,
        trial_days: int = 0,
        metadata: Optional[dict] = None,
    ) -> RemoteSubscription:
        self._require_key()
        params = {
            "customer": customer_id,
            "items": [{"price": self.price_id_for(billing_cycle), "quantity": quantity}],
            "payment_behavior": "default_incomplete",
            "metadata": metadata or {},
        }
        if trial_days > 0:
            params["trial_period_days"] = trial_days
        with _translate_errors("subscription creation"):
            remote = stripe.Subscription.create(**params)
        logger.info("Created Stripe subscription %s for customer %s", remote.id, customer_id)
        return parse_remote_subscription(remote)

    def retrieve_subscription(self, external_subscription_id: str) -> RemoteSubscription:
        self._require_key()
        with _translate_errors("subscription retrieval"):
            remote = stripe.Subscription.retrieve(external_subscription_id)
        return parse_remote_subscription(remote)

    def update_quantity(
        self, external_subscription_id: str, item_id: str, quantity: int
    ) -> RemoteSubscription:
        """Change the seat count; Stripe creates the proration items."""
        self._require_key()
        with _translate_errors("quantity update"):
            remote = stripe.Subscription.modify(
                external_subscription_id,
                items=[{"id": item_id, "quantity": quantity}],
                proration_behavior="create_prorations",
            )
        logger.info("Updated Stripe subscription %s quantity to %s", external_subscription_id, quantity)
        return parse_remote_subscription(remote)

    def cancel_subscription(self, external_subscription_id: str, immediate: bool = False) -> RemoteSubscription:
        """Cancel a Stripe subscription, at period end unless *immediate*."""
        self._require_key()
        with _translate_errors("subscription cancellation"):
            if immediate:
                remote = stripe.Subscription.cancel(external_subscription_id)
            else:
                remote = stripe.Subscription.modify(
                    external_subscription_id, cancel_at_period_end=True
                )
        logger.info(
            "Cancelled Stripe subscription %s (%s)",
            external_subscription_id, "immediately" if immediate else "at period end",
        )
        return parse_remote_subscription(remote)

    def reactivate_subscription(self, external_subscription_id: str) -> RemoteSubscription:
        self._require_key()
        with _translate_errors("subscription reactivation"):
            remote = stripe.Subscription.modify(
                external_subscription_id, cancel_at_period_end=False
            )
        logger.info("Reactivated Stripe subscription %s", external_subscription_id)
        return parse_remote_subscription(remote)

    def preview_proration(
        self,
        customer_id: str,
        external_subscription_id: str,
        item_id: str,
        current_capacity: int,
        new_capacity: int,
    ) -> ProrationPreview:
        """Preview the upcoming invoice with the new quantity; sums the proration lines."""
        self._require_key()
        with _translate_errors("proration preview"):
            invoice = stripe.Invoice.create_preview(
                customer=customer_id,
                subscription=external_subscription_id,
                subscription_details={
                    "items": [{"id": item_id, "quantity": new_capacity}],
                    "proration_behavior": "create_prorations",
                },
            )
        data = _as_dict(invoice)
        total = 0
        lines = []
        for line in (data.get("lines") or {}).get("data") or []:
            parent = (line.get("parent") or {}).get("subscription_item_details") or {}
            if not (line.get("proration") or parent.get("proration")):
                continue
            total += line.get("amount", 0)
            lines.append({
                "description": line.get("description"),
                "amount": str(cents_to_decimal(line.get("amount", 0))),
            })
        return ProrationPreview(
            amount=cents_to_decimal(total),
            currency=(data.get("currency") or self.config.currency).upper(),
            current_capacity=current_capacity,
            new_capacity=new_capacity,
            period_end=from_timestamp(data.get("period_end")),
            lines=lines,
        )

    # -- invoices ------------------------------------------------------------

    def list_invoices(
        self,
        customer_id: str,
        status: Optional[str] = None,
        created_gte: Optional[datetime.datetime] = None,
        created_lte: Optional[datetime.datetime] = None,
        limit: int = 20,
    ) -> List[RemoteInvoice]:
        self._require_key()
        params = {"customer": customer_id, "limit": limit}
        if status:
            params["status"] = status
        created = {}
        if created_gte is not None:
            created["gte"] = int(created_gte.timestamp())
        if created_lte is not None:
            created["lte"] = int(created_lte.timestamp())
        if created:
            params["created"] = created
        with _translate_errors("invoice listing"):
            invoices = stripe.Invoice.list(**params)
        return [
            parse_invoice(inv, self.config.currency)
            for inv in _as_dict(invoices).get("data") or []
        ]

    def upcoming_invoice(self, customer_id: str, external_subscription_id: str) -> RemoteInvoice:
        """Preview the next invoice of a subscription as it stands."""
        self._require_key()
        with _translate_errors("upcoming invoice"):
            invoice = stripe.Invoice.create_preview(
                customer=customer_id, subscription=external_subscription_id
            )
        return parse_invoice(invoice, self.config.currency)

    # -- money movement ------------------------------------------------------

    def charge(
        self,
        customer_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        description: str = "",
        metadata: Optional[dict] = None,
    ) -> ChargeResult:
        """Charge the customer's default card off-session.

        The *idempotency_key* makes a repeated call (job retry after a
        timeout) return the original outcome instead of charging twice.
        """
        self._require_key()
        with _translate_errors("charge"):
            customer = stripe.Customer.retrieve(customer_id)
            default_pm = (_as_dict(customer).get("invoice_settings") or {}).get(
                "default_payment_method"
            )
            params = {
                "amount": decimal_to_cents(amount),
                "currency": currency.lower(),
                "customer": customer_id,
                "off_session": True,
                "confirm": True,
                "description": description,
                "metadata": metadata or {},
                "expand": ["latest_charge"],
                "idempotency_key": idempotency_key,
            }
            if default_pm:
                params["payment_method"] = default_pm
            intent = stripe.PaymentIntent.create(**params)
        data = _as_dict(intent)
        charge = data.get("latest_charge")
        if isinstance(charge, str):
            charge = {"id": charge}
        charge = charge or {}
        if data.get("status") != "succeeded":
            logger.warning("PaymentIntent %s ended in status %s", data.get("id"), data.get("status"))
            raise GatewayError(
                f"Payment not completed (status {data.get('status')})",
                code=data.get("status"),
            )
        return ChargeResult(
            payment_intent_id=data.get("id"),
            charge_id=charge.get("id"),
            status=data.get("status"),
            amount=cents_to_decimal(data.get("amount")),
            currency=(data.get("currency") or currency).upper(),
            **_card_details(charge),
        )

    def refund(
        self,
        charge_id: str,
        amount: Optional[Decimal],
        idempotency_key: str,
        reason: str = "",
    ) -> RefundResult:
        self._require_key()
        params = {
            "charge": charge_id,
            "metadata": {"reason": reason} if reason else {},
            "idempotency_key": idempotency_key,
        }
        if amount is not None:
            params["amount"] = decimal_to_cents(amount)
        with _translate_errors("refund"):
            refund = stripe.Refund.create(**params)
        logger.info("Requested refund %s for charge %s", refund.id, charge_id)
        return RefundResult(
            refund_id=refund.id,
            charge_id=charge_id,
            amount=cents_to_decimal(refund.amount),
            status=refund.status,
        )

    # -- payment methods -----------------------------------------------------

    def list_payment_methods(self, customer_id: str) -> List[PaymentMethod]:
        self._require_key()
        with _translate_errors("payment method listing"):
            customer = stripe.Customer.retrieve(customer_id)
            methods = stripe.PaymentMethod.list(customer=customer_id, type="card")
        default_pm = (_as_dict(customer).get("invoice_settings") or {}).get(
            "default_payment_method"
        )
        result = []
        for pm in _as_dict(methods).get("data") or []:
            card = pm.get("card") or {}
            result.append(PaymentMethod(
                id=pm.get("id"),
                brand=card.get("brand"),
                last4=card.get("last4"),
                exp_month=card.get("exp_month"),
                exp_year=card.get("exp_year"),
                is_default=pm.get("id") == default_pm,
            ))
        return result

    def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:
        """Attach *payment_method_id* (if needed) and make it the invoice default."""
        self._require_key()
        with _translate_errors("payment method update"):
            pm = stripe.PaymentMethod.retrieve(payment_method_id)
            if _as_dict(pm).get("customer") != customer_id:
                stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
            stripe.Customer.modify(
                customer_id,
                invoice_settings={"default_payment_method": payment_method_id},
            )
        logger.info("Set default payment method %s for customer %s", payment_method_id, customer_id)

    def delete_payment_method(self, payment_method_id: str) -> None:
        self._require_key()
        with _translate_errors("payment method removal"):
            stripe.PaymentMethod.detach(payment_method_id)
        logger.info("Detached payment method %s", payment_method_id)
