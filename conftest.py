"""Shared fixtures: application, clients, a seeded organization and a fake Stripe gateway."""

import datetime
import hashlib
import hmac
import itertools
import json
import os
import time
from decimal import Decimal

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["EMAIL_ENABLED"] = "false"

from app import create_app
from extensions import db
from models import Organization, OrganizationMember, User
from services import entitlements, subscriptions
from services.locking import run_locked
from services.scheduler import JobQueue
from services.stripe_billing import (
    ChargeResult,
    PaymentMethod,
    ProrationPreview,
    RefundResult,
    RemoteInvoice,
    RemoteSubscription,
)
from utils import advance_period, utc_now

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


class FakeGateway:
    """In-memory stand-in for :class:`StripeGateway` with the same call signatures.

    ``fail(operation, exc)`` makes every later call of *operation* raise *exc*
    until ``failures`` is cleared.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.remote = {}
        self.charges = {}
        self.payment_methods = {}
        self.default_payment_method = {}
        self.invoices = {}
        self.charge_metadata = {}
        self._seq = itertools.count(1)

    def fail(self, operation, exc):
        self.failures[operation] = exc

    def called(self, operation):
        return [call for call in self.calls if call[0] == operation]

    def _call(self, operation, *args):
        self.calls.append((operation,) + args)
        exc = self.failures.get(operation)
        if exc is not None:
            raise exc

    def create_customer(self, organization):
        self._call("create_customer", organization.id)
        return f"cus_{organization.id}"

    def create_subscription(self, customer_id, billing_cycle, quantity, trial_days=0, metadata=None):
        self._call("create_subscription", customer_id, billing_cycle, quantity, trial_days)
        n = next(self._seq)
        now = utc_now()
        if trial_days > 0:
            end = now + datetime.timedelta(days=trial_days)
        else:
            end = advance_period(now, billing_cycle)
        remote = RemoteSubscription(
            id=f"sub_{n}",
            item_id=f"si_{n}",
            customer_id=customer_id,
            status="trialing" if trial_days > 0 else "incomplete",
            quantity=quantity,
            price_id=f"price_{billing_cycle}",
            current_period_start=now,
            current_period_end=end,
            trial_end=end if trial_days > 0 else None,
        )
        self.remote[remote.id] = remote
        return remote

    def retrieve_subscription(self, external_subscription_id):
        self._call("retrieve_subscription", external_subscription_id)
        return self.remote[external_subscription_id]

    def update_quantity(self, external_subscription_id, item_id, quantity):
        self._call("update_quantity", external_subscription_id, item_id, quantity)
        remote = self.remote[external_subscription_id]
        remote.quantity = quantity
        return remote

    def cancel_subscription(self, external_subscription_id, immediate=False):
        self._call("cancel_subscription", external_subscription_id, immediate)
        remote = self.remote[external_subscription_id]
        if immediate:
            remote.status = "canceled"
        else:
            remote.cancel_at_period_end = True
        return remote

    def reactivate_subscription(self, external_subscription_id):
        self._call("reactivate_subscription", external_subscription_id)
        remote = self.remote[external_subscription_id]
        remote.cancel_at_period_end = False
        return remote

    def preview_proration(self, customer_id, external_subscription_id, item_id, current_capacity, new_capacity):
        self._call("preview_proration", external_subscription_id, current_capacity, new_capacity)
        amount = Decimal("10.00") * (new_capacity - current_capacity)
        return ProrationPreview(
            amount=amount,
            currency="USD",
            current_capacity=current_capacity,
            new_capacity=new_capacity,
            lines=[{"description": "Remaining time on seats", "amount": str(amount)}],
        )

    def charge(self, customer_id, amount, currency, idempotency_key, description="", metadata=None):
        self._call("charge", customer_id, amount, idempotency_key)
        self.charge_metadata[idempotency_key] = dict(metadata or {})
        if idempotency_key in self.charges:
            return self.charges[idempotency_key]
        n = next(self._seq)
        result = ChargeResult(
            payment_intent_id=f"pi_{n}",
            charge_id=f"ch_{n}",
            status="succeeded",
            amount=Decimal(amount),
            currency=currency.upper(),
            card_brand="visa",
            card_last4="4242",
            card_exp_month=12,
            card_exp_year=2030,
        )
        self.charges[idempotency_key] = result
        return result

    def refund(self, charge_id, amount, idempotency_key, reason=""):
        self._call("refund", charge_id, amount, idempotency_key)
        if amount is None:
            amount = next(
                (c.amount for c in self.charges.values() if c.charge_id == charge_id),
                Decimal("0.00"),
            )
        return RefundResult(
            refund_id=f"re_{next(self._seq)}",
            charge_id=charge_id,
            amount=amount,
            status="succeeded",
        )

    def list_payment_methods(self, customer_id):
        self._call("list_payment_methods", customer_id)
        default = self.default_payment_method.get(customer_id)
        methods = self.payment_methods.get(customer_id, [])
        for pm in methods:
            pm.is_default = pm.id == default
        return list(methods)

    def set_default_payment_method(self, customer_id, payment_method_id):
        self._call("set_default_payment_method", customer_id, payment_method_id)
        self.default_payment_method[customer_id] = payment_method_id

    def delete_payment_method(self, payment_method_id):
        self._call("delete_payment_method", payment_method_id)
        for customer_id, methods in self.payment_methods.items():
            self.payment_methods[customer_id] = [pm for pm in methods if pm.id != payment_method_id]

    def list_invoices(self, customer_id, status=None, created_gte=None, created_lte=None, limit=20):
        self._call("list_invoices", customer_id, status)
        result = []
        for invoice in self.invoices.get(customer_id, []):
            if status and invoice.status != status:
                continue
            if created_gte and invoice.created < created_gte:
                continue
            if created_lte and invoice.created > created_lte:
                continue
            result.append(invoice)
        return result[:limit]

    def upcoming_invoice(self, customer_id, external_subscription_id):
        self._call("upcoming_invoice", customer_id, external_subscription_id)
        remote = self.remote[external_subscription_id]
        total = Decimal("10.00") * remote.quantity
        return RemoteInvoice(
            id=None,
            number=None,
            status="draft",
            currency="USD",
            subtotal=total,
            tax=Decimal("0.00"),
            total=total,
            period_end=remote.current_period_end,
            lines=[{"description": f"{remote.quantity} x Seat", "amount": str(total), "quantity": remote.quantity}],
        )

    def add_invoice(self, customer_id, invoice_id, total, status="paid", created=None):
        self.invoices.setdefault(customer_id, []).append(RemoteInvoice(
            id=invoice_id,
            number=invoice_id.upper(),
            status=status,
            currency="USD",
            subtotal=Decimal(total),
            tax=Decimal("0.00"),
            total=Decimal(total),
            created=created or utc_now(),
            card_brand="visa",
            card_last4="4242",
        ))

    def add_card(self, customer_id, pm_id, last4="4242"):
        self.payment_methods.setdefault(customer_id, []).append(
            PaymentMethod(id=pm_id, brand="visa", last4=last4, exp_month=12, exp_year=2030)
        )


class RecordingQueue(JobQueue):
    """Job queue that keeps enqueued jobs for assertions."""

    def __init__(self):
        self.jobs = []

    def enqueue(self, task_name, *args):
        self.jobs.append((task_name, args))

    def names(self):
        return [name for name, _ in self.jobs]


# ---------------------------------------------------------------------------
# Application fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def app_factory(monkeypatch):
    """Build a test application, optionally on a different database."""

    def _create(database_uri=None):
        if database_uri:
            monkeypatch.setenv("DATABASE_URI", database_uri)
        application = create_app()
        application.config["TESTING"] = True
        application.config["WTF_CSRF_ENABLED"] = False
        application.config["RATELIMIT_ENABLED"] = False
        application.config["SESSION_COOKIE_SECURE"] = False
        application.extensions["billing_gateway"] = FakeGateway()
        return application

    return _create


@pytest.fixture
def app(app_factory):
    """Create application for testing."""
    yield app_factory()


@pytest.fixture
def gateway(app):
    return app.extensions["billing_gateway"]


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def login(client):
    """Return a function that logs *client* in as the given user id."""

    def _login(user_id):
        with client.session_transaction() as sess:
            sess["user_id"] = user_id
        return client

    return _login


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def org_data(app):
    """Create an organization with an owner and members. Returns dict of IDs to avoid detached instance errors."""
    with app.app_context():
        org = Organization(name="Acme Corp", slug="acme", billing_email="billing@acme.test")
        other = Organization(name="Globex", slug="globex", billing_email="billing@globex.test")
        owner = User(username="owner", email="owner@acme.test", full_name="Acme Owner")
        members = [
            User(username=f"member{i}", email=f"member{i}@acme.test") for i in range(1, 7)
        ]
        outsider = User(username="outsider", email="admin@globex.test")
        root = User(username="root", email="root@example.test", is_superadmin=True)
        db.session.add_all([org, other, owner, outsider, root, *members])
        db.session.flush()

        db.session.add(OrganizationMember(organization_id=org.id, user_id=owner.id, role="owner"))
        for member in members:
            db.session.add(
                OrganizationMember(organization_id=org.id, user_id=member.id, role="member")
            )
        db.session.add(
            OrganizationMember(organization_id=other.id, user_id=outsider.id, role="admin")
        )
        db.session.commit()

        return {
            "org_id": org.id,
            "other_org_id": other.id,
            "owner_id": owner.id,
            "member_ids": [m.id for m in members],
            "outsider_id": outsider.id,
            "superadmin_id": root.id,
        }


@pytest.fixture
def make_subscription(app):
    """Factory: open a subscription through the service and activate it.

    With ``activate=False`` (and no trial) it stays pending payment.
    """

    def _make(org_id, user_id, capacity=5, activate=True, trial_days=0, billing_cycle="monthly"):
        with app.app_context():
            sub = entitlements.create_subscription(
                org_id,
                user_id,
                trial_days=trial_days,
                capacity=capacity,
                billing_cycle=billing_cycle,
            )
            if activate and trial_days == 0:
                run_locked(sub.id, subscriptions.activate)
                app.extensions["billing_gateway"].remote[sub.external_subscription_id].status = "active"
            return sub.id

    return _make


# ---------------------------------------------------------------------------
# Webhook helpers
# ---------------------------------------------------------------------------

def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def post_event(client):
    """Return a function that signs and posts a Stripe event to the webhook endpoint."""
    counter = itertools.count(1)

    def _post(event_type, obj, created=None, event_id=None, secret=WEBHOOK_SECRET):
        event = {
            "id": event_id or f"evt_{next(counter)}",
            "object": "event",
            "type": event_type,
            "created": created or int(time.time()),
            "data": {"object": obj},
        }
        payload = json.dumps(event)
        return client.post(
            "/webhooks/stripe",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": sign_payload(payload, secret)},
        )

    return _post
