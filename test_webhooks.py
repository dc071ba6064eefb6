"""Tests for Stripe webhook reconciliation and the Stripe gateway adapter."""

import datetime
import json
import time
from dataclasses import replace
from decimal import Decimal

import pytest
import stripe

from conftest import WEBHOOK_SECRET, sign_payload
from extensions import db
from models import (
    License,
    PaymentStatus,
    PaymentTransaction,
    Subscription,
    SubscriptionStatus,
    WebhookEvent,
)
from services import entitlements, payments, scheduler, subscriptions
from services.errors import GatewayError, GatewayTimeout, SignatureInvalid
from services.locking import run_locked
from services.stripe_billing import StripeGateway, parse_remote_subscription, verify_webhook
from services.webhooks import EventKind, reconcile_subscription
from utils import as_utc, utc_now


def _ts(value: datetime.datetime) -> int:
    return int(value.timestamp())


def _linked(app, sub_id):
    with app.app_context():
        sub = db.session.get(Subscription, sub_id)
        return {
            "ext_id": sub.external_subscription_id,
            "item_id": sub.external_subscription_item_id,
            "customer": sub.external_customer_id,
            "start": as_utc(sub.current_period_start),
            "end": sub.period_end,
            "capacity": sub.capacity,
        }


def _subscription_object(linked, status="active", quantity=None, cancel_at_period_end=False, end=None):
    return {
        "id": linked["ext_id"],
        "object": "subscription",
        "customer": linked["customer"],
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {
            "data": [{
                "id": linked["item_id"],
                "quantity": linked["capacity"] if quantity is None else quantity,
                "price": {"id": "price_monthly"},
                "current_period_start": _ts(linked["start"]),
                "current_period_end": _ts(end or linked["end"]),
            }]
        },
    }


def _invoice(linked, invoice_id, amount=10000, start=None, end=None, reason="subscription_cycle"):
    lines = []
    if end is not None:
        lines.append({"period": {"start": _ts(start), "end": _ts(end)}, "amount": amount})
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": linked["customer"],
        "subscription": linked["ext_id"],
        "amount_paid": amount,
        "amount_due": amount,
        "currency": "usd",
        "billing_reason": reason,
        "attempt_count": 1,
        "lines": {"data": lines},
    }


def _status(app, sub_id):
    with app.app_context():
        return db.session.get(Subscription, sub_id).status


# ============================================================================
# Endpoint
# ============================================================================


class TestWebhookEndpoint:
    def test_bad_signature_rejected(self, app, client, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        linked = _linked(app, sub_id)
        resp = post_event(
            "customer.subscription.deleted", _subscription_object(linked, status="canceled"),
            secret="whsec_wrong",
        )
        assert resp.status_code == 400
        assert resp.get_json()["error"] == "signature_invalid"
        assert _status(app, sub_id) == SubscriptionStatus.ACTIVE
        with app.app_context():
            assert WebhookEvent.query.count() == 0

    def test_missing_signature_header(self, client):
        resp = client.post("/webhooks/stripe", data="{}", content_type="application/json")
        assert resp.status_code == 400

    def test_stale_signature_timestamp(self, client):
        payload = json.dumps({"id": "evt_old", "type": "charge.succeeded", "data": {"object": {}}})
        header = sign_payload(payload, WEBHOOK_SECRET, timestamp=int(time.time()) - 3600)
        resp = client.post(
            "/webhooks/stripe", data=payload, content_type="application/json",
            headers={"Stripe-Signature": header},
        )
        assert resp.status_code == 400

    def test_unknown_event_acknowledged(self, app, post_event):
        resp = post_event("customer.tax_id.created", {"id": "txi_1"}, event_id="evt_unknown")
        assert resp.status_code == 200
        body = resp.get_json()
        assert body["received"] is True
        assert body["type"] == "unknown"
        assert body["outcome"] == "unhandled"
        with app.app_context():
            assert WebhookEvent.query.filter_by(event_id="evt_unknown").one().event_type == (
                "customer.tax_id.created"
            )

    def test_event_for_unknown_subscription(self, post_event):
        resp = post_event("charge.succeeded", {"id": "ch_x", "customer": "cus_nobody", "amount": 500})
        assert resp.status_code == 200
        assert resp.get_json()["outcome"] == "not_found"

    def test_event_kind_resolution(self):
        assert EventKind.resolve("invoice.payment_succeeded") == EventKind.INVOICE_PAYMENT_SUCCEEDED
        assert EventKind.resolve("something.new") == EventKind.UNKNOWN
        assert EventKind.resolve(None) == EventKind.UNKNOWN


# ============================================================================
# Reconciliation
# ============================================================================


class TestPaymentEvents:
    def test_scenario_b_failed_then_paid(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        linked = _linked(app, sub_id)
        created = int(time.time())

        charge = {
            "id": "ch_fail",
            "object": "charge",
            "amount": 10000,
            "currency": "usd",
            "customer": linked["customer"],
            "invoice": "in_1",
            "payment_intent": "pi_fail",
            "failure_message": "Your card was declined.",
        }
        resp = post_event("charge.failed", charge, created=created)
        assert resp.get_json()["outcome"] == "applied"
        assert _status(app, sub_id) == SubscriptionStatus.PAST_DUE

        new_end = linked["end"] + datetime.timedelta(days=30)
        invoice = _invoice(linked, "in_1", start=linked["end"], end=new_end)
        resp = post_event("invoice.payment_succeeded", invoice, created=created + 10)
        assert resp.get_json()["outcome"] == "applied"

        with app.app_context():
            sub = db.session.get(Subscription, sub_id)
            assert sub.status == SubscriptionStatus.ACTIVE
            assert sub.period_end == datetime.datetime.fromtimestamp(_ts(new_end), tz=datetime.timezone.utc)
            assert sub.period_end > linked["end"]
            txn = PaymentTransaction.query.one()
            assert txn.status == PaymentStatus.COMPLETED
            assert txn.external_invoice_id == "in_1"
            assert txn.external_charge_id == "ch_fail"
            assert txn.total_amount == Decimal("100.00")

    def test_duplicate_delivery_is_ignored(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        linked = _linked(app, sub_id)
        new_end = linked["end"] + datetime.timedelta(days=30)
        invoice = _invoice(linked, "in_2", start=linked["end"], end=new_end)

        first = post_event("invoice.payment_succeeded", invoice, event_id="evt_dup")
        second = post_event("invoice.payment_succeeded", invoice, event_id="evt_dup")

        assert first.get_json()["outcome"] == "applied"
        assert second.status_code == 200
        assert second.get_json()["outcome"] == "duplicate"
        with app.app_context():
            assert PaymentTransaction.query.count() == 1
            assert WebhookEvent.query.filter_by(event_id="evt_dup").count() == 1
            sub = db.session.get(Subscription, sub_id)
            assert sub.period_end == datetime.datetime.fromtimestamp(_ts(new_end), tz=datetime.timezone.utc)

    def test_invoice_payment_failed_goes_past_due_without_local_retries(
        self, app, org_data, make_subscription, post_event, queue
    ):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        linked = _linked(app, sub_id)
        resp = post_event("invoice.payment_failed", _invoice(linked, "in_3"))
        assert resp.get_json()["outcome"] == "applied"
        with app.app_context():
            assert db.session.get(Subscription, sub_id).status == SubscriptionStatus.PAST_DUE
            txn = PaymentTransaction.query.one()
            assert txn.status == PaymentStatus.FAILED
            assert txn.next_retry_at is None
            assert scheduler.scan_payment_retries(queue) == 0

    def test_zero_amount_invoice_ignored(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"], trial_days=14)
        linked = _linked(app, sub_id)
        resp = post_event("invoice.payment_succeeded", _invoice(linked, "in_trial", amount=0))
        assert resp.get_json()["outcome"] == "ignored"
        assert _status(app, sub_id) == SubscriptionStatus.TRIAL
        with app.app_context():
            assert PaymentTransaction.query.count() == 0

    def test_first_invoice_activates_pending_subscription(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"], activate=False)
        linked = _linked(app, sub_id)
        invoice = _invoice(
            linked, "in_first", start=linked["start"], end=linked["end"], reason="subscription_create"
        )
        resp = post_event("invoice.payment_succeeded", invoice)
        assert resp.get_json()["outcome"] == "applied"
        assert _status(app, sub_id) == SubscriptionStatus.ACTIVE

    def test_refunds(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        with app.app_context():
            entitlements.renew_subscription(sub_id)
            txn = PaymentTransaction.query.one()
            txn_id, charge_id = txn.id, txn.external_charge_id

        charge = {"id": charge_id, "object": "charge", "amount": 10000, "amount_refunded": 4000, "refunded": False}
        assert post_event("charge.refunded", charge).get_json()["outcome"] == "applied"
        with app.app_context():
            txn = db.session.get(PaymentTransaction, txn_id)
            assert txn.status == PaymentStatus.PARTIALLY_REFUNDED
            assert txn.refund_amount == Decimal("40.00")

        charge.update(amount_refunded=10000, refunded=True)
        assert post_event("charge.refunded", charge).get_json()["outcome"] == "applied"
        with app.app_context():
            txn = db.session.get(PaymentTransaction, txn_id)
            assert txn.status == PaymentStatus.REFUNDED
            assert txn.refund_amount == Decimal("100.00")

        # A late partial-refund event cannot move the transaction back.
        charge.update(amount_refunded=4000, refunded=False)
        assert post_event("charge.refunded", charge).get_json()["outcome"] == "ignored"
        with app.app_context():
            assert db.session.get(PaymentTransaction, txn_id).status == PaymentStatus.REFUNDED

    def test_charge_succeeded_after_completion_is_ignored(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        with app.app_context():
            entitlements.renew_subscription(sub_id)
            txn = PaymentTransaction.query.one()
            charge = {"id": txn.external_charge_id, "object": "charge", "amount": 10000, "currency": "usd"}
        assert post_event("charge.succeeded", charge).get_json()["outcome"] == "ignored"
        with app.app_context():
            assert PaymentTransaction.query.count() == 1

    def test_charge_event_during_renewal_completes_the_pending_payment(
        self, app, org_data, make_subscription, gateway, post_event, monkeypatch
    ):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        original_charge = gateway.charge
        deliveries = []

        def charge_then_deliver(customer_id, amount, currency, idempotency_key, description="", metadata=None):
            result = original_charge(
                customer_id, amount, currency, idempotency_key, description=description, metadata=metadata
            )
            deliveries.append(post_event("charge.succeeded", {
                "id": result.charge_id,
                "object": "charge",
                "payment_intent": result.payment_intent_id,
                "amount": 10000,
                "currency": "usd",
                "customer": customer_id,
                "metadata": metadata,
            }))
            return result

        monkeypatch.setattr(gateway, "charge", charge_then_deliver)
        with app.app_context():
            old_end = db.session.get(Subscription, sub_id).period_end
            result = entitlements.renew_subscription(sub_id)
            assert result["renewed"] is True

            txn = PaymentTransaction.query.one()
            assert txn.status == PaymentStatus.COMPLETED
            assert txn.external_charge_id == gateway.charges[txn.transaction_id].charge_id
            assert db.session.get(Subscription, sub_id).period_end > old_end
        assert deliveries[0].get_json()["outcome"] == "applied"

    def test_late_events_cannot_reopen_partially_refunded_payment(
        self, app, org_data, make_subscription, post_event
    ):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        with app.app_context():
            entitlements.renew_subscription(sub_id)
            txn = PaymentTransaction.query.one()
            txn_id, charge_id, intent_id = txn.id, txn.external_charge_id, txn.external_payment_intent_id
        customer = _linked(app, sub_id)["customer"]

        refund = {"id": charge_id, "object": "charge", "amount": 10000, "amount_refunded": 4000, "refunded": False}
        assert post_event("charge.refunded", refund).get_json()["outcome"] == "applied"

        earlier = {
            "id": "ch_earlier_attempt",
            "object": "charge",
            "payment_intent": intent_id,
            "customer": customer,
            "amount": 10000,
            "currency": "usd",
            "failure_message": "Your card was declined.",
        }
        assert post_event("charge.failed", earlier).get_json()["outcome"] == "ignored"
        earlier.pop("failure_message")
        assert post_event("charge.succeeded", earlier).get_json()["outcome"] == "ignored"

        with app.app_context():
            txn = db.session.get(PaymentTransaction, txn_id)
            assert txn.status == PaymentStatus.PARTIALLY_REFUNDED
            assert txn.external_charge_id == charge_id
            assert txn.refund_amount == Decimal("40.00")
            assert txn.next_retry_at is None
            assert payments.due_for_retry(utc_now() + datetime.timedelta(days=365)) == []
            assert PaymentTransaction.query.count() == 1
        assert _status(app, sub_id) == SubscriptionStatus.ACTIVE

    def test_invoice_paid_after_cancellation_extends_licenses(
        self, app, org_data, make_subscription, post_event
    ):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        with app.app_context():
            license_id = entitlements.assign_license(org_data["org_id"], org_data["member_ids"][0]).id
            entitlements.cancel_subscription(sub_id)
        linked = _linked(app, sub_id)
        new_end = linked["end"] + datetime.timedelta(days=30)

        resp = post_event("invoice.payment_succeeded", _invoice(linked, "in_final", start=linked["end"], end=new_end))
        assert resp.get_json()["outcome"] == "applied"

        expected = datetime.datetime.fromtimestamp(_ts(new_end), tz=datetime.timezone.utc)
        with app.app_context():
            sub = db.session.get(Subscription, sub_id)
            assert sub.status == SubscriptionStatus.CANCELLED
            assert sub.period_end == expected
            assert as_utc(sub.next_billing_date) == expected
            assert as_utc(db.session.get(License, license_id).valid_until) == expected


class TestSubscriptionEvents:
    def test_out_of_order_update_does_not_regress(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        linked = _linked(app, sub_id)
        created = int(time.time())

        resp = post_event("customer.subscription.updated", _subscription_object(linked, status="past_due"),
                          created=created + 100)
        assert resp.get_json()["outcome"] == "applied"
        resp = post_event("customer.subscription.updated", _subscription_object(linked, status="active"),
                          created=created + 50)
        assert resp.get_json()["outcome"] == "ignored"
        assert _status(app, sub_id) == SubscriptionStatus.PAST_DUE

    def test_quantity_below_usage_is_clamped(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"], capacity=5)
        with app.app_context():
            for user_id in org_data["member_ids"][:3]:
                entitlements.assign_license(org_data["org_id"], user_id)
        linked = _linked(app, sub_id)
        post_event("customer.subscription.updated", _subscription_object(linked, quantity=2))
        with app.app_context():
            sub = db.session.get(Subscription, sub_id)
            assert sub.capacity == 3
            assert sub.licenses_used == 3

    def test_quantity_increase_applied(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"], capacity=5)
        linked = _linked(app, sub_id)
        post_event("customer.subscription.updated", _subscription_object(linked, quantity=12))
        with app.app_context():
            assert db.session.get(Subscription, sub_id).capacity == 12

    def test_cancel_at_period_end(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        with app.app_context():
            entitlements.assign_license(org_data["org_id"], org_data["member_ids"][0])
        linked = _linked(app, sub_id)
        post_event("customer.subscription.updated", _subscription_object(linked, cancel_at_period_end=True))
        with app.app_context():
            sub = db.session.get(Subscription, sub_id)
            assert sub.status == SubscriptionStatus.CANCELLED
            assert sub.auto_renew is False
            assert entitlements.user_has_license(org_data["org_id"], org_data["member_ids"][0])

    def test_subscription_deleted(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        linked = _linked(app, sub_id)
        resp = post_event("customer.subscription.deleted", _subscription_object(linked, status="canceled"))
        assert resp.get_json()["outcome"] == "applied"
        assert _status(app, sub_id) == SubscriptionStatus.CANCELLED

    def test_expired_subscription_is_not_revived(self, app, org_data, make_subscription, post_event):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"])
        linked = _linked(app, sub_id)
        with app.app_context():
            run_locked(sub_id, lambda s: subscriptions.expire(s, "test"))
        resp = post_event("customer.subscription.updated", _subscription_object(linked, status="active"))
        assert resp.get_json()["outcome"] == "ignored"
        assert _status(app, sub_id) == SubscriptionStatus.EXPIRED

    def test_reconcile_pulls_remote_state(self, app, org_data, make_subscription, gateway):
        sub_id = make_subscription(org_data["org_id"], org_data["owner_id"], capacity=5)
        linked = _linked(app, sub_id)
        gateway.remote[linked["ext_id"]].quantity = 8
        with app.app_context():
            result = reconcile_subscription(sub_id)
            assert result == {"reconciled": True, "changes": {"capacity": 8}}
            assert db.session.get(Subscription, sub_id).capacity == 8
            assert reconcile_subscription(sub_id)["changes"] == {}


# ============================================================================
# Stripe adapter
# ============================================================================


@pytest.fixture
def stripe_gateway(app):
    config = replace(app.config["BILLING_CONFIG"], stripe_secret_key="sk_test_123")
    return StripeGateway(config)


class TestStripeGateway:
    def _intent(self, status="succeeded"):
        return {
            "id": "pi_123",
            "status": status,
            "amount": 10000,
            "currency": "usd",
            "latest_charge": {
                "id": "ch_123",
                "payment_method_details": {
                    "card": {"brand": "visa", "last4": "4242", "exp_month": 4, "exp_year": 2031}
                },
            },
        }

    def test_charge_success(self, stripe_gateway, monkeypatch):
        captured = {}

        def fake_create(**params):
            captured.update(params)
            return self._intent()

        monkeypatch.setattr(stripe.Customer, "retrieve", lambda customer_id: {
            "invoice_settings": {"default_payment_method": "pm_default"}
        })
        monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)

        result = stripe_gateway.charge("cus_1", Decimal("100.00"), "USD", idempotency_key="subscription-1-20260101")

        assert captured["amount"] == 10000
        assert captured["currency"] == "usd"
        assert captured["idempotency_key"] == "subscription-1-20260101"
        assert captured["payment_method"] == "pm_default"
        assert captured["off_session"] is True
        assert result.charge_id == "ch_123"
        assert result.amount == Decimal("100.00")
        assert result.card_last4 == "4242"

    def test_card_decline_maps_to_gateway_error(self, stripe_gateway, monkeypatch):
        def declined(**params):
            raise stripe.CardError("Your card was declined.", None, "card_declined")

        monkeypatch.setattr(stripe.Customer, "retrieve", lambda customer_id: {})
        monkeypatch.setattr(stripe.PaymentIntent, "create", declined)

        with pytest.raises(GatewayError) as excinfo:
            stripe_gateway.charge("cus_1", Decimal("10.00"), "USD", idempotency_key="k")
        assert excinfo.value.code == "card_declined"
        assert excinfo.value.message == "Your card was declined."

    def test_connection_error_maps_to_timeout(self, stripe_gateway, monkeypatch):
        def unreachable(customer_id):
            raise stripe.APIConnectionError("Request timed out")

        monkeypatch.setattr(stripe.Customer, "retrieve", unreachable)
        with pytest.raises(GatewayTimeout) as excinfo:
            stripe_gateway.charge("cus_1", Decimal("10.00"), "USD", idempotency_key="k")
        assert excinfo.value.retryable is True

    def test_incomplete_intent_is_gateway_error(self, stripe_gateway, monkeypatch):
        monkeypatch.setattr(stripe.Customer, "retrieve", lambda customer_id: {})
        monkeypatch.setattr(stripe.PaymentIntent, "create", lambda **p: self._intent("requires_action"))
        with pytest.raises(GatewayError):
            stripe_gateway.charge("cus_1", Decimal("10.00"), "USD", idempotency_key="k")

    def test_unconfigured_gateway(self, app):
        config = replace(app.config["BILLING_CONFIG"], stripe_secret_key="")
        with pytest.raises(GatewayError):
            StripeGateway(config).retrieve_subscription("sub_1")

    def test_parse_remote_subscription_item_period(self):
        remote = parse_remote_subscription({
            "id": "sub_9",
            "customer": {"id": "cus_9"},
            "status": "trialing",
            "trial_end": 1767225600,
            "items": {"data": [{
                "id": "si_9",
                "quantity": 4,
                "price": {"id": "price_annual"},
                "current_period_start": 1764547200,
                "current_period_end": 1767225600,
            }]},
        })
        assert remote.customer_id == "cus_9"
        assert remote.item_id == "si_9"
        assert remote.quantity == 4
        assert remote.price_id == "price_annual"
        assert remote.current_period_end == datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)

    def test_verify_webhook(self):
        payload = json.dumps({"id": "evt_1", "type": "charge.succeeded", "data": {"object": {}}})
        event = verify_webhook(payload.encode(), sign_payload(payload, WEBHOOK_SECRET), WEBHOOK_SECRET, 300)
        assert event["id"] == "evt_1"
        with pytest.raises(SignatureInvalid):
            verify_webhook(payload.encode(), sign_payload(payload, "other"), WEBHOOK_SECRET, 300)
        with pytest.raises(SignatureInvalid):
            verify_webhook(payload.encode(), None, WEBHOOK_SECRET, 300)
        with pytest.raises(SignatureInvalid):
            verify_webhook(payload.encode(), sign_payload(payload, WEBHOOK_SECRET), "", 300)

    def test_list_invoices(self, stripe_gateway, monkeypatch):
        captured = {}

        def fake_list(**params):
            captured.update(params)
            return {"data": [{
                "id": "in_1",
                "number": "ACME-0001",
                "status": "paid",
                "currency": "usd",
                "subtotal": 10000,
                "total_taxes": [{"amount": 2000}],
                "total": 12000,
                "created": 1767225600,
                "charge": {"payment_method_details": {"card": {"brand": "visa", "last4": "4242"}}},
                "lines": {"data": [{"description": "5 x Seat", "amount": 10000, "quantity": 5}]},
            }]}

        monkeypatch.setattr(stripe.Invoice, "list", fake_list)
        start = datetime.datetime(2026, 1, 1, tzinfo=datetime.timezone.utc)
        invoices = stripe_gateway.list_invoices("cus_1", status="paid", created_gte=start, limit=5)

        assert captured == {"customer": "cus_1", "limit": 5, "status": "paid", "created": {"gte": 1767225600}}
        invoice = invoices[0]
        assert invoice.tax == Decimal("20.00")
        assert invoice.total == Decimal("120.00")
        assert invoice.created == start
        assert invoice.to_dict()["payment_method"] == {"brand": "visa", "last4": "4242"}
        assert invoice.lines == [{"description": "5 x Seat", "amount": "100.00", "quantity": 5}]

    def test_upcoming_invoice(self, stripe_gateway, monkeypatch):
        monkeypatch.setattr(stripe.Invoice, "create_preview", lambda **params: {
            "currency": "usd", "subtotal": 5000, "tax": 0, "total": 5000, "period_end": 1767225600,
        })
        invoice = stripe_gateway.upcoming_invoice("cus_1", "sub_1")
        assert invoice.id is None
        assert invoice.total == Decimal("50.00")
        assert invoice.to_dict()["payment_method"] is None

    def test_invoice_listing_error(self, stripe_gateway, monkeypatch):
        def failing(**params):
            raise stripe.InvalidRequestError("No such customer: 'cus_1'", "customer")

        monkeypatch.setattr(stripe.Invoice, "list", failing)
        with pytest.raises(GatewayError):
            stripe_gateway.list_invoices("cus_1")
