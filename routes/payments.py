"""Payment history, revenue, refunds and payment methods."""

from flask import Blueprint, jsonify, request

from extensions import limiter
from services import entitlements
from services.auth import current_user_id, login_required, superadmin_required
from services.errors import ValidationError
from services.payments import payment_to_dict
from utils import parse_iso_datetime, safe_int

payments_bp = Blueprint("payments", __name__, url_prefix="/api")


@payments_bp.route("/organizations/<int:org_id>/payments")
@login_required
def history(org_id):
    txns = entitlements.list_payment_history(org_id, actor_id=current_user_id())
    return jsonify([payment_to_dict(t) for t in txns])


@payments_bp.route("/payments/<int:payment_id>")
@login_required
def detail(payment_id):
    txn = entitlements.get_payment(payment_id, actor_id=current_user_id())
    return jsonify(payment_to_dict(txn, detail=True))


@payments_bp.route("/subscriptions/<int:sub_id>/payments")
@login_required
def subscription_history(sub_id):
    txns = entitlements.list_subscription_payments(sub_id, actor_id=current_user_id())
    return jsonify([payment_to_dict(t) for t in txns])


def _date_range():
    start_raw = request.args.get("start")
    end_raw = request.args.get("end")
    start = parse_iso_datetime(start_raw)
    end = parse_iso_datetime(end_raw)
    if (start_raw and start is None) or (end_raw and end is None):
        raise ValidationError("start and end must be ISO-8601 dates")
    return start, end


@payments_bp.route("/payments/revenue")
@superadmin_required
def revenue():
    start, end = _date_range()
    return jsonify(entitlements.get_revenue_stats(start, end, actor_id=current_user_id()))


@payments_bp.route("/payments/<int:payment_id>/refund", methods=["POST"])
@login_required
@limiter.limit("10 per hour")
def refund(payment_id):
    data = request.get_json(silent=True) or {}
    result = entitlements.refund_payment(
        payment_id,
        amount=data.get("amount"),
        reason=data.get("reason", ""),
        actor_id=current_user_id(),
    )
    return jsonify(result), 202


@payments_bp.route("/organizations/<int:org_id>/payment-methods")
@login_required
@limiter.limit("60 per hour")
def list_payment_methods(org_id):
    methods = entitlements.list_payment_methods(org_id, actor_id=current_user_id())
    return jsonify([pm.to_dict() for pm in methods])


@payments_bp.route("/organizations/<int:org_id>/payment-methods/<pm_id>", methods=["POST"])
@login_required
@limiter.limit("30 per hour")
def set_default_payment_method(org_id, pm_id):
    entitlements.set_default_payment_method(org_id, pm_id, actor_id=current_user_id())
    return jsonify({"default_payment_method": pm_id})


@payments_bp.route("/organizations/<int:org_id>/payment-methods/<pm_id>", methods=["DELETE"])
@login_required
@limiter.limit("30 per hour")
def delete_payment_method(org_id, pm_id):
    entitlements.delete_payment_method(org_id, pm_id, actor_id=current_user_id())
    return "", 204


@payments_bp.route("/organizations/<int:org_id>/invoices")
@login_required
@limiter.limit("60 per hour")
def invoices(org_id):
    start, end = _date_range()
    result = entitlements.list_invoices(
        org_id,
        status=request.args.get("status") or None,
        start=start,
        end=end,
        limit=safe_int(request.args.get("limit"), 20),
        actor_id=current_user_id(),
    )
    return jsonify({"invoices": [inv.to_dict() for inv in result], "total": len(result)})


@payments_bp.route("/subscriptions/<int:sub_id>/upcoming-invoice")
@login_required
@limiter.limit("60 per hour")
def upcoming_invoice(sub_id):
    invoice = entitlements.get_upcoming_invoice(sub_id, actor_id=current_user_id())
    return jsonify(invoice.to_dict())


@payments_bp.route("/organizations/<int:org_id>/billing-summary")
@login_required
@limiter.limit("60 per hour")
def billing_summary(org_id):
    start, end = _date_range()
    return jsonify(entitlements.get_billing_summary(org_id, start, end, actor_id=current_user_id()))
