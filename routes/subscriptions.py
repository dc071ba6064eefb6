"""Subscription lifecycle endpoints."""

from flask import Blueprint, current_app, jsonify, request

from extensions import limiter
from services import entitlements
from services.auth import current_user_id, login_required
from services.errors import ValidationError
from services.subscriptions import subscription_to_dict
from utils import parse_iso_datetime, safe_int

subscriptions_bp = Blueprint("subscriptions", __name__, url_prefix="/api")


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


@subscriptions_bp.route("/subscriptions", methods=["POST"])
@login_required
@limiter.limit("20 per hour")
def create():
    data = _json_body()
    if "organization_id" not in data:
        raise ValidationError("organization_id is required")
    sub = entitlements.create_subscription(
        safe_int(data.get("organization_id")),
        safe_int(data.get("user_id")) or current_user_id(),
        trial_days=data.get("trial_days", current_app.config["BILLING_CONFIG"].default_trial_days),
        capacity=data.get("capacity", 1),
        billing_cycle=data.get("billing_cycle", "monthly"),
        actor_id=current_user_id(),
    )
    return jsonify(subscription_to_dict(sub)), 201


@subscriptions_bp.route("/organizations/<int:org_id>/subscription")
@login_required
def detail(org_id):
    sub = entitlements.get_subscription(org_id, actor_id=current_user_id())
    return jsonify(subscription_to_dict(sub))


@subscriptions_bp.route("/organizations/<int:org_id>/subscription/stats")
@login_required
def stats(org_id):
    return jsonify(entitlements.get_stats(org_id, actor_id=current_user_id()))


@subscriptions_bp.route("/subscriptions/<int:sub_id>/capacity", methods=["POST"])
@login_required
@limiter.limit("30 per hour")
def change_capacity(sub_id):
    data = _json_body()
    if "capacity" not in data:
        raise ValidationError("capacity is required")
    sub = entitlements.change_capacity(sub_id, data["capacity"], actor_id=current_user_id())
    return jsonify(subscription_to_dict(sub))


@subscriptions_bp.route("/subscriptions/<int:sub_id>/preview-proration")
@login_required
@limiter.limit("60 per hour")
def preview_proration(sub_id):
    new_capacity = request.args.get("new_capacity")
    if new_capacity is None:
        raise ValidationError("new_capacity is required")
    return jsonify(entitlements.preview_proration(sub_id, new_capacity, actor_id=current_user_id()))


@subscriptions_bp.route("/subscriptions/<int:sub_id>/renew", methods=["POST"])
@login_required
@limiter.limit("10 per hour")
def renew(sub_id):
    data = _json_body()
    result = entitlements.renew_subscription(
        sub_id,
        expected_period_end=parse_iso_datetime(data.get("expected_period_end")),
        actor_id=current_user_id(),
    )
    return jsonify(result)


@subscriptions_bp.route("/subscriptions/<int:sub_id>/cancel", methods=["POST"])
@login_required
def cancel(sub_id):
    data = _json_body()
    sub = entitlements.cancel_subscription(
        sub_id,
        reason=data.get("reason", ""),
        actor_id=current_user_id(),
        immediate=bool(data.get("immediate", False)),
    )
    return jsonify(subscription_to_dict(sub))


@subscriptions_bp.route("/subscriptions/<int:sub_id>/reactivate", methods=["POST"])
@login_required
def reactivate(sub_id):
    sub = entitlements.reactivate_subscription(sub_id, actor_id=current_user_id())
    return jsonify(subscription_to_dict(sub))
