"""License assignment endpoints."""

from flask import Blueprint, jsonify, request

from services import entitlements
from services.auth import current_user_id, login_required
from services.errors import ValidationError
from utils import as_utc, safe_int

licenses_bp = Blueprint("licenses", __name__, url_prefix="/api")


def license_to_dict(lic) -> dict:
    return {
        "id": lic.id,
        "organization_id": lic.organization_id,
        "user_id": lic.user_id,
        "subscription_id": lic.subscription_id,
        "license_key": lic.license_key,
        "status": lic.status.value,
        "valid_from": as_utc(lic.valid_from).isoformat(),
        "valid_until": as_utc(lic.valid_until).isoformat(),
        "assigned_at": as_utc(lic.assigned_at).isoformat() if lic.assigned_at else None,
        "revoked_at": as_utc(lic.revoked_at).isoformat() if lic.revoked_at else None,
        "revocation_reason": lic.revocation_reason,
    }


@licenses_bp.route("/organizations/<int:org_id>/licenses", methods=["POST"])
@login_required
def assign(org_id):
    data = request.get_json(silent=True) or {}
    user_id = safe_int(data.get("user_id"))
    if not user_id:
        raise ValidationError("user_id is required")
    lic = entitlements.assign_license(org_id, user_id, actor_id=current_user_id())
    return jsonify(license_to_dict(lic)), 201


@licenses_bp.route("/organizations/<int:org_id>/licenses")
@login_required
def list_licenses(org_id):
    licenses = entitlements.list_licenses(org_id, actor_id=current_user_id())
    return jsonify([license_to_dict(lic) for lic in licenses])


@licenses_bp.route("/users/<int:user_id>/licenses")
@login_required
def user_licenses(user_id):
    licenses = entitlements.list_user_licenses(user_id, actor_id=current_user_id())
    return jsonify([license_to_dict(lic) for lic in licenses])


@licenses_bp.route("/licenses/<int:license_id>", methods=["DELETE"])
@login_required
def revoke(license_id):
    data = request.get_json(silent=True) or {}
    lic = entitlements.revoke_license(
        license_id, reason=data.get("reason", ""), actor_id=current_user_id()
    )
    return jsonify(license_to_dict(lic))
