"""Session helpers for browser clients of the JSON API."""

from flask import Blueprint, jsonify
from flask_wtf.csrf import generate_csrf

from services.auth import login_required

session_bp = Blueprint("session", __name__, url_prefix="/api")


@session_bp.route("/csrf-token")
@login_required
def csrf_token():
    """Token for the ``X-CSRFToken`` header of state-changing requests."""
    return jsonify({"csrf_token": generate_csrf()})
