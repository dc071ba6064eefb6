"""Inbound Stripe webhook."""

import logging

from flask import Blueprint, jsonify, request

from extensions import csrf, limiter
from services.errors import SignatureInvalid
from services.webhooks import handle_webhook

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.route("/webhooks/stripe", methods=["POST"])
@csrf.exempt
@limiter.exempt
def stripe_webhook():
    """Verify and apply a Stripe event; 200 for every recorded or ignored event."""
    # Raw bytes: the signature covers the exact body Stripe sent.
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")
    try:
        result = handle_webhook(payload, sig_header)
    except SignatureInvalid as exc:
        return jsonify(exc.to_dict()), 400
    return jsonify(result.to_dict()), 200
