"""Admin listing of claimed emails (bearer token)."""

import logging
import secrets

from flask import Blueprint, current_app, jsonify, request

from models_spins import EmailClaim


admin_claims = Blueprint("admin_claims", __name__)

logger = logging.getLogger(__name__)

MAX_ROWS = 5000


def _admin_token() -> str:
    return (current_app.config.get("ADMIN_TOKEN") or "").strip()


def _bearer_token() -> str:
    header = request.headers.get("Authorization", "")
    return header[7:].strip() if header.startswith("Bearer ") else ""


@admin_claims.route("/api/admin/claimed-emails", methods=["GET"])
def list_claimed_emails():
    token = _bearer_token()
    expected = _admin_token()
    if not token or not expected or not secrets.compare_digest(token, expected):
        logger.warning("Refused admin claim listing from %s", request.remote_addr)
        return jsonify({"ok": False, "message": "Unauthorized"}), 401

    rows = (
        EmailClaim.query.order_by(EmailClaim.created_at.desc(), EmailClaim.id.desc())
        .limit(MAX_ROWS)
        .all()
    )
    return jsonify({"ok": True, "data": [r.to_dict() for r in rows]})
