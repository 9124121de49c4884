"""Claim and spin APIs.

Routes:
- POST /api/claim-spin     {email, deviceId?}
- POST /api/spin           {email | deviceId, rotation?}
- GET  /api/spin/state     ?email=... | ?deviceId=...
- GET  /api/health

In ``email`` ledger mode the identity is the normalized email. In ``daily``
mode it is the deviceId (falling back to the email).
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from email_rules import normalize_email
from errors import SpinError
from extensions import db, limiter
from models_spins import EmailClaim
from wheel import is_valid_rotation


spins_api = Blueprint("spins_api", __name__)

logger = logging.getLogger(__name__)

UNLOCKED_MESSAGE = "OK - 1 spin unlocked"


def _services():
    return current_app.extensions["spinwheel"]


def _identity(data) -> str:
    svc = _services()
    device_id = str(data.get("deviceId") or "").strip()
    if svc.ledger_mode == "daily" and device_id:
        return device_id[:200]
    return normalize_email(data.get("email"))


def _bad_request(message):
    return jsonify({"ok": False, "error": "BAD_REQUEST", "message": message}), 400


def _iso(dt):
    return dt.isoformat() if dt else None


def _record_email_claim(email: str):
    try:
        db.session.add(EmailClaim(email=email))
        db.session.commit()
    except SQLAlchemyError:
        # The spin is already banked; the missing row is left for an operator.
        db.session.rollback()
        logger.exception("Claim for %s not written to the claim log", email)


@spins_api.errorhandler(SpinError)
def _spin_error(e):
    logger.info("%s refused: %s (%s)", request.path, e.code, e.message)
    return jsonify(e.to_dict()), e.status


@spins_api.route("/api/claim-spin", methods=["POST"])
@limiter.limit("10 per minute")
def claim_spin():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _bad_request("Invalid JSON body")

    svc = _services()
    identity = _identity(data) if svc.ledger_mode == "daily" else None
    session = svc.session(identity=identity or None)
    outcome = session.claim(data.get("email"))
    _record_email_claim(outcome.email)

    return jsonify({"ok": True, "message": UNLOCKED_MESSAGE, "spinsBanked": outcome.spins_banked})


@spins_api.route("/api/spin", methods=["POST"])
@limiter.limit("20 per minute")
def spin():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _bad_request("Invalid JSON body")

    identity = _identity(data)
    if not identity:
        return _bad_request("email or deviceId is required")
    try:
        rotation = float(data.get("rotation") or 0.0)
    except (TypeError, ValueError):
        return _bad_request("rotation must be a number")
    if not is_valid_rotation(rotation):
        return _bad_request("rotation must be a finite number")

    wins_key = str(data.get("deviceId") or "").strip()[:200] or None
    session = _services().session(identity=identity, rotation=rotation, wins_key=wins_key)
    outcome = session.spin()

    return jsonify(
        {
            "ok": True,
            "targetIndex": outcome.target_index,
            "winnerIndex": outcome.winner_index,
            "prize": outcome.prize.to_dict(),
            "startRotation": outcome.plan.start_rotation,
            "finalRotation": outcome.plan.final_rotation,
            "duration": outcome.plan.duration,
            "spinsBanked": outcome.spins_banked,
            "recentWins": [w.to_dict() for w in outcome.recent_wins],
        }
    )


@spins_api.route("/api/spin/state", methods=["GET"])
def spin_state():
    identity = _identity(request.args)
    if not identity:
        return _bad_request("email or deviceId is required")

    svc = _services()
    status = svc.ledger.state(identity, svc.now())
    wins_key = (request.args.get("deviceId") or "").strip()[:200] or None
    session = svc.session(identity=identity, wins_key=wins_key)

    return jsonify(
        {
            "ok": status.available,
            "spinsBanked": status.spins_banked,
            "claimedToday": status.claimed_today,
            "nextClaimAt": _iso(status.next_claim_at),
            "recentWins": [w.to_dict() for w in session.recent_wins()],
            "prizes": [p.to_dict() for p in svc.prizes],
        }
    )


@spins_api.route("/api/health", methods=["GET"])
def health():
    svc = _services()
    return jsonify(
        {
            "ok": True,
            "tldsLoaded": svc.tlds.loaded,
            "tldsCount": len(svc.tlds),
            "ledgerMode": svc.ledger_mode,
        }
    )
