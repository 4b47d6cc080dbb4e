from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError

from dolci import escrow
from dolci.errors import IntegrityFailure
from dolci.extensions import db
from dolci.models import WebhookEvent
from dolci.utils.gateway_client import verify_signature

webhooks_bp = Blueprint("webhooks_bp", __name__, url_prefix="/api/webhooks")


def _dispatch(event_type: str, data: dict):
    payment_id = data.get("payment_id") or (data.get("metadata") or {}).get("payment_id")
    reference = str(data.get("reference") or "").strip()

    if event_type == "payment.captured":
        payment = escrow.on_gateway_captured(payment_id, reference, data.get("amount"), data.get("currency"))
        return payment.custody_state
    if event_type == "payment.failed":
        payment = escrow.on_gateway_failed(payment_id, reference, str(data.get("reason") or ""))
        return payment.custody_state
    if event_type in ("wallet.recharge.success", "wallet.recharge.failed"):
        txn = escrow.settle_recharge(reference, event_type.endswith(".success"))
        return txn.status
    return None


def _remember(event_id: str, event_type: str, reference: str, outcome: str) -> None:
    db.session.add(WebhookEvent(
        provider="gateway",
        event_id=event_id,
        event_type=event_type[:64],
        reference=reference[:128] or None,
        outcome=outcome[:32],
    ))
    try:
        db.session.commit()
    except IntegrityError:
        # A concurrent delivery of the same event got there first
        db.session.rollback()


@webhooks_bp.post("/gateway")
def gateway_webhook():
    raw = request.get_data() or b"{}"
    if current_app.config.get("GATEWAY_SECRET") and not verify_signature(raw, request.headers.get("X-Gateway-Signature")):
        return jsonify({"ok": False, "message": "Invalid signature"}), 400

    payload = request.get_json(silent=True) or {}
    event_id = str(payload.get("id") or "").strip()[:128]
    event_type = str(payload.get("type") or "").strip()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    if not event_id or not event_type:
        return jsonify({"ok": False, "message": "id and type are required"}), 400

    if WebhookEvent.query.filter_by(event_id=event_id).first():
        return jsonify({"ok": True, "duplicate": True}), 200

    reference = str(data.get("reference") or "")
    try:
        outcome = _dispatch(event_type, data)
    except IntegrityFailure as e:
        # Acknowledged so the gateway stops retrying; the audit trail has it for review
        _remember(event_id, event_type, reference, e.code)
        return jsonify(e.to_dict()), 200
    if outcome is None:
        _remember(event_id, event_type, reference, "ignored")
        return jsonify({"ok": True, "ignored": True}), 200

    _remember(event_id, event_type, reference, outcome)
    return jsonify({"ok": True, "outcome": outcome}), 200
