from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from dolci import escrow
from dolci.auth import current_identity, require_roles
from dolci.extensions import db
from dolci.models import Payment

payments_bp = Blueprint("payments_bp", __name__, url_prefix="/api/payments")


@payments_bp.get("/<int:payment_id>")
def get_payment(payment_id: int):
    ident = current_identity()
    if not ident:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    payment = db.session.get(Payment, payment_id)
    if not payment:
        return jsonify({"ok": False, "message": "Not found"}), 404
    booking = payment.booking
    if not (
        ident.is_staff
        or (ident.role == "customer" and int(booking.customer_id) == ident.id)
        or (ident.role == "owner" and int(booking.owner_id) == ident.id)
    ):
        return jsonify({"ok": False, "message": "Not found"}), 404
    return jsonify({"ok": True, "payment": payment.to_dict(), "booking_status": booking.status}), 200


@payments_bp.post("/<int:payment_id>/accept")
@require_roles("owner", "staff", "admin")
def accept_payment(payment_id: int):
    ident = g.identity
    payment, token = escrow.on_owner_accepted(payment_id, ident.id, ident.role)
    # The token itself only goes on the customer's receipt
    return jsonify({
        "ok": True,
        "payment": payment.to_dict(),
        "booking_status": payment.booking.status,
        "release_token": {"id": int(token.id), "expires_at": token.expires_at.isoformat()},
    }), 200


@payments_bp.post("/<int:payment_id>/refuse")
@require_roles("owner", "staff", "admin")
def refuse_payment(payment_id: int):
    ident = g.identity
    data = request.get_json(silent=True) or {}
    payment = escrow.on_owner_refused(payment_id, ident.id, ident.role, (data.get("reason") or "").strip())
    return jsonify({"ok": True, "payment": payment.to_dict(), "booking_status": payment.booking.status}), 200


@payments_bp.post("/qr-code/scan")
@require_roles("staff", "admin")
def scan_qr_code():
    data = request.get_json(silent=True) or {}
    raw = data.get("token") or data.get("qr") or ""
    result = escrow.on_qr_scanned(raw, g.identity.label)
    return jsonify({"ok": True, "message": "Funds released to the establishment", "release": result.to_dict()}), 200


@payments_bp.post("/<int:payment_id>/override-release")
@require_roles("admin")
def override_release(payment_id: int):
    data = request.get_json(silent=True) or {}
    result = escrow.on_admin_release(payment_id, g.identity.label, (data.get("reason") or "").strip())
    return jsonify({"ok": True, "release": result.to_dict()}), 200
