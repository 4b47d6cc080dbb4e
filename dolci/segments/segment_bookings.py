from __future__ import annotations

from datetime import date

from flask import Blueprint, jsonify, request

from dolci import escrow
from dolci.auth import current_identity
from dolci.errors import ValidationFailed
from dolci.extensions import db
from dolci.models import Booking
from dolci.utils.bookings import list_bookings
from dolci.utils.gateway_client import initialize_checkout
from dolci.utils.release_tokens import receipt_snapshot

bookings_bp = Blueprint("bookings_bp", __name__, url_prefix="/api/bookings")


def _parse_date(value, field: str) -> date:
    try:
        return date.fromisoformat(str(value or "").strip())
    except ValueError:
        raise ValidationFailed(f"{field} must be an ISO date (YYYY-MM-DD)")


def _parse_int(value, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field} must be an integer")


def _can_view(ident, booking: Booking) -> bool:
    if ident.is_staff:
        return True
    if ident.role == "customer":
        return int(booking.customer_id) == ident.id
    if ident.role == "owner":
        return int(booking.owner_id) == ident.id
    return False


@bookings_bp.post("")
def create_booking():
    ident = current_identity()
    if not ident:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    data = request.get_json(silent=True) or {}

    if ident.is_staff and data.get("customer_id") is not None:
        customer_id = _parse_int(data.get("customer_id"), "customer_id")
    elif ident.role == "customer":
        customer_id = ident.id
    else:
        return jsonify({"ok": False, "message": "Only customers can book"}), 403

    booking, created = escrow.open_booking(
        idempotency_key=request.headers.get("Idempotency-Key"),
        customer_id=customer_id,
        owner_id=_parse_int(data.get("owner_id"), "owner_id"),
        bookable_type=data.get("bookable_type") or "",
        bookable_id=_parse_int(data.get("bookable_id"), "bookable_id"),
        start_date=_parse_date(data.get("start_date"), "start_date"),
        end_date=_parse_date(data.get("end_date"), "end_date"),
        guests=_parse_int(data.get("guests") or 1, "guests"),
        total_price=data.get("total_price"),
        currency=data.get("currency") or "",
        notes=(data.get("notes") or "").strip(),
    )
    return jsonify({"ok": True, "created": created, "booking": booking.to_dict()}), (201 if created else 200)


def _page_arg(name: str, default: int, ceiling: int) -> int:
    raw = (request.args.get(name) or "").strip()
    try:
        value = int(raw) if raw else default
    except ValueError:
        value = default
    if value <= 0:
        value = default
    return min(value, ceiling)


@bookings_bp.get("")
def list_my_bookings():
    ident = current_identity()
    if not ident:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401

    # Scope comes from the token; only staff may pick whose bookings to see
    customer_id = owner_id = None
    if ident.is_staff:
        if request.args.get("customer_id"):
            customer_id = _parse_int(request.args.get("customer_id"), "customer_id")
        if request.args.get("owner_id"):
            owner_id = _parse_int(request.args.get("owner_id"), "owner_id")
    elif ident.role == "owner":
        owner_id = ident.id
    else:
        customer_id = ident.id

    page = _page_arg("page", 1, 10_000)
    per_page = _page_arg("per_page", 20, 100)
    items, total = list_bookings(
        customer_id=customer_id,
        owner_id=owner_id,
        status=request.args.get("status"),
        payment_status=request.args.get("payment_status"),
        page=page,
        per_page=per_page,
    )
    return jsonify({
        "ok": True,
        "items": [b.to_dict() for b in items],
        "meta": {
            "current_page": page,
            "per_page": per_page,
            "total": total,
            "last_page": max(1, (total + per_page - 1) // per_page),
        },
    }), 200


@bookings_bp.get("/<int:booking_id>")
def get_booking(booking_id: int):
    ident = current_identity()
    if not ident:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    booking = db.session.get(Booking, booking_id)
    if not booking or not _can_view(ident, booking):
        return jsonify({"ok": False, "message": "Not found"}), 404
    payload = booking.to_dict()
    payload["payments"] = [p.to_dict() for p in booking.payments]
    return jsonify({"ok": True, "booking": payload}), 200


@bookings_bp.route("/<int:booking_id>/cancel", methods=["POST", "PUT"])
def cancel_booking(booking_id: int):
    ident = current_identity()
    if not ident:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    data = request.get_json(silent=True) or {}
    booking = escrow.on_cancellation_requested(
        booking_id,
        ident.id,
        ident.role,
        (data.get("reason") or data.get("cancellation_reason") or "").strip(),
    )
    return jsonify({"ok": True, "booking": booking.to_dict()}), 200


@bookings_bp.post("/<int:booking_id>/payments")
def start_payment(booking_id: int):
    ident = current_identity()
    if not ident:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    booking = db.session.get(Booking, booking_id)
    if not booking or not _can_view(ident, booking):
        return jsonify({"ok": False, "message": "Not found"}), 404
    if ident.role != "customer" and not ident.is_staff:
        return jsonify({"ok": False, "message": "Only the customer can pay"}), 403

    data = request.get_json(silent=True) or {}
    payment = escrow.open_payment(booking_id, provider=(data.get("provider") or "gateway").strip())
    checkout = initialize_checkout(payment, callback_url=(data.get("callback_url") or "").strip())
    return jsonify({"ok": True, "payment": payment.to_dict(), "checkout": checkout}), 201


@bookings_bp.get("/<int:booking_id>/receipt")
def booking_receipt(booking_id: int):
    ident = current_identity()
    if not ident:
        return jsonify({"ok": False, "message": "Unauthorized"}), 401
    booking = db.session.get(Booking, booking_id)
    # The QR token is a bearer secret: only the customer and staff see it
    if not booking or not (ident.is_staff or (ident.role == "customer" and int(booking.customer_id) == ident.id)):
        return jsonify({"ok": False, "message": "Not found"}), 404
    return jsonify({"ok": True, "receipt": receipt_snapshot(booking)}), 200
