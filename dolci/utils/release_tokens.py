"""Release tokens: the single-use secret printed as a QR code on the customer's
receipt. Scanning it is the confirmation event that releases escrowed funds
to the establishment owner.

Accepted scan inputs:
    abc123                                         bare token
    https://host/verify-booking/abc123             URL with the token segment
    https://host/verify-booking/abc123?x=1         ... with a query string
    verify-booking/abc123                          relative form
"""
from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy import update

from dolci.errors import InvalidTransition, TokenAlreadyConsumed, TokenExpired, TokenNotFound
from dolci.extensions import db
from dolci.models import (
    Booking,
    BookingStatus,
    CustodyState,
    Payment,
    QRReleaseToken,
    TxnCategory,
)
from dolci.utils import audit, ledger
from dolci.utils.bookings import transition_booking
from dolci.utils.commission import commission_for
from dolci.utils.money import ZERO, to_money
from dolci.utils.payments import transition_payment

VERIFY_SEGMENT = "verify-booking/"

# token_urlsafe(32) draws 256 bits
TOKEN_BYTES = 32


@dataclass
class ReleaseResult:
    booking_reference: str
    amount_released: Decimal
    owner_credited: Decimal
    commission: Decimal
    payment_id: int
    booking_status: str
    consumed_at: datetime
    consumed_by: str

    def to_dict(self) -> dict:
        return {
            "booking_reference": self.booking_reference,
            "amount_released": str(self.amount_released),
            "owner_credited": str(self.owner_credited),
            "commission": str(self.commission),
            "payment_id": int(self.payment_id),
            "booking_status": self.booking_status,
            "consumed_at": self.consumed_at.isoformat() if self.consumed_at else None,
            "consumed_by": self.consumed_by,
        }


def _now() -> datetime:
    return datetime.utcnow()


def extract_token(raw_input: str | None) -> str:
    raw = (raw_input or "").strip()
    if VERIFY_SEGMENT in raw:
        raw = raw.split(VERIFY_SEGMENT, 1)[1]
    for stop in ("?", "#", "/"):
        raw = raw.split(stop, 1)[0]
    token = raw.strip()
    if not token:
        raise TokenNotFound()
    return token


def qr_payload(token: str) -> str:
    base = (current_app.config.get("QR_VERIFY_BASE_URL") or "").rstrip("/")
    return f"{base}/{VERIFY_SEGMENT}{token}"


def _expiry_for(booking: Booking, now: datetime) -> datetime:
    grace = timedelta(hours=int(current_app.config.get("QR_TOKEN_GRACE_HOURS", 48)))
    # End of the last day of the stay
    end_of_stay = datetime.combine(booking.end_date + timedelta(days=1), time.min)
    return max(end_of_stay, now) + grace


def invalidate_active_tokens(payment_id: int, *, now: datetime | None = None) -> int:
    now = now or _now()
    res = db.session.execute(
        update(QRReleaseToken)
        .where(
            QRReleaseToken.payment_id == int(payment_id),
            QRReleaseToken.consumed_at.is_(None),
            QRReleaseToken.expired_at.is_(None),
        )
        .values(expired_at=now),
        execution_options={"synchronize_session": False},
    )
    return int(res.rowcount or 0)


def active_token(payment_id: int, *, now: datetime | None = None) -> QRReleaseToken | None:
    now = now or _now()
    return (
        QRReleaseToken.query.filter(
            QRReleaseToken.payment_id == int(payment_id),
            QRReleaseToken.consumed_at.is_(None),
            QRReleaseToken.expired_at.is_(None),
            QRReleaseToken.expires_at >= now,
        )
        .order_by(QRReleaseToken.id.desc())
        .first()
    )


def mint(payment: Payment, *, now: datetime | None = None) -> QRReleaseToken:
    """Issue a fresh token for a captured payment, retiring any unconsumed one."""
    now = now or _now()
    if payment.custody_state != CustodyState.CAPTURED:
        raise InvalidTransition(
            "Release tokens are only issued for captured payments",
            payment_id=int(payment.id),
            state=payment.custody_state,
        )
    invalidate_active_tokens(int(payment.id), now=now)
    row = QRReleaseToken(
        payment_id=int(payment.id),
        token=secrets.token_urlsafe(TOKEN_BYTES),
        issued_at=now,
        expires_at=_expiry_for(payment.booking, now),
    )
    db.session.add(row)
    db.session.flush()
    return row


def _find_token(value: str) -> QRReleaseToken | None:
    return QRReleaseToken.query.filter_by(token=value).first()


def consume(raw_input: str, scanner_identity: str, *, now: datetime | None = None) -> QRReleaseToken:
    """Mark a token used. The write is conditional on it still being unused, so
    of two concurrent scans only one gets a row back."""
    now = now or _now()
    value = extract_token(raw_input)
    row = _find_token(value)
    if row is None:
        raise TokenNotFound()
    if row.consumed_at is not None:
        raise TokenAlreadyConsumed(consumed_at=row.consumed_at.isoformat())
    if row.is_expired(now):
        raise TokenExpired(expires_at=row.expires_at.isoformat())

    token_id = int(row.id)
    res = db.session.execute(
        update(QRReleaseToken)
        .where(
            QRReleaseToken.id == token_id,
            QRReleaseToken.consumed_at.is_(None),
            QRReleaseToken.expired_at.is_(None),
            QRReleaseToken.expires_at >= now,
        )
        .values(consumed_at=now, consumed_by=(scanner_identity or "unknown")[:64]),
        execution_options={"synchronize_session": False},
    )
    fresh = db.session.get(QRReleaseToken, token_id, populate_existing=True)
    if res.rowcount != 1:
        if fresh.consumed_at is not None:
            raise TokenAlreadyConsumed(consumed_at=fresh.consumed_at.isoformat())
        raise TokenExpired(expires_at=fresh.expires_at.isoformat())
    return fresh


def release(token: QRReleaseToken, *, now: datetime | None = None) -> ReleaseResult:
    """Pay out a captured payment whose token was just consumed.

    Escrow is debited the full amount; the owner gets it net of commission and
    the platform revenue account gets the commission.
    """
    now = now or _now()
    payment = db.session.get(Payment, int(token.payment_id))
    booking = payment.booking
    transition_payment(payment, CustodyState.RELEASED, now=now, release_token=token)

    amount = to_money(payment.amount)
    commission = commission_for(booking, payment)
    owner_net = amount - commission

    escrow = ledger.escrow_account(payment.currency)
    ledger.post_once(
        ledger.debit,
        escrow.id,
        amount,
        f"release:{int(payment.id)}",
        int(payment.id),
        category=TxnCategory.RELEASE,
        description=f"Escrow release for booking {booking.booking_reference}",
    )
    if owner_net > ZERO:
        owner = ledger.owner_account(int(booking.owner_id), payment.currency)
        ledger.post_once(
            ledger.credit,
            owner.id,
            owner_net,
            f"release:{int(payment.id)}:owner",
            int(payment.id),
            category=TxnCategory.RELEASE,
            description=f"Payout for booking {booking.booking_reference}",
        )
    if commission > ZERO:
        revenue = ledger.revenue_account(payment.currency)
        ledger.post_once(
            ledger.credit,
            revenue.id,
            commission,
            f"release:{int(payment.id)}:commission",
            int(payment.id),
            category=TxnCategory.COMMISSION,
            description=f"Commission on booking {booking.booking_reference}",
        )

    booking.commission_amount = commission
    booking.owner_amount = owner_net
    if booking.status == BookingStatus.CONFIRME and _completes_on_release(booking, now):
        transition_booking(booking, BookingStatus.TERMINE, payment=payment, now=now)

    return ReleaseResult(
        booking_reference=booking.booking_reference,
        amount_released=amount,
        owner_credited=owner_net,
        commission=commission,
        payment_id=int(payment.id),
        booking_status=booking.status,
        consumed_at=token.consumed_at,
        consumed_by=token.consumed_by or "",
    )


def _completes_on_release(booking: Booking, now: datetime) -> bool:
    policy = (current_app.config.get("BOOKING_COMPLETION_POLICY") or "on_release").strip().lower()
    if policy == "after_stay":
        return now.date() >= booking.end_date
    return True


def scan(raw_input: str, scanner_identity: str, *, now: datetime | None = None) -> ReleaseResult:
    now = now or _now()
    token = consume(raw_input, scanner_identity, now=now)
    return release(token, now=now)


def override_release(payment: Payment, admin_identity: str, reason: str, *, now: datetime | None = None) -> ReleaseResult:
    """Administrative release. Still goes through a minted-and-consumed token so
    the payment carries the same consumption record as a scanned one."""
    now = now or _now()
    row = mint(payment, now=now)
    result = scan(row.token, f"override:{admin_identity}", now=now)
    audit.record(
        "escrow_override_release",
        actor=admin_identity,
        target_type="payment",
        target_id=int(payment.id),
        reason=reason,
        token_id=int(row.id),
        **result.to_dict(),
    )
    return result


def receipt_snapshot(booking: Booking, *, now: datetime | None = None) -> dict:
    """Fields the receipt renderer needs, including the QR payload while a
    token is live."""
    now = now or _now()
    payment = booking.latest_payment
    snapshot = {
        "booking": booking.to_dict(),
        "payment": payment.to_dict() if payment else None,
        "qr": None,
    }
    if payment is not None and payment.custody_state == CustodyState.CAPTURED:
        row = active_token(int(payment.id), now=now)
        if row:
            snapshot["qr"] = {
                "token": row.token,
                "payload": qr_payload(row.token),
                "expires_at": row.expires_at.isoformat(),
            }
    return snapshot
