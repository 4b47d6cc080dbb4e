from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from dolci.extensions import db


class BookingStatus:
    EN_ATTENTE = "EN_ATTENTE"
    CONFIRME = "CONFIRME"
    ANNULE = "ANNULE"
    TERMINE = "TERMINE"

    ALL = (EN_ATTENTE, CONFIRME, ANNULE, TERMINE)
    TERMINAL = (ANNULE, TERMINE)


class BookableKind:
    HOTEL = "HOTEL"
    RESIDENCE = "RESIDENCE"
    RESTAURANT = "RESTAURANT"
    LOUNGE = "LOUNGE"

    ALL = (HOTEL, RESIDENCE, RESTAURANT, LOUNGE)


@dataclass(frozen=True)
class BookableRef:
    """What was booked. Resolved by the listing service, opaque here."""

    kind: str
    id: int

    def to_dict(self) -> dict:
        return {"type": self.kind, "id": int(self.id)}


# Booking-level payment label shown by the booking listing UI.
PAYMENT_STATUS_LABELS = {
    "PENDING": "EN_ATTENTE",
    "HELD": "PAYE",
    "CAPTURED": "PAYE",
    "RELEASED": "PAYE",
    "REFUSED": "REFUSE",
    "REFUNDED": "REMBOURSE",
}


class Booking(db.Model):
    __tablename__ = "bookings"

    id = db.Column(db.Integer, primary_key=True)

    customer_id = db.Column(db.Integer, nullable=False, index=True)
    owner_id = db.Column(db.Integer, nullable=False, index=True)

    bookable_type = db.Column(db.String(16), nullable=False)
    bookable_id = db.Column(db.Integer, nullable=False)

    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    guests = db.Column(db.Integer, nullable=False, default=1)

    booking_reference = db.Column(db.String(32), nullable=False, unique=True, index=True)
    # Client-supplied Idempotency-Key of the checkout request that created the booking
    idempotency_key = db.Column(db.String(128), nullable=True, unique=True)

    status = db.Column(db.String(16), nullable=False, default=BookingStatus.EN_ATTENTE, index=True)

    total_price = db.Column(db.Numeric(18, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="XOF")
    # Filled when escrow is released
    commission_amount = db.Column(db.Numeric(18, 2), nullable=True)
    owner_amount = db.Column(db.Numeric(18, 2), nullable=True)

    notes = db.Column(db.Text, nullable=True)
    cancellation_reason = db.Column(db.String(240), nullable=True)

    confirmed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    payments = db.relationship("Payment", back_populates="booking", order_by="Payment.id", lazy="select")

    @property
    def bookable_ref(self) -> BookableRef:
        return BookableRef(kind=self.bookable_type, id=int(self.bookable_id))

    @property
    def latest_payment(self):
        return self.payments[-1] if self.payments else None

    @property
    def payment_status(self) -> str:
        p = self.latest_payment
        if not p:
            return "EN_ATTENTE"
        return PAYMENT_STATUS_LABELS.get(p.custody_state, "EN_ATTENTE")

    def to_dict(self):
        return {
            "id": int(self.id),
            "booking_reference": self.booking_reference,
            "customer_id": int(self.customer_id),
            "owner_id": int(self.owner_id),
            "bookable": self.bookable_ref.to_dict(),
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "guests": int(self.guests or 0),
            "status": self.status,
            "payment_status": self.payment_status,
            "total_price": str(self.total_price) if self.total_price is not None else None,
            "currency": self.currency,
            "commission_amount": str(self.commission_amount) if self.commission_amount is not None else None,
            "owner_amount": str(self.owner_amount) if self.owner_amount is not None else None,
            "notes": self.notes or "",
            "cancellation_reason": self.cancellation_reason or "",
            "confirmed_at": self.confirmed_at.isoformat() if self.confirmed_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
