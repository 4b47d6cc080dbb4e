from datetime import datetime

from dolci.extensions import db


class CustodyState:
    PENDING = "PENDING"
    HELD = "HELD"
    CAPTURED = "CAPTURED"
    RELEASED = "RELEASED"
    REFUSED = "REFUSED"
    REFUNDED = "REFUNDED"

    ALL = (PENDING, HELD, CAPTURED, RELEASED, REFUSED, REFUNDED)
    TERMINAL = (RELEASED, REFUSED, REFUNDED)
    # Funds sit in the platform escrow account in these states
    IN_ESCROW = (HELD, CAPTURED)


class Payment(db.Model):
    __tablename__ = "payments"
    __table_args__ = (
        # At most one non-terminal attempt per booking
        db.Index(
            "uq_payments_live_per_booking",
            "booking_id",
            unique=True,
            sqlite_where=db.text("custody_state IN ('PENDING', 'HELD', 'CAPTURED')"),
            postgresql_where=db.text("custody_state IN ('PENDING', 'HELD', 'CAPTURED')"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    booking_id = db.Column(db.Integer, db.ForeignKey("bookings.id"), nullable=False, index=True)

    amount = db.Column(db.Numeric(18, 2), nullable=False)
    currency = db.Column(db.String(8), nullable=False, default="XOF")

    provider = db.Column(db.String(32), nullable=False, default="gateway")
    # Gateway-side reference, set on the first capture callback
    payment_reference = db.Column(db.String(128), nullable=True, unique=True, index=True)

    custody_state = db.Column(db.String(16), nullable=False, default=CustodyState.PENDING, index=True)
    failure_reason = db.Column(db.String(240), nullable=True)

    held_at = db.Column(db.DateTime, nullable=True)
    captured_at = db.Column(db.DateTime, nullable=True)
    released_at = db.Column(db.DateTime, nullable=True)
    refused_at = db.Column(db.DateTime, nullable=True)
    refunded_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    booking = db.relationship("Booking", back_populates="payments")

    @property
    def is_terminal(self) -> bool:
        return self.custody_state in CustodyState.TERMINAL

    def to_dict(self):
        return {
            "id": int(self.id),
            "booking_id": int(self.booking_id),
            "amount": str(self.amount),
            "currency": self.currency,
            "provider": self.provider,
            "payment_reference": self.payment_reference or "",
            "custody_state": self.custody_state,
            "failure_reason": self.failure_reason or "",
            "held_at": self.held_at.isoformat() if self.held_at else None,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "refused_at": self.refused_at.isoformat() if self.refused_at else None,
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
