from datetime import datetime

from dolci.extensions import db


class QRReleaseToken(db.Model):
    __tablename__ = "qr_release_tokens"
    __table_args__ = (
        db.UniqueConstraint("token", name="uq_qr_release_token"),
        # At most one usable token per payment
        db.Index(
            "uq_qr_release_tokens_live_per_payment",
            "payment_id",
            unique=True,
            sqlite_where=db.text("consumed_at IS NULL AND expired_at IS NULL"),
            postgresql_where=db.text("consumed_at IS NULL AND expired_at IS NULL"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=False, index=True)

    token = db.Column(db.String(128), nullable=False)

    issued_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    # Set when a re-mint or a cancellation invalidates the token early
    expired_at = db.Column(db.DateTime, nullable=True)

    consumed_at = db.Column(db.DateTime, nullable=True)
    consumed_by = db.Column(db.String(64), nullable=True)

    archived_at = db.Column(db.DateTime, nullable=True)

    payment = db.relationship("Payment")

    def is_expired(self, now: datetime) -> bool:
        return bool(self.expired_at) or now > self.expires_at

    def is_active(self, now: datetime) -> bool:
        return self.consumed_at is None and not self.is_expired(now)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "payment_id": int(self.payment_id),
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "expired_at": self.expired_at.isoformat() if self.expired_at else None,
            "consumed_at": self.consumed_at.isoformat() if self.consumed_at else None,
            "consumed_by": self.consumed_by or "",
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }
