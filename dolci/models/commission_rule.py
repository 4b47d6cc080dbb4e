from datetime import datetime

from dolci.extensions import db


class CommissionRule(db.Model):
    __tablename__ = "commission_rules"

    id = db.Column(db.Integer, primary_key=True)

    # Optional scoping; a rule with neither applies platform-wide
    bookable_type = db.Column(db.String(16), nullable=True, index=True)
    owner_id = db.Column(db.Integer, nullable=True, index=True)

    # commission rate as fraction (0.05 = 5%)
    rate = db.Column(db.Numeric(6, 4), nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "bookable_type": self.bookable_type or "",
            "owner_id": int(self.owner_id) if self.owner_id else None,
            "rate": str(self.rate),
            "is_active": bool(self.is_active),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
