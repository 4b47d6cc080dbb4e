from datetime import datetime

from dolci.extensions import db


class WebhookEvent(db.Model):
    """One row per gateway delivery id; a redelivered event finds its row and stops."""

    __tablename__ = "webhook_events"

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="gateway")
    event_id = db.Column(db.String(128), nullable=False, unique=True)
    event_type = db.Column(db.String(64), nullable=False)
    reference = db.Column(db.String(128), nullable=True, index=True)
    outcome = db.Column(db.String(32), nullable=False, default="received")

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "reference": self.reference or "",
            "outcome": self.outcome,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
