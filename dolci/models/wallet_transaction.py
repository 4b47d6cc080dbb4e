from datetime import datetime

from sqlalchemy import event, inspect

from dolci.errors import InvalidTransition
from dolci.extensions import db


class TxnType:
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class TxnStatus:
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class TxnCategory:
    HOLD = "HOLD"
    RELEASE = "RELEASE"
    COMMISSION = "COMMISSION"
    REFUND = "REFUND"
    RECHARGE = "RECHARGE"
    ADJUSTMENT = "ADJUSTMENT"


class WalletTransaction(db.Model):
    __tablename__ = "wallet_transactions"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("wallet_accounts.id"), nullable=False, index=True)

    # Idempotency key: a retried posting reuses it
    reference = db.Column(db.String(160), nullable=False, unique=True, index=True)

    amount = db.Column(db.Numeric(18, 2), nullable=False)
    type = db.Column(db.String(8), nullable=False)  # CREDIT/DEBIT
    status = db.Column(db.String(8), nullable=False, default=TxnStatus.PENDING, index=True)
    category = db.Column(db.String(16), nullable=False, default=TxnCategory.ADJUSTMENT)

    related_payment_id = db.Column(db.Integer, db.ForeignKey("payments.id"), nullable=True, index=True)
    description = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    settled_at = db.Column(db.DateTime, nullable=True)

    account = db.relationship("WalletAccount")

    @property
    def is_settled(self) -> bool:
        return self.status in (TxnStatus.SUCCESS, TxnStatus.FAILED)

    def to_dict(self):
        return {
            "id": int(self.id),
            "account_id": int(self.account_id),
            "reference": self.reference,
            "amount": str(self.amount),
            "type": self.type,
            "status": self.status,
            "transaction_category": self.category,
            "related_payment_id": int(self.related_payment_id) if self.related_payment_id else None,
            "description": self.description or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "settled_at": self.settled_at.isoformat() if self.settled_at else None,
        }


@event.listens_for(WalletTransaction, "before_update")
def _settled_rows_are_immutable(mapper, connection, target):
    hist = inspect(target).attrs.status.history
    previous = hist.deleted[0] if hist.deleted else target.status
    if previous in (TxnStatus.SUCCESS, TxnStatus.FAILED):
        raise InvalidTransition("Settled ledger rows are immutable", reference=target.reference)


@event.listens_for(WalletTransaction, "before_delete")
def _ledger_rows_are_never_deleted(mapper, connection, target):
    raise InvalidTransition("Ledger rows cannot be deleted", reference=target.reference)
