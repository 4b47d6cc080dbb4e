from datetime import datetime

from dolci.extensions import db


class AccountKind:
    CUSTOMER = "CUSTOMER"
    OWNER = "OWNER"
    PLATFORM_ESCROW = "PLATFORM_ESCROW"
    PLATFORM_REVENUE = "PLATFORM_REVENUE"

    ALL = (CUSTOMER, OWNER, PLATFORM_ESCROW, PLATFORM_REVENUE)
    PLATFORM = (PLATFORM_ESCROW, PLATFORM_REVENUE)


class WalletAccount(db.Model):
    __tablename__ = "wallet_accounts"
    __table_args__ = (
        db.UniqueConstraint("kind", "owner_ref", "currency", name="uq_wallet_account_owner"),
    )

    id = db.Column(db.Integer, primary_key=True)

    kind = db.Column(db.String(24), nullable=False, index=True)
    # User id for customer/owner accounts; 0 for the platform accounts
    owner_ref = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="XOF")

    # Cache of the ledger sum. Only moved in the transaction that appends the ledger row.
    balance = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    @property
    def allows_negative(self) -> bool:
        return self.kind == AccountKind.PLATFORM_ESCROW

    def to_dict(self):
        return {
            "id": int(self.id),
            "kind": self.kind,
            "owner_ref": int(self.owner_ref) if self.owner_ref else None,
            "currency": self.currency,
            "balance": str(self.balance),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
