from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from dolci.extensions import db
from dolci.models import AccountKind, CustodyState, Payment, WalletAccount
from dolci.utils import audit, ledger
from dolci.utils.money import to_money


def _escrowed_total(currency: str):
    total = (
        db.session.query(func.coalesce(func.sum(Payment.amount), 0))
        .filter(
            Payment.currency == currency,
            Payment.custody_state.in_(CustodyState.IN_ESCROW),
        )
        .scalar()
    )
    return to_money(total)


def reconcile_wallets(*, limit: int = 500) -> dict:
    """Detect wallet anomalies.

    - cached balance vs ledger sum, per account
    - negative balance on an account that must stay non-negative
    - escrow ledger balance vs the payments currently held or captured

    This does NOT auto-correct balances. Anomalies go to the audit log.
    """
    checked = 0
    anomalies = 0
    now = datetime.utcnow()

    accounts = WalletAccount.query.order_by(WalletAccount.id.asc()).limit(int(limit)).all()

    for acct in accounts:
        checked += 1
        try:
            computed = ledger.balance(int(acct.id))
            stored = to_money(acct.balance)

            issues = []
            meta = {
                "account_id": int(acct.id),
                "kind": acct.kind,
                "owner_ref": int(acct.owner_ref or 0),
                "currency": acct.currency,
                "computed_balance": str(computed),
                "stored_balance": str(stored),
                "at": now.isoformat(),
            }
            if computed != stored:
                issues.append("ledger_mismatch")
            if not acct.allows_negative and computed < 0:
                issues.append("negative_balance")
            if acct.kind == AccountKind.PLATFORM_ESCROW:
                escrowed = _escrowed_total(acct.currency)
                meta["escrowed_payments"] = str(escrowed)
                if computed != escrowed:
                    issues.append("escrow_mismatch")

            if not issues:
                continue

            anomalies += 1
            current_app.logger.warning("wallet %s anomaly: %s", acct.id, ", ".join(issues))
            audit.record("wallet_anomaly", target_type="wallet", target_id=int(acct.id), issues=issues, **meta)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception("reconciliation failed for wallet %s", acct.id)

    return {"checked": checked, "anomalies": anomalies}
