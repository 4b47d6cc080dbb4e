"""Wallet ledger: append-only transactions and the balances derived from them.

Nothing here commits. Callers (the coordinator in ``dolci.escrow``) run these
inside their own transaction so a ledger row and the state change that caused
it are persisted together or not at all.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy import case, func, update

from dolci.errors import (
    DuplicateReference,
    InsufficientFunds,
    InvalidAmount,
    InvalidTransition,
    NotFound,
    StaleState,
)
from dolci.extensions import db
from dolci.models import (
    AccountKind,
    TxnCategory,
    TxnStatus,
    TxnType,
    WalletAccount,
    WalletTransaction,
)
from dolci.utils.money import ZERO, to_money


def _now() -> datetime:
    return datetime.utcnow()


def _currency(currency: str | None) -> str:
    return (currency or current_app.config.get("DEFAULT_CURRENCY") or "XOF").upper()


def get_or_create_account(kind: str, owner_ref: int | None = None, currency: str | None = None) -> WalletAccount:
    if kind not in AccountKind.ALL:
        raise InvalidTransition(f"Unknown account kind {kind!r}")
    ref = 0 if kind in AccountKind.PLATFORM else int(owner_ref or 0)
    cur = _currency(currency)
    acct = WalletAccount.query.filter_by(kind=kind, owner_ref=ref, currency=cur).first()
    if acct:
        return acct
    # A concurrent creator makes the flush fail on uq_wallet_account_owner;
    # the coordinator retries and the second pass finds the row.
    acct = WalletAccount(kind=kind, owner_ref=ref, currency=cur, balance=ZERO)
    db.session.add(acct)
    db.session.flush()
    return acct


def escrow_account(currency: str | None = None) -> WalletAccount:
    return get_or_create_account(AccountKind.PLATFORM_ESCROW, currency=currency)


def revenue_account(currency: str | None = None) -> WalletAccount:
    return get_or_create_account(AccountKind.PLATFORM_REVENUE, currency=currency)


def customer_account(user_id: int, currency: str | None = None) -> WalletAccount:
    return get_or_create_account(AccountKind.CUSTOMER, user_id, currency)


def owner_account(user_id: int, currency: str | None = None) -> WalletAccount:
    return get_or_create_account(AccountKind.OWNER, user_id, currency)


def _apply_to_balance(account: WalletAccount, txn_type: str, amount: Decimal) -> None:
    """Move the cached balance with one conditional UPDATE, never read-modify-write."""
    delta = amount if txn_type == TxnType.CREDIT else -amount
    stmt = update(WalletAccount).where(WalletAccount.id == account.id)
    if txn_type == TxnType.DEBIT and not account.allows_negative:
        stmt = stmt.where(WalletAccount.balance >= amount)
    res = db.session.execute(
        stmt.values(balance=WalletAccount.balance + delta, updated_at=_now()),
        execution_options={"synchronize_session": False},
    )
    if res.rowcount != 1:
        raise InsufficientFunds(account_id=int(account.id), amount=str(amount))
    db.session.expire(account, ["balance", "updated_at"])


def _post(
    *,
    account_id: int,
    amount,
    reference: str,
    txn_type: str,
    related_payment_id: int | None,
    category: str,
    description: str,
    status: str = TxnStatus.SUCCESS,
) -> WalletTransaction:
    amt = to_money(amount)
    if amt <= ZERO:
        raise InvalidAmount(amount=str(amount))
    reference = (reference or "").strip()[:160]
    if not reference:
        raise InvalidTransition("A ledger reference is required")

    existing = WalletTransaction.query.filter_by(reference=reference).first()
    if existing:
        if existing.status == TxnStatus.SUCCESS:
            raise DuplicateReference(transaction=existing, reference=reference)
        raise InvalidTransition(
            f"Reference already used by a {existing.status.lower()} transaction",
            reference=reference,
        )

    account = db.session.get(WalletAccount, int(account_id))
    if not account:
        raise NotFound("Wallet account not found", account_id=int(account_id))

    if status == TxnStatus.SUCCESS:
        _apply_to_balance(account, txn_type, amt)

    txn = WalletTransaction(
        account_id=account.id,
        reference=reference,
        amount=amt,
        type=txn_type,
        status=status,
        category=category,
        related_payment_id=int(related_payment_id) if related_payment_id else None,
        description=(description or "")[:240],
        settled_at=_now() if status == TxnStatus.SUCCESS else None,
    )
    db.session.add(txn)
    db.session.flush()
    return txn


def credit(
    account_id: int,
    amount,
    reference: str,
    related_payment_id: int | None = None,
    *,
    category: str = TxnCategory.ADJUSTMENT,
    description: str = "",
) -> WalletTransaction:
    return _post(
        account_id=account_id,
        amount=amount,
        reference=reference,
        txn_type=TxnType.CREDIT,
        related_payment_id=related_payment_id,
        category=category,
        description=description,
    )


def debit(
    account_id: int,
    amount,
    reference: str,
    related_payment_id: int | None = None,
    *,
    category: str = TxnCategory.ADJUSTMENT,
    description: str = "",
) -> WalletTransaction:
    """Debit an account. Customer, owner and revenue accounts cannot go negative;
    the escrow account is bounded by the payments it holds instead."""
    return _post(
        account_id=account_id,
        amount=amount,
        reference=reference,
        txn_type=TxnType.DEBIT,
        related_payment_id=related_payment_id,
        category=category,
        description=description,
    )


def post_once(fn, account_id: int, amount, reference: str, related_payment_id: int | None = None, **kwargs) -> WalletTransaction:
    """Run credit/debit, treating an already-settled reference as done.

    A replay must hit the same account with the same amount; anything else is
    a different operation reusing the key and is refused.
    """
    try:
        return fn(account_id, amount, reference, related_payment_id, **kwargs)
    except DuplicateReference as e:
        prior = e.transaction
        if int(prior.account_id) != int(account_id) or to_money(prior.amount) != to_money(amount):
            raise InvalidTransition("Reference reused for a different posting", reference=prior.reference)
        return prior


def open_pending_credit(
    account_id: int,
    amount,
    reference: str,
    *,
    category: str = TxnCategory.RECHARGE,
    description: str = "",
) -> WalletTransaction:
    """Record a credit awaiting external confirmation (e.g. a wallet recharge)."""
    return _post(
        account_id=account_id,
        amount=amount,
        reference=reference,
        txn_type=TxnType.CREDIT,
        related_payment_id=None,
        category=category,
        description=description,
        status=TxnStatus.PENDING,
    )


def settle_pending(reference: str, *, success: bool) -> WalletTransaction:
    txn = WalletTransaction.query.filter_by(reference=reference).first()
    if not txn:
        raise NotFound("Wallet transaction not found", reference=reference)
    target = TxnStatus.SUCCESS if success else TxnStatus.FAILED
    if txn.is_settled:
        if txn.status == target:
            return txn
        raise InvalidTransition("Transaction already settled", reference=reference, status=txn.status)

    res = db.session.execute(
        update(WalletTransaction)
        .where(WalletTransaction.id == txn.id, WalletTransaction.status == TxnStatus.PENDING)
        .values(status=target, settled_at=_now()),
        execution_options={"synchronize_session": False},
    )
    if res.rowcount != 1:
        raise StaleState(reference=reference)
    if success:
        _apply_to_balance(txn.account, txn.type, to_money(txn.amount))
    db.session.expire(txn)
    return txn


def balance(account_id: int) -> Decimal:
    """Ledger balance as of one statement: settled credits minus settled debits."""
    signed = case(
        (WalletTransaction.type == TxnType.CREDIT, WalletTransaction.amount),
        else_=-WalletTransaction.amount,
    )
    total = (
        db.session.query(func.coalesce(func.sum(signed), 0))
        .filter(
            WalletTransaction.account_id == int(account_id),
            WalletTransaction.status == TxnStatus.SUCCESS,
        )
        .scalar()
    )
    return to_money(total)


def transactions_for(account_id: int, *, limit: int = 50, offset: int = 0) -> list[WalletTransaction]:
    return (
        WalletTransaction.query.filter_by(account_id=int(account_id))
        .order_by(WalletTransaction.id.desc())
        .offset(max(0, int(offset)))
        .limit(max(1, min(int(limit), 200)))
        .all()
    )
