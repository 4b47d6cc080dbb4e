from __future__ import annotations

from decimal import Decimal

import pytest

from dolci.errors import DuplicateReference, InsufficientFunds, InvalidAmount, InvalidTransition
from dolci.extensions import db
from dolci.models import AccountKind, TxnStatus, WalletAccount, WalletTransaction
from dolci.utils import ledger


def test_credit_then_debit_moves_balance(app):
    acct = ledger.customer_account(5)
    ledger.credit(acct.id, "100.00", "t:1")
    ledger.debit(acct.id, "30.50", "t:2")
    db.session.commit()

    assert ledger.balance(acct.id) == Decimal("69.50")
    assert db.session.get(WalletAccount, acct.id).balance == Decimal("69.50")


def test_non_positive_amount_is_rejected(app):
    acct = ledger.customer_account(5)
    with pytest.raises(InvalidAmount):
        ledger.credit(acct.id, 0, "t:zero")
    with pytest.raises(InvalidAmount):
        ledger.debit(acct.id, "-5", "t:neg")
    assert WalletTransaction.query.count() == 0


def test_duplicate_reference_carries_prior_transaction(app):
    acct = ledger.owner_account(9)
    first = ledger.credit(acct.id, "10", "dup:1")
    db.session.commit()

    with pytest.raises(DuplicateReference) as exc:
        ledger.credit(acct.id, "10", "dup:1")
    assert exc.value.transaction.id == first.id
    assert ledger.balance(acct.id) == Decimal("10.00")


def test_post_once_is_a_no_op_on_replay(app):
    acct = ledger.owner_account(9)
    a = ledger.post_once(ledger.credit, acct.id, "25", "once:1")
    b = ledger.post_once(ledger.credit, acct.id, "25", "once:1")
    db.session.commit()

    assert a.id == b.id
    assert WalletTransaction.query.filter_by(reference="once:1").count() == 1
    assert ledger.balance(acct.id) == Decimal("25.00")


def test_post_once_refuses_a_different_posting_under_the_same_reference(app):
    acct = ledger.owner_account(9)
    ledger.post_once(ledger.credit, acct.id, "25", "once:2")
    with pytest.raises(InvalidTransition):
        ledger.post_once(ledger.credit, acct.id, "26", "once:2")


def test_customer_and_owner_accounts_cannot_go_negative(app):
    customer = ledger.customer_account(5)
    owner = ledger.owner_account(6)
    ledger.credit(customer.id, "10", "seed:c")

    with pytest.raises(InsufficientFunds):
        ledger.debit(customer.id, "10.01", "over:c")
    with pytest.raises(InsufficientFunds):
        ledger.debit(owner.id, "1", "over:o")
    assert ledger.balance(customer.id) == Decimal("10.00")


def test_escrow_account_may_run_negative(app):
    escrow = ledger.escrow_account()
    ledger.debit(escrow.id, "40", "escrow:out")
    db.session.commit()
    assert ledger.balance(escrow.id) == Decimal("-40.00")


def test_platform_accounts_are_singletons_per_currency(app):
    a = ledger.escrow_account("XOF")
    b = ledger.get_or_create_account(AccountKind.PLATFORM_ESCROW, 123, "xof")
    c = ledger.escrow_account("EUR")
    assert a.id == b.id
    assert a.id != c.id
    assert b.owner_ref == 0


def test_pending_credit_settles_once(app):
    acct = ledger.customer_account(5)
    ledger.open_pending_credit(acct.id, "500", "recharge:abc")
    db.session.commit()
    assert ledger.balance(acct.id) == Decimal("0.00")

    txn = ledger.settle_pending("recharge:abc", success=True)
    db.session.commit()
    assert txn.status == TxnStatus.SUCCESS
    assert ledger.balance(acct.id) == Decimal("500.00")

    # Same outcome again is a no-op, the opposite outcome is refused
    ledger.settle_pending("recharge:abc", success=True)
    with pytest.raises(InvalidTransition):
        ledger.settle_pending("recharge:abc", success=False)
    assert ledger.balance(acct.id) == Decimal("500.00")


def test_failed_pending_credit_leaves_balance_untouched(app):
    acct = ledger.customer_account(5)
    ledger.open_pending_credit(acct.id, "500", "recharge:def")
    ledger.settle_pending("recharge:def", success=False)
    db.session.commit()

    assert ledger.balance(acct.id) == Decimal("0.00")
    assert db.session.get(WalletAccount, acct.id).balance == Decimal("0.00")


def test_settled_rows_are_immutable(app):
    acct = ledger.customer_account(5)
    txn = ledger.credit(acct.id, "10", "immutable:1")
    db.session.commit()

    txn.amount = Decimal("999")
    with pytest.raises(InvalidTransition):
        db.session.flush()
    db.session.rollback()

    with pytest.raises(InvalidTransition):
        db.session.delete(db.session.get(WalletTransaction, txn.id))
        db.session.flush()
    db.session.rollback()
    assert ledger.balance(acct.id) == Decimal("10.00")


def test_transactions_are_listed_newest_first(app):
    acct = ledger.customer_account(5)
    for i in range(3):
        ledger.credit(acct.id, "1", f"list:{i}")
    db.session.commit()

    refs = [t.reference for t in ledger.transactions_for(acct.id, limit=2)]
    assert refs == ["list:2", "list:1"]
