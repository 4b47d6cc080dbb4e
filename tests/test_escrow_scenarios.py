"""End-to-end flows through the coordinator: capture, accept, scan, cancel."""
from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest

from dolci import escrow
from dolci.errors import (
    AmountMismatch,
    Forbidden,
    GatewayMismatch,
    InvalidTransition,
    ReconciliationFailed,
    StaleState,
    TokenAlreadyConsumed,
)
from dolci.extensions import db
from dolci.models import (
    AuditLog,
    Booking,
    BookingStatus,
    CustodyState,
    Payment,
    QRReleaseToken,
    TxnType,
    WalletTransaction,
)
from dolci.utils import ledger

CUSTOMER_ID = 11
OWNER_ID = 22


def _balances():
    return {
        "escrow": ledger.balance(ledger.escrow_account("XOF").id),
        "owner": ledger.balance(ledger.owner_account(OWNER_ID, "XOF").id),
        "customer": ledger.balance(ledger.customer_account(CUSTOMER_ID, "XOF").id),
        "revenue": ledger.balance(ledger.revenue_account("XOF").id),
    }


def test_full_release_flow(make_booking, now):
    booking = make_booking()
    assert booking.status == BookingStatus.EN_ATTENTE

    payment = escrow.open_payment(booking.id)
    assert payment.custody_state == CustodyState.PENDING

    escrow.on_gateway_captured(payment.id, "gw-1", "50000", "XOF", now=now)
    assert db.session.get(Payment, payment.id).custody_state == CustodyState.HELD
    assert _balances()["escrow"] == Decimal("50000.00")

    payment, token = escrow.on_owner_accepted(payment.id, OWNER_ID, "owner", now=now)
    assert payment.custody_state == CustodyState.CAPTURED
    assert db.session.get(Booking, booking.id).status == BookingStatus.CONFIRME
    assert token.consumed_at is None

    result = escrow.on_qr_scanned(token.token, "staff:33", now=now)

    assert result.amount_released == Decimal("50000.00")
    assert result.owner_credited == Decimal("47500.00")
    assert result.commission == Decimal("2500.00")
    assert result.booking_status == BookingStatus.TERMINE
    assert db.session.get(Payment, payment.id).custody_state == CustodyState.RELEASED

    booking = db.session.get(Booking, booking.id)
    assert booking.status == BookingStatus.TERMINE
    assert booking.owner_amount == Decimal("47500.00")
    assert booking.commission_amount == Decimal("2500.00")

    assert _balances() == {
        "escrow": Decimal("0.00"),
        "owner": Decimal("47500.00"),
        "customer": Decimal("0.00"),
        "revenue": Decimal("2500.00"),
    }


def test_release_conserves_money(captured, now):
    _, payment, token = captured
    before = _balances()["escrow"]

    escrow.on_qr_scanned(token.token, "staff:33", now=now)

    rows = {t.reference: t for t in WalletTransaction.query.filter_by(related_payment_id=payment.id)}
    escrow_debit = rows[f"release:{payment.id}"]
    owner_credit = rows[f"release:{payment.id}:owner"]
    commission = rows[f"release:{payment.id}:commission"]
    assert escrow_debit.type == TxnType.DEBIT
    assert escrow_debit.amount == owner_credit.amount + commission.amount
    assert before - _balances()["escrow"] == Decimal("50000.00")


def test_second_scan_is_already_consumed_and_moves_nothing(captured, now):
    _, _, token = captured
    escrow.on_qr_scanned(token.token, "staff:33", now=now)
    after_first = _balances()
    txn_count = WalletTransaction.query.count()

    with pytest.raises(TokenAlreadyConsumed):
        escrow.on_qr_scanned(token.token, "staff:33", now=now)

    assert _balances() == after_first
    assert WalletTransaction.query.count() == txn_count


def test_cancel_while_pending_creates_no_wallet_rows(make_booking, now):
    booking = make_booking()
    payment = escrow.open_payment(booking.id)

    escrow.on_cancellation_requested(booking.id, CUSTOMER_ID, "customer", "plans changed", now=now)

    assert db.session.get(Booking, booking.id).status == BookingStatus.ANNULE
    assert db.session.get(Payment, payment.id).custody_state == CustodyState.REFUSED
    assert WalletTransaction.query.count() == 0


def test_cancel_after_capture_refunds_the_customer(captured, now):
    booking, payment, token = captured

    escrow.on_cancellation_requested(booking.id, CUSTOMER_ID, "customer", "ill", now=now)

    assert db.session.get(Payment, payment.id).custody_state == CustodyState.REFUNDED
    booking = db.session.get(Booking, booking.id)
    assert booking.status == BookingStatus.ANNULE
    assert booking.cancellation_reason == "ill"
    assert _balances() == {
        "escrow": Decimal("0.00"),
        "owner": Decimal("0.00"),
        "customer": Decimal("50000.00"),
        "revenue": Decimal("0.00"),
    }
    assert WalletTransaction.query.filter(WalletTransaction.reference.like("release:%")).count() == 0
    # The printed receipt can no longer release anything
    assert db.session.get(QRReleaseToken, token.id).expired_at is not None


def test_cancel_while_held_refunds_the_customer(held, now):
    booking, payment = held
    escrow.on_cancellation_requested(booking.id, CUSTOMER_ID, "customer", "", now=now)

    assert db.session.get(Payment, payment.id).custody_state == CustodyState.REFUSED
    assert _balances()["customer"] == Decimal("50000.00")
    assert _balances()["escrow"] == Decimal("0.00")


def test_cancel_after_release_is_refused(captured, now):
    booking, _, token = captured
    escrow.on_qr_scanned(token.token, "staff:33", now=now)
    with pytest.raises(InvalidTransition):
        escrow.on_cancellation_requested(booking.id, 1, "admin", "too late", now=now)


def test_customer_cannot_cancel_a_started_stay_but_staff_can(captured, now):
    booking, payment, _ = captured
    during_stay = now + timedelta(days=11)

    with pytest.raises(InvalidTransition):
        escrow.on_cancellation_requested(booking.id, CUSTOMER_ID, "customer", "", now=during_stay)
    assert db.session.get(Payment, payment.id).custody_state == CustodyState.CAPTURED

    escrow.on_cancellation_requested(booking.id, 33, "staff", "site closed", now=during_stay)
    assert db.session.get(Payment, payment.id).custody_state == CustodyState.REFUNDED


def test_capture_replayed_many_times_holds_once(make_booking, now):
    booking = make_booking()
    payment = escrow.open_payment(booking.id)

    for _ in range(5):
        escrow.on_gateway_captured(payment.id, "gw-9", "50000", "XOF", now=now)

    assert db.session.get(Payment, payment.id).custody_state == CustodyState.HELD
    assert WalletTransaction.query.filter_by(reference=f"hold:{payment.id}").count() == 1
    assert WalletTransaction.query.count() == 1
    assert _balances()["escrow"] == Decimal("50000.00")


def test_capture_replay_after_release_is_a_no_op(captured, now):
    _, payment, token = captured
    escrow.on_qr_scanned(token.token, "staff:33", now=now)
    count = WalletTransaction.query.count()

    escrow.on_gateway_captured(payment.id, "gw-ref-1", "50000", "XOF", now=now)

    assert db.session.get(Payment, payment.id).custody_state == CustodyState.RELEASED
    assert WalletTransaction.query.count() == count


def test_capture_with_wrong_amount_is_flagged_not_applied(make_booking, now):
    booking = make_booking()
    payment = escrow.open_payment(booking.id)

    with pytest.raises(AmountMismatch):
        escrow.on_gateway_captured(payment.id, "gw-2", "49999", "XOF", now=now)
    with pytest.raises(AmountMismatch):
        escrow.on_gateway_captured(payment.id, "gw-2", "50000", "EUR", now=now)

    assert db.session.get(Payment, payment.id).custody_state == CustodyState.PENDING
    assert WalletTransaction.query.count() == 0
    assert AuditLog.query.filter_by(action="amount_mismatch").count() == 2


def test_capture_for_unknown_payment_is_a_gateway_mismatch(app, now):
    with pytest.raises(GatewayMismatch):
        escrow.on_gateway_captured(9999, "gw-x", "100", "XOF", now=now)
    assert AuditLog.query.filter_by(action="gateway_mismatch").count() == 1


def test_capture_with_a_foreign_reference_is_a_gateway_mismatch(held, now):
    _, payment = held
    with pytest.raises(GatewayMismatch):
        escrow.on_gateway_captured(payment.id, "someone-else", "50000", "XOF", now=now)


def test_capture_after_the_attempt_was_refused_needs_review(make_booking, now):
    booking = make_booking()
    payment = escrow.open_payment(booking.id)
    escrow.on_cancellation_requested(booking.id, CUSTOMER_ID, "customer", "", now=now)

    with pytest.raises(GatewayMismatch):
        escrow.on_gateway_captured(payment.id, "gw-late", "50000", "XOF", now=now)
    assert WalletTransaction.query.count() == 0


def test_only_the_listing_owner_can_accept(held, now):
    _, payment = held
    with pytest.raises(Forbidden):
        escrow.on_owner_accepted(payment.id, 999, "owner", now=now)
    with pytest.raises(Forbidden):
        escrow.on_owner_accepted(payment.id, CUSTOMER_ID, "customer", now=now)
    assert db.session.get(Payment, payment.id).custody_state == CustodyState.HELD


def test_accept_before_funds_arrive_is_refused(make_booking, now):
    booking = make_booking()
    payment = escrow.open_payment(booking.id)
    with pytest.raises(InvalidTransition):
        escrow.on_owner_accepted(payment.id, OWNER_ID, "owner", now=now)


def test_owner_refusal_refunds_held_funds(held, now):
    booking, payment = held
    escrow.on_owner_refused(payment.id, OWNER_ID, "owner", "fully booked", now=now)

    assert db.session.get(Payment, payment.id).custody_state == CustodyState.REFUSED
    assert db.session.get(Booking, booking.id).status == BookingStatus.ANNULE
    assert _balances()["customer"] == Decimal("50000.00")
    assert _balances()["escrow"] == Decimal("0.00")


def test_owner_cannot_refuse_after_accepting(captured, now):
    _, payment, _ = captured
    with pytest.raises(InvalidTransition):
        escrow.on_owner_refused(payment.id, OWNER_ID, "owner", "changed mind", now=now)


def test_after_stay_policy_keeps_booking_confirmed_until_the_stay_ends(app, captured, now):
    from dolci.jobs.stay_completion import complete_finished_stays

    app.config["BOOKING_COMPLETION_POLICY"] = "after_stay"
    booking, payment, token = captured

    result = escrow.on_qr_scanned(token.token, "staff:33", now=now)
    assert result.booking_status == BookingStatus.CONFIRME
    assert db.session.get(Payment, payment.id).custody_state == CustodyState.RELEASED

    assert complete_finished_stays(now=now)["completed"] == 0
    after = now + timedelta(days=13)
    assert complete_finished_stays(now=after)["completed"] == 1
    assert db.session.get(Booking, booking.id).status == BookingStatus.TERMINE


def test_commission_policy_is_pluggable(app, captured, now):
    app.config["COMMISSION_POLICY"] = lambda booking, payment: Decimal("1000")
    _, _, token = captured
    result = escrow.on_qr_scanned(token.token, "staff:33", now=now)
    assert result.commission == Decimal("1000.00")
    assert result.owner_credited == Decimal("49000.00")


def test_idempotency_key_returns_the_first_booking(make_booking):
    first = make_booking(idempotency_key="checkout-1")
    again = make_booking(idempotency_key="checkout-1")
    assert first.id == again.id
    assert Booking.query.count() == 1


def test_contention_is_retried_then_surfaced(app):
    calls = []

    def always_stale():
        calls.append(1)
        raise StaleState()

    with pytest.raises(ReconciliationFailed):
        escrow._run_atomic("test_op", always_stale)
    assert len(calls) == app.config["RECONCILE_MAX_ATTEMPTS"]


def test_contention_recovers_on_retry(app):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise StaleState()
        return "done"

    assert escrow._run_atomic("test_op", flaky) == "done"
    assert len(calls) == 2
