"""Escrow coordinator: one entry point per business event.

Each event loads what it needs by id, sequences the booking, payment, token
and ledger steps, and commits once. Nothing a reader can see is ever half
applied. Compare-and-set misses and database contention are retried with
jittered exponential backoff; domain errors go straight back to the caller.
"""
from __future__ import annotations

import random
import time
import uuid
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from dolci.errors import (
    AmountMismatch,
    Forbidden,
    GatewayMismatch,
    IntegrityFailure,
    NotFound,
    ReconciliationFailed,
    StaleState,
    TokenError,
    ValidationFailed,
)
from dolci.extensions import db
from dolci.models import Booking, BookingStatus, CustodyState, Payment, TxnCategory
from dolci.utils import audit, ledger, release_tokens
from dolci.utils.bookings import STAFF_ROLES, create_booking, ensure_can_cancel, transition_booking
from dolci.utils.money import to_money
from dolci.utils.payments import create_payment, current_payment, transition_payment

_CONTENTION = (StaleState, OperationalError, IntegrityError)


def _now() -> datetime:
    return datetime.utcnow()


def _actor(actor_id, actor_role) -> str:
    return f"{(actor_role or 'unknown').lower()}:{actor_id}"


def _run_atomic(op_name: str, fn, *args, **kwargs):
    cfg = current_app.config
    attempts = max(1, int(cfg.get("RECONCILE_MAX_ATTEMPTS", 3)))
    base = float(cfg.get("RECONCILE_BACKOFF_SECONDS", 0.05))
    last_error = None

    for attempt in range(1, attempts + 1):
        try:
            result = fn(*args, **kwargs)
            db.session.commit()
            return result
        except IntegrityFailure as e:
            db.session.rollback()
            current_app.logger.error("%s rejected: %s %s", op_name, e.code, e.details)
            _record_integrity_failure(op_name, e)
            raise
        except _CONTENTION as e:
            db.session.rollback()
            last_error = e
            current_app.logger.warning("%s attempt %s/%s lost a race: %s", op_name, attempt, attempts, type(e).__name__)
            if attempt < attempts:
                time.sleep(base * (2 ** (attempt - 1)) * (1 + random.random()))
        except Exception:
            db.session.rollback()
            raise

    current_app.logger.error("%s failed after %s attempts", op_name, attempts)
    raise ReconciliationFailed(operation=op_name, attempts=attempts) from last_error


def _record_integrity_failure(op_name: str, e: IntegrityFailure) -> None:
    try:
        audit.record(
            e.code,
            target_type="payment",
            target_id=_as_id(e.details.get("payment_id")),
            operation=op_name,
            message=e.message,
            **e.details,
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("could not write audit row for %s", op_name)


def _as_id(value) -> int | None:
    """Row id from an untrusted value (webhook payloads, URL fragments)."""
    if isinstance(value, bool):
        return None
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _payment(payment_id) -> Payment:
    pid = _as_id(payment_id)
    payment = db.session.get(Payment, pid) if pid else None
    if payment is None:
        raise NotFound("Payment not found", payment_id=payment_id)
    return payment


def _booking(booking_id) -> Booking:
    bid = _as_id(booking_id)
    booking = db.session.get(Booking, bid) if bid else None
    if booking is None:
        raise NotFound("Booking not found", booking_id=booking_id)
    return booking


def _ensure_owner_or_staff(booking: Booking, actor_id, actor_role) -> None:
    role = (actor_role or "").strip().lower()
    if role in STAFF_ROLES:
        return
    if role == "owner" and actor_id is not None and int(actor_id) == int(booking.owner_id):
        return
    raise Forbidden("Only the establishment owner can do this", booking_id=int(booking.id))


def _refund_to_customer(payment: Payment, booking: Booking) -> None:
    """Return escrowed funds: escrow debit and customer credit, both keyed on the payment."""
    pid = int(payment.id)
    escrow = ledger.escrow_account(payment.currency)
    customer = ledger.customer_account(int(booking.customer_id), payment.currency)
    ledger.post_once(
        ledger.debit,
        escrow.id,
        payment.amount,
        f"refund:{pid}",
        pid,
        category=TxnCategory.REFUND,
        description=f"Escrow refund for booking {booking.booking_reference}",
    )
    ledger.post_once(
        ledger.credit,
        customer.id,
        payment.amount,
        f"refund:{pid}:customer",
        pid,
        category=TxnCategory.REFUND,
        description=f"Refund for booking {booking.booking_reference}",
    )


# Bookings and payment attempts

def open_booking(*, idempotency_key: str | None = None, **fields) -> tuple[Booking, bool]:
    """Create a booking. Returns ``(booking, created)``; a repeated
    idempotency key hands back the first booking."""
    key = (idempotency_key or "").strip()[:128] or None

    def _op():
        if key:
            existing = Booking.query.filter_by(idempotency_key=key).first()
            if existing:
                if int(existing.customer_id) != int(fields.get("customer_id") or 0):
                    raise ValidationFailed("Idempotency-Key already used by another customer")
                return existing, False
        booking = create_booking(idempotency_key=key, **fields)
        audit.record(
            "booking_created",
            actor=_actor(booking.customer_id, "customer"),
            target_type="booking",
            target_id=int(booking.id),
            booking_reference=booking.booking_reference,
            total_price=str(booking.total_price),
        )
        return booking, True

    booking, created = _run_atomic("open_booking", _op)
    if created:
        current_app.logger.info("booking %s created for customer %s", booking.booking_reference, booking.customer_id)
    return booking, created


def open_payment(booking_id: int, provider: str = "gateway") -> Payment:
    def _op():
        booking = _booking(booking_id)
        payment = create_payment(booking, provider=provider)
        audit.record(
            "payment_opened",
            target_type="payment",
            target_id=int(payment.id),
            booking_id=int(booking.id),
            amount=str(payment.amount),
        )
        return payment

    payment = _run_atomic("open_payment", _op)
    current_app.logger.info("payment %s opened for booking %s", payment.id, booking_id)
    return payment


# Gateway callbacks

def _resolve_gateway_payment(payment_id, gateway_reference: str) -> Payment:
    pid = _as_id(payment_id)
    payment = db.session.get(Payment, pid) if pid else None
    if payment is None and gateway_reference:
        payment = Payment.query.filter_by(payment_reference=gateway_reference).first()
    if payment is None:
        raise GatewayMismatch(payment_id=payment_id, gateway_reference=gateway_reference)
    if gateway_reference:
        if payment.payment_reference and payment.payment_reference != gateway_reference:
            raise GatewayMismatch(
                "Gateway reference does not belong to this payment",
                payment_id=int(payment.id),
                gateway_reference=gateway_reference,
            )
        other = Payment.query.filter(
            Payment.payment_reference == gateway_reference,
            Payment.id != payment.id,
        ).first()
        if other is not None:
            raise GatewayMismatch(
                "Gateway reference already belongs to another payment",
                payment_id=int(payment.id),
                gateway_reference=gateway_reference,
            )
    return payment


def on_gateway_captured(payment_id, gateway_reference: str, amount, currency: str | None = None, *, now: datetime | None = None) -> Payment:
    """Funds reached platform custody: PENDING -> HELD and credit escrow.

    Replays of a capture the payment has already moved past are no-ops.
    """
    ref = (gateway_reference or "").strip()[:128]

    def _op():
        when = now or _now()
        payment = _resolve_gateway_payment(payment_id, ref)
        pid = int(payment.id)
        state = payment.custody_state

        if state != CustodyState.PENDING:
            if state == CustodyState.REFUSED and payment.held_at is None:
                # Refused before funds arrived; money at the gateway needs a human
                raise GatewayMismatch("Capture received for a refused payment", payment_id=pid, gateway_reference=ref)
            return payment, False

        captured = to_money(amount)
        if captured != to_money(payment.amount):
            raise AmountMismatch(payment_id=pid, expected=str(payment.amount), received=str(captured))
        if currency and currency.strip().upper() != (payment.currency or "").upper():
            raise AmountMismatch(
                "Captured currency does not match the recorded payment",
                payment_id=pid,
                expected=payment.currency,
                received=currency,
            )

        transition_payment(payment, CustodyState.HELD, now=when, payment_reference=ref or None)
        escrow = ledger.escrow_account(payment.currency)
        ledger.post_once(
            ledger.credit,
            escrow.id,
            payment.amount,
            f"hold:{pid}",
            pid,
            category=TxnCategory.HOLD,
            description=f"Escrow hold for booking {payment.booking.booking_reference}",
        )
        audit.record(
            "escrow_hold",
            actor="gateway",
            target_type="payment",
            target_id=pid,
            amount=str(payment.amount),
            gateway_reference=ref,
        )
        return payment, True

    payment, applied = _run_atomic("gateway_captured", _op)
    if applied:
        current_app.logger.info("payment %s held in escrow (%s %s)", payment.id, payment.amount, payment.currency)
    else:
        current_app.logger.warning("capture replay for payment %s ignored (state %s)", payment.id, payment.custody_state)
    return payment


def on_gateway_failed(payment_id, gateway_reference: str = "", reason: str = "", *, now: datetime | None = None) -> Payment:
    """Checkout failed at the gateway. The booking stays open for a new attempt."""
    ref = (gateway_reference or "").strip()[:128]

    def _op():
        when = now or _now()
        payment = _resolve_gateway_payment(payment_id, ref)
        state = payment.custody_state
        if state == CustodyState.REFUSED:
            return payment, False
        if state != CustodyState.PENDING:
            raise GatewayMismatch(
                "Failure received for a payment already in custody",
                payment_id=int(payment.id),
                state=state,
            )
        transition_payment(payment, CustodyState.REFUSED, now=when, failure_reason=reason or "gateway_failed")
        audit.record(
            "payment_failed",
            actor="gateway",
            target_type="payment",
            target_id=int(payment.id),
            reason=reason,
            gateway_reference=ref,
        )
        return payment, True

    payment, applied = _run_atomic("gateway_failed", _op)
    if applied:
        current_app.logger.info("payment %s refused by gateway: %s", payment.id, reason or "-")
    else:
        current_app.logger.warning("failure replay for payment %s ignored", payment.id)
    return payment


# Owner decisions

def on_owner_accepted(payment_id, actor_id, actor_role: str = "owner", *, now: datetime | None = None):
    """HELD -> CAPTURED, booking CONFIRME, and a release token for the receipt.

    Returns ``(payment, token)``. Accepting again returns the live token, or
    a fresh one if the previous has been invalidated.
    """

    def _op():
        when = now or _now()
        payment = _payment(payment_id)
        booking = payment.booking
        _ensure_owner_or_staff(booking, actor_id, actor_role)

        if payment.custody_state == CustodyState.CAPTURED:
            token = release_tokens.active_token(int(payment.id), now=when) or release_tokens.mint(payment, now=when)
            return payment, token, False

        transition_payment(payment, CustodyState.CAPTURED, now=when)
        transition_booking(booking, BookingStatus.CONFIRME, payment=payment, now=when)
        token = release_tokens.mint(payment, now=when)
        audit.record(
            "booking_accepted",
            actor=_actor(actor_id, actor_role),
            target_type="payment",
            target_id=int(payment.id),
            booking_reference=booking.booking_reference,
            token_id=int(token.id),
            token_expires_at=token.expires_at.isoformat(),
        )
        return payment, token, True

    payment, token, applied = _run_atomic("owner_accepted", _op)
    if applied:
        current_app.logger.info("payment %s captured, booking %s confirmed", payment.id, payment.booking_id)
    else:
        current_app.logger.warning("accept replay for payment %s", payment.id)
    return payment, token


def on_owner_refused(payment_id, actor_id, actor_role: str = "owner", reason: str = "", *, now: datetime | None = None) -> Payment:
    """Owner declines before accepting. Held funds go back to the customer."""

    def _op():
        when = now or _now()
        payment = _payment(payment_id)
        booking = payment.booking
        _ensure_owner_or_staff(booking, actor_id, actor_role)
        was_held = payment.custody_state == CustodyState.HELD

        transition_payment(payment, CustodyState.REFUSED, now=when, failure_reason=reason or "refused_by_owner")
        if was_held:
            _refund_to_customer(payment, booking)
        transition_booking(booking, BookingStatus.ANNULE, payment=payment, now=when, reason=reason or "refused_by_owner")
        audit.record(
            "booking_refused",
            actor=_actor(actor_id, actor_role),
            target_type="payment",
            target_id=int(payment.id),
            refunded=was_held,
            reason=reason,
        )
        return payment

    payment = _run_atomic("owner_refused", _op)
    current_app.logger.info("payment %s refused by %s", payment.id, _actor(actor_id, actor_role))
    return payment


# Release

def on_qr_scanned(raw_input: str, scanner_identity: str, *, now: datetime | None = None) -> release_tokens.ReleaseResult:
    def _op():
        result = release_tokens.scan(raw_input, scanner_identity, now=now or _now())
        audit.record(
            "escrow_released",
            actor=scanner_identity,
            target_type="payment",
            target_id=result.payment_id,
            **result.to_dict(),
        )
        return result

    try:
        result = _run_atomic("qr_scanned", _op)
    except TokenError as e:
        current_app.logger.warning("scan by %s rejected: %s", scanner_identity, e.code)
        raise
    current_app.logger.info(
        "escrow released for %s: %s to owner, %s commission",
        result.booking_reference,
        result.owner_credited,
        result.commission,
    )
    return result


def on_admin_release(payment_id, admin_identity: str, reason: str, *, now: datetime | None = None) -> release_tokens.ReleaseResult:
    if not (reason or "").strip():
        raise ValidationFailed("A reason is required for a manual release")

    def _op():
        payment = _payment(payment_id)
        return release_tokens.override_release(payment, admin_identity, reason.strip(), now=now or _now())

    result = _run_atomic("admin_release", _op)
    current_app.logger.warning("manual escrow release of payment %s by %s", result.payment_id, admin_identity)
    return result


# Cancellation

def on_cancellation_requested(booking_id, actor_id, actor_role: str, reason: str = "", *, now: datetime | None = None) -> Booking:
    """Cancel a booking and unwind its payment.

    PENDING attempts are simply refused. HELD funds are refunded. CAPTURED
    funds are refunded after the release token is invalidated, so a receipt
    printed earlier can no longer release anything.
    """

    def _op():
        when = now or _now()
        booking = _booking(booking_id)
        payment = current_payment(int(booking.id))
        ensure_can_cancel(booking, payment, actor_id=actor_id, actor_role=actor_role, now=when)
        state = payment.custody_state if payment is not None else None

        if state == CustodyState.PENDING:
            transition_payment(payment, CustodyState.REFUSED, now=when, failure_reason="booking_cancelled")
        elif state == CustodyState.HELD:
            transition_payment(payment, CustodyState.REFUSED, now=when, failure_reason="booking_cancelled")
            _refund_to_customer(payment, booking)
        elif state == CustodyState.CAPTURED:
            release_tokens.invalidate_active_tokens(int(payment.id), now=when)
            transition_payment(payment, CustodyState.REFUNDED, now=when)
            _refund_to_customer(payment, booking)

        transition_booking(booking, BookingStatus.ANNULE, payment=payment, now=when, reason=reason)
        audit.record(
            "booking_cancelled",
            actor=_actor(actor_id, actor_role),
            target_type="booking",
            target_id=int(booking.id),
            payment_id=int(payment.id) if payment is not None else None,
            payment_state=state,
            refunded=state in CustodyState.IN_ESCROW,
            reason=reason,
        )
        return booking, state

    booking, state = _run_atomic("cancellation_requested", _op)
    current_app.logger.info("booking %s cancelled (payment was %s)", booking.booking_reference, state or "none")
    return booking


# Wallet recharge

def start_recharge(customer_id: int, amount, currency: str | None = None):
    """Open a pending credit the gateway settles later through a webhook."""
    reference = f"recharge:{uuid.uuid4().hex}"

    def _op():
        account = ledger.customer_account(int(customer_id), currency)
        txn = ledger.open_pending_credit(
            account.id,
            amount,
            reference,
            category=TxnCategory.RECHARGE,
            description="Wallet recharge",
        )
        audit.record(
            "wallet_recharge_started",
            actor=_actor(customer_id, "customer"),
            target_type="wallet",
            target_id=int(account.id),
            reference=reference,
            amount=str(txn.amount),
        )
        return txn

    txn = _run_atomic("start_recharge", _op)
    current_app.logger.info("wallet recharge %s opened for customer %s", reference, customer_id)
    return txn


def settle_recharge(reference: str, success: bool):
    def _op():
        txn = ledger.settle_pending(reference, success=bool(success))
        audit.record(
            "wallet_recharge_settled",
            actor="gateway",
            target_type="wallet",
            target_id=int(txn.account_id),
            reference=reference,
            status=txn.status,
        )
        return txn

    txn = _run_atomic("settle_recharge", _op)
    current_app.logger.info("wallet recharge %s settled as %s", reference, txn.status)
    return txn
