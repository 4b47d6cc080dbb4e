from __future__ import annotations

from datetime import datetime

from sqlalchemy import update

from dolci.errors import AlreadyTerminal, InvalidTransition, StaleState
from dolci.extensions import db
from dolci.models import Booking, BookingStatus, CustodyState, Payment

# PENDING -> HELD -> CAPTURED -> RELEASED
# PENDING|HELD -> REFUSED, CAPTURED -> REFUNDED
_TRANSITIONS = {
    CustodyState.PENDING: (CustodyState.HELD, CustodyState.REFUSED),
    CustodyState.HELD: (CustodyState.CAPTURED, CustodyState.REFUSED),
    CustodyState.CAPTURED: (CustodyState.RELEASED, CustodyState.REFUNDED),
}

_STAMPS = {
    CustodyState.HELD: "held_at",
    CustodyState.CAPTURED: "captured_at",
    CustodyState.RELEASED: "released_at",
    CustodyState.REFUSED: "refused_at",
    CustodyState.REFUNDED: "refunded_at",
}

_EXTRA_FIELDS = ("payment_reference", "failure_reason")


def _now() -> datetime:
    return datetime.utcnow()


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, ())


def transition_payment(payment: Payment, target: str, *, now: datetime | None = None, release_token=None, **fields) -> Payment:
    """Move a payment one step as a compare-and-set on its custody state.

    RELEASED additionally needs the consumed release token for this payment:
    there is no other way to get there.
    """
    now = now or _now()
    current = payment.custody_state
    if current in CustodyState.TERMINAL:
        raise AlreadyTerminal(payment_id=int(payment.id), state=current, target=target)
    if not can_transition(current, target):
        raise InvalidTransition(f"Payment cannot go from {current} to {target}", payment_id=int(payment.id))
    if target == CustodyState.RELEASED:
        if (
            release_token is None
            or release_token.consumed_at is None
            or int(release_token.payment_id) != int(payment.id)
        ):
            raise InvalidTransition("Release requires a consumed release token", payment_id=int(payment.id))

    values = {"custody_state": target, "updated_at": now, _STAMPS[target]: now}
    for key in _EXTRA_FIELDS:
        if fields.get(key) is not None:
            values[key] = str(fields[key])[:240]

    res = db.session.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.custody_state == current)
        .values(**values),
        execution_options={"synchronize_session": False},
    )
    if res.rowcount != 1:
        raise StaleState(payment_id=int(payment.id), expected=current)
    db.session.expire(payment, list(values))
    return payment


def active_payment(booking_id: int) -> Payment | None:
    return (
        Payment.query.filter(
            Payment.booking_id == int(booking_id),
            Payment.custody_state.notin_(CustodyState.TERMINAL),
        )
        .order_by(Payment.id.desc())
        .first()
    )


def current_payment(booking_id: int) -> Payment | None:
    """The active attempt if any, else the most recent one."""
    return active_payment(booking_id) or (
        Payment.query.filter_by(booking_id=int(booking_id)).order_by(Payment.id.desc()).first()
    )


def create_payment(booking: Booking, *, provider: str = "gateway") -> Payment:
    """Open a PENDING attempt for the booking's price. One live attempt per booking."""
    if booking.status != BookingStatus.EN_ATTENTE:
        raise InvalidTransition(f"Booking is {booking.status}, payment cannot be started", booking_id=int(booking.id))
    live = active_payment(int(booking.id))
    if live:
        raise InvalidTransition(
            "Booking already has a payment in progress",
            booking_id=int(booking.id),
            payment_id=int(live.id),
        )
    payment = Payment(
        booking=booking,
        amount=booking.total_price,
        currency=booking.currency,
        provider=(provider or "gateway")[:32],
        custody_state=CustodyState.PENDING,
    )
    db.session.add(payment)
    db.session.flush()
    return payment
