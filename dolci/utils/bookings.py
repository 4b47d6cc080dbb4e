from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import or_, select, update

from dolci.errors import Forbidden, InvalidTransition, StaleState, ValidationFailed
from dolci.extensions import db
from dolci.models import Booking, BookableKind, BookingStatus, CustodyState, Payment
from dolci.models.booking import PAYMENT_STATUS_LABELS
from dolci.utils.money import ZERO, to_money

# EN_ATTENTE -> CONFIRME -> TERMINE, and EN_ATTENTE|CONFIRME -> ANNULE
_TRANSITIONS = {
    BookingStatus.EN_ATTENTE: (BookingStatus.CONFIRME, BookingStatus.ANNULE),
    BookingStatus.CONFIRME: (BookingStatus.TERMINE, BookingStatus.ANNULE),
}

# Custody state the booking's payment must be in for the move
_PAYMENT_GUARDS = {
    BookingStatus.CONFIRME: CustodyState.CAPTURED,
    BookingStatus.TERMINE: CustodyState.RELEASED,
}

_STAMPS = {
    BookingStatus.CONFIRME: "confirmed_at",
    BookingStatus.TERMINE: "completed_at",
    BookingStatus.ANNULE: "cancelled_at",
}

STAFF_ROLES = ("admin", "staff")


def _now() -> datetime:
    return datetime.utcnow()


def generate_reference() -> str:
    return f"DR-{uuid.uuid4().hex[:10].upper()}"


def can_transition(current: str, target: str) -> bool:
    return target in _TRANSITIONS.get(current, ())


def transition_booking(booking: Booking, target: str, *, payment=None, now: datetime | None = None, reason: str = "") -> Booking:
    """Move a booking one step, as a compare-and-set on its current status."""
    now = now or _now()
    current = booking.status
    if current in BookingStatus.TERMINAL:
        raise InvalidTransition(f"Booking is already {current}", booking_id=int(booking.id), target=target)
    if not can_transition(current, target):
        raise InvalidTransition(f"Booking cannot go from {current} to {target}", booking_id=int(booking.id))

    required = _PAYMENT_GUARDS.get(target)
    if required:
        payment = payment or booking.latest_payment
        if payment is None or payment.custody_state != required:
            raise InvalidTransition(
                f"Booking can only become {target} once its payment is {required}",
                booking_id=int(booking.id),
                payment_state=payment.custody_state if payment is not None else None,
            )

    values = {"status": target, "updated_at": now, _STAMPS[target]: now}
    if target == BookingStatus.ANNULE:
        values["cancellation_reason"] = (reason or "")[:240] or None

    res = db.session.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == current)
        .values(**values),
        execution_options={"synchronize_session": False},
    )
    if res.rowcount != 1:
        raise StaleState(booking_id=int(booking.id), expected=current)
    db.session.expire(booking, list(values))
    return booking


def create_booking(
    *,
    customer_id: int,
    owner_id: int,
    bookable_type: str,
    bookable_id: int,
    start_date: date,
    end_date: date,
    guests: int,
    total_price,
    currency: str,
    notes: str = "",
    idempotency_key: str | None = None,
) -> Booking:
    kind = (bookable_type or "").strip().upper()
    if kind not in BookableKind.ALL:
        raise ValidationFailed(f"Unknown bookable type {bookable_type!r}")
    if not start_date or not end_date or end_date < start_date:
        raise ValidationFailed("end_date must not be before start_date")
    if int(guests or 0) < 1:
        raise ValidationFailed("At least one guest is required")
    price = to_money(total_price)
    if price <= ZERO:
        raise ValidationFailed("total_price must be positive")

    ref = generate_reference()
    while Booking.query.filter_by(booking_reference=ref).first():
        ref = generate_reference()

    booking = Booking(
        customer_id=int(customer_id),
        owner_id=int(owner_id),
        bookable_type=kind,
        bookable_id=int(bookable_id),
        start_date=start_date,
        end_date=end_date,
        guests=int(guests),
        booking_reference=ref,
        idempotency_key=(idempotency_key or None),
        status=BookingStatus.EN_ATTENTE,
        total_price=price,
        currency=(currency or "XOF").upper(),
        notes=notes or None,
    )
    db.session.add(booking)
    db.session.flush()
    return booking


def ensure_can_cancel(booking: Booking, payment, *, actor_id: int | None, actor_role: str, now: datetime | None = None) -> None:
    """Customers cancel until capture, or after capture while the stay has not
    started; staff and admins until the booking is finished."""
    now = now or _now()
    if booking.status in BookingStatus.TERMINAL:
        raise InvalidTransition(f"Booking is already {booking.status}", booking_id=int(booking.id))
    state = payment.custody_state if payment is not None else None
    if state == CustodyState.RELEASED:
        raise InvalidTransition("Funds were already released to the establishment", booking_id=int(booking.id))

    role = (actor_role or "").strip().lower()
    if role in STAFF_ROLES:
        return
    if role != "customer" or actor_id is None or int(actor_id) != int(booking.customer_id):
        raise Forbidden("Only the customer or an administrator can cancel this booking")
    if state in (None, CustodyState.PENDING, CustodyState.HELD, CustodyState.REFUSED, CustodyState.REFUNDED):
        return
    if state == CustodyState.CAPTURED and now.date() < booking.start_date:
        return
    raise InvalidTransition("The stay has already started, contact support to cancel", booking_id=int(booking.id))


def list_bookings(
    *,
    customer_id: int | None = None,
    owner_id: int | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Booking], int]:
    """Newest first. ``payment_status`` filters on the label of the latest payment attempt."""
    q = Booking.query
    if customer_id is not None:
        q = q.filter(Booking.customer_id == int(customer_id))
    if owner_id is not None:
        q = q.filter(Booking.owner_id == int(owner_id))
    if status:
        q = q.filter(Booking.status == status.strip().upper())
    if payment_status:
        label = payment_status.strip().upper()
        latest_state = (
            select(Payment.custody_state)
            .where(Payment.booking_id == Booking.id)
            .order_by(Payment.id.desc())
            .limit(1)
            .correlate(Booking)
            .scalar_subquery()
        )
        states = [s for s, lbl in PAYMENT_STATUS_LABELS.items() if lbl == label]
        cond = latest_state.in_(states)
        if label == "EN_ATTENTE":
            cond = or_(cond, latest_state.is_(None))
        q = q.filter(cond)

    total = q.count()
    items = q.order_by(Booking.id.desc()).offset((page - 1) * per_page).limit(per_page).all()
    return items, total
