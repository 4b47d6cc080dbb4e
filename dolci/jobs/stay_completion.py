from __future__ import annotations

from datetime import datetime

from flask import current_app

from dolci.errors import InvalidTransition, StaleState
from dolci.extensions import db
from dolci.models import Booking, BookingStatus, CustodyState, Payment
from dolci.utils import audit
from dolci.utils.bookings import transition_booking


def complete_finished_stays(*, limit: int = 500, now: datetime | None = None) -> dict:
    """Close out bookings whose escrow was released before the stay ended.

    Only has work to do under the ``after_stay`` completion policy.
    """
    now = now or datetime.utcnow()
    rows = (
        Booking.query.join(Payment, Payment.booking_id == Booking.id)
        .filter(
            Booking.status == BookingStatus.CONFIRME,
            Booking.end_date <= now.date(),
            Payment.custody_state == CustodyState.RELEASED,
        )
        .order_by(Booking.id.asc())
        .limit(int(limit))
        .all()
    )

    completed = 0
    for booking in rows:
        try:
            transition_booking(booking, BookingStatus.TERMINE, now=now)
            audit.record("booking_completed", target_type="booking", target_id=int(booking.id))
            db.session.commit()
            completed += 1
        except (InvalidTransition, StaleState):
            db.session.rollback()
            current_app.logger.warning("booking %s changed while completing, skipped", booking.id)

    return {"scanned": len(rows), "completed": completed}
