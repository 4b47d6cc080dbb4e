from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from dolci import create_app, escrow
from dolci.extensions import db
from dolci.utils.jwt_utils import create_access_token

CUSTOMER_ID = 11
OWNER_ID = 22
STAFF_ID = 33
ADMIN_ID = 1


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "ENV": "test",
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "SECRET_KEY": "test-secret-key-for-dolci",
        "GATEWAY_SECRET": "",
        "GATEWAY_BASE_URL": "",
        "COMMISSION_RATE": 0.05,
        "BOOKING_COMPLETION_POLICY": "on_release",
        "RECONCILE_MAX_ATTEMPTS": 3,
        "RECONCILE_BACKOFF_SECONDS": 0,
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_header(app):
    def _make(actor_id: int, role: str) -> dict:
        return {"Authorization": f"Bearer {create_access_token(actor_id, role)}"}

    return _make


@pytest.fixture
def now():
    return datetime.utcnow().replace(microsecond=0)


@pytest.fixture
def make_booking(app, now):
    """Open a booking for a stay starting ten days from now."""

    def _make(**overrides):
        fields = {
            "customer_id": CUSTOMER_ID,
            "owner_id": OWNER_ID,
            "bookable_type": "HOTEL",
            "bookable_id": 7,
            "start_date": (now + timedelta(days=10)).date(),
            "end_date": (now + timedelta(days=12)).date(),
            "guests": 2,
            "total_price": "50000",
            "currency": "XOF",
        }
        fields.update(overrides)
        booking, _ = escrow.open_booking(**fields)
        return booking

    return _make


@pytest.fixture
def held(make_booking, now):
    """A booking whose payment the gateway has captured into escrow."""
    booking = make_booking()
    payment = escrow.open_payment(booking.id)
    escrow.on_gateway_captured(payment.id, "gw-ref-1", "50000", "XOF", now=now)
    return booking, payment


@pytest.fixture
def captured(held, now):
    """Owner accepted: payment CAPTURED, booking CONFIRME, release token live."""
    booking, payment = held
    payment, token = escrow.on_owner_accepted(payment.id, OWNER_ID, "owner", now=now)
    return booking, payment, token
