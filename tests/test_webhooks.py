from __future__ import annotations

import json
from decimal import Decimal

from dolci import escrow
from dolci.extensions import db
from dolci.models import AuditLog, CustodyState, Payment, WalletTransaction, WebhookEvent
from dolci.utils.gateway_client import sign


def _event(event_id, event_type, **data):
    return {"id": event_id, "type": event_type, "data": data}


def _captured_event(event_id, payment_id, amount="50000", reference="gw-hook-1"):
    return _event(event_id, "payment.captured", payment_id=payment_id, reference=reference, amount=amount, currency="XOF")


def test_capture_delivered_many_times_holds_once(client, make_booking):
    booking = make_booking()
    payment = escrow.open_payment(booking.id)

    for i in range(3):
        res = client.post("/api/webhooks/gateway", json=_captured_event(f"evt-{i}", payment.id))
        assert res.status_code == 200
        assert res.get_json()["outcome"] == CustodyState.HELD

    assert WalletTransaction.query.filter_by(reference=f"hold:{payment.id}").count() == 1
    assert WebhookEvent.query.count() == 3


def test_same_event_id_is_reported_as_duplicate(client, make_booking):
    booking = make_booking()
    payment = escrow.open_payment(booking.id)
    body = _captured_event("evt-dup", payment.id)

    assert client.post("/api/webhooks/gateway", json=body).get_json()["outcome"] == CustodyState.HELD
    again = client.post("/api/webhooks/gateway", json=body)
    assert again.status_code == 200
    assert again.get_json()["duplicate"] is True
    assert WebhookEvent.query.filter_by(event_id="evt-dup").count() == 1


def test_payment_id_can_come_from_metadata(client, make_booking):
    booking = make_booking()
    payment = escrow.open_payment(booking.id)
    body = _event(
        "evt-meta",
        "payment.captured",
        metadata={"payment_id": payment.id},
        reference="gw-meta",
        amount="50000",
        currency="XOF",
    )
    assert client.post("/api/webhooks/gateway", json=body).get_json()["outcome"] == CustodyState.HELD


def test_amount_mismatch_is_acknowledged_and_recorded(client, make_booking):
    booking = make_booking()
    payment = escrow.open_payment(booking.id)

    res = client.post("/api/webhooks/gateway", json=_captured_event("evt-short", payment.id, amount="100"))

    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is False
    assert body["code"] == "amount_mismatch"
    assert db.session.get(Payment, payment.id).custody_state == CustodyState.PENDING
    assert WebhookEvent.query.filter_by(event_id="evt-short").one().outcome == "amount_mismatch"
    assert AuditLog.query.filter_by(action="amount_mismatch").count() == 1


def test_payment_failed_marks_the_attempt_refused(client, make_booking):
    booking = make_booking()
    payment = escrow.open_payment(booking.id)

    res = client.post(
        "/api/webhooks/gateway",
        json=_event("evt-fail", "payment.failed", payment_id=payment.id, reason="card declined"),
    )

    assert res.get_json()["outcome"] == CustodyState.REFUSED
    assert WalletTransaction.query.count() == 0


def test_unknown_event_types_are_ignored(client):
    res = client.post("/api/webhooks/gateway", json=_event("evt-x", "customer.updated"))
    assert res.status_code == 200
    assert res.get_json()["ignored"] is True
    assert WebhookEvent.query.filter_by(event_id="evt-x").one().outcome == "ignored"


def test_missing_id_or_type_is_rejected(client):
    assert client.post("/api/webhooks/gateway", json={"type": "payment.captured"}).status_code == 400
    assert client.post("/api/webhooks/gateway", json={"id": "evt-1"}).status_code == 400


def test_signature_is_enforced_when_a_secret_is_configured(app, client, make_booking):
    app.config["GATEWAY_SECRET"] = "whsec-test"
    booking = make_booking()
    payment = escrow.open_payment(booking.id)
    raw = json.dumps(_captured_event("evt-signed", payment.id)).encode("utf-8")

    unsigned = client.post("/api/webhooks/gateway", data=raw, content_type="application/json")
    assert unsigned.status_code == 400

    forged = client.post(
        "/api/webhooks/gateway",
        data=raw,
        content_type="application/json",
        headers={"X-Gateway-Signature": "0" * 128},
    )
    assert forged.status_code == 400
    assert db.session.get(Payment, payment.id).custody_state == CustodyState.PENDING

    signed = client.post(
        "/api/webhooks/gateway",
        data=raw,
        content_type="application/json",
        headers={"X-Gateway-Signature": sign(raw)},
    )
    assert signed.status_code == 200
    assert signed.get_json()["outcome"] == CustodyState.HELD


def test_failed_recharge_never_moves_the_balance(client):
    txn = escrow.start_recharge(11, "1500")

    res = client.post("/api/webhooks/gateway", json=_event("evt-rf", "wallet.recharge.failed", reference=txn.reference))

    assert res.get_json()["outcome"] == "FAILED"
    assert db.session.get(WalletTransaction, txn.id).status == "FAILED"
    assert db.session.get(WalletTransaction, txn.id).account.balance == Decimal("0")


def test_non_numeric_payment_id_is_a_gateway_mismatch(client):
    res = client.post("/api/webhooks/gateway", json=_captured_event("evt-abc", "abc", reference="gw-unknown"))

    assert res.status_code == 200
    body = res.get_json()
    assert body["ok"] is False
    assert body["code"] == "gateway_mismatch"
    assert WebhookEvent.query.filter_by(event_id="evt-abc").one().outcome == "gateway_mismatch"
    log = AuditLog.query.filter_by(action="gateway_mismatch").one()
    assert log.target_id is None
    assert log.meta_dict()["payment_id"] == "abc"


def test_non_numeric_payment_id_falls_back_to_the_gateway_reference(client, held):
    _, payment = held
    res = client.post("/api/webhooks/gateway", json=_captured_event("evt-ref", "not-an-id", reference="gw-ref-1"))

    assert res.status_code == 200
    assert res.get_json()["outcome"] == CustodyState.HELD
    assert WalletTransaction.query.filter_by(reference=f"hold:{payment.id}").count() == 1


def test_failure_event_with_a_garbage_payment_id_is_acknowledged(client):
    res = client.post(
        "/api/webhooks/gateway",
        json=_event("evt-fail-abc", "payment.failed", payment_id={"nested": 1}, reason="declined"),
    )
    assert res.status_code == 200
    assert res.get_json()["code"] == "gateway_mismatch"
