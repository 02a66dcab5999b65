import hashlib
import hmac
import json

import pytest

from config import settings
from conftest import auth
from models.payment import AuditAction, PaymentAudit

SECRET = "whsec_test"


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "razorpay_webhook_secret", SECRET)


def captured(order_id, amount_paise=52500, payment_id="pay_Nx01", event="payment.captured"):
    return json.dumps({
        "event": event,
        "payload": {"payment": {"entity": {
            "id": payment_id,
            "amount": amount_paise,
            "notes": {"orderId": str(order_id)},
        }}},
    }).encode()


def post_webhook(client, body: bytes, secret: str = SECRET, signature: str = None):
    if signature is None:
        signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return client.post("/api/v1/webhooks/razorpay", content=body,
                       headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"})


def test_captured_payment_settles_order(client, make_table, place_order, db_session, subscriber):
    table = make_table()
    order = place_order(table.id)

    response = post_webhook(client, captured(order["id"]))

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    settled = client.get(f"/api/v1/orders/{order['id']}", headers=auth("admin")).json()["order"]
    assert settled["payment_status"] == "paid"
    assert settled["order_status"] == "completed"
    assert settled["payment_method"] == "online"

    payment = client.get(f"/api/v1/payments/{order['id']}", headers=auth("admin")).json()["payment"]
    assert payment["transaction_id"] == "pay_Nx01"
    assert payment["amount_received"] == 525.0

    tables = client.get("/api/v1/tables", headers=auth("waiter")).json()["tables"]
    assert tables[0]["status"] == "cleaning"
    assert "payment-success" in subscriber.events

    verified = db_session.query(PaymentAudit).filter(PaymentAudit.order_id == order["id"]).one()
    assert verified.action == AuditAction.PAYMENT_VERIFIED
    assert verified.performed_by == "waiter-1"


def test_replayed_webhook_is_acknowledged(client, place_order):
    order = place_order()
    body = captured(order["id"])
    post_webhook(client, body)

    replay = post_webhook(client, body)
    assert replay.status_code == 200
    assert replay.json() == {"status": "already_processed"}


def test_bad_signature_changes_nothing(client, place_order):
    order = place_order()
    response = post_webhook(client, captured(order["id"]), signature="0" * 64)

    assert response.status_code == 400
    assert response.json()["code"] == "verification_failed"
    state = client.get(f"/api/v1/orders/{order['id']}", headers=auth("admin")).json()["order"]
    assert state["payment_status"] == "pending"


def test_missing_secret_rejects_everything(client, place_order, monkeypatch):
    monkeypatch.setattr(settings, "razorpay_webhook_secret", None)
    order = place_order()
    assert post_webhook(client, captured(order["id"])).status_code == 400


def test_unknown_order_is_acknowledged(client):
    response = post_webhook(client, captured(9999))
    assert response.status_code == 200
    assert response.json() == {"status": "order_not_found"}


def test_other_events_are_ignored(client, place_order):
    order = place_order()
    response = post_webhook(client, captured(order["id"], event="payment.failed"))
    assert response.json() == {"status": "ignored"}


def test_capture_for_cancelled_order_is_flagged(client, place_order):
    order = place_order()
    client.put(f"/api/v1/orders/{order['id']}/cancel", headers=auth("waiter"))

    response = post_webhook(client, captured(order["id"]))
    assert response.json() == {"status": "order_cancelled"}
    state = client.get(f"/api/v1/orders/{order['id']}", headers=auth("admin")).json()["order"]
    assert state["payment_status"] == "pending"
