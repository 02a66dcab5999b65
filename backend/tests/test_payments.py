import pytest

from conftest import auth
from models.payment import AuditAction, AuditImmutableError, AuditStatus, PaymentAudit


def pay(client, order_id, role="cashier", **body):
    return client.post(f"/api/v1/payments/{order_id}/process", json=body, headers=auth(role))


def audits(db_session, order_id):
    return db_session.query(PaymentAudit).filter(PaymentAudit.order_id == order_id).order_by(PaymentAudit.id).all()


def test_payment_blocked_until_kitchen_ready(client, place_order, db_session):
    order = place_order()
    response = pay(client, order["id"], payment_method="cash", amount_received="600")

    assert response.status_code == 409
    assert response.json()["message"] == "Payment not allowed. Kitchen process not completed."

    failures = audits(db_session, order["id"])
    assert [(a.action, a.status) for a in failures] == [(AuditAction.PAYMENT_FAILED, AuditStatus.FAILED)]
    assert failures[0].performed_by_role == "cashier"


def test_cash_payment_completes_order_and_returns_change(client, make_table, place_order, advance, subscriber,
                                                         db_session):
    table = make_table()
    order = place_order(table.id)
    biryani = next(item for item in order["items"] if item["name"] == "Veg Biryani")
    client.put(f"/api/v1/orders/{order['id']}/items/{biryani['id']}/cancel", headers=auth("waiter"))
    advance(order["id"], "ready")

    response = pay(client, order["id"], payment_method="cash", amount_received="400")

    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Payment processed successfully"
    assert body["payment"]["amount"] == 315.0
    assert body["payment"]["change"] == 85.0
    assert body["order"]["payment_status"] == "paid"
    assert body["order"]["order_status"] == "completed"
    assert body["order"]["kot_status"] == "Closed"
    assert body["order"]["payment_method"] == "cash"
    assert body["order"]["payment_at"] is not None

    tables = client.get("/api/v1/tables", headers=auth("waiter")).json()["tables"]
    assert tables[0]["status"] == "cleaning"
    assert tables[0]["current_order_id"] is None

    for event in ("order-updated", "order-completed", "payment-success"):
        assert event in subscriber.events
    targets = [(p["notification"]["type"], p["roleTarget"]) for p in subscriber.payloads("new-notification")]
    assert ("PAYMENT_SUCCESS", "admin") in targets

    processed = [a for a in audits(db_session, order["id"]) if a.action == AuditAction.PAYMENT_PROCESSED]
    assert processed[0].status == AuditStatus.SUCCESS
    assert processed[0].extra["change"] == "85.00"


def test_repeat_payment_is_idempotent(client, place_order, advance):
    order = place_order()
    advance(order["id"], "ready")
    first = pay(client, order["id"], payment_method="cash", amount_received="525")
    second = pay(client, order["id"], payment_method="cash", amount_received="525")

    assert second.status_code == 200
    assert second.json()["message"] == "Payment already processed"
    assert second.json()["payment"]["id"] == first.json()["payment"]["id"]


def test_cash_must_cover_the_total(client, place_order, advance):
    order = place_order()
    advance(order["id"], "ready")
    response = pay(client, order["id"], payment_method="cash", amount_received="500")
    assert response.status_code == 400
    assert response.json()["message"] == "Insufficient amount. Received 500.00, required 525.00"


def test_electronic_payment_needs_transaction_and_exact_amount(client, place_order, advance):
    order = place_order()
    advance(order["id"], "ready")

    missing_txn = pay(client, order["id"], payment_method="upi", amount_received="525")
    assert missing_txn.status_code == 400
    assert missing_txn.json()["message"] == "Transaction ID is required for UPI payments"

    mismatch = pay(client, order["id"], payment_method="qr", amount_received="530", transaction_id="QR-1")
    assert mismatch.status_code == 400
    assert mismatch.json()["message"] == "Amount mismatch. Paid 530.00, required 525.00"

    ok = pay(client, order["id"], payment_method="credit_card", amount_received="525", transaction_id="CC-77")
    assert ok.status_code == 200
    assert ok.json()["payment"]["transaction_id"] == "CC-77"
    assert ok.json()["payment"]["change"] == 0.0


def test_unknown_method_is_rejected(client, place_order, advance):
    order = place_order()
    advance(order["id"], "ready")
    assert pay(client, order["id"], payment_method="cheque", amount_received="525").status_code == 400
    assert pay(client, order["id"], payment_method="online", amount_received="525",
               transaction_id="x").status_code == 400


def test_waiter_cannot_take_payment(client, place_order, advance):
    order = place_order()
    advance(order["id"], "ready")
    assert pay(client, order["id"], role="waiter", payment_method="cash", amount_received="600").status_code == 403


def test_initiate_and_cancel_payment(client, place_order, advance, db_session):
    order = place_order()
    advance(order["id"], "ready")
    url = f"/api/v1/payments/{order['id']}"

    started = client.post(f"{url}/initiate", headers=auth("cashier"))
    assert started.status_code == 200
    assert started.json()["order"]["payment_status"] == "payment_pending"

    repeat = client.post(f"{url}/initiate", headers=auth("cashier"))
    assert repeat.status_code == 200
    assert repeat.json()["message"] == "Payment already initiated"

    cancelled = client.post(f"{url}/cancel", headers=auth("cashier"))
    assert cancelled.json()["order"]["payment_status"] == "pending"

    nothing_pending = client.post(f"{url}/cancel", headers=auth("cashier"))
    assert nothing_pending.status_code == 409

    actions = [(a.action, a.status) for a in audits(db_session, order["id"])]
    assert actions == [
        (AuditAction.PAYMENT_INITIATED, AuditStatus.SUCCESS),
        (AuditAction.PAYMENT_INITIATED, AuditStatus.SUCCESS),
        (AuditAction.PAYMENT_CANCELLED, AuditStatus.SUCCESS),
        (AuditAction.PAYMENT_CANCELLED, AuditStatus.FAILED),
    ]


def test_initiate_requires_kitchen_completion(client, place_order):
    order = place_order()
    response = client.post(f"/api/v1/payments/{order['id']}/initiate", headers=auth("cashier"))
    assert response.status_code == 409


def test_payment_after_initiate(client, place_order, advance):
    order = place_order()
    advance(order["id"], "ready")
    client.post(f"/api/v1/payments/{order['id']}/initiate", headers=auth("cashier"))

    response = pay(client, order["id"], payment_method="upi", amount_received="525", transaction_id="UPI-9")
    assert response.status_code == 200
    assert response.json()["order"]["payment_status"] == "paid"

    initiate_again = client.post(f"/api/v1/payments/{order['id']}/initiate", headers=auth("cashier"))
    assert initiate_again.status_code == 409


def test_get_payment_by_order(client, place_order, advance):
    order = place_order()
    url = f"/api/v1/payments/{order['id']}"
    assert client.get(url, headers=auth("cashier")).status_code == 404

    advance(order["id"], "ready")
    pay(client, order["id"], payment_method="cash", amount_received="1000")
    payment = client.get(url, headers=auth("admin")).json()["payment"]
    assert payment["amount_received"] == 1000.0
    assert payment["change"] == 475.0
    assert payment["payment_method"] == "cash"
    assert client.get(url, headers=auth("cashier", branch_id="branch-2")).status_code == 404


def test_completing_paid_order_keeps_table_cleaning(client, make_table, place_order, advance):
    table = make_table()
    order = place_order(table.id)
    advance(order["id"], "ready")
    pay(client, order["id"], payment_method="cash", amount_received="525")

    response = client.put(f"/api/v1/orders/{order['id']}/status", json={"status": "completed"},
                          headers=auth("cashier"))
    assert response.status_code == 200
    tables = client.get("/api/v1/tables", headers=auth("waiter")).json()["tables"]
    assert tables[0]["status"] == "cleaning"


def test_audit_rows_cannot_be_changed(client, place_order, db_session):
    order = place_order()
    pay(client, order["id"], payment_method="cash", amount_received="600")
    entry = audits(db_session, order["id"])[0]

    entry.error_message = "rewritten"
    with pytest.raises(AuditImmutableError):
        db_session.flush()
    db_session.rollback()

    db_session.delete(entry)
    with pytest.raises(AuditImmutableError):
        db_session.flush()
    db_session.rollback()
