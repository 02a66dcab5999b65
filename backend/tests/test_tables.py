import asyncio
from datetime import timedelta

from conftest import SCOPE, RecordingSubscriber, auth
from core.cache import ResponseCache
from core.database import utcnow
from models.order import Order, OrderStatus
from models.table import RestaurantTable, TableStatus
from services import tables as table_service
from services.sweeper import sweep_once
from utils.broadcast import BroadcastBus


def table_url(table_id, action=""):
    return f"/api/v1/tables/{table_id}" + (f"/{action}" if action else "")


def test_admin_creates_tables_with_unique_numbers(client):
    created = client.post("/api/v1/tables", json={"number": 3, "capacity": 4}, headers=auth("admin"))
    assert created.status_code == 201
    assert created.json()["table"]["status"] == "available"

    duplicate = client.post("/api/v1/tables", json={"number": 3, "capacity": 2}, headers=auth("admin"))
    assert duplicate.status_code == 409
    assert duplicate.json()["message"] == "Table number already exists in this branch"

    elsewhere = client.post("/api/v1/tables", json={"number": 3, "capacity": 2},
                            headers=auth("admin", branch_id="branch-2"))
    assert elsewhere.status_code == 201


def test_waiter_cannot_create_tables(client):
    response = client.post("/api/v1/tables", json={"number": 1, "capacity": 4}, headers=auth("waiter"))
    assert response.status_code == 403


def test_reserve_and_release(client, make_table, subscriber):
    table = make_table()

    reserved = client.put(table_url(table.id, "reserve"), headers=auth("waiter", user_id="w-42"))
    assert reserved.status_code == 200
    body = reserved.json()["table"]
    assert body["status"] == "reserved"
    assert body["locked_by"] == "w-42"
    assert body["reserved_at"] is not None

    again = client.put(table_url(table.id, "reserve"), headers=auth("waiter"))
    assert again.status_code == 409

    released = client.put(table_url(table.id, "release"), headers=auth("waiter")).json()["table"]
    assert released["status"] == "available"
    assert released["locked_by"] is None
    assert released["reserved_at"] is None

    updates = subscriber.payloads("table-updated")
    assert [u["status"] for u in updates] == ["reserved", "available"]


def test_release_only_applies_to_reserved_tables(client, make_table):
    table = make_table()
    assert client.put(table_url(table.id, "release"), headers=auth("waiter")).status_code == 409


def test_order_on_reserved_table_occupies_it(client, make_table, place_order):
    table = make_table()
    client.put(table_url(table.id, "reserve"), headers=auth("waiter"))
    order = place_order(table.id)

    state = client.get("/api/v1/tables", headers=auth("waiter")).json()["tables"][0]
    assert state["status"] == "occupied"
    assert state["current_order_id"] == order["id"]
    assert state["reserved_at"] is None


def test_clean_only_from_cleaning(client, make_table, db_session):
    table = make_table()
    assert client.put(table_url(table.id, "clean"), headers=auth("waiter")).status_code == 409

    table.status = TableStatus.CLEANING
    db_session.commit()
    cleaned = client.put(table_url(table.id, "clean"), headers=auth("waiter"))
    assert cleaned.status_code == 200
    assert cleaned.json()["table"]["status"] == "available"


def test_generic_update_follows_transitions(client, make_table):
    table = make_table()
    url = table_url(table.id)

    assert client.put(url, json={"status": "occupied"}, headers=auth("waiter")).status_code == 409
    assert client.put(url, json={"status": "reserved"}, headers=auth("waiter")).status_code == 200
    assert client.put(url, json={"status": "occupied"}, headers=auth("waiter")).status_code == 200
    assert client.put(url, json={"status": "billing"}, headers=auth("cashier")).status_code == 200
    assert client.put(url, json={"status": "available"}, headers=auth("waiter")).status_code == 409

    resized = client.put(url, json={"capacity": 8}, headers=auth("admin")).json()["table"]
    assert resized["capacity"] == 8
    assert resized["status"] == "billing"


def test_force_reset_is_admin_only(client, make_table, place_order):
    table = make_table()
    place_order(table.id)

    assert client.put(table_url(table.id, "force-reset"), headers=auth("waiter")).status_code == 403
    reset = client.put(table_url(table.id, "force-reset"), headers=auth("admin")).json()["table"]
    assert reset["status"] == "available"
    assert reset["current_order_id"] is None


def test_delete_only_available_tables(client, make_table):
    table = make_table()
    client.put(table_url(table.id, "reserve"), headers=auth("waiter"))
    assert client.delete(table_url(table.id), headers=auth("admin")).status_code == 409

    client.put(table_url(table.id, "release"), headers=auth("waiter"))
    assert client.delete(table_url(table.id), headers=auth("admin")).status_code == 200
    assert client.get("/api/v1/tables", headers=auth("admin")).json()["tables"] == []


def test_tables_are_scoped_to_branch(client, make_table):
    table = make_table()
    response = client.put(table_url(table.id, "reserve"), headers=auth("waiter", branch_id="branch-2"))
    assert response.status_code == 404


def test_reading_tables_repairs_stale_occupancy(client, make_table, place_order, db_session):
    table = make_table()
    order = place_order(table.id)

    # Order cancelled without the table cascade
    row = db_session.get(Order, order["id"])
    row.order_status = OrderStatus.CANCELLED
    db_session.commit()

    state = client.get("/api/v1/tables", headers=auth("waiter")).json()["tables"][0]
    assert state["status"] == "available"
    assert state["current_order_id"] is None


def test_expired_reservations_are_released(client, make_table, db_session):
    stale = make_table(number=1)
    fresh = make_table(number=2)
    for table in (stale, fresh):
        client.put(table_url(table.id, "reserve"), headers=auth("waiter"))

    db_session.get(RestaurantTable, stale.id).reserved_at = utcnow() - timedelta(minutes=15)
    db_session.commit()

    released = table_service.release_expired_reservations(db_session, timeout_seconds=600)

    assert [t.id for t in released] == [stale.id]
    assert db_session.get(RestaurantTable, stale.id).status == TableStatus.AVAILABLE
    assert db_session.get(RestaurantTable, fresh.id).status == TableStatus.RESERVED


def test_sweep_broadcasts_released_tables(session_factory, make_table, db_session):
    table = make_table()
    table.status = TableStatus.RESERVED
    table.locked_by = "waiter-1"
    table.reserved_at = utcnow() - timedelta(hours=1)
    db_session.commit()

    bus = BroadcastBus()
    listener = RecordingSubscriber()
    bus.subscribe(SCOPE, listener)

    released = asyncio.run(sweep_once(session_factory, bus, ResponseCache()))

    assert released == 1
    assert listener.payloads("table-updated")[0]["status"] == "available"


def test_billing_drops_the_order_reference(client, make_table, place_order, advance):
    table = make_table()
    order = place_order(table.id)

    billing = client.put(table_url(table.id), json={"status": "billing"}, headers=auth("waiter")).json()["table"]
    assert billing["status"] == "billing"
    assert billing["current_order_id"] is None

    advance(order["id"], "ready")
    paid = client.post(f"/api/v1/payments/{order['id']}/process",
                       json={"payment_method": "cash", "amount_received": "525"}, headers=auth("cashier"))
    assert paid.status_code == 200

    state = client.get("/api/v1/tables", headers=auth("waiter")).json()["tables"][0]
    assert state["status"] == "cleaning"
    assert state["current_order_id"] is None


def test_manual_cleaning_leaves_no_order_behind(client, make_table, place_order):
    table = make_table()
    place_order(table.id)
    client.put(table_url(table.id), json={"status": "billing"}, headers=auth("waiter"))

    cleaning = client.put(table_url(table.id), json={"status": "cleaning"}, headers=auth("waiter")).json()["table"]
    assert cleaning["status"] == "cleaning"
    assert cleaning["current_order_id"] is None
    assert cleaning["locked_by"] is None


def test_cancelling_an_old_order_keeps_a_new_reservation(client, make_table, place_order):
    table = make_table()
    order = place_order(table.id)
    client.put(table_url(table.id, "force-reset"), headers=auth("admin"))
    client.put(table_url(table.id, "reserve"), headers=auth("waiter", user_id="waiter-2"))

    cancelled = client.put(f"/api/v1/orders/{order['id']}/cancel", headers=auth("admin"))
    assert cancelled.status_code == 200

    state = client.get("/api/v1/tables", headers=auth("waiter")).json()["tables"][0]
    assert state["status"] == "reserved"
    assert state["locked_by"] == "waiter-2"


def test_sweep_keeps_reservations_with_an_order(client, make_table, place_order, db_session):
    table = make_table()
    order = place_order()
    row = db_session.get(RestaurantTable, table.id)
    row.status = TableStatus.RESERVED
    row.locked_by = "waiter-1"
    row.reserved_at = utcnow() - timedelta(hours=2)
    row.current_order_id = order["id"]
    db_session.commit()

    assert table_service.release_expired_reservations(db_session, timeout_seconds=600) == []
    db_session.refresh(row)
    assert row.status == TableStatus.RESERVED
    assert row.current_order_id == order["id"]
