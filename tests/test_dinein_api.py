import pytest

from apps.dinein.app.errors import GatewayError


@pytest.fixture()
def shop(client):
    branch = client.post("/branches", json={"name": "Siam Square", "code": "SIAM"}).json()
    table = client.post("/tables", json={"branch_id": branch["id"], "name": "T1"}).json()
    noodles = client.post("/menu-items", json={"branch_id": branch["id"], "name": "Pad Thai", "price": 90}).json()
    return {"branch": branch, "table": table, "item": noodles}


def _order(client, shop, session_id, **kw):
    body = {
        "session_id": session_id,
        "branch_id": shop["branch"]["id"],
        "table_id": shop["table"]["id"],
        "lines": [{"menu_item_id": shop["item"]["id"], "qty": 2}],
        "total_amount": 180,
    }
    body.update(kw)
    return client.post("/orders", json=body)


def test_health_reports_db_check(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["checks"] == {"db": "ok"}
    assert r.headers.get("X-Request-ID")


def test_branch_code_is_normalized_and_unique(client, shop):
    assert shop["branch"]["code"] == "siam"
    r = client.post("/branches", json={"name": "Again", "code": " Siam "})
    assert r.status_code == 409


def test_missing_resources_are_404(client):
    r = client.get("/sessions/missing")
    assert r.status_code == 404
    assert r.json() == {"detail": "session missing not found"}
    assert client.get("/orders/missing").status_code == 404
    assert client.post("/payments/missing/check-status").status_code == 404


def test_dining_flow_over_http(client, shop):
    r = client.post("/sessions/checkin", json={"branch_id": shop["branch"]["id"], "table_id": shop["table"]["id"]})
    assert r.status_code == 200
    sess = r.json()
    assert sess["is_open"] is True
    assert len(sess["qr_code"]) == 32

    r = client.post("/sessions/join", json={"qr_code": sess["qr_code"], "client_id": "dev-1", "user_label": "Alice"})
    assert [m["user_label"] for m in r.json()["members"]] == ["Alice"]

    r = _order(client, shop, sess["id"], client_id="dev-1")
    assert r.status_code == 200
    order = r.json()
    assert order["order_by"] == "Alice"
    assert order["status"] == "received"

    r = client.patch(f"/orders/{order['id']}/status", json={"status": "served"})
    assert r.json()["status"] == "served"
    assert client.patch(f"/orders/{order['id']}/status", json={"status": "lost"}).status_code == 400

    assert client.get(f"/sessions/{sess['id']}").json()["order_ids"] == [order["id"]]
    assert [o["id"] for o in client.get(f"/orders/session/{sess['id']}/client/dev-1").json()] == [order["id"]]

    r = client.post(f"/sessions/{sess['id']}/checkout")
    assert r.status_code == 200
    assert r.json()["is_open"] is False

    assert client.post(f"/sessions/{sess['id']}/checkout").status_code == 409
    r = client.post("/sessions/join", json={"qr_code": sess["qr_code"], "client_id": "dev-2", "user_label": "Bob"})
    assert r.status_code == 409
    assert _order(client, shop, sess["id"]).status_code == 409


def test_order_with_bad_quantity_is_400(client, shop):
    sess = client.post("/sessions/checkin", json={"branch_id": shop["branch"]["id"], "table_id": shop["table"]["id"]}).json()
    r = _order(client, shop, sess["id"], lines=[{"menu_item_id": shop["item"]["id"], "qty": 0}])
    assert r.status_code == 400


def test_promptpay_over_http(client, shop, gateway):
    sess = client.post("/sessions/checkin", json={"branch_id": shop["branch"]["id"], "table_id": shop["table"]["id"]}).json()
    order = _order(client, shop, sess["id"]).json()
    base = {"order_id": order["id"], "session_id": sess["id"], "branch_id": shop["branch"]["id"]}

    r = client.post("/payments/promptpay", json={**base, "amount": 15})
    assert r.status_code == 400
    assert gateway.calls == []

    r = client.post("/payments/promptpay", json={**base, "amount": 180})
    assert r.status_code == 200
    pay = r.json()
    assert pay["status"] == "pending"
    assert pay["qr_code_image"]

    gateway.set_status(pay["transaction_id"], "successful")
    r = client.post(f"/payments/{pay['id']}/check-status")
    assert r.json()["status"] == "paid"
    assert [p["id"] for p in client.get(f"/payments/order/{order['id']}").json()] == [pay["id"]]


def test_webhook_reconciles_charge_and_ignores_other_events(client, shop, gateway):
    sess = client.post("/sessions/checkin", json={"branch_id": shop["branch"]["id"], "table_id": shop["table"]["id"]}).json()
    order = _order(client, shop, sess["id"]).json()
    pay = client.post(
        "/payments/promptpay",
        json={"order_id": order["id"], "session_id": sess["id"], "branch_id": shop["branch"]["id"], "amount": 180},
    ).json()

    r = client.post("/payments/webhook", json={"key": "customer.create", "data": {"object": "customer", "id": "cust_1"}})
    assert r.json() == {"received": True}

    gateway.set_status(pay["transaction_id"], "expired")
    r = client.post(
        "/payments/webhook",
        json={"key": "charge.complete", "data": {"object": "charge", "id": pay["transaction_id"], "status": "expired"}},
    )
    assert r.status_code == 200
    assert r.json() == {"received": True, "payment_id": pay["id"], "status": "failed"}

    r = client.post(
        "/payments/webhook",
        json={"key": "charge.complete", "data": {"object": "charge", "id": "chrg_nope", "status": "successful"}},
    )
    assert r.status_code == 404


def test_gateway_failure_is_502(client, shop, gateway, monkeypatch):
    def boom(*args, **kwargs):
        raise GatewayError("amount must be at least 2000", code="invalid_amount", upstream_status=400)

    monkeypatch.setattr(gateway, "create_source", boom)
    sess = client.post("/sessions/checkin", json={"branch_id": shop["branch"]["id"], "table_id": shop["table"]["id"]}).json()
    order = _order(client, shop, sess["id"]).json()
    r = client.post(
        "/payments/promptpay",
        json={"order_id": order["id"], "session_id": sess["id"], "branch_id": shop["branch"]["id"], "amount": 25},
    )
    assert r.status_code == 502
    assert r.json()["detail"] == "amount must be at least 2000"


def test_reports_endpoint_rejects_unknown_grouping(client):
    assert client.get("/orders/reports/sales-by-period", params={"group_by": "decade"}).status_code == 400
    assert client.get("/orders/reports/weekly-sales").json() == []


def test_websocket_rooms_receive_order_updates(client, shop):
    sess = client.post("/sessions/checkin", json={"branch_id": shop["branch"]["id"], "table_id": shop["table"]["id"]}).json()
    order = _order(client, shop, sess["id"]).json()

    with client.websocket_connect("/ws") as ws:
        assert ws.receive_json() == {"event": "connected", "data": {"rooms": ["global"]}}

        ws.send_json({"event": "joinSessionRoom", "data": sess["id"]})
        assert ws.receive_json() == {
            "event": "joinSessionRoom",
            "data": {"success": True, "room": f"session-{sess['id']}"},
        }

        ws.send_json({"event": "danceParty", "data": "x"})
        assert ws.receive_json()["event"] == "error"

        client.patch(f"/orders/{order['id']}/status", json={"status": "preparing"})
        # once through global, once through the session room
        frames = [ws.receive_json(), ws.receive_json()]
        assert [f["event"] for f in frames] == ["orderStatusChanged", "orderStatusChanged"]
        assert all(f["data"]["id"] == order["id"] and f["data"]["status"] == "preparing" for f in frames)


def test_session_qr_png_renders_token(client, shop):
    sess = client.post("/sessions/checkin", json={"branch_id": shop["branch"]["id"], "table_id": shop["table"]["id"]}).json()
    r = client.get(f"/sessions/{sess['id']}/qr.png", params={"box_size": 99})
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/png"
    assert r.content.startswith(b"\x89PNG")
    assert client.get("/sessions/missing/qr.png").status_code == 404
