from apps.dinein.app.errors import GatewayError


def _failing_charge_lookup(*args, **kwargs):
    raise GatewayError("connect to 10.0.3.7:443 refused", code="network")


def _pending_promptpay(client, gateway):
    branch = client.post("/branches", json={"name": "Siam", "code": "siam"}).json()
    table = client.post("/tables", json={"branch_id": branch["id"], "name": "T1"}).json()
    item = client.post("/menu-items", json={"branch_id": branch["id"], "name": "Tea", "price": 35}).json()
    sess = client.post("/sessions/checkin", json={"branch_id": branch["id"], "table_id": table["id"]}).json()
    order = client.post(
        "/orders",
        json={
            "session_id": sess["id"],
            "branch_id": branch["id"],
            "table_id": table["id"],
            "lines": [{"menu_item_id": item["id"], "qty": 1}],
            "total_amount": 35,
        },
    ).json()
    return client.post(
        "/payments/promptpay",
        json={"order_id": order["id"], "session_id": sess["id"], "branch_id": branch["id"], "amount": 35},
    ).json()


def test_gateway_details_are_scrubbed_in_prod(client, gateway, monkeypatch):
    pay = _pending_promptpay(client, gateway)
    monkeypatch.setattr(gateway, "retrieve_charge", _failing_charge_lookup)
    monkeypatch.setenv("ENV", "prod")

    resp = client.post(f"/payments/{pay['id']}/check-status")
    assert resp.status_code == 502
    body = resp.json()
    assert body.get("detail") == "upstream error"
    assert body.get("request_id")
    assert "10.0.3.7" not in resp.text


def test_gateway_details_are_visible_outside_prod(client, gateway, monkeypatch):
    pay = _pending_promptpay(client, gateway)
    monkeypatch.setattr(gateway, "retrieve_charge", _failing_charge_lookup)
    monkeypatch.setenv("ENV", "dev")

    resp = client.post(f"/payments/{pay['id']}/check-status")
    assert resp.status_code == 502
    assert resp.json() == {"detail": "connect to 10.0.3.7:443 refused"}


def test_client_errors_keep_their_detail_in_prod(client, monkeypatch):
    monkeypatch.setenv("ENV", "prod")
    resp = client.get("/orders/missing")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "order missing not found"}
