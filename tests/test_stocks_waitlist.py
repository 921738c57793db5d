import uuid

import pytest

from apps.dinein.app import models
from apps.dinein.app.errors import InvalidStateError, NotFoundError, ValidationError
from apps.dinein.app.stocks import BulkAdjustItem, adjust_stock, bulk_adjust, low_stock


@pytest.fixture()
def pantry(db, restaurant):
    rice = models.Ingredient(id=str(uuid.uuid4()), name="Rice noodles", unit="kg")
    lime = models.Ingredient(id=str(uuid.uuid4()), name="Lime", unit="pcs")
    db.add_all([rice, lime])
    db.flush()
    rice_stock = models.Stock(
        id=str(uuid.uuid4()), branch_id=restaurant.branch_id, ingredient_id=rice.id, quantity=10, low_threshold=3
    )
    lime_stock = models.Stock(
        id=str(uuid.uuid4()), branch_id=restaurant.branch_id, ingredient_id=lime.id, quantity=2, low_threshold=5
    )
    db.add_all([rice_stock, lime_stock])
    db.commit()
    return rice_stock.id, lime_stock.id


def test_adjust_adds_and_removes(db, pantry):
    rice, _ = pantry
    assert adjust_stock(db, rice, "add", 2.5, "delivery").quantity == 12.5
    st = adjust_stock(db, rice, "remove", 4, "lunch prep")
    assert st.quantity == 8.5
    assert st.last_adjustment_reason == "lunch prep"


def test_remove_never_goes_below_zero(db, pantry):
    rice, _ = pantry
    with pytest.raises(InvalidStateError) as excinfo:
        adjust_stock(db, rice, "remove", 11)
    assert "insufficient stock" in excinfo.value.message
    assert db.get(models.Stock, rice).quantity == 10
    assert adjust_stock(db, rice, "remove", 10).quantity == 0


def test_adjust_validates_input(db, pantry):
    rice, _ = pantry
    with pytest.raises(ValidationError):
        adjust_stock(db, rice, "add", 0)
    with pytest.raises(ValidationError):
        adjust_stock(db, rice, "steal", 1)
    with pytest.raises(NotFoundError):
        adjust_stock(db, "missing", "add", 1)


def test_low_stock_lists_levels_at_or_below_threshold(db, restaurant, pantry):
    rice, lime = pantry
    assert [st.id for st in low_stock(db, restaurant.branch_id)] == [lime]
    adjust_stock(db, rice, "remove", 7)
    assert [st.id for st in low_stock(db, restaurant.branch_id)] == [lime, rice]
    assert low_stock(db, restaurant.other_branch_id) == []


def test_bulk_adjust_skips_failures(db, pantry):
    rice, lime = pantry
    results = bulk_adjust(
        db,
        [
            BulkAdjustItem(stock_id=rice, type="remove", quantity=1),
            BulkAdjustItem(stock_id=lime, type="remove", quantity=50),
            BulkAdjustItem(stock_id="missing", type="add", quantity=1),
            BulkAdjustItem(stock_id=lime, type="add", quantity=3),
        ],
    )
    assert [r.ok for r in results] == [True, False, False, True]
    assert results[0].quantity == 9
    assert "insufficient" in results[1].error
    assert results[3].quantity == 5


def test_stock_endpoints(client):
    branch = client.post("/branches", json={"name": "Ari", "code": "ari"}).json()
    ing = client.post("/ingredients", json={"name": "Basil", "unit": "g"}).json()
    r = client.post("/stocks", json={"branch_id": branch["id"], "ingredient_id": ing["id"], "quantity": 100, "low_threshold": 20})
    assert r.status_code == 200
    stock = r.json()

    dup = client.post("/stocks", json={"branch_id": branch["id"], "ingredient_id": ing["id"]})
    assert dup.status_code == 409
    assert client.post("/stocks", json={"branch_id": branch["id"], "ingredient_id": "nope"}).status_code == 404

    r = client.post(f"/stocks/{stock['id']}/adjust", json={"type": "remove", "quantity": 85})
    assert r.json()["quantity"] == 15
    assert client.post(f"/stocks/{stock['id']}/adjust", json={"type": "remove", "quantity": 16}).status_code == 409
    assert [s["id"] for s in client.get("/stocks/low", params={"branch_id": branch["id"]}).json()] == [stock["id"]]

    r = client.patch(f"/stocks/{stock['id']}", json={"quantity": 40})
    assert r.json()["last_adjustment_reason"] == "manual count"


def test_waitlist_flow(client):
    branch = client.post("/branches", json={"name": "Ari", "code": "ari"}).json()
    first = client.post("/waitlist", json={"branch_id": branch["id"], "party_name": "Somchai", "party_size": 4}).json()
    second = client.post("/waitlist", json={"branch_id": branch["id"], "party_name": "Nok"}).json()
    assert first["status"] == "waiting"
    assert first["notified_at"] is None
    assert second["party_size"] == 2

    listed = client.get("/waitlist", params={"branch_id": branch["id"]}).json()
    assert [w["id"] for w in listed] == [first["id"], second["id"]]

    r = client.patch(f"/waitlist/{first['id']}", json={"status": "notified"})
    assert r.json()["notified_at"] is not None
    assert client.patch(f"/waitlist/{first['id']}", json={"status": "eaten"}).status_code == 400

    assert [w["id"] for w in client.get("/waitlist", params={"status": "waiting"}).json()] == [second["id"]]
    assert client.delete(f"/waitlist/{second['id']}").json() == {"ok": True}
    assert client.get(f"/waitlist/{second['id']}").status_code == 404
