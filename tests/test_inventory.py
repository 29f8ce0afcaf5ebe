import pytest

from conftest import make_product
from database import create_document
from inventory import update_inventory


@pytest.fixture
def warehouse():
    return create_document("location", {"name": "Main Warehouse", "type": "WAREHOUSE", "is_active": True})


def test_add_product_records_initial_movement(client, admin_headers, mongo, warehouse):
    product_id = make_product()
    payload = {"product_id": product_id, "location_id": warehouse, "quantity": 12, "minimum_level": 4}
    r = client.post("/api/inventory", json=payload, headers=admin_headers)
    assert r.status_code == 201
    assert r.json()["product"]["id"] == product_id
    assert r.json()["location"]["name"] == "Main Warehouse"

    movement = mongo["inventorymovement"].find_one()
    assert movement["movement_type"] == "PURCHASE"
    assert movement["quantity"] == 12
    assert movement["reason"] == "Initial inventory"

    again = client.post("/api/inventory", json=payload, headers=admin_headers)
    assert again.status_code == 409


def test_update_inventory_applies_delta(mongo, warehouse):
    product_id = make_product()
    first = update_inventory(product_id, warehouse, 5, "PURCHASE")
    assert first["quantity"] == 5
    second = update_inventory(product_id, warehouse, -2, "SALE", order_id="o-1")
    assert second["quantity"] == 3
    assert mongo["inventory"].count_documents({}) == 1
    movements = list(mongo["inventorymovement"].find().sort("quantity", 1))
    assert [m["quantity"] for m in movements] == [-2, 5]
    assert movements[0]["order_id"] == "o-1"


def test_update_endpoint(client, admin_headers, warehouse):
    product_id = make_product()
    r = client.post(
        "/api/inventory/update",
        json={"product_id": product_id, "location_id": warehouse, "quantity_change": 7, "movement_type": "PURCHASE"},
        headers=admin_headers,
    )
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.json()["data"]["quantity"] == 7


def test_low_stock(client, admin_headers, warehouse):
    low = make_product(name="Low")
    fine = make_product(name="Fine")
    create_document("inventory", {"product_id": low, "location_id": warehouse, "quantity": 2, "minimum_level": 5})
    create_document("inventory", {"product_id": fine, "location_id": warehouse, "quantity": 20, "minimum_level": 5})
    r = client.get("/api/inventory/low-stock", headers=admin_headers)
    assert [row["product"]["name"] for row in r.json()] == ["Low"]


def test_adjust_quantity_and_history(client, admin_headers, warehouse):
    product_id = make_product()
    inventory_id = create_document(
        "inventory", {"product_id": product_id, "location_id": warehouse, "quantity": 10, "minimum_level": 0}
    )
    r = client.patch(f"/api/inventory/{inventory_id}/quantity", json={"change": -4}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["quantity"] == 6

    history = client.get(f"/api/inventory/{inventory_id}/movements", headers=admin_headers).json()
    assert history[0]["quantity"] == -4
    assert history[0]["notes"] == "Quantity decreased by 4"


def test_available_products_excludes_stocked(client, admin_headers, warehouse):
    stocked = make_product(name="Stocked")
    make_product(name="Unstocked")
    create_document("inventory", {"product_id": stocked, "location_id": warehouse, "quantity": 1})
    r = client.get(f"/api/inventory/location/{warehouse}/available-products", headers=admin_headers)
    assert [p["name"] for p in r.json()] == ["Unstocked"]


def test_delete_location_with_inventory_conflicts(client, admin_headers, warehouse):
    create_document("inventory", {"product_id": make_product(), "location_id": warehouse, "quantity": 1})
    assert client.delete(f"/api/locations/{warehouse}", headers=admin_headers).status_code == 409


def test_remove_inventory_records_outgoing_movement(client, admin_headers, mongo, warehouse):
    inventory_id = create_document(
        "inventory", {"product_id": make_product(), "location_id": warehouse, "quantity": 8}
    )
    assert client.delete(f"/api/inventory/{inventory_id}", headers=admin_headers).status_code == 200
    movement = mongo["inventorymovement"].find_one()
    assert movement["quantity"] == -8
    assert movement["movement_type"] == "OTHER"
    assert mongo["inventory"].count_documents({}) == 0
