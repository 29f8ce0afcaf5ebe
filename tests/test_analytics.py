from datetime import datetime

import pytest

from analytics import _month_starts
from conftest import make_category, make_product
from database import create_document


def order(status="PENDING", payment_status="PENDING", items=(), total=0.0, user_id=None, retailer=False):
    return create_document("order", {
        "order_number": "ORD-1",
        "status": status,
        "payment_status": payment_status,
        "items": list(items),
        "total": total,
        "user_id": user_id,
        "is_retailer_order": retailer,
    })


@pytest.fixture
def sales():
    passenger = make_category("Passenger")
    suv = make_category("SUV")
    car_tire = make_product(category_id=passenger, name="Primacy", images=["https://cdn.test/primacy.jpg"])
    suv_tire = make_product(category_id=suv, name="LTX", stock=3)
    car_line = {"product_id": car_tire, "name": "Primacy", "price": 100.0, "quantity": 3}
    suv_line = {"product_id": suv_tire, "name": "LTX", "price": 100.0, "quantity": 1}
    order("DELIVERED", "PAID", [car_line], 300.0, user_id="u1")
    order("PROCESSING", "PAID", [suv_line], 100.0, retailer=True, user_id="u2")
    order("CANCELLED", "CANCELLED", [suv_line, suv_line], 200.0)
    order("PENDING", "PENDING", [suv_line], 100.0)
    return {"car": car_tire, "suv": suv_tire}


def test_requires_admin(client, user_headers):
    assert client.get("/api/analytics/order-statuses").status_code == 401
    assert client.get("/api/analytics/order-statuses", headers=user_headers).status_code == 403


def test_order_statuses(client, admin_headers, sales):
    body = client.get("/api/analytics/order-statuses", headers=admin_headers).json()
    assert body["total_orders"] == 4
    assert [s["label"] for s in body["order_statuses"]] == ["PROCESSING", "PENDING", "DELIVERED", "CANCELLED"]
    assert body["order_statuses"][0] == {"label": "PROCESSING", "count": 1, "value": 25}


def test_order_trends_cover_every_day(client, admin_headers, sales):
    trends = client.get("/api/analytics/order-trends", params={"days": 7}, headers=admin_headers).json()["order_trends"]
    assert len(trends) == 7
    assert trends[-1]["count"] == 4
    assert sum(t["count"] for t in trends) == 4


def test_top_products_skip_cancelled(client, admin_headers, sales):
    top = client.get("/api/analytics/top-products", headers=admin_headers).json()["top_products"]
    assert [p["name"] for p in top] == ["Primacy", "LTX"]
    assert top[0]["quantity_sold"] == 3
    assert top[0]["image"] == "https://cdn.test/primacy.jpg"
    assert top[1]["quantity_sold"] == 2
    assert top[1]["stock"] == 3


def test_monthly_sales(client, admin_headers, sales):
    months = client.get("/api/analytics/monthly-sales", headers=admin_headers).json()["monthly_sales"]
    assert len(months) == 12
    assert months[-1]["orders"] == 4
    assert months[-1]["revenue"] == 400.0
    assert months[0]["orders"] == 0


def test_month_starts_cross_year():
    starts = _month_starts(datetime(2024, 2, 15), 3)
    assert starts == [datetime(2023, 12, 1), datetime(2024, 1, 1), datetime(2024, 2, 1)]


def test_category_sales(client, admin_headers, sales):
    body = client.get("/api/analytics/category-sales", headers=admin_headers).json()["category_sales"]
    assert [(c["name"], c["revenue"], c["percentage"]) for c in body] == [("Passenger", 300.0, 75), ("SUV", 100.0, 25)]


def test_customer_types(client, admin_headers, sales):
    body = client.get("/api/analytics/customer-types", headers=admin_headers).json()
    by_type = {t["type"]: t for t in body["customer_types"]}
    assert by_type["guest"]["count"] == 2
    assert by_type["registered"]["revenue"] == 300.0
    assert by_type["retailer"]["revenue_percentage"] == 25


def test_inventory_levels_and_movements(client, admin_headers):
    product_id = make_product(name="Primacy")
    warehouse = create_document("location", {"name": "Warehouse", "type": "WAREHOUSE", "is_active": True})
    create_document("location", {"name": "Closed store", "type": "STORE", "is_active": False})
    inventory_id = create_document(
        "inventory", {"product_id": product_id, "location_id": warehouse, "quantity": 12, "minimum_level": 4}
    )
    create_document("inventorymovement", {
        "inventory_id": inventory_id,
        "product_id": product_id,
        "location_id": warehouse,
        "quantity": 12,
        "movement_type": "PURCHASE",
    })

    levels = client.get("/api/analytics/inventory-levels", headers=admin_headers).json()["inventory_levels"]
    assert levels == [{"location_id": warehouse, "location": "Warehouse", "quantity": 12, "minimum_level": 4, "products": 1}]

    movements = client.get("/api/analytics/inventory-movements", headers=admin_headers).json()["inventory_movements"]
    assert movements[0]["product_name"] == "Primacy"
    assert movements[0]["location_name"] == "Warehouse"
