from datetime import datetime, timedelta

from conftest import make_product
from database import create_document, utcnow
from promotions import calculate_total_discount, is_promotion_active

NOW = datetime(2024, 6, 1, 12, 0)


def promo(**overrides):
    data = {
        "type": "percentage",
        "value": 10,
        "target": "ALL",
        "is_active": True,
        "start_date": NOW - timedelta(days=1),
        "end_date": NOW + timedelta(days=1),
        "product_ids": [],
        "brand_ids": [],
        "category_ids": [],
    }
    data.update(overrides)
    return data


LINES = [
    {"product_id": "p1", "brand_id": "b1", "category_id": "c1", "price": 100.0, "quantity": 2},
    {"product_id": "p2", "brand_id": "b2", "category_id": "c1", "price": 50.0, "quantity": 1},
]


def test_is_promotion_active_window_and_usage():
    assert is_promotion_active(promo(), NOW)
    assert not is_promotion_active(promo(start_date=NOW + timedelta(hours=1)), NOW)
    assert not is_promotion_active(promo(end_date=NOW - timedelta(hours=1)), NOW)
    assert not is_promotion_active(promo(is_active=False), NOW)
    assert not is_promotion_active(promo(usage_limit=3, usage_count=3), NOW)
    assert is_promotion_active(promo(end_date=None), NOW)


def test_percentage_discount():
    amount, free_shipping, applied = calculate_total_discount(LINES, [promo()], NOW)
    assert amount == 25
    assert free_shipping is False
    assert len(applied) == 1


def test_fixed_discount_capped_at_eligible_subtotal():
    p = promo(type="fixed", value=80, target="BRANDS", brand_ids=["b2"])
    amount, _, _ = calculate_total_discount(LINES, [p], NOW)
    assert amount == 50


def test_bogo_discount():
    p = promo(type="bogo", value=1, target="PRODUCTS", product_ids=["p1"])
    amount, _, _ = calculate_total_discount(LINES, [p], NOW)
    assert amount == 100


def test_free_shipping_and_minimum_purchase():
    p = promo(type="free_shipping", value=0)
    amount, free_shipping, _ = calculate_total_discount(LINES, [p], NOW)
    assert amount == 0
    assert free_shipping is True

    gated = promo(min_purchase_amount=500)
    assert calculate_total_discount(LINES, [gated], NOW) == (0, False, [])


def test_total_discount_capped_at_subtotal():
    promos = [promo(type="fixed", value=200), promo(type="fixed", value=200)]
    amount, _, _ = calculate_total_discount(LINES, promos, NOW)
    assert amount == 250


def test_create_promotion_missing_fields(client, admin_headers):
    r = client.post("/api/promotions", json={"title": "Summer"}, headers=admin_headers)
    assert r.status_code == 400
    assert r.json() == {"error": "Missing required fields", "fields": ["description", "type", "start_date"]}


def test_create_and_validate_code(client, admin_headers):
    payload = {
        "title": "Summer sale",
        "description": "10% off",
        "type": "percentage",
        "value": 10,
        "code": "SUMMER10",
        "min_purchase_amount": 100,
        "start_date": (utcnow() - timedelta(days=1)).isoformat() + "Z",
    }
    r = client.post("/api/promotions", json=payload, headers=admin_headers)
    assert r.status_code == 201
    assert r.json()["usage_count"] == 0

    assert client.post("/api/promotions/validate-code", json={"code": "summer10"}).status_code == 200
    low = client.post("/api/promotions/validate-code", json={"code": "SUMMER10", "subtotal": 50})
    assert low.status_code == 400
    assert client.post("/api/promotions/validate-code", json={"code": "NOPE"}).status_code == 404


def test_active_filter(client):
    now = utcnow()
    create_document("promotion", promo(title="Live", start_date=now - timedelta(days=1), end_date=None))
    create_document("promotion", promo(title="Over", start_date=now - timedelta(days=9), end_date=now - timedelta(days=2)))
    r = client.get("/api/promotions", params={"active": True})
    assert [p["title"] for p in r.json()] == ["Live"]


def test_related_products_fall_back_to_brand(client):
    brand_id = create_document("brand", {"name": "Michelin"})
    make_product(brand_id=brand_id, name="Brand match")
    promotion_id = create_document("promotion", promo(title="Brand week", target="BRANDS", brand_ids=[brand_id]))
    r = client.get(f"/api/promotions/{promotion_id}/related-products")
    assert [p["name"] for p in r.json()["products"]] == ["Brand match"]
