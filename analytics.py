"""
Admin dashboard aggregates. Orders are summed in Python rather than with
aggregation pipelines; the dashboard windows are small.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List

from fastapi import APIRouter, Depends

from auth import require_admin
from database import utcnow
from helpers import require_db, serialize_document, to_obj_id

router = APIRouter(prefix="/api/analytics", tags=["analytics"], dependencies=[Depends(require_admin)])

STATUS_ORDER = ["PROCESSING", "PENDING", "SHIPPED", "DELIVERED", "CANCELLED"]


def _percent(part: float, whole: float) -> int:
    return round(part / whole * 100) if whole else 0


def _month_starts(today: datetime, months: int = 12) -> List[datetime]:
    """First day of each of the last `months` months, oldest first."""
    starts = []
    year, month = today.year, today.month
    for _ in range(months):
        starts.append(datetime(year, month, 1))
        month -= 1
        if month == 0:
            year, month = year - 1, 12
    return starts[::-1]


@router.get("/order-statuses")
def order_statuses():
    db = require_db()
    counts: Dict[str, int] = defaultdict(int)
    for order in db["order"].find({}, {"status": 1}):
        counts[order["status"]] += 1
    total = sum(counts.values())
    statuses = [
        {"label": status, "count": counts[status], "value": _percent(counts[status], total)}
        for status in STATUS_ORDER
        if counts.get(status)
    ]
    return {"order_statuses": statuses, "total_orders": total, "success": True}


@router.get("/order-trends")
def order_trends(days: int = 30):
    db = require_db()
    today = utcnow().date()
    start = today - timedelta(days=days - 1)
    counts = {(start + timedelta(days=i)).isoformat(): 0 for i in range(days)}
    since = datetime(start.year, start.month, start.day)
    for order in db["order"].find({"created_at": {"$gte": since}}, {"created_at": 1}):
        key = order["created_at"].date().isoformat()
        if key in counts:
            counts[key] += 1
    return {"order_trends": [{"date": d, "count": c} for d, c in counts.items()], "success": True}


@router.get("/top-products")
def top_products(limit: int = 6):
    db = require_db()
    sold: Dict[str, int] = defaultdict(int)
    revenue: Dict[str, float] = defaultdict(float)
    names: Dict[str, str] = {}
    for order in db["order"].find({"status": {"$ne": "CANCELLED"}}, {"items": 1}):
        for item in order["items"]:
            sold[item["product_id"]] += item["quantity"]
            revenue[item["product_id"]] += item["price"] * item["quantity"]
            names[item["product_id"]] = item["name"]

    ranked = sorted(sold, key=sold.get, reverse=True)[:limit]
    products = []
    for product_id in ranked:
        product = db["product"].find_one({"_id": to_obj_id(product_id)}, {"images": 1, "stock": 1})
        products.append({
            "id": product_id,
            "name": names[product_id],
            "quantity_sold": sold[product_id],
            "revenue": round(revenue[product_id], 2),
            "image": product["images"][0] if product and product.get("images") else None,
            "stock": (product or {}).get("stock"),
        })
    return {"top_products": products, "success": True}


@router.get("/monthly-sales")
def monthly_sales():
    db = require_db()
    starts = _month_starts(utcnow())
    months = {
        (s.year, s.month): {"month": s.strftime("%b"), "full_month": s.strftime("%b %Y"), "revenue": 0.0, "orders": 0}
        for s in starts
    }
    for order in db["order"].find({"created_at": {"$gte": starts[0]}}, {"created_at": 1, "total": 1, "payment_status": 1}):
        bucket = months.get((order["created_at"].year, order["created_at"].month))
        if bucket is None:
            continue
        if order.get("payment_status") == "PAID":
            bucket["revenue"] += order["total"]
        bucket["orders"] += 1
    sales = [{**m, "revenue": round(m["revenue"], 2)} for m in months.values()]
    return {"monthly_sales": sales, "success": True}


@router.get("/inventory-levels")
def inventory_levels():
    db = require_db()
    levels = []
    for location in db["location"].find({"is_active": True}).sort("name", 1):
        rows = list(db["inventory"].find({"location_id": str(location["_id"])}, {"quantity": 1, "minimum_level": 1}))
        levels.append({
            "location_id": str(location["_id"]),
            "location": location["name"],
            "quantity": sum(r.get("quantity", 0) for r in rows),
            "minimum_level": sum(r.get("minimum_level", 0) for r in rows),
            "products": len(rows),
        })
    return {"inventory_levels": levels, "success": True}


@router.get("/inventory-movements")
def inventory_movements(limit: int = 10):
    db = require_db()
    movements = []
    for movement in db["inventorymovement"].find().sort("created_at", -1).limit(limit):
        item = serialize_document(movement)
        product = db["product"].find_one({"_id": to_obj_id(movement["product_id"])}, {"name": 1})
        location = db["location"].find_one({"_id": to_obj_id(movement["location_id"])}, {"name": 1})
        item["product_name"] = product["name"] if product else None
        item["location_name"] = location["name"] if location else None
        movements.append(item)
    return {"inventory_movements": movements, "success": True}


@router.get("/category-sales")
def category_sales():
    db = require_db()
    category_of = {str(p["_id"]): p.get("category_id") for p in db["product"].find({}, {"category_id": 1})}
    names = {str(c["_id"]): c["name"] for c in db["category"].find({}, {"name": 1})}
    revenue: Dict[str, float] = defaultdict(float)
    items_sold: Dict[str, int] = defaultdict(int)
    for order in db["order"].find({"payment_status": "PAID"}, {"items": 1}):
        for item in order["items"]:
            category_id = category_of.get(item["product_id"])
            if not category_id:
                continue
            revenue[category_id] += item["price"] * item["quantity"]
            items_sold[category_id] += item["quantity"]

    total = sum(revenue.values())
    sales = [
        {
            "category_id": category_id,
            "name": names.get(category_id, "Unknown"),
            "revenue": round(amount, 2),
            "items_sold": items_sold[category_id],
            "percentage": _percent(amount, total),
        }
        for category_id, amount in revenue.items()
    ]
    sales.sort(key=lambda s: s["revenue"], reverse=True)
    return {"category_sales": sales, "success": True}


@router.get("/customer-types")
def customer_types():
    db = require_db()
    counts = {"guest": 0, "registered": 0, "retailer": 0}
    revenue = {"guest": 0.0, "registered": 0.0, "retailer": 0.0}
    for order in db["order"].find({}, {"user_id": 1, "is_retailer_order": 1, "total": 1, "payment_status": 1}):
        if order.get("is_retailer_order"):
            kind = "retailer"
        elif order.get("user_id"):
            kind = "registered"
        else:
            kind = "guest"
        counts[kind] += 1
        if order.get("payment_status") == "PAID":
            revenue[kind] += order["total"]

    total = sum(counts.values())
    total_revenue = sum(revenue.values())
    return {
        "customer_types": [
            {
                "type": kind,
                "count": counts[kind],
                "percentage": _percent(counts[kind], total),
                "revenue": round(revenue[kind], 2),
                "revenue_percentage": _percent(revenue[kind], total_revenue),
            }
            for kind in counts
        ],
        "total_orders": total,
        "success": True,
    }
