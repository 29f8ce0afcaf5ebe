"""
Promotions: admin CRUD, code lookup and the cart discount engine.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auth import require_admin
from catalog import attach_references
from database import as_naive_utc, create_document, update_document, utcnow
from helpers import equals_ci, get_or_404, require_db, serialize_document, to_obj_id
from schemas import PromotionTarget, PromotionType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["promotions"])

REQUIRED_PROMOTION_FIELDS = ["title", "description", "type", "start_date"]


class PromotionIn(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    type: Optional[PromotionType] = None
    value: Optional[float] = Field(None, ge=0)
    target: Optional[PromotionTarget] = None
    code: Optional[str] = None
    min_purchase_amount: Optional[float] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    product_ids: Optional[List[str]] = None
    brand_ids: Optional[List[str]] = None
    category_ids: Optional[List[str]] = None
    image_url: Optional[str] = None
    terms_and_conditions: Optional[str] = None


class CodeCheck(BaseModel):
    code: str = Field(..., min_length=1)
    subtotal: Optional[float] = Field(None, ge=0)


def is_promotion_active(promotion: dict, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    if not promotion.get("is_active", True):
        return False
    start = promotion.get("start_date")
    end = promotion.get("end_date")
    if start and start > now:
        return False
    if end and end < now:
        return False
    limit = promotion.get("usage_limit")
    if limit is not None and promotion.get("usage_count", 0) >= limit:
        return False
    return True


def _eligible(item: dict, promotion: dict) -> bool:
    target = promotion.get("target", "ALL")
    if target == "PRODUCTS":
        return item.get("product_id") in promotion.get("product_ids", [])
    if target == "BRANDS":
        return item.get("brand_id") in promotion.get("brand_ids", [])
    if target == "CATEGORIES":
        return item.get("category_id") in promotion.get("category_ids", [])
    return True


def calculate_total_discount(
    items: List[dict],
    promotions: Iterable[dict],
    now: Optional[datetime] = None,
) -> Tuple[float, bool, List[dict]]:
    """
    Return (discount_amount, has_free_shipping, applied_promotions) for cart
    lines shaped like {product_id, brand_id, category_id, price, quantity}.
    """
    subtotal = sum(item["price"] * item["quantity"] for item in items)
    total = 0.0
    free_shipping = False
    applied = []

    for promotion in promotions:
        if not is_promotion_active(promotion, now):
            continue
        minimum = promotion.get("min_purchase_amount")
        if minimum and subtotal < minimum:
            continue

        lines = [item for item in items if _eligible(item, promotion)]
        if not lines:
            continue
        eligible_subtotal = sum(item["price"] * item["quantity"] for item in lines)
        value = promotion.get("value") or 0
        kind = promotion["type"]

        if kind == "percentage":
            amount = eligible_subtotal * value / 100
        elif kind == "fixed":
            amount = min(value, eligible_subtotal)
        elif kind == "bogo":
            amount = sum(item["quantity"] // (int(value) + 1) * item["price"] for item in lines)
        elif kind == "free_shipping":
            free_shipping = True
            amount = 0
        else:
            amount = 0

        total += amount
        applied.append(promotion)

    return round(min(total, subtotal), 2), free_shipping, applied


def find_promotions_by_codes(codes: Iterable[str]) -> List[dict]:
    db = require_db()
    found = []
    for code in codes:
        promotion = db["promotion"].find_one({"code": equals_ci(code)})
        if promotion is None or not is_promotion_active(promotion):
            raise HTTPException(status_code=404, detail=f"Promotion code {code} is invalid or expired")
        found.append(promotion)
    return found


def record_usage(promotions: Iterable[dict]) -> None:
    db = require_db()
    for promotion in promotions:
        db["promotion"].update_one({"_id": promotion["_id"]}, {"$inc": {"usage_count": 1}})


# -----------------------------
# Endpoints
# -----------------------------
@router.get("/promotions")
def list_promotions(active: Optional[bool] = None):
    db = require_db()
    promotions = db["promotion"].find().sort("created_at", -1)
    if active:
        promotions = [p for p in promotions if is_promotion_active(p)]
    return [serialize_document(p) for p in promotions]


@router.post("/promotions", status_code=201)
def create_promotion(payload: PromotionIn, admin: dict = Depends(require_admin)):
    data = payload.model_dump(exclude_none=True)
    missing = [f for f in REQUIRED_PROMOTION_FIELDS if not data.get(f)]
    if missing:
        raise HTTPException(status_code=400, detail={"error": "Missing required fields", "fields": missing})

    for field in ("start_date", "end_date"):
        if field in data:
            data[field] = as_naive_utc(data[field])
    doc = {
        "value": 0,
        "target": "ALL",
        "code": None,
        "min_purchase_amount": None,
        "end_date": None,
        "is_active": True,
        "usage_limit": None,
        "usage_count": 0,
        "product_ids": [],
        "brand_ids": [],
        "category_ids": [],
        "image_url": None,
        "terms_and_conditions": None,
        **data,
    }
    promotion_id = create_document("promotion", doc)
    logger.info("Created promotion %s (%s)", promotion_id, doc["title"])
    return serialize_document(get_or_404("promotion", promotion_id, "Promotion"))


@router.post("/promotions/validate-code")
def validate_code(payload: CodeCheck):
    db = require_db()
    promotion = db["promotion"].find_one({"code": equals_ci(payload.code)})
    if promotion is None or not is_promotion_active(promotion):
        raise HTTPException(status_code=404, detail="Promotion code is invalid or expired")
    minimum = promotion.get("min_purchase_amount")
    if payload.subtotal is not None and minimum and payload.subtotal < minimum:
        raise HTTPException(status_code=400, detail=f"Minimum purchase amount is {minimum:.2f}")
    return serialize_document(promotion)


@router.get("/promotions/{promotion_id}")
def get_promotion(promotion_id: str):
    return serialize_document(get_or_404("promotion", promotion_id, "Promotion"))


@router.put("/promotions/{promotion_id}")
def update_promotion(promotion_id: str, payload: PromotionIn, admin: dict = Depends(require_admin)):
    promotion = get_or_404("promotion", promotion_id, "Promotion")
    changes = payload.model_dump(exclude_unset=True)
    blank = [f for f in REQUIRED_PROMOTION_FIELDS if f in changes and not changes[f]]
    if blank:
        raise HTTPException(status_code=400, detail={"error": "Missing required fields", "fields": blank})
    for field in ("start_date", "end_date"):
        if changes.get(field):
            changes[field] = as_naive_utc(changes[field])
    return serialize_document(update_document("promotion", promotion["_id"], changes))


@router.delete("/promotions/{promotion_id}")
def delete_promotion(promotion_id: str, admin: dict = Depends(require_admin)):
    db = require_db()
    promotion = get_or_404("promotion", promotion_id, "Promotion")
    db["promotion"].delete_one({"_id": promotion["_id"]})
    db["product"].update_many({"promotion_id": promotion_id}, {"$set": {"promotion_id": None}})
    return {"success": True}


@router.get("/promotions/{promotion_id}/related-products")
def related_products(promotion_id: str, limit: int = 6):
    db = require_db()
    promotion = get_or_404("promotion", promotion_id, "Promotion")
    limit = min(max(limit, 1), 6)
    visible = {"is_visible": True, "is_discontinued": False}

    linked = [to_obj_id(pid) for pid in promotion.get("product_ids", [])]
    where = {**visible, "$or": [{"_id": {"$in": linked}}, {"promotion_id": promotion_id}]}
    products = list(db["product"].find(where).limit(limit))

    if not products:
        alternatives = []
        if promotion.get("brand_ids"):
            alternatives.append({"brand_id": {"$in": promotion["brand_ids"]}})
        if promotion.get("category_ids"):
            alternatives.append({"category_id": {"$in": promotion["category_ids"]}})
        if alternatives:
            products = list(
                db["product"].find({**visible, "$or": alternatives})
                .sort("is_featured", -1)
                .limit(limit)
            )
    return {"products": attach_references(products)}
