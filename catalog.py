"""
Catalog endpoints: brands, categories and tires.
"""

import logging
from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auth import require_admin
from database import create_document, update_document, utcnow
from discounts import derive_sale_prices
from helpers import (
    contains,
    equals_ci,
    get_or_404,
    page_meta,
    require_db,
    serialize_document,
    to_obj_id,
)
from localization import get_localized_content
from schemas import SPEED_RATINGS, TIRE_TYPES, TireType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["catalog"])

SortOrder = Literal["asc", "desc"]


def _direction(order: str) -> int:
    return 1 if order == "asc" else -1


def _clamp_per_page(per_page: int) -> int:
    if per_page < 1 or per_page > 100:
        raise HTTPException(status_code=400, detail="per_page must be between 1 and 100")
    return per_page


# -----------------------------
# Brands
# -----------------------------
class BrandIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    logo_url: Optional[str] = None
    is_active: bool = True
    popularity_score: Optional[int] = None


def _brand_out(brand: dict) -> dict:
    db = require_db()
    data = serialize_document(brand)
    data["product_count"] = db["product"].count_documents({"brand_id": data["id"]})
    return data


@router.get("/brands")
def list_brands(
    query: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
    sort: Literal["name", "created_at", "popularity_score"] = "name",
    order: SortOrder = "asc",
):
    db = require_db()
    page = max(page, 1)
    per_page = _clamp_per_page(per_page)
    where: dict = {}
    if query:
        where["$or"] = [{"name": contains(query)}, {"description": contains(query)}]

    total = db["brand"].count_documents(where)
    brands = (
        db["brand"].find(where)
        .sort(sort, _direction(order))
        .skip((page - 1) * per_page)
        .limit(per_page)
    )
    meta = page_meta(page, per_page, total)
    return {
        "brands": [_brand_out(b) for b in brands],
        "total_count": total,
        "page": page,
        "per_page": per_page,
        "total_pages": meta["total_pages"],
    }


@router.post("/brands", status_code=201)
def create_brand(payload: BrandIn, admin: dict = Depends(require_admin)):
    if not payload.name:
        raise HTTPException(status_code=400, detail="Name is required")
    brand_id = create_document("brand", payload.model_dump())
    return _brand_out(get_or_404("brand", brand_id, "Brand"))


@router.get("/brands/{brand_id}")
def get_brand(brand_id: str):
    return _brand_out(get_or_404("brand", brand_id, "Brand"))


@router.put("/brands/{brand_id}")
def update_brand(brand_id: str, payload: BrandIn, admin: dict = Depends(require_admin)):
    brand = get_or_404("brand", brand_id, "Brand")
    changes = payload.model_dump(exclude_unset=True)
    if "name" in changes and not changes["name"]:
        raise HTTPException(status_code=400, detail="Name is required")
    return _brand_out(update_document("brand", brand["_id"], changes))


@router.delete("/brands/{brand_id}")
def delete_brand(brand_id: str, admin: dict = Depends(require_admin)):
    db = require_db()
    brand = get_or_404("brand", brand_id, "Brand")
    if db["product"].count_documents({"brand_id": brand_id}):
        raise HTTPException(status_code=409, detail="Cannot delete brand with associated products")
    db["brand"].delete_one({"_id": brand["_id"]})
    return {"success": True}


@router.get("/brands/{brand_id}/products")
def list_brand_products(brand_id: str, page: int = 1, limit: int = 12):
    get_or_404("brand", brand_id, "Brand")
    return _product_page({"brand_id": brand_id, "is_visible": True}, page, limit)


# -----------------------------
# Categories
# -----------------------------
class CategoryIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool = True
    display_order: int = 0


def _category_out(category: dict) -> dict:
    db = require_db()
    data = serialize_document(category)
    data["product_count"] = db["product"].count_documents({"category_id": data["id"]})
    return data


@router.get("/categories")
def list_categories(
    query: Optional[str] = None,
    page: int = 1,
    per_page: int = 20,
    sort: Literal["name", "created_at", "display_order"] = "name",
    order: SortOrder = "asc",
):
    db = require_db()
    page = max(page, 1)
    per_page = _clamp_per_page(per_page)
    where: dict = {}
    if query:
        where["$or"] = [{"name": contains(query)}, {"description": contains(query)}]

    total = db["category"].count_documents(where)
    categories = (
        db["category"].find(where)
        .sort(sort, _direction(order))
        .skip((page - 1) * per_page)
        .limit(per_page)
    )
    meta = page_meta(page, per_page, total)
    return {
        "categories": [_category_out(c) for c in categories],
        "total_count": total,
        "page": page,
        "per_page": per_page,
        "total_pages": meta["total_pages"],
    }


@router.post("/categories", status_code=201)
def create_category(payload: CategoryIn, admin: dict = Depends(require_admin)):
    if not payload.name:
        raise HTTPException(status_code=400, detail="Name is required")
    category_id = create_document("category", payload.model_dump())
    return _category_out(get_or_404("category", category_id, "Category"))


@router.get("/categories/{category_id}")
def get_category(category_id: str):
    return _category_out(get_or_404("category", category_id, "Category"))


@router.put("/categories/{category_id}")
def update_category(category_id: str, payload: CategoryIn, admin: dict = Depends(require_admin)):
    category = get_or_404("category", category_id, "Category")
    changes = payload.model_dump(exclude_unset=True)
    if "name" in changes and not changes["name"]:
        raise HTTPException(status_code=400, detail="Name is required")
    return _category_out(update_document("category", category["_id"], changes))


@router.delete("/categories/{category_id}")
def delete_category(category_id: str, admin: dict = Depends(require_admin)):
    db = require_db()
    category = get_or_404("category", category_id, "Category")
    if db["product"].count_documents({"category_id": category_id}):
        raise HTTPException(status_code=409, detail="Cannot delete category with associated products")
    db["category"].delete_one({"_id": category["_id"]})
    return {"success": True}


@router.get("/categories/{category_id}/products")
def list_category_products(category_id: str, page: int = 1, limit: int = 12):
    get_or_404("category", category_id, "Category")
    return _product_page({"category_id": category_id, "is_visible": True}, page, limit)


# -----------------------------
# Products
# -----------------------------
REQUIRED_PRODUCT_FIELDS = [
    "name", "brand_id", "category_id", "width", "aspect_ratio",
    "rim_diameter", "load_index", "retail_price", "wholesale_price",
]


class ProductIn(BaseModel):
    name: Optional[str] = None
    brand_id: Optional[str] = None
    category_id: Optional[str] = None
    model: Optional[str] = None
    description: Optional[str] = None
    short_description: Optional[str] = None
    localized_descriptions: Optional[Dict[str, str]] = None
    localized_short_descriptions: Optional[Dict[str, str]] = None
    attributes: Optional[Dict[str, str]] = None
    width: Optional[int] = Field(None, gt=0)
    aspect_ratio: Optional[int] = Field(None, gt=0)
    rim_diameter: Optional[int] = Field(None, gt=0)
    load_index: Optional[int] = Field(None, gt=0)
    speed_rating: Optional[str] = None
    tire_type: Optional[TireType] = None
    run_flat: Optional[bool] = None
    reinforced: Optional[bool] = None
    manufacturer_part_number: Optional[str] = None
    retail_price: Optional[float] = Field(None, ge=0)
    wholesale_price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    retailer_discount: Optional[float] = Field(None, ge=0, le=100)
    stock: Optional[int] = Field(None, ge=0)
    weight: Optional[float] = Field(None, gt=0)
    images: Optional[List[str]] = None
    is_visible: Optional[bool] = None
    is_featured: Optional[bool] = None
    is_discontinued: Optional[bool] = None


PRODUCT_DEFAULTS = {
    "model": None,
    "description": None,
    "short_description": None,
    "localized_descriptions": None,
    "localized_short_descriptions": None,
    "attributes": {},
    "speed_rating": None,
    "tire_type": "ALL_SEASON",
    "run_flat": False,
    "reinforced": False,
    "manufacturer_part_number": None,
    "discount": 0,
    "retailer_discount": 0,
    "stock": 0,
    "weight": None,
    "images": [],
    "is_visible": True,
    "is_featured": False,
    "is_discontinued": False,
    "promotion_id": None,
    "review_count": 0,
    "average_rating": 0,
}


def _check_references(data: dict) -> None:
    db = require_db()
    if "brand_id" in data and not db["brand"].find_one({"_id": to_obj_id(data["brand_id"], "brand id")}):
        raise HTTPException(status_code=400, detail="Brand not found")
    if "category_id" in data and not db["category"].find_one({"_id": to_obj_id(data["category_id"], "category id")}):
        raise HTTPException(status_code=400, detail="Category not found")


def attach_references(products: List[dict]) -> List[dict]:
    """Serialize products and embed a short brand and category summary."""
    db = require_db()
    brand_ids = {p.get("brand_id") for p in products if p.get("brand_id")}
    category_ids = {p.get("category_id") for p in products if p.get("category_id")}
    brands = {
        str(b["_id"]): {"id": str(b["_id"]), "name": b["name"], "logo_url": b.get("logo_url")}
        for b in db["brand"].find({"_id": {"$in": [to_obj_id(i) for i in brand_ids]}})
    }
    categories = {
        str(c["_id"]): {"id": str(c["_id"]), "name": c["name"]}
        for c in db["category"].find({"_id": {"$in": [to_obj_id(i) for i in category_ids]}})
    }
    out = []
    for product in products:
        data = serialize_document(product)
        data["brand"] = brands.get(data.get("brand_id"))
        data["category"] = categories.get(data.get("category_id"))
        out.append(data)
    return out


def _product_page(where: dict, page: int, limit: int) -> dict:
    db = require_db()
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    total = db["product"].count_documents(where)
    products = list(
        db["product"].find(where)
        .sort("created_at", -1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {"products": attach_references(products), "meta": page_meta(page, limit, total)}


def _ids_by_name(collection: str, name: str) -> List[str]:
    return [str(d["_id"]) for d in require_db()[collection].find({"name": equals_ci(name)}, {"_id": 1})]


def _price_range(low: Optional[float], high: Optional[float]) -> Optional[dict]:
    bounds = {}
    if low is not None:
        bounds["$gte"] = low
    if high is not None:
        bounds["$lte"] = high
    return bounds or None


@router.get("/products")
def list_products(
    page: int = 1,
    limit: int = 10,
    brand: Optional[str] = None,
    category: Optional[str] = None,
    tire_type: Optional[TireType] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    min_retail_price: Optional[float] = None,
    max_retail_price: Optional[float] = None,
    min_wholesale_price: Optional[float] = None,
    max_wholesale_price: Optional[float] = None,
    width: Optional[int] = None,
    aspect_ratio: Optional[int] = None,
    rim_diameter: Optional[int] = None,
):
    where: dict = {}
    if brand:
        where["brand_id"] = {"$in": _ids_by_name("brand", brand)}
    if category:
        where["category_id"] = {"$in": _ids_by_name("category", category)}
    if tire_type:
        where["tire_type"] = tire_type

    retail = _price_range(
        min_price if min_price is not None else min_retail_price,
        max_price if max_price is not None else max_retail_price,
    )
    if retail:
        where["retail_price"] = retail
    wholesale = _price_range(min_wholesale_price, max_wholesale_price)
    if wholesale:
        where["wholesale_price"] = wholesale

    for field, value in (("width", width), ("aspect_ratio", aspect_ratio), ("rim_diameter", rim_diameter)):
        if value is not None:
            where[field] = value

    return _product_page(where, page, limit)


@router.post("/products", status_code=201)
def create_product(payload: ProductIn, admin: dict = Depends(require_admin)):
    data = payload.model_dump(exclude_none=True)
    missing = [f for f in REQUIRED_PRODUCT_FIELDS if data.get(f) in (None, "")]
    if missing:
        raise HTTPException(status_code=400, detail={"error": "Missing required fields", "fields": missing})
    _check_references(data)

    doc = {**PRODUCT_DEFAULTS, **data}
    doc.update(derive_sale_prices(doc))
    product_id = create_document("product", doc)
    logger.info("Created product %s (%s)", product_id, doc["name"])
    return attach_references([get_or_404("product", product_id, "Product")])[0]


# Static paths must be registered before /products/{product_id}
@router.get("/products/search")
def search_products(q: str = "", limit: int = 20):
    q = q.strip()
    if not q:
        return {"products": [], "total": 0}

    db = require_db()
    brand_ids = [str(b["_id"]) for b in db["brand"].find({"name": contains(q)}, {"_id": 1})]
    category_ids = [str(c["_id"]) for c in db["category"].find({"name": contains(q)}, {"_id": 1})]
    where = {
        "is_visible": True,
        "is_discontinued": False,
        "$or": [
            {"name": contains(q)},
            {"description": contains(q)},
            {"manufacturer_part_number": contains(q)},
            {"model": contains(q)},
            {"brand_id": {"$in": brand_ids}},
            {"category_id": {"$in": category_ids}},
        ],
    }
    products = list(
        db["product"].find(where)
        .sort([("is_featured", -1), ("name", 1)])
        .limit(min(max(limit, 1), 100))
    )
    return {"products": attach_references(products), "total": db["product"].count_documents(where)}


@router.get("/products/filter-options")
def get_filter_options():
    db = require_db()
    brands = db["brand"].find({"is_active": True}, {"name": 1}).sort("name", 1)
    categories = db["category"].find({"is_active": True}, {"name": 1}).sort("name", 1)
    visible = {"is_visible": True}
    return {
        "brands": [{"id": str(b["_id"]), "name": b["name"]} for b in brands],
        "categories": [{"id": str(c["_id"]), "name": c["name"]} for c in categories],
        "widths": sorted(db["product"].distinct("width", visible)),
        "aspect_ratios": sorted(db["product"].distinct("aspect_ratio", visible)),
        "rim_diameters": sorted(db["product"].distinct("rim_diameter", visible)),
        "tire_types": TIRE_TYPES,
        "speed_ratings": SPEED_RATINGS,
    }


def recommendation_filter(product: dict) -> dict:
    """
    Candidates for "you may also like": same size, same brand, same category
    or a similar size (width +-10, aspect ratio +-5, same rim).
    """
    return {
        "_id": {"$ne": product["_id"]},
        "is_visible": True,
        "is_discontinued": False,
        "stock": {"$gt": 0},
        "$or": [
            {
                "width": product["width"],
                "aspect_ratio": product["aspect_ratio"],
                "rim_diameter": product["rim_diameter"],
            },
            {"brand_id": product["brand_id"]},
            {"category_id": product["category_id"]},
            {
                "width": {"$gte": product["width"] - 10, "$lte": product["width"] + 10},
                "aspect_ratio": {"$gte": product["aspect_ratio"] - 5, "$lte": product["aspect_ratio"] + 5},
                "rim_diameter": product["rim_diameter"],
            },
        ],
    }


@router.get("/products/recommendations")
def get_recommendations(product_id: Optional[str] = None, limit: int = 4):
    if not product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    product = get_or_404("product", product_id, "Product")

    db = require_db()
    candidates = list(
        db["product"].find(recommendation_filter(product))
        .sort([("is_featured", -1), ("review_count", -1)])
        .limit(min(max(limit, 1), 20))
    )
    results = attach_references(candidates)
    for item in results:
        item["average_rating"] = _average_rating(item["id"])
    return {"products": results}


def _average_rating(product_id: str) -> float:
    ratings = [
        r["rating"]
        for r in require_db()["review"].find({"product_id": product_id, "status": "PUBLISHED"}, {"rating": 1})
    ]
    return round(sum(ratings) / len(ratings), 1) if ratings else 0


@router.get("/products/{product_id}")
def get_product(product_id: str, locale: Optional[str] = None):
    product = attach_references([get_or_404("product", product_id, "Product")])[0]
    if locale:
        product["description"] = get_localized_content(
            product.get("localized_descriptions"), product.get("description"), locale
        )
        product["short_description"] = get_localized_content(
            product.get("localized_short_descriptions"), product.get("short_description"), locale
        )
    return product


@router.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductIn, admin: dict = Depends(require_admin)):
    product = get_or_404("product", product_id, "Product")
    changes = payload.model_dump(exclude_unset=True)
    blank = [f for f in REQUIRED_PRODUCT_FIELDS if f in changes and changes[f] in (None, "")]
    if blank:
        raise HTTPException(status_code=400, detail={"error": "Missing required fields", "fields": blank})
    _check_references(changes)

    changes.update(derive_sale_prices({**product, **changes}))
    return attach_references([update_document("product", product["_id"], changes)])[0]


@router.delete("/products/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(require_admin)):
    db = require_db()
    product = get_or_404("product", product_id, "Product")
    db["product"].delete_one({"_id": product["_id"]})
    db["vehiclefitment"].delete_many({"product_id": product_id})
    db["inventory"].delete_many({"product_id": product_id})
    logger.info("Deleted product %s", product_id)
    return {"success": True}


def touch_stock(product_id: str, delta: int) -> None:
    """Shift a product's aggregate stock counter by `delta`."""
    require_db()["product"].update_one(
        {"_id": to_obj_id(product_id)}, {"$inc": {"stock": delta}, "$set": {"updated_at": utcnow()}}
    )
