"""
Product reviews and store testimonials.
"""

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auth import get_current_user, get_optional_user, get_user_summary, is_admin, require_admin
from database import create_document, update_document, utcnow
from helpers import get_or_404, page_meta, require_db, serialize_document, to_obj_id
from schemas import Review, ReviewLike, Testimonial, TestimonialStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["reviews"])

VISIBLE_TESTIMONIAL_STATUSES = ("APPROVED", "FEATURED")


class ReviewIn(BaseModel):
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    content: str = Field(..., min_length=1)
    images: List[str] = []


class TestimonialIn(BaseModel):
    content: str = Field(..., min_length=10, max_length=1000)
    rating: int = Field(..., ge=1, le=5)
    customer_title: Optional[str] = None
    status: Optional[TestimonialStatus] = None


class TestimonialStatusUpdate(BaseModel):
    status: TestimonialStatus
    admin_notes: Optional[str] = None


def refresh_product_rating(product_id: str) -> None:
    db = require_db()
    ratings = [
        r["rating"]
        for r in db["review"].find({"product_id": product_id, "status": "PUBLISHED"}, {"rating": 1})
    ]
    db["product"].update_one(
        {"_id": to_obj_id(product_id)},
        {"$set": {
            "review_count": len(ratings),
            "average_rating": round(sum(ratings) / len(ratings), 1) if ratings else 0,
            "updated_at": utcnow(),
        }},
    )


# -----------------------------
# Reviews
# -----------------------------
@router.get("/reviews")
def list_reviews(
    product_id: Optional[str] = None,
    user_id: Optional[str] = None,
    rating: Optional[int] = None,
    with_images: bool = False,
    page: int = 1,
    limit: int = 10,
    sort_by: Literal["created_at", "rating"] = "created_at",
    order: Literal["asc", "desc"] = "desc",
    user: Optional[dict] = Depends(get_optional_user),
):
    db = require_db()
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    where: dict = {"status": "PUBLISHED"}
    if product_id:
        where["product_id"] = product_id
    if user_id:
        where["user_id"] = user_id
    if rating:
        where["rating"] = rating
    if with_images:
        where["images"] = {"$ne": []}

    total = db["review"].count_documents(where)
    docs = list(
        db["review"].find(where)
        .sort(sort_by, 1 if order == "asc" else -1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    review_ids = [str(d["_id"]) for d in docs]
    liked = set()
    if user:
        liked = {
            like["review_id"]
            for like in db["reviewlike"].find({"user_id": str(user["_id"]), "review_id": {"$in": review_ids}})
        }

    reviews = []
    for doc in docs:
        item = serialize_document(doc)
        item["user"] = get_user_summary(doc["user_id"])
        item["like_count"] = db["reviewlike"].count_documents({"review_id": item["id"]})
        item["has_liked"] = item["id"] in liked
        reviews.append(item)
    return {"reviews": reviews, "meta": page_meta(page, limit, total)}


@router.post("/reviews", status_code=201)
def create_review(payload: ReviewIn, user: dict = Depends(get_current_user)):
    db = require_db()
    get_or_404("product", payload.product_id, "Product")
    user_id = str(user["_id"])
    if db["review"].find_one({"product_id": payload.product_id, "user_id": user_id}):
        raise HTTPException(status_code=409, detail="You have already reviewed this product")

    review = Review(user_id=user_id, status="PUBLISHED", **payload.model_dump())
    review_id = create_document("review", review)
    refresh_product_rating(payload.product_id)
    logger.info("Review %s created for product %s", review_id, payload.product_id)
    return serialize_document(db["review"].find_one({"_id": to_obj_id(review_id)}))


@router.post("/reviews/{review_id}/like")
def toggle_like(review_id: str, user: dict = Depends(get_current_user)):
    db = require_db()
    get_or_404("review", review_id, "Review")
    user_id = str(user["_id"])
    existing = db["reviewlike"].find_one({"review_id": review_id, "user_id": user_id})
    if existing:
        db["reviewlike"].delete_one({"_id": existing["_id"]})
        liked = False
    else:
        create_document("reviewlike", ReviewLike(review_id=review_id, user_id=user_id))
        liked = True
    return {"liked": liked, "like_count": db["reviewlike"].count_documents({"review_id": review_id})}


@router.delete("/reviews/{review_id}")
def delete_review(review_id: str, user: dict = Depends(get_current_user)):
    db = require_db()
    review = get_or_404("review", review_id, "Review")
    if review["user_id"] != str(user["_id"]) and not is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden")
    db["review"].delete_one({"_id": review["_id"]})
    db["reviewlike"].delete_many({"review_id": review_id})
    refresh_product_rating(review["product_id"])
    return {"success": True}


# -----------------------------
# Testimonials
# -----------------------------
def _with_author(doc: dict) -> dict:
    item = serialize_document(doc)
    item["user"] = get_user_summary(doc.get("user_id"))
    return item


@router.get("/testimonials")
def list_testimonials(status: Optional[TestimonialStatus] = None, admin: dict = Depends(require_admin)):
    where = {"status": status} if status else {}
    docs = require_db()["testimonial"].find(where).sort("created_at", -1)
    return {"testimonials": [_with_author(d) for d in docs]}


@router.get("/testimonials/public")
def list_public_testimonials(limit: int = 10):
    docs = list(require_db()["testimonial"].find({"is_visible": True}).sort("created_at", -1))
    # featured first, newest first within each group
    docs.sort(key=lambda d: d["status"] != "FEATURED")
    return {"testimonials": [_with_author(d) for d in docs[:max(limit, 1)]]}


@router.post("/testimonials", status_code=201)
def create_testimonial(payload: TestimonialIn, user: dict = Depends(get_current_user)):
    status = payload.status if payload.status and is_admin(user) else "PENDING"
    testimonial = Testimonial(
        user_id=str(user["_id"]),
        content=payload.content,
        rating=payload.rating,
        customer_title=payload.customer_title,
        status=status,
        is_visible=status in VISIBLE_TESTIMONIAL_STATUSES,
    )
    testimonial_id = create_document("testimonial", testimonial)
    return _with_author(require_db()["testimonial"].find_one({"_id": to_obj_id(testimonial_id)}))


@router.patch("/testimonials/{testimonial_id}/status")
def update_testimonial_status(
    testimonial_id: str, payload: TestimonialStatusUpdate, admin: dict = Depends(require_admin)
):
    testimonial = get_or_404("testimonial", testimonial_id, "Testimonial")
    updated = update_document("testimonial", testimonial["_id"], {
        "status": payload.status,
        "is_visible": payload.status in VISIBLE_TESTIMONIAL_STATUSES,
        "admin_notes": payload.admin_notes,
        "reviewed_by": str(admin["_id"]),
        "reviewed_at": utcnow(),
    })
    logger.info("Testimonial %s set to %s", testimonial_id, payload.status)
    return _with_author(updated)


@router.delete("/testimonials/{testimonial_id}")
def delete_testimonial(testimonial_id: str, admin: dict = Depends(require_admin)):
    testimonial = get_or_404("testimonial", testimonial_id, "Testimonial")
    require_db()["testimonial"].delete_one({"_id": testimonial["_id"]})
    return {"success": True}
