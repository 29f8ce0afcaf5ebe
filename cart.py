"""
Session cart and checkout. The storefront sends its own session_id.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field

from auth import get_optional_user
from catalog import attach_references
from database import create_document, get_documents, utcnow
from helpers import NotFoundError, ValidationError, require_db, serialize_document, to_obj_id
from orders import ShippingAddressIn, build_order_lines, calculate_order_totals, create_order, unit_price
from promotions import find_promotions_by_codes
from schemas import CartItem
from shipping import get_shipping_option

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["cart"])

MAX_LINE_QUANTITY = 20


class QuantityUpdate(BaseModel):
    quantity: int = Field(..., ge=1, le=MAX_LINE_QUANTITY)


class QuoteRequest(BaseModel):
    session_id: str
    promotion_codes: List[str] = []
    shipping_option: Optional[str] = None


class CheckoutRequest(QuoteRequest):
    shipping_address: ShippingAddressIn
    email: Optional[EmailStr] = None
    payment_method: str = "STRIPE"
    notes: Optional[str] = None


def _cart_lines(session_id: str) -> List[dict]:
    return get_documents("cartitem", {"session_id": session_id})


@router.post("/cart", status_code=201)
def add_to_cart(item: CartItem):
    db = require_db()
    product = db["product"].find_one({"_id": to_obj_id(item.product_id, "product id")})
    if product is None or not product.get("is_visible", True):
        raise HTTPException(status_code=404, detail="Product not found")

    existing = db["cartitem"].find_one({"session_id": item.session_id, "product_id": item.product_id})
    if existing:
        quantity = min(existing["quantity"] + item.quantity, MAX_LINE_QUANTITY)
        db["cartitem"].update_one(
            {"_id": existing["_id"]}, {"$set": {"quantity": quantity, "updated_at": utcnow()}}
        )
        return {"id": str(existing["_id"]), "quantity": quantity}

    _id = create_document("cartitem", item)
    return {"id": _id, "quantity": item.quantity}


@router.get("/cart/{session_id}")
def get_cart(session_id: str):
    items = _cart_lines(session_id)
    db = require_db()
    products = {
        p["id"]: p
        for p in attach_references(list(db["product"].find({"_id": {"$in": [to_obj_id(i["product_id"]) for i in items]}})))
    }
    result = []
    subtotal = 0.0
    for it in items:
        product = products.get(it["product_id"])
        price = unit_price(product) if product else 0
        subtotal += price * it["quantity"]
        result.append({
            "id": str(it["_id"]),
            "product": product,
            "quantity": it["quantity"],
            "subtotal": round(price * it["quantity"], 2),
        })
    return {"items": result, "subtotal": round(subtotal, 2)}


@router.patch("/cart/{session_id}/items/{item_id}")
def update_cart_item(session_id: str, item_id: str, payload: QuantityUpdate):
    db = require_db()
    result = db["cartitem"].update_one(
        {"_id": to_obj_id(item_id, "item id"), "session_id": session_id},
        {"$set": {"quantity": payload.quantity, "updated_at": utcnow()}},
    )
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return {"id": item_id, "quantity": payload.quantity}


@router.delete("/cart/{session_id}/items/{item_id}")
def remove_cart_item(session_id: str, item_id: str):
    db = require_db()
    result = db["cartitem"].delete_one({"_id": to_obj_id(item_id, "item id"), "session_id": session_id})
    if result.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return {"success": True}


def _quote(req: QuoteRequest, user: Optional[dict]) -> tuple:
    items = [{"product_id": i["product_id"], "quantity": i["quantity"]} for i in _cart_lines(req.session_id)]
    if not items:
        raise HTTPException(status_code=400, detail="Cart is empty")
    retailer = bool(user) and user.get("role") == "RETAILER"
    try:
        lines = build_order_lines(items, retailer)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    promotions = find_promotions_by_codes(req.promotion_codes)
    option = get_shipping_option(req.shipping_option)
    return items, calculate_order_totals(lines, promotions, option["price"])


@router.post("/checkout/quote")
def checkout_quote(req: QuoteRequest, user: Optional[dict] = Depends(get_optional_user)):
    _, totals = _quote(req, user)
    return totals


@router.post("/checkout", status_code=201)
def checkout(req: CheckoutRequest, user: Optional[dict] = Depends(get_optional_user)):
    items, _ = _quote(req, user)
    if user is None and not req.email:
        raise HTTPException(status_code=400, detail="Email is required for guest checkout")
    try:
        order = create_order(
            items,
            req.shipping_address.model_dump(),
            user=user,
            guest_email=str(req.email) if req.email else None,
            shipping_option=req.shipping_option,
            promotion_codes=req.promotion_codes,
            payment_method=req.payment_method,
            notes=req.notes,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    # Clear cart after checkout
    require_db()["cartitem"].delete_many({"session_id": req.session_id})
    logger.info("Checkout for session %s created order %s", req.session_id, order["order_number"])
    return {
        "order_id": str(order["_id"]),
        "order_number": order["order_number"],
        "total": order["total"],
        "order": serialize_document(order),
    }
