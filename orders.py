"""
Orders: creation, listing, status changes with history, cancellation and
payment status.
"""

import logging
import secrets
import time
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr, Field

import emails
import settings
from auth import get_current_user, get_optional_user, is_admin
from carriers import get_shipping_service
from catalog import touch_stock
from database import create_document, update_document, utcnow
from helpers import (
    NotFoundError,
    ValidationError,
    contains,
    get_or_404,
    page_meta,
    require_db,
    serialize_document,
    to_obj_id,
)
from inventory import record_movement
from promotions import calculate_total_discount, find_promotions_by_codes, record_usage
from schemas import OrderHistory, OrderStatus, PaymentStatus
from shipping import (
    PackageDetails,
    ShipmentRequest,
    ShippingAddress,
    ShippingError,
    default_shipper_address,
    get_shipping_option,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["orders"])

CANCELLABLE_STATUSES = ("PENDING", "PROCESSING")

# per-tire package used when the product has no weight on file
DEFAULT_TIRE_WEIGHT = 10.0
TIRE_BOX_CM = (70, 70, 25)


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class ShippingAddressIn(BaseModel):
    address_line1: str = Field(..., min_length=1)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2, max_length=2, description="ISO 3166-1 alpha-2 code")


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: ShippingAddressIn
    guest_email: Optional[EmailStr] = None
    shipping_option: Optional[str] = None
    promotion_codes: List[str] = []
    payment_method: str = "STRIPE"
    notes: Optional[str] = None


class StatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None
    shipping_provider: Optional[str] = None
    tracking_url: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class PaymentUpdate(BaseModel):
    payment_status: PaymentStatus


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(2)}"


def add_history(order_id: str, status: str, note: str, user_id: Optional[str] = None) -> str:
    return create_document("orderhistory", OrderHistory(order_id=order_id, status=status, note=note, user_id=user_id))


def calculate_order_totals(lines: List[dict], promotions: List[dict], shipping_price: float) -> dict:
    """Subtotal, promotion discount, tax on the discounted amount, shipping and total."""
    subtotal = round(sum(line["price"] * line["quantity"] for line in lines), 2)
    discount, free_shipping, applied = calculate_total_discount(lines, promotions)
    taxable = subtotal - discount
    tax = round(taxable * settings.TAX_RATE, 2) if taxable > 0 else 0
    shipping = 0 if free_shipping else shipping_price
    return {
        "subtotal": subtotal,
        "discount": {
            "amount": discount,
            "promotions": [serialize_document(p) for p in applied],
            "has_free_shipping": free_shipping,
        },
        "tax": tax,
        "shipping": shipping,
        "total": round(subtotal - discount + tax + shipping, 2),
    }


def unit_price(product: dict, retailer: bool = False) -> float:
    """Sale price for the buyer; a sale price of 0 is a real price."""
    if retailer:
        sale, list_price = product.get("wholesale_sale_price"), product.get("wholesale_price", 0)
    else:
        sale, list_price = product.get("sale_price"), product.get("retail_price", 0)
    return sale if sale is not None else list_price


def build_order_lines(items: List[dict], retailer: bool = False) -> List[dict]:
    """
    Resolve products for [{product_id, quantity}] and check stock.
    Raises NotFoundError / ValidationError.
    """
    db = require_db()
    lines = []
    for item in items:
        oid = to_obj_id(item["product_id"], "product id")
        product = db["product"].find_one({"_id": oid})
        if product is None:
            raise NotFoundError(f"Product {item['product_id']} not found")
        if product.get("stock", 0) < item["quantity"]:
            raise ValidationError(f"Insufficient stock for product {product['name']}")
        price = unit_price(product, retailer)
        lines.append({
            "product_id": str(product["_id"]),
            "brand_id": product.get("brand_id"),
            "category_id": product.get("category_id"),
            "name": product["name"],
            "price": price,
            "quantity": item["quantity"],
            "weight": product.get("weight") or DEFAULT_TIRE_WEIGHT,
        })
    return lines


def _try_create_shipment(order: dict, lines: List[dict], contact: Dict[str, str]) -> dict:
    """Validate the address and buy a label. Failures are logged and ignored."""
    service = get_shipping_service()
    try:
        recipient = ShippingAddress(
            contact_name=contact.get("name", ""),
            email=contact.get("email", ""),
            address_line1=order["shipping_address_line1"],
            address_line2=order.get("shipping_address_line2"),
            city=order["shipping_city"],
            state=order.get("shipping_state") or "",
            postal_code=order["shipping_postal_code"],
            country_code=order["shipping_country"].upper(),
        )
        validation = service.validate_address(recipient)
        if not validation.valid:
            logger.warning("Shipping address for %s did not validate: %s", order["order_number"], validation.messages)

        length, width, height = TIRE_BOX_CM
        packages = [
            PackageDetails(weight=line["weight"], length=length, width=width, height=height, description=line["name"])
            for line in lines
            for _ in range(line["quantity"])
        ]
        shipment = service.create_shipment(ShipmentRequest(
            shipper_address=default_shipper_address(),
            recipient_address=recipient,
            packages=packages,
            reference=order["order_number"],
        ))
    except ShippingError as e:
        logger.warning("Could not create shipment for order %s: %s", order["order_number"], e)
        return {}
    return {
        "tracking_number": shipment.tracking_number,
        "carrier": service.factory.get_provider().name,
        "metadata.shipment": shipment.model_dump(mode="json"),
    }


def create_order(
    items: List[dict],
    address: dict,
    user: Optional[dict] = None,
    guest_email: Optional[str] = None,
    shipping_option: Optional[str] = None,
    promotion_codes: Optional[List[str]] = None,
    payment_method: str = "STRIPE",
    notes: Optional[str] = None,
) -> dict:
    db = require_db()
    if user is None and not guest_email:
        raise ValidationError("An email address is required for guest orders")

    retailer = bool(user) and user.get("role") == "RETAILER"
    lines = build_order_lines(items, retailer)
    promotions = find_promotions_by_codes(promotion_codes or [])
    option = get_shipping_option(shipping_option)
    totals = calculate_order_totals(lines, promotions, option["price"])

    for line in lines:
        touch_stock(line["product_id"], -line["quantity"])

    doc = {
        "order_number": generate_order_number(),
        "user_id": str(user["_id"]) if user else None,
        "guest_email": guest_email if user is None else None,
        "items": [{k: line[k] for k in ("product_id", "name", "price", "quantity")} for line in lines],
        "subtotal": totals["subtotal"],
        "tax": totals["tax"],
        "shipping_cost": totals["shipping"],
        "discount": totals["discount"]["amount"],
        "total": totals["total"],
        "status": "PENDING",
        "payment_status": "PENDING",
        "payment_method": payment_method,
        "is_retailer_order": retailer,
        "shipping_address_line1": address["address_line1"],
        "shipping_address_line2": address.get("address_line2"),
        "shipping_city": address["city"],
        "shipping_state": address.get("state"),
        "shipping_postal_code": address["postal_code"],
        "shipping_country": address["country"].upper(),
        "shipping_method": option,
        "tracking_number": None,
        "tracking_url": None,
        "carrier": None,
        "metadata": {
            "notes": notes or "",
            "promotion_ids": [str(p["_id"]) for p in promotions],
        },
    }
    order_id = create_document("order", doc)
    record_usage(promotions)

    email = user["email"] if user else guest_email
    shipment = _try_create_shipment(doc, lines, {"name": user.get("name", "") if user else "", "email": email})
    if shipment:
        db["order"].update_one({"_id": to_obj_id(order_id)}, {"$set": shipment})

    add_history(order_id, "PENDING", "Order created", str(user["_id"]) if user else None)
    order = db["order"].find_one({"_id": to_obj_id(order_id)})
    emails.send_order_confirmation(order, email)
    logger.info("Created order %s (%s) total %.2f", order_id, order["order_number"], order["total"])
    return order


def _owned_or_admin(order: dict, user: dict) -> None:
    if order.get("user_id") != str(user["_id"]) and not is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden")


def _order_query(status: Optional[str], payment_status: Optional[str], search: Optional[str]) -> dict:
    where: dict = {}
    if status and status != "ALL":
        where["status"] = status
    if payment_status and payment_status != "ALL":
        where["payment_status"] = payment_status
    if search:
        where["$or"] = [
            {"order_number": contains(search)},
            {"shipping_city": contains(search)},
            {"shipping_country": contains(search)},
        ]
    return where


def _paginate_orders(where: dict, page: int, per_page: int) -> dict:
    db = require_db()
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    total = db["order"].count_documents(where)
    orders = (
        db["order"].find(where)
        .sort("created_at", -1)
        .skip((page - 1) * per_page)
        .limit(per_page)
    )
    return {"orders": [serialize_document(o) for o in orders], "meta": page_meta(page, per_page, total)}


# -----------------------------
# Endpoints
# -----------------------------
@router.post("/orders", status_code=201)
def create_order_endpoint(payload: OrderCreate, user: dict = Depends(get_current_user)):
    try:
        order = create_order(
            [i.model_dump() for i in payload.items],
            payload.shipping_address.model_dump(),
            user=user,
            shipping_option=payload.shipping_option,
            promotion_codes=payload.promotion_codes,
            payment_method=payload.payment_method,
            notes=payload.notes,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return serialize_document(order)


@router.get("/orders")
def list_orders(
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    search: Optional[str] = None,
    page: int = 1,
    per_page: int = 10,
    user: dict = Depends(get_current_user),
):
    where = _order_query(status, payment_status, search)
    if not is_admin(user):
        where["user_id"] = str(user["_id"])
    return _paginate_orders(where, page, per_page)


@router.get("/orders/by-number")
def get_order_by_number(order_number: Optional[str] = None, user: Optional[dict] = Depends(get_optional_user)):
    if not order_number:
        raise HTTPException(status_code=400, detail="Order number is required")
    order = require_db()["order"].find_one({"order_number": order_number})
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    if order.get("user_id") and (user is None or order["user_id"] != str(user["_id"])) and not is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden")
    return serialize_document(order)


@router.get("/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user)):
    order = get_or_404("order", order_id, "Order")
    _owned_or_admin(order, user)
    return serialize_document(order)


@router.put("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdate, user: dict = Depends(get_current_user)):
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden")
    order = get_or_404("order", order_id, "Order")

    changes = {"status": payload.status}
    if payload.tracking_number:
        changes["tracking_number"] = payload.tracking_number
    if payload.shipping_provider:
        changes["carrier"] = payload.shipping_provider
    if payload.tracking_url:
        changes["tracking_url"] = payload.tracking_url
    updated = update_document("order", order["_id"], changes)

    note = f"Order status updated to {payload.status}"
    if payload.tracking_number:
        note += f" with tracking number {payload.tracking_number}"
    add_history(order_id, payload.status, note, str(user["_id"]))
    logger.info("Order %s status %s -> %s", order_id, order["status"], payload.status)
    return serialize_document(updated)


@router.get("/orders/{order_id}/history")
def get_order_history(order_id: str, user: dict = Depends(get_current_user)):
    order = get_or_404("order", order_id, "Order")
    _owned_or_admin(order, user)
    rows = require_db()["orderhistory"].find({"order_id": order_id}).sort("created_at", -1)
    return [serialize_document(r) for r in rows]


@router.patch("/orders/{order_id}/payment")
def update_payment_status(order_id: str, payload: PaymentUpdate, user: dict = Depends(get_current_user)):
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden")
    order = get_or_404("order", order_id, "Order")
    updated = update_document("order", order["_id"], {"payment_status": payload.payment_status})
    logger.info("Order %s payment status %s", order_id, payload.payment_status)
    return serialize_document(updated)


@router.get("/user/orders")
def list_my_orders(page: int = 1, per_page: int = 10, status: Optional[str] = None, user: dict = Depends(get_current_user)):
    where = _order_query(status, None, None)
    where["user_id"] = str(user["_id"])
    return _paginate_orders(where, page, per_page)


@router.post("/user/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: Optional[CancelRequest] = None, user: dict = Depends(get_current_user)):
    db = require_db()
    order = get_or_404("order", order_id, "Order")
    if order.get("user_id") != str(user["_id"]) and not is_admin(user):
        raise HTTPException(status_code=403, detail="You are not authorized to cancel this order")
    if order["status"] not in CANCELLABLE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Order cannot be cancelled. Current status: {order['status']}")

    reason = (payload.reason if payload else None) or "Cancelled by customer"
    metadata = {
        **(order.get("metadata") or {}),
        "cancellation": {
            "cancelled_at": utcnow().isoformat(),
            "cancelled_by": str(user["_id"]),
            "reason": reason,
        },
    }
    updated = update_document("order", order["_id"], {
        "status": "CANCELLED",
        "payment_status": "CANCELLED",
        "metadata": metadata,
    })

    for item in order["items"]:
        touch_stock(item["product_id"], item["quantity"])
        inventory = db["inventory"].find_one({"product_id": item["product_id"]})
        if inventory is None:
            continue
        db["inventory"].update_one(
            {"_id": inventory["_id"]},
            {"$inc": {"quantity": item["quantity"]}, "$set": {"updated_at": utcnow()}},
        )
        record_movement(
            inventory,
            item["quantity"],
            "RETURN",
            reason="Order cancelled",
            notes=f"Order #{order['order_number']} cancelled: {reason}",
            order_id=order_id,
            created_by=str(user["_id"]),
        )

    add_history(order_id, "CANCELLED", f"Order cancelled: {reason}", str(user["_id"]))

    owner = db["user"].find_one({"_id": to_obj_id(order["user_id"])}) if order.get("user_id") else None
    email = owner["email"] if owner else order.get("guest_email")
    if email:
        emails.send_order_cancellation(email, owner.get("name", "") if owner else "", order["order_number"], reason)
    return {"success": True, "order": serialize_document(updated)}
