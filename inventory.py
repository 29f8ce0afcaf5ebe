"""
Inventory per location and the movement audit trail.

Quantity changes are applied with `$inc` and then recorded as a separate
movement row. The two writes are not wrapped in a transaction.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from auth import require_admin
from catalog import attach_references
from database import create_document, update_document, utcnow
from helpers import get_or_404, require_db, serialize_document, to_obj_id
from schemas import InventoryMovement, Location, LocationType, MovementType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["inventory"])


class LocationUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    type: Optional[LocationType] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    is_active: Optional[bool] = None


class InventoryCreate(BaseModel):
    product_id: str
    location_id: str
    quantity: int = Field(0, ge=0)
    minimum_level: int = Field(0, ge=0)
    reorder_level: int = Field(0, ge=0)
    reorder_qty: int = Field(0, ge=0)


class InventoryUpdate(BaseModel):
    product_id: str
    location_id: str
    quantity_change: int
    movement_type: MovementType = "ADJUSTMENT"
    order_id: Optional[str] = None
    notes: Optional[str] = None


class QuantityAdjustment(BaseModel):
    change: int
    movement_type: MovementType = "ADJUSTMENT"
    reason: str = "Manual adjustment"


class InventorySettings(BaseModel):
    minimum_level: Optional[int] = Field(None, ge=0)
    reorder_level: Optional[int] = Field(None, ge=0)
    reorder_qty: Optional[int] = Field(None, ge=0)


def record_movement(
    inventory: dict,
    quantity: int,
    movement_type: str,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
    order_id: Optional[str] = None,
    created_by: Optional[str] = None,
) -> str:
    return create_document("inventorymovement", InventoryMovement(
        inventory_id=str(inventory["_id"]),
        product_id=inventory["product_id"],
        location_id=inventory["location_id"],
        quantity=quantity,
        movement_type=movement_type,
        reason=reason,
        notes=notes,
        order_id=order_id,
        created_by=created_by,
    ))


def update_inventory(
    product_id: str,
    location_id: str,
    quantity_change: int,
    movement_type: str,
    order_id: Optional[str] = None,
    notes: Optional[str] = None,
    created_by: Optional[str] = None,
) -> dict:
    """
    Add a signed delta to the product's stock at a location and append a
    movement row. A missing inventory row is created with the delta as its
    quantity.
    """
    db = require_db()
    inventory = db["inventory"].find_one({"product_id": product_id, "location_id": location_id})
    if inventory is None:
        inventory_id = create_document("inventory", {
            "product_id": product_id,
            "location_id": location_id,
            "quantity": quantity_change,
            "minimum_level": 0,
            "reorder_level": 0,
            "reorder_qty": 0,
        })
        inventory = db["inventory"].find_one({"_id": to_obj_id(inventory_id)})
    else:
        db["inventory"].update_one(
            {"_id": inventory["_id"]},
            {"$inc": {"quantity": quantity_change}, "$set": {"updated_at": utcnow()}},
        )
        inventory = db["inventory"].find_one({"_id": inventory["_id"]})

    record_movement(
        inventory,
        quantity_change,
        movement_type,
        reason=f"{movement_type.title()} movement",
        notes=notes,
        order_id=order_id,
        created_by=created_by,
    )
    return inventory


# -----------------------------
# Locations
# -----------------------------
@router.get("/locations")
def list_locations():
    db = require_db()
    out = []
    for location in db["location"].find().sort("name", 1):
        data = serialize_document(location)
        data["inventory_count"] = db["inventory"].count_documents({"location_id": data["id"]})
        out.append(data)
    return out


@router.post("/locations", status_code=201)
def create_location(payload: Location, admin: dict = Depends(require_admin)):
    location_id = create_document("location", payload)
    return serialize_document(get_or_404("location", location_id, "Location"))


@router.get("/locations/{location_id}")
def get_location(location_id: str):
    return serialize_document(get_or_404("location", location_id, "Location"))


@router.put("/locations/{location_id}")
def update_location(location_id: str, payload: LocationUpdate, admin: dict = Depends(require_admin)):
    location = get_or_404("location", location_id, "Location")
    return serialize_document(update_document("location", location["_id"], payload.model_dump(exclude_unset=True)))


@router.delete("/locations/{location_id}")
def delete_location(location_id: str, admin: dict = Depends(require_admin)):
    db = require_db()
    location = get_or_404("location", location_id, "Location")
    if db["inventory"].count_documents({"location_id": location_id}):
        raise HTTPException(status_code=409, detail="Cannot delete location with existing inventory")
    db["location"].delete_one({"_id": location["_id"]})
    return {"success": True}


# -----------------------------
# Inventory rows
# -----------------------------
def _inventory_out(rows) -> list:
    db = require_db()
    rows = list(rows)
    products = {
        d["id"]: d
        for d in attach_references(list(db["product"].find({"_id": {"$in": [to_obj_id(r["product_id"]) for r in rows]}})))
    }
    locations = {
        str(loc["_id"]): serialize_document(loc)
        for loc in db["location"].find({"_id": {"$in": [to_obj_id(r["location_id"]) for r in rows]}})
    }
    out = []
    for row in rows:
        data = serialize_document(row)
        data["product"] = products.get(row["product_id"])
        data["location"] = locations.get(row["location_id"])
        out.append(data)
    return out


@router.post("/inventory", status_code=201)
def add_product_to_location(payload: InventoryCreate, admin: dict = Depends(require_admin)):
    db = require_db()
    get_or_404("product", payload.product_id, "Product")
    get_or_404("location", payload.location_id, "Location")
    if db["inventory"].find_one({"product_id": payload.product_id, "location_id": payload.location_id}):
        raise HTTPException(status_code=409, detail="Product already exists in this location")

    inventory_id = create_document("inventory", payload)
    inventory = db["inventory"].find_one({"_id": to_obj_id(inventory_id)})
    if payload.quantity > 0:
        record_movement(
            inventory,
            payload.quantity,
            "PURCHASE",
            reason="Initial inventory",
            notes=f"Initial stock of {payload.quantity} units",
            created_by=str(admin["_id"]),
        )
    return _inventory_out([inventory])[0]


@router.post("/inventory/update")
def update_inventory_endpoint(payload: InventoryUpdate, admin: dict = Depends(require_admin)):
    get_or_404("product", payload.product_id, "Product")
    get_or_404("location", payload.location_id, "Location")
    inventory = update_inventory(
        payload.product_id,
        payload.location_id,
        payload.quantity_change,
        payload.movement_type,
        order_id=payload.order_id,
        notes=payload.notes,
        created_by=str(admin["_id"]),
    )
    logger.info(
        "Inventory %s changed by %s (%s)", inventory["_id"], payload.quantity_change, payload.movement_type
    )
    return {"success": True, "data": serialize_document(inventory)}


@router.get("/inventory/low-stock")
def low_stock(location_id: Optional[str] = None, admin: dict = Depends(require_admin)):
    db = require_db()
    where = {"location_id": location_id} if location_id else {}
    rows = [r for r in db["inventory"].find(where) if r["quantity"] <= r.get("minimum_level", 0)]
    rows.sort(key=lambda r: r["quantity"])
    return _inventory_out(rows)


@router.get("/inventory/product/{product_id}")
def product_inventory(product_id: str, admin: dict = Depends(require_admin)):
    db = require_db()
    product = get_or_404("product", product_id, "Product")
    rows = _inventory_out(db["inventory"].find({"product_id": product_id}))
    return {"inventory": rows, "total_stock": product.get("stock", 0)}


@router.get("/inventory/location/{location_id}")
def location_inventory(location_id: str, admin: dict = Depends(require_admin)):
    db = require_db()
    get_or_404("location", location_id, "Location")
    rows = _inventory_out(db["inventory"].find({"location_id": location_id}))
    rows.sort(key=lambda r: (r["product"] or {}).get("name", ""))
    return rows


@router.get("/inventory/location/{location_id}/available-products")
def available_products(location_id: str, admin: dict = Depends(require_admin)):
    db = require_db()
    get_or_404("location", location_id, "Location")
    stocked = db["inventory"].distinct("product_id", {"location_id": location_id})
    products = db["product"].find({
        "_id": {"$nin": [to_obj_id(pid) for pid in stocked]},
        "is_visible": True,
        "is_discontinued": False,
    }).sort("name", 1)
    return attach_references(list(products))


@router.get("/inventory/{inventory_id}/movements")
def inventory_movements(inventory_id: str, admin: dict = Depends(require_admin)):
    db = require_db()
    get_or_404("inventory", inventory_id, "Inventory")
    movements = db["inventorymovement"].find({"inventory_id": inventory_id}).sort("created_at", -1)
    return [serialize_document(m) for m in movements]


@router.patch("/inventory/{inventory_id}/quantity")
def adjust_quantity(inventory_id: str, payload: QuantityAdjustment, admin: dict = Depends(require_admin)):
    db = require_db()
    inventory = get_or_404("inventory", inventory_id, "Inventory")
    db["inventory"].update_one(
        {"_id": inventory["_id"]},
        {"$inc": {"quantity": payload.change}, "$set": {"updated_at": utcnow()}},
    )
    direction = "increased" if payload.change >= 0 else "decreased"
    record_movement(
        inventory,
        payload.change,
        payload.movement_type,
        reason=payload.reason,
        notes=f"Quantity {direction} by {abs(payload.change)}",
        created_by=str(admin["_id"]),
    )
    return _inventory_out([db["inventory"].find_one({"_id": inventory["_id"]})])[0]


@router.patch("/inventory/{inventory_id}/settings")
def update_settings(inventory_id: str, payload: InventorySettings, admin: dict = Depends(require_admin)):
    inventory = get_or_404("inventory", inventory_id, "Inventory")
    changes = payload.model_dump(exclude_none=True)
    return serialize_document(update_document("inventory", inventory["_id"], changes))


@router.delete("/inventory/{inventory_id}")
def remove_inventory(inventory_id: str, admin: dict = Depends(require_admin)):
    db = require_db()
    inventory = get_or_404("inventory", inventory_id, "Inventory")
    if inventory["quantity"] > 0:
        record_movement(
            inventory,
            -inventory["quantity"],
            "OTHER",
            reason="Removed from location",
            notes=f"Removed {inventory['quantity']} units when deleting the inventory row",
            created_by=str(admin["_id"]),
        )
    db["inventory"].delete_one({"_id": inventory["_id"]})
    return {"success": True}
