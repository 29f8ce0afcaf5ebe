"""
Vehicle catalog (make > model > trim > year), tire fitments and the tire finder.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from auth import require_admin
from catalog import attach_references
from database import create_document, parse_object_id, update_document
from helpers import equals_ci, get_or_404, require_db, serialize_document, to_obj_id
from schemas import VehicleFitment, VehicleMake, VehicleModel, VehicleTrim, VehicleYear

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["vehicles"])


class NameUpdate(BaseModel):
    name: Optional[str] = None
    logo_url: Optional[str] = None


def _delete_with_children(collection: str, doc_id: str, label: str, child_collection: str, child_key: str):
    db = require_db()
    doc = get_or_404(collection, doc_id, label)
    if db[child_collection].count_documents({child_key: doc_id}):
        raise HTTPException(status_code=409, detail=f"{label} still has dependent records")
    db[collection].delete_one({"_id": doc["_id"]})
    return {"success": True}


# -----------------------------
# Makes
# -----------------------------
@router.get("/vehicle-makes")
def list_makes():
    db = require_db()
    return [serialize_document(m) for m in db["vehiclemake"].find().sort("name", 1)]


@router.post("/vehicle-makes", status_code=201)
def create_make(payload: VehicleMake, admin: dict = Depends(require_admin)):
    db = require_db()
    if db["vehiclemake"].find_one({"name": equals_ci(payload.name)}):
        raise HTTPException(status_code=400, detail="A make with this name already exists")
    make_id = create_document("vehiclemake", payload)
    return serialize_document(get_or_404("vehiclemake", make_id, "Vehicle make"))


@router.put("/vehicle-makes/{make_id}")
def update_make(make_id: str, payload: NameUpdate, admin: dict = Depends(require_admin)):
    db = require_db()
    make = get_or_404("vehiclemake", make_id, "Vehicle make")
    changes = payload.model_dump(exclude_unset=True)
    if changes.get("name"):
        clash = db["vehiclemake"].find_one({"name": equals_ci(changes["name"]), "_id": {"$ne": make["_id"]}})
        if clash:
            raise HTTPException(status_code=400, detail="A make with this name already exists")
    return serialize_document(update_document("vehiclemake", make["_id"], changes))


@router.delete("/vehicle-makes/{make_id}")
def delete_make(make_id: str, admin: dict = Depends(require_admin)):
    return _delete_with_children("vehiclemake", make_id, "Vehicle make", "vehiclemodel", "make_id")


# -----------------------------
# Models
# -----------------------------
@router.get("/vehicle-models")
def list_models(make_id: Optional[str] = None):
    db = require_db()
    where = {"make_id": make_id} if make_id else {}
    return [serialize_document(m) for m in db["vehiclemodel"].find(where).sort("name", 1)]


@router.post("/vehicle-models", status_code=201)
def create_model(payload: VehicleModel, admin: dict = Depends(require_admin)):
    get_or_404("vehiclemake", payload.make_id, "Vehicle make")
    model_id = create_document("vehiclemodel", payload)
    return serialize_document(get_or_404("vehiclemodel", model_id, "Vehicle model"))


@router.put("/vehicle-models/{model_id}")
def update_model(model_id: str, payload: NameUpdate, admin: dict = Depends(require_admin)):
    model = get_or_404("vehiclemodel", model_id, "Vehicle model")
    changes = payload.model_dump(exclude_unset=True, exclude={"logo_url"})
    return serialize_document(update_document("vehiclemodel", model["_id"], changes))


@router.delete("/vehicle-models/{model_id}")
def delete_model(model_id: str, admin: dict = Depends(require_admin)):
    return _delete_with_children("vehiclemodel", model_id, "Vehicle model", "vehicletrim", "model_id")


# -----------------------------
# Trims
# -----------------------------
@router.get("/vehicle-trims")
def list_trims(model_id: Optional[str] = None):
    db = require_db()
    where = {"model_id": model_id} if model_id else {}
    return [serialize_document(t) for t in db["vehicletrim"].find(where).sort("name", 1)]


@router.post("/vehicle-trims", status_code=201)
def create_trim(payload: VehicleTrim, admin: dict = Depends(require_admin)):
    get_or_404("vehiclemodel", payload.model_id, "Vehicle model")
    trim_id = create_document("vehicletrim", payload)
    return serialize_document(get_or_404("vehicletrim", trim_id, "Vehicle trim"))


@router.delete("/vehicle-trims/{trim_id}")
def delete_trim(trim_id: str, admin: dict = Depends(require_admin)):
    return _delete_with_children("vehicletrim", trim_id, "Vehicle trim", "vehicleyear", "trim_id")


# -----------------------------
# Years
# -----------------------------
@router.get("/vehicle-years")
def list_years(trim_id: Optional[str] = None, model_id: Optional[str] = None):
    db = require_db()
    if trim_id:
        where = {"trim_id": trim_id}
    elif model_id:
        trim_ids = [str(t["_id"]) for t in db["vehicletrim"].find({"model_id": model_id}, {"_id": 1})]
        where = {"trim_id": {"$in": trim_ids}}
    else:
        where = {}

    seen = set()
    years = []
    for doc in db["vehicleyear"].find(where).sort("year", -1):
        if doc["year"] in seen:
            continue
        seen.add(doc["year"])
        years.append(serialize_document(doc))
    return years


@router.post("/vehicle-years", status_code=201)
def create_year(payload: VehicleYear, admin: dict = Depends(require_admin)):
    db = require_db()
    get_or_404("vehicletrim", payload.trim_id, "Vehicle trim")
    if db["vehicleyear"].find_one({"trim_id": payload.trim_id, "year": payload.year}):
        raise HTTPException(status_code=400, detail="This year already exists for the trim")
    year_id = create_document("vehicleyear", payload)
    return serialize_document(get_or_404("vehicleyear", year_id, "Vehicle year"))


@router.delete("/vehicle-years/{year_id}")
def delete_year(year_id: str, admin: dict = Depends(require_admin)):
    return _delete_with_children("vehicleyear", year_id, "Vehicle year", "vehiclefitment", "vehicle_year_id")


# -----------------------------
# Fitments
# -----------------------------
@router.post("/vehicle-fitments", status_code=201)
def create_fitment(payload: VehicleFitment, admin: dict = Depends(require_admin)):
    db = require_db()
    get_or_404("product", payload.product_id, "Product")
    get_or_404("vehicleyear", payload.vehicle_year_id, "Vehicle year")
    if db["vehiclefitment"].find_one({"product_id": payload.product_id, "vehicle_year_id": payload.vehicle_year_id}):
        raise HTTPException(status_code=409, detail="Product is already linked to this vehicle")
    fitment_id = create_document("vehiclefitment", payload)
    return serialize_document(get_or_404("vehiclefitment", fitment_id, "Fitment"))


@router.delete("/vehicle-fitments/{fitment_id}")
def delete_fitment(fitment_id: str, admin: dict = Depends(require_admin)):
    db = require_db()
    fitment = get_or_404("vehiclefitment", fitment_id, "Fitment")
    db["vehiclefitment"].delete_one({"_id": fitment["_id"]})
    return {"success": True}


# -----------------------------
# Tire finder
# -----------------------------
def find_vehicle_years(make_id: str, model_id: str, year: int) -> List[dict]:
    db = require_db()
    oid = parse_object_id(model_id)
    model = db["vehiclemodel"].find_one({"_id": oid}) if oid else None
    if not model or model.get("make_id") != make_id:
        return []
    trim_ids = [str(t["_id"]) for t in db["vehicletrim"].find({"model_id": model_id}, {"_id": 1})]
    return list(db["vehicleyear"].find({"trim_id": {"$in": trim_ids}, "year": year}))


def _tire_page(where: dict, page: int, limit: int) -> dict:
    db = require_db()
    where = {**where, "is_visible": True, "is_discontinued": False}
    products = list(
        db["product"].find(where)
        .sort("name", 1)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {
        "products": attach_references(products),
        "total": db["product"].count_documents(where),
        "page": page,
        "limit": limit,
    }


@router.get("/tire-finder")
def tire_finder(
    make_id: Optional[str] = None,
    model_id: Optional[str] = None,
    year: Optional[int] = None,
    width: Optional[int] = None,
    aspect_ratio: Optional[int] = None,
    rim_diameter: Optional[int] = None,
    page: int = 1,
    limit: int = 20,
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)

    if make_id and model_id and year:
        db = require_db()
        vehicle_years = find_vehicle_years(make_id, model_id, year)
        if not vehicle_years:
            return {
                "products": [],
                "total": 0,
                "page": page,
                "limit": limit,
                "message": "No vehicle found with these specifications",
            }

        year_ids = [str(vy["_id"]) for vy in vehicle_years]
        product_ids = db["vehiclefitment"].distinct("product_id", {"vehicle_year_id": {"$in": year_ids}})
        result = _tire_page({"_id": {"$in": [to_obj_id(pid) for pid in product_ids]}}, page, limit)

        model = get_or_404("vehiclemodel", model_id, "Vehicle model")
        make = get_or_404("vehiclemake", make_id, "Vehicle make")
        db["vehiclemodel"].update_one({"_id": model["_id"]}, {"$inc": {"view_count": 1}})
        result["vehicle_info"] = f"{make['name']} {model['name']} {year}"
        return result

    if width and aspect_ratio and rim_diameter:
        result = _tire_page(
            {"width": width, "aspect_ratio": aspect_ratio, "rim_diameter": rim_diameter}, page, limit
        )
        result["tire_size"] = f"{width}/{aspect_ratio}R{rim_diameter}"
        return result

    raise HTTPException(status_code=400, detail="Invalid search parameters provided")
