"""
Shared request helpers: id parsing, document serialization, pagination and
the domain errors services raise.
"""

import math
import re
from typing import Any, Dict, Optional

from bson import ObjectId
from fastapi import HTTPException

import database


class NotFoundError(Exception):
    pass


class ConflictError(Exception):
    pass


class ValidationError(Exception):
    pass


def require_db():
    if database.db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return database.db


def to_obj_id(id_str: str, label: str = "id") -> ObjectId:
    oid = database.parse_object_id(id_str)
    if oid is None:
        raise HTTPException(status_code=400, detail=f"Invalid {label}")
    return oid


def serialize_id(value):
    if isinstance(value, ObjectId):
        return str(value)
    return value


def serialize_document(doc: Optional[dict]) -> Optional[dict]:
    if not doc:
        return doc
    doc = {**doc}
    if doc.get("_id") is not None:
        doc["id"] = serialize_id(doc.pop("_id"))
    # Convert nested ObjectIds if any
    for k, v in list(doc.items()):
        if isinstance(v, ObjectId):
            doc[k] = str(v)
    return doc


def get_or_404(collection: str, id_str: str, label: str = "Resource") -> dict:
    db = require_db()
    doc = db[collection].find_one({"_id": to_obj_id(id_str, f"{label.lower()} id")})
    if not doc:
        raise HTTPException(status_code=404, detail=f"{label} not found")
    return doc


def page_meta(page: int, per_page: int, total: int) -> Dict[str, Any]:
    return {
        "current_page": page,
        "per_page": per_page,
        "total_pages": math.ceil(total / per_page) if per_page else 0,
        "total_count": total,
    }


def contains(text: str) -> dict:
    """Case-insensitive substring match."""
    return {"$regex": re.escape(text), "$options": "i"}


def equals_ci(text: str) -> dict:
    return {"$regex": f"^{re.escape(text)}$", "$options": "i"}
