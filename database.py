"""
Database Helpers

MongoDB connection and the small set of helpers every router uses.
The connection is configured from DATABASE_URL / DATABASE_NAME; when they
are missing `db` stays None and handlers answer "Database not available".
"""

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import MongoClient

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "tirestore")

client: Optional[MongoClient] = None
db = None

if DATABASE_URL:
    try:
        client = MongoClient(DATABASE_URL)
        db = client[DATABASE_NAME]
    except Exception as e:
        logger.error("Failed to connect to MongoDB: %s", e)
        db = None


def utcnow() -> datetime:
    # Mongo hands back naive UTC datetimes, so store them that way too
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def create_document(collection_name: str, data: Union[BaseModel, dict]) -> str:
    """Insert a single document with timestamps and return its id as a string."""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)

    now = utcnow()
    data_dict.setdefault("created_at", now)
    data_dict["updated_at"] = now

    result = db[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None) -> List[dict]:
    """Fetch documents matching a filter."""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    cursor = db[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def update_document(collection_name: str, doc_id: ObjectId, changes: Dict[str, Any]) -> Optional[dict]:
    """Apply a $set to one document, bumping updated_at. Returns the new document."""
    if db is None:
        raise Exception("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")

    changes = {**changes, "updated_at": utcnow()}
    result = db[collection_name].update_one({"_id": doc_id}, {"$set": changes})
    if result.matched_count == 0:
        return None
    return db[collection_name].find_one({"_id": doc_id})


def parse_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None
