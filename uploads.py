"""
Upload helpers. Files go straight from the browser to object storage; the
API only validates what is about to be uploaded and hands out the key.
"""

import re
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

import settings
from auth import get_current_user

router = APIRouter(prefix="/api", tags=["uploads"])

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")
MAX_UPLOAD_BYTES = 5 * 1024 * 1024


class UploadRequest(BaseModel):
    filename: str = Field(..., min_length=1)
    content_type: str
    size: int = Field(..., ge=0)
    folder: str = "general"


def validate_upload(content_type: str, size: int) -> Optional[str]:
    """Return an error message, or None when the file is acceptable."""
    if content_type not in ALLOWED_IMAGE_TYPES:
        return "Invalid file type. Only JPEG, PNG, WebP and GIF images are allowed"
    if size > MAX_UPLOAD_BYTES:
        return "File too large. Maximum size is 5MB"
    return None


def safe_filename(filename: str) -> str:
    name = re.sub(r"[^A-Za-z0-9._-]+", "-", filename.strip()).strip("-.")
    return name.lower() or "file"


def build_object_key(filename: str, folder: str = "general") -> str:
    folder = safe_filename(folder) if folder else "general"
    return f"{folder}/{uuid.uuid4()}-{safe_filename(filename)}"


@router.post("/uploads", status_code=201)
def request_upload(payload: UploadRequest, user: dict = Depends(get_current_user)):
    error = validate_upload(payload.content_type, payload.size)
    if error:
        raise HTTPException(status_code=400, detail=error)
    key = build_object_key(payload.filename, payload.folder)
    return {"key": key, "file_url": f"{settings.UPLOAD_BASE_URL.rstrip('/')}/{key}"}
