import hashlib
import logging
import secrets
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, EmailStr, Field

import settings
from database import create_document, utcnow
from helpers import contains, page_meta, require_db, serialize_document, to_obj_id
from schemas import Role

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["auth"])


def hash_password(password: str, salt_hex: Optional[str] = None) -> tuple[str, str]:
    salt = bytes.fromhex(salt_hex) if salt_hex else secrets.token_bytes(16)
    digest = hashlib.sha256(salt + password.encode()).hexdigest()
    return digest, salt.hex()


def verify_password(password: str, user: dict) -> bool:
    pwd_hash, _ = hash_password(password, user.get("salt"))
    return secrets.compare_digest(pwd_hash, user.get("password_hash", ""))


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "role": user.get("role", "USER"),
        "banned": user.get("banned", False),
    }


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


class RoleUpdate(BaseModel):
    role: Role


class BanRequest(BaseModel):
    banned: bool = True


# -----------------------------
# Session dependencies
# -----------------------------
def _session_token(request: Request) -> Optional[str]:
    token = request.cookies.get(settings.SESSION_COOKIE_NAME)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def get_optional_user(request: Request) -> Optional[dict]:
    token = _session_token(request)
    if not token:
        return None
    db = require_db()
    session = db["session"].find_one({"token": token})
    if not session or session["expires_at"] < utcnow():
        return None
    user = db["user"].find_one({"_id": to_obj_id(session["user_id"])})
    if not user or user.get("banned"):
        return None
    return user


def get_current_user(user: Optional[dict] = Depends(get_optional_user)) -> dict:
    if user is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "ADMIN":
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


def is_admin(user: Optional[dict]) -> bool:
    return bool(user) and user.get("role") == "ADMIN"


# -----------------------------
# Account endpoints
# -----------------------------
@router.post("/auth/register", status_code=201)
def register(payload: RegisterRequest):
    db = require_db()
    email = str(payload.email).lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")

    pwd_hash, salt = hash_password(payload.password)
    user_id = create_document("user", {
        "name": payload.name,
        "email": email,
        "phone": None,
        "password_hash": pwd_hash,
        "salt": salt,
        "role": "USER",
        "banned": False,
    })
    logger.info("Registered user %s", user_id)
    return public_user(db["user"].find_one({"_id": to_obj_id(user_id)}))


@router.post("/auth/login")
def login(payload: LoginRequest, response: Response):
    db = require_db()
    user = db["user"].find_one({"email": str(payload.email).lower()})
    if not user or not verify_password(payload.password, user):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.get("banned"):
        raise HTTPException(status_code=401, detail="Account is banned")

    token = secrets.token_hex(24)
    expires_at = utcnow() + timedelta(hours=settings.SESSION_TTL_HOURS)
    create_document("session", {"token": token, "user_id": str(user["_id"]), "expires_at": expires_at})
    response.set_cookie(
        settings.SESSION_COOKIE_NAME,
        token,
        httponly=True,
        samesite="lax",
        max_age=settings.SESSION_TTL_HOURS * 3600,
    )
    return {"token": token, "user": public_user(user)}


@router.post("/auth/logout")
def logout(request: Request, response: Response):
    token = _session_token(request)
    if token:
        require_db()["session"].delete_one({"token": token})
    response.delete_cookie(settings.SESSION_COOKIE_NAME)
    return {"success": True}


@router.get("/user")
def get_me(user: dict = Depends(get_current_user)):
    return public_user(user)


@router.put("/user/profile")
def update_profile(payload: ProfileUpdate, user: dict = Depends(get_current_user)):
    db = require_db()
    changes = payload.model_dump(exclude_unset=True)
    if changes:
        changes["updated_at"] = utcnow()
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    return public_user(db["user"].find_one({"_id": user["_id"]}))


@router.put("/user/password")
def change_password(payload: PasswordChange, user: dict = Depends(get_current_user)):
    if not verify_password(payload.current_password, user):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    pwd_hash, salt = hash_password(payload.new_password)
    require_db()["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": pwd_hash, "salt": salt, "updated_at": utcnow()}},
    )
    return {"success": True, "message": "Password updated"}


# -----------------------------
# Admin user management
# -----------------------------
@router.get("/admin/users")
def list_users(
    page: int = 1,
    per_page: int = 20,
    search: Optional[str] = None,
    role: Optional[Role] = None,
    admin: dict = Depends(require_admin),
):
    db = require_db()
    page = max(page, 1)
    per_page = min(max(per_page, 1), 100)
    where: dict = {}
    if search:
        where["$or"] = [{"name": contains(search)}, {"email": contains(search)}]
    if role:
        where["role"] = role

    total = db["user"].count_documents(where)
    users = (
        db["user"].find(where)
        .sort("created_at", -1)
        .skip((page - 1) * per_page)
        .limit(per_page)
    )
    return {"users": [public_user(u) for u in users], "meta": page_meta(page, per_page, total)}


@router.patch("/admin/users/{user_id}")
def update_user_role(user_id: str, payload: RoleUpdate, admin: dict = Depends(require_admin)):
    db = require_db()
    oid = to_obj_id(user_id, "user id")
    result = db["user"].update_one({"_id": oid}, {"$set": {"role": payload.role, "updated_at": utcnow()}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(db["user"].find_one({"_id": oid}))


@router.post("/admin/users/{user_id}/ban")
def ban_user(user_id: str, payload: BanRequest, admin: dict = Depends(require_admin)):
    db = require_db()
    oid = to_obj_id(user_id, "user id")
    if str(oid) == str(admin["_id"]):
        raise HTTPException(status_code=400, detail="You cannot ban yourself")
    result = db["user"].update_one({"_id": oid}, {"$set": {"banned": payload.banned, "updated_at": utcnow()}})
    if result.matched_count == 0:
        raise HTTPException(status_code=404, detail="User not found")
    if payload.banned:
        db["session"].delete_many({"user_id": user_id})
    logger.info("User %s banned=%s by %s", user_id, payload.banned, admin["_id"])
    return public_user(db["user"].find_one({"_id": oid}))


def get_user_summary(user_id: Optional[str]) -> Optional[dict]:
    if not user_id:
        return None
    oid = to_obj_id(user_id)
    user = require_db()["user"].find_one({"_id": oid}, {"name": 1, "email": 1})
    return serialize_document(user) if user else None
