"""
Newsletter subscriptions (double opt-in) and campaign management.
"""

import base64
import binascii
import logging
import secrets
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, EmailStr, Field

import settings
from auth import get_optional_user, is_admin, require_admin
from database import as_naive_utc, create_document, parse_object_id, update_document, utcnow
from emails import (
    queue_email,
    send_newsletter_verification,
    send_newsletter_welcome,
    send_unsubscribe_confirmation,
)
from helpers import get_or_404, page_meta, require_db, serialize_document, to_obj_id
from localization import SUPPORTED_LOCALES, locale_from_accept_language
from rate_limiter import RateLimiter
from schemas import Newsletter, NewsletterStatus, Subscriber

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/newsletters", tags=["newsletters"])

subscribe_limiter = RateLimiter(settings.NEWSLETTER_RATE_LIMIT, settings.NEWSLETTER_RATE_WINDOW)

SENDABLE_STATUSES = ("DRAFT", "SCHEDULED")


class SubscribeRequest(BaseModel):
    email: EmailStr
    name: str = ""
    source: Optional[str] = None
    preferred_language: Optional[str] = None
    group_ids: List[str] = []


class UnsubscribeRequest(BaseModel):
    email: EmailStr


class NewsletterIn(BaseModel):
    title: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    group_ids: List[str] = []
    scheduled_for: Optional[datetime] = None


class NewsletterUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1)
    subject: Optional[str] = Field(None, min_length=1)
    content: Optional[str] = Field(None, min_length=1)
    group_ids: Optional[List[str]] = None
    scheduled_for: Optional[datetime] = None
    status: Optional[NewsletterStatus] = None


def unsubscribe_token(subscriber: dict) -> str:
    raw = f"{subscriber['_id']}:{subscriber['email']}"
    return base64.b64encode(raw.encode()).decode()


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _unsubscribe_redirect(query: str) -> RedirectResponse:
    return RedirectResponse(f"{settings.APP_URL}/newsletter/unsubscribe?{query}", status_code=302)


# -----------------------------
# Subscribers
# -----------------------------
@router.post("/subscribe")
def subscribe(payload: SubscribeRequest, request: Request):
    if not subscribe_limiter.try_acquire(_client_ip(request)):
        raise HTTPException(status_code=429, detail="Too many subscription attempts. Please try again later.")

    db = require_db()
    email = str(payload.email).lower()
    language = payload.preferred_language
    if language not in SUPPORTED_LOCALES:
        language = locale_from_accept_language(request.headers.get("accept-language"))

    token = secrets.token_hex(32)
    expires = utcnow() + timedelta(hours=settings.VERIFICATION_TOKEN_HOURS)
    existing = db["subscriber"].find_one({"email": email})

    if existing is None:
        subscriber = Subscriber(
            email=email,
            name=payload.name,
            source=payload.source,
            preferred_language=language,
            group_ids=payload.group_ids,
            verification_token=token,
            verification_expires=expires,
        )
        create_document("subscriber", subscriber)
        send_newsletter_verification(email, payload.name, token, language)
        return {"success": True, "message": "Please check your email to confirm your subscription"}

    group_ids = list(dict.fromkeys([*existing.get("group_ids", []), *payload.group_ids]))
    changes = {
        "name": payload.name or existing.get("name", ""),
        "preferred_language": language,
        "group_ids": group_ids,
    }
    if not existing.get("verified"):
        update_document("subscriber", existing["_id"], {
            **changes, "verification_token": token, "verification_expires": expires,
        })
        send_newsletter_verification(email, changes["name"], token, language)
        return {"success": True, "message": "Please check your email to confirm your subscription"}

    if not existing.get("subscribed"):
        updated = update_document("subscriber", existing["_id"], {
            **changes, "subscribed": True, "subscribed_at": utcnow(), "unsubscribed_at": None,
        })
        send_newsletter_welcome(email, updated["name"], unsubscribe_token(updated), language)
        return {"success": True, "message": "Welcome back! You have been re-subscribed"}

    update_document("subscriber", existing["_id"], changes)
    return {"success": True, "message": "Your subscription has been updated"}


@router.get("/verify")
def verify(token: Optional[str] = None):
    if not token:
        raise HTTPException(status_code=400, detail="Verification token is required")
    db = require_db()
    subscriber = db["subscriber"].find_one({"verification_token": token})
    if subscriber is None or not subscriber.get("verification_expires") or subscriber["verification_expires"] < utcnow():
        raise HTTPException(status_code=400, detail="Invalid or expired verification token")

    updated = update_document("subscriber", subscriber["_id"], {
        "verified": True,
        "subscribed": True,
        "subscribed_at": utcnow(),
        "verification_token": None,
        "verification_expires": None,
    })
    send_newsletter_welcome(
        updated["email"], updated.get("name", ""), unsubscribe_token(updated), updated.get("preferred_language", "en")
    )
    logger.info("Subscriber %s verified", updated["email"])
    return RedirectResponse(f"{settings.APP_URL}/newsletter/verification-success", status_code=302)


@router.get("/unsubscribe")
def unsubscribe(token: Optional[str] = None):
    if not token:
        return _unsubscribe_redirect("error=missing-token")
    try:
        subscriber_id, email = base64.b64decode(token, validate=True).decode().split(":", 1)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return _unsubscribe_redirect("error=invalid-token")

    db = require_db()
    oid = parse_object_id(subscriber_id)
    subscriber = db["subscriber"].find_one({"_id": oid}) if oid else None
    if subscriber is None or subscriber["email"] != email:
        return _unsubscribe_redirect("error=subscriber-not-found")

    _mark_unsubscribed(subscriber)
    return _unsubscribe_redirect("success=true")


@router.post("/unsubscribe")
def unsubscribe_by_email(payload: UnsubscribeRequest):
    subscriber = require_db()["subscriber"].find_one({"email": str(payload.email).lower()})
    if subscriber is None:
        raise HTTPException(status_code=404, detail="Subscriber not found")
    _mark_unsubscribed(subscriber)
    return {"success": True, "message": "You have been unsubscribed"}


def _mark_unsubscribed(subscriber: dict) -> None:
    update_document("subscriber", subscriber["_id"], {"subscribed": False, "unsubscribed_at": utcnow()})
    send_unsubscribe_confirmation(
        subscriber["email"], subscriber.get("name", ""), subscriber.get("preferred_language", "en")
    )
    logger.info("Subscriber %s unsubscribed", subscriber["email"])


@router.get("/subscribers")
def list_subscribers(
    page: int = 1,
    limit: int = 20,
    subscribed: Optional[bool] = None,
    admin: dict = Depends(require_admin),
):
    db = require_db()
    page = max(page, 1)
    limit = min(max(limit, 1), 100)
    where = {} if subscribed is None else {"subscribed": subscribed}
    total = db["subscriber"].count_documents(where)
    docs = db["subscriber"].find(where).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    subscribers = []
    for doc in docs:
        item = serialize_document(doc)
        item.pop("verification_token", None)
        subscribers.append(item)
    return {"subscribers": subscribers, "meta": page_meta(page, limit, total)}


@router.get("/stats")
def newsletter_stats(admin: dict = Depends(require_admin)):
    db = require_db()
    since = utcnow() - timedelta(days=30)
    sent = list(db["newsletter"].find({"status": "SENT"}))
    open_rates = [n["open_rate"] for n in sent if n.get("open_rate") is not None]
    click_rates = [n["click_rate"] for n in sent if n.get("click_rate") is not None]
    return {
        "total_subscribers": db["subscriber"].count_documents({"subscribed": True}),
        "new_subscribers": db["subscriber"].count_documents({"subscribed": True, "subscribed_at": {"$gte": since}}),
        "sent_newsletters": len(sent),
        "recent_newsletters": sum(1 for n in sent if n.get("sent_at") and n["sent_at"] >= since),
        "open_rate": round(sum(open_rates) / len(open_rates), 2) if open_rates else 0,
        "click_rate": round(sum(click_rates) / len(click_rates), 2) if click_rates else 0,
    }


# -----------------------------
# Campaigns
# -----------------------------
def send_newsletter(newsletter: dict) -> dict:
    """Queue one email per verified, subscribed subscriber and mark the campaign SENT."""
    db = require_db()
    update_document("newsletter", newsletter["_id"], {"status": "SENDING"})
    where: dict = {"subscribed": True, "verified": True}
    if newsletter.get("group_ids"):
        where["group_ids"] = {"$in": newsletter["group_ids"]}

    sent = 0
    for subscriber in db["subscriber"].find(where):
        queue_email(subscriber["email"], newsletter["subject"], "newsletter", {
            "name": subscriber.get("name", ""),
            "content": newsletter["content"],
            "language": subscriber.get("preferred_language", "en"),
            "unsubscribe_url": f"{settings.APP_URL}/api/newsletters/unsubscribe?token={unsubscribe_token(subscriber)}",
        })
        sent += 1

    update_document("newsletter", newsletter["_id"], {"status": "SENT", "sent_count": sent, "sent_at": utcnow()})
    logger.info("Newsletter %s sent to %d subscribers", newsletter["_id"], sent)
    return {"success": True, "newsletter_id": str(newsletter["_id"]), "sent_count": sent}


@router.get("")
def list_newsletters(status: Optional[NewsletterStatus] = None, admin: dict = Depends(require_admin)):
    where = {"status": status} if status else {}
    docs = require_db()["newsletter"].find(where).sort("created_at", -1)
    return {"newsletters": [serialize_document(d) for d in docs]}


@router.post("", status_code=201)
def create_newsletter(payload: NewsletterIn, admin: dict = Depends(require_admin)):
    data = payload.model_dump()
    data["scheduled_for"] = as_naive_utc(payload.scheduled_for)
    newsletter = Newsletter(**data, status="SCHEDULED" if payload.scheduled_for else "DRAFT")
    newsletter_id = create_document("newsletter", newsletter)
    return serialize_document(require_db()["newsletter"].find_one({"_id": to_obj_id(newsletter_id)}))


@router.post("/cron")
def run_scheduled(
    x_cron_secret: Optional[str] = Header(None),
    user: Optional[dict] = Depends(get_optional_user),
):
    trusted = bool(settings.CRON_SECRET) and x_cron_secret == settings.CRON_SECRET
    if not trusted:
        if user is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        if not is_admin(user):
            raise HTTPException(status_code=403, detail="Forbidden")

    db = require_db()
    due = list(db["newsletter"].find({"status": "SCHEDULED", "scheduled_for": {"$lte": utcnow()}}))
    results = [send_newsletter(n) for n in due]
    return {"success": True, "processed": len(results), "results": results}


@router.get("/{newsletter_id}")
def get_newsletter(newsletter_id: str, admin: dict = Depends(require_admin)):
    return serialize_document(get_or_404("newsletter", newsletter_id, "Newsletter"))


@router.put("/{newsletter_id}")
def update_newsletter(newsletter_id: str, payload: NewsletterUpdate, admin: dict = Depends(require_admin)):
    newsletter = get_or_404("newsletter", newsletter_id, "Newsletter")
    if newsletter["status"] in ("SENDING", "SENT"):
        raise HTTPException(status_code=400, detail=f"Newsletter is in {newsletter['status']} state")
    changes = payload.model_dump(exclude_unset=True)
    if "scheduled_for" in changes:
        changes["scheduled_for"] = as_naive_utc(changes["scheduled_for"])
        changes.setdefault("status", "SCHEDULED" if changes["scheduled_for"] else "DRAFT")
    return serialize_document(update_document("newsletter", newsletter["_id"], changes))


@router.delete("/{newsletter_id}")
def delete_newsletter(newsletter_id: str, admin: dict = Depends(require_admin)):
    newsletter = get_or_404("newsletter", newsletter_id, "Newsletter")
    require_db()["newsletter"].delete_one({"_id": newsletter["_id"]})
    return {"success": True}


@router.post("/{newsletter_id}/send")
def send(newsletter_id: str, admin: dict = Depends(require_admin)):
    newsletter = get_or_404("newsletter", newsletter_id, "Newsletter")
    if newsletter["status"] not in SENDABLE_STATUSES:
        raise HTTPException(status_code=400, detail=f"Newsletter cannot be sent, it is in {newsletter['status']} state")
    return send_newsletter(newsletter)
