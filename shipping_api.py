"""
Shipping endpoints: rate quotes, address validation, shipments, tracking and
the admin provider settings.
"""

import logging
import time
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

import settings
from auth import get_user_summary, require_admin
from carriers import get_shipping_service
from database import update_document
from helpers import get_or_404, require_db, to_obj_id
from orders import DEFAULT_TIRE_WEIGHT, TIRE_BOX_CM, add_history
from shipping import (
    DEFAULT_SHIPPING_OPTIONS,
    PackageDetails,
    RateRequest,
    ShipmentRequest,
    ShippingAddress,
    ShippingError,
    ShippingServiceType,
    default_shipper_address,
    fallback_rates,
    options_in_cents,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["shipping"])


class RatesIn(BaseModel):
    shipper_address: Optional[ShippingAddress] = None
    recipient_address: Optional[ShippingAddress] = None
    packages: Optional[List[PackageDetails]] = None
    service_type: Optional[ShippingServiceType] = None
    is_residential: bool = False
    provider: Optional[str] = None


class AddressIn(BaseModel):
    address: ShippingAddress
    provider: Optional[str] = None


class ShipmentIn(BaseModel):
    order_id: str
    provider: Optional[str] = None
    service_type: Optional[ShippingServiceType] = None
    packages: Optional[List[PackageDetails]] = None


class ManualShipmentIn(BaseModel):
    order_id: str
    tracking_number: str
    carrier: str
    tracking_url: Optional[str] = None


class ShippingSettingsIn(BaseModel):
    default_provider: str


def _error_status(e: ShippingError) -> int:
    if e.status_code == 404:
        return 404
    if e.status_code == 429:
        return 429
    return 502


@router.post("/shipping/rates")
def get_rates(payload: RatesIn):
    started = time.monotonic()
    if not payload.recipient_address:
        raise HTTPException(status_code=400, detail="Missing recipient address")
    if not payload.packages:
        raise HTTPException(status_code=400, detail="Missing package details")

    request = RateRequest(
        shipper_address=payload.shipper_address or default_shipper_address(),
        recipient_address=payload.recipient_address,
        packages=payload.packages,
        service_type=payload.service_type,
        is_residential=payload.is_residential,
    )
    errors: List[dict] = []
    try:
        rates = get_shipping_service().get_rates(request, payload.provider, errors)
    except ShippingError as e:
        logger.error("Rate request to %s failed: %s", payload.provider, e)
        errors.append({"provider": payload.provider, "message": str(e)})
        rates = []

    if not rates:
        if not settings.USE_FALLBACK_RATES:
            raise HTTPException(status_code=503, detail={
                "error": "Unable to fetch shipping rates from any provider",
                "provider_errors": errors,
                "success": False,
            })
        logger.info("Using fallback shipping rates")
        rates = fallback_rates(request)

    rates = sorted(rates, key=lambda r: r.total_amount)
    return {
        "rates": [r.model_dump() for r in rates],
        "success": True,
        "errors": errors or None,
        "performance": {"total_duration_ms": round((time.monotonic() - started) * 1000)},
    }


@router.post("/shipping/validate-address")
def validate_address(payload: AddressIn):
    try:
        result = get_shipping_service().validate_address(payload.address, payload.provider)
    except ShippingError as e:
        raise HTTPException(status_code=_error_status(e), detail=str(e))
    return result.model_dump()


def _recipient_for(order: dict) -> ShippingAddress:
    db = require_db()
    owner = db["user"].find_one({"_id": to_obj_id(order["user_id"])}) if order.get("user_id") else None
    return ShippingAddress(
        contact_name=owner.get("name", "") if owner else "",
        email=owner["email"] if owner else (order.get("guest_email") or ""),
        phone=(owner or {}).get("phone") or "",
        address_line1=order["shipping_address_line1"],
        address_line2=order.get("shipping_address_line2"),
        city=order["shipping_city"],
        state=order.get("shipping_state") or "",
        postal_code=order["shipping_postal_code"],
        country_code=order["shipping_country"].upper(),
    )


@router.post("/shipping/shipments", status_code=201)
def create_shipment(payload: ShipmentIn, admin: dict = Depends(require_admin)):
    order = get_or_404("order", payload.order_id, "Order")
    length, width, height = TIRE_BOX_CM
    packages = payload.packages or [
        PackageDetails(weight=DEFAULT_TIRE_WEIGHT, length=length, width=width, height=height, description=item["name"])
        for item in order["items"]
        for _ in range(item["quantity"])
    ]
    service = get_shipping_service()
    request = ShipmentRequest(
        shipper_address=default_shipper_address(),
        recipient_address=_recipient_for(order),
        packages=packages,
        service_type=payload.service_type,
        reference=order["order_number"],
    )
    try:
        shipment = service.create_shipment(request, payload.provider)
    except ShippingError as e:
        raise HTTPException(status_code=_error_status(e), detail=str(e))

    carrier = service.factory.get_provider(payload.provider).name
    update_document("order", order["_id"], {
        "tracking_number": shipment.tracking_number,
        "carrier": carrier,
        "metadata": {**(order.get("metadata") or {}), "shipment": shipment.model_dump(mode="json")},
    })
    add_history(
        payload.order_id,
        order["status"],
        f"Shipment created with {carrier}, tracking number {shipment.tracking_number}",
        str(admin["_id"]),
    )
    return shipment.model_dump()


@router.post("/shipping/manual-create")
def manual_create(payload: ManualShipmentIn, admin: dict = Depends(require_admin)):
    order = get_or_404("order", payload.order_id, "Order")
    updated = update_document("order", order["_id"], {
        "status": "SHIPPED",
        "tracking_number": payload.tracking_number,
        "carrier": payload.carrier,
        "tracking_url": payload.tracking_url,
    })
    add_history(
        payload.order_id,
        "SHIPPED",
        f"Order status updated to SHIPPED with tracking number {payload.tracking_number}",
        str(admin["_id"]),
    )
    return {"success": True, "tracking_number": updated["tracking_number"], "carrier": updated["carrier"]}


@router.get("/shipping/track/{tracking_number}")
def track(tracking_number: str, provider: Optional[str] = None):
    db = require_db()
    order = db["order"].find_one({"tracking_number": tracking_number})
    if provider is None and order and order.get("carrier"):
        provider = order["carrier"]
    try:
        tracking = get_shipping_service().track_shipment(tracking_number, provider)
    except ShippingError as e:
        raise HTTPException(status_code=_error_status(e), detail=str(e))

    summary = None
    if order:
        summary = {
            "id": str(order["_id"]),
            "order_number": order["order_number"],
            "order_date": order["created_at"].isoformat(),
            "status": order["status"],
            "items": order["items"],
            "customer": get_user_summary(order.get("user_id")),
            "shipping_address": {
                "address_line1": order["shipping_address_line1"],
                "address_line2": order.get("shipping_address_line2"),
                "city": order["shipping_city"],
                "state": order.get("shipping_state"),
                "postal_code": order["shipping_postal_code"],
                "country": order["shipping_country"],
            },
        }
    return {"tracking_info": tracking.model_dump(), "order": summary}


@router.get("/shipping/options")
def shipping_options(cents: bool = False):
    if cents:
        return options_in_cents(DEFAULT_SHIPPING_OPTIONS)
    return DEFAULT_SHIPPING_OPTIONS


@router.get("/dashboard/settings/shipping")
def get_shipping_settings(admin: dict = Depends(require_admin)):
    factory = get_shipping_service().factory
    return {
        "providers": [p.key for p in factory.get_all_providers()],
        "available_providers": factory.available_provider_names(),
        "default_provider": factory.default_provider_name,
    }


@router.put("/dashboard/settings/shipping")
def update_shipping_settings(payload: ShippingSettingsIn, admin: dict = Depends(require_admin)):
    factory = get_shipping_service().factory
    if not factory.set_default_provider(payload.default_provider):
        raise HTTPException(status_code=400, detail=f"Unknown shipping provider {payload.default_provider}")
    logger.info("Default shipping provider set to %s by %s", factory.default_provider_name, admin["_id"])
    return {"success": True, "default_provider": factory.default_provider_name}
