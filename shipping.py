"""
Shipping domain: carrier-neutral models, the provider interface, the
provider registry, the rate cache and the service that ties them together.
"""

import logging
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

import database
import settings
from database import utcnow
from schemas import SystemSetting

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER_SETTING = "default_shipping_provider"


class ShippingServiceType(str, Enum):
    STANDARD = "STANDARD"
    EXPRESS = "EXPRESS"
    PRIORITY = "PRIORITY"
    ECONOMY = "ECONOMY"


class TrackingStatus(str, Enum):
    CREATED = "CREATED"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    EXCEPTION = "EXCEPTION"
    UNKNOWN = "UNKNOWN"


class ShippingError(Exception):
    def __init__(self, message: str, provider: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.status_code = status_code


class ShippingAuthError(ShippingError):
    pass


class ShippingRateLimitError(ShippingError):
    pass


# -----------------------------
# Models
# -----------------------------
class ShippingAddress(BaseModel):
    contact_name: str = ""
    company_name: Optional[str] = None
    phone: str = ""
    email: str = ""
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: str = ""
    postal_code: str
    country_code: str = Field(..., min_length=2, max_length=2)


class PackageDetails(BaseModel):
    weight: float = Field(..., gt=0, description="kg")
    length: float = Field(..., gt=0, description="cm")
    width: float = Field(..., gt=0, description="cm")
    height: float = Field(..., gt=0, description="cm")
    description: Optional[str] = None


class RateRequest(BaseModel):
    shipper_address: ShippingAddress
    recipient_address: ShippingAddress
    packages: List[PackageDetails]
    service_type: Optional[ShippingServiceType] = None
    is_residential: bool = False


class RateQuote(BaseModel):
    provider_name: str
    service_type: ShippingServiceType
    delivery_date: Optional[datetime] = None
    total_amount: float
    currency: str = "USD"
    transit_days: Optional[int] = None
    rate_id: Optional[str] = None


class ShipmentRequest(RateRequest):
    reference: Optional[str] = None
    label_format: str = "PDF"
    rate_id: Optional[str] = None
    insurance_value: Optional[float] = None


class ShipmentResponse(BaseModel):
    tracking_number: str
    label_url: str = ""
    shipment_id: Optional[str] = None
    total_amount: float = 0
    currency: str = "USD"
    estimated_delivery_date: Optional[datetime] = None


class TrackingEvent(BaseModel):
    timestamp: datetime
    status: TrackingStatus
    location: str = ""
    description: str = ""


class TrackingResponse(BaseModel):
    tracking_number: str
    current_status: TrackingStatus = TrackingStatus.UNKNOWN
    estimated_delivery_date: Optional[datetime] = None
    events: List[TrackingEvent] = []
    provider_name: Optional[str] = None


class AddressValidation(BaseModel):
    valid: bool
    suggested_address: Optional[ShippingAddress] = None
    messages: List[str] = []


def default_shipper_address() -> ShippingAddress:
    s = settings.SHIPPER_ADDRESS
    return ShippingAddress(
        contact_name=s["contactName"],
        company_name=s["companyName"] or None,
        phone=s["phone"],
        email=s["email"],
        address_line1=s["addressLine1"] or "Unknown",
        address_line2=s["addressLine2"] or None,
        city=s["city"] or "Unknown",
        state=s["state"],
        postal_code=s["postalCode"] or "00000",
        country_code=s["countryCode"] or "US",
    )


# -----------------------------
# Provider interface
# -----------------------------
class ShippingProvider:
    """Base class every carrier integration implements."""

    name = "base"

    @property
    def key(self) -> str:
        return self.name.lower()

    def get_rates(self, request: RateRequest) -> List[RateQuote]:
        raise NotImplementedError

    def create_shipment(self, request: ShipmentRequest) -> ShipmentResponse:
        raise NotImplementedError

    def track_shipment(self, tracking_number: str) -> TrackingResponse:
        raise NotImplementedError

    def validate_address(self, address: ShippingAddress) -> AddressValidation:
        raise NotImplementedError

    def test_authentication(self) -> Dict[str, object]:
        raise NotImplementedError


# -----------------------------
# Provider registry
# -----------------------------
def _stored_default_provider() -> Optional[str]:
    if database.db is None:
        return None
    row = database.db["systemsetting"].find_one({"key": DEFAULT_PROVIDER_SETTING})
    return row["value"] if row else None


class ShippingProviderFactory:
    """
    Providers keyed by lowercase name. The default comes from the
    "systemsetting" collection, then DEFAULT_SHIPPING_PROVIDER, then dhl.
    """

    def __init__(self, providers: Optional[List[ShippingProvider]] = None, default_name: Optional[str] = None):
        self._providers: Dict[str, ShippingProvider] = {}
        self._not_working: set = set()
        for provider in providers or []:
            self.register(provider)
        self._default = (
            default_name or _stored_default_provider() or settings.DEFAULT_SHIPPING_PROVIDER or "dhl"
        ).lower()

    def register(self, provider: ShippingProvider) -> None:
        self._providers[provider.key] = provider
        self._not_working.discard(provider.key)

    def remove_provider(self, name: str) -> bool:
        key = name.lower()
        if self._providers.pop(key, None) is None:
            return False
        self._not_working.discard(key)
        if key == self._default:
            fallback = self._first_working()
            if fallback:
                self._default = fallback.key
        return True

    def _first_working(self) -> Optional[ShippingProvider]:
        for key, provider in self._providers.items():
            if key not in self._not_working:
                return provider
        return None

    def _usable(self, key: str) -> Optional[ShippingProvider]:
        if key in self._not_working:
            return None
        return self._providers.get(key)

    def get_provider(self, name: Optional[str] = None) -> ShippingProvider:
        if name:
            provider = self._usable(name.lower())
            if provider:
                return provider
            logger.warning("Shipping provider %s unavailable, using default %s", name, self._default)

        provider = self._usable(self._default) or self._first_working()
        if provider:
            return provider
        if self._providers:
            return next(iter(self._providers.values()))
        raise ShippingError("No shipping providers registered")

    def mark_not_working(self, name: str) -> None:
        key = name.lower()
        self._not_working.add(key)
        logger.warning("Shipping provider %s marked as not working", key)
        if key == self._default:
            fallback = self._first_working()
            if fallback:
                logger.info("Default shipping provider moved to %s", fallback.key)
                self._default = fallback.key

    def mark_working(self, name: str) -> None:
        self._not_working.discard(name.lower())

    def set_default_provider(self, name: str) -> bool:
        key = name.lower()
        if key not in self._providers:
            logger.warning("Ignoring unknown default shipping provider %s", name)
            return False
        self._default = key
        if database.db is not None:
            setting = SystemSetting(key=DEFAULT_PROVIDER_SETTING, value=key)
            database.db["systemsetting"].update_one(
                {"key": setting.key},
                {"$set": {**setting.model_dump(), "updated_at": utcnow()}},
                upsert=True,
            )
        return True

    def get_all_providers(self) -> List[ShippingProvider]:
        return list(self._providers.values())

    def available_provider_names(self) -> List[str]:
        return [key for key in self._providers if key not in self._not_working]

    @property
    def default_provider_name(self) -> str:
        return self._default


# -----------------------------
# Rate cache
# -----------------------------
class ShippingRateCache:
    def __init__(self, ttl: float = 60 * 60, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[float, List[RateQuote]]] = {}

    @staticmethod
    def key_for(request: RateRequest) -> str:
        origin = f"{request.shipper_address.postal_code}-{request.shipper_address.country_code}"
        destination = f"{request.recipient_address.postal_code}-{request.recipient_address.country_code}"
        packages = "|".join(sorted(f"{p.weight}-{p.length}-{p.width}-{p.height}" for p in request.packages))
        service = request.service_type.value if request.service_type else "all"
        return f"{origin}:{destination}:{packages}:{service}"

    def cache(self, request: RateRequest, rates: List[RateQuote]) -> None:
        self._entries[self.key_for(request)] = (self._clock(), list(rates))

    def get(self, request: RateRequest) -> Optional[List[RateQuote]]:
        key = self.key_for(request)
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, rates = entry
        if self._clock() - stored_at > self.ttl:
            del self._entries[key]
            return None
        return rates

    def clear(self) -> None:
        self._entries.clear()

    def cleanup(self) -> int:
        now = self._clock()
        expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at > self.ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


# -----------------------------
# Service
# -----------------------------
class ShippingService:
    def __init__(self, factory: ShippingProviderFactory, cache: Optional[ShippingRateCache] = None):
        self.factory = factory
        self.cache = cache or ShippingRateCache(settings.SHIPPING_RATE_CACHE_TTL)

    def get_rates(
        self,
        request: RateRequest,
        provider_name: Optional[str] = None,
        errors: Optional[List[dict]] = None,
    ) -> List[RateQuote]:
        cached = self.cache.get(request)
        if cached:
            if provider_name:
                cached = [r for r in cached if r.provider_name.lower() == provider_name.lower()]
            if cached:
                return cached

        if provider_name:
            rates = self.factory.get_provider(provider_name).get_rates(request)
        else:
            rates = []
            for provider in self.factory.get_all_providers():
                if provider.key not in self.factory.available_provider_names():
                    continue
                try:
                    rates.extend(provider.get_rates(request))
                except ShippingError as e:
                    logger.error("Error fetching rates from %s: %s", provider.name, e)
                    if errors is not None:
                        errors.append({"provider": provider.name, "message": str(e)})

        if rates:
            self.cache.cache(request, rates)
        return rates

    def create_shipment(self, request: ShipmentRequest, provider_name: Optional[str] = None) -> ShipmentResponse:
        return self.factory.get_provider(provider_name).create_shipment(request)

    def track_shipment(self, tracking_number: str, provider_name: Optional[str] = None) -> TrackingResponse:
        if provider_name:
            return self.factory.get_provider(provider_name).track_shipment(tracking_number)

        for provider in self.factory.get_all_providers():
            try:
                response = provider.track_shipment(tracking_number)
            except ShippingError as e:
                logger.info("Tracking %s with %s failed: %s", tracking_number, provider.name, e)
                continue
            response.provider_name = response.provider_name or provider.name
            return response
        raise ShippingError(f"Unable to track shipment {tracking_number} with any provider")

    def validate_address(self, address: ShippingAddress, provider_name: Optional[str] = None) -> AddressValidation:
        provider = self.factory.get_provider(provider_name)
        try:
            return provider.validate_address(address)
        except ShippingError:
            if provider_name:
                raise
            self.factory.mark_not_working(provider.name)
            alternate = self.factory.get_provider()
            if alternate is provider:
                raise
            logger.info("Retrying address validation with %s", alternate.name)
            return alternate.validate_address(address)


def fallback_rates(request: RateRequest, provider_name: str = "DHL") -> List[RateQuote]:
    """Weight-based estimates used when no carrier answers."""
    weight = sum(p.weight for p in request.packages)
    today = utcnow()
    tiers = [
        (ShippingServiceType.ECONOMY, max(15, weight * 5), 5, 7, "fallback-economy"),
        (ShippingServiceType.STANDARD, max(20, weight * 7), 3, 4, "fallback-standard"),
        (ShippingServiceType.EXPRESS, max(30, weight * 10), 1, 2, "fallback-express"),
    ]
    return [
        RateQuote(
            provider_name=provider_name,
            service_type=service,
            delivery_date=today + timedelta(days=delivery_days),
            total_amount=round(amount, 2),
            currency="USD",
            transit_days=transit,
            rate_id=rate_id,
        )
        for service, amount, transit, delivery_days, rate_id in tiers
    ]


# -----------------------------
# Checkout shipping options
# -----------------------------
DEFAULT_SHIPPING_OPTIONS = [
    {
        "id": "standard",
        "name": "Standard Shipping",
        "price": 9.99,
        "description": "3-5 business days",
        "estimated_delivery": "Estimated delivery: 3-5 business days",
        "provider": "default",
        "service_level": "STANDARD",
    },
    {
        "id": "express",
        "name": "Express Shipping",
        "price": 19.99,
        "description": "1-2 business days",
        "estimated_delivery": "Estimated delivery: 1-2 business days",
        "provider": "default",
        "service_level": "EXPRESS",
    },
    {
        "id": "overnight",
        "name": "Overnight Delivery",
        "price": 29.99,
        "description": "Next day delivery",
        "estimated_delivery": "Estimated delivery: Next business day",
        "provider": "default",
        "service_level": "PRIORITY",
    },
]


def get_shipping_option(option_id: Optional[str]) -> dict:
    for option in DEFAULT_SHIPPING_OPTIONS:
        if option["id"] == option_id:
            return option
    return DEFAULT_SHIPPING_OPTIONS[0]


def options_in_cents(options: List[dict]) -> List[dict]:
    return [
        {
            "id": o["id"],
            "label": o["name"],
            "detail": o.get("description", ""),
            "amount": round(o["price"] * 100),
        }
        for o in options
    ]
