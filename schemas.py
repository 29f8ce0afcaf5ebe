"""
Database Schemas

Define your MongoDB collection schemas here using Pydantic models.
Each Pydantic model represents a collection in your database.
Model name is converted to lowercase for the collection name:
- User -> "user" collection
- Product -> "product" collection
- InventoryMovement -> "inventorymovement" collection

References between collections are stored as id strings.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, EmailStr, Field

Role = Literal["ADMIN", "RETAILER", "USER"]

TireType = Literal[
    "SUMMER", "WINTER", "ALL_SEASON", "ALL_TERRAIN", "MUD_TERRAIN",
    "HIGH_PERFORMANCE", "TOURING", "HIGHWAY", "COMMERCIAL", "TRACK",
]
TIRE_TYPES = list(get_args(TireType))

SPEED_RATINGS = ["L", "M", "N", "P", "Q", "R", "S", "T", "U", "H", "V", "W", "Y", "Z"]

LocationType = Literal["WAREHOUSE", "STORE", "SUPPLIER", "OTHER"]
MovementType = Literal["PURCHASE", "SALE", "RETURN", "ADJUSTMENT", "TRANSFER", "OTHER"]

OrderStatus = Literal["PENDING", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED"]
ORDER_STATUSES = list(get_args(OrderStatus))
PaymentStatus = Literal["PENDING", "PAID", "FAILED", "REFUNDED", "CANCELLED"]

PromotionType = Literal["percentage", "fixed", "bogo", "free_shipping", "gift"]
PromotionTarget = Literal["ALL", "PRODUCTS", "BRANDS", "CATEGORIES"]

TestimonialStatus = Literal["PENDING", "APPROVED", "REJECTED", "FEATURED"]
NewsletterStatus = Literal["DRAFT", "SCHEDULED", "SENDING", "SENT", "FAILED"]


# -----------------------------
# USERS
# -----------------------------
class User(BaseModel):
    """
    Collection name: "user"
    Passwords are stored as salted hashes.
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    phone: Optional[str] = None
    password_hash: str = Field(..., description="SHA256(salt+password) hex digest")
    salt: str = Field(..., description="Per-user random salt (hex)")
    role: Role = "USER"
    banned: bool = False


class Session(BaseModel):
    """Collection name: "session" """
    token: str
    user_id: str
    expires_at: datetime


# -----------------------------
# CATALOG
# -----------------------------
class Brand(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    logo_url: Optional[str] = None
    is_active: bool = True
    popularity_score: Optional[int] = None


class Category(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_url: Optional[str] = None
    is_active: bool = True
    display_order: int = 0


class Product(BaseModel):
    """
    Collection name: "product"
    A tire. Size is width/aspect_ratio R rim_diameter, e.g. 205/55R16.
    """
    name: str
    brand_id: str
    category_id: str
    model: Optional[str] = Field(None, description="Tire model line, e.g. Pilot Sport 4")
    description: Optional[str] = None
    short_description: Optional[str] = None
    localized_descriptions: Optional[Dict[str, str]] = None
    localized_short_descriptions: Optional[Dict[str, str]] = None
    attributes: Dict[str, str] = {}
    width: int = Field(..., gt=0)
    aspect_ratio: int = Field(..., gt=0)
    rim_diameter: int = Field(..., gt=0)
    load_index: int = Field(..., gt=0)
    speed_rating: Optional[str] = None
    tire_type: TireType = "ALL_SEASON"
    run_flat: bool = False
    reinforced: bool = False
    manufacturer_part_number: Optional[str] = None
    retail_price: float = Field(..., ge=0)
    wholesale_price: float = Field(..., ge=0)
    discount: float = Field(0, ge=0, le=100, description="Retail discount percentage")
    retailer_discount: float = Field(0, ge=0, le=100, description="Wholesale discount percentage")
    sale_price: float = Field(0, ge=0)
    wholesale_sale_price: float = Field(0, ge=0)
    stock: int = Field(0, ge=0)
    weight: Optional[float] = Field(None, description="Shipping weight in kg")
    images: List[str] = []
    is_visible: bool = True
    is_featured: bool = False
    is_discontinued: bool = False
    promotion_id: Optional[str] = None
    review_count: int = 0
    average_rating: float = 0


# -----------------------------
# VEHICLES
# -----------------------------
class VehicleMake(BaseModel):
    name: str = Field(..., min_length=1)
    logo_url: Optional[str] = None


class VehicleModel(BaseModel):
    make_id: str
    name: str = Field(..., min_length=1)
    view_count: int = 0


class VehicleTrim(BaseModel):
    model_id: str
    name: str = Field(..., min_length=1)


class VehicleYear(BaseModel):
    trim_id: str
    year: int = Field(..., ge=1900, le=2100)


class VehicleFitment(BaseModel):
    product_id: str
    vehicle_year_id: str
    is_oem: bool = False


# -----------------------------
# INVENTORY
# -----------------------------
class Location(BaseModel):
    name: str = Field(..., min_length=1)
    type: LocationType = "WAREHOUSE"
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    is_active: bool = True


class Inventory(BaseModel):
    product_id: str
    location_id: str
    quantity: int = 0
    minimum_level: int = Field(0, ge=0)
    reorder_level: int = Field(0, ge=0)
    reorder_qty: int = Field(0, ge=0)


class InventoryMovement(BaseModel):
    """
    Collection name: "inventorymovement"
    Append-only audit trail of quantity changes.
    """
    inventory_id: str
    product_id: str
    location_id: str
    quantity: int
    movement_type: MovementType
    reason: Optional[str] = None
    notes: Optional[str] = None
    order_id: Optional[str] = None
    created_by: Optional[str] = None


# -----------------------------
# CART / ORDERS
# -----------------------------
class CartItem(BaseModel):
    """
    Collection name: "cartitem"
    """
    session_id: str = Field(..., description="Client session identifier")
    product_id: str = Field(..., description="Referenced product _id as string")
    quantity: int = Field(1, ge=1, le=20)


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class Order(BaseModel):
    order_number: str
    user_id: Optional[str] = None
    guest_email: Optional[str] = None
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping_cost: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    status: OrderStatus = "PENDING"
    payment_status: PaymentStatus = "PENDING"
    payment_method: str = "STRIPE"
    is_retailer_order: bool = False
    shipping_address_line1: str
    shipping_address_line2: Optional[str] = None
    shipping_city: str
    shipping_state: Optional[str] = None
    shipping_postal_code: str
    shipping_country: str
    shipping_method: Dict[str, Any] = {}
    tracking_number: Optional[str] = None
    tracking_url: Optional[str] = None
    carrier: Optional[str] = None
    metadata: Dict[str, Any] = {}


class OrderHistory(BaseModel):
    """
    Collection name: "orderhistory"
    One row per status change, never updated.
    """
    order_id: str
    status: str
    note: str
    user_id: Optional[str] = None


# -----------------------------
# PROMOTIONS
# -----------------------------
class Promotion(BaseModel):
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    type: PromotionType
    value: float = Field(0, ge=0)
    target: PromotionTarget = "ALL"
    code: Optional[str] = None
    min_purchase_amount: Optional[float] = Field(None, ge=0)
    start_date: datetime
    end_date: Optional[datetime] = None
    is_active: bool = True
    usage_limit: Optional[int] = Field(None, ge=0)
    usage_count: int = 0
    product_ids: List[str] = []
    brand_ids: List[str] = []
    category_ids: List[str] = []
    image_url: Optional[str] = None
    terms_and_conditions: Optional[str] = None


# -----------------------------
# REVIEWS / TESTIMONIALS
# -----------------------------
class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    content: str = Field(..., min_length=1)
    images: List[str] = []
    status: Literal["PENDING", "PUBLISHED", "REJECTED"] = "PUBLISHED"


class ReviewLike(BaseModel):
    review_id: str
    user_id: str


class Testimonial(BaseModel):
    user_id: str
    customer_title: Optional[str] = None
    content: str = Field(..., min_length=10, max_length=1000)
    rating: int = Field(..., ge=1, le=5)
    status: TestimonialStatus = "PENDING"
    is_visible: bool = False
    admin_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None


# -----------------------------
# NEWSLETTERS
# -----------------------------
class Subscriber(BaseModel):
    email: EmailStr
    name: str = ""
    source: Optional[str] = None
    preferred_language: str = "en"
    group_ids: List[str] = []
    subscribed: bool = False
    verified: bool = False
    verification_token: Optional[str] = None
    verification_expires: Optional[datetime] = None
    subscribed_at: Optional[datetime] = None
    unsubscribed_at: Optional[datetime] = None


class Newsletter(BaseModel):
    title: str = Field(..., min_length=1)
    subject: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    status: NewsletterStatus = "DRAFT"
    group_ids: List[str] = []
    scheduled_for: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    sent_count: int = 0
    open_rate: Optional[float] = None
    click_rate: Optional[float] = None


class EmailMessage(BaseModel):
    """
    Collection name: "emailoutbox"
    Outgoing mail waiting for the delivery worker.
    """
    to: str
    sender: str
    subject: str
    template: str
    context: Dict[str, Any] = {}
    status: Literal["QUEUED", "SENT", "FAILED"] = "QUEUED"


# -----------------------------
# SYSTEM
# -----------------------------
class ApiUsage(BaseModel):
    provider: str
    endpoint: str
    event_type: str
    success: bool
    latency_ms: int
    timestamp: datetime
    metadata: Optional[Dict[str, Any]] = None


class SystemSetting(BaseModel):
    key: str
    value: str
