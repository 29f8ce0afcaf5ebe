import os
import secrets
from datetime import timedelta

import mongomock
import pytest
from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_NAME", "tirestore_test")
os.environ.pop("DATABASE_URL", None)

import carriers
import database
import newsletters
import usage_tracker
from auth import hash_password
from database import create_document, utcnow
from main import app
from shipping import ShippingProviderFactory, ShippingService

ADDRESS = {
    "address_line1": "1 Main St",
    "city": "Austin",
    "state": "TX",
    "postal_code": "78701",
    "country": "US",
}


@pytest.fixture(autouse=True)
def mongo():
    database.db = mongomock.MongoClient()[os.environ["DATABASE_NAME"]]
    carriers.set_shipping_service(ShippingService(ShippingProviderFactory([], default_name="dhl")))
    carriers.carrier_limiter.reset()
    newsletters.subscribe_limiter.reset()
    usage_tracker.ApiUsageTracker._instance = None
    yield database.db
    carriers.set_shipping_service(None)
    database.db = None


@pytest.fixture
def client():
    return TestClient(app)


def make_user(role="USER", email=None, password="password123", name="Test User"):
    pwd_hash, salt = hash_password(password)
    user_id = create_document("user", {
        "name": name,
        "email": email or f"{secrets.token_hex(4)}@example.com",
        "phone": None,
        "password_hash": pwd_hash,
        "salt": salt,
        "role": role,
        "banned": False,
    })
    return user_id


def auth_headers(user_id):
    token = secrets.token_hex(24)
    create_document("session", {
        "token": token,
        "user_id": user_id,
        "expires_at": utcnow() + timedelta(hours=1),
    })
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers():
    return auth_headers(make_user("ADMIN", name="Admin"))


@pytest.fixture
def user_id():
    return make_user("USER", name="Jane Customer")


@pytest.fixture
def user_headers(user_id):
    return auth_headers(user_id)


def make_brand(name="Michelin"):
    return create_document("brand", {"name": name, "is_active": True, "popularity_score": 10})


def make_category(name="Passenger", display_order=0):
    return create_document("category", {"name": name, "is_active": True, "display_order": display_order})


def make_product(brand_id=None, category_id=None, **overrides):
    product = {
        "name": "Pilot Sport 4",
        "brand_id": brand_id or make_brand(),
        "category_id": category_id or make_category(),
        "width": 225,
        "aspect_ratio": 45,
        "rim_diameter": 17,
        "load_index": 94,
        "speed_rating": "Y",
        "tire_type": "SUMMER",
        "retail_price": 100.0,
        "wholesale_price": 80.0,
        "discount": 0,
        "retailer_discount": 0,
        "sale_price": 100.0,
        "wholesale_sale_price": 80.0,
        "stock": 10,
        "images": [],
        "is_visible": True,
        "is_featured": False,
        "is_discontinued": False,
        "promotion_id": None,
        "review_count": 0,
        "average_rating": 0,
    }
    product.update(overrides)
    return create_document("product", product)
