import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

import analytics
import auth
import cart
import catalog
import database
import inventory
import newsletters
import orders
import promotions
import reviews
import settings
import shipping_api
import uploads
import usage_tracker
import vehicles
from database import create_document
from discounts import derive_sale_prices
from helpers import require_db, serialize_document, to_obj_id
from inventory import record_movement

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.log_environment_validation()
    yield
    flushed = usage_tracker.get_tracker().flush()
    logger.info("Flushed %d API usage records on shutdown", flushed)


app = FastAPI(title="Tire Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for module in (
    auth,
    catalog,
    vehicles,
    inventory,
    promotions,
    cart,
    orders,
    shipping_api,
    uploads,
    reviews,
    newsletters,
    analytics,
):
    app.include_router(module.router)


# -----------------------------
# Error handlers
# -----------------------------
@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException):
    # dict details already carry their own "error" key
    content = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(status_code=exc.status_code, content=content, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"error": "Invalid data", "details": details})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# -----------------------------
# Basic routes
# -----------------------------
@app.get("/")
def read_root():
    return {"message": "Tire store backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "environment": settings.validate_environment(),
    }
    db = database.db
    if db is not None:
        response["database"] = "✅ Available"
        response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
        response["database_name"] = db.name
        response["connection_status"] = "Connected"
        try:
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# -----------------------------
# Schema endpoint (for viewers/tools)
# -----------------------------
@app.get("/schema")
def get_schema():
    from schemas import Brand, Category, Inventory, Location, Order, Product, Promotion, User, VehicleMake

    return {
        "user": User.model_json_schema(),
        "brand": Brand.model_json_schema(),
        "category": Category.model_json_schema(),
        "product": Product.model_json_schema(),
        "vehicle_make": VehicleMake.model_json_schema(),
        "location": Location.model_json_schema(),
        "inventory": Inventory.model_json_schema(),
        "promotion": Promotion.model_json_schema(),
        "order": Order.model_json_schema(),
    }


# -----------------------------
# Demo data
# -----------------------------
@app.post("/api/seed", status_code=201)
def seed_catalog():
    db = require_db()
    if db["product"].count_documents({}) > 0:
        raise HTTPException(status_code=409, detail="Catalog already has products")

    brand_ids = {
        name: create_document("brand", {"name": name, "is_active": True, "popularity_score": score})
        for name, score in (("Michelin", 95), ("Continental", 90), ("Bridgestone", 85))
    }
    category_ids = {
        name: create_document("category", {"name": name, "is_active": True, "display_order": order})
        for order, name in enumerate(("Passenger", "SUV", "Performance"))
    }
    sample = [
        {
            "name": "Michelin Pilot Sport 4",
            "brand": "Michelin",
            "category": "Performance",
            "model": "Pilot Sport 4",
            "width": 225, "aspect_ratio": 45, "rim_diameter": 17, "load_index": 94, "speed_rating": "Y",
            "tire_type": "SUMMER",
            "retail_price": 189.0, "wholesale_price": 140.0, "discount": 10, "stock": 40,
            "is_featured": True,
        },
        {
            "name": "Continental WinterContact TS 870",
            "brand": "Continental",
            "category": "Passenger",
            "model": "WinterContact TS 870",
            "width": 205, "aspect_ratio": 55, "rim_diameter": 16, "load_index": 91, "speed_rating": "H",
            "tire_type": "WINTER",
            "retail_price": 129.0, "wholesale_price": 95.0, "stock": 60,
        },
        {
            "name": "Bridgestone Dueler A/T 002",
            "brand": "Bridgestone",
            "category": "SUV",
            "model": "Dueler A/T 002",
            "width": 265, "aspect_ratio": 65, "rim_diameter": 17, "load_index": 112, "speed_rating": "T",
            "tire_type": "ALL_TERRAIN",
            "retail_price": 210.0, "wholesale_price": 160.0, "retailer_discount": 5, "stock": 24,
        },
        {
            "name": "Michelin CrossClimate 2",
            "brand": "Michelin",
            "category": "Passenger",
            "model": "CrossClimate 2",
            "width": 205, "aspect_ratio": 55, "rim_diameter": 16, "load_index": 91, "speed_rating": "V",
            "tire_type": "ALL_SEASON",
            "retail_price": 149.0, "wholesale_price": 110.0, "stock": 80,
        },
    ]
    inserted = []
    for p in sample:
        product = {k: v for k, v in p.items() if k not in ("brand", "category")}
        product.update({
            "brand_id": brand_ids[p["brand"]],
            "category_id": category_ids[p["category"]],
            "images": [],
            "is_visible": True,
        })
        product.update(derive_sale_prices(product))
        inserted.append(create_document("product", product))

    warehouse_id = create_document("location", {"name": "Main Warehouse", "type": "WAREHOUSE", "is_active": True})
    for product_id, p in zip(inserted, sample):
        row_id = create_document("inventory", {
            "product_id": product_id,
            "location_id": warehouse_id,
            "quantity": p["stock"],
            "minimum_level": 8,
            "reorder_level": 12,
            "reorder_qty": 20,
        })
        record_movement(
            db["inventory"].find_one({"_id": to_obj_id(row_id)}),
            p["stock"],
            "PURCHASE",
            reason="Initial inventory",
        )

    make_id = create_document("vehiclemake", {"name": "Volkswagen"})
    model_id = create_document("vehiclemodel", {"make_id": make_id, "name": "Golf", "view_count": 0})
    trim_id = create_document("vehicletrim", {"model_id": model_id, "name": "1.5 TSI"})
    year_id = create_document("vehicleyear", {"trim_id": trim_id, "year": 2021})
    for product_id in (inserted[1], inserted[3]):
        create_document("vehiclefitment", {"product_id": product_id, "vehicle_year_id": year_id, "is_oem": False})

    logger.info("Seeded %d demo products", len(inserted))
    docs = db["product"].find({"_id": {"$in": [to_obj_id(i) for i in inserted]}})
    return [serialize_document(d) for d in docs]


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
