import logging
import math
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from bson.errors import InvalidId
from bson.objectid import ObjectId
from fastapi import BackgroundTasks, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pydantic.alias_generators import to_camel
from pymongo.errors import DuplicateKeyError

import mailer
import orders
import otp
from database import create_document, db, ensure_indexes
from errors import EmailTaken, InvalidCredentials, NotFound, OtpNotFound
from schemas import ApiModel, PaymentResult, Product as ProductSchema, User as UserSchema
from security import create_token, get_current_user, hash_password, require_admin, verify_password

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("storefront")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes()
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set, running without a database")
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part != "body"]
        errors.append({"field": ".".join(loc), "message": err.get("msg", "Invalid value")})
    return JSONResponse(status_code=400, content={"detail": "Validation failed", "errors": errors})


# ----------------------- Utils -----------------------
def serialize_doc(doc):
    """Mongo document -> JSON body: `_id` becomes `id`, keys go camelCase."""
    if isinstance(doc, list):
        return [serialize_doc(d) for d in doc]
    if isinstance(doc, ObjectId):
        return str(doc)
    if isinstance(doc, datetime):
        return doc.isoformat()
    if not isinstance(doc, dict):
        return doc
    out = {}
    for k, v in doc.items():
        key = "id" if k == "_id" else to_camel(k)
        out[key] = serialize_doc(v)
    return out


def serialize_user(user: dict) -> dict:
    out = serialize_doc(user)
    out.pop("passwordHash", None)
    return out


def auth_response(user: dict) -> dict:
    user_id = str(user["_id"])
    is_admin = bool(user.get("is_admin", False))
    return {
        "id": user_id,
        "name": user["name"],
        "email": user["email"],
        "isAdmin": is_admin,
        "token": create_token(user_id, is_admin),
    }


def product_or_404(product_id: str) -> dict:
    try:
        item = db["product"].find_one({"_id": ObjectId(product_id)})
    except (InvalidId, TypeError):
        item = None
    if not item:
        raise NotFound("Product not found")
    return item


# ----------------------- Models -----------------------
class RegisterBody(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginBody(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class VerifyOtpBody(BaseModel):
    email: EmailStr
    otp: str = Field(..., min_length=6, max_length=6, pattern=r"^\d{6}$")


class ProductUpdateBody(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    brand: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    category: Optional[str] = Field(None, min_length=1)
    rating: Optional[float] = Field(None, ge=0, le=5)
    image: Optional[str] = None
    count_in_stock: Optional[int] = Field(None, ge=0)


SORTS = {
    "newest": [("created_at", -1)],
    "price_asc": [("price", 1)],
    "price_desc": [("price", -1)],
    "rating_desc": [("rating", -1)],
}


# ----------------------- Health -----------------------
@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# ----------------------- Auth -----------------------
@app.post("/auth/register", status_code=201)
def register(body: RegisterBody):
    if db["user"].find_one({"email": body.email}):
        raise EmailTaken()
    user = UserSchema(
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
        is_admin=False,
    )
    try:
        user_id = create_document("user", user)
    except DuplicateKeyError:
        raise EmailTaken()
    logger.info("Registered user %s", user_id)
    return auth_response(db["user"].find_one({"_id": ObjectId(user_id)}))


@app.post("/auth/login")
def login(body: LoginBody, background_tasks: BackgroundTasks):
    user = db["user"].find_one({"email": body.email})
    if not user or not verify_password(body.password, user.get("password_hash")):
        logger.debug("Failed login attempt")
        raise InvalidCredentials()

    code = otp.issue(str(user["_id"]))
    background_tasks.add_task(mailer.send_otp_email, user, code)
    return {"message": "OTP sent to your email. Please verify to continue.", "needOtp": True}


@app.post("/auth/verify-otp")
def verify_otp(body: VerifyOtpBody, request: Request, background_tasks: BackgroundTasks):
    user = db["user"].find_one({"email": body.email})
    if not user:
        raise OtpNotFound()
    otp.consume(str(user["_id"]), body.otp)

    meta = {
        "ip": request.client.host if request.client else None,
        "ua": request.headers.get("user-agent"),
    }
    background_tasks.add_task(mailer.send_login_email, user, meta)
    logger.info("User %s verified login code", user["_id"])
    return auth_response(user)


@app.get("/auth/profile")
def profile(user=Depends(get_current_user)):
    return serialize_user(user)


# ----------------------- Products -----------------------
@app.get("/products")
def list_products(
    keyword: Optional[str] = None,
    category: Optional[str] = None,
    sort: str = "newest",
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
):
    filt = {}
    if keyword:
        filt["name"] = {"$regex": re.escape(keyword), "$options": "i"}
    if category:
        filt["category"] = category
    total = db["product"].count_documents(filt)
    pages = max(1, math.ceil(total / limit))
    cursor = (
        db["product"]
        .find(filt)
        .sort(SORTS.get(sort, SORTS["newest"]) + [("_id", -1)])
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {"items": [serialize_doc(i) for i in cursor], "total": total, "page": page, "pages": pages}


@app.get("/products/categories/list")
def list_categories():
    return sorted(c for c in db["product"].distinct("category") if c)


@app.get("/products/{product_id}")
def get_product(product_id: str):
    return serialize_doc(product_or_404(product_id))


@app.post("/products", status_code=201)
def create_product(body: ProductSchema, user=Depends(require_admin)):
    pid = create_document("product", body)
    return serialize_doc(db["product"].find_one({"_id": ObjectId(pid)}))


@app.put("/products/{product_id}")
def update_product(product_id: str, body: ProductUpdateBody, user=Depends(require_admin)):
    item = product_or_404(product_id)
    update = body.model_dump(exclude_none=True)
    update["updated_at"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": item["_id"]}, {"$set": update})
    return serialize_doc(db["product"].find_one({"_id": item["_id"]}))


@app.delete("/products/{product_id}")
def delete_product(product_id: str, user=Depends(require_admin)):
    item = product_or_404(product_id)
    db["product"].delete_one({"_id": item["_id"]})
    return {"ok": True}


# ----------------------- Orders -----------------------
@app.post("/orders", status_code=201)
def create_order(body: orders.OrderCreateBody, user=Depends(get_current_user)):
    return serialize_doc(orders.place_order(str(user["_id"]), body))


@app.get("/orders")
def list_all_orders(user=Depends(require_admin)):
    return serialize_doc(orders.list_orders())


@app.get("/orders/my")
def my_orders(user=Depends(get_current_user)):
    return serialize_doc(orders.list_orders(str(user["_id"])))


@app.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user)):
    return serialize_doc(orders.get_order(order_id, user))


@app.put("/orders/{order_id}/pay")
def pay_order(order_id: str, body: Optional[PaymentResult] = None, user=Depends(get_current_user)):
    return serialize_doc(orders.mark_paid(order_id, user, body))


@app.put("/orders/{order_id}/deliver")
def deliver_order(order_id: str, user=Depends(require_admin)):
    return serialize_doc(orders.mark_delivered(order_id, user))


# ----------------------- Seed Demo Data -----------------------
DEMO_PRODUCTS = [
    {
        "name": "Pixel 7A",
        "brand": "Google",
        "description": "Powerful camera and smooth Android experience.",
        "price": 34999,
        "category": "Mobiles",
        "rating": 4.4,
        "image": "https://images.unsplash.com/photo-1511707171634-5f897ff02aa9",
        "count_in_stock": 25,
    },
    {
        "name": "ThinkPad X1",
        "brand": "Lenovo",
        "description": "Business-class laptop with legendary keyboard.",
        "price": 119999,
        "category": "Laptops",
        "rating": 4.5,
        "image": "https://images.unsplash.com/photo-1517336714731-489689fd1ca8",
        "count_in_stock": 10,
    },
    {
        "name": "Noise Cancelling Headphones",
        "brand": "Sony",
        "description": "Immerse in music with ANC.",
        "price": 19999,
        "category": "Accessories",
        "rating": 4.7,
        "image": "https://images.unsplash.com/photo-1518443248587-30bdc8f94f04",
        "count_in_stock": 40,
    },
    {
        "name": "Cotton Tee",
        "brand": "Uniqlo",
        "description": "Everyday crew neck t-shirt.",
        "price": 799,
        "category": "Fashion",
        "rating": 4.1,
        "image": "https://images.unsplash.com/photo-1521572163474-6864f9cf17ab",
        "count_in_stock": 60,
    },
    {
        "name": "Steel Water Bottle",
        "brand": "Milton",
        "description": "Keeps drinks cold for 24 hours.",
        "price": 450,
        "category": "Home",
        "rating": 4.3,
        "image": "https://images.unsplash.com/photo-1602143407151-7111542de6e8",
        "count_in_stock": 80,
    },
]


@app.post("/seed")
def seed():
    if db["product"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    for p in DEMO_PRODUCTS:
        create_document("product", ProductSchema(**p))
    if db["user"].count_documents({"is_admin": True}) == 0:
        admin = UserSchema(
            name="Admin",
            email=os.getenv("SEED_ADMIN_EMAIL", "admin@shop.com"),
            password_hash=hash_password(os.getenv("SEED_ADMIN_PASSWORD", "admin123")),
            is_admin=True,
        )
        create_document("user", admin)
    return {"seeded": True, "products": db["product"].count_documents({})}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
