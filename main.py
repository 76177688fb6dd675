import hmac
import logging
import os
import re
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

import database
from auth import AuthWorkflow
from config import Settings, get_settings, setup_logging
from database import serialize, to_object_id, utcnow
from errors import (
    AuthenticationError,
    ConflictError,
    DatabaseUnavailableError,
    InsufficientStockError,
    NotFoundError,
    PaymentProviderError,
    PermissionDeniedError,
    ShopError,
    ValidationError,
)
from inventory import InventoryManager
from notifications import Mailer
from orders import OrderWorkflow
from payments import PaymentWorkflow, StripeGateway
from schemas import Category, OrderItem, Product, ShippingAddress
from security import decode_token
from users import UserDirectory

setup_logging(get_settings().log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
        except PyMongoError as exc:
            logger.warning("Unable to ensure indexes: %s", exc)
    if settings.auto_create_admin:
        if database.db is None:
            logger.warning("AUTO_CREATE_ADMIN is set but the database is not configured")
        elif not settings.admin_configured:
            logger.info("ADMIN_EMAIL or ADMIN_PASS not set; skipping admin auto-create")
        else:
            UserDirectory(database.db).ensure_admin(settings.admin_email, settings.admin_password, settings.admin_name)
    yield


# App setup
app = FastAPI(title="Shop API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

security = HTTPBearer(auto_error=False)


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: Dict[type, int] = {
    ValidationError: 400,
    ConflictError: 400,
    InsufficientStockError: 400,
    AuthenticationError: 401,
    PermissionDeniedError: 403,
    NotFoundError: 404,
    PaymentProviderError: 500,
    DatabaseUnavailableError: 500,
}


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    """Map ShopError subclasses to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    content = {"detail": str(exc), "error_type": type(exc).__name__}
    content.update(exc.extra())
    return JSONResponse(status_code=status_code, content=content)


# Dependencies
def get_db():
    if database.db is None:
        raise DatabaseUnavailableError()
    return database.db


def get_mailer(settings: Settings = Depends(get_settings)) -> Mailer:
    return Mailer(settings)


def get_payment_gateway(settings: Settings = Depends(get_settings)) -> StripeGateway:
    return StripeGateway(settings)


def get_directory(db=Depends(get_db)) -> UserDirectory:
    return UserDirectory(db)


def get_inventory(db=Depends(get_db), settings: Settings = Depends(get_settings)) -> InventoryManager:
    return InventoryManager(db, settings.low_stock_level)


def get_auth(directory: UserDirectory = Depends(get_directory), settings: Settings = Depends(get_settings),
             mailer: Mailer = Depends(get_mailer)) -> AuthWorkflow:
    return AuthWorkflow(directory, settings, mailer)


def get_orders(db=Depends(get_db), settings: Settings = Depends(get_settings),
               inventory: InventoryManager = Depends(get_inventory),
               mailer: Mailer = Depends(get_mailer)) -> OrderWorkflow:
    return OrderWorkflow(db, settings, inventory, mailer)


def get_payments(gateway: StripeGateway = Depends(get_payment_gateway), orders: OrderWorkflow = Depends(get_orders),
                 settings: Settings = Depends(get_settings)) -> PaymentWorkflow:
    return PaymentWorkflow(gateway, orders, settings)


def _resolve_user(token: str, directory: UserDirectory, settings: Settings) -> dict:
    bypass = settings.admin_bypass_token
    if bypass and settings.admin_email and hmac.compare_digest(token, bypass):
        admin = directory.find_user(settings.admin_email)
        if admin and admin.get("is_admin"):
            return admin
        raise AuthenticationError("Invalid token")

    payload = decode_token(token, settings)
    user = directory.get_user(payload.get("sub"))
    if not user:
        raise AuthenticationError("User not found")
    return user


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                           directory: UserDirectory = Depends(get_directory),
                           settings: Settings = Depends(get_settings)) -> dict:
    if credentials is None:
        raise AuthenticationError("Unauthorized")
    return _resolve_user(credentials.credentials, directory, settings)


async def get_optional_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
                            directory: UserDirectory = Depends(get_directory),
                            settings: Settings = Depends(get_settings)) -> Optional[dict]:
    if credentials is None:
        return None
    return _resolve_user(credentials.credentials, directory, settings)


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not user.get("is_admin"):
        raise PermissionDeniedError()
    return user


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


# Schemas (request/response)
class SignupRequest(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    password: Optional[str] = None


class EmailRequest(BaseModel):
    email: EmailStr


class LoginRequest(BaseModel):
    email: EmailStr
    password: Optional[str] = None


class VerifyOtpRequest(BaseModel):
    email: EmailStr
    code: str


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    token: str
    new_password: str = Field(..., min_length=1)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    images: Optional[List[str]] = None
    qty: Optional[int] = None
    sku: Optional[str] = None
    sizes: Optional[List[float]] = None
    colors: Optional[List[str]] = None
    category: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class CategoryIn(BaseModel):
    name: str = ""


class CreateOrderRequest(BaseModel):
    items: List[OrderItem] = Field(default_factory=list)
    shipping_address: Optional[ShippingAddress] = None
    payment_info: Dict[str, Any] = Field(default_factory=dict)
    order_number: Optional[str] = None


class StatusUpdateRequest(BaseModel):
    status: str


class WebhookStatusRequest(BaseModel):
    order_number: Optional[str] = None
    status: Optional[str] = None
    tracking_number: Optional[str] = None
    webhook_secret: Optional[str] = None


class CheckoutSessionRequest(BaseModel):
    items: List[OrderItem] = Field(default_factory=list)
    shipping_address: Dict[str, Any] = Field(default_factory=dict)


# Health and helpers
@app.get("/")
def root(settings: Settings = Depends(get_settings)):
    return {"ok": True, "message": "Shop API running", "env": settings.environment}


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
@app.post("/api/auth/signup")
def signup(payload: SignupRequest, auth: AuthWorkflow = Depends(get_auth)):
    return auth.signup(payload.name, payload.email, payload.password)


@app.post("/api/auth/login")
def login(payload: LoginRequest, auth: AuthWorkflow = Depends(get_auth)):
    return auth.login(payload.email, payload.password)


@app.post("/api/auth/verify-otp")
def verify_otp(payload: VerifyOtpRequest, auth: AuthWorkflow = Depends(get_auth)):
    return auth.verify_otp(payload.email, payload.code)


@app.post("/api/auth/request-otp")
def request_otp(payload: EmailRequest, auth: AuthWorkflow = Depends(get_auth)):
    return auth.request_otp(payload.email)


@app.post("/api/auth/forgot-password")
def forgot_password(payload: EmailRequest, auth: AuthWorkflow = Depends(get_auth)):
    return auth.forgot_password(payload.email)


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordRequest, auth: AuthWorkflow = Depends(get_auth)):
    return auth.reset_password(payload.email, payload.token, payload.new_password)


@app.get("/api/auth/me")
async def me(current_user: dict = Depends(get_current_user), auth: AuthWorkflow = Depends(get_auth)):
    return auth.me(current_user)


# Products
@app.get("/api/products")
def list_products(category: Optional[str] = None, db=Depends(get_db)):
    filt = {"category": category} if category else {}
    return database.get_documents(db, "product", filt, limit=200, sort=[("created_at", -1)])


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    oid = to_object_id(product_id)
    p = db["product"].find_one({"_id": oid}) if oid else None
    if not p:
        raise NotFoundError("Product")
    return serialize(p)


@app.post("/api/products", status_code=201)
async def create_product(payload: Product, db=Depends(get_db), user: dict = Depends(require_admin)):
    inserted = database.create_document(db, "product", payload)
    logger.info("Product %s created by %s", inserted, user["email"])
    return serialize(db["product"].find_one({"_id": to_object_id(inserted)}))


@app.put("/api/products/{product_id}")
async def update_product(product_id: str, payload: ProductUpdate, db=Depends(get_db),
                         user: dict = Depends(require_admin)):
    oid = to_object_id(product_id)
    if oid is None:
        raise NotFoundError("Product")
    updates = payload.model_dump(exclude_unset=True)
    updates["updated_at"] = utcnow()
    p = db["product"].find_one_and_update({"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER)
    if not p:
        raise NotFoundError("Product")
    return serialize(p)


@app.delete("/api/products/{product_id}")
async def delete_product(product_id: str, db=Depends(get_db), user: dict = Depends(require_admin)):
    oid = to_object_id(product_id)
    result = db["product"].delete_one({"_id": oid}) if oid else None
    if not result or result.deleted_count == 0:
        raise NotFoundError("Product")
    return {"ok": True, "id": product_id, "deleted": True}


# Categories
@app.get("/api/categories")
def list_categories(db=Depends(get_db)):
    return database.get_documents(db, "category", sort=[("name", 1)])


@app.post("/api/categories")
async def create_category(payload: CategoryIn, db=Depends(get_db), user: dict = Depends(require_admin)):
    name = payload.name.strip()
    if not name:
        raise ValidationError("Name required")
    existing = db["category"].find_one({"name": name})
    if existing:
        return serialize(existing)
    slug = slugify(name)
    inserted = database.create_document(db, "category", Category(name=name, slug=slug))
    return JSONResponse(status_code=201, content={"id": inserted, "name": name, "slug": slug})


@app.delete("/api/categories/{category_id}")
async def delete_category(category_id: str, db=Depends(get_db), user: dict = Depends(require_admin)):
    oid = to_object_id(category_id)
    result = db["category"].delete_one({"_id": oid}) if oid else None
    if not result or result.deleted_count == 0:
        raise NotFoundError("Category")
    return {"ok": True}


# Orders
@app.get("/api/orders/health")
def orders_health(orders: OrderWorkflow = Depends(get_orders)):
    return orders.health()


@app.post("/api/orders")
async def create_order(payload: CreateOrderRequest, orders: OrderWorkflow = Depends(get_orders),
                       user: Optional[dict] = Depends(get_optional_user)):
    order = orders.create_order(
        items=[item.model_dump() for item in payload.items],
        shipping_address=payload.shipping_address.model_dump() if payload.shipping_address else None,
        payment_info=payload.payment_info,
        user=user,
        order_number=payload.order_number,
    )
    return {"success": True, "order": order, "message": "Order created successfully"}


@app.get("/api/orders/my")
async def my_orders(orders: OrderWorkflow = Depends(get_orders), user: dict = Depends(get_current_user)):
    return orders.list_for_user(user)


@app.get("/api/orders/analytics/stats")
async def order_analytics(period: str = "30days", orders: OrderWorkflow = Depends(get_orders),
                          user: dict = Depends(require_admin)):
    return orders.analytics(period)


@app.post("/api/orders/webhook/status-update")
def webhook_status_update(payload: WebhookStatusRequest, orders: OrderWorkflow = Depends(get_orders)):
    return orders.webhook_status_update(
        payload.order_number, payload.status, payload.tracking_number, payload.webhook_secret
    )


@app.get("/api/orders")
async def list_orders(orders: OrderWorkflow = Depends(get_orders), user: dict = Depends(require_admin)):
    return orders.list_all()


@app.get("/api/orders/{order_id}")
async def get_order(order_id: str, orders: OrderWorkflow = Depends(get_orders), user: dict = Depends(require_admin)):
    return orders.get(order_id)


@app.put("/api/orders/{order_id}")
@app.put("/api/orders/{order_id}/status")
async def update_order_status(order_id: str, payload: StatusUpdateRequest, orders: OrderWorkflow = Depends(get_orders),
                              user: dict = Depends(require_admin)):
    return orders.update_status(order_id, payload.status)


# Inventory
@app.get("/api/inventory/status")
async def inventory_status(inventory: InventoryManager = Depends(get_inventory), user: dict = Depends(require_admin)):
    return inventory.status_report()


@app.get("/api/inventory/low-stock")
async def low_stock(threshold: int = 10, inventory: InventoryManager = Depends(get_inventory),
                    user: dict = Depends(require_admin)):
    products = inventory.low_stock(threshold)
    return {"threshold": threshold, "count": len(products), "products": products}


@app.get("/api/inventory/out-of-stock")
async def out_of_stock(inventory: InventoryManager = Depends(get_inventory), user: dict = Depends(require_admin)):
    products = inventory.out_of_stock()
    return {"count": len(products), "products": products}


# Payments
@app.post("/api/payments/create-checkout-session")
async def create_checkout_session(payload: CheckoutSessionRequest, request: Request,
                                  payments: PaymentWorkflow = Depends(get_payments),
                                  user: Optional[dict] = Depends(get_optional_user)):
    return payments.create_checkout_session(
        [item.model_dump() for item in payload.items],
        payload.shipping_address,
        user=user,
        origin=request.headers.get("origin"),
    )


@app.post("/api/payments/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None),
                         payments: PaymentWorkflow = Depends(get_payments)):
    payload = await request.body()
    return payments.handle_webhook(payload, stripe_signature)


@app.get("/api/payments/session/{session_id}")
def get_payment_session(session_id: str, payments: PaymentWorkflow = Depends(get_payments)):
    return payments.get_session(session_id)


@app.get("/api/payments/order/{session_id}")
def get_order_for_session(session_id: str, payments: PaymentWorkflow = Depends(get_payments)):
    return payments.order_for_session(session_id)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
