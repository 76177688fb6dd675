"""
Database Schemas for the Shop

Each Pydantic model corresponds to a MongoDB collection. The collection name is the
snake_case of the class name.

Example: class PendingUser -> collection "pending_user"
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

ORDER_STATUSES = ("pending", "confirmed", "shipped", "delivered", "canceled")
OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "canceled"]


class OneTimeCode(BaseModel):
    code: str
    expires_at: datetime


class ResetToken(BaseModel):
    token: str
    expires_at: datetime


class User(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    password_hash: Optional[str] = None
    is_admin: bool = False
    is_verified: bool = False
    otp: Optional[OneTimeCode] = None
    reset: Optional[ResetToken] = None


class PendingUser(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    password_hash: Optional[str] = None
    otp: OneTimeCode


class Category(BaseModel):
    name: str
    slug: str


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    price: float = Field(0, ge=0)
    images: List[str] = Field(default_factory=list)
    qty: int = 0
    sku: Optional[str] = None
    sizes: List[float] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OrderItem(BaseModel):
    product_id: Optional[str] = Field(None, description="Catalog product id; empty for guest-only items")
    name: Optional[str] = None
    price: float = 0
    quantity: int = Field(1, ge=1)
    size: Optional[Any] = None
    color: Optional[str] = None


class ShippingAddress(BaseModel):
    full_name: str
    email: str
    phone: Optional[str] = None
    address: str
    city: str
    postal: str
    country: str


class Order(BaseModel):
    user_id: Optional[str] = None
    order_number: str
    items: List[OrderItem]
    total: float
    status: OrderStatus = "pending"
    tracking_number: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    payment_info: Dict[str, Any] = Field(default_factory=dict)
    email_sent: bool = False
