"""
Database Schemas for the Storefront

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.

Nested models (ShippingAddress, PaymentResult, OrderItem) accept camelCase
keys from API bodies but are stored with their snake_case field names.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="Salted password hash")
    is_admin: bool = False


class Otp(BaseModel):
    """Pending second-factor code, one per user, replaced on every login."""
    user_id: str
    code_hash: str
    expires_at: datetime
    consumed_at: Optional[datetime] = None


class Product(ApiModel):
    name: str = Field(..., min_length=1)
    brand: str = ""
    description: str = ""
    price: float = Field(..., ge=0)
    category: str = Field(..., min_length=1)
    rating: float = Field(0, ge=0, le=5)
    image: Optional[str] = None
    count_in_stock: int = Field(0, ge=0)


class ShippingAddress(ApiModel):
    line1: str = Field(..., min_length=1)
    line2: str = ""
    city: str = Field(..., min_length=1)
    state: str = ""
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class PaymentResult(ApiModel):
    id: Optional[str] = None
    status: Optional[str] = None
    update_time: Optional[str] = None
    email_address: Optional[str] = None


class OrderItem(BaseModel):
    product: str
    name: str
    qty: int
    price: float
    image: Optional[str] = None


PaymentMethod = Literal["COD", "Card", "UPI"]


class Order(BaseModel):
    user_id: str
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "COD"
    payment_result: Optional[PaymentResult] = None
    items_price: float
    tax_price: float
    shipping_price: float
    total_price: float
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
