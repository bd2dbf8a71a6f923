"""
Database Schemas for the Storefront

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name by default.

We store:
- User (identity only; carts live in their own collection)
- Product
- Cart (user_id + a list of CartItem, one per product)
- Order (with a frozen snapshot of its line items and prices)
"""

from pydantic import BaseModel, Field, EmailStr
from typing import Any, Dict, List, Optional
from datetime import datetime


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"

    Read-only here: accounts are created by the account service that issues
    the bearer tokens. Tests seed it through this model.
    """
    name: str = Field(..., description="Full name")
    email: Optional[EmailStr] = Field(None, description="Email address")
    is_admin: bool = Field(False, description="Admin flag")


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"

    The catalog owns writes; this service reads prices and images and only
    decrements stock (touching updated_at) once an order is paid.
    """
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Unit price")
    stock: int = Field(0, ge=0, description="Available inventory")
    images: List[str] = Field(default_factory=list, description="Image URLs")


class CartItem(BaseModel):
    id: str = Field(..., description="Line item id, used by update/remove")
    product_id: str = Field(..., description="Product id as string")
    quantity: int = Field(1, ge=1, description="Quantity for the product")


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float
    image: str = ""


class PaymentResult(BaseModel):
    provider: str = "cashfree"
    order_id: Optional[str] = Field(None, description="Gateway-side order id")
    token: Optional[str] = None
    payment_session_id: Optional[str] = None
    payment_id: Optional[str] = Field(None, description="Gateway-side payment id, set on verification")
    signature: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: str
    items: List[OrderItem]
    shipping_address: Dict[str, Any] = Field(default_factory=dict)
    payment_method: str = "cashfree"
    items_price: float
    shipping_price: float
    tax_price: float
    total_price: float
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    payment_result: Optional[PaymentResult] = None
    stock_shortfalls: List[str] = Field(default_factory=list, description="Products that could not cover their quantity at payment time")
