"""
Database Schemas for the shop backend

Each Pydantic model typically maps to a MongoDB collection named after the
lowercased class name (e.g., Product -> "product", Order -> "order"). Some
embedded models are used for nested fields (order line items, shipping
address, buyer).
"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, EmailStr, Field

PAYMENT_METHODS = ("COD", "BANK", "CARD", "Momo", "ZaloPay")
ORDER_STATUSES = ("pending", "confirmed", "shipping", "delivered", "cancelled")

Category = Literal["Quần áo", "Giày dép", "Mỹ phẩm", "Thực phẩm", "Tiêu dùng", "Gia dụng"]
OrderStatus = Literal["pending", "confirmed", "shipping", "delivered", "cancelled"]

# ------------ Auth & Account ------------
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    password: str

class LoginRequest(BaseModel):
    identifier: str = Field(..., description="Email address or phone number")
    password: str

class OtpVerifyRequest(BaseModel):
    email: EmailStr
    otp: str

class OtpResendRequest(BaseModel):
    email: EmailStr

class Account(BaseModel):
    name: str
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    password_hash: str
    salt: str
    role: Literal["user", "admin"] = "user"
    register_type: Literal["email", "phone"] = "email"
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    is_active: bool = True

# ------------ Products ------------
class ProductCreate(BaseModel):
    product_number: Optional[int] = Field(None, ge=0, le=2 ** 63 - 1, description="Legacy numeric catalog number")
    name: str = Field(..., min_length=1)
    category: Category
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    image: str
    description: str
    sizes: List[str] = []
    rating: float = Field(0, ge=0, le=5)
    reviews: int = Field(0, ge=0)
    is_active: bool = True

class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    category: Optional[Category] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    image: Optional[str] = None
    description: Optional[str] = None
    sizes: Optional[List[str]] = None
    rating: Optional[float] = Field(None, ge=0, le=5)
    reviews: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None

# ------------ Orders ------------
class OrderItemIn(BaseModel):
    reference: Union[int, str] = Field(..., description="Internal key, legacy catalog number or product name")
    name: Optional[str] = None
    quantity: int
    size: Optional[str] = None

class ShippingAddress(BaseModel):
    full_name: str = ""
    phone: str = ""
    address: str = ""
    email: Optional[str] = None
    ward: Optional[str] = None
    district: Optional[str] = None
    city: Optional[str] = None

class GuestInfo(BaseModel):
    name: str = ""
    phone: str = ""
    email: Optional[EmailStr] = None

class OrderCreate(BaseModel):
    items: List[OrderItemIn] = []
    shipping_address: ShippingAddress = ShippingAddress()
    payment_method: str = "COD"
    note: Optional[str] = Field(None, max_length=1000)
    guest: Optional[GuestInfo] = None
    shipping_fee: Optional[float] = None
    subtotal: Optional[float] = None
    total_amount: Optional[float] = None

class OrderStatusUpdate(BaseModel):
    status: str
    reason: Optional[str] = Field(None, max_length=500)

class OrderCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)

class OrderItem(BaseModel):
    """Line item snapshot; never re-read from the live product."""
    product_id: str
    product_number: Optional[int] = None
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    image: Optional[str] = None

class AccountBuyer(BaseModel):
    kind: Literal["account"] = "account"
    account_id: str

class GuestBuyer(BaseModel):
    kind: Literal["guest"] = "guest"
    name: str
    phone: str
    email: Optional[str] = None

Buyer = Annotated[Union[AccountBuyer, GuestBuyer], Field(discriminator="kind")]

class Order(BaseModel):
    items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: str
    note: Optional[str] = None
    subtotal: float = Field(..., ge=0)
    shipping_fee: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    buyer: Buyer
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
