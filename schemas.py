"""
Database Schemas

MongoDB collection schemas for the Jewel Haven storefront, as Pydantic models.
These schemas are used for data validation before documents are written.

Each Pydantic model represents a collection in the database.
Collection name is the snake_case model name:
- User -> "user" collection
- OtpCode -> "otp_code" collection
- Product -> "product" collection
- CartItem -> "cart_item" collection
- Order -> "order" collection
- OrderItem -> "order_item" collection
- Contact -> "contact" collection
- ContactReply -> "contact_reply" collection
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["user", "admin", "superadmin"]
OrderStatus = Literal["pending", "processing", "paid", "delivered", "completed", "cancelled"]
PaymentMethod = Literal["mpesa", "cod"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
ContactStatus = Literal["new", "read", "replied", "archived"]
OtpType = Literal["signup", "reset"]

ADMIN_ROLES = ("admin", "superadmin")


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, unique")
    phone: Optional[str] = Field(None, description="Phone number for SMS codes")
    password_hash: str = Field(..., description="Password hash (server-side)")
    profile_picture: Optional[str] = Field(None, description="data:image/... URI")
    role: Role = Field("user", description="Role: user | admin | superadmin")
    is_verified: bool = Field(False, description="Whether the signup code was confirmed")
    otp_preference: Literal["email", "sms"] = Field("email", description="Where codes are sent")


class OtpCode(BaseModel):
    """
    One-time codes for signup verification and password reset
    Collection name: "otp_code"
    """
    email: Optional[str] = None
    phone: Optional[str] = None
    code: str = Field(..., min_length=6, max_length=6)
    type: OtpType
    expires_at: datetime


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., description="Product name")
    description: str = Field("", description="Rich text HTML description")
    image: str = Field("", description="Main image, URL or base64 data URI")
    images: List[str] = Field(default_factory=list, description="Additional images")
    category: str = Field(..., description="Product category")
    price: float = Field(..., ge=0, description="Price in KSh")
    original_price: Optional[float] = Field(None, ge=0, description="Pre-discount price for display")
    in_stock: bool = Field(True, description="Whether the product can be ordered")
    stock_quantity: int = Field(0, ge=0, description="Units in stock")
    stock_status: str = Field("in stock", description="in stock | out of stock")
    warranty: Optional[str] = None
    return_policy: Optional[str] = None
    delivery_fee: float = Field(0, ge=0)
    delivery_time: Optional[str] = None
    featured: bool = Field(False, description="Shown on the home page")


class CartItem(BaseModel):
    """
    Cart items collection schema
    Collection name: "cart_item"
    """
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: Optional[str] = Field(None, description="User ObjectId as string")
    order_number: str = Field(..., description="Public order reference, unique")
    status: OrderStatus = "pending"
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    mpesa_receipt_number: Optional[str] = None
    mpesa_checkout_id: Optional[str] = Field(None, description="Gateway CheckoutRequestID")
    subtotal: float = Field(..., ge=0)
    delivery_fee: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    delivery_name: str
    delivery_phone: str
    delivery_address: str
    notes: Optional[str] = None
    stock_deducted: bool = Field(False, description="Set once stock has been taken for this order")


class OrderItem(BaseModel):
    """
    Order line items, frozen at purchase time
    Collection name: "order_item"
    """
    order_id: str
    product_id: Optional[str] = None
    product_name: str
    product_image: str = ""
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class Contact(BaseModel):
    """
    Contact messages collection schema
    Collection name: "contact"
    """
    user_id: Optional[str] = None
    name: str
    email: EmailStr
    phone: str
    subject: str
    message: str
    status: ContactStatus = "new"


class ContactReply(BaseModel):
    """
    Admin replies to contact messages
    Collection name: "contact_reply"
    """
    contact_id: str
    admin_id: str
    admin_name: str
    message: str = Field(..., min_length=1)
