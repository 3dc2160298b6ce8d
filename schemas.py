"""
Database Schemas for the Storefront

Each Pydantic model corresponds to a MongoDB collection.
Collection name is the lowercase of the class name.

- User -> "user"
- Session -> "session"
- PasswordReset -> "password_reset"
- Category -> "category"
- Product -> "product"
- Cart -> "cart"
- Wishlist -> "wishlist"
- Address -> "address"
- Order -> "order"
- Review -> "review"
- Rating -> "rating"
- Banner -> "banner"
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator


class Role(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
    DELIVERY = "DELIVERY"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class PaymentMethod(str, Enum):
    COD = "cod"
    GATEWAY = "gateway"


class Document(BaseModel):
    """Base for stored models; enums are kept as their plain values"""
    model_config = ConfigDict(use_enum_values=True, validate_default=True)


class User(Document):
    """Users collection schema"""
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="bcrypt password hash")
    is_active: bool = Field(True, description="Whether user is active")
    role: Role = Field(Role.USER, description="USER, ADMIN or DELIVERY")


class Session(Document):
    """Bearer tokens issued at signin"""
    user_id: str
    token: str


class PasswordReset(Document):
    user_id: str
    token_hash: str
    expires_at: datetime


class Category(Document):
    """Categories collection schema"""
    name: str = Field(..., min_length=2, description="Category name")
    description: Optional[str] = Field(None, description="Category description")


class Product(Document):
    """Products collection schema"""
    name: str = Field(..., min_length=2, description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., gt=0, description="Unit price")
    stock: int = Field(0, ge=0, description="Units available")
    category_id: Optional[str] = Field(None, description="Category reference")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    sizes: List[str] = Field(default_factory=list)
    colors: List[str] = Field(default_factory=list)
    featured: bool = Field(False, description="Shown on the landing page")


class CartItem(BaseModel):
    product_id: str = Field(..., min_length=1, description="ID of the product")
    quantity: int = Field(1, ge=1, description="Quantity of the product")


class Cart(Document):
    user_id: str = Field(..., description="Owner user id")
    items: List[CartItem] = Field(default_factory=list, description="List of cart items")


class Wishlist(Document):
    user_id: str
    product_ids: List[str] = Field(default_factory=list)


class Address(Document):
    user_id: str
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=5)
    line1: str = Field(..., min_length=1)
    line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=3)
    country: str = Field("IN")


class OrderItem(BaseModel):
    """Line item; price is captured when the order is placed"""
    product_id: str
    name: str
    price: float
    quantity: int = Field(..., ge=1)


class Order(Document):
    user_id: str
    items: List[OrderItem]
    total_amount: float
    status: OrderStatus = Field(OrderStatus.PENDING)
    payment_method: PaymentMethod = Field(PaymentMethod.COD)
    payment_status: PaymentStatus = Field(PaymentStatus.PENDING)
    payment_ref: Optional[str] = Field(None, description="Reference from payment provider")
    payment_id: Optional[str] = Field(None, description="Captured payment id")
    shipping_address_id: Optional[str] = None
    assigned_to_id: Optional[str] = Field(None, description="Delivery agent user id")
    delivery_proof_url: Optional[str] = None


class Review(Document):
    product_id: str
    user_id: str
    title: str = Field(..., min_length=3)
    comment: str = Field(..., min_length=10)


class Rating(Document):
    """Star rating attached to a review"""
    product_id: str
    user_id: str
    review_id: str
    value: int = Field(..., ge=1, le=5)


def as_utc(v: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken to be UTC"""
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


HEX_COLOR = r"^(#[0-9a-fA-F]{6})?$"
URL = r"^(https?://\S+)?$"


class Banner(Document):
    """Promotion banners shown on the storefront"""
    title: str = Field(..., min_length=3)
    text: Optional[str] = None
    image_url: Optional[str] = Field(None, pattern=URL)
    link_url: Optional[str] = Field(None, pattern=URL)
    active: bool = Field(False, description="Only active banners are public")
    priority: int = Field(0, description="Higher shows first")
    text_color: Optional[str] = Field(None, pattern=HEX_COLOR)
    background_color: Optional[str] = Field(None, pattern=HEX_COLOR)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    @field_validator("starts_at", "ends_at")
    @classmethod
    def assume_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)
