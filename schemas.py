"""
Database Schemas for StudyReuse

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
Foreign keys are stored as string ids.
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr

BARTER_STATUSES = ("pending", "accepted", "rejected")
ORDER_STATUSES = ("Pending", "Processing", "Shipped", "Delivered", "Cancelled")


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="Hashed password")
    role: Literal["user", "admin"] = "user"
    is_blocked: bool = False
    block_reason: Optional[str] = None
    phone: Optional[str] = None
    college: Optional[str] = None
    avatar_url: Optional[str] = None


class Item(BaseModel):
    owner_id: str
    title: str = Field(..., min_length=1, max_length=140)
    description: str = Field("", max_length=5000)
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1, description="Units in stock when listed")
    category: str = Field(..., description="Books, Notes, Lab Equipment, ...")
    condition: Literal["New", "Like New", "Good", "Fair", "Poor"] = "Good"
    image_url: Optional[str] = None
    status: Literal["Available", "Reserved", "Sold", "Unavailable"] = "Available"
    is_approved: bool = False
    is_flagged: bool = False
    flag_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    views: int = 0


class Barter(BaseModel):
    item_id: str
    offer_item_id: str
    requester_id: str
    owner_id: str
    status: Literal["pending", "accepted", "rejected"] = "pending"
    message: Optional[str] = Field(None, max_length=1000)
    withdrawn: bool = False


# Frozen copy of the item's display fields at order time
class ItemSnapshot(BaseModel):
    title: str
    price: float
    image_url: Optional[str] = None
    category: Optional[str] = None
    seller_id: str


class OrderItem(BaseModel):
    item_id: str
    item_snapshot: ItemSnapshot
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=10)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = "Nepal"
    notes: Optional[str] = None


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    seller_ids: List[str]
    total_amount: float = Field(..., ge=0)
    state: str = "awaiting_seller"
    status: Literal["Pending", "Processing", "Shipped", "Delivered", "Cancelled"] = "Pending"
    seller_action: Literal["pending", "accepted", "rejected"] = "pending"
    rejection_reason: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    shipping_address: ShippingAddress
    payment_method: Literal["Cash on Delivery"] = "Cash on Delivery"
    idempotency_key: Optional[str] = None


class Review(BaseModel):
    item_id: str
    reviewer_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str


class Notification(BaseModel):
    user_id: str
    message: str
    type: str = "info"
    is_read: bool = False
    related_item_id: Optional[str] = None
    related_order_id: Optional[str] = None
    related_barter_id: Optional[str] = None
    related_user_id: Optional[str] = None
