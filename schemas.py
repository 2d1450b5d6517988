"""
Database Schemas

Each Pydantic model represents a collection in the MongoDB database.
Model name lowercased is the collection name. References between
collections are stored as string ids.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["user", "admin"]
Category = Literal["Fashion", "Accessories", "Drinkware", "Home & Baby", "General"]
Subcategory = Literal["Bags", "Accessories", "Perfumes", ""]
PaymentMethod = Literal["stripe", "paystack"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
ContactStatus = Literal["new", "read", "replied"]


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zip_code: Optional[str] = None


class User(BaseModel):
    name: str = Field(..., min_length=2, description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercase")
    password_hash: str = Field(..., description="BCrypt hashed password")
    phone: Optional[str] = None
    role: Role = "user"
    is_verified: bool = False
    verification_token: Optional[str] = None
    verification_token_expire: Optional[datetime] = None
    reset_password_token: Optional[str] = None
    reset_password_expire: Optional[datetime] = None
    address: Optional[Address] = None


class ProductImage(BaseModel):
    url: str
    public_id: str


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    category: Category = "General"
    subcategory: Subcategory = ""
    stock: int = Field(0, ge=0)
    featured: bool = False
    colors: List[str] = Field(default_factory=list)
    images: List[ProductImage] = Field(default_factory=list)


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0, description="Unit price when the item was added")


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_price: float = 0


class ShippingAddress(BaseModel):
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class PaymentResult(BaseModel):
    id: str
    status: str
    update_time: datetime
    email_address: Optional[str] = None
    amount: Optional[float] = None


class StatusChange(BaseModel):
    status: OrderStatus
    at: datetime


class Order(BaseModel):
    user_id: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[EmailStr] = None
    order_items: List[OrderItem]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_result: PaymentResult
    items_price: float
    tax_price: float = 0
    shipping_price: float = 0
    total_price: float
    is_paid: bool = True
    paid_at: datetime
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    status: OrderStatus = "pending"
    status_history: List[StatusChange] = Field(default_factory=list)


class Contact(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    subject: str = Field(..., min_length=1)
    message: str = Field(..., min_length=10)
    status: ContactStatus = "new"
    replied: bool = False
    reply_message: Optional[str] = None
    replied_at: Optional[datetime] = None


class Wishlist(BaseModel):
    user_id: str
    product_ids: List[str] = Field(default_factory=list)
