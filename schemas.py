"""
Database Schemas

Pydantic models for the storefront collections and the shapes the API hands
back to the browser client.

Each stored model represents a collection in the database. The collection
name is the lowercase of the class name without the "Record" suffix:
- ProductRecord -> "product" collection
- Category -> "category" collection
- OrderRecord -> "order" collection
- OrderItemRecord -> "order_item" collection
- ContactLead -> "contact_message" collection (kept from the original table name)
- User profiles live in the "user" collection owned by the identity provider
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

OrderStatus = Literal["Processing", "Shipped", "Delivered"]
PaymentMethod = Literal["upi", "cod"]
DeliverySpeed = Literal["standard", "fast"]
Role = Literal["user", "admin"]

ORDER_STATUSES = ("Processing", "Shipped", "Delivered")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProductRecord(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    id: Optional[str] = None
    name: str = Field(..., description="Product name")
    slug: str = Field(..., description="URL slug, unique")
    description: str = Field("", description="Product description")
    price: float = Field(..., ge=0, description="Unit price")
    market_price: Optional[float] = Field(None, ge=0, description="Compare-at price")
    images: List[str] = Field(default_factory=list, description="Image URLs, first one is the cover")
    category: str = Field("uncategorized", description="Category slug")
    is_featured: bool = Field(False, description="Shown in trending lists")
    is_active: bool = Field(True, description="Visible in the catalog")
    stock_quantity: int = Field(0, ge=0, description="Units in stock")
    created_at: datetime = Field(default_factory=utcnow)


class Product(BaseModel):
    """Catalog product as displayed."""
    id: str
    name: str
    slug: str
    description: str = ""
    price: float
    market_price: Optional[float] = None
    image_url: str = ""
    images: List[str] = Field(default_factory=list)
    category: str = "uncategorized"
    trending: bool = False
    stock: int = 0


class Category(BaseModel):
    """
    Categories collection schema
    Collection name: "category"
    """
    id: Optional[str] = None
    name: str
    slug: str
    image_url: Optional[str] = None
    is_active: bool = True


class CartLine(BaseModel):
    product_id: str
    name: str
    price: float = Field(..., ge=0)
    image_url: str = ""
    category: str = "uncategorized"
    quantity: int = Field(1, ge=1)


class User(BaseModel):
    id: str
    email: str
    display_name: str
    join_date: Optional[datetime] = None
    role: Role = "user"


class Address(BaseModel):
    first_name: str
    last_name: str
    phone: str
    street: str
    city: str
    state: str
    zip: str

    def dedup_key(self):
        return (self.street, self.city, self.state, self.zip)

    def one_line(self) -> str:
        return f"{self.street}, {self.city}, {self.state} - {self.zip}"


class GuestInfo(BaseModel):
    name: str
    email: EmailStr
    phone: str


class OrderItemRecord(BaseModel):
    """
    Order line items collection schema
    Collection name: "order_item"
    """
    order_id: Optional[str] = None
    product_id: str
    name: str
    unit_price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class OrderRecord(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    id: Optional[str] = None
    user_id: Optional[str] = Field(None, description="Owning account, None for guests")
    subtotal: float = Field(..., ge=0)
    delivery_surcharge: float = Field(0, ge=0)
    delivery_speed: DeliverySpeed = "standard"
    total: float = Field(..., ge=0)
    status: OrderStatus = "Processing"
    shipping_address: Address
    customer_email: Optional[str] = None
    payment_method: PaymentMethod
    payment_proof: Optional[str] = Field(None, description="Proof of payment as a data URL")
    guest_info: Optional[GuestInfo] = None
    created_at: datetime = Field(default_factory=utcnow)


class OrderLine(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int


class Order(BaseModel):
    """Order as shown in account history and the admin console."""
    id: str
    user_id: Optional[str] = None
    date: datetime
    items: List[OrderLine] = Field(default_factory=list)
    subtotal: float
    delivery_surcharge: float = 0
    total: float
    status: OrderStatus
    shipping_address: Address
    payment_method: PaymentMethod
    has_payment_proof: bool = False
    guest_info: Optional[GuestInfo] = None


class ContactLead(BaseModel):
    """
    Contact messages collection schema
    Collection name: "contact_message"
    """
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    message: str = ""
    source: str = "web"
    created_at: datetime = Field(default_factory=utcnow)
