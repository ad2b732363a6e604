"""
Database Schemas for Fola Store

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase class name.
Request bodies accepted by the API live at the bottom of the file.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    PAYSTACK = "paystack"
    BANK_TRANSFER = "bank_transfer"
    CASH_ON_DELIVERY = "cash_on_delivery"


class ProductStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ARCHIVED = "archived"
    OUT_OF_STOCK = "out_of_stock"


class Role(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    ADMIN = "admin"


class NotificationType(str, Enum):
    LOW_STOCK = "low_stock"
    NEW_ORDER = "new_order"
    ORDER_STATUS = "order_status"
    REVIEW = "review"
    GENERAL = "general"


def _unique_skus(variants):
    skus = [v.sku for v in variants]
    if len(skus) != len(set(skus)):
        raise ValueError("Variant SKUs must be unique within a product")
    return variants


class Variant(BaseModel):
    """Purchasable color/SKU subdivision of a product, embedded in it."""
    sku: str = Field(..., min_length=1, description="Unique within the product")
    color: str = Field(..., min_length=1)
    color_hex: str = Field("#000000")
    stock: int = Field(0, ge=0)
    price: Optional[float] = Field(None, ge=0, description="Optional price override")
    is_available: bool = Field(True)


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., min_length=1, description="URL slug, unique")
    description: str = Field("", max_length=5000)
    category: Optional[str] = Field(None, description="Category slug, e.g. 'lace'")
    base_price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    currency: str = Field("NGN")
    unit_of_measure: str = Field("yard", pattern="^(yard|meter|piece|set)$")
    minimum_order: int = Field(1, ge=1)
    maximum_order: Optional[int] = Field(None, ge=1)
    variants: List[Variant] = Field(default_factory=list)
    total_stock: int = Field(0, ge=0, description="Sum of variant stocks")
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    featured_image: str = Field("", description="Image URL")
    status: ProductStatus = Field(ProductStatus.DRAFT)
    deleted_at: Optional[datetime] = None
    version: int = Field(0, description="Bumped on every stock write")

    @field_validator("variants")
    @classmethod
    def unique_skus(cls, variants):
        return _unique_skus(variants)

    @model_validator(mode="after")
    def order_limits(self):
        if self.maximum_order is not None and self.maximum_order < self.minimum_order:
            raise ValueError("maximum_order must not be below minimum_order")
        return self


class Address(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    phone: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.strip().lower()


class VariantSnapshot(BaseModel):
    sku: str
    color: str
    color_hex: str


class OrderItem(BaseModel):
    """Snapshot of a purchased line, copied at order time"""
    product_id: str
    product_name: str
    product_image: str
    variant: VariantSnapshot
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0)
    unit_of_measure: str


class Payment(BaseModel):
    method: PaymentMethod = PaymentMethod.PAYSTACK
    reference: str
    references: List[str] = Field(default_factory=list, description="Every reference issued for this order")
    transaction_id: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    amount: float = Field(..., ge=0)
    currency: str
    paid_at: Optional[datetime] = None


class Order(BaseModel):
    order_number: str
    customer_id: str
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    shipping_cost: float = Field(0, ge=0)
    tax: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    currency: str
    shipping_address: Address
    billing_address: Address
    payment: Payment
    status: OrderStatus = OrderStatus.PENDING
    fulfillment_status: str = Field("unfulfilled", description="unfulfilled|partially_fulfilled|fulfilled")
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    customer_note: Optional[str] = Field(None, max_length=500)


class User(BaseModel):
    first_name: str = Field(..., description="First name")
    last_name: str = Field(..., description="Last name")
    email: str = Field(..., description="Email address, unique")
    phone: Optional[str] = None
    password_hash: str = Field(..., description="Salted PBKDF2 hash")
    role: Role = Role.CUSTOMER
    is_active: bool = True
    token_hash: Optional[str] = None


class Notification(BaseModel):
    recipient_id: str
    type: NotificationType
    title: str = Field(..., max_length=200)
    message: str = Field(..., max_length=1000)
    data: Dict[str, Any] = Field(default_factory=dict)
    is_read: bool = False
    read_at: Optional[datetime] = None


# Request bodies

class RegisterRequest(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
    password: str = Field(..., min_length=8)
    phone: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


class StaffCreateRequest(RegisterRequest):
    role: str = "staff"


class StaffUpdateRequest(BaseModel):
    role: Optional[str] = None
    is_active: Optional[bool] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=5000)
    category: Optional[str] = None
    base_price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    minimum_order: Optional[int] = Field(None, ge=1)
    maximum_order: Optional[int] = Field(None, ge=1)
    variants: Optional[List[Variant]] = None
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    featured_image: Optional[str] = None
    status: Optional[ProductStatus] = None

    @field_validator("variants")
    @classmethod
    def unique_skus(cls, variants):
        if variants is not None:
            _unique_skus(variants)
        return variants


class StockCheckRequest(BaseModel):
    color: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)


class VariantSelector(BaseModel):
    color: Optional[str] = None
    sku: Optional[str] = None

    @model_validator(mode="after")
    def needs_one(self):
        if not self.color and not self.sku:
            raise ValueError("Variant color or sku is required")
        return self


class CartItem(BaseModel):
    product: str = Field(..., description="Product id")
    variant: VariantSelector
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(BaseModel):
    items: List[CartItem] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_reference: Optional[str] = Field(None, min_length=1)
    payment_method: PaymentMethod = PaymentMethod.PAYSTACK
    customer_note: Optional[str] = Field(None, max_length=500)


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = Field(None, min_length=1)
    carrier: Optional[str] = Field(None, min_length=1)


class VerifyPaymentRequest(BaseModel):
    reference: str = Field(..., min_length=1)
