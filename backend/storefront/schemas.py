"""
Request and response models (Pydantic).

Incoming bodies are validated here before any database work happens.
Response models read straight from ORM objects (from_attributes=True).
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from storefront.exceptions import ValidationError

PaymentMethod = Literal["stripe", "paypal", "demo"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled", "refunded"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]


def error_details(errors: List[Dict[str, Any]]) -> List[str]:
    """Flatten pydantic error dicts into "field.path: message" strings."""
    details = []
    for err in errors:
        path = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        details.append(f"{path}: {err['msg']}" if path else err["msg"])
    return details


# --- Categories ---

class Category(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: str
    description: Optional[str] = None
    image_url: Optional[str] = None
    parent_id: Optional[int] = None


# --- Products ---

class ProductBase(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    image_url: Optional[str] = Field(None, max_length=500)
    category_id: Optional[int] = Field(None, gt=0)


class ProductCreate(ProductBase):
    stock_quantity: int = Field(0, ge=0)
    status: Literal["active", "inactive", "out_of_stock"] = "active"


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    image_url: Optional[str] = Field(None, max_length=500)
    category_id: Optional[int] = Field(None, gt=0)
    status: Optional[Literal["active", "inactive", "out_of_stock"]] = None


class Product(ProductBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    stock_quantity: int
    status: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# --- Cart ---

class CartItemAdd(BaseModel):
    product_id: int = Field(..., gt=0)
    quantity: int = Field(1, ge=1, le=100)


class CartItemUpdate(BaseModel):
    # 0 removes the line
    quantity: int = Field(..., ge=0, le=100)


class CartItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    quantity: int
    price: Decimal
    created_at: Optional[datetime] = None


class CartLine(CartItem):
    product_name: str
    image_url: Optional[str] = None
    line_total: Decimal


class Cart(BaseModel):
    success: bool = True
    items: List[CartLine]
    count: int
    subtotal: Decimal
    session_id: Optional[str] = None
    user_id: Optional[int] = None


class CartMutation(BaseModel):
    success: bool = True
    message: str
    cart_item: Optional[CartItem] = None
    cart_count: int
    session_id: Optional[str] = None


# --- Checkout ---

class Address(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    address1: str = Field(..., min_length=1, max_length=255)
    address2: Optional[str] = Field(None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    zip_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field("United States", min_length=1, max_length=100)
    phone: Optional[str] = Field(None, min_length=1, max_length=20)


class CheckoutRequest(BaseModel):
    session_id: Optional[str] = Field(None, max_length=255)
    user_id: Optional[int] = Field(None, gt=0)
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod = "demo"
    promo_code: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = Field(None, max_length=500)


def parse_checkout(data: Dict[str, Any]) -> CheckoutRequest:
    """Validate a raw checkout payload, raising our ValidationError."""
    try:
        return CheckoutRequest.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(error_details(exc.errors())) from exc


class OrderSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    total: Decimal = Field(validation_alias=AliasChoices("total_amount", "total"))
    status: str
    created_at: Optional[datetime] = None


class CheckoutResponse(BaseModel):
    success: bool = True
    message: str = "Order created successfully"
    order: OrderSummary


# --- Orders ---

class OrderItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    product_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    product_snapshot: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None


class Order(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    user_id: Optional[int] = None
    status: str
    payment_status: str
    payment_method: Optional[str] = None
    payment_id: Optional[str] = None
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    total_amount: Decimal
    currency: str
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderDetail(Order):
    items: List[OrderItem]


class OrderUpdate(BaseModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    payment_id: Optional[str] = Field(None, max_length=255)


class OrderStats(BaseModel):
    total_orders: int
    total_revenue: Decimal
    average_order_value: Decimal
    pending_orders: int
