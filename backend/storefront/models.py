"""
Database Models
===============

Defines the database schema using SQLAlchemy ORM.

Tables:
- categories: Groupings for the catalog
- products: Items for sale
- cart_items: Lines in a session's or user's cart
- orders: Placed orders
- order_items: Snapshot of each purchased line

Money columns are Numeric, so values come back as Decimal.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from storefront.database import Base


# ============================================================================
# CATEGORY MODEL
# ============================================================================

class Category(Base):
    """
    Product categories, optionally nested under a parent.

    Only active categories are listed or used for filtering.
    """
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)

    name = Column(String(100), nullable=False)
    slug = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    image_url = Column(String(500), nullable=True)
    parent_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    products = relationship("Product", back_populates="category")


# ============================================================================
# PRODUCT MODEL
# ============================================================================

class Product(Base):
    """
    Products available for purchase.

    Attributes:
        id: Primary key
        name: Product name
        slug: URL-friendly unique name
        price: Unit price in USD
        stock_quantity: Units on hand, never negative
        status: active, inactive or out_of_stock
        category_id: Owning category, if any

    stock_quantity is only changed through crud.decrement_stock and
    crud.restock.
    """
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)

    name = Column(String(255), nullable=False, index=True)
    slug = Column(String(255), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(10, 2), nullable=False)
    stock_quantity = Column(Integer, default=0, nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id", ondelete="SET NULL"), nullable=True, index=True)
    image_url = Column(String(500), nullable=True)
    status = Column(String(20), default="active", nullable=False, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    category = relationship("Category", back_populates="products")
    order_items = relationship("OrderItem", back_populates="product")


# ============================================================================
# CART ITEM MODEL
# ============================================================================

class CartItem(Base):
    """
    One product line in a cart.

    A cart is identified by its owner key: user_id for signed-in shoppers,
    session_id otherwise. Exactly one of the two is set.

    price is the unit price captured when the product was first added;
    later catalog price changes don't touch it.
    """
    __tablename__ = "cart_items"
    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_cart_user_product"),
        UniqueConstraint("session_id", "product_id", name="uq_cart_session_product"),
        CheckConstraint("quantity > 0", name="ck_cart_items_quantity_positive"),
    )

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, nullable=True, index=True)
    session_id = Column(String(255), nullable=True, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False)

    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(10, 2), nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    product = relationship("Product")


# ============================================================================
# ORDER MODEL
# ============================================================================

class Order(Base):
    """
    Customer orders.

    Created once per successful checkout with status and payment_status
    "pending". Amount columns keep four decimal places so the unrounded
    8% tax survives the round trip and
    total_amount == subtotal + tax_amount + shipping_amount holds exactly.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(50), unique=True, nullable=False, index=True)
    user_id = Column(Integer, nullable=True, index=True)  # NULL for guest checkout

    status = Column(String(20), default="pending", nullable=False, index=True)
    payment_status = Column(String(20), default="pending", nullable=False)
    payment_method = Column(String(50), nullable=True)
    payment_id = Column(String(255), nullable=True)

    subtotal = Column(Numeric(12, 4), nullable=False)
    tax_amount = Column(Numeric(12, 4), nullable=False, default=0)
    shipping_amount = Column(Numeric(12, 4), nullable=False, default=0)
    total_amount = Column(Numeric(12, 4), nullable=False)
    currency = Column(String(3), default="USD", nullable=False)

    shipping_address = Column(JSON, nullable=True)
    billing_address = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


# ============================================================================
# ORDER ITEM MODEL
# ============================================================================

class OrderItem(Base):
    """
    A purchased line, frozen at checkout time.

    product_name, unit_price and product_snapshot are copies, so order
    history still renders after the product is renamed or repriced.
    The product_id link is for reference only.
    """
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)

    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=False, index=True)

    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    product_snapshot = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    order = relationship("Order", back_populates="items")
    product = relationship("Product", back_populates="order_items")
