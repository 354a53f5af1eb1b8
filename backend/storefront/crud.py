"""
CRUD Operations
===============

Data-access layer for the catalog, cart and order tables.

Pattern:
def operation_name(db: Session, parameters) -> ReturnType:
    # Database operations
    return result

Transactions:
    Stand-alone operations (create_product, add_cart_item, ...) commit
    their own work. The three operations the checkout engine strings
    together, decrement_stock, clear_cart and create_order, only flush:
    the caller commits or rolls back the whole unit.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, selectinload

from storefront import models, schemas
from storefront.exceptions import StockConflict, ValidationError

# ============================================================================
# CATEGORY OPERATIONS
# ============================================================================

def get_categories(db: Session) -> List[models.Category]:
    """Active categories, ordered by name."""
    return (
        db.query(models.Category)
        .filter(models.Category.is_active.is_(True))
        .order_by(models.Category.name)
        .all()
    )


def get_category_by_slug(db: Session, slug: str) -> Optional[models.Category]:
    return (
        db.query(models.Category)
        .filter(models.Category.slug == slug, models.Category.is_active.is_(True))
        .first()
    )


# ============================================================================
# PRODUCT (CATALOG) OPERATIONS
# ============================================================================

def get_product(db: Session, product_id: int) -> Optional[models.Product]:
    """
    Retrieve a single product by ID, whatever its status.

    SQL generated:
        SELECT * FROM products WHERE id = product_id LIMIT 1
    """
    return (
        db.query(models.Product)
        .populate_existing()
        .filter(models.Product.id == product_id)
        .first()
    )


def get_active_product(db: Session, product_id: int) -> Optional[models.Product]:
    """
    Retrieve a product that can be sold (status = 'active').

    Cart and checkout both go through this lookup, so an inactive product
    behaves exactly like a missing one.
    """
    return (
        db.query(models.Product)
        .populate_existing()
        .filter(models.Product.id == product_id, models.Product.status == "active")
        .first()
    )


def get_stock(db: Session, product_id: int) -> Optional[int]:
    """
    Read the current stock straight from the table.

    Selecting the column (not the entity) bypasses the session identity
    map, so this reflects decrements committed by other sessions.
    """
    return db.scalar(
        select(models.Product.stock_quantity).where(models.Product.id == product_id)
    )


def get_sellable_stock(db: Session, product_id: int) -> int:
    """
    Units a checkout could still buy: the stock of an active product,
    0 for a product that is missing or no longer active.
    """
    stock = db.scalar(
        select(models.Product.stock_quantity).where(
            models.Product.id == product_id,
            models.Product.status == "active",
        )
    )
    return stock or 0


def get_products(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[Decimal] = None,
    max_price: Optional[Decimal] = None,
    status: Optional[str] = "active",
) -> List[models.Product]:
    """
    Retrieve products with optional filters and pagination.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
        search: Case-insensitive match on name or description
        category: Category slug; "all" or None means every category
        min_price / max_price: Inclusive price bounds
        status: Only products with this status (None = all)

    Returns:
        List of Product objects ordered by name
    """
    query = db.query(models.Product)

    if status:
        query = query.filter(models.Product.status == status)
    if category and category != "all":
        query = query.join(models.Product.category).filter(models.Category.slug == category)
    if search:
        term = f"%{search.strip()}%"
        query = query.filter(
            models.Product.name.ilike(term) | models.Product.description.ilike(term)
        )
    if min_price is not None:
        query = query.filter(models.Product.price >= min_price)
    if max_price is not None:
        query = query.filter(models.Product.price <= max_price)

    return query.order_by(models.Product.name).offset(skip).limit(limit).all()


def create_product(db: Session, product: schemas.ProductCreate) -> models.Product:
    """
    Create a new product.

    Process:
        1. Convert Pydantic schema → SQLAlchemy model
        2. Add to session (in-memory)
        3. Commit to database (persist)
        4. Refresh to get DB-generated fields (id, timestamps)
    """
    db_product = models.Product(**product.model_dump())
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


def update_product(
    db: Session,
    product_id: int,
    product_update: schemas.ProductUpdate
) -> Optional[models.Product]:
    """
    Partial update of descriptive fields.

    Stock is deliberately not updatable here; use restock or
    decrement_stock.
    """
    db_product = get_product(db, product_id)
    if db_product is None:
        return None

    # exclude_unset=True: only fields the client actually sent
    for field, value in product_update.model_dump(exclude_unset=True).items():
        setattr(db_product, field, value)

    db.commit()
    db.refresh(db_product)
    return db_product


def decrement_stock(db: Session, product_id: int, amount: int) -> None:
    """
    Atomically take `amount` units out of stock, or fail.

    This is the concurrency primitive checkout relies on. The comparison
    and the subtraction happen in one statement, so two checkouts racing
    for the last unit can't both succeed: the database serializes the
    UPDATEs on the row and the loser matches zero rows.

    Does not commit.

    Raises:
        StockConflict: product missing, inactive, or fewer than `amount` left

    SQL generated:
        UPDATE products
        SET stock_quantity = stock_quantity - amount
        WHERE id = ? AND status = 'active' AND stock_quantity >= amount
    """
    if amount <= 0:
        raise ValueError(f"amount must be positive, got {amount}")

    result = db.execute(
        update(models.Product)
        .where(
            models.Product.id == product_id,
            models.Product.status == "active",
            models.Product.stock_quantity >= amount,
        )
        .values(stock_quantity=models.Product.stock_quantity - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise StockConflict(product_id, amount)


def restock(db: Session, product_id: int, amount: int) -> Optional[models.Product]:
    """
    Add `amount` units to stock.

    Returns:
        Updated Product, None if not found
    """
    if amount <= 0:
        raise ValueError(f"amount must be positive, got {amount}")

    result = db.execute(
        update(models.Product)
        .where(models.Product.id == product_id)
        .values(stock_quantity=models.Product.stock_quantity + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        return None

    db.commit()
    return get_product(db, product_id)


# ============================================================================
# CART OPERATIONS
# ============================================================================

@dataclass(frozen=True)
class CartOwner:
    """
    Key a cart is stored under.

    A signed-in user's id wins; the session id is only used for guests.
    """
    user_id: Optional[int] = None
    session_id: Optional[str] = None

    def __post_init__(self):
        if self.user_id is None and not self.session_id:
            raise ValidationError(["owner: a user id or session id is required"])

    @property
    def key(self) -> str:
        if self.user_id is not None:
            return f"user:{self.user_id}"
        return f"session:{self.session_id}"

    def clause(self):
        if self.user_id is not None:
            return models.CartItem.user_id == self.user_id
        return models.CartItem.session_id == self.session_id

    def columns(self) -> dict:
        if self.user_id is not None:
            return {"user_id": self.user_id, "session_id": None}
        return {"user_id": None, "session_id": self.session_id}


def get_cart_items(db: Session, owner: CartOwner) -> List[models.CartItem]:
    """
    All lines in the owner's cart, oldest first, with products loaded.

    SQL generated:
        SELECT ci.*, p.* FROM cart_items ci
        LEFT JOIN products p ON ci.product_id = p.id
        WHERE ci.session_id = ?  -- or ci.user_id = ?
        ORDER BY ci.id
    """
    return (
        db.query(models.CartItem)
        .options(joinedload(models.CartItem.product))
        .filter(owner.clause())
        .order_by(models.CartItem.id)
        .all()
    )


def _increment_cart_line(db: Session, owner: CartOwner, product_id: int, quantity: int) -> int:
    """Add to an existing line. Returns the number of lines updated (0 or 1)."""
    result = db.execute(
        update(models.CartItem)
        .where(owner.clause(), models.CartItem.product_id == product_id)
        .values(quantity=models.CartItem.quantity + quantity, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def add_cart_item(
    db: Session,
    owner: CartOwner,
    product: models.Product,
    quantity: int
) -> models.CartItem:
    """
    Put `quantity` units of `product` in the owner's cart.

    If the product is already in the cart its quantity goes up and the
    price captured on the first add is kept. The increment is a single
    UPDATE so two concurrent adds don't lose one another.

    Two concurrent first adds can both find no line and both INSERT; the
    unique (owner, product) constraint rejects the second, which then
    rolls back and increments the line the first one created.
    """
    if _increment_cart_line(db, owner, product.id, quantity) == 0:
        db_item = models.CartItem(
            product_id=product.id,
            quantity=quantity,
            price=product.price,
            **owner.columns()
        )
        db.add(db_item)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            _increment_cart_line(db, owner, product.id, quantity)
            db.commit()
        else:
            db.refresh(db_item)
            return db_item
    else:
        db.commit()

    db_item = (
        db.query(models.CartItem)
        .filter(owner.clause(), models.CartItem.product_id == product.id)
        .first()
    )
    db.refresh(db_item)
    return db_item


def update_cart_item(db: Session, owner: CartOwner, item_id: int, quantity: int) -> bool:
    """
    Set a line's quantity. Zero (or less) removes the line.

    Returns:
        False if the line doesn't exist in this owner's cart
    """
    if quantity <= 0:
        return remove_cart_item(db, owner, item_id)

    result = db.execute(
        update(models.CartItem)
        .where(models.CartItem.id == item_id, owner.clause())
        .values(quantity=quantity, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount > 0


def remove_cart_item(db: Session, owner: CartOwner, item_id: int) -> bool:
    result = db.execute(
        delete(models.CartItem)
        .where(models.CartItem.id == item_id, owner.clause())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount > 0


def clear_cart(db: Session, owner: CartOwner) -> int:
    """
    Remove every line in the owner's cart with one DELETE.

    A single statement means a concurrent reader sees either the whole
    cart or none of it. Does not commit.

    Returns:
        Number of lines removed
    """
    result = db.execute(
        delete(models.CartItem)
        .where(owner.clause())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def cart_item_count(db: Session, owner: CartOwner) -> int:
    """Total units (sum of quantities) in the owner's cart."""
    total = db.scalar(
        select(func.coalesce(func.sum(models.CartItem.quantity), 0)).where(owner.clause())
    )
    return int(total or 0)


# ============================================================================
# ORDER OPERATIONS
# ============================================================================

def create_order(
    db: Session,
    order: models.Order,
    items: List[models.OrderItem]
) -> models.Order:
    """
    Stage an order and its items.

    flush() sends the INSERTs so order.id is populated, but the
    transaction stays open. The checkout engine commits once stock and
    cart are updated too.

    SQL generated (inside the caller's transaction):
        INSERT INTO orders (...) VALUES (...);
        INSERT INTO order_items (order_id, ...) VALUES (?, ...);  -- per item
    """
    order.items = list(items)
    db.add(order)
    db.flush()
    return order


def order_number_exists(db: Session, order_number: str) -> bool:
    return db.scalar(
        select(func.count(models.Order.id)).where(models.Order.order_number == order_number)
    ) > 0


def get_order(db: Session, order_id: int) -> Optional[models.Order]:
    """Retrieve a single order by ID with its items."""
    return (
        db.query(models.Order)
        .options(selectinload(models.Order.items))
        .filter(models.Order.id == order_id)
        .first()
    )


def get_order_by_number(db: Session, order_number: str) -> Optional[models.Order]:
    return (
        db.query(models.Order)
        .options(selectinload(models.Order.items))
        .filter(models.Order.order_number == order_number)
        .first()
    )


def get_orders(
    db: Session,
    user_id: Optional[int] = None,
    skip: int = 0,
    limit: int = 100
) -> List[models.Order]:
    """Orders newest first, optionally only one user's."""
    query = db.query(models.Order)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    return (
        query.order_by(models.Order.created_at.desc(), models.Order.id.desc())
        .offset(skip)
        .limit(limit)
        .all()
    )


def update_order_status(db: Session, order_id: int, status: str) -> Optional[models.Order]:
    """
    Update fulfilment status.

    Returns:
        Updated Order, None if not found
    """
    db_order = get_order(db, order_id)
    if db_order is None:
        return None

    db_order.status = status
    db.commit()
    db.refresh(db_order)
    return db_order


def update_payment_status(
    db: Session,
    order_id: int,
    payment_status: Optional[str] = None,
    payment_id: Optional[str] = None
) -> Optional[models.Order]:
    """
    Record payment progress. Either field may be given on its own.

    Returns:
        Updated Order, None if not found
    """
    db_order = get_order(db, order_id)
    if db_order is None:
        return None

    if payment_status is not None:
        db_order.payment_status = payment_status
    if payment_id is not None:
        db_order.payment_id = payment_id
    db.commit()
    db.refresh(db_order)
    return db_order


def order_stats(db: Session) -> schemas.OrderStats:
    """
    Aggregate counts over all orders.

    SQL generated:
        SELECT COUNT(*), COALESCE(SUM(total_amount), 0),
               COALESCE(AVG(total_amount), 0),
               SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END)
        FROM orders
    """
    total_orders = db.scalar(select(func.count(models.Order.id))) or 0
    total_revenue = db.scalar(select(func.coalesce(func.sum(models.Order.total_amount), 0)))
    pending_orders = db.scalar(
        select(func.count(models.Order.id)).where(models.Order.status == "pending")
    ) or 0

    revenue = Decimal(str(total_revenue or 0))
    average = revenue / total_orders if total_orders else Decimal("0")
    return schemas.OrderStats(
        total_orders=total_orders,
        total_revenue=revenue,
        average_order_value=average,
        pending_orders=pending_orders,
    )
