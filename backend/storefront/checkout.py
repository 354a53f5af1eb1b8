"""
Checkout Engine
===============

Turns a cart into an order in one database transaction:

    load cart → pre-check stock → compute totals
    → INSERT order + items → conditional stock decrements → clear cart
    → COMMIT

Either all four writes land or none do. The stock pre-check only lets us
fail early with a helpful message; the real guarantee is
crud.decrement_stock, which refuses to take stock below zero even when
another checkout got there between our pre-check and our UPDATE.

A StockConflict becomes InsufficientStockError for the caller. Nothing is
retried here.
"""

import logging
import secrets
import string
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront import crud, models, schemas
from storefront.exceptions import EmptyCartError, InsufficientStockError, StockConflict, StorageFault
from storefront.telemetry import (
    checkout_duration_seconds,
    orders_total,
    revenue_total,
    stock_conflicts_total,
    tracer,
)

logger = logging.getLogger(__name__)

FREE_SHIPPING_THRESHOLD = Decimal("100")
FLAT_SHIPPING = Decimal("9.99")
TAX_RATE = Decimal("0.08")

ORDER_NUMBER_ATTEMPTS = 5
_SUFFIX_ALPHABET = string.digits + string.ascii_uppercase


# ============================================================================
# TOTALS
# ============================================================================

@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping: Decimal
    tax: Decimal
    total: Decimal


def calculate_totals(subtotal: Decimal) -> Totals:
    """
    Shipping and tax for a given subtotal.

    Shipping is free strictly above $100, otherwise a flat $9.99.
    Tax is a flat 8% of the subtotal and is not rounded.
    """
    subtotal = Decimal(subtotal)
    shipping = Decimal("0") if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING
    tax = subtotal * TAX_RATE
    return Totals(subtotal=subtotal, shipping=shipping, tax=tax, total=subtotal + shipping + tax)


def cart_totals(items: Iterable[models.CartItem]) -> Totals:
    # Cart price is the one captured at add time, not today's catalog price
    subtotal = sum((Decimal(item.price) * item.quantity for item in items), Decimal("0"))
    return calculate_totals(subtotal)


def order_totals(items: Iterable[models.OrderItem]) -> Totals:
    """Recompute an order's amounts from its item snapshots."""
    subtotal = sum((Decimal(item.unit_price) * item.quantity for item in items), Decimal("0"))
    return calculate_totals(subtotal)


# ============================================================================
# ORDER NUMBERS
# ============================================================================

def generate_order_number() -> str:
    """ORDER-<epoch millis>-<6 random base-36 chars>, e.g. ORDER-1718031234567-K3F9QZ."""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORDER-{int(time.time() * 1000)}-{suffix}"


def unique_order_number(db: Session, generate: Callable[[], str] = generate_order_number) -> str:
    """
    Draw order numbers until one isn't taken.

    The unique index on orders.order_number still rejects a duplicate that
    sneaks in between this check and our INSERT; that surfaces as a
    StorageFault and the whole checkout rolls back.
    """
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        candidate = generate()
        if not crud.order_number_exists(db, candidate):
            return candidate
        logger.warning("Order number collision, regenerating", extra={"order_number": candidate})
    raise StorageFault("Could not allocate a unique order number")


# ============================================================================
# STOCK PRE-CHECK
# ============================================================================

def check_stock(db: Session, items: Sequence[models.CartItem]) -> Dict[int, models.Product]:
    """
    Check every cart line against current stock. Read-only.

    Returns:
        The live Product for each line, keyed by product id

    Raises:
        InsufficientStockError: for the first line whose product is gone,
            inactive, or short. available is 0 for missing products.
    """
    products = {}
    for item in items:
        product = crud.get_active_product(db, item.product_id)
        if product is None:
            raise InsufficientStockError(item.product_id, item.quantity, available=0)
        if product.stock_quantity < item.quantity:
            raise InsufficientStockError(
                item.product_id,
                item.quantity,
                available=product.stock_quantity,
                product_name=product.name,
            )
        products[product.id] = product
    return products


# ============================================================================
# CHECKOUT
# ============================================================================

def _order_item(item: models.CartItem, product: models.Product) -> models.OrderItem:
    unit_price = Decimal(item.price)
    return models.OrderItem(
        product_id=item.product_id,
        product_name=product.name,
        quantity=item.quantity,
        unit_price=unit_price,
        total_price=unit_price * item.quantity,
        product_snapshot={
            "name": product.name,
            "price": str(unit_price),
            "image_url": product.image_url,
        },
    )


def _take_stock(db: Session, items: Sequence[models.CartItem], products: Dict[int, models.Product]) -> None:
    # Ascending product id, so overlapping checkouts lock rows in the same order
    for item in sorted(items, key=lambda line: line.product_id):
        try:
            crud.decrement_stock(db, item.product_id, item.quantity)
        except StockConflict as conflict:
            stock_conflicts_total.inc()
            product = products.get(item.product_id)
            raise InsufficientStockError(
                item.product_id,
                item.quantity,
                available=crud.get_sellable_stock(db, item.product_id),
                product_name=product.name if product else None,
            ) from conflict


def process_checkout(
    db: Session,
    owner: crud.CartOwner,
    shipping_address: Any,
    billing_address: Any,
    payment_method: str = "demo",
    notes: Optional[str] = None,
    order_number_factory: Callable[[], str] = generate_order_number,
) -> models.Order:
    """
    Place an order for everything in the owner's cart.

    Args:
        db: Database session; this function commits or rolls it back
        owner: Whose cart to check out
        shipping_address / billing_address: dicts or schemas.Address
        payment_method: stripe, paypal or demo (recorded, never charged)
        notes: Optional customer note
        order_number_factory: Source of order number candidates

    Returns:
        The committed Order with status and payment_status "pending"

    Raises:
        ValidationError: bad addresses or payment method
        EmptyCartError: nothing in the cart
        InsufficientStockError: a line can't be filled, at pre-check or
            because a concurrent checkout won the conditional decrement
        StorageFault: the database failed; nothing was written
    """
    request = schemas.parse_checkout({
        "shipping_address": shipping_address,
        "billing_address": billing_address,
        "payment_method": payment_method,
        "notes": notes,
    })

    start_time = time.time()
    with tracer.start_as_current_span("checkout") as span:
        span.set_attribute("checkout.owner", owner.key)
        span.set_attribute("checkout.payment_method", request.payment_method)

        try:
            with tracer.start_as_current_span("load_cart"):
                cart_items = crud.get_cart_items(db, owner)
            if not cart_items:
                raise EmptyCartError()
            span.set_attribute("checkout.item_count", len(cart_items))

            with tracer.start_as_current_span("validate_stock"):
                products = check_stock(db, cart_items)

            totals = cart_totals(cart_items)
            span.set_attribute("checkout.total_amount", float(totals.total))

            with tracer.start_as_current_span("save_order"):
                order = models.Order(
                    order_number=unique_order_number(db, order_number_factory),
                    user_id=owner.user_id,
                    status="pending",
                    payment_status="pending",
                    payment_method=request.payment_method,
                    subtotal=totals.subtotal,
                    tax_amount=totals.tax,
                    shipping_amount=totals.shipping,
                    total_amount=totals.total,
                    currency="USD",
                    shipping_address=request.shipping_address.model_dump(),
                    billing_address=request.billing_address.model_dump(),
                    notes=request.notes,
                )
                items = [_order_item(item, products[item.product_id]) for item in cart_items]
                crud.create_order(db, order, items)

            with tracer.start_as_current_span("update_inventory"):
                _take_stock(db, cart_items, products)

            with tracer.start_as_current_span("clear_cart"):
                crud.clear_cart(db, owner)

            # Load server defaults (created_at) before the commit
            db.refresh(order)
            db.commit()

        except EmptyCartError:
            db.rollback()
            orders_total.labels(status='empty_cart').inc()
            raise
        except InsufficientStockError as exc:
            db.rollback()
            orders_total.labels(status='insufficient_stock').inc()
            span.add_event("insufficient_stock", {
                "product_id": exc.product_id,
                "requested": exc.requested,
                "available": -1 if exc.available is None else exc.available,
            })
            logger.warning("Checkout rejected: %s", exc.message, extra={
                "owner": owner.key,
                "product_id": exc.product_id,
                "requested": exc.requested,
                "available": exc.available,
            })
            raise
        except SQLAlchemyError as exc:
            db.rollback()
            span.record_exception(exc)
            span.set_attribute("error", True)
            orders_total.labels(status='error').inc()
            logger.exception("Checkout failed, transaction rolled back", extra={"owner": owner.key})
            raise StorageFault() from exc
        except Exception as exc:
            db.rollback()
            span.record_exception(exc)
            orders_total.labels(status='error').inc()
            raise

        duration = time.time() - start_time
        checkout_duration_seconds.observe(duration)
        orders_total.labels(status='success').inc()
        revenue_total.inc(float(order.total_amount))

        span.set_attribute("order.id", order.id)
        span.add_event("order_created", {
            "order_id": order.id,
            "order_number": order.order_number,
            "duration_seconds": duration,
        })
        logger.info("Order created", extra={
            "order_id": order.id,
            "order_number": order.order_number,
            "owner": owner.key,
            "total_amount": str(order.total_amount),
        })
        return order
