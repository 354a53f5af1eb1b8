"""
Storefront Backend with OpenTelemetry Instrumentation
"""

import uuid
from decimal import Decimal
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.orm import Session

from storefront import config, crud, models, schemas
from storefront.checkout import cart_totals, process_checkout
from storefront.database import SessionLocal, get_db, init_db
from storefront.exceptions import InsufficientStockError, NotFoundError, StorefrontError, ValidationError
from storefront.logging_config import RequestLoggingMiddleware, setup_logging
from storefront.seed import seed_catalog
from storefront.telemetry import cart_items_added_total, product_searches_total, tracer

logger = setup_logging(config.SERVICE_NAME, config.LOG_LEVEL)

app = FastAPI(
    title="Storefront API",
    description="Catalog, cart, checkout and orders for the demo storefront",
    version="1.0.0"
)

app.add_middleware(RequestLoggingMiddleware, service_name=config.SERVICE_NAME)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = ValidationError(schemas.error_details(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# --- Dependencies ---

def get_cart_owner(
    x_session_id: Optional[str] = Header(None),
    x_user_id: Optional[int] = Header(None),
) -> crud.CartOwner:
    return crud.CartOwner(user_id=x_user_id, session_id=x_session_id)


def get_or_create_cart_owner(
    x_session_id: Optional[str] = Header(None),
    x_user_id: Optional[int] = Header(None),
) -> crud.CartOwner:
    # First add-to-cart from a new visitor starts a session
    if x_user_id is None and not x_session_id:
        x_session_id = f"session_{uuid.uuid4().hex}"
    return crud.CartOwner(user_id=x_user_id, session_id=x_session_id)


def _cart_line(item: models.CartItem) -> schemas.CartLine:
    price = Decimal(item.price)
    return schemas.CartLine(
        id=item.id,
        product_id=item.product_id,
        quantity=item.quantity,
        price=price,
        created_at=item.created_at,
        product_name=item.product.name,
        image_url=item.product.image_url,
        line_total=price * item.quantity,
    )


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": config.SERVICE_NAME}


@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Categories
@app.get("/categories/", response_model=List[schemas.Category])
def list_categories(db: Session = Depends(get_db)):
    return crud.get_categories(db)


# Products
@app.get("/products/", response_model=List[schemas.Product])
def list_products(
    skip: int = 0,
    limit: int = 100,
    search: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[Decimal] = None,
    max_price: Optional[Decimal] = None,
    db: Session = Depends(get_db),
):
    if search:
        product_searches_total.inc()
    return crud.get_products(
        db,
        skip=skip,
        limit=limit,
        search=search,
        category=category,
        min_price=min_price,
        max_price=max_price,
    )


@app.post("/products/", response_model=schemas.Product, status_code=201)
def create_product(product: schemas.ProductCreate, db: Session = Depends(get_db)):
    return crud.create_product(db, product)


@app.get("/products/{product_id}", response_model=schemas.Product)
def get_product(product_id: int, db: Session = Depends(get_db)):
    product = crud.get_active_product(db, product_id)
    if product is None:
        raise NotFoundError("Product not found")
    return product


# Cart
@app.get("/cart", response_model=schemas.Cart)
def get_cart(owner: crud.CartOwner = Depends(get_cart_owner), db: Session = Depends(get_db)):
    items = crud.get_cart_items(db, owner)
    return schemas.Cart(
        items=[_cart_line(item) for item in items],
        count=len(items),
        subtotal=cart_totals(items).subtotal,
        session_id=owner.session_id,
        user_id=owner.user_id,
    )


@app.post("/cart/items", response_model=schemas.CartMutation)
def add_to_cart(
    item: schemas.CartItemAdd,
    owner: crud.CartOwner = Depends(get_or_create_cart_owner),
    db: Session = Depends(get_db),
):
    with tracer.start_as_current_span("add_to_cart") as span:
        span.set_attribute("cart.owner", owner.key)
        span.set_attribute("cart.product_id", item.product_id)

        product = crud.get_active_product(db, item.product_id)
        if product is None:
            raise NotFoundError("Product not found")

        # Advisory only; checkout re-checks under the conditional decrement
        if product.stock_quantity < item.quantity:
            raise InsufficientStockError(
                product.id, item.quantity, available=product.stock_quantity, product_name=product.name
            )

        cart_item = crud.add_cart_item(db, owner, product, item.quantity)
        cart_items_added_total.inc(item.quantity)

    return schemas.CartMutation(
        message="Product added to cart successfully",
        cart_item=schemas.CartItem.model_validate(cart_item),
        cart_count=crud.cart_item_count(db, owner),
        session_id=owner.session_id,
    )


@app.put("/cart/items/{item_id}", response_model=schemas.CartMutation)
def update_cart_item(
    item_id: int,
    update: schemas.CartItemUpdate,
    owner: crud.CartOwner = Depends(get_cart_owner),
    db: Session = Depends(get_db),
):
    if not crud.update_cart_item(db, owner, item_id, update.quantity):
        raise NotFoundError("Item not found or could not be updated")
    return schemas.CartMutation(
        message="Cart updated",
        cart_count=crud.cart_item_count(db, owner),
        session_id=owner.session_id,
    )


@app.delete("/cart/items/{item_id}", response_model=schemas.CartMutation)
def remove_cart_item(
    item_id: int,
    owner: crud.CartOwner = Depends(get_cart_owner),
    db: Session = Depends(get_db),
):
    if not crud.remove_cart_item(db, owner, item_id):
        raise NotFoundError("Item not found or could not be removed")
    return schemas.CartMutation(
        message="Item removed from cart",
        cart_count=crud.cart_item_count(db, owner),
        session_id=owner.session_id,
    )


@app.delete("/cart", response_model=schemas.CartMutation)
def clear_cart(owner: crud.CartOwner = Depends(get_cart_owner), db: Session = Depends(get_db)):
    crud.clear_cart(db, owner)
    db.commit()
    return schemas.CartMutation(message="Cart cleared successfully", cart_count=0, session_id=owner.session_id)


# Checkout
@app.post("/checkout", response_model=schemas.CheckoutResponse, status_code=201)
def checkout(
    request: schemas.CheckoutRequest,
    x_session_id: Optional[str] = Header(None),
    x_user_id: Optional[int] = Header(None),
    db: Session = Depends(get_db),
):
    owner = crud.CartOwner(
        user_id=request.user_id if request.user_id is not None else x_user_id,
        session_id=request.session_id or x_session_id,
    )
    order = process_checkout(
        db,
        owner,
        shipping_address=request.shipping_address,
        billing_address=request.billing_address,
        payment_method=request.payment_method,
        notes=request.notes,
    )
    return schemas.CheckoutResponse(order=schemas.OrderSummary.model_validate(order))


# Orders
@app.get("/orders/", response_model=List[schemas.Order])
def list_orders(
    user_id: Optional[int] = None,
    order_number: Optional[str] = None,
    skip: int = 0,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    if order_number:
        order = crud.get_order_by_number(db, order_number)
        return [order] if order else []
    return crud.get_orders(db, user_id=user_id, skip=skip, limit=limit)


@app.get("/orders/stats", response_model=schemas.OrderStats)
def get_order_stats(db: Session = Depends(get_db)):
    return crud.order_stats(db)


@app.get("/orders/{order_id}", response_model=schemas.OrderDetail)
def get_order(order_id: int, db: Session = Depends(get_db)):
    order = crud.get_order(db, order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


@app.put("/orders/{order_id}", response_model=schemas.Order)
def update_order(order_id: int, update: schemas.OrderUpdate, db: Session = Depends(get_db)):
    if crud.get_order(db, order_id) is None:
        raise NotFoundError("Order not found")

    if update.status:
        crud.update_order_status(db, order_id, update.status)
    if update.payment_status or update.payment_id:
        crud.update_payment_status(db, order_id, update.payment_status, update.payment_id)

    return crud.get_order(db, order_id)


FastAPIInstrumentor.instrument_app(app)


@app.on_event("startup")
def startup_event():
    init_db()
    if config.SEED_CATALOG:
        db = SessionLocal()
        try:
            seed_catalog(db)
        finally:
            db.close()
    logger.info("Storefront backend started", extra={"seed_catalog": config.SEED_CATALOG})
