"""Pytest fixtures for storefront tests."""

import os

# Must be set before storefront.database builds its module-level engine
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SEED_CATALOG", "false")

import pytest
from sqlalchemy.orm import sessionmaker

from storefront import crud
from storefront.database import build_engine, init_db
from storefront.seed import seed_catalog

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address1": "12 Analytical Row",
    "city": "London",
    "state": "Greater London",
    "zip_code": "N1 9GU",
    "country": "United Kingdom",
}


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so worker threads each get a real connection."""
    engine = build_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@pytest.fixture
def catalog(session_factory):
    """The demo catalog: product 1 is $199.99 with 50 in stock, product 5 has 15."""
    with session_factory() as db:
        seed_catalog(db)


@pytest.fixture
def db(session_factory, catalog):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fill_cart(session_factory):
    """Put lines straight into a cart, skipping the add-to-cart stock check."""
    def fill(owner, *lines):
        with session_factory() as session:
            for product_id, quantity in lines:
                product = crud.get_product(session, product_id)
                crud.add_cart_item(session, owner, product, quantity)
    return fill


@pytest.fixture
def set_stock(session_factory):
    def set_(product_id, quantity):
        with session_factory() as session:
            product = crud.get_product(session, product_id)
            product.stock_quantity = quantity
            session.commit()
    return set_


@pytest.fixture
def stock_of(session_factory):
    def read(product_id):
        with session_factory() as session:
            return crud.get_stock(session, product_id)
    return read


@pytest.fixture
def address():
    return dict(ADDRESS)
