"""
Demo catalog, inserted once when the tables are empty.
"""

import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from storefront import models

logger = logging.getLogger(__name__)

PLACEHOLDER_IMAGE = "/api/placeholder/300/200"

# (name, slug, description)
CATEGORIES = [
    ("Electronics", "electronics", "Electronic devices and gadgets"),
    ("Home & Kitchen", "home", "Home appliances and kitchen essentials"),
    ("Sports & Fitness", "sports", "Sports equipment and fitness gear"),
]

# (name, slug, description, price, stock, category slug)
CATALOG = [
    ("Wireless Headphones", "wireless-headphones", "High-quality wireless headphones with noise cancellation", "199.99", 50, "electronics"),
    ("Smart Watch", "smart-watch", "Feature-rich smartwatch with health monitoring", "299.99", 30, "electronics"),
    ("Coffee Maker", "coffee-maker", "Automatic coffee maker with programmable settings", "89.99", 25, "home"),
    ("Running Shoes", "running-shoes", "Comfortable running shoes with excellent support", "129.99", 40, "sports"),
    ("Laptop Computer", "laptop-computer", "High-performance laptop for work and gaming", "1299.99", 15, "electronics"),
    ("Kitchen Blender", "kitchen-blender", "Powerful blender for smoothies and food preparation", "79.99", 35, "home"),
    ("Yoga Mat", "yoga-mat", "Non-slip yoga mat for comfortable workouts", "39.99", 60, "sports"),
    ("Smartphone", "smartphone", "Latest smartphone with advanced camera features", "899.99", 20, "electronics"),
    ("Air Fryer", "air-fryer", "Healthy cooking with hot air circulation technology", "149.99", 28, "home"),
    ("Tennis Racket", "tennis-racket", "Professional tennis racket for competitive play", "179.99", 18, "sports"),
]


def seed_categories(db: Session) -> int:
    """Insert the demo categories if there are none yet. Does not commit."""
    if db.scalar(select(func.count(models.Category.id))):
        return 0

    for name, slug, description in CATEGORIES:
        db.add(models.Category(name=name, slug=slug, description=description))
    db.flush()
    return len(CATEGORIES)


def seed_catalog(db: Session) -> int:
    """
    Insert the demo categories and products if there are none yet.

    Returns:
        Number of products inserted (0 if the catalog already had rows)
    """
    categories = seed_categories(db)

    inserted = 0
    if not db.scalar(select(func.count(models.Product.id))):
        category_ids = dict(db.execute(select(models.Category.slug, models.Category.id)).all())
        for name, slug, description, price, stock, category in CATALOG:
            db.add(models.Product(
                name=name,
                slug=slug,
                description=description,
                price=Decimal(price),
                stock_quantity=stock,
                category_id=category_ids.get(category),
                image_url=PLACEHOLDER_IMAGE,
                status="active",
            ))
        inserted = len(CATALOG)
    db.commit()

    logger.info("Seeded catalog", extra={"categories": categories, "products": inserted})
    return inserted
