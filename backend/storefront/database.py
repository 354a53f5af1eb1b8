"""
Database Configuration
======================

This module sets up:
1. SQLAlchemy engine (connection to PostgreSQL, or SQLite locally)
2. SessionLocal (database session factory)
3. Base (declarative base for models)
4. get_db (per-request session dependency for FastAPI)

Key Concepts:
- Engine: The "pool" of database connections
- Session: A "conversation" with the database (one request = one session)
- Base: Parent class for all database models
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from storefront import config

# ============================================================================
# SQLAlchemy ENGINE
# ============================================================================
# - pool_pre_ping=True
#   Tests connections before using them. If the database restarted,
#   SQLAlchemy reconnects instead of failing the request.
#
# - connect_args (SQLite only)
#   check_same_thread=False lets the pool hand a connection to whichever
#   worker thread FastAPI runs the request on.
#   timeout makes a writer wait for the database lock instead of failing
#   immediately when another checkout is committing.


def build_engine(url: str, echo: bool = False) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": config.DB_LOCK_TIMEOUT}

    return create_engine(
        url,
        connect_args=connect_args,
        pool_pre_ping=True,
        echo=echo,
    )


engine = build_engine(config.DATABASE_URL, echo=config.SQL_ECHO)

# ============================================================================
# SESSION FACTORY
# ============================================================================
# SessionLocal is a FACTORY, not a session itself.
# Sessions are NOT thread-safe, so each HTTP request gets its own.
#
# - autocommit=False: nothing is written until session.commit()
# - autoflush=False: we decide when pending objects are flushed
# - expire_on_commit=False: response models can read attributes after commit

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    expire_on_commit=False,
    bind=engine
)

# ============================================================================
# DECLARATIVE BASE
# ============================================================================

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None) -> None:
    """Create all tables that don't exist yet."""
    # Models must be imported so they register on Base.metadata
    from storefront import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
