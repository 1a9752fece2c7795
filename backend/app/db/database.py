# backend/app/db/database.py
"""
Database Configuration

SQLAlchemy engine, session factory, and base class configuration.
"""
from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings
from app.core.logger import logger

# ============================================================================
# SQLAlchemy Configuration
# ============================================================================

if settings.DATABASE_URL.startswith("sqlite"):
    # Local runs and the test-suite; one shared connection for in-memory databases
    engine = create_engine(
        settings.DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
else:
    engine = create_engine(
        settings.DATABASE_URL,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# ============================================================================
# Dependency Injection
# ============================================================================


def get_db():
    """
    FastAPI dependency for database sessions.

    Usage:
        @router.get("/items/")
        def read_items(db: Session = Depends(get_db)):
            return db.query(Item).all()
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error: %s", e)
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """
    Create all tables. Development and tests only; production schema
    (including the vector search functions) is managed in backend/database/.
    """
    from app.db import models  # noqa: F401  registers the mappers

    logger.info("Initializing database...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized successfully")
