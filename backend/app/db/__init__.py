"""
Database package: engine and session factory, the legal corpus / evidence /
assistant tables, and the request and response schemas served by the API.
"""

from app.db.database import Base, engine, SessionLocal, get_db, init_db
from app.db import models, schemas

__all__ = ["Base", "engine", "SessionLocal", "get_db", "init_db", "models", "schemas"]
