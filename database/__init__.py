"""
Database layer — routing lookup and audit persistence.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (for development/testing)

Quick start:
  from database import create_stores, init_db
  await init_db()
  resolver, recorder = create_stores()
  target = await resolver.resolve("42")
"""
from database.models import Base, SellerRow, TransferLogRow
from database.session import get_engine, get_session, init_db, close_db
from database.routing import RoutingResolver, SqlRoutingResolver, InMemoryRoutingResolver
from database.audit import AuditRecorder, SqlAuditRecorder, InMemoryAuditRecorder
from database.store_factory import create_stores

__all__ = [
    # ORM models
    "Base", "SellerRow", "TransferLogRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Routing
    "RoutingResolver", "SqlRoutingResolver", "InMemoryRoutingResolver",
    # Audit
    "AuditRecorder", "SqlAuditRecorder", "InMemoryAuditRecorder",
    # Factory
    "create_stores",
]
