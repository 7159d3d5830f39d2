"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, SQLite.

Tables:
  - sellers       routing table; one row per downstream seller endpoint
  - transfer_log  audit log; one row per forwarding attempt, append-only
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    String, Integer, Boolean, DateTime, Text, Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Sellers (routing table)
# ──────────────────────────────────────────────────────────────

class SellerRow(Base):
    __tablename__ = "sellers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    vkn: Mapped[str] = mapped_column(String(32), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    ip_address: Mapped[str] = mapped_column(String(512), nullable=False)
    port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    api_key: Mapped[str] = mapped_column("x-api-key", String(512), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_sellers_active", "id", "is_active"),
    )


# ──────────────────────────────────────────────────────────────
#  Transfer log (audit)
# ──────────────────────────────────────────────────────────────

class TransferLogRow(Base):
    __tablename__ = "transfer_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(128), default="")
    request: Mapped[Any] = mapped_column(JSON, default=dict)
    transaction_id: Mapped[str] = mapped_column(String(256), default="")
    error_message: Mapped[str] = mapped_column(Text, default="")
    response_message: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_transfer_log_transaction", "transaction_id"),
        Index("ix_transfer_log_created", "created_at"),
    )
