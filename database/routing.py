"""
Routing resolvers — map a seller id to its downstream endpoint.

Implementations:
  - SqlRoutingResolver      (sellers table via SQLAlchemy)
  - InMemoryRoutingResolver (dict-based, for development/testing)
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod
from typing import Any, Optional

from sqlalchemy import select

from database.models import SellerRow
from database.session import get_session
from models.schemas import RoutingTarget

logger = structlog.get_logger()


class RoutingResolver(ABC):
    """Interface that all routing backends must implement."""

    @abstractmethod
    async def resolve(self, routing_key: Any) -> Optional[RoutingTarget]:
        """Return the active target for routing_key, or None if not found/inactive."""
        ...


class SqlRoutingResolver(RoutingResolver):
    """Reads active rows from the sellers table."""

    async def resolve(self, routing_key: Any) -> Optional[RoutingTarget]:
        try:
            seller_id = int(routing_key)
        except (TypeError, ValueError):
            logger.warning("routing_key_not_numeric", routing_key=routing_key)
            return None

        async with get_session() as db:
            stmt = (
                select(SellerRow)
                .where(SellerRow.id == seller_id, SellerRow.is_active.is_(True))
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_target(row) if row else None

    @staticmethod
    def _row_to_target(row: SellerRow) -> RoutingTarget:
        return RoutingTarget(
            seller_id=str(row.id),
            address=row.ip_address,
            port=row.port,
            api_key=row.api_key or "",
            active=bool(row.is_active),
        )


class InMemoryRoutingResolver(RoutingResolver):
    """Dict-backed resolver. Inactive targets are stored but never resolved."""

    def __init__(self, targets: list[RoutingTarget] = None):
        self._targets: dict[str, RoutingTarget] = {}
        for target in targets or []:
            self.add(target)

    def add(self, target: RoutingTarget) -> None:
        self._targets[str(target.seller_id)] = target

    def remove(self, seller_id: Any) -> None:
        self._targets.pop(str(seller_id), None)

    async def resolve(self, routing_key: Any) -> Optional[RoutingTarget]:
        target = self._targets.get(str(routing_key))
        if target is None or not target.active:
            return None
        return target
