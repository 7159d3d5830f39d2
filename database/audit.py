"""
Audit recorders — persist one record per forwarding attempt.

Recorders never raise: a failed write is logged as lost and reported
through the return value, so the forwarding outcome is never masked.
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod

from database.models import TransferLogRow
from database.session import get_session
from models.schemas import AuditRecord

logger = structlog.get_logger()


class AuditRecorder(ABC):

    @abstractmethod
    async def record(self, record: AuditRecord) -> bool:
        """Persist the record. Returns False if it was lost."""
        ...


class SqlAuditRecorder(AuditRecorder):
    """Appends rows to the transfer_log table."""

    async def record(self, record: AuditRecord) -> bool:
        try:
            async with get_session() as db:
                db.add(TransferLogRow(
                    title=record.title or "",
                    request=record.request or {},
                    transaction_id=record.correlation_id or "",
                    error_message=record.error_message or "",
                    response_message=record.response_message or "",
                    created_at=record.created_at,
                ))
            return True
        except Exception as e:
            logger.error("audit_record_lost",
                         title=record.title,
                         message_id=record.correlation_id,
                         error=str(e),
                         exc_info=True)
            return False


class InMemoryAuditRecorder(AuditRecorder):
    """List-backed recorder for development and tests."""

    def __init__(self):
        self.records: list[AuditRecord] = []

    async def record(self, record: AuditRecord) -> bool:
        self.records.append(record)
        logger.debug("audit_recorded",
                     title=record.title,
                     message_id=record.correlation_id,
                     succeeded=record.succeeded)
        return True

    def for_correlation_id(self, correlation_id: str) -> list[AuditRecord]:
        return [r for r in self.records if r.correlation_id == correlation_id]
