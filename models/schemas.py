"""
Core data models for the event forwarder.
These are the types shared across the queue, router, gateway and stores.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Events
# ──────────────────────────────────────────────────────────────

class EventType(str, Enum):
    UPSERT_CUSTOMER = "upsert-customer"
    UPSERT_DOC_OFFERS = "upsert-doc-offers"

    @classmethod
    def parse(cls, value: Any) -> Optional[EventType]:
        """Return the matching member, or None for an unknown tag."""
        try:
            return cls(value)
        except ValueError:
            return None


class Event(BaseModel):
    """
    Decoded queue payload.

    `event_type` is kept as the raw tag so an unknown value survives
    decoding and reaches the router, which rejects it.
    """
    event_type: str = Field(default="", alias="eventType")
    data: dict[str, Any] = Field(default_factory=dict)
    message_id: str = Field(default="unknown", alias="messageId")

    model_config = {"populate_by_name": True}

    @property
    def kind(self) -> Optional[EventType]:
        return EventType.parse(self.event_type)

    @classmethod
    def from_payload(cls, payload: Any, message_id: str) -> Event:
        """Build an event from decoded JSON, stamping the broker correlation id."""
        if not isinstance(payload, dict):
            return cls(event_type="", data={}, message_id=message_id)
        data = payload.get("data")
        return cls(
            event_type=str(payload.get("eventType") or ""),
            data=data if isinstance(data, dict) else {},
            message_id=message_id,
        )


# ──────────────────────────────────────────────────────────────
#  Routing
# ──────────────────────────────────────────────────────────────

class RoutingTarget(BaseModel):
    """A resolved downstream destination for one seller."""
    seller_id: str
    address: str
    port: Optional[int] = None
    api_key: str = ""
    active: bool = True


# ──────────────────────────────────────────────────────────────
#  Forwarding outcome
# ──────────────────────────────────────────────────────────────

class ForwardingSuccess(BaseModel):
    """2xx reply from the seller; the body is kept as opaque text."""
    response_body: str = ""


class ForwardingFailure(BaseModel):
    status_code: int = 0            # 0 when no response was received
    status_text: str = ""
    response_body: str = ""
    message: str = "Unknown error"
    retry_count: int = 1

    def to_error_message(self) -> str:
        """Render the failure detail stored in the audit log."""
        return json.dumps({
            "message": self.message,
            "statusCode": self.status_code,
            "statusText": self.status_text,
            "responseData": self.response_body,
            "retryCount": self.retry_count,
        })


# ──────────────────────────────────────────────────────────────
#  Audit
# ──────────────────────────────────────────────────────────────

class AuditRecord(BaseModel):
    """One row per forwarding attempt. Append-only."""
    title: str = ""
    request: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str = ""
    error_message: str = ""
    response_message: str = ""
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def succeeded(self) -> bool:
        return not self.error_message
