"""
Message Router — maps an event's type tag to its gateway operation.

No I/O of its own: results and errors from the gateway propagate unchanged.
"""
from __future__ import annotations

import structlog
from typing import Any, Awaitable, Callable

from core.errors import UnsupportedEventType
from models.schemas import Event, EventType

logger = structlog.get_logger()

Handler = Callable[[dict[str, Any], str, int], Awaitable[None]]


class MessageRouter:
    """
    Dispatch table over EventType.

    Usage:
        router = MessageRouter.for_gateway(gateway)
        await router.route(event, retry_count)
    """

    def __init__(self, handlers: dict[EventType, Handler]):
        missing = [t.value for t in EventType if t not in handlers]
        if missing:
            raise ValueError(f"No handler registered for event types: {', '.join(missing)}")
        self._handlers = dict(handlers)

    @classmethod
    def for_gateway(cls, gateway) -> MessageRouter:
        return cls({
            EventType.UPSERT_CUSTOMER: gateway.upsert_customer,
            EventType.UPSERT_DOC_OFFERS: gateway.upsert_doc_offers,
        })

    async def route(self, event: Event, retry_count: int = 1) -> None:
        try:
            kind = event.kind
            if kind is None:
                raise UnsupportedEventType(event.event_type)
            handler = self._handlers[kind]
            await handler(event.data, event.message_id, retry_count)
        except Exception as e:
            logger.error("route_failed",
                         event_type=event.event_type,
                         message_id=event.message_id,
                         error=str(e))
            raise
