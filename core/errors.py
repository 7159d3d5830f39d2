"""
Error taxonomy for message handling.

Every exception raised while handling one message derives from
ForwarderError and is converted by the queue consumer into an
ack / retry / reject decision.
"""
from __future__ import annotations

from typing import Optional

from models.schemas import ForwardingFailure


class ForwarderError(Exception):
    """Base class for per-message processing errors."""


class MessageDecodeError(ForwarderError):
    """Message body is not well-formed JSON."""


class UnsupportedEventType(ForwarderError):
    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"Unsupported message type: {event_type}")


class MissingRoutingKey(ForwarderError):
    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"seller_id is required in {operation} data")


class TargetUnavailable(ForwarderError):
    def __init__(self, seller_id: str):
        self.seller_id = seller_id
        super().__init__(f"Seller with id {seller_id} not found or inactive")


class ForwardingFailed(ForwarderError):
    """Downstream call returned non-2xx or did not complete."""

    def __init__(self, failure: ForwardingFailure, cause: Optional[BaseException] = None):
        self.failure = failure
        self.cause = cause
        super().__init__(failure.message)

    @property
    def status_code(self) -> int:
        return self.failure.status_code


class BrokerUnavailable(ForwarderError):
    """No open channel to publish on."""
