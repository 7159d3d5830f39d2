"""
Queue Consumer — pulls event messages from RabbitMQ and drives forwarding.

Each delivery becomes its own asyncio task; the channel prefetch bounds
how many are outstanding at once.

Per-message flow:
  ┌────────────┐  decode   ┌────────┐  route   ┌─────────┐
  │  delivery  │──────────▶│ Event  │─────────▶│ Gateway │
  └─────┬──────┘           └────────┘          └────┬────┘
        │                                          │
        │   success ─────────────────────────▶ ack │
        │   failure, retry < max ──▶ republish(retry+1) + nack(requeue=False)
        │   failure, retry >= max ─────────────▶ nack(requeue=False)

The retry counter travels in the `x-retry-count` header; only this
consumer mutates it, by republishing a fresh copy and rejecting the
original, so at most one copy of an event is in the queue at a time.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from typing import Any, Optional

from aio_pika.abc import AbstractIncomingMessage

from config.settings import BrokerConfig
from core.errors import MessageDecodeError
from core.router import MessageRouter
from job_queue.connection import ConnectionManager
from models.schemas import Event

logger = structlog.get_logger()

RETRY_HEADER = "x-retry-count"
UNKNOWN_MESSAGE_ID = "unknown"
_PREVIEW_CHARS = 500


def read_retry_count(headers: Optional[dict[str, Any]]) -> int:
    """Attempt number from message headers; absent or invalid counts as attempt 1."""
    raw = (headers or {}).get(RETRY_HEADER)
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return 1
    return value if value > 0 else 1


def decode_body(body: bytes) -> Any:
    try:
        return json.loads(body.decode("utf-8"))
    except ValueError as e:
        raise MessageDecodeError(f"Invalid JSON format: {e}") from e


class QueueConsumer:
    """
    Consumes the event queue and applies the ack / retry / reject protocol.

    Usage:
        consumer = QueueConsumer(connection_manager, router)
        await consumer.start()    # returns even if the broker is down
        ...
        await consumer.stop()     # cancels consumption, closes the connection
    """

    def __init__(
        self,
        connection: ConnectionManager,
        router: MessageRouter,
        config: BrokerConfig = None,
    ):
        self.connection = connection
        self.router = router
        self.config = config or connection.config
        self._consumer_tag: Optional[str] = None
        self._tasks: set[asyncio.Task] = set()
        connection.add_ready_callback(self._on_ready)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> bool:
        return await self.connection.start()

    async def _on_ready(self, manager: ConnectionManager) -> None:
        self._consumer_tag = await manager.queue.consume(self._on_message, no_ack=False)
        logger.info("consumer_started", queue=self.config.queue)

    async def stop(self) -> None:
        """Stop consuming, give in-flight messages the grace period, then disconnect."""
        queue = self.connection.queue
        if self._consumer_tag and queue is not None:
            try:
                await queue.cancel(self._consumer_tag)
            except Exception as e:
                logger.warning("consumer_cancel_failed", error=str(e))
        self._consumer_tag = None

        if self._tasks:
            pending_count = len(self._tasks)
            _, pending = await asyncio.wait(
                set(self._tasks), timeout=self.config.shutdown_grace_seconds,
            )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            logger.info("consumer_drained",
                        in_flight=pending_count,
                        abandoned=len(pending))

        await self.connection.close()
        logger.info("consumer_stopped")

    def is_connected(self) -> bool:
        return self.connection.is_connected()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ── Delivery ──────────────────────────────────────────────

    async def _on_message(self, message: AbstractIncomingMessage) -> None:
        task = asyncio.create_task(self._process(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process(self, message: AbstractIncomingMessage) -> None:
        """Top-level guard: nothing raised while handling may escape the task."""
        try:
            await self.handle_message(message)
        except Exception as e:
            logger.error("unhandled_message_error",
                         message_id=message.message_id,
                         error=str(e),
                         exc_info=True)
            await self._reject(message, message.message_id or UNKNOWN_MESSAGE_ID)

    async def handle_message(self, message: AbstractIncomingMessage) -> None:
        message_id = message.message_id or UNKNOWN_MESSAGE_ID
        retry_count = read_retry_count(message.headers)
        body = message.body or b""

        try:
            logger.info("message_received",
                        message_id=message_id,
                        retry_count=retry_count,
                        queue=self.config.queue,
                        message_length=len(body))
            if body:
                logger.debug("message_preview",
                             message_id=message_id,
                             preview=body[:_PREVIEW_CHARS].decode("utf-8", errors="replace"))

            try:
                payload = decode_body(body)
            except MessageDecodeError as e:
                logger.error("message_decode_failed",
                             message_id=message_id,
                             retry_count=retry_count,
                             error=str(e))
                raise

            event = Event.from_payload(payload, message_id)
            await self.router.route(event, retry_count)

            await message.ack()
            logger.debug("message_processed",
                         message_id=message_id,
                         retry_count=retry_count)
        except Exception as e:
            await self.handle_message_error(message, e, message_id, retry_count)

    # ── Retry protocol ────────────────────────────────────────

    async def handle_message_error(
        self,
        message: AbstractIncomingMessage,
        error: BaseException,
        message_id: str,
        retry_count: int,
    ) -> None:
        logger.error("message_processing_failed",
                     message_id=message_id,
                     retry_count=retry_count,
                     error=str(error),
                     error_type=type(error).__name__)

        max_retry_count = self.config.max_retry_count
        if retry_count >= max_retry_count:
            logger.error("max_retries_reached",
                         message_id=message_id,
                         retry_count=retry_count,
                         max_retries=max_retry_count)
            await self._reject(message, message_id)
            return

        try:
            logger.info("message_retrying",
                        message_id=message_id,
                        retry_count=retry_count + 1,
                        max_retries=max_retry_count)

            try:
                payload = decode_body(message.body or b"")
            except MessageDecodeError as parse_error:
                logger.error("retry_decode_failed",
                             message_id=message_id,
                             retry_count=retry_count,
                             error=str(parse_error))
                await self._reject(message, message_id)
                return

            await self.publish_message(payload, message_id, retry_count + 1)
            await self._reject(message, message_id)
        except Exception as retry_error:
            logger.error("retry_failed",
                         message_id=message_id,
                         retry_count=retry_count,
                         error=str(retry_error),
                         exc_info=True)
            await self._reject(message, message_id)

    async def publish_message(self, data: Any, message_id: str, retry_count: int = 0) -> None:
        """Publish `data` as a new persistent message carrying the retry header."""
        body = json.dumps(data).encode("utf-8")
        try:
            await self.connection.publish(
                body,
                message_id=message_id,
                headers={RETRY_HEADER: retry_count},
            )
        except Exception as e:
            logger.error("retry_publish_failed",
                         message_id=message_id,
                         retry_count=retry_count,
                         error=str(e))
            raise
        logger.info("message_published_for_retry",
                    message_id=message_id,
                    retry_count=retry_count)

    async def _reject(self, message: AbstractIncomingMessage, message_id: str) -> None:
        """nack without requeue; removes the message from the active queue."""
        try:
            await message.nack(requeue=False)
        except Exception as e:
            logger.error("message_nack_failed",
                         message_id=message_id,
                         error=str(e))
