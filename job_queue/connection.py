"""
Connection Manager — owns the RabbitMQ connection, channel and topology.

State machine:
  DISCONNECTED ──start()──▶ CONNECTING ──▶ CONNECTED
                               ▲              │ connection lost
                               └──────────────┘ (aio-pika robust reconnect)
  any state ──close()──▶ CLOSED (terminal)

Topology declared on every fresh channel:
  exchange  <exchange>  topic, durable
  queue     <queue>     durable
  binding   <queue> ← <exchange> on <routing_key>
  qos       prefetch_count

If the very first connect fails, start() logs it and keeps dialing in the
background (tenacity, fixed interval) instead of raising; once a connection
exists, aio-pika's robust connection owns reconnects and restores the
channel, qos, topology and consumers by itself.
"""
from __future__ import annotations

import asyncio
import re
import structlog
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType
from aio_pika.abc import (
    AbstractRobustChannel, AbstractRobustConnection, AbstractRobustExchange,
    AbstractRobustQueue,
)
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_fixed

from config.settings import BrokerConfig, get_settings
from core.errors import BrokerUnavailable

logger = structlog.get_logger()

ReadyCallback = Callable[["ConnectionManager"], Awaitable[None]]


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


def mask_url(url: str) -> str:
    """Hide credentials in a broker URL for logging."""
    return re.sub(r"//.*@", "//***:***@", url)


def _log_reconnect_attempt(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning("broker_reconnect_scheduled",
                   attempt=retry_state.attempt_number,
                   error=str(exc) if exc else None)


class ConnectionManager:
    """
    Explicitly owned broker connection, handed to the consumer at construction.

    Usage:
        manager = ConnectionManager(settings.broker)
        manager.add_ready_callback(consumer.on_ready)
        await manager.start()      # never raises on broker outage
        ...
        await manager.close()
    """

    def __init__(
        self,
        config: BrokerConfig = None,
        connect: Callable[..., Awaitable[AbstractRobustConnection]] = None,
    ):
        self.config = config or get_settings().broker
        self._connect = connect or aio_pika.connect_robust
        self.connection: Optional[AbstractRobustConnection] = None
        self.channel: Optional[AbstractRobustChannel] = None
        self.exchange: Optional[AbstractRobustExchange] = None
        self.queue: Optional[AbstractRobustQueue] = None
        self.state = ConnectionState.DISCONNECTED
        self._ready_callbacks: list[ReadyCallback] = []
        self._reconnect_task: Optional[asyncio.Task] = None

    # ── Lifecycle ─────────────────────────────────────────────

    def add_ready_callback(self, callback: ReadyCallback) -> None:
        """Register a coroutine run once the channel and topology are ready."""
        self._ready_callbacks.append(callback)

    async def start(self) -> bool:
        """Connect and declare topology. Returns False (and keeps retrying) on failure."""
        try:
            await self.connect()
            logger.info("broker_initialized")
            return True
        except Exception as e:
            logger.error("broker_initialization_failed", error=str(e))
            logger.warning("broker_continuing_without_connection",
                           reconnect_interval=self.config.reconnect_interval)
            self._reconnect_task = asyncio.create_task(self._reconnect_until_connected())
            return False

    async def connect(self) -> None:
        if self.state is ConnectionState.CLOSED:
            raise BrokerUnavailable("Connection manager is closed")

        self.state = ConnectionState.CONNECTING
        logger.info("broker_connecting", url=mask_url(self.config.url))
        try:
            self.connection = await self._connect(
                self.config.url,
                heartbeat=self.config.heartbeat,
                reconnect_interval=self.config.reconnect_interval,
            )
            self.connection.reconnect_callbacks.add(self._on_reconnect)
            self.connection.close_callbacks.add(self._on_connection_close)

            self.channel = await self.connection.channel()
            self.channel.close_callbacks.add(self._on_channel_close)
            await self._declare_topology()

            self.state = ConnectionState.CONNECTED
            logger.info("broker_connected", url=mask_url(self.config.url))

            for callback in self._ready_callbacks:
                await callback(self)
        except Exception:
            await self._discard()
            self.state = ConnectionState.DISCONNECTED
            raise

    async def _declare_topology(self) -> None:
        cfg = self.config
        await self.channel.set_qos(prefetch_count=cfg.prefetch_count)
        self.exchange = await self.channel.declare_exchange(
            cfg.exchange, ExchangeType.TOPIC, durable=True,
        )
        self.queue = await self.channel.declare_queue(cfg.queue, durable=True)
        await self.queue.bind(self.exchange, routing_key=cfg.routing_key)
        logger.info("broker_topology_declared",
                    exchange=cfg.exchange,
                    queue=cfg.queue,
                    routing_key=cfg.routing_key,
                    prefetch_count=cfg.prefetch_count)

    async def _reconnect_until_connected(self) -> None:
        retrying = AsyncRetrying(
            wait=wait_fixed(self.config.reconnect_interval),
            retry=retry_if_exception_type(Exception),
            before_sleep=_log_reconnect_attempt,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if self.state is ConnectionState.CLOSED:
                    return
                await self.connect()

    async def close(self) -> None:
        """Close channel and connection. Terminal: no reconnects afterwards."""
        previous = self.state
        self.state = ConnectionState.CLOSED

        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None

        try:
            if self.channel and not self.channel.is_closed:
                await self.channel.close()
            if self.connection and not self.connection.is_closed:
                await self.connection.close()
            logger.info("broker_disconnected", previous_state=previous.value)
        except Exception as e:
            logger.error("broker_disconnect_error", error=str(e))
        finally:
            self.channel = None
            self.connection = None
            self.exchange = None
            self.queue = None

    async def _discard(self) -> None:
        """Drop a half-open connection after a failed connect."""
        connection, self.connection = self.connection, None
        self.channel = None
        self.exchange = None
        self.queue = None
        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
            except Exception as e:
                logger.debug("broker_discard_failed", error=str(e))

    # ── Callbacks from aio-pika ───────────────────────────────

    def _on_reconnect(self, *args: Any) -> None:
        if self.state is not ConnectionState.CLOSED:
            self.state = ConnectionState.CONNECTED
            logger.info("broker_reconnected")

    def _on_connection_close(self, sender: Any = None, exc: BaseException = None) -> None:
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CONNECTING
        logger.warning("broker_connection_lost",
                       error=str(exc) if exc else "Connection lost")

    def _on_channel_close(self, sender: Any = None, exc: BaseException = None) -> None:
        if self.state is not ConnectionState.CLOSED:
            logger.warning("broker_channel_closed",
                           error=str(exc) if exc else None)

    # ── Queue operations ──────────────────────────────────────

    def is_connected(self) -> bool:
        return (
            self.state is ConnectionState.CONNECTED
            and self.connection is not None
            and not self.connection.is_closed
        )

    async def publish(self, body: bytes, message_id: str, headers: dict[str, Any]) -> None:
        """Publish a persistent JSON message to the configured exchange/routing key."""
        if self.exchange is None or self.channel is None or self.channel.is_closed:
            raise BrokerUnavailable("RabbitMQ channel is not available")

        message = aio_pika.Message(
            body=body,
            message_id=message_id,
            content_type="application/json",
            delivery_mode=DeliveryMode.PERSISTENT,
            headers=headers,
        )
        await self.exchange.publish(message, routing_key=self.config.routing_key)
