"""
Tests — Queue Consumer

Covers:
  - header parsing (retry count, correlation id)
  - ack on success, retry-by-republish below the cap, reject at the cap
  - decode failures, publish failures, unhandled errors
  - end-to-end delivery through router and gateway
  - graceful stop
"""
import asyncio
import json
import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock

import httpx

from backend.gateway import ForwardingGateway
from core.errors import (
    BrokerUnavailable, MessageDecodeError, MissingRoutingKey, UnsupportedEventType,
)
from core.router import MessageRouter
from job_queue.connection import ConnectionManager
from job_queue.consumer import QueueConsumer, decode_body, read_retry_count
from models.schemas import EventType


def _published(connection):
    """(payload, message_id, headers) for every publish call."""
    calls = []
    for call in connection.publish.await_args_list:
        body = call.args[0]
        calls.append((json.loads(body), call.kwargs["message_id"], call.kwargs["headers"]))
    return calls


@pytest.fixture
def connection(broker_config):
    conn = MagicMock(spec=ConnectionManager)
    conn.config = broker_config
    conn.publish = AsyncMock()
    conn.close = AsyncMock()
    conn.queue = None
    return conn


@pytest.fixture
def router():
    r = MagicMock(spec=MessageRouter)
    r.route = AsyncMock()
    return r


@pytest.fixture
def consumer(connection, router, broker_config):
    return QueueConsumer(connection, router, broker_config)


# ──────────────────────────────────────────────────────────────
#  Header / body helpers
# ──────────────────────────────────────────────────────────────

class TestHelpers:
    def test_retry_count_absent_is_one(self):
        assert read_retry_count(None) == 1
        assert read_retry_count({}) == 1

    def test_retry_count_read(self):
        assert read_retry_count({"x-retry-count": 2}) == 2
        assert read_retry_count({"x-retry-count": "3"}) == 3
        assert read_retry_count({"x-retry-count": b"4"}) == 4

    def test_retry_count_invalid_or_zero_is_one(self):
        assert read_retry_count({"x-retry-count": "abc"}) == 1
        assert read_retry_count({"x-retry-count": 0}) == 1
        assert read_retry_count({"x-retry-count": -2}) == 1

    def test_decode_body(self):
        assert decode_body(b'{"a": 1}') == {"a": 1}

    def test_decode_body_invalid(self):
        with pytest.raises(MessageDecodeError, match="Invalid JSON format"):
            decode_body(b"{not json")

    def test_decode_body_invalid_utf8(self):
        with pytest.raises(MessageDecodeError):
            decode_body(b"\xff\xfe\x00")

    def test_registers_ready_callback(self, connection, router, broker_config):
        consumer = QueueConsumer(connection, router, broker_config)
        connection.add_ready_callback.assert_called_once_with(consumer._on_ready)


# ──────────────────────────────────────────────────────────────
#  handle_message / retry protocol
# ──────────────────────────────────────────────────────────────

class TestHandleMessage:

    @pytest.mark.asyncio
    async def test_success_acks(self, consumer, router, connection, make_message, customer_event):
        message = make_message(customer_event, message_id="m-1")
        await consumer.handle_message(message)

        message.ack.assert_awaited_once()
        message.nack.assert_not_awaited()
        connection.publish.assert_not_awaited()

        event, retry_count = router.route.await_args.args
        assert event.event_type == "upsert-customer"
        assert event.message_id == "m-1"
        assert event.data == customer_event["data"]
        assert retry_count == 1

    @pytest.mark.asyncio
    async def test_missing_message_id_defaults_to_unknown(self, consumer, router, make_message,
                                                          customer_event):
        message = make_message(customer_event, message_id=None)
        await consumer.handle_message(message)
        event, _ = router.route.await_args.args
        assert event.message_id == "unknown"

    @pytest.mark.asyncio
    async def test_failure_below_cap_republishes_with_incremented_count(
        self, consumer, router, connection, make_message, customer_event,
    ):
        router.route.side_effect = MissingRoutingKey("upsert-customer")
        message = make_message(customer_event, message_id="m-2", retry_count=1)

        await consumer.handle_message(message)

        published = _published(connection)
        assert len(published) == 1
        payload, message_id, headers = published[0]
        assert payload == customer_event
        assert message_id == "m-2"
        assert headers == {"x-retry-count": 2}

        message.ack.assert_not_awaited()
        message.nack.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_retry_count_is_monotonic(self, consumer, router, connection, make_message,
                                            customer_event):
        router.route.side_effect = RuntimeError("downstream 503")
        message = make_message(customer_event, message_id="m-3", retry_count=2)

        await consumer.handle_message(message)

        _, _, headers = _published(connection)[0]
        assert headers["x-retry-count"] == 3

    @pytest.mark.asyncio
    async def test_at_cap_rejects_without_publishing(self, consumer, router, connection,
                                                     make_message, customer_event):
        router.route.side_effect = RuntimeError("still failing")
        message = make_message(customer_event, message_id="m-4", retry_count=3)

        await consumer.handle_message(message)

        connection.publish.assert_not_awaited()
        message.ack.assert_not_awaited()
        message.nack.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_above_cap_rejects_without_publishing(self, consumer, router, connection,
                                                        make_message, customer_event):
        router.route.side_effect = RuntimeError("still failing")
        message = make_message(customer_event, retry_count=9)

        await consumer.handle_message(message)

        connection.publish.assert_not_awaited()
        message.nack.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_invalid_body_is_rejected_when_redecode_fails(self, consumer, router,
                                                                connection, make_message):
        message = make_message(raw=b"{broken", retry_count=1)

        await consumer.handle_message(message)

        router.route.assert_not_awaited()
        connection.publish.assert_not_awaited()
        message.nack.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_unsupported_event_type_is_retried_like_any_error(
        self, connection, make_message, broker_config,
    ):
        router = MessageRouter({t: AsyncMock() for t in EventType})
        consumer = QueueConsumer(connection, router, broker_config)
        body = {"eventType": "upsert-invoice", "data": {"seller_id": 1}}
        message = make_message(body, message_id="m-5", retry_count=1)

        await consumer.handle_message(message)

        published = _published(connection)
        assert len(published) == 1
        assert published[0][0] == body
        assert published[0][2] == {"x-retry-count": 2}
        message.nack.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_unsupported_event_type_dropped_at_cap(self, connection, make_message,
                                                         broker_config):
        router = MagicMock(spec=MessageRouter)
        router.route = AsyncMock(side_effect=UnsupportedEventType("upsert-invoice"))
        consumer = QueueConsumer(connection, router, broker_config)
        message = make_message({"eventType": "upsert-invoice"}, retry_count=3)

        await consumer.handle_message(message)

        connection.publish.assert_not_awaited()
        message.nack.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_publish_failure_still_rejects_original(self, consumer, router, connection,
                                                          make_message, customer_event):
        router.route.side_effect = RuntimeError("downstream down")
        connection.publish.side_effect = BrokerUnavailable("RabbitMQ channel is not available")
        message = make_message(customer_event, retry_count=1)

        await consumer.handle_message(message)

        connection.publish.assert_awaited_once()
        message.ack.assert_not_awaited()
        message.nack.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_nack_failure_does_not_escape(self, consumer, router, make_message,
                                                customer_event):
        router.route.side_effect = RuntimeError("boom")
        message = make_message(customer_event, retry_count=3)
        message.nack.side_effect = RuntimeError("channel closed")

        await consumer.handle_message(message)

        message.nack.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_configured_cap_is_honoured(self, connection, router, make_message,
                                              customer_event, broker_config):
        broker_config.max_retry_count = 1
        consumer = QueueConsumer(connection, router, broker_config)
        router.route.side_effect = RuntimeError("fail")
        message = make_message(customer_event)

        await consumer.handle_message(message)

        connection.publish.assert_not_awaited()
        message.nack.assert_awaited_once_with(requeue=False)


class TestPublishMessage:

    @pytest.mark.asyncio
    async def test_publish_message_encodes_json(self, consumer, connection):
        await consumer.publish_message({"eventType": "upsert-customer"}, "m-9", 2)

        connection.publish.assert_awaited_once()
        call = connection.publish.await_args
        assert json.loads(call.args[0]) == {"eventType": "upsert-customer"}
        assert call.kwargs == {"message_id": "m-9", "headers": {"x-retry-count": 2}}

    @pytest.mark.asyncio
    async def test_publish_message_propagates_errors(self, consumer, connection):
        connection.publish.side_effect = BrokerUnavailable("no channel")
        with pytest.raises(BrokerUnavailable):
            await consumer.publish_message({}, "m-10", 1)


# ──────────────────────────────────────────────────────────────
#  Delivery tasks and shutdown
# ──────────────────────────────────────────────────────────────

class TestDelivery:

    @pytest.mark.asyncio
    async def test_on_message_spawns_tracked_task(self, consumer, make_message, customer_event):
        message = make_message(customer_event)
        await consumer._on_message(message)
        assert consumer.in_flight == 1

        await asyncio.gather(*list(consumer._tasks))
        await asyncio.sleep(0)
        assert consumer.in_flight == 0
        message.ack.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unhandled_error_is_contained_and_rejected(self, consumer, make_message,
                                                             customer_event):
        consumer.handle_message = AsyncMock(side_effect=RuntimeError("bug"))
        message = make_message(customer_event)

        await consumer._process(message)

        message.nack.assert_awaited_once_with(requeue=False)

    @pytest.mark.asyncio
    async def test_on_ready_starts_consuming(self, consumer, connection):
        manager = MagicMock()
        manager.queue.consume = AsyncMock(return_value="ctag-1")

        await consumer._on_ready(manager)

        manager.queue.consume.assert_awaited_once_with(consumer._on_message, no_ack=False)
        assert consumer._consumer_tag == "ctag-1"

    @pytest.mark.asyncio
    async def test_stop_cancels_consumer_and_closes(self, consumer, connection):
        connection.queue = MagicMock()
        connection.queue.cancel = AsyncMock()
        consumer._consumer_tag = "ctag-2"

        await consumer.stop()

        connection.queue.cancel.assert_awaited_once_with("ctag-2")
        connection.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_abandons_tasks_after_grace(self, consumer, connection, broker_config,
                                                   make_message):
        broker_config.shutdown_grace_seconds = 0.01
        started = asyncio.Event()

        async def slow(message):
            started.set()
            await asyncio.sleep(10)

        consumer.handle_message = slow
        await consumer._on_message(make_message({}))
        await started.wait()

        await consumer.stop()

        assert consumer.in_flight == 0
        connection.close.assert_awaited_once()

    def test_is_connected_delegates(self, consumer, connection):
        connection.is_connected.return_value = True
        assert consumer.is_connected() is True


# ──────────────────────────────────────────────────────────────
#  End-to-end through router and gateway
# ──────────────────────────────────────────────────────────────

class TestEndToEnd:

    @pytest_asyncio.fixture
    async def pipeline(self, connection, resolver, recorder, forwarding_config, downstream,
                       broker_config):
        gateway = ForwardingGateway(resolver, recorder, forwarding_config,
                                    client=downstream["client"])
        consumer = QueueConsumer(connection, MessageRouter.for_gateway(gateway), broker_config)
        yield consumer
        await gateway.close()

    @pytest.mark.asyncio
    async def test_upsert_customer_acked_and_audited(self, pipeline, recorder, make_message,
                                                     customer_event, downstream):
        message = make_message(customer_event, message_id="e2e-1")

        await pipeline.handle_message(message)

        message.ack.assert_awaited_once()
        message.nack.assert_not_awaited()
        assert len(downstream["requests"]) == 1
        records = recorder.for_correlation_id("e2e-1")
        assert len(records) == 1
        assert records[0].succeeded

    @pytest.mark.asyncio
    async def test_missing_seller_id_retried_with_count_two(self, pipeline, recorder,
                                                            connection, make_message):
        body = {"eventType": "upsert-customer", "data": {"guid": "no-seller"}}
        message = make_message(body, message_id="e2e-2", retry_count=1)

        await pipeline.handle_message(message)

        assert _published(connection) == [(body, "e2e-2", {"x-retry-count": 2})]
        message.nack.assert_awaited_once_with(requeue=False)
        assert len(recorder.for_correlation_id("e2e-2")) == 1

    @pytest.mark.asyncio
    async def test_downstream_failure_at_cap_is_dropped(self, pipeline, recorder, connection,
                                                        make_message, customer_event,
                                                        downstream):
        downstream["handler"] = lambda request: httpx.Response(500, text="oops")
        message = make_message(customer_event, message_id="e2e-3", retry_count=3)

        await pipeline.handle_message(message)

        connection.publish.assert_not_awaited()
        message.nack.assert_awaited_once_with(requeue=False)
        records = recorder.for_correlation_id("e2e-3")
        assert len(records) == 1
        assert json.loads(records[0].error_message)["statusCode"] == 500
