"""
Forwarding Gateway — delivers one decoded event to its seller's endpoint.

Each operation (one per event type) follows the same path:
  1. validate the seller_id routing key
  2. resolve the seller endpoint through the RoutingResolver
  3. build the destination URL (scheme default, port elision, path)
  4. POST the event data as JSON with the seller's API key
  5. write exactly one audit record, whatever happened above

Success returns None; every failure raises, and the queue consumer treats
any raised error as "needs retry". Validation and downstream failures use
ForwarderError subclasses; resolver and transport errors outside those
propagate unchanged.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

import httpx

from config.settings import ForwardingConfig, get_settings
from core.errors import ForwardingFailed, MissingRoutingKey, TargetUnavailable
from database.audit import AuditRecorder
from database.routing import RoutingResolver
from models.schemas import (
    AuditRecord, EventType, ForwardingFailure, ForwardingSuccess, RoutingTarget,
)

logger = structlog.get_logger()

_DEFAULT_PORTS = {"http": 80, "https": 443}


def build_target_url(address: str, port: Optional[int], path: str) -> str:
    """
    Compose `{scheme}://{host}[:port]{path}`.

    http:// is assumed when the address has no scheme; the port is only
    appended when it differs from the scheme's default.
    """
    host = address.strip().rstrip("/")
    if not host.startswith("http://") and not host.startswith("https://"):
        host = f"http://{host}"

    suffix = ""
    if port:
        scheme = "https" if host.startswith("https://") else "http"
        if int(port) != _DEFAULT_PORTS[scheme]:
            suffix = f":{int(port)}"

    return f"{host}{suffix}{path}"


class ForwardingGateway:
    """
    Forwards events to seller endpoints over HTTP and audits every attempt.

    Usage:
        gateway = ForwardingGateway(resolver, recorder)
        await gateway.upsert_customer(data, message_id, retry_count)
        await gateway.close()
    """

    def __init__(
        self,
        resolver: RoutingResolver,
        recorder: AuditRecorder,
        config: ForwardingConfig = None,
        client: httpx.AsyncClient = None,
    ):
        self.resolver = resolver
        self.recorder = recorder
        self.config = config or get_settings().forwarding
        self.client: Optional[httpx.AsyncClient] = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(timeout=self.config.timeout)
        return self.client

    async def close(self):
        if self.client:
            await self.client.aclose()

    # ── Operations ────────────────────────────────────────────

    async def upsert_customer(self, data: dict[str, Any], correlation_id: str,
                              retry_count: int = 1) -> None:
        await self._forward(EventType.UPSERT_CUSTOMER, data, correlation_id, retry_count)

    async def upsert_doc_offers(self, data: dict[str, Any], correlation_id: str,
                                retry_count: int = 1) -> None:
        await self._forward(EventType.UPSERT_DOC_OFFERS, data, correlation_id, retry_count)

    # ── Shared path ───────────────────────────────────────────

    def path_for(self, event_type: EventType) -> str:
        return self.config.paths[event_type.value]

    async def _forward(
        self,
        event_type: EventType,
        data: dict[str, Any],
        correlation_id: str,
        retry_count: int,
    ) -> None:
        error_message = ""
        response_message = ""
        seller_id = data.get("seller_id")
        try:
            if not seller_id:
                logger.error("seller_id_missing",
                             operation=event_type.value,
                             guid=data.get("guid"),
                             message_id=correlation_id)
                raise MissingRoutingKey(event_type.value)

            target = await self.resolver.resolve(seller_id)
            if target is None or not target.active:
                logger.error("seller_not_found_or_inactive",
                             seller_id=seller_id,
                             guid=data.get("guid"),
                             message_id=correlation_id)
                raise TargetUnavailable(str(seller_id))

            outcome = await self._post(event_type, target, data,
                                       correlation_id, retry_count)
            response_message = outcome.response_body

        except ForwardingFailed as e:
            error_message = e.failure.to_error_message()
            logger.error("forwarding_failed",
                         operation=event_type.value,
                         seller_id=seller_id,
                         guid=data.get("guid"),
                         status_code=e.status_code,
                         message_id=correlation_id,
                         retry_count=retry_count)
            raise
        except asyncio.CancelledError:
            error_message = "Forwarding cancelled before completion"
            logger.warning("forwarding_cancelled",
                           operation=event_type.value,
                           seller_id=seller_id,
                           message_id=correlation_id,
                           retry_count=retry_count)
            raise
        except Exception as e:
            error_message = str(e) or type(e).__name__
            raise
        finally:
            await self.recorder.record(AuditRecord(
                title=event_type.value,
                request=data,
                correlation_id=correlation_id,
                error_message=error_message,
                response_message=response_message,
            ))

    async def _post(
        self,
        event_type: EventType,
        target: RoutingTarget,
        data: dict[str, Any],
        correlation_id: str,
        retry_count: int,
    ) -> ForwardingSuccess:
        """Execute the downstream call. Returns the outcome on 2xx."""
        url = build_target_url(target.address, target.port, self.path_for(event_type))
        logger.info("forwarding_request",
                    url=url,
                    seller_id=target.seller_id,
                    message_id=correlation_id,
                    retry_count=retry_count,
                    has_api_key=bool(target.api_key))

        client = await self._get_client()
        headers = {
            "Content-Type": "application/json",
            self.config.api_key_header: target.api_key,
        }
        try:
            response = await client.post(url, json=data, headers=headers,
                                         timeout=self.config.timeout)
        except httpx.HTTPError as e:
            failure = ForwardingFailure(
                status_code=0,
                status_text="",
                response_body="",
                message=str(e) or type(e).__name__,
                retry_count=retry_count,
            )
            raise ForwardingFailed(failure, cause=e) from e

        body = response.text
        if not response.is_success:
            failure = ForwardingFailure(
                status_code=response.status_code,
                status_text=response.reason_phrase,
                response_body=body,
                message=f"Request failed with status code {response.status_code}",
                retry_count=retry_count,
            )
            raise ForwardingFailed(failure)

        logger.info("forwarding_succeeded",
                    seller_id=target.seller_id,
                    status_code=response.status_code,
                    message_id=correlation_id)
        return ForwardingSuccess(response_body=body)
