"""
FastAPI Application — process shell around the queue consumer.

Provides:
- Lifespan wiring: stores → gateway → router → connection manager → consumer
- Health endpoints for orchestrators (/health liveness, /ready broker readiness)
- Graceful shutdown: uvicorn turns SIGTERM/SIGINT into lifespan shutdown,
  which stops the consumer and closes channel, connection, HTTP client and
  database engine
"""
from __future__ import annotations

import asyncio
import sys
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from backend.gateway import ForwardingGateway
from config.settings import Settings, get_settings, load_settings
from core.router import MessageRouter
from database.audit import AuditRecorder
from database.routing import RoutingResolver
from database.session import close_db, init_db
from database.store_factory import create_stores
from job_queue.connection import ConnectionManager
from job_queue.consumer import QueueConsumer
from utils.logging_config import configure_logging

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

@dataclass
class Components:
    resolver: RoutingResolver
    recorder: AuditRecorder
    gateway: ForwardingGateway
    router: MessageRouter
    connection: ConnectionManager
    consumer: QueueConsumer


def build_components(settings: Settings) -> Components:
    """Construct the object graph; nothing connects until the lifespan starts."""
    resolver, recorder = create_stores(settings.database)
    gateway = ForwardingGateway(resolver, recorder, settings.forwarding)
    router = MessageRouter.for_gateway(gateway)
    connection = ConnectionManager(settings.broker)
    consumer = QueueConsumer(connection, router, settings.broker)
    return Components(
        resolver=resolver, recorder=recorder, gateway=gateway,
        router=router, connection=connection, consumer=consumer,
    )


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    logger.error("unhandled_task_exception",
                 message=context.get("message"),
                 error=str(exc) if exc else None,
                 exc_info=exc)


def create_app(settings: Settings = None, components: Components = None) -> FastAPI:
    settings = settings or get_settings()
    components = components or build_components(settings)
    uses_sql = settings.database.store_backend == "sql"

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        asyncio.get_running_loop().set_exception_handler(_log_loop_exception)

        if uses_sql:
            try:
                await init_db(settings.database)
            except Exception as e:
                logger.error("database_init_failed", error=str(e))

        connected = await components.consumer.start()
        logger.info("event_forwarder_started",
                    environment=settings.environment,
                    broker_connected=connected,
                    store_backend=settings.database.store_backend)
        yield

        logger.info("event_forwarder_stopping")
        await components.consumer.stop()
        await components.gateway.close()
        if uses_sql:
            await close_db()
        logger.info("event_forwarder_stopped")

    app = FastAPI(
        title="Event Forwarder",
        description="RabbitMQ → seller API bridge with audited, bounded retries",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.components = components

    # ══════════════════════════════════════════════════════════
    #  HEALTH
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "broker": components.connection.state.value,
            "in_flight": components.consumer.in_flight,
        }

    @app.get("/ready")
    async def ready():
        if components.consumer.is_connected():
            return {"status": "ready", "broker": components.connection.state.value}
        return JSONResponse(
            status_code=503,
            content={"status": "degraded", "broker": components.connection.state.value},
        )

    return app


# ══════════════════════════════════════════════════════════════
#  Entry Point
# ══════════════════════════════════════════════════════════════

def main() -> int:
    import uvicorn

    try:
        settings = load_settings()
        configure_logging(settings.logging)
        app = create_app(settings)
        uvicorn.run(app, host=settings.server.host, port=settings.server.port,
                    log_config=None)
    except Exception as e:
        logger.error("application_start_failed", error=str(e), exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
