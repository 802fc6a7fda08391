from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from utilitysign.api.errors import register_exception_handlers
from utilitysign.api.routes import events, health, signing, webhooks
from utilitysign.core.config import Settings, get_settings
from utilitysign.core.logging import configure_logging, get_logger
from utilitysign.db.session import create_engine, create_session_factory, init_models
from utilitysign.integrations.backend import RequestGateway
from utilitysign.integrations.webhooks import WebhookLog, WebhookVerifier
from utilitysign.services.notifications import (
    LoggingNotificationSink,
    NotificationSink,
    OutboxDispatcher,
    OutboxNotificationSink,
)
from utilitysign.services.order_store import DatabaseOrderStore, InMemoryOrderStore, OrderStore
from utilitysign.services.signing_orchestrator import SigningOrchestrator


configure_logging()
logger = get_logger(__name__)


def create_application(
    settings: Settings | None = None,
    *,
    gateway: RequestGateway | None = None,
    order_store: OrderStore | None = None,
    notification_sink: NotificationSink | None = None,
    outbox_delivery_sink: NotificationSink | None = None,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        engine = None
        needs_database = (order_store is None and settings.order_store_backend == "database") or (
            notification_sink is None and settings.notification_backend == "outbox"
        )
        if needs_database:
            engine = create_engine(settings.database_url)
            await init_models(engine)
            session_factory = create_session_factory(engine)

        store = order_store
        if store is None:
            if settings.order_store_backend == "database":
                store = DatabaseOrderStore(session_factory)
            else:
                store = InMemoryOrderStore()
        sink = notification_sink
        if sink is None:
            if settings.notification_backend == "outbox":
                sink = OutboxNotificationSink(session_factory)
            else:
                sink = LoggingNotificationSink()
        backend_gateway = gateway or RequestGateway.from_settings(settings)
        dispatcher = None
        if isinstance(sink, OutboxNotificationSink):
            dispatcher = OutboxDispatcher(
                sink.session_factory,
                outbox_delivery_sink or LoggingNotificationSink(),
                interval_seconds=settings.outbox_dispatch_interval_seconds,
            )

        application.state.settings = settings
        application.state.gateway = backend_gateway
        application.state.verifier = WebhookVerifier.from_settings(settings)
        application.state.webhook_log = WebhookLog(settings.webhook_log_max_entries)
        application.state.outbox_dispatcher = dispatcher
        application.state.orchestrator = SigningOrchestrator(
            backend_gateway,
            store,
            sink,
            title_max_length=settings.signing_title_max_length,
        )

        await backend_gateway.start()
        if dispatcher is not None:
            await dispatcher.start()
        logger.info(
            "application.startup",
            environment=settings.environment,
            order_store=type(store).__name__,
            notifications=type(sink).__name__,
            webhook_verification=application.state.verifier.enabled,
        )
        try:
            yield
        finally:
            if dispatcher is not None:
                await dispatcher.stop()
            await backend_gateway.stop()
            if engine is not None:
                await engine.dispose()
            logger.info("application.shutdown")

    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.include_router(health.router)
    application.include_router(signing.router)
    application.include_router(webhooks.router)
    application.include_router(events.router)
    register_exception_handlers(application)
    return application


app = create_application()
