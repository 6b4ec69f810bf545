import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from escalation.api.routes import metrics, ping, tickets
from escalation.core.config import Settings, get_settings
from escalation.core.logging import configure_logging, init_tracer, shutdown_tracer
from escalation.metrics import metrics_registry
from escalation.tickets.identity import UserTableIdentityProvider
from escalation.tickets.notifications import (
    LoggingNotifier,
    NotificationDispatcher,
    Notifier,
    WebhookNotifier,
    default_hooks,
)
from escalation.tickets.repository import TicketRepository
from escalation.tickets.service import TicketService

logger = logging.getLogger(__name__)


def _to_asyncpg_dsn(dsn: str) -> str:
    """Ensure the SQLAlchemy DSN uses the asyncpg driver."""

    if dsn.startswith("postgresql+asyncpg://"):
        return dsn
    if dsn.startswith("postgresql://"):
        return "postgresql+asyncpg://" + dsn[len("postgresql://") :]
    return dsn


def build_notifier(settings: Settings) -> Notifier:
    if settings.notification_webhook_url:
        return WebhookNotifier(settings.notification_webhook_url, timeout=settings.notification_timeout_seconds)
    return LoggingNotifier()


def build_ticket_service(
    settings: Settings,
    repository: TicketRepository,
    *,
    notifier: Notifier,
    identity: UserTableIdentityProvider | None = None,
) -> TicketService:
    dispatcher = NotificationDispatcher(
        default_hooks(notifier),
        timeout=settings.notification_timeout_seconds,
        metrics=metrics_registry,
    )
    return TicketService(
        repository,
        dispatcher=dispatcher,
        identity=identity,
        metrics=metrics_registry,
        operations_user_id=settings.operations_user_id,
        ticket_number_prefix=settings.ticket_number_prefix,
        link_base_url=settings.ticket_link_base_url,
        store_timeout=settings.store_timeout_seconds,
        allow_staff_severity_change=settings.allow_staff_severity_change,
        auto_resolve_after=timedelta(days=settings.auto_resolve_after_days),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover - executed by framework
    settings = get_settings()
    app_logger = configure_logging(settings)
    tracer_provider = init_tracer(settings)

    app.state.logger = app_logger
    app.state.tracer_provider = tracer_provider
    app.state.ticket_service = None

    notifier = build_notifier(settings)
    db_engine = create_async_engine(_to_asyncpg_dsn(settings.database_url), future=True)
    session_factory = async_sessionmaker(db_engine, expire_on_commit=False)
    try:
        ticket_repository = TicketRepository(session_factory, engine=db_engine)
        await ticket_repository.ensure_schema()
        app.state.ticket_service = build_ticket_service(
            settings,
            ticket_repository,
            notifier=notifier,
            identity=UserTableIdentityProvider(session_factory),
        )
        app.state.db_engine = db_engine
        app.state.db_session_factory = session_factory
    except Exception:  # pragma: no cover - service initialisation best effort
        logger.exception("Ticket service initialisation failed")
        app.state.ticket_service = None
    try:
        yield
    finally:
        await db_engine.dispose()
        if isinstance(notifier, WebhookNotifier):
            await notifier.aclose()
        shutdown_tracer(tracer_provider)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.include_router(ping.router)
    app.include_router(tickets.router)
    app.include_router(metrics.router)
    return app


app = create_app()
