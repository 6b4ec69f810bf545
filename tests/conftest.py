from __future__ import annotations

import re
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from escalation.metrics import MetricsRegistry, register_default_metrics
from escalation.tickets.models import Actor, IssueCategory, IssueDate, IssueDateMode, TicketSubmission
from escalation.tickets.notifications import NotificationDispatcher, default_hooks
from escalation.tickets.repository import TicketRepository
from escalation.tickets.roles import Role
from escalation.tickets.service import TicketService


class FrozenClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


ADMIN = Actor(user_id="admin-1", role=Role.SUPER_ADMIN, name="Asha Admin")
TICKET_ADMIN = Actor(user_id="tadmin-1", role=Role.TICKET_ADMIN, name="Tariq Admin")
RESOLVER = Actor(user_id="resolver-1", role=Role.RESOLVER, name="Ravi Resolver")
APPROVER = Actor(user_id="approver-1", role=Role.APPROVER, name="Priya Approver")
INVIGILATOR = Actor(user_id="invig-1", role=Role.INVIGILATOR, name="Imran Invigilator")
ANONYMOUS = Actor(user_id="anonymous", role=Role.ANONYMOUS, name="Anonymous")

TICKET_NUMBER = re.compile(r"^AWGN-\d{4}-[A-Z0-9]{6}$")


def make_submission(**overrides) -> TicketSubmission:
    values = {
        "category": IssueCategory.PAYMENT_DELAY,
        "description": "Payment for the March session has not arrived",
        "issue_date": IssueDate(mode=IssueDateMode.SINGLE, day=date(2024, 2, 20)),
        "centre_code": "DEL-042",
        "city": "Delhi",
    }
    values.update(overrides)
    return TicketSubmission(**values)


@pytest_asyncio.fixture
async def engine() -> AsyncEngine:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def repository(session_factory: async_sessionmaker, engine: AsyncEngine) -> TicketRepository:
    return TicketRepository(session_factory, engine=engine)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def metrics() -> MetricsRegistry:
    registry = MetricsRegistry()
    register_default_metrics(registry)
    return registry


@pytest.fixture
def notifier() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def dispatcher(notifier: AsyncMock, metrics: MetricsRegistry) -> NotificationDispatcher:
    return NotificationDispatcher(default_hooks(notifier), timeout=1.0, metrics=metrics)


@pytest.fixture
def service(
    repository: TicketRepository,
    dispatcher: NotificationDispatcher,
    clock: FrozenClock,
    metrics: MetricsRegistry,
) -> TicketService:
    return TicketService(
        repository,
        dispatcher=dispatcher,
        clock=clock,
        metrics=metrics,
        operations_user_id="ops-desk",
    )

