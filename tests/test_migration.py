from __future__ import annotations

import importlib.util
from pathlib import Path

from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import create_engine, inspect as sa_inspect

from escalation.db.models import TicketEventTable, TicketTable

MIGRATION = (
    Path(__file__).resolve().parents[1] / "infra" / "alembic" / "versions" / "20240301_000001_escalation_schema.py"
)


def _load_migration():
    spec = importlib.util.spec_from_file_location("escalation_schema_migration", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _run(step) -> set[str]:
    engine = create_engine("sqlite://")
    with engine.begin() as connection:
        context = MigrationContext.configure(connection)
        with Operations.context(context):
            step(connection)
        return set(sa_inspect(connection).get_table_names())


def test_upgrade_creates_escalation_tables():
    migration = _load_migration()

    tables = _run(lambda connection: migration.upgrade())

    assert tables == {"tickets", "ticket_assignees", "ticket_comments", "ticket_events", "users"}


def test_upgrade_matches_model_columns():
    migration = _load_migration()
    engine = create_engine("sqlite://")
    with engine.begin() as connection:
        with Operations.context(MigrationContext.configure(connection)):
            migration.upgrade()
        inspector = sa_inspect(connection)
        ticket_columns = {column["name"] for column in inspector.get_columns("tickets")}
        event_columns = {column["name"] for column in inspector.get_columns("ticket_events")}

    assert ticket_columns == set(TicketTable.__table__.columns.keys())
    assert event_columns == set(TicketEventTable.__table__.columns.keys())


def test_downgrade_drops_everything():
    migration = _load_migration()

    def round_trip(connection):
        migration.upgrade()
        migration.downgrade()

    assert _run(round_trip) == set()
