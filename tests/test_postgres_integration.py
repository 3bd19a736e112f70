import os
from datetime import datetime, timezone
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import IntegrityError


def _test_pg_url() -> str | None:
    return os.getenv("TEST_POSTGRES_DATABASE_URL")


@pytest.mark.integration
def test_postgres_connection_and_core_tables():
    url = _test_pg_url()
    if not url:
        pytest.skip("Set TEST_POSTGRES_DATABASE_URL to run Postgres integration tests.")

    engine = create_engine(url, pool_pre_ping=True)
    with engine.connect() as conn:
        assert conn.execute(text("SELECT 1")).scalar_one() == 1

    table_names = set(inspect(engine).get_table_names())
    assert "customers" in table_names
    assert "segment_members" in table_names
    assert "communication_logs" in table_names


@pytest.mark.integration
def test_active_tracking_record_index_on_postgres():
    url = _test_pg_url()
    if not url:
        pytest.skip("Set TEST_POSTGRES_DATABASE_URL to run Postgres integration tests.")

    engine = create_engine(url, pool_pre_ping=True)
    now = datetime.now(timezone.utc)
    insert = text(
        "INSERT INTO communication_logs (id, campaign_id, customer_id, message, status, created_at) "
        "VALUES (:id, :campaign_id, 'pg-customer', 'Hi', :status, :created_at)"
    )
    with engine.connect() as conn:
        trans = conn.begin()
        try:
            conn.execute(
                text(
                    "INSERT INTO campaigns (id, name, message_content, status, audience_size, sent_count, failed_count, is_active) "
                    "VALUES ('pg-campaign', 'pg', 'Hi', 'running', 1, 0, 0, true)"
                )
            )
            conn.execute(insert, {"id": "pg-log-1", "campaign_id": "pg-campaign", "status": "FAILED", "created_at": now})
            conn.execute(insert, {"id": "pg-log-2", "campaign_id": "pg-campaign", "status": "PENDING", "created_at": now})
            with pytest.raises(IntegrityError):
                with conn.begin_nested():
                    conn.execute(insert, {"id": "pg-log-3", "campaign_id": "pg-campaign", "status": "SENT", "created_at": now})
        finally:
            trans.rollback()


@pytest.mark.integration
def test_alembic_upgrade_downgrade_smoke():
    url = _test_pg_url()
    if not url:
        pytest.skip("Set TEST_POSTGRES_DATABASE_URL to run migration smoke tests.")
    if os.getenv("ALLOW_DESTRUCTIVE_MIGRATION_TESTS") != "1":
        pytest.skip("Set ALLOW_DESTRUCTIVE_MIGRATION_TESTS=1 for downgrade smoke test.")

    project_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(project_root / "alembic.ini"))

    previous_database_url = os.environ.get("DATABASE_URL")
    os.environ["DATABASE_URL"] = url
    try:
        command.upgrade(alembic_cfg, "head")
        command.downgrade(alembic_cfg, "base")
        command.upgrade(alembic_cfg, "head")
    finally:
        if previous_database_url is None:
            os.environ.pop("DATABASE_URL", None)
        else:
            os.environ["DATABASE_URL"] = previous_database_url
