"""Integration test: the alembic revision builds the same schema as the models."""

from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from meterbill.models import Base

MIGRATIONS = Path(__file__).resolve().parents[2] / "meterbill" / "migrations"


@pytest.mark.integration
def test_upgrade_creates_all_tables(tmp_path):
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    config = Config()
    config.set_main_option("script_location", str(MIGRATIONS))
    config.set_main_option("sqlalchemy.url", url)

    command.upgrade(config, "head")

    engine = create_engine(url)
    try:
        inspector = inspect(engine)
        tables = set(inspector.get_table_names())
        assert set(Base.metadata.tables) <= tables
        for name, table in Base.metadata.tables.items():
            migrated = {column["name"] for column in inspector.get_columns(name)}
            assert migrated == set(table.columns.keys()), name
        indexes = {index["name"] for index in inspector.get_indexes("bills")}
        assert "uq_bill_account_period_live" in indexes
    finally:
        engine.dispose()
