"""
Tests that the Alembic migrations build the schema the models describe.
"""
from pathlib import Path

import pytest
from alembic import command
from alembic.autogenerate import compare_metadata
from alembic.config import Config
from alembic.migration import MigrationContext
from sqlalchemy import create_engine, inspect

from models import Base

pytestmark = pytest.mark.unit

ALEMBIC_DIR = Path(__file__).resolve().parent.parent / "alembic"

STRUCTURAL_OPS = {
    "add_table", "remove_table",
    "add_column", "remove_column",
    "add_index", "remove_index",
    "add_constraint", "remove_constraint",
}


@pytest.fixture
def migrated_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    config = Config()
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    command.upgrade(config, "head")
    return url


def test_migrations_match_models(migrated_url):
    engine = create_engine(migrated_url)
    try:
        with engine.connect() as conn:
            diffs = compare_metadata(MigrationContext.configure(conn), Base.metadata)
    finally:
        engine.dispose()

    structural = [d for d in diffs if isinstance(d, tuple) and d[0] in STRUCTURAL_OPS]
    assert structural == []


def test_payment_reference_has_one_unique_index(migrated_url):
    engine = create_engine(migrated_url)
    try:
        inspector = inspect(engine)
        indexes = [i for i in inspector.get_indexes("delivery_records") if i["column_names"] == ["payment_reference"]]
        constraints = inspector.get_unique_constraints("delivery_records")
    finally:
        engine.dispose()

    assert [(i["name"], bool(i["unique"])) for i in indexes] == [("ix_delivery_records_payment_reference", True)]
    assert constraints == []
