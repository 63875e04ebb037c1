"""Tests for engine creation and table setup."""

import pytest
from sqlalchemy import inspect, text

import notisync.db as db
from notisync.db import create_db_and_tables, create_db_engine


class TestCreateDbAndTables:
    def test_no_engine_at_import_time(self):
        assert not hasattr(db, "engine")

    def test_engine_is_required(self):
        with pytest.raises(TypeError):
            create_db_and_tables()

    def test_creates_state_tables_on_given_engine(self, tmp_path):
        engine = create_db_engine(f"sqlite:///{tmp_path / 'state.db'}")

        create_db_and_tables(engine)

        tables = set(inspect(engine).get_table_names())
        assert {"circuitbreakerstate", "keyvalueentry"} <= tables
        engine.dispose()

    def test_sqlite_file_uses_wal(self, tmp_path):
        engine = create_db_engine(f"sqlite:///{tmp_path / 'state.db'}")

        with engine.connect() as conn:
            mode = conn.execute(text("PRAGMA journal_mode")).scalar()

        assert mode == "wal"
        engine.dispose()
