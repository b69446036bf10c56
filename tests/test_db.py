"""Tests for db.py module."""

from pathlib import Path

import pytest
from sqlalchemy import inspect

from variant_release import db
from variant_release.db import create_all_tables, get_engine, get_session, get_session_factory
from variant_release.releases.models import ReleaseRecord


class TestEngine:
    """Tests for get_engine and create_all_tables."""

    def test_sqlite_parent_created(self, tmp_path: Path) -> None:
        """A SQLite file URL gets its directory created."""
        engine = get_engine(f"sqlite:///{tmp_path}/nested/registry.db")
        create_all_tables(engine)

        assert (tmp_path / "nested" / "registry.db").exists()
        tables = inspect(engine).get_table_names()
        assert ReleaseRecord.__tablename__ in tables

    def test_module_surface(self) -> None:
        """Only registry helpers are exported."""
        assert db.__all__ == [
            "Base",
            "create_all_tables",
            "get_engine",
            "get_session",
            "get_session_factory",
        ]


class TestGetSession:
    """Tests for get_session."""

    def test_rollback_on_error(self) -> None:
        """Errors roll back the transaction and propagate."""
        engine = get_engine("sqlite:///:memory:")
        create_all_tables(engine)
        factory = get_session_factory(engine)

        with pytest.raises(RuntimeError):
            with get_session(factory) as session:
                session.add(
                    ReleaseRecord(
                        version="1.0.0",
                        project="wallet",
                        status="complete",
                        fingerprint="sha256:" + "0" * 64,
                        manifest={},
                        sink="dir",
                    )
                )
                session.flush()
                raise RuntimeError("boom")

        with get_session(factory) as session:
            assert session.query(ReleaseRecord).count() == 0
