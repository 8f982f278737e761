"""Tests for database engine configuration."""

from sqlalchemy import text

from market_manager.db.engine import create_db_engine, get_database_url


class TestGetDatabaseUrl:
    """Tests for get_database_url."""

    def test_explicit_path(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "postgresql://ignored/db")
        path = tmp_path / "nested" / "mm.db"

        assert get_database_url(path) == f"sqlite:///{path}"
        assert path.parent.is_dir()

    def test_env_full_url(self, monkeypatch) -> None:
        """A full URL in DATABASE_URL is used as is."""
        monkeypatch.setenv("DATABASE_URL", "postgresql://user@db/market")

        assert get_database_url() == "postgresql://user@db/market"

    def test_env_sqlite_path(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("DATABASE_URL", str(tmp_path / "env.db"))

        assert get_database_url() == f"sqlite:///{tmp_path / 'env.db'}"


class TestCreateDbEngine:
    """Tests for create_db_engine."""

    def test_sqlite_uses_wal(self, tmp_path) -> None:
        """Concurrent dispatchers share the file through WAL with a busy timeout."""
        engine = create_db_engine(tmp_path / "wal.db")
        try:
            with engine.connect() as conn:
                assert conn.execute(text("PRAGMA journal_mode")).scalar() == "wal"
                assert conn.execute(text("PRAGMA busy_timeout")).scalar() == 5000
        finally:
            engine.dispose()
