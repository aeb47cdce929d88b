"""Tests for cache database."""

from datetime import timedelta
from unittest.mock import patch

import duckdb
import pytest

from riverforecast.cache.database import CacheDatabase, schema_statements
from riverforecast.exceptions import StorageError


class TestCacheDatabase:
    """Tests for CacheDatabase."""

    def test_init_creates_tables(self, db):
        """Database initialization creates all required tables."""
        tables = db.conn.execute(
            "SELECT table_name FROM information_schema.tables WHERE table_schema = 'main'"
        ).fetchall()
        table_names = [t[0] for t in tables]

        assert "cache_entries" in table_names
        assert "file_cache" in table_names
        assert "forecast_cache" in table_names
        assert "return_period_cache" in table_names
        assert "fetch_log" in table_names

    def test_every_schema_statement_executes(self):
        """Each schema statement runs on a fresh in-memory connection."""
        conn = duckdb.connect(":memory:")
        try:
            statements = schema_statements()
            for statement in statements:
                conn.execute(statement)
        finally:
            conn.close()

        assert len(statements) == 7
        assert all(s.startswith("CREATE") for s in statements)

    def test_comment_semicolons_ignored(self):
        sql = "-- one; two\nCREATE TABLE a (x INTEGER);\n-- three; four\n"
        assert schema_statements(sql) == ["CREATE TABLE a (x INTEGER)"]

    def test_fresh_store_opens(self, tmp_cache_dir):
        database = CacheDatabase(tmp_cache_dir / "fresh.duckdb")
        try:
            assert database.get_stats()["entry_count"] == 0
        finally:
            database.close()

    def test_no_io_until_first_use(self, tmp_cache_dir):
        """Constructing a CacheDatabase does not create the file."""
        db_path = tmp_cache_dir / "nested" / "lazy.duckdb"
        database = CacheDatabase(db_path)

        assert not db_path.exists()
        database.get_stats()
        assert db_path.exists()
        database.close()

    def test_reopen_keeps_data(self, tmp_cache_dir, clock):
        """Data survives close and reopen."""
        db_path = tmp_cache_dir / "persist.duckdb"
        first = CacheDatabase(db_path, clock=clock)
        first.upsert_forecast("R1", "short_range", '{"a":1}', clock())
        first.close()

        second = CacheDatabase(db_path, clock=clock)
        assert second.fetch_forecast("R1", "short_range") == ('{"a":1}', clock())
        second.close()

    def test_default_cache_dir_next_to_db(self, tmp_cache_dir):
        """Cache directory defaults to files/ beside the database."""
        database = CacheDatabase(tmp_cache_dir / "x.duckdb")
        assert database.cache_dir == tmp_cache_dir / "files"

    def test_now_uses_injected_clock(self, db, clock):
        assert db.now() == clock.now
        clock.advance(hours=1)
        assert db.now() == clock.now


class TestConnectionErrors:
    """Tests for store failures surfacing as StorageError."""

    def test_lock_retry_then_success(self, tmp_cache_dir):
        """Lock contention is retried with backoff."""
        database = CacheDatabase(tmp_cache_dir / "locked.duckdb")
        real_connect = duckdb.connect
        attempts = []

        def flaky_connect(path):
            attempts.append(path)
            if len(attempts) == 1:
                raise duckdb.IOException("Could not set lock on file")
            return real_connect(path)

        with patch("riverforecast.cache.database.duckdb.connect", side_effect=flaky_connect), \
                patch("riverforecast.cache.database.time.sleep") as mock_sleep:
            database.get_stats()

        assert len(attempts) == 2
        mock_sleep.assert_called_once_with(0.5)
        database.close()

    def test_persistent_lock_raises_storage_error(self, tmp_cache_dir):
        database = CacheDatabase(tmp_cache_dir / "locked.duckdb")
        error = duckdb.IOException("Could not set lock on file")

        with patch("riverforecast.cache.database.duckdb.connect", side_effect=error), \
                patch("riverforecast.cache.database.time.sleep"):
            with pytest.raises(StorageError):
                database.get_stats()

    def test_unwritable_location_raises_storage_error(self, tmp_cache_dir):
        """A database path under a regular file cannot be created."""
        blocker = tmp_cache_dir / "blocker"
        blocker.write_text("not a directory")
        database = CacheDatabase(blocker / "db.duckdb")

        with pytest.raises(StorageError):
            database.get_stats()


class TestEntryRows:
    """Tests for generic cache rows."""

    def test_upsert_replaces_row(self, db, clock):
        now = clock()
        db.upsert_entry("k", '"a"', now, now + timedelta(hours=1))
        db.upsert_entry("k", '"b"', now, now + timedelta(hours=2), metadata='{"m":1}')

        row = db.fetch_entry("k")
        assert row[1] == '"b"'
        assert row[3] == now + timedelta(hours=2)
        assert row[4] == '{"m":1}'
        assert db.conn.execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0] == 1

    def test_entry_is_live_respects_expiry(self, db, clock):
        now = clock()
        db.upsert_entry("k", "1", now, now + timedelta(minutes=5))

        assert db.entry_is_live("k", now)
        assert not db.entry_is_live("k", now + timedelta(minutes=5))
        assert not db.entry_is_live("missing", now)

    def test_delete_missing_entry_is_noop(self, db):
        db.delete_entry("missing")
        assert db.fetch_entry("missing") is None


class TestFileRows:
    """Tests for file storage helpers."""

    def test_write_file_unique_names(self, db):
        """Two writes for the same key never share a path."""
        first = db.write_file("tiles/a b", b"one")
        second = db.write_file("tiles/a b", b"two")

        assert first != second
        assert first.parent == db.cache_dir
        assert "/" not in first.name and " " not in first.name
        assert first.read_bytes() == b"one"

    def test_upsert_file_entry_returns_previous_path(self, db, clock):
        now = clock()
        old = db.write_file("k", b"old")
        new = db.write_file("k", b"new")

        assert db.upsert_file_entry("k", old, 3, None, now, now + timedelta(days=1)) is None
        assert db.upsert_file_entry("k", new, 3, None, now, now + timedelta(days=1)) == old

    def test_delete_file_missing_returns_false(self, db):
        assert db.delete_file(db.cache_dir / "never-written") is False

    def test_delete_file_entry_guarded_by_path(self, db, clock):
        """Guarded delete leaves a row that points elsewhere."""
        now = clock()
        path = db.write_file("k", b"x")
        db.upsert_file_entry("k", path, 1, None, now, now + timedelta(days=1))

        assert db.delete_file_entry("k", db.cache_dir / "other") == 0
        assert db.delete_file_entry("k", path) == 1
        assert db.fetch_file_entry("k") is None


class TestForecastRows:
    """Tests for forecast rows."""

    def test_one_row_per_pair(self, db, clock):
        """Writing the same (reach, class) twice keeps one row."""
        db.upsert_forecast("R1", "short_range", '{"v":1}', clock())
        clock.advance(minutes=10)
        db.upsert_forecast("R1", "short_range", '{"v":2}', clock())
        db.upsert_forecast("R1", "medium_range", '{"v":3}', clock())

        count = db.conn.execute(
            "SELECT COUNT(*) FROM forecast_cache WHERE reach_id = 'R1'"
        ).fetchone()[0]
        assert count == 2
        assert db.fetch_forecast("R1", "short_range") == ('{"v":2}', clock())

    def test_delete_forecasts_stored_before(self, db, clock):
        old = clock()
        db.upsert_forecast("R1", "short_range", "{}", old)
        db.upsert_forecast("R2", "short_range", "{}", old + timedelta(hours=3))
        db.upsert_forecast("R3", "long_range", "{}", old)

        deleted = db.delete_forecasts_stored_before("short_range", old + timedelta(hours=1))

        assert deleted == 1
        assert db.fetch_forecast("R1", "short_range") is None
        assert db.fetch_forecast("R2", "short_range") is not None
        assert db.fetch_forecast("R3", "long_range") is not None


class TestReturnPeriodRows:
    """Tests for return-period rows."""

    def test_unit_column_round_trip(self, db, clock):
        db.upsert_return_periods("R1", '{"2":1.0}', "cfs", clock())
        assert db.fetch_return_periods("R1") == ('{"2":1.0}', "cfs", clock())

    def test_null_unit_allowed(self, db, clock):
        """Rows written before unit tagging have no unit."""
        db.conn.execute(
            "INSERT INTO return_period_cache (reach_id, payload, stored_at) VALUES (?, ?, ?)",
            ["R1", '{"2":1.0}', clock()],
        )
        assert db.fetch_return_periods("R1")[1] is None


class TestFetchLog:
    """Tests for fetch logging."""

    def test_log_fetch_success(self, db):
        db.log_fetch(source="short_range", reach_id="R1", status="success", duration_ms=120)

        rows = db.conn.execute("SELECT source, reach_id, status FROM fetch_log").fetchall()
        assert rows == [("short_range", "R1", "success")]

    def test_log_fetch_error(self, db):
        db.log_fetch(
            source="return_period",
            reach_id="R1",
            status="error",
            duration_ms=30000,
            error_message="Timed out",
        )

        row = db.conn.execute("SELECT status, error_message FROM fetch_log").fetchone()
        assert row == ("error", "Timed out")

    def test_latest_fetch_time_ignores_errors(self, db, clock):
        db.log_fetch("short_range", "R1", "success", 10)
        success_time = clock()
        clock.advance(minutes=5)
        db.log_fetch("short_range", "R1", "error", 10, "boom")

        assert db.get_latest_fetch_time() == success_time

    def test_latest_fetch_time_empty(self, db):
        assert db.get_latest_fetch_time() is None


class TestStats:
    """Tests for cache statistics."""

    def test_get_stats_counts(self, db, clock):
        now = clock()
        db.upsert_entry("k", "1", now, now + timedelta(hours=1))
        db.upsert_forecast("R1", "short_range", "{}", now)
        db.upsert_return_periods("R1", '{"2":1.0}', "cms", now)
        db.log_fetch("short_range", "R1", "success", 5)

        stats = db.get_stats()

        assert stats["entry_count"] == 1
        assert stats["file_count"] == 0
        assert stats["forecast_count"] == 1
        assert stats["return_period_count"] == 1
        assert stats["fetch_log_count"] == 1
        assert stats["latest_fetch_time"] == now
        assert stats["db_path"] == str(db.db_path)

    def test_delete_all_rows_keeps_fetch_log(self, db, clock):
        now = clock()
        db.upsert_entry("k", "1", now, now + timedelta(hours=1))
        db.upsert_forecast("R1", "short_range", "{}", now)
        db.log_fetch("short_range", "R1", "success", 5)

        assert db.delete_all_rows() == 2
        assert db.get_stats()["fetch_log_count"] == 1

    def test_storage_size_counts_db_file(self, db):
        db.get_stats()
        db.conn.execute("CHECKPOINT")
        assert db.storage_size_bytes() > 0
