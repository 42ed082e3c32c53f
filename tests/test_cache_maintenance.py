"""Tests for cache maintenance: eviction bounds, orphans, full reset and the schedule."""

import sqlite3
import time

import pytest
from fastapi.testclient import TestClient

from docforge.core.config import settings
from docforge.services.cache_maintenance import CacheMaintenance, CleanupConfig, CleanupScheduler
from tests.conftest import make_entry, make_files

NO_BOUNDS = dict(max_age_days=None, max_size_mb=None, max_entries=None)


def _put_aged(store, clock, *names, days_between=0):
    """Store one entry per name, advancing the clock between puts."""
    entries = []
    for name in names:
        entry = make_entry(repo_url=f"https://github.com/org/{name}", at=clock())
        store.put(entry)
        entries.append(entry)
        clock.advance(days=days_between)
    return entries


class TestAgeBound:

    def test_only_stale_entry_evicted(self, store, clock):
        store.put(make_entry(repo_url="https://github.com/org/a"))
        clock.advance(days=38)
        store.put(make_entry(repo_url="https://github.com/org/b", at=clock()))
        clock.advance(days=2)
        size_a = store.summary("github.com/org/a").size_bytes

        result = CacheMaintenance(store, clock=clock).cleanup(CleanupConfig(max_age_days=30))

        assert result.deleted_repos == ["github.com/org/a"]
        assert result.freed_bytes == size_a
        assert result.remaining_entries == 1
        assert store.get("https://github.com/org/a") is None
        assert store.get("https://github.com/org/b") is not None

    def test_access_refreshes_age(self, store, clock):
        store.put(make_entry(repo_url="https://github.com/org/a"))
        clock.advance(days=29)
        store.get("https://github.com/org/a")
        clock.advance(days=29)

        result = CacheMaintenance(store, clock=clock).cleanup(CleanupConfig(max_age_days=30))
        assert result.deleted_repos == []


class TestCountAndSizeBounds:

    def test_entry_limit_evicts_least_recently_used(self, store, clock):
        _put_aged(store, clock, "a", "b", "c", "d", days_between=1)
        store.get("https://github.com/org/a")  # a becomes most recent

        result = CacheMaintenance(store, clock=clock).cleanup(
            CleanupConfig(**{**NO_BOUNDS, "max_entries": 2})
        )

        assert result.deleted_repos == ["github.com/org/b", "github.com/org/c"]
        assert {e.repo_id for e in store.list()} == {"github.com/org/a", "github.com/org/d"}

    def test_size_limit(self, store, clock):
        _put_aged(store, clock, "a", "b", "c", days_between=1)
        sizes = [e.size_bytes for e in store.list()]
        budget_mb = (sum(sizes) - 1) / (1024 * 1024)

        result = CacheMaintenance(store, clock=clock).cleanup(
            CleanupConfig(**{**NO_BOUNDS, "max_size_mb": budget_mb})
        )

        assert result.deleted_repos == ["github.com/org/a"]
        assert result.remaining_bytes <= budget_mb * 1024 * 1024

    def test_within_bounds_is_a_no_op(self, store, clock):
        _put_aged(store, clock, "a", "b")
        result = CacheMaintenance(store, clock=clock).cleanup(CleanupConfig())
        assert result.deleted_repos == []
        assert result.freed_bytes == 0
        assert result.remaining_entries == 2

    def test_min_entries_to_keep_caps_evictions(self, store, clock):
        _put_aged(store, clock, "a", "b", "c")
        clock.advance(days=100)

        result = CacheMaintenance(store, clock=clock).cleanup(
            CleanupConfig(max_age_days=30, min_entries_to_keep=1)
        )

        assert len(result.deleted_repos) == 2
        assert result.remaining_entries == 1


class TestDryRunAndCorruption:

    def test_dry_run_reports_without_deleting(self, store, clock):
        _put_aged(store, clock, "a", "b")
        clock.advance(days=60)

        result = CacheMaintenance(store, clock=clock).cleanup(CleanupConfig(max_age_days=30, dry_run=True))

        assert result.dry_run is True
        assert len(result.deleted_repos) == 2
        assert result.freed_bytes > 0
        assert len(store.list()) == 2

    def test_corrupt_entries_evicted_first(self, store, clock, db_engine):
        _put_aged(store, clock, "a", "b", "c", days_between=1)
        conn = sqlite3.connect(db_engine.url.database)
        conn.execute(
            "UPDATE cached_units SET content = 'tampered' WHERE repo_id = 'github.com/org/c'"
        )
        conn.commit()
        conn.close()
        assert store.get("https://github.com/org/c") is None

        plan = CacheMaintenance(store, clock=clock).plan_evictions(
            store.list(), CleanupConfig(**{**NO_BOUNDS, "max_entries": 1})
        )

        assert [(e.repo_id, reason) for e, reason in plan][0] == ("github.com/org/c", "corrupt")
        assert len(plan) == 2

    def test_lock_contention_recorded_not_raised(self, store, clock):
        _put_aged(store, clock, "a", "b")
        clock.advance(days=60)
        maintenance = CacheMaintenance(store, clock=clock, lock_timeout=0.05)

        with store.locked("github.com/org/a"):
            result = maintenance.cleanup(CleanupConfig(max_age_days=30))

        assert result.deleted_repos == ["github.com/org/b"]
        assert len(result.errors) == 1
        assert result.errors[0].startswith("github.com/org/a")
        assert result.remaining_entries == 1


class TestOrphansAndClear:

    def _insert_orphan(self, db_engine, repo_id):
        conn = sqlite3.connect(db_engine.url.database)
        conn.execute(
            "INSERT INTO file_fingerprints (repo_id, path, content_hash, size, last_seen_at) "
            "VALUES (?, 'lost.py', 'abc', 3, '2026-01-01 12:00:00')",
            (repo_id,),
        )
        conn.commit()
        conn.close()

    def test_orphan_dry_run_then_removal(self, store, clock, db_engine):
        store.put(make_entry(files=make_files(2)))
        self._insert_orphan(db_engine, "github.com/org/gone")
        maintenance = CacheMaintenance(store, clock=clock)

        preview = maintenance.cleanup_orphans(dry_run=True)
        assert preview.orphans == {"github.com/org/gone": 1}
        assert preview.removed_rows == 0

        result = maintenance.cleanup_orphans()
        assert result.removed_rows == 1
        assert store.find_orphans() == {}
        assert store.get("https://github.com/test/repo") is not None

    def test_clear_all(self, store, clock, db_engine):
        _put_aged(store, clock, "a", "b")
        self._insert_orphan(db_engine, "github.com/org/gone")

        result = CacheMaintenance(store, clock=clock).clear_all()

        assert sorted(result.deleted_repos) == ["github.com/org/a", "github.com/org/b"]
        assert result.errors == []
        assert store.list() == []
        assert store.find_orphans() == {}


class TestCleanupScheduler:

    def _wait_for(self, condition, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if condition():
                return True
            time.sleep(0.01)
        return False

    def test_runs_on_start_and_repeats_until_stopped(self, store, clock):
        store.put(make_entry(repo_url="https://github.com/org/a"))
        clock.advance(days=40)
        scheduler = CleanupScheduler(
            CacheMaintenance(store), lambda: CleanupConfig(max_age_days=30), interval_seconds=0.05,
        )

        scheduler.start()
        try:
            assert self._wait_for(lambda: scheduler.runs >= 2)
            assert scheduler.running
            assert store.list() == []
            assert scheduler.last_result.errors == []
        finally:
            scheduler.stop()

        assert not scheduler.running
        runs = scheduler.runs
        time.sleep(0.2)
        assert scheduler.runs == runs

    def test_interval_must_be_positive(self, store):
        with pytest.raises(ValueError):
            CleanupScheduler(CacheMaintenance(store), CleanupConfig, interval_seconds=0)

    def test_config_from_settings(self):
        config = CleanupConfig.from_settings(settings)
        assert config.max_age_days == settings.cleanup_max_age_days
        assert config.max_entries == settings.cleanup_max_entries
        assert config.dry_run is False

    def test_app_lifespan_starts_and_stops_scheduler(self, store, monkeypatch):
        from docforge.api.deps import get_cache_store
        from docforge.main import app

        monkeypatch.setattr(settings, "cleanup_interval_hours", 1.0)
        app.dependency_overrides[get_cache_store] = lambda: store
        try:
            with TestClient(app):
                scheduler = app.state.cleanup_scheduler
                assert scheduler.running
                assert scheduler.interval_seconds == 3600
                assert self._wait_for(lambda: scheduler.runs == 1)
            assert not scheduler.running
        finally:
            app.dependency_overrides.clear()

    def test_disabled_when_interval_is_zero(self, client):
        from docforge.main import app

        assert app.state.cleanup_scheduler is None
