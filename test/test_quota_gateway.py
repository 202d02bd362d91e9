import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path

import pytest
from conftest import FixedClock

from ire.domain.errors import AtomicIncrementUnavailable, PersistenceError, ValidationError
from ire.repositories.sqlite_repo import SqliteRepository
from ire.services.quota_service import QuotaGateway


def _gateway(tmp_path: Path, repo_cls=SqliteRepository, now=datetime(2026, 3, 15, 9, 30)):
    repo = repo_cls(tmp_path / "usage.db")
    repo.init_db()
    clock = FixedClock(now)
    return repo, clock, QuotaGateway(repo, clock=clock)


def test_limit_allows_below_and_refuses_at_limit(tmp_path: Path):
    _repo, _clock, quota = _gateway(tmp_path)

    first = quota.check_limit("gemini", 3)
    assert (first.allowed, first.current_count, first.remaining) == (True, 0, 3)

    for _ in range(3):
        assert quota.increment("gemini").success

    exhausted = quota.check_limit("gemini", 3)
    assert (exhausted.allowed, exhausted.current_count, exhausted.remaining) == (False, 3, 0)


def test_increment_updates_monthly_and_daily_windows(tmp_path: Path):
    repo, _clock, quota = _gateway(tmp_path)

    result = quota.increment("gemini", "gemini-daily")
    quota.increment("gemini", "gemini-daily")

    assert result.success and result.new_count == 1
    assert repo.get_usage_count("gemini", "2026-03") == 2
    assert repo.get_usage_count("gemini-daily", "2026-03-15") == 2
    assert quota.check_limit("gemini-daily", 50, "daily").current_count == 2
    assert quota.get_usage("gemini") == 2
    assert quota.get_usage("gemini", "2026-02") == 0


def test_windows_roll_over_with_the_clock(tmp_path: Path):
    _repo, clock, quota = _gateway(tmp_path)
    quota.increment("gemini", "gemini-daily")

    clock.now = datetime(2026, 3, 16, 0, 5)
    assert quota.check_limit("gemini-daily", 50, "daily").current_count == 0
    assert quota.check_limit("gemini", 1500, "monthly").current_count == 1

    clock.now = datetime(2026, 4, 1, 0, 0)
    assert quota.check_limit("gemini", 1500, "monthly").current_count == 0


def test_unknown_period_is_rejected(tmp_path: Path):
    _repo, _clock, quota = _gateway(tmp_path)
    with pytest.raises(ValidationError):
        quota.check_limit("gemini", 10, "weekly")


def test_concurrent_increments_are_not_lost(tmp_path: Path):
    repo, _clock, quota = _gateway(tmp_path)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: quota.increment("cloud-vision", "cloud-vision-daily"), range(30)))

    assert all(r.success for r in results)
    assert sorted(r.new_count for r in results) == list(range(1, 31))
    assert repo.get_usage_count("cloud-vision", "2026-03") == 30
    assert repo.get_usage_count("cloud-vision-daily", "2026-03-15") == 30


class NoUpsertRepo(SqliteRepository):
    def increment_usage_atomic(self, api_name, period_key):
        raise AtomicIncrementUnavailable("no upsert")


def test_fallback_increment_is_used_and_logged(tmp_path: Path, caplog):
    repo, _clock, quota = _gateway(tmp_path, repo_cls=NoUpsertRepo)
    caplog.set_level(logging.WARNING, logger="ire.extraction")

    quota.increment("gemini")
    result = quota.increment("gemini")

    assert result.success and result.new_count == 2
    assert repo.get_usage_count("gemini", "2026-03") == 2
    assert sum("quota_fallback_increment" in r.getMessage() for r in caplog.records) == 2


class BrokenUsageRepo(SqliteRepository):
    def increment_usage_atomic(self, api_name, period_key):
        raise PersistenceError("Database write failed: disk full")


def test_increment_failure_is_reported_not_raised(tmp_path: Path, caplog):
    _repo, _clock, quota = _gateway(tmp_path, repo_cls=BrokenUsageRepo)
    caplog.set_level(logging.ERROR, logger="ire.extraction")

    result = quota.increment("gemini", "gemini-daily")

    assert not result.success
    assert "disk full" in result.error
    assert any("quota_increment_failed" in r.getMessage() for r in caplog.records)
