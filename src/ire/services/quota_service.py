from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Optional

from ire.domain.errors import AppError, AtomicIncrementUnavailable, ValidationError
from ire.domain.models import UsageCheck, UsageIncrement
from ire.repositories.contracts import UsageRepository

log = logging.getLogger("ire.extraction")

PERIOD_FORMATS = {
    "monthly": "%Y-%m",
    "daily": "%Y-%m-%d",
}


class QuotaGateway:
    """Per-API usage counters keyed by (api_name, period key) in the store.

    The daily window of an API is tracked under its own logical name
    (e.g. ``gemini-daily``) with a ``YYYY-MM-DD`` key, the monthly window
    under the base name with a ``YYYY-MM`` key.
    """

    def __init__(self, repo: UsageRepository, clock: Callable[[], datetime] = datetime.now):
        self.repo = repo
        self.clock = clock

    def period_key(self, period: str) -> str:
        fmt = PERIOD_FORMATS.get(period)
        if fmt is None:
            raise ValidationError(f"Unknown quota period: {period}")
        return self.clock().strftime(fmt)

    def check_limit(self, api_name: str, limit: int, period: str = "monthly") -> UsageCheck:
        current = self.repo.get_usage_count(api_name, self.period_key(period))
        return UsageCheck(
            allowed=current < int(limit),
            current_count=current,
            limit=int(limit),
            remaining=max(0, int(limit) - current),
        )

    def get_usage(self, api_name: str, year_month: Optional[str] = None) -> int:
        return self.repo.get_usage_count(api_name, year_month or self.period_key("monthly"))

    def _increment_one(self, api_name: str, period: str) -> UsageIncrement:
        key = self.period_key(period)
        try:
            try:
                new_count = self.repo.increment_usage_atomic(api_name, key)
            except AtomicIncrementUnavailable:
                log.warning("quota_fallback_increment api=%s key=%s", api_name, key)
                new_count = self.repo.increment_usage_read_modify_write(api_name, key)
        except AppError as e:
            log.error("quota_increment_failed api=%s key=%s error=%s", api_name, key, e)
            return UsageIncrement(success=False, new_count=0, error=str(e))
        return UsageIncrement(success=True, new_count=int(new_count))

    def increment(self, api_name: str, daily_api_name: Optional[str] = None) -> UsageIncrement:
        """Bump the monthly counter (and the daily one when named) concurrently.

        Never raises; the monthly outcome is returned.
        """
        if daily_api_name is None:
            return self._increment_one(api_name, "monthly")

        with ThreadPoolExecutor(max_workers=2) as pool:
            monthly = pool.submit(self._increment_one, api_name, "monthly")
            daily = pool.submit(self._increment_one, daily_api_name, "daily")
            daily_result = daily.result()
            monthly_result = monthly.result()

        if not daily_result.success:
            log.warning("quota_daily_increment_failed api=%s error=%s", daily_api_name, daily_result.error)
        return monthly_result
