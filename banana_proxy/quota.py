from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, timedelta
from threading import Lock
from typing import Callable, NamedTuple

logger = logging.getLogger(__name__)


def utc_day(ts: float | None = None) -> str:
    value = ts if ts is not None else time.time()
    return time.strftime("%Y-%m-%d", time.gmtime(value))


@dataclass
class QuotaRecord:
    client_key: str
    day: str
    count: int


class QuotaUsage(NamedTuple):
    day: str
    used: int
    limit: int
    remaining: int


class QuotaStore:
    def __init__(
        self,
        daily_limit: int,
        retention_days: int = 2,
        clock: Callable[[], float] = time.time,
    ):
        if daily_limit <= 0:
            raise ValueError("daily_limit must be positive")
        self.daily_limit = daily_limit
        self.retention_days = max(1, retention_days)
        self._clock = clock
        self._lock = Lock()
        self._records: dict[str, QuotaRecord] = {}
        self._last_day = utc_day(clock())

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _evict_locked(self, today: str) -> int:
        cutoff = (date.fromisoformat(today) - timedelta(days=self.retention_days)).isoformat()
        stale = [key for key, record in self._records.items() if record.day <= cutoff]
        for key in stale:
            del self._records[key]
        return len(stale)

    def _roll_day_locked(self, today: str) -> None:
        if today == self._last_day:
            return
        self._last_day = today
        evicted = self._evict_locked(today)
        if evicted:
            logger.info("Evicted %s stale quota records", evicted)

    def check_and_consume(self, client_key: str) -> bool:
        with self._lock:
            today = utc_day(self._clock())
            self._roll_day_locked(today)

            record = self._records.get(client_key)
            if record is None or record.day != today:
                self._records[client_key] = QuotaRecord(client_key=client_key, day=today, count=1)
                return True

            if record.count >= self.daily_limit:
                return False

            record.count += 1
            return True

    def usage(self, client_key: str) -> QuotaUsage:
        with self._lock:
            today = utc_day(self._clock())
            record = self._records.get(client_key)
            used = record.count if record is not None and record.day == today else 0
            return QuotaUsage(
                day=today,
                used=used,
                limit=self.daily_limit,
                remaining=max(0, self.daily_limit - used),
            )

    def evict_stale(self) -> int:
        with self._lock:
            return self._evict_locked(utc_day(self._clock()))
