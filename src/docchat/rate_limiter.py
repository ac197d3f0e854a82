"""
Per-user request admission over a fixed window.
Soft, best-effort guard for the chat entry point; state is process-local.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from .observability import get_logger

logger = get_logger(__name__)


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass
class RateLimitRecord:
    count: int
    window_start: float


class RateLimiter:
    """
    Resets a user's record once `now - window_start` exceeds the window; otherwise
    counts admissions up to `limit` and refuses the rest without incrementing.
    """

    def __init__(
        self,
        limit: int = 100,
        window_ms: int = 900_000,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = int(limit)
        self.window_ms = int(window_ms)
        self._clock = clock
        self._lock = threading.Lock()
        self._records: dict[str, RateLimitRecord] = {}

    def admit(self, user_id: str) -> bool:
        now = self._clock()
        key = str(user_id)
        with self._lock:
            record = self._records.get(key)
            if record is None or now - record.window_start > self.window_ms:
                self._records[key] = RateLimitRecord(count=1, window_start=now)
                return True
            if record.count >= self.limit:
                logger.warning("rate_limit_rejected", user_id=key, count=record.count, limit=self.limit)
                return False
            record.count += 1
            return True

    def snapshot(self, user_id: str) -> RateLimitRecord | None:
        with self._lock:
            record = self._records.get(str(user_id))
            return RateLimitRecord(record.count, record.window_start) if record else None

    def reset(self):
        with self._lock:
            self._records.clear()
