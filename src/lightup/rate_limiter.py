import asyncio
import logging
import math
import threading
import time
from collections import deque
from typing import Deque, Dict

from .config import RateLimitSettings
from .errors import RateLimited

logger = logging.getLogger(__name__)

MINUTE_S = 60.0
HOUR_S = 3600.0


class SlidingWindowLimiter:
  """Per-credential request caps over trailing one-minute and one-hour windows."""

  def __init__(self, requests_per_minute: int = 60, requests_per_hour: int = 1000):
    self.requests_per_minute = max(1, requests_per_minute)
    self.requests_per_hour = max(1, requests_per_hour)
    self._timestamps: Dict[str, Deque[float]] = {}
    self._lock = threading.Lock()

  @classmethod
  def from_settings(cls, settings: RateLimitSettings) -> "SlidingWindowLimiter":
    return cls(settings.requests_per_minute, settings.requests_per_hour)

  @staticmethod
  def _prune(entries: Deque[float], now: float) -> None:
    cutoff = now - HOUR_S
    while entries and entries[0] <= cutoff:
      entries.popleft()

  @staticmethod
  def _since(entries: Deque[float], cutoff: float) -> list[float]:
    recent: list[float] = []
    for stamp in reversed(entries):
      if stamp <= cutoff:
        break
      recent.append(stamp)
    recent.reverse()
    return recent

  def check(self, credential: str, *, now: float | None = None) -> None:
    current = time.time() if now is None else now
    with self._lock:
      entries = self._timestamps.get(credential)
      if entries is None:
        entries = deque()
        self._timestamps[credential] = entries
      self._prune(entries, current)
      in_minute = self._since(entries, current - MINUTE_S)
      if in_minute and len(in_minute) >= self.requests_per_minute:
        raise RateLimited("minute", self._retry_after(in_minute[0] + MINUTE_S, current))
      if entries and len(entries) >= self.requests_per_hour:
        raise RateLimited("hour", self._retry_after(entries[0] + HOUR_S, current))
      entries.append(current)

  @staticmethod
  def _retry_after(frees_at: float, now: float) -> int:
    return max(int(math.ceil(frees_at - now)), 1)

  def sweep(self, *, now: float | None = None) -> int:
    current = time.time() if now is None else now
    removed = 0
    with self._lock:
      for credential in list(self._timestamps):
        entries = self._timestamps[credential]
        self._prune(entries, current)
        if not entries:
          del self._timestamps[credential]
          removed += 1
    return removed

  def __len__(self) -> int:
    return len(self._timestamps)

  def __contains__(self, credential: object) -> bool:
    return credential in self._timestamps

  async def sweep_forever(self, interval_s: float) -> None:
    while True:
      await asyncio.sleep(interval_s)
      removed = self.sweep()
      if removed:
        logger.debug("rate_limiter sweep removed=%d remaining=%d", removed, len(self))
