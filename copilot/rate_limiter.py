"""
Per-provider request quota over a rolling 60-second window.
"""
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional


class RateLimiter:
    """
    Rolling-window counter per provider.
    try_acquire() records the request only when it is allowed.
    """

    def __init__(
        self,
        quotas: Dict[str, int],
        default_quota: int = 60,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.quotas = dict(quotas)
        self.default_quota = default_quota
        self.window_seconds = window_seconds
        self.clock = clock
        self._requests: Dict[str, Deque[float]] = {}

    def quota_for(self, provider: str) -> int:
        return self.quotas.get(provider, self.default_quota)

    def _prune(self, provider: str, now: float) -> Deque[float]:
        timestamps = self._requests.setdefault(provider, deque())
        while timestamps and now - timestamps[0] >= self.window_seconds:
            timestamps.popleft()
        return timestamps

    def try_acquire(self, provider: str) -> bool:
        now = self.clock()
        timestamps = self._prune(provider, now)
        if len(timestamps) >= self.quota_for(provider):
            return False
        timestamps.append(now)
        return True

    def remaining(self, provider: str, now: Optional[float] = None) -> int:
        timestamps = self._prune(provider, self.clock() if now is None else now)
        return max(0, self.quota_for(provider) - len(timestamps))
