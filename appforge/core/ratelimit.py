"""
Per-user rate limiting.

Token bucket allowing N actions per key per minute. Bucket state lives behind
``BucketStore`` so a multi-instance deployment can swap the in-process store
for a shared one without touching the check/consume/refill logic.
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class BucketState:
    tokens: float
    updated_at: float


class BucketStore:
    """Storage for bucket state keyed by caller."""

    def get(self, key: str) -> Optional[BucketState]:
        raise NotImplementedError

    def set(self, key: str, state: BucketState) -> None:
        raise NotImplementedError


class InMemoryBucketStore(BucketStore):
    """Process-local bucket store."""

    def __init__(self):
        self._buckets: Dict[str, BucketState] = {}

    def get(self, key: str) -> Optional[BucketState]:
        return self._buckets.get(key)

    def set(self, key: str, state: BucketState) -> None:
        self._buckets[key] = state


class TokenBucketRateLimiter:
    """Allows ``per_minute`` actions per key, refilled continuously."""

    def __init__(
        self,
        per_minute: int,
        store: Optional[BucketStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if per_minute <= 0:
            raise ValueError("per_minute must be > 0")
        self.capacity = float(per_minute)
        self.refill_per_second = per_minute / 60.0
        self.store = store or InMemoryBucketStore()
        self.clock = clock
        self._lock = threading.Lock()

    def _refill(self, state: Optional[BucketState], now: float) -> float:
        if state is None:
            return self.capacity
        elapsed = max(0.0, now - state.updated_at)
        return min(self.capacity, state.tokens + elapsed * self.refill_per_second)

    def check(self, key: str) -> bool:
        """Consume one token for ``key``. Returns False when the bucket is empty."""
        with self._lock:
            now = self.clock()
            tokens = self._refill(self.store.get(key), now)
            if tokens < 1.0:
                self.store.set(key, BucketState(tokens=tokens, updated_at=now))
                return False
            self.store.set(key, BucketState(tokens=tokens - 1.0, updated_at=now))
            return True

    def remaining(self, key: str) -> int:
        with self._lock:
            return int(self._refill(self.store.get(key), self.clock()))
