"""
Per-requester admission control.

A fixed window that opens on a requester's first admission. Rate limiting is
evaluated before credits are touched and never mutates the ledger.
"""

from dataclasses import dataclass
import logging
import threading
import time
from typing import Callable, Dict, Tuple

logger = logging.getLogger(__name__)

DEFAULT_MAX_REQUESTS = 20
DEFAULT_WINDOW_SECONDS = 3600


@dataclass(frozen=True)
class RateDecision:
    """Result of one admission attempt."""
    allowed: bool
    count: int
    limit: int
    reset_at: float

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)

    def retry_after(self, now: float) -> float:
        return max(0.0, self.reset_at - now)


class RateWindowStore:
    """Counter store keyed by requester.

    ``hit`` must perform check-and-increment as one atomic step per key.
    """

    def hit(self, key: str, limit: int, window_seconds: int, now: float) -> RateDecision:
        raise NotImplementedError

    def reset(self, key: str) -> None:
        raise NotImplementedError


class InMemoryRateWindowStore(RateWindowStore):
    """Process-local store. Windows are lost on restart.

    Expired windows are swept at most once per window length, on a hit.
    """

    def __init__(self):
        self._windows: Dict[str, Tuple[int, float]] = {}
        self._lock = threading.Lock()
        self._next_purge = 0.0

    def hit(self, key: str, limit: int, window_seconds: int, now: float) -> RateDecision:
        with self._lock:
            if now >= self._next_purge:
                self._purge_locked(now)
                self._next_purge = now + window_seconds

            window = self._windows.get(key)
            if window is None or now >= window[1]:
                reset_at = now + window_seconds
                self._windows[key] = (1, reset_at)
                return RateDecision(allowed=True, count=1, limit=limit, reset_at=reset_at)

            count, reset_at = window
            if count < limit:
                count += 1
                self._windows[key] = (count, reset_at)
                return RateDecision(allowed=True, count=count, limit=limit, reset_at=reset_at)

            return RateDecision(allowed=False, count=count, limit=limit, reset_at=reset_at)

    def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def purge_expired(self, now: float) -> int:
        """Drop expired windows. Returns the number removed."""
        with self._lock:
            return self._purge_locked(now)

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, (_, reset_at) in self._windows.items() if now >= reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)


class RateLimiter:
    """Admits at most ``max_requests`` per requester per window."""

    def __init__(
        self,
        store: RateWindowStore,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: int = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        if max_requests <= 0:
            raise ValueError("max_requests must be > 0")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock

    def admit(self, requester_id: str) -> RateDecision:
        """Attempt one admission for the requester.

        Args:
            requester_id: Pre-authenticated requester identity

        Returns:
            RateDecision with ``allowed`` False when the window is exhausted
        """
        decision = self.store.hit(
            _window_key(requester_id),
            self.max_requests,
            self.window_seconds,
            self.clock()
        )
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded for %s: %d/%d", requester_id, decision.count, decision.limit
            )
        return decision

    def reset(self, requester_id: str) -> None:
        self.store.reset(_window_key(requester_id))


def _window_key(requester_id: str) -> str:
    return f"rate_limit:variations:{requester_id}"
