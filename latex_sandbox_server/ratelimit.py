"""Fixed-window admission control keyed by caller identity."""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from sandbox_utils import ceil_seconds

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0


@dataclass
class _Window:
    start: float
    count: int


class RateLimitStore(Protocol):
    def hit(self, key: str, now: float) -> RateLimitDecision: ...

    def sweep(self, now: float) -> int: ...


class InMemoryRateLimitStore:
    """Per-process window table guarded by one lock.

    A window resets once strictly more than ``window_seconds`` have elapsed
    since it started. At most ``max_entries`` keys are tracked; when full,
    expired windows are swept first and then the oldest window is evicted.
    """

    def __init__(self, window_seconds: float, max_requests: int, max_entries: int = 10000) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._windows: "OrderedDict[str, _Window]" = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)

    def count(self, key: str) -> Optional[int]:
        with self._lock:
            window = self._windows.get(key)
            return window.count if window else None

    def _reset_at(self, window: _Window) -> float:
        return window.start + self.window_seconds

    def _admit_new(self, key: str, now: float) -> RateLimitDecision:
        if key not in self._windows and len(self._windows) >= self.max_entries:
            self._sweep_locked(now)
            while len(self._windows) >= self.max_entries:
                evicted, _ = self._windows.popitem(last=False)
                logger.debug("Rate limit entry evicted key_hash=%s", hash(evicted))
        window = _Window(start=now, count=1)
        self._windows[key] = window
        self._windows.move_to_end(key)
        return RateLimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=max(self.max_requests - 1, 0),
            reset_at=self._reset_at(window),
        )

    def hit(self, key: str, now: float) -> RateLimitDecision:
        with self._lock:
            window = self._windows.get(key)
            if window is None or now - window.start > self.window_seconds:
                return self._admit_new(key, now)
            if window.count >= self.max_requests:
                remaining_window = self._reset_at(window) - now
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_at=self._reset_at(window),
                    retry_after=max(1, ceil_seconds(remaining_window)),
                )
            window.count += 1
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=max(self.max_requests - window.count, 0),
                reset_at=self._reset_at(window),
            )

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, window in self._windows.items() if now - window.start > self.window_seconds]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def sweep(self, now: float) -> int:
        with self._lock:
            return self._sweep_locked(now)


def rate_limit_headers(decision: RateLimitDecision) -> List[Tuple[str, str]]:
    headers = [
        ("X-RateLimit-Limit", str(decision.limit)),
        ("X-RateLimit-Remaining", str(decision.remaining)),
        ("X-RateLimit-Reset", str(ceil_seconds(decision.reset_at))),
    ]
    if not decision.allowed:
        headers.append(("Retry-After", str(decision.retry_after)))
    return headers


class RateLimitSweeper:
    """Daemon thread that drops expired windows on a fixed interval."""

    def __init__(self, store: RateLimitStore, interval_seconds: float, clock) -> None:
        self._store = store
        self._interval = interval_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._start_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._start_lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="rate-limit-sweeper", daemon=True)
            self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=self._interval + 1)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                removed = self._store.sweep(self._clock())
            except Exception:
                logger.exception("Rate limit sweep failed")
                continue
            if removed:
                logger.debug("Rate limit sweep removed=%s", removed)
