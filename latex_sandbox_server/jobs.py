"""Bounded admission for compile, dependency and git jobs."""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator

from latex_sandbox_server.errors import ServiceBusy, ShuttingDown

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 30


class JobQueue:
    """Runs at most ``max_concurrent`` jobs and lets ``max_queued`` more wait.

    A caller arriving when both are full is turned away with ``ServiceBusy``.
    ``close`` refuses new callers and wakes every waiter with ``ShuttingDown``;
    jobs already running finish normally.
    """

    def __init__(self, max_concurrent: int, max_queued: int) -> None:
        self.max_concurrent = max_concurrent
        self.max_queued = max_queued
        self._cond = threading.Condition()
        self._active = 0
        self._queued = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def _stats_locked(self) -> Dict[str, Any]:
        return {
            "active": self._active,
            "queued": self._queued,
            "maxConcurrent": self.max_concurrent,
            "maxQueued": self.max_queued,
        }

    def stats(self) -> Dict[str, Any]:
        with self._cond:
            return self._stats_locked()

    def _acquire(self) -> None:
        with self._cond:
            if self._closed:
                raise ShuttingDown("Server is shutting down")
            if self._active < self.max_concurrent:
                self._active += 1
                return
            if self._queued >= self.max_queued:
                stats = self._stats_locked()
                logger.warning("Job queue full active=%s queued=%s", stats["active"], stats["queued"])
                raise ServiceBusy(
                    "Server is busy. Please try again later.", queue=stats, retryAfter=RETRY_AFTER_SECONDS
                )
            self._queued += 1
            try:
                self._cond.wait_for(lambda: self._closed or self._active < self.max_concurrent)
            finally:
                self._queued -= 1
            if self._closed:
                raise ShuttingDown("Server is shutting down")
            self._active += 1

    def _release(self) -> None:
        with self._cond:
            self._active -= 1
            self._cond.notify()

    @contextmanager
    def slot(self) -> Iterator[None]:
        self._acquire()
        try:
            yield
        finally:
            self._release()

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
