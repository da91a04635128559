import threading
import time

from latex_sandbox_server.ratelimit import InMemoryRateLimitStore, RateLimitSweeper, rate_limit_headers


def test_rejects_the_request_after_max_within_window():
    store = InMemoryRateLimitStore(window_seconds=60, max_requests=3)
    decisions = [store.hit("k", 1000.0 + i) for i in range(4)]

    assert [decision.allowed for decision in decisions] == [True, True, True, False]
    assert [decision.remaining for decision in decisions] == [2, 1, 0, 0]
    rejected = decisions[-1]
    assert rejected.retry_after == 57
    assert rejected.retry_after > 0


def test_counter_resets_to_one_once_window_has_passed():
    store = InMemoryRateLimitStore(window_seconds=60, max_requests=2)
    store.hit("k", 0.0)
    store.hit("k", 1.0)
    assert not store.hit("k", 60.0).allowed

    decision = store.hit("k", 60.5)

    assert decision.allowed
    assert store.count("k") == 1
    assert decision.reset_at == 120.5


def test_boundary_is_exclusive():
    store = InMemoryRateLimitStore(window_seconds=10, max_requests=1)
    store.hit("k", 0.0)

    assert not store.hit("k", 10.0).allowed
    assert store.hit("k", 10.001).allowed


def test_retry_after_is_at_least_one_second():
    store = InMemoryRateLimitStore(window_seconds=10, max_requests=1)
    store.hit("k", 0.0)
    assert store.hit("k", 9.9999).retry_after == 1


def test_keys_are_independent():
    store = InMemoryRateLimitStore(window_seconds=60, max_requests=1)
    assert store.hit("a", 0.0).allowed
    assert store.hit("b", 0.0).allowed
    assert not store.hit("a", 1.0).allowed


def test_sweep_removes_only_expired_windows():
    store = InMemoryRateLimitStore(window_seconds=10, max_requests=5)
    store.hit("old", 0.0)
    store.hit("new", 8.0)

    assert store.sweep(12.0) == 1
    assert store.count("old") is None
    assert store.count("new") == 1


def test_full_table_evicts_oldest_window():
    store = InMemoryRateLimitStore(window_seconds=60, max_requests=5, max_entries=2)
    store.hit("first", 0.0)
    store.hit("second", 1.0)
    store.hit("third", 2.0)

    assert len(store) == 2
    assert store.count("first") is None
    assert store.count("third") == 1


def test_headers_include_retry_after_only_on_rejection():
    store = InMemoryRateLimitStore(window_seconds=60, max_requests=1)
    allowed = dict(rate_limit_headers(store.hit("k", 100.0)))
    rejected = dict(rate_limit_headers(store.hit("k", 101.0)))

    assert allowed == {"X-RateLimit-Limit": "1", "X-RateLimit-Remaining": "0", "X-RateLimit-Reset": "160"}
    assert rejected["Retry-After"] == "59"


def test_concurrent_hits_never_over_admit():
    store = InMemoryRateLimitStore(window_seconds=60, max_requests=50)
    admitted = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            decision = store.hit("shared", 5.0)
            with lock:
                admitted.append(decision.allowed)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(admitted) == 50


def test_sweeper_thread_drops_expired_entries():
    now = {"value": 0.0}
    store = InMemoryRateLimitStore(window_seconds=1, max_requests=5)
    store.hit("k", 0.0)
    sweeper = RateLimitSweeper(store, interval_seconds=0.05, clock=lambda: now["value"])
    now["value"] = 5.0

    sweeper.start()
    try:
        deadline = time.monotonic() + 5
        while store.count("k") is not None and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        sweeper.stop()

    assert store.count("k") is None
    assert not sweeper.running
