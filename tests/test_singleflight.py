import threading

import pytest

from tailors_payments.singleflight import TokenCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_concurrent_callers_share_one_fetch():
    calls = []
    release = threading.Event()

    def fetch():
        calls.append(1)
        release.wait(timeout=5)
        return "token-1"

    cache = TokenCache(fetch, ttl=60)
    results = []
    threads = [threading.Thread(target=lambda: results.append(cache.get())) for _ in range(8)]
    for thread in threads:
        thread.start()
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert len(calls) == 1
    assert results == ["token-1"] * 8


def test_token_refreshed_after_ttl():
    clock = FakeClock()
    tokens = iter(["first", "second"])
    cache = TokenCache(lambda: next(tokens), ttl=30, clock=clock)

    assert cache.get() == "first"
    clock.now = 29
    assert cache.get() == "first"
    clock.now = 30
    assert cache.get() == "second"


def test_invalidate_only_drops_matching_token():
    tokens = iter(["first", "second"])
    cache = TokenCache(lambda: next(tokens), ttl=60)
    cache.get()

    cache.invalidate("some-older-token")
    assert cache.get() == "first"

    cache.invalidate("first")
    assert cache.get() == "second"


def test_failed_fetch_is_retried_by_next_caller():
    attempts = []

    def fetch():
        attempts.append(1)
        if len(attempts) == 1:
            raise ConnectionError("auth endpoint down")
        return "token"

    cache = TokenCache(fetch, ttl=60)

    with pytest.raises(ConnectionError):
        cache.get()
    assert cache.get() == "token"
    assert len(attempts) == 2
