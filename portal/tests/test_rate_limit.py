import time

from portal.rate_limit import LimitsRateLimitStore, store_from_env


def test_sixth_attempt_within_window_is_rejected():
    store = LimitsRateLimitStore()

    results = [store.hit("login:username:bob", 5, 900) for _ in range(6)]

    assert [r.success for r in results] == [True] * 5 + [False]
    assert results[0].remaining == 4
    assert results[4].remaining == 0
    assert results[5].remaining == 0
    assert 0 < results[5].retry_after <= 900


def test_reset_time_is_wall_clock():
    store = LimitsRateLimitStore()
    before = time.time()

    result = store.hit("k", 5, 900)

    assert before + 890 <= result.reset_time <= time.time() + 900


def test_reset_clears_the_counter():
    store = LimitsRateLimitStore()
    for _ in range(5):
        store.hit("k", 5, 900)

    store.reset("k")

    result = store.hit("k", 5, 900)
    assert result.success
    assert result.remaining == 4


def test_reset_covers_every_window_for_the_identifier():
    store = LimitsRateLimitStore()
    store.hit("k", 5, 900)
    store.hit("k", 10, 60)

    store.reset("k")

    assert store.hit("k", 5, 900).remaining == 4
    assert store.hit("k", 10, 60).remaining == 9


def test_window_expiry_starts_a_new_window():
    store = LimitsRateLimitStore()
    for _ in range(3):
        store.hit("k", 2, 1)
    assert not store.hit("k", 2, 1).success

    time.sleep(1.2)

    result = store.hit("k", 2, 1)
    assert result.success
    assert result.remaining == 1


def test_keys_are_independent():
    store = LimitsRateLimitStore()
    for _ in range(6):
        store.hit("a", 5, 900)
    assert store.hit("b", 5, 900).success


def test_stores_do_not_share_memory_counters():
    first, second = LimitsRateLimitStore(), LimitsRateLimitStore()
    for _ in range(6):
        first.hit("k", 5, 900)
    assert second.hit("k", 5, 900).success


def test_store_from_env(monkeypatch):
    monkeypatch.delenv("RATE_LIMIT_STORAGE_URI", raising=False)
    assert isinstance(store_from_env(), LimitsRateLimitStore)

    monkeypatch.setenv("RATE_LIMIT_STORAGE_URI", "memory://")
    assert isinstance(store_from_env(), LimitsRateLimitStore)
