import pytest

from pipelines.cache import BudgetExceededError, ContentCache


class Counter:
    def __init__(self, value="result"):
        self.calls = 0
        self.value = value

    def __call__(self):
        self.calls += 1
        return self.value


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_same_key_runs_operation_once(stub_metrics):
    cache = ContentCache()
    operation = Counter()

    first = cache.cached_operation("classification:https://a.org:Gala:0.60", 0.01, operation)
    second = cache.cached_operation("classification:https://a.org:Gala:0.60", 0.01, operation)

    assert first == second == "result"
    assert operation.calls == 1
    assert cache.stats == {"hits": 1, "misses": 1, "entries": 1}
    assert cache.budget_used == pytest.approx(0.01)
    assert cache.savings == pytest.approx(0.01)
    assert stub_metrics.counted("cache.hit") == 1
    assert stub_metrics.counted("cache.miss") == 1


def test_failures_are_not_cached(stub_metrics):
    cache = ContentCache()
    calls = {"count": 0}

    def flaky():
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("upstream down")
        return "ok"

    with pytest.raises(RuntimeError):
        cache.cached_operation("verification:harbor", 0.005, flaky)

    assert cache.cached_operation("verification:harbor", 0.005, flaky) == "ok"
    assert calls["count"] == 2
    assert cache.budget_used == pytest.approx(0.005)


def test_lru_bound_evicts_least_recently_used(stub_metrics):
    cache = ContentCache(max_entries=2)
    cache.cached_operation("a", 0.0, Counter("A"))
    cache.cached_operation("b", 0.0, Counter("B"))
    cache.cached_operation("a", 0.0, Counter("unused"))
    cache.cached_operation("c", 0.0, Counter("C"))
    refill = Counter("B2")

    assert cache.cached_operation("a", 0.0, Counter("unused")) == "A"
    assert cache.cached_operation("b", 0.0, refill) == "B2"
    assert refill.calls == 1
    assert cache.stats["entries"] == 2


def test_ttl_expires_entries(stub_metrics):
    clock = FakeClock()
    cache = ContentCache(ttl_seconds=60, clock=clock)
    operation = Counter()

    cache.cached_operation("search:q", 0.02, operation)
    clock.now += 59
    cache.cached_operation("search:q", 0.02, operation)
    clock.now += 2
    cache.cached_operation("search:q", 0.02, operation)

    assert operation.calls == 2


def test_budget_limit_blocks_operation_before_it_runs(stub_metrics):
    cache = ContentCache(budget_limit=0.02)
    operation = Counter()
    cache.cached_operation("a", 0.015, operation)

    with pytest.raises(BudgetExceededError) as excinfo:
        cache.cached_operation("b", 0.01, operation)

    assert operation.calls == 1
    assert excinfo.value.code == "BUDGET_EXCEEDED"
    assert cache.cached_operation("a", 0.015, operation) == "result"


@pytest.mark.parametrize("kwargs", [{"max_entries": 0}, {"ttl_seconds": 0}])
def test_rejects_invalid_bounds(kwargs):
    with pytest.raises(ValueError):
        ContentCache(**kwargs)
