import pytest

from clickstudio.core import rate_limit
from clickstudio.core.rate_limit import BUCKET_IDLE_SEC, RateLimitPolicy, TokenBucketLimiter, route_group


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_burst_then_refill():
    clock = FakeClock()
    limiter = TokenBucketLimiter(clock)
    policy = RateLimitPolicy(rps=1.0, burst=2)

    assert limiter.allow("k", policy) == (True, 0.0)
    assert limiter.allow("k", policy) == (True, 0.0)
    allowed, retry_after = limiter.allow("k", policy)
    assert allowed is False
    assert retry_after == pytest.approx(1.0)

    clock.now += 1.0
    assert limiter.allow("k", policy)[0] is True


def test_keys_are_independent():
    limiter = TokenBucketLimiter(FakeClock())
    policy = RateLimitPolicy(rps=0.1, burst=1)
    assert limiter.allow("a", policy)[0] is True
    assert limiter.allow("a", policy)[0] is False
    assert limiter.allow("b", policy)[0] is True


def test_idle_buckets_are_pruned():
    clock = FakeClock()
    limiter = TokenBucketLimiter(clock)
    policy = RateLimitPolicy(rps=1.0, burst=5)
    limiter.allow("old", policy)
    clock.now += BUCKET_IDLE_SEC + 1
    limiter.allow("new", policy)
    assert len(limiter) == 1


@pytest.mark.parametrize(
    "path,group",
    [
        ("/rbac/auth/login", "/rbac/auth/login"),
        ("/rbac/users", "/rbac/users"),
        ("/rbac/users/42/assign-roles", "/rbac/users/42"),
        ("/docs", "/docs"),
        ("/", "/"),
    ],
)
def test_route_group(path, group):
    assert route_group(path) == group


def test_policy_from_env(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_RPS", "0.01")
    monkeypatch.setenv("RATE_LIMIT_BURST", "not-a-number")
    policy = RateLimitPolicy.from_env()
    assert policy.rps == 0.1
    assert policy.burst == rate_limit.DEFAULT_BURST


def test_enabled_follows_env(monkeypatch):
    monkeypatch.delenv("RATE_LIMIT_ENABLED", raising=False)
    monkeypatch.setenv("CHSTUDIO_ENV", "prod")
    assert rate_limit.rate_limit_enabled() is True
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    assert rate_limit.rate_limit_enabled() is False
    monkeypatch.delenv("RATE_LIMIT_ENABLED")
    monkeypatch.setenv("CHSTUDIO_ENV", "dev")
    assert rate_limit.rate_limit_enabled() is False
