from payflow.services.rate_limiter import (
    Allowed,
    CounterBackend,
    MemoryCounterBackend,
    RateLimiter,
    Rejected,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class BrokenBackend(CounterBackend):
    async def increment(self, key, window_seconds):
        raise ConnectionError("redis is down")


def make_limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(MemoryCounterBackend(clock=clock), wall_clock=clock)


async def test_eleventh_request_in_window_is_rejected():
    clock = FakeClock()
    limiter = make_limiter(clock)

    for i in range(10):
        outcome = await limiter.check("1.2.3.4", "payments:create", 10, 3600)
        assert isinstance(outcome, Allowed)
        assert outcome.remaining == 9 - i

    clock.now += 60
    outcome = await limiter.check("1.2.3.4", "payments:create", 10, 3600)
    assert isinstance(outcome, Rejected)
    assert outcome.retry_after_seconds == 3540
    assert outcome.to_headers()["Retry-After"] == "3540"
    assert outcome.to_headers()["X-RateLimit-Remaining"] == "0"


async def test_window_expiry_resets_the_counter():
    clock = FakeClock()
    limiter = make_limiter(clock)
    for _ in range(11):
        await limiter.check("1.2.3.4", "payments:create", 10, 3600)

    clock.now += 3601
    outcome = await limiter.check("1.2.3.4", "payments:create", 10, 3600)
    assert isinstance(outcome, Allowed)
    assert outcome.remaining == 9


async def test_counters_are_per_client_and_route():
    clock = FakeClock()
    limiter = make_limiter(clock)
    for _ in range(2):
        await limiter.check("client-a", "refunds:create", 2, 60)

    assert isinstance(await limiter.check("client-a", "refunds:create", 2, 60), Rejected)
    assert isinstance(await limiter.check("client-b", "refunds:create", 2, 60), Allowed)
    assert isinstance(await limiter.check("client-a", "refunds:read", 2, 60), Allowed)


async def test_retry_after_is_at_least_one_second():
    clock = FakeClock()
    limiter = make_limiter(clock)
    await limiter.check("c", "r", 1, 10)

    clock.now += 9.9
    outcome = await limiter.check("c", "r", 1, 10)
    assert isinstance(outcome, Rejected)
    assert outcome.retry_after_seconds == 1


async def test_allowed_headers_report_quota():
    clock = FakeClock()
    limiter = make_limiter(clock)
    outcome = await limiter.check("c", "r", 5, 60)

    headers = outcome.to_headers()
    assert headers["X-RateLimit-Limit"] == "5"
    assert headers["X-RateLimit-Remaining"] == "4"
    assert headers["X-RateLimit-Reset"] == str(int(clock.now) + 60)


async def test_backend_failure_fails_open(caplog):
    limiter = RateLimiter(BrokenBackend())

    outcome = await limiter.check("c", "payments:create", 10, 3600)

    assert isinstance(outcome, Allowed)
    assert outcome.degraded
    assert "degraded" in caplog.text
