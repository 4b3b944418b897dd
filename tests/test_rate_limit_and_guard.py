import asyncio

import pytest

from shared.utils.circuit_breaker import CircuitBreaker, CircuitState
from shared.utils.rate_limiter import ScanRateLimiter
from shared.utils.replay_guard import DuplicateScanGuard, RedisDuplicateScanGuard, build_duplicate_guard
from services.ticket_registry.errors import RegistryUnavailable, TicketAlreadyUsed

from conftest import run


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeRedis:
    """Subconjunto de redis.asyncio usado por el guard"""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def exists(self, key):
        return 1 if key in self.values else 0

    async def set(self, key, value, px=None):
        self.values[key] = value
        self.ttls[key] = px


# ============ RATE LIMITER ============

def test_rate_limiter_allows_up_to_limit():
    async def scenario():
        limiter = ScanRateLimiter(max_requests=3, window_seconds=60)
        return [await limiter.hit("10.0.0.1") for _ in range(4)]

    results = run(scenario())
    assert [r.allowed for r in results] == [True, True, True, False]
    assert results[2].remaining == 0
    assert results[3].retry_after > 0


def test_rate_limiter_counts_clients_separately():
    async def scenario():
        limiter = ScanRateLimiter(max_requests=1, window_seconds=60)
        first = await limiter.hit("10.0.0.1")
        blocked = await limiter.hit("10.0.0.1")
        other = await limiter.hit("10.0.0.2")
        return first, blocked, other

    first, blocked, other = run(scenario())
    assert first.allowed is True
    assert blocked.allowed is False
    assert other.allowed is True


def test_rate_limiter_window_expires():
    async def scenario():
        limiter = ScanRateLimiter(max_requests=1, window_seconds=1)
        first = await limiter.hit("10.0.0.1")
        blocked = await limiter.hit("10.0.0.1")
        await asyncio.sleep(1.1)
        after_window = await limiter.hit("10.0.0.1")
        return first, blocked, after_window

    first, blocked, after_window = run(scenario())
    assert first.allowed and not blocked.allowed
    assert after_window.allowed is True


def test_rate_limiter_reset():
    async def scenario():
        limiter = ScanRateLimiter(max_requests=1, window_seconds=60)
        await limiter.hit("10.0.0.1")
        await limiter.reset()
        return await limiter.hit("10.0.0.1")

    assert run(scenario()).allowed is True


# ============ DUPLICATE GUARD ============

def test_guard_reports_recent_entries_until_window_elapses():
    clock = FakeClock()

    async def scenario():
        guard = DuplicateScanGuard(window_seconds=5.0, clock=clock)
        assert await guard.recently_verified("0xabc-1") is False
        await guard.record("0xabc-1")
        clock.advance(4.9)
        still_recent = await guard.recently_verified("0xabc-1")
        clock.advance(0.1)
        expired = await guard.recently_verified("0xabc-1")
        return still_recent, expired, len(guard)

    still_recent, expired, size = run(scenario())
    assert still_recent is True
    assert expired is False
    assert size == 0


def test_guard_evicts_oldest_over_capacity():
    clock = FakeClock()

    async def scenario():
        guard = DuplicateScanGuard(window_seconds=5.0, max_entries=2, clock=clock)
        for key in ("a", "b", "c"):
            await guard.record(key)
        return [await guard.recently_verified(key) for key in ("a", "b", "c")]

    assert run(scenario()) == [False, True, True]


def test_guard_record_drops_expired_entries():
    clock = FakeClock()

    async def scenario():
        guard = DuplicateScanGuard(window_seconds=5.0, clock=clock)
        await guard.record("a")
        clock.advance(3)
        await guard.record("b")
        clock.advance(3)
        await guard.record("c")
        return len(guard), await guard.recently_verified("b")

    assert run(scenario()) == (2, True)


def test_redis_guard_uses_expiring_keys():
    redis_client = FakeRedis()
    guard = build_duplicate_guard(2.5, 100, redis_client=redis_client)
    assert isinstance(guard, RedisDuplicateScanGuard)

    async def scenario():
        before = await guard.recently_verified("0xabc-1")
        await guard.record("0xabc-1")
        return before, await guard.recently_verified("0xabc-1")

    assert run(scenario()) == (False, True)
    assert redis_client.ttls["scan:guard:0xabc-1"] == 2500


def test_build_guard_without_redis_is_local():
    assert isinstance(build_duplicate_guard(5.0, 10), DuplicateScanGuard)


# ============ CIRCUIT BREAKER ============

async def _fail():
    raise RegistryUnavailable("down")


async def _ok():
    return "ok"


def test_breaker_opens_after_threshold_and_recovers():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30, clock=clock)

    async def scenario():
        for _ in range(2):
            with pytest.raises(RegistryUnavailable):
                await breaker.call(_fail)
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(RegistryUnavailable, match="OPEN"):
            await breaker.call(_ok)
        clock.advance(30)
        return await breaker.call(_ok)

    assert run(scenario()) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


def test_breaker_half_open_failure_reopens():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, clock=clock)

    async def scenario():
        with pytest.raises(RegistryUnavailable):
            await breaker.call(_fail)
        clock.advance(10)
        with pytest.raises(RegistryUnavailable):
            await breaker.call(_fail)

    run(scenario())
    assert breaker.state == CircuitState.OPEN


def test_breaker_ignores_definitive_registry_answers():
    breaker = CircuitBreaker(failure_threshold=1)

    async def used():
        raise TicketAlreadyUsed("used")

    async def scenario():
        for _ in range(3):
            with pytest.raises(TicketAlreadyUsed):
                await breaker.call(used)

    run(scenario())
    assert breaker.state == CircuitState.CLOSED


def test_breaker_half_open_lets_a_single_trial_through():
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, clock=clock)

    async def slow_ok():
        await asyncio.sleep(0.01)
        return "ok"

    async def scenario():
        with pytest.raises(RegistryUnavailable):
            await breaker.call(_fail)
        clock.advance(10)
        return await asyncio.gather(
            breaker.call(slow_ok),
            breaker.call(slow_ok),
            return_exceptions=True,
        )

    first, second = run(scenario())
    assert first == "ok"
    assert isinstance(second, RegistryUnavailable)
    assert "trial in progress" in str(second)
    assert breaker.state == CircuitState.CLOSED
