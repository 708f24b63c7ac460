import pytest
from datetime import timedelta

from app.services.rate_limit_service import RateLimitService

WINDOW = timedelta(minutes=15)


@pytest.fixture
def limiter(db, clock):
    return RateLimitService(db, clock=clock)


@pytest.mark.asyncio
async def test_allows_up_to_limit_then_blocks(limiter):
    decisions = [await limiter.check_rate_limit("redeem_1", 5, WINDOW) for _ in range(6)]

    assert [d.allowed for d in decisions] == [True] * 5 + [False]
    assert [d.remaining for d in decisions[:5]] == [4, 3, 2, 1, 0]
    assert decisions[-1].remaining == 0
    assert 0 < decisions[-1].reset_in_seconds <= WINDOW.total_seconds()


@pytest.mark.asyncio
async def test_window_resets_after_expiry(limiter, clock):
    for _ in range(5):
        await limiter.check_rate_limit("redeem_1", 5, WINDOW)
    assert not (await limiter.check_rate_limit("redeem_1", 5, WINDOW)).allowed

    clock.advance(minutes=16)
    decision = await limiter.check_rate_limit("redeem_1", 5, WINDOW, ip_address="10.0.0.1")

    assert decision.allowed
    assert decision.remaining == 4
    assert decision.reset_in_seconds == int(WINDOW.total_seconds())


@pytest.mark.asyncio
async def test_identifiers_are_independent(limiter):
    for _ in range(2):
        await limiter.check_rate_limit("redeem_1", 2, WINDOW)

    assert not (await limiter.check_rate_limit("redeem_1", 2, WINDOW)).allowed
    assert (await limiter.check_rate_limit("redeem_2", 2, WINDOW)).allowed
