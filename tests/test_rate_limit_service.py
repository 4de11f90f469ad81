"""Tests for the store-backed fixed-window rate limiter."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from venue_booking.models.rate_limit import RateLimitBucket
from venue_booking.services.rate_limit_service import RateLimiter
from venue_booking.utils.exceptions import StoreError
from venue_booking.utils.metrics import RATE_LIMIT_BYPASSES, RATE_LIMIT_HITS, metrics

from .conftest import utc

NOW = utc(2030, 1, 1, 12, 0, 5)


class BrokenUnitOfWork:
    async def run(self, fn, **kwargs):
        raise OperationalError("UPDATE", {}, Exception("unable to open database file"))


def limiter(unit_of_work, limit=3, **kwargs):
    return RateLimiter(unit_of_work, limit=limit, window_seconds=600, **kwargs)


async def test_allows_up_to_limit_then_denies(unit_of_work):
    rl = limiter(unit_of_work)

    results = [await rl.check_and_increment("1.2.3.4", "booking_submit", now=NOW) for _ in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert results[3].reset_at == utc(2030, 1, 1, 12, 10)
    assert metrics.get(RATE_LIMIT_HITS) == 1


async def test_keys_are_independent(unit_of_work):
    rl = limiter(unit_of_work, limit=1)

    assert (await rl.check_and_increment("a", "booking_submit", now=NOW)).allowed
    assert (await rl.check_and_increment("a", "deposit_upload", now=NOW)).allowed
    assert (await rl.check_and_increment("b", "booking_submit", now=NOW)).allowed
    assert not (await rl.check_and_increment("a", "booking_submit", now=NOW)).allowed


async def test_new_window_starts_fresh(unit_of_work):
    rl = limiter(unit_of_work, limit=1)

    assert (await rl.check_and_increment("a", "booking_submit", now=NOW)).allowed
    assert not (await rl.check_and_increment("a", "booking_submit", now=NOW)).allowed
    later = NOW + timedelta(seconds=600)
    assert (await rl.check_and_increment("a", "booking_submit", now=later)).allowed


async def test_concurrent_requests_never_exceed_limit(database, unit_of_work):
    rl = limiter(unit_of_work, limit=4)

    results = await asyncio.gather(*[
        rl.check_and_increment("1.2.3.4", "booking_response", now=NOW) for _ in range(10)
    ])

    assert sum(r.allowed for r in results) == 4
    async with database.get_session() as session:
        counts = (await session.execute(select(RateLimitBucket.count))).scalars().all()
    assert counts == [4]


async def test_zero_limit_denies_everything(unit_of_work):
    rl = limiter(unit_of_work, limit=0)
    assert not (await rl.check_and_increment("a", "booking_submit", now=NOW)).allowed


async def test_store_failure_fails_open(unit_of_work):
    rl = limiter(BrokenUnitOfWork(), fail_open=True)

    result = await rl.check_and_increment("a", "booking_submit", now=NOW)

    assert result.allowed
    assert result.bypassed
    assert metrics.get(RATE_LIMIT_BYPASSES) == 1


async def test_store_failure_fails_closed_when_configured():
    rl = limiter(BrokenUnitOfWork(), fail_open=False)
    with pytest.raises(StoreError):
        await rl.check_and_increment("a", "booking_submit", now=NOW)


async def test_purge_removes_old_windows(database, unit_of_work):
    rl = limiter(unit_of_work, purge_after_windows=2)
    await rl.check_and_increment("a", "booking_submit", now=NOW - timedelta(hours=1))
    await rl.check_and_increment("a", "booking_submit", now=NOW)

    deleted = await rl.purge_expired(now=NOW)

    assert deleted == 1
    async with database.get_session() as session:
        remaining = (await session.execute(select(RateLimitBucket.window_start))).scalars().all()
    assert remaining == [rl.window_start(NOW)]


async def test_purge_swallows_store_errors():
    assert await limiter(BrokenUnitOfWork()).purge_expired(now=NOW) == 0
