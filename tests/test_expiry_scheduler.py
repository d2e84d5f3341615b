import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import LockError

from fulfillment.common.contracts import INVENTORY_UPDATED
from fulfillment.inventory.app.expiry import SWEEP_LOCK_NAME, ReservationExpiryScheduler

from tests.mocks import T0, TTL

LATER = T0 + TTL + timedelta(seconds=1)


async def stock_and_reserve(ledger, *order_ids):
    await ledger.stock("p1", "Widget", 10, 5.0, now=T0)
    for order_id in order_ids:
        await ledger.reserve(order_id, [("p1", 2)], now=T0)


def mock_redis_lock(acquired: bool = True) -> tuple[MagicMock, AsyncMock]:
    lock = AsyncMock()
    lock.acquire.return_value = acquired
    redis = MagicMock()
    redis.lock.return_value = lock
    return redis, lock


@pytest.mark.asyncio
async def test_sweep_publishes_expired_per_released_order(ledger, inventory_store, bus):
    await stock_and_reserve(ledger, "O1", "O2")
    scheduler = ReservationExpiryScheduler(ledger, bus, clock=lambda: LATER)

    released = await scheduler.run_once()

    assert sorted(released) == ["O1", "O2"]
    assert inventory_store.items["p1"].reserved == 0
    events = bus.published(INVENTORY_UPDATED)
    assert sorted(e["data"]["orderId"] for e in events) == ["O1", "O2"]
    assert {e["data"]["status"] for e in events} == {"expired"}


@pytest.mark.asyncio
async def test_sweep_before_deadline_releases_nothing(ledger, bus):
    await stock_and_reserve(ledger, "O1")
    scheduler = ReservationExpiryScheduler(ledger, bus, clock=lambda: T0 + TTL / 2)

    assert await scheduler.run_once() == []
    assert bus.published(INVENTORY_UPDATED) == []


@pytest.mark.asyncio
async def test_second_sweep_is_a_no_op(ledger, bus):
    await stock_and_reserve(ledger, "O1")
    scheduler = ReservationExpiryScheduler(ledger, bus, clock=lambda: LATER)

    await scheduler.run_once()
    assert await scheduler.run_once() == []
    assert len(bus.published(INVENTORY_UPDATED)) == 1


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(ledger, bus):
    await stock_and_reserve(ledger, "O1")
    scheduler = ReservationExpiryScheduler(ledger, bus, clock=lambda: LATER)
    gate = asyncio.Event()
    sweep = ledger.sweep_expired

    async def slow_sweep(now):
        await gate.wait()
        return await sweep(now)

    ledger.sweep_expired = slow_sweep
    first = asyncio.create_task(scheduler.run_once())
    await asyncio.sleep(0)

    assert await scheduler.run_once() == []
    gate.set()
    assert await first == ["O1"]


@pytest.mark.asyncio
async def test_sweep_is_skipped_when_another_replica_holds_the_lock(ledger, bus):
    await stock_and_reserve(ledger, "O1")
    redis, lock = mock_redis_lock(acquired=False)
    scheduler = ReservationExpiryScheduler(ledger, bus, redis=redis, clock=lambda: LATER)

    assert await scheduler.run_once() == []
    assert redis.lock.call_args.args == (SWEEP_LOCK_NAME,)
    lock.release.assert_not_awaited()


@pytest.mark.asyncio
async def test_sweep_under_redis_lock_releases_it(ledger, bus):
    await stock_and_reserve(ledger, "O1")
    redis, lock = mock_redis_lock(acquired=True)
    lock.release.side_effect = LockError("expired")
    scheduler = ReservationExpiryScheduler(ledger, bus, redis=redis, clock=lambda: LATER)

    assert await scheduler.run_once() == ["O1"]
    lock.release.assert_awaited_once()


@pytest.mark.asyncio
async def test_long_sweep_keeps_extending_the_redis_lock(ledger, bus):
    await stock_and_reserve(ledger, "O1")
    redis, lock = mock_redis_lock(acquired=True)
    scheduler = ReservationExpiryScheduler(
        ledger, bus, interval=0.01, redis=redis, lock_timeout=0.03, clock=lambda: LATER
    )
    sweep = ledger.sweep_expired

    async def slow_sweep(now):
        await asyncio.sleep(0.1)
        return await sweep(now)

    ledger.sweep_expired = slow_sweep

    assert await scheduler.run_once() == ["O1"]
    assert redis.lock.call_args.kwargs["timeout"] == 0.03
    assert lock.reacquire.await_count >= 2
    lock.release.assert_awaited_once()
    reacquired = lock.reacquire.await_count
    await asyncio.sleep(0.05)
    # extension stops with the sweep
    assert lock.reacquire.await_count == reacquired


@pytest.mark.asyncio
async def test_failed_lock_extension_does_not_abort_the_sweep(ledger, bus):
    await stock_and_reserve(ledger, "O1")
    redis, lock = mock_redis_lock(acquired=True)
    lock.reacquire.side_effect = LockError("not owned")
    scheduler = ReservationExpiryScheduler(
        ledger, bus, redis=redis, lock_timeout=0.03, clock=lambda: LATER
    )
    sweep = ledger.sweep_expired

    async def slow_sweep(now):
        await asyncio.sleep(0.05)
        return await sweep(now)

    ledger.sweep_expired = slow_sweep

    assert await scheduler.run_once() == ["O1"]
    lock.reacquire.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_stops_on_shutdown(ledger, bus):
    scheduler = ReservationExpiryScheduler(ledger, bus, interval=0.01, clock=lambda: LATER)
    shutdown = asyncio.Event()

    task = asyncio.create_task(scheduler.run(shutdown))
    await asyncio.sleep(0.03)
    shutdown.set()

    await asyncio.wait_for(task, timeout=1)
