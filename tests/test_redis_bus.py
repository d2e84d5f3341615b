import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from fulfillment.common.bus import Subscription
from fulfillment.common.contracts import INVENTORY_UPDATED
from fulfillment.common.errors import EventContractError
from fulfillment.common.redis_bus import RedisStreamBus

GROUP = "order-service"
ENVELOPE = {
    "eventId": "e-1",
    "eventType": INVENTORY_UPDATED,
    "schemaVersion": 1,
    "data": {"orderId": "O1", "status": "reserved", "timestamp": "2024-05-01T12:00:00Z"},
}
FIELDS = {"payload": json.dumps(ENVELOPE)}


def pending(times_delivered: int) -> list[dict]:
    return [
        {
            "message_id": "1-0",
            "consumer": "c1",
            "time_since_delivered": 0,
            "times_delivered": times_delivered,
        }
    ]


# --- Test Fixtures --- #


@pytest.fixture
def mock_redis() -> AsyncMock:
    redis = AsyncMock()
    redis.xpending_range.return_value = pending(1)
    return redis


@pytest.fixture
def redis_bus(mock_redis: AsyncMock) -> RedisStreamBus:
    return RedisStreamBus(mock_redis, "c1", max_deliveries=3, retry_attempts=2, retry_backoff=0)


def subscription(handler) -> Subscription:
    return Subscription(INVENTORY_UPDATED, GROUP, handler)


# --- Publish --- #


@pytest.mark.asyncio
async def test_publish_appends_envelope_to_topic_stream(redis_bus, mock_redis):
    await redis_bus.publish(INVENTORY_UPDATED, ENVELOPE)

    mock_redis.xadd.assert_awaited_once()
    stream, fields = mock_redis.xadd.call_args.args
    assert stream == INVENTORY_UPDATED
    assert json.loads(fields["payload"]) == ENVELOPE


@pytest.mark.asyncio
async def test_publish_retries_connection_errors(redis_bus, mock_redis):
    mock_redis.xadd.side_effect = [RedisConnectionError("down"), "1-0"]

    await redis_bus.publish(INVENTORY_UPDATED, ENVELOPE)

    assert mock_redis.xadd.await_count == 2


@pytest.mark.asyncio
async def test_publish_gives_up_after_retry_attempts(redis_bus, mock_redis):
    mock_redis.xadd.side_effect = RedisConnectionError("down")

    with pytest.raises(RedisConnectionError):
        await redis_bus.publish(INVENTORY_UPDATED, ENVELOPE)
    assert mock_redis.xadd.await_count == 2


# --- Consumer groups --- #


@pytest.mark.asyncio
async def test_ensure_groups_tolerates_existing_group(redis_bus, mock_redis):
    async def handler(envelope):
        pass

    redis_bus.subscribe(INVENTORY_UPDATED, GROUP, handler)
    mock_redis.xgroup_create.side_effect = ResponseError(
        "BUSYGROUP Consumer Group name already exists"
    )

    await redis_bus.ensure_groups()

    mock_redis.xgroup_create.assert_awaited_once_with(
        INVENTORY_UPDATED, GROUP, id="0", mkstream=True
    )


# --- Delivery --- #


@pytest.mark.asyncio
async def test_successful_handler_acks(redis_bus, mock_redis):
    handler = AsyncMock()

    await redis_bus.handle_entry(subscription(handler), "1-0", FIELDS)

    handler.assert_awaited_once_with(ENVELOPE)
    mock_redis.xack.assert_awaited_once_with(INVENTORY_UPDATED, GROUP, "1-0")


@pytest.mark.asyncio
async def test_failing_handler_is_not_acked(redis_bus, mock_redis):
    handler = AsyncMock(side_effect=RuntimeError("store unavailable"))

    await redis_bus.handle_entry(subscription(handler), "1-0", FIELDS)

    mock_redis.xack.assert_not_awaited()
    mock_redis.xadd.assert_not_awaited()


@pytest.mark.asyncio
async def test_entry_past_max_deliveries_is_dead_lettered(redis_bus, mock_redis):
    mock_redis.xpending_range.return_value = pending(4)
    handler = AsyncMock()

    await redis_bus.handle_entry(subscription(handler), "1-0", FIELDS)

    handler.assert_not_awaited()
    stream, fields = mock_redis.xadd.call_args.args
    assert stream == "inventory.updated.dead"
    assert fields["payload"] == FIELDS["payload"]
    assert fields["group"] == GROUP
    assert fields["messageId"] == "1-0"
    mock_redis.xack.assert_awaited_once_with(INVENTORY_UPDATED, GROUP, "1-0")


@pytest.mark.asyncio
async def test_contract_violation_is_dead_lettered_immediately(redis_bus, mock_redis):
    handler = AsyncMock(side_effect=EventContractError("unknown status"))

    await redis_bus.handle_entry(subscription(handler), "1-0", FIELDS)

    assert mock_redis.xadd.call_args.args[0] == "inventory.updated.dead"
    mock_redis.xack.assert_awaited_once_with(INVENTORY_UPDATED, GROUP, "1-0")


@pytest.mark.asyncio
async def test_undecodable_entry_is_dead_lettered(redis_bus, mock_redis):
    handler = AsyncMock()

    await redis_bus.handle_entry(subscription(handler), "1-0", {"payload": "{not json"})

    handler.assert_not_awaited()
    assert mock_redis.xadd.call_args.args[0] == "inventory.updated.dead"
    mock_redis.xack.assert_awaited_once()


@pytest.mark.asyncio
async def test_stale_pending_entries_are_reclaimed(redis_bus, mock_redis):
    handler = AsyncMock()
    mock_redis.xautoclaim.return_value = ["0-0", [("1-0", FIELDS), ("2-0", None)], []]
    shutdown = asyncio.Event()

    async def stop_after_read(*args, **kwargs):
        shutdown.set()
        return []

    mock_redis.xreadgroup.side_effect = stop_after_read

    await redis_bus._consume(subscription(handler), shutdown)

    handler.assert_awaited_once_with(ENVELOPE)
    mock_redis.xack.assert_awaited_once_with(INVENTORY_UPDATED, GROUP, "1-0")
