"""Tests for the contract subscription scheduler."""
from __future__ import annotations

import pytest

from conftest import NOW, make_snapshot, make_spec
from egg_tracker.protocol import TransportError
from egg_tracker.subscriber import ContractSubscriber, SubscriberConfig, fetch_interval

CONTRACT = "spring-2024"
ROOM = "room-1"


@pytest.fixture
def subscriber(storage, client, notifier, clock):
    return ContractSubscriber(storage, client, notifier, config=SubscriberConfig(), clock=clock)


@pytest.mark.parametrize(
    "remaining, expected",
    [
        (30 * 3600, 4 * 3600),
        (10 * 3600, 2 * 3600),
        (2 * 3600, 3600),
        (10 * 60, 20 * 60),
        (-600, 20 * 60),
    ],
)
def test_fetch_cadence_tightens_near_finish(remaining, expected):
    assert fetch_interval(NOW, NOW + remaining) == expected


@pytest.mark.asyncio
async def test_query_round_records_estimate_and_announces_change(subscriber, storage, client, notifier):
    await storage.subscribe_new(CONTRACT, ROOM, 11)
    await storage.contract_spec_insert(make_spec())
    client.rooms[(CONTRACT, ROOM)] = make_snapshot()

    assert await subscriber.query_round() == 1

    info = await storage.subscribe_single_fetch(CONTRACT, ROOM)
    # (1e15 - 5e14) eggs at 2e9 per second
    assert info.est == NOW + 250000
    assert await storage.contract_cache_timestamp_query(CONTRACT, ROOM) == NOW
    (text,) = notifier.texts_for(11)
    assert text.startswith(f"{CONTRACT}/{ROOM} update end time: ")
    assert subscriber.inbox.qsize() == 1


@pytest.mark.asyncio
async def test_recently_cached_room_is_not_refetched(subscriber, storage, client, clock):
    await storage.subscribe_new(CONTRACT, ROOM, 11)
    await storage.contract_spec_insert(make_spec())
    client.rooms[(CONTRACT, ROOM)] = make_snapshot()

    await subscriber.query_round()
    clock.advance(600)
    assert await subscriber.query_round() == 0
    assert len(client.room_calls) == 1

    # Finish is 2.5 days away, so the cadence is four hours.
    clock.advance(4 * 3600)
    assert await subscriber.query_round() == 1
    assert len(client.room_calls) == 2


@pytest.mark.asyncio
async def test_stable_estimate_is_not_reannounced(subscriber, storage, client, notifier):
    await storage.subscribe_new(CONTRACT, ROOM, 11)
    await storage.subscribe_timestamp_update(CONTRACT, ROOM, NOW + 250010)
    await storage.contract_spec_insert(make_spec())
    client.rooms[(CONTRACT, ROOM)] = make_snapshot()

    assert await subscriber.query_round() == 1

    assert notifier.sent == []
    assert (await storage.subscribe_single_fetch(CONTRACT, ROOM)).est == NOW + 250010


@pytest.mark.asyncio
async def test_unreachable_goal_stores_projection_quietly(subscriber, storage, client, notifier):
    await storage.subscribe_new(CONTRACT, ROOM, 11)
    await storage.contract_spec_insert(make_spec(goal3=1e18))
    client.rooms[(CONTRACT, ROOM)] = make_snapshot()

    assert await subscriber.query_round() == 1

    info = await storage.subscribe_single_fetch(CONTRACT, ROOM)
    assert info.est > NOW + 86400 * 3
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_missing_spec_skips_fetch(subscriber, storage, client):
    await storage.subscribe_new(CONTRACT, ROOM, 11)

    assert await subscriber.query_round() == 0
    assert client.room_calls == []


@pytest.mark.asyncio
async def test_fetch_error_is_reported_to_subscribers(subscriber, storage, client, notifier):
    await storage.subscribe_new(CONTRACT, ROOM, 11)
    await storage.subscribe_new(CONTRACT, ROOM, 22)
    await storage.contract_spec_insert(make_spec())
    client.rooms[(CONTRACT, ROOM)] = TransportError("down")

    assert await subscriber.query_round() == 0

    assert notifier.texts_for(11) == [f"Query {CONTRACT}/{ROOM} Error"]
    assert notifier.texts_for(22) == [f"Query {CONTRACT}/{ROOM} Error"]


@pytest.mark.asyncio
async def test_finish_is_announced_once(subscriber, storage, notifier, clock):
    await storage.subscribe_new(CONTRACT, ROOM, 11)
    await storage.subscribe_timestamp_update(CONTRACT, ROOM, NOW + 100)

    assert await subscriber.refresh_cache() == 1
    clock.advance(101)
    assert await subscriber.notify_due() == 1

    assert notifier.texts_for(11) == [f"Contract subscribe:\n{CONTRACT}/{ROOM} is finished"]
    assert (await storage.subscribe_single_fetch(CONTRACT, ROOM)).notified
    assert await subscriber.refresh_cache() == 0


@pytest.mark.asyncio
async def test_moved_estimate_is_rechecked_before_announcing(subscriber, storage, notifier, clock):
    await storage.subscribe_new(CONTRACT, ROOM, 11)
    await storage.subscribe_timestamp_update(CONTRACT, ROOM, NOW + 100)
    await subscriber.refresh_cache()
    await storage.subscribe_timestamp_update(CONTRACT, ROOM, NOW + 5000)

    clock.advance(101)

    assert await subscriber.notify_due() == 0
    assert notifier.sent == []
    assert not (await storage.subscribe_single_fetch(CONTRACT, ROOM)).notified


@pytest.mark.asyncio
async def test_fresh_subscription_without_estimate_is_not_cached(subscriber, storage):
    await storage.subscribe_new(CONTRACT, ROOM, 11)

    assert await subscriber.refresh_cache() == 0


@pytest.mark.asyncio
async def test_unsubscribed_room_is_not_announced(subscriber, storage, notifier, clock):
    await storage.subscribe_new(CONTRACT, ROOM, 11)
    await storage.subscribe_timestamp_update(CONTRACT, ROOM, NOW + 100)
    await subscriber.refresh_cache()
    await storage.subscribe_del(CONTRACT, ROOM, 11)

    clock.advance(101)
    await subscriber.notify_due()

    assert notifier.texts_for(11) == []


@pytest.mark.asyncio
async def test_synthetic_subscriptions_are_announced(subscriber, notifier, clock):
    inserted = subscriber.insert_fake_subscriptions(11, [30, 60])

    clock.advance(61)
    assert await subscriber.notify_due() == 0

    (text,) = notifier.texts_for(11)
    assert text.startswith("Contract subscribe:\n")
    for info in inserted:
        assert f"{info.id}/test is finished" in text


@pytest.mark.asyncio
async def test_estimate_change_keeps_synthetic_subscriptions(subscriber, storage, client, notifier, clock):
    (synthetic,) = subscriber.insert_fake_subscriptions(99, [30])
    await storage.subscribe_new(CONTRACT, ROOM, 11)
    await storage.contract_spec_insert(make_spec())
    client.rooms[(CONTRACT, ROOM)] = make_snapshot()

    assert await subscriber.query_round() == 1
    command = subscriber.inbox.get_nowait()
    assert not command.invalidate
    assert await subscriber.handle_command(command)

    clock.advance(31)
    await subscriber.notify_due()

    assert notifier.texts_for(99) == [f"Contract subscribe:\n{synthetic.id}/test is finished"]
