"""Tests for the single-writer storage actor."""
from __future__ import annotations

import pytest

from conftest import NOW, make_snapshot, make_spec
from egg_tracker.models import DurationType, Mission
from egg_tracker.protocol import decode_snapshot, encode_snapshot
from egg_tracker.storage import CacheGuard, StorageActor, StorageCommand

EI = "EI0000000000000001"


def _mission(identifier: str, land: int, belong: str = EI) -> Mission:
    return Mission(id=identifier, name="Henerprise", duration_type=DurationType.EPIC, belong=belong, land=land)


@pytest.mark.asyncio
async def test_account_registration_updates_both_indexes(storage):
    assert await storage.account_add(EI, 11)
    assert await storage.account_add(EI, 22)

    mapping = await storage.account_query_chats(EI)
    assert sorted(mapping.chats) == [11, 22]
    assert [account.ei for account in await storage.account_query(11)] == [EI]
    assert [account.ei for account in await storage.account_query(None)] == [EI]


@pytest.mark.asyncio
async def test_removing_last_chat_drops_account(storage):
    await storage.account_add(EI, 11)
    await storage.mission_add(_mission("m1", NOW + 100))

    assert await storage.user_remove_account(11, EI)
    assert await storage.account_query_ei(EI) is None
    assert await storage.mission_single_query("m1") is None
    assert not await storage.user_remove_account(11, EI)


@pytest.mark.asyncio
async def test_account_update_disables_idempotently(storage):
    await storage.account_add(EI, 11)

    await storage.account_update(EI, True, NOW)
    await storage.account_update(EI, True, NOW)
    account = await storage.account_query_ei(EI)

    assert account.disabled
    assert account.last_fetch == NOW


@pytest.mark.asyncio
async def test_mission_queries(storage):
    await storage.account_add(EI, 11)
    assert await storage.mission_add(_mission("m1", NOW + 100))
    assert not await storage.mission_add(_mission("m1", NOW + 100))
    await storage.mission_add(_mission("m2", NOW + 5000))
    await storage.mission_add(_mission("m3", NOW - 10))

    due = await storage.mission_query(NOW + 600)
    assert [mission.id for mission in due] == ["m3", "m1"]
    assert await storage.mission_pending_count(EI) == 3

    await storage.mission_mark_notified("m3")
    assert await storage.mission_pending_count(EI) == 2
    assert (await storage.mission_single_query("m3")).notified

    recent = await storage.mission_query_by_user(11, True, NOW)
    assert [mission.id for mission in recent[0][1]] == ["m1"]
    everything = await storage.mission_query_by_user(11, False, NOW)
    assert [mission.id for mission in everything[0][1]] == ["m2", "m1", "m3"]


@pytest.mark.asyncio
async def test_mission_reset_marks_latest_unnotified(storage):
    await storage.account_add(EI, 11)
    for index in range(4):
        await storage.mission_add(_mission(f"m{index}", NOW + index))
        await storage.mission_mark_notified(f"m{index}")

    assert await storage.account_mission_reset(EI, 2) == 2
    assert not (await storage.mission_single_query("m3")).notified
    assert not (await storage.mission_single_query("m2")).notified
    assert (await storage.mission_single_query("m1")).notified


@pytest.mark.asyncio
async def test_contract_spec_insert_once(storage):
    spec = make_spec()

    assert await storage.contract_spec_insert(spec)
    assert not await storage.contract_spec_insert(spec)
    assert await storage.contract_query_spec(spec.id) == spec


@pytest.mark.asyncio
async def test_participation_start_time_follows_room(storage):
    await storage.account_insert_contract("spring-2024", "room-1", EI, False)
    await storage.contract_start_time_update("spring-2024", "room-1", 1000.0)
    await storage.contract_start_time_update("spring-2024", "room-1", 2000.0)

    other = "EI0000000000000002"
    await storage.account_insert_contract("spring-2024", "room-2", other, False)
    assert await storage.account_insert_contract("spring-2024", "room-1", other, True)

    first = await storage.contract_query_single("spring-2024", EI)
    moved = await storage.contract_query_single("spring-2024", other)
    assert first.start_time == 1000.0
    assert moved.room == "room-1"
    assert moved.start_time == 1000.0
    assert moved.finished
    assert not await storage.account_insert_contract("spring-2024", "room-1", other, True)


@pytest.mark.asyncio
async def test_cache_guard_keeps_more_progress_in_either_order(storage):
    older = make_snapshot(total=1e14)
    newer = make_snapshot(total=2e14)

    async def store(snapshot, timestamp):
        return await storage.contract_cache_insert(
            "spring-2024", "room-1", encode_snapshot(snapshot), False, timestamp,
            CacheGuard.for_snapshot(snapshot, timestamp),
        )

    assert await store(newer, NOW)
    assert not await store(older, NOW + 10)
    cached = await storage.contract_cache_query("spring-2024", "room-1")
    assert decode_snapshot(cached.body).total_amount == 2e14
    assert cached.timestamp == NOW

    await storage.contract_cache_reset_timestamp("spring-2024", "room-1")
    assert await storage.contract_cache_timestamp_query("spring-2024", "room-1") == 0


@pytest.mark.asyncio
async def test_cache_guard_accepts_newer_observation_of_same_amount(storage):
    snapshot = make_snapshot(total=1e14)
    body = encode_snapshot(snapshot)

    assert await storage.contract_cache_insert("c", "r", body, False, NOW, CacheGuard.for_snapshot(snapshot, NOW))
    assert not await storage.contract_cache_insert(
        "c", "r", body, False, NOW - 5, CacheGuard.for_snapshot(snapshot, NOW - 5)
    )
    assert await storage.contract_cache_insert(
        "c", "r", body, True, NOW + 5, CacheGuard.for_snapshot(snapshot, NOW + 5)
    )
    assert (await storage.contract_cache_query("c", "r")).cleared


def test_cache_guard_rule():
    assert CacheGuard.accepts(2.0, 0, 1.0, 100)
    assert not CacheGuard.accepts(1.0, 200, 2.0, 100)
    assert CacheGuard.accepts(1.0, 100, 1.0, 100)
    assert not CacheGuard.accepts(1.0, 99, 1.0, 100)


@pytest.mark.asyncio
async def test_subscriptions_add_and_remove_chats(storage):
    assert await storage.subscribe_new("c", "r", 11)
    assert not await storage.subscribe_new("c", "r", 11)
    assert await storage.subscribe_new("c", "r", 22)
    assert (await storage.subscribe_single_fetch("c", "r")).chats == frozenset({11, 22})

    assert await storage.subscribe_del("c", "r", 11)
    assert not await storage.subscribe_del("c", "r", 11)
    assert (await storage.subscribe_single_fetch("c", "r")).chats == frozenset({22})


@pytest.mark.asyncio
async def test_subscribe_fetch_filters_by_estimate(storage):
    await storage.subscribe_new("c", "new", 11)
    await storage.subscribe_new("c", "soon", 11)
    await storage.subscribe_new("c", "done", 11)
    await storage.subscribe_timestamp_update("c", "soon", NOW + 100)
    await storage.subscribe_timestamp_update("c", "done", NOW + 50)
    await storage.subscribe_notified("c", "done")

    assert sorted(info.room for info in await storage.subscribe_fetch(None)) == ["new", "soon"]
    assert [info.room for info in await storage.subscribe_fetch(NOW + 600)] == ["soon"]


class _Exploding(StorageCommand):
    def apply(self, db):
        raise RuntimeError("disk on fire")


@pytest.mark.asyncio
async def test_failed_command_resolves_to_default(storage, storage_actor):
    assert await storage._request(_Exploding(), default="fallback") == "fallback"
    assert storage_actor.dropped == 1
    # The actor keeps serving after a dropped command.
    assert await storage.account_query(None) == []


@pytest.mark.asyncio
async def test_terminated_storage_answers_defaults(db_path):
    actor = StorageActor.open(db_path)
    handle = actor.start()
    await handle.account_add(EI, 11)

    await handle.terminate()
    await actor.wait()

    assert actor.closed
    assert await handle.account_query(None) == []
    assert await handle.mission_pending_count(EI) is None
    assert not await handle.account_add(EI, 22)
