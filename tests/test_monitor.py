"""Tests for the account poll scheduler."""
from __future__ import annotations

import asyncio
import sqlite3
import time

import pytest

from conftest import NOW, make_remote_mission, make_snapshot, make_spec
from egg_tracker.models import AccountSnapshot, DurationType, LocalContract, Mission
from egg_tracker.monitor import Monitor, MonitorConfig
from egg_tracker.protocol import RejectedError, TransportError, decode_snapshot
from egg_tracker.telemetry import TelemetryCollector

EI = "EI0000000000000001"


@pytest.fixture
def monitor(storage, client, notifier, clock):
    return Monitor(storage, client, notifier, config=MonitorConfig(), clock=clock)


async def _register(storage, ei=EI, chat_id=11, last_fetch=NOW - 2000):
    await storage.account_add(ei, chat_id)
    await storage.account_update(ei, False, last_fetch)


@pytest.mark.asyncio
async def test_new_mission_is_announced_when_it_lands(monitor, storage, client, notifier, clock):
    await _register(storage)
    client.accounts[EI] = AccountSnapshot(
        ei=EI, nickname="farmer", missions=[make_remote_mission("ship-1", NOW + 120)]
    )

    assert await monitor.poll_round() == 1
    assert any(text.startswith("New mission found for farmer") for text in notifier.texts_for(11))
    assert (await storage.account_query_ei(EI)).last_fetch == NOW

    assert await monitor.refresh_cache() == 1
    clock.advance(60)
    assert await monitor.notify_due() == 0

    clock.advance(61)
    assert await monitor.notify_due() == 1
    landed = [text for text in notifier.texts_for(11) if text.startswith("Your spaceship has returned")]
    assert len(landed) == 1
    assert "farmer:\nHenerprise (Long)" in landed[0]
    assert (await storage.mission_single_query("ship-1")).notified

    # A second refill does not resurrect a delivered mission.
    assert await monitor.refresh_cache() == 0


@pytest.mark.asyncio
async def test_landed_and_known_missions_are_not_recorded(monitor, storage, client, notifier):
    await _register(storage)
    client.accounts[EI] = AccountSnapshot(
        ei=EI,
        missions=[make_remote_mission("old", NOW - 5), make_remote_mission("new", NOW + 500)],
    )

    await monitor.poll_round()
    await storage.account_update(EI, False, NOW - 2000)
    await monitor.poll_round()

    assert await storage.mission_single_query("old") is None
    assert await storage.mission_pending_count(EI) == 1
    assert len([text for text in notifier.texts_for(11) if text.startswith("New mission")]) == 1


@pytest.mark.asyncio
async def test_backpressure_skips_accounts_with_pending_missions(monitor, storage, client):
    await _register(storage)
    for index in range(3):
        await storage.mission_add(
            Mission(id=f"m{index}", name="Henerprise", duration_type=DurationType.LONG, belong=EI, land=NOW + 600)
        )

    assert await monitor.poll_round() == 0
    assert client.account_calls == []
    assert (await storage.account_query_ei(EI)).last_fetch == NOW - 2000


@pytest.mark.asyncio
async def test_recently_fetched_and_disabled_accounts_are_not_polled(monitor, storage, client):
    await _register(storage, last_fetch=NOW - 100)
    other = "EI0000000000000002"
    await storage.account_add(other, 22)
    await storage.account_update(other, True, 0)

    assert await monitor.poll_round() == 0
    assert client.account_calls == []


@pytest.mark.asyncio
async def test_contract_trace_forces_refresh(storage, client, notifier, clock):
    monitor = Monitor(
        storage, client, notifier, config=MonitorConfig(fetch_period=86400, forced_refresh=14400), clock=clock
    )
    other = "EI0000000000000002"
    await _register(storage, last_fetch=NOW - 14401)
    await _register(storage, ei=other, chat_id=22, last_fetch=NOW - 14401)
    await storage.account_contract_update(EI, True)

    assert await monitor.poll_round() == 1
    assert client.account_calls == [EI]


@pytest.mark.asyncio
async def test_rejected_account_is_disabled(monitor, storage, client, notifier):
    await _register(storage)
    client.accounts[EI] = RejectedError("bad credential")

    assert await monitor.poll_round() == 1

    account = await storage.account_query_ei(EI)
    assert account.disabled
    assert "rejected" in notifier.texts_for(11)[0]
    assert await monitor.poll_round() == 0


@pytest.mark.asyncio
async def test_transport_error_keeps_last_fetch(monitor, storage, client, notifier):
    await _register(storage)
    client.accounts[EI] = TransportError("timeout")

    assert await monitor.poll_round() == 0

    account = await storage.account_query_ei(EI)
    assert not account.disabled
    assert account.last_fetch == NOW - 2000
    assert notifier.texts_for(11) == [f"Query {EI} failed (system error), will retry later."]


@pytest.mark.asyncio
async def test_nickname_change_notifies_every_chat(monitor, storage, client, notifier):
    await _register(storage)
    await storage.account_add(EI, 22)
    client.accounts[EI] = AccountSnapshot(ei=EI, nickname="farmer")

    await monitor.poll_round()

    expected = f"Account {EI} nickname changed: N/A -> farmer"
    assert notifier.texts_for(11) == [expected]
    assert notifier.texts_for(22) == [expected]
    assert (await storage.account_query_ei(EI)).nickname == "farmer"


@pytest.mark.asyncio
async def test_merge_contracts_records_spec_participation_and_cache(monitor, storage):
    spec = make_spec()
    status = make_snapshot(total=3e14)
    snapshot = AccountSnapshot(
        ei=EI,
        contracts=[LocalContract(spec=spec, coop_identifier="room-1", start_time=1000.0)],
        coop_statuses=[status],
    )

    await monitor.merge_contracts(EI, snapshot, NOW)

    assert await storage.contract_query_spec(spec.id) == spec
    participation = await storage.contract_query_single(spec.id, EI)
    assert participation.room == "room-1"
    assert participation.start_time == 1000.0
    cached = await storage.contract_cache_query(spec.id, "room-1")
    assert cached.timestamp == NOW
    assert decode_snapshot(cached.body).total_amount == 3e14

    # Older, smaller observation must not replace the cached one.
    await monitor.merge_contracts(EI, AccountSnapshot(ei=EI, coop_statuses=[make_snapshot(total=1e14)]), NOW + 5)
    cached = await storage.contract_cache_query(spec.id, "room-1")
    assert decode_snapshot(cached.body).total_amount == 3e14


@pytest.mark.asyncio
async def test_synthetic_missions_are_delivered(monitor, storage, notifier, clock):
    await storage.account_add(EI, 11)
    missions = monitor.insert_fake_missions(EI, [30, 60])

    assert len(missions) == 2
    clock.advance(61)
    assert await monitor.notify_due() == 2
    (text,) = notifier.texts_for(11)
    assert text.count("Test Ship") == 2


@pytest.mark.asyncio
async def test_unreachable_chat_does_not_block_others(storage, client, clock):
    from conftest import RecordingNotifier

    notifier = RecordingNotifier(failing=(11,))
    monitor = Monitor(storage, client, notifier, clock=clock)
    await storage.account_add(EI, 11)
    await storage.account_add(EI, 22)
    monitor.insert_fake_missions(EI, [1])

    clock.advance(2)
    await monitor.notify_due()

    assert len(notifier.texts_for(22)) == 1


@pytest.mark.asyncio
async def test_loop_starts_and_exits(monitor, storage):
    task = monitor.start()
    await monitor.new_client()
    await monitor.refresh(invalidate=True)
    await monitor.exit()

    await asyncio.wait_for(monitor.join(), timeout=5)
    assert task.done()


async def _wait_until(predicate, timeout=2.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_new_client_starts_a_poll_round_at_once(storage, client, notifier, clock):
    monitor = Monitor(storage, client, notifier, config=MonitorConfig(check_period=3600), clock=clock)
    monitor.start()
    await _wait_until(lambda: monitor.status.poll_rounds == 1)

    await monitor.new_client()
    await _wait_until(lambda: monitor.status.poll_rounds == 2)

    await monitor.exit()
    await asyncio.wait_for(monitor.join(), timeout=5)


@pytest.mark.asyncio
async def test_shutdown_gives_up_on_hung_rounds(storage, client, notifier, clock, caplog):
    monitor = Monitor(storage, client, notifier, config=MonitorConfig(shutdown_timeout=0.1), clock=clock)
    monitor.start()
    hung = monitor.spawn_round(asyncio.sleep(3600), "poll")

    await monitor.exit()
    await asyncio.wait_for(monitor.join(), timeout=5)

    assert "rounds still running after 0.1s, giving up" in caplog.text
    assert not hung.done()
    hung.cancel()


@pytest.mark.asyncio
async def test_gc_prunes_old_telemetry(storage, client, notifier, clock, tmp_path):
    collector = TelemetryCollector(tmp_path / "metrics.db")
    monitor = Monitor(
        storage,
        client,
        notifier,
        config=MonitorConfig(telemetry_retention_days=7),
        telemetry=collector,
        clock=clock,
    )
    collector.track_system_event("start")
    collector.flush()
    with sqlite3.connect(collector.db_path) as conn:
        conn.execute(
            "INSERT INTO metrics (timestamp, metric_type, name, value) VALUES (?, ?, ?, ?)",
            (time.time() - 8 * 86400, "poll", "account_fetch", 1.0),
        )
        conn.commit()

    await monitor._gc()

    summary = collector.get_summary(hours=24 * 30)
    assert "poll" not in summary
    assert summary["system_event"]["start"] == 1.0
