"""Account poll scheduler.

Polls the game backend for every due account, records newly launched
spaceships, and notifies the account's chats when a ship lands.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .config import Settings
from .event_cache import DeferredEventCache
from .formatting import timestamp_to_string
from .models import Account, AccountSnapshot, DurationType, Mission
from .protocol import ProtocolClient, QueryError, RejectedError, encode_snapshot
from .scheduler import Clock, Exit, Notifier, RefreshCache, TimerLoop, notify_chats
from .storage import CacheGuard, StorageHandle
from .telemetry import SchedulerStatus, TelemetryCollector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MonitorConfig:
    fetch_period: int = 1800
    check_period: int = 240
    notify_interval: float = 3
    cache_refresh_period: float = 300
    cache_horizon: int = 600
    gc_interval: float = 43200
    forced_refresh: int = 14400
    pending_mission_limit: int = 3
    shutdown_timeout: float = 5.0
    telemetry_retention_days: int = 30

    @staticmethod
    def from_settings(settings: Settings) -> "MonitorConfig":
        return MonitorConfig(
            fetch_period=settings.fetch_period,
            check_period=settings.check_period,
            notify_interval=settings.notify_interval,
            cache_refresh_period=settings.cache_refresh_period,
            cache_horizon=settings.cache_horizon,
            gc_interval=settings.gc_interval,
            forced_refresh=settings.forced_refresh,
            pending_mission_limit=settings.pending_mission_limit,
            shutdown_timeout=settings.shutdown_timeout,
            telemetry_retention_days=settings.telemetry_retention_days,
        )


@dataclass
class NewClient:
    pass


@dataclass
class InsertCache:
    """Inject synthetic missions for ``ei`` landing ``now + offset``."""

    ei: str
    land_offsets: Sequence[int] = field(default_factory=lambda: (30, 60, 90))


def _mission_line(mission: Mission) -> str:
    return f"{mission.name} ({mission.duration_type.label}) {timestamp_to_string(mission.land)}"


class Monitor(TimerLoop):
    """Inbox plus poll, notify, cache-refresh and GC jobs."""

    name = "monitor"

    def __init__(
        self,
        storage: StorageHandle,
        client: ProtocolClient,
        notifier: Notifier,
        *,
        config: Optional[MonitorConfig] = None,
        status: Optional[SchedulerStatus] = None,
        telemetry: Optional[TelemetryCollector] = None,
        clock: Clock = time.time,
    ) -> None:
        self.config = config or MonitorConfig()
        super().__init__(clock=clock, shutdown_timeout=self.config.shutdown_timeout)
        self.storage = storage
        self.client = client
        self.notifier = notifier
        self.status = status or SchedulerStatus()
        self.telemetry = telemetry
        self.cache: DeferredEventCache[Mission] = DeferredEventCache()
        self._poll_job = self.add_interval_job("poll", self.config.check_period, self._spawn_poll)
        self.add_interval_job("notify", self.config.notify_interval, self.notify_due)
        self._refresh_job = self.add_interval_job("cache-refresh", self.config.cache_refresh_period, self.refresh_cache)
        self.add_interval_job("gc", self.config.gc_interval, self._gc, immediate=False)

    # Commands --------------------------------------------------------------
    async def new_client(self) -> None:
        await self.send(NewClient())

    async def refresh(self, invalidate: bool = False) -> None:
        await self.send(RefreshCache(invalidate))

    async def insert_cache(self, ei: str, land_offsets: Sequence[int] = (30, 60, 90)) -> None:
        await self.send(InsertCache(ei, tuple(land_offsets)))

    async def exit(self) -> None:
        await self.send(Exit())

    async def handle_command(self, command: object) -> bool:
        if isinstance(command, Exit):
            return False
        if isinstance(command, NewClient):
            self.trigger(self._poll_job)
            self.trigger(self._refresh_job)
        elif isinstance(command, RefreshCache):
            if command.invalidate:
                self.cache.clear()
            self.trigger(self._refresh_job)
        elif isinstance(command, InsertCache):
            self.insert_fake_missions(command.ei, command.land_offsets)
        else:
            logger.warning("Unknown monitor command %r", command)
        return True

    def _request_refresh(self) -> None:
        try:
            self.inbox.put_nowait(RefreshCache(False))
        except asyncio.QueueFull:
            logger.debug("Monitor inbox full, refresh request skipped")

    def insert_fake_missions(self, ei: str, land_offsets: Sequence[int]) -> List[Mission]:
        now = self.now()
        missions = []
        for offset in land_offsets:
            mission = Mission(
                id=f"fake-{uuid.uuid4().hex}",
                name="Test Ship",
                duration_type=DurationType.UNKNOWN,
                belong=ei,
                land=now + int(offset),
            )
            self.cache.insert(mission.land, mission)
            missions.append(mission)
        logger.info("Inserted %d synthetic missions for %s", len(missions), ei)
        return missions

    # Interval jobs ---------------------------------------------------------
    async def _spawn_poll(self) -> None:
        self.spawn_round(self.poll_round(), "poll")

    async def _gc(self) -> None:
        self.collect_finished()
        if self.telemetry is not None:
            self.telemetry.cleanup_old_data(self.config.telemetry_retention_days)

    async def refresh_cache(self) -> int:
        deadline = self.now() + self.config.cache_horizon
        missions = await self.storage.mission_query(deadline)
        added = self.cache.refill(missions, key=lambda mission: mission.land)
        if added:
            logger.debug("Cache refreshed with %d missions", added)
        return added

    async def notify_due(self) -> int:
        """Drain landed missions and send one message per chat."""

        due = self.cache.drain_due(self.now())
        if not due:
            return 0
        by_account: Dict[str, List[Mission]] = defaultdict(list)
        for mission in due:
            by_account[mission.belong].append(mission)

        pending: Dict[int, List[str]] = defaultdict(list)
        for ei, missions in by_account.items():
            mapping = await self.storage.account_query_chats(ei)
            account = await self.storage.account_query_ei(ei)
            name = account.name if account else ei
            for mission in missions:
                await self.storage.mission_mark_notified(mission.id)
            if mapping is None or not mapping.chats:
                logger.warning("Missions of %s have no chat to notify, discarded", ei)
                continue
            block = "\n".join(_mission_line(mission) for mission in sorted(missions, key=lambda m: m.land))
            for chat_id in mapping.chats:
                pending[chat_id].append(f"{name}:\n{block}")

        for chat_id, blocks in pending.items():
            text = "Your spaceship has returned:\n" + "\n\n".join(blocks)
            await notify_chats(self.notifier, [chat_id], text, telemetry=self.telemetry, channel="mission")
        return len(due)

    # Poll round ------------------------------------------------------------
    async def poll_round(self) -> int:
        """Visit every due account once; returns how many were fetched."""

        now = self.now()
        self.status.mark_query(now)
        fetched = 0
        for account in await self.storage.account_query(None):
            if not account.is_due(now, self.config.fetch_period, self.config.forced_refresh):
                continue
            try:
                if await self.poll_account(account):
                    fetched += 1
            except Exception as exc:
                logger.exception("Handle account %s failed", account.ei)
                await self._notify_account(account.ei, f"Handle account {account.name} got error: {exc}")
        logger.debug("Poll round fetched %d accounts", fetched)
        return fetched

    async def _notify_account(self, ei: str, text: str) -> None:
        mapping = await self.storage.account_query_chats(ei)
        if mapping is None:
            return
        await notify_chats(self.notifier, mapping.chats, text, telemetry=self.telemetry, channel="account")

    async def poll_account(self, account: Account) -> bool:
        ei = account.ei
        pending = await self.storage.mission_pending_count(ei)
        if pending is None or pending >= self.config.pending_mission_limit:
            logger.debug("Skip %s, %s missions pending", ei, pending)
            return False

        started = time.monotonic()
        try:
            snapshot = await self.client.fetch_account(ei)
        except RejectedError as exc:
            logger.warning("Account %s rejected: %s", ei, exc)
            await self.storage.account_update(ei, True, self.now())
            self._track_failure(ei, exc)
            await self._notify_account(
                ei, f"Account {account.name} was rejected by the game server, tracking disabled."
            )
            return True
        except QueryError as exc:
            logger.error("Query %s failed: %s", ei, exc)
            self._track_failure(ei, exc)
            await self._notify_account(ei, f"Query {account.name} failed ({exc.kind} error), will retry later.")
            return False

        if self.telemetry is not None:
            self.telemetry.track_poll(ei, True, (time.monotonic() - started) * 1000)
        try:
            await self.merge_snapshot(account, snapshot)
        finally:
            await self.storage.account_update(ei, False, self.now())
        return True

    def _track_failure(self, ei: str, exc: QueryError) -> None:
        if self.telemetry is not None:
            self.telemetry.track_poll(ei, False)
            self.telemetry.track_fetch_error(ei, exc.kind, str(exc))

    async def merge_snapshot(self, account: Account, snapshot: AccountSnapshot) -> List[Mission]:
        ei = account.ei
        now = self.now()
        if account.contract_trace:
            await self.merge_contracts(ei, snapshot, now)

        if snapshot.nickname and snapshot.nickname != account.nickname:
            await self.storage.account_name_update(ei, snapshot.nickname)
            await self._notify_account(
                ei, f"Account {ei} nickname changed: {account.nickname or 'N/A'} -> {snapshot.nickname}"
            )
            account.nickname = snapshot.nickname

        added = []
        for remote in snapshot.missions:
            mission = remote.to_mission(ei)
            if mission.is_landed(now):
                continue
            if await self.storage.mission_single_query(mission.id) is not None:
                continue
            if await self.storage.mission_add(mission):
                added.append(mission)
        if added:
            lines = "\n".join(_mission_line(mission) for mission in added)
            await self._notify_account(ei, f"New mission found for {account.name}:\n{lines}")
            self._request_refresh()
        return added

    async def merge_contracts(self, ei: str, snapshot: AccountSnapshot, now: int) -> None:
        for contract in snapshot.contracts:
            spec = contract.spec
            await self.storage.contract_spec_insert(spec)
            await self.storage.account_insert_contract(
                spec.id, contract.coop_identifier, ei, contract.finished
            )
            if contract.start_time is not None:
                await self.storage.contract_start_time_update(
                    spec.id, contract.coop_identifier, contract.start_time
                )
        for status in snapshot.coop_statuses:
            await self.storage.contract_cache_insert(
                status.contract_identifier,
                status.coop_identifier,
                encode_snapshot(status),
                status.is_cleared,
                now,
                CacheGuard.for_snapshot(status, now),
            )


__all__ = ["InsertCache", "Monitor", "MonitorConfig", "NewClient"]
