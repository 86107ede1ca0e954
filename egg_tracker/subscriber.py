"""Contract subscription scheduler.

Tracks coop rooms that chats subscribed to, refetches each room on a cadence
that tightens as the estimated finish approaches, and announces the finish.
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
from .models import SubscribeInfo
from .protocol import ProtocolClient, encode_snapshot
from .scheduler import Clock, Exit, Notifier, RefreshCache, TimerLoop, notify_chats
from .scoring import OutOfTime, calc_score
from .storage import CacheGuard, StorageHandle
from .telemetry import SchedulerStatus, TelemetryCollector

logger = logging.getLogger(__name__)

HOUR = 3600


def fetch_interval(now: int, est: int) -> int:
    """Seconds between refetches of a room expected to finish at ``est``."""

    remaining = est - now
    if remaining > 24 * HOUR:
        return 4 * HOUR
    if remaining > 6 * HOUR:
        return 2 * HOUR
    if remaining > HOUR:
        return HOUR
    return 20 * 60


@dataclass(frozen=True)
class SubscriberConfig:
    query_interval: float = 600
    notify_interval: float = 15
    cache_refresh_period: float = 600
    cache_horizon: int = 1200
    gc_interval: float = 43200
    estimate_tolerance: int = 30
    shutdown_timeout: float = 5.0

    @staticmethod
    def from_settings(settings: Settings) -> "SubscriberConfig":
        return SubscriberConfig(
            query_interval=settings.subscribe_query_interval,
            notify_interval=settings.subscribe_notify_interval,
            cache_refresh_period=settings.subscribe_cache_refresh_period,
            cache_horizon=settings.subscribe_cache_horizon,
            gc_interval=settings.subscribe_gc_interval,
            estimate_tolerance=settings.estimate_tolerance,
            shutdown_timeout=settings.shutdown_timeout,
        )


@dataclass
class NewContract:
    pass


@dataclass
class InsertCache:
    """Inject synthetic subscriptions for ``chat_id`` due ``now + offset``."""

    chat_id: int
    offsets: Sequence[int] = field(default_factory=lambda: (30, 60, 90))


class ContractSubscriber(TimerLoop):
    name = "subscriber"

    def __init__(
        self,
        storage: StorageHandle,
        client: ProtocolClient,
        notifier: Notifier,
        *,
        config: Optional[SubscriberConfig] = None,
        status: Optional[SchedulerStatus] = None,
        telemetry: Optional[TelemetryCollector] = None,
        clock: Clock = time.time,
    ) -> None:
        self.config = config or SubscriberConfig()
        super().__init__(clock=clock, shutdown_timeout=self.config.shutdown_timeout)
        self.storage = storage
        self.client = client
        self.notifier = notifier
        self.status = status or SchedulerStatus()
        self.telemetry = telemetry
        self.cache: DeferredEventCache[SubscribeInfo] = DeferredEventCache()
        self._synthetic: set = set()
        self._query_job = self.add_interval_job("query", self.config.query_interval, self._spawn_query)
        self.add_interval_job("notify", self.config.notify_interval, self.notify_due)
        self._refresh_job = self.add_interval_job("cache-refresh", self.config.cache_refresh_period, self.refresh_cache)
        self.add_interval_job("gc", self.config.gc_interval, self._gc, immediate=False)

    # Commands --------------------------------------------------------------
    async def new_contract(self) -> None:
        await self.send(NewContract())

    async def refresh(self, invalidate: bool = False) -> None:
        await self.send(RefreshCache(invalidate))

    async def insert_cache(self, chat_id: int, offsets: Sequence[int] = (30, 60, 90)) -> None:
        await self.send(InsertCache(chat_id, tuple(offsets)))

    async def exit(self) -> None:
        await self.send(Exit())

    async def handle_command(self, command: object) -> bool:
        if isinstance(command, Exit):
            return False
        if isinstance(command, NewContract):
            self.trigger(self._query_job)
            self.trigger(self._refresh_job)
        elif isinstance(command, RefreshCache):
            if command.invalidate:
                self.cache.clear()
            self.trigger(self._refresh_job)
        elif isinstance(command, InsertCache):
            self.insert_fake_subscriptions(command.chat_id, command.offsets)
        else:
            logger.warning("Unknown subscriber command %r", command)
        return True

    def _request_refresh(self) -> None:
        try:
            self.inbox.put_nowait(RefreshCache(False))
        except asyncio.QueueFull:
            logger.debug("Subscriber inbox full, refresh request skipped")

    def insert_fake_subscriptions(self, chat_id: int, offsets: Sequence[int]) -> List[SubscribeInfo]:
        now = self.now()
        inserted = []
        for offset in offsets:
            info = SubscribeInfo(
                id=f"fake-{uuid.uuid4().hex[:8]}",
                room="test",
                chats=frozenset({chat_id}),
                est=now + int(offset),
            )
            self._synthetic.add((info.id, info.room))
            self.cache.insert(info.est, info)
            inserted.append(info)
        return inserted

    # Interval jobs ---------------------------------------------------------
    async def _spawn_query(self) -> None:
        self.spawn_round(self.query_round(), "subscribe")

    async def _gc(self) -> None:
        self.collect_finished()

    async def refresh_cache(self) -> int:
        subscriptions = await self.storage.subscribe_fetch(self.now() + self.config.cache_horizon)
        return self.cache.refill(subscriptions, key=lambda info: info.est)

    async def notify_due(self) -> int:
        now = self.now()
        due = self.cache.drain_due(now)
        if not due:
            return 0
        pending: Dict[int, List[str]] = defaultdict(list)
        finished = []
        seen = set()
        for info in due:
            key = (info.id, info.room)
            if key in seen:
                continue
            seen.add(key)
            if key in self._synthetic:
                self._synthetic.discard(key)
                current: Optional[SubscribeInfo] = info
            else:
                # Storage is authoritative: the estimate may have moved since the refill.
                current = await self.storage.subscribe_single_fetch(info.id, info.room)
                if current is None or current.notified or current.est > now or current.est <= 0:
                    continue
                finished.append(current)
            for chat_id in current.chats:
                pending[chat_id].append(f"{current.id}/{current.room} is finished")
        for info in finished:
            await self.storage.subscribe_notified(info.id, info.room)
        for chat_id, lines in pending.items():
            await notify_chats(
                self.notifier,
                [chat_id],
                "Contract subscribe:\n" + "\n".join(sorted(lines)),
                telemetry=self.telemetry,
                channel="subscribe",
            )
        return len(finished)

    # Query round -----------------------------------------------------------
    async def query_round(self) -> int:
        now = self.now()
        self.status.mark_subscribe_query(now)
        handled = 0
        for info in await self.storage.subscribe_fetch(None):
            cache_timestamp = await self.storage.contract_cache_timestamp_query(info.id, info.room)
            spec = await self.storage.contract_query_spec(info.id)
            if spec is None:
                logger.warning("Contract %s spec is empty, skip fetch", info.id)
                continue
            if now - (cache_timestamp or 0) < fetch_interval(now, info.est):
                continue
            try:
                if await self.handle_subscription(info, spec, now):
                    handled += 1
            except Exception as exc:
                logger.error("Query %s/%s failed: %r", info.id, info.room, exc)
                if self.telemetry is not None:
                    self.telemetry.track_fetch_error(f"{info.id}/{info.room}", getattr(exc, "kind", "other"), str(exc))
                await notify_chats(
                    self.notifier,
                    info.chats,
                    f"Query {info.id}/{info.room} Error",
                    telemetry=self.telemetry,
                    channel="subscribe",
                )
        return handled

    async def handle_subscription(self, info: SubscribeInfo, spec, now: int) -> bool:
        if not info.chats:
            logger.error("Contract subscribes is empty skip %s/%s", info.id, info.room)
            return False

        snapshot = await self.client.fetch_contract_room(info.id, info.room)
        await self.storage.contract_cache_insert(
            info.id,
            info.room,
            encode_snapshot(snapshot),
            snapshot.is_cleared,
            now,
            CacheGuard.for_snapshot(snapshot, now),
        )

        result = calc_score(spec, snapshot, now)
        if isinstance(result, OutOfTime):
            await self.storage.subscribe_timestamp_update(info.id, info.room, int(result.estimate))
            return True

        est = result.finish_timestamp(now)
        if abs(info.est - est) > self.config.estimate_tolerance:
            await self.storage.subscribe_timestamp_update(info.id, info.room, est)
            self._request_refresh()
            await notify_chats(
                self.notifier,
                info.chats,
                f"{info.id}/{info.room} update end time: {timestamp_to_string(est)}",
                telemetry=self.telemetry,
                channel="subscribe",
            )
        return True


__all__ = [
    "ContractSubscriber",
    "InsertCache",
    "NewContract",
    "SubscriberConfig",
    "fetch_interval",
]
