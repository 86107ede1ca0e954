"""Single-writer storage actor.

One asyncio task owns the :class:`~egg_tracker.state.TrackerDatabase`. Callers
talk to it through :class:`StorageHandle`, which turns each operation into a
command object queued for the actor. Commands that expect an answer carry a
future; a command whose store operation fails is logged and dropped, and the
caller receives the default it supplied.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

from .models import (
    Account,
    AccountMap,
    ContractCache,
    ContractParticipation,
    ContractSnapshot,
    ContractSpec,
    Mission,
    SubscribeInfo,
    UserAccounts,
)
from .protocol import DataError, decode_snapshot
from .state import TrackerDatabase
from .telemetry import TelemetryCollector

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 16


class CommandDropped(RuntimeError):
    """The actor could not apply a command; callers fall back to a default."""


@dataclass(frozen=True)
class CacheGuard:
    """Monotonic merge rule for contract snapshots.

    A fresh observation replaces the cached one when it carries more progress,
    or the same progress observed no earlier.
    """

    amount: float
    timestamp: int

    @classmethod
    def for_snapshot(cls, snapshot: ContractSnapshot, timestamp: int) -> "CacheGuard":
        return cls(amount=snapshot.total_amount, timestamp=int(timestamp))

    @staticmethod
    def accepts(new_amount: float, new_ts: int, cached_amount: float, cached_ts: int) -> bool:
        if new_amount > cached_amount:
            return True
        return new_amount == cached_amount and new_ts >= cached_ts

    def __call__(self, cached: ContractCache) -> bool:
        try:
            cached_amount = decode_snapshot(cached.body).total_amount
        except DataError:
            logger.warning("Cached snapshot %s/%s unreadable, replacing it", cached.id, cached.room)
            return True
        return self.accepts(self.amount, self.timestamp, cached_amount, cached.timestamp)


# Commands ---------------------------------------------------------------


class StorageCommand:
    def apply(self, db: TrackerDatabase) -> Any:
        raise NotImplementedError


@dataclass
class AccountAdd(StorageCommand):
    ei: str
    chat_id: int

    def apply(self, db: TrackerDatabase) -> bool:
        return db.insert_account(self.ei, self.chat_id)


@dataclass
class AccountQuery(StorageCommand):
    chat_id: Optional[int]

    def apply(self, db: TrackerDatabase) -> List[Account]:
        if self.chat_id is None:
            return db.query_all_accounts()
        return db.query_accounts_for_chat(self.chat_id)


@dataclass
class AccountQueryEi(StorageCommand):
    ei: str

    def apply(self, db: TrackerDatabase) -> Optional[Account]:
        return db.query_account(self.ei)


@dataclass
class AccountQueryChats(StorageCommand):
    ei: str

    def apply(self, db: TrackerDatabase) -> Optional[AccountMap]:
        return db.query_account_map(self.ei)


@dataclass
class UserQueryAll(StorageCommand):
    def apply(self, db: TrackerDatabase) -> List[UserAccounts]:
        return db.query_all_users()


@dataclass
class UserRemoveAccount(StorageCommand):
    chat_id: int
    ei: str

    def apply(self, db: TrackerDatabase) -> bool:
        return db.remove_account(self.chat_id, self.ei)


@dataclass
class AccountUpdate(StorageCommand):
    ei: str
    disabled: bool
    timestamp: int

    def apply(self, db: TrackerDatabase) -> None:
        db.set_account_status(self.ei, self.timestamp, self.disabled)


@dataclass
class AccountContractUpdate(StorageCommand):
    ei: str
    enabled: bool

    def apply(self, db: TrackerDatabase) -> None:
        db.set_account_contract_trace(self.ei, self.enabled)


@dataclass
class AccountNameUpdate(StorageCommand):
    ei: str
    name: str

    def apply(self, db: TrackerDatabase) -> None:
        db.set_account_nickname(self.ei, self.name)


@dataclass
class AccountTimestampReset(StorageCommand):
    ei: str

    def apply(self, db: TrackerDatabase) -> None:
        db.reset_account_timestamp(self.ei)


@dataclass
class AccountMissionReset(StorageCommand):
    ei: str
    limit: int

    def apply(self, db: TrackerDatabase) -> int:
        return db.reset_account_missions(self.ei, self.limit)


@dataclass
class AccountStatusReset(StorageCommand):
    ei: str
    disabled: bool

    def apply(self, db: TrackerDatabase) -> None:
        db.reset_account_status(self.ei, self.disabled)


@dataclass
class MissionAdd(StorageCommand):
    mission: Mission

    def apply(self, db: TrackerDatabase) -> bool:
        return db.insert_mission(self.mission)


@dataclass
class MissionQuery(StorageCommand):
    deadline: int

    def apply(self, db: TrackerDatabase) -> List[Mission]:
        return db.query_missions_due(self.deadline)


@dataclass
class MissionQueryByUser(StorageCommand):
    chat_id: int
    recent: bool
    now: int

    def apply(self, db: TrackerDatabase) -> List[Tuple[Account, List[Mission]]]:
        return db.query_missions_by_user(self.chat_id, self.recent, self.now)


@dataclass
class MissionQueryByAccount(StorageCommand):
    ei: str

    def apply(self, db: TrackerDatabase) -> List[Mission]:
        return db.query_missions_by_account(self.ei)


@dataclass
class MissionPendingCount(StorageCommand):
    ei: str

    def apply(self, db: TrackerDatabase) -> int:
        return db.count_pending_missions(self.ei)


@dataclass
class MissionSingleQuery(StorageCommand):
    mission_id: str

    def apply(self, db: TrackerDatabase) -> Optional[Mission]:
        return db.query_mission(self.mission_id)


@dataclass
class MissionMarkNotified(StorageCommand):
    mission_id: str

    def apply(self, db: TrackerDatabase) -> None:
        db.mark_mission_notified(self.mission_id)


@dataclass
class ContractSpecInsert(StorageCommand):
    spec: ContractSpec

    def apply(self, db: TrackerDatabase) -> bool:
        return db.insert_contract_spec(self.spec)


@dataclass
class ContractQuerySpec(StorageCommand):
    contract_id: str

    def apply(self, db: TrackerDatabase) -> Optional[ContractSpec]:
        return db.query_contract_spec(self.contract_id)


@dataclass
class ContractQuerySingle(StorageCommand):
    contract_id: str
    ei: str

    def apply(self, db: TrackerDatabase) -> Optional[ContractParticipation]:
        return db.query_participation(self.contract_id, self.ei)


@dataclass
class AccountQueryContract(StorageCommand):
    ei: str

    def apply(self, db: TrackerDatabase) -> List[ContractParticipation]:
        return db.query_participations(self.ei)


@dataclass
class AccountInsertContract(StorageCommand):
    contract_id: str
    room: str
    ei: str
    finished: bool

    def apply(self, db: TrackerDatabase) -> bool:
        return db.upsert_participation(self.contract_id, self.room, self.ei, self.finished)


@dataclass
class ContractStartTimeUpdate(StorageCommand):
    contract_id: str
    room: str
    start_time: float

    def apply(self, db: TrackerDatabase) -> None:
        db.set_contract_start_time(self.contract_id, self.room, self.start_time)


@dataclass
class ContractCacheQuery(StorageCommand):
    contract_id: str
    room: str

    def apply(self, db: TrackerDatabase) -> Optional[ContractCache]:
        return db.query_contract_cache(self.contract_id, self.room)


@dataclass
class ContractCacheTimestampQuery(StorageCommand):
    contract_id: str
    room: str

    def apply(self, db: TrackerDatabase) -> Optional[int]:
        return db.query_contract_cache_timestamp(self.contract_id, self.room)


@dataclass
class ContractCacheInsert(StorageCommand):
    contract_id: str
    room: str
    body: bytes
    cleared: bool
    timestamp: int
    guard: Optional[CacheGuard] = None

    def apply(self, db: TrackerDatabase) -> bool:
        return db.insert_contract_cache(
            self.contract_id, self.room, self.body, self.cleared, self.timestamp, self.guard
        )


@dataclass
class ContractCacheResetTimestamp(StorageCommand):
    contract_id: str
    room: str

    def apply(self, db: TrackerDatabase) -> None:
        db.reset_contract_cache_timestamp(self.contract_id, self.room)


@dataclass
class SubscribeNew(StorageCommand):
    contract_id: str
    room: str
    chat_id: int

    def apply(self, db: TrackerDatabase) -> bool:
        return db.modify_subscribe(self.contract_id, self.room, self.chat_id, remove=False)


@dataclass
class SubscribeDel(StorageCommand):
    contract_id: str
    room: str
    chat_id: int

    def apply(self, db: TrackerDatabase) -> bool:
        return db.modify_subscribe(self.contract_id, self.room, self.chat_id, remove=True)


@dataclass
class SubscribeFetch(StorageCommand):
    deadline: Optional[int]

    def apply(self, db: TrackerDatabase) -> List[SubscribeInfo]:
        return db.query_subscribes(self.deadline)


@dataclass
class SubscribeSingleFetch(StorageCommand):
    contract_id: str
    room: str

    def apply(self, db: TrackerDatabase) -> Optional[SubscribeInfo]:
        return db.query_subscribe(self.contract_id, self.room)


@dataclass
class SubscribeTimestampUpdate(StorageCommand):
    contract_id: str
    room: str
    est: int

    def apply(self, db: TrackerDatabase) -> None:
        db.update_subscribe_est(self.contract_id, self.room, self.est)


@dataclass
class SubscribeNotified(StorageCommand):
    contract_id: str
    room: str

    def apply(self, db: TrackerDatabase) -> None:
        db.mark_subscribe_notified(self.contract_id, self.room)


@dataclass
class Terminate(StorageCommand):
    def apply(self, db: TrackerDatabase) -> None:
        return None


@dataclass
class _Envelope:
    command: StorageCommand
    reply: Optional["asyncio.Future[Any]"] = None


# Actor ------------------------------------------------------------------


class StorageActor:
    """Owns the database and applies queued commands one at a time."""

    def __init__(
        self,
        database: TrackerDatabase,
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self._db = database
        self._queue: "asyncio.Queue[_Envelope]" = asyncio.Queue(maxsize=queue_size)
        self._telemetry = telemetry
        self._task: Optional[asyncio.Task] = None
        self.closed = False
        self.processed = 0
        self.dropped = 0

    @classmethod
    def open(
        cls,
        db_path: Union[str, Path],
        *,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> "StorageActor":
        return cls(TrackerDatabase.open(db_path), queue_size=queue_size, telemetry=telemetry)

    def start(self) -> "StorageHandle":
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="storage-actor")
        return StorageHandle(self)

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    def _drop(self, envelope: _Envelope, reason: str) -> None:
        self.dropped += 1
        if self._telemetry is not None:
            self._telemetry.track_storage_drop(type(envelope.command).__name__)
        if envelope.reply is not None and not envelope.reply.done():
            envelope.reply.set_exception(CommandDropped(reason))

    async def run(self) -> None:
        try:
            while True:
                envelope = await self._queue.get()
                if isinstance(envelope.command, Terminate):
                    if envelope.reply is not None and not envelope.reply.done():
                        envelope.reply.set_result(None)
                    break
                try:
                    result = envelope.command.apply(self._db)
                except Exception as exc:
                    logger.exception("Storage command %r failed", envelope.command)
                    self._drop(envelope, repr(exc))
                    continue
                self.processed += 1
                if envelope.reply is not None and not envelope.reply.done():
                    envelope.reply.set_result(result)
        finally:
            self.closed = True
            while not self._queue.empty():
                self._drop(self._queue.get_nowait(), "storage closed")
            self._db.close()
            logger.info("Storage actor stopped after %d commands", self.processed)

    async def put(self, envelope: _Envelope) -> None:
        await self._queue.put(envelope)


class StorageHandle:
    """Typed client for the storage actor."""

    def __init__(self, actor: StorageActor) -> None:
        self._actor = actor
        self._terminating = False

    @property
    def closed(self) -> bool:
        return self._terminating or self._actor.closed

    async def _send(self, command: StorageCommand) -> None:
        if self.closed:
            logger.debug("Storage closed, discarding %r", command)
            return
        await self._actor.put(_Envelope(command))

    async def _request(self, command: StorageCommand, default: Any = None) -> Any:
        if self.closed:
            return default
        reply: "asyncio.Future[Any]" = asyncio.get_running_loop().create_future()
        await self._actor.put(_Envelope(command, reply))
        try:
            return await reply
        except CommandDropped:
            return default

    # Accounts
    async def account_add(self, ei: str, chat_id: int) -> bool:
        return await self._request(AccountAdd(ei, chat_id), False)

    async def account_query(self, chat_id: Optional[int] = None) -> List[Account]:
        return await self._request(AccountQuery(chat_id), [])

    async def account_query_ei(self, ei: str) -> Optional[Account]:
        return await self._request(AccountQueryEi(ei))

    async def account_query_chats(self, ei: str) -> Optional[AccountMap]:
        return await self._request(AccountQueryChats(ei))

    async def user_query_all(self) -> List[UserAccounts]:
        return await self._request(UserQueryAll(), [])

    async def user_remove_account(self, chat_id: int, ei: str) -> bool:
        return await self._request(UserRemoveAccount(chat_id, ei), False)

    async def account_update(self, ei: str, disabled: bool, timestamp: Optional[int] = None) -> None:
        await self._send(AccountUpdate(ei, disabled, int(time.time()) if timestamp is None else timestamp))

    async def account_contract_update(self, ei: str, enabled: bool) -> None:
        await self._send(AccountContractUpdate(ei, enabled))

    async def account_name_update(self, ei: str, name: str) -> None:
        await self._send(AccountNameUpdate(ei, name))

    async def account_timestamp_reset(self, ei: str) -> None:
        await self._send(AccountTimestampReset(ei))

    async def account_mission_reset(self, ei: str, limit: int) -> int:
        return await self._request(AccountMissionReset(ei, limit), 0)

    async def account_status_reset(self, ei: str, disabled: bool) -> None:
        await self._send(AccountStatusReset(ei, disabled))

    # Missions
    async def mission_add(self, mission: Mission) -> bool:
        return await self._request(MissionAdd(mission), False)

    async def mission_query(self, deadline: int) -> List[Mission]:
        return await self._request(MissionQuery(deadline), [])

    async def mission_query_by_user(
        self, chat_id: int, recent: bool, now: Optional[int] = None
    ) -> List[Tuple[Account, List[Mission]]]:
        now = int(time.time()) if now is None else now
        return await self._request(MissionQueryByUser(chat_id, recent, now), [])

    async def mission_query_by_account(self, ei: str) -> List[Mission]:
        return await self._request(MissionQueryByAccount(ei), [])

    async def mission_pending_count(self, ei: str) -> Optional[int]:
        return await self._request(MissionPendingCount(ei))

    async def mission_single_query(self, mission_id: str) -> Optional[Mission]:
        return await self._request(MissionSingleQuery(mission_id))

    async def mission_mark_notified(self, mission_id: str) -> None:
        await self._send(MissionMarkNotified(mission_id))

    # Contracts
    async def contract_spec_insert(self, spec: ContractSpec) -> bool:
        return await self._request(ContractSpecInsert(spec), False)

    async def contract_query_spec(self, contract_id: str) -> Optional[ContractSpec]:
        return await self._request(ContractQuerySpec(contract_id))

    async def contract_query_single(self, contract_id: str, ei: str) -> Optional[ContractParticipation]:
        return await self._request(ContractQuerySingle(contract_id, ei))

    async def account_query_contract(self, ei: str) -> List[ContractParticipation]:
        return await self._request(AccountQueryContract(ei), [])

    async def account_insert_contract(self, contract_id: str, room: str, ei: str, finished: bool) -> bool:
        return await self._request(AccountInsertContract(contract_id, room, ei, finished), False)

    async def contract_start_time_update(self, contract_id: str, room: str, start_time: float) -> None:
        await self._send(ContractStartTimeUpdate(contract_id, room, start_time))

    # Contract cache
    async def contract_cache_query(self, contract_id: str, room: str) -> Optional[ContractCache]:
        return await self._request(ContractCacheQuery(contract_id, room))

    async def contract_cache_timestamp_query(self, contract_id: str, room: str) -> Optional[int]:
        return await self._request(ContractCacheTimestampQuery(contract_id, room))

    async def contract_cache_insert(
        self,
        contract_id: str,
        room: str,
        body: bytes,
        cleared: bool,
        timestamp: Optional[int] = None,
        guard: Optional[CacheGuard] = None,
    ) -> bool:
        timestamp = int(time.time()) if timestamp is None else timestamp
        return await self._request(
            ContractCacheInsert(contract_id, room, body, cleared, timestamp, guard), False
        )

    async def contract_cache_reset_timestamp(self, contract_id: str, room: str) -> None:
        await self._send(ContractCacheResetTimestamp(contract_id, room))

    # Subscriptions
    async def subscribe_new(self, contract_id: str, room: str, chat_id: int) -> bool:
        return await self._request(SubscribeNew(contract_id, room, chat_id), False)

    async def subscribe_del(self, contract_id: str, room: str, chat_id: int) -> bool:
        return await self._request(SubscribeDel(contract_id, room, chat_id), False)

    async def subscribe_fetch(self, deadline: Optional[int] = None) -> List[SubscribeInfo]:
        return await self._request(SubscribeFetch(deadline), [])

    async def subscribe_single_fetch(self, contract_id: str, room: str) -> Optional[SubscribeInfo]:
        return await self._request(SubscribeSingleFetch(contract_id, room))

    async def subscribe_timestamp_update(self, contract_id: str, room: str, est: int) -> None:
        await self._send(SubscribeTimestampUpdate(contract_id, room, est))

    async def subscribe_notified(self, contract_id: str, room: str) -> None:
        await self._send(SubscribeNotified(contract_id, room))

    # Lifecycle
    async def terminate(self) -> None:
        """Queue the final command; later calls resolve to their defaults."""

        if self.closed:
            return
        self._terminating = True
        await self._actor.put(_Envelope(Terminate()))


__all__ = [
    "CacheGuard",
    "CommandDropped",
    "StorageActor",
    "StorageCommand",
    "StorageHandle",
]
