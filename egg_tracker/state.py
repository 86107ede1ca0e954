"""Persistent tracker state backed by sqlite."""
from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from .migrations import transaction, upgrade
from .models import (
    Account,
    AccountMap,
    ContractCache,
    ContractParticipation,
    ContractSpec,
    DurationType,
    Mission,
    SubscribeInfo,
    UserAccounts,
)

logger = logging.getLogger(__name__)

CacheGuardFn = Callable[[ContractCache], bool]

RECENT_MISSION_WINDOW = 3600
MISSIONS_PER_ACCOUNT = 6
CONTRACTS_PER_ACCOUNT = 10

_ACCOUNT_COLUMNS = '"ei", "nickname", "last_fetch", "contract_trace", "disabled"'
_MISSION_COLUMNS = '"id", "name", "duration_type", "belong", "land", "notified"'
_CONTRACT_COLUMNS = '"id", "room", "belong", "start_time", "finished"'
_CACHE_COLUMNS = '"id", "room", "body", "timestamp", "cleared"'
_SUBSCRIBE_COLUMNS = '"contract", "room", "users", "est", "notified"'


def _account(row: Tuple) -> Account:
    return Account(
        ei=row[0],
        nickname=row[1],
        last_fetch=int(row[2]),
        contract_trace=bool(row[3]),
        disabled=bool(row[4]),
    )


def _mission(row: Tuple) -> Mission:
    return Mission(
        id=row[0],
        name=row[1],
        duration_type=DurationType.parse(row[2]),
        belong=row[3],
        land=int(row[4]),
        notified=bool(row[5]),
    )


def _participation(row: Tuple) -> ContractParticipation:
    return ContractParticipation(
        id=row[0],
        room=row[1],
        belong=row[2],
        start_time=row[3],
        finished=bool(row[4]),
    )


def _cache(row: Tuple) -> ContractCache:
    body = row[2]
    if isinstance(body, str):
        body = body.encode("utf-8")
    return ContractCache(
        id=row[0],
        room=row[1],
        body=bytes(body),
        timestamp=int(row[3]),
        cleared=bool(row[4]),
    )


def _subscribe(row: Tuple) -> SubscribeInfo:
    return SubscribeInfo.from_row(row[0], row[1], row[2], row[3], row[4])


def connect(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open a connection in autocommit mode; callers manage transactions."""

    conn = sqlite3.connect(str(db_path), isolation_level=None)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


class TrackerDatabase:
    """Synchronous queries over the tracker schema.

    A single instance is owned by the storage actor; nothing else touches the
    connection.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    @classmethod
    def open(cls, db_path: Union[str, Path]) -> "TrackerDatabase":
        database = cls(connect(db_path))
        database.init()
        return database

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    def init(self) -> List[str]:
        return upgrade(self._conn)

    def close(self) -> None:
        self._conn.close()

    # Users and accounts ------------------------------------------------
    def query_user(self, chat_id: int) -> Optional[UserAccounts]:
        row = self._conn.execute(
            'SELECT "id", "accounts" FROM "user" WHERE "id" = ?', (chat_id,)
        ).fetchone()
        return UserAccounts.from_row(row[0], row[1]) if row else None

    def query_all_users(self) -> List[UserAccounts]:
        rows = self._conn.execute('SELECT "id", "accounts" FROM "user"').fetchall()
        return [UserAccounts.from_row(row[0], row[1]) for row in rows]

    def query_account(self, ei: str) -> Optional[Account]:
        row = self._conn.execute(
            f'SELECT {_ACCOUNT_COLUMNS} FROM "account" WHERE "ei" = ?', (ei,)
        ).fetchone()
        return _account(row) if row else None

    def query_all_accounts(self) -> List[Account]:
        rows = self._conn.execute(
            f'SELECT {_ACCOUNT_COLUMNS} FROM "account" ORDER BY "ei"'
        ).fetchall()
        return [_account(row) for row in rows]

    def query_accounts_for_chat(self, chat_id: int) -> List[Account]:
        user = self.query_user(chat_id)
        if user is None:
            return []
        accounts = []
        for ei in user.accounts:
            account = self.query_account(ei)
            if account is None:
                logger.warning("User %s references missing account %s", chat_id, ei)
                continue
            accounts.append(account)
        return accounts

    def query_account_map(self, ei: str) -> Optional[AccountMap]:
        row = self._conn.execute(
            'SELECT "ei", "users" FROM "account_map" WHERE "ei" = ?', (ei,)
        ).fetchone()
        return AccountMap.from_row(row[0], row[1]) if row else None

    def _save_user(self, user: UserAccounts) -> None:
        if user.accounts:
            self._conn.execute(
                'INSERT OR REPLACE INTO "user" ("id", "accounts") VALUES (?, ?)',
                (user.chat_id, user.accounts_text()),
            )
        else:
            self._conn.execute('DELETE FROM "user" WHERE "id" = ?', (user.chat_id,))

    def _save_account_map(self, mapping: AccountMap) -> None:
        self._conn.execute(
            'INSERT OR REPLACE INTO "account_map" ("ei", "users") VALUES (?, ?)',
            (mapping.ei, mapping.chats_text()),
        )

    def insert_account(self, ei: str, chat_id: int) -> bool:
        """Register ``ei`` for ``chat_id``; both indexes change together."""

        with transaction(self._conn):
            if self.query_account(ei) is None:
                self._conn.execute(
                    f'INSERT INTO "account" ({_ACCOUNT_COLUMNS}) VALUES (?, NULL, 0, 0, 0)',
                    (ei,),
                )
            mapping = self.query_account_map(ei) or AccountMap(ei=ei)
            mapping.add(chat_id)
            self._save_account_map(mapping)
            user = self.query_user(chat_id) or UserAccounts(chat_id=chat_id)
            user.add(ei)
            self._save_user(user)
        return True

    def remove_account(self, chat_id: int, ei: str) -> bool:
        """Unlink ``ei`` from ``chat_id``; an account nobody follows is dropped."""

        with transaction(self._conn):
            user = self.query_user(chat_id)
            mapping = self.query_account_map(ei)
            if user is None or mapping is None or ei not in user.accounts:
                return False
            user.remove(ei)
            mapping.remove(chat_id)
            self._save_user(user)
            if mapping.chats:
                self._save_account_map(mapping)
            else:
                self._conn.execute('DELETE FROM "account_map" WHERE "ei" = ?', (ei,))
                self._conn.execute('DELETE FROM "account" WHERE "ei" = ?', (ei,))
                self._conn.execute('DELETE FROM "spaceship" WHERE "belong" = ?', (ei,))
        return True

    def set_account_status(self, ei: str, last_fetch: int, disabled: bool) -> None:
        self._conn.execute(
            'UPDATE "account" SET "last_fetch" = ?, "disabled" = ? WHERE "ei" = ?',
            (last_fetch, int(disabled), ei),
        )

    def set_account_nickname(self, ei: str, nickname: str) -> None:
        self._conn.execute('UPDATE "account" SET "nickname" = ? WHERE "ei" = ?', (nickname, ei))

    def set_account_contract_trace(self, ei: str, enabled: bool) -> None:
        self._conn.execute(
            'UPDATE "account" SET "contract_trace" = ? WHERE "ei" = ?', (int(enabled), ei)
        )

    def reset_account_timestamp(self, ei: str) -> None:
        self._conn.execute('UPDATE "account" SET "last_fetch" = 0 WHERE "ei" = ?', (ei,))

    def reset_account_status(self, ei: str, disabled: bool) -> None:
        self._conn.execute('UPDATE "account" SET "disabled" = ? WHERE "ei" = ?', (int(disabled), ei))

    def reset_account_missions(self, ei: str, limit: int) -> int:
        """Mark the latest ``limit`` missions of ``ei`` as not yet notified."""

        missions = self.query_missions_by_account(ei)[:limit]
        with transaction(self._conn):
            for mission in missions:
                self._conn.execute('UPDATE "spaceship" SET "notified" = 0 WHERE "id" = ?', (mission.id,))
        return len(missions)

    # Missions ----------------------------------------------------------
    def insert_mission(self, mission: Mission) -> bool:
        cursor = self._conn.execute(
            f'INSERT OR IGNORE INTO "spaceship" ({_MISSION_COLUMNS}) VALUES (?, ?, ?, ?, ?, 0)',
            (mission.id, mission.name, int(mission.duration_type), mission.belong, mission.land),
        )
        return cursor.rowcount > 0

    def query_missions_due(self, deadline: int) -> List[Mission]:
        rows = self._conn.execute(
            f'SELECT {_MISSION_COLUMNS} FROM "spaceship" '
            'WHERE "land" <= ? AND "notified" = 0 ORDER BY "land"',
            (deadline,),
        ).fetchall()
        return [_mission(row) for row in rows]

    def query_missions_by_account(self, ei: str) -> List[Mission]:
        rows = self._conn.execute(
            f'SELECT {_MISSION_COLUMNS} FROM "spaceship" WHERE "belong" = ? '
            'ORDER BY "land" DESC LIMIT ?',
            (ei, MISSIONS_PER_ACCOUNT),
        ).fetchall()
        return [_mission(row) for row in rows]

    def query_missions_by_user(
        self, chat_id: int, recent: bool, now: int
    ) -> List[Tuple[Account, List[Mission]]]:
        result = []
        for account in self.query_accounts_for_chat(chat_id):
            missions = self.query_missions_by_account(account.ei)
            if recent:
                missions = [
                    mission
                    for mission in reversed(missions)
                    if 0 < mission.land - now <= RECENT_MISSION_WINDOW and not mission.notified
                ]
            result.append((account, missions))
        return result

    def count_pending_missions(self, ei: str) -> int:
        row = self._conn.execute(
            'SELECT COUNT(*) FROM "spaceship" WHERE "belong" = ? AND "notified" = 0', (ei,)
        ).fetchone()
        return int(row[0])

    def query_mission(self, mission_id: str) -> Optional[Mission]:
        row = self._conn.execute(
            f'SELECT {_MISSION_COLUMNS} FROM "spaceship" WHERE "id" = ?', (mission_id,)
        ).fetchone()
        return _mission(row) if row else None

    def mark_mission_notified(self, mission_id: str) -> None:
        self._conn.execute('UPDATE "spaceship" SET "notified" = 1 WHERE "id" = ?', (mission_id,))

    # Contracts ---------------------------------------------------------
    def insert_contract_spec(self, spec: ContractSpec) -> bool:
        if self.query_contract_spec(spec.id) is not None:
            return False
        body = json.dumps(spec.grades_to_dict(), sort_keys=True).encode("utf-8")
        self._conn.execute(
            'INSERT INTO "contract" ("id", "size", "token_time", "body") VALUES (?, ?, ?, ?)',
            (spec.id, spec.max_coop_size, spec.token_time, body),
        )
        return True

    def query_contract_spec(self, contract_id: str) -> Optional[ContractSpec]:
        row = self._conn.execute(
            'SELECT "id", "size", "token_time", "body" FROM "contract" WHERE "id" = ?',
            (contract_id,),
        ).fetchone()
        if row is None:
            return None
        body = row[3]
        if isinstance(body, bytes):
            body = body.decode("utf-8")
        return ContractSpec(
            id=row[0],
            max_coop_size=int(row[1]),
            token_time=float(row[2]),
            grades=ContractSpec.grades_from_dict(json.loads(body)),
        )

    def query_participation(self, contract_id: str, ei: str) -> Optional[ContractParticipation]:
        row = self._conn.execute(
            f'SELECT {_CONTRACT_COLUMNS} FROM "player_contract" WHERE "id" = ? AND "belong" = ?',
            (contract_id, ei),
        ).fetchone()
        return _participation(row) if row else None

    def query_participations(self, ei: str) -> List[ContractParticipation]:
        rows = self._conn.execute(
            f'SELECT {_CONTRACT_COLUMNS} FROM "player_contract" WHERE "belong" = ? '
            'ORDER BY "start_time" DESC LIMIT ?',
            (ei, CONTRACTS_PER_ACCOUNT),
        ).fetchall()
        return [_participation(row) for row in rows]

    def _room_start_time(self, contract_id: str, room: str) -> Optional[float]:
        row = self._conn.execute(
            'SELECT "start_time" FROM "player_contract" '
            'WHERE "id" = ? AND "room" = ? AND "start_time" IS NOT NULL LIMIT 1',
            (contract_id, room),
        ).fetchone()
        return row[0] if row else None

    def update_participation(self, contract_id: str, room: str, ei: str, finished: bool) -> None:
        """Move ``ei`` to ``room``; the start time follows the room's other members."""

        start_time = self._room_start_time(contract_id, room)
        self._conn.execute(
            'UPDATE "player_contract" SET "finished" = ?, "room" = ?, "start_time" = ? '
            'WHERE "id" = ? AND "belong" = ?',
            (int(finished), room, start_time, contract_id, ei),
        )

    def upsert_participation(self, contract_id: str, room: str, ei: str, finished: bool) -> bool:
        """Insert or update a participation; returns True when anything changed."""

        with transaction(self._conn):
            current = self.query_participation(contract_id, ei)
            if current is None:
                self._conn.execute(
                    f'INSERT INTO "player_contract" ({_CONTRACT_COLUMNS}) VALUES (?, ?, ?, NULL, ?)',
                    (contract_id, room, ei, int(finished)),
                )
                return True
            if current.finished == finished and current.room == room:
                return False
            self.update_participation(contract_id, room, ei, finished)
        return True

    def set_contract_start_time(self, contract_id: str, room: str, start_time: float) -> None:
        self._conn.execute(
            'UPDATE "player_contract" SET "start_time" = ? '
            'WHERE "id" = ? AND "room" = ? AND "start_time" IS NULL',
            (start_time, contract_id, room),
        )

    # Contract cache ----------------------------------------------------
    def query_contract_cache(self, contract_id: str, room: str) -> Optional[ContractCache]:
        row = self._conn.execute(
            f'SELECT {_CACHE_COLUMNS} FROM "contract_cache" WHERE "id" = ? AND "room" = ?',
            (contract_id, room),
        ).fetchone()
        return _cache(row) if row else None

    def query_contract_cache_timestamp(self, contract_id: str, room: str) -> Optional[int]:
        row = self._conn.execute(
            'SELECT "timestamp" FROM "contract_cache" WHERE "id" = ? AND "room" = ?',
            (contract_id, room),
        ).fetchone()
        return int(row[0]) if row else None

    def insert_contract_cache(
        self,
        contract_id: str,
        room: str,
        body: bytes,
        cleared: bool,
        timestamp: int,
        guard: Optional[CacheGuardFn] = None,
    ) -> bool:
        """Write a snapshot; ``guard`` may veto replacing an existing row.

        Returns True when the row was written.
        """

        with transaction(self._conn):
            existing = self.query_contract_cache(contract_id, room)
            if existing is None:
                self._conn.execute(
                    f'INSERT INTO "contract_cache" ({_CACHE_COLUMNS}) VALUES (?, ?, ?, ?, ?)',
                    (contract_id, room, body, timestamp, int(cleared)),
                )
                return True
            if guard is not None and not guard(existing):
                logger.debug("Skip outdated cache for %s/%s", contract_id, room)
                return False
            self._conn.execute(
                'UPDATE "contract_cache" SET "body" = ?, "timestamp" = ?, "cleared" = ? '
                'WHERE "id" = ? AND "room" = ?',
                (body, timestamp, int(cleared), contract_id, room),
            )
        return True

    def reset_contract_cache_timestamp(self, contract_id: str, room: str) -> None:
        self._conn.execute(
            'UPDATE "contract_cache" SET "timestamp" = 0 WHERE "id" = ? AND "room" = ?',
            (contract_id, room),
        )

    # Subscriptions -----------------------------------------------------
    def query_subscribe(self, contract_id: str, room: str) -> Optional[SubscribeInfo]:
        row = self._conn.execute(
            f'SELECT {_SUBSCRIBE_COLUMNS} FROM "subscriber" WHERE "contract" = ? AND "room" = ?',
            (contract_id, room),
        ).fetchone()
        return _subscribe(row) if row else None

    def query_subscribes(self, deadline: Optional[int]) -> List[SubscribeInfo]:
        """Un-notified subscriptions; with ``deadline``, only estimated ones due before it."""

        if deadline is None:
            rows = self._conn.execute(
                f'SELECT {_SUBSCRIBE_COLUMNS} FROM "subscriber" WHERE "notified" = 0'
            ).fetchall()
        else:
            rows = self._conn.execute(
                f'SELECT {_SUBSCRIBE_COLUMNS} FROM "subscriber" '
                'WHERE "notified" = 0 AND "est" > 0 AND "est" < ?',
                (deadline,),
            ).fetchall()
        return [_subscribe(row) for row in rows]

    def modify_subscribe(self, contract_id: str, room: str, chat_id: int, remove: bool) -> bool:
        """Add or remove ``chat_id``; returns True when the set changed."""

        with transaction(self._conn):
            current = self.query_subscribe(contract_id, room)
            if current is None:
                if remove:
                    return False
                self._conn.execute(
                    f'INSERT INTO "subscriber" ({_SUBSCRIBE_COLUMNS}) VALUES (?, ?, ?, 0, 0)',
                    (contract_id, room, str(chat_id)),
                )
                return True
            present = chat_id in current.chats
            if present != remove:
                return False
            updated = current.without_chat(chat_id) if remove else current.with_chat(chat_id)
            self._conn.execute(
                'UPDATE "subscriber" SET "users" = ? WHERE "contract" = ? AND "room" = ?',
                (updated.chats_text(), contract_id, room),
            )
        return True

    def update_subscribe_est(self, contract_id: str, room: str, est: int) -> None:
        self._conn.execute(
            'UPDATE "subscriber" SET "est" = ? WHERE "contract" = ? AND "room" = ?',
            (est, contract_id, room),
        )

    def mark_subscribe_notified(self, contract_id: str, room: str) -> None:
        self._conn.execute(
            'UPDATE "subscriber" SET "notified" = 1 WHERE "contract" = ? AND "room" = ?',
            (contract_id, room),
        )

    def stats(self) -> Dict[str, int]:
        counts = {}
        for table in ("account", "user", "spaceship", "contract", "contract_cache", "subscriber"):
            counts[table] = int(self._conn.execute(f'SELECT COUNT(*) FROM "{table}"').fetchone()[0])
        return counts


__all__ = ["CacheGuardFn", "TrackerDatabase", "connect"]
