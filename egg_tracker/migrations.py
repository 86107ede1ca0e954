"""Schema creation and the forward-only migration chain."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .models import DurationType
from .protocol import is_snapshot_cleared

logger = logging.getLogger(__name__)


class MigrationError(RuntimeError):
    """Raised when the stored schema version is not part of the chain."""


CURRENT_VERSION = "7"

CREATE_STATEMENT = """
CREATE TABLE "account" (
    "ei" TEXT NOT NULL,
    "nickname" TEXT,
    "last_fetch" INTEGER NOT NULL DEFAULT 0,
    "contract_trace" INTEGER NOT NULL DEFAULT 0,
    "disabled" INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY ("ei")
);
CREATE TABLE "user" (
    "id" INTEGER NOT NULL,
    "accounts" TEXT NOT NULL,
    PRIMARY KEY ("id")
);
CREATE TABLE "account_map" (
    "ei" TEXT NOT NULL,
    "users" TEXT NOT NULL,
    PRIMARY KEY ("ei")
);
CREATE TABLE "meta" (
    "key" TEXT NOT NULL,
    "value" TEXT,
    PRIMARY KEY ("key")
);
CREATE TABLE "spaceship" (
    "id" TEXT NOT NULL,
    "name" TEXT NOT NULL,
    "duration_type" INTEGER NOT NULL,
    "belong" TEXT NOT NULL,
    "land" INTEGER NOT NULL,
    "notified" INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY ("id")
);
CREATE INDEX "idx_spaceship_pending" ON "spaceship" ("notified", "land");
CREATE TABLE "player_contract" (
    "id" TEXT NOT NULL,
    "room" TEXT NOT NULL,
    "belong" TEXT NOT NULL,
    "start_time" REAL,
    "finished" INTEGER NOT NULL,
    PRIMARY KEY ("id", "belong")
);
CREATE TABLE "contract" (
    "id" TEXT NOT NULL,
    "size" INTEGER NOT NULL,
    "token_time" REAL NOT NULL,
    "body" BLOB NOT NULL,
    PRIMARY KEY ("id")
);
CREATE TABLE "contract_cache" (
    "id" TEXT NOT NULL,
    "room" TEXT NOT NULL,
    "body" BLOB NOT NULL,
    "timestamp" INTEGER NOT NULL,
    "cleared" INTEGER NOT NULL,
    PRIMARY KEY ("id", "room")
);
CREATE TABLE "subscriber" (
    "contract" TEXT NOT NULL,
    "room" TEXT NOT NULL,
    "users" TEXT NOT NULL,
    "est" INTEGER NOT NULL,
    "notified" INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY ("contract", "room")
);
"""

# Oldest layout still found in the wild; kept so the chain has a known root.
LEGACY_V1_STATEMENT = """
CREATE TABLE "meta" (
    "key" TEXT NOT NULL,
    "value" TEXT,
    PRIMARY KEY ("key")
);
CREATE TABLE "player" (
    "ei" TEXT NOT NULL,
    "user" INTEGER NOT NULL,
    "nickname" TEXT,
    "last_fetch" INTEGER NOT NULL DEFAULT 0,
    "disabled" INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY ("ei", "user")
);
CREATE TABLE "spaceship" (
    "id" TEXT NOT NULL,
    "name" TEXT NOT NULL,
    "belong" TEXT NOT NULL,
    "land" INTEGER NOT NULL,
    "notified" INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY ("id")
);
"""


def execute_script(conn: sqlite3.Connection, script: str) -> None:
    """Run a multi-statement script statement by statement.

    ``executescript`` would commit the surrounding transaction, so scripts are
    split instead. Scripts must not contain semicolons inside literals.
    """

    for statement in script.split(";"):
        if statement.strip():
            conn.execute(statement)


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    conn.execute("BEGIN")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


# Migration steps ------------------------------------------------------------


def _merge_v1(conn: sqlite3.Connection) -> None:
    execute_script(
        conn,
        """
        CREATE TABLE "account" (
            "ei" TEXT NOT NULL,
            "nickname" TEXT,
            "last_fetch" INTEGER NOT NULL DEFAULT 0,
            "disabled" INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY ("ei")
        );
        CREATE TABLE "user" (
            "id" INTEGER NOT NULL,
            "accounts" TEXT NOT NULL,
            PRIMARY KEY ("id")
        );
        CREATE TABLE "account_map" (
            "ei" TEXT NOT NULL,
            "users" TEXT NOT NULL,
            PRIMARY KEY ("ei")
        );
        """,
    )
    rows = conn.execute(
        'SELECT "ei", "user", "nickname", "last_fetch", "disabled" FROM "player" ORDER BY "ei", "user"'
    ).fetchall()
    by_user: Dict[int, List[str]] = {}
    by_account: Dict[str, List[int]] = {}
    for ei, user, nickname, last_fetch, disabled in rows:
        if ei not in by_account:
            conn.execute(
                'INSERT INTO "account" VALUES (?, ?, ?, ?)',
                (ei, nickname, last_fetch, disabled),
            )
        by_user.setdefault(user, []).append(ei)
        by_account.setdefault(ei, []).append(user)
    logger.info("Merge users, total %d user", len(by_user))
    for user, accounts in by_user.items():
        conn.execute('INSERT INTO "user" VALUES (?, ?)', (user, ",".join(accounts)))
    logger.info("Merge accounts, total %d account", len(by_account))
    for ei, users in by_account.items():
        conn.execute(
            'INSERT INTO "account_map" VALUES (?, ?)',
            (ei, ",".join(str(user) for user in users)),
        )
    conn.execute('DROP TABLE "player"')


def _merge_v2(conn: sqlite3.Connection) -> None:
    execute_script(
        conn,
        """
        CREATE TABLE "spaceship_1" (
            "id" TEXT NOT NULL,
            "name" TEXT NOT NULL,
            "duration_type" INTEGER NOT NULL,
            "belong" TEXT NOT NULL,
            "land" INTEGER NOT NULL,
            "notified" INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY ("id")
        );
        """,
    )
    rows = conn.execute(
        'SELECT "id", "name", "belong", "land", "notified" FROM "spaceship"'
    ).fetchall()
    logger.info("Merge spaceships, total %d spaceships", len(rows))
    for identifier, name, belong, land, notified in rows:
        duration, _, ship = name.partition(" ")
        duration_type = DurationType.parse(duration)
        if not ship:
            ship = name
        conn.execute(
            'INSERT INTO "spaceship_1" VALUES (?, ?, ?, ?, ?, ?)',
            (identifier, ship, int(duration_type), belong, land, notified),
        )
    execute_script(
        conn,
        """
        DROP TABLE "spaceship";
        ALTER TABLE "spaceship_1" RENAME TO "spaceship";
        """,
    )


def _merge_v3(conn: sqlite3.Connection) -> None:
    execute_script(
        conn,
        """
        CREATE TABLE "account_1" (
            "ei" TEXT NOT NULL,
            "nickname" TEXT,
            "last_fetch" INTEGER NOT NULL DEFAULT 0,
            "contract_trace" INTEGER NOT NULL DEFAULT 0,
            "disabled" INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY ("ei")
        );
        INSERT INTO "account_1" ("ei", "nickname", "last_fetch", "contract_trace", "disabled")
            SELECT "ei", "nickname", "last_fetch", 0, "disabled" FROM "account";
        DROP TABLE "account";
        ALTER TABLE "account_1" RENAME TO "account";
        CREATE TABLE "player_contract" (
            "id" TEXT NOT NULL,
            "room" TEXT NOT NULL,
            "belong" TEXT NOT NULL,
            "start_time" REAL,
            "finished" INTEGER NOT NULL,
            PRIMARY KEY ("id", "belong")
        );
        CREATE TABLE "contract" (
            "id" TEXT NOT NULL,
            "size" INTEGER NOT NULL,
            "token_time" REAL NOT NULL,
            "body" BLOB NOT NULL,
            PRIMARY KEY ("id")
        );
        CREATE TABLE "contract_cache" (
            "id" TEXT NOT NULL,
            "room" TEXT NOT NULL,
            "body" BLOB NOT NULL,
            "timestamp" INTEGER NOT NULL,
            PRIMARY KEY ("id")
        );
        """,
    )


def _merge_v4(conn: sqlite3.Connection) -> None:
    execute_script(
        conn,
        """
        CREATE TABLE "contract_cache_1" (
            "id" TEXT NOT NULL,
            "room" TEXT NOT NULL,
            "body" BLOB NOT NULL,
            "timestamp" INTEGER NOT NULL,
            "cleared" INTEGER NOT NULL,
            PRIMARY KEY ("id")
        );
        """,
    )
    rows = conn.execute(
        'SELECT "id", "room", "body", "timestamp" FROM "contract_cache"'
    ).fetchall()
    logger.info("Merge contract, total %d contracts", len(rows))
    for identifier, room, body, timestamp in rows:
        conn.execute(
            'INSERT INTO "contract_cache_1" VALUES (?, ?, ?, ?, ?)',
            (identifier, room, body, timestamp, is_snapshot_cleared(body)),
        )
    execute_script(
        conn,
        """
        DROP TABLE "contract_cache";
        ALTER TABLE "contract_cache_1" RENAME TO "contract_cache";
        """,
    )


def _merge_v5(conn: sqlite3.Connection) -> None:
    execute_script(
        conn,
        """
        CREATE TABLE "contract_cache_1" (
            "id" TEXT NOT NULL,
            "room" TEXT NOT NULL,
            "body" BLOB NOT NULL,
            "timestamp" INTEGER NOT NULL,
            "cleared" INTEGER NOT NULL,
            PRIMARY KEY ("id", "room")
        );
        INSERT INTO "contract_cache_1" SELECT "id", "room", "body", "timestamp", "cleared"
            FROM "contract_cache";
        DROP TABLE "contract_cache";
        ALTER TABLE "contract_cache_1" RENAME TO "contract_cache";
        """,
    )


def _merge_v6(conn: sqlite3.Connection) -> None:
    execute_script(
        conn,
        """
        CREATE TABLE "subscriber" (
            "contract" TEXT NOT NULL,
            "room" TEXT NOT NULL,
            "users" TEXT NOT NULL,
            "est" INTEGER NOT NULL,
            "notified" INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY ("contract", "room")
        );
        CREATE INDEX IF NOT EXISTS "idx_spaceship_pending" ON "spaceship" ("notified", "land");
        """,
    )


@dataclass(frozen=True)
class Migration:
    source: str
    target: str
    apply: Callable[[sqlite3.Connection], None]


MIGRATIONS: Tuple[Migration, ...] = (
    Migration("1", "2", _merge_v1),
    Migration("2", "3", _merge_v2),
    Migration("3", "4", _merge_v3),
    Migration("4", "5", _merge_v4),
    Migration("5", "6", _merge_v5),
    Migration("6", CURRENT_VERSION, _merge_v6),
)


# Runner ---------------------------------------------------------------------


def has_meta_table(conn: sqlite3.Connection) -> bool:
    row = conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'meta'"
    ).fetchone()
    return row is not None


def read_version(conn: sqlite3.Connection) -> Optional[str]:
    row = conn.execute('SELECT "value" FROM "meta" WHERE "key" = \'version\'').fetchone()
    return row[0] if row else None


def write_version(conn: sqlite3.Connection, version: str) -> None:
    conn.execute(
        'INSERT OR REPLACE INTO "meta" ("key", "value") VALUES (\'version\', ?)',
        (version,),
    )


def create_schema(conn: sqlite3.Connection, script: str = CREATE_STATEMENT, version: str = CURRENT_VERSION) -> None:
    with transaction(conn):
        execute_script(conn, script)
        write_version(conn, version)


def upgrade(conn: sqlite3.Connection, migrations: Tuple[Migration, ...] = MIGRATIONS) -> List[str]:
    """Bring the database to :data:`CURRENT_VERSION`; returns applied targets.

    Each step runs in its own transaction together with the version bump, so
    an interrupted step is simply retried on the next start.
    """

    if not has_meta_table(conn):
        logger.info("Creating database schema at version %s", CURRENT_VERSION)
        create_schema(conn)
        return []

    steps = {migration.source: migration for migration in migrations}
    applied: List[str] = []
    while True:
        version = read_version(conn)
        if version == CURRENT_VERSION:
            return applied
        migration = steps.get(version or "")
        if migration is None:
            raise MigrationError(f"Unknown database version: {version}")
        logger.info("Performing database migration %s -> %s", migration.source, migration.target)
        with transaction(conn):
            migration.apply(conn)
            write_version(conn, migration.target)
        applied.append(migration.target)
        logger.info("Migration to %s completed", migration.target)


__all__ = [
    "CREATE_STATEMENT",
    "CURRENT_VERSION",
    "LEGACY_V1_STATEMENT",
    "MIGRATIONS",
    "Migration",
    "MigrationError",
    "create_schema",
    "execute_script",
    "read_version",
    "transaction",
    "upgrade",
]
