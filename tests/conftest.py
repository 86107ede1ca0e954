"""Shared fixtures and fakes for egg_tracker tests."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from egg_tracker.models import (
    AccountSnapshot,
    ContractGradeSpec,
    ContractSnapshot,
    ContractSpec,
    Contributor,
    DurationType,
    FarmInfo,
    Grade,
    ProductionParams,
    RemoteMission,
)
from egg_tracker.protocol import QueryError
from egg_tracker.storage import StorageActor, StorageHandle

NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.value = float(now)

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class RecordingNotifier:
    def __init__(self, failing: Tuple[int, ...] = ()) -> None:
        self.sent: List[Tuple[int, str]] = []
        self.failing = set(failing)

    async def send(self, chat_id: int, text: str) -> None:
        if chat_id in self.failing:
            raise RuntimeError(f"chat {chat_id} unreachable")
        self.sent.append((chat_id, text))

    def texts_for(self, chat_id: int) -> List[str]:
        return [text for target, text in self.sent if target == chat_id]


class FakeClient:
    """Scripted protocol client; values may be snapshots or exceptions."""

    def __init__(self) -> None:
        self.accounts: Dict[str, object] = {}
        self.rooms: Dict[Tuple[str, str], object] = {}
        self.account_calls: List[str] = []
        self.room_calls: List[Tuple[str, str, Optional[str]]] = []

    async def fetch_account(self, ei: str) -> AccountSnapshot:
        self.account_calls.append(ei)
        result = self.accounts.get(ei)
        if result is None:
            return AccountSnapshot(ei=ei)
        if isinstance(result, QueryError):
            raise result
        return result

    async def fetch_contract_room(self, contract_id: str, room: str, ei: Optional[str] = None) -> ContractSnapshot:
        self.room_calls.append((contract_id, room, ei))
        result = self.rooms[(contract_id, room)]
        if isinstance(result, Exception):
            raise result
        return result


def make_spec(contract_id: str = "spring-2024", length: float = 86400.0 * 3, goal3: float = 1e15) -> ContractSpec:
    return ContractSpec(
        id=contract_id,
        max_coop_size=4,
        token_time=3600.0,
        grades={Grade.AAA: ContractGradeSpec(length=length, goal1=goal3 / 10, goal3=goal3)},
    )


def make_contributor(
    name: str,
    amount: float,
    rate: float = 1e9,
    offline: float = 0.0,
    finalized: bool = False,
) -> Contributor:
    return Contributor(
        user_name=name,
        contribution_amount=amount,
        finalized=finalized,
        soul_power=21.5,
        production=ProductionParams(shipping_rate=rate, egg_laying_rate=rate, farm_population=1.0),
        farm=FarmInfo(timestamp=-offline, permit_level=1),
    )


def make_snapshot(
    contract_id: str = "spring-2024",
    room: str = "room-1",
    total: float = 5e14,
    remaining: float = 86400.0 * 2,
    contributors: Optional[List[Contributor]] = None,
    **kwargs,
) -> ContractSnapshot:
    if contributors is None:
        contributors = [make_contributor("alice", total / 2), make_contributor("bob", total / 2)]
    return ContractSnapshot(
        contract_identifier=contract_id,
        coop_identifier=room,
        total_amount=total,
        seconds_remaining=remaining,
        grade=Grade.AAA,
        contributors=contributors,
        **kwargs,
    )


def make_remote_mission(identifier: str, land: int, duration: float = 3600.0, ship: int = 9) -> RemoteMission:
    return RemoteMission(
        identifier=identifier,
        ship=ship,
        duration_type=DurationType.LONG,
        duration_seconds=duration,
        start_time=land - duration,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "tracker.db"


@pytest_asyncio.fixture
async def storage_actor(db_path):
    actor = StorageActor.open(db_path)
    handle = actor.start()
    yield actor
    await handle.terminate()
    await actor.wait()


@pytest.fixture
def storage(storage_actor) -> StorageHandle:
    return StorageHandle(storage_actor)
