"""Core data models for egg_tracker."""
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import IntEnum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple


class DurationType(IntEnum):
    SHORT = 0
    LONG = 1
    EPIC = 2
    TUTORIAL = 3
    UNKNOWN = 4

    @classmethod
    def parse(cls, value: Any) -> "DurationType":
        """Accept either the stored integer or a legacy textual name."""

        if isinstance(value, str):
            return cls.__members__.get(value.strip().upper(), cls.UNKNOWN)
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.UNKNOWN

    @property
    def label(self) -> str:
        return self.name.capitalize()


class Grade(IntEnum):
    UNSET = 0
    C = 1
    B = 2
    A = 3
    AA = 4
    AAA = 5

    @classmethod
    def parse(cls, value: Any) -> "Grade":
        try:
            return cls(int(value))
        except (TypeError, ValueError):
            return cls.__members__.get(str(value).upper(), cls.UNSET)


SHIP_NAMES: Tuple[str, ...] = (
    "Chicken One",
    "Chicken Nine",
    "Chicken Heavy",
    "BCR",
    "Quintillion Chicken",
    "Cornish-Hen Corvette",
    "Galeggtica",
    "Defihent",
    "Voyegger",
    "Henerprise",
    "Atreggies Henliner",
)


def ship_friendly_name(ship: int) -> str:
    if 0 <= ship < len(SHIP_NAMES):
        return SHIP_NAMES[ship]
    return f"Ship #{ship}"


def _split_ids(raw: str) -> List[str]:
    return [item for item in (part.strip() for part in raw.split(",")) if item]


# Stored records -----------------------------------------------------------


@dataclass
class Account:
    ei: str
    nickname: Optional[str] = None
    last_fetch: int = 0
    contract_trace: bool = False
    disabled: bool = False

    @property
    def name(self) -> str:
        return self.nickname or self.ei

    def is_due(self, now: int, fetch_period: int, forced_refresh: int) -> bool:
        """Return True when the account should be polled at ``now``."""

        if self.disabled:
            return False
        elapsed = now - self.last_fetch
        if elapsed >= fetch_period:
            return True
        return self.contract_trace and elapsed > forced_refresh


@dataclass
class UserAccounts:
    """Chat id to account index."""

    chat_id: int
    accounts: List[str] = field(default_factory=list)

    @staticmethod
    def from_row(chat_id: int, raw: str) -> "UserAccounts":
        return UserAccounts(chat_id=int(chat_id), accounts=_split_ids(raw))

    def add(self, ei: str) -> None:
        if ei not in self.accounts:
            self.accounts.append(ei)

    def remove(self, ei: str) -> None:
        self.accounts = [item for item in self.accounts if item != ei]

    def accounts_text(self) -> str:
        return ",".join(self.accounts)


@dataclass
class AccountMap:
    """Account to chat id index."""

    ei: str
    chats: List[int] = field(default_factory=list)

    @staticmethod
    def from_row(ei: str, raw: str) -> "AccountMap":
        return AccountMap(ei=ei, chats=[int(item) for item in _split_ids(raw)])

    def add(self, chat_id: int) -> None:
        if chat_id not in self.chats:
            self.chats.append(chat_id)

    def remove(self, chat_id: int) -> None:
        self.chats = [item for item in self.chats if item != chat_id]

    def chats_text(self) -> str:
        return ",".join(str(item) for item in self.chats)


@dataclass(frozen=True)
class Mission:
    id: str
    name: str
    duration_type: DurationType
    belong: str
    land: int
    notified: bool = False

    def is_landed(self, now: int) -> bool:
        return now > self.land

    def seconds_left(self, now: int) -> int:
        return max(0, self.land - now)


@dataclass(frozen=True)
class ContractGradeSpec:
    length: float
    goal1: float
    goal3: float


@dataclass(frozen=True)
class ContractSpec:
    id: str
    max_coop_size: int
    token_time: float
    grades: Dict[Grade, ContractGradeSpec] = field(default_factory=dict)

    def grade_spec(self, grade: Grade) -> Optional[ContractGradeSpec]:
        return self.grades.get(grade)

    def grades_to_dict(self) -> Dict[str, Dict[str, float]]:
        return {
            str(int(grade)): {
                "length": spec.length,
                "goal1": spec.goal1,
                "goal3": spec.goal3,
            }
            for grade, spec in self.grades.items()
        }

    @staticmethod
    def grades_from_dict(data: Dict[str, Dict[str, float]]) -> Dict[Grade, ContractGradeSpec]:
        return {
            Grade.parse(key): ContractGradeSpec(
                length=float(value["length"]),
                goal1=float(value["goal1"]),
                goal3=float(value["goal3"]),
            )
            for key, value in data.items()
        }


@dataclass
class ContractParticipation:
    id: str
    room: str
    belong: str
    start_time: Optional[float] = None
    finished: bool = False


@dataclass
class ContractCache:
    id: str
    room: str
    body: bytes
    timestamp: int
    cleared: bool = False

    def is_recent(self, now: int, threshold: int) -> bool:
        return now - self.timestamp < threshold


@dataclass(frozen=True)
class SubscribeInfo:
    id: str
    room: str
    chats: FrozenSet[int] = frozenset()
    est: int = 0
    notified: bool = False

    @staticmethod
    def from_row(
        contract: str, room: str, users: str, est: int, notified: Any
    ) -> "SubscribeInfo":
        return SubscribeInfo(
            id=contract,
            room=room,
            chats=frozenset(int(item) for item in _split_ids(users)),
            est=int(est),
            notified=bool(notified),
        )

    def chats_text(self) -> str:
        return ",".join(str(item) for item in sorted(self.chats))

    def with_chat(self, chat_id: int) -> "SubscribeInfo":
        return replace(self, chats=self.chats | {chat_id})

    def without_chat(self, chat_id: int) -> "SubscribeInfo":
        return replace(self, chats=self.chats - {chat_id})


# Decoded remote snapshots ---------------------------------------------------


@dataclass
class ProductionParams:
    shipping_rate: float
    egg_laying_rate: float
    farm_population: float
    delivered: float = 0.0

    @property
    def laying_rate(self) -> float:
        """Whole-farm laying rate per second."""

        return self.egg_laying_rate * self.farm_population

    @property
    def effective_rate(self) -> float:
        return min(self.shipping_rate, self.laying_rate)


@dataclass
class FarmInfo:
    # Negative: seconds since last seen; positive: absolute last-seen instant
    timestamp: float
    permit_level: int = 0


@dataclass
class BuffState:
    earnings: float = 1.0
    egg_laying_rate: float = 1.0


@dataclass
class Contributor:
    user_name: str
    contribution_amount: float
    finalized: bool = False
    soul_power: float = 0.0
    production: Optional[ProductionParams] = None
    farm: Optional[FarmInfo] = None
    buff_history: List[BuffState] = field(default_factory=list)


@dataclass
class ContractSnapshot:
    contract_identifier: str
    coop_identifier: str
    total_amount: float
    seconds_remaining: float
    grade: Grade = Grade.UNSET
    all_goals_achieved: bool = False
    all_members_reporting: bool = False
    cleared_for_exit: bool = False
    seconds_since_all_goals_achieved: float = 0.0
    contributors: List[Contributor] = field(default_factory=list)

    @property
    def is_cleared(self) -> bool:
        return self.cleared_for_exit or self.all_members_reporting


@dataclass
class RemoteMission:
    identifier: str
    ship: int
    duration_type: DurationType
    duration_seconds: float
    start_time: float

    @property
    def land(self) -> int:
        return int(self.start_time + self.duration_seconds)

    def to_mission(self, belong: str) -> Mission:
        return Mission(
            id=self.identifier,
            name=ship_friendly_name(self.ship),
            duration_type=self.duration_type,
            belong=belong,
            land=self.land,
        )


@dataclass
class LocalContract:
    spec: ContractSpec
    coop_identifier: str
    start_time: Optional[float] = None
    finished: bool = False


@dataclass
class AccountSnapshot:
    ei: str
    nickname: Optional[str] = None
    missions: List[RemoteMission] = field(default_factory=list)
    contracts: List[LocalContract] = field(default_factory=list)
    coop_statuses: List[ContractSnapshot] = field(default_factory=list)
    fetched_at: int = field(default_factory=lambda: int(time.time()))

    def coop_status_for(self, contract_id: str, room: str) -> Optional[ContractSnapshot]:
        for status in self.coop_statuses:
            if status.contract_identifier == contract_id and status.coop_identifier == room:
                return status
        return None


__all__ = [
    "Account",
    "AccountMap",
    "AccountSnapshot",
    "BuffState",
    "ContractCache",
    "ContractGradeSpec",
    "ContractParticipation",
    "ContractSnapshot",
    "ContractSpec",
    "Contributor",
    "DurationType",
    "FarmInfo",
    "Grade",
    "LocalContract",
    "Mission",
    "ProductionParams",
    "RemoteMission",
    "SHIP_NAMES",
    "SubscribeInfo",
    "UserAccounts",
    "ship_friendly_name",
]
