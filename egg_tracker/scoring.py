"""Cooperative contract score estimation.

Given a contract's grade table and a coop status snapshot, project when the
coop reaches its final goal and estimate each contributor's contract score
under that projection. Offline farms are credited with the eggs they laid
since they were last seen.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Tuple, Union

from .models import ContractGradeSpec, ContractSnapshot, ContractSpec, Contributor, Grade

logger = logging.getLogger(__name__)

# Values above this are absolute unix instants rather than relative offsets.
ABSOLUTE_TIMESTAMP_FLOOR = 100_000_000.0

# Used when no contributor reports production, to avoid dividing by zero.
MIN_TOTAL_RATE = 0.001

GRADE_MULTIPLIER: Dict[Grade, float] = {
    Grade.UNSET: 1.0,
    Grade.C: 1.0,
    Grade.B: 2.0,
    Grade.A: 3.5,
    Grade.AA: 5.0,
    Grade.AAA: 7.0,
}


class ScoringError(RuntimeError):
    """Raised when a snapshot cannot be scored against its contract."""


class CompletionLevel(IntEnum):
    NOT_TRACK = 0
    ON_TRACK = 1
    COMPLETED = 2
    CLEARED = 3

    @property
    def emoji(self) -> str:
        return _LEVEL_EMOJI[self]

    @classmethod
    def from_snapshot(cls, snapshot: ContractSnapshot, on_time: bool) -> "CompletionLevel":
        if snapshot.is_cleared:
            return cls.CLEARED
        if snapshot.all_goals_achieved:
            return cls.COMPLETED
        if on_time:
            return cls.ON_TRACK
        return cls.NOT_TRACK


_LEVEL_EMOJI = {
    CompletionLevel.NOT_TRACK: "🔴",
    CompletionLevel.ON_TRACK: "🟡",
    CompletionLevel.COMPLETED: "🟢",
    CompletionLevel.CLEARED: "✅",
}


@dataclass(frozen=True)
class OutOfTime:
    """The final goal is unreachable inside the contract window."""

    estimate: float


def offline_seconds(timestamp: float, now: float) -> float:
    """Seconds a farm has been offline.

    Non-positive values are already relative (seconds since last seen);
    positive values are the last-seen instant.
    """

    if timestamp <= 0:
        return abs(timestamp)
    return now - timestamp


def get_timestamp_offset(value: float, cache_timestamp: Optional[int], now: float) -> float:
    """Convert an offset observed at ``cache_timestamp`` into one relative to ``now``."""

    if value > ABSOLUTE_TIMESTAMP_FLOOR:
        return now - value
    if cache_timestamp is None:
        return value
    return cache_timestamp + value - now


def _contributor_rate(contributor: Contributor) -> Optional[float]:
    if contributor.production is None:
        return None
    return contributor.production.effective_rate


@dataclass
class UserScore:
    username: str
    amount: float
    shipping_rate: Optional[float]
    egg_laying_rate: Optional[float]
    finalized: bool
    timestamp: Optional[float]
    soul_power: float
    permit_level: Optional[int]
    coop_buff: Tuple[float, float]
    score: float

    @property
    def elr_per_hour(self) -> Optional[float]:
        if self.egg_laying_rate is None:
            return None
        return self.egg_laying_rate * 3600.0

    @property
    def sr_per_hour(self) -> Optional[float]:
        if self.shipping_rate is None:
            return None
        return self.shipping_rate * 3600.0

    @property
    def earning_bonus_percent(self) -> float:
        return 10.0 ** self.soul_power * 100.0

    def offline_offset(self, cache_timestamp: Optional[int], now: float) -> Optional[float]:
        if self.timestamp is None:
            return None
        return get_timestamp_offset(self.timestamp, cache_timestamp, now)


@dataclass
class CoopScore:
    grade: Grade
    grade_spec: ContractGradeSpec
    current_amount: float
    completion_time: float
    level: CompletionLevel
    expected_remaining: float
    seconds_remaining: float
    members: List[UserScore] = field(default_factory=list)

    @property
    def target_amount(self) -> float:
        return self.grade_spec.goal3

    @property
    def emoji(self) -> str:
        return self.level.emoji

    @property
    def grade_label(self) -> str:
        return "N/A" if self.grade is Grade.UNSET else self.grade.name

    def is_finished(self) -> bool:
        return self.level >= CompletionLevel.COMPLETED

    def is_cleared(self) -> bool:
        return self.level is CompletionLevel.CLEARED

    def expected_finish(self, cache_timestamp: Optional[int], now: float) -> float:
        return get_timestamp_offset(self.expected_remaining, cache_timestamp, now)

    def contract_remaining(self, cache_timestamp: Optional[int], now: float) -> float:
        return get_timestamp_offset(self.seconds_remaining, cache_timestamp, now)

    def finish_timestamp(self, now: float) -> int:
        """Absolute instant at which the coop is expected to finish."""

        return int(now + self.expected_remaining)

    @property
    def total_known_elr(self) -> float:
        """Sum of the reported laying rates, per hour."""

        return sum(member.egg_laying_rate or 0.0 for member in self.members) * 3600.0

    def total_buff(self) -> Tuple[float, float]:
        earnings = sum(member.coop_buff[0] for member in self.members)
        laying = sum(member.coop_buff[1] for member in self.members)
        return earnings, laying

    def display_buff(self) -> str:
        earnings, laying = self.total_buff()
        return f"E: {earnings:.0f}%, L: {laying:.0f}%"


def contributor_score(
    rate: Optional[float],
    contribution: float,
    big_g: float,
    grade_spec: ContractGradeSpec,
    total_delivered: float,
    coop_size: int,
    completion_time: float,
    expected_remaining: float,
    user_offline: float,
) -> float:
    length = grade_spec.length
    delivered = contribution + (rate or 0.0) * (expected_remaining + user_offline)
    ratio = delivered * coop_size / min(grade_spec.goal3, max(grade_spec.goal1, total_delivered))
    if ratio > 2.5:
        big_c = 1.0 + 3.386486 + 0.02221 * min(ratio, 12.5)
    else:
        big_c = 1.0 + 3.0 * ratio ** 0.15
    return (
        187.5
        * big_g
        * big_c
        * (1.0 + length / 86400.0 / 3.0)
        * (1.0 + 4.0 * (1.0 - completion_time / length) ** 3)
    )


def _projection(
    snapshot: ContractSnapshot, grade_spec: ContractGradeSpec, now: float
) -> Union[Tuple[float, float], OutOfTime]:
    """Return ``(completion_time, expected_remaining)`` or :class:`OutOfTime`."""

    length = grade_spec.length
    if snapshot.all_goals_achieved:
        completion = length - snapshot.seconds_remaining - snapshot.seconds_since_all_goals_achieved
        return completion, 0.0

    total_rate = 0.0
    offline_eggs = 0.0
    for contributor in snapshot.contributors:
        rate = _contributor_rate(contributor)
        if rate is None or contributor.farm is None:
            continue
        total_rate += rate
        offline_eggs += offline_seconds(contributor.farm.timestamp, now) * rate
    if total_rate == 0.0:
        total_rate = MIN_TOTAL_RATE
    expected_remaining = (grade_spec.goal3 - snapshot.total_amount - offline_eggs) / total_rate
    if expected_remaining > length:
        return OutOfTime(estimate=now + expected_remaining)
    return length - snapshot.seconds_remaining + expected_remaining, expected_remaining


def calc_score(
    spec: ContractSpec, snapshot: ContractSnapshot, now: Optional[float] = None
) -> Union[CoopScore, OutOfTime]:
    now = time.time() if now is None else now
    grade_spec = spec.grade_spec(snapshot.grade)
    if grade_spec is None:
        raise ScoringError(f"Grade {snapshot.grade.name} not found in contract {spec.id}")

    projection = _projection(snapshot, grade_spec, now)
    if isinstance(projection, OutOfTime):
        logger.debug("Contract %s/%s out of time", spec.id, snapshot.coop_identifier)
        return projection
    completion_time, expected_remaining = projection

    big_g = GRADE_MULTIPLIER.get(snapshot.grade, 1.0)
    total_delivered = max(grade_spec.goal3, snapshot.total_amount)
    members = []
    for contributor in snapshot.contributors:
        production = contributor.production
        laying = production.laying_rate if production else None
        shipping = production.shipping_rate if production else None
        farm_timestamp = contributor.farm.timestamp if contributor.farm else None
        buff = contributor.buff_history[-1] if contributor.buff_history else None
        score = contributor_score(
            _contributor_rate(contributor),
            contributor.contribution_amount,
            big_g,
            grade_spec,
            total_delivered,
            spec.max_coop_size,
            completion_time - min(expected_remaining, 0.0),
            max(expected_remaining, 0.0),
            offline_seconds(farm_timestamp or 0.0, now),
        )
        members.append(
            UserScore(
                username=contributor.user_name,
                amount=contributor.contribution_amount,
                shipping_rate=shipping,
                egg_laying_rate=laying,
                finalized=contributor.finalized,
                timestamp=farm_timestamp,
                soul_power=contributor.soul_power,
                permit_level=contributor.farm.permit_level if contributor.farm else None,
                coop_buff=(
                    ((buff.earnings - 1.0) * 100.0, (buff.egg_laying_rate - 1.0) * 100.0)
                    if buff
                    else (0.0, 0.0)
                ),
                score=score,
            )
        )

    return CoopScore(
        grade=snapshot.grade,
        grade_spec=grade_spec,
        current_amount=snapshot.total_amount,
        completion_time=completion_time,
        level=CompletionLevel.from_snapshot(snapshot, completion_time < grade_spec.length),
        expected_remaining=expected_remaining,
        seconds_remaining=snapshot.seconds_remaining,
        members=members,
    )


__all__ = [
    "CompletionLevel",
    "CoopScore",
    "GRADE_MULTIPLIER",
    "OutOfTime",
    "ScoringError",
    "UserScore",
    "calc_score",
    "contributor_score",
    "get_timestamp_offset",
    "offline_seconds",
]
