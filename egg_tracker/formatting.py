"""Text helpers shared by notifications and command replies."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Taipei"
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

OOM_UNITS = (
    "", "K", "M", "B", "T", "q", "Q", "s", "S", "o", "N", "d", "U", "D",
    "Td", "qd", "Qd", "sd", "Sd", "Od", "Nd", "V", "uV", "dV", "tV", "qV",
    "QV", "sV", "SV", "OV", "NV", "tT",
)
DEFAULT_OOM_UNIT = "A Lot"

EARNING_BONUS_ROLES = (
    "Farmer I", "Farmer II", "Farmer III",
    "Kilofarmer I", "Kilofarmer II", "Kilofarmer III",
    "Megafarmer I", "Megafarmer II", "Megafarmer III",
    "Gigafarmer I", "Gigafarmer II", "Gigafarmer III",
    "Terafarmer I", "Terafarmer II", "Terafarmer III",
    "Petafarmer I", "Petafarmer II", "Petafarmer III",
    "Exafarmer I", "Exafarmer II", "Exafarmer III",
    "Zettafarmer I", "Zettafarmer II", "Zettafarmer III",
    "Yottafarmer I", "Yottafarmer II", "Yottafarmer III",
    "Xennafarmer I", "Xennafarmer II", "Xennafarmer III",
    "Weccafarmer I", "Weccafarmer II", "Weccafarmer III",
)
DEFAULT_EARNING_BONUS_ROLE = "Infinifarmer"

EI_PATTERN = re.compile(r"^EI\d{16}$")
COOP_ID_PATTERN = re.compile(r"^[\w]+(-[\w\d]+)*$")
ROOM_PATTERN = re.compile(r"^[\w\d][\-\w\d]*$")
_NUM_WITH_UNIT = re.compile(r"^(\d+(\.\d+)?)(\w{1,2}|A Lot)?$")

_timezone_name = DEFAULT_TIMEZONE


def set_display_timezone(name: str) -> None:
    """Switch the zone used by :func:`timestamp_to_string`."""

    global _timezone_name
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %s, keeping %s", name, _timezone_name)
        return
    _timezone_name = name


def timestamp_to_string(timestamp: int, fmt: str = TIMESTAMP_FORMAT, tz: Optional[str] = None) -> str:
    try:
        moment = datetime.fromtimestamp(int(timestamp), tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.warning("Invalid timestamp: %s", timestamp)
        return "N/A"
    return moment.astimezone(ZoneInfo(tz or _timezone_name)).strftime(fmt)


def fmt_time_delta(seconds: float) -> str:
    """Render as ``[N day(s), ]HH:MM:SS``."""

    total = int(seconds)
    days, rest = divmod(abs(total), 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    prefix = f"{days} day{'s' if days > 1 else ''}, " if days > 0 else ""
    sign = "-" if total < 0 else ""
    return f"{sign}{prefix}{hours:02}:{minutes:02}:{secs:02}"


def fmt_time_delta_short(seconds: float) -> str:
    """Render as ``[Nd]XhYmZs``; negative deltas clamp to zero."""

    total = int(seconds)
    if total < 0:
        return "0h0m0s"
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, secs = divmod(rest, 60)
    prefix = f"{days}d" if days > 0 else ""
    return f"{prefix}{hours}h{minutes}m{secs}s"


def parse_num_with_unit(num: float) -> str:
    count = 0
    while num > 1000.0:
        num /= 1000.0
        count += 1
        if count >= len(OOM_UNITS):
            break
    unit = OOM_UNITS[count] if count < len(OOM_UNITS) else DEFAULT_OOM_UNIT
    return f"{num:.2f}{unit}"


def parse_num_str(text: str) -> Optional[float]:
    """Inverse of :func:`parse_num_with_unit`; ``None`` when unparseable."""

    match = _NUM_WITH_UNIT.match(text.strip())
    if match is None:
        return None
    basic = float(match.group(1))
    unit = match.group(3)
    if unit is None:
        return basic
    if unit in OOM_UNITS:
        return basic * 1000.0 ** OOM_UNITS.index(unit)
    return None


def earning_bonus_role(soul_power: float) -> str:
    index = int(soul_power // 1) if soul_power >= 0 else -1
    if 0 <= index < len(EARNING_BONUS_ROLES):
        return EARNING_BONUS_ROLES[index]
    return DEFAULT_EARNING_BONUS_ROLE


def tf_emoji(value: bool) -> str:
    return "✅" if value else "❌"


def clamp_text(text: str, limit: int = 2000) -> str:
    """Trim a message to the chat length limit."""

    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


def is_valid_ei(value: str) -> bool:
    return bool(EI_PATTERN.match(value))


def is_valid_contract_id(value: str) -> bool:
    return bool(COOP_ID_PATTERN.match(value))


def is_valid_room(value: str) -> bool:
    return bool(ROOM_PATTERN.match(value))


__all__ = [
    "DEFAULT_TIMEZONE",
    "OOM_UNITS",
    "clamp_text",
    "earning_bonus_role",
    "fmt_time_delta",
    "fmt_time_delta_short",
    "is_valid_contract_id",
    "is_valid_ei",
    "is_valid_room",
    "parse_num_str",
    "parse_num_with_unit",
    "set_display_timezone",
    "tf_emoji",
    "timestamp_to_string",
]
