"""Tests for text helpers."""
from __future__ import annotations

import pytest

from egg_tracker.formatting import (
    clamp_text,
    earning_bonus_role,
    fmt_time_delta,
    fmt_time_delta_short,
    is_valid_contract_id,
    is_valid_ei,
    is_valid_room,
    parse_num_str,
    parse_num_with_unit,
    tf_emoji,
    timestamp_to_string,
)


def test_time_delta_long_form():
    assert fmt_time_delta(59) == "00:00:59"
    assert fmt_time_delta(90061) == "1 day, 01:01:01"
    assert fmt_time_delta(2 * 86400 + 5) == "2 days, 00:00:05"
    assert fmt_time_delta(-3600) == "-01:00:00"


def test_time_delta_short_form():
    assert fmt_time_delta_short(90061) == "1d1h1m1s"
    assert fmt_time_delta_short(61) == "0h1m1s"
    assert fmt_time_delta_short(-5) == "0h0m0s"


@pytest.mark.parametrize(
    "value, text",
    [(999.0, "999.00"), (1500.0, "1.50K"), (2.5e9, "2.50B"), (2e15, "2.00q")],
)
def test_number_units(value, text):
    assert parse_num_with_unit(value) == text
    assert parse_num_str(text) == pytest.approx(value)


def test_unparseable_numbers():
    assert parse_num_str("lots") is None
    assert parse_num_str("1.5zz") is None
    assert parse_num_str("") is None


def test_timestamp_rendering():
    assert timestamp_to_string(0, tz="UTC") == "1970-01-01 00:00:00"
    assert timestamp_to_string(10 ** 20, tz="UTC") == "N/A"


def test_validators():
    assert is_valid_ei("EI1234567890123456")
    assert not is_valid_ei("EI12345")
    assert not is_valid_ei("XX1234567890123456")
    assert is_valid_contract_id("spring-2024")
    assert not is_valid_contract_id("bad id")
    assert is_valid_room("room-1")
    assert not is_valid_room("-room")


def test_misc_helpers():
    assert earning_bonus_role(0.5) == "Farmer I"
    assert earning_bonus_role(3.2) == "Kilofarmer I"
    assert earning_bonus_role(99) == "Infinifarmer"
    assert tf_emoji(True) == "✅"
    assert tf_emoji(False) == "❌"
    assert clamp_text("short", 10) == "short"
    assert clamp_text("x" * 20, 10) == "x" * 9 + "…"
