"""Smoke tests for the Discord surface."""
from __future__ import annotations

from dataclasses import replace

import discord
import pytest
from discord import app_commands

from egg_tracker.config import Settings
from egg_tracker.discord_bot import DiscordNotifier, _parse_offsets, build_bot, build_parser, register_commands
from egg_tracker.service import TrackerService


class _User:
    def __init__(self) -> None:
        self.messages = []

    async def send(self, text):
        self.messages.append(text)


class _Bot:
    def __init__(self, cached=None, remote=None) -> None:
        self.cached = cached or {}
        self.remote = remote or {}
        self.fetched = []

    def get_user(self, user_id):
        return self.cached.get(user_id)

    async def fetch_user(self, user_id):
        self.fetched.append(user_id)
        return self.remote[user_id]


def test_parse_offsets():
    assert _parse_offsets("10 20 x 30") == [10, 20, 30]
    assert _parse_offsets("") == [30, 60, 90]


def test_parser_overrides():
    args = build_parser().parse_args(["custom.yaml", "--fetch-period", "900", "-vv"])

    assert str(args.settings) == "custom.yaml"
    assert args.fetch_period == 900
    assert args.check_period is None
    assert args.verbose == 2


@pytest.mark.asyncio
async def test_notifier_prefers_cached_users_and_clamps():
    cached, remote = _User(), _User()
    bot = _Bot(cached={1: cached}, remote={2: remote})
    notifier = DiscordNotifier(bot, limit=10)

    await notifier.send(1, "hello")
    await notifier.send(2, "x" * 50)

    assert cached.messages == ["hello"]
    assert remote.messages == ["x" * 9 + "…"]
    assert bot.fetched == [2]


def test_bot_requires_codec():
    with pytest.raises(RuntimeError):
        build_bot(Settings.from_dict({}))


@pytest.mark.asyncio
async def test_every_command_is_registered(tmp_path, client, notifier):
    settings = replace(Settings.from_dict({}), database_path=str(tmp_path / "bot.db"))
    service = TrackerService(settings, client, notifier)
    tree = app_commands.CommandTree(discord.Client(intents=discord.Intents.default()))

    register_commands(tree, service)

    top_level = {command.name for command in tree.get_commands()}
    assert top_level == {"add", "remove", "list", "missions", "recent", "ping", "contract", "admin"}
    contract = tree.get_command("contract")
    assert {command.name for command in contract.commands} == {
        "list", "track", "calc", "room", "subscribe", "unsubscribe",
    }
    admin = tree.get_command("admin")
    assert {command.name for command in admin.commands} == {
        "query", "reset", "toggle", "users", "cache", "cache_insert", "subscribe_insert", "reset_contract", "telemetry",
    }
