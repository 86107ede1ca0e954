"""Discord bot entry point for egg_tracker."""
from __future__ import annotations

import argparse
import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import List, Optional, Sequence

import discord
from discord import app_commands
from discord.ext import commands

from .config import Settings, get_settings
from .formatting import clamp_text, set_display_timezone
from .protocol import HttpProtocolClient, ProtocolClient, load_codec
from .service import TrackerService
from .telemetry import configure_telemetry
from .telemetry_decorator import track_command

logger = logging.getLogger(__name__)


class DiscordNotifier:
    """Delivers notifications as direct messages to a Discord user id."""

    def __init__(self, bot: commands.Bot, *, limit: int = 2000) -> None:
        self._bot = bot
        self._limit = limit

    async def send(self, chat_id: int, text: str) -> None:
        user = self._bot.get_user(chat_id)
        if user is None:
            user = await self._bot.fetch_user(chat_id)
        await user.send(clamp_text(text, self._limit))


def _parse_offsets(raw: str) -> List[int]:
    offsets = []
    for item in raw.split():
        try:
            offsets.append(int(item))
        except ValueError:
            logger.warning("Parse %r to number error, ignored", item)
    return offsets or [30, 60, 90]


class TrackerBot(commands.Bot):
    """Bot owning a :class:`TrackerService` for the lifetime of the connection."""

    def __init__(self, settings: Settings, client: ProtocolClient, intents: Optional[discord.Intents] = None) -> None:
        super().__init__(command_prefix="/", intents=intents or discord.Intents.default())
        self.settings = settings
        self.service = TrackerService(
            settings,
            client,
            DiscordNotifier(self, limit=settings.message_limit),
            telemetry=configure_telemetry(Path(settings.telemetry_path)),
        )
        register_commands(self.tree, self.service)

    async def setup_hook(self) -> None:
        self.service.start()
        try:
            synced = await self.tree.sync()
            logger.info("Synced %d commands", len(synced))
        except discord.HTTPException:
            logger.exception("Failed to sync commands")

    async def on_ready(self) -> None:
        logger.info("egg_tracker bot connected as %s", self.user)

    async def close(self) -> None:
        await self.service.shutdown()
        await super().close()


async def _reply(interaction: discord.Interaction, text: str) -> None:
    await interaction.response.send_message(text or "Nothing found", ephemeral=True)


async def _deferred_reply(interaction: discord.Interaction, text: str) -> None:
    await interaction.followup.send(text or "Nothing found", ephemeral=True)


def register_commands(tree: app_commands.CommandTree, service: TrackerService) -> None:
    """Attach every chat command of ``service`` to ``tree``."""

    @tree.command(name="add", description="Add your account to this bot")
    @app_commands.describe(ei="Account EI, like EI1234567890123456")
    @track_command
    async def add(interaction: discord.Interaction, ei: str):
        try:
            text = await service.register_account(interaction.user.id, ei)
        except ValueError as exc:
            text = str(exc)
        await _reply(interaction, text)

    @tree.command(name="remove", description="Remove your account from this bot")
    @track_command
    async def remove(interaction: discord.Interaction, ei: str):
        try:
            text = await service.remove_account(interaction.user.id, ei)
        except (ValueError, TrackerService.PermissionDenied) as exc:
            text = str(exc)
        await _reply(interaction, text)

    @tree.command(name="list", description="List accounts bound to you")
    @app_commands.describe(detail="Show EI next to nicknames", everyone="Admin only: list every account")
    @track_command
    async def list_accounts(interaction: discord.Interaction, detail: bool = False, everyone: bool = False):
        text = await service.list_accounts(interaction.user.id, show_ei=detail, all_accounts=everyone)
        await _reply(interaction, text)

    @tree.command(name="missions", description="Display the latest spaceship missions")
    @track_command
    async def missions(interaction: discord.Interaction, user: Optional[str] = None):
        target = int(user) if user and user.isdigit() else None
        await _reply(interaction, await service.list_missions(interaction.user.id, recent=False, user=target))

    @tree.command(name="recent", description="Display missions landing within the next hour")
    @track_command
    async def recent(interaction: discord.Interaction, user: Optional[str] = None):
        target = int(user) if user and user.isdigit() else None
        await _reply(interaction, await service.list_missions(interaction.user.id, recent=True, user=target))

    @tree.command(name="ping", description="Show tracker status")
    @track_command
    async def ping(interaction: discord.Interaction):
        await _reply(interaction, service.ping(interaction.user.id))

    contract = app_commands.Group(name="contract", description="Coop contract commands")

    @contract.command(name="list", description="List contracts seen on an account")
    @track_command
    async def contract_list(interaction: discord.Interaction, ei: str):
        try:
            text = await service.list_contracts(interaction.user.id, ei)
        except (ValueError, TrackerService.PermissionDenied) as exc:
            text = str(exc)
        await _reply(interaction, text)

    @contract.command(name="track", description="Enable or disable contract tracking for an account")
    @track_command
    async def contract_track(interaction: discord.Interaction, ei: str, enable: bool):
        try:
            text = await service.set_contract_trace(interaction.user.id, ei, enable)
        except (ValueError, TrackerService.PermissionDenied) as exc:
            text = str(exc)
        await _reply(interaction, text)

    @contract.command(name="calc", description="Estimate scores of the room an account plays in")
    @track_command
    async def contract_calc(interaction: discord.Interaction, ei: str, contract_id: str, detail: bool = False):
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            text = await service.score_for_account(interaction.user.id, ei, contract_id, detail=detail)
        except (ValueError, TrackerService.PermissionDenied) as exc:
            text = str(exc)
        await _deferred_reply(interaction, text)

    @contract.command(name="room", description="Estimate scores of a coop room")
    @track_command
    async def contract_room(interaction: discord.Interaction, contract_id: str, room: str, detail: bool = False):
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            text = await service.score_for_room(contract_id, room, detail=detail)
        except ValueError as exc:
            text = str(exc)
        await _deferred_reply(interaction, text)

    @contract.command(name="subscribe", description="Get notified when a coop room finishes")
    @track_command
    async def contract_subscribe(interaction: discord.Interaction, contract_id: str, room: str):
        try:
            text = await service.subscribe(interaction.user.id, contract_id, room)
        except ValueError as exc:
            text = str(exc)
        await _reply(interaction, text)

    @contract.command(name="unsubscribe", description="Stop notifications for a coop room")
    @track_command
    async def contract_unsubscribe(interaction: discord.Interaction, contract_id: str, room: str):
        try:
            text = await service.unsubscribe(interaction.user.id, contract_id, room)
        except ValueError as exc:
            text = str(exc)
        await _reply(interaction, text)

    tree.add_command(contract)

    admin = app_commands.Group(name="admin", description="Tracker administration")

    async def _admin(interaction: discord.Interaction, action) -> None:
        try:
            text = await action
        except (ValueError, TrackerService.PermissionDenied) as exc:
            text = str(exc)
        await _reply(interaction, text)

    @admin.command(name="query", description="Trigger a poll round, optionally forcing one account")
    @track_command
    async def admin_query(interaction: discord.Interaction, ei: Optional[str] = None):
        await _admin(interaction, service.admin_query(interaction.user.id, ei))

    @admin.command(name="reset", description="Mark the latest missions of an account as not notified")
    @track_command
    async def admin_reset(interaction: discord.Interaction, ei: str, limit: Optional[int] = None):
        await _admin(interaction, service.admin_reset_missions(interaction.user.id, ei, limit))

    @admin.command(name="toggle", description="Enable or disable an account")
    @track_command
    async def admin_toggle(interaction: discord.Interaction, ei: str, enabled: bool):
        await _admin(interaction, service.admin_toggle_account(interaction.user.id, ei, enabled))

    @admin.command(name="users", description="List every chat and its accounts")
    @track_command
    async def admin_users(interaction: discord.Interaction):
        await _admin(interaction, service.admin_list_users(interaction.user.id))

    @admin.command(name="cache", description="Refresh the scheduler caches")
    @track_command
    async def admin_cache(interaction: discord.Interaction, invalidate: bool = False):
        await _admin(interaction, service.admin_reset_cache(interaction.user.id, invalidate))

    @admin.command(name="cache_insert", description="Insert synthetic missions for an account")
    @app_commands.describe(offsets="Seconds from now, space separated")
    @track_command
    async def admin_cache_insert(interaction: discord.Interaction, ei: str, offsets: str = ""):
        await _admin(interaction, service.admin_insert_missions(interaction.user.id, ei, _parse_offsets(offsets)))

    @admin.command(name="subscribe_insert", description="Insert synthetic finished subscriptions for yourself")
    @app_commands.describe(offsets="Seconds from now, space separated")
    @track_command
    async def admin_subscribe_insert(interaction: discord.Interaction, offsets: str = ""):
        await _admin(interaction, service.admin_insert_subscriptions(interaction.user.id, _parse_offsets(offsets)))

    @admin.command(name="reset_contract", description="Expire the cached status of a coop room")
    @track_command
    async def admin_reset_contract(interaction: discord.Interaction, contract_id: str, room: str):
        await _admin(interaction, service.admin_reset_contract_cache(interaction.user.id, contract_id, room))

    @admin.command(name="telemetry", description="Show metric totals")
    @track_command
    async def admin_telemetry(interaction: discord.Interaction, hours: int = 24):
        await _admin(interaction, service.admin_telemetry(interaction.user.id, hours))

    tree.add_command(admin)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="egg-tracker", description="Egg, Inc. spaceship and contract tracker")
    parser.add_argument("settings", nargs="?", type=Path, help="Settings YAML file")
    parser.add_argument("--fetch-period", type=int, help="Seconds between fetches of one account")
    parser.add_argument("--check-period", type=int, help="Seconds between poll rounds")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase log verbosity")
    return parser


def _configure_logging(verbose: int) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if verbose < 2:
        logging.getLogger("discord").setLevel(logging.INFO)
        logging.getLogger("aiohttp").setLevel(logging.INFO)


def build_bot(settings: Settings, intents: Optional[discord.Intents] = None) -> TrackerBot:
    if not settings.api_codec:
        raise RuntimeError("api.codec (or EGG_TRACKER_CODEC) must name a PayloadCodec implementation")
    client = HttpProtocolClient(
        load_codec(settings.api_codec),
        api_base=settings.api_backend,
        timeout=settings.api_timeout,
    )
    return TrackerBot(settings, client, intents)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    token = os.environ.get("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN environment variable must be set")
    settings = get_settings(args.settings)
    overrides = {}
    if args.fetch_period:
        overrides["fetch_period"] = args.fetch_period
    if args.check_period:
        overrides["check_period"] = args.check_period
    if overrides:
        settings = replace(settings, **overrides)
    set_display_timezone(settings.timezone)
    bot = build_bot(settings)
    bot.run(token, log_handler=None)


__all__ = ["DiscordNotifier", "TrackerBot", "build_bot", "build_parser", "main", "register_commands"]
