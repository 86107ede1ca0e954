"""Command surface of the tracker, independent of any chat platform."""
from __future__ import annotations

import logging
import time
from typing import List, Optional, Sequence, Tuple

from . import __version__
from .config import Settings
from .formatting import (
    clamp_text,
    earning_bonus_role,
    fmt_time_delta,
    fmt_time_delta_short,
    is_valid_contract_id,
    is_valid_ei,
    is_valid_room,
    parse_num_with_unit,
    tf_emoji,
    timestamp_to_string,
)
from .models import Account, ContractSnapshot, Mission
from .monitor import Monitor, MonitorConfig
from .protocol import ProtocolClient, QueryError, decode_snapshot, encode_snapshot
from .scheduler import Clock, Notifier
from .scoring import CoopScore, OutOfTime, ScoringError, UserScore, calc_score
from .storage import CacheGuard, StorageActor, StorageHandle
from .subscriber import ContractSubscriber, SubscriberConfig
from .telemetry import SchedulerStatus, TelemetryCollector

logger = logging.getLogger(__name__)


def _mission_line(mission: Mission, now: int) -> str:
    left = mission.seconds_left(now)
    suffix = f" {fmt_time_delta(left)} left" if left > 0 else ""
    return (
        f"{mission.name} ({mission.duration_type.label}) "
        f"{timestamp_to_string(mission.land)} {tf_emoji(mission.notified)}{suffix}"
    )


def _account_line(account: Account, show_ei: bool) -> str:
    name = account.name
    if show_ei and account.nickname:
        name = f"{account.nickname} ({account.ei})"
    last_fetch = timestamp_to_string(account.last_fetch) if account.last_fetch else "Never"
    return (
        f"{name} Last fetch: {last_fetch} Contract: {tf_emoji(account.contract_trace)} "
        f"{'Disabled' if account.disabled else 'Enabled'}"
    )


def render_member(
    member: UserScore,
    *,
    detail: bool,
    cache_timestamp: Optional[int],
    cleared: bool,
    now: float,
) -> str:
    elr = member.elr_per_hour
    sr = member.sr_per_hour
    parts = [
        f"{member.username} Shipped: {parse_num_with_unit(member.amount)}",
        f"ELR: {parse_num_with_unit(elr) + '/h' if elr is not None else 'N/A'}",
        f"SR: {parse_num_with_unit(sr) + '/h' if sr is not None else 'N/A'}",
    ]
    text = " ".join(parts)
    if detail:
        text += (
            f" EB%: {parse_num_with_unit(member.earning_bonus_percent)}"
            f" ({earning_bonus_role(member.soul_power)})"
        )
        if member.permit_level == 1:
            text += "⭐"
        if not cleared and not member.finalized:
            offset = member.offline_offset(cache_timestamp, now)
            if offset is None:
                text += " [Private]"
            else:
                offline_eggs = abs(offset) * (member.egg_laying_rate or 0.0)
                text += f" Offline: {fmt_time_delta_short(abs(offset))} ({parse_num_with_unit(offline_eggs)})"
        earnings, laying = member.coop_buff
        text += f" (E:{earnings:.0f}%, L:{laying:.0f}%)"
    return f"{text} Score: {int(member.score)} {tf_emoji(member.finalized)}"


def render_score(
    contract_id: str,
    room: str,
    score: CoopScore,
    *,
    cache_timestamp: int,
    now: int,
    detail: bool = False,
) -> str:
    lines = [
        f"({score.grade_label}) {contract_id} [{room}] {score.emoji}",
        (
            f"Target: {parse_num_with_unit(score.current_amount)}/{parse_num_with_unit(score.target_amount)}"
            f" ELR: {parse_num_with_unit(score.total_known_elr)}/h Buff: {score.display_buff()}"
        ),
        (
            f"Contract timestamp: {fmt_time_delta_short(score.completion_time)} / "
            f"{fmt_time_delta_short(score.contract_remaining(cache_timestamp, now))} remain"
        ),
    ]
    if not score.is_finished():
        expect = int(now + score.expected_finish(cache_timestamp, now))
        lines.append(f"Expect complete: {timestamp_to_string(expect)}")
        if now > expect:
            lines.append("⚠️ Warning: The contract will be completed beyond the estimated time.")
    lines.append("")
    lines.extend(
        render_member(
            member,
            detail=detail,
            cache_timestamp=cache_timestamp,
            cleared=score.is_cleared(),
            now=now,
        )
        for member in score.members
    )
    lines.append("")
    lines.append(f"Contract last update: {timestamp_to_string(cache_timestamp)}")
    if score.is_finished() and not score.is_cleared():
        lines.append("This score includes your offline contributions, but not your teamwork score.")
    else:
        lines.append("This score does not include your teamwork score.")
    return "\n".join(lines)


class TrackerService:
    """Wires storage, both schedulers and the remote client behind chat commands.

    Methods return the reply text. Invalid input raises :class:`ValueError`;
    an operation on someone else's account raises :class:`PermissionDenied`.
    """

    class PermissionDenied(RuntimeError):
        """Raised when a chat acts on an account or command it does not own."""

    def __init__(
        self,
        settings: Settings,
        client: ProtocolClient,
        notifier: Notifier,
        *,
        telemetry: Optional[TelemetryCollector] = None,
        actor: Optional[StorageActor] = None,
        clock: Clock = time.time,
    ) -> None:
        self.settings = settings
        self.client = client
        self.telemetry = telemetry
        self.status = SchedulerStatus()
        self._clock = clock
        self._actor = actor or StorageActor.open(
            settings.database_path,
            queue_size=settings.storage_queue_size,
            telemetry=telemetry,
        )
        self.storage = StorageHandle(self._actor)
        self.monitor = Monitor(
            self.storage,
            client,
            notifier,
            config=MonitorConfig.from_settings(settings),
            status=self.status,
            telemetry=telemetry,
            clock=clock,
        )
        self.subscriber = ContractSubscriber(
            self.storage,
            client,
            notifier,
            config=SubscriberConfig.from_settings(settings),
            status=self.status,
            telemetry=telemetry,
            clock=clock,
        )
        self._started = False

    # Lifecycle -----------------------------------------------------------
    def now(self) -> int:
        return int(self._clock())

    def start(self) -> None:
        if self._started:
            return
        self._actor.start()
        self.monitor.start()
        self.subscriber.start()
        self._started = True
        if self.telemetry is not None:
            self.telemetry.track_system_event("start", source="service")
        logger.info("Tracker service started")

    async def shutdown(self) -> None:
        """Stop both schedulers, then the storage actor."""

        if not self._started:
            return
        await self.monitor.exit()
        await self.subscriber.exit()
        await self.monitor.join()
        await self.subscriber.join()
        await self.storage.terminate()
        await self._actor.wait()
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()
        if self.telemetry is not None:
            self.telemetry.track_system_event("shutdown", source="service")
            self.telemetry.flush()
        self._started = False
        logger.info("Tracker service stopped")

    def is_admin(self, chat_id: int) -> bool:
        return self.settings.is_admin(chat_id)

    def _require_admin(self, chat_id: int) -> None:
        if not self.is_admin(chat_id):
            raise TrackerService.PermissionDenied("Permission denied")

    async def _require_owner(self, chat_id: int, ei: str) -> None:
        if self.is_admin(chat_id):
            return
        accounts = await self.storage.account_query(chat_id)
        if not any(account.ei == ei for account in accounts):
            raise TrackerService.PermissionDenied("Permission denied")

    @staticmethod
    def _check_ei(ei: str) -> str:
        ei = ei.strip()
        if not is_valid_ei(ei):
            raise ValueError("Invalid EI format")
        return ei

    @staticmethod
    def _check_room(contract_id: str, room: str) -> Tuple[str, str]:
        contract_id, room = contract_id.strip(), room.strip()
        if not is_valid_contract_id(contract_id):
            raise ValueError("Invalid contract id")
        if not is_valid_room(room):
            raise ValueError("Invalid room")
        return contract_id, room

    def clamp(self, text: str) -> str:
        return clamp_text(text, self.settings.message_limit)

    # Accounts ------------------------------------------------------------
    async def register_account(self, chat_id: int, ei: str) -> str:
        if not self.is_admin(chat_id):
            accounts = await self.storage.account_query(chat_id)
            if len(accounts) >= self.settings.max_accounts_per_user:
                return "You can't add more accounts"
        ei = self._check_ei(ei)
        if not await self.storage.account_add(ei, chat_id):
            return "Can't add account, please contact administrator"
        await self.monitor.new_client()
        return f"Account {ei} added"

    async def remove_account(self, chat_id: int, ei: str) -> str:
        ei = self._check_ei(ei)
        if await self.storage.account_query_ei(ei) is None:
            return "Account not found"
        mapping = await self.storage.account_query_chats(ei)
        if mapping is None or chat_id not in mapping.chats:
            raise TrackerService.PermissionDenied("Permission denied")
        await self.storage.user_remove_account(chat_id, ei)
        return "Account deleted"

    async def list_accounts(self, chat_id: int, *, show_ei: bool = False, all_accounts: bool = False) -> str:
        if all_accounts and self.is_admin(chat_id):
            accounts = await self.storage.account_query(None)
        else:
            accounts = await self.storage.account_query(chat_id)
        if not accounts:
            return "Nothing found"
        return self.clamp("\n".join(_account_line(account, show_ei) for account in accounts))

    async def list_missions(self, chat_id: int, *, recent: bool = False, user: Optional[int] = None) -> str:
        target = user if user is not None and self.is_admin(chat_id) else chat_id
        now = self.now()
        groups = await self.storage.mission_query_by_user(target, recent, now)
        if not groups:
            return "Nothing found"
        blocks = []
        for account, missions in groups:
            if not missions:
                continue
            blocks.append(f"{account.name}:\n" + "\n".join(_mission_line(mission, now) for mission in missions))
        if not blocks:
            if recent:
                return "Recent land mission is empty, try the missions command to check all missions."
            return "Missions is empty, try again later."
        return self.clamp("\n\n".join(blocks))

    # Contracts -----------------------------------------------------------
    async def set_contract_trace(self, chat_id: int, ei: str, enable: bool) -> str:
        ei = self._check_ei(ei)
        await self._require_owner(chat_id, ei)
        await self.storage.account_contract_update(ei, enable)
        return f"Set contract tracker to {'enabled' if enable else 'disabled'}"

    async def list_contracts(self, chat_id: int, ei: str) -> str:
        ei = self._check_ei(ei)
        await self._require_owner(chat_id, ei)
        participations = await self.storage.account_query_contract(ei)
        if not participations:
            return "Contract not found"
        lines = []
        for item in participations:
            start = timestamp_to_string(int(item.start_time)) if item.start_time is not None else "Unknown"
            lines.append(f"{item.id} {item.room} {start} {tf_emoji(item.finished)}")
        return self.clamp("\n".join(lines))

    async def load_room(self, contract_id: str, room: str, ei: Optional[str] = None) -> Tuple[ContractSnapshot, int]:
        """Read-through contract cache: recent rows are reused, stale ones refetched."""

        now = self.now()
        cache = await self.storage.contract_cache_query(contract_id, room)
        if cache is not None and cache.is_recent(now, self.settings.contract_cache_recent):
            return decode_snapshot(cache.body), cache.timestamp
        snapshot = await self.client.fetch_contract_room(contract_id, room, ei)
        await self.storage.contract_cache_insert(
            contract_id,
            room,
            encode_snapshot(snapshot),
            snapshot.is_cleared,
            now,
            CacheGuard.for_snapshot(snapshot, now),
        )
        return snapshot, now

    async def _score_text(
        self, contract_id: str, room: str, *, ei: Optional[str], detail: bool
    ) -> str:
        spec = await self.storage.contract_query_spec(contract_id)
        if spec is None:
            return "Contract spec not found, enable contract tracking on an account in this contract first."
        try:
            snapshot, cache_timestamp = await self.load_room(contract_id, room, ei)
        except QueryError as exc:
            logger.error("Load contract %s/%s failed: %s", contract_id, room, exc)
            return f"Query {contract_id}/{room} failed ({exc.kind} error), try again later."
        now = self.now()
        try:
            # Offsets in the snapshot are relative to the moment it was fetched.
            result = calc_score(spec, snapshot, cache_timestamp)
        except ScoringError:
            logger.exception("Calc score for %s/%s failed", contract_id, room)
            return "Got error in calc score, try again later."
        if isinstance(result, OutOfTime):
            return (
                f"{contract_id} [{room}] cannot reach the final goal in time, "
                f"expected at {timestamp_to_string(int(result.estimate))}"
            )
        return self.clamp(
            render_score(contract_id, room, result, cache_timestamp=cache_timestamp, now=now, detail=detail)
        )

    async def score_for_account(self, chat_id: int, ei: str, contract_id: str, *, detail: bool = False) -> str:
        ei = self._check_ei(ei)
        if not is_valid_contract_id(contract_id):
            raise ValueError("Invalid contract id")
        await self._require_owner(chat_id, ei)
        participation = await self.storage.contract_query_single(contract_id, ei)
        if participation is None:
            return "Account room not found"
        return await self._score_text(contract_id, participation.room, ei=ei, detail=detail)

    async def score_for_room(self, contract_id: str, room: str, *, detail: bool = False) -> str:
        contract_id, room = self._check_room(contract_id, room)
        return await self._score_text(contract_id, room, ei=None, detail=detail)

    # Subscriptions -------------------------------------------------------
    async def subscribe(self, chat_id: int, contract_id: str, room: str) -> str:
        contract_id, room = self._check_room(contract_id, room)
        if not await self.storage.subscribe_new(contract_id, room, chat_id):
            return f"Already subscribed to {contract_id}/{room}"
        await self.subscriber.new_contract()
        return f"Subscribed to {contract_id}/{room}"

    async def unsubscribe(self, chat_id: int, contract_id: str, room: str) -> str:
        contract_id, room = self._check_room(contract_id, room)
        if not await self.storage.subscribe_del(contract_id, room, chat_id):
            return f"Not subscribed to {contract_id}/{room}"
        return f"Unsubscribed from {contract_id}/{room}"

    # Status --------------------------------------------------------------
    def ping(self, chat_id: int) -> str:
        last_query = timestamp_to_string(self.status.last_query) if self.status.last_query else "N/A"
        last_subscribe = (
            timestamp_to_string(self.status.last_subscribe_query) if self.status.last_subscribe_query else "N/A"
        )
        return "\n".join(
            [
                f"Chat id: {chat_id}",
                f"Last system query: {last_query}",
                f"Last subscribe query: {last_subscribe}",
                f"Check period: {self.settings.check_period}s",
                f"Fetch period: {self.settings.fetch_period}s",
                f"Is admin: {self.is_admin(chat_id)}",
                f"Version: {__version__}",
            ]
        )

    # Admin ---------------------------------------------------------------
    async def admin_query(self, chat_id: int, ei: Optional[str] = None) -> str:
        """Force a poll round, optionally making ``ei`` due immediately."""

        self._require_admin(chat_id)
        if ei:
            await self.storage.account_timestamp_reset(self._check_ei(ei))
        await self.monitor.new_client()
        return "Request sent"

    async def admin_reset_missions(self, chat_id: int, ei: str, limit: Optional[int] = None) -> str:
        self._require_admin(chat_id)
        ei = self._check_ei(ei)
        count = await self.storage.account_mission_reset(ei, limit or self.settings.mission_reset_limit)
        await self.monitor.refresh(invalidate=True)
        return f"Mission reset ({count})"

    async def admin_toggle_account(self, chat_id: int, ei: str, enabled: bool) -> str:
        self._require_admin(chat_id)
        ei = self._check_ei(ei)
        await self.storage.account_status_reset(ei, not enabled)
        return f"Account {ei} {'enabled' if enabled else 'disabled'}"

    async def admin_list_users(self, chat_id: int) -> str:
        self._require_admin(chat_id)
        users = await self.storage.user_query_all()
        if not users:
            return "Nothing found"
        return self.clamp("\n".join(f"{user.chat_id} {user.accounts_text()}" for user in users))

    async def admin_reset_cache(self, chat_id: int, invalidate: bool = False) -> str:
        self._require_admin(chat_id)
        await self.monitor.refresh(invalidate)
        await self.subscriber.refresh(invalidate)
        return "Cache reset!"

    async def admin_insert_missions(self, chat_id: int, ei: str, offsets: Sequence[int] = (30, 60, 90)) -> str:
        self._require_admin(chat_id)
        ei = self._check_ei(ei)
        await self.monitor.insert_cache(ei, offsets)
        return "New cache inserted"

    async def admin_insert_subscriptions(self, chat_id: int, offsets: Sequence[int] = (30, 60, 90)) -> str:
        self._require_admin(chat_id)
        await self.subscriber.insert_cache(chat_id, offsets)
        return "New subscribe cache inserted"

    async def admin_reset_contract_cache(self, chat_id: int, contract_id: str, room: str) -> str:
        self._require_admin(chat_id)
        contract_id, room = self._check_room(contract_id, room)
        await self.storage.contract_cache_reset_timestamp(contract_id, room)
        return "Timestamp updated"

    async def admin_telemetry(self, chat_id: int, hours: int = 24) -> str:
        self._require_admin(chat_id)
        if self.telemetry is None:
            return "Telemetry disabled"
        summary = self.telemetry.get_summary(hours)
        lines: List[str] = [f"Uptime: {fmt_time_delta(self.telemetry.uptime())}"]
        for metric_type, names in sorted(summary.items()):
            lines.append(f"{metric_type}:")
            lines.extend(f"  {name}: {total:.0f}" for name, total in sorted(names.items()))
        errors = self.telemetry.get_error_summary(hours)
        if errors:
            lines.append("Fetch errors: " + ", ".join(f"{kind} {count}" for kind, count in errors.items()))
        return self.clamp("\n".join(lines))


__all__ = ["TrackerService", "render_member", "render_score"]
