"""Shared shape of the tracker's scheduler loops.

Each scheduler drains an inbox of commands while an APScheduler
``AsyncIOScheduler`` fires its interval jobs on the same event loop. Slow work
(remote polling) runs in spawned round tasks so the notify job keeps draining
the event cache while a round is in flight.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .telemetry import TelemetryCollector

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
TickHandler = Callable[[], Awaitable[None]]

DEFAULT_SHUTDOWN_TIMEOUT = 5.0
DEFAULT_INBOX_SIZE = 4


class Notifier(Protocol):
    """Delivers a plain-text message to a chat."""

    async def send(self, chat_id: int, text: str) -> None:
        ...


async def notify_chats(
    notifier: Notifier,
    chats: Iterable[int],
    text: str,
    *,
    telemetry: Optional[TelemetryCollector] = None,
    channel: str = "chat",
) -> int:
    """Send ``text`` to every chat; failures are logged and skipped."""

    delivered = 0
    for chat_id in chats:
        try:
            await notifier.send(chat_id, text)
        except Exception:
            logger.exception("Send message to chat %s failed", chat_id)
            if telemetry is not None:
                telemetry.track_notification(channel, delivered=False)
            continue
        delivered += 1
        if telemetry is not None:
            telemetry.track_notification(channel, delivered=True)
    return delivered


@dataclass
class RefreshCache:
    invalidate: bool = False


@dataclass
class Exit:
    pass


class TimerLoop:
    """Inbox plus APScheduler interval jobs, with tracked round tasks."""

    name = "scheduler"

    def __init__(
        self,
        *,
        clock: Clock = time.time,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        inbox_size: int = DEFAULT_INBOX_SIZE,
    ) -> None:
        self._clock = clock
        self._shutdown_timeout = shutdown_timeout
        self.inbox: "asyncio.Queue[Any]" = asyncio.Queue(maxsize=inbox_size)
        self.scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                # Late ticks still run once; coalesce folds the backlog.
                "misfire_grace_time": None,
            },
        )
        # Interval jobs share the event cache, so ticks never interleave.
        self._ticks = asyncio.Lock()
        self._rounds: List[asyncio.Task] = []
        self._task: Optional[asyncio.Task] = None

    # Wiring ----------------------------------------------------------------
    def add_interval_job(self, name: str, period: float, handler: TickHandler, *, immediate: bool = True) -> str:
        """Register ``handler`` as an interval job; returns the job id."""

        options: Dict[str, Any] = {}
        if immediate:
            options["next_run_time"] = datetime.now(timezone.utc)
        job = self.scheduler.add_job(
            self._fire,
            "interval",
            seconds=float(period),
            args=(name, handler),
            id=name,
            name=f"{self.name}-{name}",
            replace_existing=True,
            **options,
        )
        return job.id

    def now(self) -> int:
        """Wall-clock seconds used for domain timestamps."""

        return int(self._clock())

    def trigger(self, job_id: str) -> None:
        """Run the job as soon as possible, then resume its interval."""

        self.scheduler.modify_job(job_id, next_run_time=datetime.now(timezone.utc))

    async def send(self, command: Any) -> None:
        await self.inbox.put(command)

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name=self.name)
        return self._task

    async def join(self) -> None:
        if self._task is not None:
            await self._task

    # Rounds ----------------------------------------------------------------
    def spawn_round(self, coro: Awaitable[None], label: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        task.add_done_callback(lambda done: self._handle_round_exception(label, done))
        self._rounds.append(task)
        return task

    @staticmethod
    def _handle_round_exception(label: str, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.debug("%s round cancelled", label)
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s round failed: %r", label, exc, exc_info=exc)

    def collect_finished(self) -> int:
        before = len(self._rounds)
        self._rounds = [task for task in self._rounds if not task.done()]
        removed = before - len(self._rounds)
        logger.debug("[GC] %s cleared %d of %d rounds", self.name, removed, before)
        return removed

    async def _wait_rounds(self) -> None:
        pending = [task for task in self._rounds if not task.done()]
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=self._shutdown_timeout)
        if still_running:
            logger.error(
                "%s: %d rounds still running after %.1fs, giving up",
                self.name,
                len(still_running),
                self._shutdown_timeout,
            )

    # Loop ------------------------------------------------------------------
    async def handle_command(self, command: Any) -> bool:
        """Apply an inbox command; return False to leave the loop."""

        raise NotImplementedError

    async def _fire(self, name: str, handler: TickHandler) -> None:
        async with self._ticks:
            try:
                await handler()
            except Exception:
                logger.exception("%s %s tick failed", self.name, name)

    async def run(self) -> None:
        self.scheduler.start()
        logger.info("%s started with jobs %s", self.name, [job.id for job in self.scheduler.get_jobs()])
        running = True
        while running:
            running = await self.handle_command(await self.inbox.get())

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        # AsyncIOScheduler applies the shutdown on the next loop iteration.
        await asyncio.sleep(0)
        # Let an in-flight tick finish before the rounds are awaited.
        async with self._ticks:
            pass
        await self._wait_rounds()
        logger.info("%s stopped", self.name)


__all__ = [
    "Clock",
    "Exit",
    "Notifier",
    "RefreshCache",
    "TimerLoop",
    "notify_chats",
]
