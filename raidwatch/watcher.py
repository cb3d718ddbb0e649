from __future__ import annotations

import asyncio
import inspect
import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Union

from .guilds import TrackedGuild
from .report_cache import CachedReport, ReportCache
from .stats import PlayerTop
from .warcraftlogs import Report, ReportDetails, WarcraftLogsError, ms_to_datetime

REPORT_URL = "https://www.warcraftlogs.com/reports/{code}"
REPORTS_LOOKBACK = timedelta(hours=12)
OUTDATED_AFTER_MS = 15 * 60 * 1000
START_JITTER_MS = 10_000
POLL_INTERVAL_SECONDS = 60.0
CYCLE_TIMEOUT_SECONDS = 60.0

RAID_DIFFICULTY = "Mythic"
RAID_SIZE = 20

LOGGER = logging.getLogger(__name__)


class ReportSource(Protocol):
    async def find_reports(self, guild_id: int, start_time: datetime) -> List[Report]: ...

    async def top_deaths_for_report(
        self, report_code: str, wipe_cutoff: int
    ) -> ReportDetails: ...


@dataclass
class StatsUpdate:
    guild: TrackedGuild
    report_id: str
    title: str
    zone: str
    url: str
    live: bool
    top_deaths: List[PlayerTop] = field(default_factory=list)
    top_first_deaths: List[PlayerTop] = field(default_factory=list)
    started_by: str = ""
    started_at: Optional[datetime] = None
    last_upload: Optional[datetime] = None

    @property
    def key(self) -> str:
        """Stable per guild, channel and report, so a sink can edit in place."""
        return f"{self.guild.guild_id}{self.guild.channel_id or ''}{self.report_id}"


UpdateHandler = Callable[[StatsUpdate], Union[None, Awaitable[None]]]


class Action(Enum):
    SKIP_STALE = "skip_stale"
    NEW_LIVE = "new_live"
    CHANGED = "changed"
    WENT_OFFLINE = "went_offline"
    UNCHANGED = "unchanged"

    @property
    def emits(self) -> bool:
        return self in (Action.NEW_LIVE, Action.CHANGED, Action.WENT_OFFLINE)

    def live(self, outdated: bool) -> bool:
        if self is Action.NEW_LIVE:
            return True
        if self is Action.CHANGED:
            return not outdated
        return False


ACTION_MESSAGES = {
    Action.NEW_LIVE: "new live report",
    Action.CHANGED: "report has changes",
    Action.WENT_OFFLINE: "report went offline",
}


def is_mythic_twenty(report: Report) -> bool:
    for difficulty in report.zone.difficulties:
        if difficulty.name == RAID_DIFFICULTY and tuple(difficulty.sizes) == (RAID_SIZE,):
            return True
    return False


def filter_raids(reports: Iterable[Report]) -> List[Report]:
    return [report for report in reports if is_mythic_twenty(report)]


def is_outdated(report: Report, now_ms: int) -> bool:
    return now_ms - report.end_time > OUTDATED_AFTER_MS


def classify(cached: Optional[CachedReport], report: Report, outdated: bool) -> Action:
    if cached is None:
        return Action.SKIP_STALE if outdated else Action.NEW_LIVE
    if cached.end_time != report.end_time:
        return Action.CHANGED
    if cached.is_live and outdated:
        return Action.WENT_OFFLINE
    return Action.UNCHANGED


def build_update(
    guild: TrackedGuild, report: Report, live: bool, details: ReportDetails
) -> StatsUpdate:
    return StatsUpdate(
        guild=guild,
        report_id=report.code,
        title=report.title,
        zone=report.zone.name,
        url=REPORT_URL.format(code=report.code),
        live=live,
        top_deaths=list(details.top_deaths),
        top_first_deaths=list(details.top_first_deaths),
        started_by=report.owner_name,
        started_at=ms_to_datetime(report.start_time),
        last_upload=ms_to_datetime(report.end_time),
    )


class Watcher:
    """Runs one polling task per tracked guild and reports changes to the
    registered update handler."""

    def __init__(self, client: ReportSource, clock: Callable[[], float] = time.time):
        self.client = client
        self.clock = clock
        self.start_jitter_ms = START_JITTER_MS
        self.poll_interval = POLL_INTERVAL_SECONDS
        self.cycle_timeout = CYCLE_TIMEOUT_SECONDS
        self._handler: Optional[UpdateHandler] = None
        self._watched: Dict[str, asyncio.Task[None]] = {}

    def on_update(self, handler: UpdateHandler):
        self._handler = handler

    def watched_guilds(self) -> List[str]:
        return list(self._watched)

    def is_watching(self, guild_id: str) -> bool:
        return guild_id in self._watched

    def watch(self, guild: TrackedGuild):
        if guild.guild_id in self._watched:
            return
        task = asyncio.get_running_loop().create_task(
            self._watch_loop(guild), name=f"watch-{guild.guild_id}"
        )
        self._watched[guild.guild_id] = task
        task.add_done_callback(lambda t, gid=guild.guild_id: self._forget(gid, t))

    def unwatch(self, guild_id: str):
        task = self._watched.pop(guild_id, None)
        if task is not None:
            task.cancel()

    def _forget(self, guild_id: str, task: asyncio.Task[None]):
        if self._watched.get(guild_id) is task:
            del self._watched[guild_id]

    async def close(self):
        tasks = list(self._watched.values())
        self._watched.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _watch_loop(self, guild: TrackedGuild):
        cache = ReportCache()
        cache.start()
        try:
            jitter = random.randint(0, self.start_jitter_ms)
            await asyncio.sleep(jitter / 1000)
            while True:
                await self.run_cycle(guild, cache)
                await asyncio.sleep(self.poll_interval)
        finally:
            await cache.stop()
            LOGGER.info("Watch loop stopped for guild %s", guild.guild_id)

    async def run_cycle(self, guild: TrackedGuild, cache: ReportCache):
        try:
            await asyncio.wait_for(
                self.check_changes(guild, cache), timeout=self.cycle_timeout
            )
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Poll cycle for guild %s timed out after %ss",
                guild.guild_id,
                self.cycle_timeout,
            )
        except Exception as exc:
            LOGGER.exception("Poll cycle failed for guild %s: %s", guild.guild_id, exc)

    async def check_changes(self, guild: TrackedGuild, cache: ReportCache):
        started = time.monotonic()
        now = self.clock()
        since = datetime.fromtimestamp(now, tz=timezone.utc) - REPORTS_LOOKBACK
        try:
            reports = await self.client.find_reports(guild.wcl_guild_id, since)
        except WarcraftLogsError as exc:
            LOGGER.error(
                "Error loading reports guild=%s wcl_guild=%s: %s",
                guild.guild_id,
                guild.wcl_guild_id,
                exc,
            )
            return

        reports = filter_raids(reports)
        LOGGER.info(
            "Loaded %s reports guild=%s in %.0fms",
            len(reports),
            guild.guild_id,
            (time.monotonic() - started) * 1000,
        )

        now_ms = int(now * 1000)
        for report in reports:
            outdated = is_outdated(report, now_ms)
            action = classify(cache.get(report.code), report, outdated)
            if not action.emits:
                if action is Action.SKIP_STALE:
                    LOGGER.info(
                        "Old report %s guild=%s, skipping", report.code, guild.guild_id
                    )
                else:
                    LOGGER.debug("Report %s has no changes, skipping", report.code)
                continue

            live = action.live(outdated)
            fetch_started = time.monotonic()
            try:
                details = await self.client.top_deaths_for_report(
                    report.code, guild.wipe_cutoff
                )
            except WarcraftLogsError as exc:
                LOGGER.error(
                    "Error fetching report details %s guild=%s: %s",
                    report.code,
                    guild.guild_id,
                    exc,
                )
                continue
            LOGGER.info(
                "Loaded report details %s in %.0fms",
                report.code,
                (time.monotonic() - fetch_started) * 1000,
            )
            LOGGER.info(
                "%s %s guild=%s, sending update",
                ACTION_MESSAGES[action].capitalize(),
                report.code,
                guild.guild_id,
            )
            if not await self._emit(build_update(guild, report, live, details)):
                continue
            cache.set(CachedReport(code=report.code, end_time=report.end_time, is_live=live))

    async def _emit(self, update: StatsUpdate) -> bool:
        handler = self._handler
        if handler is None:
            LOGGER.warning("No update handler registered, dropping update %s", update.key)
            return True
        try:
            result: Any = handler(update)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            LOGGER.exception("Update handler failed for %s: %s", update.key, exc)
            return False
        return True
