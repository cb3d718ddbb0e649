from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

DEFAULT_TTL_SECONDS = 60 * 60
DEFAULT_EVICTION_INTERVAL = 60.0

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CachedReport:
    code: str
    end_time: int
    is_live: bool


class ReportCache:
    """Last observed state per report code, each entry expiring ``ttl``
    seconds after it was written. Reads never extend an entry."""

    def __init__(
        self,
        ttl: float = DEFAULT_TTL_SECONDS,
        eviction_interval: float = DEFAULT_EVICTION_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl
        self.eviction_interval = eviction_interval
        self._clock = clock
        self._entries: Dict[str, Tuple[CachedReport, float]] = {}
        self._eviction_task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, code: str) -> Optional[CachedReport]:
        entry = self._entries.get(code)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            return None
        return value

    def set(self, value: CachedReport):
        self._entries[value.code] = (value, self._clock() + self.ttl)

    def delete_expired(self) -> int:
        now = self._clock()
        expired = [
            code for code, (_, expires_at) in self._entries.items() if expires_at <= now
        ]
        for code in expired:
            del self._entries[code]
        return len(expired)

    def start(self):
        if self._eviction_task is None or self._eviction_task.done():
            self._eviction_task = asyncio.get_running_loop().create_task(
                self._eviction_loop()
            )

    async def stop(self):
        task = self._eviction_task
        self._eviction_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _eviction_loop(self):
        while True:
            await asyncio.sleep(self.eviction_interval)
            removed = self.delete_expired()
            if removed:
                LOGGER.debug("Evicted %s expired report entries", removed)
