from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrackedGuild:
    guild_id: str
    wcl_guild_id: int
    wipe_cutoff: int
    channel_id: Optional[str] = None


class ConfigStore(Protocol):
    def get(self, guild_id: str) -> Optional[TrackedGuild]: ...

    def put(self, guild: TrackedGuild) -> None: ...

    def delete(self, guild_id: str) -> None: ...


class WatcherLike(Protocol):
    def watch(self, guild: TrackedGuild) -> None: ...

    def unwatch(self, guild_id: str) -> None: ...


class MemoryGuildStore:
    """Keyed guild configuration held for the lifetime of the process."""

    def __init__(self):
        self._guilds: Dict[str, TrackedGuild] = {}

    def get(self, guild_id: str) -> Optional[TrackedGuild]:
        return self._guilds.get(guild_id)

    def put(self, guild: TrackedGuild) -> None:
        self._guilds[guild.guild_id] = guild

    def delete(self, guild_id: str) -> None:
        self._guilds.pop(guild_id, None)

    def all(self) -> list[TrackedGuild]:
        return list(self._guilds.values())


def configure_guild(store: ConfigStore, watcher: WatcherLike, guild: TrackedGuild):
    """Save ``guild`` and restart its watch so new parameters take effect."""
    store.put(guild)
    LOGGER.info("Stopping watcher for guild %s", guild.guild_id)
    watcher.unwatch(guild.guild_id)
    LOGGER.info(
        "Starting watcher for guild %s (wcl_guild_id=%s wipe_cutoff=%s)",
        guild.guild_id,
        guild.wcl_guild_id,
        guild.wipe_cutoff,
    )
    watcher.watch(guild)


def remove_guild(store: ConfigStore, watcher: WatcherLike, guild_id: str):
    LOGGER.info("Removing guild %s", guild_id)
    store.delete(guild_id)
    watcher.unwatch(guild_id)
