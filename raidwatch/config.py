import os
from dataclasses import dataclass, field
from typing import Any, List

import yaml

from .guilds import TrackedGuild

CONFIG_ENV_KEY = "CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yml"
CLIENT_ID_ENV_KEY = "WCL_CLIENT_ID"
CLIENT_SECRET_ENV_KEY = "WCL_CLIENT_SECRET"

WCL_GUILD_ID_MAX = 9007199254740991
WIPE_CUTOFF_MIN = 1
WIPE_CUTOFF_MAX = 50


@dataclass
class WatcherConfig:
    wcl_client_id: str
    wcl_client_secret: str
    log_level: str
    guilds: List[TrackedGuild] = field(default_factory=list)


def _parse_int(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise ValueError(f"Config '{name}' must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Config '{name}' must be an integer, got {value!r}") from None


def _parse_guild(entry: Any, index: int) -> TrackedGuild:
    if not isinstance(entry, dict):
        raise ValueError(f"Config guilds[{index}] must be a mapping")

    guild_id = str(entry.get("guild_id") or "").strip()
    if not guild_id:
        raise ValueError(f"Config guilds[{index}] missing 'guild_id'")

    wcl_guild_id = _parse_int(entry.get("wcl_guild_id"), f"guilds[{index}].wcl_guild_id")
    if not 1 <= wcl_guild_id <= WCL_GUILD_ID_MAX:
        raise ValueError(
            f"Config guilds[{index}].wcl_guild_id must be between 1 and {WCL_GUILD_ID_MAX}"
        )

    wipe_cutoff = _parse_int(entry.get("wipe_cutoff"), f"guilds[{index}].wipe_cutoff")
    if not WIPE_CUTOFF_MIN <= wipe_cutoff <= WIPE_CUTOFF_MAX:
        raise ValueError(
            f"Config guilds[{index}].wipe_cutoff must be between "
            f"{WIPE_CUTOFF_MIN} and {WIPE_CUTOFF_MAX}"
        )

    channel_id = entry.get("channel_id")
    return TrackedGuild(
        guild_id=guild_id,
        wcl_guild_id=wcl_guild_id,
        wipe_cutoff=wipe_cutoff,
        channel_id=str(channel_id) if channel_id else None,
    )


def load_config(path: str | None = None) -> WatcherConfig:
    config_path = path or os.environ.get(CONFIG_ENV_KEY, DEFAULT_CONFIG_PATH)
    with open(config_path, "r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh) or {}

    client_id = str(
        data.get("wcl_client_id") or os.environ.get(CLIENT_ID_ENV_KEY, "")
    ).strip()
    if not client_id:
        raise ValueError("Config missing 'wcl_client_id'")
    client_secret = str(
        data.get("wcl_client_secret") or os.environ.get(CLIENT_SECRET_ENV_KEY, "")
    ).strip()
    if not client_secret:
        raise ValueError("Config missing 'wcl_client_secret'")

    log_level = str(data.get("log_level") or "INFO").upper()
    valid_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
    if log_level not in valid_levels:
        raise ValueError(
            f"Invalid log_level '{log_level}'. Must be one of {sorted(valid_levels)}"
        )

    raw_guilds = data.get("guilds") or []
    if not isinstance(raw_guilds, list):
        raise ValueError("Config 'guilds' must be a list")
    guilds = [_parse_guild(entry, index) for index, entry in enumerate(raw_guilds)]
    seen = set()
    for guild in guilds:
        if guild.guild_id in seen:
            raise ValueError(f"Duplicate guild_id '{guild.guild_id}' in config")
        seen.add(guild.guild_id)

    return WatcherConfig(
        wcl_client_id=client_id,
        wcl_client_secret=client_secret,
        log_level=log_level,
        guilds=guilds,
    )
