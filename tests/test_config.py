import textwrap

import pytest

from raidwatch.config import load_config
from raidwatch.guilds import TrackedGuild


def write_config(tmp_path, body):
    path = tmp_path / "config.yml"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return str(path)


def test_load_config_reads_guilds(tmp_path):
    path = write_config(
        tmp_path,
        """
        log_level: debug
        wcl_client_id: abc
        wcl_client_secret: shh
        guilds:
          - guild_id: 123456789
            wcl_guild_id: 700000
            wipe_cutoff: 4
            channel_id: 987
          - guild_id: "42"
            wcl_guild_id: "15"
            wipe_cutoff: 50
        """,
    )

    config = load_config(path)

    assert config.log_level == "DEBUG"
    assert config.wcl_client_id == "abc"
    assert config.guilds == [
        TrackedGuild("123456789", 700000, 4, "987"),
        TrackedGuild("42", 15, 50, None),
    ]


def test_credentials_fall_back_to_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("WCL_CLIENT_ID", "env-id")
    monkeypatch.setenv("WCL_CLIENT_SECRET", "env-secret")
    path = write_config(tmp_path, "log_level: INFO\n")

    config = load_config(path)

    assert config.wcl_client_id == "env-id"
    assert config.wcl_client_secret == "env-secret"
    assert config.guilds == []


def test_config_path_from_environment(tmp_path, monkeypatch):
    path = write_config(tmp_path, "wcl_client_id: a\nwcl_client_secret: b\n")
    monkeypatch.setenv("CONFIG_PATH", path)

    assert load_config().wcl_client_secret == "b"


def test_missing_credentials_rejected(tmp_path, monkeypatch):
    monkeypatch.delenv("WCL_CLIENT_ID", raising=False)
    monkeypatch.delenv("WCL_CLIENT_SECRET", raising=False)
    path = write_config(tmp_path, "wcl_client_secret: b\n")

    with pytest.raises(ValueError, match="wcl_client_id"):
        load_config(path)


def test_invalid_log_level_rejected(tmp_path):
    path = write_config(
        tmp_path, "wcl_client_id: a\nwcl_client_secret: b\nlog_level: LOUD\n"
    )

    with pytest.raises(ValueError, match="Invalid log_level"):
        load_config(path)


@pytest.mark.parametrize(
    "guild, message",
    [
        ("{wcl_guild_id: 1, wipe_cutoff: 4}", "missing 'guild_id'"),
        ("{guild_id: g, wcl_guild_id: 0, wipe_cutoff: 4}", "wcl_guild_id must be between"),
        ("{guild_id: g, wcl_guild_id: 1, wipe_cutoff: 51}", "wipe_cutoff must be between"),
        ("{guild_id: g, wcl_guild_id: 1, wipe_cutoff: many}", "must be an integer"),
        ("just-a-string", "must be a mapping"),
    ],
)
def test_invalid_guild_entries_rejected(tmp_path, guild, message):
    path = write_config(
        tmp_path, f"wcl_client_id: a\nwcl_client_secret: b\nguilds:\n  - {guild}\n"
    )

    with pytest.raises(ValueError, match=message):
        load_config(path)


def test_duplicate_guild_rejected(tmp_path):
    path = write_config(
        tmp_path,
        """
        wcl_client_id: a
        wcl_client_secret: b
        guilds:
          - {guild_id: g, wcl_guild_id: 1, wipe_cutoff: 4}
          - {guild_id: g, wcl_guild_id: 2, wipe_cutoff: 4}
        """,
    )

    with pytest.raises(ValueError, match="Duplicate guild_id"):
        load_config(path)
