from __future__ import annotations

from pathlib import Path
from textwrap import dedent

import pytest

from dirdiff.config import DEFAULT_CONFIG_FILENAME, ConfigError, load_config


def _write_config(tmp_path: Path, body: str) -> Path:
    config_path = tmp_path / DEFAULT_CONFIG_FILENAME
    config_path.write_text(dedent(body))
    return config_path


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path, "")

    config = load_config(config_path)

    assert config.config_path == config_path.resolve(strict=False)
    assert config.settings.root == tmp_path.resolve()
    assert config.settings.store_dir == tmp_path.resolve() / ".dirdiff"
    assert config.settings.include_hidden is False
    assert config.settings.scan_workers == 8
    assert config.retry.max_attempts == 5
    assert config.remotes == {}


def test_load_config_happy_path(tmp_path: Path, fake_home: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
        [settings]
        root = "~/photos"
        store_dir = "/var/tmp/photo-store"
        include_hidden = true
        exclude = ["*.tmp", "cache"]
        scan_workers = 2
        transfer_concurrency = 6

        [retry]
        max_attempts = 3
        initial_delay = 0.25

        [remotes.nas]
        path = "./nas-mirror"

        [remotes.offsite]
        host = "mirror.example.org"
        user = "me"
        port = 2222
        path = "/srv/photos"
        key_file = "~/.ssh/id_ed25519"
        """,
    )

    config = load_config(config_path)

    settings = config.settings
    assert settings.root == fake_home / "photos"
    assert settings.store_dir == Path("/var/tmp/photo-store")
    assert settings.exclude == ("*.tmp", "cache")
    assert settings.transfer_concurrency == 6
    scan_filter = settings.scan_filter()
    assert scan_filter.include_hidden is True
    assert scan_filter.reserved == (".dirdiff", "photo-store")

    policy = config.retry.policy()
    assert policy.max_attempts == 3
    assert policy.initial_delay == 0.25

    nas = config.remote("nas")
    assert not nas.is_ssh
    assert nas.path == str((tmp_path / "nas-mirror").resolve())

    offsite = config.remote("offsite")
    assert offsite.is_ssh
    assert offsite.port == 2222
    assert offsite.path == "/srv/photos"
    assert offsite.key_file == fake_home / ".ssh" / "id_ed25519"
    assert offsite.display == "me@mirror.example.org:/srv/photos"


def test_store_dir_is_relative_to_root(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
        [settings]
        root = "tree"
        store_dir = "history"
        """,
    )

    settings = load_config(config_path).settings

    assert settings.store_dir == (tmp_path / "tree" / "history").resolve()


def test_load_config_from_directory(tmp_path: Path) -> None:
    _write_config(tmp_path, "")

    config = load_config(tmp_path)

    assert config.config_path.name == DEFAULT_CONFIG_FILENAME


def test_unknown_remote_lists_configured_names(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path,
        """
        [remotes.backup]
        path = "/backup"
        """,
    )

    with pytest.raises(ConfigError, match=r"Unknown remote 'nope' \(configured: backup\)"):
        load_config(config_path).remote("nope")


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("[settings\n", "not valid TOML"),
        ("[settings]\nscan_workers = 0\n", "Invalid configuration"),
        ("[retry]\nmax_attempts = 'many'\n", "Invalid configuration"),
        ("[remotes.backup]\nhost = 'h'\n", "must define a 'path'"),
        ("[remotes.'bad/name']\npath = '/x'\n", "may only contain"),
    ],
)
def test_invalid_configurations(tmp_path: Path, body: str, message: str) -> None:
    config_path = _write_config(tmp_path, body)

    with pytest.raises(ConfigError, match=message):
        load_config(config_path)


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="does not exist"):
        load_config(tmp_path / "absent.toml")


def test_directory_without_config(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="Expected to find"):
        load_config(tmp_path)
