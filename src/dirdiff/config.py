"""TOML configuration loading for dirdiff."""

from __future__ import annotations

import os
import re
import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import DirdiffError
from .retry import RetryPolicy
from .scanner import DEFAULT_WORKERS, STORE_DIRNAME, ScanFilter

DEFAULT_CONFIG_FILENAME = "dirdiff.toml"

_REMOTE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_SETTING_KEYS = ("include_hidden", "exclude", "scan_workers", "transfer_concurrency")


class ConfigError(DirdiffError):
    """Raised when a configuration file cannot be parsed or validated."""


def _expand_path(raw: str | os.PathLike[str] | Path, *, base_dir: Path) -> Path:
    """Return an absolute ``Path`` by expanding env vars and user segments."""

    text = str(raw)
    expanded = Path(os.path.expandvars(text)).expanduser()
    if expanded.is_absolute():
        return expanded.resolve(strict=False)
    return (base_dir / expanded).resolve(strict=False)


class Settings(BaseModel):
    """Global configuration options."""

    model_config = ConfigDict(frozen=True)

    root: Path
    store_dir: Path
    include_hidden: bool = False
    exclude: tuple[str, ...] = ()
    scan_workers: int = Field(default=DEFAULT_WORKERS, ge=1)
    transfer_concurrency: int = Field(default=4, ge=1)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, base_dir: Path) -> "Settings":
        root = _expand_path(raw.get("root", "."), base_dir=base_dir)
        store_raw = raw.get("store_dir", STORE_DIRNAME)
        store_dir = _expand_path(store_raw, base_dir=root)
        options = {key: raw[key] for key in _SETTING_KEYS if key in raw}
        return cls(root=root, store_dir=store_dir, **options)

    def scan_filter(self) -> ScanFilter:
        reserved = tuple(dict.fromkeys((STORE_DIRNAME, self.store_dir.name)))
        return ScanFilter(include_hidden=self.include_hidden, exclude=self.exclude, reserved=reserved)


class RetrySettings(BaseModel):
    """Backoff applied to each transport operation."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1)
    initial_delay: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=8.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
        )


class RemoteConfig(BaseModel):
    """A sync destination: an SSH host when ``host`` is set, otherwise a local directory."""

    model_config = ConfigDict(frozen=True)

    name: str
    path: str
    host: str | None = None
    user: str | None = None
    port: int = 22
    key_file: Path | None = None

    @property
    def is_ssh(self) -> bool:
        return self.host is not None

    @property
    def display(self) -> str:
        if self.host is None:
            return self.path
        user = f"{self.user}@" if self.user else ""
        return f"{user}{self.host}:{self.path}"

    @classmethod
    def from_raw(cls, name: str, raw: Mapping[str, Any], *, base_dir: Path) -> "RemoteConfig":
        if not _REMOTE_NAME.match(name):
            raise ConfigError(f"Remote name '{name}' may only contain letters, digits, '.', '_' and '-'")
        path_raw = raw.get("path")
        if not path_raw:
            raise ConfigError(f"Remote '{name}' must define a 'path'")

        host = raw.get("host")
        # Remote paths are interpreted by the remote shell; only local ones are expanded here.
        path = str(path_raw) if host else str(_expand_path(path_raw, base_dir=base_dir))
        key_raw = raw.get("key_file")
        key_file = _expand_path(key_raw, base_dir=base_dir) if key_raw else None
        return cls(
            name=name,
            path=path,
            host=host,
            user=raw.get("user"),
            port=raw.get("port", 22),
            key_file=key_file,
        )


class Config(BaseModel):
    """Fully parsed configuration file."""

    model_config = ConfigDict(frozen=True)

    config_path: Path
    settings: Settings
    retry: RetrySettings
    remotes: Dict[str, RemoteConfig]

    def remote(self, name: str) -> RemoteConfig:
        try:
            return self.remotes[name]
        except KeyError as exc:
            known = ", ".join(sorted(self.remotes)) or "none"
            raise ConfigError(f"Unknown remote '{name}' (configured: {known})") from exc


def load_config(path: Path | None = None) -> Config:
    """Load and validate a configuration file.

    Args:
        path: Optional path to the TOML file or its directory. Defaults to
            ``dirdiff.toml`` in the current working directory.
    """

    config_path = _resolve_config_path(path)
    base_dir = config_path.parent

    try:
        with config_path.open("rb") as handle:
            data = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Configuration file '{config_path}' is not valid TOML: {exc}") from exc

    try:
        settings = Settings.from_raw(data.get("settings", {}), base_dir=base_dir)
        retry = RetrySettings(**data.get("retry", {}))
        remotes = {
            name: RemoteConfig.from_raw(name, body, base_dir=base_dir)
            for name, body in (data.get("remotes") or {}).items()
        }
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in '{config_path}': {exc}") from exc

    return Config(config_path=config_path, settings=settings, retry=retry, remotes=remotes)


def _resolve_config_path(path: Path | None) -> Path:
    if path is None:
        path = Path.cwd() / DEFAULT_CONFIG_FILENAME
    else:
        path = Path(path)

    if not path.exists():
        raise ConfigError(f"Configuration file '{path}' does not exist")
    if path.is_dir():
        candidate = path / DEFAULT_CONFIG_FILENAME
        if not candidate.exists():
            raise ConfigError(f"Expected to find '{DEFAULT_CONFIG_FILENAME}' inside '{path}', but none was located")
        path = candidate

    return path.resolve(strict=False)
