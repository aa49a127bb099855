"""Configuration management for ca-switch."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from ca_switch.errors import ConfigError
from ca_switch.store import atomic_write

CONFIG_DIR = Path.home() / ".ca-switch"
CONFIG_VERSION = 1

ENV_HOME = "CA_SWITCH_HOME"
ENV_WEBDAV_URL = "CA_SWITCH_WEBDAV_URL"
ENV_WEBDAV_USERNAME = "CA_SWITCH_WEBDAV_USERNAME"
ENV_WEBDAV_PASSWORD = "CA_SWITCH_WEBDAV_PASSWORD"

DEFAULT_REMOTE_DIR = "ca-switch-backups"


@dataclass
class AppPaths:
    """Where ca-switch keeps its state, and where live configs are rendered."""

    root: Path
    home: Path

    @property
    def config_file(self) -> Path:
        return self.root / "config.json"

    @property
    def store_dir(self) -> Path:
        return self.root / "store"

    @property
    def backup_dir(self) -> Path:
        return self.root / "backups"


def default_paths(
    root: str | Path | None = None,
    home: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppPaths:
    environ = os.environ if environ is None else environ
    if root is None:
        root = environ.get(ENV_HOME) or CONFIG_DIR
    return AppPaths(
        root=Path(root).expanduser(),
        home=Path(home).expanduser() if home is not None else Path.home(),
    )


@dataclass
class RemoteConfig:
    """Where backups are synced to."""

    type: str
    # WebDAV-specific
    url: str | None = None
    username: str = ""
    password: str = ""
    remote_dir: str = DEFAULT_REMOTE_DIR
    timeout: float = 30.0
    # Local-directory-specific
    path: str | None = None

    def to_adapter_dict(self) -> dict[str, Any]:
        if self.type == "webdav":
            if not self.url:
                raise ConfigError("WebDAV remote has no URL. Run: ca-switch webdav setup")
            return {
                "type": "webdav",
                "url": self.url,
                "username": self.username,
                "password": self.password,
                "remote_dir": self.remote_dir,
                "timeout": self.timeout,
            }
        if self.type == "local":
            if not self.path:
                raise ConfigError("Local remote has no path.")
            return {"type": "local", "path": self.path}
        raise ConfigError(f"Unknown remote type: {self.type}")


@dataclass
class RetryConfig:
    """Backoff for remote calls made by the controller. Off by default."""

    attempts: int = 0
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delays(self) -> list[float]:
        return [min(self.base_delay * (2**i), self.max_delay) for i in range(self.attempts)]


@dataclass
class AppConfig:
    """Root configuration object."""

    version: int = CONFIG_VERSION
    remote: RemoteConfig | None = None
    retry: RetryConfig = field(default_factory=RetryConfig)


def _remote_from_dict(d: dict) -> RemoteConfig:
    try:
        return RemoteConfig(
            type=d["type"],
            url=d.get("url"),
            username=d.get("username", ""),
            password=d.get("password", ""),
            remote_dir=d.get("remote_dir", DEFAULT_REMOTE_DIR),
            timeout=float(d.get("timeout", 30.0)),
            path=d.get("path"),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigError(f"Invalid remote config: {e}") from e


def _retry_from_dict(d: dict) -> RetryConfig:
    try:
        retry = RetryConfig(
            attempts=int(d.get("attempts", 0)),
            base_delay=float(d.get("base_delay", 1.0)),
            max_delay=float(d.get("max_delay", 30.0)),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid retry config: {e}") from e
    if retry.attempts < 0 or retry.base_delay < 0 or retry.max_delay < 0:
        raise ConfigError("Retry settings must not be negative.")
    return retry


def apply_env_overrides(config: AppConfig, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Let credentials come from the environment instead of config.json."""
    environ = os.environ if environ is None else environ
    url = environ.get(ENV_WEBDAV_URL)
    if url:
        if config.remote is None or config.remote.type != "webdav":
            config.remote = RemoteConfig(type="webdav")
        config.remote.url = url
    if config.remote is not None and config.remote.type == "webdav":
        if environ.get(ENV_WEBDAV_USERNAME):
            config.remote.username = environ[ENV_WEBDAV_USERNAME]
        if environ.get(ENV_WEBDAV_PASSWORD):
            config.remote.password = environ[ENV_WEBDAV_PASSWORD]
    return config


def load_config(path: Path | None = None, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load config from disk. Returns default AppConfig if file doesn't exist."""
    path = path or (CONFIG_DIR / "config.json")
    config = AppConfig()

    if path.exists():
        try:
            data = json.loads(path.read_text())
        except ValueError as e:
            raise ConfigError(f"Config file {path} is not valid JSON: {e}") from e

        config = AppConfig(
            version=data.get("version", CONFIG_VERSION),
            remote=_remote_from_dict(data["remote"]) if data.get("remote") else None,
            retry=_retry_from_dict(data.get("retry", {})),
        )

    return apply_env_overrides(config, environ)


def save_config(config: AppConfig, path: Path | None = None) -> None:
    """Save config to disk, readable by the owner only."""
    path = path or (CONFIG_DIR / "config.json")

    data: dict[str, Any] = {"version": config.version}

    if config.remote:
        r = config.remote
        rd: dict[str, Any] = {"type": r.type}
        if r.type == "webdav":
            rd["url"] = r.url
            rd["username"] = r.username
            if r.password:
                rd["password"] = r.password
            if r.remote_dir != DEFAULT_REMOTE_DIR:
                rd["remote_dir"] = r.remote_dir
            if r.timeout != 30.0:
                rd["timeout"] = r.timeout
        elif r.path:
            rd["path"] = r.path
        data["remote"] = rd

    if config.retry.attempts:
        data["retry"] = {
            "attempts": config.retry.attempts,
            "base_delay": config.retry.base_delay,
            "max_delay": config.retry.max_delay,
        }

    atomic_write(path, (json.dumps(data, indent=2) + "\n").encode("utf-8"))
    os.chmod(path, 0o600)
