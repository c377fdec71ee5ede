"""Configuration for the throttle daemon.

Settings come from environment variables (optionally via a ``.env`` file)
with defaults matching the stock macOS iCloud and Spotlight daemons. The
command line may override any field before the daemon starts; after that the
configuration is immutable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

DEFAULT_USER_PROCESSES = ("fileproviderd", "cloudd", "bird", "itunescloudd")
DEFAULT_ROOT_PROCESSES = ("mds", "mds_stores")
DEFAULT_LOG_FILE = "/tmp/icloud-throttle.log"


class ConfigError(ValueError):
    """A setting is malformed or inconsistent."""


def _names(value: str) -> Tuple[str, ...]:
    return tuple(value.split())


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _number(environ: Mapping[str, str], key: str, kind):
    try:
        return kind(environ[key])
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {environ[key]!r}") from exc


@dataclass(frozen=True)
class ThrottleConfig:
    """Daemon configuration."""

    target_nice: int = 20
    interval: float = 30.0
    user_processes: Tuple[str, ...] = DEFAULT_USER_PROCESSES
    root_processes: Tuple[str, ...] = DEFAULT_ROOT_PROCESSES
    log_file: str = DEFAULT_LOG_FILE
    status_file: Optional[str] = None
    command_timeout: float = 5.0
    workers: int = 1
    evict_stale: bool = True
    # Not configurable from the environment; used by tests and the CLI.
    echo: bool = field(default=True, compare=False)

    def __post_init__(self) -> None:
        if self.interval <= 0:
            raise ConfigError(f"interval must be positive, got {self.interval}")
        if self.command_timeout <= 0:
            raise ConfigError(f"command_timeout must be positive, got {self.command_timeout}")
        if self.workers < 1:
            raise ConfigError(f"workers must be at least 1, got {self.workers}")
        overlap = set(self.user_processes) & set(self.root_processes)
        if overlap:
            raise ConfigError(f"process listed as both user and root: {', '.join(sorted(overlap))}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ThrottleConfig":
        """Build a config from ``THROTTLE_*`` environment variables."""
        if environ is None:
            load_dotenv()
            environ = os.environ

        kwargs = {}
        if "THROTTLE_NICE" in environ:
            kwargs["target_nice"] = _number(environ, "THROTTLE_NICE", int)
        if "THROTTLE_INTERVAL" in environ:
            kwargs["interval"] = _number(environ, "THROTTLE_INTERVAL", float)
        if "THROTTLE_USER_PROCESSES" in environ:
            kwargs["user_processes"] = _names(environ["THROTTLE_USER_PROCESSES"])
        if "THROTTLE_ROOT_PROCESSES" in environ:
            kwargs["root_processes"] = _names(environ["THROTTLE_ROOT_PROCESSES"])
        if environ.get("THROTTLE_LOG_FILE"):
            kwargs["log_file"] = environ["THROTTLE_LOG_FILE"]
        if environ.get("THROTTLE_STATUS_FILE"):
            kwargs["status_file"] = environ["THROTTLE_STATUS_FILE"]
        if "THROTTLE_COMMAND_TIMEOUT" in environ:
            kwargs["command_timeout"] = _number(environ, "THROTTLE_COMMAND_TIMEOUT", float)
        if "THROTTLE_WORKERS" in environ:
            kwargs["workers"] = _number(environ, "THROTTLE_WORKERS", int)
        if "THROTTLE_EVICT_STALE" in environ:
            kwargs["evict_stale"] = _flag(environ["THROTTLE_EVICT_STALE"])
        return cls(**kwargs)

    @property
    def watched_names(self) -> Tuple[str, ...]:
        return self.user_processes + self.root_processes
