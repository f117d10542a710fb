"""
Per-user configuration for aicoder-env.

Supports a YAML configuration file with a JSON sibling as fallback. The
file carries the environment-check pause flag, the last-check timestamp
and reminder interval, plus timeouts and install overrides.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import yaml

from .common import vlog


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.path.expanduser("~/.config/aicoder-env/config.yml")

DEFAULT_NODE_VERSION = "22.14.0"
DEFAULT_CHECK_INTERVAL_DAYS = 7
MIN_CHECK_INTERVAL_DAYS = 2
MAX_CHECK_INTERVAL_DAYS = 30


def default_config_path() -> str:
    """Config file path from AICODER_ENV_CONFIG, else the per-user default."""
    return os.environ.get("AICODER_ENV_CONFIG") or DEFAULT_CONFIG_PATH


def _check_range(name: str, value: int, low: int, high: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value < low or value > high:
        raise ValueError(f"Invalid {name}: {value}. Must be between {low} and {high}")


@dataclass(frozen=True)
class Preferences:
    """
    Timeouts for external operations.

    Attributes:
        probe_timeout_seconds: Timeout for ``<tool> --version``
        registry_timeout_seconds: Timeout for ``npm view <pkg> version``
        install_timeout_seconds: Timeout for one ``npm install`` invocation
        download_timeout_seconds: Socket timeout for the runtime download
        runtime_wait_timeout_seconds: How long a caller waits for a runtime
            install started by another thread
    """
    probe_timeout_seconds: int = 10
    registry_timeout_seconds: int = 30
    install_timeout_seconds: int = 600
    download_timeout_seconds: int = 300
    runtime_wait_timeout_seconds: int = 600

    def __post_init__(self):
        """Validate preferences after initialization."""
        _check_range("probe_timeout_seconds", self.probe_timeout_seconds, 1, 120)
        _check_range("registry_timeout_seconds", self.registry_timeout_seconds, 1, 300)
        _check_range("install_timeout_seconds", self.install_timeout_seconds, 30, 3600)
        _check_range("download_timeout_seconds", self.download_timeout_seconds, 10, 3600)
        _check_range("runtime_wait_timeout_seconds", self.runtime_wait_timeout_seconds, 1, 7200)

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Preferences:
        """Create Preferences from dictionary."""
        return Preferences(
            probe_timeout_seconds=data.get("probe_timeout_seconds", 10),
            registry_timeout_seconds=data.get("registry_timeout_seconds", 30),
            install_timeout_seconds=data.get("install_timeout_seconds", 600),
            download_timeout_seconds=data.get("download_timeout_seconds", 300),
            runtime_wait_timeout_seconds=data.get("runtime_wait_timeout_seconds", 600),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "probe_timeout_seconds": self.probe_timeout_seconds,
            "registry_timeout_seconds": self.registry_timeout_seconds,
            "install_timeout_seconds": self.install_timeout_seconds,
            "download_timeout_seconds": self.download_timeout_seconds,
            "runtime_wait_timeout_seconds": self.runtime_wait_timeout_seconds,
        }


@dataclass(frozen=True)
class Config:
    """
    Complete configuration for the provisioning engine.

    Attributes:
        pause_env_check: Skip automatic environment checks unless forced
        last_env_check_time: RFC 3339 timestamp of the last completed check
        env_check_interval_days: Days between "check again" reminders while paused
        language: UI language; empty means detect from the locale
        install_home: Data directory override; empty means the default
        node_version: Runtime version to provision when none is found
        preferences: Timeouts
        source: Path to the configuration file that was loaded
    """
    pause_env_check: bool = False
    last_env_check_time: str = ""
    env_check_interval_days: int = DEFAULT_CHECK_INTERVAL_DAYS
    language: str = ""
    install_home: str = ""
    node_version: str = DEFAULT_NODE_VERSION
    preferences: Preferences = field(default_factory=Preferences)
    source: str = ""

    def __post_init__(self):
        """Validate config after initialization."""
        _check_range(
            "env_check_interval_days",
            self.env_check_interval_days,
            MIN_CHECK_INTERVAL_DAYS,
            MAX_CHECK_INTERVAL_DAYS,
        )
        if not self.node_version or not self.node_version.lstrip("v")[:1].isdigit():
            raise ValueError(f"Invalid node_version: {self.node_version!r}")

    @staticmethod
    def from_dict(data: dict[str, Any], source: str = "") -> Config:
        """
        Create Config from dictionary.

        An out-of-range check interval falls back to the default rather than
        failing the whole file.
        """
        interval = data.get("env_check_interval_days", DEFAULT_CHECK_INTERVAL_DAYS)
        if (
            not isinstance(interval, int)
            or isinstance(interval, bool)
            or not MIN_CHECK_INTERVAL_DAYS <= interval <= MAX_CHECK_INTERVAL_DAYS
        ):
            logger.warning("Ignoring invalid env_check_interval_days: %r", interval)
            interval = DEFAULT_CHECK_INTERVAL_DAYS

        return Config(
            pause_env_check=bool(data.get("pause_env_check", False)),
            last_env_check_time=str(data.get("last_env_check_time") or ""),
            env_check_interval_days=interval,
            language=str(data.get("language") or ""),
            install_home=str(data.get("install_home") or ""),
            node_version=str(data.get("node_version") or DEFAULT_NODE_VERSION),
            preferences=Preferences.from_dict(data.get("preferences") or {}),
            source=source,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serializable form (``source`` is not persisted)."""
        return {
            "pause_env_check": self.pause_env_check,
            "last_env_check_time": self.last_env_check_time,
            "env_check_interval_days": self.env_check_interval_days,
            "language": self.language,
            "install_home": self.install_home,
            "node_version": self.node_version,
            "preferences": self.preferences.to_dict(),
        }

    def with_check_interval(self, days: int) -> Config:
        """
        Copy with a new reminder interval.

        Raises:
            ValueError: If ``days`` is outside 2..30
        """
        return replace(self, env_check_interval_days=days)

    def last_check(self) -> datetime | None:
        """Parsed ``last_env_check_time``, or None when unset or malformed."""
        if not self.last_env_check_time:
            return None
        try:
            value = datetime.fromisoformat(self.last_env_check_time.replace("Z", "+00:00"))
        except ValueError:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


_Parser = Callable[[Any], Any]


def _read_mapping(
    file_path: str,
    parse: _Parser,
    errors: tuple[type[Exception], ...],
) -> dict[str, Any] | None:
    """
    Parse one config file into a mapping.

    Returns:
        The mapping ({} for an empty document), or None when the file is
        unreadable or does not parse
    """
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = parse(f)
    except (OSError, *errors):
        return None
    return data if isinstance(data, dict) else {}


def _candidate_files(file_path: str) -> list[tuple[str, _Parser, tuple[type[Exception], ...]]]:
    """The YAML file itself, then its ``.json`` sibling."""
    candidates = [(file_path, yaml.safe_load, (yaml.YAMLError,))]
    stem, ext = os.path.splitext(file_path)
    if ext in (".yml", ".yaml"):
        candidates.append((stem + ".json", json.load, (json.JSONDecodeError,)))
    return candidates


def load_config_file(file_path: str, verbose: bool = False) -> Config | None:
    """
    Load configuration from ``file_path`` or the JSON file next to it.

    Args:
        file_path: Path to the YAML configuration file
        verbose: Enable verbose logging

    Returns:
        Config (with ``source`` set to the file actually read), or None if
        neither file is usable
    """
    for path, parse, errors in _candidate_files(file_path):
        if not os.path.exists(path):
            continue
        data = _read_mapping(path, parse, errors)
        if data is None:
            logger.warning("Ignoring unreadable config file: %s", path)
            continue
        try:
            config = Config.from_dict(data, source=path)
        except (ValueError, TypeError) as e:
            logger.warning("Ignoring invalid config file %s: %s", path, e)
            return None
        vlog(f"Loaded config from {path}", verbose)
        return config

    return None


class ConfigStore:
    """
    File-backed configuration store.

    Reads return defaults when the file is missing or invalid; writes go to
    a temporary file in the same directory that then replaces the target.
    """

    def __init__(self, path: str | Path | None = None, verbose: bool = False):
        self.path = Path(path) if path else Path(default_config_path())
        self.verbose = verbose

    def load(self) -> Config:
        """Load the stored config, or defaults (with an empty ``source``)."""
        config = load_config_file(str(self.path), self.verbose)
        if config is None:
            vlog("No usable config file, using defaults", self.verbose)
            return Config()
        return config

    def rejected_file(self, config: Config) -> str | None:
        """
        Existing config file that ``config`` was not read from.

        ``load()`` falls back to defaults (or to the JSON sibling) when the
        YAML file is unreadable or invalid. Saving that result would replace
        the user's settings, so callers check this first.

        Returns:
            Path of the file that would be clobbered, or None
        """
        for path, _, _ in _candidate_files(str(self.path)):
            if path == config.source:
                return None
            if os.path.exists(path):
                return path
        return None

    def save(self, config: Config) -> None:
        """
        Persist ``config`` atomically as YAML.

        Raises:
            OSError: If the directory cannot be created or written
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise
        vlog(f"Saved config to {self.path}", self.verbose)

    def mark_checked(self, now: datetime | None = None) -> Config:
        """
        Record ``now`` as the last completed environment check.

        An existing config file that failed to load is never rewritten.
        """
        now = now or datetime.now(timezone.utc)
        config = replace(
            self.load(),
            last_env_check_time=now.astimezone(timezone.utc).isoformat(timespec="seconds"),
        )
        rejected = self.rejected_file(config)
        if rejected:
            logger.warning("Not recording check time: %s could not be loaded and is left untouched", rejected)
            return config
        self.save(config)
        return config

    def should_remind_check(self, now: datetime | None = None) -> bool:
        """
        Whether to nudge the user to run a check.

        True only when checks are paused, a check has run before, and at
        least the configured interval has elapsed since then.
        """
        config = self.load()
        if not config.pause_env_check:
            return False
        last = config.last_check()
        if last is None:
            return False
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now - last >= timedelta(days=config.env_check_interval_days)
