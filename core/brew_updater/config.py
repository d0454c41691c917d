"""Configuration management for brew-updater.

This module provides YAML-based loading and saving of the config and state
files, following the XDG Base Directory Specification. The state file and
the process lock live next to the config file.
"""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from .models import (
    DEFAULT_INTERVAL_MIN,
    DEFAULT_TICK_INTERVAL_SEC,
    MAX_INTERVAL_MIN,
    MIN_INTERVAL_MIN,
    Config,
    State,
    WatchItem,
)

logger = structlog.get_logger(__name__)

APP_NAME = "brew-updater"
CONFIG_FILE_NAME = "config.yaml"
STATE_FILE_NAME = "state.yaml"
LOCK_FILE_NAME = "lock"
CONFIG_PATH_ENV = "BREW_UPDATER_CONFIG"


class ConfigError(Exception):
    """Invalid or unreadable configuration."""


def get_config_dir() -> Path:
    """Get the configuration directory following XDG spec.

    Returns:
        Path to the configuration directory.
    """
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg_config_home) if xdg_config_home else Path.home() / ".config"
    return base / APP_NAME


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    return get_config_dir() / CONFIG_FILE_NAME


def resolve_config_path(path: Path | str | None = None) -> Path:
    """Resolve the config path from an explicit value, the environment or the default."""
    if path:
        return Path(path)
    from_env = os.environ.get(CONFIG_PATH_ENV)
    if from_env:
        return Path(from_env)
    return get_default_config_path()


def state_path_for(config_path: Path) -> Path:
    """Return the state file path that belongs to a config file."""
    return config_path.parent / STATE_FILE_NAME


def lock_path_for(config_path: Path) -> Path:
    """Return the lock file path that belongs to a config file."""
    return config_path.parent / LOCK_FILE_NAME


def validate_interval(minutes: int) -> int:
    """Validate a check interval.

    Raises:
        ConfigError: If the interval is outside 1-1440 minutes.
    """
    if minutes < MIN_INTERVAL_MIN or minutes > MAX_INTERVAL_MIN:
        raise ConfigError(f"interval must be {MIN_INTERVAL_MIN}-{MAX_INTERVAL_MIN} minutes, got {minutes}")
    return minutes


def normalize_config(config: Config, now: datetime | None = None) -> Config:
    """Apply defaults and deduplicate the watchlist.

    Duplicate entries (same watch key) collapse into the last one seen,
    keeping the earliest ``added_at``.

    Raises:
        ConfigError: If an item has an invalid interval.
    """
    now = now or datetime.now(tz=UTC)
    config.tick_interval_sec = DEFAULT_TICK_INTERVAL_SEC

    deduped: list[WatchItem] = []
    seen: dict[str, int] = {}
    for item in config.watchlist:
        if item.interval_min == 0:
            item.interval_min = DEFAULT_INTERVAL_MIN
        try:
            validate_interval(item.interval_min)
        except ConfigError as e:
            raise ConfigError(f"invalid interval for {item.name}: {e}") from e
        if item.added_at is None:
            item.added_at = now

        key = item.key
        if key in seen:
            previous = deduped[seen[key]]
            if previous.added_at is not None and previous.added_at < item.added_at:
                item.added_at = previous.added_at
            deduped[seen[key]] = item
            continue
        seen[key] = len(deduped)
        deduped.append(item)

    config.watchlist = deduped
    return config


class YamlConfigLoader:
    """YAML-based file loader.

    Loads and saves plain dictionaries from/to YAML files. JSON files are
    valid YAML and load as well.
    """

    def load(self, path: str) -> dict[str, Any]:
        """Load a dictionary from a YAML file.

        Args:
            path: Path to the file.

        Returns:
            Loaded dictionary, empty for an empty file.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            yaml.YAMLError: If the file is not valid YAML.
        """
        config_path = Path(path)

        if not config_path.exists():
            logger.debug("config_file_not_found", path=path)
            raise FileNotFoundError(f"Configuration file not found: {path}")

        data = yaml.safe_load(config_path.read_text())

        if data is None:
            return {}

        return data  # type: ignore[no-any-return]

    def save(self, data: dict[str, Any], path: str) -> None:
        """Save a dictionary to a YAML file.

        Args:
            data: Dictionary to save.
            path: Destination path.
        """
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        content = yaml.safe_dump(data, default_flow_style=False, sort_keys=False, indent=2)
        config_path.write_text(content)

        logger.debug("file_saved", path=path)


class ConfigManager:
    """Manages the config and state files of one installation.

    Provides high-level methods for loading, saving and initializing
    configuration and state.
    """

    def __init__(self, config_path: Path | str | None = None) -> None:
        """Initialize the configuration manager.

        Args:
            config_path: Optional path to configuration file.
                        Resolved from the environment or defaults if not provided.
        """
        self.config_path = resolve_config_path(config_path)
        self._loader = YamlConfigLoader()

    @property
    def state_path(self) -> Path:
        """Path to the state file."""
        return state_path_for(self.config_path)

    @property
    def lock_path(self) -> Path:
        """Path to the process lock file."""
        return lock_path_for(self.config_path)

    def exists(self) -> bool:
        """Check whether the config file exists."""
        return self.config_path.exists()

    def load_config(self, *, require: bool = False) -> Config:
        """Load configuration from file.

        Args:
            require: If True, a missing config file is an error.

        Returns:
            Normalized Config, or defaults if the file doesn't exist.

        Raises:
            ConfigError: If the file is missing (with require), malformed or invalid.
        """
        try:
            data = self._loader.load(str(self.config_path))
        except FileNotFoundError:
            if require:
                raise ConfigError(f"config not found, run '{APP_NAME} init'") from None
            logger.info("using_default_config")
            return Config()
        except yaml.YAMLError as e:
            raise ConfigError(f"malformed config {self.config_path}: {e}") from e

        try:
            config = Config.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"invalid config {self.config_path}: {e}") from e

        return normalize_config(config)

    def save_config(self, config: Config) -> None:
        """Save configuration to file."""
        self._loader.save(self._serialize(config), str(self.config_path))
        logger.info("config_saved", path=str(self.config_path))

    def load_state(self) -> State:
        """Load state from file.

        Returns:
            Loaded State, or an empty one if the file doesn't exist.

        Raises:
            ConfigError: If the file is malformed.
        """
        try:
            data = self._loader.load(str(self.state_path))
        except FileNotFoundError:
            return State()
        except yaml.YAMLError as e:
            raise ConfigError(f"malformed state {self.state_path}: {e}") from e

        try:
            return State.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"invalid state {self.state_path}: {e}") from e

    def save_state(self, state: State) -> None:
        """Save state to file."""
        self._loader.save(self._serialize(state), str(self.state_path))

    def init(self, force: bool = False) -> bool:
        """Write a default config and an empty state.

        Args:
            force: If True, overwrite an existing configuration.

        Returns:
            True if the files were created, False if the config already exists.
        """
        if self.exists() and not force:
            logger.info("config_exists", path=str(self.config_path))
            return False

        self.save_config(Config())
        self.save_state(State())
        logger.info("config_initialized", path=str(self.config_path))
        return True

    @staticmethod
    def _serialize(model: Config | State) -> dict[str, Any]:
        return model.model_dump(mode="json", by_alias=True, exclude_none=True)
