"""brew-updater core library.

Watches selected Homebrew formulae and casks, checks the formulae API for
newer versions on a per-package schedule and upgrades or notifies.

This package contains everything except the command line interface, which
lives in the brew_updater_cli package.

Module Overview:
    api: Formulae API client with ETag revalidation (aiohttp)
    brew: Async wrapper around the brew command
    config: YAML config and state files (XDG spec compliant)
    dispatcher: Fixed-size worker pool for concurrent fetches
    engine: The check-and-reconcile cycle
    interfaces: Abstract base classes for the engine's collaborators
    lock: File based process lock with staleness detection
    models: Pydantic models for config, state and check results
    notifications: Desktop notifications via terminal-notifier or notify-send
    schedule: launchd agent management
    selection: Interactive watchlist picker
    version: Version parsing and comparison utilities
"""

from importlib.metadata import version as get_package_version

from brew_updater.api import FetchError, FetchOutcome, FormulaeAPIClient, build_url, parse_latest
from brew_updater.brew import BrewError, BrewNotFoundError, HomebrewManager, find_brew
from brew_updater.config import (
    ConfigError,
    ConfigManager,
    YamlConfigLoader,
    get_config_dir,
    get_default_config_path,
    normalize_config,
    resolve_config_path,
    validate_interval,
)
from brew_updater.dispatcher import DEFAULT_WORKERS, fetch_all
from brew_updater.engine import ReconciliationEngine
from brew_updater.interfaces import (
    Candidate,
    MetadataFetcher,
    Notifier,
    PackageManager,
    RecurringTaskInstaller,
    Selection,
    SelectionUI,
)
from brew_updater.lock import LockHeldError, ProcessLock
from brew_updater.models import (
    CheckOptions,
    CheckResult,
    Config,
    NotifyMethod,
    OutdatedItem,
    PackageKind,
    State,
    UpdatePolicy,
    WatchItem,
    watch_key,
)
from brew_updater.notifications import NotificationConfig, NotificationManager
from brew_updater.schedule import LaunchdScheduler, ScheduleError
from brew_updater.selection import PromptSelectionUI
from brew_updater.version import compare_versions, is_outdated, normalize_version, parse_version

__version__ = get_package_version("brew-updater")

__all__ = [
    "DEFAULT_WORKERS",
    "BrewError",
    "BrewNotFoundError",
    "Candidate",
    "CheckOptions",
    "CheckResult",
    "Config",
    "ConfigError",
    "ConfigManager",
    "FetchError",
    "FetchOutcome",
    "FormulaeAPIClient",
    "HomebrewManager",
    "LaunchdScheduler",
    "LockHeldError",
    "MetadataFetcher",
    "NotificationConfig",
    "NotificationManager",
    "Notifier",
    "NotifyMethod",
    "OutdatedItem",
    "PackageKind",
    "PackageManager",
    "ProcessLock",
    "PromptSelectionUI",
    "ReconciliationEngine",
    "RecurringTaskInstaller",
    "ScheduleError",
    "Selection",
    "SelectionUI",
    "State",
    "UpdatePolicy",
    "WatchItem",
    "YamlConfigLoader",
    "__version__",
    "build_url",
    "compare_versions",
    "fetch_all",
    "find_brew",
    "get_config_dir",
    "get_default_config_path",
    "is_outdated",
    "normalize_config",
    "normalize_version",
    "parse_latest",
    "parse_version",
    "resolve_config_path",
    "validate_interval",
    "watch_key",
]
