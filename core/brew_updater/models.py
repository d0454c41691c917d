"""Core data models for brew-updater.

This module defines Pydantic models for the persisted configuration and
state files, the options accepted by a check run and its result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

DEFAULT_TICK_INTERVAL_SEC = 60
DEFAULT_INTERVAL_MIN = 5
MIN_INTERVAL_MIN = 1
MAX_INTERVAL_MIN = 1440
MAX_ERRORS = 20


class PackageKind(str, Enum):
    """Homebrew package category."""

    FORMULA = "formula"
    CASK = "cask"


class UpdatePolicy(str, Enum):
    """What to do when a watched package is outdated."""

    AUTO = "auto"
    NOTIFY = "notify"


class NotifyMethod(str, Enum):
    """Desktop notification backend."""

    TERMINAL_NOTIFIER = "terminal-notifier"
    NOTIFY_SEND = "notify-send"
    NONE = "none"


def watch_key(name: str, kind: PackageKind | str | None) -> str:
    """Return the state key of a watched package.

    Examples:
        >>> watch_key("wget", PackageKind.FORMULA)
        'formula:wget'
        >>> watch_key("wget", None)
        'wget'
    """
    if not kind:
        return name
    value = kind.value if isinstance(kind, PackageKind) else kind
    return f"{value}:{name}"


class WatchItem(BaseModel):
    """A single watched package."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description="Homebrew package name")
    kind: PackageKind | None = Field(
        default=None, alias="type", description="Package kind, unset for legacy entries"
    )
    policy: UpdatePolicy | None = Field(
        default=None, description="Per-item policy, falls back to the default policy"
    )
    interval_min: int = Field(
        default=DEFAULT_INTERVAL_MIN, description="Check interval in minutes"
    )
    added_at: datetime | None = Field(default=None, description="When the item was added")

    @field_validator("kind", "policy", mode="before")
    @classmethod
    def _empty_as_none(cls, value: object) -> object:
        return value or None

    @field_validator("added_at")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @property
    def key(self) -> str:
        """Composite state key for this item."""
        return watch_key(self.name, self.kind)


class Config(BaseModel):
    """Persisted configuration of brew-updater."""

    version: int = Field(default=1, description="Config file format version")
    tick_interval_sec: int = Field(
        default=DEFAULT_TICK_INTERVAL_SEC, description="Scheduler tick, fixed to 60 seconds"
    )
    default_policy: UpdatePolicy = Field(default=UpdatePolicy.AUTO)
    notify_method: NotifyMethod = Field(default=NotifyMethod.TERMINAL_NOTIFIER)
    include_auto_update_cask: bool = Field(
        default=True,
        description="Also upgrade casks that update themselves (brew --greedy)",
    )
    watchlist: list[WatchItem] = Field(default_factory=list)

    @field_validator("default_policy", "notify_method", mode="before")
    @classmethod
    def _empty_as_default(cls, value: object, info: ValidationInfo) -> object:
        if value:
            return value
        if info.field_name == "notify_method":
            return NotifyMethod.TERMINAL_NOTIFIER
        return UpdatePolicy.AUTO

    def effective_policy(self, item: WatchItem) -> UpdatePolicy:
        """Return the item's policy, or the default policy if it has none."""
        return item.policy or self.default_policy


class State(BaseModel):
    """Persisted memory carried between check runs."""

    last_check_at: datetime | None = None
    last_update_at: datetime | None = None
    last_versions: dict[str, str] = Field(default_factory=dict)
    last_schemes: dict[str, int] = Field(default_factory=dict)
    etag_cache: dict[str, str] = Field(default_factory=dict)
    last_errors: list[str] = Field(default_factory=list)
    next_check_at: dict[str, str] = Field(default_factory=dict)

    @field_validator(
        "last_versions", "last_schemes", "etag_cache", "next_check_at", mode="before"
    )
    @classmethod
    def _null_map(cls, value: object) -> object:
        if value is None:
            return {}
        if isinstance(value, dict):
            # YAML turns unquoted timestamps into datetimes
            return {
                k: v.isoformat() if isinstance(v, datetime) else v for k, v in value.items()
            }
        return value

    @field_validator("last_errors", mode="before")
    @classmethod
    def _null_list(cls, value: object) -> object:
        return [] if value is None else value

    def append_error(self, message: str) -> None:
        """Append to the error ring, keeping only the most recent entries."""
        self.last_errors.append(message)
        if len(self.last_errors) > MAX_ERRORS:
            self.last_errors = self.last_errors[-MAX_ERRORS:]

    def stamp_check(self, now: datetime | None = None) -> None:
        """Record the time of the last check."""
        self.last_check_at = now or datetime.now(tz=UTC)


class CheckOptions(BaseModel):
    """Options for a single check run."""

    model_config = ConfigDict(frozen=True)

    dry_run: bool = Field(default=False, description="Only report, never upgrade")
    force_update: bool = Field(default=False, description="Always run brew update first")
    notify_only: bool = Field(default=False, description="Notify instead of upgrading")
    verbose: bool = Field(default=False, description="Stream brew output")


@dataclass
class OutdatedItem:
    """A watched package found to be behind its latest version."""

    item: WatchItem
    installed: str
    latest: str


@dataclass
class CheckResult:
    """Outcome of a check run."""

    checked: int = 0
    checked_names: list[str] = field(default_factory=list)
    outdated: list[OutdatedItem] = field(default_factory=list)
    removed: list[WatchItem] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
