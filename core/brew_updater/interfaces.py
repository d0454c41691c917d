"""Core interfaces for brew-updater.

This module defines abstract base classes for the collaborators the
reconciliation engine drives: the package manager, the metadata fetcher,
the notifier, the interactive selection UI and the recurring-task installer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from .api import FetchOutcome
    from .models import PackageKind, UpdatePolicy, WatchItem


class PackageManager(ABC):
    """Abstract package manager used by the reconciliation engine."""

    @abstractmethod
    async def list_installed(self) -> tuple[dict[str, str], dict[str, str]]:
        """List installed packages.

        Returns:
            Tuple of (formulae, casks), each mapping name to installed version.
        """
        ...

    @abstractmethod
    async def refresh_index(self) -> None:
        """Refresh the package index (``brew update``)."""
        ...

    @abstractmethod
    async def upgrade(self, names: list[str], kind: PackageKind, *, greedy: bool = False) -> None:
        """Upgrade the given packages. No-op on an empty list."""
        ...

    @abstractmethod
    async def outdated(
        self, names: list[str], kind: PackageKind, *, greedy: bool = False
    ) -> list[str]:
        """Return the subset of names the package manager itself considers outdated."""
        ...


class MetadataFetcher(ABC):
    """Fetches the latest published version of one package."""

    @abstractmethod
    async def fetch_latest(self, item: WatchItem, etag: str = "") -> FetchOutcome:
        """Fetch latest version metadata for an item.

        Args:
            item: The watched package.
            etag: Freshness token from a previous fetch, empty if none.

        Returns:
            FetchOutcome. Errors are reported inside the outcome, not raised.
        """
        ...

    @abstractmethod
    def url_for(self, item: WatchItem) -> str:
        """Return the URL the item's metadata is fetched from."""
        ...


class Notifier(ABC):
    """Best-effort user notification."""

    @abstractmethod
    def notify(self, title: str, message: str, action: str = "") -> bool:
        """Deliver a notification.

        Returns:
            True if the notification was handed to the backend. Never raises.
        """
        ...


@dataclass
class Candidate:
    """An installed package offered by the selection UI."""

    name: str
    kind: PackageKind


@dataclass
class Selection:
    """A package picked in the selection UI with its settings."""

    name: str
    kind: PackageKind
    policy: UpdatePolicy | None
    interval_min: int


class SelectionUI(ABC):
    """Interactive watchlist picker."""

    @abstractmethod
    def present(
        self,
        candidates: list[Candidate],
        default_policy: UpdatePolicy,
        default_interval: int,
        preset: dict[str, Selection],
    ) -> tuple[list[Selection], bool]:
        """Let the user choose packages to watch.

        Args:
            candidates: Installable items to choose from.
            default_policy: Policy for newly selected items.
            default_interval: Interval for newly selected items.
            preset: Existing selections keyed by watch key.

        Returns:
            Tuple of (selections, cancelled). Must not touch the config.
        """
        ...


class RecurringTaskInstaller(ABC):
    """Registers the periodic ``check`` invocation with the OS."""

    @abstractmethod
    def install(self, binary_path: str, config_path: Path, *, start_now: bool = False) -> Path:
        """Install the recurring task and return the path of its definition."""
        ...

    @abstractmethod
    def uninstall(self) -> None:
        """Remove the recurring task."""
        ...

    @abstractmethod
    def status(self) -> bool:
        """Return True if the task is currently loaded."""
        ...
