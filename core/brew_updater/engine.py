"""Reconciliation engine for check runs.

One run of the engine:

1. Takes a snapshot of installed formulae and casks.
2. Migrates state entries filed under bare names to ``kind:name`` keys.
3. Drops watched packages that are no longer installed.
4. Garbage-collects state entries and cached ETags of packages no longer
   watched.
5. Selects the items whose next check time has arrived.
6. Fetches their latest versions concurrently.
7. Records the fetched versions, decides which items are outdated and
   schedules each item's next check.
8. Notifies about or upgrades outdated items according to policy.

Steps depend on the state mutations of earlier steps and always run in
this order. The engine works on copies of the config and state it is
given and returns the updated copies; persisting them is up to the caller.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from .brew import BrewError
from .dispatcher import DEFAULT_WORKERS, fetch_all
from .models import (
    DEFAULT_INTERVAL_MIN,
    CheckOptions,
    CheckResult,
    Config,
    OutdatedItem,
    PackageKind,
    State,
    UpdatePolicy,
    WatchItem,
    watch_key,
)
from .notifications import NotificationManager, notify_failure, notify_package
from .version import is_outdated

if TYPE_CHECKING:
    from .api import FetchOutcome
    from .interfaces import MetadataFetcher, Notifier, PackageManager

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def _drop_bare(mapping: dict, item: WatchItem) -> None:
    """Remove an item's pre-migration entry once its composite key is written."""
    if item.key != item.name:
        mapping.pop(item.name, None)


def _lookup(mapping: dict, item: WatchItem):  # noqa: ANN202
    """Look up an item by composite key, falling back to its bare name."""
    if item.key in mapping:
        return mapping[item.key]
    return mapping.get(item.name)


def migrate_state_keys(config: Config, state: State) -> None:
    """Copy bare-name state entries forward to composite keys.

    Watchlists written before package kinds were tracked filed state under
    the bare package name. Existing composite entries are never overwritten.
    Bare entries are removed once copied, unless an item without a kind
    still uses the bare name as its key.
    """
    migrated: set[str] = set()
    for item in config.watchlist:
        key = item.key
        if key == item.name:
            continue
        for mapping in (state.next_check_at, state.last_versions, state.last_schemes):
            if item.name in mapping and key not in mapping:
                mapping[key] = mapping[item.name]
        migrated.add(item.name)

    in_use = {item.key for item in config.watchlist}
    for name in migrated - in_use:
        for mapping in (state.next_check_at, state.last_versions, state.last_schemes):
            mapping.pop(name, None)


def installed_version(
    formulae: dict[str, str], casks: dict[str, str], item: WatchItem
) -> tuple[str, PackageKind] | None:
    """Find an item in the installed snapshot.

    Items with a kind are looked up in that kind only; items without one
    are tried as a formula first, then as a cask.

    Returns:
        (version, kind), or None if the package is not installed.
    """
    if item.kind == PackageKind.CASK:
        return (casks[item.name], PackageKind.CASK) if item.name in casks else None
    if item.kind == PackageKind.FORMULA:
        return (formulae[item.name], PackageKind.FORMULA) if item.name in formulae else None
    if item.name in formulae:
        return formulae[item.name], PackageKind.FORMULA
    if item.name in casks:
        return casks[item.name], PackageKind.CASK
    return None


def prune_missing(
    config: Config, state: State, formulae: dict[str, str], casks: dict[str, str]
) -> tuple[dict[str, str], list[WatchItem]]:
    """Remove watched packages that are no longer installed.

    Surviving items get their kind set from the snapshot.

    Returns:
        Tuple of (installed versions by watch key, removed items).
    """
    kept: list[WatchItem] = []
    removed: list[WatchItem] = []
    installed: dict[str, str] = {}

    for item in config.watchlist:
        found = installed_version(formulae, casks, item)
        if found is None:
            removed.append(item)
            for mapping in (state.next_check_at, state.last_versions, state.last_schemes):
                mapping.pop(item.key, None)
                mapping.pop(item.name, None)
            continue
        version, kind = found
        item.kind = kind
        installed[item.key] = version
        kept.append(item)

    config.watchlist = kept
    return installed, removed


def collect_orphans(config: Config, state: State) -> list[str]:
    """Delete per-item state whose key matches no watched item.

    Returns:
        The deleted keys.
    """
    watched: set[str] = set()
    for item in config.watchlist:
        watched.add(item.key)
        watched.add(item.name)

    dropped: list[str] = []
    for mapping in (state.next_check_at, state.last_versions, state.last_schemes):
        for key in [k for k in mapping if k not in watched]:
            del mapping[key]
            dropped.append(key)
    return dropped


def prune_etag_cache(state: State, live_urls: set[str]) -> list[str]:
    """Delete cached ETags for URLs no watched item is fetched from.

    Returns:
        The deleted URLs.
    """
    stale = [url for url in state.etag_cache if url not in live_urls]
    for url in stale:
        del state.etag_cache[url]
    return stale


def parse_timestamp(value: str) -> datetime | None:
    """Parse an ISO-8601 timestamp, None if it is not one."""
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def due_items(config: Config, state: State, now: datetime) -> list[WatchItem]:
    """Select items whose next check time has arrived.

    An item is due when it has no recorded next check, the recorded value
    does not parse, or ``now`` is not before it. Items with a zero interval
    are returned with the default interval.
    """
    due: list[WatchItem] = []
    for item in config.watchlist:
        if item.interval_min == 0:
            item = item.model_copy(update={"interval_min": DEFAULT_INTERVAL_MIN})
        next_check = _lookup(state.next_check_at, item)
        if not next_check:
            due.append(item)
            continue
        next_time = parse_timestamp(next_check)
        if next_time is None or now >= next_time:
            due.append(item)
    return due


def split_by_kind(outdated: list[OutdatedItem], config: Config) -> tuple[list[str], list[str]]:
    """Split auto-policy outdated items into sorted formula and cask names.

    Items whose effective policy is ``notify`` are never upgrade candidates.
    """
    formulae: list[str] = []
    casks: list[str] = []
    for entry in outdated:
        if config.effective_policy(entry.item) != UpdatePolicy.AUTO:
            continue
        if entry.item.kind == PackageKind.CASK:
            casks.append(entry.item.name)
        else:
            formulae.append(entry.item.name)
    return sorted(formulae), sorted(casks)


def filter_outdated(
    outdated: list[OutdatedItem], formulae: list[str], casks: list[str]
) -> list[OutdatedItem]:
    """Keep only the outdated items named in the verified name lists."""
    allowed = {watch_key(name, PackageKind.FORMULA) for name in formulae}
    allowed |= {watch_key(name, PackageKind.CASK) for name in casks}
    return [entry for entry in outdated if entry.item.key in allowed]


class ReconciliationEngine:
    """Runs the check-and-reconcile cycle against a package manager.

    The engine holds no state between runs. Config and State are passed in
    and the updated copies are returned.
    """

    def __init__(
        self,
        package_manager: PackageManager,
        fetcher: MetadataFetcher,
        notifier: Notifier | None = None,
        *,
        workers: int = DEFAULT_WORKERS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the engine.

        Args:
            package_manager: Lists, verifies and upgrades packages.
            fetcher: Fetches latest version metadata.
            notifier: Notification backend. Defaults to the config's notify method.
            workers: Size of the fetch worker pool.
            clock: Returns the current time; injectable for tests.
        """
        self.package_manager = package_manager
        self.fetcher = fetcher
        self.notifier = notifier
        self.workers = workers
        self._clock = clock
        self._log = logger.bind(component="reconciliation_engine")

    async def run(
        self, config: Config, state: State, options: CheckOptions | None = None
    ) -> tuple[CheckResult, Config, State]:
        """Run one check.

        Args:
            config: Current configuration. Not modified.
            state: Current state. Not modified.
            options: Run options.

        Returns:
            Tuple of (result, updated config, updated state).

        Raises:
            BrewError: If the installed snapshot cannot be taken.
            asyncio.CancelledError: If the run is cancelled. The returned
                copies are discarded, so nothing partial is persisted.
        """
        options = options or CheckOptions()
        config = config.model_copy(deep=True)
        state = state.model_copy(deep=True)
        notifier = self.notifier or NotificationManager.for_method(config.notify_method)
        result = CheckResult()
        now = self._clock()

        formulae, casks = await self.package_manager.list_installed()

        migrate_state_keys(config, state)
        installed, result.removed = prune_missing(config, state, formulae, casks)
        dropped = collect_orphans(config, state)
        live_urls = {self.fetcher.url_for(item) for item in config.watchlist}
        dropped_etags = prune_etag_cache(state, live_urls)
        if result.removed or dropped or dropped_etags:
            self._log.info(
                "watchlist_pruned",
                removed=[item.name for item in result.removed],
                orphan_keys=dropped,
                orphan_etags=dropped_etags,
            )

        due = due_items(config, state, now)
        result.checked = len(due)
        result.checked_names = sorted(item.name for item in due)
        if not due:
            self._log.debug("nothing_due")
            state.stamp_check(now)
            return result, config, state

        self._log.info("check_started", due=result.checked_names, options=options.model_dump())
        prev_schemes = dict(state.last_schemes)
        outcomes = await fetch_all(self.fetcher, due, state.etag_cache, self.workers)

        outdated = self._reconcile(outcomes, state, installed, prev_schemes, now, result)
        result.outdated = outdated

        await self._dispatch(config, state, options, outdated, result, notifier, now)

        self._log.info(
            "check_completed",
            checked=result.checked,
            outdated=[entry.item.name for entry in result.outdated],
            errors=len(result.errors),
        )
        return result, config, state

    def _reconcile(
        self,
        outcomes: list[FetchOutcome],
        state: State,
        installed: dict[str, str],
        prev_schemes: dict[str, int],
        now: datetime,
        result: CheckResult,
    ) -> list[OutdatedItem]:
        """Fold fetch outcomes into state and collect outdated items."""
        outdated: list[OutdatedItem] = []

        for outcome in outcomes:
            item = outcome.item
            key = item.key

            if outcome.error:
                # next check stays untouched, so the item is retried on the next tick
                self._record_error(state, result, f"{item.name}: {outcome.error}")
                continue

            latest, scheme = outcome.latest, outcome.scheme
            if outcome.not_modified:
                cached_version = _lookup(state.last_versions, item)
                if cached_version is not None:
                    latest = cached_version
                cached_scheme = _lookup(state.last_schemes, item)
                if cached_scheme is not None:
                    scheme = cached_scheme
            else:
                if outcome.etag:
                    state.etag_cache[self.fetcher.url_for(item)] = outcome.etag
                if latest:
                    state.last_versions[key] = latest
                    _drop_bare(state.last_versions, item)
                state.last_schemes[key] = scheme
                _drop_bare(state.last_schemes, item)

            current = installed.get(key, "")
            if is_outdated(current, latest, scheme, prev_schemes.get(key, 0)):
                outdated.append(OutdatedItem(item=item, installed=current, latest=latest))

            next_check = now + timedelta(minutes=item.interval_min)
            state.next_check_at[key] = next_check.isoformat(timespec="seconds")
            _drop_bare(state.next_check_at, item)

        return outdated

    async def _dispatch(
        self,
        config: Config,
        state: State,
        options: CheckOptions,
        outdated: list[OutdatedItem],
        result: CheckResult,
        notifier: Notifier,
        now: datetime,
    ) -> None:
        """Notify about or upgrade outdated items."""
        refreshed = False
        if options.force_update and not options.dry_run and not options.notify_only:
            if not await self._refresh_index(state, result, notifier, now):
                return
            refreshed = True

        if not outdated:
            state.stamp_check(now)
            return

        if options.dry_run or options.notify_only:
            for entry in outdated:
                await self._notify_outdated(notifier, entry)
            state.stamp_check(now)
            return

        if not refreshed and not await self._refresh_index(state, result, notifier, now):
            return

        for entry in outdated:
            if config.effective_policy(entry.item) == UpdatePolicy.NOTIFY:
                await self._notify_outdated(notifier, entry)

        formulae, casks = split_by_kind(outdated, config)
        greedy = config.include_auto_update_cask
        formulae = await self._verify(formulae, PackageKind.FORMULA, False, state, result, notifier)
        casks = await self._verify(casks, PackageKind.CASK, greedy, state, result, notifier)
        if not formulae and not casks:
            self._log.info("nothing_to_upgrade")
            state.stamp_check(now)
            return

        result.outdated = filter_outdated(outdated, formulae, casks)

        upgraded: list[str] = []
        if await self._upgrade(formulae, PackageKind.FORMULA, False, state, result, notifier):
            upgraded.extend(watch_key(name, PackageKind.FORMULA) for name in formulae)
        if await self._upgrade(casks, PackageKind.CASK, greedy, state, result, notifier):
            upgraded.extend(watch_key(name, PackageKind.CASK) for name in casks)

        finished = self._clock()
        state.stamp_check(finished)
        if not upgraded:
            return
        state.last_update_at = finished
        for entry in result.outdated:
            if entry.item.key in upgraded:
                await self._notify_outdated(notifier, entry)

    async def _refresh_index(
        self, state: State, result: CheckResult, notifier: Notifier, now: datetime
    ) -> bool:
        """Run the index refresh; on failure record, notify and stamp the check."""
        try:
            await self.package_manager.refresh_index()
        except (BrewError, OSError) as e:
            self._record_error(state, result, f"brew update failed: {e}")
            await asyncio.to_thread(notify_failure, notifier, "brew update failed", e)
            state.stamp_check(now)
            return False
        return True

    async def _verify(
        self,
        names: list[str],
        kind: PackageKind,
        greedy: bool,
        state: State,
        result: CheckResult,
        notifier: Notifier,
    ) -> list[str]:
        """Intersect candidate names with what the package manager reports outdated.

        A failed query excludes the whole partition from this run.
        """
        if not names:
            return []
        try:
            confirmed = set(await self.package_manager.outdated(names, kind, greedy=greedy))
        except (BrewError, OSError) as e:
            what = f"brew outdated {kind.value} failed"
            self._record_error(state, result, f"{what}: {e}")
            await asyncio.to_thread(notify_failure, notifier, what, e)
            return []
        verified = [name for name in names if name in confirmed]
        if len(verified) != len(names):
            self._log.info(
                "verification_narrowed",
                kind=kind.value,
                skipped=sorted(set(names) - confirmed),
            )
        return verified

    async def _upgrade(
        self,
        names: list[str],
        kind: PackageKind,
        greedy: bool,
        state: State,
        result: CheckResult,
        notifier: Notifier,
    ) -> bool:
        """Upgrade one partition. Returns True if something was upgraded."""
        if not names:
            return False
        try:
            await self.package_manager.upgrade(names, kind, greedy=greedy)
        except (BrewError, OSError) as e:
            what = f"{kind.value} upgrade failed"
            self._record_error(state, result, f"{what}: {e}")
            await asyncio.to_thread(notify_failure, notifier, what, e)
            return False
        self._log.info("upgraded", kind=kind.value, packages=names)
        return True

    async def _notify_outdated(self, notifier: Notifier, entry: OutdatedItem) -> None:
        # Backends block on a subprocess, keep them off the event loop
        await asyncio.to_thread(
            notify_package, notifier, entry.item.name, entry.installed, entry.latest
        )

    def _record_error(self, state: State, result: CheckResult, message: str) -> None:
        self._log.warning("check_error", error=message)
        state.append_error(message)
        result.errors.append(message)
