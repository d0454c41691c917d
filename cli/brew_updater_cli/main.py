"""Main CLI entry point for brew-updater.

This module defines the Typer application and its commands.
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import sys
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from brew_updater.api import FormulaeAPIClient
from brew_updater.brew import BrewError, HomebrewManager
from brew_updater.config import APP_NAME, ConfigError, ConfigManager
from brew_updater.engine import ReconciliationEngine
from brew_updater.interfaces import Candidate, Selection
from brew_updater.lock import LockHeldError, ProcessLock
from brew_updater.models import (
    DEFAULT_INTERVAL_MIN,
    MAX_INTERVAL_MIN,
    MIN_INTERVAL_MIN,
    CheckOptions,
    CheckResult,
    PackageKind,
    UpdatePolicy,
    WatchItem,
    watch_key,
)
from brew_updater.notifications import NotificationManager
from brew_updater.schedule import START_INTERVAL_SEC, LaunchdScheduler, ScheduleError
from brew_updater.selection import PromptSelectionUI

from . import __version__
from .logging_config import configure_logging, level_for

if TYPE_CHECKING:
    from collections.abc import Iterator

    from brew_updater.interfaces import Notifier, RecurringTaskInstaller, SelectionUI
    from brew_updater.models import Config, State

LOCK_STALE_AFTER_SECONDS = 10 * 60

app = typer.Typer(
    name=APP_NAME,
    help="Aggressive Homebrew updater - watch packages and upgrade them as soon as they ship.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


class KindFilter(str, Enum):
    """Package kind selector for commands."""

    FORMULA = "formula"
    CASK = "cask"
    ALL = "all"

    def matches(self, kind: PackageKind | None) -> bool:
        return self == KindFilter.ALL or (kind is not None and kind.value == self.value)


@dataclass(frozen=True)
class CliContext:
    """Global options shared by all commands."""

    config_path: Path | None = None
    quiet: bool = False
    verbose: bool = False

    def config_manager(self) -> ConfigManager:
        return ConfigManager(self.config_path)


def join_names(names: list[str]) -> str:
    """Join names for one-line output, ``-`` when empty."""
    if not names:
        return "-"
    return ", ".join(names)


def format_time(value: datetime | None) -> str:
    """Format a timestamp as RFC 3339, ``-`` when unset."""
    if value is None:
        return "-"
    return value.isoformat(timespec="seconds")


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold blue]{APP_NAME}[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Annotated[
        Path | None,
        typer.Option(
            "--config",
            help="Config file path. Defaults to $BREW_UPDATER_CONFIG or the XDG config dir.",
        ),
    ] = None,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Reduce output."),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Verbose output, including brew output."),
    ] = False,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """brew-updater: check watched Homebrew packages and keep them current."""
    configure_logging(level_for(quiet, verbose))
    ctx.obj = CliContext(config_path=config, quiet=quiet, verbose=verbose)


def _cli(ctx: typer.Context) -> CliContext:
    obj = ctx.find_object(CliContext)
    return obj if obj is not None else CliContext()


@contextlib.contextmanager
def _handle_errors() -> Iterator[None]:
    """Print expected failures as ``Error: <message>`` and exit with status 1."""
    try:
        yield
    except (ConfigError, BrewError, ScheduleError, OSError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(1) from None


def _get_package_manager(verbose: bool) -> HomebrewManager:
    """Get the brew wrapper."""
    return HomebrewManager(verbose=verbose)


def _get_fetcher() -> FormulaeAPIClient:
    """Get the formulae API client."""
    return FormulaeAPIClient()


def _get_notifier(config: Config) -> Notifier:
    """Get the notifier configured for this installation."""
    return NotificationManager.for_method(config.notify_method)


def _get_selection_ui() -> SelectionUI:
    """Get the interactive watchlist picker."""
    return PromptSelectionUI(console=console)


def _get_scheduler() -> RecurringTaskInstaller:
    """Get the launchd agent manager."""
    return LaunchdScheduler()


def _resolve_binary() -> str:
    """Locate the brew-updater executable for the launchd agent."""
    found = shutil.which(APP_NAME)
    if found:
        return found
    return str(Path(sys.argv[0]).resolve())


@app.command()
def init(ctx: typer.Context) -> None:
    """Create a default config and an empty state file."""
    manager = _cli(ctx).config_manager()
    with _handle_errors():
        if not manager.init():
            raise ConfigError(f"config already exists: {manager.config_path}")
    typer.echo(f"Initialized: {manager.config_path}")


@app.command()
def watch(
    ctx: typer.Context,
    kind: Annotated[
        KindFilter,
        typer.Option("--type", "-t", help="Which installed packages to offer."),
    ] = KindFilter.ALL,
    policy: Annotated[
        UpdatePolicy | None,
        typer.Option("--policy", "-p", help="Policy for newly selected packages."),
    ] = None,
    interval: Annotated[
        int | None,
        typer.Option(
            "--interval-min",
            "-i",
            min=MIN_INTERVAL_MIN,
            max=MAX_INTERVAL_MIN,
            help="Check interval in minutes for newly selected packages.",
        ),
    ] = None,
) -> None:
    """Select installed packages to watch.

    Packages of the other kind stay watched when --type narrows the offer.
    """
    cli = _cli(ctx)
    manager = cli.config_manager()

    with _handle_errors():
        config = manager.load_config(require=True)
        state = manager.load_state()
        formulae, casks = asyncio.run(_get_package_manager(cli.verbose).list_installed())

    candidates: list[Candidate] = []
    if kind in (KindFilter.FORMULA, KindFilter.ALL):
        candidates.extend(Candidate(name=name, kind=PackageKind.FORMULA) for name in formulae)
    if kind in (KindFilter.CASK, KindFilter.ALL):
        candidates.extend(Candidate(name=name, kind=PackageKind.CASK) for name in casks)
    if not candidates:
        typer.echo("No new packages to watch")
        return
    candidates.sort(key=lambda c: (c.name, c.kind.value))

    existing = {item.key: item for item in config.watchlist}
    preset: dict[str, Selection] = {}
    for candidate in candidates:
        key = watch_key(candidate.name, candidate.kind)
        if key in existing:
            preset[key] = Selection(
                name=candidate.name,
                kind=candidate.kind,
                policy=existing[key].policy,
                interval_min=existing[key].interval_min,
            )

    selections, cancelled = _get_selection_ui().present(
        candidates,
        policy or config.default_policy,
        interval or DEFAULT_INTERVAL_MIN,
        preset,
    )
    if cancelled:
        typer.echo("Canceled")
        return

    keep: list[WatchItem] = []
    if kind != KindFilter.ALL:
        keep = [
            item
            for item in config.watchlist
            if item.kind is not None and not kind.matches(item.kind)
        ]

    now = datetime.now(tz=UTC)
    selected: list[WatchItem] = []
    for selection in selections:
        item = WatchItem(
            name=selection.name,
            kind=selection.kind,
            policy=selection.policy,
            interval_min=selection.interval_min,
        )
        previous = existing.get(item.key)
        item.added_at = previous.added_at if previous and previous.added_at else now
        selected.append(item)
    config.watchlist = keep + selected

    watched = {item.key for item in config.watchlist} | {item.name for item in config.watchlist}
    for mapping in (state.next_check_at, state.last_versions):
        for key in [k for k in mapping if k not in watched]:
            del mapping[key]

    with _handle_errors():
        manager.save_config(config)
        manager.save_state(state)
    typer.echo(f"Updated watchlist: {len(selections)} selected")


@app.command("list")
def list_watched(
    ctx: typer.Context,
    kind: Annotated[
        KindFilter,
        typer.Option("--type", "-t", help="Show only this kind."),
    ] = KindFilter.ALL,
    policy: Annotated[
        UpdatePolicy | None,
        typer.Option("--policy", "-p", help="Show only items with this effective policy."),
    ] = None,
) -> None:
    """List watched packages."""
    with _handle_errors():
        config = _cli(ctx).config_manager().load_config(require=True)

    table = Table(show_header=True, box=None)
    table.add_column("NAME", style="cyan")
    table.add_column("TYPE")
    table.add_column("POLICY")
    table.add_column("INTERVAL", justify="right")

    for item in config.watchlist:
        if not kind.matches(item.kind):
            continue
        effective = config.effective_policy(item)
        if policy is not None and policy != effective:
            continue
        table.add_row(
            item.name,
            item.kind.value if item.kind else "-",
            effective.value,
            f"{item.interval_min}m",
        )

    console.print(table)


@app.command()
def check(
    ctx: typer.Context,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", "-n", help="Check only, notify instead of upgrading."),
    ] = False,
    force_update: Annotated[
        bool,
        typer.Option("--force-update", help="Always run brew update first."),
    ] = False,
    notify_only: Annotated[
        bool,
        typer.Option("--notify-only", help="Notify about updates, never upgrade."),
    ] = False,
) -> None:
    """Check due packages and upgrade or notify.

    This is what the launchd agent runs every minute. Only one check runs
    at a time; a concurrent invocation exits quietly.
    """
    cli = _cli(ctx)
    manager = cli.config_manager()

    with _handle_errors():
        if not manager.exists():
            raise ConfigError(f"config not found, run '{APP_NAME} init'")

        try:
            lock = ProcessLock.acquire(manager.lock_path, stale_after=LOCK_STALE_AFTER_SECONDS)
        except LockHeldError:
            if not cli.quiet:
                typer.echo("skip: another check running")
            return

        with lock:
            # Read under the lock so a run that just finished is seen
            config = manager.load_config(require=True)
            state = manager.load_state()

            package_manager = _get_package_manager(cli.verbose)
            if asyncio.run(package_manager.is_running()):
                if not cli.quiet:
                    typer.echo("skip: brew already running")
                return

            if not cli.quiet:
                typer.echo("checking...")
            options = CheckOptions(
                dry_run=dry_run,
                force_update=force_update,
                notify_only=notify_only,
                verbose=cli.verbose,
            )
            result, config, state = asyncio.run(
                _run_check(package_manager, config, state, options)
            )
            manager.save_config(config)
            manager.save_state(state)

    if not cli.quiet:
        _print_check_result(result, cli.verbose)


async def _run_check(
    package_manager: HomebrewManager, config: Config, state: State, options: CheckOptions
) -> tuple[CheckResult, Config, State]:
    """Run the engine with a fetcher that is closed afterwards."""
    async with _get_fetcher() as fetcher:
        engine = ReconciliationEngine(package_manager, fetcher, _get_notifier(config))
        return await engine.run(config, state, options)


def _print_check_result(result: CheckResult, verbose: bool) -> None:
    if result.checked == 0:
        typer.echo("no packages due for check")
        return

    if verbose:
        typer.echo(f"checked={result.checked}")
        typer.echo(f"checked packages: {join_names(result.checked_names)}")
    else:
        typer.echo(f"checked={result.checked}: {join_names(result.checked_names)}")

    if not result.outdated:
        typer.echo("outdated=0")
    elif verbose:
        typer.echo(f"outdated={len(result.outdated)}")
        for entry in result.outdated:
            typer.echo(f"- {entry.item.name} {entry.installed} -> {entry.latest}")
    else:
        names = sorted(entry.item.name for entry in result.outdated)
        typer.echo(f"outdated={len(names)}: {join_names(names)}")

    if result.removed:
        names = sorted(item.name for item in result.removed)
        typer.echo(f"removed={len(names)}: {join_names(names)}")

    if verbose and result.errors:
        for error in result.errors:
            console.print(f"[yellow]error: {escape(error)}[/yellow]")


def split_targets(items: list[WatchItem], kind: KindFilter) -> tuple[list[str], list[str]]:
    """Split watch items into sorted formula and cask names."""
    formulae: list[str] = []
    casks: list[str] = []
    for item in items:
        if not kind.matches(item.kind):
            continue
        if item.kind == PackageKind.CASK:
            casks.append(item.name)
        else:
            formulae.append(item.name)
    return sorted(formulae), sorted(casks)


@app.command()
def upgrade(
    ctx: typer.Context,
    names: Annotated[
        list[str] | None,
        typer.Argument(help="Watched packages to upgrade. All watched packages if omitted."),
    ] = None,
    all_packages: Annotated[
        bool,
        typer.Option("--all", "-a", help="Upgrade all watched packages."),
    ] = False,
    kind: Annotated[
        KindFilter,
        typer.Option("--type", "-t", help="Only upgrade this kind."),
    ] = KindFilter.ALL,
) -> None:
    """Upgrade watched packages now.

    Runs brew update, asks brew which targets are really outdated and
    upgrades those.
    """
    cli = _cli(ctx)
    with _handle_errors():
        config = cli.config_manager().load_config(require=True)

    if all_packages or not names:
        targets = list(config.watchlist)
    else:
        wanted = set(names)
        targets = [item for item in config.watchlist if item.name in wanted]

    formulae, casks = split_targets(targets, kind)
    if not formulae and not casks:
        if not cli.quiet:
            typer.echo("no watched packages matched")
        return

    with _handle_errors():
        asyncio.run(
            _upgrade_packages(
                _get_package_manager(cli.verbose),
                formulae,
                casks,
                greedy=config.include_auto_update_cask,
                quiet=cli.quiet,
            )
        )


async def _upgrade_packages(
    package_manager: HomebrewManager,
    formulae: list[str],
    casks: list[str],
    *,
    greedy: bool,
    quiet: bool,
) -> None:
    def say(message: str) -> None:
        if not quiet:
            typer.echo(message)

    say(f"targets={len(formulae) + len(casks)}")
    if formulae:
        say(f"formula: {join_names(formulae)}")
    if casks:
        say(f"cask: {join_names(casks)}")

    say("brew update...")
    await package_manager.refresh_index()

    if formulae:
        formulae = await package_manager.outdated(formulae, PackageKind.FORMULA)
    if casks:
        casks = await package_manager.outdated(casks, PackageKind.CASK, greedy=greedy)
    if not formulae and not casks:
        say("no outdated packages")
        return

    if formulae:
        say(f"outdated formula: {join_names(formulae)}")
        say("brew upgrade formula...")
        await package_manager.upgrade(formulae, PackageKind.FORMULA)
    if casks:
        say(f"outdated cask: {join_names(casks)}")
        say("brew upgrade cask (greedy)..." if greedy else "brew upgrade cask...")
        await package_manager.upgrade(casks, PackageKind.CASK, greedy=greedy)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show the last check, the last upgrade and recent errors."""
    with _handle_errors():
        manager = _cli(ctx).config_manager()
        manager.load_config(require=True)
        state = manager.load_state()

    typer.echo(f"last_check: {format_time(state.last_check_at)}")
    typer.echo(f"last_update: {format_time(state.last_update_at)}")
    if state.last_errors:
        typer.echo("errors:")
        for error in state.last_errors:
            typer.echo(f"- {error}")


@app.command("set")
def set_settings(
    ctx: typer.Context,
    names: Annotated[list[str], typer.Argument(help="Watched packages to change.")],
    policy: Annotated[
        UpdatePolicy | None,
        typer.Option("--policy", "-p", help="New update policy."),
    ] = None,
    interval: Annotated[
        int | None,
        typer.Option(
            "--interval-min",
            "-i",
            min=MIN_INTERVAL_MIN,
            max=MAX_INTERVAL_MIN,
            help="New check interval in minutes.",
        ),
    ] = None,
) -> None:
    """Change policy or interval of watched packages."""
    cli = _cli(ctx)
    manager = cli.config_manager()
    with _handle_errors():
        config = manager.load_config(require=True)

    wanted = set(names)
    changed = 0
    for item in config.watchlist:
        if item.name not in wanted:
            continue
        if policy is not None:
            item.policy = policy
        if interval is not None:
            item.interval_min = interval
        changed += 1

    if changed == 0 and not cli.quiet:
        console.print("[yellow]no watched packages matched[/yellow]")

    with _handle_errors():
        manager.save_config(config)


launchd_app = typer.Typer(
    name="launchd",
    help="Manage the launchd agent that runs checks.",
    no_args_is_help=True,
)
app.add_typer(launchd_app, name="launchd")


@launchd_app.command("install")
def launchd_install(
    ctx: typer.Context,
    start_now: Annotated[
        bool,
        typer.Option("--start-now", help="Run a check as soon as the agent loads."),
    ] = False,
    interval_sec: Annotated[
        int,
        typer.Option("--interval-sec", help="Agent interval, fixed to 60 seconds."),
    ] = START_INTERVAL_SEC,
) -> None:
    """Install and load the launchd agent."""
    if interval_sec != START_INTERVAL_SEC:
        raise typer.BadParameter(
            f"interval-sec fixed to {START_INTERVAL_SEC}", param_hint="--interval-sec"
        )

    manager = _cli(ctx).config_manager()
    with _handle_errors():
        manager.load_config(require=True)
        plist = _get_scheduler().install(
            _resolve_binary(), manager.config_path.resolve(), start_now=start_now
        )
    typer.echo(f"installed: {plist}")


@launchd_app.command("uninstall")
def launchd_uninstall() -> None:
    """Unload the launchd agent and remove its plist."""
    with _handle_errors():
        _get_scheduler().uninstall()
    typer.echo("uninstalled")


@launchd_app.command("status")
def launchd_status() -> None:
    """Show whether the launchd agent is loaded."""
    with _handle_errors():
        loaded = _get_scheduler().status()
    typer.echo(f"running: {str(loaded).lower()}")


if __name__ == "__main__":
    app()
