"""Interactive watchlist selection.

Shows installed packages in a table and lets the user pick the ones to
watch by number or name. Already watched packages are preselected.
"""

from __future__ import annotations

import structlog
from rich.console import Console
from rich.prompt import IntPrompt, Prompt
from rich.table import Table

from .interfaces import Candidate, Selection, SelectionUI
from .models import MAX_INTERVAL_MIN, MIN_INTERVAL_MIN, UpdatePolicy, watch_key

logger = structlog.get_logger(__name__)

CANCEL_WORDS = frozenset({"q", "quit"})
ALL_WORDS = frozenset({"a", "all"})
NONE_WORDS = frozenset({"-", "none"})


class SelectionParseError(ValueError):
    """The user's selection could not be understood."""


def parse_selection(answer: str, candidates: list[Candidate], preset_keys: set[str]) -> set[str]:
    """Turn a selection answer into a set of watch keys.

    Accepts comma or space separated 1-based indices and package names.
    A name installed both as formula and cask selects both. An empty answer
    keeps the preset, ``all`` selects everything and ``-`` selects nothing.

    Raises:
        SelectionParseError: On an unknown name or an out-of-range index.
    """
    answer = answer.strip().lower()
    if not answer:
        return {watch_key(c.name, c.kind) for c in candidates} & preset_keys
    if answer in ALL_WORDS:
        return {watch_key(c.name, c.kind) for c in candidates}
    if answer in NONE_WORDS:
        return set()

    selected: set[str] = set()
    for token in answer.replace(",", " ").split():
        if token.isdigit():
            index = int(token)
            if not 1 <= index <= len(candidates):
                raise SelectionParseError(f"no package number {index}")
            candidate = candidates[index - 1]
            selected.add(watch_key(candidate.name, candidate.kind))
            continue
        matches = [c for c in candidates if c.name.lower() == token]
        if not matches:
            raise SelectionParseError(f"unknown package: {token}")
        selected.update(watch_key(c.name, c.kind) for c in matches)
    return selected


class PromptSelectionUI(SelectionUI):
    """Selection UI built on rich prompts."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    def _render(self, candidates: list[Candidate], preset: dict[str, Selection]) -> None:
        table = Table(title="Installed packages", show_header=True)
        table.add_column("#", justify="right", style="dim")
        table.add_column("Name", style="cyan")
        table.add_column("Type")
        table.add_column("Watched", justify="center")
        table.add_column("Policy")
        table.add_column("Interval", justify="right")

        for index, candidate in enumerate(candidates, start=1):
            selection = preset.get(watch_key(candidate.name, candidate.kind))
            if selection is None:
                table.add_row(str(index), candidate.name, candidate.kind.value, "", "", "")
                continue
            policy = selection.policy.value if selection.policy else "[dim]default[/dim]"
            table.add_row(
                str(index),
                candidate.name,
                candidate.kind.value,
                "[green]✓[/green]",
                policy,
                f"{selection.interval_min}m",
            )

        self.console.print(table)

    def _ask_selection(
        self, candidates: list[Candidate], preset_keys: set[str]
    ) -> set[str] | None:
        """Prompt until the answer parses. None means cancelled."""
        while True:
            answer = Prompt.ask(
                "Packages to watch [dim](numbers or names; Enter keeps current, "
                "'all', '-' for none, 'q' cancels)[/dim]",
                console=self.console,
                default="",
                show_default=False,
            )
            if answer.strip().lower() in CANCEL_WORDS:
                return None
            try:
                return parse_selection(answer, candidates, preset_keys)
            except SelectionParseError as e:
                self.console.print(f"[red]{e}[/red]")

    def _ask_interval(self, default_interval: int) -> int:
        while True:
            value = IntPrompt.ask(
                "Check interval in minutes for new packages",
                console=self.console,
                default=default_interval,
            )
            if MIN_INTERVAL_MIN <= value <= MAX_INTERVAL_MIN:
                return value
            self.console.print(
                f"[red]interval must be {MIN_INTERVAL_MIN}-{MAX_INTERVAL_MIN} minutes[/red]"
            )

    def present(
        self,
        candidates: list[Candidate],
        default_policy: UpdatePolicy,
        default_interval: int,
        preset: dict[str, Selection],
    ) -> tuple[list[Selection], bool]:
        """Let the user choose packages to watch.

        Packages that were already watched keep their settings. Policy and
        interval are asked once for all newly selected packages.
        """
        if not candidates:
            return [], False

        self._render(candidates, preset)
        selected = self._ask_selection(candidates, set(preset))
        if selected is None:
            logger.debug("selection_cancelled")
            return [], True

        new_keys = selected - set(preset)
        policy, interval = default_policy, default_interval
        if new_keys:
            policy = UpdatePolicy(
                Prompt.ask(
                    "Policy for new packages",
                    console=self.console,
                    choices=[p.value for p in UpdatePolicy],
                    default=default_policy.value,
                )
            )
            interval = self._ask_interval(default_interval)

        selections: list[Selection] = []
        for candidate in candidates:
            key = watch_key(candidate.name, candidate.kind)
            if key not in selected:
                continue
            if key in preset:
                kept = preset[key]
                selections.append(
                    Selection(
                        name=candidate.name,
                        kind=candidate.kind,
                        policy=kept.policy,
                        interval_min=kept.interval_min or default_interval,
                    )
                )
            else:
                selections.append(
                    Selection(
                        name=candidate.name,
                        kind=candidate.kind,
                        policy=policy,
                        interval_min=interval,
                    )
                )

        logger.debug("selection_done", selected=len(selections), new=len(new_keys))
        return selections, False
