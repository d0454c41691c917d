"""Homebrew command wrapper.

Runs ``brew`` as an async subprocess to list installed packages, refresh
the index, query outdated packages and upgrade them.

Official documentation:
- brew list: https://docs.brew.sh/Manpage#list-ls-options-installed_formulainstalled_cask-
- brew outdated: https://docs.brew.sh/Manpage#outdated-options-formulacask-
- brew upgrade: https://docs.brew.sh/Manpage#upgrade-options-installed_formulainstalled_cask-
"""

from __future__ import annotations

import asyncio
import contextlib
import shutil

import structlog

from .interfaces import PackageManager
from .models import PackageKind

logger = structlog.get_logger(__name__)

DEFAULT_QUERY_TIMEOUT = 120
DEFAULT_UPGRADE_TIMEOUT = 3600


class BrewError(Exception):
    """A brew invocation failed."""

    def __init__(
        self, message: str, args: list[str] | None = None, return_code: int | None = None
    ) -> None:
        """Initialize the error.

        Args:
            message: Failure description.
            args: brew arguments (without the executable).
            return_code: Exit code, None if the process never finished.
        """
        super().__init__(message)
        self.brew_args = args or []
        self.return_code = return_code

    @classmethod
    def from_command(
        cls, args: list[str], detail: str, return_code: int | None = None
    ) -> BrewError:
        """Build an error for a failed ``brew <args>`` call."""
        message = f"brew {' '.join(args)} failed"
        if detail:
            message = f"{message}: {detail}"
        return cls(message, args, return_code)


class BrewNotFoundError(BrewError):
    """The brew executable is not on PATH."""

    def __init__(self) -> None:
        super().__init__("brew not found")


def find_brew() -> str:
    """Return the path of the brew executable.

    Raises:
        BrewNotFoundError: If brew is not installed.
    """
    path = shutil.which("brew")
    if path is None:
        raise BrewNotFoundError()
    return path


def parse_versions(output: str) -> dict[str, str]:
    """Parse ``brew list --versions`` output into name -> version.

    Only the first listed version is kept when several are installed.
    """
    result: dict[str, str] = {}
    for line in output.strip().splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        result[fields[0]] = fields[1]
    return result


def parse_outdated(output: str) -> list[str]:
    """Parse ``brew outdated --quiet`` output into package names."""
    names = []
    for line in output.strip().splitlines():
        fields = line.split()
        if fields:
            names.append(fields[0])
    return names


class HomebrewManager(PackageManager):
    """PackageManager implementation backed by the brew CLI."""

    def __init__(
        self,
        verbose: bool = False,
        query_timeout: int = DEFAULT_QUERY_TIMEOUT,
        upgrade_timeout: int = DEFAULT_UPGRADE_TIMEOUT,
    ) -> None:
        """Initialize the manager.

        Args:
            verbose: Echo brew output of update/upgrade to stdout.
            query_timeout: Timeout in seconds for list/outdated queries.
            upgrade_timeout: Timeout in seconds for update/upgrade.
        """
        self.verbose = verbose
        self.query_timeout = query_timeout
        self.upgrade_timeout = upgrade_timeout
        self._log = logger.bind(component="homebrew")

    async def _run(self, args: list[str], timeout: int) -> str:
        """Run brew with arguments and return its stdout.

        Raises:
            BrewNotFoundError: If brew is missing.
            BrewError: On non-zero exit or timeout.
        """
        cmd = [find_brew(), *args]
        log = self._log.bind(command=" ".join(cmd))
        log.debug("running_command")

        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except TimeoutError as e:
            log.warning("command_timeout", timeout=timeout)
            with contextlib.suppress(ProcessLookupError):
                process.kill()
                await process.wait()
            raise BrewError.from_command(args, f"timed out after {timeout}s") from e

        stdout_str = stdout.decode("utf-8", errors="replace")
        stderr_str = stderr.decode("utf-8", errors="replace")
        return_code = process.returncode or 0

        log.debug("command_completed", return_code=return_code, stdout_len=len(stdout_str))

        if return_code != 0:
            raise BrewError.from_command(args, stderr_str.strip(), return_code)
        if self.verbose and stderr_str:
            return stdout_str + "\n" + stderr_str
        return stdout_str

    def _echo(self, output: str) -> None:
        if self.verbose and output:
            print(output, end="" if output.endswith("\n") else "\n")

    async def list_installed(self) -> tuple[dict[str, str], dict[str, str]]:
        """List installed formulae and casks with their versions."""
        formulae = parse_versions(await self._run(["list", "--versions"], self.query_timeout))
        casks = parse_versions(
            await self._run(["list", "--cask", "--versions"], self.query_timeout)
        )
        self._log.debug("installed_listed", formulae=len(formulae), casks=len(casks))
        return formulae, casks

    async def refresh_index(self) -> None:
        """Run ``brew update``."""
        self._echo(await self._run(["update"], self.upgrade_timeout))

    async def upgrade(self, names: list[str], kind: PackageKind, *, greedy: bool = False) -> None:
        """Upgrade formulae or casks. ``greedy`` applies to casks only."""
        if not names:
            return
        args = ["upgrade"]
        if kind == PackageKind.CASK:
            args.append("--cask")
            if greedy:
                args.append("--greedy")
        args.extend(names)
        self._log.info("upgrading", kind=kind.value, packages=names)
        self._echo(await self._run(args, self.upgrade_timeout))

    async def outdated(
        self, names: list[str], kind: PackageKind, *, greedy: bool = False
    ) -> list[str]:
        """Return the subset of names brew reports as outdated."""
        if not names:
            return []
        args = ["outdated", "--quiet"]
        if kind == PackageKind.CASK:
            args.append("--cask")
            if greedy:
                args.append("--greedy")
        else:
            args.append("--formula")
        args.extend(names)
        return parse_outdated(await self._run(args, self.query_timeout))

    async def is_running(self) -> bool:
        """Check whether another brew process is running (``pgrep -x brew``)."""
        try:
            process = await asyncio.create_subprocess_exec(
                "pgrep",
                "-x",
                "brew",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            self._log.debug("pgrep_not_found")
            return False
        stdout, _ = await process.communicate()
        return process.returncode == 0 and bool(stdout.strip())
