"""Scheduled checks via a launchd user agent.

This module installs, removes and inspects the launchd agent that runs
``brew-updater check`` every 60 seconds. Each run decides on its own which
watched packages are due, so the agent interval is fixed.
"""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from xml.sax.saxutils import escape

import structlog

from .interfaces import RecurringTaskInstaller

logger = structlog.get_logger(__name__)

LABEL = "dev.brew-updater"
START_INTERVAL_SEC = 60
LAUNCHCTL = "/bin/launchctl"


class ScheduleError(Exception):
    """Error during schedule management."""


class LaunchdScheduler(RecurringTaskInstaller):
    """Manages the launchd agent for periodic checks."""

    PLIST_TEMPLATE = """<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
  <key>Label</key>
  <string>{label}</string>
  <key>ProgramArguments</key>
  <array>
    <string>{binary}</string>
    <string>check</string>
    <string>--config</string>
    <string>{config}</string>
  </array>
  {run_at_load}
  <key>StartInterval</key>
  <integer>{interval}</integer>
  <key>StandardOutPath</key>
  <string>{log}</string>
  <key>StandardErrorPath</key>
  <string>{log}</string>
  <key>LowPriorityBackgroundIO</key>
  <true/>
  <key>LowPriorityIO</key>
  <true/>
  <key>ProcessType</key>
  <string>Background</string>
</dict>
</plist>
"""

    def __init__(self, home: Path | None = None, label: str = LABEL) -> None:
        """Initialize the scheduler.

        Args:
            home: Home directory holding Library/. Defaults to the user's home.
            label: launchd job label.
        """
        home = home or Path.home()
        self.label = label
        self.agents_dir = home / "Library" / "LaunchAgents"
        self.log_path = home / "Library" / "Logs" / "brew-updater.log"

    @property
    def plist_path(self) -> Path:
        """Path to the agent plist."""
        return self.agents_dir / f"{self.label}.plist"

    def render_plist(self, binary_path: str, config_path: Path, start_now: bool = False) -> str:
        """Render the agent plist."""
        run_at_load = "<key>RunAtLoad</key>\n  <true/>" if start_now else ""
        return self.PLIST_TEMPLATE.format(
            label=escape(self.label),
            binary=escape(binary_path),
            config=escape(str(config_path)),
            run_at_load=run_at_load,
            interval=START_INTERVAL_SEC,
            log=escape(str(self.log_path)),
        )

    def _launchctl(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run a launchctl command.

        Raises:
            ScheduleError: If the command fails and check is True.
        """
        cmd = [LAUNCHCTL, *args]
        logger.debug("running_launchctl", command=cmd)

        try:
            return subprocess.run(cmd, capture_output=True, text=True, check=check)
        except subprocess.CalledProcessError as e:
            raise ScheduleError(f"launchctl {' '.join(args)} failed: {e.stderr.strip()}") from e
        except FileNotFoundError as e:
            raise ScheduleError("launchctl not found. Is this macOS?") from e

    def _domain(self) -> str:
        return f"gui/{os.getuid()}"

    def install(self, binary_path: str, config_path: Path, *, start_now: bool = False) -> Path:
        """Write the plist and load the agent.

        Args:
            binary_path: brew-updater executable.
            config_path: Config file passed to ``check``.
            start_now: Run once immediately when loaded.

        Returns:
            Path of the written plist.

        Raises:
            ScheduleError: If loading fails.
        """
        self.agents_dir.mkdir(parents=True, exist_ok=True)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)

        self.plist_path.write_text(self.render_plist(binary_path, config_path, start_now))
        logger.info("plist_written", path=str(self.plist_path))

        try:
            self._launchctl("bootstrap", self._domain(), str(self.plist_path))
        except ScheduleError as bootstrap_error:
            # Older macOS releases only know the legacy verb
            try:
                self._launchctl("load", str(self.plist_path))
            except ScheduleError:
                raise bootstrap_error from None

        # give launchd a moment to register the job
        time.sleep(0.2)
        logger.info("schedule_installed", label=self.label)
        return self.plist_path

    def uninstall(self) -> None:
        """Unload the agent and remove its plist.

        Raises:
            ScheduleError: If the plist does not exist.
        """
        self._launchctl("bootout", self._domain(), str(self.plist_path), check=False)
        try:
            self.plist_path.unlink()
        except FileNotFoundError as e:
            raise ScheduleError(f"not installed: {self.plist_path}") from e
        logger.info("schedule_uninstalled", label=self.label)

    def status(self) -> bool:
        """Check whether launchd currently knows the agent."""
        result = self._launchctl("list")
        return self.label in result.stdout
