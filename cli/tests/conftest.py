"""Shared test fixtures for CLI tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
import structlog

if TYPE_CHECKING:
    from collections.abc import Generator
    from pathlib import Path


@pytest.fixture(autouse=True)
def isolated_config_dir(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Generator[Path, None, None]:
    """Isolate tests from the real user config directory.

    Sets XDG_CONFIG_HOME to a temporary directory so that tests don't
    read or modify the real config at ~/.config/brew-updater/.

    This fixture is applied automatically to all tests in this module.
    """
    config_home = tmp_path / "xdg_config"
    config_home.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.delenv("BREW_UPDATER_CONFIG", raising=False)

    yield config_home / "brew-updater"

    # The CLI binds structlog to the runner's captured stderr
    structlog.reset_defaults()
