"""Version parsing and comparison utilities.

This module decides whether an installed Homebrew package is behind the
latest version published by the formulae API.

Supported formats:
- Semantic versioning (1.2.3, v1.2.3, 1.2, 1)
- Date-based versions (2024.01.15)
- Versions with prerelease tags (1.2.3-alpha, 1.2.3-rc.1)
- Build metadata (1.2.3+build5), ignored for ordering

Homebrew revisions (``1.2.3_1``) and cask versions with commas
(``1.2,345``) are normalized to dotted form before parsing.
"""

from __future__ import annotations

import re
from typing import NamedTuple

LATEST_SENTINEL = "latest"


class VersionComponents(NamedTuple):
    """Parsed version components."""

    major: int
    minor: int
    patch: int
    prerelease: str | None = None
    build: str | None = None


# Regex patterns for version parsing
SEMVER_PATTERN = re.compile(
    r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$",
    re.IGNORECASE,
)

DATE_VERSION_PATTERN = re.compile(r"^(\d{4})\.(\d{1,2})\.(\d{1,2})$")


def parse_version(version: str) -> VersionComponents:
    """Parse a version string into components.

    Args:
        version: Version string to parse.

    Returns:
        VersionComponents tuple with major, minor, patch, prerelease, build.

    Raises:
        ValueError: If the version string cannot be parsed.

    Examples:
        >>> parse_version("1.2.3")
        VersionComponents(major=1, minor=2, patch=3, prerelease=None, build=None)
        >>> parse_version("v1.2.3-alpha")
        VersionComponents(major=1, minor=2, patch=3, prerelease='alpha', build=None)
        >>> parse_version("2024.01.15")
        VersionComponents(major=2024, minor=1, patch=15, prerelease=None, build=None)
    """
    version = version.strip()

    # Try date-based version first
    date_match = DATE_VERSION_PATTERN.match(version)
    if date_match:
        return VersionComponents(
            major=int(date_match.group(1)),
            minor=int(date_match.group(2)),
            patch=int(date_match.group(3)),
        )

    semver_match = SEMVER_PATTERN.match(version)
    if semver_match:
        prerelease = semver_match.group(4)
        return VersionComponents(
            major=int(semver_match.group(1)),
            minor=int(semver_match.group(2) or 0),
            patch=int(semver_match.group(3) or 0),
            prerelease=prerelease or None,
            build=semver_match.group(5),
        )

    raise ValueError(f"Cannot parse version string: {version}")


def _prerelease_key(prerelease: str | None) -> tuple[int, tuple[tuple[int, int, str], ...]]:
    """Get ordering key for a prerelease tag.

    A release without prerelease sorts after any prerelease of the same
    version. Dot-separated identifiers compare numerically when both are
    numeric, numeric identifiers sort before alphanumeric ones.
    """
    if prerelease is None:
        return (1, ())

    identifiers = []
    for part in prerelease.split("."):
        if part.isdigit():
            identifiers.append((0, int(part), ""))
        else:
            identifiers.append((1, 0, part))
    return (0, tuple(identifiers))


def compare_versions(version1: str, version2: str) -> int:
    """Compare two version strings.

    Args:
        version1: First version string.
        version2: Second version string.

    Returns:
        -1 if version1 < version2
         0 if version1 == version2
         1 if version1 > version2

    Raises:
        ValueError: If either version cannot be parsed.

    Examples:
        >>> compare_versions("1.2.3", "1.3.0")
        -1
        >>> compare_versions("1.3.0", "1.3.0")
        0
        >>> compare_versions("1.2.3-alpha", "1.2.3")
        -1
    """
    v1 = parse_version(version1)
    v2 = parse_version(version2)

    core1 = (v1.major, v1.minor, v1.patch)
    core2 = (v2.major, v2.minor, v2.patch)
    if core1 != core2:
        return -1 if core1 < core2 else 1

    pre1 = _prerelease_key(v1.prerelease)
    pre2 = _prerelease_key(v2.prerelease)
    if pre1 < pre2:
        return -1
    elif pre1 > pre2:
        return 1

    return 0


def normalize_version(version: str) -> str:
    """Normalize a version string for consistent comparison.

    Trims whitespace, removes a leading 'v' prefix and turns Homebrew
    revision underscores and cask commas into dots.

    Examples:
        >>> normalize_version("v1_2_3")
        '1.2.3'
        >>> normalize_version("1.2,345")
        '1.2.345'
    """
    version = version.strip()
    if version.startswith("v"):
        version = version[1:]
    return version.replace("_", ".").replace(",", ".")


def is_latest_sentinel(version: str) -> bool:
    """Check if a version is the ``latest`` marker used by rolling casks."""
    return version.strip().lower() == LATEST_SENTINEL


def is_outdated(installed: str, latest: str, scheme: int = 0, prev_scheme: int = 0) -> bool:
    """Decide whether the installed version should be upgraded.

    Args:
        installed: Version currently installed.
        latest: Latest version reported by the API.
        scheme: Version scheme reported by this fetch.
        prev_scheme: Version scheme recorded before this run.

    Returns:
        True if an upgrade is warranted. Never raises.

    Examples:
        >>> is_outdated("1.2.0", "1.3.0")
        True
        >>> is_outdated("2021a", "2021b", scheme=1, prev_scheme=0)
        True
        >>> is_outdated("latest", "2.0.0")
        False
    """
    if not installed or not latest:
        return False
    if is_latest_sentinel(installed) or is_latest_sentinel(latest):
        return False

    # A bumped scheme means numeric ordering across the change is meaningless
    if scheme > prev_scheme and installed != latest:
        return True

    try:
        return compare_versions(normalize_version(latest), normalize_version(installed)) > 0
    except ValueError:
        return installed != latest
