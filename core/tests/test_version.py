"""Tests for version parsing and comparison utilities."""

from __future__ import annotations

import pytest

from brew_updater.version import (
    VersionComponents,
    compare_versions,
    is_latest_sentinel,
    is_outdated,
    normalize_version,
    parse_version,
)


class TestParseVersion:
    """Tests for parse_version function."""

    def test_parse_semantic_version(self) -> None:
        """Test parsing semantic version strings."""
        assert parse_version("1.2.3") == VersionComponents(major=1, minor=2, patch=3)

    def test_parse_with_v_prefix(self) -> None:
        """Test parsing version with 'v' prefix."""
        assert parse_version("v1.2.3") == VersionComponents(major=1, minor=2, patch=3)

    def test_parse_partial_versions(self) -> None:
        """Test parsing versions with missing minor or patch."""
        assert parse_version("1.2") == VersionComponents(major=1, minor=2, patch=0)
        assert parse_version("7") == VersionComponents(major=7, minor=0, patch=0)

    def test_parse_date_version(self) -> None:
        """Test parsing date-based versions."""
        assert parse_version("2024.1.5") == VersionComponents(major=2024, minor=1, patch=5)

    def test_parse_prerelease_and_build(self) -> None:
        """Test parsing prerelease tags and build metadata."""
        result = parse_version("1.2.3-RC.1+build7")

        assert result.prerelease == "RC.1"
        assert result.build == "build7"

    @pytest.mark.parametrize("version", ["", "abc", "2021a", "1.2.3.4"])
    def test_parse_invalid(self, version: str) -> None:
        """Test that unparseable strings raise ValueError."""
        with pytest.raises(ValueError, match="Cannot parse"):
            parse_version(version)


class TestCompareVersions:
    """Tests for compare_versions function."""

    def test_ordering(self) -> None:
        """Test basic ordering."""
        assert compare_versions("1.2.3", "1.3.0") == -1
        assert compare_versions("1.3.0", "1.3.0") == 0
        assert compare_versions("2.0", "1.99.99") == 1

    def test_prerelease_sorts_before_release(self) -> None:
        """Test that a prerelease is older than its release."""
        assert compare_versions("1.2.3-alpha", "1.2.3") == -1
        assert compare_versions("1.2.3", "1.2.3-rc.1") == 1

    def test_prerelease_identifiers(self) -> None:
        """Test numeric and alphanumeric prerelease identifiers."""
        assert compare_versions("1.0.0-rc.2", "1.0.0-rc.10") == -1
        assert compare_versions("1.0.0-1", "1.0.0-alpha") == -1
        assert compare_versions("1.0.0-alpha", "1.0.0-beta") == -1

    def test_prerelease_case_sensitive(self) -> None:
        """Test that prerelease identifiers compare in ASCII order, case included."""
        assert compare_versions("1.0.0-RC1", "1.0.0-rc1") == -1
        assert compare_versions("1.0.0-rc1", "1.0.0-RC1") == 1
        assert compare_versions("1.0.0-rc1", "1.0.0-rc1") == 0

    def test_build_metadata_is_ignored(self) -> None:
        """Test that build metadata does not affect ordering."""
        assert compare_versions("1.0.0+a", "1.0.0+b") == 0


class TestNormalizeVersion:
    """Tests for normalize_version function."""

    def test_normalization(self) -> None:
        """Test prefix stripping and separator rewriting."""
        assert normalize_version(" v1_2_3 ") == "1.2.3"
        assert normalize_version("1.2,345") == "1.2.345"

    def test_idempotent(self) -> None:
        """Test that normalizing twice changes nothing."""
        assert normalize_version("v1_2_3") == normalize_version("1.2.3") == "1.2.3"
        assert normalize_version(normalize_version("v1_2_3")) == "1.2.3"


class TestIsOutdated:
    """Tests for is_outdated function."""

    def test_newer_latest(self) -> None:
        """Test that a newer latest version is outdated."""
        assert is_outdated("1.2.0", "1.3.0", 0, 0) is True

    def test_older_latest(self) -> None:
        """Test that an older latest version is not outdated."""
        assert is_outdated("1.3.0", "1.2.0", 0, 0) is False

    def test_equal_versions(self) -> None:
        """Test that equal versions are not outdated."""
        assert is_outdated("1.2.0", "1.2.0") is False
        assert is_outdated("v1.2.0", "1.2.0") is False

    @pytest.mark.parametrize(("installed", "latest"), [("", "1.0"), ("1.0", ""), ("", "")])
    def test_empty_versions(self, installed: str, latest: str) -> None:
        """Test that missing versions never count as outdated."""
        assert is_outdated(installed, latest) is False

    def test_latest_sentinel(self) -> None:
        """Test the short-circuit for rolling casks."""
        assert is_outdated("latest", "2.0.0", 0, 0) is False
        assert is_outdated("2.0.0", "latest", 0, 0) is False
        assert is_outdated("2.0.0", " Latest ", 0, 0) is False
        assert is_latest_sentinel("LATEST") is True

    def test_scheme_bump(self) -> None:
        """Test that a scheme bump with differing strings is outdated."""
        assert is_outdated("2021a", "2021b", scheme=1, prev_scheme=0) is True
        assert is_outdated("3.0", "1.0", scheme=1, prev_scheme=0) is True

    def test_scheme_bump_with_same_string(self) -> None:
        """Test that a scheme bump alone does not mark equal versions outdated."""
        assert is_outdated("1.0", "1.0", scheme=1, prev_scheme=0) is False

    def test_unparseable_falls_back_to_inequality(self) -> None:
        """Test string inequality for versions that do not parse."""
        assert is_outdated("2021a", "2021b") is True
        assert is_outdated("2021a", "2021a") is False

    def test_revision_suffix(self) -> None:
        """Test Homebrew revision suffixes."""
        assert is_outdated("1.2.3", "1.2.3_1") is True
        assert is_outdated("1.2.3_1", "1.2.3_1") is False

    def test_cask_comma_versions(self) -> None:
        """Test cask versions that carry a build after a comma."""
        assert is_outdated("1.2,100", "1.2,101") is True
        assert is_outdated("1.2,101", "1.2,100") is False
