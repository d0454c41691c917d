"""Tests for the formulae API client."""

from __future__ import annotations

import json
from typing import Any

import aiohttp
import pytest

from brew_updater.api import (
    DEFAULT_BASE_URL,
    FetchError,
    FormulaeAPIClient,
    build_url,
    parse_latest,
)
from brew_updater.models import PackageKind, WatchItem

WGET = WatchItem(name="wget", kind=PackageKind.FORMULA)
FIREFOX = WatchItem(name="firefox", kind=PackageKind.CASK)


class FakeResponse:
    """Minimal stand-in for aiohttp.ClientResponse."""

    def __init__(
        self, status: int, payload: Any = None, headers: dict[str, str] | None = None
    ) -> None:
        self.status = status
        self.payload = payload
        self.headers = headers or {}

    async def json(self, content_type: str | None = None) -> Any:  # noqa: ARG002
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    async def __aenter__(self) -> FakeResponse:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None


class FakeSession:
    """Replays canned responses and records requests."""

    def __init__(self, *responses: FakeResponse | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[tuple[str, dict[str, str]]] = []
        self.closed = False

    def get(self, url: str, headers: dict[str, str] | None = None, **_: Any) -> FakeResponse:
        self.requests.append((url, dict(headers or {})))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    async def close(self) -> None:
        self.closed = True


class TestBuildUrl:
    """Tests for build_url function."""

    def test_formula_and_cask_urls(self) -> None:
        """Test the endpoint per package kind."""
        assert build_url(WGET) == f"{DEFAULT_BASE_URL}/formula/wget.json"
        assert build_url(FIREFOX) == f"{DEFAULT_BASE_URL}/cask/firefox.json"

    def test_item_without_kind_is_formula(self) -> None:
        """Test that legacy items are looked up as formulae."""
        assert build_url(WatchItem(name="wget"), "http://mirror/") == "http://mirror/formula/wget.json"


class TestParseLatest:
    """Tests for parse_latest function."""

    def test_formula_prefers_stable(self) -> None:
        """Test that versions.stable wins over version."""
        payload = {"version": "0.9", "versions": {"stable": "1.24.5"}, "version_scheme": 1}

        assert parse_latest(PackageKind.FORMULA, payload) == ("1.24.5", 1)

    def test_formula_revision_suffix(self) -> None:
        """Test that a positive revision is appended."""
        payload = {"versions": {"stable": "3.2"}, "revision": 2}

        assert parse_latest(PackageKind.FORMULA, payload) == ("3.2_2", 0)

    def test_formula_falls_back_to_version(self) -> None:
        """Test the top-level version field as fallback."""
        assert parse_latest(PackageKind.FORMULA, {"version": "2.0"}) == ("2.0", 0)

    def test_cask_has_no_scheme(self) -> None:
        """Test that casks always report scheme 0."""
        payload = {"version": "128.0,20240701", "version_scheme": 3}

        assert parse_latest(PackageKind.CASK, payload) == ("128.0,20240701", 0)

    def test_missing_version(self) -> None:
        """Test that a document without versions yields an empty version."""
        assert parse_latest(PackageKind.FORMULA, {}) == ("", 0)

    def test_non_object_payload(self) -> None:
        """Test that a non-object document is rejected."""
        with pytest.raises(FetchError, match="unexpected payload"):
            parse_latest(PackageKind.FORMULA, ["1.0"])


class TestFormulaeAPIClient:
    """Tests for FormulaeAPIClient."""

    @pytest.mark.asyncio
    async def test_fetch_success(self) -> None:
        """Test a fresh 200 response."""
        session = FakeSession(
            FakeResponse(200, {"versions": {"stable": "1.24.5"}}, {"ETag": '"abc"'})
        )
        client = FormulaeAPIClient(session=session)  # type: ignore[arg-type]

        outcome = await client.fetch_latest(WGET)

        assert outcome.latest == "1.24.5"
        assert outcome.etag == '"abc"'
        assert outcome.not_modified is False
        assert outcome.error is None
        url, headers = session.requests[0]
        assert url == f"{DEFAULT_BASE_URL}/formula/wget.json"
        assert "If-None-Match" not in headers

    @pytest.mark.asyncio
    async def test_fetch_not_modified(self) -> None:
        """Test revalidation with an ETag answered by 304."""
        session = FakeSession(FakeResponse(304))
        client = FormulaeAPIClient(session=session)  # type: ignore[arg-type]

        outcome = await client.fetch_latest(FIREFOX, etag='"abc"')

        assert outcome.not_modified is True
        assert outcome.etag == '"abc"'
        assert outcome.latest == ""
        assert session.requests[0][1]["If-None-Match"] == '"abc"'

    @pytest.mark.asyncio
    async def test_fetch_bad_status(self) -> None:
        """Test that non-200 statuses become errors."""
        client = FormulaeAPIClient(session=FakeSession(FakeResponse(404)))  # type: ignore[arg-type]

        outcome = await client.fetch_latest(WGET)

        assert outcome.error == "api status 404"

    @pytest.mark.asyncio
    async def test_fetch_transport_error(self) -> None:
        """Test that connection failures are reported, not raised."""
        session = FakeSession(aiohttp.ClientConnectionError("connection refused"))
        client = FormulaeAPIClient(session=session)  # type: ignore[arg-type]

        outcome = await client.fetch_latest(WGET)

        assert outcome.error == "connection refused"

    @pytest.mark.asyncio
    async def test_fetch_invalid_json(self) -> None:
        """Test that an undecodable body is reported as an error."""
        bad_body = json.JSONDecodeError("Expecting value", "<html>", 0)
        client = FormulaeAPIClient(session=FakeSession(FakeResponse(200, bad_body)))  # type: ignore[arg-type]

        outcome = await client.fetch_latest(WGET)

        assert outcome.error is not None
        assert "Expecting value" in outcome.error

    @pytest.mark.asyncio
    async def test_borrowed_session_is_not_closed(self) -> None:
        """Test that a session passed in stays open."""
        session = FakeSession()

        async with FormulaeAPIClient(session=session):  # type: ignore[arg-type]
            pass

        assert session.closed is False

    def test_base_url_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test overriding the API root through the environment."""
        monkeypatch.setenv("BREW_UPDATER_API_URL", "http://localhost:8080/api/")
        client = FormulaeAPIClient()

        assert client.url_for(WGET) == "http://localhost:8080/api/formula/wget.json"
