"""Client for the Homebrew formulae JSON API.

Fetches the latest published version of a formula or cask. Requests carry
the previous ETag as ``If-None-Match`` so unchanged packages cost a 304.

Endpoints:
    formula: https://formulae.brew.sh/api/formula/<name>.json
    cask:    https://formulae.brew.sh/api/cask/<name>.json
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import aiohttp
import structlog
from pydantic import BaseModel, Field

from .interfaces import MetadataFetcher
from .models import PackageKind, WatchItem

if TYPE_CHECKING:
    from types import TracebackType

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://formulae.brew.sh/api"
DEFAULT_TIMEOUT_SECONDS = 10.0
BASE_URL_ENV = "BREW_UPDATER_API_URL"


class FetchError(Exception):
    """The API answered with something we cannot use."""


class _StableVersions(BaseModel):
    stable: str | None = None


class FormulaInfo(BaseModel):
    """Subset of the formula JSON document."""

    version: str | None = None
    revision: int = 0
    version_scheme: int = 0
    versions: _StableVersions = Field(default_factory=_StableVersions)


class CaskInfo(BaseModel):
    """Subset of the cask JSON document."""

    version: str | None = None


@dataclass
class FetchOutcome:
    """Result of fetching one item's metadata."""

    item: WatchItem
    latest: str = ""
    scheme: int = 0
    etag: str = ""
    not_modified: bool = False
    error: str | None = None


def build_url(item: WatchItem, base_url: str = DEFAULT_BASE_URL) -> str:
    """Build the API URL for an item."""
    base = base_url.rstrip("/")
    if item.kind == PackageKind.CASK:
        return f"{base}/cask/{item.name}.json"
    return f"{base}/formula/{item.name}.json"


def parse_latest(kind: PackageKind | None, payload: Any) -> tuple[str, int]:
    """Extract (version, scheme) from an API document.

    Casks have no scheme concept and always report 0. Formulae prefer the
    stable version and append ``_<revision>`` when the revision is positive.

    Raises:
        FetchError: If the payload is not a JSON object.
        pydantic.ValidationError: If fields have unexpected types.
    """
    if not isinstance(payload, dict):
        raise FetchError(f"unexpected payload type {type(payload).__name__}")

    if kind == PackageKind.CASK:
        cask = CaskInfo.model_validate(payload)
        return cask.version or "", 0

    formula = FormulaInfo.model_validate(payload)
    version = formula.versions.stable or formula.version or ""
    if version and formula.revision > 0:
        version = f"{version}_{formula.revision}"
    return version, formula.version_scheme


class FormulaeAPIClient(MetadataFetcher):
    """Async client for the formulae API.

    Use as an async context manager so the underlying session is closed:

        >>> async with FormulaeAPIClient() as client:
        ...     outcome = await client.fetch_latest(item, etag)
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API root. Defaults to $BREW_UPDATER_API_URL or formulae.brew.sh.
            timeout_seconds: Total timeout for a single request.
            session: Existing session to use. It is not closed by this client.
        """
        self.base_url = base_url or os.environ.get(BASE_URL_ENV) or DEFAULT_BASE_URL
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session = session
        self._owns_session = session is None
        self._log = logger.bind(component="formulae_api")

    async def __aenter__(self) -> FormulaeAPIClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the session if this client created it."""
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def url_for(self, item: WatchItem) -> str:
        """Return the URL the item's metadata is fetched from."""
        return build_url(item, self.base_url)

    async def fetch_latest(self, item: WatchItem, etag: str = "") -> FetchOutcome:
        """Fetch the latest version of an item.

        Args:
            item: The watched package.
            etag: ETag from the previous successful fetch, empty if none.

        Returns:
            FetchOutcome. Transport and API failures are reported in
            ``error``; cancellation propagates.
        """
        url = self.url_for(item)
        log = self._log.bind(package=item.name, url=url)
        try:
            return await self._fetch(item, url, etag)
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, TimeoutError, ValueError, FetchError) as e:
            message = str(e) or type(e).__name__
            log.warning("fetch_failed", error=message)
            return FetchOutcome(item=item, error=message)

    async def _fetch(self, item: WatchItem, url: str, etag: str) -> FetchOutcome:
        headers = {"Accept": "application/json"}
        if etag:
            headers["If-None-Match"] = etag

        session = self._get_session()
        async with session.get(url, headers=headers, timeout=self._timeout) as response:
            if response.status == HTTPStatus.NOT_MODIFIED:
                logger.debug("fetch_not_modified", package=item.name)
                return FetchOutcome(item=item, etag=etag, not_modified=True)
            if response.status != HTTPStatus.OK:
                raise FetchError(f"api status {response.status}")

            payload = await response.json(content_type=None)
            new_etag = response.headers.get("ETag", "")

        latest, scheme = parse_latest(item.kind, payload)
        logger.debug("fetch_completed", package=item.name, latest=latest, scheme=scheme)
        return FetchOutcome(item=item, latest=latest, scheme=scheme, etag=new_etag)
