"""Concurrent fetch dispatcher.

Fans the due watch items out to a fixed pool of workers that share one
queue. Each item produces exactly one FetchOutcome; the order of outcomes
is unspecified. The pool size never scales with the number of items.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from .api import FetchOutcome

if TYPE_CHECKING:
    from collections.abc import Mapping

    from .interfaces import MetadataFetcher
    from .models import WatchItem

logger = structlog.get_logger(__name__)

DEFAULT_WORKERS = 4


async def fetch_all(
    fetcher: MetadataFetcher,
    items: list[WatchItem],
    etag_cache: Mapping[str, str],
    workers: int = DEFAULT_WORKERS,
) -> list[FetchOutcome]:
    """Fetch metadata for all items with a bounded worker pool.

    Args:
        fetcher: Metadata fetcher used for every item.
        items: Items to fetch.
        etag_cache: URL-keyed ETags. Read only; a snapshot is taken up front.
        workers: Number of concurrent workers.

    Returns:
        One outcome per item, in completion order.

    Raises:
        asyncio.CancelledError: If the caller is cancelled. All workers are
            cancelled and awaited before it propagates.
    """
    if workers < 1:
        raise ValueError(f"workers must be positive, got {workers}")
    if not items:
        return []

    etags = dict(etag_cache)
    queue: asyncio.Queue[WatchItem] = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)

    outcomes: list[FetchOutcome] = []
    log = logger.bind(component="fetch_dispatcher")

    async def worker(worker_id: int) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                etag = etags.get(fetcher.url_for(item), "")
                outcomes.append(await fetcher.fetch_latest(item, etag))
            except Exception as e:
                log.warning("fetch_crashed", package=item.name, error=str(e))
                outcomes.append(FetchOutcome(item=item, error=str(e) or type(e).__name__))
            finally:
                queue.task_done()
            log.debug("item_fetched", worker=worker_id, package=item.name)

    log.debug("fetch_started", items=len(items), workers=workers)
    tasks = [asyncio.create_task(worker(i)) for i in range(workers)]
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    log.debug("fetch_finished", outcomes=len(outcomes))
    return outcomes
