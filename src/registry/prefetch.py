"""Concurrent prefetch of registry index documents.

Walks the registry requirements reachable from the workspace breadth-first
and downloads every index document that is missing or stale, at most
``net.max-concurrency`` at a time. Each document is written to the cache
as soon as it arrives and fresh documents are never refetched, so an
interrupted prefetch resumes where it stopped.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Collection, Dict, Iterable, List, Optional, Set, Tuple

import aiohttp

from common.http_client import backoff_delay
from common.logging_utils import Timer, extra_context, is_debug_enabled, safe_url
from constants import Constants
from errors import NetworkUnavailable
from registry.index import IndexCache, empty_document, index_url, parse_index_document
from versioning.models import DepKind, Node, PackageKey, Requirement, SourceKind

logger = logging.getLogger(__name__)

# (status, body) for one GET.
FetchFn = Callable[[str], Awaitable[Tuple[int, str]]]


class IndexPrefetcher:
    """Warm the index cache before resolution.

    Args:
        cache: Cache the documents are written to.
        max_concurrency: Upper bound on in-flight requests.
        retries: Attempts per document.
        timeout: Per-request timeout in seconds.
        fetch: Replacement for the aiohttp GET, used by tests.
    """

    def __init__(
        self,
        cache: IndexCache,
        max_concurrency: int = Constants.FETCH_MAX_CONCURRENCY,
        retries: int = Constants.HTTP_RETRY_MAX,
        timeout: float = Constants.REQUEST_TIMEOUT,
        fetch: Optional[FetchFn] = None,
    ):
        self.cache = cache
        self.max_concurrency = max(1, max_concurrency)
        self.retries = max(1, retries)
        self.timeout = timeout
        self._fetch = fetch
        self.fetched = 0

    async def _get_with_retries(self, get: FetchFn, url: str) -> Tuple[int, str]:
        last_error = None
        for attempt in range(self.retries):
            if attempt:
                await asyncio.sleep(backoff_delay(attempt - 1))
            try:
                status, body = await get(url)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                last_error = str(exc) or type(exc).__name__
                continue
            if status >= 500:
                last_error = f"HTTP {status}"
                continue
            return status, body
        raise NetworkUnavailable(
            f"failed to fetch `{safe_url(url)}` after {self.retries} attempts: {last_error}",
            url=safe_url(url),
            attempts=self.retries,
        )

    async def _load(self, get: FetchFn, semaphore: asyncio.Semaphore, key: PackageKey) -> List[Node]:
        name, registry = key
        cached = self.cache.read(registry, name)
        if cached is not None and cached[1] < self.cache.ttl:
            return parse_index_document(cached[0], registry, name)

        url = index_url(registry, name)
        async with semaphore:
            with Timer() as t:
                status, body = await self._get_with_retries(get, url)
        if status == 404:
            data = empty_document(name)
        elif status == 200:
            try:
                data = json.loads(body)
            except json.JSONDecodeError as exc:
                raise NetworkUnavailable(f"invalid index document at `{safe_url(url)}`", url=safe_url(url)) from exc
        else:
            raise NetworkUnavailable(
                f"unexpected response from `{safe_url(url)}` (HTTP {status})", url=safe_url(url), status=status
            )
        self.cache.write(registry, name, data)
        self.fetched += 1
        if is_debug_enabled(logger):
            logger.debug(
                "Prefetched index document",
                extra=extra_context(
                    event="prefetch", component="prefetch", action="GET",
                    target=name, status_code=status, duration_ms=t.duration_ms(),
                ),
            )
        return parse_index_document(data, registry, name)

    async def prefetch_async(
        self, requirements: Iterable[Requirement], skip: Collection[PackageKey] = ()
    ) -> int:
        """Fetch every stale document reachable from ``requirements``.

        Requirements on keys in ``skip`` (packages held at their locked
        version) are neither fetched nor expanded.

        Returns:
            Number of documents downloaded.
        """
        skip = frozenset(skip)
        frontier = [
            r for r in requirements
            if r.source_constraint.kind == SourceKind.REGISTRY and r.key not in skip
        ]
        seen: Set[Requirement] = set(frontier)
        documents: Dict[PackageKey, List[Node]] = {}
        semaphore = asyncio.Semaphore(self.max_concurrency)

        session: Optional[aiohttp.ClientSession] = None
        get = self._fetch
        if get is None:
            session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))

            async def get(url: str) -> Tuple[int, str]:
                async with session.get(url) as response:
                    return response.status, await response.text()

        try:
            while frontier:
                wanted = sorted({r.key for r in frontier if r.key not in documents},
                                key=lambda k: (k[0], k[1].ident()))
                # Let every in-flight fetch land in the cache before failing.
                results = await asyncio.gather(
                    *(self._load(get, semaphore, key) for key in wanted), return_exceptions=True
                )
                failures = [r for r in results if isinstance(r, BaseException)]
                if failures:
                    raise failures[0]
                documents.update(zip(wanted, results))

                next_frontier: List[Requirement] = []
                for req in frontier:
                    for node in documents[req.key]:
                        if node.yanked or not req.matches(node.package_id):
                            continue
                        for dep in node.requirements:
                            if (dep.kind != DepKind.DEV
                                    and dep.source_constraint.kind == SourceKind.REGISTRY
                                    and dep.key not in skip
                                    and dep not in seen):
                                seen.add(dep)
                                next_frontier.append(dep)
                frontier = next_frontier
        finally:
            if session is not None:
                await session.close()

        logger.debug("Prefetch complete: %d document(s) downloaded, %d known",
                     self.fetched, len(documents))
        return self.fetched

    def prefetch(self, requirements: Iterable[Requirement], skip: Collection[PackageKey] = ()) -> int:
        """Blocking wrapper around ``prefetch_async``."""
        return asyncio.run(self.prefetch_async(list(requirements), skip))
