"""Bulk directory tree fetching through the persistent cache."""

from __future__ import annotations

import asyncio
import logging

from pydantic import ValidationError

from presethub.models.content import FileDescriptor, TreeEntry
from presethub.services.disk_cache import PersistentCache
from presethub.services.github_client import GitHubClient

logger = logging.getLogger(__name__)


def tree_cache_key(path: str) -> str:
    return f"graphql:tree:{path.strip('/')}"


class TreeFetcher:
    """Fetches directory trees, consulting the persistent cache first.

    Uncached trees are fetched in batches of ``concurrency`` parallel requests
    to stay within the upstream rate limits.
    """

    def __init__(
        self,
        client: GitHubClient,
        disk_cache: PersistentCache,
        ttl: float = 3600,
        concurrency: int = 5,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._client = client
        self._disk = disk_cache
        self._ttl = ttl
        self._concurrency = concurrency

    async def fetch_tree(self, path: str = "") -> list[TreeEntry]:
        """Entries of one directory. Upstream errors propagate."""
        cached = await self._cached(path)
        if cached is not None:
            logger.debug("Tree cache hit: %s", path or "root")
            return cached
        return await self._fetch_remote(path)

    async def fetch_many(self, paths: list[str]) -> dict[str, list[TreeEntry]]:
        """Fetch many trees. Paths that fail are omitted from the result.

        A missing path means "unknown", not "empty".
        """
        results: dict[str, list[TreeEntry]] = {}
        uncached: list[str] = []

        for path in dict.fromkeys(paths):
            cached = await self._cached(path)
            if cached is not None:
                results[path] = cached
            else:
                uncached.append(path)

        if not uncached:
            logger.info("All %d tree paths served from cache", len(results))
            return results

        logger.info(
            "Fetching %d uncached trees (%d cached, concurrency=%d)",
            len(uncached), len(results), self._concurrency,
        )
        for i in range(0, len(uncached), self._concurrency):
            batch = uncached[i:i + self._concurrency]
            fetched = await asyncio.gather(*(self._fetch_or_none(p) for p in batch))
            for path, entries in zip(batch, fetched):
                if entries is not None:
                    results[path] = entries
        return results

    async def _fetch_or_none(self, path: str) -> list[TreeEntry] | None:
        try:
            return await self._fetch_remote(path)
        except Exception as e:
            logger.error("Failed to fetch tree %s: %s", path or "root", e)
            return None

    async def _fetch_remote(self, path: str) -> list[TreeEntry]:
        logger.info("Fetching tree: %s", path or "root")
        entries, rate_limit = await self._client.get_tree(path)
        if rate_limit:
            logger.info(
                "GraphQL rate limit: %d/%d remaining, resets at %s",
                rate_limit.remaining, rate_limit.limit, rate_limit.reset_at,
            )
        await self._disk.set(
            tree_cache_key(path), [e.model_dump() for e in entries], ttl=self._ttl
        )
        return entries

    async def _cached(self, path: str) -> list[TreeEntry] | None:
        key = tree_cache_key(path)
        data = await self._disk.get(key)
        if data is None:
            return None
        try:
            return [TreeEntry.model_validate(e) for e in data]
        except (ValidationError, TypeError):
            logger.warning("Discarding malformed cached tree for %s", path or "root")
            await self._disk.delete(key)
            return None


def tree_entries_to_files(
    entries: list[TreeEntry], base_path: str, client: GitHubClient
) -> list[FileDescriptor]:
    """Convert tree entries to contents-API style file descriptors."""
    files = []
    for entry in entries:
        path = f"{base_path.strip('/')}/{entry.name}".lstrip("/")
        is_dir = entry.type == "tree"
        files.append(FileDescriptor(
            name=entry.name,
            path=path,
            type="dir" if is_dir else "file",
            sha=entry.oid,
            size=entry.size or 0,
            url=client.contents_url(path),
            html_url=client.html_url(path),
            git_url=client.git_tree_url(entry.oid),
            download_url="" if is_dir else client.raw_url(path),
        ))
    return files
