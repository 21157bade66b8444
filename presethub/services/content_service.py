"""Content service: every read of repository content goes through here.

Reads flow memory -> persistent disk -> GitHub, and results are written back
through both cache tiers. When the local mirror is enabled and present, all
reads are served from it instead and nothing is cached.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from presethub.config import Settings
from presethub.exceptions import ContentError, NotFoundError
from presethub.models.content import CommitInfo, FileDescriptor, FileVersion, TreeEntry
from presethub.services.disk_cache import PersistentCache
from presethub.services.github_client import GitHubClient
from presethub.services.local_mirror import LocalMirror
from presethub.services.memory_cache import RevalidatingCache
from presethub.services.tree_fetcher import TreeFetcher, tree_cache_key, tree_entries_to_files

logger = logging.getLogger(__name__)


def cache_key(kind: str, path: str) -> str:
    return f"{kind}:{path.strip('/')}"


def json_cache_key(path: str, sha: str) -> str:
    return f"json:{path.strip('/')}@{sha}"


def thumbnail_cache_key(path: str, sha: str) -> str:
    return f"thumb:{path.strip('/')}@{sha}"


class ContentService:
    """Cached, stale-while-revalidate access to repository content."""

    def __init__(
        self,
        settings: Settings,
        client: GitHubClient | None = None,
        mirror: LocalMirror | None = None,
        disk_cache: PersistentCache | None = None,
        memory_cache: RevalidatingCache | None = None,
    ):
        self._settings = settings
        self.client = client or GitHubClient.from_settings(settings)
        self.mirror = mirror or LocalMirror.from_settings(settings)
        self.disk_cache = disk_cache or PersistentCache.from_settings(settings)
        self.memory_cache = memory_cache or RevalidatingCache.from_settings(settings)
        self.tree_fetcher = TreeFetcher(
            self.client,
            self.disk_cache,
            ttl=settings.ttl_for("tree"),
            concurrency=settings.batch_concurrency,
        )

        self._warmup_task: asyncio.Task | None = None
        self._warmup_in_progress = False
        self._warmup_completed = False

    @property
    def uses_mirror(self) -> bool:
        return self.mirror.is_available()

    # ── Core read path ──

    async def read(self, kind: str, path: str) -> Any:
        """Read a resource of ``kind`` ("contents" or "commits") at ``path``.

        Errors propagate only when nothing is cached for the key yet.
        """
        key = cache_key(kind, path)
        return await self.memory_cache.read(
            key,
            lambda: self._fetch_remote(kind, path),
            kind=kind,
            load_cached=lambda: self.disk_cache.get(key),
        )

    async def _fetch_remote(self, kind: str, path: str) -> Any:
        if kind == "contents":
            data = await self.client.get_contents(path)
        elif kind == "commits":
            commits = await self.client.get_commits(path, per_page=1)
            data = commits[0] if commits else None
        else:
            raise ValueError(f"Unknown resource kind: {kind}")

        if data is not None:
            await self.disk_cache.set(
                cache_key(kind, path), data, ttl=self._settings.default_cache_ttl_seconds
            )
        return data

    # ── Accessors ──

    async def get_directory_contents(self, path: str) -> list[FileDescriptor]:
        """Files and directories directly under ``path``. Missing -> []."""
        if self.uses_mirror:
            return self.mirror.list_directory(path)

        try:
            contents = await self.read("contents", path)
        except NotFoundError:
            logger.info("Directory not found upstream: %s", path)
            return []

        if not isinstance(contents, list):
            return []
        return [
            FileDescriptor.model_validate(item)
            for item in contents
            if isinstance(item, dict) and item.get("type") in ("file", "dir")
        ]

    async def get_latest_commit(self, path: str) -> CommitInfo | None:
        if self.uses_mirror:
            return self.mirror.latest_commit(path)

        try:
            data = await self.read("commits", path)
        except ContentError as e:
            logger.error("Error fetching latest commit for %s: %s", path, e)
            return None
        return CommitInfo.model_validate(data) if data else None

    async def get_file_versions(self, dir_path: str) -> list[FileVersion]:
        """Files in ``dir_path`` with their latest commit, newest first."""
        files = [f for f in await self.get_directory_contents(dir_path) if f.type == "file"]
        commits = await asyncio.gather(*(self.get_latest_commit(f.path) for f in files))
        versions = [FileVersion(file=f, commit=c) for f, c in zip(files, commits)]

        dated = [v for v in versions if v.commit and v.commit.commit.author.date]
        undated = [v for v in versions if not (v.commit and v.commit.commit.author.date)]
        dated.sort(key=lambda v: v.commit.commit.author.date, reverse=True)
        return dated + undated

    async def get_json_file(self, file: FileDescriptor) -> Any | None:
        """Parsed JSON body of ``file``, cached per blob SHA."""
        if self.uses_mirror:
            return self.mirror.read_file(file.path)
        if not file.download_url:
            return None

        key = json_cache_key(file.path, file.sha)

        async def fetch():
            data = await self.client.fetch_json(file.download_url)
            await self.disk_cache.set(key, data, ttl=self._settings.ttl_for("json"))
            return data

        try:
            # Same SHA means same bytes, so a disk hit needs no revalidation
            return await self.memory_cache.read(
                key,
                fetch,
                kind="json",
                load_cached=lambda: self.disk_cache.get(key),
                revalidate_loaded=False,
            )
        except ContentError as e:
            logger.error("Failed to fetch JSON file %s: %s", file.path, e)
            return None

    async def get_thumbnail_url(self, file: FileDescriptor) -> str | None:
        """Display URL for an image file, pinned per blob SHA."""
        if self.uses_mirror:
            return self.mirror.image_data_url(file.path)
        if not file.download_url:
            return None

        async def resolve():
            return file.download_url

        return await self.memory_cache.read(
            thumbnail_cache_key(file.path, file.sha), resolve, kind="thumbnail"
        )

    async def get_tree(self, path: str) -> list[TreeEntry]:
        """Entries directly under ``path``. A path missing upstream has none."""
        if self.uses_mirror:
            return self.mirror.list_tree(path)
        return await self.tree_fetcher.fetch_tree(path)

    async def fetch_many(self, paths: list[str]) -> dict[str, list[TreeEntry]]:
        if self.uses_mirror:
            return {p: self.mirror.list_tree(p) for p in paths if self.mirror.has_directory(p)}
        return await self.tree_fetcher.fetch_many(paths)

    # ── Warm-up ──

    async def warmup(self) -> int:
        """Pre-load directory listings under the configured warm-up roots.

        Walks ``warmup_depth`` levels below each root with batched tree
        fetches and primes the in-memory cache with the listings. Leaf
        directories (the deepest level walked, or those without
        subdirectories) also get their latest commit and JSON files loaded.
        Returns the number of directories warmed.
        """
        if self._warmup_in_progress or self._warmup_completed:
            return 0
        if self.uses_mirror:
            logger.info("Local mirror in use, skipping cache warm-up")
            self._warmup_completed = True
            return 0

        self._warmup_in_progress = True
        start = time.monotonic()
        warmed = 0
        logger.info("Starting cache warm-up...")
        try:
            leaves: list[tuple[str, list[FileDescriptor]]] = []
            level = list(self._settings.warmup_paths)
            for depth in range(self._settings.warmup_depth + 1):
                if not level:
                    break
                trees = await self.fetch_many(level)
                next_level = []
                for path, entries in trees.items():
                    files = tree_entries_to_files(entries, path, self.client)
                    self.memory_cache.prime(
                        cache_key("contents", path),
                        [f.model_dump() for f in files],
                        kind="contents",
                    )
                    warmed += 1
                    subdirs = [f.path for f in files if f.type == "dir"]
                    if not subdirs or depth == self._settings.warmup_depth:
                        leaves.append((path, files))
                    next_level.extend(subdirs)
                level = next_level

            await self._warm_leaves(leaves)

            self._warmup_completed = True
            logger.info(
                "Cache warm-up completed: %d directories in %.0fms",
                warmed, (time.monotonic() - start) * 1000,
            )
        finally:
            self._warmup_in_progress = False
        return warmed

    async def _warm_leaves(self, leaves: list[tuple[str, list[FileDescriptor]]]) -> None:
        semaphore = asyncio.Semaphore(self._settings.batch_concurrency)

        async def bounded(load, arg):
            async with semaphore:
                return await load(arg)

        jobs = []
        for path, files in leaves:
            jobs.append(bounded(self.get_latest_commit, path))
            jobs.extend(
                bounded(self.get_json_file, f)
                for f in files
                if f.type == "file" and f.name.lower().endswith(".json")
            )
        logger.info("Warming %d leaf directories (%d requests)", len(leaves), len(jobs))
        await asyncio.gather(*jobs)

    def ensure_warmup(self) -> bool:
        """Start warm-up in the background unless it ran or is running."""
        if self._warmup_completed or self._warmup_in_progress:
            return False
        if self._warmup_task is not None and not self._warmup_task.done():
            return False
        self._warmup_task = asyncio.create_task(self._run_warmup())
        return True

    async def _run_warmup(self) -> None:
        try:
            await self.warmup()
        except Exception:
            logger.exception("Cache warm-up failed")

    def warmup_status(self) -> dict:
        return {"completed": self._warmup_completed, "in_progress": self._warmup_in_progress}

    # ── Invalidation ──

    async def invalidate_path(self, path: str, kind: str = "contents") -> bool:
        """Drop ``path`` from both tiers. Returns True if anything was removed."""
        key = cache_key(kind, path)
        removed = self.memory_cache.invalidate(key)
        removed = await self.disk_cache.delete(key) or removed
        if kind == "contents":
            removed = await self.disk_cache.delete(tree_cache_key(path)) or removed
        return removed

    def invalidate_json(self, path: str) -> bool:
        # Disk copies are keyed by SHA and simply stop being read
        return self.memory_cache.invalidate_by_prefix(f"json:{path.strip('/')}@") > 0

    async def clear(self) -> dict:
        memory = self.memory_cache.clear()
        persistent = await self.disk_cache.clear()
        logger.info("Cleared caches: %d memory entries, %d persistent entries", memory, persistent)
        return {"memory_entries": memory, "persistent_entries": persistent}

    # ── Status ──

    async def stats(self) -> dict:
        rest = self.client.rest_rate_limit
        graphql = self.client.graphql_rate_limit
        return {
            "memory": self.memory_cache.stats(),
            "persistent": await self.disk_cache.stats(),
            "rate_limits": {
                "rest": rest.model_dump(by_alias=True) if rest else None,
                "graphql": graphql.model_dump(by_alias=True) if graphql else None,
            },
            "warmup": self.warmup_status(),
            "local_mirror": {
                "enabled": self.mirror.enabled,
                "available": self.uses_mirror,
                "root": str(self.mirror.root),
            },
        }

    async def close(self) -> None:
        if self._warmup_task is not None and not self._warmup_task.done():
            self._warmup_task.cancel()
            await asyncio.gather(self._warmup_task, return_exceptions=True)
        await self.memory_cache.close()
        await self.client.close()
